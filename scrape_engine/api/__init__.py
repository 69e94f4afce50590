"""Thin HTTP adapter over the orchestration engine."""
