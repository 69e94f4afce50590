"""Validators for job submission inputs."""

from scrape_engine.validators.url_validator import extract_domain, is_well_formed_url

__all__ = ["extract_domain", "is_well_formed_url"]
