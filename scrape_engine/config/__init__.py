"""Configuration module — settings and domain policies."""

from scrape_engine.config.domain_policies import DomainPolicy, load_domain_policies
from scrape_engine.config.settings import OrchestratorSettings

__all__ = [
    "DomainPolicy",
    "OrchestratorSettings",
    "load_domain_policies",
]
