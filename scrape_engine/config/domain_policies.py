"""Per-domain dispatch policy overrides, loaded from YAML.

The file looks like::

    domains:
      default:
        max_concurrency: 2
        min_spacing_ms: 1000
      slow-site.example:
        min_spacing_ms: 5000

Fields left out of an entry fall back to the engine-wide settings. A missing
or unreadable file means "no overrides"; a single bad entry is skipped.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class DomainPolicy(BaseModel):
    """Concurrency and spacing overrides for one domain."""

    max_concurrency: int | None = Field(default=None, ge=1)
    min_spacing_ms: int | None = Field(default=None, ge=0)


def _read_entries(path: Path) -> dict:
    if not path.is_file():
        logger.warning("Domain policies file not found at %s — no overrides", path)
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Cannot read domain policies at %s: %s", path, exc)
        return {}

    entries = raw.get("domains") if isinstance(raw, dict) else None
    if not isinstance(entries, dict):
        logger.warning("Domain policies at %s have no 'domains' mapping — no overrides", path)
        return {}
    return entries


def load_domain_policies(yaml_path: str) -> dict[str, DomainPolicy]:
    """Return policies keyed by lower-cased domain, plus ``"default"``.

    ``"default"`` is always present; it is empty unless the file sets it.
    """
    policies: dict[str, DomainPolicy] = {}
    for domain, config in _read_entries(Path(yaml_path)).items():
        key = str(domain).strip().lower()
        try:
            policies[key] = DomainPolicy.model_validate(config or {})
        except ValidationError as exc:
            logger.error("Invalid policy for domain '%s' — skipping: %s", key, exc)

    policies.setdefault("default", DomainPolicy())
    return policies
