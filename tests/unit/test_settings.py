"""Unit tests for OrchestratorSettings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from scrape_engine.config.settings import OrchestratorSettings


class TestDefaults:
    def test_defaults(self) -> None:
        s = OrchestratorSettings()
        assert s.attempt_timeout_seconds == 10.0
        assert s.max_attempts == 3
        assert s.backoff_base_seconds == 1.0
        assert s.max_workers == 5
        assert s.max_batch_size == 100
        assert s.default_priority == 3
        assert s.retryable_status_codes == [408, 429]
        assert s.database_url is None

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ORCHESTRATOR_MAX_WORKERS", "12")
        monkeypatch.setenv("ORCHESTRATOR_PROXY_ENDPOINTS", '["http://p1:8080"]')
        s = OrchestratorSettings()
        assert s.max_workers == 12
        assert s.proxy_endpoints == ["http://p1:8080"]


class TestBounds:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("attempt_timeout_seconds", 0.5),
            ("attempt_timeout_seconds", 61),
            ("max_attempts", 0),
            ("max_attempts", 11),
            ("backoff_base_seconds", 0.05),
            ("backoff_base_seconds", 11),
            ("max_workers", 0),
            ("max_workers", 101),
            ("default_priority", 6),
            ("backoff_jitter", 1.0),
        ],
    )
    def test_out_of_range(self, field: str, value: float) -> None:
        with pytest.raises(ValidationError):
            OrchestratorSettings(**{field: value})


class TestConsistency:
    def test_idle_poll_order(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorSettings(idle_poll_min_seconds=5, idle_poll_max_seconds=1)

    def test_backoff_order(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorSettings(backoff_base_seconds=5, backoff_max_seconds=2)

    def test_proxy_thresholds(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorSettings(proxy_degraded_threshold=4, proxy_quarantine_threshold=3)

    def test_staleness_must_exceed_busy_time(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorSettings(
                stale_after_seconds=100,
                attempt_timeout_seconds=10,
                captcha_timeout_seconds=120,
            )
