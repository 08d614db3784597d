"""Tests for settings.py and the error taxonomy."""

import pytest

from errors import (
    ConfigError,
    DwelligenceError,
    NotFoundError,
    ParseError,
    UpstreamUnavailable,
    ValidationError,
)
from settings import DEFAULT_GEMINI_MODEL, REQUIRED_KEYS, load_settings, missing_keys

REQUIRED = {
    "DWELLIGENCE_DB_PATH": "/tmp/dw.db",
    "GOOGLE_MAPS_API_KEY": "maps",
    "GEMINI_API_KEY": "gemini",
}


class TestLoadSettings:
    def test_required_only(self):
        s = load_settings(dict(REQUIRED))
        assert s.db_path == "/tmp/dw.db"
        assert s.gemini_model == DEFAULT_GEMINI_MODEL
        assert s.sentry_dsn is None
        assert s.commute_cache_ttl_seconds == 86400
        assert (s.ranking_weight_time, s.ranking_weight_price) == (0.5, 0.5)

    def test_missing_keys_are_all_reported(self):
        with pytest.raises(ConfigError) as exc_info:
            load_settings({"GOOGLE_MAPS_API_KEY": "maps", "GEMINI_API_KEY": "  "})
        assert exc_info.value.missing_keys == ["DWELLIGENCE_DB_PATH", "GEMINI_API_KEY"]
        assert "DWELLIGENCE_DB_PATH" in str(exc_info.value)

    def test_optional_overrides(self):
        env = dict(REQUIRED,
                   GEMINI_MODEL="gemini-pro",
                   RANKING_WEIGHT_TIME="0.8",
                   RANKING_WEIGHT_PRICE="0.2",
                   COMMUTE_CACHE_TTL_SECONDS="600",
                   RATE_LIMIT_AI="5/minute")
        s = load_settings(env)
        assert s.gemini_model == "gemini-pro"
        assert s.ranking_weight_time == 0.8
        assert s.ranking_weight_price == 0.2
        assert s.commute_cache_ttl_seconds == 600
        assert s.rate_limit_ai == "5/minute"

    def test_bad_number_falls_back_to_default(self):
        s = load_settings(dict(REQUIRED, RANKING_WEIGHT_TIME="heavy"))
        assert s.ranking_weight_time == 0.5

    def test_missing_keys_helper(self):
        assert missing_keys(REQUIRED) == []
        assert missing_keys({}) == list(REQUIRED_KEYS)


class TestErrors:
    @pytest.mark.parametrize("cls,status", [
        (ValidationError, 400),
        (NotFoundError, 404),
        (UpstreamUnavailable, 502),
        (ParseError, 500),
    ])
    def test_status_codes(self, cls, status):
        assert cls("x").status_code == status
        assert issubclass(cls, DwelligenceError)

    def test_upstream_service(self):
        assert UpstreamUnavailable("x", service="gemini").service == "gemini"
        assert UpstreamUnavailable("x").service == "unknown"
