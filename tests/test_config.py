# tests/test_config.py
import pytest
from pydantic import ValidationError

from adaptive_chat.config import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.CONTEXT_CACHE_TTL == 300
        assert settings.SUGGESTION_CACHE_TTL == 120
        assert settings.SESSION_TIMEOUT == 1800
        assert settings.FEEDBACK_HISTORY_LIMIT == 100
        assert settings.MAX_SESSION_HISTORY == 50

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("SESSION_TIMEOUT", "60")
        monkeypatch.setenv("STORE_KEY_PREFIX", "widget:")

        settings = Settings(_env_file=None)

        assert settings.SESSION_TIMEOUT == 60
        assert settings.STORE_KEY_PREFIX == "widget:"

    @pytest.mark.parametrize("field,value", [
        ("CONTEXT_CACHE_TTL", 0),
        ("BATCH_DELAY", -1),
        ("MAX_TOPICS", 0),
        ("ANALYTICS_RETENTION_DAYS", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})
