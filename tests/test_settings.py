"""
Tests for the YAML settings loader.

Covers:
  - Defaults when no file exists
  - ${VAR} and ${VAR:-default} substitution
  - Section parsing and the cached get_settings()
"""
import pytest

from config.settings import (
    EscalationConfig, Settings, _substitute_env_vars, get_settings, load_settings, reset_settings,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestEnvSubstitution:

    def test_set_variable(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        assert _substitute_env_vars("${TWILIO_ACCOUNT_SID}") == "AC123"

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert _substitute_env_vars("${DATABASE_URL:-sqlite:///./x.db}") == "sqlite:///./x.db"

    def test_unset_without_default_is_empty(self, monkeypatch):
        monkeypatch.delenv("NOT_CONFIGURED_ANYWHERE", raising=False)
        assert _substitute_env_vars("sid=${NOT_CONFIGURED_ANYWHERE}") == "sid="


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.escalation.reminder_after_hours == 3
        assert settings.escalation.quiet_hours_start == 21
        assert settings.badge.max_deputies == 3
        assert settings.locks.lease_ttl_seconds == 120

    def test_sections(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TWILIO_ENQUIRY_SID", "HXenquiry")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "app_name: Bookings\n"
            "database:\n"
            "  store_backend: file\n"
            "  store_file_dir: /var/lib/alloc\n"
            "locks:\n"
            "  backend: redis\n"
            "escalation:\n"
            "  reminder_after_hours: 4\n"
            "  timezone: Europe/Dublin\n"
            "badge:\n"
            "  lead_roles: [lead vocal]\n"
            "twilio:\n"
            "  content_sids:\n"
            "    availability: ${TWILIO_ENQUIRY_SID}\n"
            "calendar:\n"
            "  provider: http\n"
            "  base_url: https://calendar.internal\n"
            "channels:\n"
            "  whatsapp:\n"
            "    enabled: true\n"
        )

        settings = load_settings(str(path))

        assert settings.app_name == "Bookings"
        assert settings.database.store_backend == "file"
        assert settings.database.url == "sqlite:///./allocation.db"
        assert settings.locks.backend == "redis"
        assert settings.escalation.reminder_after_hours == 4
        assert settings.escalation.chase_after_hours == 24
        assert settings.escalation.timezone == "Europe/Dublin"
        assert settings.badge.lead_roles == ["lead vocal"]
        assert settings.twilio.content_sids == {"availability": "HXenquiry"}
        assert settings.calendar.provider == "http"
        assert settings.channels["whatsapp"].enabled is True

    def test_empty_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("")
        assert load_settings(str(path)).escalation == EscalationConfig()

    def test_env_path_and_cache(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("app_name: FromEnv\n")
        monkeypatch.setenv("ALLOCATION_CONFIG", str(path))

        first = get_settings()

        assert first.app_name == "FromEnv"
        assert get_settings() is first

    def test_bundled_settings_load(self, monkeypatch):
        monkeypatch.delenv("ALLOCATION_CONFIG", raising=False)
        settings = load_settings()
        assert settings.database.store_backend == "memory"
        assert settings.escalation.escalate_after_hours == 72
        assert "lead vocal" in settings.badge.lead_roles
