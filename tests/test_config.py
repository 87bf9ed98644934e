"""
Tests for settings and credential resolution.
"""

from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from standby_verifier.config import Settings, get_settings, resolve_password
from standby_verifier.errors import ConfigurationError


class TestSettingsDefaults:
    """Tests for default values and environment loading."""

    def test_defaults(self) -> None:
        """Defaults should match the documented test parameters."""
        settings = Settings()

        assert settings.user == "admin"
        assert settings.password is None
        assert settings.lag_test_duration_s == 30
        assert settings.lag_sample_interval_s == 1.0
        assert settings.promotion_message_count == 100
        assert settings.restore_ready_attempts == 30
        assert settings.packet_loss_min_rate == 100
        assert settings.cleanup is True
        assert settings.test_promotion is False
        assert settings.enable_chaos is False

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """SV_ prefixed variables should override defaults."""
        monkeypatch.setenv("SV_USER", "operator")
        monkeypatch.setenv("SV_SKIP_CROSS_REGION", "true")
        monkeypatch.setenv("SV_TOPOLOGY_FILE", "/etc/verifier/topology.yaml")

        settings = Settings()

        assert settings.user == "operator"
        assert settings.skip_cross_region is True
        assert settings.topology_file == Path("/etc/verifier/topology.yaml")

    def test_password_from_sv_password(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """SV_PASSWORD should populate the password."""
        monkeypatch.setenv("SV_PASSWORD", "from-sv")

        assert Settings().password_value() == "from-sv"

    def test_password_from_rmq_password(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """RMQ_PASSWORD is accepted for compatibility with existing scripts."""
        monkeypatch.setenv("RMQ_PASSWORD", "from-rmq")

        assert Settings().password_value() == "from-rmq"

    def test_log_level_validated(self) -> None:
        """Unknown log levels should be rejected."""
        with pytest.raises(ValidationError):
            Settings(log_level="CHATTY")

    def test_log_level_normalized(self) -> None:
        """Log level should be upper-cased."""
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_management_scheme_validated(self) -> None:
        """Only http and https are valid schemes."""
        with pytest.raises(ValidationError):
            Settings(management_scheme="ftp")

    def test_get_settings_cached(self) -> None:
        """get_settings should return the same instance."""
        assert get_settings() is get_settings()


class TestPasswordHandling:
    """Tests for password access and redaction."""

    def test_password_value_missing_raises(self) -> None:
        """Asking for an unresolved password is a configuration error."""
        with pytest.raises(ConfigurationError, match="not configured"):
            Settings().password_value()

    def test_empty_password_not_configured(self) -> None:
        """An empty secret does not count as configured."""
        settings = Settings(password="")

        assert settings.has_password is False

    def test_redacted_config_hides_password(self) -> None:
        """Redacted config should expose only whether a password is set."""
        settings = Settings(password="super-secret")

        redacted = settings.get_redacted_config()

        assert redacted["password_configured"] is True
        assert "super-secret" not in str(redacted)

    def test_password_not_in_repr(self) -> None:
        """SecretStr should keep the password out of repr."""
        settings = Settings(password="super-secret")

        assert "super-secret" not in repr(settings)


class TestResolvePassword:
    """Tests for password precedence."""

    def test_cli_password_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Command line password should override the environment."""
        monkeypatch.setenv("SV_PASSWORD", "from-env")

        resolved = resolve_password(Settings(), cli_password="from-cli", interactive=False)

        assert resolved.password_value() == "from-cli"

    def test_env_password_used(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment password should be used when no argument is given."""
        monkeypatch.setenv("RMQ_PASSWORD", "from-env")

        resolved = resolve_password(Settings(), interactive=False)

        assert resolved.password_value() == "from-env"

    def test_missing_password_non_interactive_raises(self) -> None:
        """Without a TTY there is no prompt: configuration error."""
        with pytest.raises(ConfigurationError, match="No password"):
            resolve_password(Settings(), interactive=False)

    def test_interactive_prompt(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """With a TTY the password should be prompted for."""
        monkeypatch.setattr("standby_verifier.config.getpass.getpass", lambda prompt: "typed")

        resolved = resolve_password(Settings(), interactive=True)

        assert resolved.password_value() == "typed"

    def test_interactive_empty_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An empty prompt answer is a configuration error."""
        monkeypatch.setattr("standby_verifier.config.getpass.getpass", lambda prompt: "")

        with pytest.raises(ConfigurationError, match="Empty password"):
            resolve_password(Settings(), interactive=True)

    def test_original_settings_unchanged(self) -> None:
        """Resolution returns a copy; the input stays untouched."""
        original = Settings()

        resolved = resolve_password(original, cli_password="x", interactive=False)

        assert original.password is None
        assert isinstance(resolved.password, SecretStr)
