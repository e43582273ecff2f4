"""Tests for settings loading and validation."""

import pytest

from smtpecho.common.config import Settings, get_settings, reload_settings
from smtpecho.common.exceptions import InvalidConfigError, MissingConfigError
from smtpecho.common.models import TLSPolicy
from smtpecho.crypto.dkim import DKIMSigner, UnsignedPolicy
from smtpecho.smtp.replier import create_replier

MINIMAL = {
    "hostname": "echo.example.org",
    "reply": {
        "from_address": "echo@example.org",
        "mail_from": "bounce@example.org",
    },
}


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "SMTP_ECHO_CONFIG_FILE",
        "SMTP_ECHO_HOSTNAME",
        "SMTP_ECHO_LISTEN_PORT",
        "SMTP_ECHO_REPLY__MAIL_FROM",
        "SMTP_ECHO_TLS_POLICY",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def write_config(tmp_path, text: str):
    path = tmp_path / "config.toml"
    path.write_text(text)
    return path


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_dict(MINIMAL)

        assert settings.listen_host == "0.0.0.0"
        assert settings.listen_port == 25
        assert settings.read_timeout == 30
        assert settings.write_timeout == 30
        assert settings.max_message_bytes == 10 * 1024 * 1024
        assert settings.delivery_port == 25
        assert settings.delivery_timeout == 120
        assert settings.tls_policy is TLSPolicy.OPPORTUNISTIC
        assert settings.dkim is None
        assert settings.logging.level == "INFO"

    def test_identity(self):
        identity = Settings.from_dict(
            {**MINIMAL, "reply": {**MINIMAL["reply"], "from_name": "Echo"}}
        ).identity()

        assert identity.hostname == "echo.example.org"
        assert identity.from_address == "echo@example.org"
        assert identity.mail_from == "bounce@example.org"
        assert identity.from_name == "Echo"

    def test_missing_hostname(self):
        with pytest.raises(MissingConfigError) as exc_info:
            Settings.from_dict({"reply": MINIMAL["reply"]})

        assert exc_info.value.config_key == "hostname"

    def test_invalid_from_address(self):
        with pytest.raises(InvalidConfigError) as exc_info:
            Settings.from_dict(
                {**MINIMAL, "reply": {**MINIMAL["reply"], "from_address": "nobody"}}
            )

        assert exc_info.value.config_key == "reply.from_address"

    def test_invalid_port(self):
        with pytest.raises(InvalidConfigError):
            Settings.from_dict({**MINIMAL, "listen_port": 70000})

    def test_invalid_tls_policy(self):
        with pytest.raises(InvalidConfigError):
            Settings.from_dict({**MINIMAL, "tls_policy": "sometimes"})

    def test_dkim_key_must_exist(self, tmp_path):
        with pytest.raises(InvalidConfigError) as exc_info:
            Settings.from_dict(
                {
                    **MINIMAL,
                    "dkim": {
                        "domain": "example.org",
                        "selector": "sel1",
                        "private_key_path": str(tmp_path / "missing.pem"),
                    },
                }
            )

        assert exc_info.value.config_key == "dkim.private_key_path"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SMTP_ECHO_LISTEN_PORT", "2525")
        monkeypatch.setenv("SMTP_ECHO_TLS_POLICY", "require")

        settings = Settings.from_dict(MINIMAL)

        assert settings.listen_port == 2525
        assert settings.tls_policy is TLSPolicy.REQUIRE


class TestTomlLoading:
    def test_from_toml(self, tmp_path, rsa_key_file):
        path = write_config(
            tmp_path,
            f"""
hostname = "echo.example.org"
listen_port = 2525
tls_policy = "require"

[reply]
from_address = "echo@example.org"
mail_from = "bounce@example.org"

[dkim]
domain = "example.org"
selector = "sel1"
private_key_path = "{rsa_key_file}"

[logging]
level = "debug"
""",
        )
        settings = Settings.from_toml(path)

        assert settings.listen_port == 2525
        assert settings.tls_policy is TLSPolicy.REQUIRE
        assert settings.dkim.selector == "sel1"
        assert settings.logging.level == "DEBUG"

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = write_config(
            tmp_path,
            """
hostname = "file.example.org"
listen_port = 2525

[reply]
from_address = "echo@example.org"
mail_from = "bounce@example.org"
""",
        )
        monkeypatch.setenv("SMTP_ECHO_HOSTNAME", "env.example.org")
        monkeypatch.setenv("SMTP_ECHO_REPLY__MAIL_FROM", "env-bounce@example.org")

        settings = Settings.from_toml(path)

        assert settings.hostname == "env.example.org"
        assert settings.reply.mail_from == "env-bounce@example.org"
        assert settings.reply.from_address == "echo@example.org"
        assert settings.listen_port == 2525

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingConfigError):
            Settings.from_toml(tmp_path / "nope.toml")

    def test_malformed_file(self, tmp_path):
        path = write_config(tmp_path, "hostname = \n")

        with pytest.raises(InvalidConfigError):
            Settings.from_toml(path)

    def test_get_settings_from_environment_file(self, tmp_path, monkeypatch):
        path = write_config(
            tmp_path,
            """
hostname = "echo.example.org"

[reply]
from_address = "echo@example.org"
mail_from = "bounce@example.org"
""",
        )
        monkeypatch.setenv("SMTP_ECHO_CONFIG_FILE", str(path))

        settings = reload_settings()

        assert settings.hostname == "echo.example.org"
        assert get_settings(None) is settings


class TestCreateReplier:
    def test_unsigned(self):
        replier = create_replier(Settings.from_dict(MINIMAL))

        assert isinstance(replier.signer, UnsignedPolicy)
        assert replier.transport.mail_from == "bounce@example.org"
        assert replier.transport.dialer.port == 25

    def test_signed(self, rsa_key_file):
        settings = Settings.from_dict(
            {
                **MINIMAL,
                "dkim": {
                    "domain": "example.org",
                    "selector": "sel1",
                    "private_key_path": str(rsa_key_file),
                },
            }
        )

        assert isinstance(create_replier(settings).signer, DKIMSigner)
