import logging
import subprocess
import sys

import pytest

from paperfeed.adapters.env_provider import EnvSecretsProvider, MissingSecretError

KOTAK_SECRETS = {"user_id": "USER_ID", "password": "PASSWORD", "totp_code": "TOTP_CODE"}
DHAN_SECRETS = {"client_id": "CLIENT_ID", "client_secret": "CLIENT_SECRET"}


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    # Keep test logging deterministic and avoid leaking handlers between tests.
    logging.getLogger("paperfeed.adapters.env_provider").handlers = []


def test_adapter_imports_standalone():
    # fresh interpreter, nothing from paperfeed.feed preloaded
    result = subprocess.run(
        [sys.executable, "-c", "import paperfeed.adapters.env_provider"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0, result.stderr


def test_get_returns_env_value(monkeypatch):
    # modify environment variables
    monkeypatch.setenv("KOTAK_USER_ID", "AB1234")

    provider = EnvSecretsProvider.for_provider("kotak", KOTAK_SECRETS)

    assert provider.get("user_id") == "AB1234"


def test_missing_secret_raises_for_unknown_name():
    provider = EnvSecretsProvider.for_provider(
        "kotak", KOTAK_SECRETS, environ={"KOTAK_USER_ID": "AB1234"}
    )

    with pytest.raises(MissingSecretError) as exc:
        provider.get("client_secret")

    assert "client_secret" in str(exc.value)


def test_missing_secret_raises_when_env_absent():
    provider = EnvSecretsProvider.for_provider("dhan", DHAN_SECRETS, environ={})

    with pytest.raises(MissingSecretError) as exc:
        provider.get("client_id")

    assert "client_id" in str(exc.value)


def test_empty_value_counts_as_missing():
    provider = EnvSecretsProvider.for_provider(
        "dhan", DHAN_SECRETS, environ={"DHAN_CLIENT_ID": ""}
    )

    with pytest.raises(MissingSecretError):
        provider.get("client_id")


def test_custom_prefix_and_allowlist():
    provider = EnvSecretsProvider(
        prefix="MY_",
        allowed={"app_token": "APP_TOKEN"},
        environ={"MY_APP_TOKEN": "token-123"},
    )

    assert provider.get("app_token") == "token-123"


def test_empty_prefix_rejected():
    with pytest.raises(ValueError):
        EnvSecretsProvider(prefix="")


def test_lookup_logs_structured_event(caplog):
    provider = EnvSecretsProvider.for_provider(
        "kotak", KOTAK_SECRETS, environ={"KOTAK_PASSWORD": "pw"}
    )

    with caplog.at_level(logging.DEBUG, logger="paperfeed.adapters.env_provider"):
        provider.get("password")

    records = [r for r in caplog.records if getattr(r, "event", None) == "secret_resolved"]
    assert len(records) == 1
    assert records[0].secret_name == "password"
    assert "pw" not in records[0].getMessage()
