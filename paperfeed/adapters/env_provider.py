from __future__ import annotations

import logging
import os
from typing import Mapping

from paperfeed.ports.secrets_provider import SecretsProvider

_LOGGER = logging.getLogger(__name__)


class MissingSecretError(ValueError):
    """
    Raised when a logical secret cannot be resolved from the environment.
    """

    def __init__(self, secret_name: str) -> None:
        super().__init__(secret_name)
        self.secret_name = secret_name

    def __str__(self) -> str:
        return f"Secret '{self.secret_name}' is unavailable"


class EnvSecretsProvider(SecretsProvider):
    def __init__(
        self,
        prefix: str,
        allowed: dict[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """
        Configure lookup rules for environment-backed secrets.
        """

        if not prefix:
            raise ValueError("Environment prefix must be a non-empty string")
        # environment variable prefix, prepended to every suffix
        self._prefix = prefix
        self._allowed = dict(allowed or {})
        # None means "read os.environ at lookup time"
        self._environ = environ

    @classmethod
    def for_provider(
        cls,
        provider: str,
        allowed: dict[str, str],
        environ: Mapping[str, str] | None = None,
    ) -> EnvSecretsProvider:
        """Secrets under a provider prefix, e.g. KOTAK_USER_ID or DHAN_CLIENT_ID."""
        return cls(prefix=f"{provider.upper()}_", allowed=allowed, environ=environ)

    def get(self, secret_name: str) -> str:
        """Resolve a logical secret name to a concrete environment variable value."""

        if secret_name not in self._allowed:
            raise MissingSecretError(secret_name)

        env = os.environ if self._environ is None else self._environ
        env_var = f"{self._prefix}{self._allowed[secret_name]}"
        value = env.get(env_var)
        if not value:
            raise MissingSecretError(secret_name)

        _LOGGER.debug(
            "secret_resolved",
            extra={
                "event": "secret_resolved",
                "secret_name": secret_name,
                "source": "env",
            },
        )
        return value
