"""
Provider authentication.

Turns a Credential into a Session by running the provider's login steps over
REST. No sockets, no retry: a failed step raises AuthError immediately.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from paperfeed.adapters.env_provider import EnvSecretsProvider
from paperfeed.feed.errors import ApiError, AuthError
from paperfeed.feed.providers import FeedProvider
from paperfeed.feed.rest import JsonApi
from paperfeed.feed.types import Credential, Provider, Session
from paperfeed.ports.secrets_provider import SecretsProvider

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# logical secret name -> environment suffix, per provider
PROVIDER_SECRETS: dict[Provider, dict[str, str]] = {
    Provider.KOTAK: {
        "user_id": "USER_ID",
        "password": "PASSWORD",
        "totp_code": "TOTP_CODE",
    },
    Provider.DHAN: {
        "client_id": "CLIENT_ID",
        "client_secret": "CLIENT_SECRET",
    },
}


def env_secrets(
    provider: Provider, environ: Optional[Mapping[str, str]] = None
) -> EnvSecretsProvider:
    """Environment secrets for ``provider``, e.g. KOTAK_USER_ID."""
    return EnvSecretsProvider.for_provider(
        provider.value, PROVIDER_SECRETS[provider], environ=environ
    )


def load_credential(provider: Provider, secrets: SecretsProvider) -> Credential:
    """
    Read the credential for ``provider``. Raises MissingSecretError if any
    required secret is absent.
    """
    values = {name: secrets.get(name) for name in PROVIDER_SECRETS[provider]}
    logger.debug(
        "credential_loaded",
        extra={"event": "credential_loaded", "provider": provider.value},
    )
    return Credential(provider=provider, **values)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderAuthenticator:
    """
    Authenticates against a provider and stamps the session expiry.

    Expiry is always ``now + provider.session_ttl``; any expiry the server
    reports is ignored.
    """

    def __init__(self, rest: JsonApi, clock: Optional[Clock] = None) -> None:
        self._rest = rest
        self._clock = clock or _utcnow

    async def authenticate(self, provider: FeedProvider, credential: Credential) -> Session:
        """
        Raises:
            AuthError: If any login step fails or returns ``success: false``
        """
        if credential.provider != provider.provider:
            raise AuthError(
                "Credential does not belong to the configured provider",
                provider=provider.name,
                component="ProviderAuthenticator",
            )

        logger.info(f"[auth] Authenticating with {provider.name}")
        try:
            access_token = await provider.authenticate(self._rest, credential)
        except ApiError as e:
            logger.error(f"[auth] {provider.name} authentication failed: {e.args[0]}")
            raise AuthError(
                f"{provider.name} authentication failed: {e.args[0]}",
                provider=provider.name,
                step=e.url,
                component="ProviderAuthenticator",
            ) from e

        session = Session(
            provider=provider.provider,
            access_token=access_token,
            expires_at=self._clock() + provider.session_ttl,
            client_id=credential.client_id,
        )
        logger.info(
            f"[auth] {provider.name} session valid until {session.expires_at.isoformat()}"
        )
        return session
