"""
JSON REST client for provider endpoints.

Every provider response is wrapped in the same envelope:
    {"success": true, "data": ..., "message": "..."}

The client unwraps ``data`` and raises ApiError for transport failures,
non-2xx statuses and ``success: false`` envelopes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol

import aiohttp
import orjson
from pydantic import BaseModel, ConfigDict, ValidationError

from paperfeed.feed.errors import ApiError

logger = logging.getLogger(__name__)

Params = Mapping[str, Any]
Headers = Mapping[str, str]


class ApiEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")
    success: bool
    message: Optional[str] = None
    data: Any = None


class JsonApi(Protocol):
    async def get(
        self, url: str, *, params: Optional[Params] = None, headers: Optional[Headers] = None
    ) -> Any: ...

    async def post(
        self, url: str, *, json: Optional[Params] = None, headers: Optional[Headers] = None
    ) -> Any: ...


def unwrap_envelope(body: Any, url: str, status: Optional[int] = None) -> Any:
    """Validate the provider envelope and return its ``data`` member."""
    try:
        envelope = ApiEnvelope.model_validate(body)
    except ValidationError as e:
        raise ApiError(
            "Malformed response envelope",
            url=url,
            status=status,
            component="RestClient",
        ) from e

    if not envelope.success:
        raise ApiError(
            envelope.message or "Request failed",
            url=url,
            status=status,
            component="RestClient",
        )
    return envelope.data


class RestClient:
    """
    Thin aiohttp wrapper with envelope handling.

    The aiohttp session is created lazily and must be released with close().
    """

    def __init__(
        self,
        timeout_s: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "rest",
    ) -> None:
        self._timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None
        self._name = name

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = (
                aiohttp.ClientTimeout(total=self._timeout_s)
                if self._timeout_s is not None
                else aiohttp.ClientTimeout()
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def get(
        self, url: str, *, params: Optional[Params] = None, headers: Optional[Headers] = None
    ) -> Any:
        return await self._request("GET", url, params=params, headers=headers)

    async def post(
        self, url: str, *, json: Optional[Params] = None, headers: Optional[Headers] = None
    ) -> Any:
        return await self._request("POST", url, json=json, headers=headers)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Params] = None,
        json: Optional[Params] = None,
        headers: Optional[Headers] = None,
    ) -> Any:
        req_headers = {"Accept": "application/json", **dict(headers or {})}
        body: Optional[bytes] = None
        if json is not None:
            req_headers["Content-Type"] = "application/json"
            body = orjson.dumps(dict(json))

        logger.debug(f"[{self._name}] {method} {url}")
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=dict(params) if params else None,
                data=body,
                headers=req_headers,
            ) as resp:
                raw = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ApiError(
                f"{method} request failed: {e}",
                url=url,
                component="RestClient",
            ) from e

        try:
            payload = orjson.loads(raw) if raw else None
        except orjson.JSONDecodeError as e:
            raise ApiError(
                "Response is not valid JSON",
                url=url,
                status=status,
                component="RestClient",
            ) from e

        if status >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ApiError(
                message or f"HTTP {status}",
                url=url,
                status=status,
                component="RestClient",
            )

        return unwrap_envelope(payload, url, status)

    async def close(self) -> None:
        if self._session and not self._session.closed and self._owns_session:
            await self._session.close()
        self._session = None
