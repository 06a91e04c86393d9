"""
Custom exceptions for the market data feed.

Exception hierarchy:
- FeedError (base)
  - AuthError: Credentials or 2FA rejected by the provider
  - ConnectTimeout: Socket did not open within the connect timeout
  - SocketError: WebSocket transport failures
  - DecodeError: Invalid/malformed inbound messages
  - ApiError: REST call failed or returned a failure envelope
    - QuoteLookupError: One-shot quote request failed
    - ContractNotFoundError: Symbol resolution found no matching contract
  - ConfigurationError: Invalid configuration
"""

from __future__ import annotations

from typing import Any, Optional


class FeedError(Exception):
    """Base exception for all market data feed errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class AuthError(FeedError):
    """Raised when a provider rejects credentials or the one-time code."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        step: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.provider = provider
        self.step = step
        details = details or {}
        if provider:
            details["provider"] = provider
        if step:
            details["step"] = step
        super().__init__(message, component=component, details=details)


class SocketError(FeedError):
    """Raised when the WebSocket fails to open or is lost."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        reconnect_attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.reconnect_attempt = reconnect_attempt
        details = details or {}
        if url:
            details["url"] = url
        details["reconnect_attempt"] = reconnect_attempt
        super().__init__(message, component=component, details=details)


class ConnectTimeout(SocketError):
    """Raised when no open event arrives within the connect timeout."""

    def __init__(
        self,
        message: str,
        *,
        timeout_s: Optional[float] = None,
        url: Optional[str] = None,
        reconnect_attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.timeout_s = timeout_s
        details = details or {}
        if timeout_s is not None:
            details["timeout_s"] = timeout_s
        super().__init__(
            message,
            url=url,
            reconnect_attempt=reconnect_attempt,
            component=component,
            details=details,
        )


class DecodeError(FeedError):
    """Raised when an inbound message cannot be decoded."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # Don't include raw_data in details to avoid log spam
        super().__init__(message, component=component, details=details)


class ApiError(FeedError):
    """Raised when a REST call fails or returns ``success: false``."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status: Optional[int] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.status = status
        details = details or {}
        if url:
            details["url"] = url
        if status is not None:
            details["status"] = status
        super().__init__(message, component=component, details=details)


class QuoteLookupError(ApiError):
    """Raised when a one-shot quote lookup fails."""

    def __init__(
        self,
        message: str,
        *,
        token: Optional[str] = None,
        url: Optional[str] = None,
        status: Optional[int] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.token = token
        details = details or {}
        if token:
            details["token"] = token
        super().__init__(message, url=url, status=status, component=component, details=details)


class ContractNotFoundError(ApiError):
    """Raised when symbol resolution finds no matching contract."""

    def __init__(
        self,
        message: str,
        *,
        query: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.query = query
        details = details or {}
        if query:
            details["query"] = query
        super().__init__(message, component=component, details=details)


class ConfigurationError(FeedError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)
