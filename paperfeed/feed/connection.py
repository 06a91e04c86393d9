"""
Provider WebSocket connection.

Owns the socket and the Session. Lifecycle decisions come from the pure
state machine in ``paperfeed.feed.machine``; this module only performs the
effects it asks for:
- Socket open with a connect timeout, re-authenticating when needed
- Heartbeat frames while open
- Fixed-delay reconnection, then exhaustion and the switch to mock data
- Resubscription of every registered token on each open
- Connection-level metrics and health snapshot
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from paperfeed.adapters.env_provider import MissingSecretError
from paperfeed.feed.auth import ProviderAuthenticator
from paperfeed.feed.config import SubscribeMode
from paperfeed.feed.context import FeedContext
from paperfeed.feed.errors import AuthError, ConnectTimeout, FeedError, QuoteLookupError, SocketError
from paperfeed.feed.machine import Effect, FeedEvent, MachineState, transition
from paperfeed.feed.result import Err, Ok, QuoteResult
from paperfeed.feed.topics import (
    T_LOG,
    T_MARKET_DATA_CONNECTED,
    T_MARKET_DATA_DISCONNECTED,
    T_MARKET_DATA_ERROR,
)
from paperfeed.feed.transport import Transport, TransportFactory, open_aiohttp_transport
from paperfeed.feed.types import (
    ConnectionHealth,
    ConnectionMetrics,
    ConnectionState,
    Credential,
    LogEvent,
    Session,
)

logger = logging.getLogger(__name__)

CredentialLoader = Callable[[], Credential]
MessageHandler = Callable[[str], Awaitable[Any]]


class FeedConnection:
    """
    Manages the provider WebSocket with automatic reconnection.

    The connection does NOT parse messages; raw text frames are handed to
    ``on_message`` (the MessageNormalizer).

    All state changes go through one driver task consuming an event queue,
    so transitions are applied strictly in order.

    Usage:
        connection = FeedConnection(ctx, authenticator, loader, registry.tokens,
                                    normalizer.handle, registry.switch_to_mock)
        await connection.connect()
        # ... later ...
        await connection.close()
    """

    def __init__(
        self,
        ctx: FeedContext,
        authenticator: ProviderAuthenticator,
        credential_loader: CredentialLoader,
        tokens_provider: Callable[[], Iterable[str]],
        on_message: MessageHandler,
        on_exhausted: Callable[[], Awaitable[None]],
        transport_factory: TransportFactory = open_aiohttp_transport,
        name: str = "feed_ws",
    ) -> None:
        self._ctx = ctx
        self._provider = ctx.provider
        self._config = ctx.config.connection
        self._authenticator = authenticator
        self._credential_loader = credential_loader
        self._tokens_provider = tokens_provider
        self._on_message = on_message
        self._on_exhausted = on_exhausted
        self._transport_factory = transport_factory
        self._name = name

        # State
        self._machine = MachineState()
        self._session: Optional[Session] = None
        self._transport: Optional[Transport] = None
        self._events: asyncio.Queue[FeedEvent] = asyncio.Queue()
        self._connect_waiter: Optional[asyncio.Future[None]] = None
        self._connect_error: Optional[BaseException] = None

        # Tasks
        self._driver_task: Optional[asyncio.Task[None]] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None

    @property
    def state(self) -> ConnectionState:
        return self._machine.phase

    @property
    def is_open(self) -> bool:
        return self._machine.phase == ConnectionState.OPEN

    @property
    def reconnect_attempt(self) -> int:
        return self._machine.attempts

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def metrics(self) -> ConnectionMetrics:
        return self._metrics

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Authenticate if needed and open the socket.

        Raises:
            AuthError: If authentication fails
            ConnectTimeout: If the socket does not open in time
            SocketError: If the handshake fails or the feed is exhausted
        """
        phase = self._machine.phase
        if phase == ConnectionState.OPEN:
            return
        if phase in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            logger.warning(f"[{self._name}] Already connecting")
            return
        if phase == ConnectionState.EXHAUSTED:
            raise SocketError(
                "Reconnection attempts exhausted",
                url=self._provider.ws_url,
                reconnect_attempt=self._machine.attempts,
                component="FeedConnection",
            )

        self._ensure_driver()
        self._connect_waiter = asyncio.get_running_loop().create_future()
        self._post(FeedEvent.CONNECT_REQUESTED)
        await self._connect_waiter

    async def ensure_session(self) -> Session:
        """
        Return a valid Session, authenticating only when missing or expired.

        Raises:
            AuthError: If credentials are missing or authentication fails
        """
        if self._session is not None and not self._session.is_expired():
            return self._session

        if self._session is not None:
            logger.info(f"[{self._name}] Session expired, re-authenticating")
        try:
            credential = self._credential_loader()
        except MissingSecretError as e:
            raise AuthError(
                f"Missing credentials: {e}",
                provider=self._provider.name,
                step="credentials",
                component="FeedConnection",
            ) from e

        self._session = await self._authenticator.authenticate(self._provider, credential)
        return self._session

    async def request_quote(self, token: str) -> QuoteResult:
        """One-shot REST quote. Never raises."""
        try:
            session = await self.ensure_session()
            price = await self._provider.fetch_quote(self._ctx.rest, session, token)
        except AuthError as e:
            return Err("auth", str(e))
        except QuoteLookupError as e:
            return Err("quote_lookup", str(e))
        self._ctx.cache.update(token, price)
        return Ok(price)

    async def send_subscribe(
        self, tokens: Sequence[str], mode: Optional[SubscribeMode] = None
    ) -> None:
        """
        Raises:
            SocketError: If the socket is not open or the send fails
        """
        frame = self._provider.subscribe_frame(tokens, mode or self._ctx.config.subscribe_mode)
        await self._send(frame)
        logger.debug(f"[{self._name}] Subscribed {list(tokens)}")

    async def send_unsubscribe(self, tokens: Sequence[str]) -> None:
        await self._send(self._provider.unsubscribe_frame(tokens))
        logger.debug(f"[{self._name}] Unsubscribed {list(tokens)}")

    async def close(self) -> None:
        """Close the socket and stop all background tasks."""
        if self._driver_task is None:
            return

        logger.info(f"[{self._name}] Closing connection")
        self._post(FeedEvent.CLOSE_REQUESTED)
        await self._events.join()

        await self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel(self._driver_task)
        self._driver_task = None
        logger.info(f"[{self._name}] Connection closed")

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        return ConnectionHealth(
            state=self._machine.phase,
            url=self._provider.ws_url,
            provider=self._provider.provider,
            connected_since=self._connected_at if self.is_open else None,
            last_message_at=self._last_message_at,
            reconnect_attempt=self._machine.attempts,
            reconnect_count=self._metrics.reconnections,
            message_count=self._metrics.messages_received,
            error_count=self._metrics.errors,
            last_error=self._last_error,
            last_error_at=self._last_error_at,
            session_expires_at=self._session.expires_at if self._session else None,
        )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _ensure_driver(self) -> None:
        if self._driver_task is None or self._driver_task.done():
            self._driver_task = asyncio.create_task(self._drive(), name=f"{self._name}_driver")

    def _post(self, event: FeedEvent) -> None:
        self._events.put_nowait(event)

    async def _drive(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._apply(event)
            except Exception as e:
                logger.error(f"[{self._name}] Failed to apply {event.value}: {e}", exc_info=True)
            finally:
                self._events.task_done()

    async def _apply(self, event: FeedEvent) -> None:
        old = self._machine
        result = transition(old, event, self._config.max_reconnect_attempts)
        self._machine = result.state

        if old.phase != result.state.phase:
            logger.info(
                f"[{self._name}] State: {old.phase.value} -> {result.state.phase.value} "
                f"(event={event.value}, attempt={result.state.attempts})"
            )

        for effect in result.effects:
            await self._perform(effect)

        self._settle_waiter(old.phase, event)

    def _settle_waiter(self, old_phase: ConnectionState, event: FeedEvent) -> None:
        waiter = self._connect_waiter
        if waiter is None or waiter.done():
            return
        phase = self._machine.phase
        if phase == ConnectionState.OPEN:
            waiter.set_result(None)
        elif old_phase == ConnectionState.CONNECTING and phase == ConnectionState.DISCONNECTED:
            error = self._connect_error or SocketError(
                f"Connect aborted ({event.value})",
                url=self._provider.ws_url,
                component="FeedConnection",
            )
            waiter.set_exception(error)
        else:
            return
        self._connect_waiter = None
        self._connect_error = None

    async def _perform(self, effect: Effect) -> None:
        if effect == Effect.OPEN_SOCKET:
            await self._open_socket()
        elif effect == Effect.START_RECEIVER:
            transport = self._transport
            self._receive_task = asyncio.create_task(
                self._receive_loop(transport), name=f"{self._name}_receive"
            )
        elif effect == Effect.START_HEARTBEAT:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(), name=f"{self._name}_heartbeat"
            )
        elif effect == Effect.STOP_HEARTBEAT:
            await self._cancel(self._heartbeat_task)
            self._heartbeat_task = None
        elif effect == Effect.RESUBSCRIBE_ALL:
            await self._resubscribe_all()
        elif effect == Effect.SUBSCRIBE_INDICES:
            await self._subscribe_indices()
        elif effect == Effect.NOTIFY_CONNECTED:
            await self._notify_connected()
        elif effect == Effect.NOTIFY_DISCONNECTED:
            await self._notify_disconnected()
        elif effect == Effect.SCHEDULE_RECONNECT:
            self._schedule_reconnect()
        elif effect == Effect.RELEASE_SOCKET:
            await self._release_socket()
        elif effect == Effect.SWITCH_TO_MOCK:
            await self._switch_to_mock()

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    async def _open_socket(self) -> None:
        url = self._provider.ws_url
        timeout_s = self._config.connect_timeout_s
        try:
            session = await self.ensure_session()
            logger.info(f"[{self._name}] Connecting to {url}")
            try:
                transport = await asyncio.wait_for(
                    self._transport_factory(url, self._provider.auth_headers(session), timeout_s),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError as e:
                raise ConnectTimeout(
                    f"WebSocket did not open within {timeout_s}s",
                    timeout_s=timeout_s,
                    url=url,
                    reconnect_attempt=self._machine.attempts,
                    component="FeedConnection",
                ) from e
        except FeedError as e:
            self._record_error(e)
            self._connect_error = e
            logger.warning(f"[{self._name}] Connection failed: {e}")
            self._post(FeedEvent.CONNECT_FAILED)
            return

        self._transport = transport
        self._connected_at = datetime.now(timezone.utc)
        self._metrics.connected_at = time.monotonic()
        logger.info(f"[{self._name}] Connected successfully")
        self._post(FeedEvent.OPENED)

    async def _receive_loop(self, transport: Optional[Transport]) -> None:
        if transport is None:
            return

        try:
            async for raw in transport.messages():
                self._last_message_at = datetime.now(timezone.utc)
                self._metrics.last_message_at = time.monotonic()
                self._metrics.messages_received += 1
                self._metrics.bytes_received += len(raw)
                try:
                    await self._on_message(raw)
                except Exception as e:
                    logger.error(f"[{self._name}] Message handling error: {e}")
                    self._metrics.errors += 1
        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except SocketError as e:
            logger.error(f"[{self._name}] Receive loop error: {e}")
            self._record_error(e)
            if transport is self._transport:
                await self._ctx.broadcaster.emit(
                    T_MARKET_DATA_ERROR,
                    {
                        "provider": self._provider.name,
                        "reason": "socket_error",
                        "error": e.args[0],
                    },
                )

        if transport is self._transport:
            logger.info(f"[{self._name}] Connection lost")
            self._post(FeedEvent.CLOSED)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval_s)
            try:
                await self._send(self._provider.heartbeat_frame())
                self._metrics.heartbeats_sent += 1
            except SocketError as e:
                logger.warning(f"[{self._name}] Heartbeat failed: {e}")

    async def _resubscribe_all(self) -> None:
        tokens = list(self._tokens_provider())
        for token in tokens:
            try:
                await self.send_subscribe([token])
            except SocketError as e:
                logger.warning(f"[{self._name}] Resubscribe failed for {token}: {e}")
        if tokens:
            logger.info(f"[{self._name}] Resubscribed {len(tokens)} token(s)")

    async def _subscribe_indices(self) -> None:
        indices = list(self._ctx.config.index_tokens)
        if not indices:
            return
        try:
            await self.send_subscribe(indices, self._ctx.config.index_mode)
        except SocketError as e:
            logger.warning(f"[{self._name}] Index subscription failed: {e}")

    async def _notify_connected(self) -> None:
        await self._ctx.broadcaster.emit(
            T_MARKET_DATA_CONNECTED,
            {"provider": self._provider.name, "url": self._provider.ws_url},
        )
        await self._emit_log(
            "INFO",
            "Market data connected",
            {"event": "FEED_CONNECTED", "provider": self._provider.name},
        )

    async def _notify_disconnected(self) -> None:
        await self._ctx.broadcaster.emit(
            T_MARKET_DATA_DISCONNECTED,
            {"provider": self._provider.name, "reconnect_attempt": self._machine.attempts},
        )
        await self._emit_log(
            "WARNING",
            "Market data disconnected",
            {"event": "FEED_DISCONNECTED", "provider": self._provider.name},
        )

    def _schedule_reconnect(self) -> None:
        delay = self._config.reconnect_delay_s
        attempt = self._machine.attempts
        logger.warning(
            f"[{self._name}] Reconnect attempt {attempt}/"
            f"{self._config.max_reconnect_attempts} in {delay:.1f}s"
        )
        self._metrics.reconnections += 1
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name=f"{self._name}_reconnect"
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._post(FeedEvent.RECONNECT_DUE)

    async def _release_socket(self) -> None:
        await self._cancel(self._receive_task)
        self._receive_task = None

        transport = self._transport
        self._transport = None
        self._connected_at = None
        if transport is not None:
            try:
                await transport.close()
            except (SocketError, OSError) as e:
                logger.warning(f"[{self._name}] Error closing socket: {e}")

    async def _switch_to_mock(self) -> None:
        logger.error(
            f"[{self._name}] Reconnection exhausted after {self._machine.attempts} attempts, "
            "switching to mock data"
        )
        await self._ctx.broadcaster.emit(
            T_MARKET_DATA_ERROR,
            {
                "provider": self._provider.name,
                "reason": "reconnect_exhausted",
                "attempts": self._machine.attempts,
                "error": self._last_error,
            },
        )
        await self._emit_log(
            "ERROR",
            "Reconnection exhausted, switched to mock data",
            {"event": "FEED_EXHAUSTED", "attempts": self._machine.attempts},
        )
        await self._on_exhausted()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._transport is None or not self.is_open:
            raise SocketError(
                "WebSocket is not open",
                url=self._provider.ws_url,
                component="FeedConnection",
            )
        await self._transport.send(frame)
        self._metrics.frames_sent += 1

    def _record_error(self, error: BaseException) -> None:
        self._metrics.errors += 1
        self._last_error = str(error)
        self._last_error_at = datetime.now(timezone.utc)

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _emit_log(
        self,
        level: str,
        msg: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        """Publish a LogEvent for connection state changes."""
        await self._ctx.broadcaster.emit(
            T_LOG,
            LogEvent(level=level, component=self._name, msg=msg, payload=payload or {}),
        )
