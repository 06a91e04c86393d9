"""
Unit tests for feed types and errors.
"""

from datetime import datetime, timedelta, timezone

from paperfeed.feed.errors import (
    ApiError,
    AuthError,
    ConnectTimeout,
    ContractNotFoundError,
    DecodeError,
    FeedError,
    QuoteLookupError,
    SocketError,
)
from paperfeed.feed.types import (
    ConnectionHealth,
    ConnectionState,
    Credential,
    DepthLevel,
    DepthSnapshot,
    LogEvent,
    Provider,
    Session,
    Tick,
    TickSource,
)


class TestSession:
    """Tests for Session expiry."""

    def test_not_expired_before_deadline(self) -> None:
        now = datetime(2024, 1, 25, 9, 15, tzinfo=timezone.utc)
        session = Session(Provider.KOTAK, "tok", expires_at=now + timedelta(hours=8))
        assert session.is_expired(now) is False

    def test_expired_at_deadline(self) -> None:
        now = datetime(2024, 1, 25, 9, 15, tzinfo=timezone.utc)
        session = Session(Provider.KOTAK, "tok", expires_at=now)
        assert session.is_expired(now) is True

    def test_default_clock(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        assert Session(Provider.DHAN, "tok", expires_at=past).is_expired() is True


class TestCredential:
    def test_repr_hides_secret_material(self) -> None:
        cred = Credential(Provider.KOTAK, user_id="AB1234", password="pw", totp_code="999111")
        text = repr(cred)
        assert "pw" not in text
        assert "999111" not in text
        assert "kotak" in text


class TestTick:
    """Tests for Tick."""

    def test_payload_uses_short_names(self) -> None:
        tick = Tick(
            token="43854",
            last_price=152.35,
            last_quantity=75,
            last_trade_time="14:32:05",
            volume=1250000,
            open_interest=845000,
        )
        assert tick.to_payload() == {
            "token": "43854",
            "ltp": 152.35,
            "ltq": 75,
            "ltt": "14:32:05",
            "vol": 1250000,
            "oi": 845000,
        }

    def test_default_source_is_live(self) -> None:
        assert Tick(token="1", last_price=1.0).source == TickSource.LIVE


class TestDepthSnapshot:
    """Tests for DepthSnapshot properties."""

    def test_best_prices_and_spread(self) -> None:
        depth = DepthSnapshot(
            token="43854",
            bids=(DepthLevel(152.30, 150), DepthLevel(152.25, 300)),
            asks=(DepthLevel(152.40, 75),),
        )
        assert depth.best_bid == 152.30
        assert depth.best_ask == 152.40
        assert abs(depth.spread - 0.10) < 1e-9

    def test_empty_side(self) -> None:
        depth = DepthSnapshot(token="43854", bids=(), asks=(DepthLevel(10.0, 1),))
        assert depth.best_bid is None
        assert depth.spread is None


class TestConnectionHealth:
    """Tests for ConnectionHealth."""

    def test_healthy_only_when_open(self) -> None:
        health = ConnectionHealth(state=ConnectionState.OPEN, url="wss://x", provider=Provider.KOTAK)
        assert health.is_healthy is True
        health.state = ConnectionState.RECONNECTING
        assert health.is_healthy is False

    def test_uptime_none_when_not_connected(self) -> None:
        health = ConnectionHealth(state=ConnectionState.DISCONNECTED, url="wss://x", provider=Provider.DHAN)
        assert health.uptime_s is None
        assert health.seconds_since_message is None

    def test_uptime(self) -> None:
        health = ConnectionHealth(
            state=ConnectionState.OPEN,
            url="wss://x",
            provider=Provider.KOTAK,
            connected_since=datetime.now(timezone.utc) - timedelta(seconds=60),
        )
        assert 59 <= health.uptime_s <= 61


class TestLogEvent:
    def test_wall_time_is_iso_utc(self) -> None:
        event = LogEvent(level="INFO", component="test", msg="hello")
        assert datetime.fromisoformat(event.wall_time).tzinfo is not None
        assert event.payload == {}


class TestErrors:
    """Tests for the error hierarchy."""

    def test_str_includes_component_and_details(self) -> None:
        err = ApiError("boom", url="https://api/x", status=500, component="RestClient")
        text = str(err)
        assert text.startswith("boom")
        assert "[component=RestClient]" in text
        assert "'status': 500" in text

    def test_plain_message(self) -> None:
        assert str(FeedError("plain")) == "plain"

    def test_hierarchy(self) -> None:
        assert issubclass(ConnectTimeout, SocketError)
        assert issubclass(QuoteLookupError, ApiError)
        assert issubclass(ContractNotFoundError, ApiError)
        for cls in (AuthError, SocketError, DecodeError, ApiError):
            assert issubclass(cls, FeedError)

    def test_auth_error_details(self) -> None:
        err = AuthError("rejected", provider="kotak", step="2fa")
        assert err.details == {"provider": "kotak", "step": "2fa"}

    def test_decode_error_keeps_raw_out_of_details(self) -> None:
        err = DecodeError("bad", raw_data="{...}", expected_type="tick")
        assert err.raw_data == "{...}"
        assert "raw_data" not in err.details

    def test_connect_timeout_fields(self) -> None:
        err = ConnectTimeout("slow", timeout_s=10.0, url="wss://x")
        assert err.timeout_s == 10.0
        assert err.details["timeout_s"] == 10.0
        assert err.details["url"] == "wss://x"
