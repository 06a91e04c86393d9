"""paperfeed CLI entrypoint.

Subcommands: watch, search, history.

Configuration comes from the environment (see ``FeedConfig.from_env``);
``--provider`` and ``--mock`` override MARKET_DATA_PROVIDER and USE_MOCK_DATA.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import statistics
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

import orjson
import polars as pl

from paperfeed.feed.config import FeedConfig
from paperfeed.feed.errors import FeedError
from paperfeed.feed.manager import MarketDataManager
from paperfeed.feed.providers import INTERVALS
from paperfeed.feed.types import HistoricalCandle

logger = logging.getLogger(__name__)

DEFAULT_TOKENS = "43854,43855"


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="paperfeed")
    sub = p.add_subparsers(dest="command", required=True)

    def add_common(sp: argparse.ArgumentParser) -> None:
        """Add arguments shared across all subcommands."""
        sp.add_argument("--provider", choices=("kotak", "dhan"), help="Market data provider")
        sp.add_argument("--mock", action="store_true", help="Force synthetic prices")
        sp.add_argument("--log-level", default="INFO", help="Logging level")

    watch = sub.add_parser("watch", help="Stream prices for tokens")
    add_common(watch)
    watch.add_argument("--tokens", default=DEFAULT_TOKENS, help="Comma-separated tokens")
    watch.add_argument("--duration", type=float, default=60.0, help="Seconds to watch")
    watch.add_argument("--save", type=Path, help="Write collected updates as JSON")

    search = sub.add_parser("search", help="Search contracts")
    add_common(search)
    search.add_argument("--query", default="NIFTY 24000 CE", help='e.g. "NIFTY 24000 CE"')

    history = sub.add_parser("history", help="Fetch historical candles")
    add_common(history)
    history.add_argument("--token", default="43854")
    history.add_argument("--interval", choices=INTERVALS, default="day")
    history.add_argument("--from", dest="start", type=date.fromisoformat, help="YYYY-MM-DD")
    history.add_argument("--to", dest="end", type=date.fromisoformat, help="YYYY-MM-DD")
    history.add_argument("--out", type=Path, help="Write candles as Parquet")
    return p


def _config_from_args(
    args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None
) -> FeedConfig:
    env = dict(os.environ if environ is None else environ)
    if args.provider:
        env["MARKET_DATA_PROVIDER"] = args.provider
    if args.mock:
        env["USE_MOCK_DATA"] = "true"
    return FeedConfig.from_env(env)


def summarize(prices: list[float]) -> dict[str, float]:
    """First/last/min/max/avg of a non-empty price series."""
    return {
        "first": prices[0],
        "last": prices[-1],
        "min": min(prices),
        "max": max(prices),
        "avg": statistics.fmean(prices),
    }


async def run_watch(
    manager: MarketDataManager,
    tokens: list[str],
    duration_s: float,
    save: Optional[Path] = None,
) -> dict[str, list[dict[str, Any]]]:
    """Subscribe to ``tokens`` for ``duration_s`` seconds and print updates."""
    updates: dict[str, list[dict[str, Any]]] = {token: [] for token in tokens}

    def make_callback(token: str):
        async def on_price(price: float) -> None:
            ts = datetime.now(timezone.utc).isoformat()
            updates[token].append({"timestamp": ts, "price": price})
            print(f"[{ts}] {token}: {price:.2f}")

        return on_price

    await manager.initialize()
    print(f"Watching {', '.join(tokens)} for {duration_s:g}s (mode={manager.get_stats()['mode']})")
    try:
        for token in tokens:
            await manager.subscribe(token, make_callback(token))
        await asyncio.sleep(duration_s)
        for token in tokens:
            await manager.unsubscribe(token)
    finally:
        await manager.stop()

    for token, rows in updates.items():
        if not rows:
            print(f"{token}: no updates")
            continue
        s = summarize([row["price"] for row in rows])
        print(
            f"{token}: {len(rows)} updates, first {s['first']:.2f}, last {s['last']:.2f}, "
            f"min {s['min']:.2f}, max {s['max']:.2f}, avg {s['avg']:.2f}"
        )

    if save is not None:
        save.parent.mkdir(parents=True, exist_ok=True)
        save.write_bytes(orjson.dumps(updates, option=orjson.OPT_INDENT_2))
        print(f"Saved updates to {save}")
    return updates


async def run_search(manager: MarketDataManager, query: str) -> int:
    await manager.initialize()
    try:
        contracts = await manager.search_contracts(query)
    finally:
        await manager.stop()

    if not contracts:
        print("No contracts found. Try a different search query.")
        return 1

    print(f"{'Token':<9}| {'Symbol':<22}| {'Strike':<8}| {'Option':<7}| {'Expiry':<11}| Exchange")
    for c in contracts:
        expiry = c.expiry.isoformat() if c.expiry else "N/A"
        print(
            f"{c.token:<9}| {c.symbol:<22}| {c.strike:<8g}| {c.option_type:<7}| "
            f"{expiry:<11}| {c.exchange}"
        )
    return 0


def candles_frame(candles: list[HistoricalCandle]) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "timestamp": [c.timestamp for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        },
        schema={
            "timestamp": pl.Datetime(time_unit="ms", time_zone="UTC"),
            "open": pl.Float64,
            "high": pl.Float64,
            "low": pl.Float64,
            "close": pl.Float64,
            "volume": pl.Float64,
        },
    )


def write_parquet(df: pl.DataFrame, out_fp: Path) -> None:
    """Write via a temp file and rename, so readers never see a partial file."""
    out_fp.parent.mkdir(parents=True, exist_ok=True)
    tmp_fp = out_fp.with_suffix(out_fp.suffix + ".tmp")
    df.write_parquet(str(tmp_fp), compression="zstd")
    tmp_fp.replace(out_fp)


async def run_history(
    manager: MarketDataManager,
    token: str,
    interval: str,
    start: date,
    end: date,
    out: Optional[Path] = None,
) -> int:
    await manager.initialize()
    try:
        candles = await manager.fetch_historical(token, interval, start, end)
    finally:
        await manager.stop()

    print(f"Fetched {len(candles)} {interval} candle(s) for {token} ({start} to {end})")
    if not candles:
        return 1

    df = candles_frame(candles)
    closes = df["close"]
    print(df.head(5))
    print(
        f"close min {closes.min():.2f}, max {closes.max():.2f}, "
        f"avg {closes.mean():.2f}"
    )
    if out is not None:
        write_parquet(df, out)
        print(f"Saved candles to {out}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        manager = MarketDataManager(_config_from_args(args))
        if args.command == "watch":
            tokens = [t.strip() for t in args.tokens.split(",") if t.strip()]
            asyncio.run(run_watch(manager, tokens, args.duration, args.save))
            return 0
        if args.command == "search":
            return asyncio.run(run_search(manager, args.query))
        if args.command == "history":
            end = args.end or date.today()
            start = args.start or end - timedelta(days=30)
            return asyncio.run(
                run_history(manager, args.token, args.interval, start, end, args.out)
            )
    except FeedError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
