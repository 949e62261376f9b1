from __future__ import annotations

import argparse
import asyncio

from futures_gateway.app import run_app


def main() -> None:
    parser = argparse.ArgumentParser(description="USD-M futures gateway demo")
    parser.add_argument(
        "--mode",
        choices=["ping", "account", "mark-price", "mini-ticker", "book", "kline", "user-data"],
        default="ping",
        help="ping: REST latency; account: signed account info (auth required); others: print a stream",
    )
    parser.add_argument(
        "--symbol",
        default="BTCUSDT",
        help="Symbol for book/kline modes (default: BTCUSDT)",
    )
    parser.add_argument(
        "--interval",
        default="1m",
        help="Kline interval for kline mode (default: 1m)",
    )
    parser.add_argument(
        "--seconds",
        type=float,
        default=10.0,
        help="How long stream modes run before unsubscribing (default: 10)",
    )
    args = parser.parse_args()

    asyncio.run(
        run_app(
            mode=args.mode,
            symbol=args.symbol,
            interval=args.interval,
            seconds=args.seconds,
        )
    )


if __name__ == "__main__":
    main()
