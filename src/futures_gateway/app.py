from __future__ import annotations

import asyncio
import logging

from futures_gateway.config import Settings
from futures_gateway.records import StreamRecord
from futures_gateway.usdm.market import FuturesMarket


log = logging.getLogger("futures_gateway")


def _print_record(record: StreamRecord) -> None:
    if isinstance(record, dict):
        for key, value in record.items():
            print(f"{key}: {value}")
        print("-" * 40)
    else:
        print(record)


async def run_app(
    *,
    mode: str,
    symbol: str = "BTCUSDT",
    interval: str = "1m",
    seconds: float = 10.0,
) -> None:
    settings = Settings.load()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Keep stream output readable (httpx and websockets are chatty at INFO).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    async with FuturesMarket.from_settings(settings) as market:
        log.info("env=%s rest=%s stream=%s", settings.futures_env, market.endpoints.rest_url, market.endpoints.stream_url)

        if mode == "ping":
            latency_ms = await market.ping()
            log.info("ping latency=%.1fms", latency_ms)
            return

        if mode == "account":
            info = await market.account_information()
            if not info.valid:
                log.error("account information rejected: %s", info.error)
                return
            _print_record(info.data)
            balance = await market.account_balance()
            for asset, fields in balance.balances.items():
                print(f"{asset}: balance={fields.get('balance')} available={fields.get('availableBalance')}")
            return

        if mode == "mark-price":
            handle = await market.subscribe_mark_price(_print_record)
        elif mode == "mini-ticker":
            handle = await market.subscribe_mini_ticker(_print_record)
        elif mode == "book":
            handle = await market.subscribe_symbol_book(symbol, _print_record)
        elif mode == "kline":
            handle = await market.subscribe_kline(symbol, interval, _print_record)
        elif mode == "user-data":
            handle = await market.subscribe_user_data(_print_record)
        else:
            raise ValueError(f"Unknown mode: {mode}")

        await asyncio.sleep(seconds)
        log.info("stream state=%s", market.state(handle).value)
