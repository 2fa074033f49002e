#!/usr/bin/env python3
import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

import aiohttp

import constants
from config import AppConfig, ConfigError, load_config
from polling import ShutdownSignal
from services.json_rpc_client import JsonRpcClient
from services.rate_limiter import RequestThrottle
from services.supply_oracle import NegativeSupplyOracle
from services.uniswap_v2_gateway import UniswapV2Gateway, create_wallet
from storage import SQLiteJournal
from strategy import LiquidityCycleStrategy


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def install_signal_handlers(shutdown: ShutdownSignal) -> None:
    """SIGINT/SIGTERM request a stop at the next poll or phase boundary."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.request, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown.request, "received signal"))


async def run_strategy(config: AppConfig, shutdown: Optional[ShutdownSignal] = None) -> int:
    """Wire the collaborators together and run the strategy until it stops."""
    shutdown = shutdown or ShutdownSignal()
    install_signal_handlers(shutdown)

    # Reads and transactions draw from one calls-per-second budget.
    throttle = RequestThrottle(config.rpc_rate_limit_per_second)
    journal = SQLiteJournal(config.journal_db_path) if config.journal_db_path else None
    # A single shared session for every read-only RPC call.
    async with aiohttp.ClientSession(headers={'User-Agent': 'SupplyCycler/1.0'}) as session:
        rpc_client = JsonRpcClient(
            session,
            rpc_url=config.json_rpc_endpoint_url,
            timeout=config.rpc_timeout_seconds,
            throttle=throttle,
        )
        gateway = await asyncio.to_thread(
            UniswapV2Gateway.from_rpc_url,
            config.json_rpc_endpoint_url,
            timeout=config.rpc_timeout_seconds,
            throttle=throttle,
            router_address=config.router_address,
            factory_address=config.factory_address,
            chain_id=config.chain_id,
            deadline_seconds=config.swap_deadline_seconds,
        )
        tracker = await gateway.create_tracker(rpc_client, config.token_address, config.comparator_address)
        wallet = create_wallet(config.private_wallet_key)
        print(f"Wallet {wallet.address} trading pair {tracker.pair_address}.")

        strategy = LiquidityCycleStrategy(
            config,
            gateway,
            tracker,
            wallet,
            NegativeSupplyOracle(rpc_client, config.token_address, config.token_decimals),
            shutdown=shutdown,
            journal=journal,
        )
        try:
            return await strategy.run()
        finally:
            if journal:
                await journal.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """The main synchronous entry point for the application."""
    try:
        config = load_config(argv)
    except ConfigError as exc:
        print(f"{constants.C_RED}{exc}{constants.C_RESET}")
        return 1

    configure_logging(config.log_level)
    asyncio.run(run_strategy(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
