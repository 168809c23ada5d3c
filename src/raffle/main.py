#!/usr/bin/env python3
"""
Raffle Service Application

Main entry point: provisions the raffle for the configured network, starts the
keeper loop, the fulfillment watcher (production networks) and the web server.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from raffle.blockchain.client import VRFCoordinatorClient
from raffle.deploy import Deployment, deploy_raffle
from raffle.lottery.operator import RaffleOperator
from raffle.utils.config import NETWORK_CONFIG, load_config
from raffle.utils.logger import configure_logging, get_logger
from raffle.web_server import RaffleWebServer

logger = get_logger(__name__)


class RaffleApp:
    """Wires the raffle, keeper, fulfillment watcher and web server together."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.deployment: Optional[Deployment] = None
        self.operator: Optional[RaffleOperator] = None
        self.web_server: Optional[RaffleWebServer] = None
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def _display_config_summary(self) -> None:
        logger.info("=" * 60)
        logger.info("CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        blockchain_config = self.config.get('blockchain', {})
        logger.info(f"RPC URL: {blockchain_config.get('rpc_url', 'Not configured')}")
        logger.info(f"Chain ID: {blockchain_config.get('chain_id', 31337)}")
        operator_config = self.config.get('operator', {})
        logger.info(f"Keeper check interval: {operator_config.get('check_interval_sec', 10)}s")
        server_config = self.config.get('server', {})
        logger.info(f"Server: {server_config.get('host', '0.0.0.0')}:{server_config.get('port', 6080)}")
        logger.info("=" * 60)

    async def initialize(self) -> None:
        self._display_config_summary()

        logger.info("Provisioning raffle...")
        self.deployment = await asyncio.to_thread(deploy_raffle, self.config)
        raffle = self.deployment.raffle
        logger.info(
            "Raffle ready on %s: fee=%s interval=%ss",
            self.deployment.network, raffle.entrance_fee, raffle.interval,
        )

        self.operator = RaffleOperator(raffle, self.config)
        await self.operator.initialize()

        self.web_server = RaffleWebServer(
            self.config,
            raffle,
            treasury=self.deployment.treasury,
            oracle=self.deployment.oracle,
            operator=self.operator,
        )

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._stop_event.set()

    async def start(self) -> None:
        try:
            await self.initialize()
            assert self.deployment and self.operator and self.web_server

            await self.operator.start()

            if isinstance(self.deployment.oracle, VRFCoordinatorClient):
                self._tasks.append(asyncio.create_task(self.deployment.oracle.watch(self._stop_event)))

            server_config = self.config.get('server', {})
            host = server_config.get('host', '0.0.0.0')
            port = int(server_config.get('port', 6080))
            server_task = asyncio.create_task(self.web_server.start(host=host, port=port))
            self._tasks.append(server_task)

            logger.info(f"Main interface: http://{host}:{port}/api/raffle")
            logger.info(f"WebSocket: ws://{host}:{port}/ws/raffle")

            stop_task = asyncio.create_task(self._stop_event.wait())
            done, _ = await asyncio.wait({server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if server_task in done and server_task.exception():
                raise server_task.exception()
            stop_task.cancel()
        finally:
            await self.stop()

    async def stop(self) -> None:
        logger.info("Stopping raffle service")
        self._stop_event.set()

        if self.operator:
            await self.operator.stop()
        if self.web_server:
            await self.web_server.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Background task ended with error: {e}")
        self._tasks = []
        logger.info("Raffle service stopped")


def load_environment(env_file: str) -> None:
    """Load a dotenv file, then re-apply LOG_LEVEL / LOG_FILE from it.

    Module loggers are already configured at import time, before the file is read.
    """
    loaded = Path(env_file).exists() and load_dotenv(env_file)
    configure_logging(force=True)
    if loaded:
        logger.debug(f"Loaded environment from {env_file}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="raffle-service", description="Verifiable VRF raffle service.")
    p.add_argument("--config", default=None, help="Path to a JSON config file (default: config/raffle.conf).")
    p.add_argument("--env-file", default=".env", help="Dotenv file with overrides.")
    p.add_argument(
        "--network",
        choices=sorted(preset["name"] for preset in NETWORK_CONFIG.values()),
        default=None,
        help="Network preset to run against (sets blockchain.chain_id).",
    )
    p.add_argument("--chain-id", type=int, default=None, help="Override blockchain.chain_id.")
    p.add_argument("--host", default=None, help="Override server.host.")
    p.add_argument("--port", type=int, default=None, help="Override server.port.")
    return p


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_environment(args.env_file)

    config = load_config(args.config)
    if args.network:
        chain_id = next(cid for cid, preset in NETWORK_CONFIG.items() if preset["name"] == args.network)
        config.setdefault('blockchain', {})['chain_id'] = chain_id
    if args.chain_id is not None:
        config.setdefault('blockchain', {})['chain_id'] = args.chain_id
    if args.host:
        config.setdefault('server', {})['host'] = args.host
    if args.port:
        config.setdefault('server', {})['port'] = args.port

    app = RaffleApp(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_shutdown)
        except NotImplementedError:
            signal.signal(sig, lambda signum, frame: app.request_shutdown())

    try:
        await app.start()
    except Exception as e:
        logger.error(f"Raffle service failed: {e}")
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
