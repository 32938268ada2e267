#!/usr/bin/env python3
"""Homebridge light programs - process entry point."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional, Sequence

import aiohttp

from . import state
from .configuration import (
    DEFAULT_SECRETS_FILE,
    Configuration,
    ConfigurationError,
    Secrets,
    load_config,
    load_secrets,
)
from .homebridge import Homebridge
from .programs import Program, build_programs

logger = logging.getLogger(__name__)

# Longest time shutdown waits for programs to finish their command in flight
SHUTDOWN_TIMEOUT = 60.0


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="homebridge-controller",
        description="Automated programs controlling a Homebridge light.",
    )
    parser.add_argument("config", help="Configuration file (JSON).")
    parser.add_argument(
        "-s", "--secrets",
        default=DEFAULT_SECRETS_FILE,
        help=f"Secrets file with Homebridge credentials (default: {DEFAULT_SECRETS_FILE}).",
    )
    return parser.parse_args(argv)


class ProgramRunner:
    """Runs every configured program as its own task."""

    def __init__(self, config: Configuration, secrets: Secrets):
        self.config = config
        self.secrets = secrets
        self.programs: List[Program] = []
        self.tasks: List[asyncio.Task] = []

    def stop(self) -> None:
        logger.info("Shutdown requested, stopping programs...")
        for program in self.programs:
            program.stop()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Not available on this platform; KeyboardInterrupt still works
                pass

    async def run(self) -> None:
        state.init(self.config.state_file or state.default_state_file())

        async with aiohttp.ClientSession() as session:
            homebridge = Homebridge(
                session,
                self.config.geo.ip_address,
                self.secrets.username,
                self.secrets.password,
                accessory_name=self.config.accessory_name,
            )
            if await homebridge.check_connection():
                logger.info(f"Connected to Homebridge at {homebridge.ip_address}")

            self.programs = build_programs(self.config, homebridge)
            if not self.programs:
                logger.warning("No programs configured - nothing to do")
                return

            self._install_signal_handlers()
            self.tasks = [
                asyncio.create_task(program.run_forever(), name=program.name)
                for program in self.programs
            ]
            logger.info(f"Started {len(self.tasks)} program(s): "
                        f"{', '.join(p.name for p in self.programs)}")

            try:
                results = await asyncio.gather(*self.tasks, return_exceptions=True)
            except asyncio.CancelledError:
                self.stop()
                done, pending = await asyncio.wait(self.tasks, timeout=SHUTDOWN_TIMEOUT)
                for task in pending:
                    task.cancel()
                raise

            for program, result in zip(self.programs, results):
                if isinstance(result, BaseException):
                    logger.error(f"Program {program.name} ended with error: {result}")
        logger.info("All programs stopped")


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    configure_logging()
    args = parse_args(argv)
    logger.info("Parsed CLI arguments.")

    try:
        config = load_config(args.config)
        secrets = load_secrets(args.secrets)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    runner = ProgramRunner(config, secrets)
    try:
        asyncio.run(runner.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
