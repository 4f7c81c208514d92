"""Process lifecycle: startup, signal-driven shutdown, fatal error handling."""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import suppress
from pathlib import Path
from typing import Awaitable, Callable

from .config import ENV_FILE, Settings, load_settings
from .errors import ConfigError, TunnelPoolError
from .query import Database

LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

Main = Callable[[Database], Awaitable["int | None"]]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def serve(main: Main, settings: Settings, *, database: Database | None = None) -> int | None:
    """Run ``main`` against a started database; always shut the database down.

    SIGINT/SIGTERM cancel ``main``. Shutdown drains the pool and closes the
    tunnel before this coroutine returns, including when ``main`` raised.
    """

    database = database or Database(settings)
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    installed: list[signal.Signals] = []
    for sig in SHUTDOWN_SIGNALS:
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)

    async def _start_and_run() -> int | None:
        await database.start()
        return await main(database)

    stop_task = loop.create_task(stop.wait())
    main_task = loop.create_task(_start_and_run())
    try:
        done, _ = await asyncio.wait({main_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if main_task in done:
            return main_task.result()
        LOG.info("Shutdown requested")
        main_task.cancel()
        with suppress(asyncio.CancelledError):
            await main_task
        return None
    finally:
        stop_task.cancel()
        for sig in installed:
            loop.remove_signal_handler(sig)
        await database.shutdown()


def run(main: Main, *, env_file: Path | str | None = ENV_FILE) -> int:
    """Load settings, run ``main`` and return a process exit code."""

    try:
        settings = load_settings(env_file)
    except ConfigError as exc:
        logging.basicConfig()
        LOG.error("%s", exc)
        return EXIT_CONFIG
    configure_logging(settings.log_level)
    try:
        result = asyncio.run(serve(main, settings))
    except TunnelPoolError as exc:
        LOG.error("%s", exc)
        return EXIT_FAILURE
    except Exception:
        LOG.exception("Fatal error")
        return EXIT_FAILURE
    return EXIT_OK if result is None else result


__all__ = [
    "EXIT_CONFIG",
    "EXIT_FAILURE",
    "EXIT_OK",
    "configure_logging",
    "run",
    "serve",
]
