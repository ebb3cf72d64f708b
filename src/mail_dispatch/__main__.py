"""Worker entry point: ``python -m mail_dispatch``."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from .config import DispatchSettings
from .exceptions import QueueConnectionError
from .logging_config import setup_logging
from .service import DispatchService

logger = logging.getLogger("mail_dispatch.worker")


async def run_worker(
    settings: DispatchSettings,
    *,
    stop_event: asyncio.Event | None = None,
    service: DispatchService | None = None,
) -> int:
    """Run the dispatch service until *stop_event* is set (SIGINT/SIGTERM).

    Exit codes: 0 after a requested stop, 1 if the broker is unreachable at
    startup, 2 if a consumer worker died on an unrecoverable error.
    """
    stop_event = stop_event or asyncio.Event()
    service = service or DispatchService.from_settings(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await service.start()
    except QueueConnectionError:
        logger.error("Broker unreachable, worker not started")
        return 1
    try:
        crashed = await _wait_for_shutdown(stop_event, service.crashed)
    except BaseException:
        await service.stop()
        raise
    try:
        await service.stop()
    except Exception:  # noqa: BLE001
        logger.critical("Dispatch worker aborted", exc_info=True)
        return 2
    return 2 if crashed else 0


async def _wait_for_shutdown(
    stop_event: asyncio.Event, crashed: asyncio.Event
) -> bool:
    """Block until a stop is requested or a consumer worker dies.

    Returns True for the latter.
    """
    waiters = [
        asyncio.create_task(stop_event.wait()),
        asyncio.create_task(crashed.wait()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
    return crashed.is_set()


def main() -> None:
    settings = DispatchSettings()
    setup_logging(settings.log_level, use_json=settings.log_json)
    sys.exit(asyncio.run(run_worker(settings)))


if __name__ == "__main__":
    main()
