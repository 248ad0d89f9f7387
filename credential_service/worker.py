"""Ledger event reconciler process.

RUN:  python -m credential_service.worker

Same image as the API, different command.  The API repairs its own
index writes while it is up (IndexReconciler); this process covers
everything the API could not: crashes between a ledger commit and the
index write, revocations made directly on the ledger, commits the index
never heard about.

It walks the ledger's event sequence from the last saved height, fixes
what can be fixed, logs what needs an operator, saves the new height
and sleeps for RECONCILE_POLL_SECONDS.  Run one replica: two would do
the same work twice (harmlessly, every repair is idempotent).

SIGINT/SIGTERM stop the loop after the current pass.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from credential_service.container import ServiceContainer
from credential_service.core.config import Settings, load_settings
from credential_service.core.logging import setup_logging

logger = logging.getLogger("credential_service.worker")


async def run_worker(settings: Settings, stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available off the main thread or on Windows.
            pass

    container = ServiceContainer.from_settings(settings)
    await container.open()
    try:
        await container.event_reconciler().run(stop)
    finally:
        await container.close()


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level, json_format=settings.log_json)
    logger.info(
        "Worker starting  env=%s poll=%.1fs", settings.app_env, settings.reconcile_poll_seconds
    )
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
