from __future__ import annotations

import asyncio
import contextlib
import signal

from dotenv import load_dotenv

from modules.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    build_runtime,
    run_solver_loop,
    setup_logger,
)
from modules.common import log_event


async def main() -> None:
    load_dotenv()
    app_settings = AppSettings.from_env()
    logger = setup_logger(app_settings.log_level)
    app_settings.validate()

    runtime = build_runtime(app_settings, logger=logger)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    try:
        ready = await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            runtime=runtime,
        )
        if ready:
            await run_solver_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                runtime=runtime,
            )
    finally:
        await runtime.close(logger)
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
