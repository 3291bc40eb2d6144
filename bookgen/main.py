import asyncio
import logging
import signal
import sys
from typing import Optional

from hypercorn.asyncio import serve as hypercorn_serve
from hypercorn.config import Config as HypercornConfig
from quart import Quart

from .app import create_app
from .common.config import settings

log = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        log.info("%s received, shutting down gracefully...", sig.name)
        shutdown_event.set()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _on_signal, sig)


def remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)


async def serve(app: Quart, shutdown_event: Optional[asyncio.Event] = None) -> int:
    """Run the server until SIGTERM/SIGINT (or ``shutdown_event``).

    Hypercorn runs the app's after_serving hook, which stops the order
    monitor, before this returns.
    """
    config = HypercornConfig()
    config.bind = [f"{settings.APP_HOST}:{settings.APP_PORT}"]
    config.accesslog = "-"
    shutdown_event = shutdown_event or asyncio.Event()
    install_signal_handlers(shutdown_event)
    log.info("AI book personalization server on http://%s:%s", settings.APP_HOST, settings.APP_PORT)
    try:
        await hypercorn_serve(app, config, shutdown_trigger=shutdown_event.wait)
    finally:
        remove_signal_handlers()
    return 0


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(serve(create_app())))


if __name__ == "__main__":
    main()
