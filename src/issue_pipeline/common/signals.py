"""Signal handling for graceful shutdown.

First SIGINT/SIGTERM sets the shared shutdown event: the poller abandons its
wait and the summarizer finishes the in-flight record before stopping.
A second signal cancels every task on the loop.
"""

import asyncio
import logging
import signal

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _make_handler(loop: asyncio.AbstractEventLoop, shutdown_event: asyncio.Event):
    def handle_signal(sig: signal.Signals) -> None:
        if not shutdown_event.is_set():
            logger.info(
                "Received signal, initiating graceful shutdown",
                extra={"signal": sig.name},
            )
            shutdown_event.set()
            return

        logger.warning(
            "Received second signal, forcing immediate shutdown",
            extra={"signal": sig.name},
        )
        for task in asyncio.all_tasks(loop):
            task.cancel()

    return handle_signal


def install_shutdown_handlers(
    loop: asyncio.AbstractEventLoop,
    shutdown_event: asyncio.Event,
) -> None:
    """Register SIGINT/SIGTERM handlers on loop.

    Falls back to signal.signal() where add_signal_handler() is not
    supported (Windows), marshalling back onto the loop thread.
    """
    handle_signal = _make_handler(loop, shutdown_event)

    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, handle_signal, sig)
    except NotImplementedError:
        def _fallback(signum, frame):
            loop.call_soon_threadsafe(handle_signal, signal.Signals(signum))

        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, _fallback)
