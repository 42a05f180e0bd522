"""
Console log streaming.

A logging handler that forwards formatted records to WebSocket observers as
``console_log`` messages while console output is switched on in settings.
"""

import asyncio
import logging

from ..settings import AppSettings
from .hub import BroadcastHub, console_message

CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class HubLogHandler(logging.Handler):
    """
    Usage:
        handler = HubLogHandler(hub, enabled=settings.console_output)
        logging.getLogger().addHandler(handler)
        settings_store.add_listener(handler.apply_settings)
    """

    def __init__(self, hub: BroadcastHub, enabled: bool = False, level: int = logging.INFO):
        super().__init__(level)
        self.hub = hub
        self.enabled = enabled
        self.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    def apply_settings(self, settings: AppSettings) -> None:
        self.enabled = settings.console_output

    def emit(self, record: logging.LogRecord) -> None:
        # Skip the hub's own records.
        if not self.enabled or record.name.startswith("f2bctl.events.hub"):
            return
        loop = self.hub.loop
        if not self.hub.running or loop is None:
            return
        try:
            message = console_message(self.format(record))
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            # Records from worker threads are handed to the loop thread.
            if current is loop:
                self.hub.publish(message)
            else:
                loop.call_soon_threadsafe(self.hub.publish, message)
        except Exception:
            self.handleError(record)
