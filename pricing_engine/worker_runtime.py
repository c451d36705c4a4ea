from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from pricing_engine.channel import create_channel
from pricing_engine.dispatcher import Dispatcher, StoreFactory, create_dispatcher
from pricing_engine.settings import WorkerSettings

logger = logging.getLogger(__name__)


class WorkerRuntime:
    """Resident worker: one channel subscription feeding the dispatcher."""

    def __init__(
        self,
        *,
        channel: Any,
        dispatcher: Dispatcher,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.channel = channel
        self.dispatcher = dispatcher
        self.stop_event = stop_event or threading.Event()

    def _on_message(self, raw: str) -> None:
        if self.stop_event.is_set():
            logger.warning("worker_stopping_message_ignored channel=%s", getattr(self.channel, "name", "-"))
            return
        self.dispatcher.on_message(raw)

    def run_forever(self) -> dict[str, int]:
        logger.info("worker_started channel=%s", getattr(self.channel, "name", "-"))
        try:
            self.channel.listen(self._on_message, stop_event=self.stop_event)
        finally:
            # Wakes any bulk poll loop waiting on the stop event.
            self.stop_event.set()
            self.dispatcher.shutdown(wait=True)
        stats = self.dispatcher.stats.as_dict()
        logger.info("worker_stopped stats=%s", stats)
        return stats

    def stop(self) -> None:
        self.stop_event.set()


def create_worker_runtime(
    settings: WorkerSettings,
    *,
    channel: Any | None = None,
    store_factory: StoreFactory | None = None,
) -> WorkerRuntime:
    stop_event = threading.Event()
    dispatcher = create_dispatcher(settings, stop_event=stop_event, store_factory=store_factory)
    return WorkerRuntime(
        channel=channel if channel is not None else create_channel(settings),
        dispatcher=dispatcher,
        stop_event=stop_event,
    )


def create_worker_runtime_from_env(
    *,
    environ: Mapping[str, str] | None = None,
    channel: Any | None = None,
    store_factory: StoreFactory | None = None,
) -> WorkerRuntime:
    return create_worker_runtime(
        WorkerSettings.from_env(environ),
        channel=channel,
        store_factory=store_factory,
    )
