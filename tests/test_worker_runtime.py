from __future__ import annotations

import json
import threading

from pricing_engine.channel import InMemoryChannel
from pricing_engine.settings import WorkerSettings
from pricing_engine.worker_runtime import create_worker_runtime, create_worker_runtime_from_env


def _wait_for_subscriber(channel: InMemoryChannel, message: str) -> None:
    pause = threading.Event()
    for _ in range(200):
        if channel.publish(message):
            return
        pause.wait(0.01)
    raise AssertionError("worker never subscribed")


def test_runtime_dispatches_published_jobs_and_reports_stats(context_payload, fake_store_cls):
    channel = InMemoryChannel("jobsChannel")
    stores: list = []

    def store_factory(context):
        store = fake_store_cls()
        stores.append(store)
        return store

    runtime = create_worker_runtime(
        WorkerSettings(channel_backend="memory"),
        channel=channel,
        store_factory=store_factory,
    )
    result: dict = {}
    worker = threading.Thread(target=lambda: result.update(runtime.run_forever()))
    worker.start()

    _wait_for_subscriber(
        channel,
        json.dumps(
            {"jobId": "job_1", "jobType": "data", "operation": "delete", "securityContext": context_payload}
        ),
    )
    channel.publish("not json")
    runtime.stop()
    worker.join(timeout=10)

    assert not worker.is_alive()
    assert result["received"] == 2
    assert result["dropped"] == 1
    assert result["succeeded"] == 1
    assert stores[0].closed
    assert runtime.stop_event.is_set()


def test_runtime_ignores_messages_after_stop(context_payload):
    runtime = create_worker_runtime_from_env(environ={"JOB_CHANNEL_BACKEND": "memory"})
    runtime.stop()
    runtime._on_message(json.dumps({"jobId": "late"}))
    assert runtime.dispatcher.stats.as_dict()["received"] == 0
    runtime.dispatcher.shutdown()
