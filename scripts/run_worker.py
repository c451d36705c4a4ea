#!/usr/bin/env python3
"""Resident job worker.

Usage:
    # Redis pub/sub (default), settings from the environment or .env:
    python scripts/run_worker.py

    # Durable list-backed channel:
    python scripts/run_worker.py --backend redis_queue
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import logging
import os
import signal

from pricing_engine.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loop for published jobs.")
    parser.add_argument(
        "--backend",
        choices=["redis", "redis_queue", "memory"],
        default=None,
        help="Override JOB_CHANNEL_BACKEND.",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    args = parser.parse_args()

    environ = dict(os.environ)
    if args.backend:
        environ["JOB_CHANNEL_BACKEND"] = args.backend
    if args.log_level:
        environ["LOG_LEVEL"] = args.log_level

    logging.basicConfig(
        level=environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    runtime = create_worker_runtime_from_env(environ=environ)

    def _handle_signal(signum, frame):
        logging.getLogger("pricing_engine.worker").info("worker_signal signal=%s", signum)
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    stats = runtime.run_forever()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
