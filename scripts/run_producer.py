#!/usr/bin/env python3
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import argparse
import logging
import os

import uvicorn

from pricing_engine.main import create_app


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the job producer API.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8080")))
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
