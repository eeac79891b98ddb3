#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from app.email_service import EmailSender
from app.llm_provider import create_llm_gateway_from_env
from app.main import queue_backend
from app.scraper import create_scraper_from_env
from app.store import store
from app.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loop for queued audit and optimization jobs.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level for the worker process.")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    runtime = create_worker_runtime_from_env(
        store=store,
        queue_backend=queue_backend,
        scraper=create_scraper_from_env(),
        llm=create_llm_gateway_from_env(),
        email_sender=EmailSender.from_env(),
    )
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
