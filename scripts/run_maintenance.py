#!/usr/bin/env python3
"""Run the memory maintenance jobs.

Safe to run concurrently with the API (WAL mode, short BEGIN IMMEDIATE
transactions); every job is idempotent.

Suggested cron: 30 3 * * * cd /path/to/graph-memory && . .env && venv/bin/python scripts/run_maintenance.py

Usage:
    python scripts/run_maintenance.py                         # every job, every user
    python scripts/run_maintenance.py --user alice            # one user
    python scripts/run_maintenance.py --jobs decay,archival   # subset of jobs
    python scripts/run_maintenance.py --json                  # machine-readable output
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from graph_memory.config import load_config
from graph_memory.embeddings import OpenRouterEmbeddings
from graph_memory.engine import MAINTENANCE_JOBS, MemoryEngine
from graph_memory.errors import GraphMemoryError
from graph_memory.llm import OpenRouterChat

logger = logging.getLogger("run_maintenance")

# reindex is heavy and only needed after schema or classifier changes
DEFAULT_JOBS = ("expiry", "decay", "archival", "consolidation")


def parse_jobs(raw: str) -> List[str]:
    jobs = [j.strip() for j in raw.split(",") if j.strip()]
    unknown = [j for j in jobs if j not in MAINTENANCE_JOBS]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"unknown job(s) {', '.join(unknown)}; choose from {', '.join(MAINTENANCE_JOBS)}"
        )
    return jobs


def run(engine: MemoryEngine, jobs: List[str], user_id: str | None) -> Dict[str, Any]:
    report: Dict[str, Any] = {}
    for job in jobs:
        try:
            report[job] = engine.run_job(job, user_id)
        except GraphMemoryError as exc:
            logger.error("Job %s failed: %s", job, exc)
            report[job] = {"error": str(exc)}
    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Run memory maintenance jobs")
    parser.add_argument("--user", default=None, help="Only this user (default: every user)")
    parser.add_argument(
        "--jobs",
        type=parse_jobs,
        default=list(DEFAULT_JOBS),
        help=f"Comma-separated subset of {','.join(MAINTENANCE_JOBS)}",
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    cfg = load_config()
    errors = cfg.validate()
    if errors:
        logger.error("Invalid configuration: %s", errors)
        return 2

    embedder = OpenRouterEmbeddings(config=cfg) if cfg.openrouter_api_key else None
    chat = OpenRouterChat(config=cfg) if cfg.openrouter_api_key else None
    engine = MemoryEngine(config=cfg, embedder=embedder, chat=chat)
    try:
        report = run(engine, args.jobs, args.user)
    finally:
        engine.close()

    if args.json:
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        for job, result in report.items():
            if "error" in result:
                print(f"{job}: FAILED ({result['error']})")
            else:
                print(f"{job}: users={result['users']} {result['totals']}")

    return 1 if any("error" in r for r in report.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
