from __future__ import annotations

import argparse
import asyncio
from typing import get_args

from tenancy.core.logging import configure_logging
from tenancy.persistence.db import SessionLocal, engine
from tenancy.services.maintenance import MaintenanceTask, run_task, sweep_expired


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expire impersonation tokens and prune stale auth rows")
    parser.add_argument(
        "--task",
        choices=get_args(MaintenanceTask),
        default=None,
        help="Run a single task instead of the full sweep",
    )
    return parser


async def _sweep(task: str | None) -> int:
    try:
        async with SessionLocal() as session:
            if task is not None:
                results = {task: await run_task(session, task)}  # type: ignore[arg-type]
            else:
                results = await sweep_expired(session)
    finally:
        await engine.dispose()
    for name, count in results.items():
        print(f"{name}={count}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_sweep(args.task))


if __name__ == "__main__":
    raise SystemExit(main())
