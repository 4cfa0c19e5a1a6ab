from __future__ import annotations

import argparse
import asyncio

from destinyrag.core.logging import configure_logging
from destinyrag.persistence.db import SessionLocal
from destinyrag.services.maintenance import MAINTENANCE_TASKS, run_all_maintenance, run_maintenance_task


async def _run(task: str | None) -> None:
    configure_logging()
    async with SessionLocal() as session:
        if task is None:
            results = await run_all_maintenance(session)
        else:
            results = {task: await run_maintenance_task(session, task)}
    for name, affected in results.items():
        print(f"{name}={affected}")


def main() -> None:
    # Intended for cron: expired conversation cleanup plus the stuck-job sweep.
    parser = argparse.ArgumentParser(description="Run destinyrag maintenance sweeps.")
    parser.add_argument("--task", choices=MAINTENANCE_TASKS, default=None)
    args = parser.parse_args()
    asyncio.run(_run(args.task))


if __name__ == "__main__":
    main()
