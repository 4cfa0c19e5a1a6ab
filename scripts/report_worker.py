from __future__ import annotations

import asyncio

from destinyrag.core.config import get_settings
from destinyrag.core.logging import configure_logging
from destinyrag.services.llm_client import build_llm_client
from destinyrag.workers.report_worker import run_report_worker_loop


async def _main() -> None:
    # Each worker process owns one LLM client; run several processes to scale out.
    configure_logging()
    llm_client = build_llm_client(get_settings())
    await run_report_worker_loop(llm_client=llm_client)


if __name__ == "__main__":
    asyncio.run(_main())
