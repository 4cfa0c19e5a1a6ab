from __future__ import annotations

import asyncio

from destinyrag.core.logging import configure_logging
from destinyrag.persistence.db import create_schema, engine


async def _main() -> None:
    configure_logging()
    await create_schema()
    await engine.dispose()
    print("schema_ready=true")


if __name__ == "__main__":
    asyncio.run(_main())
