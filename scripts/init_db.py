from __future__ import annotations

import asyncio

from leasepool.core.config import get_settings
from leasepool.core.logging import configure_logging
from leasepool.persistence.db import build_engine, create_schema


async def _run() -> None:
    # Create the record tables on a fresh database.
    settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)
    try:
        await create_schema(engine)
        print("schema_ready=true")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_run())
