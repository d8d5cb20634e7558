from __future__ import annotations

import argparse
import asyncio

from leasepool.core.config import get_settings
from leasepool.core.logging import configure_logging
from leasepool.persistence.db import build_engine, build_session_factory
from leasepool.services.maintenance import run_deployment_prune


async def prune() -> None:
    settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)
    try:
        deleted = await run_deployment_prune(build_session_factory(engine))
        print(f"pruned_deployment_records={deleted}")
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune deployment history past its retention window")
    parser.parse_args()
    asyncio.run(prune())


if __name__ == "__main__":
    main()
