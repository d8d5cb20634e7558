from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import httpx

from leasepool.core.config import get_settings
from leasepool.core.logging import configure_logging
from leasepool.persistence.db import build_engine, build_session_factory
from leasepool.persistence.store import RecordStore
from leasepool.providers.events.factory import get_event_publisher
from leasepool.providers.provisioning.factory import get_provisioning_provider
from leasepool.services.deployments import DeploymentOrchestrator


async def _run(payload: dict) -> None:
    # Execute one orchestrator action, as a workflow driver step would.
    settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)
    try:
        async with httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0) as client:
            orchestrator = DeploymentOrchestrator(
                settings,
                RecordStore(settings, build_session_factory(engine)),
                get_provisioning_provider(settings, client=client),
                get_event_publisher(settings, client=client),
            )
            result = await orchestrator.handle(payload)
        print(result.model_dump_json(indent=2))
    finally:
        await engine.dispose()


def main() -> None:
    # Accept the action payload inline or from a file.
    parser = argparse.ArgumentParser(description="Run a single deployment orchestrator action")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--payload", help="JSON action payload")
    source.add_argument("--payload-file", help="Path to a JSON action payload")
    args = parser.parse_args()

    raw = args.payload if args.payload is not None else Path(args.payload_file).read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        print(f"invalid_payload error={exc}", file=sys.stderr)
        sys.exit(2)
    asyncio.run(_run(payload))


if __name__ == "__main__":
    main()
