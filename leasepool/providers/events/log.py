from __future__ import annotations

import json
import logging
from typing import Sequence

from pydantic import BaseModel

from leasepool.core.config import Settings
from leasepool.providers.events.base import event_envelope
from leasepool.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class LogEventPublisher:
    def __init__(self, settings: Settings) -> None:
        # Local runs without an event bus still surface every event.
        self._source = settings.event_source

    async def publish(self, events: Sequence[BaseModel]) -> None:
        for event in events:
            logger.info("event_published %s", json.dumps(event_envelope(event, source=self._source), sort_keys=True))
        increment_counter("events_published_total", len(events))
