from __future__ import annotations

from typing import Any, Protocol, Sequence

from pydantic import BaseModel


class EventPublisher(Protocol):
    async def publish(self, events: Sequence[BaseModel]) -> None:
        ...


def event_envelope(event: BaseModel, *, source: str) -> dict[str, Any]:
    # Wire shape shared by every publisher: routing fields plus the typed detail.
    detail = event.model_dump(mode="json")
    return {
        "id": detail["event_id"],
        "source": source,
        "detail_type": detail["type"],
        "detail": detail,
    }
