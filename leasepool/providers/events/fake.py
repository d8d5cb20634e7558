from __future__ import annotations

from typing import Sequence

from pydantic import BaseModel


class FakeEventPublisher:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.published: list[BaseModel] = []
        self.batches: list[list[BaseModel]] = []
        self.fail_with = fail_with

    async def publish(self, events: Sequence[BaseModel]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.batches.append(list(events))
        self.published.extend(events)

    def types(self) -> list[str]:
        return [getattr(event, "type") for event in self.published]
