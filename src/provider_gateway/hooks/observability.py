from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class HookEvent:
    at: datetime
    kind: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


class EventLogger:
    def __init__(self) -> None:
        self._events: list[HookEvent] = []

    def record(self, kind: str, name: str, payload: dict[str, Any] | None = None) -> None:
        self._events.append(
            HookEvent(
                at=datetime.now(timezone.utc),
                kind=kind,
                name=name,
                payload=payload or {},
            )
        )

    def on_provider_call(self, provider: str, phase: str, **detail: Any) -> None:
        self.record("provider_call", phase, {"provider": provider, **detail})

    def on_auth(self, provider: str, phase: str) -> None:
        self.record("auth", phase, {"provider": provider})

    def on_stream(self, provider: str, phase: str, **detail: Any) -> None:
        self.record("stream", phase, {"provider": provider, **detail})

    def list_events(self, kind: str | None = None) -> list[HookEvent]:
        if kind is None:
            return list(self._events)
        return [event for event in self._events if event.kind == kind]
