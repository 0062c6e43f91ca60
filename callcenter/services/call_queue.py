"""In-memory mock call queue backing the agent dashboard."""
from __future__ import annotations

import itertools
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable
from uuid import uuid4

from ..data.calls import DEMO_CALLERS, SEED_CALLS, SeedCall


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class QueuedCall:
    id: str
    caller: str
    queued_at: datetime
    priority: str = "normal"
    status: str = "waiting"

    def wait_time(self, now: datetime | None = None) -> int:
        reference = now or _utcnow()
        return max(0, int((reference - self.queued_at).total_seconds()))

    def to_payload(self, now: datetime | None = None) -> dict[str, object]:
        return {
            "id": self.id,
            "from": self.caller,
            "status": self.status,
            "priority": self.priority,
            "waitTime": self.wait_time(now),
            "queuedAt": self.queued_at.isoformat(),
        }


class CallQueue:
    """Ordered map of waiting calls. Not persisted and local to one process."""

    def __init__(self, seed: Iterable[SeedCall] | None = None) -> None:
        self._calls: Dict[str, QueuedCall] = {}
        self._counter = itertools.count(1)
        now = _utcnow()
        for item in SEED_CALLS if seed is None else seed:
            self._calls[item.id] = QueuedCall(
                id=item.id,
                caller=item.caller,
                queued_at=now.replace(microsecond=0) - timedelta(seconds=item.wait_time),
                priority=item.priority,
            )

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def enqueue(self, call: QueuedCall) -> QueuedCall:
        self._calls[call.id] = call
        return call

    def new_call(self, caller: str | None = None, *, call_id: str | None = None) -> QueuedCall:
        """Queue a simulated inbound call from ``caller`` (a random demo number by default)."""

        resolved_id = call_id or f"call-{next(self._counter)}-{uuid4().hex[:6]}"
        return self.enqueue(
            QueuedCall(
                id=resolved_id,
                caller=caller or random.choice(DEMO_CALLERS),
                queued_at=_utcnow(),
            )
        )

    def take(self, call_id: str) -> QueuedCall | None:
        """Remove and return a waiting call; unknown ids return ``None``."""

        return self._calls.pop(call_id, None)

    def snapshot(self) -> dict[str, object]:
        now = _utcnow()
        calls = [call.to_payload(now) for call in self._calls.values()]
        average = int(sum(call["waitTime"] for call in calls) / len(calls)) if calls else 0
        return {"calls": calls, "length": len(calls), "averageWaitTime": average}
