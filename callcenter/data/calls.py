"""Seed calls for the demo queue."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class SeedCall:
    id: str
    caller: str
    wait_time: int
    priority: str = "normal"


SEED_CALLS: list[SeedCall] = [
    SeedCall(id="call-1001", caller="+15551230001", wait_time=45, priority="high"),
    SeedCall(id="call-1002", caller="+15551230002", wait_time=30),
    SeedCall(id="call-1003", caller="+15551230003", wait_time=12),
]

DEMO_CALLERS: tuple[str, ...] = (
    "+15551234567",
    "+15559876543",
    "+15555550123",
    "+15554443322",
)
