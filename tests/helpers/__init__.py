"""Test helpers for hivemind-trader test suite"""

from tests.helpers.stubs import (
    FakeMarket,
    FixedClock,
    RecordingAudit,
    RecordingEvents,
    START,
    ScriptedExecutor,
    make_consensus,
    make_position,
    make_registry,
    make_snapshot,
    make_strategy,
)

__all__ = [
    "FakeMarket",
    "FixedClock",
    "RecordingAudit",
    "RecordingEvents",
    "START",
    "ScriptedExecutor",
    "make_consensus",
    "make_position",
    "make_registry",
    "make_snapshot",
    "make_strategy",
]
