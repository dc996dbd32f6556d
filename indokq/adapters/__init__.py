"""Adapters package - bridge between the engine and frontends.

Typed event dataclasses and the event bus that queues engine
callbacks for a consumer loop.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "OrchestratorEvent",
    "dict_to_event",
    "event_to_dict",
]

from indokq.adapters.event_bus import EventBus
from indokq.adapters.events import OrchestratorEvent, dict_to_event, event_to_dict
