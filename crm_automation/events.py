"""Opportunity change events.

Every accepted change is kept in ``published_events`` and handed to the
in-process subscribers of its ``event_type``. Events raised from inside a
trigger carry the trigger depth under ``meta``. Events are published after
the change is committed, so a failing subscriber is logged and skipped.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from crm_automation.context import get_correlation_id, get_trigger_depth
from crm_automation.metrics import observe_event_subscriber_failure

logger = logging.getLogger("crm_automation.events")

Envelope = dict[str, Any]
Subscriber = Callable[[Envelope], None]

published_events: list[Envelope] = []
_subscribers: dict[str, list[Subscriber]] = defaultdict(list)


def subscribe(event_type: str, subscriber: Subscriber) -> None:
    _subscribers[event_type].append(subscriber)


def unsubscribe(event_type: str, subscriber: Subscriber) -> None:
    subscribers = _subscribers.get(event_type, [])
    if subscriber in subscribers:
        subscribers.remove(subscriber)


def publish(envelope: Envelope) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    trigger_depth = get_trigger_depth()
    if trigger_depth is not None:
        envelope.setdefault("meta", {}).setdefault("trigger_depth", trigger_depth)

    published_events.append(envelope)
    event_type = envelope["event_type"]
    for subscriber in list(_subscribers.get(event_type, [])):
        try:
            subscriber(envelope)
        except Exception as exc:
            logger.exception(
                "event.subscriber_failed",
                extra={"event_type": event_type, "event_id": envelope.get("event_id"), "error": str(exc)},
            )
            observe_event_subscriber_failure(event_type)
