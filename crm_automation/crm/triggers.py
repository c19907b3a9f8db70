from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from sqlalchemy.orm import Session

from crm_automation.context import reset_trigger_depth, set_trigger_depth
from crm_automation.core.config import get_settings
from crm_automation.crm.schemas import OpportunityRecord
from crm_automation.metrics import observe_trigger_dispatch, observe_trigger_guardrail_block
from crm_automation.otel import get_tracer


logger = logging.getLogger("crm_automation.crm.triggers")
tracer = get_tracer("crm_automation.crm.triggers")


class OperationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UNDELETE = "undelete"


class TriggerPhase(str, Enum):
    BEFORE = "before"
    AFTER = "after"


@dataclass
class TriggerEvent:
    """One lifecycle event: the full record batch of a single DML call in one phase.

    ``new`` holds the records being written (empty for delete), ``old`` the
    stored versions keyed by id (empty for insert and undelete).
    """

    operation_id: uuid.UUID
    kind: OperationKind
    phase: TriggerPhase
    new: list[OpportunityRecord] = field(default_factory=list)
    old: dict[uuid.UUID, OpportunityRecord] = field(default_factory=dict)
    depth: int = 0

    @property
    def key(self) -> tuple[uuid.UUID, OperationKind, TriggerPhase]:
        return (self.operation_id, self.kind, self.phase)

    @property
    def record_count(self) -> int:
        return len(self.new) if self.new else len(self.old)


PhaseHandler = Callable[[Session, TriggerEvent], None]


class LifecycleHandler(Protocol):
    def before_insert(self, session: Session, event: TriggerEvent) -> None: ...

    def before_update(self, session: Session, event: TriggerEvent) -> None: ...

    def before_delete(self, session: Session, event: TriggerEvent) -> None: ...

    def after_insert(self, session: Session, event: TriggerEvent) -> None: ...

    def after_update(self, session: Session, event: TriggerEvent) -> None: ...

    def after_delete(self, session: Session, event: TriggerEvent) -> None: ...

    def after_undelete(self, session: Session, event: TriggerEvent) -> None: ...


class TriggerDispatcher:
    def __init__(self, handler: LifecycleHandler, max_depth: int | None = None) -> None:
        self.handler = handler
        self.max_depth = max_depth
        self._routes: dict[tuple[OperationKind, TriggerPhase], PhaseHandler] = {
            (OperationKind.INSERT, TriggerPhase.BEFORE): handler.before_insert,
            (OperationKind.UPDATE, TriggerPhase.BEFORE): handler.before_update,
            (OperationKind.DELETE, TriggerPhase.BEFORE): handler.before_delete,
            (OperationKind.INSERT, TriggerPhase.AFTER): handler.after_insert,
            (OperationKind.UPDATE, TriggerPhase.AFTER): handler.after_update,
            (OperationKind.DELETE, TriggerPhase.AFTER): handler.after_delete,
            (OperationKind.UNDELETE, TriggerPhase.AFTER): handler.after_undelete,
        }
        self._processed: set[tuple[uuid.UUID, OperationKind, TriggerPhase]] = set()

    def dispatch(self, session: Session, event: TriggerEvent) -> bool:
        """Run the handler phase for ``event``; returns False when nothing ran."""
        route = self._routes.get((event.kind, event.phase))
        if route is None:
            logger.debug(
                "trigger.no_route",
                extra={"operation": event.kind.value, "phase": event.phase.value},
            )
            return False

        if event.key in self._processed:
            self._block(event, "DUPLICATE")
            return False

        max_depth = self.max_depth if self.max_depth is not None else get_settings().trigger_max_depth
        if event.depth >= max_depth:
            self._block(event, "MAX_DEPTH", max_depth=max_depth)
            return False

        self._processed.add(event.key)
        token = set_trigger_depth(event.depth + 1)
        started = time.perf_counter()
        try:
            with tracer.start_as_current_span("crm.trigger.dispatch") as span:
                span.set_attribute("crm.trigger.operation", event.kind.value)
                span.set_attribute("crm.trigger.phase", event.phase.value)
                span.set_attribute("crm.trigger.operation_id", str(event.operation_id))
                span.set_attribute("crm.trigger.record_count", event.record_count)
                span.set_attribute("crm.trigger.depth", event.depth)
                route(session, event)
        finally:
            reset_trigger_depth(token)
            observe_trigger_dispatch(event.kind.value, event.phase.value, time.perf_counter() - started)

        logger.info(
            "trigger.dispatch",
            extra={
                "operation": event.kind.value,
                "phase": event.phase.value,
                "operation_id": str(event.operation_id),
                "record_count": event.record_count,
                "depth": event.depth,
            },
        )
        return True

    def has_route(self, kind: OperationKind, phase: TriggerPhase) -> bool:
        return (kind, phase) in self._routes

    def complete(self, operation_id: uuid.UUID) -> None:
        self._processed = {key for key in self._processed if key[0] != operation_id}

    def _block(self, event: TriggerEvent, reason: str, max_depth: int | None = None) -> None:
        logger.warning(
            "trigger_guardrail_blocked",
            extra={
                "reason": reason,
                "operation": event.kind.value,
                "phase": event.phase.value,
                "operation_id": str(event.operation_id),
                "depth": event.depth,
                "max_depth": max_depth,
            },
        )
        observe_trigger_guardrail_block(reason)
