from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation import audit, events
from crm_automation.context import get_trigger_depth
from crm_automation.core.clock import Clock, system_clock
from crm_automation.core.config import Settings
from crm_automation.crm.errors import DependencyFailure, DmlError
from crm_automation.crm.handlers import OpportunityLifecycleHandler
from crm_automation.crm.models import CRMOpportunity
from crm_automation.crm.notifications import NotificationSink
from crm_automation.crm.repositories import SqlRecordStore
from crm_automation.crm.schemas import (
    OpportunityCreate,
    OpportunityRead,
    OpportunityRecord,
    OpportunityUpdate,
    SaveResult,
)
from crm_automation.crm.triggers import LifecycleHandler, OperationKind, TriggerDispatcher, TriggerEvent, TriggerPhase


logger = logging.getLogger("crm_automation.crm.service")

WRITABLE_FIELDS = ("name", "amount", "stage", "type", "description", "primary_contact_id", "owner_user_id")
INSERT_FIELDS = {"id", "account_id", "created_at", "updated_at", *WRITABLE_FIELDS}
NON_NULLABLE_FIELDS = ("name", "amount", "stage")


class OpportunityService:
    """Bulk DML for opportunities with lifecycle triggers.

    Every call is one operation: the before phase runs over detached record
    copies, records that picked up errors are skipped (or the whole call fails
    when ``all_or_none``), the rest are written, then the after phase runs.
    Any exception from there on rolls the operation back. Calls made from
    inside a trigger share the caller's transaction and never commit.
    """

    entity_type = "crm.opportunity"

    def __init__(
        self,
        notification_sink: NotificationSink | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        handler: LifecycleHandler | None = None,
    ) -> None:
        self.clock = clock or system_clock
        self.store = SqlRecordStore(self)
        self.handler = handler or OpportunityLifecycleHandler(
            self.store,
            notification_sink=notification_sink,
            clock=self.clock,
            settings=settings,
        )
        self.dispatcher = TriggerDispatcher(self.handler)

    def get_opportunity(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        include_deleted: bool = False,
    ) -> OpportunityRead:
        stmt = select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id)
        if not include_deleted:
            stmt = stmt.where(CRMOpportunity.deleted_at.is_(None))
        opportunity = session.scalar(stmt)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return OpportunityRead.model_validate(opportunity)

    def insert_opportunities(
        self,
        session: Session,
        records: list[OpportunityCreate],
        all_or_none: bool = False,
        actor_user_id: str = "system",
    ) -> list[SaveResult]:
        operation_id = uuid.uuid4()
        depth = get_trigger_depth() or 0
        now = self.clock.now()
        batch = [
            OpportunityRecord(id=uuid.uuid4(), created_at=now, updated_at=now, **dto.model_dump())
            for dto in records
        ]
        try:
            self._fire(session, operation_id, OperationKind.INSERT, TriggerPhase.BEFORE, depth, new=batch)
            results = [self._result(record) for record in batch]
            accepted = [record for record in batch if not record.has_errors]
            self._check_all_or_none("insert", all_or_none, results)

            rows = [CRMOpportunity(**record.model_dump(include=INSERT_FIELDS)) for record in accepted]
            session.add_all(rows)
            session.flush()

            self._fire(session, operation_id, OperationKind.INSERT, TriggerPhase.AFTER, depth, new=accepted)
            self._finish(session, depth)
        except Exception:
            self._abort(session, depth)
            raise
        finally:
            self.dispatcher.complete(operation_id)

        for row in rows:
            self._record_change(actor_user_id, "create", "crm.opportunity.created", None, row)
        return results

    def update_opportunities(
        self,
        session: Session,
        updates: list[OpportunityUpdate],
        all_or_none: bool = False,
        actor_user_id: str = "system",
    ) -> list[SaveResult]:
        operation_id = uuid.uuid4()
        depth = get_trigger_depth() or 0
        rows = self._load_rows(session, [dto.id for dto in updates], deleted=False)

        old: dict[uuid.UUID, OpportunityRecord] = {}
        batch: list[OpportunityRecord] = []
        outcome: list[OpportunityRecord | SaveResult] = []
        seen: set[uuid.UUID] = set()
        for dto in updates:
            row = rows.get(dto.id)
            if row is None:
                outcome.append(SaveResult(id=dto.id, success=False, errors=["opportunity not found"]))
                continue
            if dto.id in seen:
                outcome.append(SaveResult(id=dto.id, success=False, errors=["duplicate id in batch"]))
                continue
            seen.add(dto.id)
            changes = dto.model_dump(exclude_unset=True, exclude={"id"})
            nulled = [name for name in NON_NULLABLE_FIELDS if name in changes and changes[name] is None]
            if nulled:
                outcome.append(
                    SaveResult(id=dto.id, success=False, errors=[f"{name} cannot be null" for name in nulled])
                )
                continue
            previous = OpportunityRecord.model_validate(row)
            old[dto.id] = previous
            record = previous.model_copy(update=changes, deep=True)
            batch.append(record)
            outcome.append(record)

        before_state = {record_id: _snapshot(rows[record_id]) for record_id in old}
        try:
            self._fire(session, operation_id, OperationKind.UPDATE, TriggerPhase.BEFORE, depth, new=batch, old=old)
            results = [self._result(item) if isinstance(item, OpportunityRecord) else item for item in outcome]
            accepted = [record for record in batch if not record.has_errors]
            self._check_all_or_none("update", all_or_none, results)

            now = self.clock.now()
            for record in accepted:
                row = rows[record.id]
                for field_name in WRITABLE_FIELDS:
                    setattr(row, field_name, getattr(record, field_name))
                row.updated_at = now
                row.row_version = row.row_version + 1
            session.flush()

            self._fire(
                session,
                operation_id,
                OperationKind.UPDATE,
                TriggerPhase.AFTER,
                depth,
                new=accepted,
                old={record.id: old[record.id] for record in accepted},
            )
            self._finish(session, depth)
        except Exception:
            self._abort(session, depth)
            raise
        finally:
            self.dispatcher.complete(operation_id)

        for record in accepted:
            self._record_change(
                actor_user_id, "update", "crm.opportunity.updated", before_state[record.id], rows[record.id]
            )
        return results

    def delete_opportunities(
        self,
        session: Session,
        opportunity_ids: list[uuid.UUID],
        all_or_none: bool = False,
        actor_user_id: str = "system",
    ) -> list[SaveResult]:
        operation_id = uuid.uuid4()
        depth = get_trigger_depth() or 0
        rows = self._load_rows(session, opportunity_ids, deleted=False)
        old = {row_id: OpportunityRecord.model_validate(row) for row_id, row in rows.items()}
        before_state = {row_id: _snapshot(row) for row_id, row in rows.items()}

        try:
            self._fire(session, operation_id, OperationKind.DELETE, TriggerPhase.BEFORE, depth, old=old)
            results = self._results_for_ids(opportunity_ids, old, "opportunity not found")
            accepted = {record_id: record for record_id, record in old.items() if not record.has_errors}
            self._check_all_or_none("delete", all_or_none, results)

            now = self.clock.now()
            for record_id in accepted:
                rows[record_id].deleted_at = now
                rows[record_id].row_version = rows[record_id].row_version + 1
            session.flush()

            self._fire(session, operation_id, OperationKind.DELETE, TriggerPhase.AFTER, depth, old=accepted)
            self._finish(session, depth)
        except Exception:
            self._abort(session, depth)
            raise
        finally:
            self.dispatcher.complete(operation_id)

        for record_id in accepted:
            self._record_change(
                actor_user_id, "delete", "crm.opportunity.deleted", before_state[record_id], rows[record_id]
            )
        return results

    def undelete_opportunities(
        self,
        session: Session,
        opportunity_ids: list[uuid.UUID],
        all_or_none: bool = False,
        actor_user_id: str = "system",
    ) -> list[SaveResult]:
        operation_id = uuid.uuid4()
        depth = get_trigger_depth() or 0
        rows = self._load_rows(session, opportunity_ids, deleted=True)
        restored = {row_id: OpportunityRecord.model_validate(row) for row_id, row in rows.items()}

        try:
            self._fire(
                session, operation_id, OperationKind.UNDELETE, TriggerPhase.BEFORE, depth, new=list(restored.values())
            )
            results = self._results_for_ids(opportunity_ids, restored, "opportunity not found in recycle bin")
            accepted = [record for record in restored.values() if not record.has_errors]
            self._check_all_or_none("undelete", all_or_none, results)

            for record in accepted:
                row = rows[record.id]
                row.deleted_at = None
                row.row_version = row.row_version + 1
                record.deleted_at = None
                record.row_version = row.row_version
            session.flush()

            self._fire(session, operation_id, OperationKind.UNDELETE, TriggerPhase.AFTER, depth, new=accepted)
            self._finish(session, depth)
        except Exception:
            self._abort(session, depth)
            raise
        finally:
            self.dispatcher.complete(operation_id)

        for record in accepted:
            self._record_change(actor_user_id, "undelete", "crm.opportunity.undeleted", None, rows[record.id])
        return results

    def _fire(
        self,
        session: Session,
        operation_id: uuid.UUID,
        kind: OperationKind,
        phase: TriggerPhase,
        depth: int,
        new: list[OpportunityRecord] | None = None,
        old: dict[uuid.UUID, OpportunityRecord] | None = None,
    ) -> None:
        if not new and not old:
            return
        event = TriggerEvent(
            operation_id=operation_id,
            kind=kind,
            phase=phase,
            new=new or [],
            old=old or {},
            depth=depth,
        )
        if not self.dispatcher.dispatch(session, event) and self.dispatcher.has_route(kind, phase):
            # Writes never proceed without their rules.
            raise DependencyFailure(
                "trigger_guard", f"{kind.value} {phase.value} rules were skipped at trigger depth {depth}"
            )

    def _load_rows(
        self,
        session: Session,
        opportunity_ids: Iterable[uuid.UUID],
        deleted: bool,
    ) -> dict[uuid.UUID, CRMOpportunity]:
        ids = list(dict.fromkeys(opportunity_ids))
        if not ids:
            return {}
        deleted_filter = CRMOpportunity.deleted_at.is_not(None) if deleted else CRMOpportunity.deleted_at.is_(None)
        stmt = select(CRMOpportunity).where(CRMOpportunity.id.in_(ids), deleted_filter)
        loaded = {row.id: row for row in session.scalars(stmt).all()}
        return {row_id: loaded[row_id] for row_id in ids if row_id in loaded}

    @staticmethod
    def _result(record: OpportunityRecord) -> SaveResult:
        return SaveResult(id=record.id, success=not record.has_errors, errors=list(record.errors))

    def _results_for_ids(
        self,
        opportunity_ids: list[uuid.UUID],
        records: dict[uuid.UUID, OpportunityRecord],
        missing_message: str,
    ) -> list[SaveResult]:
        results: list[SaveResult] = []
        seen: set[uuid.UUID] = set()
        for opportunity_id in opportunity_ids:
            record = records.get(opportunity_id)
            if record is None:
                results.append(SaveResult(id=opportunity_id, success=False, errors=[missing_message]))
            elif opportunity_id in seen:
                results.append(SaveResult(id=opportunity_id, success=False, errors=["duplicate id in batch"]))
            else:
                results.append(self._result(record))
            seen.add(opportunity_id)
        return results

    @staticmethod
    def _check_all_or_none(operation: str, all_or_none: bool, results: list[SaveResult]) -> None:
        rejected = [result for result in results if not result.success]
        if not rejected:
            return
        logger.info(
            "opportunity.dml_rejected",
            extra={"operation": operation, "record_count": len(results), "rejected_count": len(rejected)},
        )
        if all_or_none:
            raise DmlError(operation, results)

    @staticmethod
    def _finish(session: Session, depth: int) -> None:
        if depth == 0:
            session.commit()
        else:
            session.flush()

    @staticmethod
    def _abort(session: Session, depth: int) -> None:
        if depth == 0:
            session.rollback()

    def _record_change(
        self,
        actor_user_id: str,
        action: str,
        event_type: str,
        before: dict[str, Any] | None,
        row: CRMOpportunity,
    ) -> None:
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action=action,
            before=before,
            after=_snapshot(row),
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": self.clock.now().isoformat(),
                "actor_user_id": actor_user_id,
                "version": 1,
                "payload": {
                    "opportunity_id": str(row.id),
                    "account_id": str(row.account_id),
                    "stage": row.stage,
                    "row_version": row.row_version,
                },
            }
        )


def _snapshot(row: CRMOpportunity) -> dict[str, Any]:
    return OpportunityRead.model_validate(row).model_dump(mode="json")
