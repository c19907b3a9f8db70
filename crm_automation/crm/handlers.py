from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from crm_automation.core.clock import Clock, system_clock
from crm_automation.core.config import Settings, get_settings
from crm_automation.crm.contacts import ContactResolver, PrimaryContactAssigner, first_contact_per_account
from crm_automation.crm.notifications import NotificationSink, get_notification_sink
from crm_automation.crm.repositories import RecordStore
from crm_automation.crm.schemas import EmailNotification, OpportunityRecord, TaskCreate
from crm_automation.crm.triggers import TriggerEvent
from crm_automation.metrics import (
    observe_followup_tasks_created,
    observe_notification_failure,
    observe_validation_rejection,
)


logger = logging.getLogger("crm_automation.crm.handlers")


class OpportunityLifecycleHandler:
    """Business rules for opportunities, one method per lifecycle phase.

    Before phases only touch the in-memory batch (plus read-only lookups) and
    report problems with ``record.add_error``. After phases talk to the store
    and the notification sink; their failures propagate, except for the
    delete notification which is logged and dropped.
    """

    def __init__(
        self,
        store: RecordStore,
        notification_sink: NotificationSink | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.resolver = ContactResolver(store)
        self.assigner = PrimaryContactAssigner()
        self._notification_sink = notification_sink
        self.clock = clock or system_clock
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def notification_sink(self) -> NotificationSink:
        if self._notification_sink is None:
            self._notification_sink = get_notification_sink(self.settings)
        return self._notification_sink

    def before_insert(self, session: Session, event: TriggerEvent) -> None:
        default_type = self.settings.opportunity_default_type
        for record in event.new:
            if not record.type:
                record.type = default_type

    def before_update(self, session: Session, event: TriggerEvent) -> None:
        threshold = self.settings.opportunity_min_amount
        accepted: list[OpportunityRecord] = []
        rejected = 0
        for record in event.new:
            if record.amount <= threshold:
                record.add_error(f"Opportunity amount must be greater than {threshold}")
                rejected += 1
                continue
            previous = event.old.get(record.id)
            if previous is not None and previous.stage != record.stage:
                self._annotate_stage_change(record)
            accepted.append(record)
        observe_validation_rejection("AMOUNT_TOO_LOW", rejected)

        if not accepted:
            return
        account_ids = {record.account_id for record in accepted}
        contacts_by_account = self.resolver.resolve_by_title(session, account_ids, self.settings.update_contact_title)
        self.assigner.apply_in_place(accepted, contacts_by_account)

    def before_delete(self, session: Session, event: TriggerEvent) -> None:
        rejected = 0
        for record in event.old.values():
            if record.is_closed:
                record.add_error("Cannot delete a closed opportunity")
                rejected += 1
        observe_validation_rejection("CLOSED_DELETE", rejected)

    def after_insert(self, session: Session, event: TriggerEvent) -> None:
        due_offset = timedelta(days=self.settings.followup_task_due_days)
        tasks = [
            TaskCreate(
                subject=self.settings.followup_task_subject,
                entity_id=record.id,
                assigned_to_user_id=record.owner_user_id,
                contact_id=record.primary_contact_id,
                due_date=record.created_at.date() + due_offset,
            )
            for record in event.new
        ]
        if not tasks:
            return
        task_ids = self.store.insert_tasks(session, tasks)
        observe_followup_tasks_created(len(task_ids))

    def after_update(self, session: Session, event: TriggerEvent) -> None:
        return None

    def after_delete(self, session: Session, event: TriggerEvent) -> None:
        deleted = list(event.old.values())
        if not deleted:
            return
        owner_emails = self.store.owner_emails(session, [record.id for record in deleted])
        notifications = [
            EmailNotification(
                to=owner_emails[record.id],
                subject=f"Opportunity Deleted : {record.name}",
                body=f"Your Opportunity: {record.name} has been deleted.",
            )
            for record in deleted
            if record.id in owner_emails
        ]
        if not notifications:
            return

        try:
            results = self.notification_sink.send_bulk(notifications)
        except Exception as exc:
            # Delivery failures never roll back the delete.
            logger.exception(
                "opportunity_delete_notification_failed",
                extra={
                    "operation_id": str(event.operation_id),
                    "record_count": len(notifications),
                    "error": str(exc),
                },
            )
            observe_notification_failure("SEND_FAILED", len(notifications))
            return

        failed = [result for result in results if not result.success]
        if failed:
            logger.warning(
                "opportunity_delete_notification_rejected",
                extra={
                    "operation_id": str(event.operation_id),
                    "rejected_count": len(failed),
                    "error": "; ".join(result.error or "unknown" for result in failed),
                },
            )
            observe_notification_failure("REJECTED", len(failed))

    def after_undelete(self, session: Session, event: TriggerEvent) -> None:
        if not event.new:
            return
        account_ids = {record.account_id for record in event.new}
        contacts_by_account = self.resolver.resolve_any_contact(
            session, account_ids, self.settings.undelete_contact_title
        )
        patches = self.assigner.assign(event.new, first_contact_per_account(contacts_by_account))
        if patches:
            self.store.update_opportunities(session, patches)

    def _annotate_stage_change(self, record: OpportunityRecord) -> None:
        line = f"Stage Change:{record.stage}:{self.clock.now().isoformat()}"
        record.description = f"{record.description}\n{line}" if record.description else line
