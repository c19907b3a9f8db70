from __future__ import annotations

import uuid
from collections.abc import Collection
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from crm_automation.crm.errors import DependencyFailure
from crm_automation.crm.models import CRMAccount, CRMActivity, CRMContact, CRMOpportunity, CRMUser
from crm_automation.crm.schemas import (
    AccountContacts,
    ContactRef,
    OpportunityPatch,
    OpportunityUpdate,
    SaveResult,
    TaskCreate,
)


class OpportunityWriter(Protocol):
    def update_opportunities(
        self,
        session: Session,
        updates: list[OpportunityUpdate],
        all_or_none: bool = False,
    ) -> list[SaveResult]: ...


class RecordStore(Protocol):
    def contacts_by_title(
        self, session: Session, account_ids: Collection[uuid.UUID], title: str
    ) -> list[ContactRef]: ...

    def accounts_with_contacts(
        self, session: Session, account_ids: Collection[uuid.UUID], title: str
    ) -> list[AccountContacts]: ...

    def owner_emails(self, session: Session, opportunity_ids: Collection[uuid.UUID]) -> dict[uuid.UUID, str]: ...

    def insert_tasks(self, session: Session, tasks: list[TaskCreate]) -> list[uuid.UUID]: ...

    def update_opportunities(self, session: Session, patches: list[OpportunityPatch]) -> list[SaveResult]: ...


class SqlRecordStore:
    def __init__(self, writer: OpportunityWriter) -> None:
        self.writer = writer

    def contacts_by_title(
        self, session: Session, account_ids: Collection[uuid.UUID], title: str
    ) -> list[ContactRef]:
        stmt = (
            select(CRMContact)
            .where(CRMContact.account_id.in_(list(account_ids)), CRMContact.title == title)
            .order_by(CRMContact.first_name.asc(), CRMContact.id.asc())
        )
        return [ContactRef.model_validate(contact) for contact in session.scalars(stmt).all()]

    def accounts_with_contacts(
        self, session: Session, account_ids: Collection[uuid.UUID], title: str
    ) -> list[AccountContacts]:
        stmt = (
            select(CRMAccount)
            .where(CRMAccount.id.in_(list(account_ids)))
            .options(selectinload(CRMAccount.contacts.and_(CRMContact.title == title)))
            .execution_options(populate_existing=True)
        )
        return [
            AccountContacts(
                account_id=account.id,
                contacts=[ContactRef.model_validate(contact) for contact in account.contacts],
            )
            for account in session.scalars(stmt).all()
        ]

    def owner_emails(self, session: Session, opportunity_ids: Collection[uuid.UUID]) -> dict[uuid.UUID, str]:
        # Runs after the soft delete is flushed, so deleted rows must still match.
        stmt = (
            select(CRMOpportunity.id, CRMUser.email)
            .join(CRMUser, CRMUser.id == CRMOpportunity.owner_user_id)
            .where(CRMOpportunity.id.in_(list(opportunity_ids)))
        )
        try:
            rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise DependencyFailure("owner_email_lookup", str(exc)) from exc
        return {opportunity_id: email for opportunity_id, email in rows if email}

    def insert_tasks(self, session: Session, tasks: list[TaskCreate]) -> list[uuid.UUID]:
        activities = [
            CRMActivity(
                entity_type=task.entity_type,
                entity_id=task.entity_id,
                activity_type="Task",
                subject=task.subject,
                assigned_to_user_id=task.assigned_to_user_id,
                contact_id=task.contact_id,
                due_date=task.due_date,
            )
            for task in tasks
        ]
        try:
            session.add_all(activities)
            session.flush()
        except SQLAlchemyError as exc:
            raise DependencyFailure("task_insert", str(exc)) from exc
        return [activity.id for activity in activities]

    def update_opportunities(self, session: Session, patches: list[OpportunityPatch]) -> list[SaveResult]:
        updates = [OpportunityUpdate(id=patch.id, primary_contact_id=patch.primary_contact_id) for patch in patches]
        return self.writer.update_opportunities(session, updates, all_or_none=True)
