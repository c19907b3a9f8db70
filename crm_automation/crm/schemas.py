from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from crm_automation.crm.models import CLOSED_STAGES


class OpportunityRecord(BaseModel):
    """Working copy of an opportunity as seen by the lifecycle handler.

    Before-phase handlers mutate these copies; the persistence layer writes
    back only the records that finish the phase without errors.
    """

    model_config = ConfigDict(from_attributes=True, validate_assignment=False)

    id: UUID
    account_id: UUID
    name: str
    amount: Decimal = Decimal("0")
    stage: str
    type: str | None = None
    description: str | None = None
    primary_contact_id: UUID | None = None
    owner_user_id: UUID | None = None
    created_at: datetime
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    row_version: int = 1
    errors: list[str] = Field(default_factory=list, exclude=True)

    @property
    def is_closed(self) -> bool:
        return self.stage in CLOSED_STAGES

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class OpportunityCreate(BaseModel):
    account_id: UUID
    name: str = Field(min_length=1)
    amount: Decimal = Decimal("0")
    stage: str = Field(min_length=1)
    type: str | None = None
    description: str | None = None
    primary_contact_id: UUID | None = None
    owner_user_id: UUID | None = None


class OpportunityUpdate(BaseModel):
    id: UUID
    name: str | None = None
    amount: Decimal | None = None
    stage: str | None = None
    type: str | None = None
    description: str | None = None
    primary_contact_id: UUID | None = None
    owner_user_id: UUID | None = None


class OpportunityPatch(BaseModel):
    id: UUID
    primary_contact_id: UUID


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    name: str
    amount: Decimal
    stage: str
    type: str | None
    description: str | None
    primary_contact_id: UUID | None
    owner_user_id: UUID | None
    is_closed: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class ContactRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    first_name: str
    title: str | None = None


class AccountContacts(BaseModel):
    account_id: UUID
    contacts: list[ContactRef] = Field(default_factory=list)


class TaskCreate(BaseModel):
    subject: str
    entity_type: str = "opportunity"
    entity_id: UUID
    assigned_to_user_id: UUID | None = None
    contact_id: UUID | None = None
    due_date: date


class EmailNotification(BaseModel):
    to: str
    subject: str
    body: str


class SendResult(BaseModel):
    to: str
    success: bool
    message_id: str | None = None
    error: str | None = None


class SaveResult(BaseModel):
    id: UUID | None
    success: bool
    errors: list[str] = Field(default_factory=list)


class BulkInsertRequest(BaseModel):
    records: list[OpportunityCreate] = Field(min_length=1)
    all_or_none: bool = False


class BulkUpdateRequest(BaseModel):
    records: list[OpportunityUpdate] = Field(min_length=1)
    all_or_none: bool = False


class BulkIdsRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)
    all_or_none: bool = False
