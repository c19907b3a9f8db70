from __future__ import annotations

import uuid
from collections.abc import Collection, Iterable, Mapping

from sqlalchemy.orm import Session

from crm_automation.crm.repositories import RecordStore
from crm_automation.crm.schemas import ContactRef, OpportunityPatch, OpportunityRecord


class ContactResolver:
    """Read-only account -> contact lookups used to fill primary contacts."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def resolve_by_title(
        self,
        session: Session,
        account_ids: Collection[uuid.UUID],
        title: str,
    ) -> dict[uuid.UUID, uuid.UUID]:
        """Return one contact id per account whose contact has exactly ``title``.

        Ties within an account go to the smallest first name. Accounts without
        a match are left out of the result.
        """
        if not account_ids:
            return {}
        resolved: dict[uuid.UUID, uuid.UUID] = {}
        for contact in self.store.contacts_by_title(session, account_ids, title):
            resolved.setdefault(contact.account_id, contact.id)
        return resolved

    def resolve_any_contact(
        self,
        session: Session,
        account_ids: Collection[uuid.UUID],
        title: str,
    ) -> dict[uuid.UUID, list[ContactRef]]:
        """Return the accounts with their ``title`` contacts in store order."""
        if not account_ids:
            return {}
        return {
            account.account_id: list(account.contacts)
            for account in self.store.accounts_with_contacts(session, account_ids, title)
        }


def first_contact_per_account(contacts_by_account: Mapping[uuid.UUID, list[ContactRef]]) -> dict[uuid.UUID, uuid.UUID]:
    return {account_id: contacts[0].id for account_id, contacts in contacts_by_account.items() if contacts}


class PrimaryContactAssigner:
    def assign(
        self,
        opportunities: Iterable[OpportunityRecord],
        contacts_by_account: Mapping[uuid.UUID, uuid.UUID],
    ) -> list[OpportunityPatch]:
        patches: list[OpportunityPatch] = []
        seen: set[uuid.UUID] = set()
        for opportunity in opportunities:
            if opportunity.id in seen or opportunity.primary_contact_id is not None:
                continue
            contact_id = contacts_by_account.get(opportunity.account_id)
            if contact_id is None:
                continue
            seen.add(opportunity.id)
            patches.append(OpportunityPatch(id=opportunity.id, primary_contact_id=contact_id))
        return patches

    def apply_in_place(
        self,
        opportunities: Iterable[OpportunityRecord],
        contacts_by_account: Mapping[uuid.UUID, uuid.UUID],
    ) -> int:
        filled = 0
        for opportunity in opportunities:
            if opportunity.primary_contact_id is not None:
                continue
            contact_id = contacts_by_account.get(opportunity.account_id)
            if contact_id is None:
                continue
            opportunity.primary_contact_id = contact_id
            filled += 1
        return filled
