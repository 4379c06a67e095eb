"""Junction-table maintenance shared by every CRM and project mutation.

Relation sets are replaced wholesale: the rows for the owner are deleted and
the requested set is inserted again, all inside the caller's transaction.
``None`` means the caller did not send the field and the relation is left as
it is; an empty list clears it.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.crm.models import (
    CRMAccount,
    CRMAccountWatcher,
    CRMContact,
    CRMContactOpportunity,
    CRMDocument,
    CRMDocumentAccount,
    CRMDocumentContact,
    CRMDocumentInvoice,
    CRMDocumentLead,
    CRMDocumentOpportunity,
    CRMDocumentTask,
    CRMInvoice,
    CRMLead,
    CRMOpportunity,
)
from app.metrics import observe_junction_rows
from app.projects.models import BoardWatcher, Task, TaskComment
from app.users.models import User


@dataclass(frozen=True)
class LinkSpec:
    name: str
    model: type[Any]
    owner_column: str
    target_column: str
    target_model: type[Any]

    def reversed(self, owner_model: type[Any]) -> LinkSpec:
        return LinkSpec(
            name=self.name,
            model=self.model,
            owner_column=self.target_column,
            target_column=self.owner_column,
            target_model=owner_model,
        )


ACCOUNT_WATCHERS = LinkSpec("watchers", CRMAccountWatcher, "account_id", "user_id", User)
BOARD_WATCHERS = LinkSpec("watchers", BoardWatcher, "board_id", "user_id", User)
CONTACT_OPPORTUNITIES = LinkSpec("opportunities", CRMContactOpportunity, "contact_id", "opportunity_id", CRMOpportunity)
OPPORTUNITY_CONTACTS = CONTACT_OPPORTUNITIES.reversed(CRMContact)

ACCOUNT_DOCUMENTS = LinkSpec("documents", CRMDocumentAccount, "account_id", "document_id", CRMDocument)
CONTACT_DOCUMENTS = LinkSpec("documents", CRMDocumentContact, "contact_id", "document_id", CRMDocument)
LEAD_DOCUMENTS = LinkSpec("documents", CRMDocumentLead, "lead_id", "document_id", CRMDocument)
OPPORTUNITY_DOCUMENTS = LinkSpec("documents", CRMDocumentOpportunity, "opportunity_id", "document_id", CRMDocument)
INVOICE_DOCUMENTS = LinkSpec("documents", CRMDocumentInvoice, "invoice_id", "document_id", CRMDocument)
TASK_DOCUMENTS = LinkSpec("documents", CRMDocumentTask, "task_id", "document_id", CRMDocument)

DOCUMENT_ACCOUNTS = ACCOUNT_DOCUMENTS.reversed(CRMAccount)
DOCUMENT_CONTACTS = CONTACT_DOCUMENTS.reversed(CRMContact)
DOCUMENT_LEADS = LEAD_DOCUMENTS.reversed(CRMLead)
DOCUMENT_OPPORTUNITIES = OPPORTUNITY_DOCUMENTS.reversed(CRMOpportunity)
DOCUMENT_INVOICES = INVOICE_DOCUMENTS.reversed(CRMInvoice)
DOCUMENT_TASKS = TASK_DOCUMENTS.reversed(Task)

DOCUMENT_LINKS = (
    DOCUMENT_ACCOUNTS,
    DOCUMENT_CONTACTS,
    DOCUMENT_LEADS,
    DOCUMENT_OPPORTUNITIES,
    DOCUMENT_INVOICES,
    DOCUMENT_TASKS,
)


def dedupe_ids(ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
    return list(dict.fromkeys(ids))


def linked_ids(session: Session, spec: LinkSpec, owner_id: uuid.UUID) -> list[uuid.UUID]:
    owner_col = getattr(spec.model, spec.owner_column)
    target_col = getattr(spec.model, spec.target_column)
    rows = session.scalars(select(target_col).where(owner_col == owner_id).order_by(spec.model.id)).all()
    return list(rows)


def ensure_targets_exist(session: Session, spec: LinkSpec, target_ids: list[uuid.UUID]) -> None:
    if not target_ids:
        return
    found = set(session.scalars(select(spec.target_model.id).where(spec.target_model.id.in_(target_ids))).all())
    missing = [str(item) for item in target_ids if item not in found]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": f"unknown {spec.name} ids", "ids": missing},
        )


def delete_links(session: Session, spec: LinkSpec, owner_id: uuid.UUID) -> int:
    owner_col = getattr(spec.model, spec.owner_column)
    result = session.execute(delete(spec.model).where(owner_col == owner_id))
    return int(result.rowcount or 0)


def delete_links_for_owners(session: Session, spec: LinkSpec, owner_ids: list[uuid.UUID]) -> int:
    if not owner_ids:
        return 0
    owner_col = getattr(spec.model, spec.owner_column)
    result = session.execute(delete(spec.model).where(owner_col.in_(owner_ids)))
    return int(result.rowcount or 0)


def reconcile_links(
    session: Session,
    spec: LinkSpec,
    owner_id: uuid.UUID,
    target_ids: list[uuid.UUID] | None,
) -> list[uuid.UUID] | None:
    if target_ids is None:
        return None

    desired = dedupe_ids(target_ids)
    ensure_targets_exist(session, spec, desired)

    delete_links(session, spec, owner_id)
    session.add_all(spec.model(**{spec.owner_column: owner_id, spec.target_column: target_id}) for target_id in desired)
    observe_junction_rows(spec.model.__tablename__, len(desired))
    session.flush()
    return desired


def add_link(session: Session, spec: LinkSpec, owner_id: uuid.UUID, target_id: uuid.UUID) -> bool:
    owner_col = getattr(spec.model, spec.owner_column)
    target_col = getattr(spec.model, spec.target_column)
    existing = session.scalar(select(spec.model.id).where(owner_col == owner_id, target_col == target_id))
    if existing is not None:
        return False
    session.add(spec.model(**{spec.owner_column: owner_id, spec.target_column: target_id}))
    session.flush()
    return True


def remove_link(session: Session, spec: LinkSpec, owner_id: uuid.UUID, target_id: uuid.UUID) -> bool:
    owner_col = getattr(spec.model, spec.owner_column)
    target_col = getattr(spec.model, spec.target_column)
    result = session.execute(delete(spec.model).where(owner_col == owner_id, target_col == target_id))
    return bool(result.rowcount)


def delete_task_rows(session: Session, task_ids: list[uuid.UUID]) -> int:
    """Remove tasks with their comments and document links."""
    if not task_ids:
        return 0
    session.execute(delete(TaskComment).where(TaskComment.task_id.in_(task_ids)))
    delete_links_for_owners(session, TASK_DOCUMENTS, task_ids)
    result = session.execute(delete(Task).where(Task.id.in_(task_ids)))
    return int(result.rowcount or 0)
