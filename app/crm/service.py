from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, inspect, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import ActorUser
from app.core.authz import can_delete_document, require_task_participant
from app.core.config import get_settings
from app.core.database import rollback_on_error, versioned_update
from app.crm.models import (
    CRMAccount,
    CRMContact,
    CRMDocument,
    CRMInvoice,
    CRMLead,
    CRMOpportunity,
)
from app.crm.relations import (
    ACCOUNT_DOCUMENTS,
    ACCOUNT_WATCHERS,
    CONTACT_DOCUMENTS,
    CONTACT_OPPORTUNITIES,
    DOCUMENT_ACCOUNTS,
    DOCUMENT_CONTACTS,
    DOCUMENT_INVOICES,
    DOCUMENT_LEADS,
    DOCUMENT_LINKS,
    DOCUMENT_OPPORTUNITIES,
    DOCUMENT_TASKS,
    INVOICE_DOCUMENTS,
    LEAD_DOCUMENTS,
    OPPORTUNITY_CONTACTS,
    OPPORTUNITY_DOCUMENTS,
    TASK_DOCUMENTS,
    add_link,
    delete_links,
    delete_task_rows,
    linked_ids,
    reconcile_links,
    remove_link,
)
from app.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CRMTaskCreate,
    DocumentCreate,
    DocumentRead,
    DocumentUpdate,
    InvoiceCreate,
    InvoiceRead,
    InvoiceUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    RemoteContactCreate,
    UserSummary,
    WebLeadCreate,
)
from app.notifications import PostCommitEffects, delete_objects, emails_for_users, notify
from app.projects.models import Task
from app.projects.schemas import TaskRead
from app.projects.service import task_service
from app.storage import key_from_url
from app.users.models import User


logger = logging.getLogger("app.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _columns(entity: Any) -> dict[str, Any]:
    return {attr.key: getattr(entity, attr.key) for attr in inspect(entity).mapper.column_attrs}


def _scalar_changes(dto: Any, fields: tuple[str, ...], required: tuple[str, ...] = ()) -> dict[str, Any]:
    """Collect the scalar fields the caller actually sent; explicit nulls clear optional columns."""
    changes: dict[str, Any] = {}
    for name in fields:
        if name not in dto.model_fields_set:
            continue
        value = getattr(dto, name)
        if value is None and name in required:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} cannot be null")
        changes[name] = value
    return changes


def _ensure_user(session: Session, user_id: uuid.UUID | None, field: str) -> None:
    if user_id is None:
        return
    if session.scalar(select(User.id).where(User.id == user_id)) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"unknown user for {field}")


def _ensure_account(session: Session, account_id: uuid.UUID | None) -> None:
    if account_id is None:
        return
    if session.scalar(select(CRMAccount.id).where(CRMAccount.id == account_id)) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unknown account_id")


def _record_url(path: str, entity_id: uuid.UUID) -> str:
    return f"{get_settings().app_public_url.rstrip('/')}/{path}/{entity_id}"


def find_or_create_account(session: Session, company: str, description: str) -> tuple[CRMAccount, bool]:
    name = company.strip()
    existing = session.scalar(
        select(CRMAccount)
        .where(func.lower(CRMAccount.name) == name.lower())
        .order_by(CRMAccount.created_at.asc())
        .limit(1)
    )
    if existing is not None:
        return existing, False

    account = CRMAccount(name=name, type="Prospect", status="Inactive", description=description)
    session.add(account)
    session.flush()
    return account, True


class AccountService:
    entity_type = "crm.account"
    scalar_fields = (
        "name",
        "status",
        "type",
        "description",
        "email",
        "website",
        "office_phone",
        "industry",
        "billing_street",
        "billing_city",
        "billing_state",
        "billing_postal_code",
        "billing_country",
        "shipping_street",
        "shipping_city",
        "shipping_state",
        "shipping_postal_code",
        "shipping_country",
        "assigned_to",
    )

    def create_account(self, session: Session, actor_user: ActorUser, dto: AccountCreate) -> AccountRead:
        with rollback_on_error(session):
            _ensure_user(session, dto.assigned_to, "assigned_to")
            account = CRMAccount(
                **dto.model_dump(include=set(self.scalar_fields)),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(account)
            session.flush()

            reconcile_links(session, ACCOUNT_WATCHERS, account.id, dto.watchers)
            reconcile_links(session, ACCOUNT_DOCUMENTS, account.id, dto.document_ids)

            after = self._to_read_model(session, account.id).model_dump(mode="json")
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=account.id,
                action="create",
                before=None,
                after=after,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.account.created",
                    actor_user.user_id,
                    {"account_id": str(account.id), "name": account.name, "status": account.status},
                )
            )
        session.commit()
        return self._to_read_model(session, account.id)

    def list_accounts(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        name: str | None = None,
        status_filter: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[AccountRead]:
        stmt = select(CRMAccount)
        if name:
            stmt = stmt.where(CRMAccount.name.ilike(f"%{name}%"))
        if status_filter:
            stmt = stmt.where(CRMAccount.status == status_filter)
        stmt = stmt.order_by(CRMAccount.created_at.desc(), CRMAccount.id).offset(offset).limit(limit)
        return [self._to_read(session, account) for account in session.scalars(stmt).all()]

    def get_account(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> AccountRead:
        return self._to_read(session, self._get(session, account_id))

    def update_account(
        self,
        session: Session,
        actor_user: ActorUser,
        account_id: uuid.UUID,
        dto: AccountUpdate,
    ) -> AccountRead:
        existing = self._get(session, account_id)
        before = self._to_read(session, existing).model_dump(mode="json")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            changes = _scalar_changes(dto, self.scalar_fields, required=("name", "status"))
            if "name" in changes:
                changes["name"] = changes["name"].strip()
            _ensure_user(session, changes.get("assigned_to"), "assigned_to")
            changes["updated_by"] = actor_user.user_id
            versioned_update(session, CRMAccount, account_id, dto.row_version, changes)

            reconcile_links(session, ACCOUNT_WATCHERS, account_id, dto.watchers)
            reconcile_links(session, ACCOUNT_DOCUMENTS, account_id, dto.document_ids)

            after_model = self._to_read_model(session, account_id)
            after = after_model.model_dump(mode="json")
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=account_id,
                action="update",
                before=before,
                after=after,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.account.updated",
                    actor_user.user_id,
                    {"account_id": str(account_id), "row_version": after_model.row_version},
                )
            )
            notify(
                effects,
                emails_for_users(session, after_model.watchers, exclude=[actor_user.user_id]),
                "account_updated",
                {
                    "actor_name": actor_user.name or actor_user.email,
                    "name": after_model.name,
                    "url": _record_url("crm/accounts", account_id),
                },
                entity_type=self.entity_type,
                entity_id=account_id,
            )
        session.commit()
        effects.run()
        return after_model

    def delete_account(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> None:
        account = self._get(session, account_id)
        before = self._to_read(session, account).model_dump(mode="json")

        with rollback_on_error(session):
            watchers_removed = delete_links(session, ACCOUNT_WATCHERS, account_id)
            documents_unlinked = delete_links(session, ACCOUNT_DOCUMENTS, account_id)
            for model in (CRMContact, CRMLead, CRMOpportunity, CRMInvoice):
                session.execute(
                    update(model)
                    .where(model.account_id == account_id)
                    .values(account_id=None)
                    .execution_options(synchronize_session="fetch")
                )
            task_ids = list(
                session.scalars(select(Task.id).where(Task.task_kind == "crm", Task.account_id == account_id)).all()
            )
            tasks_removed = delete_task_rows(session, task_ids)
            session.delete(account)
            session.flush()

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=account_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.account.deleted",
                    actor_user.user_id,
                    {
                        "account_id": str(account_id),
                        "watchers_removed": watchers_removed,
                        "documents_unlinked": documents_unlinked,
                        "tasks_removed": tasks_removed,
                    },
                )
            )
        session.commit()
        logger.info(
            "crm.account.deleted",
            extra={"entity_type": self.entity_type, "entity_id": str(account_id), "removed": tasks_removed},
        )

    def list_watchers(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> list[UserSummary]:
        self._get(session, account_id)
        watcher_ids = linked_ids(session, ACCOUNT_WATCHERS, account_id)
        if not watcher_ids:
            return []
        users = session.scalars(select(User).where(User.id.in_(watcher_ids)).order_by(User.name, User.email)).all()
        return [UserSummary.model_validate(user) for user in users]

    def watch(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> AccountRead:
        self._get(session, account_id)
        with rollback_on_error(session):
            if add_link(session, ACCOUNT_WATCHERS, account_id, actor_user.user_id):
                events.publish(
                    events.build_envelope(
                        "crm.account.watched",
                        actor_user.user_id,
                        {"account_id": str(account_id), "user_id": str(actor_user.user_id)},
                    )
                )
        session.commit()
        return self._to_read_model(session, account_id)

    def unwatch(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> AccountRead:
        self._get(session, account_id)
        with rollback_on_error(session):
            if remove_link(session, ACCOUNT_WATCHERS, account_id, actor_user.user_id):
                events.publish(
                    events.build_envelope(
                        "crm.account.unwatched",
                        actor_user.user_id,
                        {"account_id": str(account_id), "user_id": str(actor_user.user_id)},
                    )
                )
        session.commit()
        return self._to_read_model(session, account_id)

    def _get(self, session: Session, account_id: uuid.UUID) -> CRMAccount:
        account = session.get(CRMAccount, account_id)
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
        return account

    def _to_read_model(self, session: Session, account_id: uuid.UUID) -> AccountRead:
        account = session.scalar(select(CRMAccount).where(CRMAccount.id == account_id).execution_options(populate_existing=True))
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
        return self._to_read(session, account)

    def _to_read(self, session: Session, account: CRMAccount) -> AccountRead:
        return AccountRead.model_validate(
            {
                **_columns(account),
                "watchers": linked_ids(session, ACCOUNT_WATCHERS, account.id),
                "document_ids": linked_ids(session, ACCOUNT_DOCUMENTS, account.id),
            }
        )


class ContactService:
    entity_type = "crm.contact"
    scalar_fields = (
        "first_name",
        "last_name",
        "email",
        "office_phone",
        "mobile_phone",
        "position",
        "type",
        "status",
        "description",
        "tags",
        "notes",
        "account_id",
        "assigned_to",
    )

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        effects = PostCommitEffects()
        with rollback_on_error(session):
            _ensure_account(session, dto.account_id)
            _ensure_user(session, dto.assigned_to, "assigned_to")
            contact = CRMContact(
                **dto.model_dump(include=set(self.scalar_fields)),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(contact)
            session.flush()

            reconcile_links(session, CONTACT_OPPORTUNITIES, contact.id, dto.opportunity_ids)
            reconcile_links(session, CONTACT_DOCUMENTS, contact.id, dto.document_ids)

            read_model = self._to_read_model(session, contact.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.contact.created",
                    actor_user.user_id,
                    {"contact_id": str(contact.id), "account_id": str(contact.account_id) if contact.account_id else None},
                )
            )
            self._notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def list_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        account_id: uuid.UUID | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[ContactRead]:
        stmt = select(CRMContact)
        if account_id is not None:
            stmt = stmt.where(CRMContact.account_id == account_id)
        stmt = stmt.order_by(CRMContact.created_at.desc(), CRMContact.id).offset(offset).limit(limit)
        return [self._to_read(session, contact) for contact in session.scalars(stmt).all()]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return self._to_read(session, self._get(session, contact_id))

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        existing = self._get(session, contact_id)
        previous_assignee = existing.assigned_to
        before = self._to_read(session, existing).model_dump(mode="json")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            changes = _scalar_changes(dto, self.scalar_fields, required=("last_name", "status", "tags", "notes"))
            _ensure_account(session, changes.get("account_id"))
            _ensure_user(session, changes.get("assigned_to"), "assigned_to")
            changes["updated_by"] = actor_user.user_id
            versioned_update(session, CRMContact, contact_id, dto.row_version, changes)

            reconcile_links(session, CONTACT_OPPORTUNITIES, contact_id, dto.opportunity_ids)
            reconcile_links(session, CONTACT_DOCUMENTS, contact_id, dto.document_ids)

            read_model = self._to_read_model(session, contact_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=contact_id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.contact.updated",
                    actor_user.user_id,
                    {"contact_id": str(contact_id), "row_version": read_model.row_version},
                )
            )
            if read_model.assigned_to != previous_assignee:
                self._notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        contact = self._get(session, contact_id)
        before = self._to_read(session, contact).model_dump(mode="json")

        with rollback_on_error(session):
            documents_unlinked = delete_links(session, CONTACT_DOCUMENTS, contact_id)
            opportunities_unlinked = delete_links(session, CONTACT_OPPORTUNITIES, contact_id)
            session.delete(contact)
            session.flush()

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=contact_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.contact.deleted",
                    actor_user.user_id,
                    {
                        "contact_id": str(contact_id),
                        "documents_unlinked": documents_unlinked,
                        "opportunities_unlinked": opportunities_unlinked,
                    },
                )
            )
        session.commit()
        logger.info(
            "crm.contact.deleted",
            extra={
                "entity_type": self.entity_type,
                "entity_id": str(contact_id),
                "removed": documents_unlinked + opportunities_unlinked,
            },
        )

    def unlink_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        opportunity_id: uuid.UUID,
    ) -> ContactRead:
        self._get(session, contact_id)
        with rollback_on_error(session):
            if not remove_link(session, CONTACT_OPPORTUNITIES, contact_id, opportunity_id):
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail="contact is not linked to this opportunity",
                )
            session.execute(
                update(CRMContact)
                .where(CRMContact.id == contact_id)
                .values(row_version=CRMContact.row_version + 1, updated_by=actor_user.user_id, updated_at=utcnow())
                .execution_options(synchronize_session="fetch")
            )
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=contact_id,
                action="unlink_opportunity",
                before={"opportunity_id": str(opportunity_id)},
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.contact.opportunity_unlinked",
                    actor_user.user_id,
                    {"contact_id": str(contact_id), "opportunity_id": str(opportunity_id)},
                )
            )
        session.commit()
        return self._to_read_model(session, contact_id)

    def create_from_remote(self, session: Session, dto: RemoteContactCreate) -> tuple[ContactRead, bool]:
        """Create a prospect contact submitted by an external form, linking or creating its account."""
        with rollback_on_error(session):
            _ensure_user(session, dto.assigned_to, "assigned_to")
            account_id = dto.account_id
            if account_id is not None:
                _ensure_account(session, account_id)
            else:
                account, _ = find_or_create_account(
                    session,
                    dto.company,
                    f"Account created automatically from remote contact: {dto.name} {dto.surname}",
                )
                account_id = account.id

            contact = CRMContact(
                first_name=dto.name,
                last_name=dto.surname,
                email=str(dto.email),
                mobile_phone=dto.phone,
                position=dto.position,
                type="Prospect",
                status=True,
                tags=[dto.tag, dto.source],
                notes=[
                    f"Account: {dto.company}",
                    f"Message: {dto.message}",
                    f"Source: {dto.source}",
                    f"Created: {utcnow().isoformat()}",
                ],
                account_id=account_id,
                assigned_to=dto.assigned_to,
                created_by=dto.assigned_to,
                updated_by=dto.assigned_to,
            )
            session.add(contact)
            session.flush()

            read_model = self._to_read_model(session, contact.id)
            audit.record(
                actor_user_id=dto.assigned_to,
                entity_type=self.entity_type,
                entity_id=contact.id,
                action="create_from_remote",
                before=None,
                after=read_model.model_dump(mode="json"),
            )
            events.publish(
                events.build_envelope(
                    "crm.contact.created",
                    dto.assigned_to,
                    {"contact_id": str(contact.id), "account_id": str(account_id), "source": dto.source},
                )
            )
        session.commit()
        return read_model, read_model.account_id is not None

    def _notify_assignee(
        self,
        session: Session,
        effects: PostCommitEffects,
        actor_user: ActorUser,
        contact: ContactRead,
    ) -> None:
        notify(
            effects,
            emails_for_users(session, [contact.assigned_to], exclude=[actor_user.user_id]),
            "contact_assigned",
            {
                "actor_name": actor_user.name or actor_user.email,
                "name": " ".join(part for part in (contact.first_name, contact.last_name) if part),
                "url": _record_url("crm/contacts", contact.id),
            },
            entity_type=self.entity_type,
            entity_id=contact.id,
        )

    def _get(self, session: Session, contact_id: uuid.UUID) -> CRMContact:
        contact = session.get(CRMContact, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return contact

    def _to_read_model(self, session: Session, contact_id: uuid.UUID) -> ContactRead:
        contact = session.scalar(select(CRMContact).where(CRMContact.id == contact_id).execution_options(populate_existing=True))
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        return self._to_read(session, contact)

    def _to_read(self, session: Session, contact: CRMContact) -> ContactRead:
        return ContactRead.model_validate(
            {
                **_columns(contact),
                "tags": list(contact.tags or []),
                "notes": list(contact.notes or []),
                "opportunity_ids": linked_ids(session, CONTACT_OPPORTUNITIES, contact.id),
                "document_ids": linked_ids(session, CONTACT_DOCUMENTS, contact.id),
            }
        )


class LeadService:
    entity_type = "crm.lead"
    scalar_fields = (
        "first_name",
        "last_name",
        "company",
        "job_title",
        "email",
        "phone",
        "description",
        "lead_source",
        "status",
        "type",
        "account_id",
        "assigned_to",
    )

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        effects = PostCommitEffects()
        with rollback_on_error(session):
            _ensure_account(session, dto.account_id)
            _ensure_user(session, dto.assigned_to, "assigned_to")
            lead = CRMLead(
                **dto.model_dump(include=set(self.scalar_fields)),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(lead)
            session.flush()
            reconcile_links(session, LEAD_DOCUMENTS, lead.id, dto.document_ids)

            read_model = self._to_read_model(session, lead.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=lead.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.created",
                    actor_user.user_id,
                    {"lead_id": str(lead.id), "status": lead.status},
                )
            )
            self._notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[LeadRead]:
        stmt = select(CRMLead)
        if status_filter:
            stmt = stmt.where(CRMLead.status == status_filter)
        stmt = stmt.order_by(CRMLead.created_at.desc(), CRMLead.id).offset(offset).limit(limit)
        return [self._to_read(session, lead) for lead in session.scalars(stmt).all()]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return self._to_read(session, self._get(session, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        existing = self._get(session, lead_id)
        previous_assignee = existing.assigned_to
        before = self._to_read(session, existing).model_dump(mode="json")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            changes = _scalar_changes(dto, self.scalar_fields, required=("last_name", "status", "type"))
            _ensure_account(session, changes.get("account_id"))
            _ensure_user(session, changes.get("assigned_to"), "assigned_to")
            changes["updated_by"] = actor_user.user_id
            versioned_update(session, CRMLead, lead_id, dto.row_version, changes)
            reconcile_links(session, LEAD_DOCUMENTS, lead_id, dto.document_ids)

            read_model = self._to_read_model(session, lead_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=lead_id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.updated",
                    actor_user.user_id,
                    {"lead_id": str(lead_id), "row_version": read_model.row_version},
                )
            )
            if read_model.assigned_to != previous_assignee:
                self._notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._get(session, lead_id)
        before = self._to_read(session, lead).model_dump(mode="json")

        with rollback_on_error(session):
            documents_unlinked = delete_links(session, LEAD_DOCUMENTS, lead_id)
            session.delete(lead)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=lead_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.deleted",
                    actor_user.user_id,
                    {"lead_id": str(lead_id), "documents_unlinked": documents_unlinked},
                )
            )
        session.commit()

    def create_from_web(self, session: Session, dto: WebLeadCreate) -> dict[str, Any]:
        with rollback_on_error(session):
            _ensure_user(session, dto.assigned_to, "assigned_to")
            account_id: uuid.UUID | None = None
            if dto.account and dto.account.strip():
                account, _ = find_or_create_account(
                    session,
                    dto.account,
                    f"Account created automatically from web lead: {dto.first_name or ''} {dto.last_name}".strip(),
                )
                account_id = account.id

            lead = CRMLead(
                first_name=dto.first_name,
                last_name=dto.last_name.strip(),
                company=dto.account,
                job_title=dto.job,
                email=str(dto.email) if dto.email else None,
                phone=dto.phone,
                lead_source=dto.lead_source or dto.source,
                description=dto.description or f"Lead created from web form. Company: {dto.account or ''}".strip(),
                status="NEW",
                type="DEMO",
                account_id=account_id,
                assigned_to=dto.assigned_to,
                created_by=dto.assigned_to,
                updated_by=dto.assigned_to,
            )
            session.add(lead)
            session.flush()
            linked_documents = reconcile_links(session, LEAD_DOCUMENTS, lead.id, dto.document_ids) or []

            read_model = self._to_read_model(session, lead.id)
            audit.record(
                actor_user_id=dto.assigned_to,
                entity_type=self.entity_type,
                entity_id=lead.id,
                action="create_from_web",
                before=None,
                after=read_model.model_dump(mode="json"),
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.created",
                    dto.assigned_to,
                    {"lead_id": str(lead.id), "status": lead.status, "source": lead.lead_source},
                )
            )
        session.commit()
        return {
            "message": "New lead created successfully",
            "lead": read_model,
            "account_linked": read_model.account_id is not None,
            "documents_linked": len(linked_documents),
        }

    def _notify_assignee(
        self,
        session: Session,
        effects: PostCommitEffects,
        actor_user: ActorUser,
        lead: LeadRead,
    ) -> None:
        notify(
            effects,
            emails_for_users(session, [lead.assigned_to], exclude=[actor_user.user_id]),
            "lead_assigned",
            {
                "actor_name": actor_user.name or actor_user.email,
                "name": " ".join(part for part in (lead.first_name, lead.last_name) if part),
                "url": _record_url("crm/leads", lead.id),
            },
            entity_type=self.entity_type,
            entity_id=lead.id,
        )

    def _get(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _to_read_model(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        lead = session.scalar(select(CRMLead).where(CRMLead.id == lead_id).execution_options(populate_existing=True))
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return self._to_read(session, lead)

    def _to_read(self, session: Session, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate({**_columns(lead), "document_ids": linked_ids(session, LEAD_DOCUMENTS, lead.id)})


class OpportunityService:
    entity_type = "crm.opportunity"
    scalar_fields = (
        "name",
        "description",
        "budget",
        "expected_revenue",
        "currency",
        "close_date",
        "next_step",
        "sales_stage",
        "type",
        "status",
        "account_id",
        "assigned_to",
    )

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        effects = PostCommitEffects()
        with rollback_on_error(session):
            _ensure_account(session, dto.account_id)
            _ensure_user(session, dto.assigned_to, "assigned_to")
            values = dto.model_dump(include=set(self.scalar_fields), exclude_none=True)
            opportunity = CRMOpportunity(
                **values,
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(opportunity)
            session.flush()

            reconcile_links(session, OPPORTUNITY_CONTACTS, opportunity.id, dto.contact_ids)
            reconcile_links(session, OPPORTUNITY_DOCUMENTS, opportunity.id, dto.document_ids)

            read_model = self._to_read_model(session, opportunity.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=opportunity.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.opportunity.created",
                    actor_user.user_id,
                    {"opportunity_id": str(opportunity.id), "status": opportunity.status},
                )
            )
            self._notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def list_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        account_id: uuid.UUID | None = None,
        status_filter: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[OpportunityRead]:
        stmt = select(CRMOpportunity)
        if account_id is not None:
            stmt = stmt.where(CRMOpportunity.account_id == account_id)
        if status_filter:
            stmt = stmt.where(CRMOpportunity.status == status_filter)
        stmt = stmt.order_by(CRMOpportunity.created_at.desc(), CRMOpportunity.id).offset(offset).limit(limit)
        return [self._to_read(session, opportunity) for opportunity in session.scalars(stmt).all()]

    def get_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        return self._to_read(session, self._get(session, opportunity_id))

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        existing = self._get(session, opportunity_id)
        previous_assignee = existing.assigned_to
        before = self._to_read(session, existing).model_dump(mode="json")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            changes = _scalar_changes(
                dto,
                self.scalar_fields,
                required=("name", "status", "budget", "expected_revenue"),
            )
            _ensure_account(session, changes.get("account_id"))
            _ensure_user(session, changes.get("assigned_to"), "assigned_to")
            changes["updated_by"] = actor_user.user_id
            versioned_update(session, CRMOpportunity, opportunity_id, dto.row_version, changes)

            reconcile_links(session, OPPORTUNITY_CONTACTS, opportunity_id, dto.contact_ids)
            reconcile_links(session, OPPORTUNITY_DOCUMENTS, opportunity_id, dto.document_ids)

            read_model = self._to_read_model(session, opportunity_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=opportunity_id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.opportunity.updated",
                    actor_user.user_id,
                    {"opportunity_id": str(opportunity_id), "row_version": read_model.row_version},
                )
            )
            if read_model.assigned_to != previous_assignee:
                self._notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        opportunity = self._get(session, opportunity_id)
        before = self._to_read(session, opportunity).model_dump(mode="json")

        with rollback_on_error(session):
            contacts_unlinked = delete_links(session, OPPORTUNITY_CONTACTS, opportunity_id)
            documents_unlinked = delete_links(session, OPPORTUNITY_DOCUMENTS, opportunity_id)
            session.delete(opportunity)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=opportunity_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.opportunity.deleted",
                    actor_user.user_id,
                    {
                        "opportunity_id": str(opportunity_id),
                        "contacts_unlinked": contacts_unlinked,
                        "documents_unlinked": documents_unlinked,
                    },
                )
            )
        session.commit()

    def _notify_assignee(
        self,
        session: Session,
        effects: PostCommitEffects,
        actor_user: ActorUser,
        opportunity: OpportunityRead,
    ) -> None:
        notify(
            effects,
            emails_for_users(session, [opportunity.assigned_to], exclude=[actor_user.user_id]),
            "opportunity_assigned",
            {
                "actor_name": actor_user.name or actor_user.email,
                "name": opportunity.name,
                "url": _record_url("crm/opportunities", opportunity.id),
            },
            entity_type=self.entity_type,
            entity_id=opportunity.id,
        )

    def _get(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity

    def _to_read_model(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = session.scalar(
            select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id).execution_options(populate_existing=True)
        )
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return self._to_read(session, opportunity)

    def _to_read(self, session: Session, opportunity: CRMOpportunity) -> OpportunityRead:
        return OpportunityRead.model_validate(
            {
                **_columns(opportunity),
                "contact_ids": linked_ids(session, OPPORTUNITY_CONTACTS, opportunity.id),
                "document_ids": linked_ids(session, OPPORTUNITY_DOCUMENTS, opportunity.id),
            }
        )


class DocumentService:
    entity_type = "crm.document"
    link_fields = (
        ("account_ids", DOCUMENT_ACCOUNTS),
        ("contact_ids", DOCUMENT_CONTACTS),
        ("lead_ids", DOCUMENT_LEADS),
        ("opportunity_ids", DOCUMENT_OPPORTUNITIES),
        ("invoice_ids", DOCUMENT_INVOICES),
        ("task_ids", DOCUMENT_TASKS),
    )

    def create_document(self, session: Session, actor_user: ActorUser, dto: DocumentCreate) -> DocumentRead:
        with rollback_on_error(session):
            _ensure_user(session, dto.assigned_user, "assigned_user")
            document = CRMDocument(
                document_name=dto.document_name.strip(),
                description=dto.description,
                document_file_url=dto.document_file_url,
                document_file_mimetype=dto.document_file_mimetype,
                storage_key=dto.storage_key,
                size=dto.size,
                status=dto.status,
                created_by=actor_user.user_id,
                assigned_user=dto.assigned_user or actor_user.user_id,
            )
            session.add(document)
            session.flush()
            self._reconcile(session, document.id, dto)

            read_model = self._to_read_model(session, document.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=document.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.document.created",
                    actor_user.user_id,
                    {"document_id": str(document.id), "document_name": document.document_name},
                )
            )
        session.commit()
        return read_model

    def list_documents(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> list[DocumentRead]:
        stmt = (
            select(CRMDocument)
            .order_by(CRMDocument.created_at.desc(), CRMDocument.id)
            .offset(offset)
            .limit(limit)
        )
        return [self._to_read(session, document) for document in session.scalars(stmt).all()]

    def get_document(self, session: Session, actor_user: ActorUser, document_id: uuid.UUID) -> DocumentRead:
        return self._to_read(session, self._get(session, document_id))

    def update_document(
        self,
        session: Session,
        actor_user: ActorUser,
        document_id: uuid.UUID,
        dto: DocumentUpdate,
    ) -> DocumentRead:
        existing = self._get(session, document_id)
        before = self._to_read(session, existing).model_dump(mode="json")

        with rollback_on_error(session):
            changes = _scalar_changes(
                dto,
                ("document_name", "description", "status", "assigned_user"),
                required=("document_name",),
            )
            _ensure_user(session, changes.get("assigned_user"), "assigned_user")
            versioned_update(session, CRMDocument, document_id, dto.row_version, changes)
            self._reconcile(session, document_id, dto)

            read_model = self._to_read_model(session, document_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=document_id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.document.updated",
                    actor_user.user_id,
                    {"document_id": str(document_id), "row_version": read_model.row_version},
                )
            )
        session.commit()
        return read_model

    def delete_document(self, session: Session, actor_user: ActorUser, document_id: uuid.UUID) -> list[str]:
        """Delete the row and its links; the stored object is removed only after commit."""
        document = self._get(session, document_id)
        if not can_delete_document(actor_user, document):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the document creator, assignee or an admin can delete this document",
            )
        before = self._to_read(session, document).model_dump(mode="json")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            links_removed = sum(delete_links(session, spec, document_id) for spec in DOCUMENT_LINKS)
            storage_key = document.storage_key or key_from_url(document.document_file_url)
            session.delete(document)
            session.flush()

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=document_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.document.deleted",
                    actor_user.user_id,
                    {"document_id": str(document_id), "links_removed": links_removed},
                )
            )
            delete_objects(effects, [storage_key], entity_type=self.entity_type, entity_id=document_id)
        session.commit()
        return [failure.name for failure in effects.run()]

    def _reconcile(self, session: Session, document_id: uuid.UUID, dto: Any) -> None:
        for field_name, spec in self.link_fields:
            reconcile_links(session, spec, document_id, getattr(dto, field_name))

    def _get(self, session: Session, document_id: uuid.UUID) -> CRMDocument:
        document = session.get(CRMDocument, document_id)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="document not found")
        return document

    def _to_read_model(self, session: Session, document_id: uuid.UUID) -> DocumentRead:
        document = session.scalar(
            select(CRMDocument).where(CRMDocument.id == document_id).execution_options(populate_existing=True)
        )
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="document not found")
        return self._to_read(session, document)

    def _to_read(self, session: Session, document: CRMDocument) -> DocumentRead:
        links = {field_name: linked_ids(session, spec, document.id) for field_name, spec in self.link_fields}
        return DocumentRead.model_validate({**_columns(document), **links})


class InvoiceService:
    entity_type = "crm.invoice"
    scalar_fields = (
        "invoice_number",
        "description",
        "invoice_amount",
        "currency",
        "status",
        "invoice_file_url",
        "invoice_file_mimetype",
        "rossum_annotation_json_url",
        "rossum_annotation_xml_url",
        "money_s3_url",
        "account_id",
        "assigned_user_id",
    )

    def create_invoice(self, session: Session, actor_user: ActorUser, dto: InvoiceCreate) -> InvoiceRead:
        with rollback_on_error(session):
            _ensure_account(session, dto.account_id)
            _ensure_user(session, dto.assigned_user_id, "assigned_user_id")
            invoice = CRMInvoice(**dto.model_dump(include=set(self.scalar_fields)), created_by=actor_user.user_id)
            session.add(invoice)
            session.flush()
            reconcile_links(session, INVOICE_DOCUMENTS, invoice.id, dto.document_ids)

            read_model = self._to_read_model(session, invoice.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=invoice.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope("crm.invoice.created", actor_user.user_id, {"invoice_id": str(invoice.id)})
            )
        session.commit()
        return read_model

    def list_invoices(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        account_id: uuid.UUID | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[InvoiceRead]:
        stmt = select(CRMInvoice)
        if account_id is not None:
            stmt = stmt.where(CRMInvoice.account_id == account_id)
        stmt = stmt.order_by(CRMInvoice.created_at.desc(), CRMInvoice.id).offset(offset).limit(limit)
        return [self._to_read(session, invoice) for invoice in session.scalars(stmt).all()]

    def get_invoice(self, session: Session, actor_user: ActorUser, invoice_id: uuid.UUID) -> InvoiceRead:
        return self._to_read(session, self._get(session, invoice_id))

    def update_invoice(
        self,
        session: Session,
        actor_user: ActorUser,
        invoice_id: uuid.UUID,
        dto: InvoiceUpdate,
    ) -> InvoiceRead:
        existing = self._get(session, invoice_id)
        before = self._to_read(session, existing).model_dump(mode="json")

        with rollback_on_error(session):
            changes = _scalar_changes(dto, self.scalar_fields)
            _ensure_account(session, changes.get("account_id"))
            _ensure_user(session, changes.get("assigned_user_id"), "assigned_user_id")
            versioned_update(session, CRMInvoice, invoice_id, dto.row_version, changes)
            reconcile_links(session, INVOICE_DOCUMENTS, invoice_id, dto.document_ids)

            read_model = self._to_read_model(session, invoice_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=invoice_id,
                action="update",
                before=before,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.invoice.updated",
                    actor_user.user_id,
                    {"invoice_id": str(invoice_id), "row_version": read_model.row_version},
                )
            )
        session.commit()
        return read_model

    def delete_invoice(self, session: Session, actor_user: ActorUser, invoice_id: uuid.UUID) -> list[str]:
        invoice = self._get(session, invoice_id)
        before = self._to_read(session, invoice).model_dump(mode="json")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            documents_unlinked = delete_links(session, INVOICE_DOCUMENTS, invoice_id)
            keys = self.storage_keys(invoice)
            session.delete(invoice)
            session.flush()

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=invoice_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.invoice.deleted",
                    actor_user.user_id,
                    {"invoice_id": str(invoice_id), "documents_unlinked": documents_unlinked},
                )
            )
            delete_objects(effects, keys, entity_type=self.entity_type, entity_id=invoice_id)
        session.commit()
        return [failure.name for failure in effects.run()]

    @staticmethod
    def storage_keys(invoice: CRMInvoice) -> list[str]:
        candidates = [
            key_from_url(invoice.invoice_file_url, "invoices"),
            key_from_url(invoice.rossum_annotation_json_url, "rossum"),
            key_from_url(invoice.rossum_annotation_xml_url, "rossum"),
            key_from_url(invoice.money_s3_url, "xml"),
        ]
        return [key for key in candidates if key]

    def _get(self, session: Session, invoice_id: uuid.UUID) -> CRMInvoice:
        invoice = session.get(CRMInvoice, invoice_id)
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invoice not found")
        return invoice

    def _to_read_model(self, session: Session, invoice_id: uuid.UUID) -> InvoiceRead:
        invoice = session.scalar(
            select(CRMInvoice).where(CRMInvoice.id == invoice_id).execution_options(populate_existing=True)
        )
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invoice not found")
        return self._to_read(session, invoice)

    def _to_read(self, session: Session, invoice: CRMInvoice) -> InvoiceRead:
        return InvoiceRead.model_validate(
            {**_columns(invoice), "document_ids": linked_ids(session, INVOICE_DOCUMENTS, invoice.id)}
        )


class CRMTaskService:
    entity_type = "crm.task"

    def create_task(self, session: Session, actor_user: ActorUser, dto: CRMTaskCreate) -> TaskRead:
        effects = PostCommitEffects()
        with rollback_on_error(session):
            account = session.get(CRMAccount, dto.account_id)
            if account is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
            task_service.ensure_active_assignee(session, dto.assigned_user_id)

            task = Task(
                task_kind="crm",
                account_id=account.id,
                title=dto.title,
                content=dto.content,
                priority=dto.priority,
                due_date=dto.due_date,
                tags=list(dto.tags),
                assigned_user_id=dto.assigned_user_id,
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(task)
            session.flush()
            reconcile_links(session, TASK_DOCUMENTS, task.id, dto.document_ids)

            read_model = task_service.read_task(session, task.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=task.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.task.created",
                    actor_user.user_id,
                    {"task_id": str(task.id), "account_id": str(account.id)},
                )
            )
            task_service.notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def list_tasks(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> list[TaskRead]:
        if session.get(CRMAccount, account_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
        tasks = session.scalars(
            select(Task)
            .where(Task.task_kind == "crm", Task.account_id == account_id)
            .order_by(Task.created_at.desc(), Task.id)
        ).all()
        return [task_service.to_read(session, task) for task in tasks]

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        task = session.get(Task, task_id)
        if task is None or task.task_kind != "crm":
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        require_task_participant(actor_user, task, "delete")
        task_service.delete_task(session, actor_user, task_id)


account_service = AccountService()
contact_service = ContactService()
lead_service = LeadService()
opportunity_service = OpportunityService()
document_service = DocumentService()
invoice_service = InvoiceService()
crm_task_service = CRMTaskService()
