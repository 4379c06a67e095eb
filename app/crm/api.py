from __future__ import annotations

import hmac
import json
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.core.auth import ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import http_error_response
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
    SearchRequest,
    SearchResponse,
    UserSummary,
    WebLeadCreate,
)
from app.crm.search import search_entities
from app.crm.service import (
    account_service,
    contact_service,
    crm_task_service,
    document_service,
    invoice_service,
    lead_service,
    opportunity_service,
)
from app.projects.schemas import TaskRead

router = APIRouter(prefix="/api/crm/accounts", tags=["crm.accounts"])
contacts_router = APIRouter(prefix="/api/crm/contacts", tags=["crm.contacts"])
leads_router = APIRouter(prefix="/api/crm/leads", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/crm/opportunities", tags=["crm.opportunities"])
documents_router = APIRouter(prefix="/api/crm/documents", tags=["crm.documents"])
invoices_router = APIRouter(prefix="/api/crm/invoices", tags=["crm.invoices"])
tasks_router = APIRouter(prefix="/api/crm/tasks", tags=["crm.tasks"])
search_router = APIRouter(prefix="/api/crm", tags=["crm.search"])


def _deleted(warnings: list[str] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": "deleted"}
    if warnings:
        payload["warnings"] = warnings
    return payload


async def _webhook_payload(request: Request, model: type[BaseModel]) -> Any:
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body") from None
    if not isinstance(raw, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Missing required fields", "errors": exc.errors(include_url=False, include_context=False)},
        ) from None


def _token_matches(provided: str) -> bool:
    expected = get_settings().nextcrm_token.strip()
    return bool(expected) and hmac.compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8"))


@router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    dto: AccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        return account_service.create_account(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_create_failed")


@router.get("", response_model=list[AccountRead])
def list_accounts(
    request: Request,
    name: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AccountRead] | JSONResponse:
    try:
        return account_service.list_accounts(db, user, name=name, status_filter=status_filter, offset=offset, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_list_failed")


@router.get("/{account_id}", response_model=AccountRead)
def get_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        return account_service.get_account(db, user, account_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_get_failed")


@router.patch("/{account_id}", response_model=AccountRead)
def patch_account(
    request: Request,
    account_id: uuid.UUID,
    dto: AccountUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        return account_service.update_account(db, user, account_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_update_failed")


@router.delete("/{account_id}", response_model=None)
def delete_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        account_service.delete_account(db, user, account_id)
        return _deleted()
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_delete_failed")


@router.get("/{account_id}/watchers", response_model=list[UserSummary])
def list_account_watchers(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserSummary] | JSONResponse:
    try:
        return account_service.list_watchers(db, user, account_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_watchers_failed")


@router.post("/{account_id}/watch", response_model=AccountRead)
def watch_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        return account_service.watch(db, user, account_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_watch_failed")


@router.post("/{account_id}/unwatch", response_model=AccountRead)
def unwatch_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        return account_service.unwatch(db, user, account_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_account_unwatch_failed")


@contacts_router.post("/create-from-remote", status_code=status.HTTP_201_CREATED, response_model=None)
async def create_contact_from_remote(request: Request, db: Session = Depends(get_db)) -> Any:
    try:
        token = request.headers.get("NEXTCRM_TOKEN")
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key is missing")
        if not _token_matches(token):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
        dto = await _webhook_payload(request, RemoteContactCreate)
        contact, account_linked = contact_service.create_from_remote(db, dto)
        return {
            "message": "Contact created successfully",
            "contact": contact.model_dump(mode="json"),
            "account_linked": account_linked,
        }
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_remote_create_failed")


@contacts_router.get("/create-from-remote", response_model=None)
def remote_contact_status(request: Request) -> Any:
    token = request.headers.get("NEXTCRM_TOKEN")
    if not token:
        return http_error_response(request, HTTPException(status_code=401, detail="API key is missing"), "crm_webhook_unauthorized")
    if not _token_matches(token):
        return http_error_response(request, HTTPException(status_code=403, detail="Unauthorized"), "crm_webhook_unauthorized")
    return {
        "status": "active",
        "endpoint": "create-from-remote",
        "supported_fields": list(RemoteContactCreate.model_fields),
    }


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_create_failed")


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    account_id: uuid.UUID | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        return contact_service.list_contacts(db, user, account_id=account_id, offset=offset, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_list_failed")


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_get_failed")


@contacts_router.patch("/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_update_failed")


@contacts_router.delete("/{contact_id}", response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        contact_service.delete_contact(db, user, contact_id)
        return _deleted()
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_delete_failed")


@contacts_router.delete("/{contact_id}/opportunities/{opportunity_id}", response_model=ContactRead)
def unlink_contact_opportunity(
    request: Request,
    contact_id: uuid.UUID,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.unlink_opportunity(db, user, contact_id, opportunity_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_contact_unlink_failed")


@leads_router.post("/create-lead-from-web", status_code=status.HTTP_201_CREATED, response_model=None)
async def create_lead_from_web(request: Request, db: Session = Depends(get_db)) -> Any:
    try:
        if not _token_matches(request.headers.get("authorization", "")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        dto = await _webhook_payload(request, WebLeadCreate)
        result = lead_service.create_from_web(db, dto)
        return {**result, "lead": result["lead"].model_dump(mode="json")}
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_web_create_failed")


@leads_router.get("/create-lead-from-web", response_model=None)
def web_lead_status(request: Request) -> Any:
    if not _token_matches(request.headers.get("authorization", "")):
        return http_error_response(request, HTTPException(status_code=401, detail="Unauthorized"), "crm_webhook_unauthorized")
    return {
        "status": "active",
        "endpoint": "create-lead-from-web",
        "required_fields": ["lastName"],
        "optional_fields": [
            "firstName",
            "account",
            "job",
            "email",
            "phone",
            "lead_source",
            "description",
            "assigned_to",
            "documentIds",
        ],
    }


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_create_failed")


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(db, user, status_filter=status_filter, offset=offset, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_list_failed")


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_get_failed")


@leads_router.patch("/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_update_failed")


@leads_router.delete("/{lead_id}", response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        lead_service.delete_lead(db, user, lead_id)
        return _deleted()
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_delete_failed")


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create_opportunity(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    account_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.list_opportunities(
            db,
            user,
            account_id=account_id,
            status_filter=status_filter,
            offset=offset,
            limit=limit,
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_list_failed")


@opportunities_router.get("/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, user, opportunity_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_update_failed")


@opportunities_router.delete("/{opportunity_id}", response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        opportunity_service.delete_opportunity(db, user, opportunity_id)
        return _deleted()
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_delete_failed")


@documents_router.post("", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
def create_document(
    request: Request,
    dto: DocumentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        return document_service.create_document(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_create_failed")


@documents_router.get("", response_model=list[DocumentRead])
def list_documents(
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DocumentRead] | JSONResponse:
    try:
        return document_service.list_documents(db, user, offset=offset, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_list_failed")


@documents_router.get("/{document_id}", response_model=DocumentRead)
def get_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        return document_service.get_document(db, user, document_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_get_failed")


@documents_router.patch("/{document_id}", response_model=DocumentRead)
def patch_document(
    request: Request,
    document_id: uuid.UUID,
    dto: DocumentUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        return document_service.update_document(db, user, document_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_update_failed")


@documents_router.delete("/{document_id}", response_model=None)
def delete_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return _deleted(document_service.delete_document(db, user, document_id))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_document_delete_failed")


@invoices_router.post("", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    request: Request,
    dto: InvoiceCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        return invoice_service.create_invoice(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_invoice_create_failed")


@invoices_router.get("", response_model=list[InvoiceRead])
def list_invoices(
    request: Request,
    account_id: uuid.UUID | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[InvoiceRead] | JSONResponse:
    try:
        return invoice_service.list_invoices(db, user, account_id=account_id, offset=offset, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_invoice_list_failed")


@invoices_router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    request: Request,
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        return invoice_service.get_invoice(db, user, invoice_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_invoice_get_failed")


@invoices_router.patch("/{invoice_id}", response_model=InvoiceRead)
def patch_invoice(
    request: Request,
    invoice_id: uuid.UUID,
    dto: InvoiceUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        return invoice_service.update_invoice(db, user, invoice_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_invoice_update_failed")


@invoices_router.delete("/{invoice_id}", response_model=None)
def delete_invoice(
    request: Request,
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return _deleted(invoice_service.delete_invoice(db, user, invoice_id))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_invoice_delete_failed")


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_crm_task(
    request: Request,
    dto: CRMTaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return crm_task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_create_failed")


@tasks_router.get("", response_model=list[TaskRead])
def list_crm_tasks(
    request: Request,
    account_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return crm_task_service.list_tasks(db, user, account_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_list_failed")


@tasks_router.delete("/{task_id}", response_model=None)
def delete_crm_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        crm_task_service.delete_task(db, user, task_id)
        return _deleted()
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_task_delete_failed")


@search_router.post("/search", response_model=SearchResponse)
def search(
    request: Request,
    dto: SearchRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SearchResponse | JSONResponse:
    try:
        return search_entities(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_search_failed")
