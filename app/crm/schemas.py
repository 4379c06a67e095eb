from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.projects.schemas import normalize_priority


AccountStatus = Literal["Active", "Inactive"]
SearchModule = Literal["opportunities", "accounts", "contacts", "users", "tasks", "projects"]


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class AccountFields(BaseModel):
    type: str | None = None
    description: str | None = None
    email: EmailStr | None = None
    website: str | None = None
    office_phone: str | None = None
    industry: str | None = None
    billing_street: str | None = None
    billing_city: str | None = None
    billing_state: str | None = None
    billing_postal_code: str | None = None
    billing_country: str | None = None
    shipping_street: str | None = None
    shipping_city: str | None = None
    shipping_state: str | None = None
    shipping_postal_code: str | None = None
    shipping_country: str | None = None
    assigned_to: UUID | None = None


class AccountCreate(AccountFields):
    name: str = Field(min_length=1, max_length=255)
    status: AccountStatus = "Active"
    watchers: list[UUID] | None = None
    document_ids: list[UUID] | None = None

    strip_name = field_validator("name")(_strip_required)


class AccountUpdate(AccountFields):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    status: AccountStatus | None = None
    watchers: list[UUID] | None = None
    document_ids: list[UUID] | None = None
    row_version: int


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    status: str
    type: str | None
    description: str | None
    email: str | None
    website: str | None
    office_phone: str | None
    industry: str | None
    billing_street: str | None
    billing_city: str | None
    billing_state: str | None
    billing_postal_code: str | None
    billing_country: str | None
    shipping_street: str | None
    shipping_city: str | None
    shipping_state: str | None
    shipping_postal_code: str | None
    shipping_country: str | None
    assigned_to: UUID | None
    created_by: UUID | None
    updated_by: UUID | None
    watchers: list[UUID] = Field(default_factory=list)
    document_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class ContactFields(BaseModel):
    first_name: str | None = None
    email: EmailStr | None = None
    office_phone: str | None = None
    mobile_phone: str | None = None
    position: str | None = None
    type: str | None = None
    description: str | None = None
    account_id: UUID | None = None
    assigned_to: UUID | None = None


class ContactCreate(ContactFields):
    last_name: str = Field(min_length=1, max_length=255)
    status: bool = True
    tags: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    opportunity_ids: list[UUID] | None = None
    document_ids: list[UUID] | None = None

    strip_last_name = field_validator("last_name")(_strip_required)


class ContactUpdate(ContactFields):
    last_name: str | None = Field(default=None, min_length=1, max_length=255)
    status: bool | None = None
    tags: list[str] | None = None
    notes: list[str] | None = None
    opportunity_ids: list[UUID] | None = None
    document_ids: list[UUID] | None = None
    row_version: int


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    first_name: str | None
    last_name: str
    email: str | None
    office_phone: str | None
    mobile_phone: str | None
    position: str | None
    type: str | None
    status: bool
    description: str | None
    tags: list[str]
    notes: list[str]
    assigned_to: UUID | None
    created_by: UUID | None
    updated_by: UUID | None
    opportunity_ids: list[UUID] = Field(default_factory=list)
    document_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class RemoteContactCreate(BaseModel):
    name: str = Field(min_length=1)
    surname: str = Field(min_length=1)
    email: EmailStr
    phone: str = Field(min_length=1)
    company: str = Field(min_length=1)
    message: str = Field(min_length=1)
    tag: str = Field(min_length=1)
    assigned_to: UUID | None = None
    account_id: UUID | None = None
    position: str | None = None
    source: str = "remote_api"


class LeadFields(BaseModel):
    first_name: str | None = None
    company: str | None = None
    job_title: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    description: str | None = None
    lead_source: str | None = None
    account_id: UUID | None = None
    assigned_to: UUID | None = None


class LeadCreate(LeadFields):
    last_name: str = Field(min_length=1, max_length=255)
    status: str = "NEW"
    type: str = "DEMO"
    document_ids: list[UUID] | None = None

    strip_last_name = field_validator("last_name")(_strip_required)


class LeadUpdate(LeadFields):
    last_name: str | None = Field(default=None, min_length=1, max_length=255)
    status: str | None = None
    type: str | None = None
    document_ids: list[UUID] | None = None
    row_version: int


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str | None
    last_name: str
    company: str | None
    job_title: str | None
    email: str | None
    phone: str | None
    description: str | None
    lead_source: str | None
    status: str
    type: str
    account_id: UUID | None
    assigned_to: UUID | None
    created_by: UUID | None
    updated_by: UUID | None
    document_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class WebLeadCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str = Field(min_length=1, alias="lastName")
    account: str | None = None
    job: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    lead_source: str | None = None
    description: str | None = None
    assigned_to: UUID | None = None
    document_ids: list[UUID] = Field(default_factory=list, alias="documentIds")
    source: str = "web_form"


class OpportunityFields(BaseModel):
    description: str | None = None
    budget: Decimal | None = Field(default=None, ge=0)
    expected_revenue: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, max_length=16)
    close_date: date | None = None
    next_step: str | None = None
    sales_stage: str | None = None
    type: str | None = None
    account_id: UUID | None = None
    assigned_to: UUID | None = None


class OpportunityCreate(OpportunityFields):
    name: str = Field(min_length=1, max_length=255)
    status: str = "ACTIVE"
    contact_ids: list[UUID] | None = None
    document_ids: list[UUID] | None = None

    strip_name = field_validator("name")(_strip_required)


class OpportunityUpdate(OpportunityFields):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    status: str | None = None
    contact_ids: list[UUID] | None = None
    document_ids: list[UUID] | None = None
    row_version: int


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    name: str
    description: str | None
    budget: Decimal
    expected_revenue: Decimal
    currency: str | None
    close_date: date | None
    next_step: str | None
    sales_stage: str | None
    type: str | None
    status: str
    assigned_to: UUID | None
    created_by: UUID | None
    updated_by: UUID | None
    contact_ids: list[UUID] = Field(default_factory=list)
    document_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class DocumentLinks(BaseModel):
    account_ids: list[UUID] | None = None
    contact_ids: list[UUID] | None = None
    lead_ids: list[UUID] | None = None
    opportunity_ids: list[UUID] | None = None
    invoice_ids: list[UUID] | None = None
    task_ids: list[UUID] | None = None


class DocumentCreate(DocumentLinks):
    document_name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    document_file_url: str | None = None
    document_file_mimetype: str | None = None
    storage_key: str | None = None
    size: int | None = Field(default=None, ge=0)
    status: str | None = None
    assigned_user: UUID | None = None


class DocumentUpdate(DocumentLinks):
    document_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: str | None = None
    assigned_user: UUID | None = None
    row_version: int


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_name: str
    description: str | None
    document_file_url: str | None
    document_file_mimetype: str | None
    storage_key: str | None
    size: int | None
    status: str | None
    created_by: UUID | None
    assigned_user: UUID | None
    account_ids: list[UUID] = Field(default_factory=list)
    contact_ids: list[UUID] = Field(default_factory=list)
    lead_ids: list[UUID] = Field(default_factory=list)
    opportunity_ids: list[UUID] = Field(default_factory=list)
    invoice_ids: list[UUID] = Field(default_factory=list)
    task_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class InvoiceFields(BaseModel):
    invoice_number: str | None = None
    description: str | None = None
    invoice_amount: Decimal | None = None
    currency: str | None = Field(default=None, max_length=16)
    status: str | None = None
    invoice_file_url: str | None = None
    invoice_file_mimetype: str | None = None
    rossum_annotation_json_url: str | None = None
    rossum_annotation_xml_url: str | None = None
    money_s3_url: str | None = None
    account_id: UUID | None = None
    assigned_user_id: UUID | None = None


class InvoiceCreate(InvoiceFields):
    document_ids: list[UUID] | None = None


class InvoiceUpdate(InvoiceFields):
    document_ids: list[UUID] | None = None
    row_version: int


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str | None
    description: str | None
    invoice_amount: Decimal | None
    currency: str | None
    status: str | None
    invoice_file_url: str | None
    invoice_file_mimetype: str | None
    rossum_annotation_json_url: str | None
    rossum_annotation_xml_url: str | None
    money_s3_url: str | None
    account_id: UUID | None
    assigned_user_id: UUID | None
    created_by: UUID | None
    document_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class CRMTaskCreate(BaseModel):
    account_id: UUID
    title: str = Field(min_length=1, max_length=255)
    content: str | None = None
    priority: str = "MEDIUM"
    due_date: date | None = None
    tags: list[str] = Field(default_factory=list)
    assigned_user_id: UUID | None = None
    document_ids: list[UUID] | None = None

    strip_title = field_validator("title")(_strip_required)
    check_priority = field_validator("priority")(normalize_priority)


class SearchRequest(BaseModel):
    query: str
    modules: list[SearchModule] | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    include_inactive: bool = False


class SearchHit(BaseModel):
    module: SearchModule
    id: UUID
    title: str
    subtitle: str | None = None
    relevance: int
    data: dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    success: bool = True
    query: str
    total_results: int
    results_by_module: dict[str, list[SearchHit]]
    top_results: list[SearchHit]
    timestamp: datetime


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str | None
    email: str
    avatar: str | None = None
