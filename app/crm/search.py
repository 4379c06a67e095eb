"""Cross-module text search.

Every module is queried on its own; a module that fails is logged and
contributes no hits instead of failing the whole request.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from app.core.auth import ActorUser
from app.crm.models import CRMAccount, CRMContact, CRMOpportunity
from app.crm.schemas import SearchHit, SearchRequest, SearchResponse
from app.metrics import observe_search_duration, observe_search_module_failure
from app.projects.models import Board, BoardWatcher, Section, Task
from app.users.models import User


logger = logging.getLogger("app.crm.search")
tracer = trace.get_tracer("app.crm.search")

MIN_QUERY_LENGTH = 2
DEFAULT_LIMIT = 50
MAX_LIMIT = 100
TOP_RESULTS = 20
MAX_CANDIDATES = 1000

EXACT_SCORE = 10
PREFIX_SCORE = 5
SUBSTRING_SCORE = 1


@dataclass(frozen=True)
class SearchModuleSpec:
    name: str
    model: type[Any]
    fields: tuple[str, ...]
    title: Callable[[Any], str]
    subtitle: Callable[[Any], str | None]
    active_filter: Callable[[Select[Any]], Select[Any]] | None = None
    admin_only: bool = False


def _accessible_board_ids(actor_user: ActorUser) -> Select[Any]:
    watched = select(BoardWatcher.board_id).where(BoardWatcher.user_id == actor_user.user_id)
    return select(Board.id).where(
        or_(Board.owner_id == actor_user.user_id, Board.visibility == "PUBLIC", Board.id.in_(watched))
    )


MODULES: dict[str, SearchModuleSpec] = {
    "opportunities": SearchModuleSpec(
        name="opportunities",
        model=CRMOpportunity,
        fields=("name", "description"),
        title=lambda row: row.name,
        subtitle=lambda row: row.sales_stage,
        active_filter=lambda stmt: stmt.where(CRMOpportunity.status == "ACTIVE"),
    ),
    "accounts": SearchModuleSpec(
        name="accounts",
        model=CRMAccount,
        fields=("name", "description", "email"),
        title=lambda row: row.name,
        subtitle=lambda row: row.email,
        active_filter=lambda stmt: stmt.where(CRMAccount.status == "Active"),
    ),
    "contacts": SearchModuleSpec(
        name="contacts",
        model=CRMContact,
        fields=("first_name", "last_name", "email"),
        title=lambda row: " ".join(part for part in (row.first_name, row.last_name) if part),
        subtitle=lambda row: row.email,
        active_filter=lambda stmt: stmt.where(CRMContact.status.is_(True)),
    ),
    "users": SearchModuleSpec(
        name="users",
        model=User,
        fields=("name", "username", "email", "account_name"),
        title=lambda row: row.name or row.email,
        subtitle=lambda row: row.email,
        active_filter=lambda stmt: stmt.where(User.user_status == "ACTIVE"),
        admin_only=True,
    ),
    "tasks": SearchModuleSpec(
        name="tasks",
        model=Task,
        fields=("title", "content"),
        title=lambda row: row.title,
        subtitle=lambda row: row.task_status,
        active_filter=lambda stmt: stmt.where(Task.task_status != "COMPLETE"),
    ),
    "projects": SearchModuleSpec(
        name="projects",
        model=Board,
        fields=("title", "description"),
        title=lambda row: row.title,
        subtitle=lambda row: row.description,
    ),
}


def score(query: str, values: list[str | None]) -> int:
    needle = query.lower()
    total = 0
    for value in values:
        if not value:
            continue
        haystack = value.lower()
        if haystack == needle:
            total += EXACT_SCORE
        elif haystack.startswith(needle):
            total += PREFIX_SCORE
        elif needle in haystack:
            total += SUBSTRING_SCORE
    return total


def _restrict_to_actor(stmt: Select[Any], spec: SearchModuleSpec, actor_user: ActorUser) -> Select[Any]:
    if actor_user.is_admin:
        return stmt
    if spec.model is Board:
        return stmt.where(Board.id.in_(_accessible_board_ids(actor_user)))
    if spec.model is Task:
        visible_sections = select(Section.id).where(Section.board_id.in_(_accessible_board_ids(actor_user)))
        return stmt.where(
            or_(
                Task.assigned_user_id == actor_user.user_id,
                Task.created_by == actor_user.user_id,
                Task.section_id.in_(visible_sections),
            )
        )
    return stmt


def search_module(
    session: Session,
    actor_user: ActorUser,
    spec: SearchModuleSpec,
    query: str,
    *,
    include_inactive: bool,
) -> list[SearchHit]:
    needle = query.lower()
    columns = [getattr(spec.model, field) for field in spec.fields]
    stmt = select(spec.model).where(or_(*(func.lower(column).contains(needle, autoescape=True) for column in columns)))
    if spec.active_filter is not None and not include_inactive:
        stmt = spec.active_filter(stmt)
    stmt = _restrict_to_actor(stmt, spec, actor_user)
    stmt = stmt.order_by(spec.model.created_at.desc(), spec.model.id).limit(MAX_CANDIDATES)

    hits = []
    for row in session.scalars(stmt).all():
        relevance = score(query, [getattr(row, field) for field in spec.fields])
        hits.append(
            SearchHit(
                module=spec.name,
                id=row.id,
                title=spec.title(row) or "",
                subtitle=spec.subtitle(row),
                relevance=relevance,
                data={field: getattr(row, field) for field in spec.fields},
            )
        )
    # sorted() is stable, so ties keep query order
    return sorted(hits, key=lambda hit: hit.relevance, reverse=True)


def search_entities(session: Session, actor_user: ActorUser, request: SearchRequest) -> SearchResponse:
    query = request.query.strip()
    if len(query) < MIN_QUERY_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"query must be at least {MIN_QUERY_LENGTH} characters",
        )
    limit = min(request.limit or DEFAULT_LIMIT, MAX_LIMIT)
    offset = request.offset

    requested = list(dict.fromkeys(request.modules or MODULES.keys()))
    started = time.perf_counter()
    results_by_module: dict[str, list[SearchHit]] = {}

    for name in requested:
        spec = MODULES[name]
        if spec.admin_only and not actor_user.is_admin:
            continue
        with tracer.start_as_current_span("crm.search.module") as span:
            span.set_attribute("search.module", name)
            try:
                hits = search_module(session, actor_user, spec, query, include_inactive=request.include_inactive)
            except Exception as exc:
                session.rollback()
                span.set_attribute("error", True)
                observe_search_module_failure(name)
                logger.exception(
                    "crm.search.module_failed",
                    extra={"search_module": name, "error": str(exc)[:500], "actor_user_id": str(actor_user.user_id)},
                )
                hits = []
        results_by_module[name] = hits[offset : offset + limit]

    merged = [hit for hits in results_by_module.values() for hit in hits]
    top_results = sorted(merged, key=lambda hit: hit.relevance, reverse=True)[:TOP_RESULTS]
    observe_search_duration(time.perf_counter() - started)

    return SearchResponse(
        success=True,
        query=query,
        total_results=len(merged),
        results_by_module=results_by_module,
        top_results=top_results,
        timestamp=datetime.now(timezone.utc),
    )
