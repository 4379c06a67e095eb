from __future__ import annotations

import uuid

import pytest
from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.crm.models import CRMContact, CRMOpportunity
from app.crm.relations import (
    CONTACT_OPPORTUNITIES,
    OPPORTUNITY_CONTACTS,
    add_link,
    delete_links,
    linked_ids,
    reconcile_links,
    remove_link,
)


def _seed(session: Session) -> tuple[CRMContact, list[CRMOpportunity]]:
    contact = CRMContact(last_name="Junction")
    opportunities = [CRMOpportunity(name=name) for name in ("a", "b", "c")]
    session.add(contact)
    session.add_all(opportunities)
    session.flush()
    return contact, opportunities


def test_none_leaves_links_untouched(db_session: Session) -> None:
    contact, (a, b, _) = _seed(db_session)
    reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [a.id, b.id])

    assert reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, None) is None
    assert set(linked_ids(db_session, CONTACT_OPPORTUNITIES, contact.id)) == {a.id, b.id}


def test_empty_list_clears_links(db_session: Session) -> None:
    contact, (a, b, _) = _seed(db_session)
    reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [a.id, b.id])

    assert reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, []) == []
    assert linked_ids(db_session, CONTACT_OPPORTUNITIES, contact.id) == []


def test_replacing_set_drops_missing_and_adds_new(db_session: Session) -> None:
    contact, (a, b, c) = _seed(db_session)
    reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [a.id, b.id])

    reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [b.id, c.id, c.id])

    assert set(linked_ids(db_session, CONTACT_OPPORTUNITIES, contact.id)) == {b.id, c.id}
    assert linked_ids(db_session, OPPORTUNITY_CONTACTS, a.id) == []
    assert linked_ids(db_session, OPPORTUNITY_CONTACTS, c.id) == [contact.id]


def test_unknown_target_rejects_without_touching_existing_links(db_session: Session) -> None:
    contact, (a, _, _) = _seed(db_session)
    reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [a.id])
    ghost = uuid.uuid4()

    with pytest.raises(HTTPException) as exc_info:
        reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [a.id, ghost])

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == {"message": "unknown opportunities ids", "ids": [str(ghost)]}
    assert linked_ids(db_session, CONTACT_OPPORTUNITIES, contact.id) == [a.id]


def test_add_and_remove_single_link(db_session: Session) -> None:
    contact, (a, _, _) = _seed(db_session)

    assert add_link(db_session, CONTACT_OPPORTUNITIES, contact.id, a.id) is True
    assert add_link(db_session, CONTACT_OPPORTUNITIES, contact.id, a.id) is False
    assert remove_link(db_session, CONTACT_OPPORTUNITIES, contact.id, a.id) is True
    assert remove_link(db_session, CONTACT_OPPORTUNITIES, contact.id, a.id) is False


def test_delete_links_counts_rows_for_one_owner(db_session: Session) -> None:
    contact, opportunities = _seed(db_session)
    other = CRMContact(last_name="Other")
    db_session.add(other)
    db_session.flush()
    reconcile_links(db_session, CONTACT_OPPORTUNITIES, contact.id, [item.id for item in opportunities])
    reconcile_links(db_session, CONTACT_OPPORTUNITIES, other.id, [opportunities[0].id])

    assert delete_links(db_session, CONTACT_OPPORTUNITIES, contact.id) == 3
    assert linked_ids(db_session, CONTACT_OPPORTUNITIES, other.id) == [opportunities[0].id]
