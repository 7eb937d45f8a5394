import os

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")

from core.audit import list_audit_events, log_event
from core.audit_constants import EVENT_JOB_FAILED, EVENT_VECTOR_DELETED
from core.models import AuditEvent


@pytest.mark.parametrize("key", ["text", "embedding", "note_body", "raw_text"])
def test_audit_rejects_content_metadata(db_session, key):
    before = db_session.query(AuditEvent).count()
    with pytest.raises(ValueError):
        log_event(
            db_session,
            event_type=EVENT_VECTOR_DELETED,
            actor_type="system",
            target_type="item",
            target_ids=["note:n1"],
            metadata={key: "should_not_log"},
        )
    db_session.rollback()
    after = db_session.query(AuditEvent).count()
    assert after == before


def test_audit_rejects_long_strings(db_session):
    before = db_session.query(AuditEvent).count()
    with pytest.raises(ValueError):
        log_event(
            db_session,
            event_type=EVENT_JOB_FAILED,
            actor_type="worker",
            target_type="job",
            target_ids=["job-1"],
            metadata={"note": "x" * 600},
        )
    db_session.rollback()
    after = db_session.query(AuditEvent).count()
    assert after == before


def test_audit_records_owner(db_session):
    event = log_event(
        db_session,
        event_type=EVENT_JOB_FAILED,
        actor_type="worker",
        owner_id="reader-1",
        target_type="job",
        target_ids=["job-1"],
        count_affected=1,
        reason="retries_exhausted",
        metadata={"item_type": "note", "retry_count": 3},
    )
    db_session.commit()
    assert event is not None
    stored = db_session.query(AuditEvent).one()
    assert stored.owner_id == "reader-1"
    assert stored.metadata_ == {"item_type": "note", "retry_count": 3}


def test_list_audit_events_filters_by_owner(db_session):
    for owner_id in ("reader-1", "reader-1", "reader-2"):
        log_event(
            db_session,
            event_type=EVENT_VECTOR_DELETED,
            actor_type="system",
            owner_id=owner_id,
            target_type="item",
            target_ids=["note:n1"],
        )
    db_session.commit()

    page = list_audit_events(db_session, owner_id="reader-1", limit=1)
    assert page["count"] == 1
    assert page["events"][0]["owner_id"] == "reader-1"

    rest = list_audit_events(db_session, owner_id="reader-1", cursor=page["next_cursor"])
    assert rest["count"] == 1
