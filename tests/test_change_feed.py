"""Tests for the committed-change feed and the live complaint view."""
import json

from conftest import VALID_COMPLAINT
from extensions import db
from models import Complaint
from utils.access_policy import stream_predicate
from utils.change_feed import (
    DELETED,
    INSERTED,
    UPDATED,
    ChangeEvent,
    ChangeFeed,
    LiveComplaintView,
    diff_snapshots,
    get_feed,
    stream_events,
)
from utils.complaint_service import ComplaintSubmission, create_complaint, update_status


def _submission(**overrides):
    data = dict(VALID_COMPLAINT)
    data.update(overrides)
    return ComplaintSubmission(**data)


def _drain(subscription):
    events = []
    while True:
        change = subscription.get(timeout=0.01)
        if change is None:
            return events
        events.append(change)


def _record(complaint_id, status="pending", created_at="2025-01-01T00:00:00"):
    return {"id": complaint_id, "status": status, "created_at": created_at}


class TestSessionCapture:
    def test_insert_published_after_commit(self, ctx):
        subscription = get_feed().subscribe()
        complaint = create_complaint(_submission(is_anonymous=True))

        (change,) = _drain(subscription)
        assert change.kind == INSERTED
        assert change.table == "complaints"
        assert change.record["id"] == complaint.id
        assert change.record["tracking_code"] == complaint.tracking_code
        assert change.previous is None

    def test_update_carries_previous_values(self, ctx, citizen, official):
        complaint = create_complaint(_submission(), citizen)
        subscription = get_feed().subscribe()
        update_status(complaint, "in_review", official)

        (change,) = _drain(subscription)
        assert change.kind == UPDATED
        assert change.record["status"] == "in_review"
        assert change.previous["status"] == "pending"

    def test_rollback_discards(self, ctx, citizen):
        subscription = get_feed().subscribe()
        db.session.add(
            Complaint(
                title=VALID_COMPLAINT["title"],
                description=VALID_COMPLAINT["description"],
                category="bribery",
                location="Somewhere",
                is_anonymous=False,
                user_id=citizen.id,
            )
        )
        db.session.flush()
        db.session.rollback()
        assert _drain(subscription) == []

    def test_delete(self, ctx, citizen):
        complaint = Complaint(
            title=VALID_COMPLAINT["title"],
            description=VALID_COMPLAINT["description"],
            category="negligence",
            location="Water board",
            is_anonymous=False,
            user_id=citizen.id,
        )
        db.session.add(complaint)
        db.session.commit()
        complaint_id = complaint.id

        subscription = get_feed().subscribe()
        db.session.delete(complaint)
        db.session.commit()

        (change,) = _drain(subscription)
        assert change.kind == DELETED
        assert change.complaint_id == complaint_id

    def test_citizen_only_sees_own(self, ctx, citizen, make_user):
        own = get_feed().subscribe(stream_predicate(citizen))
        everything = get_feed().subscribe(stream_predicate(make_user("government")))

        mine = create_complaint(_submission(), citizen)
        create_complaint(_submission(), make_user())
        create_complaint(_submission(is_anonymous=True))

        assert [c.complaint_id for c in _drain(own)] == [mine.id]
        assert len(_drain(everything)) == 3

    def test_closed_subscription_stops_receiving(self, ctx):
        feed = get_feed()
        subscription = feed.subscribe()
        subscription.close()
        create_complaint(_submission(is_anonymous=True))
        assert feed.subscriber_count == 0
        assert _drain(subscription) == []


class TestFeed:
    def test_bounded_queue_drops_overflow(self):
        feed = ChangeFeed(queue_size=1)
        subscription = feed.subscribe()
        feed.publish(ChangeEvent(INSERTED, "complaints", _record("a")))
        feed.publish(ChangeEvent(INSERTED, "complaints", _record("b")))
        assert subscription.dropped == 1
        assert subscription.get(timeout=0).complaint_id == "a"

    def test_predicate_uses_previous_for_deletes(self):
        feed = ChangeFeed()
        subscription = feed.subscribe(lambda record: record.get("user_id") == "u1")
        feed.publish(ChangeEvent(DELETED, "complaints", {}, {"id": "x", "user_id": "u1"}))
        assert subscription.get(timeout=0).complaint_id == "x"


class TestLiveView:
    def test_folds_events(self):
        view = LiveComplaintView([_record("a", created_at="2025-01-01T00:00:00")])
        view.apply(ChangeEvent(INSERTED, "complaints", _record("b", created_at="2025-02-01T00:00:00")))
        view.apply(ChangeEvent(UPDATED, "complaints", _record("a", status="resolved"), _record("a")))
        view.apply(ChangeEvent(INSERTED, "complaints", _record("c", status="in_review", created_at="2025-03-01T00:00:00")))
        view.apply(ChangeEvent(DELETED, "complaints", {}, _record("c")))

        assert [r["id"] for r in view.complaints] == ["b", "a"]
        assert view.counts == {"total": 2, "pending": 1, "in_review": 0, "resolved": 1}

    def test_diff_snapshots(self):
        before = {"a": _record("a"), "b": _record("b")}
        after = {"a": _record("a", status="verified"), "c": _record("c")}
        kinds = {(c.kind, c.complaint_id) for c in diff_snapshots(before, after)}
        assert kinds == {(UPDATED, "a"), (INSERTED, "c"), (DELETED, "b")}


class TestServerSentEvents:
    def test_snapshot_keepalive_then_change(self):
        feed = ChangeFeed()
        subscription = feed.subscribe()
        stream = stream_events(subscription, {"complaints": [], "counts": {"total": 0}}, keepalive=0.01)

        first = next(stream)
        assert first.startswith("event: snapshot\n")
        assert next(stream) == ": keepalive\n\n"

        feed.publish(ChangeEvent(INSERTED, "complaints", _record("a")))
        message = next(stream)
        assert message.startswith("event: change\n")
        data = json.loads(message.split("data: ", 1)[1])
        assert data["kind"] == INSERTED
        assert data["record"]["id"] == "a"

        stream.close()
        assert feed.subscriber_count == 0
