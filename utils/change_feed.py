"""Realtime complaint change feed.

Session events record complaint inserts, updates and deletes while a flush
runs, and hand them to subscribers only once the transaction commits. A
rollback discards them. Subscribers each own a bounded queue and an optional
predicate used to keep citizens to their own complaints.
"""
from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from flask import current_app, has_app_context
from sqlalchemy import event, inspect

from models import Complaint

INSERTED = "inserted"
UPDATED = "updated"
DELETED = "deleted"

_PENDING_KEY = "complaint_changes"

Predicate = Callable[[dict], bool]


@dataclass
class ChangeEvent:
    kind: str
    table: str
    record: Dict[str, Any]
    previous: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def complaint_id(self) -> Optional[str]:
        return (self.record or self.previous or {}).get("id")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "table": self.table,
            "record": self.record,
            "previous": self.previous,
            "occurred_at": self.occurred_at.isoformat(),
        }


class Subscription:
    def __init__(self, feed: "ChangeFeed", maxsize: int, predicate: Optional[Predicate] = None) -> None:
        self._feed = feed
        self.queue: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=maxsize)
        self.predicate = predicate
        self.dropped = 0

    def wants(self, change: ChangeEvent) -> bool:
        if self.predicate is None:
            return True
        return bool(self.predicate(change.record or change.previous or {}))

    def offer(self, change: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(change)
        except queue.Full:
            self.dropped += 1

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._feed.unsubscribe(self)


class ChangeFeed:
    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, predicate: Optional[Predicate] = None) -> Subscription:
        subscription = Subscription(self, self.queue_size, predicate)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, change: ChangeEvent) -> int:
        with self._lock:
            targets = list(self._subscribers)
        delivered = 0
        for subscription in targets:
            if subscription.wants(change):
                subscription.offer(change)
                delivered += 1
        return delivered


def get_feed() -> ChangeFeed:
    feed = current_app.extensions.get("change_feed")
    if feed is None:
        feed = ChangeFeed(int(current_app.config.get("CHANGE_FEED_QUEUE_SIZE", 256)))
        current_app.extensions["change_feed"] = feed
    return feed


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _previous_values(target: Complaint) -> Dict[str, Any]:
    state = inspect(target)
    previous = target.to_dict()
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted and attr.key in previous:
            previous[attr.key] = _json_value(history.deleted[0])
    return previous


def _capture_changes(session, flush_context) -> None:
    pending = session.info.setdefault(_PENDING_KEY, [])
    table = Complaint.__tablename__
    for obj in session.new:
        if isinstance(obj, Complaint):
            pending.append(ChangeEvent(INSERTED, table, obj.to_dict()))
    for obj in session.dirty:
        if isinstance(obj, Complaint) and session.is_modified(obj, include_collections=False):
            pending.append(ChangeEvent(UPDATED, table, obj.to_dict(), _previous_values(obj)))
    for obj in session.deleted:
        if isinstance(obj, Complaint):
            snapshot = obj.to_dict()
            pending.append(ChangeEvent(DELETED, table, {}, snapshot))


def _publish_pending(session) -> None:
    changes = session.info.pop(_PENDING_KEY, [])
    if not changes or not has_app_context():
        return
    feed = get_feed()
    for change in changes:
        feed.publish(change)
    current_app.logger.debug("Change feed published", extra={"events": len(changes), "subscribers": feed.subscriber_count})


def _discard_pending(session) -> None:
    session.info.pop(_PENDING_KEY, None)


_tracking_registered = False


def register_change_tracking(session) -> None:
    """Attach the capture/publish listeners to ``session`` (a scoped session or Session class) once."""
    global _tracking_registered
    if _tracking_registered:
        return
    event.listen(session, "after_flush", _capture_changes)
    event.listen(session, "after_commit", _publish_pending)
    event.listen(session, "after_rollback", _discard_pending)
    _tracking_registered = True


class LiveComplaintView:
    """Newest-first complaint list plus status counts, kept current by folding change events."""

    def __init__(self, records: Iterable[dict] = ()) -> None:
        self._records: Dict[str, dict] = {}
        for record in records:
            self._records[record["id"]] = record

    def apply(self, change: ChangeEvent) -> None:
        complaint_id = change.complaint_id
        if not complaint_id:
            return
        if change.kind == DELETED:
            self._records.pop(complaint_id, None)
        else:
            self._records[complaint_id] = change.record

    @property
    def complaints(self) -> List[dict]:
        return sorted(self._records.values(), key=lambda r: r.get("created_at") or "", reverse=True)

    @property
    def counts(self) -> Dict[str, int]:
        statuses = [r.get("status") for r in self._records.values()]
        return {
            "total": len(statuses),
            "pending": statuses.count("pending"),
            "in_review": statuses.count("in_review"),
            "resolved": statuses.count("resolved"),
        }

    def snapshot(self) -> dict:
        return {"complaints": self.complaints, "counts": self.counts}


def diff_snapshots(before: Dict[str, dict], after: Dict[str, dict]) -> List[ChangeEvent]:
    """Derive change events between two ``{id: record}`` snapshots taken by polling."""
    table = Complaint.__tablename__
    changes: List[ChangeEvent] = []
    for complaint_id, record in after.items():
        old = before.get(complaint_id)
        if old is None:
            changes.append(ChangeEvent(INSERTED, table, record))
        elif old != record:
            changes.append(ChangeEvent(UPDATED, table, record, old))
    for complaint_id, old in before.items():
        if complaint_id not in after:
            changes.append(ChangeEvent(DELETED, table, {}, old))
    return changes


def format_sse(event_name: str, payload: Any) -> str:
    return f"event: {event_name}\ndata: {json.dumps(payload, default=str)}\n\n"


def stream_events(subscription: Subscription, initial: dict, keepalive: float) -> Iterator[str]:
    """Server-Sent Events body: one snapshot, then changes as they commit, with keepalive comments."""
    try:
        yield format_sse("snapshot", initial)
        while True:
            change = subscription.get(timeout=keepalive)
            if change is None:
                yield ": keepalive\n\n"
                continue
            yield format_sse("change", change.to_dict())
    finally:
        subscription.close()
