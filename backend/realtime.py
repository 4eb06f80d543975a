"""
Change feed and live sync layer.

ChangeFeed is the platform side: every write made through database.Database is
published here as a row-level INSERT/UPDATE/DELETE event, and subscribers
register per table and event type with an optional row filter.

LiveList is the client side: it seeds a list from an initial fetch, then mirrors
remote mutations by applying each delivered event to the held rows.
"""
from __future__ import annotations

import itertools
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from errors import MarketplaceError

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ANY = "*"

Row = Dict[str, Any]
RowFilter = Union[str, Callable[[Row], bool], None]


@dataclass
class ChangeEvent:
    table: str
    event_type: str
    new: Row = field(default_factory=dict)
    old: Row = field(default_factory=dict)

    @property
    def row(self) -> Row:
        return self.old if self.event_type == DELETE else self.new


# ---- row filters

_CLAUSE = re.compile(r"^(?P<column>\w+)[=.](?P<op>eq|neq)\.(?P<value>.*)$")


def _clause(text: str) -> Callable[[Row], bool]:
    m = _CLAUSE.match(text.strip())
    if not m:
        raise ValueError(f"Unsupported filter expression: {text!r}")
    column, op, value = m.group("column"), m.group("op"), m.group("value")
    if op == "eq":
        return lambda row: str(row.get(column)) == value
    return lambda row: str(row.get(column)) != value


def parse_filter(expression: RowFilter) -> Callable[[Row], bool]:
    """Turn a filter expression into a row predicate.

    Accepts ``column=eq.value``, ``column=neq.value``,
    ``or(a.eq.x,b.eq.y)`` or any callable taking the row.
    """
    if expression is None or expression == "":
        return lambda row: True
    if callable(expression):
        return expression
    text = expression.strip()
    if text.startswith("or(") and text.endswith(")"):
        clauses = [_clause(part) for part in text[3:-1].split(",") if part.strip()]
        return lambda row: any(c(row) for c in clauses)
    return _clause(text)


# ---- platform side

class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, event: str, predicate: Callable[[Row], bool], callback: Callable[[ChangeEvent], None]):
        self.feed = feed
        self.table = table
        self.event = event
        self.predicate = predicate
        self.callback = callback
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        if self.event not in (ANY, event.event_type):
            return False
        return bool(self.predicate(event.row))

    def unsubscribe(self):
        self.active = False
        self.feed._remove(self)


class ChangeFeed:
    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None], event: str = ANY, filter: RowFilter = None) -> Subscription:
        sub = Subscription(self, table, event, parse_filter(filter), callback)
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug(f"Subscribed to {event} on {table}")
        return sub

    def _remove(self, sub: Subscription):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent):
        with self._lock:
            targets = list(self._subscriptions)
        for sub in targets:
            try:
                if not sub.matches(event):
                    continue
                logger.debug(f"Delivering {event.event_type} on {event.table} id={event.row.get('id')}")
                sub.callback(event)
            except Exception:
                # one broken listener must not fail the write that published the event
                logger.exception(f"Change feed subscriber on {sub.table} failed")


# ---- client side

def _same_row(existing: Row, incoming: Row) -> bool:
    if existing.get("id") is not None and existing.get("id") == incoming.get("id"):
        return True
    client_id = incoming.get("client_id")
    return client_id is not None and existing.get("client_id") == client_id


def apply_change(rows: List[Row], event: ChangeEvent, insert_at: str = "start") -> List[Row]:
    """Return a new list with one change event applied, keyed by row id.

    A row carrying the same ``client_id`` as a held row replaces it, which is how
    an optimistic message is swapped for the stored one when its echo arrives.
    """
    if event.event_type == DELETE:
        gone = event.old.get("id")
        return [r for r in rows if r.get("id") != gone]

    incoming = event.new
    for i, existing in enumerate(rows):
        if _same_row(existing, incoming):
            # joined entities the raw event row does not carry survive the merge
            return rows[:i] + [{**existing, **incoming}] + rows[i + 1:]

    if insert_at == "end":
        return rows + [dict(incoming)]
    return [dict(incoming)] + rows


def criteria_key(criteria: Any) -> str:
    if hasattr(criteria, "model_dump"):
        criteria = criteria.model_dump(exclude_none=True)
    return json.dumps(criteria, sort_keys=True, default=str)


class LiveList:
    """A list mirrored from one table: ``loading`` until the first fetch resolves,
    ``ready`` afterwards and re-entered on every delta."""

    def __init__(self, feed: ChangeFeed, table: str, fetch: Callable[[Any], List[Row]], filter: RowFilter = None, criteria: Any = None, insert_at: str = "start", on_change: Optional[Callable[[ChangeEvent], None]] = None):
        self.feed = feed
        self.table = table
        self.fetch = fetch
        self.filter = filter
        self.criteria = criteria
        self.insert_at = insert_at
        self.on_change = on_change
        self.data: List[Row] = []
        self.loading = True
        self.error: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._key: Optional[str] = None

    @property
    def state(self) -> str:
        return "loading" if self.loading else "ready"

    @property
    def mounted(self) -> bool:
        return self._subscription is not None

    def mount(self):
        if self.mounted:
            return
        self._key = criteria_key(self.criteria)
        self.reload()
        self._subscription = self.feed.subscribe(self.table, self._on_event, filter=self.filter)

    def reload(self):
        self.loading = True
        self.error = None
        try:
            self.data = [dict(r) for r in (self.fetch(self.criteria) or [])]
        except MarketplaceError as e:
            logger.error(f"Error loading {self.table}: {e.message}")
            self.error = e.message
        finally:
            self.loading = False

    def unmount(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def set_criteria(self, criteria: Any) -> bool:
        """Re-fetch and re-subscribe when the serialized criteria change."""
        if criteria_key(criteria) == self._key:
            return False
        self.criteria = criteria
        self.unmount()
        self.mount()
        return True

    def apply(self, event: ChangeEvent):
        self.data = apply_change(self.data, event, self.insert_at)

    def _on_event(self, event: ChangeEvent):
        if not self.mounted:
            return
        self.apply(event)
        if self.on_change is not None:
            self.on_change(event)


class NotificationCenter:
    """New-message and order-update notifications for one signed-in user."""

    def __init__(self, feed: ChangeFeed, user_id: str):
        self.feed = feed
        self.user_id = user_id
        self.notifications: List[Row] = []
        self._ids = itertools.count(1)
        self._subscriptions: List[Subscription] = []

    def mount(self):
        if self._subscriptions:
            return
        self._subscriptions = [
            self.feed.subscribe("messages", self._on_message, event=INSERT, filter=f"recipient_id=eq.{self.user_id}"),
            self.feed.subscribe("orders", self._on_order, event=UPDATE, filter=f"customer_id=eq.{self.user_id}"),
        ]

    def unmount(self):
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

    def _push(self, kind: str, title: str, message: str, data: Row):
        self.notifications.append({
            "id": next(self._ids),
            "type": kind,
            "title": title,
            "message": message,
            "timestamp": datetime.now(timezone.utc),
            "data": data,
        })

    def _on_message(self, event: ChangeEvent):
        self._push("message", "New Message", "You have a new message", event.new)

    def _on_order(self, event: ChangeEvent):
        self._push("order", "Order Update", f"Your order status has been updated to {event.new.get('status')}", event.new)

    def clear(self, notification_id: int):
        self.notifications = [n for n in self.notifications if n["id"] != notification_id]
