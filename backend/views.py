"""
View layer: role guards, dashboard composition, the add-product form checks and
the chat view model with optimistic sends.
"""
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

import mock_data
import queries
from database import Database
from errors import MarketplaceError, RemoteOperationFailed
from realtime import INSERT, ChangeEvent, LiveList, apply_change
from schemas import Message, SearchFilters, UserRecord

logger = logging.getLogger(__name__)


# ========== ROLE GUARD ==========

def access_denied(role: str) -> dict:
    return {
        "access": "denied",
        "title": "Access Denied",
        "message": f"You need to be logged in as a {role.replace('-', ' ')} to view this page.",
        "login_url": "/login",
    }


def require_role(user: Optional[UserRecord], role: str) -> Optional[dict]:
    """Return the access-denied view when ``user`` may not see ``role``'s dashboard.

    This only decides what to render; the data behind every dashboard is scoped
    to the authenticated user by the queries themselves.
    """
    if user is None or user.role != role:
        return access_denied(role)
    return None


# ========== LISTINGS WITH FALLBACK ==========

def _dump(records) -> List[dict]:
    return [r.model_dump() for r in records]


def load_listing(fetch: Callable[[], list], fallback: List[dict], filters: SearchFilters, label: str) -> Dict:
    """Fetch a listing; on failure serve the bundled rows filtered locally."""
    try:
        return {"items": _dump(fetch()), "degraded": False, "notice": None}
    except RemoteOperationFailed as e:
        logger.warning(f"Falling back to demo {label}: {e.message}")
        rows = queries.sort_rows(queries.apply_filters(fallback, filters), filters.sort_by)
        return {"items": rows, "degraded": True, "notice": f"Failed to load {label}. Using demo data."}


def product_listing(store: Database, filters: Optional[SearchFilters] = None) -> Dict:
    filters = filters or SearchFilters()
    return load_listing(lambda: queries.get_products(store, filters), mock_data.MOCK_PRODUCTS, filters, "products")


def service_listing(store: Database, filters: Optional[SearchFilters] = None) -> Dict:
    filters = filters or SearchFilters()
    service_filters = filters.model_copy(update={"availability": False})
    return load_listing(lambda: queries.get_services(store, filters), mock_data.MOCK_SERVICES, service_filters, "services")


# ========== DASHBOARDS ==========

def customer_dashboard(store: Database, user: Optional[UserRecord], filters: Optional[SearchFilters] = None) -> Dict:
    denied = require_role(user, "customer")
    if denied:
        return denied
    products = product_listing(store, filters)
    services = service_listing(store, filters)
    notices = [n for n in (products["notice"], services["notice"]) if n]
    orders: List[dict] = []
    bookings: List[dict] = []
    try:
        orders = _dump(queries.get_orders_by_customer(store, user.id))
        bookings = _dump(queries.get_bookings_by_customer(store, user.id))
    except RemoteOperationFailed as e:
        notices.append(e.message)
    return {
        "access": "granted",
        "user": user.model_dump(),
        "products": products["items"],
        "services": services["items"],
        "orders": orders,
        "bookings": bookings,
        "degraded": products["degraded"] or services["degraded"],
        "notices": notices,
    }


def retailer_dashboard(store: Database, user: Optional[UserRecord]) -> Dict:
    denied = require_role(user, "retailer")
    if denied:
        return denied
    products = queries.get_products_by_seller(store, user.id)
    orders = queries.get_orders_by_seller(store, user.id)
    mine = {p.id for p in products}
    sales = sum(i.price * i.quantity for o in orders if o.status != "cancelled" for i in o.order_items if i.product_id in mine)
    rated = [p.rating for p in products if p.reviews]
    return {
        "access": "granted",
        "user": user.model_dump(),
        "products": _dump(products),
        "orders": _dump(orders),
        "stats": {
            "total_products": len(products),
            "total_orders": len(orders),
            "pending_orders": sum(1 for o in orders if o.status == "pending"),
            "total_sales": round(sales, 2),
            "customer_rating": round(sum(rated) / len(rated), 1) if rated else 0.0,
        },
    }


def provider_dashboard(store: Database, user: Optional[UserRecord], today: Optional[date] = None) -> Dict:
    denied = require_role(user, "service-provider")
    if denied:
        return denied
    today = today or datetime.now(timezone.utc).date()
    services = queries.get_services_by_provider(store, user.id)
    bookings = queries.get_bookings_by_provider(store, user.id)
    earnings = sum(b.total for b in bookings if b.status == "completed")
    rated = [s.rating for s in services if s.reviews]
    return {
        "access": "granted",
        "user": user.model_dump(),
        "services": _dump(services),
        "bookings": _dump(bookings),
        "today_bookings": [b.model_dump() for b in bookings if b.date == today.isoformat()],
        "stats": {
            "total_services": len(services),
            "total_bookings": len(bookings),
            "pending_bookings": sum(1 for b in bookings if b.status == "pending"),
            "earnings": round(earnings, 2),
            "rating": round(sum(rated) / len(rated), 1) if rated else 0.0,
        },
    }


# ========== ADD PRODUCT FORM ==========

def validate_product_form(form: dict) -> List[str]:
    errors = []
    if not (form.get("name") or "").strip():
        errors.append("Product name is required")
    if not (form.get("description") or "").strip():
        errors.append("Product description is required")
    price = form.get("price")
    if price is None or not isinstance(price, (int, float)) or price <= 0:
        errors.append("Valid price is required")
    if not form.get("category"):
        errors.append("Category is required")
    availability = form.get("availability")
    if availability is None or not isinstance(availability, int) or availability < 0:
        errors.append("Valid availability quantity is required")
    if not (form.get("delivery_time") or "").strip():
        errors.append("Delivery time is required")
    if not form.get("payment_options"):
        errors.append("At least one payment option is required")
    if not form.get("images"):
        errors.append("At least one product image is required")
    return errors


# ========== LIVE FEEDS ==========

def live_products(store: Database, filters: Optional[SearchFilters] = None) -> LiveList:
    return LiveList(
        store.feed, "products",
        fetch=lambda criteria: _dump(queries.get_products(store, criteria)),
        criteria=filters or SearchFilters(),
    )


def live_messages(store: Database, user_id: str) -> LiveList:
    def fetch(_):
        rows = store.get_documents(
            "messages", {"$or": [{"sender_id": user_id}, {"recipient_id": user_id}]}, sort=[("created_at", 1)],
        )
        return rows
    return LiveList(store.feed, "messages", fetch=fetch, filter=f"or(sender_id.eq.{user_id},recipient_id.eq.{user_id})", insert_at="end")


def live_orders(store: Database, user: UserRecord) -> LiveList:
    if user.role == "retailer":
        # join-aware scope: only orders containing this seller's products are delivered
        return LiveList(
            store.feed, "orders",
            fetch=lambda _: _dump(queries.get_orders_by_seller(store, user.id)),
            filter=lambda row: user.id in queries.order_seller_ids(store, row.get("id")),
        )
    return LiveList(
        store.feed, "orders",
        fetch=lambda _: _dump(queries.get_orders_by_customer(store, user.id)),
        filter=f"customer_id=eq.{user.id}",
    )


def live_bookings(store: Database, user: UserRecord) -> LiveList:
    if user.role == "service-provider":
        return LiveList(
            store.feed, "bookings",
            fetch=lambda _: _dump(queries.get_bookings_by_provider(store, user.id)),
            filter=lambda row: row.get("service_id") in queries.provider_service_ids(store, user.id),
        )
    return LiveList(
        store.feed, "bookings",
        fetch=lambda _: _dump(queries.get_bookings_by_customer(store, user.id)),
        filter=f"customer_id=eq.{user.id}",
    )


# ========== CHAT ==========

class ChatView:
    """Messaging inbox for one signed-in user.

    ``send_message`` appends a pending row before the write is confirmed. The
    pending row carries a client correlation id that the stored row echoes back
    through the change feed, at which point the stored row replaces it.
    """

    def __init__(self, store: Database, user: UserRecord, send: Optional[Callable[[Database, Message], object]] = None):
        self.store = store
        self.user = user
        self.send = send or queries.send_message
        self.conversations: List[dict] = []
        self.messages: List[dict] = []
        self.selected_chat: Optional[str] = None
        self.message_input = ""
        self.search_query = ""
        self.is_sending = False
        self.error: Optional[str] = None
        self._subscription = None

    def mount(self):
        self.load_conversations()
        if self._subscription is None:
            self._subscription = self.store.feed.subscribe(
                "messages", self._on_event, event=INSERT,
                filter=f"or(sender_id.eq.{self.user.id},recipient_id.eq.{self.user.id})",
            )

    def unmount(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def load_conversations(self):
        try:
            self.conversations = [c.model_dump() for c in queries.get_conversations(self.store, self.user.id)]
        except MarketplaceError as e:
            logger.error(f"Error loading conversations: {e.message}")
            self.error = "Failed to load conversations"

    def select(self, other_user_id: str):
        self.selected_chat = other_user_id
        try:
            rows = queries.get_messages(self.store, self.user.id, other_user_id)
            self.messages = _dump(rows)
            unread = [m.id for m in rows if m.recipient_id == self.user.id and not m.read]
            if unread:
                queries.mark_messages_as_read(self.store, unread)
                for m in self.messages:
                    if m["id"] in unread:
                        m["read"] = True
                self.load_conversations()
        except MarketplaceError as e:
            logger.error(f"Error loading messages: {e.message}")
            self.error = "Failed to load messages"

    def filtered_conversations(self) -> List[dict]:
        if not self.search_query:
            return self.conversations
        needle = self.search_query.lower()
        return [
            c for c in self.conversations
            if needle in ((c.get("other_user") or {}).get("name") or "").lower()
            or needle in ((c.get("last_message") or {}).get("content") or "").lower()
        ]

    def send_message(self) -> bool:
        content = self.message_input.strip()
        if not content or not self.selected_chat or self.is_sending:
            return False
        self.is_sending = True
        client_id = str(uuid.uuid4())
        pending = {
            "id": f"temp-{client_id}",
            "client_id": client_id,
            "sender_id": self.user.id,
            "recipient_id": self.selected_chat,
            "content": content,
            "type": "text",
            "read": False,
            "created_at": datetime.now(timezone.utc),
            "sender": self.user.model_dump(),
            "pending": True,
        }
        self.messages = self.messages + [pending]
        self.message_input = ""
        try:
            self.send(self.store, Message(
                sender_id=self.user.id,
                recipient_id=self.selected_chat,
                content=content,
                type="text",
                client_id=client_id,
            ))
            return True
        except MarketplaceError as e:
            logger.error(f"Error sending message: {e.message}")
            self.messages = [m for m in self.messages if m["id"] != pending["id"]]
            self.error = "Failed to send message"
            return False
        finally:
            self.is_sending = False

    def _on_event(self, event: ChangeEvent):
        row = event.new
        if self.selected_chat and self.selected_chat in (row.get("sender_id"), row.get("recipient_id")):
            self.messages = apply_change(self.messages, ChangeEvent("messages", INSERT, new={**row, "pending": False}), insert_at="end")
        self.load_conversations()
