"""
Data access layer: one function family per entity.

Each function takes the Database first, builds a MongoDB query from typed
inputs, joins related rows and returns typed records. Platform failures surface
as RemoteOperationFailed, missing single rows as NotFound.

The filter/sort helpers are pure and work on plain row dicts, so the same
predicates serve database results, live-synced lists and the bundled dataset.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, get_args

from pydantic import ValidationError

from database import Database, to_object_id
from errors import DuplicateAccount, MarketplaceError, NotFound
from realtime import INSERT
from schemas import (
    ALL_AREAS, ALL_CATEGORIES, Booking, BookingRecord, BookingStatus, Conversation, Message, MessageRecord,
    Order, OrderItem, OrderRecord, OrderStatus, Product, ProductRecord, Review, ReviewRecord, Role, SearchFilters,
    Service, ServiceAvailability, ServiceRecord, User, UserRecord,
)

logger = logging.getLogger(__name__)

NEW_ARRIVAL_DAYS = 7


# ========== FILTERS ==========

def _as_utc(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _row_area(row: dict) -> Optional[str]:
    if row.get("area"):
        return row["area"]
    location = row.get("location") or {}
    if location.get("area"):
        return location["area"]
    owner = row.get("seller") or row.get("provider") or {}
    return owner.get("area")


def filter_predicates(filters: Optional[SearchFilters]) -> List[Callable[[dict], bool]]:
    """One independent predicate per active criterion; a row matches when all hold."""
    if filters is None:
        return []
    preds: List[Callable[[dict], bool]] = []
    if filters.query:
        needle = filters.query.lower()
        preds.append(lambda r: needle in (r.get("name") or "").lower() or needle in (r.get("description") or "").lower())
    if filters.category and filters.category != ALL_CATEGORIES:
        preds.append(lambda r: r.get("category") == filters.category)
    if filters.location and filters.location != ALL_AREAS:
        preds.append(lambda r: _row_area(r) == filters.location)
    if filters.price_min is not None:
        preds.append(lambda r: (r.get("price") or 0) >= filters.price_min)
    if filters.price_max is not None:
        preds.append(lambda r: (r.get("price") or 0) <= filters.price_max)
    if filters.rating:
        preds.append(lambda r: (r.get("rating") or 0) >= filters.rating)
    if filters.availability:
        preds.append(lambda r: (r.get("availability") or 0) > 0)
    if filters.new_arrivals:
        cutoff = datetime.now(timezone.utc) - timedelta(days=NEW_ARRIVAL_DAYS)
        preds.append(lambda r: r.get("created_at") is not None and _as_utc(r["created_at"]) > cutoff)
    return preds


def matches_filters(row: dict, filters: Optional[SearchFilters]) -> bool:
    return all(p(row) for p in filter_predicates(filters))


def apply_filters(rows: Iterable[dict], filters: Optional[SearchFilters]) -> List[dict]:
    preds = filter_predicates(filters)
    return [r for r in rows if all(p(r) for p in preds)]


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def sort_rows(rows: List[dict], sort_by: Optional[str]) -> List[dict]:
    if sort_by == "price-asc":
        return sorted(rows, key=lambda r: r.get("price") or 0)
    if sort_by == "price-desc":
        return sorted(rows, key=lambda r: r.get("price") or 0, reverse=True)
    if sort_by == "rating":
        return sorted(rows, key=lambda r: r.get("rating") or 0, reverse=True)
    if sort_by == "newest":
        return sorted(rows, key=lambda r: _as_utc(r.get("created_at")) or _EPOCH, reverse=True)
    if sort_by == "popularity":
        return sorted(rows, key=lambda r: len(r.get("reviews") or []), reverse=True)
    return list(rows)


def database_query(filters: Optional[SearchFilters], stock_field: Optional[str] = "availability") -> dict:
    """The part of the criteria MongoDB can evaluate before joins."""
    query: dict = {}
    if filters is None:
        return query
    if filters.category and filters.category != ALL_CATEGORIES:
        query["category"] = filters.category
    price = {}
    if filters.price_min is not None:
        price["$gte"] = filters.price_min
    if filters.price_max is not None:
        price["$lte"] = filters.price_max
    if price:
        query["price"] = price
    if filters.availability and stock_field:
        query[stock_field] = {"$gt": 0}
    if filters.query:
        pattern = re.escape(filters.query)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if filters.new_arrivals:
        query["created_at"] = {"$gte": datetime.now(timezone.utc) - timedelta(days=NEW_ARRIVAL_DAYS)}
    return query


def database_sort(sort_by: Optional[str]) -> list:
    if sort_by == "price-asc":
        return [("price", 1)]
    if sort_by == "price-desc":
        return [("price", -1)]
    return [("created_at", -1)]


# ========== USERS ==========

def _object_ids(ids: Iterable[str]) -> list:
    out = []
    for i in set(ids):
        try:
            out.append(to_object_id(i))
        except NotFound:
            continue
    return out


def _users_by_id(store: Database, ids: Iterable[str]) -> Dict[str, dict]:
    oids = _object_ids(i for i in ids if i)
    if not oids:
        return {}
    return {u["id"]: u for u in store.get_documents("users", {"_id": {"$in": oids}})}


def create_user(store: Database, user: User) -> UserRecord:
    if store.get_documents("users", {"email": user.email}, limit=1):
        raise DuplicateAccount()
    row = store.create_document("users", user)
    logger.info(f"Created {user.role} profile for {user.email}")
    return UserRecord(**row)


def get_user_by_id(store: Database, user_id: str) -> UserRecord:
    return UserRecord(**store.get_document("users", user_id))


def get_user_by_email(store: Database, email: str) -> UserRecord:
    rows = store.get_documents("users", {"email": email}, limit=1)
    if not rows:
        raise NotFound("User not found")
    return UserRecord(**rows[0])


def update_user_role(store: Database, user_id: str, role: Role) -> UserRecord:
    return UserRecord(**store.update_document("users", user_id, {"role": role}))


# ========== REVIEWS ==========

def _rating(reviews: List[dict]) -> float:
    if not reviews:
        return 0.0
    return round(sum(r.get("rating", 0) for r in reviews) / len(reviews), 1)


def _reviews_for(store: Database, key: str, ids: List[str]) -> Dict[str, List[dict]]:
    if not ids:
        return {}
    reviews = store.get_documents("reviews", {key: {"$in": ids}}, sort=[("created_at", -1)])
    users = _users_by_id(store, (r.get("user_id") for r in reviews))
    grouped: Dict[str, List[dict]] = {}
    for r in reviews:
        grouped.setdefault(r[key], []).append({**r, "user": users.get(r.get("user_id"))})
    return grouped


def create_review(store: Database, review: Review) -> ReviewRecord:
    if review.product_id:
        store.get_document("products", review.product_id)
    else:
        store.get_document("services", review.service_id)
    return ReviewRecord(**store.create_document("reviews", review))


# ========== PRODUCTS ==========

def _join_products(store: Database, rows: List[dict]) -> List[dict]:
    sellers = _users_by_id(store, (r.get("seller_id") for r in rows))
    reviews = _reviews_for(store, "product_id", [r["id"] for r in rows])
    out = []
    for r in rows:
        rs = reviews.get(r["id"], [])
        out.append({**r, "seller": sellers.get(r.get("seller_id")), "reviews": rs, "rating": _rating(rs)})
    return out


def get_products(store: Database, filters: Optional[SearchFilters] = None) -> List[ProductRecord]:
    filters = filters or SearchFilters()
    rows = store.get_documents("products", database_query(filters), sort=database_sort(filters.sort_by))
    rows = sort_rows(apply_filters(_join_products(store, rows), filters), filters.sort_by)
    return [ProductRecord(**r) for r in rows]


def get_product_by_id(store: Database, product_id: str) -> ProductRecord:
    row = store.get_document("products", product_id)
    return ProductRecord(**_join_products(store, [row])[0])


def get_products_by_seller(store: Database, seller_id: str) -> List[ProductRecord]:
    rows = store.get_documents("products", {"seller_id": seller_id}, sort=[("created_at", -1)])
    return [ProductRecord(**r) for r in _join_products(store, rows)]


def create_product(store: Database, product: Product) -> ProductRecord:
    row = store.create_document("products", product)
    logger.info(f"Seller {product.seller_id} listed product {row['id']}")
    return ProductRecord(**row)


def update_product(store: Database, product_id: str, updates: dict) -> ProductRecord:
    current = store.get_document("products", product_id)
    try:
        merged = Product(**{**current, **updates})
    except ValidationError as e:
        raise MarketplaceError(f"Invalid product update: {e.errors()[0]['msg']}")
    changed = {k: v for k, v in merged.model_dump().items() if k in updates}
    return ProductRecord(**store.update_document("products", product_id, changed))


def delete_product(store: Database, product_id: str) -> None:
    store.delete_document("products", product_id)


# ========== SERVICES ==========

def _join_services(store: Database, rows: List[dict]) -> List[dict]:
    ids = [r["id"] for r in rows]
    providers = _users_by_id(store, (r.get("provider_id") for r in rows))
    reviews = _reviews_for(store, "service_id", ids)
    windows: Dict[str, List[dict]] = {}
    if ids:
        for w in store.get_documents("service_availability", {"service_id": {"$in": ids}}, sort=[("date", 1)]):
            windows.setdefault(w["service_id"], []).append(w)
    out = []
    for r in rows:
        rs = reviews.get(r["id"], [])
        out.append({
            **r,
            "provider": providers.get(r.get("provider_id")),
            "availability": windows.get(r["id"], []),
            "reviews": rs,
            "rating": _rating(rs),
        })
    return out


def get_services(store: Database, filters: Optional[SearchFilters] = None) -> List[ServiceRecord]:
    filters = filters or SearchFilters()
    # services have no stock count; the in-stock flag does not apply to them
    rows = store.get_documents("services", database_query(filters, stock_field=None), sort=database_sort(filters.sort_by))
    service_filters = filters.model_copy(update={"availability": False})
    rows = sort_rows(apply_filters(_join_services(store, rows), service_filters), filters.sort_by)
    return [ServiceRecord(**r) for r in rows]


def get_service_by_id(store: Database, service_id: str) -> ServiceRecord:
    row = store.get_document("services", service_id)
    return ServiceRecord(**_join_services(store, [row])[0])


def get_services_by_provider(store: Database, provider_id: str) -> List[ServiceRecord]:
    rows = store.get_documents("services", {"provider_id": provider_id}, sort=[("created_at", -1)])
    return [ServiceRecord(**r) for r in _join_services(store, rows)]


def create_service(store: Database, service: Service, availability: Optional[List[ServiceAvailability]] = None) -> ServiceRecord:
    row = store.create_document("services", service)
    for window in availability or []:
        store.create_document("service_availability", {"service_id": row["id"], **window.model_dump()})
    return get_service_by_id(store, row["id"])


# ========== ORDERS ==========

def _join_orders(store: Database, rows: List[dict]) -> List[dict]:
    ids = [r["id"] for r in rows]
    items = store.get_documents("order_items", {"order_id": {"$in": ids}}) if ids else []
    products = {}
    product_ids = _object_ids(i["product_id"] for i in items)
    if product_ids:
        products = {p["id"]: p for p in _join_products(store, store.get_documents("products", {"_id": {"$in": product_ids}}))}
    customers = _users_by_id(store, (r.get("customer_id") for r in rows))
    by_order: Dict[str, List[dict]] = {}
    for item in items:
        by_order.setdefault(item["order_id"], []).append({**item, "product": products.get(item["product_id"])})
    return [{**r, "order_items": by_order.get(r["id"], []), "customer": customers.get(r.get("customer_id"))} for r in rows]


def price_order_items(store: Database, items: List[OrderItem]) -> List[OrderItem]:
    """Re-price each line from the stored product; unknown products raise NotFound."""
    priced = []
    for item in items:
        product = store.get_document("products", item.product_id)
        priced.append(item.model_copy(update={"price": product["price"]}))
    return priced


def create_order(store: Database, order: Order, items: List[OrderItem]) -> OrderRecord:
    if not items:
        raise MarketplaceError("An order needs at least one item")
    row = store.create_document("orders", order, publish=False)
    for item in items:
        store.create_document("order_items", {**item.model_dump(), "order_id": row["id"]})
    # announced once its items exist, so seller-scoped subscribers can resolve it
    store.publish("orders", INSERT, new=row)
    logger.info(f"Order {row['id']} placed by {order.customer_id} ({len(items)} items)")
    return OrderRecord(**_join_orders(store, [row])[0])


def get_orders_by_customer(store: Database, customer_id: str) -> List[OrderRecord]:
    rows = store.get_documents("orders", {"customer_id": customer_id}, sort=[("created_at", -1)])
    return [OrderRecord(**r) for r in _join_orders(store, rows)]


def _seller_product_ids(store: Database, seller_id: str) -> List[str]:
    return [p["id"] for p in store.get_documents("products", {"seller_id": seller_id})]


def get_orders_by_seller(store: Database, seller_id: str) -> List[OrderRecord]:
    product_ids = _seller_product_ids(store, seller_id)
    if not product_ids:
        return []
    order_ids = {i["order_id"] for i in store.get_documents("order_items", {"product_id": {"$in": product_ids}})}
    oids = _object_ids(order_ids)
    if not oids:
        return []
    rows = store.get_documents("orders", {"_id": {"$in": oids}}, sort=[("created_at", -1)])
    return [OrderRecord(**r) for r in _join_orders(store, rows)]


def order_seller_ids(store: Database, order_id: str) -> Set[str]:
    items = store.get_documents("order_items", {"order_id": order_id})
    oids = _object_ids(i["product_id"] for i in items)
    if not oids:
        return set()
    return {p["seller_id"] for p in store.get_documents("products", {"_id": {"$in": oids}})}


def update_order_status(store: Database, order_id: str, status: str) -> OrderRecord:
    if status not in get_args(OrderStatus):
        raise MarketplaceError(f"Invalid order status: {status}")
    return OrderRecord(**store.update_document("orders", order_id, {"status": status}))


# ========== BOOKINGS ==========

def _join_bookings(store: Database, rows: List[dict]) -> List[dict]:
    service_ids = _object_ids(r["service_id"] for r in rows)
    services = {}
    if service_ids:
        services = {s["id"]: s for s in _join_services(store, store.get_documents("services", {"_id": {"$in": service_ids}}))}
    customers = _users_by_id(store, (r.get("customer_id") for r in rows))
    return [{**r, "service": services.get(r["service_id"]), "customer": customers.get(r.get("customer_id"))} for r in rows]


def create_booking(store: Database, booking: Booking) -> BookingRecord:
    store.get_document("services", booking.service_id)
    row = store.create_document("bookings", booking)
    logger.info(f"Booking {row['id']} for service {booking.service_id} on {booking.date} {booking.time}")
    return BookingRecord(**_join_bookings(store, [row])[0])


def get_bookings_by_customer(store: Database, customer_id: str) -> List[BookingRecord]:
    rows = store.get_documents("bookings", {"customer_id": customer_id}, sort=[("created_at", -1)])
    return [BookingRecord(**r) for r in _join_bookings(store, rows)]


def provider_service_ids(store: Database, provider_id: str) -> List[str]:
    return [s["id"] for s in store.get_documents("services", {"provider_id": provider_id})]


def get_bookings_by_provider(store: Database, provider_id: str) -> List[BookingRecord]:
    service_ids = provider_service_ids(store, provider_id)
    if not service_ids:
        return []
    rows = store.get_documents("bookings", {"service_id": {"$in": service_ids}}, sort=[("created_at", -1)])
    return [BookingRecord(**r) for r in _join_bookings(store, rows)]


def update_booking_status(store: Database, booking_id: str, status: str) -> BookingRecord:
    if status not in get_args(BookingStatus):
        raise MarketplaceError(f"Invalid booking status: {status}")
    return BookingRecord(**store.update_document("bookings", booking_id, {"status": status}))


# ========== MESSAGES ==========

def _join_messages(store: Database, rows: List[dict]) -> List[dict]:
    users = _users_by_id(store, [r.get("sender_id") for r in rows] + [r.get("recipient_id") for r in rows])
    return [{**r, "sender": users.get(r.get("sender_id")), "recipient": users.get(r.get("recipient_id"))} for r in rows]


def unread_count(messages: Iterable[dict], user_id: str) -> int:
    return sum(1 for m in messages if m.get("recipient_id") == user_id and not m.get("read"))


def group_conversations(messages: Iterable[dict], user_id: str) -> List[Conversation]:
    """Group message rows (newest first) by the participant who is not ``user_id``."""
    threads: Dict[str, dict] = {}
    for m in messages:
        mine = m.get("sender_id") == user_id
        other_id = m.get("recipient_id") if mine else m.get("sender_id")
        other = m.get("recipient") if mine else m.get("sender")
        thread = threads.setdefault(other_id, {"id": other_id, "other_user": other, "messages": [], "last_message": m})
        thread["messages"].append(m)
    return [Conversation(**t, unread_count=unread_count(t["messages"], user_id)) for t in threads.values()]


def get_conversations(store: Database, user_id: str) -> List[Conversation]:
    rows = store.get_documents(
        "messages",
        {"$or": [{"sender_id": user_id}, {"recipient_id": user_id}]},
        sort=[("created_at", -1)],
    )
    return group_conversations(_join_messages(store, rows), user_id)


def get_messages(store: Database, user_id: str, other_user_id: str) -> List[MessageRecord]:
    rows = store.get_documents(
        "messages",
        {"$or": [
            {"sender_id": user_id, "recipient_id": other_user_id},
            {"sender_id": other_user_id, "recipient_id": user_id},
        ]},
        sort=[("created_at", 1)],
    )
    return [MessageRecord(**r) for r in _join_messages(store, rows)]


def send_message(store: Database, message: Message) -> MessageRecord:
    row = store.create_document("messages", message.model_copy(update={"read": False}))
    return MessageRecord(**_join_messages(store, [row])[0])


def mark_messages_as_read(store: Database, message_ids: List[str]) -> List[MessageRecord]:
    if not message_ids:
        return []
    return [MessageRecord(**r) for r in store.update_documents("messages", message_ids, {"read": True})]
