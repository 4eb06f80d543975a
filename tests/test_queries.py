import itertools

import pytest

import queries
from database import Database
from errors import DuplicateAccount, MarketplaceError, NotFound, RemoteOperationFailed
from schemas import (
    Booking, Message, Order, OrderItem, Product, Review, SearchFilters, Service, ServiceAvailability, User,
)

ROWS = [
    {"id": "1", "name": "Fresh Tomatoes", "description": "Organic", "category": "Vegetables", "price": 3.5, "rating": 4.8, "availability": 50, "seller": {"area": "Mbare"}},
    {"id": "2", "name": "Chitenge Fabric", "description": "Cotton", "category": "Clothing & Fabric", "price": 15.0, "rating": 4.5, "availability": 0, "seller": {"area": "Mbare"}},
    {"id": "3", "name": "Pottery Set", "description": "Handmade clay", "category": "Home & Garden", "price": 45.0, "rating": 3.9, "availability": 10, "seller": {"area": "Avondale"}},
    {"id": "4", "name": "Green Peppers", "description": "Fresh today", "category": "Vegetables", "price": 2.0, "rating": 0, "availability": 5, "area": "Eastlea"},
]

CRITERIA = [
    {"query": "fresh"},
    {"category": "Vegetables"},
    {"location": "Mbare"},
    {"price_min": 3},
    {"price_max": 20},
    {"rating": 4},
    {"availability": True},
]


def product(seller_id, name="Tomatoes", price=3.5, category="Vegetables", availability=10):
    return Product(name=name, description=f"{name} from the market", price=price, category=category,
                   seller_id=seller_id, availability=availability, delivery_time="Same day")


# ---- pure filters

def test_each_criterion_alone():
    assert [r["id"] for r in queries.apply_filters(ROWS, SearchFilters(query="FRESH"))] == ["1", "4"]
    assert [r["id"] for r in queries.apply_filters(ROWS, SearchFilters(location="Mbare"))] == ["1", "2"]
    assert [r["id"] for r in queries.apply_filters(ROWS, SearchFilters(availability=True))] == ["1", "3", "4"]
    assert queries.apply_filters(ROWS, SearchFilters(category="All Categories", location="All Areas")) == ROWS


@pytest.mark.parametrize("size", [2, 3, 4])
def test_combined_filters_are_order_independent_intersections(size):
    for combo in itertools.combinations(CRITERIA, size):
        expected = set(r["id"] for r in ROWS)
        for criterion in combo:
            expected &= {r["id"] for r in queries.apply_filters(ROWS, SearchFilters(**criterion))}
        for ordering in itertools.permutations(combo):
            merged = {}
            for criterion in ordering:
                merged.update(criterion)
            got = {r["id"] for r in queries.apply_filters(ROWS, SearchFilters(**merged))}
            assert got == expected


def test_sort_rows():
    assert [r["id"] for r in queries.sort_rows(ROWS, "price-asc")] == ["4", "1", "2", "3"]
    assert [r["id"] for r in queries.sort_rows(ROWS, "price-desc")] == ["3", "2", "1", "4"]
    assert [r["id"] for r in queries.sort_rows(ROWS, "rating")] == ["1", "2", "3", "4"]
    assert queries.sort_rows(ROWS, None) == ROWS


def test_database_query_translation():
    q = queries.database_query(SearchFilters(category="Vegetables", price_min=1, price_max=5, availability=True))
    assert q == {"category": "Vegetables", "price": {"$gte": 1, "$lte": 5}, "availability": {"$gt": 0}}
    assert "availability" not in queries.database_query(SearchFilters(availability=True), stock_field=None)
    assert queries.database_query(SearchFilters(category="All Categories")) == {}


# ---- users

def test_create_and_find_user(store):
    created = queries.create_user(store, User(email="ann@example.com", name="Ann", role="retailer"))
    assert queries.get_user_by_id(store, created.id).email == "ann@example.com"
    assert queries.get_user_by_email(store, "ann@example.com").role == "retailer"
    with pytest.raises(DuplicateAccount):
        queries.create_user(store, User(email="ann@example.com", name="Ann again"))
    with pytest.raises(NotFound):
        queries.get_user_by_email(store, "nobody@example.com")
    assert queries.update_user_role(store, created.id, "customer").role == "customer"


def test_unknown_or_malformed_id_is_not_found(store):
    with pytest.raises(NotFound):
        queries.get_product_by_id(store, "not-an-id")
    with pytest.raises(NotFound):
        queries.get_product_by_id(store, "0123456789abcdef01234567")


def test_unconfigured_database_raises_remote_failure():
    offline = Database(None)
    with pytest.raises(RemoteOperationFailed):
        queries.get_products(offline)
    with pytest.raises(RemoteOperationFailed):
        queries.get_conversations(offline, "u1")


# ---- products and reviews

def test_products_are_joined_with_seller_and_rating(store, make_user):
    seller = make_user("mary@retailer.com", role="retailer", area="Mbare")
    buyer = make_user("john@customer.com")
    p = queries.create_product(store, product(seller.id))
    queries.create_review(store, Review(user_id=buyer.id, product_id=p.id, rating=5, comment="Great"))
    queries.create_review(store, Review(user_id=buyer.id, product_id=p.id, rating=4))
    record = queries.get_product_by_id(store, p.id)
    assert record.seller.name == seller.name
    assert record.rating == 4.5
    assert {r.user.email for r in record.reviews} == {"john@customer.com"}
    assert [x.id for x in queries.get_products(store, SearchFilters(location="Mbare"))] == [p.id]
    assert queries.get_products(store, SearchFilters(location="Avondale")) == []


def test_review_needs_existing_target(store, make_user):
    buyer = make_user("john@customer.com")
    with pytest.raises(NotFound):
        queries.create_review(store, Review(user_id=buyer.id, product_id="0123456789abcdef01234567", rating=3))


def test_update_and_delete_product(store, make_user):
    seller = make_user("mary@retailer.com", role="retailer")
    p = queries.create_product(store, product(seller.id))
    assert queries.update_product(store, p.id, {"price": 4.25}).price == 4.25
    with pytest.raises(MarketplaceError):
        queries.update_product(store, p.id, {"price": -1})
    queries.delete_product(store, p.id)
    assert queries.get_products_by_seller(store, seller.id) == []


def test_product_search_in_database(store, make_user):
    seller = make_user("mary@retailer.com", role="retailer")
    queries.create_product(store, product(seller.id, name="Tomatoes", price=3.5))
    queries.create_product(store, product(seller.id, name="Pottery", price=45.0, category="Home & Garden"))
    queries.create_product(store, product(seller.id, name="Onions", price=2.0, availability=0))
    names = [p.name for p in queries.get_products(store, SearchFilters(category="Vegetables", sort_by="price-asc"))]
    assert names == ["Onions", "Tomatoes"]
    assert [p.name for p in queries.get_products(store, SearchFilters(category="Vegetables", availability=True))] == ["Tomatoes"]
    assert [p.name for p in queries.get_products(store, SearchFilters(query="pot"))] == ["Pottery"]


# ---- services and bookings

def test_services_and_provider_bookings(store, make_user):
    provider = make_user("grace@service.com", role="service-provider")
    other = make_user("tino@service.com", role="service-provider")
    customer = make_user("john@customer.com")
    service = queries.create_service(
        store,
        Service(name="Hair Styling", price=20.0, duration=120, category="Beauty & Wellness", provider_id=provider.id),
        [ServiceAvailability(date="2024-02-01", time_slots=["09:00", "14:00"])],
    )
    assert service.provider.email == "grace@service.com"
    assert service.availability[0].time_slots == ["09:00", "14:00"]
    # the in-stock flag does not hide services
    assert [s.id for s in queries.get_services(store, SearchFilters(availability=True))] == [service.id]

    booking = queries.create_booking(store, Booking(customer_id=customer.id, service_id=service.id, date="2024-02-01", time="09:00", total=20.0))
    assert booking.service.name == "Hair Styling"
    assert [b.id for b in queries.get_bookings_by_provider(store, provider.id)] == [booking.id]
    assert queries.get_bookings_by_provider(store, other.id) == []
    assert [b.id for b in queries.get_bookings_by_customer(store, customer.id)] == [booking.id]
    assert queries.update_booking_status(store, booking.id, "confirmed").status == "confirmed"
    with pytest.raises(MarketplaceError):
        queries.update_booking_status(store, booking.id, "shipped")


# ---- orders

def test_orders_by_customer_and_seller(store, make_user):
    mary = make_user("mary@retailer.com", role="retailer")
    tendai = make_user("tendai@retailer.com", role="retailer")
    customer = make_user("john@customer.com")
    tomatoes = queries.create_product(store, product(mary.id))
    order = queries.create_order(
        store,
        Order(customer_id=customer.id, total=7.0, delivery_city="Harare", delivery_area="Avondale", delivery_address="1 Test Road"),
        [OrderItem(product_id=tomatoes.id, quantity=2, price=3.5)],
    )
    assert order.order_items[0].product.name == "Tomatoes"
    assert [o.id for o in queries.get_orders_by_customer(store, customer.id)] == [order.id]
    assert [o.id for o in queries.get_orders_by_seller(store, mary.id)] == [order.id]
    assert queries.get_orders_by_seller(store, tendai.id) == []
    assert queries.order_seller_ids(store, order.id) == {mary.id}
    assert queries.update_order_status(store, order.id, "shipped").status == "shipped"
    with pytest.raises(MarketplaceError):
        queries.update_order_status(store, order.id, "completed")


def test_order_needs_items(store, make_user):
    customer = make_user("john@customer.com")
    with pytest.raises(MarketplaceError):
        queries.create_order(store, Order(customer_id=customer.id, total=0, delivery_city="Harare", delivery_area="Avondale", delivery_address="x"), [])


def test_order_insert_is_published_after_items(store, make_user):
    mary = make_user("mary@retailer.com", role="retailer")
    customer = make_user("john@customer.com")
    tomatoes = queries.create_product(store, product(mary.id))
    seen = []
    store.feed.subscribe("orders", lambda e: seen.append(queries.order_seller_ids(store, e.new["id"])), event="INSERT")
    queries.create_order(
        store,
        Order(customer_id=customer.id, total=3.5, delivery_city="Harare", delivery_area="Avondale", delivery_address="x"),
        [OrderItem(product_id=tomatoes.id, quantity=1, price=3.5)],
    )
    assert seen == [{mary.id}]


# ---- messages

def test_conversations_and_unread_counts(store, make_user):
    me = make_user("john@customer.com")
    mary = make_user("mary@retailer.com", role="retailer")
    grace = make_user("grace@service.com", role="service-provider")
    queries.send_message(store, Message(sender_id=mary.id, recipient_id=me.id, content="Tomatoes are in"))
    queries.send_message(store, Message(sender_id=mary.id, recipient_id=me.id, content="Still want some?", read=True))
    queries.send_message(store, Message(sender_id=me.id, recipient_id=mary.id, content="Yes please"))
    queries.send_message(store, Message(sender_id=grace.id, recipient_id=me.id, content="Booking confirmed"))

    convs = {c.id: c for c in queries.get_conversations(store, me.id)}
    assert set(convs) == {mary.id, grace.id}
    # a sent message is always stored unread
    assert convs[mary.id].unread_count == 2
    assert convs[grace.id].unread_count == 1
    assert convs[mary.id].other_user.name == mary.name

    thread = queries.get_messages(store, me.id, mary.id)
    assert [m.content for m in thread] == ["Tomatoes are in", "Still want some?", "Yes please"]
    unread = [m.id for m in thread if m.recipient_id == me.id and not m.read]
    queries.mark_messages_as_read(store, unread)

    convs = {c.id: c for c in queries.get_conversations(store, me.id)}
    assert convs[mary.id].unread_count == 0
    assert convs[grace.id].unread_count == 1
    # the sender's view of the same thread counts only messages addressed to them
    assert {c.id: c.unread_count for c in queries.get_conversations(store, mary.id)} == {me.id: 1}


def test_group_conversations_uses_counterpart():
    rows = [
        {"id": "m2", "sender_id": "me", "recipient_id": "a", "content": "hi", "read": False},
        {"id": "m1", "sender_id": "a", "recipient_id": "me", "content": "hello", "read": False},
        {"id": "m0", "sender_id": "b", "recipient_id": "me", "content": "yo", "read": True},
    ]
    convs = queries.group_conversations(rows, "me")
    assert [c.id for c in convs] == ["a", "b"]
    assert convs[0].last_message.id == "m2"
    assert [c.unread_count for c in convs] == [1, 0]
    assert queries.unread_count(rows, "a") == 1


def test_writes_reach_the_change_feed(store, make_user):
    seller = make_user("mary@retailer.com", role="retailer")
    events = []
    store.feed.subscribe("products", events.append)
    p = queries.create_product(store, product(seller.id))
    queries.update_product(store, p.id, {"price": 5.0})
    queries.delete_product(store, p.id)
    assert [e.event_type for e in events] == ["INSERT", "UPDATE", "DELETE"]
    assert events[2].old["id"] == p.id
