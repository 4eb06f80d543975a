from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from auth import IdentityProvider
from database import Database
from main import AppContext, create_app

PRODUCT = {
    "name": "Fresh Tomatoes",
    "description": "Organic tomatoes from local farms",
    "price": 3.5,
    "images": ["https://images.example.com/tomatoes.jpg"],
    "category": "Vegetables",
    "colors": ["Red"],
    "availability": 50,
    "delivery_time": "Same day",
    "payment_options": ["Cash on Delivery", "EcoCash"],
}

DELIVERY = {"delivery_city": "Harare", "delivery_area": "Avondale", "delivery_address": "123 Main Street"}


def add_product(client, headers, **overrides):
    res = client.post("/api/products", json={**PRODUCT, **overrides}, headers=headers)
    assert res.status_code == 200, res.text
    return res.json()["product_id"]


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "ok"
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["database"] == "✅ Connected"
    assert "users" in client.get("/schema").json()


# ---- auth

def test_signup_login_me_logout(client, signup):
    user, headers = signup("ann@example.com", role="retailer")
    assert user["role"] == "retailer"
    assert client.get("/api/auth/me", headers=headers).json()["email"] == "ann@example.com"

    res = client.post("/api/auth/login", json={"email": "ann@example.com", "password": "wrong"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials"

    res = client.post("/api/auth/login", json={"email": "ann@example.com", "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["access_token"]

    client.post("/api/auth/logout", headers={"Authorization": f"Bearer {token}"})
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401
    # the other session is untouched
    assert client.get("/api/auth/me", headers=headers).status_code == 200


def test_duplicate_signup_conflicts(client, signup):
    signup("ann@example.com")
    res = client.post("/api/auth/signup", json={
        "email": "ann@example.com", "password": "x", "name": "Ann", "role": "customer",
        "location": {"city": "Harare", "area": "Avondale"},
    })
    assert res.status_code == 409
    assert res.json()["detail"] == "Email already registered"


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_oauth_round_trip_then_role_choice(client):
    url = client.get("/api/auth/oauth/google").json()["url"]
    state = parse_qs(urlparse(url).query)["state"][0]
    res = client.get("/auth/callback", params={"state": state, "email": "tariro@gmail.com"})
    assert res.status_code == 200
    body = res.json()
    assert body["user"]["role"] == "customer"
    assert body["next"] == "/signup?step=role"

    headers = {"Authorization": f"Bearer {body['access_token']}"}
    res = client.post("/api/auth/role", json={"role": "service-provider"}, headers=headers)
    assert res.json()["role"] == "service-provider"
    assert client.get("/api/auth/me", headers=headers).json()["role"] == "service-provider"


def test_unknown_oauth_provider(client):
    res = client.get("/api/auth/oauth/myspace")
    assert res.status_code == 400


def test_reset_password_gives_the_same_answer(client, signup):
    signup("ann@example.com")
    known = client.post("/api/auth/reset-password", json={"email": "ann@example.com"}).json()
    unknown = client.post("/api/auth/reset-password", json={"email": "zed@example.com"}).json()
    assert known == unknown


def test_update_password_when_signed_in(client, signup):
    _, headers = signup("ann@example.com")
    assert client.post("/api/auth/update-password", json={"new_password": "changed"}).status_code == 401
    assert client.post("/api/auth/update-password", json={"new_password": "changed"}, headers=headers).json() == {"ok": True}
    res = client.post("/api/auth/login", json={"email": "ann@example.com", "password": "changed"})
    assert res.status_code == 200


# ---- products

def test_product_create_list_and_edit(client, signup):
    _, mary = signup("mary@retailer.com", role="retailer", area="Mbare")
    _, tendai = signup("tendai@retailer.com", role="retailer")
    product_id = add_product(client, mary)
    add_product(client, tendai, name="Pottery Set", price=45.0, category="Home & Garden")

    listing = client.get("/api/products", params={"category": "Vegetables"}).json()
    assert not listing["degraded"]
    assert [p["id"] for p in listing["items"]] == [product_id]
    assert listing["items"][0]["seller"]["area"] == "Mbare"

    cheap = client.get("/api/products", params={"priceMax": 10, "sortBy": "price-asc"}).json()["items"]
    assert [p["name"] for p in cheap] == ["Fresh Tomatoes"]
    assert [p["name"] for p in client.get("/api/products", params={"location": "Mbare"}).json()["items"]] == ["Fresh Tomatoes"]
    assert [p["name"] for p in client.get("/api/products", params={"q": "pottery"}).json()["items"]] == ["Pottery Set"]

    assert client.get(f"/api/products/{product_id}").json()["name"] == "Fresh Tomatoes"
    assert client.patch(f"/api/products/{product_id}", json={"price": 4.0}, headers=tendai).status_code == 403
    assert client.patch(f"/api/products/{product_id}", json={"price": 4.0}, headers=mary).json()["price"] == 4.0


def test_product_form_errors(client, signup):
    _, mary = signup("mary@retailer.com", role="retailer")
    res = client.post("/api/products", json={**PRODUCT, "images": []}, headers=mary)
    assert res.status_code == 400
    assert res.json()["detail"] == "At least one product image is required"


def test_only_retailers_add_products(client, signup):
    _, john = signup("john@customer.com")
    assert client.post("/api/products", json=PRODUCT, headers=john).status_code == 403
    assert client.post("/api/products", json=PRODUCT).status_code == 401


def test_missing_product(client):
    assert client.get("/api/products/0123456789abcdef01234567").status_code == 404
    assert client.get("/api/products/bogus").status_code == 404


# ---- orders

def test_order_flow(client, signup):
    _, mary = signup("mary@retailer.com", role="retailer")
    _, tendai = signup("tendai@retailer.com", role="retailer")
    _, john = signup("john@customer.com")
    product_id = add_product(client, mary)

    res = client.post("/api/orders", json={"items": [{"product_id": product_id, "quantity": 2, "price": 3.5, "color": "Red"}], **DELIVERY}, headers=john)
    assert res.status_code == 200, res.text
    order = res.json()
    assert order["total"] == 7.0
    assert order["status"] == "pending"

    assert [o["id"] for o in client.get("/api/orders", headers=john).json()] == [order["id"]]
    assert [o["id"] for o in client.get("/api/orders", headers=mary).json()] == [order["id"]]
    assert client.get("/api/orders", headers=tendai).json() == []

    assert client.post(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=john).status_code == 403
    assert client.post(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=tendai).status_code == 403
    assert client.post(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=mary).json()["status"] == "shipped"
    assert client.post(f"/api/orders/{order['id']}/status", json={"status": "lost"}, headers=mary).status_code == 400
    assert client.post(f"/api/orders/{order['id']}/status", json={"status": "cancelled"}, headers=john).json()["status"] == "cancelled"


def test_order_prices_come_from_the_catalogue(client, signup):
    _, mary = signup("mary.com", role="retailer")
    _, john = signup("john@customer.com")
    product_id = add_product(client, mary)
    res = client.post("/api/orders", json={"items": [{"product_id": product_id, "quantity": 2, "price": 0.01}], **DELIVERY}, headers=john)
    assert res.status_code == 200, res.text
    order = res.json()
    assert order["total"] == 7.0
    assert order["order_items"][0]["price"] == 3.5

    res = client.post("/api/orders", json={"items": [{"product_id": "0123456789abcdef01234567", "quantity": 1, "price": 1.0}], **DELIVERY}, headers=john)
    assert res.status_code == 404
    assert client.get("/api/orders", headers=john).json()[0]["id"] == order["id"]


def test_retailers_cannot_place_orders(client, signup):
    _, mary = signup("mary@retailer.com", role="retailer")
    res = client.post("/api/orders", json={"items": [], **DELIVERY}, headers=mary)
    assert res.status_code == 403


# ---- services and bookings

def test_booking_flow(client, signup):
    _, grace = signup("grace@service.com", role="service-provider")
    _, john = signup("john@customer.com")
    res = client.post("/api/services", json={
        "name": "Hair Styling & Braiding", "description": "Braids and styling", "price": 20.0, "duration": 120,
        "category": "Beauty & Wellness", "availability": [{"date": "2024-02-01", "time_slots": ["09:00", "14:00"]}],
    }, headers=grace)
    assert res.status_code == 200, res.text
    service = res.json()
    assert service["availability"][0]["time_slots"] == ["09:00", "14:00"]
    assert client.post("/api/services", json={"name": "x", "price": 1, "duration": 1, "category": "y"}, headers=john).status_code == 403

    booking = client.post("/api/bookings", json={"service_id": service["id"], "date": "2024-02-01", "time": "09:00"}, headers=john).json()
    assert booking["total"] == 20.0
    assert [b["id"] for b in client.get("/api/bookings", headers=grace).json()] == [booking["id"]]
    assert [b["id"] for b in client.get("/api/bookings", headers=john).json()] == [booking["id"]]
    assert client.post(f"/api/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=john).status_code == 403
    assert client.post(f"/api/bookings/{booking['id']}/status", json={"status": "confirmed"}, headers=grace).json()["status"] == "confirmed"

    review = client.post("/api/reviews", json={"service_id": service["id"], "rating": 5, "comment": "Lovely"}, headers=john)
    assert review.status_code == 200
    assert client.get(f"/api/services/{service['id']}").json()["rating"] == 5.0
    assert client.post("/api/reviews", json={"rating": 5}, headers=john).status_code == 400


# ---- messaging

def test_messaging_flow(client, signup):
    mary_user, mary = signup("mary@retailer.com", role="retailer")
    john_user, john = signup("john@customer.com")

    res = client.post("/api/messages", json={"recipient_id": mary_user["id"], "content": "Are the tomatoes fresh?", "client_id": "c-1"}, headers=john)
    assert res.status_code == 200
    sent = res.json()
    assert sent["client_id"] == "c-1"
    assert sent["read"] is False
    assert client.post("/api/messages", json={"recipient_id": mary_user["id"], "content": "   "}, headers=john).status_code == 400

    convs = client.get("/api/conversations", headers=mary).json()
    assert convs[0]["id"] == john_user["id"]
    assert convs[0]["unread_count"] == 1

    # a sender cannot mark their own outgoing message read
    assert client.post("/api/messages/read", json={"message_ids": [sent["id"]]}, headers=john).json() == []
    assert len(client.post("/api/messages/read", json={"message_ids": [sent["id"]]}, headers=mary).json()) == 1
    assert client.get("/api/conversations", headers=mary).json()[0]["unread_count"] == 0
    assert [m["content"] for m in client.get(f"/api/messages/{john_user['id']}", headers=mary).json()] == ["Are the tomatoes fresh?"]


# ---- dashboards

def test_dashboards_are_role_gated(client, signup):
    _, john = signup("john@customer.com")
    _, mary = signup("mary@retailer.com", role="retailer")

    assert client.get("/retailer").json()["access"] == "denied"
    assert client.get("/retailer", headers=john).json()["access"] == "denied"
    granted = client.get("/retailer", headers=mary).json()
    assert granted["access"] == "granted"
    assert granted["stats"]["total_products"] == 0

    assert client.get("/customer", headers=john).json()["access"] == "granted"
    assert client.get("/service-provider", headers=john).json()["title"] == "Access Denied"


# ---- seed

def test_seed_is_disabled_by_default(client):
    res = client.post("/api/seed")
    assert res.status_code == 403
    assert client.get("/api/products").json()["items"] == []


def test_seed_is_idempotent(client):
    client.app.state.ctx.allow_seed = True
    assert client.post("/api/seed").json() == {"seeded": 5}
    assert client.post("/api/seed").json() == {"seeded": 0}
    names = {p["name"] for p in client.get("/api/products").json()["items"]}
    assert "Fresh Tomatoes" in names
    res = client.post("/api/auth/login", json={"email": "mary@retailer.com", "password": "anything"})
    assert res.status_code == 401
    rated = {p["name"]: p["rating"] for p in client.get("/api/products", params={"rating": 4, "sortBy": "rating"}).json()["items"]}
    assert rated == {"Fresh Tomatoes": 5.0, "Handmade Pottery Set": 5.0, "Traditional Chitenge Fabric": 4.0}
    services = client.get("/api/services", params={"sortBy": "rating"}).json()["items"]
    assert [s["name"] for s in services] == ["Mobile Phone Repair", "Hair Styling & Braiding"]


def test_seeded_and_bundled_ratings_agree(client, store):
    client.app.state.ctx.allow_seed = True
    client.post("/api/seed")
    seeded = {p["name"]: p["rating"] for p in client.get("/api/products").json()["items"]}
    offline = create_app(AppContext(store=Database(None), identity=IdentityProvider(Database(None))))
    with TestClient(offline) as demo:
        listing = demo.get("/api/products").json()
    assert listing["degraded"]
    assert {p["name"]: p["rating"] for p in listing["items"]} == seeded


def test_sign_up_cannot_take_over_seeded_profile(client):
    client.app.state.ctx.allow_seed = True
    client.post("/api/seed")
    res = client.post("/api/auth/signup", json={
        "email": "mary@retailer.com", "password": "attacker", "name": "Mary", "role": "customer",
        "location": {"city": "Harare", "area": "Mbare"},
    })
    assert res.status_code == 409
    res = client.post("/api/auth/login", json={"email": "mary@retailer.com", "password": "attacker"})
    assert res.status_code == 401


def test_oauth_callback_cannot_claim_existing_account(client, signup):
    signup("mary@retailer.com", role="retailer")
    url = client.get("/api/auth/oauth/google").json()["url"]
    state = parse_qs(urlparse(url).query)["state"][0]
    res = client.get("/auth/callback", params={"state": state, "email": "mary@retailer.com"})
    assert res.status_code == 400
    assert "access_token" not in res.json()
