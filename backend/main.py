import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr

import mock_data
import queries
import views
from auth import IdentityProvider, MemoryStorage, SessionManager
from database import Database, connect
from errors import AccessDenied, MarketplaceError
from realtime import ChangeFeed
from schemas import (
    Booking, Location, Message, MessageType, Order, OrderItem, Product, Review, Role, SearchFilters, Service,
    ServiceAvailability, SortKey, User, UserRecord,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    store: Database
    identity: IdentityProvider
    allow_seed: bool = False

    @classmethod
    def from_env(cls) -> "AppContext":
        store = Database(connect(), ChangeFeed())
        allow_seed = os.getenv("ALLOW_SEED", "false").lower() in ("1", "true", "yes")
        return cls(store=store, identity=IdentityProvider(store), allow_seed=allow_seed)


def create_app(ctx: Optional[AppContext] = None) -> FastAPI:
    app = FastAPI(title="Westgate Marketplace API")
    app.state.ctx = ctx or AppContext.from_env()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(router)
    return app


# ---- dependencies

router = APIRouter()
bearer = HTTPBearer(auto_error=False)


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def get_store(ctx: AppContext = Depends(get_ctx)) -> Database:
    return ctx.store


def session_for(ctx: AppContext) -> SessionManager:
    # server-side sessions keep nothing between requests; the client persists the token
    return SessionManager(ctx.identity, ctx.store, MemoryStorage())


def optional_user(ctx: AppContext = Depends(get_ctx), creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[UserRecord]:
    if creds is None:
        return None
    return session_for(ctx).restore(creds.credentials)


def current_user(user: Optional[UserRecord] = Depends(optional_user)) -> UserRecord:
    if user is None:
        raise HTTPException(401, "Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    return user


def require(role: str):
    def dependency(user: UserRecord = Depends(current_user)) -> UserRecord:
        if user.role != role:
            raise AccessDenied(f"Only a {role} can do this")
        return user
    return dependency


def search_filters(
    q: Optional[str] = None,
    category: Optional[str] = None,
    location: Optional[str] = None,
    price_min: Optional[float] = Query(None, alias="priceMin"),
    price_max: Optional[float] = Query(None, alias="priceMax"),
    rating: Optional[float] = None,
    availability: bool = False,
    new_arrivals: bool = Query(False, alias="newArrivals"),
    sort_by: Optional[SortKey] = Query(None, alias="sortBy"),
) -> SearchFilters:
    return SearchFilters(
        query=q, category=category, location=location, price_min=price_min, price_max=price_max,
        rating=rating, availability=availability, new_arrivals=new_arrivals, sort_by=sort_by,
    )


@router.get("/")
def root():
    return {"status": "ok", "service": "Westgate Marketplace Backend"}


@router.get("/test")
def test_database(store: Database = Depends(get_store)):
    ok = store.available
    collections = []
    database = "✅ Connected" if ok else "❌ Not Connected"
    if ok:
        try:
            collections = store.list_collection_names()
        except MarketplaceError as e:
            database = f"⚠️ Error: {e.message[:80]}"
    return {
        "backend": "✅ Running",
        "database": database,
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": store.name or "-",
        "collections": collections,
    }


@router.get("/schema")
def get_schema():
    return {
        "users": User.model_json_schema(),
        "products": Product.model_json_schema(),
        "services": Service.model_json_schema(),
        "reviews": Review.model_json_schema(),
        "orders": Order.model_json_schema(),
        "order_items": OrderItem.model_json_schema(),
        "bookings": Booking.model_json_schema(),
        "messages": Message.model_json_schema(),
    }


# ========== AUTH ==========
class SignupPayload(BaseModel):
    email: EmailStr
    password: str
    name: str
    role: Role
    location: Location


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class RolePayload(BaseModel):
    role: Role


class ResetPayload(BaseModel):
    email: EmailStr


class UpdatePasswordPayload(BaseModel):
    new_password: str
    email: Optional[EmailStr] = None
    reset_token: Optional[str] = None


def _auth_response(session: SessionManager, user: UserRecord) -> dict:
    return {"user": user.model_dump(), "access_token": session.access_token, "token_type": "bearer"}


@router.post("/api/auth/signup")
def signup(body: SignupPayload, ctx: AppContext = Depends(get_ctx)):
    session = session_for(ctx)
    user = session.sign_up(body.email, body.password, body.name, body.role, body.location)
    return _auth_response(session, user)


@router.post("/api/auth/login")
def login(body: LoginPayload, ctx: AppContext = Depends(get_ctx)):
    session = session_for(ctx)
    user = session.login(body.email, body.password)
    return _auth_response(session, user)


@router.post("/api/auth/logout")
def logout(ctx: AppContext = Depends(get_ctx), creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
    session = session_for(ctx)
    if creds is not None:
        session.restore(creds.credentials)
    session.logout()
    return {"ok": True}


@router.get("/api/auth/me")
def me(user: UserRecord = Depends(current_user)):
    return user


@router.get("/api/auth/oauth/{provider}")
def oauth_start(provider: str, redirect_to: Optional[str] = None, ctx: AppContext = Depends(get_ctx)):
    return {"url": session_for(ctx).sign_in_with_oauth(provider, redirect_to)}


@router.get("/auth/callback")
def oauth_callback(state: str, email: EmailStr, name: Optional[str] = None, ctx: AppContext = Depends(get_ctx)):
    session = session_for(ctx)
    user = session.complete_oauth(state, email, name)
    # a profile without a location still has to pick its role and area
    needs_setup = not (user.city and user.area)
    return {**_auth_response(session, user), "next": "/signup?step=role" if needs_setup else f"/{user.role}"}


@router.post("/api/auth/role")
def choose_role(body: RolePayload, ctx: AppContext = Depends(get_ctx), creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
    session = session_for(ctx)
    if creds is None or session.restore(creds.credentials) is None:
        raise HTTPException(401, "Not authenticated")
    return session.update_role(body.role)


@router.post("/api/auth/reset-password")
def reset_password(body: ResetPayload, ctx: AppContext = Depends(get_ctx)):
    token = session_for(ctx).reset_password(body.email)
    if token:
        logger.info(f"Reset link issued for {body.email}")
    # same answer whether or not the address is registered
    return {"message": "If the address is registered, a reset link has been sent"}


@router.post("/api/auth/update-password")
def update_password(body: UpdatePasswordPayload, ctx: AppContext = Depends(get_ctx), creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
    if body.reset_token and body.email:
        ctx.identity.update_password(body.email, body.new_password, reset_token=body.reset_token)
        return {"ok": True}
    session = session_for(ctx)
    if creds is None or session.restore(creds.credentials) is None:
        raise HTTPException(401, "Not authenticated")
    session.update_password(body.new_password)
    return {"ok": True}


# ========== PRODUCTS ==========
class CreateProductPayload(BaseModel):
    name: str = ""
    description: str = ""
    price: Optional[float] = None
    images: List[str] = []
    category: str = ""
    colors: List[str] = []
    sizes: List[str] = []
    availability: Optional[int] = None
    delivery_time: str = ""
    payment_options: List[str] = []
    promoted: bool = False


@router.get("/api/products")
def list_products(filters: SearchFilters = Depends(search_filters), store: Database = Depends(get_store)):
    return views.product_listing(store, filters)


@router.get("/api/products/{product_id}")
def get_product(product_id: str, store: Database = Depends(get_store)):
    return queries.get_product_by_id(store, product_id)


@router.post("/api/products")
def create_product(body: CreateProductPayload, user: UserRecord = Depends(require("retailer")), store: Database = Depends(get_store)):
    problems = views.validate_product_form(body.model_dump())
    if problems:
        raise HTTPException(400, problems[0])
    product = queries.create_product(store, Product(**body.model_dump(), seller_id=user.id))
    return {"product_id": product.id, "product": product}


@router.patch("/api/products/{product_id}")
def update_product(product_id: str, updates: dict, user: UserRecord = Depends(require("retailer")), store: Database = Depends(get_store)):
    if queries.get_product_by_id(store, product_id).seller_id != user.id:
        raise AccessDenied("You can only edit your own products")
    updates.pop("seller_id", None)
    return queries.update_product(store, product_id, updates)


# ========== SERVICES ==========
class CreateServicePayload(BaseModel):
    name: str
    description: str = ""
    price: float
    duration: int
    category: str
    availability: List[ServiceAvailability] = []


@router.get("/api/services")
def list_services(filters: SearchFilters = Depends(search_filters), store: Database = Depends(get_store)):
    return views.service_listing(store, filters)


@router.get("/api/services/{service_id}")
def get_service(service_id: str, store: Database = Depends(get_store)):
    return queries.get_service_by_id(store, service_id)


@router.post("/api/services")
def create_service(body: CreateServicePayload, user: UserRecord = Depends(require("service-provider")), store: Database = Depends(get_store)):
    service = Service(**body.model_dump(exclude={"availability"}), provider_id=user.id)
    return queries.create_service(store, service, body.availability)


# ========== REVIEWS ==========
class ReviewPayload(BaseModel):
    product_id: Optional[str] = None
    service_id: Optional[str] = None
    rating: int
    comment: str = ""


@router.post("/api/reviews")
def create_review(body: ReviewPayload, user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    try:
        review = Review(**body.model_dump(), user_id=user.id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return queries.create_review(store, review)


# ========== ORDERS ==========
class CreateOrderPayload(BaseModel):
    items: List[OrderItem]
    delivery_city: str
    delivery_area: str
    delivery_address: str


class StatusPayload(BaseModel):
    status: str


@router.post("/api/orders")
def create_order(body: CreateOrderPayload, user: UserRecord = Depends(require("customer")), store: Database = Depends(get_store)):
    # line prices come from the catalogue, never from the client
    items = queries.price_order_items(store, body.items)
    total = round(sum(i.price * i.quantity for i in items), 2)
    order = Order(
        customer_id=user.id,
        total=total,
        delivery_city=body.delivery_city,
        delivery_area=body.delivery_area,
        delivery_address=body.delivery_address,
    )
    return queries.create_order(store, order, items)


@router.get("/api/orders")
def list_orders(user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    if user.role == "retailer":
        return queries.get_orders_by_seller(store, user.id)
    return queries.get_orders_by_customer(store, user.id)


@router.post("/api/orders/{order_id}/status")
def set_order_status(order_id: str, body: StatusPayload, user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    order = store.get_document("orders", order_id)
    is_seller = user.id in queries.order_seller_ids(store, order_id)
    # customers may only cancel their own orders; sellers drive the rest
    if not is_seller and not (order["customer_id"] == user.id and body.status == "cancelled"):
        raise AccessDenied("Not allowed to change this order")
    return queries.update_order_status(store, order_id, body.status)


# ========== BOOKINGS ==========
class CreateBookingPayload(BaseModel):
    service_id: str
    date: str
    time: str


@router.post("/api/bookings")
def create_booking(body: CreateBookingPayload, user: UserRecord = Depends(require("customer")), store: Database = Depends(get_store)):
    service = queries.get_service_by_id(store, body.service_id)
    booking = Booking(customer_id=user.id, service_id=service.id, date=body.date, time=body.time, total=service.price)
    return queries.create_booking(store, booking)


@router.get("/api/bookings")
def list_bookings(user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    if user.role == "service-provider":
        return queries.get_bookings_by_provider(store, user.id)
    return queries.get_bookings_by_customer(store, user.id)


@router.post("/api/bookings/{booking_id}/status")
def set_booking_status(booking_id: str, body: StatusPayload, user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    booking = store.get_document("bookings", booking_id)
    is_provider = booking["service_id"] in queries.provider_service_ids(store, user.id)
    if not is_provider and not (booking["customer_id"] == user.id and body.status == "cancelled"):
        raise AccessDenied("Not allowed to change this booking")
    return queries.update_booking_status(store, booking_id, body.status)


# ========== CHAT ==========
class ChatSendPayload(BaseModel):
    recipient_id: str
    content: str
    type: MessageType = "text"
    image_url: Optional[str] = None
    client_id: Optional[str] = None


class MarkReadPayload(BaseModel):
    message_ids: List[str]


@router.get("/api/conversations")
def list_conversations(user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    return queries.get_conversations(store, user.id)


@router.get("/api/messages/{other_user_id}")
def get_chat(other_user_id: str, user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    return queries.get_messages(store, user.id, other_user_id)


@router.post("/api/messages")
def send_chat(body: ChatSendPayload, user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    if not body.content.strip() and body.type == "text":
        raise HTTPException(400, "Message is empty")
    msg = Message(sender_id=user.id, **body.model_dump())
    return queries.send_message(store, msg)


@router.post("/api/messages/read")
def mark_read(body: MarkReadPayload, user: UserRecord = Depends(current_user), store: Database = Depends(get_store)):
    # only messages addressed to the caller can be marked read by them
    mine = [m["id"] for m in store.get_documents("messages", {"recipient_id": user.id}) if m["id"] in set(body.message_ids)]
    return queries.mark_messages_as_read(store, mine)


# ========== DASHBOARDS ==========
@router.get("/customer")
def customer_dashboard(filters: SearchFilters = Depends(search_filters), user: Optional[UserRecord] = Depends(optional_user), store: Database = Depends(get_store)):
    return views.customer_dashboard(store, user, filters)


@router.get("/retailer")
def retailer_dashboard(user: Optional[UserRecord] = Depends(optional_user), store: Database = Depends(get_store)):
    return views.retailer_dashboard(store, user)


@router.get("/service-provider")
def provider_dashboard(user: Optional[UserRecord] = Depends(optional_user), store: Database = Depends(get_store)):
    return views.provider_dashboard(store, user)


# ========== SEED ==========
@router.post("/api/seed")
def seed(ctx: AppContext = Depends(get_ctx)):
    if not ctx.allow_seed:
        raise AccessDenied("Seeding is disabled")
    store = ctx.store
    if store.get_documents("products", limit=1):
        return {"seeded": 0}
    ids = {}
    for u in mock_data.MOCK_USERS:
        try:
            ids[u["id"]] = queries.get_user_by_email(store, u["email"]).id
        except MarketplaceError:
            ids[u["id"]] = queries.create_user(store, User(**u)).id
    products = {}
    for p in mock_data.MOCK_PRODUCTS:
        products[p["id"]] = queries.create_product(store, Product(**{**p, "seller_id": ids[p["seller_id"]]})).id
    services = {}
    for s in mock_data.MOCK_SERVICES:
        windows = [ServiceAvailability(**w) for w in s["availability"]]
        services[s["id"]] = queries.create_service(store, Service(**{**s, "provider_id": ids[s["provider_id"]]}), windows).id
    for r in mock_data.MOCK_REVIEWS:
        queries.create_review(store, Review(
            user_id=ids[r["user_id"]],
            product_id=products.get(r.get("product_id")),
            service_id=services.get(r.get("service_id")),
            rating=r["rating"],
            comment=r["comment"],
        ))
    count = len(products) + len(services)
    logger.info(f"Seeded {count} listings and {len(mock_data.MOCK_REVIEWS)} reviews")
    return {"seeded": count}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
