"""
Identity provider and session store.

IdentityProvider owns credentials and sessions (password sign-in/up, OAuth state,
session tokens, password reset). SessionManager is the per-client context
object: it resolves the marketplace profile behind an identity, caches it,
persists it under one storage key and notifies listeners when it changes.
"""
import hashlib
import json
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

from pydantic import BaseModel

import queries
from database import Database
from errors import AuthProviderError, DuplicateAccount, InvalidCredentials, MarketplaceError, NotFound
from schemas import Location, Role, User, UserRecord

logger = logging.getLogger(__name__)

OAUTH_PROVIDERS = ("google", "facebook")
OAUTH_BASE_URL = os.getenv("OAUTH_BASE_URL", "https://auth.westgate.local")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "168"))
CURRENT_USER_KEY = "currentUser"
SESSION_STORE_PATH = os.getenv("SESSION_STORE_PATH", ".westgate/session.json")


def _hash(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def display_name(email: str) -> str:
    local = email.split("@")[0].replace(".", " ").replace("_", " ")
    return " ".join(w.capitalize() for w in local.split())


class AuthSession(BaseModel):
    access_token: str
    email: str
    provider: str = "email"
    expires_at: datetime


# ========== PERSISTED CLIENT STATE ==========

class MemoryStorage:
    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str):
        self._items[key] = value

    def remove_item(self, key: str):
        self._items.pop(key, None)


class FileStorage:
    """Key/value storage kept in one JSON file."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text() or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unreadable session file {self.path}")
            return {}

    def _write(self, items: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(items))

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str):
        items = self._read()
        items[key] = value
        self._write(items)

    def remove_item(self, key: str):
        items = self._read()
        if items.pop(key, None) is not None:
            self._write(items)


# ========== IDENTITY PROVIDER ==========

class IdentityProvider:
    def __init__(self, store: Database):
        self.store = store

    def _identity(self, email: str) -> Optional[dict]:
        rows = self.store.get_documents("identities", {"email": email}, limit=1)
        return rows[0] if rows else None

    def _issue(self, email: str, provider: str) -> AuthSession:
        session = AuthSession(
            access_token=secrets.token_urlsafe(32),
            email=email,
            provider=provider,
            expires_at=_now() + timedelta(hours=SESSION_TTL_HOURS),
        )
        self.store.create_document("auth_sessions", session, publish=False)
        return session

    def sign_up(self, email: str, password: str) -> AuthSession:
        if self._identity(email):
            raise DuplicateAccount()
        self.store.create_document("identities", {"email": email, "password_hash": _hash(password), "provider": "email"}, publish=False)
        logger.info(f"Identity created for {email}")
        return self._issue(email, "email")

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        identity = self._identity(email)
        if not identity or identity.get("password_hash") != _hash(password):
            raise InvalidCredentials()
        return self._issue(email, "email")

    def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> str:
        if provider not in OAUTH_PROVIDERS:
            raise AuthProviderError(f"Unsupported provider: {provider}")
        state = secrets.token_urlsafe(16)
        redirect_to = redirect_to or f"{FRONTEND_URL}/auth/callback"
        self.store.create_document("oauth_states", {"state": state, "provider": provider, "redirect_to": redirect_to}, publish=False)
        return f"{OAUTH_BASE_URL}/{provider}/authorize?" + urlencode({"state": state, "redirect_to": redirect_to})

    def exchange_oauth_state(self, state: str, email: str) -> AuthSession:
        rows = self.store.get_documents("oauth_states", {"state": state}, limit=1)
        if not rows:
            raise AuthProviderError("Authentication failed. Please try again.")
        provider = rows[0]["provider"]
        self.store.delete_documents("oauth_states", {"state": state})
        identity = self._identity(email)
        if identity is not None and identity.get("provider") != provider:
            logger.warning(f"Refused {provider} sign-in for {email}: account uses {identity.get('provider')}")
            raise AuthProviderError("This email is registered with another sign-in method")
        if identity is None and self.store.get_documents("users", {"email": email}, limit=1):
            # a profile nobody can sign in to yet is not claimed by an OAuth assertion
            logger.warning(f"Refused {provider} sign-in for {email}: profile has no sign-in method")
            raise AuthProviderError("This email is registered with another sign-in method")
        if identity is None:
            self.store.create_document("identities", {"email": email, "password_hash": None, "provider": provider}, publish=False)
            logger.info(f"Identity created for {email} via {provider}")
        return self._issue(email, provider)

    def get_session(self, access_token: Optional[str]) -> Optional[AuthSession]:
        if not access_token:
            return None
        rows = self.store.get_documents("auth_sessions", {"access_token": access_token}, limit=1)
        if not rows:
            return None
        session = AuthSession(**rows[0])
        if _aware(session.expires_at) <= _now():
            return None
        return session

    def sign_out(self, access_token: Optional[str]):
        if access_token:
            self.store.delete_documents("auth_sessions", {"access_token": access_token})

    def reset_password_for_email(self, email: str) -> Optional[str]:
        if not self._identity(email):
            return None
        token = secrets.token_urlsafe(24)
        self.store.create_document("password_resets", {"email": email, "token": token}, publish=False)
        logger.info(f"Password reset requested for {email}")
        return token

    def discard(self, email: str, access_token: Optional[str] = None):
        """Remove an identity and its session, undoing a sign-up whose profile could not be stored."""
        self.sign_out(access_token)
        self.store.delete_documents("identities", {"email": email})

    def update_password(self, email: str, new_password: str, reset_token: Optional[str] = None):
        if reset_token is not None:
            rows = self.store.get_documents("password_resets", {"email": email, "token": reset_token}, limit=1)
            if not rows:
                raise AuthProviderError("Invalid or expired reset link")
            self.store.delete_documents("password_resets", {"email": email})
        identity = self._identity(email)
        if not identity:
            raise InvalidCredentials()
        self.store.update_document("identities", identity["id"], {"password_hash": _hash(new_password)}, publish=False)


# ========== SESSION STORE ==========

class AuthListener:
    def __init__(self, manager: "SessionManager", callback: Callable[[Optional[UserRecord]], None]):
        self.manager = manager
        self.callback = callback

    def unsubscribe(self):
        if self in self.manager._listeners:
            self.manager._listeners.remove(self)


class SessionManager:
    def __init__(self, identity: IdentityProvider, store: Database, storage=None):
        self.identity = identity
        self.store = store
        self.storage = storage if storage is not None else FileStorage(SESSION_STORE_PATH)
        self.access_token: Optional[str] = None
        self._user: Optional[UserRecord] = None
        self._listeners: List[AuthListener] = []

    # -- state

    def get_current_user(self) -> Optional[UserRecord]:
        if self._user is not None:
            return self._user
        stored = self.storage.get_item(CURRENT_USER_KEY)
        if stored:
            payload = json.loads(stored)
            self.access_token = payload.pop("access_token", None)
            self._user = UserRecord(**payload)
        return self._user

    def is_authenticated(self) -> bool:
        return self.get_current_user() is not None

    def has_role(self, role: Role) -> bool:
        user = self.get_current_user()
        return user is not None and user.role == role

    def on_auth_state_change(self, callback: Callable[[Optional[UserRecord]], None]) -> AuthListener:
        listener = AuthListener(self, callback)
        self._listeners.append(listener)
        return listener

    def _set_user(self, user: Optional[UserRecord], session: Optional[AuthSession] = None):
        self._user = user
        if session is not None:
            self.access_token = session.access_token
        if user is None:
            self.access_token = None
            self.storage.remove_item(CURRENT_USER_KEY)
        else:
            payload = json.loads(user.model_dump_json())
            payload["access_token"] = self.access_token
            self.storage.set_item(CURRENT_USER_KEY, json.dumps(payload))
        for listener in list(self._listeners):
            listener.callback(user)

    def _resolve_profile(self, email: str, name: Optional[str] = None) -> UserRecord:
        try:
            return queries.get_user_by_email(self.store, email)
        except NotFound:
            return queries.create_user(self.store, User(email=email, name=name or display_name(email), role="customer"))

    # -- operations

    def login(self, email: str, password: str) -> UserRecord:
        session = self.identity.sign_in_with_password(email, password)
        user = self._resolve_profile(email)
        self._set_user(user, session)
        logger.info(f"{email} signed in")
        return user

    def sign_up(self, email: str, password: str, name: str, role: Role, location: Location) -> UserRecord:
        if self.store.get_documents("users", {"email": email}, limit=1):
            raise DuplicateAccount()
        session = self.identity.sign_up(email, password)
        try:
            user = queries.create_user(self.store, User(
                email=email,
                name=name,
                role=role,
                avatar_url=f"https://api.dicebear.com/6.x/avataaars/svg?seed={email}",
                city=location.city,
                area=location.area,
                address=location.address,
                coordinates=location.coordinates,
            ))
        except MarketplaceError:
            self.identity.discard(email, session.access_token)
            raise
        self._set_user(user, session)
        return user

    def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> str:
        return self.identity.sign_in_with_oauth(provider, redirect_to)

    def complete_oauth(self, state: str, email: str, name: Optional[str] = None) -> UserRecord:
        session = self.identity.exchange_oauth_state(state, email)
        user = self._resolve_profile(email, name)
        self._set_user(user, session)
        logger.info(f"{email} signed in via {session.provider}")
        return user

    def restore(self, access_token: str) -> Optional[UserRecord]:
        session = self.identity.get_session(access_token)
        if session is None:
            return None
        user = self._resolve_profile(session.email)
        self._user = user
        self.access_token = access_token
        return user

    def update_role(self, role: Role) -> UserRecord:
        user = self.get_current_user()
        if user is None:
            raise InvalidCredentials("Not signed in")
        user = queries.update_user_role(self.store, user.id, role)
        self._set_user(user)
        return user

    def reset_password(self, email: str) -> Optional[str]:
        return self.identity.reset_password_for_email(email)

    def update_password(self, new_password: str):
        user = self.get_current_user()
        if user is None:
            raise InvalidCredentials("Not signed in")
        self.identity.update_password(user.email, new_password)

    def logout(self):
        self.identity.sign_out(self.access_token)
        self._set_user(None)
