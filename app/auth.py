from __future__ import annotations

import hashlib
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

import structlog
from passlib.context import CryptContext
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.clock import CivilClock, as_utc
from app.db.models import AuthSession, User, new_id
from shared.contracts.enums import Role
from shared.contracts.models import AuthIdentity, LoginResponse, UserDTO, clean_contact, normalize_identity

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

DEFAULT_CITY = "Hassan, Karnataka"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class EmailAlreadyRegistered(ValueError):
    """A user with this e-mail already exists."""


@dataclass
class _Window:
    count: int
    reset_at: float


class AttemptLimiter:
    """Fixed-window attempt counter keyed by client address.

    In-process only; it is created with the app and forgotten on restart.
    ``allow`` runs on request threads and ``prune`` on the timer thread, so
    both hold the instance lock.
    """

    def __init__(
        self,
        window_seconds: float = 600,
        max_attempts: int = 25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_attempts = max_attempts
        self.clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def allow(self, key: Optional[str]) -> bool:
        key = key or "unknown"
        with self._lock:
            now = self.clock()
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                return True
            window.count += 1
            return window.count <= self.max_attempts

    def prune(self) -> None:
        with self._lock:
            now = self.clock()
            for key in [k for k, w in self._windows.items() if now > w.reset_at]:
                del self._windows[key]


def _identity(user: User) -> AuthIdentity:
    return AuthIdentity(user_id=user.id, email=user.email, role=Role(user.role))


class AuthGate:
    """Bearer-token sessions backed by the ``sessions`` table."""

    def __init__(self, session_factory: sessionmaker, clock: CivilClock, session_ttl_seconds: int) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.session_ttl = timedelta(seconds=session_ttl_seconds)

    def find_user(self, email: str) -> Optional[AuthIdentity]:
        with self.session_factory() as session:
            user = session.scalar(select(User).where(User.email == normalize_identity(email)))
            return _identity(user) if user is not None else None

    def register_user(
        self,
        *,
        name: str,
        email: str,
        password: str,
        role: Role,
        phone: str = "",
        city: str = DEFAULT_CITY,
    ) -> AuthIdentity:
        user = User(
            id=new_id(),
            name=name.strip(),
            email=normalize_identity(email),
            password_hash=pwd_context.hash(password),
            role=Role(role).value,
            city=(city or DEFAULT_CITY).strip(),
            phone=clean_contact(phone),
            created_at=self.clock.now(),
        )
        if self.find_user(user.email) is not None:
            raise EmailAlreadyRegistered(user.email)
        try:
            with self.session_factory.begin() as session:
                session.add(user)
        except IntegrityError as exc:
            raise EmailAlreadyRegistered(user.email) from exc
        logger.info("user_registered", user_id=user.id, role=user.role)
        return _identity(user)

    def list_patients(self) -> List[UserDTO]:
        with self.session_factory() as session:
            rows = session.scalars(select(User).where(User.role == Role.PATIENT.value).order_by(User.name))
            return [UserDTO.model_validate(row) for row in rows]

    def verify_credentials(self, email: str, password: str) -> Optional[AuthIdentity]:
        with self.session_factory() as session:
            user = session.scalar(select(User).where(User.email == normalize_identity(email)))
        if user is None or not pwd_context.verify(password, user.password_hash):
            return None
        return _identity(user)

    def open_session(self, identity: AuthIdentity) -> LoginResponse:
        token = secrets.token_urlsafe(32)
        now = self.clock.now()
        expires_at = now + self.session_ttl
        with self.session_factory.begin() as session:
            session.add(
                AuthSession(
                    token_hash=hash_token(token),
                    user_id=identity.user_id,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
        return LoginResponse(token=token, user=identity, expires_at=expires_at)

    def login(self, email: str, password: str) -> Optional[LoginResponse]:
        identity = self.verify_credentials(email, password)
        if identity is None:
            logger.info("login_rejected", email=normalize_identity(email))
            return None
        return self.open_session(identity)

    def authenticate(self, token: Optional[str]) -> Optional[AuthIdentity]:
        token = (token or "").strip()
        if not token:
            return None

        token_hash = hash_token(token)
        with self.session_factory.begin() as session:
            row = session.get(AuthSession, token_hash)
            if row is None:
                return None
            if self.clock.now() > as_utc(row.expires_at):
                session.delete(row)
                return None
            return _identity(row.user)

    def logout(self, token: Optional[str]) -> bool:
        token = (token or "").strip()
        if not token:
            return False
        with self.session_factory.begin() as session:
            result = session.execute(delete(AuthSession).where(AuthSession.token_hash == hash_token(token)))
            return result.rowcount > 0

    def cleanup_expired_sessions(self) -> int:
        with self.session_factory.begin() as session:
            result = session.execute(delete(AuthSession).where(AuthSession.expires_at < self.clock.now()))
            return result.rowcount
