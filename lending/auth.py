from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
import jwt

from .config import Settings
from .database import Database
from .errors import AuthError, ConflictError, NotFoundError
from .models import MembershipType, User, to_iso, utcnow
from .schemas import LoginRequest, RegisterRequest

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


# ------------------------- Passwords ------------------------- #
def hash_password(password: str, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# ------------------------- Tokens ------------------------- #
def create_access_token(user: User, settings: Settings, now: Optional[datetime] = None) -> str:
    issued_at = now or utcnow()
    payload = {
        "sub": str(user.id),
        "userId": user.id,
        "email": user.email,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=settings.token_lifetime_seconds),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> dict:
    """Verify signature and expiry; raise AuthError on any problem."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Invalid or expired token") from exc


class AuthService:
    """Registration, login and token resolution for library members."""

    def __init__(self, db: Database, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    # ------------------------- Users ------------------------- #
    def get_user(self, user_id: int) -> Optional[User]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    def find_by_email(self, email: str) -> Optional[User]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email.lower(),)).fetchone()
        return User.from_row(row) if row else None

    def create_user(
        self,
        *,
        email: str,
        first_name: str,
        last_name: str,
        password: str,
        membership_type: MembershipType = MembershipType.STANDARD,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> User:
        email = email.lower()
        if self.find_by_email(email):
            raise ConflictError("User with this email already exists")

        now = to_iso(utcnow())
        password_hash = hash_password(password, self.settings.bcrypt_rounds)
        try:
            with self.db.connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, first_name, last_name, phone, address,
                                       membership_type, membership_date, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                    """,
                    (email, password_hash, first_name, last_name, phone, address,
                     MembershipType(membership_type).value, now, now),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            # Lost a race with a concurrent registration of the same email.
            raise ConflictError("User with this email already exists") from exc

        user = self.get_user(user_id)
        logger.info("Registered user %s (id=%s, membership=%s)", email, user_id, user.membership_type.value)
        return user

    def deactivate(self, user_id: int) -> None:
        with self.db.connection() as conn:
            cursor = conn.execute("UPDATE users SET is_active = 0 WHERE id = ?", (user_id,))
        if cursor.rowcount == 0:
            raise NotFoundError("User not found")
        logger.info("Deactivated user id=%s", user_id)

    # ------------------------- Operations ------------------------- #
    def register(self, payload: RegisterRequest) -> dict:
        user = self.create_user(
            email=payload.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            password=payload.password,
            membership_type=MembershipType(payload.membership_type),
            phone=payload.phone,
            address=payload.address,
        )
        user_data = user.to_public_dict()
        user_data.update({"membershipDate": user.membership_date, "createdAt": user.created_at})
        return {
            "message": "User registered successfully",
            "user": user_data,
            "token": create_access_token(user, self.settings),
        }

    def login(self, payload: LoginRequest) -> dict:
        user = self.find_by_email(payload.email)
        if user is None or not user.is_active:
            logger.warning("Login failed for %s: unknown or inactive user", payload.email)
            raise AuthError("Invalid credentials")
        if not verify_password(payload.password, user.password_hash):
            logger.warning("Login failed for %s: wrong password", payload.email)
            raise AuthError("Invalid credentials")

        logger.info("User %s logged in", user.email)
        return {
            "message": "Login successful",
            "user": user.to_public_dict(),
            "token": create_access_token(user, self.settings),
        }

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve a bearer token to an active user."""
        if not token:
            raise AuthError("Access token required")
        claims = decode_access_token(token, self.settings)
        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError) as exc:
            raise AuthError("Invalid or expired token") from exc

        user = self.get_user(user_id)
        if user is None or not user.is_active:
            raise AuthError("Invalid or inactive user")
        return user

    def get_profile(self, user_id: int) -> dict:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.to_profile_dict()
