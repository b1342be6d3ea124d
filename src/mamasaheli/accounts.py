import os
import logging
import secrets
from datetime import timedelta, timezone
from typing import List, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .db import get_engine, init_db
from .errors import StoreError, handle_store_error
from .models import Account, AuthSession, User, utcnow
from .utils import unique_id

logger = logging.getLogger(__name__)

SESSION_TTL = timedelta(days=30)
MIN_PASSWORD_LENGTH = 8
DOCTOR_LABEL = "doctor"


# ------------------------------------------------------------------------------
# Password hashing
# ------------------------------------------------------------------------------
def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)


def hash_password(password: str, salt: Optional[bytes] = None):
    """Return (hash, salt) for a password"""
    salt = salt or os.urandom(16)
    return _kdf(salt).derive(password.encode("utf-8")), salt


def verify_password(password: str, password_hash: bytes, salt: bytes) -> bool:
    try:
        _kdf(salt).verify(password.encode("utf-8"), password_hash)
        return True
    except InvalidKey:
        return False


def _to_user(account: Account) -> User:
    return User(id=account.id, email=account.email, name=account.name, labels=list(account.labels or []))


# ------------------------------------------------------------------------------
# Accounts
# ------------------------------------------------------------------------------
async def create_account(email: str, password: str, name: str, labels: Optional[List[str]] = None) -> User:
    """Register a new account"""
    if not email or not password or not name:
        raise ValueError("Email, password, and name are required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    await init_db()
    password_hash, salt = hash_password(password)
    account = Account(
        id=unique_id(),
        email=email.strip().lower(),
        name=name.strip(),
        password_hash=password_hash,
        salt=salt,
        labels=list(labels or []),
    )
    try:
        async with AsyncSession(get_engine(), expire_on_commit=False) as session:
            session.add(account)
            await session.commit()
    except IntegrityError as e:
        error = StoreError(
            "A user with the same email already exists in the current project.", 409, "user_already_exists"
        )
        handle_store_error(error, "creating account")
        raise error from e
    logger.info(f"Created account {account.id}")
    return _to_user(account)


async def login(email: str, password: str) -> str:
    """Create a session and return its token"""
    if not email or not password:
        raise ValueError("Email and password required.")
    await init_db()
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        result = await session.execute(select(Account).where(Account.email == email.strip().lower()))
        account = result.scalars().first()
        if account is None or not verify_password(password, account.password_hash, account.salt):
            error = StoreError(
                "Invalid credentials. Please check the email and password.", 401, "user_invalid_credentials"
            )
            handle_store_error(error, "logging in")
            raise error

        token = secrets.token_urlsafe(32)
        session.add(AuthSession(id=token, user_id=account.id, expires_at=utcnow() + SESSION_TTL))
        await session.commit()
    logger.info(f"User {account.id} logged in")
    return token


async def logout(token: str):
    await init_db()
    async with AsyncSession(get_engine()) as session:
        auth_session = await session.get(AuthSession, token)
        if auth_session:
            await session.delete(auth_session)
            await session.commit()


async def get_current_user(token: Optional[str]) -> Optional[User]:
    """User for a session token, or None when the token is unknown or expired"""
    if not token:
        return None
    try:
        await init_db()
        async with AsyncSession(get_engine()) as session:
            auth_session = await session.get(AuthSession, token)
            if auth_session is None:
                return None
            expires_at = auth_session.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= utcnow():
                await session.delete(auth_session)
                await session.commit()
                return None
            account = await session.get(Account, auth_session.user_id)
            return _to_user(account) if account else None
    except Exception as e:
        handle_store_error(e, "fetching current user")
        return None


def is_doctor(user: Optional[User]) -> bool:
    return bool(user) and DOCTOR_LABEL in user.labels
