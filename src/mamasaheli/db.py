import os
import base64
import logging
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata
from .config import get_settings

# ------------------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------------------
logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# Database Setup
# ------------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_db_initialized = False


def get_engine() -> AsyncEngine:
    """Get or create database engine"""
    global _engine
    if _engine is None:
        database_url = get_settings().database_url
        if database_url.startswith("sqlite"):
            # one connection per operation; sqlite serializes writers itself
            _engine = create_async_engine(
                database_url,
                echo=False,
                poolclass=NullPool,
                connect_args={"timeout": 30},
            )
        else:
            _engine = create_async_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,
                pool_recycle=3600,
            )
    return _engine


async def init_db():
    """Initialize database once"""
    global _db_initialized
    if _db_initialized:
        return
    try:
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        _db_initialized = True
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def dispose_engine():
    """Close pooled connections and forget the engine"""
    global _engine, _db_initialized
    try:
        if _engine is not None:
            await _engine.dispose()
            logger.info("Database engine disposed")
    finally:
        _engine = None
        _db_initialized = False


# ------------------------------------------------------------------------------
# Encryption Key Handling
# ------------------------------------------------------------------------------
_aes_key: Optional[bytes] = None


def get_encryption_key() -> bytes:
    """Get encryption key from environment with validation"""
    global _aes_key
    if _aes_key is not None:
        return _aes_key
    try:
        key_b64 = os.environ.get("CHAT_DB_KEY")
        if not key_b64:
            raise ValueError("CHAT_DB_KEY environment variable is not set")

        key = base64.urlsafe_b64decode(key_b64)
        if len(key) not in [16, 24, 32]:
            raise ValueError("Invalid AES key length")

        _aes_key = key
        return key
    except Exception as e:
        logger.error(f"Failed to load encryption key: {e}")
        raise


def reset_encryption_key():
    global _aes_key
    _aes_key = None


# ------------------------------------------------------------------------------
# Encryption Helpers
# ------------------------------------------------------------------------------
def encrypt(plaintext: str) -> str:
    """Encrypt plaintext with AES-GCM, returned as url-safe base64 text"""
    try:
        if not plaintext:
            return ""
        aesgcm = AESGCM(get_encryption_key())
        nonce = os.urandom(12)
        ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")
    except Exception as e:
        logger.error(f"Encryption failed: {e}")
        raise


def decrypt(token: str) -> str:
    """Decrypt ciphertext with AES-GCM"""
    try:
        if not token:
            return ""
        cipherbytes = base64.urlsafe_b64decode(token)
        if len(cipherbytes) < 12:
            raise ValueError("Invalid ciphertext length")
        aesgcm = AESGCM(get_encryption_key())
        nonce, ciphertext = cipherbytes[:12], cipherbytes[12:]
        return aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")
    except Exception as e:
        logger.error(f"Decryption failed: {e}")
        return "[Decryption error - message corrupted]"
