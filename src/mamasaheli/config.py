import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# Required identifiers
# ------------------------------------------------------------------------------
# attribute name -> environment variable
REQUIRED_IDS: Dict[str, str] = {
    "database_id": "DATABASE_ID",
    "profiles_collection_id": "PROFILES_COLLECTION_ID",
    "medical_documents_collection_id": "MEDICAL_DOCUMENTS_COLLECTION_ID",
    "appointments_collection_id": "APPOINTMENTS_COLLECTION_ID",
    "bp_collection_id": "BP_COLLECTION_ID",
    "sugar_collection_id": "SUGAR_COLLECTION_ID",
    "weight_collection_id": "WEIGHT_COLLECTION_ID",
    "meds_collection_id": "MEDS_COLLECTION_ID",
    "bloodworks_collection_id": "BLOODWORKS_COLLECTION_ID",
    "chat_history_collection_id": "CHAT_HISTORY_COLLECTION_ID",
    "bookmarks_collection_id": "BOOKMARKS_COLLECTION_ID",
    "forum_topics_collection_id": "FORUM_TOPICS_COLLECTION_ID",
    "forum_posts_collection_id": "FORUM_POSTS_COLLECTION_ID",
    "forum_votes_collection_id": "FORUM_VOTES_COLLECTION_ID",
    "profile_bucket_id": "PROFILE_BUCKET_ID",
    "medical_bucket_id": "MEDICAL_BUCKET_ID",
    "chat_images_bucket_id": "CHAT_IMAGES_BUCKET_ID",
}

DEFAULT_BASE_URL = "http://localhost:8501/v1"


def looks_like_placeholder(value: Optional[str]) -> bool:
    """True for empty values and template leftovers such as YOUR_DATABASE_ID"""
    if not value or not value.strip():
        return True
    value = value.strip()
    return value.startswith("YOUR_") or value.startswith("<") or len(value) < 5


@dataclass(frozen=True)
class Settings:
    database_url: str
    database_id: str
    profiles_collection_id: str
    medical_documents_collection_id: str
    appointments_collection_id: str
    bp_collection_id: str
    sugar_collection_id: str
    weight_collection_id: str
    meds_collection_id: str
    bloodworks_collection_id: str
    chat_history_collection_id: str
    bookmarks_collection_id: str
    forum_topics_collection_id: str
    forum_posts_collection_id: str
    forum_votes_collection_id: str
    profile_bucket_id: str
    medical_bucket_id: str
    chat_images_bucket_id: str
    base_url: str = DEFAULT_BASE_URL
    environment: str = "prod"
    gemini_api_key: Optional[str] = field(default=None, repr=False)
    model_name: Optional[str] = None


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build settings from the environment, refusing to start when any required
    identifier is missing or still a placeholder.
    """
    env = os.environ if environ is None else environ

    missing: List[str] = [
        var for var in REQUIRED_IDS.values() if looks_like_placeholder(env.get(var))
    ]
    database_url = env.get("DATABASE_URL")
    if not database_url:
        missing.append("DATABASE_URL")

    if missing:
        msg = (
            "Missing or invalid configuration for: "
            f"{', '.join(missing)}. Check your environment variables or .env file."
        )
        logger.error(msg)
        raise ConfigError(msg, missing)

    values = {attr: env[var].strip() for attr, var in REQUIRED_IDS.items()}
    return Settings(
        database_url=database_url,
        base_url=env.get("APP_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
        environment=env.get("ENVIRONMENT", "prod"),
        gemini_api_key=env.get("GEMINI_API_KEY"),
        model_name=env.get("AI_AGENT"),
        **values,
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or load the process-wide settings"""
    global _settings
    if _settings is None:
        _settings = load_settings()
        logger.info("Configuration loaded successfully")
    return _settings


def reset_settings():
    global _settings
    _settings = None


# ------------------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------------------
def setup_logging(environment: Optional[str] = None):
    """Setup logging configuration based on the environment"""
    environment = environment or os.environ.get("ENVIRONMENT", "prod")
    if environment == "prod":
        logging.basicConfig(level=logging.WARNING)
    elif environment == "release":
        logging.basicConfig(level=logging.INFO)
    elif environment == "debug":
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
