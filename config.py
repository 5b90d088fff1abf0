import logging
import os
from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Configuration settings for the ambulance dispatch service."""

    # API Settings
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_reload: bool = False

    # Registry Settings
    data_dir: str = "registry_data"
    cache_size: int = 1000
    grid_cell_deg: float = 0.05  # ~5.5 km of latitude per cell
    duplicate_policy: str = "upsert"  # "upsert" or "reject"

    # Search Settings
    default_radius_km: float = 5.0
    max_radius_km: float = 100.0
    max_candidates: int = 10

    # Dispatch Settings
    notify_concurrency: int = 10
    notify_timeout_s: float = 8.0
    registry_timeout_s: float = 5.0
    message_timeout_s: float = 5.0
    dispatch_history_size: int = 500

    # Groq API Settings
    groq_api_key: str = os.getenv("GROQ_API_KEY", "")
    groq_model: str = "llama-3.1-8b-instant"

    # Twilio Settings
    twilio_account_sid: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    twilio_auth_token: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    twilio_phone_number: str = os.getenv("TWILIO_PHONE_NUMBER", "")
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"
    default_country_code: str = "+91"

    # Logging Settings
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_prefix = "AMBULANCE_DISPATCH_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global config instance
config = Config()


def get_groq_api_key() -> str:
    """Get Groq API key from environment or config."""
    return config.groq_api_key or os.getenv("GROQ_API_KEY", "")


def get_data_directory() -> str:
    """Get registry data directory path."""
    return os.path.abspath(config.data_dir)


def is_twilio_configured(settings: Config = None) -> bool:
    """Check whether Twilio credentials are present."""
    settings = settings or config
    return bool(settings.twilio_account_sid and settings.twilio_auth_token)


def setup_logging(settings: Config = None) -> None:
    """Configure root logging from the log_level/log_file settings."""
    settings = settings or config

    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=handlers,
        force=True
    )


# Development/Debug settings
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
