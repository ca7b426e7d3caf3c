"""
Configuration management for the Firestore backup tooling
Handles environment variables, emulator detection and operational limits
"""

from pathlib import Path
from typing import Dict, Any, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Firestore rejects write batches with more operations than this
FIRESTORE_BATCH_LIMIT = 500


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore")

    ENVIRONMENT: str = Field(default="development")

    # Google Cloud / Firebase settings
    GOOGLE_CLOUD_PROJECT: str = Field(default="")
    GCLOUD_PROJECT: str = Field(default="")
    GOOGLE_APPLICATION_CREDENTIALS: str = Field(default="")
    FIRESTORE_DATABASE: str = Field(default="(default)")

    # Emulator endpoints; when set the SDKs talk to the local emulators
    FIRESTORE_EMULATOR_HOST: str = Field(default="")
    FIREBASE_AUTH_EMULATOR_HOST: str = Field(default="")

    # Store access
    BATCH_LIMIT: int = Field(default=FIRESTORE_BATCH_LIMIT)
    EXPORT_PAGE_SIZE: int = Field(default=50)
    AUTH_PAGE_SIZE: int = Field(default=1000)
    STORE_RETRY_ATTEMPTS: int = Field(default=3)

    # Backup units
    BACKUPS_DIR: str = Field(default="backups")
    BACKUP_PREFIX: str = Field(default="firebase-backup-")
    BACKUP_VERSION: str = Field(default="1.0.0")
    PROJECT_ROOT: str = Field(default=".")
    RULES_FILES: List[str] = Field(
        default=["firestore.rules", "storage.rules"])

    # Owner-scoped layout
    OWNER_COLLECTION: str = Field(default="users")
    OWNER_FIELD: str = Field(default="userId")
    MIGRATION_COLLECTIONS: List[str] = Field(
        default=["directories", "documents", "quizzes"])
    CLEAR_SUBCOLLECTIONS: List[str] = Field(
        default=["documents", "quizzes", "directories", "rules"])
    CONFIRMATION_PHRASE: str = Field(default="DELETE ALL DATA")

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="text")  # json or text

    @property
    def project_id(self) -> str:
        return self.GOOGLE_CLOUD_PROJECT or self.GCLOUD_PROJECT

    @property
    def uses_emulator(self) -> bool:
        return bool(self.FIRESTORE_EMULATOR_HOST or self.FIREBASE_AUTH_EMULATOR_HOST)

    @property
    def uses_auth_emulator(self) -> bool:
        return bool(self.FIREBASE_AUTH_EMULATOR_HOST)

    @property
    def backups_path(self) -> Path:
        return Path(self.BACKUPS_DIR)


# Global settings instance
settings = Settings()


def load_settings(production: bool = False, env_file: Optional[str] = ".env.local") -> Settings:
    """Build settings for a CLI run.

    Unless ``production`` is requested (flag or ``ENVIRONMENT=production``)
    the emulator configuration in ``.env.local`` is loaded first.
    """
    loaded = Settings()
    if not (production or is_production(loaded)) and env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)
        loaded = Settings()
    validate_settings(loaded)
    return loaded


def is_production(config: Settings = settings) -> bool:
    """Check if running in production environment"""
    return config.ENVIRONMENT.lower() == "production"


def get_logging_config(config: Settings = settings) -> Dict[str, Any]:
    """Get logging configuration based on environment"""
    base_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            },
            "json": {
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
                "class": "pythonjsonlogger.jsonlogger.JsonFormatter"
            }
        },
        "handlers": {
            "default": {
                "level": config.LOG_LEVEL,
                "formatter": "json" if config.LOG_FORMAT == "json" else "standard",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr"
            }
        },
        "loggers": {
            "": {
                "handlers": ["default"],
                "level": config.LOG_LEVEL,
                "propagate": False
            },
            # gRPC and auth chatter drowns the run output
            "google": {"level": "WARNING"},
            "urllib3": {"level": "WARNING"},
        }
    }

    return base_config


def validate_settings(config: Settings = settings) -> None:
    """Validate critical settings"""
    if config.BATCH_LIMIT <= 0 or config.BATCH_LIMIT > FIRESTORE_BATCH_LIMIT:
        raise ValueError(
            f"BATCH_LIMIT must be between 1 and {FIRESTORE_BATCH_LIMIT}")

    if config.EXPORT_PAGE_SIZE <= 0:
        raise ValueError("EXPORT_PAGE_SIZE must be positive")

    if config.AUTH_PAGE_SIZE <= 0 or config.AUTH_PAGE_SIZE > 1000:
        raise ValueError("AUTH_PAGE_SIZE must be between 1 and 1000")

    if config.STORE_RETRY_ATTEMPTS < 1:
        raise ValueError("STORE_RETRY_ATTEMPTS must be at least 1")

    if not config.CONFIRMATION_PHRASE.strip():
        raise ValueError("CONFIRMATION_PHRASE must not be empty")


# Export commonly used settings
__all__ = [
    'FIRESTORE_BATCH_LIMIT',
    'Settings',
    'settings',
    'load_settings',
    'get_logging_config',
    'is_production',
    'validate_settings'
]
