"""
ReScrub application settings
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/rescrub.db"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # File storage
    DATA_DIR: str = "./data"
    EVIDENCE_ARCHIVE_DIR: str = "./data/evidence_archive"

    # Response analysis policy
    POSITIVE_CONFIDENCE_THRESHOLD: float = 0.8
    UNCERTAIN_CONFIDENCE_CEILING: float = 0.6

    # Statutory windows (152-FZ art. 21)
    RESPONSE_DEADLINE_DAYS: int = 30
    FOLLOW_UP_OFFSETS_DAYS: List[int] = [14, 21, 28]
    EVIDENCE_RETENTION_DAYS: int = 90

    # Evidence integrity
    EVIDENCE_SERVER_SECRET: str = ""
    EVIDENCE_SIGNING_ALGORITHM: str = "ed25519"
    EVIDENCE_SIGNING_KEY: str = ""  # hex private key, empty = unsigned evidence
    EVIDENCE_SIGNER_CERTIFICATE_PATH: str = ""
    TRUSTED_ROOTS_PATH: str = ""  # JSON list of trusted root certificates

    # Outbound notifications
    REGULATOR_EMAIL: str = "complaints@rkn.gov.ru"
    NOTIFY_MAX_ATTEMPTS: int = 3
    NOTIFY_BACKOFF_SECONDS: float = 1.0

    # Email automation sweep
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: int = 6 * 60 * 60

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()


DEV_EVIDENCE_SECRET = "dev_weak_secret_only_for_testing"


def evidence_secret(cfg: Settings = settings) -> str:
    """Return the HMAC secret for evidence digests.

    Production refuses to run without a secret of at least 32 characters;
    other environments fall back to a fixed development secret.
    """
    secret = cfg.EVIDENCE_SERVER_SECRET
    if cfg.ENVIRONMENT == "production":
        if len(secret) < 32:
            raise RuntimeError("EVIDENCE_SERVER_SECRET must be at least 32 characters in production")
        return secret
    return secret or DEV_EVIDENCE_SECRET
