import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    barangay_name: str
    certificate_validity_days: int
    certificate_expiring_soon_days: int
    certificate_signer_name: str
    certificate_signer_title: str
    sequence_max_retries: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///brgy.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        barangay_name=_getenv("BARANGAY_NAME", "Barangay"),
        certificate_validity_days=_getenv_int("CERTIFICATE_VALIDITY_DAYS", 30),
        certificate_expiring_soon_days=_getenv_int("CERTIFICATE_EXPIRING_SOON_DAYS", 30),
        certificate_signer_name=_getenv("CERTIFICATE_SIGNER_NAME", "Punong Barangay"),
        certificate_signer_title=_getenv("CERTIFICATE_SIGNER_TITLE", "Punong Barangay"),
        sequence_max_retries=_getenv_int("SEQUENCE_MAX_RETRIES", 5),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # certificate issuance
        "BARANGAY_NAME": s.barangay_name,
        "CERTIFICATE_VALIDITY_DAYS": s.certificate_validity_days,
        "CERTIFICATE_EXPIRING_SOON_DAYS": s.certificate_expiring_soon_days,
        "CERTIFICATE_SIGNER_NAME": s.certificate_signer_name,
        "CERTIFICATE_SIGNER_TITLE": s.certificate_signer_title,
        "SEQUENCE_MAX_RETRIES": s.sequence_max_retries,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
