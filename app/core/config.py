"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./messaging.db"

    # MinIO Configuration (media content store)
    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "chat-media"
    minio_secure: bool = False

    # Security Configuration
    bcrypt_rounds: int = 12
    token_expiry_hours: int = 24
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    auth_cookie_name: str = "auth-token"
    auth_cookie_secure: bool = False

    # Registration closes once this many users exist
    max_users: int = 2

    # WebSocket Configuration
    ws_max_connections_per_user: int = 5
    ws_auth_timeout_seconds: float = 5.0
    ws_heartbeat_interval_seconds: int = 30
    ws_heartbeat_timeout_seconds: int = 40
    ws_trust_payload_identity: bool = False

    # Delivery backfill worker
    backfill_batch_size: int = 200
    backfill_interval_seconds: int = 60

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
