"""Application settings and configuration (Pydantic v2)."""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Database (Docker uses host "db")
    database_url: str = Field(
        default="postgresql://attendance_user:attendance_pass@db:5432/attendance",
        description="Postgres DSN",
    )
    auto_create_tables: bool = Field(default=True)

    # JWT (tokens are minted by the identity provider, verified here)
    jwt_secret_key: str = Field(
        default="your-super-secret-jwt-key-change-this-in-production",
    )
    jwt_algorithm: str = Field(default="HS256")
    jwt_access_token_expire_minutes: int = Field(default=30)

    # HMAC for mobile devices
    api_key_app: Optional[str] = Field(default=None)
    signing_secret: Optional[str] = Field(default=None)
    max_clock_skew_seconds: int = Field(default=120)

    # Geofence
    default_geofence_radius_m: float = Field(default=100.0, gt=0)
    check_radius_tolerance: float = Field(
        default=0.5, ge=0, description="Marge relative appliquée aux vérifications"
    )

    # Presence checks
    check_window_seconds: int = Field(default=60, gt=0)
    verified_display_seconds: float = Field(default=3.0, ge=0)

    # Fraud review
    device_anomaly_min_students: int = Field(default=2, ge=2)

    # Background work / live stream
    expiry_sweep_interval_seconds: float = Field(default=15.0, gt=0)
    stream_heartbeat_seconds: float = Field(default=5.0, gt=0)
    feed_queue_size: int = Field(default=1000, gt=0)

    log_level: str = Field(default="INFO")

    # Pydantic v2 settings
    model_config = SettingsConfigDict(
        env_file=".env",               # also reads OS env from Docker Compose
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="",                 # no prefix
    )

    # ---- Backwards-compat properties (UPPERCASE) ----
    @property
    def API_KEY_APP(self) -> Optional[str]:
        return self.api_key_app

    @property
    def SIGNING_SECRET(self) -> Optional[str]:
        return self.signing_secret


# Global settings instance
settings = Settings()
