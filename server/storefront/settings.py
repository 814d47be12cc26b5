"""
Storefront Server Settings

Configuration management using pydantic settings.
Loads from environment variables with STOREFRONT_ prefix.
"""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field
from typing import List, Optional, Literal


class Settings(BaseSettings):
    """
    Server configuration settings.

    Environment variables:
    - STOREFRONT_API_KEYS_RAW: Comma-separated list of admin/service API keys
    - STOREFRONT_ALLOWED_ORIGINS_RAW: Comma-separated list of allowed CORS origins
    - STOREFRONT_JWT_SECRET: Secret used to sign customer session tokens
    - STOREFRONT_STORE_BACKEND: 'memory' or 'redis' for OTP and checkout sessions
    - STOREFRONT_REDIS_URL: Redis connection string (redis backend only)
    - STOREFRONT_RAZORPAY_KEY_ID / _KEY_SECRET / _WEBHOOK_SECRET: payment gateway
    - STOREFRONT_CLOUDINARY_CLOUD_NAME / _API_KEY / _API_SECRET: image CDN
    - STOREFRONT_MAIL_API_KEY / STOREFRONT_MAIL_FROM: transactional mail relay
    - STOREFRONT_GOOGLE_CLIENT_ID: OAuth audience for Google sign-in
    - STOREFRONT_DEBUG: Enable debug mode (default: false)
    - DATABASE_URL: PostgreSQL connection string
    """

    model_config = SettingsConfigDict(
        env_prefix="STOREFRONT_",
        env_file=".env",
        extra="ignore",
    )

    # Raw string fields for comma-separated values
    api_keys_raw: str = ""
    allowed_origins_raw: str = ""

    debug: bool = False

    # Customer sessions
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    session_ttl_seconds: int = 7 * 24 * 3600

    # OTP login
    otp_length: int = 6
    otp_ttl_seconds: int = 300
    otp_send_rate_limit: str = "5/minute"

    # Checkout sessions
    checkout_ttl_seconds: int = 1800

    # Where OTP codes and checkout sessions live
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Payment gateway
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"

    # Image CDN
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    cloudinary_api_url: str = "https://api.cloudinary.com/v1_1"
    upload_folder: str = "duchess-pastries"
    max_upload_bytes: int = 5 * 1024 * 1024

    # Mail relay
    mail_api_url: str = "https://api.resend.com"
    mail_api_key: str = ""
    mail_from: str = ""
    mail_timeout_seconds: float = 10.0

    # OAuth
    google_client_id: str = ""
    google_tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo"

    # Road distance lookups
    routing_api_url: str = "https://router.project-osrm.org"
    routing_timeout_seconds: float = 5.0

    # Shop location (delivery distances are measured from here)
    shop_name: str = "Duchess Pastries"
    shop_address: str = "Coimbatore, Tamil Nadu, India"
    shop_latitude: float = 11.1062
    shop_longitude: float = 77.0015

    # Pricing defaults
    default_cgst_rate: float = 9.0
    default_sgst_rate: float = 9.0
    fallback_delivery_charge: float = 80.0
    default_delivery_distance_km: float = 5.0
    delivery_rules_ttl_seconds: int = 300

    @computed_field
    @property
    def api_keys(self) -> List[str]:
        """Parse comma-separated API keys into list."""
        if not self.api_keys_raw:
            return []
        return [v.strip() for v in self.api_keys_raw.split(",") if v.strip()]

    @computed_field
    @property
    def allowed_origins(self) -> List[str]:
        """Parse comma-separated allowed origins into list."""
        if not self.allowed_origins_raw:
            return []
        return [v.strip() for v in self.allowed_origins_raw.split(",") if v.strip()]

    @property
    def sender(self) -> Optional[str]:
        """Mail From header, or None when no sender address is configured."""
        if not self.mail_from:
            return None
        if "<" in self.mail_from:
            return self.mail_from
        return f'"Duchess Pastry 🍰" <{self.mail_from}>'


# Database URL (read separately since it doesn't have the STOREFRONT_ prefix)
DATABASE_URL = os.environ.get("DATABASE_URL", "")

# Global settings instance
settings = Settings()
