"""
StableVPS Centralized Configuration
===================================

Single source of truth for all configuration values.
Reads from environment variables with sensible defaults.

Missing provider credentials never fail here; the selected adapter
raises ConfigurationError on first use instead.
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class StripeConfig:
    secret_key: str = ""
    webhook_secret: str = ""
    app_url: str = "http://localhost:3000"

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


@dataclass
class ProviderCredentials:
    aeza_api_token: str = ""
    cloudzy_api_token: str = ""
    contabo_client_id: str = ""
    contabo_client_secret: str = ""
    contabo_api_user: str = ""
    contabo_api_password: str = ""
    zomro_user: str = ""
    zomro_password: str = ""
    use_zomro_mock: bool = False

    def available_providers(self) -> List[str]:
        providers = []
        if self.zomro_user and self.zomro_password:
            providers.append("zomro")
        if self.aeza_api_token:
            providers.append("aeza")
        if self.cloudzy_api_token:
            providers.append("cloudzy")
        if all((
            self.contabo_client_id,
            self.contabo_client_secret,
            self.contabo_api_user,
            self.contabo_api_password,
        )):
            providers.append("contabo")
        return providers


@dataclass
class PollingConfig:
    """Provisioning poll cadence. 60 x 15s is roughly fifteen minutes."""
    interval_seconds: float = 15.0
    max_attempts: int = 60
    runner_enabled: bool = True
    runner_period_seconds: float = 15.0


@dataclass
class StableVPSConfig:
    """Master configuration for the StableVPS backend."""

    # Sub-configs
    stripe: StripeConfig = field(default_factory=StripeConfig)
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials)
    polling: PollingConfig = field(default_factory=PollingConfig)

    # Application settings
    vps_provider: str = "zomro"
    environment: str = "development"
    allow_mock_fallback: bool = False
    admin_token: str = ""
    poll_store_path: Optional[str] = "/var/lib/stablevps/polls"
    currency: str = "eur"
    log_level: str = "INFO"
    log_format: str = "json"
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:3000"]
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "StableVPSConfig":
        """Load configuration from environment variables."""
        return cls(
            stripe=StripeConfig(
                secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
                webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
                app_url=os.environ.get("NEXT_PUBLIC_APP_URL", os.environ.get("APP_URL", "http://localhost:3000")),
            ),
            credentials=ProviderCredentials(
                aeza_api_token=os.environ.get("AEZA_API_TOKEN", ""),
                cloudzy_api_token=os.environ.get("CLOUDZY_API_TOKEN", ""),
                contabo_client_id=os.environ.get("CONTABO_CLIENT_ID", ""),
                contabo_client_secret=os.environ.get("CONTABO_CLIENT_SECRET", ""),
                contabo_api_user=os.environ.get("CONTABO_API_USER", ""),
                contabo_api_password=os.environ.get("CONTABO_API_PASSWORD", ""),
                zomro_user=os.environ.get("ZOMRO_USER", ""),
                zomro_password=os.environ.get("ZOMRO_PASSWORD", ""),
                use_zomro_mock=_env_bool("USE_ZOMRO_MOCK"),
            ),
            polling=PollingConfig(
                interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "15")),
                max_attempts=int(os.environ.get("POLL_MAX_ATTEMPTS", "60")),
                runner_enabled=_env_bool("POLL_RUNNER_ENABLED", True),
                runner_period_seconds=float(os.environ.get("POLL_RUNNER_PERIOD_SECONDS", "15")),
            ),
            vps_provider=os.environ.get("VPS_PROVIDER", "zomro").strip().lower(),
            environment=os.environ.get("APP_ENV", "development").strip().lower(),
            allow_mock_fallback=_env_bool("ALLOW_MOCK_FALLBACK"),
            admin_token=os.environ.get("ADMIN_API_TOKEN", ""),
            poll_store_path=os.environ.get("POLL_STORE_PATH", "/var/lib/stablevps/polls"),
            currency=os.environ.get("CURRENCY", "eur").lower(),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            cors_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
        )
