"""Configuration management - loads offers.yaml and environment variables."""

import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from subscription_sync.models import OfferDefinition, OffersConfig


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Settings(BaseModel):
    """Secrets, URLs and backends taken from the environment."""

    provider_api_key: str = Field(default="", description="Payment provider API key")
    provider_api_base: str = Field(default="https://api.mollie.com/v2")
    cancel_link_secret: str = Field(default="dev-secret", description="HMAC secret for cancel links")
    admin_cancel_secret: str = Field(default="dev-admin-cancel-secret", description="Operator bearer credential")
    cron_secret: Optional[str] = Field(None, description="Bearer credential for the sweep endpoint")
    store_backend: str = Field(default="redis", description="'redis' or 'memory'")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_password: Optional[str] = None
    redis_timeout_seconds: float = Field(default=5.0)
    public_base_url: str = Field(default="http://localhost:8080")
    cancel_success_redirect: str = Field(default="https://www.example.com/cancel-confirmed")
    cancel_failure_redirect: str = Field(default="https://www.example.com/help")
    checkout_redirect_url: str = Field(default="https://www.example.com/thank-you")
    activation_url: Optional[str] = Field(None, description="Default course activation URL")
    deactivation_url: Optional[str] = Field(None, description="Default course deactivation URL")
    mail_api_url: str = Field(default="https://api.resend.com/emails")
    mail_api_key: Optional[str] = None
    mail_from: str = Field(default="no-reply@example.com")

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "Settings":
        """Build settings from environment variables (unset or empty values use defaults)."""
        mapping = {
            "provider_api_key": "PROVIDER_API_KEY",
            "provider_api_base": "PROVIDER_API_BASE",
            "cancel_link_secret": "CANCEL_LINK_SECRET",
            "admin_cancel_secret": "ADMIN_CANCEL_SECRET",
            "cron_secret": "CRON_SECRET",
            "store_backend": "STORE_BACKEND",
            "redis_url": "REDIS_URL",
            "redis_password": "REDIS_PASSWORD",
            "redis_timeout_seconds": "REDIS_TIMEOUT_SECONDS",
            "public_base_url": "PUBLIC_BASE_URL",
            "cancel_success_redirect": "CANCEL_SUCCESS_REDIRECT",
            "cancel_failure_redirect": "CANCEL_FAILURE_REDIRECT",
            "checkout_redirect_url": "CHECKOUT_REDIRECT_URL",
            "activation_url": "ACTIVATION_URL",
            "deactivation_url": "DEACTIVATION_URL",
            "mail_api_url": "MAIL_API_URL",
            "mail_api_key": "MAIL_API_KEY",
            "mail_from": "MAIL_FROM",
        }
        values = {field: environ[var] for field, var in mapping.items() if environ.get(var)}
        return cls(**values)

    @property
    def webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/payments/webhook"

    @property
    def cancel_link_base(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/cancel"


class Config:
    """Application configuration loader and manager.

    Loads offers.yaml and provides validated access to:
    - Offer definitions (with per-offer callback URL overrides from env)
    - Checkout, cancellation, provider, activator and alert settings
    - Secrets and URLs from the environment
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to offers.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/offers.yaml
            environ: Environment mapping (defaults to os.environ)
        """
        self._environ = environ if environ is not None else os.environ
        self._config_path = self._resolve_config_path(config_path)
        self._offers_config: Optional[OffersConfig] = None
        self._settings: Optional[Settings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = self._environ.get("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/offers.yaml")

    def _load_config(self) -> None:
        """Load and validate offers.yaml and environment settings."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/offers.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            offers_config = OffersConfig(**raw_config)
            self._settings = Settings.from_env(self._environ)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")

        self._apply_offer_overrides(offers_config.offers)
        self._validate_offers(offers_config)
        self._offers_config = offers_config

    def _apply_offer_overrides(self, offers: list[OfferDefinition]) -> None:
        """Apply ACTIVATION_URL_<OFFER> / DEACTIVATION_URL_<OFFER> env overrides."""
        for offer in offers:
            activation = self._environ.get(f"ACTIVATION_URL_{offer.id}")
            if activation:
                offer.activation_url = activation
            deactivation = self._environ.get(f"DEACTIVATION_URL_{offer.id}")
            if deactivation:
                offer.deactivation_url = deactivation

    @staticmethod
    def _validate_offers(offers_config: OffersConfig) -> None:
        ids = [offer.id for offer in offers_config.offers]
        if len(ids) != len(set(ids)):
            raise ConfigurationError(f"Duplicate offer ids in configuration: {ids}")
        for offer in offers_config.offers:
            if offer.is_subscription and not offer.interval:
                raise ConfigurationError(f"Subscription offer {offer.id} has no interval")
        if offers_config.default_offer_id and offers_config.default_offer_id not in ids:
            raise ConfigurationError(
                f"default_offer_id {offers_config.default_offer_id} is not a configured offer"
            )

    @property
    def offers(self) -> OffersConfig:
        """Get validated offers configuration."""
        if self._offers_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._offers_config

    @property
    def settings(self) -> Settings:
        """Get environment settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    def reload(self) -> None:
        """Reload configuration from disk and environment."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reset_config() -> None:
    """Drop the global configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
