import os
import json
from functools import lru_cache
from typing import Dict, Optional


class Settings:
    """
    Service configuration sourced from environment variables.

    The Stripe API key lives here and is handed to each gateway instance;
    nothing in the package assigns ``stripe.api_key``.
    """

    def __init__(self) -> None:
        self.stripe_api_key = os.getenv('STRIPE_API_KEY')
        self.stripe_endpoint_secret = os.getenv('STRIPE_ENDPOINT_SECRET')
        self.database_url = os.getenv('DATABASE_URL', 'sqlite:///./cashier.db')
        self.currency = os.getenv('CASHIER_CURRENCY', 'usd')
        self.currency_symbol = os.getenv('CASHIER_CURRENCY_SYMBOL')
        self.max_retries = self._get_int('STRIPE_MAX_RETRIES', 3)
        self.retry_delay = self._get_float('STRIPE_RETRY_DELAY', 1.0)
        self.unhandled_webhook_status = self._get_int('CASHIER_UNHANDLED_WEBHOOK_STATUS', 200)
        self.metadata_attributes = self._get_json('CASHIER_METADATA_ATTRIBUTES')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    def require_stripe_api_key(self) -> str:
        if not self.stripe_api_key:
            raise EnvironmentError('Stripe API key (STRIPE_API_KEY) not set in environment variables.')
        return self.stripe_api_key

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a number") from exc

    @staticmethod
    def _get_json(key: str) -> Dict[str, str]:
        value: Optional[str] = os.getenv(key)
        if not value:
            return {}
        try:
            parsed = json.loads(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a JSON object") from exc
        if not isinstance(parsed, dict):
            raise RuntimeError(f"Environment variable {key} must be a JSON object")
        return parsed


@lru_cache()
def get_settings() -> Settings:
    return Settings()
