"""
Checkout service settings.

Values come from the environment; the Redis endpoint and auth token may
instead come from an AWS Secrets Manager secret named by REDIS_SECRET_NAME.
"""
import json
import logging
import os
from decimal import Decimal
from typing import Optional

import boto3

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() in ("1", "true", "yes")


class Config:
    """Checkout service settings, read once at import"""

    APP_PORT: int = _int("APP_PORT", 8000)
    REGION: str = os.getenv("AWS_REGION", os.getenv("REGION", "ap-southeast-2"))

    # "redis" in production, "memory" for local runs and tests
    SESSION_STORE_BACKEND: str = os.getenv("SESSION_STORE_BACKEND", "redis").lower()

    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = _int("REDIS_PORT", 6379)
    REDIS_DB: int = _int("REDIS_DB", 0)
    REDIS_SSL: bool = _flag("REDIS_SSL", True)
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_MAX_CONNECTIONS: int = _int("REDIS_MAX_CONNECTIONS", 50)
    REDIS_SOCKET_CONNECT_TIMEOUT: int = _int("REDIS_SOCKET_CONNECT_TIMEOUT", 5)
    REDIS_SOCKET_TIMEOUT: int = _int("REDIS_SOCKET_TIMEOUT", 5)
    REDIS_RETRY_ATTEMPTS: int = _int("REDIS_RETRY_ATTEMPTS", 3)
    REDIS_RETRY_BASE_DELAY: float = float(os.getenv("REDIS_RETRY_BASE_DELAY", "0.1"))

    # Checkout sessions expire a day after the last write
    SESSION_TTL_SECONDS: int = _int("SESSION_TTL_SECONDS", DAY)
    MAX_LIVE_CHECKOUTS: int = _int("MAX_LIVE_CHECKOUTS", 10000)
    CART_TTL_SECONDS: int = _int("CART_TTL_SECONDS", 7 * DAY)
    GUEST_CART_TTL_SECONDS: int = _int("GUEST_CART_TTL_SECONDS", DAY)
    MAX_ITEMS_PER_CART: int = _int("MAX_ITEMS_PER_CART", 200)
    MAX_QUANTITY_PER_ITEM: int = _int("MAX_QUANTITY_PER_ITEM", 99)
    MERGE_CONFLICT_RESOLUTION: str = os.getenv("MERGE_CONFLICT_RESOLUTION", "sum")

    AUTH_API_URL: str = os.getenv("AUTH_API_URL", "http://localhost:5000")
    FULFILLMENT_API_URL: str = os.getenv("FULFILLMENT_API_URL", "http://localhost:5000")
    PAYMENT_API_URL: str = os.getenv("PAYMENT_API_URL", "http://localhost:5000")
    REGIONS_API_URL: str = os.getenv("REGIONS_API_URL", "https://api.printful.com")
    ZIP_LOOKUP_API_URL: str = os.getenv("ZIP_LOOKUP_API_URL", "https://api.zippopotam.us")
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    HTTP_MAX_RETRIES: int = _int("HTTP_MAX_RETRIES", 3)

    SHIPPING_FLAT_RATE: Decimal = Decimal(os.getenv("SHIPPING_FLAT_RATE", "5.99"))
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "0.08"))

    @classmethod
    def load_redis_secrets(cls) -> None:
        """
        Fill REDIS_AUTH_TOKEN (and optionally REDIS_HOST) from Secrets Manager.

        The secret is a JSON object with ``auth_token`` and an optional
        ``endpoint``. Nothing is fetched when a token is already set in the
        environment or no secret is named; a failed fetch leaves the store
        unauthenticated and is only logged.
        """
        secret_name = os.getenv("REDIS_SECRET_NAME")
        if cls.REDIS_AUTH_TOKEN or not secret_name:
            return

        try:
            secrets = boto3.client("secretsmanager", region_name=cls.REGION)
            payload = json.loads(secrets.get_secret_value(SecretId=secret_name)["SecretString"])
        except Exception as e:
            logger.warning(f"Session store secret {secret_name} unavailable: {e}")
            return

        cls.REDIS_AUTH_TOKEN = payload.get("auth_token")
        cls.REDIS_HOST = payload.get("endpoint", cls.REDIS_HOST)

    @classmethod
    def redis_url(cls) -> str:
        scheme = "rediss" if cls.REDIS_SSL else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"


Config.load_redis_secrets()
