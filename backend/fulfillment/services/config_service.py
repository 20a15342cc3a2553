from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any

from fulfillment.core.config import settings

logger = logging.getLogger(__name__)

_lock = Lock()
_config: dict[str, Any] | None = None

_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "business_config.json"


def get_config() -> dict[str, Any]:
    """
    Business data that changes without a deploy (shipping rates, bank details,
    payment method catalogue). Loaded once and cached.
    """
    global _config
    with _lock:
        if _config is not None:
            return _config
        _config = _load_from_file()
        return _config


def refresh_config() -> dict[str, Any]:
    global _config
    with _lock:
        _config = _load_from_file()
        return _config


def _load_from_file() -> dict[str, Any]:
    if not _CONFIG_PATH.exists():
        logger.warning(f"Business config not found at {_CONFIG_PATH}, using empty config")
        return {"shipping": {"city_rates": {}}, "bank_transfer": {}, "payment_methods": {}}
    return json.loads(_CONFIG_PATH.read_text(encoding="utf-8"))


def city_shipping_rate(city: str) -> Decimal:
    """Shipping multiplier for a city; unknown cities use the default rate."""
    rates = get_config().get("shipping", {}).get("city_rates", {})
    rate = rates.get(city.strip().lower())
    if rate is None:
        return settings.DEFAULT_CITY_SHIPPING_RATE
    return Decimal(str(rate))


def bank_details() -> dict[str, Any]:
    return dict(get_config().get("bank_transfer", {}))


def payment_method_info(method: str) -> dict[str, Any]:
    return dict(get_config().get("payment_methods", {}).get(method, {}))
