"""
config.py
=========
Environment-driven settings for the discount service.

Values are read once at import time. A local ``.env`` file is honoured when
present so development setups do not need exported variables.
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return float(raw)


class Settings:
    """Service settings."""

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./discounts.db")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Storefront money display
    CURRENCY_CODE: str = os.getenv("CURRENCY_CODE", "PKR")

    # Checkout charges added on top of the discounted subtotal
    SHIPPING_FLAT_AMOUNT: float = float(os.getenv("SHIPPING_FLAT_AMOUNT", "0"))
    SHIPPING_FREE_ABOVE: Optional[float] = _optional_float("SHIPPING_FREE_ABOVE")
    TAX_RATE_PERCENT: float = float(os.getenv("TAX_RATE_PERCENT", "0"))


def setup_logging() -> None:
    """Configure root logging for the service."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(
        level=getattr(logging, Settings.LOG_LEVEL, logging.INFO),
        format=log_format,
    )
