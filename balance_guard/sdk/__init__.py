"""
SDK for balance_guard.

Provides clients for external services feeding reading annotations.
"""

from .price_client import PriceClient, PriceFetchError

__all__ = ["PriceClient", "PriceFetchError"]
