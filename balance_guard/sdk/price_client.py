"""
HTTP price client.

Fetches a single token price in USD from a CoinGecko-compatible
``/simple/price`` endpoint. Meant to be wrapped in a PriceCache.
"""

from decimal import Decimal
from typing import Optional

import httpx

DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"


class PriceFetchError(Exception):
    """Raised when the price endpoint returns an unusable response."""


class PriceClient:
    """Minimal client for the simple price endpoint.

    All failures are loud; the cache decides whether a stale price is used.
    """

    def __init__(
        self,
        coin_id: str,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the price client.

        Args:
            coin_id: Identifier of the coin on the price service (required)
            api_key: Optional demo API key sent as ``x-cg-demo-api-key``
            base_url: Base URL of the price service
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests

        Raises:
            ValueError: If coin_id is missing/empty
        """
        if not coin_id or not coin_id.strip():
            raise ValueError("coin_id is required and cannot be empty")
        self.coin_id = coin_id
        headers = {"Accept": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def fetch_usd_price(self) -> Decimal:
        """Fetch the current USD price.

        Raises:
            httpx.HTTPError: On transport failures and non-2xx responses
            PriceFetchError: If the payload has no price for the coin
        """
        response = self._client.get(
            "/simple/price",
            params={"ids": self.coin_id, "vs_currencies": "usd"},
        )
        response.raise_for_status()
        payload = response.json()
        try:
            price = payload[self.coin_id]["usd"]
        except (KeyError, TypeError):
            raise PriceFetchError(f"No USD price for {self.coin_id} in response")
        return Decimal(str(price))
