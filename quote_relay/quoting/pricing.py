"""PrintIQ pricing client."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..models import PriceInfo

logger = logging.getLogger(__name__)

TOKEN_PATH = "/api/QuoteProcess/GetApplicationLogInToken"
PRICE_PATH = "/api/QuoteProcess/GetPrice"


class PricingError(RuntimeError):
    """Raised when the pricing backend cannot be reached or refuses to log in."""


def _token_from_body(raw: str) -> Optional[str]:
    """Pull the login token out of the many shapes the backend returns."""
    raw = raw.strip()
    try:
        body: Any = json.loads(raw)
    except json.JSONDecodeError:
        body = raw
    token: Any = None
    if isinstance(body, str):
        token = body
    elif isinstance(body, dict):
        token = body.get("Token") or body.get("LoginToken") or body.get("ApplicationToken")
        if not token:
            token = next((v for v in body.values() if isinstance(v, str) and len(v) > 16), None)
    if not isinstance(token, str):
        return None
    token = token.strip()
    if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
        token = token[1:-1]
    return token or None


def extract_price_info(body: Any) -> Optional[PriceInfo]:
    """Read ``QuoteDetails.Products[0].Quantities[0]`` from a price response."""
    if not isinstance(body, dict):
        return None
    details = body.get("QuoteDetails")
    if not isinstance(details, dict):
        return None
    quantity: Dict[str, Any] = {}
    try:
        quantity = details["Products"][0]["Quantities"][0] or {}
    except (KeyError, IndexError, TypeError):
        quantity = {}
    if not isinstance(quantity, dict):
        quantity = {}
    return PriceInfo(
        price=quantity.get("Price"),
        qty=quantity.get("Quantity") or quantity.get("QuantityToDisplay") or "",
        quote_no=str(details.get("QuoteNo") or ""),
    )


class PrintIQClient:
    """Log in with application credentials and request prices."""

    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        app_name: str,
        app_key: str,
        *,
        timeout: float = 10.0,
    ):
        if not base_url:
            raise PricingError("PrintIQ base URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.password = password
        self.app_name = app_name
        self.app_key = app_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def authenticate(self) -> str:
        """Return a fresh login token or raise :class:`PricingError`."""
        params = {
            "UserName": self.user or "",
            "Password": self.password or "",
            "ApplicationName": self.app_name or "",
            "ApplicationKey": self.app_key or "",
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    f"{self.base_url}{TOKEN_PATH}", params=params, headers={"Accept": "application/json"}
                ) as resp:
                    raw = await resp.text()
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise PricingError(f"PrintIQ login failed: {str(exc) or type(exc).__name__}") from exc
        token = _token_from_body(raw)
        if not token:
            raise PricingError(f"failed to obtain printiq token: {raw[:500]}")
        return token

    async def get_price(self, request: Dict[str, Any], token: str) -> Tuple[int, Any]:
        """POST the quote request; returns ``(status, body)`` with JSON decoded when possible."""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    f"{self.base_url}{PRICE_PATH}",
                    params={"LoginToken": token.strip()},
                    json=request,
                    headers={"Accept": "application/json"},
                ) as resp:
                    status = resp.status
                    raw = await resp.text()
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise PricingError(f"PrintIQ GetPrice failed: {str(exc) or type(exc).__name__}") from exc
        logger.info("PrintIQ GetPrice status: %s", status)
        try:
            return status, json.loads(raw)
        except json.JSONDecodeError:
            return status, raw

    async def quote(self, request: Dict[str, Any]) -> Tuple[int, Any, Optional[PriceInfo]]:
        """Authenticate, price ``request`` and extract the headline price."""
        token = await self.authenticate()
        status, body = await self.get_price(request, token)
        return status, body, extract_price_info(body)
