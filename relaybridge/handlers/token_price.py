# relaybridge/handlers/token_price.py
"""
Token price lookup handler.

Serves GET <price api>/<tokenId> without touching that host: the price is the
quoted output of swapping one full token into a USD-pegged token, fetched from
a quote service.

Parameters (from the dispatcher):
  url      request URL (token id is the first capture group of the pattern)
  headers  request headers; Authorization must carry the configured bearer
           token, X-Denomination gives the token's decimals (default 12)
"""

import asyncio
import datetime
import re
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from relaybridge.errors import QuoteError, RetryableQuoteError, NonRetryableQuoteError
from relaybridge.handlers.base import ActionHandler
from relaybridge.monitoring import logger
from relaybridge.schemas import Outcome

NON_RETRYABLE_MARKERS = ("Invalid token", "Token not found", "Unsupported token")
DEFAULT_DENOMINATION = 12
MAX_DENOMINATION = 18

QuoteFetcher = Callable[[str, str, str, str], Awaitable[Dict[str, Any]]]


def classify_quote_error(exc: Exception) -> QuoteError:
    """Map any quote failure onto retryable / non-retryable."""
    if isinstance(exc, QuoteError):
        return exc
    msg = str(exc)
    if any(marker in msg for marker in NON_RETRYABLE_MARKERS):
        return NonRetryableQuoteError(msg)
    return RetryableQuoteError(msg)


def extract_estimated_output(quote: Dict[str, Any]) -> Optional[str]:
    if quote.get("estimatedOutput"):
        return quote["estimatedOutput"]
    best = quote.get("bestRoute") or {}
    if isinstance(best, dict) and best.get("estimatedOutput"):
        return best["estimatedOutput"]
    routes = quote.get("routes") or []
    if routes and isinstance(routes[0], dict) and routes[0].get("estimatedOutput"):
        return routes[0]["estimatedOutput"]
    return None


class HttpQuoteClient:
    """Asks a quote service: POST {fromTokenId, toTokenId, amount, userAddress}."""

    def __init__(self, quote_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.quote_url = quote_url
        self._client = client
        self.timeout = timeout

    async def __call__(self, from_token: str, to_token: str, amount: str, user_address: str) -> Dict[str, Any]:
        if not self.quote_url:
            raise NonRetryableQuoteError("Quote service URL is not configured")
        payload = {
            "fromTokenId": from_token,
            "toTokenId": to_token,
            "amount": amount,
            "userAddress": user_address,
        }
        if self._client is not None:
            resp = await self._client.post(self.quote_url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.quote_url, json=payload)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error") or resp.text
            except ValueError:
                detail = resp.text
            raise classify_quote_error(Exception(f"Quote service returned {resp.status_code}: {detail}"))
        try:
            quote = resp.json()
        except ValueError:
            raise RetryableQuoteError("Quote service returned a non-JSON body")
        if not isinstance(quote, dict):
            raise RetryableQuoteError("Quote service returned an unexpected body")
        return quote


class TokenPriceHandler(ActionHandler):
    name = "token-price"

    def __init__(
        self,
        url_pattern: str,
        bearer_token: str,
        quote_fetcher: QuoteFetcher,
        quote_token_id: str,
        quote_address: str = "",
        retry_limit: int = 10,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url_pattern = re.compile(url_pattern)
        self.bearer_token = bearer_token
        self.quote_fetcher = quote_fetcher
        self.quote_token_id = quote_token_id
        self.quote_address = quote_address
        self.retry_limit = max(1, retry_limit)
        self.retry_delay = retry_delay
        self._sleep = sleep

    def is_authorized(self, headers: Dict[str, str]) -> bool:
        auth = headers.get("Authorization") or headers.get("authorization")
        if not auth or not auth.startswith("Bearer "):
            return False
        return bool(self.bearer_token) and auth[len("Bearer "):] == self.bearer_token

    async def fetch_price(self, token_id: str, denomination: int) -> Dict[str, Any]:
        """Quote one full token, retrying retryable faults with a fixed delay."""
        amount = "1" + "0" * denomination
        last_error: Optional[QuoteError] = None
        for attempt in range(1, self.retry_limit + 1):
            try:
                quote = await self.quote_fetcher(token_id, self.quote_token_id, amount, self.quote_address)
                if not quote.get("routes"):
                    raise RetryableQuoteError("No routes available")
                estimated = extract_estimated_output(quote)
                if estimated is None:
                    raise RetryableQuoteError("No estimatedOutput found in quote response")
                try:
                    usd_price = float(estimated)
                except (TypeError, ValueError):
                    raise RetryableQuoteError(f"Invalid estimatedOutput: {estimated}")
                if usd_price < 0:
                    raise RetryableQuoteError(f"Invalid estimatedOutput: {estimated}")
                logger.info("Quote fetched", extra={"token_id": token_id, "attempt": attempt})
                return {"estimatedOutput": estimated, "usdPrice": usd_price, "quote": quote}
            except Exception as e:
                err = classify_quote_error(e)
                if isinstance(err, NonRetryableQuoteError):
                    logger.warning("Non-retryable quote error", extra={"token_id": token_id, "error": str(err)})
                    raise err
                last_error = err
                logger.info(
                    "Quote attempt failed",
                    extra={"token_id": token_id, "attempt": attempt, "limit": self.retry_limit, "error": str(err)},
                )
                if attempt < self.retry_limit:
                    await self._sleep(self.retry_delay)
        raise RetryableQuoteError(f"Quote failed after {self.retry_limit} attempts: {last_error}")

    async def execute(self, request_id: str, parameters: Dict[str, Any]) -> Outcome:
        url = parameters.get("url", "")
        headers = parameters.get("headers") or {}

        if not self.is_authorized(headers):
            return Outcome.failure(
                "Unauthorized: Invalid or missing bearer token",
                code=401, http_status=401, status_text="Unauthorized",
            )

        match = self.match(url)
        token_id = match.group(1) if match and match.groups() else None
        if not token_id:
            return Outcome.failure("Invalid token ID in URL", code=400, http_status=400, status_text="Bad Request")

        try:
            denomination = int(headers.get("X-Denomination") or DEFAULT_DENOMINATION)
        except ValueError:
            denomination = -1
        if denomination < 0 or denomination > MAX_DENOMINATION:
            return Outcome.failure(
                f"Invalid denomination. Must be between 0 and {MAX_DENOMINATION}",
                code=400, http_status=400, status_text="Bad Request",
            )

        try:
            price = await self.fetch_price(token_id, denomination)
        except QuoteError as e:
            return Outcome.failure(
                f"Price fetching failed: {e}",
                code=500, http_status=500, status_text="Internal Server Error",
            )

        return Outcome(
            success=True,
            http_status=200,
            status_text="OK",
            headers={
                "content-type": "application/json",
                "x-token-id": token_id,
                "x-denomination": str(denomination),
                "x-usd-price": str(price["usdPrice"]),
            },
            data={
                "tokenId": token_id,
                "denomination": denomination,
                "estimatedOutput": price["estimatedOutput"],
                "usdPrice": price["usdPrice"],
                "quote": price["quote"],
                "message": f"Successfully fetched price for token {token_id}",
                "timestamp": datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            },
        )
