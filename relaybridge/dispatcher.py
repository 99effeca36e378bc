# relaybridge/dispatcher.py
"""
Action dispatcher: turns a (credential-substituted) RequestRecord into an Outcome.

Either a registered ActionHandler claims the URL, or a generic HTTP call is made.
The generic call never raises for HTTP or transport problems; both come back as
success=False outcomes. Every successful response then goes through a soft-error
detector, because upstream gateways like to wrap failures in a 200.
"""

import json
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from relaybridge import monitoring
from relaybridge.handlers.base import ActionHandler
from relaybridge.monitoring import logger
from relaybridge.schemas import Outcome, RequestRecord

GENERIC_ACTION = "http"
SOFT_ERROR_MESSAGE = "Error response detected"
INVALID_REQUEST_CODE = "EINVALIDREQUEST"

SoftErrorDetector = Callable[[Outcome], bool]


def detect_soft_error(outcome: Outcome) -> bool:
    """
    Heuristic: an HTML document mentioning error / not found / 404, or a JSON
    object with a truthy "error" field. Legitimate bodies can trip this.
    """
    data = outcome.data
    if isinstance(data, str):
        lower = data.lower()
        if ("<!doctype html" in lower or "<html" in lower) and (
            "error" in lower or "not found" in lower or "404" in lower
        ):
            return True
    elif isinstance(data, dict):
        if data.get("error"):
            return True
    return False


def never_soft_error(outcome: Outcome) -> bool:
    return False


def transport_error_code(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return "EINVALIDURL"
    return "NETWORK_ERROR"


def _content_type(headers: Dict[str, str]) -> str:
    for k, v in headers.items():
        if k.lower() == "content-type":
            return v or ""
    return ""


def _decode_body(resp: httpx.Response) -> Any:
    text = resp.text
    if not text:
        return ""
    try:
        return json.loads(text)
    except ValueError:
        return text


class ActionDispatcher:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        handlers: Optional[List[ActionHandler]] = None,
        soft_error_detectors: Optional[Dict[str, SoftErrorDetector]] = None,
    ):
        self._client = client
        self.handlers: List[ActionHandler] = list(handlers or [])
        self.soft_error_detectors: Dict[str, SoftErrorDetector] = {GENERIC_ACTION: detect_soft_error}
        if soft_error_detectors:
            self.soft_error_detectors.update(soft_error_detectors)

    def register(self, handler: ActionHandler, detector: Optional[SoftErrorDetector] = None) -> None:
        self.handlers.append(handler)
        if detector is not None:
            self.soft_error_detectors[handler.name] = detector

    def find_handler(self, url: str) -> Optional[ActionHandler]:
        for handler in self.handlers:
            if handler.match(url):
                return handler
        return None

    async def dispatch(self, record: RequestRecord, body: Optional[str] = None) -> Outcome:
        """
        Execute one request. `body` overrides the record's inline body (used when
        the body was fetched from the entry's data section).
        """
        handler = self.find_handler(record.url)
        action = handler.name if handler else GENERIC_ACTION
        start = time.time()
        try:
            if handler is not None:
                logger.info("Delegating to action handler", extra={"reference": record.reference, "handler": action})
                try:
                    outcome = await handler.execute(
                        record.reference or record.tx_id,
                        {"url": record.url, "method": record.method, "headers": dict(record.headers), "body": body},
                    )
                except Exception as e:
                    logger.exception("Action handler raised", extra={"handler": action})
                    outcome = Outcome.failure(
                        f"Handler {action} failed: {e}", code=500, http_status=500,
                        status_text="Internal Server Error",
                    )
            else:
                outcome = await self._http_call(record, body if body is not None else record.inline_body())
        finally:
            monitoring.observe_dispatch(start, action)

        if outcome.success:
            detector = self.soft_error_detectors.get(action, detect_soft_error)
            if detector(outcome):
                logger.warning(
                    "Soft error in successful response",
                    extra={"reference": record.reference, "status": outcome.http_status, "handler": action},
                )
                outcome = outcome.model_copy(update={
                    "success": False,
                    "soft_error": True,
                    "error": SOFT_ERROR_MESSAGE,
                    "code": outcome.http_status,
                })
        return outcome

    def _build_request_kwargs(self, record: RequestRecord, body: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "headers": dict(record.headers),
            "timeout": record.timeout_ms / 1000.0,
        }
        if record.method == "GET" or not body:
            return kwargs
        ctype = _content_type(record.headers)
        if "application/json" in ctype:
            try:
                kwargs["json"] = json.loads(body)
            except ValueError:
                logger.warning("Body is not valid JSON, sending raw", extra={"reference": record.reference})
                kwargs["content"] = body
        else:
            # form-urlencoded and everything else go out as-is
            kwargs["content"] = body
        return kwargs

    async def _http_call(self, record: RequestRecord, body: str) -> Outcome:
        kwargs = self._build_request_kwargs(record, body)
        try:
            if self._client is not None:
                resp = await self._client.request(record.method, record.url, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.request(record.method, record.url, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return Outcome.failure(str(e) or e.__class__.__name__, code=transport_error_code(e))
        except (ValueError, TypeError) as e:
            # httpx could not build the request (non-ASCII header value, bad header type)
            logger.warning(
                "Request could not be built",
                extra={"reference": record.reference, "error": e.__class__.__name__},
            )
            return Outcome.failure(
                f"Invalid request: {e.__class__.__name__}: {e}", code=INVALID_REQUEST_CODE,
            )

        ok = 200 <= resp.status_code < 300
        if not ok:
            logger.info(
                "Upstream returned non-2xx",
                extra={"reference": record.reference, "status": resp.status_code, "method": record.method},
            )
        return Outcome(
            success=ok,
            http_status=resp.status_code,
            status_text=resp.reason_phrase,
            headers={k: v for k, v in resp.headers.items()},
            data=_decode_body(resp),
            error=None if ok else f"HTTP {resp.status_code}: {resp.reason_phrase}",
            code=None if ok else resp.status_code,
        )
