# relaybridge/schemas.py
import json
from typing import List, Optional, Any, Dict, Tuple
from pydantic import BaseModel, ConfigDict, Field

PASSTHROUGH_PREFIX = "X-"
RELAY_ACTION = "Relay-Response"
RELAY_STATUS = "Success"
DATA_FIELD_SOURCE = "Data-Field"


class Tag(BaseModel):
    name: str
    value: str


class LedgerTransaction(BaseModel):
    """One index hit: id, optional block height, data section size and raw tags."""
    id: str
    block_height: Optional[int] = None
    block_timestamp: Optional[int] = None
    data_size: int = 0
    tags: List[Tag] = []

    def tag_map(self) -> Dict[str, str]:
        # Last occurrence wins, like a plain object built from the tag list
        return {t.name: t.value for t in self.tags}

    def is_relay_candidate(self) -> bool:
        tags = self.tag_map()
        return (
            tags.get("Action") == RELAY_ACTION
            and tags.get("Status") == RELAY_STATUS
            and bool(tags.get("URL"))
            and bool(tags.get("Method"))
        )


def parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """Headers tag is a JSON object string; anything else counts as no headers."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in parsed.items()}


class RequestRecord(BaseModel):
    """A relay request as authored by the remote process. Immutable."""
    model_config = ConfigDict(frozen=True)

    tx_id: str
    reference: Optional[str] = None
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    raw_headers: str = "{}"
    body: str = ""
    post_data: str = ""
    body_source: Optional[str] = None
    data_size: int = 0
    timeout_ms: int = 30000
    requester: Optional[str] = None
    passthrough: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_transaction(cls, tx: LedgerTransaction, default_timeout_ms: int = 30000) -> "RequestRecord":
        tags = tx.tag_map()
        try:
            timeout_ms = int(tags.get("Timeout") or default_timeout_ms)
        except ValueError:
            timeout_ms = default_timeout_ms
        if timeout_ms <= 0:
            timeout_ms = default_timeout_ms
        passthrough = tuple(
            (t.name, t.value) for t in tx.tags if t.name.startswith(PASSTHROUGH_PREFIX)
        )
        return cls(
            tx_id=tx.id,
            reference=tags.get("Reference") or None,
            url=tags.get("URL", ""),
            method=(tags.get("Method") or "GET").upper(),
            headers=parse_headers(tags.get("Headers")),
            raw_headers=tags.get("Headers") or "{}",
            body=tags.get("Body") or "",
            post_data=tags.get("Post-Data") or "",
            body_source=tags.get("Body-Source"),
            data_size=tx.data_size,
            timeout_ms=timeout_ms,
            requester=tags.get("Requestor") or None,
            passthrough=passthrough,
        )

    def inline_body(self) -> str:
        """Post-Data wins over Body; blank values count as absent."""
        if self.post_data.strip():
            return self.post_data
        if self.body.strip():
            return self.body
        return ""

    def needs_data_section(self) -> bool:
        return (
            not self.inline_body()
            and self.body_source == DATA_FIELD_SOURCE
            and self.data_size > 0
        )


class Outcome(BaseModel):
    """Normalized result of executing a request."""
    success: bool
    http_status: Optional[int] = None
    status_text: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    data: Any = None
    error: Optional[str] = None
    code: Any = None
    soft_error: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """The wire shape requesters parse: status, statusText, headers, data, success, error, code."""
        payload: Dict[str, Any] = {}
        if self.http_status is not None:
            payload["status"] = self.http_status
        if self.status_text is not None:
            payload["statusText"] = self.status_text
        if self.headers is not None:
            payload["headers"] = self.headers
        if self.data is not None:
            payload["data"] = self.data
        payload["success"] = self.success
        payload["error"] = self.error
        payload["code"] = self.code
        return payload

    def summary(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.http_status,
            "statusText": self.status_text,
            "error": self.error,
            "code": self.code,
            "softError": self.soft_error,
        }

    @classmethod
    def failure(cls, error: str, code: Any = None, http_status: Optional[int] = None,
                status_text: Optional[str] = None) -> "Outcome":
        return cls(success=False, error=error, code=code, http_status=http_status, status_text=status_text)


class PublishResult(BaseModel):
    message_id: Optional[str]
    kind: str  # "single" | "chunked" | "error"
    message_ids: List[str] = []
    chunk_group_id: Optional[str] = None
    total_chunks: int = 1
    size: int = 0
