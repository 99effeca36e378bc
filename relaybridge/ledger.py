# relaybridge/ledger.py
"""
Everything that talks to the ledger:

- IndexClient: GraphQL search over the ledger index, primary endpoint first and
  the fallback endpoint immediately after a primary failure.
- fetch_data_section: download an entry's data section from the gateway
  (large request bodies live there instead of in tags).
- load_wallet / wallet_address: the JWK identity the bridge writes as.
- HttpMessageWriter: writes response records through the message unit.
"""

import base64
import hashlib
import json
from typing import Any, Dict, List, Optional

import httpx

from relaybridge import monitoring
from relaybridge.errors import IndexerError, LedgerFetchError, LedgerWriteError
from relaybridge.monitoring import logger
from relaybridge.schemas import LedgerTransaction, Tag, RELAY_ACTION, RELAY_STATUS

RELAY_CANDIDATES_QUERY = """
query RelayCandidates($process: [String!]!, $action: [String!]!, $status: [String!]!, $first: Int!) {
  transactions(
    tags: [
      { name: "From-Process", values: $process }
      { name: "Action", values: $action }
      { name: "Status", values: $status }
      { name: "Data-Protocol", values: ["ao"] }
    ]
    first: $first
    sort: HEIGHT_DESC
  ) {
    edges {
      node {
        id
        block { height timestamp }
        data { size }
        tags { name value }
      }
    }
  }
}
"""

USER_AGENT = "relay-bridge/1.0"


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_transactions(payload: Dict[str, Any]) -> List[LedgerTransaction]:
    """Turn a GraphQL `transactions` response into LedgerTransaction objects, index order kept."""
    try:
        edges = payload["data"]["transactions"]["edges"]
    except (KeyError, TypeError):
        raise IndexerError("Index response is missing data.transactions.edges")
    txs: List[LedgerTransaction] = []
    for edge in edges or []:
        node = (edge or {}).get("node") or {}
        if not node.get("id"):
            continue
        block = node.get("block") or {}
        data = node.get("data") or {}
        txs.append(LedgerTransaction(
            id=node["id"],
            block_height=_to_int(block.get("height")),
            block_timestamp=_to_int(block.get("timestamp")),
            data_size=_to_int(data.get("size"), 0) or 0,
            tags=[Tag(name=t.get("name", ""), value=t.get("value", "")) for t in node.get("tags") or []],
        ))
    return txs


class IndexClient:
    def __init__(self, primary_url: str, fallback_url: str,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.primary_url = primary_url
        self.fallback_url = fallback_url
        self._client = client
        self.timeout = timeout

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise IndexerError(f"{url}: {e.__class__.__name__}: {e}")
        if resp.status_code != 200:
            raise IndexerError(f"{url}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            raise IndexerError(f"{url}: response is not JSON")
        if not isinstance(data, dict):
            raise IndexerError(f"{url}: unexpected response shape")
        if data.get("errors"):
            raise IndexerError(f"{url}: GraphQL errors: {json.dumps(data['errors'])[:500]}")
        return data

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = {"query": query, "variables": variables or {}}
        try:
            data = await self._post(self.primary_url, body)
            monitoring.inc_index_query("primary", "success")
            return data
        except IndexerError as primary_error:
            monitoring.inc_index_query("primary", "failure")
            logger.warning("Primary index failed, trying fallback", extra={"error": str(primary_error)})
            try:
                data = await self._post(self.fallback_url, body)
            except IndexerError as fallback_error:
                monitoring.inc_index_query("fallback", "failure")
                raise IndexerError(
                    f"Both index endpoints failed. primary: {primary_error}; fallback: {fallback_error}"
                )
            monitoring.inc_index_query("fallback", "success")
            return data

    async def fetch_relay_candidates(self, process_id: str, first: int = 100) -> List[LedgerTransaction]:
        data = await self.query(RELAY_CANDIDATES_QUERY, {
            "process": [process_id],
            "action": [RELAY_ACTION],
            "status": [RELAY_STATUS],
            "first": first,
        })
        return parse_transactions(data)


async def fetch_data_section(gateway_url: str, tx_id: str,
                             client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0) -> str:
    """GET {gateway}/{tx_id}, following redirects. Raises LedgerFetchError."""
    url = f"{gateway_url.rstrip('/')}/{tx_id}"
    headers = {"User-Agent": USER_AGENT}
    try:
        if client is not None:
            resp = await client.get(url, headers=headers, timeout=timeout, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as c:
                resp = await c.get(url, headers=headers)
    except httpx.HTTPError as e:
        raise LedgerFetchError(f"Fetching data for {tx_id} failed: {e}")
    if resp.status_code != 200:
        raise LedgerFetchError(f"Fetching data for {tx_id} failed: HTTP {resp.status_code}")
    return resp.text


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def load_wallet(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        jwk = json.load(f)
    if not isinstance(jwk, dict) or not jwk.get("n"):
        raise ValueError(f"Wallet at {path} is not an RSA JWK")
    return jwk


def wallet_address(jwk: Dict[str, Any]) -> str:
    """Owner address: base64url(sha256(modulus)) without padding."""
    digest = hashlib.sha256(_b64url_decode(jwk["n"])).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class HttpMessageWriter:
    """
    Sends messages to a process through the message unit's JSON endpoint
    (POST {mu_url}/messages) and returns the assigned message id.
    """

    def __init__(self, mu_url: str, owner: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 60.0):
        self.mu_url = mu_url.rstrip("/")
        self.owner = owner
        self._client = client
        self.timeout = timeout

    async def send(self, process: str, data: str, tags: List[Tag]) -> str:
        for tag in tags:
            if tag.value is None:
                raise LedgerWriteError(f"Invalid tag value for {tag.name}")
        body = {
            "Target": process,
            "Owner": self.owner,
            "Data": data,
            "Tags": [{"name": t.name, "value": t.value} for t in tags],
        }
        url = f"{self.mu_url}/messages"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise LedgerWriteError(f"Message write failed: {e.__class__.__name__}: {e}")
        if resp.status_code >= 300:
            raise LedgerWriteError(f"Message write rejected: HTTP {resp.status_code}")
        try:
            message_id = resp.json().get("id")
        except (ValueError, AttributeError):
            message_id = None
        if not message_id:
            raise LedgerWriteError("Message unit did not return a message id")
        return message_id
