# tests/test_bridge_wiring.py
"""
RelayBridge.build() wiring: one poller tick routes a price request through the
token price handler and publishes the answer, with no network involved.
"""
import asyncio
import json
import os

import httpx
import pytest

from relaybridge import db as dbmod
from relaybridge.bridge import RelayBridge
from relaybridge.config import Settings
from relaybridge.schemas import LedgerTransaction, Tag

TEST_DB_URL = "sqlite:///./test_relay_bridge.db"
TEST_DB_FILE = "./test_relay_bridge.db"
PRICE_URL = "https://prices.example/api/price/TOKEN9"


@pytest.fixture(autouse=True)
def fresh_db():
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(TEST_DB_FILE + suffix):
            os.remove(TEST_DB_FILE + suffix)
    dbmod.reconfigure(TEST_DB_URL)
    dbmod.init_db()
    yield
    dbmod.engine.dispose()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(TEST_DB_FILE + suffix):
            os.remove(TEST_DB_FILE + suffix)


class FakeWriter:
    def __init__(self):
        self.sent = []

    async def send(self, process, data, tags):
        self.sent.append({"process": process, "data": data, "tags": {t.name: t.value for t in tags}})
        return f"msg-{len(self.sent)}"


class FakeIndex:
    def __init__(self, txs):
        self.txs = txs

    async def fetch_relay_candidates(self, process_id, first):
        return self.txs


async def fake_quote(from_token, to_token, amount, address):
    return {"routes": [{"estimatedOutput": "0.5"}]}


def price_tx():
    tags = {
        "Action": "Relay-Response",
        "Status": "Success",
        "URL": PRICE_URL,
        "Method": "GET",
        "Reference": "price-1",
        "Requestor": "requester-proc",
        "Headers": json.dumps({"Authorization": "Bearer price-token"}),
    }
    return LedgerTransaction(id="tx-price", block_height=3, tags=[Tag(name=k, value=v) for k, v in tags.items()])


def test_tick_routes_price_request_through_handler():
    settings = Settings(
        relay_process_id="relay-proc",
        companion_process_id="companion-proc",
        price_api_pattern=r"^https://prices\.example/api/price/(.+)$",
        price_bearer_token="price-token",
        price_retry_delay=0.0,
        database_url=TEST_DB_URL,
    )
    writer = FakeWriter()

    def network(request):
        raise AssertionError(f"unexpected network call to {request.url}")

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(network)) as client:
            bridge = RelayBridge(settings, writer=writer, index_client=FakeIndex([price_tx()]),
                                 http_client=client, owner="owner-addr", quote_fetcher=fake_quote)
            poller = bridge.build()
            assert bridge.companion.process_id == "companion-proc"
            return await poller.tick()

    counts = asyncio.run(go())
    assert counts == {"processed": 1}
    assert len(writer.sent) == 1
    msg = writer.sent[0]
    assert msg["process"] == "relay-proc"
    assert msg["tags"]["Status"] == "Success"
    body = json.loads(msg["data"])
    assert body["data"]["usdPrice"] == 0.5
    assert body["headers"]["x-token-id"] == "TOKEN9"
    assert dbmod.get_entry("price-1")["status"] == "completed"
