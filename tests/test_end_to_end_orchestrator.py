# tests/test_end_to_end_orchestrator.py
"""
One ledger entry through claim -> dispatch -> publish -> complete, with the HTTP
upstream mocked by httpx.MockTransport and ledger writes captured in memory.
"""
import asyncio
import json
import os

import httpx
import pytest

from relaybridge import db as dbmod
import relaybridge.ledger as ledger_mod
from relaybridge.credentials import CredentialTemplater
from relaybridge.dispatcher import ActionDispatcher
from relaybridge.errors import DedupInvariantError, LedgerFetchError
from relaybridge.orchestrator import RelayOrchestrator
from relaybridge.publisher import ResponsePublisher
from relaybridge.schemas import LedgerTransaction, Tag

TEST_DB_URL = "sqlite:///./test_relay_e2e.db"
TEST_DB_FILE = "./test_relay_e2e.db"
SECRET = "live-key-42"


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
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send(self, process, data, tags):
        if self.fail:
            raise RuntimeError("message unit unavailable")
        self.sent.append({"data": data, "tags": {t.name: t.value for t in tags}})
        return f"msg-{len(self.sent)}"


def relay_tx(tx_id="tx1", **tags):
    base = {
        "Action": "Relay-Response",
        "Status": "Success",
        "URL": "https://example.com/x",
        "Method": "GET",
        "Reference": "abc",
        "Requestor": "requester-proc",
    }
    base.update(tags)
    return LedgerTransaction(id=tx_id, block_height=1, data_size=0,
                             tags=[Tag(name=k, value=v) for k, v in base.items() if v is not None])


def run_pipeline(upstream, txs, writer=None, setup=None):
    """
    Feed txs through one orchestrator; returns (outcomes, writer, upstream requests).
    setup(orchestrator) runs before the first entry, for patching collaborators.
    """
    writer = writer or FakeWriter()
    requests = []

    def handler(request):
        requests.append(request)
        return upstream(request)

    async def go():
        templater = CredentialTemplater([("API", "{{API_KEY}}", SECRET)])
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orch = RelayOrchestrator(
                dispatcher=ActionDispatcher(client=client),
                publisher=ResponsePublisher(writer, "relay-proc", templater,
                                            max_message_bytes=4096, chunk_bytes=1024),
                templater=templater,
                gateway_url="https://gateway.example",
                http_client=client,
            )
            if setup is not None:
                setup(orch)
            return [await orch.handle_transaction(tx) for tx in txs]

    return asyncio.run(go()), writer, requests


def test_get_request_is_relayed_once():
    outcomes, writer, requests = run_pipeline(
        lambda r: httpx.Response(200, json={"ok": True}),
        [relay_tx("tx1"), relay_tx("tx1-again")],
    )
    assert outcomes == ["processed", "duplicate"]
    assert len(requests) == 1
    assert len(writer.sent) == 1

    msg = writer.sent[0]
    assert msg["tags"]["Status"] == "Success"
    assert msg["tags"]["Requestor"] == "requester-proc"
    assert msg["data"].startswith('{"status":200')
    assert json.loads(msg["data"])["success"] is True

    rec = dbmod.get_entry("abc")
    assert msg["tags"]["RequestId"] == str(rec["id"])
    assert rec["status"] == "completed"
    assert rec["response_id"] == "msg-1"
    assert rec["outcome_summary"]["published"] == "single"


def test_missing_reference_is_skipped_without_claim():
    outcomes, writer, requests = run_pipeline(lambda r: httpx.Response(200), [relay_tx(Reference=None)])
    assert outcomes == ["skipped"]
    assert requests == [] and writer.sent == []
    assert dbmod.list_entries() == []


def test_missing_requestor_is_closed_without_dispatch():
    outcomes, writer, requests = run_pipeline(lambda r: httpx.Response(200), [relay_tx(Requestor=None)])
    assert outcomes == ["abandoned"]
    assert requests == [] and writer.sent == []
    assert dbmod.get_entry("abc")["status"] == "failed"


def test_placeholders_substituted_for_call_and_never_stored():
    url = "https://api.example.com/thing?key={{API_KEY}}"
    outcomes, writer, requests = run_pipeline(
        lambda r: httpx.Response(200, json={"echo": str(r.url)}),
        [relay_tx(URL=url, Headers=json.dumps({"X-Api-Key": "{{API_KEY}}"}))],
    )
    assert outcomes == ["processed"]
    assert SECRET in str(requests[0].url)
    assert requests[0].headers["x-api-key"] == SECRET
    assert SECRET not in writer.sent[0]["data"]
    rec = dbmod.get_entry("abc")
    assert rec["url"] == url
    assert SECRET not in json.dumps(rec)


def test_upstream_error_is_published_as_error_record():
    outcomes, writer, _ = run_pipeline(lambda r: httpx.Response(500, text="oops"), [relay_tx()])
    assert outcomes == ["processed"]
    assert writer.sent[0]["tags"]["Status"] == "Error"
    assert dbmod.get_entry("abc")["status"] == "failed"


def test_publish_failure_closes_entry_as_failed():
    outcomes, _, _ = run_pipeline(lambda r: httpx.Response(200, json={"ok": True}), [relay_tx()],
                                  writer=FakeWriter(fail=True))
    assert outcomes == ["publish_failed"]
    rec = dbmod.get_entry("abc")
    assert rec["status"] == "failed"
    assert rec["outcome_summary"]["publishFailed"] is True
    assert rec["response_id"] is None


def test_body_is_read_from_data_section(monkeypatch):
    async def fake_fetch(gateway_url, tx_id, client=None, timeout=15.0):
        assert tx_id == "tx-big"
        return '{"payload": "large"}'

    monkeypatch.setattr(ledger_mod, "fetch_data_section", fake_fetch)
    tx = relay_tx("tx-big", Method="POST", **{"Body-Source": "Data-Field"},
                  Headers=json.dumps({"Content-Type": "application/json"}))
    tx = tx.model_copy(update={"data_size": 20})
    outcomes, _, requests = run_pipeline(lambda r: httpx.Response(201, json={"created": 1}), [tx])
    assert outcomes == ["processed"]
    assert json.loads(requests[0].content) == {"payload": "large"}


def test_post_without_fetchable_body_is_abandoned(monkeypatch):
    async def failing_fetch(gateway_url, tx_id, client=None, timeout=15.0):
        raise LedgerFetchError("gateway down")

    monkeypatch.setattr(ledger_mod, "fetch_data_section", failing_fetch)
    tx = relay_tx("tx-big", Method="POST", **{"Body-Source": "Data-Field"}).model_copy(update={"data_size": 20})
    outcomes, writer, requests = run_pipeline(lambda r: httpx.Response(200), [tx])
    assert outcomes == ["abandoned"]
    assert requests == [] and writer.sent == []
    assert dbmod.get_entry("abc")["status"] == "failed"


def test_unencodable_header_still_gets_an_error_record():
    outcomes, writer, requests = run_pipeline(
        lambda r: httpx.Response(200, json={"ok": True}),
        [relay_tx(Headers=json.dumps({"X-Name": "café ☃"}, ensure_ascii=False))],
    )
    assert outcomes == ["processed"]
    assert requests == []
    assert len(writer.sent) == 1
    msg = writer.sent[0]
    assert msg["tags"]["Status"] == "Error"
    assert json.loads(msg["data"])["code"] == "EINVALIDREQUEST"
    rec = dbmod.get_entry("abc")
    assert rec["status"] == "failed"
    assert rec["response_id"] == "msg-1"


def test_unexpected_dispatch_crash_publishes_one_error_record():
    async def crash(record, body=None):
        raise RuntimeError("dispatcher bug")

    def setup(orch):
        orch.dispatcher.dispatch = crash

    outcomes, writer, requests = run_pipeline(lambda r: httpx.Response(200), [relay_tx(**{"X-Trace": "t9"})],
                                              setup=setup)
    assert outcomes == ["failed"]
    assert requests == []
    assert len(writer.sent) == 1
    msg = writer.sent[0]
    assert msg["tags"]["Status"] == "Error"
    assert msg["tags"]["Requestor"] == "requester-proc"
    assert msg["tags"]["X-Trace"] == "t9"
    assert "dispatcher bug" in json.loads(msg["data"])["error"]
    rec = dbmod.get_entry("abc")
    assert rec["status"] == "failed"
    assert rec["response_id"] == "msg-1"


def test_crash_after_publish_does_not_publish_twice(monkeypatch):
    real_complete = dbmod.complete
    calls = []

    def flaky_complete(entry_id, summary, response_id=None):
        calls.append(summary)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        return real_complete(entry_id, summary, response_id)

    monkeypatch.setattr(dbmod, "complete", flaky_complete)
    outcomes, writer, _ = run_pipeline(lambda r: httpx.Response(200, json={"ok": True}), [relay_tx()])
    assert outcomes == ["failed"]
    assert len(writer.sent) == 1
    assert writer.sent[0]["tags"]["Status"] == "Success"
    assert dbmod.get_entry("abc")["status"] == "failed"


def test_dedup_invariant_violation_propagates(monkeypatch):
    def broken_complete(entry_id, summary, response_id=None):
        raise DedupInvariantError(f"entry {entry_id} is not pending")

    monkeypatch.setattr(dbmod, "complete", broken_complete)
    with pytest.raises(DedupInvariantError):
        run_pipeline(lambda r: httpx.Response(200, json={"ok": True}), [relay_tx()])
