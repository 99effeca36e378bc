# tests/test_poller.py
import asyncio

import pytest

from relaybridge.errors import DedupInvariantError, IndexerError
from relaybridge.poller import BridgeState, LedgerPoller, most_recent_by_requester
from relaybridge.schemas import LedgerTransaction, Tag


def relay_tx(tx_id, reference, height=None, requester="req-1", **extra):
    tags = {
        "Action": "Relay-Response",
        "Status": "Success",
        "URL": "https://example.com/x",
        "Method": "GET",
        "Reference": reference,
        "Requestor": requester,
    }
    tags.update(extra)
    return LedgerTransaction(id=tx_id, block_height=height,
                             tags=[Tag(name=k, value=v) for k, v in tags.items()])


class FakeIndex:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def fetch_relay_candidates(self, process_id, first):
        self.calls += 1
        item = self.results.pop(0) if self.results else []
        if isinstance(item, Exception):
            raise item
        return item


class RecordingOrchestrator:
    def __init__(self, outcome="processed"):
        self.seen = []
        self.active = 0
        self.max_active = 0
        self.outcome = outcome

    async def handle_transaction(self, tx):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0)
        self.seen.append(tx.id)
        self.active -= 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_poller(index, orch=None, clock=None, max_failures=3, cooldown=120.0):
    return LedgerPoller(index, orch or RecordingOrchestrator(), "relay-proc",
                        state=BridgeState(), interval=0.01, max_failures=max_failures,
                        cooldown=cooldown, clock=clock or FakeClock())


def test_tick_processes_candidates_sequentially_in_index_order():
    txs = [relay_tx("t3", "c", 3), relay_tx("t2", "b", 2),
           LedgerTransaction(id="noise", tags=[Tag(name="Action", value="Other")]),
           relay_tx("t1", "a", 1)]
    orch = RecordingOrchestrator()

    async def go():
        poller = make_poller(FakeIndex([txs]), orch)
        return await poller.tick(), poller

    counts, poller = asyncio.run(go())
    assert counts == {"processed": 3}
    assert orch.seen == ["t3", "t2", "t1"]
    assert orch.max_active == 1
    assert poller.state.pipeline_counts == {"processed": 3}


def test_breaker_opens_after_max_failures_and_waits_for_cooldown():
    clock = FakeClock()
    index = FakeIndex([IndexerError("down")] * 3 + [[relay_tx("t1", "a", 1)]])

    async def go():
        poller = make_poller(index, clock=clock, max_failures=3, cooldown=120.0)
        for _ in range(3):
            assert await poller.tick() is None
        assert poller.breaker.is_open
        assert index.calls == 3

        clock.now += 60
        assert await poller.tick() is None
        assert index.calls == 3

        clock.now += 61
        counts = await poller.tick()
        assert counts == {"processed": 1}
        assert index.calls == 4
        return poller

    poller = asyncio.run(go())
    assert not poller.breaker.is_open
    assert poller.state.consecutive_failures == 0


def test_success_resets_failure_count():
    index = FakeIndex([IndexerError("down"), IndexerError("down"), [], IndexerError("down")])

    async def go():
        poller = make_poller(index, max_failures=3)
        for _ in range(4):
            await poller.tick()
        return poller

    poller = asyncio.run(go())
    assert poller.state.consecutive_failures == 1
    assert not poller.breaker.is_open
    assert poller.state.last_error == "down"


def test_orchestrator_crash_is_counted_not_raised():
    orch = RecordingOrchestrator(outcome=RuntimeError("boom"))

    async def go():
        return await make_poller(FakeIndex([[relay_tx("t1", "a", 1), relay_tx("t2", "b", 2)]]), orch).tick()

    assert asyncio.run(go()) == {"failed": 2}
    assert orch.seen == ["t1", "t2"]


def test_overlapping_tick_is_skipped():
    started = []

    class SlowIndex(FakeIndex):
        async def fetch_relay_candidates(self, process_id, first):
            started.append(1)
            await asyncio.sleep(0.05)
            return []

    async def go():
        poller = make_poller(SlowIndex([]))
        first = asyncio.ensure_future(poller.tick())
        await asyncio.sleep(0.01)
        second = await poller.tick()
        return await first, second

    first, second = asyncio.run(go())
    assert first == {}
    assert second is None
    assert len(started) == 1


def test_run_and_stop():
    index = FakeIndex([[], [], []])

    async def go():
        poller = make_poller(index)
        poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()
        return poller

    poller = asyncio.run(go())
    assert index.calls >= 1
    assert poller.state.ticks == index.calls


def test_most_recent_by_requester():
    txs = [relay_tx("a1", "1", 5, requester="A"), relay_tx("a2", "2", 9, requester="A"),
           relay_tx("b1", "3", None, requester="B"), relay_tx("b2", "4", 100, requester="B")]
    latest = most_recent_by_requester(txs)
    assert latest["A"].id == "a2"
    assert latest["B"].id == "b1"


def test_dedup_invariant_violation_stops_the_tick():
    orch = RecordingOrchestrator(outcome=DedupInvariantError("entry 1 is not pending"))

    async def go():
        return await make_poller(FakeIndex([[relay_tx("t1", "a", 1), relay_tx("t2", "b", 2)]]), orch).tick()

    with pytest.raises(DedupInvariantError):
        asyncio.run(go())
    assert orch.seen == ["t1"]
