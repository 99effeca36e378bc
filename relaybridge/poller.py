# relaybridge/poller.py
"""
Ledger poller.

One tick: (circuit breaker permitting) query the index for relay candidates,
then run each candidate through the orchestrator strictly one after another,
highest ledger position first. Ticks never overlap.

Circuit breaker: every failed tick query (both index endpoints down) counts one
failure, any successful query resets the count. At max_failures the breaker opens
and no queries are made until the cooldown has elapsed; then the count resets.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from relaybridge import monitoring
from relaybridge.errors import DedupInvariantError, IndexerError
from relaybridge.monitoring import logger
from relaybridge.schemas import LedgerTransaction


@dataclass
class BridgeState:
    """Mutable runtime state owned by the poller and shared with the companion."""
    consecutive_failures: int = 0
    circuit_open_until: Optional[float] = None
    ticks: int = 0
    last_tick_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None
    companion_subscription: Optional[str] = None
    pipeline_counts: Dict[str, int] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "circuit_open": self.circuit_open_until is not None,
            "circuit_open_until": self.circuit_open_until,
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at,
            "last_success_at": self.last_success_at,
            "last_error": self.last_error,
            "companion_subscription": self.companion_subscription,
            "pipeline_counts": dict(self.pipeline_counts),
        }


class CircuitBreaker:
    def __init__(self, state: BridgeState, max_failures: int, cooldown: float,
                 clock: Callable[[], float] = time.monotonic):
        self.state = state
        self.max_failures = max_failures
        self.cooldown = cooldown
        self._clock = clock

    @property
    def is_open(self) -> bool:
        return self.state.circuit_open_until is not None

    def allow(self) -> bool:
        """False while open; once the cooldown has passed, closes and resets the count."""
        if self.state.circuit_open_until is None:
            return True
        if self._clock() >= self.state.circuit_open_until:
            logger.info("Index circuit breaker cooldown elapsed, resuming queries")
            self.state.circuit_open_until = None
            self.state.consecutive_failures = 0
            monitoring.set_circuit_open(False)
            return True
        return False

    def record_success(self) -> None:
        if self.state.consecutive_failures > 0:
            logger.info("Index connection restored", extra={"previous_failures": self.state.consecutive_failures})
        self.state.consecutive_failures = 0

    def record_failure(self) -> None:
        self.state.consecutive_failures += 1
        logger.warning(
            "Index failure",
            extra={"failures": self.state.consecutive_failures, "threshold": self.max_failures},
        )
        if self.state.consecutive_failures >= self.max_failures and self.state.circuit_open_until is None:
            self.state.circuit_open_until = self._clock() + self.cooldown
            logger.error(
                "Index circuit breaker opened",
                extra={"failures": self.state.consecutive_failures, "cooldown_seconds": self.cooldown},
            )
            monitoring.set_circuit_open(True)


def most_recent_by_requester(txs: List[LedgerTransaction]) -> Dict[str, LedgerTransaction]:
    """Per Requestor, the candidate with the highest block height (pending entries count as newest)."""
    latest: Dict[str, LedgerTransaction] = {}
    for tx in txs:
        requester = tx.tag_map().get("Requestor")
        if not requester:
            continue
        current = latest.get(requester)
        if current is None or _height(tx) > _height(current):
            latest[requester] = tx
    return latest


def _height(tx: LedgerTransaction) -> float:
    return float("inf") if tx.block_height is None else tx.block_height


class LedgerPoller:
    def __init__(self, index_client, orchestrator, relay_process_id: str,
                 state: Optional[BridgeState] = None, interval: float = 60.0,
                 max_failures: int = 3, cooldown: float = 120.0, page_size: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        self.index_client = index_client
        self.orchestrator = orchestrator
        self.relay_process_id = relay_process_id
        self.state = state or BridgeState()
        self.interval = interval
        self.page_size = page_size
        self.breaker = CircuitBreaker(self.state, max_failures, cooldown, clock=clock)
        self._tick_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> Optional[Dict[str, int]]:
        """Run one poll. Returns pipeline outcome counts, or None if the tick was skipped or failed."""
        if self._tick_lock.locked():
            logger.info("Previous tick still running, skipping")
            return None
        async with self._tick_lock:
            self.state.ticks += 1
            self.state.last_tick_at = time.time()

            if not self.breaker.allow():
                logger.info(
                    "Index circuit breaker open, skipping query",
                    extra={"failures": self.state.consecutive_failures},
                )
                return None

            try:
                txs = await self.index_client.fetch_relay_candidates(self.relay_process_id, self.page_size)
            except IndexerError as e:
                self.state.last_error = str(e)
                self.breaker.record_failure()
                return None
            self.breaker.record_success()
            self.state.last_success_at = time.time()
            self.state.last_error = None

            candidates = [tx for tx in txs if tx.is_relay_candidate()]
            logger.info("Index query returned", extra={"transactions": len(txs), "candidates": len(candidates)})
            for requester, tx in most_recent_by_requester(candidates).items():
                logger.debug(
                    "Most recent candidate for requester",
                    extra={"requester": requester, "tx_id": tx.id, "height": tx.block_height},
                )

            counts: Dict[str, int] = {}
            for tx in candidates:
                try:
                    outcome = await self.orchestrator.handle_transaction(tx)
                except DedupInvariantError:
                    raise
                except Exception:
                    logger.exception("Unhandled error for ledger entry", extra={"tx_id": tx.id})
                    outcome = "failed"
                counts[outcome] = counts.get(outcome, 0) + 1
                self.state.pipeline_counts[outcome] = self.state.pipeline_counts.get(outcome, 0) + 1
            return counts

    async def run(self) -> None:
        """Tick immediately, then every `interval` seconds until stop()."""
        logger.info("Poller started", extra={"interval": self.interval, "process": self.relay_process_id})
        while not self._stop.is_set():
            try:
                await self.tick()
            except DedupInvariantError:
                logger.critical("Dedup store invariant violated, stopping poller", exc_info=True)
                raise
            except Exception:
                logger.exception("Error in polling loop")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Poller stopped")

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop the timer. A tick in flight runs to completion first."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
