# relaybridge/companion.py
"""
Liveness companion.

Keeps a monitor subscription open on the companion scheduler process so its
cron-style triggers keep firing. Best-effort: failures are logged and the
subscription is re-attempted every retry_interval seconds. Nothing here can
stop the bridge.
"""

import asyncio
from typing import Optional

import httpx

from relaybridge import monitoring
from relaybridge.monitoring import logger
from relaybridge.poller import BridgeState


class CompanionSubscription:
    def __init__(self, mu_url: str, process_id: str, owner: str, state: BridgeState,
                 client: Optional[httpx.AsyncClient] = None, retry_interval: float = 300.0,
                 timeout: float = 30.0):
        self.mu_url = mu_url.rstrip("/")
        self.process_id = process_id
        self.owner = owner
        self.state = state
        self._client = client
        self.retry_interval = retry_interval
        self.timeout = timeout
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"{self.mu_url}/monitor/{self.process_id}"

    async def _request(self, method: str) -> httpx.Response:
        headers = {"X-Owner": self.owner}
        if self._client is not None:
            return await self._client.request(method, self.url, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, self.url, headers=headers)

    async def subscribe(self) -> bool:
        try:
            resp = await self._request("POST")
        except httpx.HTTPError as e:
            logger.warning("Companion subscription failed", extra={"process": self.process_id, "error": str(e)})
            return False
        if resp.status_code >= 300:
            logger.warning(
                "Companion subscription rejected",
                extra={"process": self.process_id, "status": resp.status_code},
            )
            return False
        self.state.companion_subscription = self.process_id
        monitoring.set_companion_subscribed(True)
        logger.info("Companion subscription active", extra={"process": self.process_id})
        return True

    async def unsubscribe(self) -> None:
        if not self.state.companion_subscription:
            return
        try:
            resp = await self._request("DELETE")
            if resp.status_code >= 300:
                logger.warning("Companion unsubscribe rejected", extra={"status": resp.status_code})
            else:
                logger.info("Companion subscription released", extra={"process": self.process_id})
        except httpx.HTTPError as e:
            logger.warning("Companion unsubscribe failed", extra={"error": str(e)})
        finally:
            self.state.companion_subscription = None
            monitoring.set_companion_subscribed(False)

    async def run(self) -> None:
        while not self._stop.is_set():
            if not self.state.companion_subscription:
                try:
                    await self.subscribe()
                except Exception:
                    logger.exception("Companion subscription error")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.retry_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
        await self.unsubscribe()
