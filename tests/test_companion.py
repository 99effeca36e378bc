# tests/test_companion.py
import asyncio

import httpx

from relaybridge.companion import CompanionSubscription
from relaybridge.poller import BridgeState


def run_companion(handler, steps):
    async def go():
        state = BridgeState()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            companion = CompanionSubscription("https://mu.example/", "companion-proc", "owner-addr", state,
                                              client=client, retry_interval=0.01)
            return await steps(companion), state
    return asyncio.run(go())


def test_subscribe_and_unsubscribe():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, request.headers.get("x-owner")))
        return httpx.Response(200, json={})

    async def steps(c):
        ok = await c.subscribe()
        subscribed = c.state.companion_subscription
        await c.unsubscribe()
        return ok, subscribed

    (ok, subscribed), state = run_companion(handler, steps)
    assert ok is True
    assert subscribed == "companion-proc"
    assert state.companion_subscription is None
    assert seen == [("POST", "/monitor/companion-proc", "owner-addr"),
                    ("DELETE", "/monitor/companion-proc", "owner-addr")]


def test_failures_are_logged_not_raised():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    async def steps(c):
        return await c.subscribe()

    ok, state = run_companion(handler, steps)
    assert ok is False
    assert state.companion_subscription is None


def test_run_retries_until_subscribed_then_stop_releases():
    attempts = []

    def handler(request):
        attempts.append(request.method)
        if request.method == "POST" and attempts.count("POST") < 3:
            return httpx.Response(503)
        return httpx.Response(200)

    async def steps(c):
        c.start()
        for _ in range(200):
            if c.state.companion_subscription:
                break
            await asyncio.sleep(0.01)
        subscribed = c.state.companion_subscription
        await c.stop()
        return subscribed

    subscribed, state = run_companion(handler, steps)
    assert subscribed == "companion-proc"
    assert attempts.count("POST") == 3
    assert attempts[-1] == "DELETE"
    assert state.companion_subscription is None
