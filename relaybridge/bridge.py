# relaybridge/bridge.py
"""
Builds the bridge from Settings and owns its lifecycle.

start(): dedup store tables, wallet identity, shared HTTP client, liveness
companion task and poller task. stop(): stops the poll timer (letting an
in-flight tick finish), releases the companion subscription, closes the client.
"""

from typing import Optional

import httpx

from relaybridge import db as dbmod
from relaybridge import ledger as _ledger
from relaybridge.companion import CompanionSubscription
from relaybridge.config import Settings
from relaybridge.credentials import CredentialTemplater
from relaybridge.dispatcher import ActionDispatcher
from relaybridge.handlers.token_price import HttpQuoteClient, TokenPriceHandler
from relaybridge.monitoring import logger
from relaybridge.orchestrator import RelayOrchestrator
from relaybridge.poller import BridgeState, LedgerPoller
from relaybridge.publisher import ResponsePublisher


class RelayBridge:
    def __init__(self, settings: Settings, writer=None, index_client=None,
                 http_client: Optional[httpx.AsyncClient] = None, owner: Optional[str] = None,
                 quote_fetcher=None):
        self.settings = settings
        self.state = BridgeState()
        self._writer = writer
        self._index_client = index_client
        self._http_client = http_client
        self._owns_client = http_client is None
        self._owner = owner
        self._quote_fetcher = quote_fetcher
        self.poller: Optional[LedgerPoller] = None
        self.companion: Optional[CompanionSubscription] = None
        self.running = False

    def build(self) -> LedgerPoller:
        s = self.settings
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        if self._owner is None:
            self._owner = _ledger.wallet_address(_ledger.load_wallet(s.expanded_wallet_path))
        client = self._http_client

        templater = CredentialTemplater.from_settings(s)
        quote_fetcher = self._quote_fetcher or HttpQuoteClient(s.price_quote_url, client=client)
        dispatcher = ActionDispatcher(client=client)
        dispatcher.register(TokenPriceHandler(
            url_pattern=s.price_api_pattern,
            bearer_token=s.price_bearer_token,
            quote_fetcher=quote_fetcher,
            quote_token_id=s.price_quote_token_id,
            quote_address=s.price_quote_address or self._owner,
            retry_limit=s.price_retry_limit,
            retry_delay=s.price_retry_delay,
        ))

        writer = self._writer or _ledger.HttpMessageWriter(s.mu_url, self._owner, client=client)
        publisher = ResponsePublisher(
            writer, s.relay_process_id, templater,
            max_message_bytes=s.max_message_bytes, chunk_bytes=s.chunk_bytes,
        )
        orchestrator = RelayOrchestrator(
            dispatcher, publisher, templater, s.gateway_url,
            http_client=client, default_timeout_ms=s.default_request_timeout_ms,
        )
        index_client = self._index_client or _ledger.IndexClient(
            s.index_primary_url, s.index_fallback_url, client=client, timeout=s.index_timeout,
        )
        self.poller = LedgerPoller(
            index_client, orchestrator, s.relay_process_id, state=self.state,
            interval=s.poll_interval, max_failures=s.max_index_failures,
            cooldown=s.index_failure_cooldown, page_size=s.index_page_size,
        )
        self.companion = CompanionSubscription(
            s.mu_url, s.companion_process_id, self._owner, self.state,
            client=client, retry_interval=s.companion_retry_interval,
        )
        return self.poller

    async def start(self) -> None:
        self.settings.validate()
        dbmod.reconfigure(self.settings.database_url)
        dbmod.init_db()
        self.build()
        logger.info(
            "Starting relay bridge",
            extra={"process": self.settings.relay_process_id, "interval": self.settings.poll_interval},
        )
        self.companion.start()
        self.poller.start()
        self.running = True

    async def stop(self) -> None:
        logger.info("Shutting down relay bridge")
        if self.poller:
            await self.poller.stop()
        if self.companion:
            await self.companion.stop()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self.running = False
