# relaybridge/orchestrator.py
from typing import Any, Dict, Optional

# Import modules (not bare functions) so monkeypatching in tests works correctly
from relaybridge import db as dbmod
from relaybridge import ledger as _ledger
from relaybridge import monitoring
from relaybridge.credentials import CredentialTemplater
from relaybridge.dispatcher import ActionDispatcher
from relaybridge.errors import AlreadyClaimed, DedupInvariantError, LedgerFetchError, PublishError
from relaybridge.monitoring import logger
from relaybridge.publisher import ResponsePublisher
from relaybridge.schemas import LedgerTransaction, Outcome, RequestRecord

# Pipeline outcomes (also the relay_records_total label values)
SKIPPED = "skipped"
DUPLICATE = "duplicate"
PROCESSED = "processed"
ABANDONED = "abandoned"
PUBLISH_FAILED = "publish_failed"
FAILED = "failed"


class RelayOrchestrator:
    """
    Runs one ledger entry through the bridge:
    claim -> resolve body -> substitute credentials -> dispatch -> publish -> complete.

    Records without a Reference tag are ignored and never reach the dedup store.
    Once claimed, every path ends in exactly one complete() call, except a crash.
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        publisher: ResponsePublisher,
        templater: CredentialTemplater,
        gateway_url: str,
        http_client=None,
        default_timeout_ms: int = 30000,
    ):
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.templater = templater
        self.gateway_url = gateway_url
        self.http_client = http_client
        self.default_timeout_ms = default_timeout_ms

    def _claim_metadata(self, record: RequestRecord) -> Dict[str, Any]:
        return {
            "url": self.templater.redact(record.url),
            "method": record.method,
            "headers": self.templater.redact(record.raw_headers),
            "body": self.templater.redact(record.inline_body()),
            "timeout": record.timeout_ms,
        }

    def _prepare(self, record: RequestRecord) -> RequestRecord:
        """A copy of the record with placeholders swapped for secrets. Never log it."""
        return record.model_copy(update={
            "url": self.templater.substitute(record.url),
            "headers": self.templater.substitute_headers(record.headers),
            "body": self.templater.substitute(record.body),
            "post_data": self.templater.substitute(record.post_data),
        })

    def _finish(self, entry_id: int, summary: Dict[str, Any], response_id: Optional[str] = None) -> None:
        dbmod.complete(entry_id, self.templater.redact_value(summary), response_id)

    async def _resolve_body(self, record: RequestRecord) -> Optional[str]:
        """Inline body, or the entry's data section when Body-Source says so. None means abandon."""
        body = record.inline_body()
        if body or not record.needs_data_section():
            return body
        logger.info("Fetching body from data section", extra={"reference": record.reference, "size": record.data_size})
        try:
            return await _ledger.fetch_data_section(self.gateway_url, record.tx_id, client=self.http_client)
        except LedgerFetchError as e:
            logger.warning("Data section fetch failed", extra={"reference": record.reference, "error": str(e)})
            if record.method == "GET":
                return ""
            return None

    async def handle_transaction(self, tx: LedgerTransaction) -> str:
        record = RequestRecord.from_transaction(tx, self.default_timeout_ms)
        if not record.reference:
            logger.warning("Skipping entry without Reference tag", extra={"tx_id": tx.id})
            monitoring.inc_record(SKIPPED)
            return SKIPPED

        if dbmod.has_seen(record.reference):
            monitoring.inc_record(DUPLICATE)
            return DUPLICATE
        try:
            entry_id = dbmod.claim(record.reference, self._claim_metadata(record))
        except AlreadyClaimed:
            logger.info("Request already claimed", extra={"reference": record.reference})
            monitoring.inc_record(DUPLICATE)
            return DUPLICATE

        log_extra = {"reference": record.reference, "entry_id": entry_id, "tx_id": tx.id}
        logger.info(
            "Processing new request",
            extra={**log_extra, "method": record.method, "url": self.templater.redact(record.url)},
        )

        progress = {"publish_attempted": False}
        try:
            return await self._process_claimed(record, entry_id, log_extra, progress)
        except DedupInvariantError:
            raise
        except Exception as e:
            # Unexpected fault after claiming: answer the requester if nothing went out yet,
            # then close the entry so it is not left pending
            logger.exception("Unexpected error processing request", extra=log_extra)
            monitoring.inc_record(FAILED)
            error = f"Internal error: {e.__class__.__name__}: {e}"
            response_id = None
            if record.requester and not progress["publish_attempted"]:
                response_id = await self._publish_internal_error(record, entry_id, error, log_extra)
            try:
                self._finish(entry_id, {"success": False, "error": error}, response_id)
            except DedupInvariantError:
                raise
            except Exception:
                logger.exception("Could not record failure in dedup store", extra=log_extra)
            return FAILED

    async def _publish_internal_error(self, record: RequestRecord, entry_id: int, error: str,
                                      log_extra: Dict[str, Any]) -> Optional[str]:
        """Best effort: one error record for a claimed request that hit an unexpected fault."""
        outcome = Outcome.failure(error, code=500, http_status=500, status_text="Internal Server Error")
        try:
            result = await self.publisher.publish(str(entry_id), outcome, record.requester, record.passthrough)
        except PublishError as e:
            logger.error("Error response could not be published", extra={**log_extra, "error": str(e)})
            return e.notification_id
        except Exception:
            logger.exception("Error response could not be published", extra=log_extra)
            return None
        return result.message_id

    async def _process_claimed(self, record: RequestRecord, entry_id: int, log_extra: Dict[str, Any],
                               progress: Dict[str, bool]) -> str:
        if not record.requester:
            logger.error("No Requestor tag, nothing to answer", extra=log_extra)
            self._finish(entry_id, {"success": False, "error": "Missing Requestor tag"})
            monitoring.inc_record(ABANDONED)
            return ABANDONED

        body = await self._resolve_body(record)
        if body is None:
            logger.error("Cannot proceed without body content", extra={**log_extra, "method": record.method})
            self._finish(entry_id, {"success": False, "error": "Body data section could not be fetched"})
            monitoring.inc_record(ABANDONED)
            return ABANDONED

        prepared = self._prepare(record)
        outcome: Outcome = await self.dispatcher.dispatch(prepared, body=self.templater.substitute(body))
        logger.info(
            "Request executed",
            extra={**log_extra, "success": outcome.success, "status": outcome.http_status, "code": outcome.code},
        )

        summary = outcome.summary()
        progress["publish_attempted"] = True
        try:
            result = await self.publisher.publish(str(entry_id), outcome, record.requester, record.passthrough)
        except PublishError as e:
            summary.update({
                "success": False,
                "error": f"Send failure: {e}",
                "publishFailed": True,
                "outcomeSuccess": outcome.success,
            })
            self._finish(entry_id, summary, e.notification_id)
            monitoring.inc_record(PUBLISH_FAILED)
            return PUBLISH_FAILED

        summary.update({"published": result.kind, "chunks": result.total_chunks, "size": result.size})
        if result.chunk_group_id:
            summary["chunkGroupId"] = result.chunk_group_id
        self._finish(entry_id, summary, result.message_id)
        logger.info("Response published", extra={**log_extra, "message_id": result.message_id, "kind": result.kind})
        monitoring.inc_record(PROCESSED)
        return PROCESSED
