# relaybridge/publisher.py
"""
Response publisher.

Writes an Outcome back to the ledger addressed to the requester:

1. error outcomes go out as one compact error record;
2. successes are redacted and serialized, and sent as one record if they fit
   under max_message_bytes;
3. otherwise headers, then statusText, are dropped until it fits;
4. otherwise the serialized payload is split into chunk_bytes pieces sent in
   order under a shared ChunkMessageId.

A failed write triggers one best-effort SendFailure notification, then
PublishError is raised to the caller. Nothing is retried here.
"""

import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from relaybridge import monitoring
from relaybridge.credentials import CredentialTemplater
from relaybridge.errors import PublishError
from relaybridge.monitoring import logger
from relaybridge.schemas import Outcome, PublishResult, Tag

ACTION_RESPONSE = "axios-response"
ACTION_RESPONSE_CHUNK = "axios-response-chunk"


def serialize(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def split_utf8(data: bytes, size: int) -> List[bytes]:
    """
    Split into pieces of at most `size` bytes without cutting a UTF-8 sequence,
    so each piece decodes on its own and the concatenation is byte-identical.
    A piece always holds at least one whole character, even if that exceeds `size`.
    """
    if size <= 0:
        raise ValueError("chunk size must be positive")
    chunks: List[bytes] = []
    start = 0
    n = len(data)
    while start < n:
        end = min(start + size, n)
        if end < n:
            cut = end
            # back off while the next byte is a continuation byte (10xxxxxx)
            while cut > start and (data[cut] & 0xC0) == 0x80:
                cut -= 1
            if cut > start:
                end = cut
            else:
                # size is smaller than one character: keep the whole sequence
                while end < n and (data[end] & 0xC0) == 0x80:
                    end += 1
        chunks.append(data[start:end])
        start = end
    return chunks


class ResponsePublisher:
    def __init__(
        self,
        writer,
        relay_process_id: str,
        templater: Optional[CredentialTemplater] = None,
        max_message_bytes: int = 9 * 1024 * 1024,
        chunk_bytes: int = 6 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ):
        if chunk_bytes >= max_message_bytes:
            raise ValueError("chunk_bytes must be smaller than max_message_bytes")
        self.writer = writer
        self.relay_process_id = relay_process_id
        self.templater = templater or CredentialTemplater()
        self.max_message_bytes = max_message_bytes
        self.chunk_bytes = chunk_bytes
        self._clock = clock

    def _base_tags(self, action: str, request_id: str, status: str, requester: str) -> List[Tag]:
        return [
            Tag(name="Action", value=action),
            Tag(name="RequestId", value=str(request_id)),
            Tag(name="Status", value=status),
            Tag(name="Requestor", value=requester),
        ]

    @staticmethod
    def _extra_tags(passthrough: Sequence[Tuple[str, str]]) -> List[Tag]:
        return [Tag(name=name, value=value) for name, value in passthrough]

    def error_payload(self, outcome: Outcome) -> Dict[str, Any]:
        if outcome.soft_error:
            return {
                "success": False,
                "error": outcome.error,
                "code": outcome.http_status,
                "originalStatus": outcome.http_status,
                "isErrorResponse": True,
            }
        payload: Dict[str, Any] = {}
        if outcome.http_status is not None:
            payload["status"] = outcome.http_status
        if outcome.status_text is not None:
            payload["statusText"] = outcome.status_text
        payload.update({"success": False, "error": outcome.error, "code": outcome.code})
        return self.templater.redact_value(payload)

    def fit_payload(self, outcome: Outcome) -> Tuple[Dict[str, Any], bytes]:
        """Redact, serialize, and drop optional fields until it fits (or nothing is left to drop)."""
        payload = outcome.to_payload()
        if "data" in payload:
            payload["data"] = self.templater.redact_value(payload["data"])
        if "headers" in payload:
            payload["headers"] = self.templater.redact_value(payload["headers"])
        encoded = serialize(payload)
        for field_name in ("headers", "statusText"):
            if len(encoded) <= self.max_message_bytes:
                break
            if field_name in payload:
                payload = {k: v for k, v in payload.items() if k != field_name}
                encoded = serialize(payload)
                logger.info("Dropped field to shrink response", extra={"field": field_name, "size": len(encoded)})
        return payload, encoded

    async def publish(
        self,
        request_id: str,
        outcome: Outcome,
        requester: str,
        passthrough: Sequence[Tuple[str, str]] = (),
    ) -> PublishResult:
        if not outcome.success:
            data = serialize(self.error_payload(outcome)).decode("utf-8")
            tags = self._base_tags(ACTION_RESPONSE, request_id, "Error", requester)
            tags.append(Tag(name="IsErrorResponse", value="true" if outcome.soft_error else "false"))
            tags.extend(self._extra_tags(passthrough))
            message_id = await self._write(request_id, requester, data, tags, kind="error")
            return PublishResult(message_id=message_id, kind="error", message_ids=[message_id], size=len(data))

        _, encoded = self.fit_payload(outcome)
        if len(encoded) <= self.max_message_bytes:
            tags = self._base_tags(ACTION_RESPONSE, request_id, "Success", requester)
            tags.append(Tag(name="Optimized", value="true"))
            tags.extend(self._extra_tags(passthrough))
            message_id = await self._write(request_id, requester, encoded.decode("utf-8"), tags, kind="single")
            return PublishResult(message_id=message_id, kind="single", message_ids=[message_id], size=len(encoded))

        return await self._publish_chunks(request_id, encoded, requester, passthrough)

    async def _publish_chunks(
        self,
        request_id: str,
        encoded: bytes,
        requester: str,
        passthrough: Sequence[Tuple[str, str]],
    ) -> PublishResult:
        chunks = split_utf8(encoded, self.chunk_bytes)
        group_id = f"chunk_{request_id}_{int(self._clock() * 1000)}"
        total = len(chunks)
        logger.info(
            "Publishing chunked response",
            extra={"request_id": request_id, "size": len(encoded), "chunks": total, "chunk_group": group_id},
        )
        ids: List[str] = []
        for index, chunk in enumerate(chunks):
            is_last = index == total - 1
            tags = self._base_tags(ACTION_RESPONSE_CHUNK, request_id, "Success", requester)
            tags.extend([
                Tag(name="ChunkMessageId", value=group_id),
                Tag(name="ChunkIndex", value=str(index)),
                Tag(name="TotalChunks", value=str(total)),
                Tag(name="IsLastChunk", value="true" if is_last else "false"),
            ])
            tags.extend(self._extra_tags(passthrough))
            ids.append(await self._write(request_id, requester, chunk.decode("utf-8"), tags, kind="chunk"))
        return PublishResult(
            message_id=ids[0],
            kind="chunked",
            message_ids=ids,
            chunk_group_id=group_id,
            total_chunks=total,
            size=len(encoded),
        )

    async def _write(self, request_id: str, requester: str, data: str, tags: List[Tag], kind: str) -> str:
        try:
            message_id = await self.writer.send(self.relay_process_id, data, tags)
        except Exception as e:
            monitoring.inc_published(kind, "failure")
            reason = self.templater.redact(str(e))
            logger.error("Response write failed", extra={"request_id": request_id, "kind": kind, "error": reason})
            notification_id = await self._notify_failure(request_id, requester, reason)
            raise PublishError(f"Publishing {kind} response failed: {reason}", notification_id=notification_id)
        monitoring.inc_published(kind, "success")
        return message_id

    async def _notify_failure(self, request_id: str, requester: str, reason: str) -> Optional[str]:
        data = serialize({
            "success": False,
            "error": "Failed to send response",
            "originalError": reason,
            "requestId": str(request_id),
            "targetProcessId": requester,
        }).decode("utf-8")
        tags = self._base_tags(ACTION_RESPONSE, request_id, "Error", requester)
        tags.extend([
            Tag(name="IsErrorResponse", value="true"),
            Tag(name="ErrorType", value="SendFailure"),
        ])
        try:
            message_id = await self.writer.send(self.relay_process_id, data, tags)
        except Exception as e:
            monitoring.inc_published("notification", "failure")
            logger.error(
                "Failure notification also failed",
                extra={"request_id": request_id, "error": self.templater.redact(str(e))},
            )
            return None
        monitoring.inc_published("notification", "success")
        return message_id
