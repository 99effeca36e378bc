# relaybridge/db.py
"""
Durable dedup store.

One row per request reference. The UNIQUE constraint on request_id is what turns
at-least-once ledger reads into at-most-once dispatch: claim() inserts, and an
IntegrityError on insert means somebody else already owns the record.

Rows are written with placeholders only; callers pass redacted material.
"""
import os
import json
import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import IntegrityError

from relaybridge.errors import AlreadyClaimed, DedupInvariantError
from relaybridge.monitoring import logger

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./relay_requests.db")


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (tests, settings)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Create tables if they don't exist. Failure here is fatal for the bridge."""
    import relaybridge.models as models  # noqa: F401
    if engine.url.get_backend_name() == "sqlite":
        with engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    Base.metadata.create_all(bind=engine)


def _to_dict(rr) -> Dict[str, Any]:
    return {
        "id": rr.id,
        "request_id": rr.request_id,
        "response_id": rr.response_id,
        "timestamp": rr.timestamp.isoformat() if hasattr(rr.timestamp, "isoformat") else rr.timestamp,
        "url": rr.url,
        "method": rr.method,
        "headers": rr.headers,
        "body": rr.body,
        "timeout": rr.timeout,
        "status": rr.status,
        "outcome_summary": json.loads(rr.outcome_summary) if rr.outcome_summary else None,
        "error": rr.error,
    }


def has_seen(request_id: str) -> bool:
    db: Session = SessionLocal()
    try:
        from relaybridge.models import RelayRequest
        return db.query(RelayRequest.id).filter(RelayRequest.request_id == request_id).first() is not None
    finally:
        db.close()


def claim(request_id: str, metadata: Dict[str, Any]) -> int:
    """
    Atomically claim a request reference. Returns the new entry id.

    metadata may carry url, method, headers (str or dict), body, timeout.
    Raises AlreadyClaimed when the reference already has an entry.
    """
    from relaybridge.models import RelayRequest, STATUS_PENDING
    headers = metadata.get("headers")
    if isinstance(headers, dict):
        headers = json.dumps(headers)
    try:
        timeout = int(metadata.get("timeout") or 30000)
    except (TypeError, ValueError):
        timeout = 30000
    db: Session = SessionLocal()
    try:
        rr = RelayRequest(
            request_id=request_id,
            url=metadata.get("url") or "",
            method=(metadata.get("method") or "GET").upper(),
            headers=headers or "{}",
            body=metadata.get("body") or "",
            timeout=timeout,
            status=STATUS_PENDING,
            timestamp=datetime.datetime.utcnow(),
        )
        db.add(rr)
        db.commit()
        db.refresh(rr)
        return rr.id
    except IntegrityError:
        db.rollback()
        raise AlreadyClaimed(request_id)
    finally:
        db.close()


def complete(entry_id: int, outcome_summary: Dict[str, Any], response_id: Optional[str] = None) -> None:
    """
    Mark a claimed entry completed or failed, based on outcome_summary["success"].

    Raises DedupInvariantError if the entry does not exist or is no longer pending.
    """
    from relaybridge.models import RelayRequest, STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED
    success = bool(outcome_summary.get("success"))
    db: Session = SessionLocal()
    try:
        # Conditional update so two completers cannot both win
        updated = (
            db.query(RelayRequest)
            .filter(RelayRequest.id == entry_id, RelayRequest.status == STATUS_PENDING)
            .update(
                {
                    RelayRequest.response_id: response_id,
                    RelayRequest.status: STATUS_COMPLETED if success else STATUS_FAILED,
                    RelayRequest.outcome_summary: json.dumps(outcome_summary),
                    RelayRequest.error: None if success else (outcome_summary.get("error") or "unknown error"),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise DedupInvariantError(f"Dedup entry {entry_id} was never claimed or is already complete")
        db.commit()
    finally:
        db.close()


def get_entry(request_id: str) -> Optional[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        from relaybridge.models import RelayRequest
        rr = db.query(RelayRequest).filter(RelayRequest.request_id == request_id).first()
        return _to_dict(rr) if rr else None
    finally:
        db.close()


def list_entries(status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        from relaybridge.models import RelayRequest
        q = db.query(RelayRequest)
        if status:
            q = q.filter(RelayRequest.status == status)
        rows = q.order_by(RelayRequest.id.desc()).limit(limit).all()
        return [_to_dict(rr) for rr in rows]
    except Exception:
        logger.exception("Dedup store listing failed")
        return []
    finally:
        db.close()
