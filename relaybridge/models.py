# relaybridge/models.py
from sqlalchemy import Column, Integer, String, DateTime, Text
import datetime

from relaybridge.db import Base

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class RelayRequest(Base):
    __tablename__ = "relay_requests"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(String(128), unique=True, index=True, nullable=False)
    response_id = Column(String(128), nullable=True)
    timestamp = Column(DateTime, default=datetime.datetime.utcnow)
    url = Column(Text, nullable=False)
    method = Column(String(16), nullable=False)
    headers = Column(Text, nullable=True)
    body = Column(Text, nullable=True)
    timeout = Column(Integer, default=30000)
    status = Column(String(32), nullable=False, default=STATUS_PENDING)
    outcome_summary = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
