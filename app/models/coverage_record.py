from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, DateTime, String, Text

from app.db.db import Base


def _utcnow():
    return datetime.now(timezone.utc)


class CoverageRecord(Base):
    """One durable selection document, keyed by its namespaced storage key"""
    __tablename__ = "coverage_records"
    key = Column(String(255), primary_key=True, index=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


# Pydantic Models for Response Validation
class CoverageRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    updated_at: Optional[datetime] = None
    size_bytes: int = 0

    @classmethod
    def from_record(cls, record: CoverageRecord) -> "CoverageRecordResponse":
        return cls(key=record.key, updated_at=record.updated_at, size_bytes=len(record.value or ""))
