"""
Relational storage for durable coverage records.
Implements the same get/set/remove/keys contract as the engine's storage
adapters, one row per namespaced key.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.db.db import SessionLocal
from app.models.coverage_record import CoverageRecord, CoverageRecordResponse

logger = logging.getLogger(__name__)


class SqlRecordStorage:
    """Durable storage backed by the coverage_records table"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    def get_item(self, key: str) -> Optional[str]:
        with self.session_factory() as db:
            record = db.get(CoverageRecord, key)
            return record.value if record else None

    def set_item(self, key: str, value: str) -> None:
        with self.session_factory() as db:
            try:
                record = db.get(CoverageRecord, key)
                if record is None:
                    db.add(CoverageRecord(key=key, value=value))
                else:
                    record.value = value
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.error("Failed to write coverage record '%s'", key)
                raise

    def remove_item(self, key: str) -> None:
        with self.session_factory() as db:
            try:
                record = db.get(CoverageRecord, key)
                if record is not None:
                    db.delete(record)
                    db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.error("Failed to remove coverage record '%s'", key)
                raise

    def keys(self) -> List[str]:
        with self.session_factory() as db:
            return list(db.scalars(select(CoverageRecord.key).order_by(CoverageRecord.key)))

    def list_records(self) -> List[CoverageRecordResponse]:
        """Key, last update and size of every stored record"""
        with self.session_factory() as db:
            records = db.scalars(select(CoverageRecord).order_by(CoverageRecord.key))
            return [CoverageRecordResponse.from_record(r) for r in records]
