from .coverage_record import CoverageRecord, CoverageRecordResponse

__all__ = [
    "CoverageRecord",
    "CoverageRecordResponse",
]
