from .record_storage import SqlRecordStorage

__all__ = [
    "SqlRecordStorage",
]
