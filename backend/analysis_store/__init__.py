from .database import SQLiteRunDB
from .run_store import RunStore

__all__ = [
    "RunStore",
    "SQLiteRunDB",
]
