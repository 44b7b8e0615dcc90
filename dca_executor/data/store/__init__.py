from dca_executor.data.store.provider import (
    MemoryStore,
    RestStore,
    SqliteStore,
    Store,
    StoreSettings,
    get_store,
)
from dca_executor.data.store.request_factory import RestStoreRequestFactory
from dca_executor.data.store.schemas import (
    STATUS_FAILED,
    STATUS_RETRY_FAILED,
    STATUS_SUCCESS,
    DelegationRecord,
    ExecutionRow,
    FailedAttemptRow,
    HistoryEntry,
    RunSummaryRow,
)

__all__ = [
    "DelegationRecord",
    "ExecutionRow",
    "FailedAttemptRow",
    "HistoryEntry",
    "MemoryStore",
    "RestStore",
    "RestStoreRequestFactory",
    "RunSummaryRow",
    "STATUS_FAILED",
    "STATUS_RETRY_FAILED",
    "STATUS_SUCCESS",
    "SqliteStore",
    "Store",
    "StoreSettings",
    "get_store",
]
