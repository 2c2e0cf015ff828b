from .batch import MAX_BATCH_SIZE, WriteBatchResult, write_batch_with_retry
from .retry import FailureReason, RetryPolicy

__all__ = [
    "MAX_BATCH_SIZE",
    "WriteBatchResult",
    "write_batch_with_retry",
    "FailureReason",
    "RetryPolicy",
]
