"""Infrastructure errors.

Business rejections (card owned by someone else, redemption already resolved, ...)
are typed results returned by the engines. Exceptions are reserved for storage
failures the caller may retry.
"""


class StorageUnavailable(Exception):
    """The database rejected or failed an operation; the transaction was rolled back."""

    is_retryable = True

    def __init__(self, operation: str, original_error: Exception):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Database error during {operation}: {original_error}")

    def to_dict(self):
        return {
            "error_type": self.__class__.__name__,
            "operation": self.operation,
            "error": str(self.original_error),
            "is_retryable": self.is_retryable,
        }
