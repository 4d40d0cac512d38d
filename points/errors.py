class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, requested: int, available: int):
        super().__init__(f"Requested {requested} points but only {available} are available")
        self.requested = requested
        self.available = available


class StorageError(LedgerServiceError):
    pass
