class ExchangeError(ValueError):
    """Base class for user-visible scheduling and exchange errors."""


class ExchangeValidationError(ExchangeError):
    pass


class ExchangeNotFoundError(ExchangeError):
    pass


class ExchangeConflictError(ExchangeError):
    """Interval overlap, or a duplicate open dispute."""

    def __init__(self, message: str, conflicting_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.conflicting_ids = conflicting_ids


class ExchangeStateConflictError(ExchangeError):
    """Illegal lifecycle transition, including mutation of a terminal entity."""


class ExchangeForbiddenError(ExchangeError):
    pass
