class ConfigurationError(RuntimeError):
    """Missing or malformed settings. Fatal at startup."""


class ValidationFailed(ValueError):
    """User input rejected before any store call, with one message per field."""

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors


class StoreError(ValueError):
    pass


class NotFoundError(StoreError):
    pass


class InvalidStatusTransition(StoreError):
    pass


class AuthError(ValueError):
    pass
