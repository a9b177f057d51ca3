from __future__ import annotations


class RelayError(ValueError):
    """A request was rejected. `code` is the stable token returned to clients."""

    status_code = 400

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class ValidationFailed(RelayError):
    status_code = 400


class Forbidden(RelayError):
    status_code = 403


class RateLimited(RelayError):
    status_code = 429

    def __init__(self, code: str = "rate-limit") -> None:
        super().__init__(code)


class PersistFailed(RelayError):
    """Reading or writing a document file failed."""

    status_code = 500

    def __init__(self, code: str = "persist-failed") -> None:
        super().__init__(code)
