from typing import Any


class TopUpError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(TopUpError):
    status_code = 400
    default_detail = "Invalid request"


class InvalidStateError(TopUpError):
    status_code = 400
    default_detail = "Transaction cannot change to the requested status"


class AuthenticationError(TopUpError):
    status_code = 401
    default_detail = "Unauthorized"


class NotFoundError(TopUpError):
    status_code = 404
    default_detail = "Transaction not found"


class PersistenceError(TopUpError):
    status_code = 409
    default_detail = "Transaction could not be stored"


class ConfigurationError(TopUpError):
    status_code = 500
    default_detail = "Payment provider is not configured"


class ProviderError(TopUpError):
    """Failure talking to the payment provider.

    ``kind`` selects the HTTP class reported to our caller: ``bad_gateway`` when
    the provider answered with a non-2xx status, ``timeout`` when it did not
    answer in time and ``unavailable`` when it could not be reached at all.
    """

    _status_by_kind = {"bad_gateway": 502, "unavailable": 503, "timeout": 504}

    def __init__(
        self,
        detail: str | None = None,
        *,
        kind: str = "bad_gateway",
        status_code: int | None = None,
        body: Any = None,
    ):
        super().__init__(detail or "Payment provider request failed")
        self.kind = kind
        self.provider_status = status_code
        self.body = body
        self.status_code = self._status_by_kind.get(kind, 502)
