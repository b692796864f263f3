"""
Provider failures.

Every failure is scoped to a single city and is never fatal to a polling
cycle: the monitor records the ``kind`` and moves on to the next city.
"""


class ProviderError(Exception):
    """Base exception for reading provider failures."""

    kind = "provider_error"

    def __init__(self, message: str = "", city_id: str | None = None):
        super().__init__(message or self.kind)
        self.city_id = city_id


class MissingCredential(ProviderError):
    """Raised when no provider API key is configured."""

    kind = "missing_credential"


class InvalidCredential(ProviderError):
    """Raised when the provider rejects the API key."""

    kind = "invalid_credential"


class TransientFetchFailure(ProviderError):
    """Network errors, timeouts and unexpected HTTP statuses."""

    kind = "network_error"


class RateLimited(TransientFetchFailure):
    kind = "rate_limited"


class MalformedResponse(ProviderError):
    """Raised when a provider payload cannot be normalized into a Reading."""

    kind = "malformed_response"


CREDENTIAL_FAILURES = (MissingCredential.kind, InvalidCredential.kind)
