from __future__ import annotations


class CalbridgeError(Exception):
    """Base class for all calbridge errors."""


class ValidationError(CalbridgeError):
    pass


class DuplicateConnectionError(CalbridgeError):
    pass


class ConnectionNotFoundError(CalbridgeError):
    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Calendar connection not found: {connection_id}")
        self.connection_id = connection_id


class ProviderConfigurationError(CalbridgeError):
    """OAuth client credentials (or another provider setting) are missing."""


class UnsupportedOperationError(CalbridgeError):
    pass


class ProviderHTTPError(CalbridgeError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = int(status_code)

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in {401, 403}


class ProviderResponseError(CalbridgeError):
    """The provider answered, but without data calbridge needs."""


class ProviderConnectionError(CalbridgeError):
    """The provider could not be reached."""


class TokenRefreshError(CalbridgeError):
    pass


class IcsParseError(CalbridgeError):
    pass


class IcsTooLargeError(CalbridgeError):
    pass


class SyncCancelledError(CalbridgeError):
    pass


class OAuthSessionError(CalbridgeError):
    """The OAuth flow cannot continue; the user has to restart it."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def is_auth_failure(exc: BaseException) -> bool:
    if isinstance(exc, TokenRefreshError):
        return True
    if isinstance(exc, ProviderHTTPError):
        return exc.is_auth_error
    return False


class InvalidTokenResponseError(CalbridgeError):
    pass
