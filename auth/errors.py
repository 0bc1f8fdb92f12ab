from __future__ import annotations


class AuthError(RuntimeError):
    """Base class for session lifecycle failures.

    ``reason`` is a stable machine-readable code surfaced in the session
    snapshot; ``status_code`` is what the hosting application answers with.
    """

    reason = "auth_error"
    status_code = 500
    default_message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    def to_payload(self) -> dict[str, str]:
        return {"error": self.reason, "message": str(self)}


class ConfigurationError(AuthError):
    reason = "configuration_error"
    default_message = "Spotify OAuth is not configured."


class SecureRandomUnavailableError(AuthError):
    reason = "secure_random_unavailable"
    default_message = "No cryptographically secure random source is available."


class InvalidTransitionError(AuthError):
    reason = "invalid_transition"
    status_code = 409
    default_message = "Operation is not valid in the current session state."


class AuthorizationDeniedError(AuthError):
    reason = "authorization_denied"
    status_code = 400
    default_message = "Spotify authorization returned an error."

    def __init__(self, error_code: str, message: str | None = None) -> None:
        super().__init__(message or f"Spotify authorization returned an error: {error_code}")
        self.error_code = error_code


class NoPendingAuthorizationError(AuthError):
    reason = "no_pending_authorization"
    status_code = 400
    default_message = "No pending authorization; start the login again."


class CsrfMismatchError(AuthError):
    reason = "csrf_mismatch"
    status_code = 400
    default_message = "OAuth state does not match the pending authorization."


class TokenExchangeFailedError(AuthError):
    reason = "token_exchange_failed"
    status_code = 502
    default_message = "Failed to exchange the authorization code."


class TokenRefreshFailedError(AuthError):
    reason = "token_refresh_failed"
    status_code = 401
    default_message = "Failed to refresh the access token."


class ProfileFetchFailedError(AuthError):
    reason = "profile_fetch_failed"
    status_code = 502
    default_message = "Failed to fetch the Spotify profile."

    def __init__(self, message: str | None = None, *, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class NetworkUnavailableError(AuthError):
    reason = "network_unavailable"
    status_code = 503
    default_message = "Spotify could not be reached."


class UnauthenticatedError(AuthError):
    reason = "unauthenticated"
    status_code = 401
    default_message = "Not authenticated. Connect your Spotify account first."


class AuthenticationRequiredError(AuthError):
    reason = "authentication_required"
    status_code = 401
    default_message = "Spotify rejected the refreshed credential; log in again."


class CatalogAPIError(AuthError):
    reason = "catalog_error"

    def __init__(self, status_code: int, message: str, detail: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    def to_payload(self) -> dict[str, str]:
        payload = super().to_payload()
        payload["status"] = str(self.status_code)
        return payload
