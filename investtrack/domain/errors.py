"""
Domain exceptions for the integration refresh pipeline.

The hierarchy separates failures the next scheduled or manual trigger may
recover from (transport errors, timeouts, transient provider errors) from
failures that need user action (missing settings, revoked credentials).
"""


class IntegrationError(Exception):
    """Base class for all integration refresh errors."""

    #: Message safe to show to the end user.
    user_message: str = "Refresh failed, please try again."

    retryable: bool = True


class RecoverableError(IntegrationError):
    """
    Errors a later refresh may succeed past without user action.

    Examples:
    - Gateway not running or refusing the connection
    - Initial account download not completing in time
    - Token endpoint returning 5xx or timing out
    """


class UserActionRequiredError(IntegrationError):
    """Errors that keep failing until the user fixes something."""

    retryable = False


class ConfigurationError(UserActionRequiredError):
    """Connection settings or credentials missing/incomplete."""

    user_message = "Integration is not configured. Please complete the connection settings."


class GatewayConnectionError(RecoverableError):
    """Connecting to the IB gateway failed (timeout, refused, protocol error)."""

    user_message = "Could not connect to the IB gateway. Make sure it is running and try again."


class SubscriptionTimeoutError(RecoverableError):
    """Initial account download did not complete within the timeout."""


class NotAuthenticatedError(UserActionRequiredError):
    """No access token stored for the credential."""

    user_message = "Account is not connected. Please authenticate with the provider."


class TokenRefreshError(RecoverableError):
    """Transient failure exchanging the refresh token (network, HTTP 5xx)."""


class ReauthenticationRequiredError(UserActionRequiredError):
    """The refresh token was rejected; interactive re-authorization needed."""

    user_message = "Authorization expired. Please re-authenticate your account."


class ProviderRequestError(RecoverableError):
    """A REST data call to the provider failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
