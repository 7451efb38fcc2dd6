class FederationError(Exception):
    """Base class for errors surfaced to remote peers as an HTTP status."""

    status_code = 500
    detail = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.detail)
        self.message = message or self.detail


class MalformedRequestError(FederationError):
    status_code = 400
    detail = "Malformed request"


class UnauthorizedError(FederationError):
    status_code = 401
    detail = "Invalid HTTP sig"


class ForbiddenError(FederationError):
    status_code = 403
    detail = "Blocked"


class NotFoundError(FederationError):
    status_code = 404
    detail = "Not found"


class InternalError(FederationError):
    pass


class ActorResolutionError(FederationError):
    """A remote actor could not be resolved.

    Callers decide whether to retry (with backoff) or to abort.
    """

    def __init__(self, actor_uri: str, message: str | None = None) -> None:
        super().__init__(message or f"Failed to resolve {actor_uri}")
        self.actor_uri = actor_uri


class UnreachableActorError(ActorResolutionError):
    pass


class InvalidActorError(ActorResolutionError):
    pass


class DeliveryError(FederationError):
    def __init__(
        self,
        inbox_url: str,
        message: str,
        remote_status_code: int | None = None,
        retryable: bool = True,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(f"Delivery to {inbox_url} failed: {message}")
        self.inbox_url = inbox_url
        self.remote_status_code = remote_status_code
        self.retryable = retryable
        self.retry_after = retry_after


class PayloadTooLargeError(FederationError):
    status_code = 413
    detail = "Payload too large"
