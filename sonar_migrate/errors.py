"""Exception classes for the SonarQube to SonarCloud migration tool."""


class MigrationError(Exception):
    """Base exception for all migration errors."""

    pass


class ConfigurationError(MigrationError):
    """Raised for missing or invalid configuration. Fatal before any network call."""

    pass


class ValidationError(MigrationError):
    """Raised when an input document (override table, state file, snapshot) is malformed."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class StateError(MigrationError):
    """Raised when sync state cannot be loaded, saved or cleared."""

    pass


class TransferError(MigrationError):
    """Raised when a project transfer fails in a way that fails the whole project."""

    def __init__(self, message: str, project_key: str | None = None) -> None:
        super().__init__(message)
        self.project_key = project_key


class APIError(MigrationError):
    """Base exception for remote API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
        endpoint: str | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code if available
            response_text: Response body text if available
            endpoint: Endpoint path that produced the error
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_text = response_text
        self.endpoint = endpoint

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.endpoint:
            parts.append(f"Endpoint: {self.endpoint}")
        if self.response_text:
            response_preview = self.response_text[:200]
            if len(self.response_text) > 200:
                response_preview += "..."
            parts.append(f"Response: {response_preview}")
        return " | ".join(parts)


class AuthenticationError(APIError):
    """Raised when authentication or authorization fails (401/403)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource does not exist (404)."""

    pass


class RateLimitError(APIError):
    """Raised when the remote side signals rate limiting (429 or 503)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
        endpoint: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message, status_code, response_text, endpoint)
        self.retry_after = retry_after


class ClientError(APIError):
    """Raised for other 4xx responses, including payload validation failures."""

    pass


class ServerError(APIError):
    """Raised for 5xx responses that are not rate limiting."""

    pass


class NetworkError(APIError):
    """Raised when the remote server cannot be reached."""

    pass


class PartialMigrationError(MigrationError):
    """Raised when a resource was created but some of its parts were not."""

    def __init__(self, message: str, dest_id: str | None, failures: list[str]) -> None:
        super().__init__(f"{message}: {'; '.join(failures)}")
        self.dest_id = dest_id
        self.failures = failures
