"""
Error taxonomy for build and update jobs.

Every error carries the HTTP status it maps to and a short public message.
Diagnostic detail (captured process output, paths) goes to the service log,
never into the message.
"""


class BuildServiceError(Exception):
    """Base error for everything the service reports to a caller."""
    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: str | None = None, detail: str | None = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class ProcessError(BuildServiceError):
    """Invalid invocation of the process runner."""
    pass


# =============================================================================
# Client errors (4xx)
# =============================================================================

class InvalidRequestError(BuildServiceError):
    status_code = 400
    message = "Invalid request payload"


class MissingParametersError(InvalidRequestError):
    message = "Missing required parameters"


class UnsupportedPlatformError(InvalidRequestError):
    message = "Unsupported platform"


class InvalidRepoURLError(InvalidRequestError):
    message = "Invalid repo_url parameter"


class AuthError(BuildServiceError):
    status_code = 401
    message = "Unauthorized"


class ClientDisconnectedError(BuildServiceError):
    """The caller went away while its job was running."""
    status_code = 499
    message = "Client closed request"


class ConflictError(BuildServiceError):
    status_code = 409
    message = "Conflict"


class UpdateInProgressError(ConflictError):
    message = "Update already in progress"


# =============================================================================
# Dependency errors (5xx)
# =============================================================================

class DependencyError(BuildServiceError):
    """An external step (clone, install, build) failed."""
    status_code = 500


class FetchError(DependencyError):
    message = "Failed to clone the repository"


class InstallError(DependencyError):
    message = "Failed to install npm dependencies"


class BuildError(DependencyError):
    message = "Failed to build the app"


class BuildTimeoutError(BuildServiceError):
    status_code = 500
    message = "Build timed out"
