"""Error taxonomy for package installation.

Every failure raised by the install pipeline derives from InstallError and
names the step it came from, so the CLI can report a single terminal message:

- resolve: SourceNotFound
- load-manifest: ManifestMissing, ManifestMalformed
- validate: InvalidAssertion, ConditionFailure
- install: RemoteRejected, AuthenticationError, TransportError, Cancelled
"""

from typing import Optional

# Exit codes
EXIT_SUCCESS = 0
EXIT_CLIENT_ERROR = 1  # Missing source, bad manifest, bad config
EXIT_SERVER_ERROR = 2  # Network, HTTP error, remote rejection
EXIT_CONDITION_FAILED = 3  # Environment does not satisfy manifest conditions
EXIT_CANCELLED = 4  # Cancelled or deadline exceeded


class InstallError(Exception):
    """Base exception for install pipeline errors."""

    step = 'install'
    exit_code = EXIT_CLIENT_ERROR

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class SourceNotFound(InstallError):
    """No package archive or package root could be resolved."""

    step = 'resolve'

    def __init__(self, message: str = "package root not found"):
        super().__init__("E101", message)


class ManifestMissing(InstallError):
    """Manifest file or archive entry not found."""

    step = 'load-manifest'

    def __init__(self, location: str):
        self.location = location
        super().__init__("E201", f"Manifest not found: {location}")


class ManifestMalformed(InstallError):
    """Manifest could not be parsed or is missing required data."""

    step = 'load-manifest'

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__("E202", message)


class InvalidAssertion(InstallError):
    """A key=value condition assertion could not be parsed."""

    step = 'validate'

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        super().__init__("E301", f"Invalid condition '{raw}': {reason}")


class ConditionFailure(InstallError):
    """One or more manifest conditions are not satisfied.

    Attributes:
        failures: Mapping of condition key to a human-readable reason
    """

    step = 'validate'
    exit_code = EXIT_CONDITION_FAILED

    def __init__(self, failures: dict[str, str]):
        self.failures = dict(sorted(failures.items()))
        details = '; '.join(f"{key} ({reason})" for key, reason in self.failures.items())
        super().__init__("E302", f"Unmet conditions: {details}")

    @property
    def keys(self) -> list[str]:
        """Failing condition keys, sorted."""
        return list(self.failures)


class RemoteRejected(InstallError):
    """The management plane refused the package."""

    exit_code = EXIT_SERVER_ERROR

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__("E401", message)


class AuthenticationError(InstallError):
    """Credentials were missing or refused by the management plane."""

    exit_code = EXIT_SERVER_ERROR

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__("E402", message)


class TransportError(InstallError):
    """The management plane could not be reached or failed to answer."""

    exit_code = EXIT_SERVER_ERROR

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__("E501", message)


class Cancelled(InstallError):
    """The remote call was aborted by the caller."""

    exit_code = EXIT_CANCELLED

    def __init__(self, message: str = "Install cancelled", code: str = "E601"):
        super().__init__(code, message)


class DeadlineExceeded(Cancelled):
    """The remote call did not finish before the caller's deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        if timeout is not None:
            message = f"Install did not complete within {timeout:g}s"
        else:
            message = "Install timed out"
        super().__init__(message, code="E602")
