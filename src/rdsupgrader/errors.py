"""Domain errors for RDS Upgrader."""

from typing import Optional


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""

    kind = "error"


class UsageError(UpgraderError):
    """Raised when the command line input is malformed."""

    kind = "usage"


class PreconditionError(UpgraderError):
    """Raised when the instance is not in a state that allows the upgrade."""

    kind = "precondition"


class ProviderCallError(UpgraderError):
    """Raised when an AWS control plane call returns an error."""

    kind = "provider"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: Optional[str] = None,
        provider_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.code = code
        self.provider_message = provider_message or ""


class WaitTimeoutError(ProviderCallError):
    """Raised when an instance does not become available within the wait bounds."""

    kind = "timeout"


class DatabaseOperationError(UpgraderError):
    """Raised when an administrative SQL statement fails."""

    kind = "database"


class PostConditionError(UpgraderError):
    """Raised when a call succeeded but the observed end state is wrong."""

    kind = "postcondition"
