"""
Error taxonomy for the standby verifier.

Only ConfigurationError is allowed to abort a run. Everything else is caught
at the scenario boundary and recorded as a result.
"""


class VerifierError(Exception):
    """Base class for verifier errors."""

    pass


class ConfigurationError(VerifierError):
    """Raised when credentials or topology entries are missing or invalid."""

    pass


class RemoteCommandError(VerifierError):
    """Raised when a remote command cannot be run or exits non-zero."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.host = host
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteCommandTimeout(RemoteCommandError):
    """Raised when a remote command was killed at its timeout; its effect is unknown."""

    pass


class TransientProbeError(VerifierError):
    """Raised when a single node cannot be probed. Never fatal for discovery."""

    def __init__(self, message: str, address: str):
        super().__init__(message)
        self.address = address


class DataNotYetVisible(VerifierError):
    """Raised when an entity does not appear within its wait budget."""

    def __init__(self, message: str, entity: str, waited_s: float):
        super().__init__(message)
        self.entity = entity
        self.waited_s = waited_s


class ValidationMismatch(VerifierError):
    """Observed count after promotion is below the expected count."""

    def __init__(self, observed: int, expected: int):
        super().__init__(f"Observed {observed} of {expected} expected messages")
        self.observed = observed
        self.expected = expected


class PromotionError(VerifierError):
    """Raised when the promotion request is not accepted."""

    pass


class RestorationFailure(VerifierError):
    """Terminal failure to restore a promoted cluster to downstream mode."""

    def __init__(self, message: str, remediation: str):
        super().__init__(message)
        self.remediation = remediation


class InvalidTransitionError(VerifierError):
    """Raised on an illegal promotion state machine transition."""

    pass


class ManagementAPIError(VerifierError):
    """Raised for management HTTP API errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ManagementAuthError(ManagementAPIError):
    """Raised when the management API rejects the credentials."""

    pass


class ChaosActionError(VerifierError):
    """Raised when a fault cannot be applied or healed."""

    pass


class WorkloadError(VerifierError):
    """Raised when the external workload driver cannot be started."""

    pass
