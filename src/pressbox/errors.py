"""Error taxonomy for the PressBox reconfiguration engine."""


class PressBoxError(Exception):
    """Base exception for PressBox errors."""

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        self.code = code
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ValidationError(PressBoxError):
    """Bad target, version, options or site state. Raised before any side effect."""


class TransactionInProgressError(ValidationError):
    """Another swap is already running against the same site."""

    def __init__(self, site_id: str):
        super().__init__(
            code="TransactionInProgress",
            message=f"Site '{site_id}' already has a transaction in progress",
            suggestion="Wait for the running swap to finish, then retry",
        )
        self.site_id = site_id


class SnapshotError(PressBoxError):
    """Capture or restore I/O failure."""


class ServiceControlError(PressBoxError):
    """A process failed to stop, start or pass its health check in time."""


class ConfigTranslationError(PressBoxError):
    """Malformed site descriptor or unwritable config path."""


class DatabaseRewriteError(PressBoxError):
    """Connection or constraint failure during a URL rewrite."""


class CertificateMigrationError(PressBoxError):
    """Certificate material could not be copied or issued."""
