"""Exception hierarchy shared by the scanning components."""


class ReconError(Exception):
    """Base class for all ReconSweep errors."""


class TargetUnreachable(ReconError):
    """Raised when the liveness probe for a target fails."""


class ScanCancelled(ReconError):
    """Raised at a checkpoint once cancellation has been requested for a scan."""


class ScanTimeout(ReconError):
    """Raised when a scan exceeds its overall time budget."""


class DeepScanUnavailable(ReconError):
    """Raised when the external probe utility is missing or produced unusable output."""


class InvalidTransitionError(ReconError):
    """Raised on an illegal scan status transition."""


class UnknownScanError(ReconError, KeyError):
    """Raised when a scan id was never registered with the orchestrator."""
