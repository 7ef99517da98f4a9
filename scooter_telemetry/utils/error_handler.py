"""
Error Taxonomy

Error kinds and severities shared by every pipeline stage. Recording,
history and callbacks live in diagnostics.context.DiagnosticContext.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
import time


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = auto()      # Expected noise (malformed or ignored frames)
    INFO = auto()       # Rejected data, no action needed
    WARNING = auto()    # Recoverable issue
    ERROR = auto()      # Operator attention needed
    CRITICAL = auto()   # Session cannot continue


class ErrorKind(Enum):
    """Error categories of the telemetry pipeline."""
    MALFORMED_FRAME = "malformed_frame"              # Too short for its kind
    CHECKSUM_MISMATCH = "checksum_mismatch"          # Discarded before decode
    UNRECOGNIZED_OPCODE = "unrecognized_opcode"      # Kept for diagnostics only
    IMPLAUSIBLE_VALUE = "implausible_value"          # Rejected at merge
    TRANSPORT_WRITE_FAILURE = "transport_write_failure"
    PROTOCOL_UNKNOWN = "protocol_unknown"            # Nothing validated in a window


DEFAULT_SEVERITY = {
    ErrorKind.MALFORMED_FRAME: ErrorSeverity.DEBUG,
    ErrorKind.CHECKSUM_MISMATCH: ErrorSeverity.INFO,
    ErrorKind.UNRECOGNIZED_OPCODE: ErrorSeverity.DEBUG,
    ErrorKind.IMPLAUSIBLE_VALUE: ErrorSeverity.INFO,
    ErrorKind.TRANSPORT_WRITE_FAILURE: ErrorSeverity.WARNING,
    ErrorKind.PROTOCOL_UNKNOWN: ErrorSeverity.ERROR,
}


@dataclass
class ErrorInfo:
    """Container for error information."""
    kind: ErrorKind
    message: str
    severity: ErrorSeverity = ErrorSeverity.WARNING
    details: str = ""
    timestamp: float = field(default_factory=time.time)
    source: str = ""
    recoverable: bool = True
    user_action: str = ""  # Suggested action for the operator

    def __str__(self):
        return f"[{self.severity.name}] {self.kind.value}: {self.message}"
