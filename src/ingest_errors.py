from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    MOUNT = "mount"
    COPY = "copy"
    TRANSCODE = "transcode"
    CLEAR = "clear"
    VERIFICATION = "verification"
    TIMEOUT = "timeout"
    RUNTIME_FAULT = "runtime_fault"


class IngestError(Exception):
    """
    Base error for the ingestion pipeline.

    Carries the device label, the lifecycle step that failed and the verbatim
    combined output of the external process (if any) so the log line keeps
    the tool's own diagnostics.
    """

    kind = ErrorKind.RUNTIME_FAULT

    def __init__(self, message: str, label: Optional[str] = None, step: Optional[str] = None, output: str = ""):
        super().__init__(message)
        self.message = message
        self.label = label
        self.step = step
        self.output = output or ""

    def __str__(self):
        if self.output.strip():
            return f"{self.message}\nOutput: {self.output.rstrip()}"
        return self.message


class ConfigurationError(IngestError):
    kind = ErrorKind.CONFIGURATION


class MountError(IngestError):
    kind = ErrorKind.MOUNT


class CopyError(IngestError):
    kind = ErrorKind.COPY


class TranscodeError(IngestError):
    kind = ErrorKind.TRANSCODE


class VerificationError(IngestError):
    kind = ErrorKind.VERIFICATION


class ClearError(IngestError):
    kind = ErrorKind.CLEAR


class StepTimeout(IngestError):
    kind = ErrorKind.TIMEOUT


class RuntimeFault(IngestError):
    kind = ErrorKind.RUNTIME_FAULT
