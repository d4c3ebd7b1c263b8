"""
Error taxonomy for the call engine.

Each error carries a ``remediation`` string the UI can show verbatim; device
errors are distinct types because each needs different text.
"""

from __future__ import annotations

from typing import Optional


class CallEngineError(RuntimeError):
    """Base class for engine errors."""

    code = "error"
    remediation = "Something went wrong with the call. Please try again."

    def __init__(self, message: Optional[str] = None, *, remediation: Optional[str] = None) -> None:
        super().__init__(message or self.remediation)
        if remediation is not None:
            self.remediation = remediation


# ---------------------------------------------------------------- media errors


class MediaError(CallEngineError):
    """Local capture could not be started."""

    code = "media-error"
    remediation = "Failed to access camera/microphone. Please check your device settings."


class PermissionDenied(MediaError):
    code = "permission-denied"
    remediation = "Camera/microphone permission denied. Please allow access and try again."


class DeviceNotFound(MediaError):
    code = "device-not-found"
    remediation = "No camera/microphone found. Please connect a device and try again."


class DeviceBusy(MediaError):
    code = "device-busy"
    remediation = "Camera/microphone is being used by another application."


class Unsupported(MediaError):
    """Media or connection capability missing from the runtime."""

    code = "unsupported"
    remediation = "Calling is not supported on this device."


# ------------------------------------------------------------ signaling errors


class SignalingRace(CallEngineError):
    """Glare or duplicate delivery; recoverable and only logged."""

    code = "signaling-race"
    remediation = "Call connection is settling. Please wait..."


class RenegotiationFailed(CallEngineError):
    """A mid-call offer/answer round failed; media state is kept."""

    code = "renegotiation-failed"
    remediation = "Could not update the call media. The call continues with the previous setup."


class ConnectionConfigurationRejected(CallEngineError):
    """The runtime refused one ICE configuration shape."""

    code = "configuration-rejected"
    remediation = "Connection setup issue. Attempting to continue..."


class Closed(CallEngineError):
    """Operation attempted on a torn-down peer link."""

    code = "closed"
    remediation = "The call connection is already closed."


# -------------------------------------------------------------- session errors


class NoAnswer(CallEngineError):
    code = "no-answer"
    remediation = "No answer. Call cancelled."


class CallTimeout(CallEngineError):
    code = "timeout"
    remediation = "Missed call. The incoming call timed out."


class Busy(CallEngineError):
    """Another call is already in progress."""

    code = "busy"
    remediation = "Another call is already in progress."


class CommandRejected(CallEngineError):
    """A user command is not valid in the current call state."""

    code = "rejected"
    remediation = "That action is not available right now."


__all__ = [
    "Busy",
    "CallEngineError",
    "CallTimeout",
    "Closed",
    "CommandRejected",
    "ConnectionConfigurationRejected",
    "DeviceBusy",
    "DeviceNotFound",
    "MediaError",
    "NoAnswer",
    "PermissionDenied",
    "RenegotiationFailed",
    "SignalingRace",
    "Unsupported",
]
