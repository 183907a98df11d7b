"""
Call errors.

Every failure that can end a call attempt derives from CallError so the
state machine can treat them uniformly at its boundary.
"""


class CallError(Exception):
    """Base exception for call errors"""
    pass


class DeviceError(CallError):
    """Raised when a capture device is denied, missing or cannot be opened"""
    pass


class NegotiationError(CallError):
    """Raised when a session description is rejected or connectivity fails"""
    pass


class RelayUnavailable(CallError):
    """Raised when the signaling relay cannot send or subscribe"""
    pass


class SignalingError(CallError):
    """Raised when an inbound signaling payload is malformed"""
    pass


class CallStateError(CallError):
    """Raised when a user action is not valid in the current call phase"""
    pass
