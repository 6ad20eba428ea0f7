"""
Custom Exception Hierarchy for the bridge

Provides structured exceptions for every failure a command can hit.
All custom exceptions inherit from BridgeError so the dispatcher can turn
any of them into a failure response with a single except clause.
"""
from typing import Optional


class BridgeError(Exception):
    """
    Base exception for all bridge-specific errors.

    The message is what the host sees in the ``error`` field of the
    response; ``details`` only goes to the logs.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration and Initialization Errors

class ConfigurationError(BridgeError):
    """
    Invalid configuration or settings.

    Raised when configuration validation fails or required settings are missing.
    """
    pass


class SessionInitializationError(BridgeError):
    """Failed to allocate the networking session at startup."""
    pass


# Command Errors

class CommandError(BridgeError):
    """
    Command line could not be turned into an executable command.

    Base class for protocol-level input errors.
    """
    pass


class ParseError(CommandError):
    """Input line is not a structurally valid command."""
    pass


class UnknownActionError(CommandError):
    """Command carries an action tag the bridge does not know."""
    pass


# Fingerprint Errors

class FingerprintError(BridgeError):
    """JA3 string or browser profile rejected."""
    pass


# Connection State Errors

class ConnectionStateError(BridgeError):
    """
    Invalid operation for the current connection state.

    Distinguishes caller mistakes from transport failures.
    """
    def __init__(self, message: str, current_state: str, expected_state: Optional[str] = None):
        super().__init__(message, {"current_state": current_state, "expected_state": expected_state})
        self.current_state = current_state
        self.expected_state = expected_state


class NotConnectedError(ConnectionStateError):
    """Operation requires a live websocket but none is open."""
    def __init__(self, message: str = "websocket not connected"):
        super().__init__(message, current_state="disconnected", expected_state="connected")


# Network and Transport Errors

class TransportError(BridgeError):
    """
    Network transport failures.

    Base class for all errors reported by the networking library.
    """
    pass


class ConnectionError(TransportError):
    """Failed to establish the websocket connection."""
    pass


class SendError(TransportError):
    """Failed to write a message to the websocket."""
    pass


class ReceiveError(TransportError):
    """Failed to read a message from the websocket."""
    pass


class ReceiveTimeoutError(ReceiveError):
    """No message arrived before the receive deadline."""
    pass


class TeardownError(TransportError):
    """Closing the websocket or the session reported an error."""
    pass
