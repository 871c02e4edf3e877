"""Exception types raised by the control channel."""
from __future__ import annotations


class ControlChannelError(Exception):
    """Base exception type for the control channel."""

    pass


class ControlMessageDecodeError(ControlChannelError):
    """Exception raised when a control frame cannot be decoded."""

    pass


class ControlMessageEncodeError(ControlChannelError):
    """Exception raised when a control message cannot be encoded."""

    pass


class InjectorUnavailableError(ControlChannelError):
    """Exception raised when no input injector can be used on this host."""

    pass


class FileTransferError(ControlChannelError):
    """Exception raised when an outgoing file cannot be read."""

    pass
