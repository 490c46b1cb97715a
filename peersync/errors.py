"""Exception types raised by peersync."""


class PeerSyncError(Exception):
    """Base class for all peersync errors."""


class ConfigurationError(PeerSyncError, ValueError):
    """Invalid engine or node configuration."""


class MessageDecodeError(PeerSyncError, ValueError):
    """An inbound message could not be decoded."""


class ClockDecodeError(MessageDecodeError):
    """A serialized logical clock could not be decoded."""


class EngineClosedError(PeerSyncError, RuntimeError):
    """Operation attempted on an engine that has been shut down."""
