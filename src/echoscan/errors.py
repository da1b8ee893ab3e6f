from __future__ import annotations


class EchoScanError(Exception):
    """Base class for ranging engine errors."""


class ConfigurationError(EchoScanError, ValueError):
    """A required collaborator is missing or a parameter is out of range."""


class StateError(EchoScanError, RuntimeError):
    """Operation is not valid in the engine's current state."""


class TransientPlaybackError(EchoScanError):
    """A single chirp or test tone could not be emitted.

    The scan loop logs it and carries on with the next cycle.
    """
