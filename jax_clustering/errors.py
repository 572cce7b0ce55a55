"""Exceptions raised by the measurement pipeline."""


class InvalidConfigurationError(ValueError):
    """Raised for parameter values or combinations the pipeline cannot run with."""


class UnimplementedError(NotImplementedError):
    """Raised by extension points that have no implementation yet."""


class CatalogueIOError(IOError):
    """Raised when a catalogue file cannot be read or holds no valid rows."""


class ParameterIOError(IOError):
    """Raised when a parameter file cannot be read."""
