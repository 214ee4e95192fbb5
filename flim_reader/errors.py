"""Exceptions raised while reading PicoQuant FLIM files."""


class FlimReaderError(Exception):
    """Base class for all errors of this package."""


class FormatError(FlimReaderError, IOError):
    """The file is not a supported PTU/PT3 T3 file."""


class ConfigurationError(FlimReaderError, ValueError):
    """The header does not describe a usable scan (no imaging header, no markers...)."""


class GeometryError(FlimReaderError, ZeroDivisionError):
    """The scan geometry cannot be derived from the record stream."""


class ResourceError(FlimReaderError, MemoryError):
    """An output array could not be allocated."""


class ParameterValidationError(FlimReaderError, ValueError):
    """A load parameter is outside its valid bounds."""


class LoadCancelled(FlimReaderError):
    """Decoding was cancelled through a CancelToken."""
