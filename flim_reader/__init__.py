__author__ = """Timothy Kallady"""
__email__ = 't.kallady@garvan.org.au'
__version__ = '0.3.0'


from .errors import (FlimReaderError, FormatError, ConfigurationError, GeometryError,
                     ResourceError, ParameterValidationError, LoadCancelled)
from .header import AcquisitionConfig, make_config, read_header
from .options import LoadOptions, JOIN_ALL, BINNED
from .progress import CancelToken
from .records import Channel, DecoderState, decode, iter_records
from .pqreader import load_ptfile, reconstruct
