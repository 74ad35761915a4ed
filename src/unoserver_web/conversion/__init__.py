"""
Conversion core: a pool of long-lived unoserver listeners behind a bounded
admission queue. Front-ends (the HTTP API or anything else) hand it a source
path and a target path and get back either a converted file or an error.
"""

from .config import PoolConfig
from .errors import (
    ConversionAborted,
    ConversionError,
    ConversionFailed,
    ConversionInterrupted,
    ConversionTimeout,
    ConverterStartError,
    ProcessUnavailable,
    SourceNotFoundError,
)
from .interfaces import ConverterGateway, ConverterProcess, QueueStatus, WorkerStatus
from .queue import AdmissionQueue
from .service import ConversionPool, ConverterInstance, convert_file
