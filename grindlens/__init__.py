"""
GrindLens: Cachegrind/Callgrind profile import core.

Parses callgrind-format dumps into a shared cost model of objects, files,
functions, lines, instructions, calls and jumps, one Part per imported dump.
"""

from .costs import Channel, ChannelRegistry, CostVector, SubMapping
from .loader import (
    CallgrindLoader,
    Cancelled,
    TraceImportError,
    can_import,
    can_import_file,
    find_part_files,
    load_parts,
)
from .model import (
    SENTINEL_NAME,
    Diagnostic,
    InstrCall,
    LineCall,
    Part,
    ProfileData,
    TraceCall,
    TraceFile,
    TraceFunction,
    TraceInstr,
    TraceJump,
    TraceLine,
    TraceObject,
)
from .position import PositionFormatError, PositionSpec, decode_position
from .settings import LoaderSettings, default_settings
from .tokenizer import LineTokenizer
from .worker import ImportWorker

APP_NAME = "GrindLens"
APP_VERSION = "1.0.0"

__version__ = APP_VERSION

__all__ = [
    "APP_NAME",
    "APP_VERSION",
    "CallgrindLoader",
    "Cancelled",
    "Channel",
    "ChannelRegistry",
    "CostVector",
    "Diagnostic",
    "ImportWorker",
    "InstrCall",
    "LineCall",
    "LineTokenizer",
    "LoaderSettings",
    "Part",
    "PositionFormatError",
    "PositionSpec",
    "ProfileData",
    "SENTINEL_NAME",
    "SubMapping",
    "TraceCall",
    "TraceFile",
    "TraceFunction",
    "TraceImportError",
    "TraceInstr",
    "TraceJump",
    "TraceLine",
    "TraceObject",
    "can_import",
    "can_import_file",
    "decode_position",
    "default_settings",
    "find_part_files",
    "load_parts",
]
