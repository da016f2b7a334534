"""
Transfer package - chunking, stream positioning and progress reporting shared
by artifact uploads and package push/pull.
"""
from .progress import NullProgress, ProgressFactory, ProgressSink, TransferProgress, progress_factory
from .streams import LimitedReader, ProgressReader, read_full, skip_to_offset

__all__ = [
    "LimitedReader",
    "NullProgress",
    "ProgressFactory",
    "ProgressReader",
    "ProgressSink",
    "TransferProgress",
    "progress_factory",
    "read_full",
    "skip_to_offset",
]
