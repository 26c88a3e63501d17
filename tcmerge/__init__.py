"""tcmerge — merge sync-conflict copies of a TaskChampion task database."""
__version__ = "0.3.0"

from .core import TaskMerge, MergeReport, merge_files
from .config import MergeConfig
from .errors import (MergeError, NotFound, CorruptStore, IncompatibleSchema,
                     EmptyInput, WriteFailure, ConcurrentMergeDetected)

__all__ = ["TaskMerge", "MergeReport", "merge_files", "MergeConfig",
           "MergeError", "NotFound", "CorruptStore", "IncompatibleSchema",
           "EmptyInput", "WriteFailure", "ConcurrentMergeDetected"]
