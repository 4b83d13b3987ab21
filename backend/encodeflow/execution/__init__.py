"""
Process execution: runner, process-tree control and progress parsing.
"""

from .events import START_FAILURE_EXIT_CODE, RunControl, RunnerEvent, RunnerEventKind
from .process_tree import ProcessTreeController, PsutilTreeController
from .progress import ProgressParser, ProgressSample, format_eta
from .runner import ProcessRunner

__all__ = [
    "START_FAILURE_EXIT_CODE",
    "RunControl",
    "RunnerEvent",
    "RunnerEventKind",
    "ProcessTreeController",
    "PsutilTreeController",
    "ProgressParser",
    "ProgressSample",
    "format_eta",
    "ProcessRunner",
]
