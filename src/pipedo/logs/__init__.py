"""Session log multiplexing."""

from .pipeline import LogPipeline, LogPipelineError, tail_lines
from .transforms import DEFAULT_PROGRESS_MARKER, DisplayFilter, LineSink, Timestamper

__all__ = [
    "DEFAULT_PROGRESS_MARKER",
    "DisplayFilter",
    "LineSink",
    "LogPipeline",
    "LogPipelineError",
    "Timestamper",
    "tail_lines",
]
