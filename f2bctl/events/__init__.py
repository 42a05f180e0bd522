"""
f2bctl Events - callback ingestion and live broadcasting.
"""

from .console import HubLogHandler
from .hub import BroadcastHub, Observer
from .pipeline import EventPipeline, PipelineResult, Stage

__all__ = [
    "BroadcastHub",
    "Observer",
    "EventPipeline",
    "PipelineResult",
    "Stage",
    "HubLogHandler",
]
