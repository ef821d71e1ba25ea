"""
Stage unit providers for the media pipeline.
"""

from .base import StageUnitProvider, ProgressCallback
from .fetch import FetchStage
from .transform import TransformStage
from .publish import PublishStage

__all__ = [
    "StageUnitProvider",
    "ProgressCallback",
    "FetchStage",
    "TransformStage",
    "PublishStage",
]
