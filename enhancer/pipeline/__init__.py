"""
Image Enhancement Pipeline
Quality resolution, resize, filters and the coordinator that runs them.
"""
from .quality import resolve, TargetDimensions, QUALITY_TIERS
from .resize import ResizeStage, ResizeConfig
from .filters import FilterStage, apply_filters
from .coordinator import ImagePipeline

__all__ = [
    'resolve', 'TargetDimensions', 'QUALITY_TIERS',
    'ResizeStage', 'ResizeConfig',
    'FilterStage', 'apply_filters',
    'ImagePipeline',
]
