"""mapspine.framework -- The transformation pipeline.

Architecture::

    pipelines/      Stage contract, context, executor, builder
    stages/         Built-in stages (validation ... enrichment)
    transforms.py   Named value transforms used by field mapping
    expressions.py  Safe formula evaluation used by field mapping
"""

from mapspine.framework.pipelines import (
    PipelineBuilder,
    PipelineContext,
    PipelineStage,
    StageType,
    TransformationPipeline,
)
from mapspine.framework.transforms import TransformLibrary, default_library

__all__ = [
    "PipelineBuilder",
    "PipelineContext",
    "PipelineStage",
    "StageType",
    "TransformationPipeline",
    "TransformLibrary",
    "default_library",
]
