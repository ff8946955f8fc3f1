"""
Built-in pipeline stages.

    PREPROCESS    DataValidationStage, DataSanitizationStage
    TRANSFORM     FieldMappingStage, DataAggregationStage
    VALIDATE      DataQualityCheckStage
    POSTPROCESS   DataEnrichmentStage
"""

from mapspine.framework.stages.aggregation import Aggregation, DataAggregationStage
from mapspine.framework.stages.enrichment import DataEnrichmentStage, EnrichmentRule
from mapspine.framework.stages.mapping import Condition, FieldMappingStage, MappingRule
from mapspine.framework.stages.quality import DataQualityCheckStage, QualityRule
from mapspine.framework.stages.sanitization import DataSanitizationStage
from mapspine.framework.stages.validation import BusinessRule, DataValidationStage, FieldSpec

__all__ = [
    "Aggregation",
    "BusinessRule",
    "Condition",
    "DataAggregationStage",
    "DataEnrichmentStage",
    "DataQualityCheckStage",
    "DataSanitizationStage",
    "DataValidationStage",
    "EnrichmentRule",
    "FieldMappingStage",
    "FieldSpec",
    "MappingRule",
    "QualityRule",
]
