"""Tests for PipelineBuilder."""

import pytest

from mapspine.core.errors import PipelineValidationError
from mapspine.framework.pipelines import ErrorHandlerResult, PipelineBuilder, StageType
from mapspine.framework.stages import (
    DataEnrichmentStage,
    DataQualityCheckStage,
    DataSanitizationStage,
    FieldMappingStage,
)


def mapping():
    return FieldMappingStage(rules=[{"type": "direct", "source_field": "a", "target_field": "x"}])


class TestTypedAdders:
    def test_builds_in_declared_order(self, recorder):
        pipeline = (
            PipelineBuilder()
            .preprocessing(DataSanitizationStage(sanitizers=["trim_strings"]))
            .transformation(mapping())
            .validation(DataQualityCheckStage(rules=[{"type": "required", "field": "x"}]))
            .postprocessing(DataEnrichmentStage(rules=[{"type": "timestamp", "target_field": "ts"}]))
            .configure(name="crm_to_erp")
            .with_events(recorder.events)
            .build()
        )
        assert [s.name for s in pipeline.stages] == [
            "data_sanitization",
            "field_mapping",
            "data_quality_check",
            "data_enrichment",
        ]
        assert pipeline.config["name"] == "crm_to_erp"

        result = pipeline.execute({"a": "  1 "})
        assert result.data["x"] == "1"
        assert "ts" in result.data
        assert recorder.names()[0] == "pipelineStart"

    @pytest.mark.parametrize(
        "adder", ["preprocessing", "validation", "postprocessing"]
    )
    def test_wrong_stage_type(self, adder):
        builder = PipelineBuilder()
        with pytest.raises(PipelineValidationError, match="must be of type"):
            getattr(builder, adder)(mapping())

    def test_generic_stage_accepts_any_type(self):
        pipeline = PipelineBuilder().stage(mapping()).build()
        assert pipeline.stages[0].stage_type is StageType.TRANSFORM

    def test_rejects_non_stage(self):
        with pytest.raises(PipelineValidationError, match="instance of PipelineStage"):
            PipelineBuilder().stage(lambda data, context: data)

    def test_order_checked_at_build(self):
        builder = PipelineBuilder().stage(DataEnrichmentStage(rules=[])).stage(mapping())
        with pytest.raises(PipelineValidationError, match="Invalid stage order"):
            builder.build()

    def test_empty_builder(self):
        with pytest.raises(PipelineValidationError):
            PipelineBuilder().build()


class TestHandlersAndMiddleware:
    def test_error_handler_by_name(self):
        pipeline = (
            PipelineBuilder()
            .transformation(mapping())
            .validation(DataQualityCheckStage(rules=[{"type": "required", "field": "missing"}], threshold=1.0))
            .error_handler("validation", lambda e, data, ctx: ErrorHandlerResult.continue_with(data))
            .build()
        )
        assert pipeline.execute({"a": 1}).data == {"x": 1}

    def test_middleware(self):
        phases = []

        def tracer(data, context, phase):
            phases.append(phase)
            return data

        pipeline = PipelineBuilder().transformation(mapping()).use(tracer).build()
        pipeline.execute({"a": 1})
        assert phases == ["before", "after"]

    def test_configure_merges(self):
        pipeline = (
            PipelineBuilder()
            .transformation(mapping())
            .configure({"name": "first", "owner": "ops"})
            .configure(name="second")
            .build()
        )
        assert pipeline.config["name"] == "second"
        assert pipeline.config["owner"] == "ops"
