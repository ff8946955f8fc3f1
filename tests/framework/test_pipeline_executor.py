"""Tests for the transformation pipeline executor."""

from __future__ import annotations

import threading

import pytest

from mapspine.core.errors import PipelineAbortedError, PipelineValidationError
from mapspine.core.settings import clear_settings_cache
from mapspine.framework.pipelines import (
    ErrorHandlerResult,
    PipelineContext,
    PipelineStage,
    StageType,
    TransformationPipeline,
)


class FnStage(PipelineStage):
    """Stage delegating to ``fn(data, context)``."""

    def __init__(self, name, fn=None, stage_type=StageType.TRANSFORM, valid=True):
        super().__init__(name)
        self.stage_type = stage_type
        self.fn = fn or (lambda data, context: data)
        self.valid = valid

    def execute(self, data, context):
        return self.fn(data, context)

    def validate(self):
        return self.valid


def append(tag):
    return lambda data, context: [*data, tag]


def fail(message="stage exploded"):
    def fn(data, context):
        raise RuntimeError(message)

    return fn


@pytest.fixture()
def pipeline(recorder):
    return TransformationPipeline(
        [
            FnStage("clean", append("clean"), StageType.PREPROCESS),
            FnStage("map", append("map"), StageType.TRANSFORM),
            FnStage("check", append("check"), StageType.VALIDATE),
            FnStage("enrich", append("enrich"), StageType.POSTPROCESS),
        ],
        config={"name": "demo"},
        events=recorder.events,
    )


# ── Structure ───────────────────────────────────────────────────────────


class TestValidation:
    def test_empty(self):
        with pytest.raises(PipelineValidationError, match="at least one stage"):
            TransformationPipeline([])

    def test_duplicate_names(self):
        with pytest.raises(PipelineValidationError, match="Duplicate stage name: a"):
            TransformationPipeline([FnStage("a"), FnStage("a")])

    def test_stage_validation(self):
        with pytest.raises(PipelineValidationError, match="Stage broken failed validation"):
            TransformationPipeline([FnStage("broken", valid=False)])

    def test_canonical_order(self):
        with pytest.raises(PipelineValidationError, match="Invalid stage order"):
            TransformationPipeline([
                FnStage("check", stage_type=StageType.VALIDATE),
                FnStage("map", stage_type=StageType.TRANSFORM),
            ])

    def test_repeated_and_skipped_types_allowed(self):
        pipeline = TransformationPipeline([
            FnStage("a", stage_type=StageType.TRANSFORM),
            FnStage("b", stage_type=StageType.TRANSFORM),
            FnStage("c", stage_type=StageType.POSTPROCESS),
        ])
        assert [s.name for s in pipeline.stages] == ["a", "b", "c"]

    def test_add_remove_get(self, pipeline):
        with pytest.raises(PipelineValidationError):
            pipeline.add_stage(FnStage("late", stage_type=StageType.PREPROCESS))
        assert pipeline.get_stage("late") is None
        pipeline.add_stage(FnStage("audit", stage_type=StageType.POSTPROCESS))
        assert pipeline.get_stage("audit").name == "audit"
        assert pipeline.remove_stage("audit") is True
        assert pipeline.remove_stage("audit") is False


# ── Execution ───────────────────────────────────────────────────────────


class TestExecute:
    def test_stages_run_in_order(self, pipeline):
        result = pipeline.execute([])
        assert result.data == ["clean", "map", "check", "enrich"]
        assert result.success is True
        assert result.execution_time > 0

    def test_input_not_mutated(self):
        def mutate(data, context):
            data["touched"] = True
            return data

        pipeline = TransformationPipeline([FnStage("m", mutate)])
        original = {"a": 1}
        assert pipeline.execute(original).data == {"a": 1, "touched": True}
        assert original == {"a": 1}

    def test_stage_metrics_grow(self, pipeline):
        pipeline.execute([])
        first = {s["name"]: s for s in pipeline.get_metrics()["stages"]}
        pipeline.execute([])
        second = {s["name"]: s for s in pipeline.get_metrics()["stages"]}
        for name in ("clean", "map", "check", "enrich"):
            assert second[name]["execution_count"] == first[name]["execution_count"] + 1
            assert second[name]["total_execution_time"] > first[name]["total_execution_time"]

    def test_events(self, pipeline, recorder):
        pipeline.execute([])
        names = [n for n in recorder.names() if n != "progress"]
        assert names[0] == "pipelineStart"
        assert names[1:-1] == ["stageStart", "stageComplete"] * 4
        assert names[-1] == "pipelineComplete"
        complete = recorder.of("pipelineComplete")[0]
        assert complete["success"] is True
        assert complete["data"] == ["clean", "map", "check", "enrich"]

    def test_progress(self, pipeline):
        updates = []
        pipeline.execute([], progress_callback=updates.append)
        assert [(u["current"], u["total"], u["stage"]) for u in updates] == [
            (0, 4, "clean"),
            (1, 4, "map"),
            (2, 4, "check"),
            (3, 4, "enrich"),
        ]
        assert updates[2]["percentage"] == 50.0

    def test_context_shared_between_stages(self):
        def producer(data, context):
            context.set_state("seen", len(data))
            context.add_warning("short input", "producer")
            return data

        def consumer(data, context):
            return {"seen": context.get_state("seen"), "source": context.metadata["source"]}

        pipeline = TransformationPipeline([FnStage("producer", producer), FnStage("consumer", consumer)])
        result = pipeline.execute([1, 2], metadata={"source": "crm"})
        assert result.data == {"seen": 2, "source": "crm"}
        summary = result.context.summary()
        assert summary["warning_count"] == 1
        assert summary["warnings"][0]["stage"] == "producer"

    def test_explicit_context(self, clock):
        ctx = PipelineContext(metadata={"run": 7}, clock=clock)
        pipeline = TransformationPipeline([FnStage("m")])
        assert pipeline.execute(1, context=ctx).context is ctx

    def test_pipeline_metrics(self, pipeline):
        pipeline.execute([])
        pipeline.remove_stage("map")
        pipeline.add_stage(FnStage("map", fail(), StageType.POSTPROCESS))
        with pytest.raises(RuntimeError):
            pipeline.execute([])
        metrics = pipeline.get_metrics()["pipeline"]
        assert metrics["execution_count"] == 2
        assert metrics["success_count"] == 1
        assert metrics["error_count"] == 1
        assert metrics["success_rate"] == 50.0


class TestStageErrors:
    def test_error_propagates(self, recorder):
        pipeline = TransformationPipeline(
            [FnStage("ok", append("ok")), FnStage("bad", fail()), FnStage("never", append("never"))],
            events=recorder.events,
        )
        with pytest.raises(RuntimeError, match="stage exploded"):
            pipeline.execute([])
        assert recorder.of("stageError")[0]["stage"] == "bad"
        failed = recorder.of("pipelineError")[0]
        assert failed["success"] is False
        assert failed["context"]["errors"][0]["stage"] == "bad"
        stages = {s["name"]: s for s in pipeline.get_metrics()["stages"]}
        assert stages["bad"]["error_count"] == 1
        assert stages["never"]["execution_count"] == 0

    def test_handler_continues_with_data(self):
        seen = []

        def handler(error, data, context):
            seen.append((str(error), data))
            return ErrorHandlerResult.continue_with([*data, "recovered"])

        pipeline = TransformationPipeline(
            [FnStage("ok", append("ok")), FnStage("bad", fail()), FnStage("next", append("next"))],
            error_handlers={StageType.TRANSFORM: handler},
        )
        result = pipeline.execute([])
        assert result.data == ["ok", "recovered", "next"]
        assert seen == [("stage exploded", ["ok"])]
        assert len(result.context.errors) == 1

    @pytest.mark.parametrize("outcome", [None, ErrorHandlerResult.rethrow()])
    def test_handler_declines(self, outcome):
        pipeline = TransformationPipeline(
            [FnStage("bad", fail())],
            error_handlers={"transformation": lambda e, d, c: outcome},
        )
        with pytest.raises(RuntimeError):
            pipeline.execute([])

    def test_handler_only_for_its_stage_type(self):
        pipeline = TransformationPipeline(
            [FnStage("bad", fail())],
            error_handlers={StageType.VALIDATE: lambda e, d, c: ErrorHandlerResult.continue_with(d)},
        )
        with pytest.raises(RuntimeError):
            pipeline.execute([])


class TestMiddleware:
    def test_before_and_after(self):
        calls = []

        def tracer(data, context, phase):
            calls.append(phase)
            return [*data, phase]

        pipeline = TransformationPipeline([FnStage("s", append("stage"))], middleware=[tracer])
        assert pipeline.execute([]).data == ["before", "stage", "after"]
        assert calls == ["before", "after"]


class TestAbort:
    def test_abort_between_stages(self):
        def stop(data, context):
            context.abort()
            return data

        pipeline = TransformationPipeline([
            FnStage("first", stop),
            FnStage("second", append("second")),
        ])
        with pytest.raises(PipelineAbortedError, match="Pipeline execution aborted"):
            pipeline.execute([])
        second = pipeline.get_stage("second").get_metrics()
        assert second["execution_count"] == 1
        assert second["error_count"] == 1

    def test_aborted_before_start(self, clock):
        ctx = PipelineContext(clock=clock)
        ctx.abort()
        pipeline = TransformationPipeline([FnStage("only")])
        with pytest.raises(PipelineAbortedError):
            pipeline.execute([], context=ctx)


# ── Batches ─────────────────────────────────────────────────────────────


def doubler():
    def fn(data, context):
        if data == "bad":
            raise ValueError("cannot double")
        return data * 2

    return TransformationPipeline([FnStage("double", fn)])


class TestBatch:
    def test_results_keep_item_order(self):
        result = doubler().execute_batch(list(range(10)), batch_size=4, parallelism=2)
        assert [r.data for r in result.results] == [i * 2 for i in range(10)]
        assert result.total_processed == 10
        assert result.success_count == 10
        assert result.error_count == 0
        assert result.results[5].context.metadata == {"batch_index": 1, "item_index": 5, "total_batches": 3}

    def test_sub_batches_run_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)

        def meet(data, context):
            barrier.wait()
            return data

        pipeline = TransformationPipeline([FnStage("meet", meet)])
        result = pipeline.execute_batch(["a", "b"], batch_size=2, parallelism=2)
        assert result.success_count == 2

    def test_stops_on_first_error(self):
        result = doubler().execute_batch([1, "bad", 3, 4, 5, 6], batch_size=2, parallelism=1)
        assert [r.data for r in result.results] == [2]
        assert [e.item_index for e in result.errors] == [1]
        assert result.total_processed == 2

    def test_continue_on_error(self):
        result = doubler().execute_batch([1, "bad", 3, "bad"], batch_size=3, continue_on_error=True)
        assert [r.data for r in result.results] == [2, 6]
        assert [e.item_index for e in result.errors] == [1, 3]
        assert str(result.errors[0].error) == "cannot double"
        data = result.to_dict()
        assert data["success_count"] == 2
        assert data["error_count"] == 2
        assert data["errors"][1]["data"] == "bad"

    def test_settings_defaults(self, monkeypatch):
        monkeypatch.setenv("MAPSPINE_BATCH_SIZE", "2")
        clear_settings_cache()
        result = doubler().execute_batch([1, 2, 3])
        assert result.results[2].context.metadata["total_batches"] == 2

    def test_empty(self):
        assert doubler().execute_batch([]).total_processed == 0

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            doubler().execute_batch([1], batch_size=-1)
