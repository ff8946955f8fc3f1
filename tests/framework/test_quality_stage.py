"""Tests for DataQualityCheckStage."""

from datetime import datetime, timedelta

import pytest

from mapspine.core.errors import QualityThresholdError, StageError
from mapspine.framework.pipelines import PipelineContext, StageType
from mapspine.framework.stages import DataQualityCheckStage


@pytest.fixture()
def ctx(clock):
    return PipelineContext(clock=clock)


def check(ctx, rules, data, threshold=0.0):
    DataQualityCheckStage(rules=rules, threshold=threshold).execute(data, ctx)
    return ctx.get_state("quality_report")


class TestRules:
    def test_required(self, ctx):
        report = check(ctx, [{"type": "required", "field": "id"}], [{"id": 1}, {"id": ""}, {"id": None}, {}])
        assert report["passed_records"] == 1
        assert report["failed_records"] == 3
        assert [i["index"] for i in report["issues"]] == [1, 2, 3]
        assert report["issues"][0]["message"] == "Required field id is missing"
        assert report["issues"][0]["rule"] == "required:id"

    def test_format(self, ctx):
        rules = [
            {"type": "format", "field": "email", "format": "email"},
            {"type": "format", "field": "sku", "pattern": r"^[A-Z]{3}-\d+$"},
        ]
        data = [
            {"email": "a@b.io", "sku": "ABC-1"},
            {"email": "not-an-email", "sku": "ABC-2"},
            {"email": "a@b.io", "sku": "abc"},
            {},
        ]
        report = check(ctx, rules, data)
        assert report["passed_records"] == 2
        assert [i["type"] for i in report["issues"]] == ["format", "format"]

    def test_range(self, ctx):
        rules = [{"type": "range", "field": "age", "min": 0, "max": 120}]
        report = check(ctx, rules, [{"age": 0}, {"age": 120}, {"age": 121}, {"age": "x"}, {"age": "5"}])
        assert [i["index"] for i in report["issues"]] == [2, 3]

    def test_uniqueness(self, ctx):
        rules = [{"type": "uniqueness", "field": "id"}]
        report = check(ctx, rules, [{"id": 1}, {"id": 2}, {"id": 1}, {}, {}])
        assert [i["index"] for i in report["issues"]] == [2]

    def test_uniqueness_is_per_execution(self, ctx, clock):
        stage = DataQualityCheckStage(rules=[{"type": "uniqueness", "field": "id"}], threshold=1.0)
        stage.execute([{"id": 1}], ctx)
        stage.execute([{"id": 1}], PipelineContext(clock=clock))

    def test_timeliness(self, ctx, clock):
        now = clock.now()
        rules = [{"type": "timeliness", "field": "updated", "max_age_seconds": 3600}]
        data = [
            {"updated": (now - timedelta(minutes=5)).isoformat()},
            {"updated": "2024-01-15T10:00:00Z"},
            {"updated": now - timedelta(minutes=59)},
            {"updated": "garbage"},
            {"updated": datetime(2024, 1, 15, 11, 30)},
        ]
        report = check(ctx, rules, data)
        assert [i["index"] for i in report["issues"]] == [1, 3]

    def test_custom(self, ctx):
        rules = [
            {"type": "custom", "name": "positive_total", "check": lambda r: r["total"] > 0, "message": "total <= 0"},
        ]
        report = check(ctx, rules, [{"total": 5}, {"total": 0}, {}])
        assert [(i["index"], i["message"]) for i in report["issues"]][0] == (1, "total <= 0")
        assert report["issues"][1]["index"] == 2
        assert report["issues"][1]["rule"] == "positive_total"


class TestThreshold:
    def test_score_and_threshold(self, ctx):
        stage = DataQualityCheckStage(rules=[{"type": "required", "field": "id"}], threshold=0.75)
        data = [{"id": 1}, {"id": 2}, {"id": 3}, {}]
        assert stage.execute(data, ctx) is data
        assert ctx.get_state("quality_report")["quality_score"] == 0.75

    def test_below_threshold_raises(self, ctx):
        stage = DataQualityCheckStage(rules=[{"type": "required", "field": "id"}], threshold=0.8)
        with pytest.raises(QualityThresholdError) as excinfo:
            stage.execute([{"id": 1}, {}], ctx)
        assert excinfo.value.code == "QUALITY_THRESHOLD_ERROR"
        assert excinfo.value.details["quality_score"] == 0.5
        assert "below threshold 0.80" in str(excinfo.value)
        assert ctx.get_state("quality_report")["failed_records"] == 1

    def test_empty_list_scores_one(self, ctx):
        report = check(ctx, [{"type": "required", "field": "id"}], [], threshold=1.0)
        assert report["quality_score"] == 1.0
        assert report["total_records"] == 0

    def test_single_record(self, ctx):
        report = check(ctx, [{"type": "required", "field": "id"}], {"id": 7}, threshold=1.0)
        assert report["total_records"] == 1


class TestConfiguration:
    def test_defaults(self):
        stage = DataQualityCheckStage(rules=[])
        assert stage.threshold == 0.8
        assert stage.stage_type is StageType.VALIDATE

    @pytest.mark.parametrize(
        ("rules", "kwargs", "message"),
        [
            ([], {"threshold": 1.5}, "between 0 and 1"),
            ([{"type": "required"}], {}, "needs a field"),
            ([{"type": "format", "field": "x", "format": "klingon"}], {}, "pattern or known format"),
            ([{"type": "custom", "name": "c"}], {}, "needs a check"),
            ([{"type": "timeliness", "field": "t"}], {}, "needs max_age_seconds"),
            ([{"type": "spelling", "field": "t"}], {}, "Invalid rule #0"),
        ],
    )
    def test_invalid(self, rules, kwargs, message):
        with pytest.raises(StageError, match=message):
            DataQualityCheckStage(rules=rules, **kwargs)
