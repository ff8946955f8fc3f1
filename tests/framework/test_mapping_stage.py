"""Tests for FieldMappingStage."""

import pytest

from mapspine.core.errors import FunctionNotFoundError, StageError, TransformationError
from mapspine.framework.pipelines import PipelineContext, StageType
from mapspine.framework.stages import FieldMappingStage
from mapspine.framework.transforms import TransformLibrary


@pytest.fixture()
def ctx(clock):
    return PipelineContext(clock=clock)


def run(ctx, rules, record, **kwargs):
    return FieldMappingStage(rules=rules, **kwargs).execute(record, ctx)


SOURCE = {
    "first": "Ada",
    "last": "Lovelace",
    "email": "ADA@EXAMPLE.COM",
    "tags": "math,poetry",
    "country": "GB",
    "order": {"qty": 3, "price": 2.5},
    "spend": 1200,
}


class TestRuleTypes:
    def test_direct_and_nested(self, ctx):
        rules = [
            {"type": "direct", "source_field": "first", "target_field": "name.given"},
            {"source_field": "order.qty", "target_field": "quantity"},
        ]
        assert run(ctx, rules, SOURCE) == {"name": {"given": "Ada"}, "quantity": 3}

    def test_transform(self, ctx):
        rules = [{"type": "transform", "source_field": "email", "target_field": "email", "transform": "lowercase"}]
        assert run(ctx, rules, SOURCE) == {"email": "ada@example.com"}

    def test_transform_type_alias_and_options(self, ctx):
        rules = [
            {
                "type": "transform",
                "source_field": "first",
                "target_field": "code",
                "transform_type": "pad",
                "options": {"length": 5, "char": "*"},
            }
        ]
        assert run(ctx, rules, SOURCE) == {"code": "**Ada"}

    def test_custom_transform_library(self, ctx):
        library = TransformLibrary({"initial": lambda value, options: value[0]})
        rules = [{"type": "transform", "source_field": "last", "target_field": "initial", "transform": "initial"}]
        assert run(ctx, rules, SOURCE, transforms=library) == {"initial": "L"}

    def test_concat(self, ctx):
        rules = [
            {"type": "concat", "source_fields": ["first", "middle", "last"], "target_field": "full", "separator": " "}
        ]
        assert run(ctx, rules, SOURCE) == {"full": "Ada  Lovelace"}

    def test_split(self, ctx):
        rules = [
            {"type": "split", "source_field": "tags", "target_field": "tags"},
            {"type": "split", "source_field": "none", "target_field": "empty", "separator": "|"},
        ]
        assert run(ctx, rules, SOURCE) == {"tags": ["math", "poetry"], "empty": []}

    def test_split_keeps_zero(self, ctx):
        rules = [
            {"type": "split", "source_field": "code", "target_field": "code"},
            {"type": "split", "source_field": "blank", "target_field": "blank"},
        ]
        assert run(ctx, rules, {"code": 0, "blank": ""}) == {"code": ["0"], "blank": []}

    def test_lookup(self, ctx):
        table = {"GB": "United Kingdom", "1": "one"}
        rules = [
            {"type": "lookup", "source_field": "country", "target_field": "country", "table": table},
            {"type": "lookup", "source_field": "first", "target_field": "unknown", "table": table, "default": "?"},
            {"type": "lookup", "source_field": "n", "target_field": "by_string", "table": table},
        ]
        assert run(ctx, rules, {**SOURCE, "n": 1}) == {
            "country": "United Kingdom",
            "unknown": "?",
            "by_string": "one",
        }

    def test_formula(self, ctx):
        rules = [{"type": "formula", "target_field": "total", "expression": "{order.qty} * {order.price}"}]
        assert run(ctx, rules, SOURCE) == {"total": 7.5}

    def test_conditional(self, ctx):
        rules = [
            {
                "type": "conditional",
                "target_field": "tier",
                "conditions": [
                    {"field": "spend", "operator": "gte", "value": 5000, "result": "platinum"},
                    {"field": "spend", "operator": "gte", "value": 1000, "result": "gold"},
                ],
                "default": "standard",
            },
            {
                "type": "conditional",
                "target_field": "contact",
                "conditions": [{"field": "phone", "operator": "exists", "result_field": "phone"}],
                "default": "none",
            },
        ]
        assert run(ctx, rules, SOURCE) == {"tier": "gold", "contact": "none"}
        assert run(ctx, rules, {"spend": 10, "phone": "555"}) == {"tier": "standard", "contact": "555"}

    @pytest.mark.parametrize(
        ("operator", "value", "expected"),
        [
            ("eq", "GB", True),
            ("ne", "GB", False),
            ("in", ["FR", "GB"], True),
            ("not_in", ["FR"], True),
            ("contains", "B", True),
            ("matches", r"^G", True),
            ("lt", 5, False),
            ("not_exists", None, False),
        ],
    )
    def test_condition_operators(self, ctx, operator, value, expected):
        rules = [
            {
                "type": "conditional",
                "target_field": "hit",
                "conditions": [{"field": "country", "operator": operator, "value": value, "result": True}],
                "default": False,
            }
        ]
        assert run(ctx, rules, SOURCE) == {"hit": expected}


class TestSemantics:
    def test_missing_source_is_none(self, ctx):
        assert run(ctx, [{"source_field": "ghost", "target_field": "x"}], SOURCE) == {"x": None}

    def test_strict_missing_source(self, ctx):
        with pytest.raises(TransformationError, match="Source field ghost missing"):
            run(ctx, [{"source_field": "ghost", "target_field": "x"}], SOURCE, strict_mapping=True)

    def test_unknown_transform_copies_value(self, ctx):
        rules = [{"type": "transform", "source_field": "first", "target_field": "x", "transform": "shout"}]
        assert run(ctx, rules, SOURCE) == {"x": "Ada"}
        assert "Unknown transform shout" in ctx.warnings[0].message

    def test_unknown_transform_strict(self, ctx):
        rules = [{"type": "transform", "source_field": "first", "target_field": "x", "transform": "shout"}]
        with pytest.raises(FunctionNotFoundError):
            run(ctx, rules, SOURCE, strict_mapping=True)

    def test_failing_rule_skipped(self, ctx):
        rules = [
            {"type": "formula", "target_field": "bad", "expression": "{order.qty} / 0"},
            {"source_field": "first", "target_field": "ok"},
        ]
        assert run(ctx, rules, SOURCE) == {"ok": "Ada"}
        assert ctx.warnings[0].stage == "field_mapping"
        with pytest.raises(TransformationError):
            run(ctx, rules, SOURCE, strict_mapping=True)

    def test_later_rule_overwrites(self, ctx):
        rules = [
            {"source_field": "first", "target_field": "x"},
            {"source_field": "last", "target_field": "x"},
        ]
        assert run(ctx, rules, SOURCE) == {"x": "Lovelace"}

    def test_default_values(self, ctx):
        result = run(
            ctx,
            [{"source_field": "ghost", "target_field": "status"}],
            SOURCE,
            default_values={"status": "new", "source": "crm"},
        )
        assert result == {"status": "new", "source": "crm"}

    def test_list_input(self, ctx):
        rules = [{"source_field": "a", "target_field": "x"}]
        assert run(ctx, rules, [{"a": 1}, {"a": 2}]) == [{"x": 1}, {"x": 2}]


class TestConfiguration:
    def test_stage_type(self):
        stage = FieldMappingStage(rules=[{"source_field": "a", "target_field": "b"}])
        assert stage.stage_type is StageType.TRANSFORM
        assert stage.validate() is True

    def test_empty_stage_is_invalid(self):
        assert FieldMappingStage().validate() is False
        assert FieldMappingStage(default_values={"x": 1}).validate() is True

    def test_lookup_needs_table(self):
        with pytest.raises(StageError, match="has no table"):
            FieldMappingStage(rules=[{"type": "lookup", "source_field": "a", "target_field": "b"}])

    def test_formula_needs_expression(self):
        with pytest.raises(StageError, match="has no expression"):
            FieldMappingStage(rules=[{"type": "formula", "target_field": "b"}])

    def test_unknown_rule_type(self, ctx):
        rule = {"type": "teleport", "source_field": "a", "target_field": "b"}
        with pytest.raises(StageError, match="Unknown mapping rule type"):
            FieldMappingStage(rules=[rule], strict_mapping=True)
        assert FieldMappingStage(rules=[rule]).execute({"a": 1}, ctx) == {"b": 1}

    def test_rule_needs_target(self):
        with pytest.raises(StageError, match="Invalid rule #0"):
            FieldMappingStage(rules=[{"source_field": "a"}])
