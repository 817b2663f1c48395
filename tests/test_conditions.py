"""
Tests for condition evaluation and the built-in gateway/passthrough executors.
"""
import pytest

from flowrunner.services.execution import (
    GatewayExecutor,
    PassthroughExecutor,
    create_registry,
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
)


DATA = {
    "status": "ok",
    "score": 42,
    "ratio": "0.75",
    "tags": ["urgent", "billing"],
    "user": {"name": "Ada", "email": "ada@example.com", "verified": True},
    "items": [{"sku": "A1"}, {"sku": "B2"}],
    "notes": "",
}


class TestGetNestedValue:

    @pytest.mark.parametrize("path,expected", [
        ("status", "ok"),
        ("user.name", "Ada"),
        ("items.1.sku", "B2"),
        ("items.5.sku", None),
        ("user.missing.deep", None),
        ("score.value", None),
        ("", None),
    ])
    def test_paths(self, path, expected):
        assert get_nested_value(DATA, path) == expected

    def test_empty_data(self):
        assert get_nested_value({}, "status") is None


class TestEvaluateCondition:

    @pytest.mark.parametrize("field,operator,value", [
        ("status", "eq", "ok"),
        ("status", "neq", "error"),
        ("score", "gt", 40),
        ("score", "gte", "42"),
        ("ratio", "lt", 1),
        ("score", "lte", 42),
        ("tags", "contains", "urgent"),
        ("user.email", "contains", "@example"),
        ("tags", "not_contains", "spam"),
        ("user.name", "exists", None),
        ("user.phone", "not_exists", None),
        ("notes", "is_empty", None),
        ("tags", "is_not_empty", None),
        ("user.email", "matches", r"^\w+@"),
        ("status", "in", ["ok", "warn"]),
        ("status", "not_in", ["error"]),
        ("user.email", "starts_with", "ada"),
        ("user.email", "ends_with", ".com"),
        ("user.verified", "is_true", None),
        ("score", "is_false", None),
    ])
    def test_operators(self, field, operator, value):
        condition = {"field": field, "operator": operator, "value": value}
        expected = operator != "is_false"
        assert evaluate_condition(condition, DATA) is expected

    def test_string_fallback_comparison(self):
        assert evaluate_condition({"field": "status", "operator": "gt", "value": "a"}, DATA)

    def test_missing_field_never_compares(self):
        assert not evaluate_condition({"field": "nope", "operator": "gt", "value": 1}, DATA)

    def test_empty_condition_matches(self):
        assert evaluate_condition({}, DATA) is True

    def test_default_operator_is_eq(self):
        assert evaluate_condition({"field": "status", "value": "ok"}, DATA) is True

    def test_unknown_operator(self):
        assert evaluate_condition({"field": "status", "operator": "like", "value": "ok"},
                                  DATA) is False

    def test_invalid_regex(self):
        assert evaluate_condition({"field": "status", "operator": "matches", "value": "("},
                                  DATA) is False


class TestEvaluateConditions:

    CONDITIONS = [
        {"field": "status", "operator": "eq", "value": "ok"},
        {"field": "score", "operator": "gt", "value": 100},
    ]

    def test_and(self):
        assert evaluate_conditions(self.CONDITIONS, DATA) is False

    def test_or(self):
        assert evaluate_conditions(self.CONDITIONS, DATA, logic="or") is True

    def test_no_conditions(self):
        assert evaluate_conditions([], DATA) is True


class TestGatewayExecutor:
    """Branch selection for gateway nodes."""

    BRANCHES = [
        {"name": "high", "conditions": [{"field": "score", "operator": "gte", "value": 80}]},
        {"name": "mid", "conditions": [{"field": "score", "operator": "gte", "value": 40}]},
        {"name": "any", "conditions": []},
    ]

    async def test_static_branches(self):
        output = await GatewayExecutor().execute({"v": 1}, {"active_branches": ["x", "y"]})
        assert output == {"v": 1, "active_branches": "x,y"}

    async def test_static_string(self):
        output = await GatewayExecutor().execute({}, {"active_branches": "x"})
        assert output["active_branches"] == "x"

    async def test_conditions_select_all_matches(self):
        output = await GatewayExecutor().execute({"score": 50}, {"branches": self.BRANCHES})
        assert output["active_branches"] == "mid,any"

    async def test_first_match(self):
        output = await GatewayExecutor().execute(
            {"score": 95}, {"branches": self.BRANCHES, "first_match": True})
        assert output["active_branches"] == "high"

    async def test_default_branch(self):
        branches = self.BRANCHES[:2]
        output = await GatewayExecutor().execute(
            {"score": 1}, {"branches": branches, "default_branch": "fallback"})
        assert output["active_branches"] == "fallback"

    async def test_no_match_activates_nothing(self):
        output = await GatewayExecutor().execute({"score": 1}, {"branches": self.BRANCHES[:2]})
        assert output["active_branches"] == ""

    async def test_unnamed_branches_ignored(self):
        output = await GatewayExecutor().execute({}, {"branches": [{"conditions": []}]})
        assert output["active_branches"] == ""


class TestBuiltinRegistry:

    async def test_passthrough_copies_inputs(self):
        inputs = {"a": 1}
        output = await PassthroughExecutor().execute(inputs, {})
        assert output == inputs
        assert output is not inputs

    @pytest.mark.parametrize("type_id,executor_id", [
        ("manualTrigger", "passthrough"),
        ("textOutput", "passthrough"),
        ("ifElse", "gateway"),
        ("gateway", "gateway"),
    ])
    def test_builtin_types_registered(self, type_id, executor_id):
        registry = create_registry()
        assert registry.has_type(type_id)
        assert registry.resolve_executor_id(type_id) == executor_id
