"""Tests for condition evaluation and token replacement."""

from datetime import UTC, datetime

import pytest

from jml_workflow.workflow.conditions import (
    ConditionContext,
    ConditionRegistry,
    OperatorEvaluator,
    evaluate_condition,
    evaluate_condition_group,
    evaluate_condition_groups,
    evaluate_expression,
    extract_tokens,
    get_field_value,
    replace_tokens,
    UNDEFINED,
)
from jml_workflow.workflow.definition import Condition, ConditionGroup, ConditionOperator, Logic


NOW = datetime(2024, 3, 4, 9, 30, tzinfo=UTC)


def _make_context(**overrides) -> ConditionContext:
    defaults = dict(
        process={
            "employeeName": "Ada Lovelace",
            "department": "Engineering",
            "startDate": "2024-03-11",
            "manager": {"email": "grace@example.com", "reports": ["ada", "alan"]},
        },
        variables={
            "laptopCount": 2,
            "remote": "yes",
            "tags": ["vip", "contractor"],
            "emptyList": [],
            "blank": "  ",
        },
        current_user="hr.admin",
        now=NOW,
    )
    defaults.update(overrides)
    return ConditionContext(**defaults)


def _cond(field, operator, value=None, **extra) -> Condition:
    return Condition(field=field, operator=operator, value=value, **extra)


class TestFieldResolution:
    def test_variables_shadow_process_fields(self):
        ctx = _make_context(variables={"department": "Finance"})
        assert get_field_value("department", ctx) == "Finance"
        assert get_field_value("process.department", ctx) == "Engineering"

    def test_nested_and_indexed_paths(self):
        ctx = _make_context()
        assert get_field_value("manager.email", ctx) == "grace@example.com"
        assert get_field_value("manager.reports[1]", ctx) == "alan"
        assert get_field_value("variables.tags[0]", ctx) == "vip"

    def test_unresolvable_paths_are_undefined(self):
        ctx = _make_context()
        assert get_field_value("manager.phone", ctx) is UNDEFINED
        assert get_field_value("manager.reports[5]", ctx) is UNDEFINED
        assert get_field_value("nothing.here", ctx) is UNDEFINED

    def test_special_tokens(self):
        ctx = _make_context()
        assert get_field_value("@today", ctx) == NOW.date()
        assert get_field_value("@now", ctx) == NOW
        assert get_field_value("@currentUser", ctx) == "hr.admin"


class TestMissingField:
    @pytest.mark.parametrize("operator", [op for op in ConditionOperator if op != ConditionOperator.IS_EMPTY])
    def test_every_operator_but_is_empty_is_false(self, operator):
        """A missing field never satisfies a comparison, even a negated one."""
        assert evaluate_condition(_cond("missing.field", operator, "x"), _make_context()) is False

    def test_is_empty_is_true(self):
        assert evaluate_condition(_cond("missing.field", ConditionOperator.IS_EMPTY), _make_context()) is True


class TestEquality:
    def test_case_insensitive_strings(self):
        ctx = _make_context()
        assert evaluate_condition(_cond("department", "eq", "engineering"), ctx)
        assert not evaluate_condition(_cond("department", "ne", "ENGINEERING"), ctx)

    def test_numeric_coercion(self):
        assert evaluate_condition(_cond("laptopCount", "eq", "2.0"), _make_context())

    def test_boolean_normalisation(self):
        ctx = _make_context()
        assert evaluate_condition(_cond("remote", "eq", True), ctx)
        assert not evaluate_condition(_cond("remote", "eq", False), ctx)

    def test_compare_against_another_field(self):
        ctx = _make_context(variables={"approver": "Grace@Example.com"})
        condition = Condition(field="approver", operator="eq", valueField="manager.email")
        assert evaluate_condition(condition, ctx)

    def test_current_user_literal(self):
        ctx = _make_context(variables={"owner": "hr.admin"})
        assert evaluate_condition(_cond("owner", "eq", "@currentUser"), ctx)


class TestStringAndCollectionOperators:
    def test_contains_on_string_and_list(self):
        ctx = _make_context()
        assert evaluate_condition(_cond("employeeName", "contains", "LOVE"), ctx)
        assert evaluate_condition(_cond("tags", "contains", "VIP"), ctx)
        assert not evaluate_condition(_cond("tags", "contains", "intern"), ctx)

    def test_starts_and_ends_with(self):
        ctx = _make_context()
        assert evaluate_condition(_cond("employeeName", "startsWith", "ada"), ctx)
        assert evaluate_condition(_cond("employeeName", "endsWith", "LACE"), ctx)

    @pytest.mark.parametrize("value", [
        ["Finance", "Engineering"],
        '["Finance", "Engineering"]',
        "Finance, Engineering",
    ])
    def test_in_accepts_list_json_and_comma_forms(self, value):
        ctx = _make_context()
        assert evaluate_condition(_cond("department", "in", value), ctx)
        assert not evaluate_condition(_cond("department", "notIn", value), ctx)

    def test_is_empty_variants(self):
        ctx = _make_context()
        assert evaluate_condition(_cond("emptyList", "isEmpty"), ctx)
        assert evaluate_condition(_cond("blank", "isEmpty"), ctx)
        assert evaluate_condition(_cond("tags", "isNotEmpty"), ctx)


class TestOrderingAndDates:
    def test_numeric_ordering(self):
        ctx = _make_context()
        assert evaluate_condition(_cond("laptopCount", "gt", 1), ctx)
        assert evaluate_condition(_cond("laptopCount", "lte", "2"), ctx)
        assert not evaluate_condition(_cond("laptopCount", "lt", 2), ctx)

    def test_ordering_falls_back_to_dates(self):
        assert evaluate_condition(_cond("startDate", "gt", "2024-03-01"), _make_context())

    def test_relative_dates(self):
        ctx = _make_context()
        # startDate is exactly seven days after NOW
        assert evaluate_condition(_cond("startDate", "dateEquals", "@today+7"), ctx)
        assert evaluate_condition(_cond("startDate", "dateAfter", "@today+6"), ctx)
        assert evaluate_condition(_cond("startDate", "dateBefore", "@today+8"), ctx)

    def test_date_equals_ignores_time_of_day(self):
        ctx = _make_context(variables={"lastDay": "2024-03-04T17:45:00Z"})
        assert evaluate_condition(_cond("lastDay", "dateEquals", "@today"), ctx)

    def test_unparseable_date_is_false(self):
        ctx = _make_context(variables={"lastDay": "next tuesday"})
        assert not evaluate_condition(_cond("lastDay", "dateBefore", "@today"), ctx)


class TestGroups:
    def test_and_or_within_group(self):
        ctx = _make_context()
        hit = _cond("department", "eq", "Engineering")
        miss = _cond("department", "eq", "Finance")
        assert not evaluate_condition_group(ConditionGroup(conditions=[hit, miss]), ctx)
        assert evaluate_condition_group(ConditionGroup(conditions=[hit, miss], logic=Logic.OR), ctx)

    def test_groups_are_anded(self):
        ctx = _make_context()
        ok = ConditionGroup(conditions=[_cond("department", "eq", "Engineering")])
        bad = ConditionGroup(conditions=[_cond("laptopCount", "gt", 5)])
        assert evaluate_condition_groups([ok], ctx)
        assert not evaluate_condition_groups([ok, bad], ctx)

    def test_empty_groups_hold(self):
        assert evaluate_condition_groups([], _make_context())
        assert evaluate_condition_group(ConditionGroup(), _make_context())


class TestErrorsNeverPropagate:
    def test_raising_evaluator_counts_as_false(self):
        class Exploding(OperatorEvaluator):
            def evaluate(self, actual, expected, ctx):
                raise RuntimeError("boom")

        ConditionRegistry.register(ConditionOperator.EQ, Exploding())
        assert evaluate_condition(_cond("department", "eq", "Engineering"), _make_context()) is False


class TestTokens:
    def test_replace_tokens_leaves_unresolved_verbatim(self):
        ctx = _make_context()
        rendered = replace_tokens("Hi {{ employeeName }}, see {{unknown.thing}} by {{startDate}}", ctx)
        assert rendered == "Hi Ada Lovelace, see {{unknown.thing}} by 2024-03-11"

    def test_replace_tokens_formats_lists_as_json(self):
        assert replace_tokens("{{tags}}", _make_context()) == '["vip", "contractor"]'

    def test_extract_tokens(self):
        assert extract_tokens("{{a}} and {{ b.c }}") == ["a", "b.c"]


class TestExpressions:
    def test_and_binds_tighter_than_or(self):
        ctx = _make_context()
        assert evaluate_expression("department == Finance || laptopCount > 1 && remote == yes", ctx)
        assert not evaluate_expression("department == Finance && laptopCount > 1", ctx)

    def test_unparseable_clause_is_false(self):
        assert not evaluate_expression("department ~~ Finance", _make_context())
