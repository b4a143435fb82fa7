"""Tests for in-process filter / order / paginate / select emulation."""
import pytest

from infrastructure.errors import ValidationError
from memory.query import apply_filters, apply_ordering, apply_pagination, run_query, select_fields
from memory.schemas import ListEntitiesOptions, QueryFilter

ROWS = [
    {"id": "1", "name": "Alpha", "score": 10, "tag": "a", "archived": False},
    {"id": "2", "name": "beta", "score": 30, "tag": None},
    {"id": "3", "name": "Gamma ray", "score": 20, "tag": "b", "archived": True},
    {"id": "4", "name": "delta", "tag": "a"},
]


def ids(rows):
    return [r["id"] for r in rows]


class TestFilters:

    def test_no_filters_returns_everything(self):
        assert ids(apply_filters(ROWS, None)) == ["1", "2", "3", "4"]

    @pytest.mark.parametrize("operator,value,expected", [
        ("eq", "a", ["1", "4"]),
        ("neq", "a", ["2", "3"]),
        ("in", ["a", "b"], ["1", "3", "4"]),
    ])
    def test_equality_family(self, operator, value, expected):
        assert ids(apply_filters(ROWS, [QueryFilter("tag", operator, value)])) == expected

    def test_comparisons_skip_missing_fields(self):
        assert ids(apply_filters(ROWS, [QueryFilter("score", "gt", 15)])) == ["2", "3"]
        assert ids(apply_filters(ROWS, [QueryFilter("score", "lte", 20)])) == ["1", "3"]

    def test_like_wildcards(self):
        assert ids(apply_filters(ROWS, [QueryFilter("name", "like", "%a")])) == ["1", "2", "4"]
        assert ids(apply_filters(ROWS, [QueryFilter("name", "like", "_eta")])) == ["2"]

    def test_ilike_is_case_insensitive(self):
        assert ids(apply_filters(ROWS, [QueryFilter("name", "ilike", "g%")])) == ["3"]
        assert ids(apply_filters(ROWS, [QueryFilter("name", "like", "g%")])) == []

    def test_bare_pattern_is_substring(self):
        assert ids(apply_filters(ROWS, [QueryFilter("name", "ilike", "RAY")])) == ["3"]

    def test_is_null_matches_missing_and_none(self):
        assert ids(apply_filters(ROWS, [QueryFilter("archived", "is", None)])) == ["2", "4"]
        assert ids(apply_filters(ROWS, [QueryFilter("archived", "is", True)])) == ["3"]

    def test_all_filters_must_hold(self):
        filters = [QueryFilter("tag", "eq", "a"), QueryFilter("score", "gte", 0)]
        assert ids(apply_filters(ROWS, filters)) == ["1"]

    def test_unknown_operator_raises(self):
        with pytest.raises(ValidationError):
            apply_filters(ROWS, [QueryFilter("score", "approx", 3)])


class TestOrdering:

    def test_ascending_puts_missing_last(self):
        assert ids(apply_ordering(ROWS, "score")) == ["1", "3", "2", "4"]

    def test_descending_puts_missing_first(self):
        assert ids(apply_ordering(ROWS, "score", "desc")) == ["4", "2", "3", "1"]

    def test_stable_for_equal_keys(self):
        assert ids(apply_ordering(ROWS, "tag")) == ["1", "4", "3", "2"]


class TestPaginationAndSelect:

    def test_offset_then_limit(self):
        assert ids(apply_pagination(ROWS, offset=1, limit=2)) == ["2", "3"]
        assert ids(apply_pagination(ROWS, offset=3, limit=5)) == ["4"]
        assert apply_pagination(ROWS, offset=10) == []

    def test_select_projects_present_fields(self):
        assert select_fields(ROWS[:2], ["id", "score"]) == [{"id": "1", "score": 10}, {"id": "2", "score": 30}]

    def test_run_query_pipeline(self):
        options = ListEntitiesOptions(
            filters=[QueryFilter("score", "gte", 10)],
            sort_by="score", sort_order="desc", limit=2, offset=1, select=["id"],
        )
        assert run_query(ROWS, options) == [{"id": "3"}, {"id": "1"}]
