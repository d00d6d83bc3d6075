"""Tests for selection rules."""

import pytest

from offlinesync.core.errors import ValidationError
from offlinesync.core.rules import FilterRule, FilterTree, GroupLimit, PriorityRule


class TestFilterRule:
    """Tests for FilterRule validation."""

    def test_unknown_operator(self) -> None:
        with pytest.raises(ValidationError, match="operator"):
            FilterRule("rating", "~=", 5)

    def test_in_requires_list(self) -> None:
        """Collection operators reject scalars and strings."""
        with pytest.raises(ValidationError):
            FilterRule("genre", "in", "drama")

    def test_in_value_is_tuple(self) -> None:
        rule = FilterRule("genre", "in", ["drama", "comedy"])
        assert rule.value == ("drama", "comedy")

    def test_from_dict_default_operator(self) -> None:
        rule = FilterRule.from_dict({"attribute": "year", "value": 2020})
        assert rule.operator == "=="

    def test_from_dict_missing_value(self) -> None:
        with pytest.raises(ValidationError, match="value"):
            FilterRule.from_dict({"attribute": "year"})


class TestFilterTree:
    """Tests for FilterTree construction."""

    def test_empty(self) -> None:
        assert FilterTree().is_empty
        assert FilterTree.from_dict(None).is_empty

    def test_list_is_and_group(self) -> None:
        tree = FilterTree.from_dict([{"attribute": "year", "operator": ">", "value": 2000}])
        assert len(tree.all_of) == 1
        assert tree.any_of == ()

    def test_groups(self) -> None:
        tree = FilterTree.from_dict(
            {
                "all_of": [{"attribute": "rating", "operator": ">=", "value": 7}],
                "any_of": [
                    {"attribute": "genre", "value": "drama"},
                    {"attribute": "genre", "value": "comedy"},
                ],
            }
        )
        assert len(tree.all_of) == 1
        assert len(tree.any_of) == 2


class TestPriorityRule:
    """Tests for PriorityRule validation."""

    def test_negative_weight(self) -> None:
        with pytest.raises(ValidationError, match="negative"):
            PriorityRule("rating", -1.0)

    def test_bad_weight(self) -> None:
        with pytest.raises(ValidationError):
            PriorityRule.from_dict({"attribute": "rating", "weight": "heavy"})

    def test_operator_optional(self) -> None:
        rule = PriorityRule.from_dict({"attribute": "rating", "weight": 2})
        assert rule.operator is None
        assert rule.weight == 2.0


class TestGroupLimit:
    """Tests for GroupLimit validation."""

    def test_negative_limits(self) -> None:
        with pytest.raises(ValidationError):
            GroupLimit("series", max_items=-1)
        with pytest.raises(ValidationError):
            GroupLimit("series", max_bytes=-5)
