"""Declarative selection rules.

This module provides:
- FilterRule / FilterTree: AND/OR filter rules over catalog attributes
- PriorityRule: Weighted rule used to order candidates
- GroupLimit: Per-group sub-budget (e.g. max episodes per series)

Rules are plain frozen dataclasses validated on construction, so a bad
operator or a negative weight is reported when configuration is loaded
rather than in the middle of a sync cycle.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from offlinesync.core.errors import ValidationError

OPERATORS = frozenset({"==", "!=", ">", ">=", "<", "<=", "in", "not_in", "contains"})

# Operators whose value is a collection
COLLECTION_OPERATORS = frozenset({"in", "not_in"})


def _check_operator(operator: str, value: Any) -> Any:
    if operator not in OPERATORS:
        raise ValidationError(
            f"Unknown filter operator: {operator!r}",
            context={"operator": operator},
        )
    if operator in COLLECTION_OPERATORS:
        if isinstance(value, str) or not isinstance(value, list | tuple | set | frozenset):
            raise ValidationError(
                f"Operator {operator!r} requires a list value, got {value!r}",
                context={"operator": operator},
            )
        return tuple(value)
    return value


@dataclass(frozen=True)
class FilterRule:
    """A single ``{attribute, operator, value}`` comparison."""

    attribute: str
    operator: str
    value: Any

    def __post_init__(self) -> None:
        if not self.attribute:
            raise ValidationError("Filter rule requires an attribute")
        object.__setattr__(self, "value", _check_operator(self.operator, self.value))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FilterRule:
        """Create from a config mapping."""
        try:
            return cls(
                attribute=data["attribute"],
                operator=data.get("operator", "=="),
                value=data["value"],
            )
        except KeyError as e:
            raise ValidationError(f"Filter rule missing field: {e.args[0]}") from e


@dataclass(frozen=True)
class FilterTree:
    """AND group plus OR group of filter rules.

    An item passes when every ``all_of`` rule holds and, if ``any_of``
    is not empty, at least one ``any_of`` rule holds. An empty tree
    accepts everything.
    """

    all_of: tuple[FilterRule, ...] = ()
    any_of: tuple[FilterRule, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.all_of and not self.any_of

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | list[Any] | None) -> FilterTree:
        """Create from config.

        Accepts either ``{"all_of": [...], "any_of": [...]}`` or a bare
        list, which is treated as an AND group.
        """
        if data is None:
            return cls()
        if isinstance(data, list):
            return cls(all_of=tuple(FilterRule.from_dict(r) for r in data))
        return cls(
            all_of=tuple(FilterRule.from_dict(r) for r in data.get("all_of", [])),
            any_of=tuple(FilterRule.from_dict(r) for r in data.get("any_of", [])),
        )


@dataclass(frozen=True)
class PriorityRule:
    """Weighted priority rule.

    Without an operator the rule matches any item that has the
    attribute. With an operator it matches when the comparison holds.
    Weights are never negative, so adding a rule can only raise an
    item's score.
    """

    attribute: str
    weight: float
    operator: str | None = None
    value: Any = None

    def __post_init__(self) -> None:
        if not self.attribute:
            raise ValidationError("Priority rule requires an attribute")
        if self.weight < 0:
            raise ValidationError(
                f"Priority weight must not be negative: {self.weight}",
                context={"attribute": self.attribute},
            )
        if self.operator is not None:
            object.__setattr__(self, "value", _check_operator(self.operator, self.value))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PriorityRule:
        """Create from a config mapping."""
        try:
            return cls(
                attribute=data["attribute"],
                weight=float(data["weight"]),
                operator=data.get("operator"),
                value=data.get("value"),
            )
        except KeyError as e:
            raise ValidationError(f"Priority rule missing field: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid priority weight: {data.get('weight')!r}") from e


@dataclass(frozen=True)
class GroupLimit:
    """Sub-budget applied per value of a grouping attribute.

    Attributes:
        attribute: Attribute whose value defines the group (e.g. "series").
        max_items: Maximum accepted items per group.
        max_bytes: Maximum accepted bytes per group.
    """

    attribute: str
    max_items: int | None = None
    max_bytes: int | None = None

    def __post_init__(self) -> None:
        if self.max_items is not None and self.max_items < 0:
            raise ValidationError("Group limit max_items must not be negative")
        if self.max_bytes is not None and self.max_bytes < 0:
            raise ValidationError("Group limit max_bytes must not be negative")
