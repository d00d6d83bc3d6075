"""Filter and priority evaluation.

This module provides:
- evaluate: Decide whether a catalog item passes a FilterTree
- score: Sum of weights of the priority rules an item matches
- rank: Score and sort candidates (stable, highest first)

Evaluation is pure and total: missing attributes and mismatched types
never raise. A missing attribute fails an AND clause and is skipped in
an OR clause. String comparisons ignore case. List-valued attributes
(e.g. genres) match ``in``/``not_in`` by intersection and ``contains``
by membership.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from offlinesync.core.rules import FilterRule, FilterTree, PriorityRule
from offlinesync.sync.types import CatalogItem

_MISSING = object()


def _attribute(item: CatalogItem, name: str) -> Any:
    value = item.attributes.get(name, _MISSING)
    if value is None:
        return _MISSING
    return value


def _norm(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def _is_list(value: Any) -> bool:
    return isinstance(value, list | tuple | set | frozenset)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _ordered(left: Any, right: Any, operator: str) -> bool:
    # Only numbers with numbers and strings with strings are comparable
    if _is_number(left) and _is_number(right):
        pass
    elif isinstance(left, str) and isinstance(right, str):
        left, right = left.casefold(), right.casefold()
    else:
        return False

    if operator == ">":
        return left > right
    if operator == ">=":
        return left >= right
    if operator == "<":
        return left < right
    return left <= right


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply one operator. Never raises; incompatible types give False."""
    if operator in (">", ">=", "<", "<="):
        return _ordered(actual, expected, operator)

    if operator in ("==", "!="):
        if _is_list(actual):
            equal = {_norm(v) for v in actual} == (
                {_norm(v) for v in expected} if _is_list(expected) else {_norm(expected)}
            )
        else:
            equal = _norm(actual) == _norm(expected)
        return equal if operator == "==" else not equal

    if operator in ("in", "not_in"):
        choices = {_norm(v) for v in expected if not _is_list(v)}
        if _is_list(actual):
            found = any(_norm(v) in choices for v in actual if not _is_list(v))
        else:
            found = _norm(actual) in choices
        return found if operator == "in" else not found

    if operator == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected.casefold() in actual.casefold()
        if _is_list(actual):
            return _norm(expected) in {_norm(v) for v in actual if not _is_list(v)}
        return False

    return False


def rule_matches(item: CatalogItem, rule: FilterRule) -> bool | None:
    """Evaluate one rule.

    Returns:
        True or False, or None when the attribute is missing.
    """
    actual = _attribute(item, rule.attribute)
    if actual is _MISSING:
        return None
    try:
        return compare(actual, rule.operator, rule.value)
    except TypeError:
        # Unhashable attribute values end up here
        return False


def evaluate(item: CatalogItem, tree: FilterTree) -> bool:
    """Check whether an item passes a filter tree.

    Args:
        item: Catalog item to test.
        tree: AND and OR groups of rules.

    Returns:
        True if every AND rule holds and, when OR rules exist, at least
        one of them holds.
    """
    for rule in tree.all_of:
        if rule_matches(item, rule) is not True:
            return False

    if tree.any_of:
        return any(rule_matches(item, rule) is True for rule in tree.any_of)
    return True


def priority_matches(item: CatalogItem, rule: PriorityRule) -> bool:
    actual = _attribute(item, rule.attribute)
    if actual is _MISSING:
        return False
    if rule.operator is None:
        return True
    try:
        return compare(actual, rule.operator, rule.value)
    except TypeError:
        return False


def score(item: CatalogItem, rules: Iterable[PriorityRule]) -> float:
    """Sum of weights of the rules an item matches."""
    return sum((rule.weight for rule in rules if priority_matches(item, rule)), 0.0)


def rank(
    items: Iterable[CatalogItem],
    rules: Sequence[PriorityRule],
) -> list[tuple[CatalogItem, float]]:
    """Score items and sort them by descending score.

    The sort is stable, so items with equal scores keep their catalog
    order and the result is reproducible for identical inputs.
    """
    scored = [(item, score(item, rules)) for item in items]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored
