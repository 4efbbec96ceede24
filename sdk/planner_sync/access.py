"""
Access filter construction for the Event Planner sync SDK.

A user may see a document when any of these hold:
- they created it (createdByUID == user)
- it was shared with them (user in sharedWith)
- it was shared with one of their groups (sharedGroups intersects groups)

The filter is a small predicate tree (FieldFilter / OrFilter) that remote
collection clients translate into their query language. The in-memory client
evaluates it directly through matches().

Invariants:
    - The group clause is omitted when the user belongs to no group
      (backends reject "array contains any of []")
    - Predicates are immutable and compare by value
    - The filter is rebuilt on every subscribe; it is never cached across
      a change of group membership

How to change safely:
    - New operators must be implemented in every remote client
    - Keep field names in sync with the document schema in models.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Tuple, Union

logger = logging.getLogger(__name__)

# Firestore-style backends cap array-contains-any / in at 30 values.
MAX_DISJUNCTION_VALUES = 30


class Operator(Enum):
    """Comparison operators understood by remote collection clients."""

    EQUAL = "=="
    ARRAY_CONTAINS = "array-contains"
    ARRAY_CONTAINS_ANY = "array-contains-any"


@dataclass(frozen=True)
class FieldFilter:
    """A single field comparison.

    Attributes:
        field: Document field name (stored camelCase name)
        op: Comparison operator
        value: Scalar for EQUAL / ARRAY_CONTAINS, tuple for ARRAY_CONTAINS_ANY
    """

    field: str
    op: Operator
    value: Any

    def __post_init__(self) -> None:
        if self.op == Operator.ARRAY_CONTAINS_ANY:
            if not isinstance(self.value, tuple):
                object.__setattr__(self, "value", tuple(self.value))
            if not self.value:
                raise ValueError(f"{self.op.value} on '{self.field}' needs at least one value")
            if len(self.value) > MAX_DISJUNCTION_VALUES:
                raise ValueError(
                    f"{self.op.value} on '{self.field}' accepts at most "
                    f"{MAX_DISJUNCTION_VALUES} values, got {len(self.value)}"
                )

    def matches(self, document: Mapping[str, Any]) -> bool:
        actual = document.get(self.field)
        if self.op == Operator.EQUAL:
            return actual == self.value
        if not isinstance(actual, (list, tuple)):
            return False
        if self.op == Operator.ARRAY_CONTAINS:
            return self.value in actual
        return any(v in actual for v in self.value)

    def __str__(self) -> str:
        return f"{self.field} {self.op.value} {self.value!r}"


@dataclass(frozen=True)
class OrFilter:
    """Disjunction of field filters."""

    clauses: Tuple[FieldFilter, ...]

    def matches(self, document: Mapping[str, Any]) -> bool:
        return any(clause.matches(document) for clause in self.clauses)

    def fields(self) -> Tuple[str, ...]:
        return tuple(clause.field for clause in self.clauses)

    def __str__(self) -> str:
        return " OR ".join(f"({c})" for c in self.clauses)


Predicate = Union[FieldFilter, OrFilter]


def build_access_filter(user_id: str, group_ids: Iterable[str]) -> OrFilter:
    """Build the "owned OR shared with me OR shared with my group" filter.

    Args:
        user_id: Current user id
        group_ids: Ids of the groups the user belongs to

    Returns:
        OrFilter with two or three clauses

    Raises:
        ValueError: If user_id is empty or there are too many groups

    Example:
        >>> str(build_access_filter("u1", []))
        "(createdByUID == 'u1') OR (sharedWith array-contains 'u1')"
    """
    if not user_id:
        raise ValueError("user_id is required to build an access filter")

    clauses = [
        FieldFilter("createdByUID", Operator.EQUAL, user_id),
        FieldFilter("sharedWith", Operator.ARRAY_CONTAINS, user_id),
    ]

    # Order-preserving de-duplication
    groups = tuple(dict.fromkeys(g for g in group_ids if g))
    if groups:
        clauses.append(FieldFilter("sharedGroups", Operator.ARRAY_CONTAINS_ANY, groups))

    access_filter = OrFilter(tuple(clauses))
    logger.debug(
        "Access filter built",
        extra={"user_id": user_id, "group_count": len(groups)},
    )
    return access_filter


def member_filter(user_id: str) -> FieldFilter:
    """Groups the user belongs to."""
    return FieldFilter("memberIds", Operator.ARRAY_CONTAINS, user_id)


def email_filter(email: str) -> FieldFilter:
    """Exact, case-sensitive email match."""
    return FieldFilter("email", Operator.EQUAL, email)
