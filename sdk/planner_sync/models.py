"""
Document models for the Event Planner sync SDK.

This module defines the entities mirrored from the remote collections:
- Event, Guest: planned occasions and their guest list ("events")
- TaskEvent, Task: per-event checklist ("taskEvents", keyed by title)
- ExpenseEvent, Expense: per-event spending ("expenseEvents", keyed by title)
- Group, GroupMember: sharing groups ("groups")
- UserRecord: directory entry used for email lookup ("users")

Documents use the camelCase field names of the stored schema
(createdByUID, sharedWith, isCompleted, ...). Python code uses the
snake_case attribute names; both are accepted on input.

Invariants:
    - TaskEvent counters and budget are always derived from the task list
    - ExpenseEvent.total_amount equals the sum of its expense amounts after
      every add/update/remove helper
    - Amounts are parsed once on input and stored as floats
    - Helpers return new instances; mirrors are never mutated in place
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .validate import check_headcount, format_amount_text, parse_amount, require_text


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """Base for all stored documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="ignore",
    )

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the stored (camelCase, JSON-compatible) form."""
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_document(cls, data: Dict[str, Any]):
        """Decode a stored document."""
        return cls.model_validate(data)


class Guest(Document):
    """A guest entry on an event."""

    id: str = Field(default_factory=_new_id)
    name: str
    count: int = 1
    event: str = ""
    is_selected: bool = False

    @field_validator("count")
    @classmethod
    def _positive_count(cls, value: int) -> int:
        return check_headcount(value)


class Event(Document):
    """A planned occasion.

    The title doubles as the document id of the paired TaskEvent and
    ExpenseEvent, so it must be unique among the owner's events.
    """

    id: str = Field(default_factory=_new_id)
    title: str
    date: datetime
    time: str = ""
    venue: str = ""
    completed_tasks: int = 0
    total_tasks: int = 0
    guest_count: int = 0
    guests: List[Guest] = Field(default_factory=list)
    created_by: str = ""
    created_by_uid: str = Field(default="", alias="createdByUID")
    shared_with: List[str] = Field(default_factory=list)
    shared_groups: List[str] = Field(default_factory=list)

    def has_access(self, user_id: str) -> bool:
        return user_id == self.created_by_uid or user_id in self.shared_with


class _Attributed(Document):
    """Fields shared by tasks and expenses: who created and last touched it."""

    id: str = Field(default_factory=_new_id)
    name: str
    supplier: str = ""
    contact: str = ""
    event: str = ""
    created_by: str = ""
    created_by_uid: str = Field(default="", alias="createdByUID")
    last_modified_by: str = ""
    last_modified_by_uid: str = Field(default="", alias="lastModifiedByUID")
    last_modified_date: datetime = Field(default_factory=_utcnow)


class Task(_Attributed):
    """A checklist item. The amount is stored as plain decimal text."""

    is_completed: bool = False
    amount: float = 0.0

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> float:
        return parse_amount(value, "amount", allow_empty=True)

    @field_serializer("amount")
    def _amount_text(self, value: float) -> str:
        return format_amount_text(value)


class Expense(_Attributed):
    """A spending line item."""

    amount: float

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> float:
        return parse_amount(value, "amount")


class TaskEvent(Document):
    """Checklist container for one event, keyed by the event title."""

    title: str
    tasks: List[Task] = Field(default_factory=list)
    shared_with: List[str] = Field(default_factory=list)
    shared_groups: List[str] = Field(default_factory=list)
    created_by_uid: str = Field(default="", alias="createdByUID")

    @property
    def completed_tasks(self) -> int:
        return sum(1 for task in self.tasks if task.is_completed)

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    @property
    def total_budget(self) -> float:
        return math.fsum(task.amount for task in self.tasks)

    def find_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def upsert_task(self, task: Task) -> TaskEvent:
        """Replace the task with the same id, or append it."""
        tasks = list(self.tasks)
        for index, existing in enumerate(tasks):
            if existing.id == task.id:
                tasks[index] = task
                break
        else:
            tasks.append(task)
        return self.model_copy(update={"tasks": tasks})

    def remove_task(self, task_id: str) -> TaskEvent:
        return self.model_copy(update={"tasks": [t for t in self.tasks if t.id != task_id]})


class ExpenseEvent(Document):
    """Spending container for one event, keyed by the event title.

    Every helper returns a copy whose expense list and total_amount were
    changed together.
    """

    id: str = Field(default_factory=_new_id)
    title: str
    total_amount: float = 0.0
    expenses: List[Expense] = Field(default_factory=list)
    shared_with: List[str] = Field(default_factory=list)
    shared_groups: List[str] = Field(default_factory=list)
    created_by_uid: str = Field(default="", alias="createdByUID")

    def _with_expenses(self, expenses: List[Expense]) -> ExpenseEvent:
        return self.model_copy(
            update={
                "expenses": expenses,
                "total_amount": math.fsum(e.amount for e in expenses),
            }
        )

    def find_expense(self, expense_id: str) -> Optional[Expense]:
        return next((e for e in self.expenses if e.id == expense_id), None)

    def find_by_name(self, name: str) -> Optional[Expense]:
        return next((e for e in self.expenses if e.name == name), None)

    def add_expense(self, expense: Expense) -> ExpenseEvent:
        return self._with_expenses([*self.expenses, expense])

    def update_expense(self, expense: Expense) -> ExpenseEvent:
        """Replace the expense with the same id; unknown ids leave it unchanged."""
        if self.find_expense(expense.id) is None:
            return self
        return self._with_expenses(
            [expense if e.id == expense.id else e for e in self.expenses]
        )

    def remove_expense(self, expense_id: str) -> ExpenseEvent:
        return self._with_expenses([e for e in self.expenses if e.id != expense_id])

    def upsert_by_name(self, expense: Expense, match_name: Optional[str] = None) -> ExpenseEvent:
        """Update the first expense named match_name (default: expense.name)
        in place, or append.

        The existing entry keeps its id and creator.
        """
        existing = self.find_by_name(match_name if match_name is not None else expense.name)
        if existing is None:
            return self.add_expense(expense)
        merged = expense.model_copy(
            update={
                "id": existing.id,
                "created_by": existing.created_by or expense.created_by,
                "created_by_uid": existing.created_by_uid or expense.created_by_uid,
            }
        )
        return self._with_expenses(
            [merged if e.id == existing.id else e for e in self.expenses]
        )

    def remove_by_name(self, name: str) -> ExpenseEvent:
        return self._with_expenses([e for e in self.expenses if e.name != name])


class GroupMember(Document):
    id: str = Field(default_factory=_new_id)
    uid: str
    name: str = ""
    email: str = ""
    role: str = "member"
    date_added: datetime = Field(default_factory=_utcnow)


class Group(Document):
    """A named set of users that events can be shared with.

    member_ids mirrors members[*].uid so the backend can filter on it.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    created_by: str = ""
    created_by_uid: str = Field(default="", alias="createdByUID")
    members: List[GroupMember] = Field(default_factory=list)
    member_ids: List[str] = Field(default_factory=list)
    events: List[str] = Field(default_factory=list)
    date_created: datetime = Field(default_factory=_utcnow)

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        return require_text(value, "name")

    def member_uids(self) -> List[str]:
        return [member.uid for member in self.members]

    def with_member(self, member: GroupMember) -> Group:
        if member.uid in self.member_ids:
            return self
        return self.model_copy(
            update={
                "members": [*self.members, member],
                "member_ids": [*self.member_ids, member.uid],
            }
        )


class UserRecord(Document):
    """Directory entry written at sign-up, looked up by email when sharing."""

    uid: str
    email: str
    name: str = ""
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
