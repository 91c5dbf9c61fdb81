from enum import Enum
from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import UniqueConstraint, Index


class Priority(str, Enum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'


class User(SQLModel, table=True):
    """Application user; password stored as a passlib hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    created_at: datetime | None = Field(default_factory=now_utc)


class Category(SQLModel, table=True):
    """Per-user grouping for todos.

    sort_order is dense (0..N-1) per owner: new categories are inserted at 0
    and reorders shift their neighbours in the same transaction.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    color: str = Field(default='#6b7280')
    owner_id: int = Field(foreign_key="user.id", index=True)
    sort_order: int = Field(default=0, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (UniqueConstraint('owner_id', 'name', name='uq_category_owner_name'),)


class Todo(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    completed: bool = Field(default=False, index=True)
    priority: Priority = Field(default=Priority.MEDIUM)
    due_date: Optional[datetime] = None
    owner_id: int = Field(foreign_key="user.id", index=True)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id", index=True)
    # Subtasks point at their parent and never take part in ordering or
    # recurrence.
    parent_id: Optional[int] = Field(default=None, foreign_key="todo.id", index=True)
    # Dense per (owner_id, category_id) among top-level todos once reordered.
    # New todos take the column default rather than going through the
    # ordering service.
    sort_order: int = Field(default=0)
    # Encoded recurrence rule (FREQ=...;INTERVAL=...), see tasklane.recurrence
    recurrence_rule: Optional[str] = None
    recurrence_end: Optional[datetime] = None
    # Archived todos (and their subtasks) drop out of listings but keep their
    # place in the ordering scope.
    archived_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    category: Optional[Category] = Relationship(sa_relationship_kwargs={"lazy": "selectin"})

    __table_args__ = (
        Index('ix_todo_scope_order', 'owner_id', 'category_id', 'sort_order'),
    )


class ActivityLog(SQLModel, table=True):
    """Audit record of a change to a todo or category.

    entity_type: 'TODO' | 'CATEGORY'
    action: 'CREATE' | 'UPDATE' | 'DELETE' | 'COMPLETE' | 'UNCOMPLETE' |
            'ARCHIVE' | 'RESTORE'
    before_state/after_state: JSON-encoded snapshots of the changed fields
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    entity_type: str
    entity_id: Optional[int] = None
    entity_title: str
    action: str
    before_state: Optional[str] = None
    after_state: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc, index=True)
