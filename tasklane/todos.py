"""Todo workflows: create, update, complete, delete, archive, and bulk changes.

Completing a top-level todo that carries a recurrence rule creates its
successor: a fresh, incomplete copy due on the rule's next occurrence after
the completed todo's due date. The completion write and the successor
insert share one transaction, so a crash cannot leave a completed recurring
todo without its successor. When the rule is unparseable or the series has
ended no successor is created.
"""
from datetime import datetime
import logging
from typing import Any, Optional

from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete

from .activity import (
    ENTITY_TODO,
    ACTION_ARCHIVE,
    ACTION_COMPLETE,
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_RESTORE,
    ACTION_UNCOMPLETE,
    ACTION_UPDATE,
    log_activity,
)
from .db import async_session, run_in_transaction
from .models import Category, Priority, Todo
from .ordering import UNSET
from .recurrence import next_occurrence
from .utils import as_utc, now_utc

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 1000

UPDATABLE_FIELDS = (
    'title',
    'description',
    'priority',
    'due_date',
    'category_id',
    'completed',
    'recurrence_rule',
    'recurrence_end',
)


class TodoNotFoundError(LookupError):
    pass


def snapshot(todo: Todo) -> dict:
    return {
        'title': todo.title,
        'description': todo.description,
        'completed': todo.completed,
        'priority': todo.priority,
        'due_date': todo.due_date,
        'category_id': todo.category_id,
        'recurrence_rule': todo.recurrence_rule,
        'recurrence_end': todo.recurrence_end,
    }


def _clean_title(title) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValueError('Title is required and cannot be empty')
    return title.strip()


def _clean_description(description) -> Optional[str]:
    if description is None:
        return None
    if not isinstance(description, str):
        raise ValueError('Description must be a string')
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(f'Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters')
    return description.strip() or None


def _clean_priority(priority) -> Priority:
    try:
        return Priority(priority)
    except ValueError:
        raise ValueError('Invalid priority value')


def _clean_rule(rule) -> Optional[str]:
    # Stored verbatim; unknown rules simply never spawn successors.
    if rule is None:
        return None
    if not isinstance(rule, str):
        raise ValueError('recurrence_rule must be a string')
    return rule.strip() or None


async def _owned_todo(sess, owner_id: int, todo_id: int) -> Todo:
    q = await sess.exec(select(Todo).where(Todo.id == todo_id).where(Todo.owner_id == owner_id))
    todo = q.first()
    if todo is None:
        raise TodoNotFoundError('Todo not found')
    return todo


async def _check_category(sess, owner_id: int, category_id: Optional[int]) -> None:
    if category_id is None:
        return
    q = await sess.exec(select(Category.id).where(Category.id == category_id).where(Category.owner_id == owner_id))
    if q.first() is None:
        raise ValueError('invalid category')


def build_successor(todo: Todo, due_date: datetime) -> Todo:
    """Next instance of a recurring todo, due on ``due_date``."""
    return Todo(
        title=todo.title,
        priority=todo.priority,
        category_id=todo.category_id,
        owner_id=todo.owner_id,
        recurrence_rule=todo.recurrence_rule,
        recurrence_end=as_utc(todo.recurrence_end),
        due_date=as_utc(due_date),
        completed=False,
    )


def successor_due_date(todo: Todo, completed_at: Optional[datetime] = None) -> Optional[datetime]:
    """Due date for the successor of ``todo``, or None when the series stops.

    Subtasks and todos without a rule never recur. The occurrence is computed
    from the todo's due date, or from the completion time for undated todos.
    """
    if todo.parent_id is not None or not todo.recurrence_rule:
        return None
    anchor = todo.due_date or completed_at or now_utc()
    return as_utc(next_occurrence(todo.recurrence_rule, anchor, todo.recurrence_end))


async def create_todo(
    owner_id: int,
    title,
    description=None,
    priority=None,
    due_date: Optional[datetime] = None,
    category_id: Optional[int] = None,
    parent_id: Optional[int] = None,
    recurrence_rule=None,
    recurrence_end: Optional[datetime] = None,
) -> Todo:
    title = _clean_title(title)
    description = _clean_description(description)
    prio = _clean_priority(priority) if priority is not None else Priority.MEDIUM
    rule = _clean_rule(recurrence_rule)

    async def _create(sess):
        await _check_category(sess, owner_id, category_id)
        if parent_id is not None:
            parent = await _owned_todo(sess, owner_id, parent_id)
            if parent.parent_id is not None:
                raise ValueError('subtasks cannot have subtasks')
        todo = Todo(
            title=title,
            description=description,
            priority=prio,
            due_date=as_utc(due_date),
            owner_id=owner_id,
            category_id=category_id,
            parent_id=parent_id,
            recurrence_rule=rule,
            recurrence_end=as_utc(recurrence_end),
        )
        sess.add(todo)
        await sess.flush()
        await sess.refresh(todo)
        return todo

    todo = await run_in_transaction(_create)
    log_activity(owner_id, ENTITY_TODO, todo.title, ACTION_CREATE, entity_id=todo.id, after=snapshot(todo))
    return todo


async def get_todo(owner_id: int, todo_id: int) -> Todo:
    async with async_session() as sess:
        return await _owned_todo(sess, owner_id, todo_id)


async def list_todos(
    owner_id: int,
    category_id=UNSET,
    status: Optional[str] = None,
    archived: bool = False,
) -> list[Todo]:
    """Top-level todos, incomplete first, then by sort_order.

    ``category_id=None`` selects uncategorized todos; leave it unset for all.
    ``status`` may be 'active' or 'completed'. Archived todos are listed only
    when ``archived`` is true, and then exclusively.
    """
    stmt = select(Todo).where(Todo.owner_id == owner_id).where(Todo.parent_id.is_(None))
    if archived:
        stmt = stmt.where(Todo.archived_at.is_not(None))
    else:
        stmt = stmt.where(Todo.archived_at.is_(None))
    if category_id is not UNSET:
        if category_id is None:
            stmt = stmt.where(Todo.category_id.is_(None))
        else:
            stmt = stmt.where(Todo.category_id == category_id)
    if status == 'active':
        stmt = stmt.where(Todo.completed.is_(False))
    elif status == 'completed':
        stmt = stmt.where(Todo.completed.is_(True))
    stmt = stmt.order_by(Todo.completed.asc(), Todo.sort_order.asc(), Todo.created_at.desc(), Todo.id.desc())
    async with async_session() as sess:
        q = await sess.exec(stmt)
        return list(q.all())


async def list_subtasks_for(owner_id: int, parent_ids) -> dict[int, list[Todo]]:
    """Subtasks of every todo in ``parent_ids`` in one query, keyed by parent.

    Each parent gets an entry, empty when it has no subtasks. The subtasks of
    an archived parent are listed as well, since they are archived with it.
    """
    parent_ids = list(parent_ids)
    out: dict[int, list[Todo]] = {pid: [] for pid in parent_ids}
    if not parent_ids:
        return out
    async with async_session() as sess:
        q = await sess.exec(
            select(Todo)
            .where(Todo.owner_id == owner_id)
            .where(Todo.parent_id.in_(parent_ids))
            .order_by(Todo.created_at.asc(), Todo.id.asc())
        )
        for sub in q.all():
            out[sub.parent_id].append(sub)
    return out


async def list_subtasks(owner_id: int, parent_id: int) -> list[Todo]:
    subs = await list_subtasks_for(owner_id, [parent_id])
    return subs[parent_id]


async def update_todo(owner_id: int, todo_id: int, changes: dict[str, Any]) -> tuple[Todo, Optional[Todo]]:
    """Apply ``changes`` and return ``(todo, successor)``.

    ``successor`` is the new todo created when this update completes a
    recurring todo, otherwise None. Setting ``recurrence_rule`` to None stops
    the series.
    """
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f'unknown fields: {", ".join(sorted(unknown))}')
    values: dict[str, Any] = {}
    if 'title' in changes:
        values['title'] = _clean_title(changes['title'])
    if 'description' in changes:
        values['description'] = _clean_description(changes['description'])
    if 'priority' in changes:
        values['priority'] = _clean_priority(changes['priority'])
    if 'completed' in changes:
        if not isinstance(changes['completed'], bool):
            raise ValueError('Completed must be a boolean')
        values['completed'] = changes['completed']
    if 'recurrence_rule' in changes:
        values['recurrence_rule'] = _clean_rule(changes['recurrence_rule'])
    for key in ('due_date', 'recurrence_end'):
        if key in changes:
            values[key] = as_utc(changes[key])
    if 'category_id' in changes:
        values['category_id'] = changes['category_id']

    async def _update(sess):
        todo = await _owned_todo(sess, owner_id, todo_id)
        before = snapshot(todo)
        if 'category_id' in values:
            await _check_category(sess, owner_id, values['category_id'])
        for key, val in values.items():
            setattr(todo, key, val)
        todo.updated_at = now_utc()
        sess.add(todo)

        successor = None
        if values.get('completed') is True and not before['completed']:
            due = successor_due_date(todo, completed_at=todo.updated_at)
            if due is not None:
                successor = build_successor(todo, due)
                sess.add(successor)
        await sess.flush()
        await sess.refresh(todo)
        if successor is not None:
            await sess.refresh(successor)
            logger.info('todo id=%s completed; created successor id=%s due=%s', todo.id, successor.id, successor.due_date)
        return todo, before, successor

    todo, before, successor = await run_in_transaction(_update)

    action = ACTION_UPDATE
    if before['completed'] != todo.completed:
        action = ACTION_COMPLETE if todo.completed else ACTION_UNCOMPLETE
    log_activity(owner_id, ENTITY_TODO, todo.title, action, entity_id=todo.id, before=before, after=snapshot(todo))
    if successor is not None:
        log_activity(owner_id, ENTITY_TODO, successor.title, ACTION_CREATE, entity_id=successor.id, after=snapshot(successor))
    return todo, successor


async def complete_todo(owner_id: int, todo_id: int, completed: bool = True) -> tuple[Todo, Optional[Todo]]:
    return await update_todo(owner_id, todo_id, {'completed': completed})


async def stop_recurrence(owner_id: int, todo_id: int) -> Todo:
    todo, _ = await update_todo(owner_id, todo_id, {'recurrence_rule': None, 'recurrence_end': None})
    return todo


async def delete_todo(owner_id: int, todo_id: int) -> None:
    async def _delete(sess):
        todo = await _owned_todo(sess, owner_id, todo_id)
        before = snapshot(todo)
        await sess.exec(sqlalchemy_delete(Todo).where(Todo.parent_id == todo.id))
        await sess.delete(todo)
        return todo, before

    todo, before = await run_in_transaction(_delete)
    log_activity(owner_id, ENTITY_TODO, todo.title, ACTION_DELETE, entity_id=todo_id, before=before)


# --- bulk operations ---------------------------------------------------------
#
# Each bulk call runs in one transaction over the caller's own todos; ids that
# are missing or belong to someone else are skipped. One activity entry is
# written per affected todo.

BULK_UPDATABLE_FIELDS = ('category_id', 'priority')


def _clean_ids(ids) -> list[int]:
    if not isinstance(ids, (list, tuple)) or not ids:
        raise ValueError('At least one todo ID is required')
    if any(isinstance(i, bool) or not isinstance(i, int) for i in ids):
        raise ValueError('Todo IDs must be integers')
    return list(dict.fromkeys(ids))


async def _owned_todos(sess, owner_id: int, ids: list[int], *criteria) -> list[Todo]:
    stmt = select(Todo).where(Todo.owner_id == owner_id).where(Todo.id.in_(ids))
    for criterion in criteria:
        stmt = stmt.where(criterion)
    q = await sess.exec(stmt.order_by(Todo.id.asc()))
    return list(q.all())


async def bulk_complete(owner_id: int, ids, completed) -> tuple[list[Todo], list[Todo]]:
    """Set ``completed`` on many todos; return ``(changed, successors)``.

    Todos already in the requested state are left alone. Newly completed
    recurring todos get their successor exactly as a single completion would.
    """
    ids = _clean_ids(ids)
    if not isinstance(completed, bool):
        raise ValueError('Completed must be a boolean')

    async def _complete(sess):
        now = now_utc()
        todos = await _owned_todos(sess, owner_id, ids, Todo.completed == (not completed))
        successors = []
        for todo in todos:
            todo.completed = completed
            todo.updated_at = now
            sess.add(todo)
            if completed:
                due = successor_due_date(todo, completed_at=now)
                if due is not None:
                    successor = build_successor(todo, due)
                    sess.add(successor)
                    successors.append(successor)
        await sess.flush()
        for obj in (*todos, *successors):
            await sess.refresh(obj)
        return todos, successors

    todos, successors = await run_in_transaction(_complete)
    action = ACTION_COMPLETE if completed else ACTION_UNCOMPLETE
    for todo in todos:
        log_activity(owner_id, ENTITY_TODO, todo.title, action, entity_id=todo.id,
                     before={'completed': not completed}, after={'completed': completed})
    for successor in successors:
        log_activity(owner_id, ENTITY_TODO, successor.title, ACTION_CREATE, entity_id=successor.id, after=snapshot(successor))
    if successors:
        logger.info('bulk completion created %d successor(s) for user id=%s', len(successors), owner_id)
    return todos, successors


async def bulk_update(owner_id: int, ids, changes: dict[str, Any]) -> list[Todo]:
    """Move many todos to one category and/or give them one priority."""
    ids = _clean_ids(ids)
    unknown = set(changes) - set(BULK_UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f'unknown fields: {", ".join(sorted(unknown))}')
    if not changes:
        raise ValueError('At least one of category_id or priority is required')
    values: dict[str, Any] = {}
    if 'priority' in changes:
        values['priority'] = _clean_priority(changes['priority'])
    if 'category_id' in changes:
        values['category_id'] = changes['category_id']

    async def _update(sess):
        if 'category_id' in values:
            await _check_category(sess, owner_id, values['category_id'])
        now = now_utc()
        todos = await _owned_todos(sess, owner_id, ids)
        entries = []
        for todo in todos:
            before = {key: getattr(todo, key) for key in values}
            for key, val in values.items():
                setattr(todo, key, val)
            todo.updated_at = now
            sess.add(todo)
            entries.append(before)
        await sess.flush()
        for todo in todos:
            await sess.refresh(todo)
        return list(zip(todos, entries))

    rows = await run_in_transaction(_update)
    for todo, before in rows:
        log_activity(owner_id, ENTITY_TODO, todo.title, ACTION_UPDATE, entity_id=todo.id,
                     before=before, after={key: getattr(todo, key) for key in values})
    return [todo for todo, _ in rows]


async def bulk_delete(owner_id: int, ids) -> list[dict]:
    """Delete many todos with their subtasks; return what was deleted."""
    ids = _clean_ids(ids)

    async def _delete(sess):
        todos = await _owned_todos(sess, owner_id, ids)
        found = [todo.id for todo in todos]
        deleted = [{'id': todo.id, **snapshot(todo)} for todo in todos]
        if found:
            await sess.exec(sqlalchemy_delete(Todo).where(Todo.parent_id.in_(found)))
            await sess.exec(sqlalchemy_delete(Todo).where(Todo.id.in_(found)))
        return deleted

    deleted = await run_in_transaction(_delete)
    for before in deleted:
        log_activity(owner_id, ENTITY_TODO, before['title'], ACTION_DELETE, entity_id=before['id'], before=before)
    return deleted


async def _set_archived(owner_id: int, ids, archive: bool) -> list[Todo]:
    # Only top-level todos are archived or restored directly; their subtasks
    # follow them.
    ids = _clean_ids(ids)
    state = Todo.archived_at.is_(None) if archive else Todo.archived_at.is_not(None)

    async def _apply(sess):
        now = now_utc()
        stamp = now if archive else None
        todos = await _owned_todos(sess, owner_id, ids, Todo.parent_id.is_(None), state)
        if not todos:
            return []
        previous = [todo.archived_at for todo in todos]
        found = [todo.id for todo in todos]
        q = await sess.exec(select(Todo).where(Todo.parent_id.in_(found)))
        for todo in (*todos, *q.all()):
            todo.archived_at = stamp
            todo.updated_at = now
            sess.add(todo)
        await sess.flush()
        for todo in todos:
            await sess.refresh(todo)
        return list(zip(todos, previous))

    rows = await run_in_transaction(_apply)
    action = ACTION_ARCHIVE if archive else ACTION_RESTORE
    for todo, was in rows:
        log_activity(owner_id, ENTITY_TODO, todo.title, action, entity_id=todo.id,
                     before={'archived_at': was}, after={'archived_at': todo.archived_at})
    return [todo for todo, _ in rows]


async def bulk_archive(owner_id: int, ids) -> list[Todo]:
    """Archive many top-level todos (and their subtasks)."""
    return await _set_archived(owner_id, ids, archive=True)


async def bulk_restore(owner_id: int, ids) -> list[Todo]:
    """Bring archived top-level todos (and their subtasks) back."""
    return await _set_archived(owner_id, ids, archive=False)
