from fastapi import FastAPI, HTTPException, Depends, Query
from pydantic import BaseModel
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager
import logging
import sys

from . import config
from . import activity
from . import categories as category_service
from . import todos as todo_service
from .auth import issue_token, require_login, authenticate_user, create_user, UsernameTakenError
from .db import init_db
from .models import Category, Todo, User
from .ordering import UNSET, MemberNotFoundError, move_category, move_todo
from .recurrence import RECURRENCE_PRESETS, RecurrenceOptions, decode_rule, describe_rule, encode_rule, occurrences
from .utils import isoformat_or_none, loads_state

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from the service appear on the console when no
# handlers are configured (safe fallback for development/testing).
_pkg_logger = logging.getLogger('tasklane')
if not _pkg_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    _pkg_logger.addHandler(handler)
_pkg_logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .auth import SECRET_KEY, INSECURE_SECRET_FALLBACK
    if not SECRET_KEY or SECRET_KEY == INSECURE_SECRET_FALLBACK:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    await init_db()
    from . import db as _dbmod
    logger.info('starting server using DATABASE_URL=%s', _dbmod.DATABASE_URL)
    yield
    await activity.drain()


app = FastAPI(lifespan=lifespan)


def _not_found(e: LookupError):
    return HTTPException(status_code=404, detail=str(e) or 'not found')


def _bad_request(e: ValueError):
    return HTTPException(status_code=400, detail=str(e) or 'invalid input')


def category_to_dict(c: Category, todo_count: Optional[int] = None) -> dict:
    out = {
        'id': c.id,
        'name': c.name,
        'color': c.color,
        'sort_order': c.sort_order,
        'created_at': isoformat_or_none(c.created_at),
    }
    if todo_count is not None:
        out['todo_count'] = todo_count
    return out


def todo_to_dict(t: Todo, subtasks: Optional[list[Todo]] = None) -> dict:
    out = {
        'id': t.id,
        'title': t.title,
        'description': t.description,
        'completed': t.completed,
        'priority': t.priority.value if hasattr(t.priority, 'value') else t.priority,
        'due_date': isoformat_or_none(t.due_date),
        'category_id': t.category_id,
        'category': category_to_dict(t.category) if t.category is not None else None,
        'parent_id': t.parent_id,
        'sort_order': t.sort_order,
        'recurrence_rule': t.recurrence_rule,
        'recurrence_description': describe_rule(t.recurrence_rule) if t.recurrence_rule else None,
        'recurrence_end': isoformat_or_none(t.recurrence_end),
        'archived_at': isoformat_or_none(t.archived_at),
        'created_at': isoformat_or_none(t.created_at),
        'updated_at': isoformat_or_none(t.updated_at),
    }
    if subtasks is not None:
        out['subtasks'] = [todo_to_dict(s) for s in subtasks]
    return out


@app.get('/health')
async def health():
    return {'ok': True}


class RegisterRequest(BaseModel):
    username: str
    password: str


class TokenRequest(BaseModel):
    username: str
    password: str


@app.post('/auth/register', status_code=201)
async def register(req: RegisterRequest):
    try:
        user = await create_user(req.username, req.password)
    except UsernameTakenError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise _bad_request(e)
    return {'id': user.id, 'username': user.username}


@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    access_token = issue_token(user)
    return {'access_token': access_token, 'token_type': 'bearer'}


# --- todos -----------------------------------------------------------------

class CreateTodoRequest(BaseModel):
    title: Any = None
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    category_id: Optional[int] = None
    parent_id: Optional[int] = None
    recurrence_rule: Optional[str] = None
    recurrence_end: Optional[datetime] = None


class UpdateTodoRequest(BaseModel):
    title: Any = None
    description: Optional[str] = None
    completed: Any = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    category_id: Optional[int] = None
    recurrence_rule: Optional[str] = None
    recurrence_end: Optional[datetime] = None


class ReorderTodoRequest(BaseModel):
    todo_id: Optional[int] = None
    new_sort_order: Any = None
    new_category_id: Optional[int] = None


@app.get('/api/todos')
async def api_list_todos(
    category_id: Optional[int] = None,
    uncategorized: bool = False,
    status: Optional[str] = None,
    archived: bool = False,
    current_user: User = Depends(require_login),
):
    """List top-level todos with their subtasks, incomplete first, then by sort_order.

    Archived todos are hidden unless ``archived=true``, which lists only them.
    """
    scope = UNSET
    if uncategorized:
        scope = None
    elif category_id is not None:
        scope = category_id
    rows = await todo_service.list_todos(current_user.id, category_id=scope, status=status, archived=archived)
    subs = await todo_service.list_subtasks_for(current_user.id, [t.id for t in rows])
    return [todo_to_dict(t, subtasks=subs[t.id]) for t in rows]


@app.post('/api/todos', status_code=201)
async def api_create_todo(payload: CreateTodoRequest, current_user: User = Depends(require_login)):
    try:
        todo = await todo_service.create_todo(
            current_user.id,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            due_date=payload.due_date,
            category_id=payload.category_id,
            parent_id=payload.parent_id,
            recurrence_rule=payload.recurrence_rule,
            recurrence_end=payload.recurrence_end,
        )
    except LookupError as e:
        raise _not_found(e)
    except ValueError as e:
        raise _bad_request(e)
    return todo_to_dict(todo)


# registered before /api/todos/{todo_id} so 'reorder' is not taken for an id
@app.patch('/api/todos/reorder')
async def api_reorder_todo(payload: ReorderTodoRequest, current_user: User = Depends(require_login)):
    """Move a todo to ``new_sort_order``, optionally into ``new_category_id``.

    Sending ``new_category_id: null`` moves the todo to uncategorized;
    omitting the key keeps its category.
    """
    if payload.todo_id is None:
        raise HTTPException(status_code=400, detail='todo_id is required')
    new_scope = payload.new_category_id if 'new_category_id' in payload.model_fields_set else UNSET
    try:
        todo = await move_todo(current_user.id, payload.todo_id, payload.new_sort_order, new_scope)
    except MemberNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception:
        logger.exception('failed to reorder todo id=%s', payload.todo_id)
        raise HTTPException(status_code=500, detail='Failed to reorder todo')
    return todo_to_dict(todo)


class BulkIdsRequest(BaseModel):
    ids: Any = None


class BulkCompleteRequest(BulkIdsRequest):
    completed: Any = None


class BulkUpdateRequest(BulkIdsRequest):
    category_id: Optional[int] = None
    priority: Optional[str] = None


@app.post('/api/todos/bulk-complete')
async def api_bulk_complete(payload: BulkCompleteRequest, current_user: User = Depends(require_login)):
    """Complete or reopen many todos. Recurring todos that get completed spawn successors."""
    try:
        todos, successors = await todo_service.bulk_complete(current_user.id, payload.ids, payload.completed)
    except ValueError as e:
        raise _bad_request(e)
    return {
        'updated': len(todos),
        'todos': [todo_to_dict(t) for t in todos],
        'next_occurrences': [todo_to_dict(s) for s in successors],
    }


@app.post('/api/todos/bulk-update')
async def api_bulk_update(payload: BulkUpdateRequest, current_user: User = Depends(require_login)):
    # only the fields actually sent are applied; category_id: null uncategorizes
    changes = payload.model_dump(exclude_unset=True, exclude={'ids'})
    try:
        todos = await todo_service.bulk_update(current_user.id, payload.ids, changes)
    except ValueError as e:
        raise _bad_request(e)
    return {'updated': len(todos), 'todos': [todo_to_dict(t) for t in todos]}


@app.post('/api/todos/bulk-delete')
async def api_bulk_delete(payload: BulkIdsRequest, current_user: User = Depends(require_login)):
    try:
        deleted = await todo_service.bulk_delete(current_user.id, payload.ids)
    except ValueError as e:
        raise _bad_request(e)
    return {'deleted': len(deleted), 'deleted_todos': [{'id': d['id'], 'title': d['title']} for d in deleted]}


@app.post('/api/todos/bulk-archive')
async def api_bulk_archive(payload: BulkIdsRequest, current_user: User = Depends(require_login)):
    try:
        todos = await todo_service.bulk_archive(current_user.id, payload.ids)
    except ValueError as e:
        raise _bad_request(e)
    return {'archived': len(todos), 'todos': [todo_to_dict(t) for t in todos]}


@app.post('/api/todos/bulk-restore')
async def api_bulk_restore(payload: BulkIdsRequest, current_user: User = Depends(require_login)):
    try:
        todos = await todo_service.bulk_restore(current_user.id, payload.ids)
    except ValueError as e:
        raise _bad_request(e)
    return {'restored': len(todos), 'todos': [todo_to_dict(t) for t in todos]}


@app.get('/api/todos/{todo_id}')
async def api_get_todo(todo_id: int, current_user: User = Depends(require_login)):
    try:
        todo = await todo_service.get_todo(current_user.id, todo_id)
    except LookupError as e:
        raise _not_found(e)
    subs = await todo_service.list_subtasks(current_user.id, todo.id)
    return todo_to_dict(todo, subtasks=subs)


@app.patch('/api/todos/{todo_id}')
async def api_update_todo(todo_id: int, payload: UpdateTodoRequest, current_user: User = Depends(require_login)):
    """Update a todo. Completing a recurring todo also returns its successor."""
    changes = payload.model_dump(exclude_unset=True)
    try:
        todo, successor = await todo_service.update_todo(current_user.id, todo_id, changes)
    except LookupError as e:
        raise _not_found(e)
    except ValueError as e:
        raise _bad_request(e)
    out = todo_to_dict(todo)
    out['next_occurrence'] = todo_to_dict(successor) if successor is not None else None
    return out


@app.delete('/api/todos/{todo_id}')
async def api_delete_todo(todo_id: int, current_user: User = Depends(require_login)):
    try:
        await todo_service.delete_todo(current_user.id, todo_id)
    except LookupError as e:
        raise _not_found(e)
    return {'ok': True}


# --- categories --------------------------------------------------------------

class CreateCategoryRequest(BaseModel):
    name: Any = None
    color: Optional[str] = None


class UpdateCategoryRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class ReorderCategoryRequest(BaseModel):
    category_id: Optional[int] = None
    new_sort_order: Any = None


@app.get('/api/categories')
async def api_list_categories(current_user: User = Depends(require_login)):
    """Return the caller's categories ordered by sort_order, with todo counts."""
    rows = await category_service.list_categories(current_user.id)
    return [category_to_dict(c, todo_count=n) for c, n in rows]


@app.post('/api/categories', status_code=201)
async def api_create_category(payload: CreateCategoryRequest, current_user: User = Depends(require_login)):
    try:
        cat = await category_service.create_category(current_user.id, payload.name, payload.color)
    except ValueError as e:
        raise _bad_request(e)
    return category_to_dict(cat, todo_count=0)


@app.patch('/api/categories/reorder')
async def api_reorder_category(payload: ReorderCategoryRequest, current_user: User = Depends(require_login)):
    if payload.category_id is None:
        raise HTTPException(status_code=400, detail='category_id is required')
    try:
        cat = await move_category(current_user.id, payload.category_id, payload.new_sort_order)
    except MemberNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception:
        logger.exception('failed to reorder category id=%s', payload.category_id)
        raise HTTPException(status_code=500, detail='Failed to reorder category')
    return category_to_dict(cat)


@app.get('/api/categories/{category_id}')
async def api_get_category(category_id: int, current_user: User = Depends(require_login)):
    try:
        cat = await category_service.get_category(current_user.id, category_id)
    except LookupError as e:
        raise _not_found(e)
    return category_to_dict(cat)


@app.patch('/api/categories/{category_id}')
async def api_update_category(category_id: int, payload: UpdateCategoryRequest, current_user: User = Depends(require_login)):
    try:
        cat = await category_service.update_category(current_user.id, category_id, name=payload.name, color=payload.color)
    except LookupError as e:
        raise _not_found(e)
    except ValueError as e:
        raise _bad_request(e)
    return category_to_dict(cat)


@app.delete('/api/categories/{category_id}')
async def api_delete_category(category_id: int, current_user: User = Depends(require_login)):
    try:
        await category_service.delete_category(current_user.id, category_id)
    except LookupError as e:
        raise _not_found(e)
    return {'ok': True}


# --- recurrence helpers --------------------------------------------------------

class EncodeRuleRequest(BaseModel):
    frequency: str
    interval: Optional[int] = None
    weekdays: Optional[list[int]] = None
    day_of_month: Optional[int] = None


@app.post('/api/recurrence/encode')
async def api_encode_rule(payload: EncodeRuleRequest, current_user: User = Depends(require_login)):
    """Build a rule string from structured options (weekdays are 0=Sunday)."""
    try:
        rule = encode_rule(RecurrenceOptions.from_mapping(payload.model_dump()))
    except ValueError as e:
        raise _bad_request(e)
    return {'rule': rule, 'description': describe_rule(rule)}


@app.get('/api/recurrence/decode')
async def api_decode_rule(rule: str = Query(...), current_user: User = Depends(require_login)):
    opts = decode_rule(rule)
    return {'rule': rule, 'options': opts.as_dict() if opts is not None else None}


@app.get('/api/recurrence/describe')
async def api_describe_rule(rule: str = Query(...), current_user: User = Depends(require_login)):
    return {'rule': rule, 'description': describe_rule(rule)}


@app.get('/api/recurrence/presets')
async def api_recurrence_presets(current_user: User = Depends(require_login)):
    return [
        {'key': key, 'rule': rule, 'description': describe_rule(rule) if rule else 'Does not repeat'}
        for key, rule in RECURRENCE_PRESETS.items()
    ]


@app.get('/api/recurrence/next')
async def api_next_occurrence(
    rule: str = Query(...),
    after: datetime = Query(...),
    end: Optional[datetime] = None,
    count: int = Query(1, ge=1, le=50),
    current_user: User = Depends(require_login),
):
    """Next occurrence after ``after``; ``count`` > 1 also lists the following ones."""
    upcoming = occurrences(rule, after, end, limit=count)
    out = {'rule': rule, 'next': isoformat_or_none(upcoming[0]) if upcoming else None}
    if count > 1:
        out['upcoming'] = [isoformat_or_none(d) for d in upcoming]
    return out


# --- activity ------------------------------------------------------------------

@app.get('/api/activity')
async def api_activity(
    limit: int = Query(50, ge=1, le=500),
    entity_type: Optional[str] = None,
    current_user: User = Depends(require_login),
):
    rows = await activity.recent_activity(current_user.id, limit=limit, entity_type=entity_type)
    return [
        {
            'id': r.id,
            'entity_type': r.entity_type,
            'entity_id': r.entity_id,
            'entity_title': r.entity_title,
            'action': r.action,
            'before_state': loads_state(r.before_state),
            'after_state': loads_state(r.after_state),
            'created_at': isoformat_or_none(r.created_at),
        }
        for r in rows
    ]
