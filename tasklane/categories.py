"""Category workflows.

New categories always land at index 0: every existing category of the
owner moves down one slot in the same transaction, under the owner's
category scope lock, so positions stay dense. Deleting a category closes
its gap the same way and leaves its todos uncategorized.
"""
import logging
from typing import Optional

from sqlmodel import select
from sqlalchemy import func
from sqlalchemy import update as sqlalchemy_update

from . import config
from .activity import ENTITY_CATEGORY, ACTION_CREATE, ACTION_DELETE, ACTION_UPDATE, log_activity
from .db import async_session, run_in_transaction
from .models import Category, Todo
from .ordering import CategoryOrderStore, MemberNotFoundError, scope_locks

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 200


class DuplicateCategoryError(ValueError):
    pass


def snapshot(cat: Category) -> dict:
    return {'name': cat.name, 'color': cat.color, 'sort_order': cat.sort_order}


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError('name is required and cannot be empty')
    return name.strip()[:MAX_NAME_LENGTH]


async def _name_taken(sess, owner_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(Category.id).where(Category.owner_id == owner_id).where(Category.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Category.id != exclude_id)
    q = await sess.exec(stmt)
    return q.first() is not None


async def list_categories(owner_id: int) -> list[tuple[Category, int]]:
    """Return (category, todo_count) pairs ordered by sort_order."""
    async with async_session() as sess:
        q = await sess.exec(
            select(Category, func.count(Todo.id))
            .join(Todo, Todo.category_id == Category.id, isouter=True)
            .where(Category.owner_id == owner_id)
            .group_by(Category.id)
            .order_by(Category.sort_order.asc(), Category.id.asc())
        )
        return [(c, n) for c, n in q.all()]


async def get_category(owner_id: int, category_id: int) -> Category:
    async with async_session() as sess:
        cat = await CategoryOrderStore(sess, owner_id).get_member(category_id)
    if cat is None:
        raise MemberNotFoundError('category not found')
    return cat


async def create_category(owner_id: int, name, color: Optional[str] = None) -> Category:
    name = _clean_name(name)
    store_key = CategoryOrderStore(None, owner_id).lock_key(None)

    async def _create(sess):
        if await _name_taken(sess, owner_id, name):
            raise DuplicateCategoryError('Category with this name already exists')
        store = CategoryOrderStore(sess, owner_id)
        shifted = await store.shift_range(None, 0, None, 1, None)
        cat = Category(name=name, color=color or config.DEFAULT_CATEGORY_COLOR, owner_id=owner_id, sort_order=0)
        sess.add(cat)
        await sess.flush()
        await sess.refresh(cat)
        logger.info('created category id=%s owner=%s (shifted %s)', cat.id, owner_id, shifted)
        return cat

    async with scope_locks(store_key):
        cat = await run_in_transaction(_create)
    log_activity(owner_id, ENTITY_CATEGORY, cat.name, ACTION_CREATE, entity_id=cat.id, after=snapshot(cat))
    return cat


async def update_category(owner_id: int, category_id: int, name=None, color: Optional[str] = None) -> Category:
    if name is not None:
        name = _clean_name(name)

    async def _update(sess):
        cat = await CategoryOrderStore(sess, owner_id).get_member(category_id)
        if cat is None:
            raise MemberNotFoundError('category not found')
        before = snapshot(cat)
        if name is not None and name != cat.name:
            if await _name_taken(sess, owner_id, name, exclude_id=cat.id):
                raise DuplicateCategoryError('Category with this name already exists')
            cat.name = name
        if color:
            cat.color = color
        sess.add(cat)
        await sess.flush()
        return cat, before

    cat, before = await run_in_transaction(_update)
    log_activity(owner_id, ENTITY_CATEGORY, cat.name, ACTION_UPDATE, entity_id=cat.id, before=before, after=snapshot(cat))
    return cat


async def delete_category(owner_id: int, category_id: int) -> None:
    store_key = CategoryOrderStore(None, owner_id).lock_key(None)

    async def _delete(sess):
        store = CategoryOrderStore(sess, owner_id)
        cat = await store.get_member(category_id)
        if cat is None:
            raise MemberNotFoundError('category not found')
        before = snapshot(cat)
        await sess.exec(
            sqlalchemy_update(Todo)
            .where(Todo.category_id == cat.id)
            .values(category_id=None)
            .execution_options(synchronize_session=False)
        )
        await sess.delete(cat)
        await sess.flush()
        await store.shift_range(None, before['sort_order'] + 1, None, -1, None)
        return cat, before

    async with scope_locks(store_key):
        cat, before = await run_in_transaction(_delete)
    logger.info('deleted category id=%s owner=%s', category_id, owner_id)
    log_activity(owner_id, ENTITY_CATEGORY, cat.name, ACTION_DELETE, entity_id=category_id, before=before)
