"""Dense, per-scope ordering for todos and categories.

Every ordered member carries an integer ``sort_order``. Within a scope
(owner + category for top-level todos, owner for categories) the values are
kept contiguous from 0: moving a member from ``old`` to ``new`` shifts the
members in between by one, in the same transaction as the final write.

Concurrent moves in one scope are serialized by an in-process
``asyncio.Lock`` per scope key (see ``config.ORDERING_SCOPE_LOCKS``); the
transaction boundary is the only rollback mechanism.
"""
from contextlib import AsyncExitStack, asynccontextmanager
import asyncio
import logging
import weakref

from sqlmodel import select
from sqlalchemy import update as sqlalchemy_update

from . import config
from .db import run_in_transaction
from .models import Category, Todo

logger = logging.getLogger(__name__)


class InvalidMoveError(ValueError):
    """Malformed move request; raised before any transaction opens."""


class MemberNotFoundError(LookupError):
    """Member (or destination scope) missing or owned by another user."""


class _Unset:
    def __repr__(self):
        return 'UNSET'


# Passed as new_scope_id to keep the member in its current scope. None is a
# real scope for todos (uncategorized), so it cannot double as "not given".
UNSET = _Unset()
_SCOPE_CHANGED = object()


def validate_index(new_index) -> int:
    if isinstance(new_index, bool) or not isinstance(new_index, int):
        raise InvalidMoveError('new_sort_order must be an integer')
    if new_index < 0:
        raise InvalidMoveError('new_sort_order must be non-negative')
    return new_index


# One lock table per event loop: asyncio locks must not be shared between
# loops (pytest-asyncio creates a loop per test). Locks are weakly held, so a
# scope key drops out of its table once no task holds or waits on its lock.
_locks_by_loop: 'weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, weakref.WeakValueDictionary]' = weakref.WeakKeyDictionary()


def _lock_for(key) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _locks_by_loop.setdefault(loop, weakref.WeakValueDictionary())
    lock = locks.get(key)
    if lock is None:
        lock = locks[key] = asyncio.Lock()
    return lock


@asynccontextmanager
async def scope_locks(*keys):
    """Hold the locks for ``keys``, always acquired in the same order."""
    if not config.ORDERING_SCOPE_LOCKS:
        yield
        return
    async with AsyncExitStack() as stack:
        for key in sorted(set(keys), key=repr):
            await stack.enter_async_context(_lock_for(key))
        yield


class OrderedStore:
    """Persistence operations the sequencer needs for one kind of member.

    Bound to an open session and the requesting owner; every query is
    filtered by owner so other users' rows are never read or shifted.
    """
    kind = ''
    model = None

    def __init__(self, sess, owner_id: int):
        self.sess = sess
        self.owner_id = owner_id

    def scope_of(self, member):
        return None

    def lock_key(self, scope_id):
        return (self.kind, self.owner_id, scope_id)

    def _scope_filter(self, stmt, scope_id):
        return stmt.where(self.model.owner_id == self.owner_id)

    async def get_member(self, member_id: int):
        q = await self.sess.exec(
            select(self.model)
            .where(self.model.id == member_id)
            .where(self.model.owner_id == self.owner_id)
        )
        return q.first()

    async def ensure_scope(self, scope_id) -> None:
        """Raise MemberNotFoundError if ``scope_id`` is not a valid destination."""
        return None

    async def shift_range(self, scope_id, low: int, high: int | None, delta: int, exclude_id: int | None) -> int:
        """Add ``delta`` to sort_order for members in ``[low, high]``.

        ``high=None`` leaves the range open upwards. Returns the row count.
        """
        stmt = sqlalchemy_update(self.model).where(self.model.sort_order >= low)
        if high is not None:
            stmt = stmt.where(self.model.sort_order <= high)
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        stmt = self._scope_filter(stmt, scope_id)
        stmt = stmt.values(sort_order=self.model.sort_order + delta).execution_options(synchronize_session=False)
        res = await self.sess.exec(stmt)
        return res.rowcount

    async def write_member(self, member, sort_order: int, scope_id=UNSET):
        member.sort_order = sort_order
        self.sess.add(member)
        await self.sess.flush()
        await self.sess.refresh(member)
        return member


class TodoOrderStore(OrderedStore):
    """Top-level todos, scoped by category (None = uncategorized)."""
    kind = 'todo'
    model = Todo

    def scope_of(self, member):
        return member.category_id

    def _scope_filter(self, stmt, scope_id):
        stmt = stmt.where(Todo.owner_id == self.owner_id).where(Todo.parent_id.is_(None))
        if scope_id is None:
            return stmt.where(Todo.category_id.is_(None))
        return stmt.where(Todo.category_id == scope_id)

    async def get_member(self, member_id: int):
        member = await super().get_member(member_id)
        # subtasks are not part of any ordered scope
        if member is not None and member.parent_id is not None:
            return None
        return member

    async def ensure_scope(self, scope_id) -> None:
        if scope_id is None:
            return
        q = await self.sess.exec(
            select(Category.id)
            .where(Category.id == scope_id)
            .where(Category.owner_id == self.owner_id)
        )
        if q.first() is None:
            raise MemberNotFoundError('category not found')

    async def write_member(self, member, sort_order: int, scope_id=UNSET):
        if scope_id is not UNSET:
            member.category_id = scope_id
        return await super().write_member(member, sort_order)


class CategoryOrderStore(OrderedStore):
    """Categories, one scope per owner."""
    kind = 'category'
    model = Category


class Sequencer:
    """Moves one member of an ordered scope to a new index.

    Subclasses pick the store; the shift algorithm is shared::

        same scope, old < new   members in (old, new] move up by one (-1)
        same scope, old > new   members in [new, old) move down by one (+1)
        old == new              nothing shifts, the write still happens
        other scope             destination members at >= new get +1; the
                                source scope keeps its gap

    An index past the end of the scope shifts everything and leaves the
    member at that index.
    """
    store_class = OrderedStore
    max_attempts = 3

    def _store(self, sess, owner_id: int) -> OrderedStore:
        return self.store_class(sess, owner_id)

    async def _peek(self, sess, owner_id: int, member_id: int):
        member = await self._store(sess, owner_id).get_member(member_id)
        if member is None:
            raise MemberNotFoundError(f'{self.store_class.kind} not found')
        return member

    async def move(self, owner_id: int, member_id: int, new_index, new_scope_id=UNSET):
        new_index = validate_index(new_index)
        for _ in range(self.max_attempts):
            member = await run_in_transaction(self._peek, owner_id, member_id)
            store = self._store(None, owner_id)
            source = store.scope_of(member)
            keys = [store.lock_key(source)]
            if new_scope_id is not UNSET:
                keys.append(store.lock_key(new_scope_id))
            async with scope_locks(*keys):
                result = await run_in_transaction(
                    self._apply, owner_id, member_id, new_index, new_scope_id, source
                )
            if result is not _SCOPE_CHANGED:
                return result
            logger.info('move %s id=%s: scope changed while waiting for lock, retrying', store.kind, member_id)
        raise RuntimeError(f'could not lock scope for {self.store_class.kind} {member_id}')

    async def _apply(self, sess, owner_id: int, member_id: int, new_index: int, new_scope_id, expected_scope):
        store = self._store(sess, owner_id)
        member = await store.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(f'{store.kind} not found')
        current = store.scope_of(member)
        if current != expected_scope:
            return _SCOPE_CHANGED

        old = member.sort_order
        target = current if new_scope_id is UNSET else new_scope_id
        shifted = 0
        if target != current:
            await store.ensure_scope(target)
            shifted = await store.shift_range(target, new_index, None, 1, member.id)
        elif old < new_index:
            shifted = await store.shift_range(current, old + 1, new_index, -1, member.id)
        elif old > new_index:
            shifted = await store.shift_range(current, new_index, old - 1, 1, member.id)

        member = await store.write_member(member, new_index, target if target != current else UNSET)
        logger.info(
            'move %s id=%s owner=%s scope=%s->%s index=%s->%s shifted=%s',
            store.kind, member_id, owner_id, current, target, old, new_index, shifted,
        )
        return member


class TodoSequencer(Sequencer):
    store_class = TodoOrderStore


class CategorySequencer(Sequencer):
    store_class = CategoryOrderStore


todo_sequencer = TodoSequencer()
category_sequencer = CategorySequencer()


async def move_todo(owner_id: int, todo_id: int, new_index, new_category_id=UNSET) -> Todo:
    return await todo_sequencer.move(owner_id, todo_id, new_index, new_category_id)


async def move_category(owner_id: int, category_id: int, new_index) -> Category:
    return await category_sequencer.move(owner_id, category_id, new_index)
