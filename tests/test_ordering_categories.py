import pytest
from sqlmodel import select

from tasklane.categories import (
    DuplicateCategoryError,
    create_category,
    delete_category,
    list_categories,
    update_category,
)
from tasklane.db import async_session
from tasklane.models import Todo
from tasklane.ordering import MemberNotFoundError, move_category
from tasklane.todos import create_todo

pytestmark = pytest.mark.asyncio


async def _names(owner_id):
    return [c.name for c, _ in await list_categories(owner_id)]


async def _orders(owner_id):
    return [c.sort_order for c, _ in await list_categories(owner_id)]


async def test_new_category_is_inserted_first(user):
    for name in ('a', 'b', 'c'):
        await create_category(user.id, name)
    assert await _names(user.id) == ['c', 'b', 'a']
    assert await _orders(user.id) == [0, 1, 2]


async def test_new_category_gets_default_color(user):
    cat = await create_category(user.id, 'plain')
    assert cat.color == '#6b7280'
    colored = await create_category(user.id, 'red', '#ff0000')
    assert colored.color == '#ff0000'


async def test_category_names_are_unique_per_owner(user, make_user):
    await create_category(user.id, 'Work')
    with pytest.raises(DuplicateCategoryError):
        await create_category(user.id, ' Work ')
    other = await make_user()
    # another owner may reuse the name
    await create_category(other.id, 'Work')


async def test_empty_category_name_rejected(user):
    with pytest.raises(ValueError):
        await create_category(user.id, '   ')


async def test_reorder_categories(user):
    for name in ('a', 'b', 'c', 'd'):
        await create_category(user.id, name)
    # order is now d, c, b, a
    rows = await list_categories(user.id)
    d = rows[0][0]
    moved = await move_category(user.id, d.id, 3)
    assert moved.sort_order == 3
    assert await _names(user.id) == ['c', 'b', 'a', 'd']
    assert await _orders(user.id) == [0, 1, 2, 3]


async def test_reorder_category_of_other_user_not_found(user, make_user):
    other = await make_user()
    theirs = await create_category(other.id, 'theirs')
    with pytest.raises(MemberNotFoundError):
        await move_category(user.id, theirs.id, 0)


async def test_delete_category_closes_gap_and_uncategorizes_todos(user):
    for name in ('a', 'b', 'c'):
        await create_category(user.id, name)
    rows = await list_categories(user.id)
    middle = rows[1][0]
    todo = await create_todo(user.id, 'filed', category_id=middle.id)

    await delete_category(user.id, middle.id)

    assert await _names(user.id) == ['c', 'a']
    assert await _orders(user.id) == [0, 1]
    async with async_session() as sess:
        q = await sess.exec(select(Todo).where(Todo.id == todo.id))
        assert q.first().category_id is None


async def test_list_categories_counts_todos(user):
    cat = await create_category(user.id, 'counted')
    await create_todo(user.id, 'one', category_id=cat.id)
    await create_todo(user.id, 'two', category_id=cat.id)
    rows = await list_categories(user.id)
    assert [(c.id, n) for c, n in rows] == [(cat.id, 2)]


async def test_update_category(user):
    cat = await create_category(user.id, 'old')
    await create_category(user.id, 'taken')
    updated = await update_category(user.id, cat.id, name='new', color='#123456')
    assert updated.name == 'new'
    assert updated.color == '#123456'
    with pytest.raises(DuplicateCategoryError):
        await update_category(user.id, cat.id, name='taken')
    with pytest.raises(MemberNotFoundError):
        await update_category(user.id, 987654321, name='x')
