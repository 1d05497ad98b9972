"""
Query builder rendering and execution.
"""

import pytest

from quarry.orm import QueryBuilder
from quarry.orm.exceptions import InvalidIdentifier, InvalidOperator, ModelNotFound, NoConnection

from tests.models import Comment, Post, User


def test_where_shorthand_is_equality():
    sql, bindings = User.query().where("name", "John").to_sql()
    assert sql == "SELECT * FROM users WHERE name = ?"
    assert bindings == ["John"]


def test_where_none_renders_is_null():
    sql, bindings = User.query().where("email", None).where("name", "!=", None).to_sql()
    assert sql == "SELECT * FROM users WHERE email IS NULL AND name IS NOT NULL"
    assert bindings == []


def test_where_in_operator_form():
    sql, bindings = User.query().where("name", "in", ["a", "b"]).to_sql()
    assert sql == "SELECT * FROM users WHERE name IN (?, ?)"
    assert bindings == ["a", "b"]


def test_or_where_wraps_only_previous_predicate():
    sql, bindings = User.query() \
        .where("a", 1) \
        .where("b", 2) \
        .or_where("c", ">", 3) \
        .to_sql()
    assert sql == "SELECT * FROM users WHERE a = ? AND (b = ? OR c > ?)"
    assert bindings == [1, 2, 3]


def test_or_where_without_previous_is_where():
    sql, bindings = User.query().or_where("a", 1).to_sql()
    assert sql == "SELECT * FROM users WHERE a = ?"
    assert bindings == [1]


def test_where_in_empty_is_always_false():
    sql, bindings = User.query().where("name", "x").where_in("id", []).to_sql()
    assert sql == "SELECT * FROM users WHERE name = ? AND 1 = 0"
    assert bindings == ["x"]


def test_where_not_in_empty_is_always_true():
    sql, bindings = User.query().where_not_in("id", []).to_sql()
    assert sql == "SELECT * FROM users WHERE 1 = 1"
    assert bindings == []


def test_where_between_and_raw():
    sql, bindings = Comment.query() \
        .where_between("id", 1, 10) \
        .where_raw("length(body) > ?", [3]) \
        .to_sql()
    assert sql == "SELECT * FROM comments WHERE id BETWEEN ? AND ? AND length(body) > ?"
    assert bindings == [1, 10, 3]


def test_soft_delete_scope_is_appended():
    sql, _ = Post.query().where("title", "x").to_sql()
    assert sql == "SELECT * FROM posts WHERE title = ? AND posts.deleted_at IS NULL"


def test_with_trashed_drops_scope():
    sql, _ = Post.query().with_trashed().to_sql()
    assert sql == "SELECT * FROM posts"


def test_explicit_deleted_at_filter_drops_scope():
    sql, _ = Post.query().where_not_null("deleted_at").to_sql()
    assert sql == "SELECT * FROM posts WHERE deleted_at IS NOT NULL"


def test_join_order_limit_offset():
    sql, _ = User.query() \
        .select("users.*", "posts.title AS post_title") \
        .join("posts", "users.id", "=", "posts.user_id") \
        .left_join("profiles", "users.id", "profiles.user_id") \
        .order_by("users.created_at", "desc") \
        .limit(10) \
        .offset(20) \
        .to_sql()
    assert sql == (
        "SELECT users.*, posts.title AS post_title FROM users "
        "INNER JOIN posts ON users.id = posts.user_id "
        "LEFT JOIN profiles ON users.id = profiles.user_id "
        "ORDER BY users.created_at DESC LIMIT 10 OFFSET 20"
    )


def test_join_rejects_non_comparison_operator():
    with pytest.raises(InvalidOperator):
        User.query().join("posts", "users.id", "LIKE", "posts.user_id")


def test_group_by_and_having():
    sql, bindings = Comment.query() \
        .select("post_id") \
        .where("body", "!=", "") \
        .group_by("post_id") \
        .having_raw("COUNT(*) > ?", [2]) \
        .to_sql()
    assert sql == (
        "SELECT post_id FROM comments WHERE body != ? "
        "GROUP BY post_id HAVING COUNT(*) > ?"
    )
    assert bindings == ["", 2]


def test_distinct():
    sql, _ = Comment.query().select("post_id").distinct().to_sql()
    assert sql == "SELECT DISTINCT post_id FROM comments"


@pytest.mark.parametrize("build", [
    lambda q: q.where("name; DROP TABLE users", 1),
    lambda q: q.order_by("name desc"),
    lambda q: q.where_in("id)", [1]),
    lambda q: q.join("posts p", "users.id", "=", "p.user_id"),
    lambda q: q.select("name'"),
    lambda q: q.group_by("a b"),
])
@pytest.mark.asyncio
async def test_unsafe_identifiers_raise_before_sql(db, build):
    with pytest.raises(InvalidIdentifier):
        build(User.query())
    assert db.statements == []


def test_bare_table_name_is_validated():
    with pytest.raises(InvalidIdentifier):
        QueryBuilder(table="users; --")


def test_where_requires_a_value():
    with pytest.raises(TypeError):
        User.query().where("name")


@pytest.mark.asyncio
async def test_unbound_model_raises_no_connection():
    with pytest.raises(NoConnection):
        await User.query().get()


@pytest.mark.asyncio
async def test_where_in_empty_returns_no_rows(db):
    await User.create({"name": "a"})
    assert await User.where_in("id", []).get() == []


@pytest.mark.asyncio
async def test_batch_insert_is_one_statement(db):
    result = await Comment.query().insert([
        {"post_id": 1, "body": "first"},
        {"post_id": 1, "body": "second"},
    ])

    inserts = [sql for sql, _ in db.statements if sql.startswith("INSERT")]
    assert len(inserts) == 1
    assert inserts[0].endswith("VALUES (?, ?, ?, ?), (?, ?, ?, ?)")
    assert result.affected_rows == 2

    comments = await Comment.all()
    assert [c.body for c in comments] == ["first", "second"]
    assert all(c.created_at and c.updated_at for c in comments)


@pytest.mark.asyncio
async def test_batch_insert_requires_same_columns(db):
    with pytest.raises(ValueError):
        await Comment.query().insert([{"body": "a"}, {"post_id": 1}])


@pytest.mark.asyncio
async def test_update_sets_updated_at(db):
    await Comment.query().insert({"post_id": 1, "body": "a", "updated_at": "2000-01-01 00:00:00"})

    affected = await Comment.where("post_id", 1).update({"body": "b"})

    assert affected == 1
    comment = await Comment.first()
    assert comment.body == "b"
    assert comment.updated_at != "2000-01-01 00:00:00"


@pytest.mark.asyncio
async def test_builder_delete_soft_deletes(db):
    await Post.query().insert([{"title": "a", "user_id": 1}, {"title": "b", "user_id": 1}])

    assert await Post.where("title", "a").delete() == 1

    assert await Post.count() == 1
    assert await Post.with_trashed().count() == 2

    assert await Post.query().with_trashed().where("title", "a").force_delete() == 1
    assert await Post.with_trashed().count() == 1


@pytest.mark.asyncio
async def test_aggregates(db):
    await Comment.query().insert([
        {"post_id": 1, "body": "a"},
        {"post_id": 2, "body": "b"},
        {"post_id": 3, "body": "c"},
    ])

    assert await Comment.count() == 3
    assert await Comment.query().where("post_id", ">", 1).count() == 2
    assert await Comment.query().sum("post_id") == 6
    assert await Comment.query().avg("post_id") == 2.0
    assert await Comment.query().where("post_id", 9).exists() is False
    assert await Comment.query().where("post_id", 9).sum("post_id") == 0


@pytest.mark.asyncio
async def test_count_and_paginate_grouped_query(db):
    await Comment.query().insert([
        {"post_id": post_id, "body": "x"} for post_id in (1, 2, 2, 2, 2, 3)
    ])

    assert await Comment.query().select("post_id").group_by("post_id").count() == 3
    assert await Comment.query() \
        .select("post_id") \
        .group_by("post_id") \
        .having_raw("COUNT(*) > ?", [1]) \
        .count() == 1

    page = await QueryBuilder(table="comments", database=db) \
        .select("post_id") \
        .group_by("post_id") \
        .order_by("post_id") \
        .paginate(1, 2)

    assert (page.total, page.last_page, page.from_, page.to) == (3, 2, 1, 2)
    assert page.data == [{"post_id": 1}, {"post_id": 2}]


@pytest.mark.asyncio
async def test_count_respects_distinct(db):
    await Comment.query().insert([
        {"post_id": post_id, "body": "x"} for post_id in (1, 2, 2, 3)
    ])
    db.reset()

    assert await Comment.query().select("post_id").distinct().count() == 3
    assert db.selects == [
        "SELECT COUNT(*) AS aggregate FROM (SELECT DISTINCT post_id FROM comments) AS quarry_count",
    ]
    assert await Comment.query().distinct().count("post_id") == 3
    assert await Comment.query().count("post_id") == 4


@pytest.mark.asyncio
async def test_paginate_clamps_to_last_page(db):
    await Comment.query().insert([{"post_id": 1, "body": f"c{i}"} for i in range(25)])

    page = await Comment.query().order_by("id").paginate(page=999, per_page=10)

    assert page.current_page == 3
    assert page.last_page == 3
    assert page.total == 25
    assert page.from_ == 21
    assert page.to == 25
    assert [c.body for c in page.data] == [f"c{i}" for i in range(20, 25)]


@pytest.mark.asyncio
async def test_paginate_below_first_page(db):
    await Comment.query().insert([{"post_id": 1, "body": f"c{i}"} for i in range(5)])

    page = await Comment.query().paginate(page=0, per_page=2)

    assert page.current_page == 1
    assert (page.from_, page.to) == (1, 2)


@pytest.mark.asyncio
async def test_paginate_empty(db):
    page = await Comment.query().paginate()

    assert page.to_dict() == {
        "data": [],
        "total": 0,
        "perPage": 15,
        "currentPage": 1,
        "lastPage": 1,
        "from": 0,
        "to": 0,
    }


@pytest.mark.asyncio
async def test_first_or_fail(db):
    with pytest.raises(ModelNotFound):
        await Comment.query().where("id", 1).first_or_fail()


@pytest.mark.asyncio
async def test_table_builder_returns_dicts(db):
    await QueryBuilder(table="role_user", database=db).insert([
        {"user_id": 1, "role_id": 2},
        {"user_id": 1, "role_id": 3},
    ])

    rows = await QueryBuilder(table="role_user", database=db).where("user_id", 1).order_by("role_id").get()

    assert rows == [{"user_id": 1, "role_id": 2}, {"user_id": 1, "role_id": 3}]


@pytest.mark.asyncio
async def test_raw(db):
    await Comment.query().insert({"post_id": 7, "body": "x"})

    rows = await Comment.query().raw("SELECT post_id FROM comments WHERE body = ?", ["x"])

    assert rows == [{"post_id": 7}]
