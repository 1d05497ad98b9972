"""
Model CRUD, casting, dirty tracking and soft deletes.
"""

import logging
from datetime import date

import pytest

from quarry.orm import Model
from quarry.orm.exceptions import ModelNotFound, NoConnection

from tests.models import AuditLog, Comment, Post, Role, User


def test_table_name_inferred_from_class_name():
    assert AuditLog.__table_name__ == "audit_log"
    assert User.__table_name__ == "users"


def test_casts_are_inherited():
    class Admin(User):
        __casts__ = {"level": "int"}

    assert Admin.__casts__ == {
        "is_admin": "bool",
        "settings": "json",
        "born_on": "date",
        "level": "int",
    }
    assert "level" not in User.__casts__


def test_attribute_access():
    user = User(name="Ada", is_admin=1)

    assert user.name == "Ada"
    assert user["name"] == "Ada"
    assert user.is_admin is True
    assert "name" in user

    user.email = "ada@example.com"
    user["is_admin"] = "0"
    assert user.get_attribute("email") == "ada@example.com"
    assert user.is_admin is False

    with pytest.raises(AttributeError):
        user.missing


def test_casts_are_per_instance():
    first = User()
    second = User()
    first.casts["name"] = "int"

    assert "name" not in second.casts
    assert "name" not in User.__casts__


def test_mass_assign_respects_guarded_and_fillable():
    user = User().mass_assign({"name": "Ada", "is_admin": True})
    assert user.get_attribute("is_admin") is None

    comment = Comment().mass_assign({"body": "hi", "post_id": 1, "id": 99})
    assert comment.to_dict() == {"body": "hi", "post_id": 1}


def test_malformed_json_falls_back_to_empty_object(caplog):
    with caplog.at_level(logging.WARNING, logger="quarry.orm.model"):
        user = User.hydrate({"id": 1, "settings": "{broken"})

    assert user.settings == {}
    assert "settings" in caplog.text


def test_unparseable_cast_keeps_raw_value(caplog):
    with caplog.at_level(logging.WARNING, logger="quarry.orm.model"):
        user = User.hydrate({"id": 1, "born_on": "someday"})
        user.casts["age"] = "int"
        user.age = "eleven"

    assert user.born_on == "someday"
    assert user.age == "eleven"
    assert "born_on" in caplog.text
    assert "age" in caplog.text


def test_equality_by_primary_key():
    assert User.hydrate({"id": 1}) == User.hydrate({"id": 1, "name": "x"})
    assert User.hydrate({"id": 1}) != User.hydrate({"id": 2})
    assert User.hydrate({"id": 1}) != Role.hydrate({"id": 1})
    assert User() != User()
    assert len({User.hydrate({"id": 1}), User.hydrate({"id": 1})}) == 1


def test_dirty_tracking():
    user = User.hydrate({"id": 1, "name": "Ada", "settings": '{"a": 1}'})
    assert not user.is_dirty()

    user.name = "Grace"
    user.settings["a"] = 2

    assert user.is_dirty("name")
    assert user.get_dirty() == {"name": "Grace", "settings": {"a": 2}}
    assert not user.is_dirty("email")


@pytest.mark.asyncio
async def test_save_without_database_raises():
    with pytest.raises(NoConnection):
        await User(name="x").save()


@pytest.mark.asyncio
async def test_create_and_find_round_trip(db):
    user = await User.create(
        {"name": "Ada", "settings": {"theme": "dark"}, "born_on": date(1815, 12, 10)},
    )
    user.is_admin = True
    await user.save()

    assert user.id == 1
    assert user.created_at is not None

    found = await User.find(user.id)
    assert found.name == "Ada"
    assert found.is_admin is True
    assert found.settings == {"theme": "dark"}
    assert found.born_on == date(1815, 12, 10)

    row = await db.fetch_one("SELECT is_admin, settings, born_on FROM users WHERE id = ?", [1])
    assert row == {"is_admin": 1, "settings": '{"theme": "dark"}', "born_on": "1815-12-10"}


@pytest.mark.asyncio
async def test_create_with_keyword_arguments(db):
    user = await User.create(name="Ada", email="ada@example.com")
    assert (await User.find_or_fail(user.id)).email == "ada@example.com"


@pytest.mark.asyncio
async def test_create_ignores_key_and_timestamp_input(db):
    user = await User.create({
        "id": 42,
        "name": "Ada",
        "created_at": "2000-01-01 00:00:00",
        "deleted_at": "2000-01-01 00:00:00",
    })

    (sql, _), = db.statements
    assert sql.startswith("INSERT INTO users")
    assert "deleted_at" not in sql
    assert user.id == 1
    assert user.created_at != "2000-01-01 00:00:00"
    assert (await User.find(user.id)).name == "Ada"
    assert await User.find(42) is None


@pytest.mark.asyncio
async def test_find_or_fail_raises(db):
    with pytest.raises(ModelNotFound):
        await User.find_or_fail(404)


@pytest.mark.asyncio
async def test_update_writes_only_dirty_columns(db):
    user = await User.create({"name": "Ada", "email": "ada@example.com"})
    db.reset()

    user.name = "Grace"
    assert await user.save() is True

    (sql, params), = [s for s in db.statements if s[0].startswith("UPDATE")]
    assert sql == "UPDATE users SET name = ?, updated_at = ? WHERE id = ?"
    assert params[0] == "Grace"
    assert params[-1] == user.id
    assert not user.is_dirty()


@pytest.mark.asyncio
async def test_save_clean_model_issues_no_update(db):
    user = await User.create({"name": "Ada"})
    db.reset()

    assert await user.save() is True
    assert db.statements == []


@pytest.mark.asyncio
async def test_model_without_timestamps(db):
    role = await Role.create({"name": "admin"})
    found = await Role.find(role.id)
    assert found.to_dict() == {"id": role.id, "name": "admin"}


@pytest.mark.asyncio
async def test_all_first_count_where(db):
    for name in ("c", "a", "b"):
        await User.create({"name": name})

    assert await User.count() == 3
    assert [u.name for u in await User.order_by("name").get()] == ["a", "b", "c"]
    assert (await User.first()).name == "c"
    assert [u.name for u in await User.where("name", "!=", "a").order_by("name", "DESC").get()] == ["c", "b"]
    assert len(await User.all()) == 3


@pytest.mark.asyncio
async def test_update_by_id_and_delete_by_id(db):
    user = await User.create({"name": "Ada"})

    assert await User.update_by_id(user.id, {"is_admin": True, "settings": {"x": 1}}) == 1
    found = await User.find(user.id)
    assert found.is_admin is True
    assert found.settings == {"x": 1}

    assert await User.delete_by_id(user.id) == 1
    assert await User.find(user.id) is None


@pytest.mark.asyncio
async def test_delete_hard(db):
    user = await User.create({"name": "Ada"})

    assert await user.delete() is True
    assert await User.count() == 0
    assert await User().delete() is False


@pytest.mark.asyncio
async def test_soft_delete_and_restore(db):
    post = await Post.create({"title": "Hello", "user_id": 1})
    assert not post.trashed()

    assert await post.delete() is True
    assert post.trashed()
    assert not post.is_dirty()

    assert await Post.find(post.id) is None
    trashed = await Post.query().with_trashed().where("id", "=", post.id).first()
    assert trashed is not None
    assert trashed.deleted_at is not None

    assert await post.restore() is True
    assert post.deleted_at is None
    assert (await Post.find(post.id)).title == "Hello"


@pytest.mark.asyncio
async def test_force_delete_soft_deleting_model(db):
    post = await Post.create({"title": "Hello"})

    assert await post.force_delete() is True
    assert await Post.with_trashed().count() == 0


@pytest.mark.asyncio
async def test_restore_without_soft_deletes(db):
    user = await User.create({"name": "Ada"})
    assert await user.restore() is False
    assert user.trashed() is False


@pytest.mark.asyncio
async def test_refresh(db):
    user = await User.create({"name": "Ada"})
    await User.update_by_id(user.id, {"name": "Grace"})
    user.set_relation("posts", [])

    await user.refresh()

    assert user.name == "Grace"
    assert not user.is_dirty()
    assert not user.relation_loaded("posts")


@pytest.mark.asyncio
async def test_to_dict_includes_relations(db):
    user = User.hydrate({"id": 1, "name": "Ada"})
    user.set_relation("posts", [Post.hydrate({"id": 2, "title": "t"})])
    user.set_relation("profile", None)

    assert user.to_dict() == {
        "id": 1,
        "name": "Ada",
        "posts": [{"id": 2, "title": "t"}],
        "profile": None,
    }


def test_unbound_model_has_no_database():
    class Scratch(Model):
        pass

    assert Scratch.__table_name__ == "scratch"
    with pytest.raises(NoConnection):
        Scratch.get_database()
