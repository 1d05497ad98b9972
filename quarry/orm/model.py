"""
Quarry ORM Model
================

Active Record style model base class.

Features:
- Automatic table inference
- CRUD operations
- Attribute casting
- Relationships with eager loading
- Lifecycle observers
- Soft deletes
- Timestamps
"""

from __future__ import annotations

import copy
import logging
import re
from typing import (
    Any,
    ClassVar,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

from quarry.orm.casts import CastKind, cast_value, fresh_timestamp, storage_value
from quarry.orm.connection import Database
from quarry.orm.exceptions import MalformedStoredJSON, ModelNotFound, NoConnection
from quarry.orm.observers import ModelEvent, Observer
from quarry.orm.query import _MISSING, QueryBuilder
from quarry.orm.relations import EagerLoader, Relation, RelationInfo, RelationKind

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="Model")

# Instance attributes stored on the object itself rather than in the attribute bag
_INSTANCE_SLOTS = frozenset({"casts", "relations"})


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _subclasses(cls: type) -> Iterable[type]:
    for sub in cls.__subclasses__():
        yield sub
        yield from _subclasses(sub)


class ModelMeta(type):
    """
    Metaclass for Model.

    Infers the table name and merges casts declared on base classes.
    """

    def __new__(
        mcs,
        name: str,
        bases: Tuple[type, ...],
        namespace: Dict[str, Any],
    ) -> ModelMeta:
        casts: Dict[str, str] = {}
        for base in reversed(bases):
            casts.update(getattr(base, "__casts__", {}))
        casts.update(namespace.get("__casts__", {}))
        namespace["__casts__"] = casts

        # Infer table name
        if "__table_name__" not in namespace:
            # Convert CamelCase to snake_case
            namespace["__table_name__"] = _snake_case(name)

        return super().__new__(mcs, name, bases, namespace)


class Model(metaclass=ModelMeta):
    """
    Base model class with Active Record pattern.

    Example:
        class User(Model):
            __table_name__ = "users"
            __casts__ = {"is_admin": "bool", "settings": "json"}
            __soft_deletes__ = True

            def posts(self):
                return self.has_many(Post)

        db = Database("sqlite:///app.db")
        await db.connect()
        User.use(db)

        # Create
        user = await User.create({"name": "John", "is_admin": True})

        # Read
        user = await User.find(1)
        users = await User.where("is_admin", True).with_relations("posts").get()

        # Update
        user.name = "Jane"
        await user.save()

        # Delete
        await user.delete()
        await user.restore()

    Attribute names that collide with a method (``count``, ``delete``...)
    are still reachable through item access: ``user["count"]``.
    """

    # Class attributes
    __table_name__: ClassVar[str]
    __primary_key__: ClassVar[str] = "id"
    __timestamps__: ClassVar[bool] = True
    __created_at__: ClassVar[str] = "created_at"
    __updated_at__: ClassVar[str] = "updated_at"
    __soft_deletes__: ClassVar[bool] = False
    __deleted_at__: ClassVar[str] = "deleted_at"
    __casts__: ClassVar[Dict[str, str]] = {}
    __fillable__: ClassVar[Tuple[str, ...]] = ()
    __guarded__: ClassVar[Tuple[str, ...]] = ()
    _database: ClassVar[Optional[Database]] = None

    # Instance attributes
    _attributes: Dict[str, Any]
    _original: Dict[str, Any]
    casts: Dict[str, str]
    relations: Dict[str, Any]

    def __init__(self, **attributes: Any) -> None:
        """Initialize model with attribute values."""
        object.__setattr__(self, "_attributes", {})
        object.__setattr__(self, "_original", {})
        object.__setattr__(self, "casts", dict(type(self).__casts__))
        object.__setattr__(self, "relations", {})

        if attributes:
            self.fill(attributes)

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails
        if not name.startswith("_"):
            attributes = self.__dict__.get("_attributes", {})
            if name in attributes:
                return attributes[name]
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or name in _INSTANCE_SLOTS or hasattr(type(self), name):
            object.__setattr__(self, name, value)
        else:
            self.set_attribute(name, value)

    def __getitem__(self, key: str) -> Any:
        return self._attributes[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.set_attribute(key, value)

    def __contains__(self, key: str) -> bool:
        return key in self._attributes

    def __repr__(self) -> str:
        """String representation."""
        return f"<{self.__class__.__name__} {self.get_key()}>"

    def __eq__(self, other: Any) -> bool:
        """Check equality by primary key."""
        if not isinstance(other, self.__class__):
            return False
        if self.get_key() is None:
            return self is other
        return self.get_key() == other.get_key()

    def __hash__(self) -> int:
        """Hash by primary key."""
        if self.get_key() is None:
            return id(self)
        return hash((self.__class__.__name__, self.get_key()))

    # Database binding

    @classmethod
    def use(cls: Type[T], database: Database) -> Type[T]:
        """
        Set database connection for model.

        Subclasses inherit the binding unless they call use() themselves.
        Returns the class for chaining.
        """
        cls._database = database
        return cls

    @classmethod
    def get_database(cls) -> Database:
        if cls._database is None:
            raise NoConnection(f"No database bound to {cls.__name__}; call {cls.__name__}.use(db)")
        return cls._database

    @classmethod
    def observe(cls, observer: Observer) -> Observer:
        """Register an observer for this model on its database."""
        return cls.get_database().observers.register(cls, observer)

    @classmethod
    def morph_map(cls) -> Dict[str, Type[Model]]:
        """
        Stored morph type value -> model class.

        Defaults to every Model subclass by class name. Override to map
        custom type values.
        """
        return {sub.__name__: sub for sub in _subclasses(Model)}

    @classmethod
    def morph_class(cls) -> str:
        """Value stored in morph type columns for this model."""
        return cls.__name__

    # Attributes

    def get_key(self) -> Any:
        return self._attributes.get(type(self).__primary_key__)

    def get_attribute(self, key: str, default: Any = None) -> Any:
        return self._attributes.get(key, default)

    def set_attribute(self, key: str, value: Any) -> None:
        self._attributes[key] = self.cast_attribute(key, value)

    def forget_attribute(self, key: str) -> Any:
        """Remove an attribute entirely and return its value."""
        self._original.pop(key, None)
        return self._attributes.pop(key, None)

    def cast_attribute(self, key: str, value: Any) -> Any:
        """Convert a raw value to the type declared in casts."""
        try:
            return cast_value(CastKind.parse(self.casts.get(key)), value)
        except MalformedStoredJSON as e:
            logger.warning("%s.%s: %s; using {}", type(self).__name__, key, e)
            return {}
        except (TypeError, ValueError) as e:
            logger.warning("%s.%s: %s; keeping raw value", type(self).__name__, key, e)
            return value

    def prepare_attribute_for_storage(self, key: str, value: Any) -> Any:
        """Convert an in-memory value to what the driver stores."""
        return storage_value(CastKind.parse(self.casts.get(key)), value)

    def fill(self: T, row: Mapping[str, Any]) -> T:
        """Cast and assign every key."""
        for key, value in row.items():
            self.set_attribute(key, value)
        return self

    @classmethod
    def _protected_columns(cls) -> Tuple[str, ...]:
        """Columns the model manages itself: the key and its timestamps."""
        return (cls.__primary_key__, cls.__created_at__, cls.__updated_at__, cls.__deleted_at__)

    def mass_assign(self: T, data: Mapping[str, Any]) -> T:
        """
        Fill from untrusted input.

        A non-empty ``__fillable__`` is an allow-list; ``__guarded__``
        keys, the primary key and the timestamp columns are always
        dropped, so ``create`` always inserts.
        """
        cls = type(self)
        blocked = set(cls.__guarded__) | set(cls._protected_columns())
        allowed = {
            key: value
            for key, value in data.items()
            if (not cls.__fillable__ or key in cls.__fillable__)
            and key not in blocked
        }
        return self.fill(allowed)

    def sync_original(self) -> None:
        object.__setattr__(self, "_original", copy.deepcopy(self._attributes))

    def get_dirty(self) -> Dict[str, Any]:
        """Attributes changed since the model was loaded or saved."""
        return {
            key: value
            for key, value in self._attributes.items()
            if key not in self._original or self._original[key] != value
        }

    def is_dirty(self, *keys: str) -> bool:
        dirty = self.get_dirty()
        if not keys:
            return bool(dirty)
        return any(key in dirty for key in keys)

    def _storage_row(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: self.prepare_attribute_for_storage(key, value) for key, value in values.items()}

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary, loaded relations included."""
        result = dict(self._attributes)
        for name, value in self.relations.items():
            if isinstance(value, list):
                result[name] = [item.to_dict() for item in value]
            elif isinstance(value, Model):
                result[name] = value.to_dict()
            else:
                result[name] = value
        return result

    @classmethod
    def hydrate(cls: Type[T], row: Mapping[str, Any]) -> T:
        """Create model instance from database row."""
        instance = cls()
        instance.fill(row)
        instance.sync_original()
        return instance

    # Query methods

    @classmethod
    def query(cls: Type[T]) -> QueryBuilder[T]:
        """Start a query builder."""
        return QueryBuilder(cls)

    @classmethod
    def where(
        cls: Type[T],
        column: str,
        operator: Any = _MISSING,
        value: Any = _MISSING,
    ) -> QueryBuilder[T]:
        """Start query with WHERE clause."""
        return cls.query().where(column, operator, value)

    @classmethod
    def where_in(cls: Type[T], column: str, values: Iterable[Any]) -> QueryBuilder[T]:
        """Start query with WHERE IN clause."""
        return cls.query().where_in(column, values)

    @classmethod
    def order_by(cls: Type[T], column: str, direction: str = "ASC") -> QueryBuilder[T]:
        """Start query with ORDER BY."""
        return cls.query().order_by(column, direction)

    @classmethod
    def with_relations(cls: Type[T], *relations: str) -> QueryBuilder[T]:
        """Start query that eager loads relations."""
        return cls.query().with_relations(*relations)

    @classmethod
    def with_trashed(cls: Type[T]) -> QueryBuilder[T]:
        """Start query including soft-deleted rows."""
        return cls.query().with_trashed()

    @classmethod
    async def find(cls: Type[T], pk: Any) -> Optional[T]:
        """Find model by primary key."""
        return await cls.where(cls.__primary_key__, pk).first()

    @classmethod
    async def find_or_fail(cls: Type[T], pk: Any) -> T:
        """Find model by primary key or raise."""
        result = await cls.find(pk)
        if result is None:
            raise ModelNotFound(f"{cls.__name__} not found: {pk}")
        return result

    @classmethod
    async def all(cls: Type[T]) -> List[T]:
        """Get all records."""
        return await cls.query().get()

    @classmethod
    async def first(cls: Type[T]) -> Optional[T]:
        """Get first record."""
        return await cls.query().first()

    @classmethod
    async def count(cls) -> int:
        """Count all records."""
        return await cls.query().count()

    @classmethod
    async def create(cls: Type[T], data: Optional[Mapping[str, Any]] = None, **attributes: Any) -> T:
        """
        Create and save new record.

        Input goes through mass_assign, so __fillable__ and __guarded__
        apply.
        """
        instance = cls()
        instance.mass_assign({**(data or {}), **attributes})
        await instance.save()
        return instance

    @classmethod
    async def update_by_id(cls, pk: Any, data: Mapping[str, Any]) -> int:
        """Update one row by primary key without loading it. No events fire."""
        values = cls()._storage_row(data)
        return await cls.query().where(cls.__primary_key__, pk).update(values)

    @classmethod
    async def delete_by_id(cls, pk: Any) -> int:
        """Delete (or soft-delete) one row by primary key. No events fire."""
        return await cls.query().where(cls.__primary_key__, pk).delete()

    # Instance methods

    async def _fire(self, event: ModelEvent) -> bool:
        return await self.get_database().observers.dispatch(type(self), event, self)

    async def save(self) -> bool:
        """
        Save model to database.

        Inserts if the primary key is empty, updates dirty attributes
        otherwise. Returns False when an observer vetoed the save.
        """
        if not await self._fire(ModelEvent.SAVING):
            return False

        if not self.get_key():
            if not await self._fire(ModelEvent.CREATING):
                return False
            await self._insert()
            await self._fire(ModelEvent.CREATED)
        elif self._dirty_columns():
            if not await self._fire(ModelEvent.UPDATING):
                return False
            await self._update()
            await self._fire(ModelEvent.UPDATED)

        await self._fire(ModelEvent.SAVED)
        self.sync_original()
        return True

    def _dirty_columns(self) -> Dict[str, Any]:
        dirty = self.get_dirty()
        dirty.pop(type(self).__primary_key__, None)
        return dirty

    async def _insert(self) -> None:
        """Insert new record."""
        cls = type(self)

        if cls.__timestamps__:
            now = fresh_timestamp()
            for column in (cls.__created_at__, cls.__updated_at__):
                if self.get_attribute(column) is None:
                    self.set_attribute(column, now)

        values = self._storage_row(self._attributes)
        if not values.get(cls.__primary_key__):
            values.pop(cls.__primary_key__, None)

        result = await cls.query().insert(values)

        if result.insert_id is not None:
            self.set_attribute(cls.__primary_key__, result.insert_id)

    async def _update(self) -> None:
        """Update existing record."""
        cls = type(self)
        dirty = self._dirty_columns()

        if cls.__timestamps__ and cls.__updated_at__ not in dirty:
            self.set_attribute(cls.__updated_at__, fresh_timestamp())
            dirty[cls.__updated_at__] = self.get_attribute(cls.__updated_at__)

        await cls.query().where(cls.__primary_key__, self.get_key()).update(self._storage_row(dirty))

    async def _stamp(self, values: Dict[str, Any]) -> None:
        """Write columns by primary key and mark them clean on this instance."""
        cls = type(self)
        if cls.__timestamps__:
            values.setdefault(cls.__updated_at__, fresh_timestamp())

        await cls.query().where(cls.__primary_key__, self.get_key()).update(self._storage_row(values))

        for key, value in values.items():
            self.set_attribute(key, value)
            self._original[key] = copy.deepcopy(self._attributes[key])

    async def delete(self, force: bool = False) -> bool:
        """
        Delete record from database.

        Soft-deleting models get their deleted-at column stamped unless
        force is set. Returns False for unsaved models and vetoes.
        """
        cls = type(self)
        if not self.get_key():
            return False

        if not await self._fire(ModelEvent.DELETING):
            return False

        if cls.__soft_deletes__ and not force:
            await self._stamp({cls.__deleted_at__: fresh_timestamp()})
        else:
            await cls.query().where(cls.__primary_key__, self.get_key()).force_delete()

        await self._fire(ModelEvent.DELETED)
        return True

    async def force_delete(self) -> bool:
        """Delete record for real, even on soft-deleting models."""
        return await self.delete(force=True)

    async def restore(self) -> bool:
        """Clear the deleted-at column. False for models without soft deletes."""
        cls = type(self)
        if not cls.__soft_deletes__ or not self.get_key():
            return False

        if not await self._fire(ModelEvent.RESTORING):
            return False

        await self._stamp({cls.__deleted_at__: None})

        await self._fire(ModelEvent.RESTORED)
        return True

    def trashed(self) -> bool:
        """True when this soft-deleting model is currently deleted."""
        return type(self).__soft_deletes__ and self.get_attribute(type(self).__deleted_at__) is not None

    async def refresh(self: T) -> T:
        """Reload model from database."""
        cls = type(self)
        if self.get_key() is None:
            return self

        fresh = await cls.query().with_trashed().where(cls.__primary_key__, self.get_key()).first()
        if fresh is not None:
            object.__setattr__(self, "_attributes", dict(fresh._attributes))
            self.sync_original()
            self.relations.clear()
        return self

    # Relations

    async def load(self: T, *relations: str) -> T:
        """Eager load relations onto this instance."""
        await EagerLoader(type(self)).load([self], relations)
        return self

    def relation(self, name: str) -> Any:
        """A loaded relation value, or None."""
        return self.relations.get(name)

    def set_relation(self, name: str, value: Any) -> None:
        self.relations[name] = value

    def relation_loaded(self, name: str) -> bool:
        return name in self.relations

    def _foreign_key_name(self) -> str:
        return f"{type(self).__name__.lower()}_id"

    @staticmethod
    def _constrain(query: QueryBuilder, column: str, value: Any) -> QueryBuilder:
        # No key yet: match nothing instead of every orphan row
        if value is None:
            return query.where_in(column, [])
        return query.where(column, value)

    def has_one(
        self,
        related: Type[Model],
        foreign_key: Optional[str] = None,
        local_key: Optional[str] = None,
    ) -> Relation:
        """
        One related row holding this model's key.

        Example:
            def profile(self):
                return self.has_one(Profile)
        """
        foreign_key = foreign_key or self._foreign_key_name()
        local_key = local_key or type(self).__primary_key__

        query = self._constrain(related.query(), foreign_key, self.get_attribute(local_key)).limit(1)
        return Relation(query, RelationInfo(
            kind=RelationKind.HAS_ONE,
            related=related,
            foreign_key=foreign_key,
            local_key=local_key,
        ))

    def has_many(
        self,
        related: Type[Model],
        foreign_key: Optional[str] = None,
        local_key: Optional[str] = None,
    ) -> Relation:
        """Related rows holding this model's key."""
        foreign_key = foreign_key or self._foreign_key_name()
        local_key = local_key or type(self).__primary_key__

        query = self._constrain(related.query(), foreign_key, self.get_attribute(local_key))
        return Relation(query, RelationInfo(
            kind=RelationKind.HAS_MANY,
            related=related,
            foreign_key=foreign_key,
            local_key=local_key,
        ))

    def belongs_to(
        self,
        related: Type[Model],
        foreign_key: Optional[str] = None,
        owner_key: Optional[str] = None,
    ) -> Relation:
        """The row this model's foreign key points at."""
        foreign_key = foreign_key or f"{related.__name__.lower()}_id"
        owner_key = owner_key or related.__primary_key__

        query = self._constrain(related.query(), owner_key, self.get_attribute(foreign_key)).limit(1)
        return Relation(query, RelationInfo(
            kind=RelationKind.BELONGS_TO,
            related=related,
            foreign_key=foreign_key,
            owner_key=owner_key,
        ))

    def belongs_to_many(
        self,
        related: Type[Model],
        pivot_table: Optional[str] = None,
        foreign_pivot_key: Optional[str] = None,
        related_pivot_key: Optional[str] = None,
        parent_key: Optional[str] = None,
        related_key: Optional[str] = None,
    ) -> Relation:
        """
        Many-to-many through a pivot table.

        The pivot table defaults to both lowercased class names, sorted
        and joined by "_": User + Role -> "role_user".
        """
        this_name = type(self).__name__.lower()
        related_name = related.__name__.lower()

        pivot_table = pivot_table or "_".join(sorted([related_name, this_name]))
        foreign_pivot_key = foreign_pivot_key or f"{this_name}_id"
        related_pivot_key = related_pivot_key or f"{related_name}_id"
        parent_key = parent_key or type(self).__primary_key__
        related_key = related_key or related.__primary_key__

        related_table = related.__table_name__
        query = related.query() \
            .select(f"{related_table}.*") \
            .join(pivot_table, f"{pivot_table}.{related_pivot_key}", "=", f"{related_table}.{related_key}")
        query = self._constrain(query, f"{pivot_table}.{foreign_pivot_key}", self.get_attribute(parent_key))

        return Relation(query, RelationInfo(
            kind=RelationKind.BELONGS_TO_MANY,
            related=related,
            pivot_table=pivot_table,
            foreign_pivot_key=foreign_pivot_key,
            related_pivot_key=related_pivot_key,
            local_key=parent_key,
            related_key=related_key,
        ))

    def _morph_one_or_many(
        self,
        kind: RelationKind,
        related: Type[Model],
        name: str,
        type_column: Optional[str],
        id_column: Optional[str],
        local_key: Optional[str],
    ) -> Relation:
        type_column = type_column or f"{name}_type"
        id_column = id_column or f"{name}_id"
        local_key = local_key or type(self).__primary_key__
        morph_class = type(self).morph_class()

        query = self._constrain(related.query(), id_column, self.get_attribute(local_key)) \
            .where(type_column, morph_class)
        if kind is RelationKind.MORPH_ONE:
            query.limit(1)

        return Relation(query, RelationInfo(
            kind=kind,
            related=related,
            morph_name=name,
            morph_type=type_column,
            morph_id=id_column,
            morph_class=morph_class,
            local_key=local_key,
        ))

    def morph_one(
        self,
        related: Type[Model],
        name: str,
        type_column: Optional[str] = None,
        id_column: Optional[str] = None,
        local_key: Optional[str] = None,
    ) -> Relation:
        """
        One polymorphic child.

        Example:
            def image(self):
                return self.morph_one(Image, "imageable")
        """
        return self._morph_one_or_many(RelationKind.MORPH_ONE, related, name, type_column, id_column, local_key)

    def morph_many(
        self,
        related: Type[Model],
        name: str,
        type_column: Optional[str] = None,
        id_column: Optional[str] = None,
        local_key: Optional[str] = None,
    ) -> Relation:
        """Polymorphic children."""
        return self._morph_one_or_many(RelationKind.MORPH_MANY, related, name, type_column, id_column, local_key)

    def morph_to(
        self,
        name: str = "morphable",
        type_column: Optional[str] = None,
        id_column: Optional[str] = None,
        owner_key: Optional[str] = None,
    ) -> Relation:
        """
        Polymorphic parent, resolved through morph_map().

        The query is None when the stored type is empty or unknown.
        """
        type_column = type_column or f"{name}_type"
        id_column = id_column or f"{name}_id"

        type_value = self.get_attribute(type_column)
        related = type(self).morph_map().get(str(type_value)) if type_value is not None else None

        query = None
        if related is not None:
            key = owner_key or related.__primary_key__
            query = self._constrain(related.query(), key, self.get_attribute(id_column)).limit(1)

        return Relation(query, RelationInfo(
            kind=RelationKind.MORPH_TO,
            related=related,
            owner_key=owner_key,
            morph_name=name,
            morph_type=type_column,
            morph_id=id_column,
        ))

    def has_many_through(
        self,
        related: Type[Model],
        through: Type[Model],
        first_key: Optional[str] = None,
        second_key: Optional[str] = None,
        local_key: Optional[str] = None,
        second_local_key: Optional[str] = None,
    ) -> Relation:
        """
        Distant rows reached through an intermediate model.

        Example:
            # countries -> users.country_id -> posts.user_id
            def posts(self):
                return self.has_many_through(Post, User)
        """
        first_key = first_key or self._foreign_key_name()
        second_key = second_key or f"{through.__name__.lower()}_id"
        local_key = local_key or type(self).__primary_key__
        second_local_key = second_local_key or through.__primary_key__

        related_table = related.__table_name__
        through_table = through.__table_name__
        query = related.query() \
            .select(f"{related_table}.*") \
            .join(through_table, f"{through_table}.{second_local_key}", "=", f"{related_table}.{second_key}")
        query = self._constrain(query, f"{through_table}.{first_key}", self.get_attribute(local_key))

        return Relation(query, RelationInfo(
            kind=RelationKind.HAS_MANY_THROUGH,
            related=related,
            through=through,
            first_key=first_key,
            second_key=second_key,
            local_key=local_key,
            second_local_key=second_local_key,
        ))
