"""
Quarry ORM Relations
====================

Relation descriptors and batched eager loading.

A relation method on a model returns a Relation: an executable query
for that one instance plus a RelationInfo describing the relation. The
EagerLoader reads only the RelationInfo and re-batches the relation for
a whole result set, so loading K relations for N parents costs O(K)
queries instead of O(N * K).

Example:
    class User(Model):
        def posts(self):
            return self.has_many(Post)

    posts = await user.posts().get()                 # single instance
    users = await User.with_relations("posts").get() # 2 queries total
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    Sequence,
    Type,
    TypeVar,
)

from quarry.orm.exceptions import RelationNotFound
from quarry.orm.query import QueryBuilder

if TYPE_CHECKING:
    from quarry.orm.model import Model


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Alias carrying the through table's key in has-many-through batches
THROUGH_KEY = "quarry_through_key"


class RelationKind(Enum):
    """Relation types."""

    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO = "belongs_to"
    BELONGS_TO_MANY = "belongs_to_many"
    MORPH_ONE = "morph_one"
    MORPH_MANY = "morph_many"
    MORPH_TO = "morph_to"
    HAS_MANY_THROUGH = "has_many_through"


_MANY_KINDS = frozenset({
    RelationKind.HAS_MANY,
    RelationKind.BELONGS_TO_MANY,
    RelationKind.MORPH_MANY,
    RelationKind.HAS_MANY_THROUGH,
})

_REQUIRED_FIELDS = {
    RelationKind.HAS_ONE: ("related", "foreign_key", "local_key"),
    RelationKind.HAS_MANY: ("related", "foreign_key", "local_key"),
    RelationKind.BELONGS_TO: ("related", "foreign_key", "owner_key"),
    RelationKind.BELONGS_TO_MANY: (
        "related",
        "pivot_table",
        "foreign_pivot_key",
        "related_pivot_key",
        "local_key",
        "related_key",
    ),
    RelationKind.MORPH_ONE: ("related", "morph_name", "morph_type", "morph_id", "morph_class", "local_key"),
    RelationKind.MORPH_MANY: ("related", "morph_name", "morph_type", "morph_id", "morph_class", "local_key"),
    RelationKind.MORPH_TO: ("morph_name", "morph_type", "morph_id"),
    RelationKind.HAS_MANY_THROUGH: (
        "related",
        "through",
        "first_key",
        "second_key",
        "local_key",
        "second_local_key",
    ),
}

# morph_to may also carry the resolved class and owner key of one instance
_OPTIONAL_FIELDS = {
    RelationKind.MORPH_TO: ("related", "owner_key"),
}


@dataclass(frozen=True)
class RelationInfo:
    """
    Relation descriptor.

    ``kind`` selects the variant. Fields that do not belong to the kind
    must stay None.
    """

    kind: RelationKind
    related: Optional[Type[Model]] = None
    foreign_key: Optional[str] = None
    local_key: Optional[str] = None
    owner_key: Optional[str] = None
    pivot_table: Optional[str] = None
    foreign_pivot_key: Optional[str] = None
    related_pivot_key: Optional[str] = None
    related_key: Optional[str] = None
    morph_name: Optional[str] = None
    morph_type: Optional[str] = None
    morph_id: Optional[str] = None
    morph_class: Optional[str] = None
    through: Optional[Type[Model]] = None
    first_key: Optional[str] = None
    second_key: Optional[str] = None
    second_local_key: Optional[str] = None

    def __post_init__(self) -> None:
        required = _REQUIRED_FIELDS[self.kind]
        allowed = set(required) | set(_OPTIONAL_FIELDS.get(self.kind, ())) | {"kind"}

        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in required and value is None:
                raise ValueError(f"{self.kind.value} relation requires {f.name}")
            if f.name not in allowed and value is not None:
                raise ValueError(f"{f.name} does not apply to a {self.kind.value} relation")

    @property
    def is_many(self) -> bool:
        return self.kind in _MANY_KINDS


@dataclass(frozen=True)
class Relation(Generic[T]):
    """
    A relation of one model instance.

    ``query`` is a normal builder pre-filtered for the instance; it is
    None only for a morph_to whose stored type cannot be resolved.
    """

    query: Optional[QueryBuilder[T]]
    info: RelationInfo

    async def get(self) -> List[T]:
        if self.query is None:
            return []
        return await self.query.get()

    async def first(self) -> Optional[T]:
        if self.query is None:
            return None
        return await self.query.first()

    async def get_results(self) -> Any:
        """A list for to-many relations, a model or None otherwise."""
        if self.info.is_many:
            return await self.get()
        return await self.first()


def _key(value: Any) -> Any:
    """Dictionary key for loose matching: 1 and "1" are the same key."""
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return str(value)
    return value


def _distinct(values: Iterable[Any]) -> List[Any]:
    """Unique non-null values, first occurrence order."""
    seen = set()
    result = []
    for value in values:
        if value is None:
            continue
        key = _key(value)
        if key not in seen:
            seen.add(key)
            result.append(value)
    return result


def _bucket(models: Sequence[Model], column: str) -> Dict[Any, List[Model]]:
    buckets: Dict[Any, List[Model]] = {}
    for model in models:
        buckets.setdefault(_key(model.get_attribute(column)), []).append(model)
    return buckets


def _group_names(names: Iterable[str]) -> Dict[str, List[str]]:
    """Split dotted names: ["a.b", "a.c", "d"] -> {"a": ["b", "c"], "d": []}."""
    groups: Dict[str, List[str]] = {}
    for name in names:
        head, _, rest = name.partition(".")
        nested = groups.setdefault(head, [])
        if rest and rest not in nested:
            nested.append(rest)
    return groups


class EagerLoader:
    """
    Batched relation loader for one model class.

    Each relation name costs one query (two for belongs_to_many, one per
    distinct type for morph_to), independent of the number of parents.
    Names that do not resolve to a relation are logged and skipped.
    """

    def __init__(self, model: Type[Model]) -> None:
        self.model = model
        self._loaders: Dict[RelationKind, Callable[[List[Model], str, RelationInfo], Awaitable[List[Model]]]] = {
            RelationKind.HAS_ONE: self._load_has_one_or_many,
            RelationKind.HAS_MANY: self._load_has_one_or_many,
            RelationKind.BELONGS_TO: self._load_belongs_to,
            RelationKind.BELONGS_TO_MANY: self._load_belongs_to_many,
            RelationKind.MORPH_ONE: self._load_morph_one_or_many,
            RelationKind.MORPH_MANY: self._load_morph_one_or_many,
            RelationKind.MORPH_TO: self._load_morph_to,
            RelationKind.HAS_MANY_THROUGH: self._load_has_many_through,
        }

    def resolve(self, name: str) -> Relation:
        """
        Get a relation descriptor by calling the method on a throwaway instance.

        Raises:
            RelationNotFound: name is not a relation method
        """
        model_name = self.model.__name__
        method = getattr(self.model, name, None) if not name.startswith("_") else None

        if method is None or not callable(method):
            raise RelationNotFound(model_name, name, "no such method")
        if inspect.iscoroutinefunction(method):
            raise RelationNotFound(model_name, name, "method is not a relation")

        try:
            relation = getattr(self.model(), name)()
        except TypeError as e:
            # Methods that need arguments are not relation declarations
            raise RelationNotFound(model_name, name, str(e)) from e

        if not isinstance(relation, Relation):
            raise RelationNotFound(model_name, name, "method did not return a Relation")
        return relation

    async def load(self, models: List[Model], names: Iterable[str]) -> None:
        """Load every named relation onto every model in place."""
        if not models:
            return

        for name, nested in _group_names(names).items():
            try:
                relation = self.resolve(name)
            except RelationNotFound as e:
                logger.warning("Skipping eager load: %s", e)
                continue

            loader = self._loaders[relation.info.kind]
            children = await loader(models, name, relation.info)

            if nested and children:
                for model_cls, group in self._by_class(children).items():
                    await EagerLoader(model_cls).load(group, nested)

    @staticmethod
    def _by_class(models: Iterable[Model]) -> Dict[Type[Model], List[Model]]:
        groups: Dict[Type[Model], List[Model]] = {}
        for model in models:
            groups.setdefault(type(model), []).append(model)
        return groups

    async def _load_has_one_or_many(
        self,
        models: List[Model],
        name: str,
        info: RelationInfo,
    ) -> List[Model]:
        ids = _distinct(m.get_attribute(info.local_key) for m in models)
        related = await info.related.query().where_in(info.foreign_key, ids).get() if ids else []

        buckets = _bucket(related, info.foreign_key)
        self._attach(models, name, info, buckets, info.local_key)
        return related

    async def _load_morph_one_or_many(
        self,
        models: List[Model],
        name: str,
        info: RelationInfo,
    ) -> List[Model]:
        ids = _distinct(m.get_attribute(info.local_key) for m in models)
        related = []
        if ids:
            related = await info.related.query() \
                .where_in(info.morph_id, ids) \
                .where(info.morph_type, info.morph_class) \
                .get()

        buckets = _bucket(related, info.morph_id)
        self._attach(models, name, info, buckets, info.local_key)
        return related

    async def _load_belongs_to(
        self,
        models: List[Model],
        name: str,
        info: RelationInfo,
    ) -> List[Model]:
        ids = _distinct(m.get_attribute(info.foreign_key) for m in models)
        related = await info.related.query().where_in(info.owner_key, ids).get() if ids else []

        buckets = _bucket(related, info.owner_key)
        self._attach(models, name, info, buckets, info.foreign_key)
        return related

    async def _load_belongs_to_many(
        self,
        models: List[Model],
        name: str,
        info: RelationInfo,
    ) -> List[Model]:
        ids = _distinct(m.get_attribute(info.local_key) for m in models)

        pivot_rows: List[Dict[str, Any]] = []
        if ids:
            pivot_rows = await QueryBuilder(table=info.pivot_table, database=self.model.get_database()) \
                .select(info.foreign_pivot_key, info.related_pivot_key) \
                .where_in(info.foreign_pivot_key, ids) \
                .get()

        related_ids = _distinct(row[info.related_pivot_key] for row in pivot_rows)
        related = []
        if related_ids:
            related = await info.related.query().where_in(info.related_key, related_ids).get()

        by_id = {_key(r.get_attribute(info.related_key)): r for r in related}

        # parent key -> related keys, pivot order, no duplicates
        links: Dict[Any, List[Any]] = {}
        for row in pivot_rows:
            targets = links.setdefault(_key(row[info.foreign_pivot_key]), [])
            target = _key(row[info.related_pivot_key])
            if target not in targets:
                targets.append(target)

        for parent in models:
            targets = links.get(_key(parent.get_attribute(info.local_key)), [])
            parent.set_relation(name, [by_id[t] for t in targets if t in by_id])

        return related

    async def _load_morph_to(
        self,
        models: List[Model],
        name: str,
        info: RelationInfo,
    ) -> List[Model]:
        morph_map = self.model.morph_map()
        groups: Dict[str, List[Model]] = {}

        for parent in models:
            parent.set_relation(name, None)
            type_value = parent.get_attribute(info.morph_type)
            if type_value is not None:
                groups.setdefault(str(type_value), []).append(parent)

        children: List[Model] = []
        for type_value, parents in groups.items():
            related_cls = morph_map.get(type_value)
            if related_cls is None:
                logger.warning(
                    "Cannot resolve morph type %r for %s.%s",
                    type_value,
                    self.model.__name__,
                    name,
                )
                continue

            owner_key = info.owner_key or related_cls.__primary_key__
            ids = _distinct(p.get_attribute(info.morph_id) for p in parents)
            related = await related_cls.query().where_in(owner_key, ids).get() if ids else []

            buckets = _bucket(related, owner_key)
            for parent in parents:
                matches = buckets.get(_key(parent.get_attribute(info.morph_id)), [])
                parent.set_relation(name, matches[0] if matches else None)
            children.extend(related)

        return children

    async def _load_has_many_through(
        self,
        models: List[Model],
        name: str,
        info: RelationInfo,
    ) -> List[Model]:
        ids = _distinct(m.get_attribute(info.local_key) for m in models)

        related: List[Model] = []
        if ids:
            related_table = info.related.__table_name__
            through_table = info.through.__table_name__
            related = await info.related.query() \
                .select(f"{related_table}.*", f"{through_table}.{info.first_key} AS {THROUGH_KEY}") \
                .join(
                    through_table,
                    f"{through_table}.{info.second_local_key}",
                    "=",
                    f"{related_table}.{info.second_key}",
                ) \
                .where_in(f"{through_table}.{info.first_key}", ids) \
                .get()

        buckets: Dict[Any, List[Model]] = {}
        for model in related:
            buckets.setdefault(_key(model.forget_attribute(THROUGH_KEY)), []).append(model)

        self._attach(models, name, info, buckets, info.local_key)
        return related

    @staticmethod
    def _attach(
        models: List[Model],
        name: str,
        info: RelationInfo,
        buckets: Dict[Any, List[Model]],
        parent_column: str,
    ) -> None:
        for parent in models:
            value = parent.get_attribute(parent_column)
            matches = buckets.get(_key(value), []) if value is not None else []
            if info.is_many:
                parent.set_relation(name, list(matches))
            else:
                parent.set_relation(name, matches[0] if matches else None)
