"""
Quarry ORM Query Builder
========================

Fluent query builder for constructing SQL queries.

Features:
- Chainable query methods
- WHERE, JOIN, ORDER BY, GROUP BY, HAVING
- Aggregations and pagination
- Soft-delete scoping and automatic timestamps
- Eager loading of relations

Every identifier goes through quarry.orm.grammar before it reaches SQL;
values always travel as bound ``?`` parameters.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from quarry.orm.casts import fresh_timestamp
from quarry.orm.connection import Database, ExecuteResult
from quarry.orm.exceptions import InvalidOperator, ModelNotFound, NoConnection
from quarry.orm.grammar import (
    Operator,
    render_column,
    render_operator,
    render_select_column,
    render_table,
)

if TYPE_CHECKING:
    from quarry.orm.model import Model

T = TypeVar("T")

_MISSING: Any = object()

_JOIN_OPERATORS = frozenset({
    Operator.EQ,
    Operator.NE,
    Operator.NE_ALT,
    Operator.LT,
    Operator.LE,
    Operator.GT,
    Operator.GE,
})


class JoinType(Enum):
    """SQL join types."""

    INNER = "INNER JOIN"
    LEFT = "LEFT JOIN"
    RIGHT = "RIGHT JOIN"


class OrderDirection(Enum):
    """Sort direction."""

    ASC = "ASC"
    DESC = "DESC"


@dataclass
class Paginator(Generic[T]):
    """
    One page of results.

    ``from_`` and ``to`` are 1-indexed inclusive row positions; both are
    0 when there are no rows.
    """

    data: List[T] = field(default_factory=list)
    total: int = 0
    per_page: int = 15
    current_page: int = 1
    last_page: int = 1
    from_: int = 0
    to: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [
                item.to_dict() if hasattr(item, "to_dict") else item
                for item in self.data
            ],
            "total": self.total,
            "perPage": self.per_page,
            "currentPage": self.current_page,
            "lastPage": self.last_page,
            "from": self.from_,
            "to": self.to,
        }


class QueryBuilder(Generic[T]):
    """
    Fluent SQL query builder.

    Built from a model class (results are hydrated models) or from a
    bare table name (results are dicts). A builder accumulates state
    and is meant for a single call chain.

    Example:
        users = await User.query() \\
            .select("id", "name", "email") \\
            .where("is_active", True) \\
            .where("role", "IN", ["admin", "manager"]) \\
            .order_by("created_at", "DESC") \\
            .limit(10) \\
            .get()

    ``or_where`` folds with the immediately preceding predicate only:

        query.where("a", 1).where("b", 2).or_where("c", 3)
        # WHERE a = ? AND (b = ? OR c = ?)
    """

    def __init__(
        self,
        model: Optional[Type[Model]] = None,
        *,
        table: Optional[str] = None,
        database: Optional[Database] = None,
    ) -> None:
        """Initialize query builder."""
        if model is None and table is None:
            raise ValueError("model or table required")

        self.model = model
        self._table = render_table(table if table is not None else model.__table_name__)
        self._database = database

        # Query components
        self._selects: List[str] = ["*"]
        self._distinct = False
        self._wheres: List[str] = []
        self._where_bindings: List[Any] = []
        self._joins: List[str] = []
        self._groups: List[str] = []
        self._havings: List[str] = []
        self._having_bindings: List[Any] = []
        self._orders: List[str] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._with_relations: List[str] = []
        self._with_trashed = False

    @property
    def table(self) -> str:
        return self._table

    @property
    def database(self) -> Database:
        """Database this query runs against."""
        if self._database is not None:
            return self._database
        if self.model is not None:
            return self.model.get_database()
        raise NoConnection()

    @property
    def eager_loads(self) -> List[str]:
        return list(self._with_relations)

    def select(self, *columns: str) -> QueryBuilder[T]:
        """
        Specify columns to select. Replaces any previous selection.

        Example:
            query.select("id", "name")
            query.select("posts.*")
            query.select("users.id AS user_id")
        """
        self._selects = [render_select_column(c) for c in columns] or ["*"]
        return self

    def select_raw(self, expression: str) -> QueryBuilder[T]:
        """Add a raw select expression. Never pass user input here."""
        self._selects.append(expression)
        return self

    def distinct(self) -> QueryBuilder[T]:
        """Add DISTINCT to query."""
        self._distinct = True
        return self

    def where(
        self,
        column: str,
        operator: Any = _MISSING,
        value: Any = _MISSING,
    ) -> QueryBuilder[T]:
        """
        Add WHERE clause.

        Examples:
            query.where("name", "John")
            query.where("age", ">", 18)
            query.where("status", "IN", ["active", "pending"])
            query.where("deleted_at", None)      # IS NULL
        """
        fragment, bindings = self._compile_predicate(column, operator, value)
        self._wheres.append(fragment)
        self._where_bindings.extend(bindings)
        return self

    def or_where(
        self,
        column: str,
        operator: Any = _MISSING,
        value: Any = _MISSING,
    ) -> QueryBuilder[T]:
        """
        Add OR WHERE clause.

        Wraps the immediately preceding predicate and this one in a
        parenthesized OR group. With no prior predicate this is where().
        """
        fragment, bindings = self._compile_predicate(column, operator, value)

        if self._wheres:
            previous = self._wheres.pop()
            self._wheres.append(f"({previous} OR {fragment})")
        else:
            self._wheres.append(fragment)

        self._where_bindings.extend(bindings)
        return self

    def where_null(self, column: str) -> QueryBuilder[T]:
        """Add WHERE column IS NULL."""
        self._wheres.append(f"{render_column(column)} IS NULL")
        return self

    def where_not_null(self, column: str) -> QueryBuilder[T]:
        """Add WHERE column IS NOT NULL."""
        self._wheres.append(f"{render_column(column)} IS NOT NULL")
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> QueryBuilder[T]:
        """
        Add WHERE column IN (values).

        An empty list renders an always-false clause and binds nothing.
        """
        fragment, bindings = self._compile_in(render_column(column), list(values), negate=False)
        self._wheres.append(fragment)
        self._where_bindings.extend(bindings)
        return self

    def where_not_in(self, column: str, values: Iterable[Any]) -> QueryBuilder[T]:
        """Add WHERE column NOT IN (values)."""
        fragment, bindings = self._compile_in(render_column(column), list(values), negate=True)
        self._wheres.append(fragment)
        self._where_bindings.extend(bindings)
        return self

    def where_between(
        self,
        column: str,
        low: Any,
        high: Any,
    ) -> QueryBuilder[T]:
        """Add WHERE column BETWEEN low AND high."""
        self._wheres.append(f"{render_column(column)} BETWEEN ? AND ?")
        self._where_bindings.extend([low, high])
        return self

    def where_raw(self, sql: str, bindings: Optional[Sequence[Any]] = None) -> QueryBuilder[T]:
        """Add raw WHERE clause. Values belong in bindings, not in sql."""
        self._wheres.append(sql)
        self._where_bindings.extend(bindings or [])
        return self

    def join(
        self,
        table: str,
        first: str,
        operator: str,
        second: Optional[str] = None,
        join_type: str = "INNER",
    ) -> QueryBuilder[T]:
        """
        Add JOIN clause.

        Example:
            query.join("posts", "users.id", "=", "posts.user_id")
            query.join("posts", "users.id", "posts.user_id")
        """
        if second is None:
            operator, second = "=", operator

        op = render_operator(operator)
        if op not in _JOIN_OPERATORS:
            raise InvalidOperator(operator)

        kind = JoinType[join_type.upper()] if join_type.upper() in JoinType.__members__ else JoinType.INNER
        self._joins.append(
            f"{kind.value} {render_table(table)} "
            f"ON {render_column(first)} {op.value} {render_column(second)}"
        )
        return self

    def left_join(
        self,
        table: str,
        first: str,
        operator: str,
        second: Optional[str] = None,
    ) -> QueryBuilder[T]:
        """Add LEFT JOIN."""
        return self.join(table, first, operator, second, "LEFT")

    def right_join(
        self,
        table: str,
        first: str,
        operator: str,
        second: Optional[str] = None,
    ) -> QueryBuilder[T]:
        """Add RIGHT JOIN."""
        return self.join(table, first, operator, second, "RIGHT")

    def order_by(
        self,
        column: str,
        direction: str = "ASC",
    ) -> QueryBuilder[T]:
        """
        Add ORDER BY clause.

        Example:
            query.order_by("created_at", "DESC")
        """
        dir_enum = OrderDirection.DESC if direction.upper() == "DESC" else OrderDirection.ASC
        self._orders.append(f"{render_column(column)} {dir_enum.value}")
        return self

    def latest(self, column: str = "created_at") -> QueryBuilder[T]:
        """Order by column DESC."""
        return self.order_by(column, "DESC")

    def oldest(self, column: str = "created_at") -> QueryBuilder[T]:
        """Order by column ASC."""
        return self.order_by(column, "ASC")

    def group_by(self, *columns: str) -> QueryBuilder[T]:
        """Set GROUP BY columns."""
        self._groups = [render_column(c) for c in columns]
        return self

    def having(
        self,
        column: str,
        operator: Any = _MISSING,
        value: Any = _MISSING,
    ) -> QueryBuilder[T]:
        """Add HAVING clause."""
        fragment, bindings = self._compile_predicate(column, operator, value)
        self._havings.append(fragment)
        self._having_bindings.extend(bindings)
        return self

    def having_raw(self, sql: str, bindings: Optional[Sequence[Any]] = None) -> QueryBuilder[T]:
        """Add raw HAVING clause, e.g. ``COUNT(*) > ?``."""
        self._havings.append(sql)
        self._having_bindings.extend(bindings or [])
        return self

    def limit(self, count: int) -> QueryBuilder[T]:
        """Limit number of results."""
        self._limit = int(count)
        return self

    def offset(self, count: int) -> QueryBuilder[T]:
        """Skip first N results."""
        self._offset = int(count)
        return self

    def take(self, count: int) -> QueryBuilder[T]:
        """Alias for limit()."""
        return self.limit(count)

    def skip(self, count: int) -> QueryBuilder[T]:
        """Alias for offset()."""
        return self.offset(count)

    def with_relations(self, *relations: str) -> QueryBuilder[T]:
        """Eager load relationships. Dotted names load nested relations."""
        for name in relations:
            if name not in self._with_relations:
                self._with_relations.append(name)
        return self

    def with_trashed(self) -> QueryBuilder[T]:
        """Include soft-deleted rows."""
        self._with_trashed = True
        return self

    # Compilation

    def _compile_predicate(
        self,
        column: str,
        operator: Any,
        value: Any,
    ) -> Tuple[str, List[Any]]:
        # Shorthand: where("name", "John") -> where("name", "=", "John")
        if value is _MISSING:
            if operator is _MISSING:
                raise TypeError("A value is required for a where clause")
            operator, value = "=", operator

        column = render_column(column)
        op = render_operator(operator)

        if op in (Operator.IN, Operator.NOT_IN):
            return self._compile_in(column, list(value), negate=op is Operator.NOT_IN)

        if value is None:
            if op in (Operator.EQ, Operator.IS):
                return f"{column} IS NULL", []
            if op in (Operator.NE, Operator.NE_ALT, Operator.IS_NOT):
                return f"{column} IS NOT NULL", []

        return f"{column} {op.value} ?", [value]

    @staticmethod
    def _compile_in(column: str, values: List[Any], negate: bool) -> Tuple[str, List[Any]]:
        if not values:
            return ("1 = 1" if negate else "1 = 0"), []
        placeholders = ", ".join("?" for _ in values)
        keyword = "NOT IN" if negate else "IN"
        return f"{column} {keyword} ({placeholders})", values

    def _soft_deletes(self) -> bool:
        return self.model is not None and self.model.__soft_deletes__

    def _uses_timestamps(self) -> bool:
        return self.model is not None and self.model.__timestamps__

    def _primary_key(self) -> str:
        return self.model.__primary_key__ if self.model is not None else "id"

    def _scoped_wheres(self) -> List[str]:
        """WHERE fragments plus the soft-delete scope, when it applies."""
        wheres = list(self._wheres)

        if self._soft_deletes() and not self._with_trashed:
            column = render_column(self.model.__deleted_at__)
            # An explicit filter on the column disables the scope
            if not any(column in fragment for fragment in self._wheres):
                wheres.append(f"{self._table}.{column} IS NULL")

        return wheres

    def _compile_select(
        self,
        columns: str,
        distinct: bool = False,
        include_order: bool = True,
        include_limit: bool = True,
    ) -> Tuple[str, List[Any]]:
        parts = [f"SELECT {'DISTINCT ' if distinct else ''}{columns}", f"FROM {self._table}"]
        parts.extend(self._joins)

        wheres = self._scoped_wheres()
        if wheres:
            parts.append(f"WHERE {' AND '.join(wheres)}")

        if self._groups:
            parts.append(f"GROUP BY {', '.join(self._groups)}")

        if self._havings:
            parts.append(f"HAVING {' AND '.join(self._havings)}")

        if include_order and self._orders:
            parts.append(f"ORDER BY {', '.join(self._orders)}")

        if include_limit:
            if self._limit is not None:
                parts.append(f"LIMIT {self._limit}")
            if self._offset is not None:
                parts.append(f"OFFSET {self._offset}")

        return " ".join(parts), self._where_bindings + self._having_bindings

    def _compile_where(self) -> Tuple[str, List[Any]]:
        """Unscoped WHERE for UPDATE/DELETE."""
        if not self._wheres:
            return "", []
        return f" WHERE {' AND '.join(self._wheres)}", list(self._where_bindings)

    def to_sql(self) -> Tuple[str, List[Any]]:
        """
        Build SQL query string.

        Returns:
            Tuple of (sql_string, bindings)
        """
        return self._compile_select(", ".join(self._selects), distinct=self._distinct)

    # Execution methods

    async def get(self) -> List[T]:
        """Execute query and return results."""
        sql, bindings = self.to_sql()
        rows = await self.database.query(sql, bindings)

        if self.model is None:
            return rows

        results = [self.model.hydrate(row) for row in rows]

        if self._with_relations and results:
            from quarry.orm.relations import EagerLoader
            await EagerLoader(self.model).load(results, self._with_relations)

        return results

    async def first(self) -> Optional[T]:
        """Get first result."""
        self._limit = 1
        results = await self.get()
        return results[0] if results else None

    async def first_or_fail(self) -> T:
        """Get first result or raise."""
        result = await self.first()
        if result is None:
            name = self.model.__name__ if self.model is not None else self._table
            raise ModelNotFound(f"No {name} found")
        return result

    async def _aggregate(self, expression: str) -> Any:
        sql, bindings = self._compile_select(
            f"{expression} AS aggregate",
            include_order=False,
            include_limit=False,
        )
        row = await self.database.fetch_one(sql, bindings)
        return row["aggregate"] if row else None

    async def _count_rows(self) -> int:
        """Count the rows the SELECT itself returns (one per group or distinct row)."""
        inner, bindings = self._compile_select(
            ", ".join(self._selects),
            distinct=self._distinct,
            include_order=False,
            include_limit=False,
        )
        sql = f"SELECT COUNT(*) AS aggregate FROM ({inner}) AS quarry_count"
        row = await self.database.fetch_one(sql, bindings)
        return int(row["aggregate"]) if row else 0

    async def count(self, column: str = "*") -> int:
        """
        Count matching records. Ignores ORDER BY, LIMIT and OFFSET.

        Grouped queries count groups. DISTINCT counts distinct rows, or
        distinct non-null values of the given column.
        """
        if self._groups or (self._distinct and column == "*"):
            return await self._count_rows()

        if column == "*":
            expression = "COUNT(*)"
        elif self._distinct:
            expression = f"COUNT(DISTINCT {render_column(column)})"
        else:
            expression = f"COUNT({render_column(column)})"

        return int(await self._aggregate(expression) or 0)

    async def exists(self) -> bool:
        """Check if any records match."""
        return await self.count() > 0

    async def sum(self, column: str) -> Union[int, float]:
        """Sum a column over matching records."""
        return await self._aggregate(f"SUM({render_column(column)})") or 0

    async def avg(self, column: str) -> float:
        """Average a column over matching records."""
        result = await self._aggregate(f"AVG({render_column(column)})")
        return float(result) if result is not None else 0

    async def insert(
        self,
        values: Union[Mapping[str, Any], Sequence[Mapping[str, Any]]],
    ) -> ExecuteResult:
        """
        Insert one row or several rows sharing the same keys.

        Several rows render one statement with one value tuple per row.
        """
        rows = [dict(values)] if isinstance(values, Mapping) else [dict(v) for v in values]
        if not rows:
            return ExecuteResult()

        if self._uses_timestamps():
            now = fresh_timestamp()
            for row in rows:
                for column in (self.model.__created_at__, self.model.__updated_at__):
                    if row.get(column) is None:
                        row[column] = now

        columns = list(rows[0])
        for row in rows[1:]:
            if set(row) != set(columns):
                raise ValueError("All inserted rows must have the same columns")

        column_sql = ", ".join(render_column(c) for c in columns)
        tuple_sql = f"({', '.join('?' for _ in columns)})"
        sql = (
            f"INSERT INTO {self._table} ({column_sql}) "
            f"VALUES {', '.join(tuple_sql for _ in rows)}"
        )
        bindings = [row[c] for row in rows for c in columns]

        return await self.database.execute(sql, bindings, primary_key=self._primary_key())

    async def update(self, values: Mapping[str, Any]) -> int:
        """Update matching records. Returns the affected row count."""
        values = dict(values)

        if self._uses_timestamps() and values.get(self.model.__updated_at__) is None:
            values[self.model.__updated_at__] = fresh_timestamp()

        if not values:
            return 0

        sets = ", ".join(f"{render_column(k)} = ?" for k in values)
        where_sql, where_bindings = self._compile_where()
        sql = f"UPDATE {self._table} SET {sets}{where_sql}"

        result = await self.database.execute(sql, list(values.values()) + where_bindings)
        return result.affected_rows

    async def delete(self) -> int:
        """
        Delete matching records.

        Soft-deleting models get their deleted-at column stamped instead.
        """
        if self._soft_deletes():
            return await self.update({self.model.__deleted_at__: fresh_timestamp()})
        return await self.force_delete()

    async def force_delete(self) -> int:
        """Delete matching records for real."""
        where_sql, where_bindings = self._compile_where()
        sql = f"DELETE FROM {self._table}{where_sql}"

        result = await self.database.execute(sql, where_bindings)
        return result.affected_rows

    async def paginate(self, page: int = 1, per_page: int = 15) -> Paginator[T]:
        """
        Paginate results.

        The page is clamped into [1, last_page].
        """
        per_page = int(per_page)
        if per_page < 1:
            raise ValueError("per_page must be at least 1")

        total = await self.count()

        last_page = max(1, math.ceil(total / per_page))
        current_page = max(1, min(int(page), last_page))
        offset = (current_page - 1) * per_page

        self._limit = per_page
        self._offset = offset
        data = await self.get()

        return Paginator(
            data=data,
            total=total,
            per_page=per_page,
            current_page=current_page,
            last_page=last_page,
            from_=offset + 1 if total else 0,
            to=min(offset + per_page, total),
        )

    async def raw(self, sql: str, bindings: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run a raw read against this query's database."""
        return await self.database.query(sql, list(bindings or []))


# Alias
Query = QueryBuilder
