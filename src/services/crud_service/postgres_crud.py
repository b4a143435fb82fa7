"""
Postgres CRUD - generic table access for the Supabase database.

One :class:`TableCrud` wraps one SQLAlchemy ``Table`` from
``infrastructure.db.sql_client.metadata``. Primary keys may be a scalar
(single-column key) or a dict (composite keys such as agent_tools and
settings).

Every call opens its own session: commit on success; on failure roll
back, log, and re-raise as :class:`DatabaseError`.
"""

from loguru import logger
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Table, and_, delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from infrastructure.db.sql_client import get_session, metadata
from infrastructure.errors import DatabaseError, ValidationError
from memory.schemas import QueryFilter

PrimaryKey = Union[str, int, Mapping[str, Any]]
Filters = Union[Mapping[str, Any], Sequence[QueryFilter], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _condition(column, f: QueryFilter):
    f.validate()
    if f.operator == "eq":
        return column == f.value
    if f.operator == "neq":
        return column != f.value
    if f.operator == "gt":
        return column > f.value
    if f.operator == "gte":
        return column >= f.value
    if f.operator == "lt":
        return column < f.value
    if f.operator == "lte":
        return column <= f.value
    if f.operator == "like":
        return column.like(f.value)
    if f.operator == "ilike":
        return column.ilike(f.value)
    if f.operator == "in":
        return column.in_(list(f.value))
    return column.is_(f.value)


class TableCrud:
    """
    CRUD over a single table.

    Args:
        table: SQLAlchemy Table
        session_factory: Zero-arg callable returning a Session
    """

    def __init__(self, table: Table, session_factory: Optional[Callable] = None):
        self.table = table
        self.session_factory = session_factory or get_session
        self.pk_columns = [c.name for c in table.primary_key.columns]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pk_clause(self, pk: PrimaryKey):
        if isinstance(pk, Mapping):
            missing = [name for name in self.pk_columns if pk.get(name) in (None, "")]
            if missing:
                raise ValidationError(f"Invalid primary key for {self.table.name}",
                                      [f"{name} is required" for name in missing])
            return and_(*(self.table.c[name] == pk[name] for name in self.pk_columns))
        if len(self.pk_columns) != 1:
            raise ValidationError(
                f"Invalid primary key for {self.table.name}",
                [f"composite key needs a dict with {', '.join(self.pk_columns)}"],
            )
        return self.table.c[self.pk_columns[0]] == pk

    def _pk_of(self, record: Mapping[str, Any]) -> PrimaryKey:
        if len(self.pk_columns) == 1:
            return record[self.pk_columns[0]]
        return {name: record[name] for name in self.pk_columns}

    def _where(self, filters: Filters):
        if not filters:
            return []
        if isinstance(filters, Mapping):
            filters = [QueryFilter(k, "eq", v) for k, v in filters.items()]
        clauses = []
        for f in filters:
            if f.field not in self.table.c:
                raise ValidationError(f"Invalid filter for {self.table.name}", [f"unknown column '{f.field}'"])
            clauses.append(_condition(self.table.c[f.field], f))
        return clauses

    def _clean(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = [k for k in record if k not in self.table.c]
        if unknown:
            logger.warning("Ignoring unknown columns for {}: {}", self.table.name, unknown)
        return {k: v for k, v in record.items() if k in self.table.c}

    def _required_missing(self, record: Mapping[str, Any]) -> List[str]:
        missing = []
        for column in self.table.columns:
            if column.nullable or column.default is not None or column.server_default is not None:
                continue
            if record.get(column.name) is None:
                missing.append(f"{column.name} is required")
        return missing

    def _run(self, action: str, fn: Callable):
        session = self.session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to {} {}: {}", action, self.table.name, e)
            raise DatabaseError(f"Failed to {action} {self.table.name}", cause=e)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Insert one row.

        A missing ``id`` is generated for single-``id``-key tables.

        Raises:
            ValidationError: If required columns are missing
            DatabaseError: On any database failure
        """
        values = self._clean(record)
        if self.pk_columns == ["id"] and not values.get("id"):
            values["id"] = str(uuid.uuid4())
        missing = self._required_missing(values)
        if missing:
            raise ValidationError(f"Invalid {self.table.name} record", missing)

        pk = self._pk_of(values)

        def op(session):
            session.execute(insert(self.table).values(**values))
            row = session.execute(select(self.table).where(self._pk_clause(pk))).mappings().first()
            return dict(row)

        created = self._run("create", op)
        logger.debug("Created {} {}", self.table.name, pk)
        return created

    def get(self, pk: PrimaryKey) -> Optional[Dict[str, Any]]:
        """Fetch one row by primary key (None when missing)."""
        clause = self._pk_clause(pk)

        def op(session):
            row = session.execute(select(self.table).where(clause)).mappings().first()
            return dict(row) if row else None

        return self._run("get", op)

    def list(
        self,
        filters: Filters = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List rows with optional filters, ordering and paging."""
        stmt = select(self.table).where(*self._where(filters))
        if order_by:
            if order_by not in self.table.c:
                raise ValidationError(f"Invalid order for {self.table.name}", [f"unknown column '{order_by}'"])
            column = self.table.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        def op(session):
            return [dict(row) for row in session.execute(stmt).mappings().all()]

        return self._run("list", op)

    def update(self, pk: PrimaryKey, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Update one row; bumps ``updated_at`` when the table has it.

        Returns:
            The updated row, or None when no row matched
        """
        clause = self._pk_clause(pk)
        values = {k: v for k, v in self._clean(updates).items() if k not in self.pk_columns}
        if "updated_at" in self.table.c:
            values["updated_at"] = _now()
        if not values:
            return self.get(pk)

        def op(session):
            result = session.execute(update(self.table).where(clause).values(**values))
            if result.rowcount == 0:
                return None
            row = session.execute(select(self.table).where(clause)).mappings().first()
            return dict(row)

        return self._run("update", op)

    def delete(self, pk: PrimaryKey) -> bool:
        """Delete one row; False when nothing matched."""
        clause = self._pk_clause(pk)

        def op(session):
            return session.execute(delete(self.table).where(clause)).rowcount > 0

        return self._run("delete", op)

    def upsert(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Update the row with *record*'s key if it exists, else insert it."""
        values = self._clean(record)
        if all(values.get(name) not in (None, "") for name in self.pk_columns):
            pk = self._pk_of(values)
            if self.get(pk) is not None:
                return self.update(pk, values)
        return self.create(values)

    def count(self, filters: Filters = None) -> int:
        """Number of rows matching *filters*."""
        stmt = select(func.count()).select_from(self.table).where(*self._where(filters))

        def op(session):
            return int(session.execute(stmt).scalar() or 0)

        return self._run("count", op)


# Named accessors

_cruds: Dict[str, TableCrud] = {}


def get_crud(table_name: str, session_factory: Optional[Callable] = None) -> TableCrud:
    """
    CRUD accessor for a table registered in ``sql_client.metadata``.

    Accessors built with the default session factory are cached.

    Raises:
        ValueError: If the table is unknown
    """
    if table_name not in metadata.tables:
        raise ValueError(f"Unknown table '{table_name}'")
    if session_factory is not None:
        return TableCrud(metadata.tables[table_name], session_factory)
    if table_name not in _cruds:
        _cruds[table_name] = TableCrud(metadata.tables[table_name])
    return _cruds[table_name]


def list_tables() -> List[str]:
    """Names of every table the Postgres CRUD layer knows."""
    return sorted(metadata.tables)
