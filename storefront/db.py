"""
Database abstraction over the hosted Supabase project and an in-memory test implementation.

Every page of the storefront talks to the same hosted Postgres through
PostgREST: table reads/writes and remote procedures. Row-level security and
`auth.uid()` inside the procedures depend on the caller's access token, so a
client is always bound to one user via `for_user`.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from postgrest.exceptions import APIError
from supabase import Client, create_client

Filter = Tuple[str, str, Any]
Order = Tuple[str, bool]


def eq(column: str, value: Any) -> Filter:
    return ("eq", column, value)


def ilike(column: str, pattern: str) -> Filter:
    return ("ilike", column, pattern)


def is_null(column: str) -> Filter:
    return ("is", column, None)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return ("in", column, list(values))


def gte(column: str, value: Any) -> Filter:
    return ("gte", column, value)


def asc(column: str) -> Order:
    return (column, True)


def desc(column: str) -> Order:
    return (column, False)


class DbError(Exception):
    """A failed PostgREST call (SQL error, RLS rejection, missing relation...)."""

    def __init__(
        self, message: str, code: Optional[str] = None, details: Optional[str] = None
    ):
        self.message = message or ""
        self.code = code
        self.details = details
        super().__init__(self.message)


class DbClient(Protocol):
    """Interface for the table and procedure calls the pages make."""

    def for_user(
        self, access_token: Optional[str], user_id: Optional[str]
    ) -> "DbClient":
        ...

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> List[dict]:
        ...

    def select_one(
        self, table: str, columns: str = "*", *, filters: Sequence[Filter] = ()
    ) -> Optional[dict]:
        ...

    def insert(self, table: str, rows: dict | List[dict]) -> List[dict]:
        ...

    def update(
        self, table: str, values: dict, *, filters: Sequence[Filter] = ()
    ) -> List[dict]:
        ...

    def rpc(self, name: str, params: Optional[dict] = None) -> Any:
        ...


class SupabaseDbClient:
    """
    PostgREST access through supabase-py. Errors are re-raised as DbError.
    """

    def __init__(self, url: str, key: str, access_token: Optional[str] = None):
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required")
        self.url = url
        self.key = key
        self._client: Client = create_client(url, key)
        if access_token:
            self._client.postgrest.auth(access_token)

    def for_user(
        self, access_token: Optional[str], user_id: Optional[str]
    ) -> "SupabaseDbClient":
        if not access_token:
            return self
        return SupabaseDbClient(self.url, self.key, access_token=access_token)

    @staticmethod
    def _apply_filters(query, filters: Sequence[Filter]):
        for operator, column, value in filters:
            if operator == "eq":
                query = query.eq(column, value)
            elif operator == "ilike":
                query = query.ilike(column, value)
            elif operator == "is":
                query = query.is_(column, "null" if value is None else value)
            elif operator == "in":
                query = query.in_(column, value)
            elif operator == "gte":
                query = query.gte(column, value)
            else:
                raise ValueError(f"Unsupported filter operator: {operator}")
        return query

    @staticmethod
    def _execute(query):
        try:
            return query.execute()
        except APIError as exc:
            raise DbError(exc.message or str(exc), code=exc.code, details=exc.details) from exc

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> List[dict]:
        query = self._apply_filters(self._client.table(table).select(columns), filters)
        for column, ascending in order:
            query = query.order(column, desc=not ascending)
        if limit is not None:
            query = query.limit(limit)
        response = self._execute(query)
        return list(response.data or [])

    def select_one(
        self, table: str, columns: str = "*", *, filters: Sequence[Filter] = ()
    ) -> Optional[dict]:
        rows = self.select(table, columns, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, rows: dict | List[dict]) -> List[dict]:
        response = self._execute(self._client.table(table).insert(rows))
        return list(response.data or [])

    def update(
        self, table: str, values: dict, *, filters: Sequence[Filter] = ()
    ) -> List[dict]:
        query = self._apply_filters(self._client.table(table).update(values), filters)
        response = self._execute(query)
        return list(response.data or [])

    def rpc(self, name: str, params: Optional[dict] = None) -> Any:
        response = self._execute(self._client.rpc(name, params or {}))
        return response.data


Procedure = Callable[[dict, Optional[str]], Any]


@dataclass
class TableSpec:
    columns: Tuple[str, ...]
    unique: Tuple[Tuple[str, ...], ...] = ()
    denied: frozenset = frozenset()


@dataclass
class _Store:
    specs: Dict[str, TableSpec] = field(default_factory=dict)
    rows: Dict[str, List[dict]] = field(default_factory=dict)
    procedures: Dict[str, Procedure] = field(default_factory=dict)
    rpc_calls: List[Tuple[str, dict, Optional[str]]] = field(default_factory=list)


def _like_to_regex(pattern: str) -> re.Pattern:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def _parse_columns(columns: str) -> List[str]:
    return [part.strip() for part in columns.split(",") if part.strip()]


class InMemoryDbClient:
    """
    Simple in-memory PostgREST stand-in for development and tests.

    Tables must be declared with `create_table`. Errors mimic the messages
    PostgREST returns (missing columns/relations, unique violations, RLS)
    so callers that classify errors by message behave the same.
    """

    def __init__(self, store: Optional[_Store] = None, user_id: Optional[str] = None):
        self._store = store or _Store()
        self.user_id = user_id

    # Setup helpers -----------------------------------------------------

    def create_table(
        self,
        name: str,
        columns: Iterable[str],
        *,
        unique: Iterable[Iterable[str]] = (),
        denied: Iterable[str] = (),
    ) -> None:
        self._store.specs[name] = TableSpec(
            columns=tuple(columns),
            unique=tuple(tuple(group) for group in unique),
            denied=frozenset(denied),
        )
        self._store.rows.setdefault(name, [])

    def deny(self, table: str, *operations: str) -> None:
        spec = self._spec(table)
        spec.denied = frozenset(set(spec.denied) | set(operations))

    def seed(self, table: str, *rows: dict) -> None:
        spec = self._spec(table)
        for row in rows:
            self._store.rows[table].append(self._complete_row(table, spec, row))

    def register_procedure(self, name: str, handler: Procedure) -> None:
        self._store.procedures[name] = handler

    def table_rows(self, table: str) -> List[dict]:
        return [dict(row) for row in self._store.rows.get(table, [])]

    @property
    def rpc_calls(self) -> List[Tuple[str, dict, Optional[str]]]:
        return self._store.rpc_calls

    def reset(self) -> None:
        """Clear all rows and recorded calls (useful in tests)."""
        for rows in self._store.rows.values():
            rows.clear()
        self._store.rpc_calls.clear()

    # DbClient ------------------------------------------------------------

    def for_user(
        self, access_token: Optional[str], user_id: Optional[str]
    ) -> "InMemoryDbClient":
        return InMemoryDbClient(self._store, user_id=user_id)

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> List[dict]:
        spec = self._spec(table)
        self._check_allowed(table, spec, "select")
        wanted = self._check_columns(table, spec, _parse_columns(columns))
        rows = self._matching(table, spec, filters)
        for column, ascending in reversed(list(order)):
            self._check_columns(table, spec, [column])
            present = [row for row in rows if row.get(column) is not None]
            missing = [row for row in rows if row.get(column) is None]
            present.sort(key=lambda row: row[column], reverse=not ascending)
            # Postgres puts NULLs last ascending and first descending.
            rows = present + missing if ascending else missing + present
        if limit is not None:
            rows = rows[:limit]
        if wanted is None:
            return [copy.deepcopy(row) for row in rows]
        return [{column: copy.deepcopy(row.get(column)) for column in wanted} for row in rows]

    def select_one(
        self, table: str, columns: str = "*", *, filters: Sequence[Filter] = ()
    ) -> Optional[dict]:
        rows = self.select(table, columns, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, rows: dict | List[dict]) -> List[dict]:
        spec = self._spec(table)
        self._check_allowed(table, spec, "insert")
        batch = [rows] if isinstance(rows, dict) else list(rows)
        completed = []
        for row in batch:
            unknown = [key for key in row if key not in spec.columns]
            if unknown:
                raise DbError(
                    f"Could not find the '{unknown[0]}' column of '{table}' in the schema cache",
                    code="PGRST204",
                )
            completed.append(self._complete_row(table, spec, row))
        for row in completed:
            self._check_unique(table, spec, row, ignore=None)
            self._store.rows[table].append(row)
        return [copy.deepcopy(row) for row in completed]

    def update(
        self, table: str, values: dict, *, filters: Sequence[Filter] = ()
    ) -> List[dict]:
        spec = self._spec(table)
        self._check_allowed(table, spec, "update")
        unknown = [key for key in values if key not in spec.columns]
        if unknown:
            raise DbError(
                f"Could not find the '{unknown[0]}' column of '{table}' in the schema cache",
                code="PGRST204",
            )
        targets = self._matching(table, spec, filters)
        for row in targets:
            candidate = {**row, **values}
            self._check_unique(table, spec, candidate, ignore=row)
        for row in targets:
            row.update(copy.deepcopy(values))
        return [copy.deepcopy(row) for row in targets]

    def rpc(self, name: str, params: Optional[dict] = None) -> Any:
        params = dict(params or {})
        self._store.rpc_calls.append((name, params, self.user_id))
        handler = self._store.procedures.get(name)
        if handler is None:
            raise DbError(
                f"Could not find the function public.{name} without parameters in the schema cache",
                code="PGRST202",
            )
        return handler(params, self.user_id)

    # Internals ---------------------------------------------------------

    def _spec(self, table: str) -> TableSpec:
        spec = self._store.specs.get(table)
        if spec is None:
            raise DbError(f'relation "public.{table}" does not exist', code="42P01")
        return spec

    @staticmethod
    def _check_allowed(table: str, spec: TableSpec, operation: str) -> None:
        if operation in spec.denied:
            if operation == "select":
                raise DbError(f"permission denied for table {table}", code="42501")
            raise DbError(
                f'new row violates row-level security policy for table "{table}"',
                code="42501",
            )

    @staticmethod
    def _check_columns(
        table: str, spec: TableSpec, columns: List[str]
    ) -> Optional[List[str]]:
        if columns == ["*"]:
            return None
        for column in columns:
            if column not in spec.columns:
                raise DbError(f"column {table}.{column} does not exist", code="42703")
        return columns

    @staticmethod
    def _complete_row(table: str, spec: TableSpec, row: dict) -> dict:
        completed = {column: None for column in spec.columns}
        completed.update(copy.deepcopy(row))
        return completed

    def _check_unique(
        self, table: str, spec: TableSpec, row: dict, ignore: Optional[dict]
    ) -> None:
        for group in spec.unique:
            key = tuple(row.get(column) for column in group)
            if any(part is None for part in key):
                continue
            for existing in self._store.rows[table]:
                if existing is ignore:
                    continue
                if tuple(existing.get(column) for column in group) == key:
                    raise DbError(
                        f'duplicate key value violates unique constraint "{table}_{"_".join(group)}_key"',
                        code="23505",
                    )

    def _matching(
        self, table: str, spec: TableSpec, filters: Sequence[Filter]
    ) -> List[dict]:
        self._check_columns(table, spec, [column for _, column, _ in filters])
        return [
            row
            for row in self._store.rows[table]
            if all(self._matches(row, f) for f in filters)
        ]

    @staticmethod
    def _matches(row: dict, condition: Filter) -> bool:
        operator, column, value = condition
        current = row.get(column)
        if operator == "eq":
            return current == value
        if operator == "ilike":
            return isinstance(current, str) and bool(_like_to_regex(value).match(current))
        if operator == "is":
            return current is value
        if operator == "in":
            return current in value
        if operator == "gte":
            return current is not None and current >= value
        raise ValueError(f"Unsupported filter operator: {operator}")


STOREFRONT_TABLES = {
    "profiles": (
        (
            "id",
            "username",
            "purchase_pin",
            "is_approved",
            "phone_e164",
            "country_iso",
            "country_dial",
            "role",
            "balance",
            "referred_by",
            "provider_avatar_url",
            "created_at",
        ),
        (("id",), ("username",)),
    ),
    "products": (
        (
            "id",
            "name",
            "description",
            "logo_url",
            "stock_available",
            "price_guest",
            "price_affiliate",
            "renewal_price",
            "duration_days",
            "provider_id",
            "delivery_mode",
            "account_type",
            "renewable",
            "extra_required_fields",
            "is_active",
            "created_at",
        ),
        (("id",),),
    ),
    "product_name_filters": (
        ("id", "name", "keyword", "image_url", "sort_order", "is_active", "created_at"),
        (("id",),),
    ),
    "orders": (
        ("id", "product_id", "buyer_id", "status", "created_at"),
        (("id",),),
    ),
    "user_affiliations": (
        (
            "referrer_user_id",
            "referred_user_id",
            "referrer_username",
            "referred_username",
            "created_at",
        ),
        (("referred_user_id",),),
    ),
}


def create_storefront_schema(db: InMemoryDbClient) -> InMemoryDbClient:
    """Declares the tables the storefront reads and writes (no procedures)."""
    for name, (columns, unique) in STOREFRONT_TABLES.items():
        db.create_table(name, columns, unique=unique)
    return db
