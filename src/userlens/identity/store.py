"""Storage collaborator for canonical identities, raw records and presence.

:class:`IdentityStore` is the interface the engine depends on.  Two
implementations are provided: an in-memory store for tests and one-shot
runs, and a PostgreSQL store using raw SQL via psycopg3.

Creating an identity whose primary key already exists raises
:class:`StorageConflict`; callers recover by re-reading the identity.
"""

from __future__ import annotations

import copy
import json
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

import psycopg

from userlens.db import execute_many, execute_query
from userlens.identity.errors import StorageConflict
from userlens.identity.models import (
    CANONICAL_FIELDS,
    AttributeSet,
    CanonicalIdentity,
    RawRow,
    SourcePresence,
)

_UPDATABLE_IDENTITY_COLUMNS = frozenset(CANONICAL_FIELDS) | {"active"}


def _check_patch(patch: Mapping[str, Any]) -> None:
    unknown = sorted(set(patch) - _UPDATABLE_IDENTITY_COLUMNS)
    if unknown:
        msg = f"Cannot update identity columns: {unknown}"
        raise ValueError(msg)


def _require_key(attrs: AttributeSet) -> str:
    if not attrs.primary_key:
        msg = "Cannot store an identity without a primary key"
        raise ValueError(msg)
    return attrs.primary_key


class IdentityStore(Protocol):
    def find_identity_by_key(self, primary_key: str) -> CanonicalIdentity | None: ...

    def get_identity(self, identity_id: str) -> CanonicalIdentity | None: ...

    def create_identity(self, attrs: AttributeSet) -> CanonicalIdentity: ...

    def update_identity(self, identity_id: str, patch: Mapping[str, Any]) -> None: ...

    def list_identities(self, active_only: bool = True) -> list[CanonicalIdentity]: ...

    def create_presence(
        self,
        identity_id: str,
        source_id: str,
        import_id: str,
        raw_record_ref: str | None,
        *,
        platform_user_id: str | None = None,
        active: bool = True,
        last_seen_date: datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SourcePresence: ...

    def find_presence(
        self, identity_id: str, source_id: str | None = None
    ) -> list[SourcePresence]: ...

    def find_presence_by_record(self, raw_record_ref: str) -> SourcePresence | None: ...

    def save_raw_row(self, row: RawRow) -> RawRow: ...

    def update_raw_row(self, row: RawRow) -> None: ...

    def update_raw_rows(self, rows: Sequence[RawRow]) -> int: ...

    def list_raw_rows(
        self,
        source_id: str | None = None,
        primary_key: str | None = None,
        include_merged: bool = True,
    ) -> list[RawRow]: ...

    def list_source_ids(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryIdentityStore:
    """Dict-backed store.  Returned objects are copies, like rows from a database."""

    def __init__(self) -> None:
        self._identities: dict[str, CanonicalIdentity] = {}
        self._ids_by_key: dict[str, str] = {}
        self._presences: dict[str, SourcePresence] = {}
        self._raw_rows: dict[str, RawRow] = {}

    def find_identity_by_key(self, primary_key: str) -> CanonicalIdentity | None:
        identity_id = self._ids_by_key.get(primary_key)
        return self.get_identity(identity_id) if identity_id else None

    def get_identity(self, identity_id: str) -> CanonicalIdentity | None:
        identity = self._identities.get(identity_id)
        return copy.deepcopy(identity) if identity else None

    def create_identity(self, attrs: AttributeSet) -> CanonicalIdentity:
        primary_key = _require_key(attrs)
        if primary_key in self._ids_by_key:
            raise StorageConflict(primary_key)
        identity = CanonicalIdentity(
            id=str(uuid.uuid4()),
            primary_key=primary_key,
            first_name=attrs.first_name,
            last_name=attrs.last_name,
            email=attrs.email,
            username=attrs.username,
            display_name=attrs.display_name,
        )
        self._identities[identity.id] = identity
        self._ids_by_key[primary_key] = identity.id
        return copy.deepcopy(identity)

    def update_identity(self, identity_id: str, patch: Mapping[str, Any]) -> None:
        _check_patch(patch)
        identity = self._identities[identity_id]
        for name, value in patch.items():
            setattr(identity, name, value)

    def list_identities(self, active_only: bool = True) -> list[CanonicalIdentity]:
        return [
            copy.deepcopy(i)
            for i in self._identities.values()
            if i.active or not active_only
        ]

    def create_presence(
        self,
        identity_id: str,
        source_id: str,
        import_id: str,
        raw_record_ref: str | None,
        *,
        platform_user_id: str | None = None,
        active: bool = True,
        last_seen_date: datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SourcePresence:
        presence = SourcePresence(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            source_id=source_id,
            import_id=import_id,
            raw_record_ref=raw_record_ref,
            platform_user_id=platform_user_id,
            active=active,
            last_seen_date=last_seen_date,
            payload=copy.deepcopy(payload or {}),
        )
        self._presences[presence.id] = presence
        return copy.deepcopy(presence)

    def find_presence(self, identity_id: str, source_id: str | None = None) -> list[SourcePresence]:
        return [
            copy.deepcopy(p)
            for p in self._presences.values()
            if p.identity_id == identity_id and (source_id is None or p.source_id == source_id)
        ]

    def find_presence_by_record(self, raw_record_ref: str) -> SourcePresence | None:
        for presence in self._presences.values():
            if presence.raw_record_ref == raw_record_ref:
                return copy.deepcopy(presence)
        return None

    def save_raw_row(self, row: RawRow) -> RawRow:
        stored = copy.deepcopy(row)
        stored.id = str(uuid.uuid4())
        self._raw_rows[stored.id] = stored
        return copy.deepcopy(stored)

    def update_raw_row(self, row: RawRow) -> None:
        if row.id not in self._raw_rows:
            msg = f"Unknown raw record: {row.id!r}"
            raise KeyError(msg)
        self._raw_rows[row.id] = copy.deepcopy(row)

    def update_raw_rows(self, rows: Sequence[RawRow]) -> int:
        for row in rows:
            self.update_raw_row(row)
        return len(rows)

    def list_raw_rows(
        self,
        source_id: str | None = None,
        primary_key: str | None = None,
        include_merged: bool = True,
    ) -> list[RawRow]:
        return [
            copy.deepcopy(r)
            for r in self._raw_rows.values()
            if (source_id is None or r.source_id == source_id)
            and (primary_key is None or r.primary_key == primary_key)
            and (include_merged or not r.merged)
        ]

    def list_source_ids(self) -> list[str]:
        sources = {r.source_id for r in self._raw_rows.values()}
        sources.update(p.source_id for p in self._presences.values())
        return sorted(sources)


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS canonical_identities (
    id uuid PRIMARY KEY,
    primary_key text NOT NULL UNIQUE CHECK (primary_key <> ''),
    first_name text,
    last_name text,
    email text,
    username text,
    display_name text,
    active boolean NOT NULL DEFAULT true,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS raw_records (
    id uuid PRIMARY KEY,
    source_id text NOT NULL,
    import_id text NOT NULL,
    file_name text,
    imported_at timestamptz,
    primary_key text,
    raw_data jsonb NOT NULL,
    attributes jsonb,
    merged boolean NOT NULL DEFAULT false,
    merged_into uuid,
    merged_at timestamptz
);

CREATE INDEX IF NOT EXISTS idx_raw_records_key_source
    ON raw_records (primary_key, source_id);

CREATE TABLE IF NOT EXISTS source_presence (
    id uuid PRIMARY KEY,
    identity_id uuid NOT NULL REFERENCES canonical_identities (id),
    source_id text NOT NULL,
    import_id text NOT NULL,
    raw_record_ref uuid REFERENCES raw_records (id),
    platform_user_id text,
    active boolean NOT NULL DEFAULT true,
    last_seen_date timestamptz,
    payload jsonb NOT NULL DEFAULT '{}'::jsonb,
    created_at timestamptz NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_source_presence_identity
    ON source_presence (identity_id, source_id);
"""

_IDENTITY_COLUMNS = """
    id::text AS id, primary_key, first_name, last_name, email,
    username, display_name, active
"""

_PRESENCE_COLUMNS = """
    id::text AS id, identity_id::text AS identity_id, source_id, import_id,
    raw_record_ref::text AS raw_record_ref, platform_user_id, active,
    last_seen_date, payload
"""

_RAW_COLUMNS = """
    id::text AS id, source_id, import_id, file_name, imported_at, primary_key,
    raw_data, attributes, merged, merged_into::text AS merged_into, merged_at
"""


def create_schema(conn: psycopg.Connection) -> None:
    """Create the identity tables if they do not exist."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def _identity_from_row(row: dict) -> CanonicalIdentity:
    return CanonicalIdentity(
        id=row["id"],
        primary_key=row["primary_key"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        email=row.get("email"),
        username=row.get("username"),
        display_name=row.get("display_name"),
        active=row.get("active", True),
    )


def _presence_from_row(row: dict) -> SourcePresence:
    return SourcePresence(
        id=row["id"],
        identity_id=row["identity_id"],
        source_id=row["source_id"],
        import_id=row["import_id"],
        raw_record_ref=row.get("raw_record_ref"),
        platform_user_id=row.get("platform_user_id"),
        active=row.get("active", True),
        last_seen_date=row.get("last_seen_date"),
        payload=_load_json(row.get("payload")) or {},
    )


def _raw_row_from_row(row: dict) -> RawRow:
    attributes = _load_json(row.get("attributes"))
    return RawRow(
        id=row["id"],
        values=_load_json(row["raw_data"]),
        source_id=row["source_id"],
        import_id=row["import_id"],
        file_name=row.get("file_name"),
        imported_at=row.get("imported_at"),
        primary_key=row.get("primary_key"),
        attributes=AttributeSet(**attributes) if attributes else None,
        merged=row.get("merged", False),
        merged_into=row.get("merged_into"),
        merged_at=row.get("merged_at"),
    )


def _raw_update_params(row: RawRow) -> tuple:
    return (
        _dump_json(row.values),
        _dump_json(row.attributes.as_dict()) if row.attributes else None,
        row.primary_key,
        row.merged,
        row.merged_into,
        row.merged_at,
        row.id,
    )


_RAW_UPDATE_SQL = """
    UPDATE raw_records
    SET raw_data = %s::jsonb,
        attributes = %s::jsonb,
        primary_key = %s,
        merged = %s,
        merged_into = %s,
        merged_at = %s
    WHERE id = %s
"""


class PostgresIdentityStore:
    """Identity store backed by PostgreSQL.

    Transactions are left to the caller (commit after a batch), matching the
    rest of the codebase.  Identity inserts run inside a savepoint so a
    duplicate key does not poison the surrounding transaction.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    # -- identities ----------------------------------------------------------

    def find_identity_by_key(self, primary_key: str) -> CanonicalIdentity | None:
        rows = execute_query(
            self.conn,
            f"SELECT {_IDENTITY_COLUMNS} FROM canonical_identities WHERE primary_key = %s LIMIT 1",
            (primary_key,),
        )
        return _identity_from_row(rows[0]) if rows else None

    def get_identity(self, identity_id: str) -> CanonicalIdentity | None:
        rows = execute_query(
            self.conn,
            f"SELECT {_IDENTITY_COLUMNS} FROM canonical_identities WHERE id = %s",
            (identity_id,),
        )
        return _identity_from_row(rows[0]) if rows else None

    def create_identity(self, attrs: AttributeSet) -> CanonicalIdentity:
        primary_key = _require_key(attrs)
        identity_id = str(uuid.uuid4())
        try:
            with self.conn.transaction():
                execute_query(
                    self.conn,
                    """
                    INSERT INTO canonical_identities
                        (id, primary_key, first_name, last_name, email, username, display_name)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity_id,
                        primary_key,
                        attrs.first_name,
                        attrs.last_name,
                        attrs.email,
                        attrs.username,
                        attrs.display_name,
                    ),
                )
        except psycopg.errors.UniqueViolation as exc:
            raise StorageConflict(primary_key) from exc

        return CanonicalIdentity(
            id=identity_id,
            primary_key=primary_key,
            first_name=attrs.first_name,
            last_name=attrs.last_name,
            email=attrs.email,
            username=attrs.username,
            display_name=attrs.display_name,
        )

    def update_identity(self, identity_id: str, patch: Mapping[str, Any]) -> None:
        _check_patch(patch)
        if not patch:
            return
        columns = sorted(patch)
        assignments = ", ".join(f"{c} = %s" for c in columns)
        execute_query(
            self.conn,
            f"UPDATE canonical_identities SET {assignments}, updated_at = now() WHERE id = %s",
            (*(patch[c] for c in columns), identity_id),
        )

    def list_identities(self, active_only: bool = True) -> list[CanonicalIdentity]:
        query = f"SELECT {_IDENTITY_COLUMNS} FROM canonical_identities"
        if active_only:
            query += " WHERE active"
        query += " ORDER BY primary_key"
        return [_identity_from_row(r) for r in execute_query(self.conn, query)]

    # -- presence ------------------------------------------------------------

    def create_presence(
        self,
        identity_id: str,
        source_id: str,
        import_id: str,
        raw_record_ref: str | None,
        *,
        platform_user_id: str | None = None,
        active: bool = True,
        last_seen_date: datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SourcePresence:
        presence_id = str(uuid.uuid4())
        payload = payload or {}
        execute_query(
            self.conn,
            """
            INSERT INTO source_presence
                (id, identity_id, source_id, import_id, raw_record_ref,
                 platform_user_id, active, last_seen_date, payload)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            """,
            (
                presence_id,
                identity_id,
                source_id,
                import_id,
                raw_record_ref,
                platform_user_id,
                active,
                last_seen_date,
                _dump_json(payload),
            ),
        )
        return SourcePresence(
            id=presence_id,
            identity_id=identity_id,
            source_id=source_id,
            import_id=import_id,
            raw_record_ref=raw_record_ref,
            platform_user_id=platform_user_id,
            active=active,
            last_seen_date=last_seen_date,
            payload=payload,
        )

    def find_presence(self, identity_id: str, source_id: str | None = None) -> list[SourcePresence]:
        query = f"SELECT {_PRESENCE_COLUMNS} FROM source_presence WHERE identity_id = %s"
        params: tuple = (identity_id,)
        if source_id is not None:
            query += " AND source_id = %s"
            params = (identity_id, source_id)
        query += " ORDER BY created_at"
        return [_presence_from_row(r) for r in execute_query(self.conn, query, params)]

    def find_presence_by_record(self, raw_record_ref: str) -> SourcePresence | None:
        rows = execute_query(
            self.conn,
            f"SELECT {_PRESENCE_COLUMNS} FROM source_presence WHERE raw_record_ref = %s LIMIT 1",
            (raw_record_ref,),
        )
        return _presence_from_row(rows[0]) if rows else None

    # -- raw records ---------------------------------------------------------

    def save_raw_row(self, row: RawRow) -> RawRow:
        record_id = str(uuid.uuid4())
        execute_query(
            self.conn,
            """
            INSERT INTO raw_records
                (id, source_id, import_id, file_name, imported_at, primary_key,
                 raw_data, attributes)
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
            """,
            (
                record_id,
                row.source_id,
                row.import_id,
                row.file_name,
                row.imported_at,
                row.primary_key,
                _dump_json(row.values),
                _dump_json(row.attributes.as_dict()) if row.attributes else None,
            ),
        )
        stored = copy.deepcopy(row)
        stored.id = record_id
        return stored

    def update_raw_row(self, row: RawRow) -> None:
        execute_query(self.conn, _RAW_UPDATE_SQL, _raw_update_params(row))

    def update_raw_rows(self, rows: Sequence[RawRow]) -> int:
        return execute_many(self.conn, _RAW_UPDATE_SQL, [_raw_update_params(r) for r in rows])

    def list_raw_rows(
        self,
        source_id: str | None = None,
        primary_key: str | None = None,
        include_merged: bool = True,
    ) -> list[RawRow]:
        clauses: list[str] = []
        params: list[Any] = []
        if source_id is not None:
            clauses.append("source_id = %s")
            params.append(source_id)
        if primary_key is not None:
            clauses.append("primary_key = %s")
            params.append(primary_key)
        if not include_merged:
            clauses.append("NOT merged")

        query = f"SELECT {_RAW_COLUMNS} FROM raw_records"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY imported_at DESC NULLS LAST, id"
        return [_raw_row_from_row(r) for r in execute_query(self.conn, query, tuple(params))]

    def list_source_ids(self) -> list[str]:
        rows = execute_query(
            self.conn,
            """
            SELECT source_id FROM raw_records
            UNION
            SELECT source_id FROM source_presence
            ORDER BY source_id
            """,
        )
        return [r["source_id"] for r in rows]
