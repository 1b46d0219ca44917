"""PostgreSQL-backed document store (JSONB bodies, one table for all collections)."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, DateTime, MetaData, String, Table, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.core.constants import DEFAULT_STORE_TIMEOUT
from src.core.exceptions import StoreUnavailableError
from src.core.logging import get_logger
from src.store.base import CredentialStore, Document, QueryValue

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

documents = Table(
    "documents",
    metadata,
    Column("collection", String, primary_key=True),
    Column("doc_id", String, primary_key=True),
    Column("body", JSONB, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=True, index=True),
)

_LIVE = "(expires_at IS NULL OR expires_at > now())"


def _expiry(ttl_seconds: int | None) -> datetime | None:
    if ttl_seconds is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)


def _as_text(value: QueryValue) -> str:
    """Render a query value the way ``body ->> field`` renders JSON scalars."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _load_body(raw: object) -> Document:
    if isinstance(raw, str):
        return json.loads(raw)  # type: ignore[no-any-return]
    return dict(raw)  # type: ignore[call-overload]


class SqlDocumentStore(CredentialStore):
    """Async PostgreSQL storage. ``create`` relies on ON CONFLICT DO NOTHING."""

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: AsyncEngine | None = None,
        timeout: float = DEFAULT_STORE_TIMEOUT,
    ) -> None:
        super().__init__(timeout)
        if engine is None and database_url is None:
            msg = "SqlDocumentStore needs a database_url or an engine"
            raise ValueError(msg)
        self._url = database_url
        self._engine = engine

    async def connect(self) -> None:
        if self._engine is None and self._url is not None:
            self._engine = create_async_engine(
                self._url,
                echo=False,
                pool_size=10,
                max_overflow=20,
            )
            log.info("database_engine_created", host=self._url.split("@")[-1].split("?")[0])

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            log.info("database_engine_closed")

    async def init_schema(self) -> None:
        """Create the documents table if missing."""
        engine = await self._get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
            await conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS documents_body_gin "
                    "ON documents USING gin (body jsonb_path_ops)"
                )
            )
        log.info("schema_initialized")

    async def purge_expired(self) -> int:
        """Storage hygiene: drop rows past their expiry."""
        engine = await self._get_engine()
        async with engine.begin() as conn:
            result = await conn.execute(
                text("DELETE FROM documents WHERE expires_at IS NOT NULL AND expires_at <= now()")
            )
        return result.rowcount or 0

    async def _get_engine(self) -> AsyncEngine:
        if self._engine is None and self._url is not None:
            await self.connect()
        if self._engine is None:
            raise StoreUnavailableError("postgres engine is not connected")
        return self._engine

    # ── Backend hooks ────────────────────────────────────────────

    async def _get(self, collection: str, doc_id: str) -> Document | None:
        engine = await self._get_engine()
        try:
            async with engine.begin() as conn:
                row = await conn.execute(
                    text(
                        f"SELECT body FROM documents "
                        f"WHERE collection = :c AND doc_id = :id AND {_LIVE}"
                    ),
                    {"c": collection, "id": doc_id},
                )
                r = row.mappings().first()
        except SQLAlchemyError as exc:
            raise self._unavailable("get", collection, exc) from exc
        if r is None:
            return None
        return _load_body(r["body"])

    async def _set(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> None:
        engine = await self._get_engine()
        try:
            async with engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO documents (collection, doc_id, body, expires_at)
                        VALUES (:c, :id, CAST(:body AS JSONB), :exp)
                        ON CONFLICT (collection, doc_id) DO UPDATE SET
                            body = EXCLUDED.body,
                            expires_at = EXCLUDED.expires_at
                        """
                    ),
                    {
                        "c": collection,
                        "id": doc_id,
                        "body": json.dumps(doc, default=str),
                        "exp": _expiry(ttl_seconds),
                    },
                )
        except SQLAlchemyError as exc:
            raise self._unavailable("set", collection, exc) from exc

    async def _create(
        self, collection: str, doc_id: str, doc: Document, ttl_seconds: int | None
    ) -> bool:
        engine = await self._get_engine()
        try:
            async with engine.begin() as conn:
                # An expired row still occupies the key; clear it first.
                await conn.execute(
                    text(
                        "DELETE FROM documents WHERE collection = :c AND doc_id = :id "
                        "AND expires_at IS NOT NULL AND expires_at <= now()"
                    ),
                    {"c": collection, "id": doc_id},
                )
                result = await conn.execute(
                    text(
                        """
                        INSERT INTO documents (collection, doc_id, body, expires_at)
                        VALUES (:c, :id, CAST(:body AS JSONB), :exp)
                        ON CONFLICT (collection, doc_id) DO NOTHING
                        """
                    ),
                    {
                        "c": collection,
                        "id": doc_id,
                        "body": json.dumps(doc, default=str),
                        "exp": _expiry(ttl_seconds),
                    },
                )
        except SQLAlchemyError as exc:
            raise self._unavailable("create", collection, exc) from exc
        return (result.rowcount or 0) == 1

    async def _update(self, collection: str, doc_id: str, partial: Document) -> bool:
        engine = await self._get_engine()
        try:
            async with engine.begin() as conn:
                result = await conn.execute(
                    text(
                        f"UPDATE documents SET body = body || CAST(:patch AS JSONB) "
                        f"WHERE collection = :c AND doc_id = :id AND {_LIVE}"
                    ),
                    {
                        "c": collection,
                        "id": doc_id,
                        "patch": json.dumps(partial, default=str),
                    },
                )
        except SQLAlchemyError as exc:
            raise self._unavailable("update", collection, exc) from exc
        return (result.rowcount or 0) > 0

    async def _delete(self, collection: str, doc_id: str) -> None:
        engine = await self._get_engine()
        try:
            async with engine.begin() as conn:
                await conn.execute(
                    text("DELETE FROM documents WHERE collection = :c AND doc_id = :id"),
                    {"c": collection, "id": doc_id},
                )
        except SQLAlchemyError as exc:
            raise self._unavailable("delete", collection, exc) from exc

    async def _query_equals(
        self, collection: str, field: str, value: QueryValue, limit: int | None
    ) -> list[tuple[str, Document]]:
        engine = await self._get_engine()
        query = (
            f"SELECT doc_id, body FROM documents "
            f"WHERE collection = :c AND body ->> :field = :value AND {_LIVE} "
            f"ORDER BY doc_id"
        )
        params: dict[str, object] = {"c": collection, "field": field, "value": _as_text(value)}
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = limit
        try:
            async with engine.begin() as conn:
                rows = await conn.execute(text(query), params)
                found = [(r["doc_id"], _load_body(r["body"])) for r in rows.mappings().all()]
        except SQLAlchemyError as exc:
            raise self._unavailable("query_equals", collection, exc) from exc
        return found

    @staticmethod
    def _unavailable(op: str, collection: str, exc: Exception) -> StoreUnavailableError:
        log.error("store_backend_error", backend="postgres", op=op, collection=collection, error=str(exc))
        return StoreUnavailableError(f"postgres {op} failed", {"collection": collection})
