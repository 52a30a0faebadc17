from __future__ import annotations

import contextlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenwarden.logging import get_logger
from tokenwarden.storage.errors import ConstraintViolation, StoreUnavailable
from tokenwarden.storage.models import (
    AuditEvent,
    AuditEventType,
    TokenRecord,
    TokenStats,
)

_TOKEN_COLUMNS = (
    "id, token_hash, subject_id, scope, service_name, created_at, expires_at, "
    "last_used_at, request_count, revoked_at, revocation_reason"
)


class PostgresStore:
    """Postgres-backed source of truth for token records and audit events."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection, translating outages into StoreUnavailable.

        PoolTimeout and QueryCanceled are both OperationalError subclasses.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "duplicate token record", {"constraint": exc.diag.constraint_name}
            ) from exc
        except psycopg.OperationalError as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("postgres", str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the token and audit tables exist before serving requests."""

        required_tables = ["api_token", "auth_event"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> TokenRecord:
        scope = row.get("scope") or []
        if isinstance(scope, str):
            scope = json.loads(scope)
        return TokenRecord(
            id=row["id"],
            token_hash=row["token_hash"],
            subject_id=row["subject_id"],
            scope=list(scope),
            service_name=row.get("service_name"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            request_count=int(row.get("request_count") or 0),
            revoked_at=row.get("revoked_at"),
            revocation_reason=row.get("revocation_reason"),
        )

    @staticmethod
    def _row_to_event(row: Dict[str, Any]) -> AuditEvent:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return AuditEvent(
            id=row["id"],
            event_type=AuditEventType(row["event_type"]),
            token_id=row.get("token_id"),
            subject_id=row.get("subject_id"),
            service_name=row.get("service_name"),
            success=bool(row["success"]),
            error_message=row.get("error_message"),
            meta=meta,
            timestamp=row["occurred_at"],
        )

    def insert_token(self, record: TokenRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_token (id, token_hash, subject_id, scope, service_name,
                                       created_at, expires_at, request_count)
                VALUES (%s, %s, %s, %s, %s, %s, %s, 0)
                """,
                (
                    record.id,
                    record.token_hash,
                    record.subject_id,
                    json.dumps(record.scope),
                    record.service_name,
                    record.created_at,
                    record.expires_at,
                ),
            )

    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM api_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def get_token_hash(self, token_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_hash FROM api_token WHERE id = %s", (token_id,)
            ).fetchone()
        return row["token_hash"] if row else None

    def get_token_by_hash(
        self, token_hash: str, *, include_revoked: bool = False
    ) -> Optional[TokenRecord]:
        query = f"SELECT {_TOKEN_COLUMNS} FROM api_token WHERE token_hash = %s"
        if not include_revoked:
            query += " AND revoked_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (token_hash,)).fetchone()
        return self._row_to_token(row) if row else None

    def record_token_usage(self, token_hash: str, used_at: datetime) -> Optional[TokenRecord]:
        # Single-statement increment; concurrent validations may interleave but
        # the counter never moves backwards. Revoked rows are left untouched.
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE api_token
                SET last_used_at = GREATEST(COALESCE(last_used_at, %s), %s),
                    request_count = request_count + 1
                WHERE token_hash = %s AND revoked_at IS NULL
                RETURNING {_TOKEN_COLUMNS}
                """,
                (used_at, used_at, token_hash),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def revoke_token(self, token_id: str, revoked_at: datetime, reason: str) -> bool:
        """Set revocation fields once. Returns True when this call revoked the token."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE api_token
                SET revoked_at = %s, revocation_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (revoked_at, reason, token_id),
            )
            return cur.rowcount > 0

    def insert_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_event (id, event_type, token_id, subject_id, service_name,
                                        success, error_message, meta, occurred_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type.value,
                    event.token_id,
                    event.subject_id,
                    event.service_name,
                    event.success,
                    event.error_message,
                    json.dumps(event.meta) if event.meta is not None else None,
                    event.timestamp,
                ),
            )

    def list_audit_events(
        self,
        *,
        token_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if token_id is not None:
            clauses.append("token_id = %s")
            params.append(token_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(AuditEventType(event_type).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, event_type, token_id, subject_id, service_name, success,
                       error_message, meta, occurred_at
                FROM auth_event {where}
                ORDER BY occurred_at DESC
                LIMIT %s
                """,
                params,
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def token_stats(self, now: Optional[datetime] = None) -> TokenStats:
        now = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            counts = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_tokens,
                    COUNT(*) FILTER (WHERE revoked_at IS NULL AND expires_at > %s) AS active_tokens,
                    COUNT(*) FILTER (WHERE revoked_at IS NOT NULL) AS revoked_tokens,
                    COUNT(*) FILTER (WHERE expires_at <= %s) AS expired_tokens
                FROM api_token
                """,
                (now, now),
            ).fetchone()
            requests = conn.execute(
                """
                SELECT COALESCE(SUM(request_count), 0) AS total_requests
                FROM api_token
                WHERE last_used_at >= %s
                """,
                (now - timedelta(hours=24),),
            ).fetchone()
        counts = counts or {}
        return TokenStats(
            total_tokens=int(counts.get("total_tokens") or 0),
            active_tokens=int(counts.get("active_tokens") or 0),
            revoked_tokens=int(counts.get("revoked_tokens") or 0),
            expired_tokens=int(counts.get("expired_tokens") or 0),
            requests_24h=int((requests or {}).get("total_requests") or 0),
        )
