from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from quote_approval.core.config import get_settings
from quote_approval.core.models import Account, Quote, QuoteApprovalPolicy, QuoteState, Status
from quote_approval.engine.outcomes import VerificationResult, resolve_next_state


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


REQUEST_TERMINAL_STATUSES = {"done", "failed"}

STATUS_SELECT = """
    select
      s.id::text as id,
      s.uri,
      s.text,
      s.quote_approval_policy::text as quote_approval_policy,
      s.created_at,
      a.id::text as account_id,
      a.username as account_username,
      a.domain as account_domain,
      a.uri as account_uri,
      array(
        select m.account_id::text
        from mentions m
        where m.status_id = s.id and m.silent = false
      ) as active_mention_account_ids
    from statuses s
    join accounts a on a.id = s.account_id
"""

ACCOUNT_SELECT = """
    select
      id::text as id,
      username,
      domain,
      uri
    from accounts
"""

REQUEST_RETURNING = """
    id::text as id,
    quote_id::text as quote_id,
    expected_quoted_uri,
    prefetched_body,
    status::text as status
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    async def get_quote(self, quote_id: str) -> Quote:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    select
                      id::text as id,
                      status_id::text as status_id,
                      quoted_status_id::text as quoted_status_id,
                      approval_uri,
                      state::text as state
                    from quotes
                    where id = $1::uuid
                    """,
                    quote_id,
                )
                if not row:
                    raise RepositoryNotFoundError("quote not found")

                status = await self._fetch_status(conn, status_id=row["status_id"])
                if status is None:
                    raise RepositoryNotFoundError("quoting status not found")
                quoted_status = None
                if row["quoted_status_id"]:
                    quoted_status = await self._fetch_status(conn, status_id=row["quoted_status_id"])
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("quote not found") from exc

        return Quote(
            id=row["id"],
            status=status,
            approval_uri=row["approval_uri"],
            quoted_status=quoted_status,
            state=QuoteState(row["state"]),
        )

    async def get_status(self, status_id: str) -> Status | None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                return await self._fetch_status(conn, status_id=status_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None

    async def find_status_by_uri(self, uri: str) -> Status | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{STATUS_SELECT} where s.uri = $1", uri)
        return self._status_row_to_model(row) if row else None

    async def find_local_account(self, username: str) -> Account | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{ACCOUNT_SELECT} where domain is null and lower(username) = lower($1)", username)
        return self._account_row_to_model(row) if row else None

    async def find_account_by_uri(self, uri: str) -> Account | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{ACCOUNT_SELECT} where uri = $1", uri)
        return self._account_row_to_model(row) if row else None

    async def get_account_signing_key(self, account_id: str) -> str | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchval(
                "select private_key from accounts where id = $1::uuid and domain is null",
                account_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None

    async def save_verification_result(
        self,
        quote: Quote,
        *,
        expected_state: QuoteState,
        result: VerificationResult,
    ) -> bool:
        to_state = resolve_next_state(expected_state, result.outcome)
        attached = result.attached_quoted_status
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    update quotes
                    set
                      state = $2::quote_state,
                      quoted_status_id = coalesce($3::uuid, quoted_status_id),
                      updated_at = now()
                    where id = $1::uuid and state = $4::quote_state
                    returning id::text
                    """,
                    quote.id,
                    to_state.value,
                    attached.id if attached else None,
                    expected_state.value,
                )
                if not updated:
                    return False

                await conn.execute(
                    """
                    insert into quote_events (quote_id, event_type, actor_type, actor_id, payload)
                    values ($1::uuid, 'verification_applied', 'machine', null, $2::jsonb)
                    """,
                    quote.id,
                    json.dumps(
                        {
                            "from_state": expected_state.value,
                            "to_state": to_state.value,
                            "outcome": result.outcome.value,
                            "reason": result.reason,
                            "attached_quoted_status_id": attached.id if attached else None,
                        }
                    ),
                )
                return True

    async def enqueue_verification_request(
        self,
        *,
        quote_id: str,
        expected_quoted_uri: str | None,
        prefetched_body: str | None,
        requested_by: str | None,
    ) -> str:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    exists = await conn.fetchval("select 1 from quotes where id = $1::uuid", quote_id)
                    if not exists:
                        raise RepositoryNotFoundError("quote not found")
                    request_id = await conn.fetchval(
                        """
                        insert into quote_verification_requests (
                          quote_id,
                          expected_quoted_uri,
                          prefetched_body,
                          requested_by
                        )
                        values ($1::uuid, $2, $3, $4)
                        returning id::text
                        """,
                        quote_id,
                        expected_quoted_uri,
                        prefetched_body,
                        requested_by,
                    )
                    await conn.execute(
                        """
                        insert into quote_events (quote_id, event_type, actor_type, actor_id, payload)
                        values ($1::uuid, 'verification_requested', 'machine', $2, $3::jsonb)
                        """,
                        quote_id,
                        requested_by,
                        json.dumps({"request_id": request_id, "prefetched": prefetched_body is not None}),
                    )
                    return str(request_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("quote not found") from exc

    async def claim_verification_requests(
        self,
        *,
        locked_by: str,
        limit: int,
        lease_seconds: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 100))
        claimed: list[dict[str, Any]] = []

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    select id::text as id, quote_id::text as quote_id
                    from quote_verification_requests r
                    where r.status = 'queued'
                    order by r.created_at asc
                    limit $1
                    for update skip locked
                    """,
                    bounded_limit * 4,
                )
                seen_quotes: set[str] = set()
                for row in rows:
                    if len(claimed) >= bounded_limit or row["quote_id"] in seen_quotes:
                        continue
                    # One claimed request per quote: lock the quote row, then
                    # re-check with a fresh snapshot.
                    locked = await conn.fetchval(
                        "select 1 from quotes where id = $1::uuid for update skip locked",
                        row["quote_id"],
                    )
                    if not locked:
                        continue
                    busy = await conn.fetchval(
                        """
                        select 1
                        from quote_verification_requests
                        where quote_id = $1::uuid and status = 'claimed'
                        limit 1
                        """,
                        row["quote_id"],
                    )
                    if busy:
                        continue

                    claimed_row = await conn.fetchrow(
                        f"""
                        update quote_verification_requests
                        set
                          status = 'claimed',
                          locked_by = $2,
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          updated_at = now()
                        where id = $1::uuid and status = 'queued'
                        returning {REQUEST_RETURNING}
                        """,
                        row["id"],
                        locked_by,
                        lease_seconds,
                    )
                    if claimed_row:
                        seen_quotes.add(row["quote_id"])
                        claimed.append(self._request_row_to_dict(claimed_row))
        return claimed

    async def complete_verification_request(
        self,
        request_id: str,
        *,
        status: str,
        result_json: dict[str, Any] | None = None,
        error_json: dict[str, Any] | None = None,
    ) -> None:
        if status not in REQUEST_TERMINAL_STATUSES:
            raise RepositoryConflictError(f"invalid terminal status: {status}")

        pool = await self._get_pool()
        try:
            updated = await pool.fetchval(
                """
                update quote_verification_requests
                set
                  status = $2::verification_request_status,
                  result_json = $3::jsonb,
                  error_json = $4::jsonb,
                  lease_expires_at = null,
                  updated_at = now()
                where id = $1::uuid and status = 'claimed'
                returning id::text
                """,
                request_id,
                status,
                json.dumps(result_json) if result_json is not None else None,
                json.dumps(error_json) if error_json is not None else None,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("verification request not found") from exc
        if not updated:
            raise RepositoryConflictError("verification request is not claimed")

    async def requeue_expired_requests(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            with expired as (
              select id
              from quote_verification_requests
              where status = 'claimed'
                and lease_expires_at is not null
                and lease_expires_at <= now()
              order by lease_expires_at asc
              limit $1
              for update skip locked
            )
            update quote_verification_requests r
            set
              status = 'queued',
              locked_by = null,
              lease_expires_at = null,
              updated_at = now()
            from expired e
            where r.id = e.id
            returning r.id::text as id
            """,
            bounded_limit,
        )
        return len(rows)

    async def _fetch_status(self, conn: asyncpg.Connection, *, status_id: str) -> Status | None:
        row = await conn.fetchrow(f"{STATUS_SELECT} where s.id = $1::uuid", status_id)
        return self._status_row_to_model(row) if row else None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("QA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _account_row_to_model(row: asyncpg.Record) -> Account:
        return Account(
            id=row["id"],
            username=row["username"],
            domain=row["domain"],
            uri=row["uri"],
        )

    @staticmethod
    def _status_row_to_model(row: asyncpg.Record) -> Status:
        account = Account(
            id=row["account_id"],
            username=row["account_username"],
            domain=row["account_domain"],
            uri=row["account_uri"],
        )
        return Status(
            id=row["id"],
            account=account,
            uri=row["uri"],
            text=row["text"] or "",
            created_at=row["created_at"],
            active_mention_account_ids=frozenset(row["active_mention_account_ids"] or []),
            quote_approval_policy=PostgresRepository._coerce_policy(row["quote_approval_policy"]),
        )

    @staticmethod
    def _request_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "quote_id": row["quote_id"],
            "expected_quoted_uri": row["expected_quoted_uri"],
            "prefetched_body": row["prefetched_body"],
            "status": row["status"],
        }

    @staticmethod
    def _coerce_policy(value: Any) -> QuoteApprovalPolicy | None:
        if isinstance(value, str):
            try:
                return QuoteApprovalPolicy(value)
            except ValueError:
                return None
        return None


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
