from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol
from uuid import uuid4

import asyncpg

from .errors import TicketConflictError, TicketNotFoundError
from .models import AuditRecord, Ticket, TicketAuditEntry, TicketMutation
from .state import TicketStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketStore(Protocol):
    """Contract shared by the ticket store backends.

    ``update`` is atomic per ticket: it raises :class:`TicketNotFoundError`
    for unknown ids and :class:`TicketConflictError` when the stored version
    no longer matches ``expected_version``.
    """

    async def ensure_schema(self) -> None: ...

    async def create(self, ticket: Ticket, audit: AuditRecord) -> Ticket: ...

    async def get(self, ticket_id: str) -> Ticket | None: ...

    async def get_by_process_instance(self, process_instance_id: str) -> Ticket | None: ...

    async def list_tickets(self) -> list[Ticket]: ...

    async def update(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        mutation: TicketMutation,
        audit: AuditRecord,
    ) -> Ticket: ...

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]: ...


class TicketRepository:
    """PostgreSQL ticket store backed by an asyncpg pool."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        requester TEXT NOT NULL,
        assignee TEXT NULL,
        status TEXT NOT NULL,
        process_instance_id TEXT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_PROCESS_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS tickets_process_instance_idx ON tickets (process_instance_id)
    """

    _CREATE_AUDIT_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_audit_logs (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        from_status TEXT NULL,
        to_status TEXT NOT NULL,
        event TEXT NOT NULL,
        actor TEXT NOT NULL,
        note TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _TICKET_COLUMNS = (
        "id, title, description, requester, assignee, status, process_instance_id, version, created_at, updated_at"
    )

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_TICKET_FOR_UPDATE_SQL = """
    SELECT status, version
    FROM tickets
    WHERE id = $1
    FOR UPDATE
    """

    _SELECT_BY_PROCESS_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE process_instance_id = $1
    """

    _LIST_TICKETS_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    ORDER BY created_at ASC, id ASC
    """

    _UPDATE_TICKET_SQL = f"""
    UPDATE tickets
    SET status = COALESCE($3::text, status),
        process_instance_id = COALESCE($4::text, process_instance_id),
        title = COALESCE($5::text, title),
        description = COALESCE($6::text, description),
        assignee = CASE WHEN $8::boolean THEN NULL ELSE COALESCE($7::text, assignee) END,
        version = version + 1,
        updated_at = $9
    WHERE id = $1 AND version = $2
    RETURNING {_TICKET_COLUMNS}
    """

    _INSERT_AUDIT_SQL = """
    INSERT INTO ticket_audit_logs (id, ticket_id, from_status, to_status, event, actor, note, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
    """

    _SELECT_AUDIT_SQL = """
    SELECT id, ticket_id, from_status, to_status, event, actor, note, metadata, created_at
    FROM ticket_audit_logs
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_PROCESS_INDEX_SQL)
            await connection.execute(self._CREATE_AUDIT_SQL)

    async def create(self, ticket: Ticket, audit: AuditRecord) -> Ticket:
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    self._INSERT_TICKET_SQL,
                    ticket.id,
                    ticket.title,
                    ticket.description,
                    ticket.requester,
                    ticket.assignee,
                    ticket.status.value,
                    ticket.process_instance_id,
                    ticket.version,
                    ticket.created_at,
                    ticket.updated_at,
                )
                if row is None:
                    raise RuntimeError("Failed to insert ticket")
                await self._insert_audit(
                    connection,
                    ticket_id=ticket.id,
                    from_status=None,
                    to_status=ticket.status,
                    audit=audit,
                    created_at=ticket.created_at,
                )
        return self._row_to_ticket(row)

    async def get(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def get_by_process_instance(self, process_instance_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_BY_PROCESS_SQL, process_instance_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def list_tickets(self) -> list[Ticket]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._LIST_TICKETS_SQL)
        return [self._row_to_ticket(row) for row in rows]

    async def update(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        mutation: TicketMutation,
        audit: AuditRecord,
    ) -> Ticket:
        now = _utcnow()
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                current = await connection.fetchrow(self._SELECT_TICKET_FOR_UPDATE_SQL, ticket_id)
                if current is None:
                    raise TicketNotFoundError(f"Ticket {ticket_id} not found")
                if int(current["version"]) != expected_version:
                    raise TicketConflictError(
                        f"Ticket {ticket_id} changed since it was read "
                        f"(expected version {expected_version}, found {current['version']})"
                    )
                row = await connection.fetchrow(
                    self._UPDATE_TICKET_SQL,
                    ticket_id,
                    expected_version,
                    None if mutation.status is None else mutation.status.value,
                    mutation.process_instance_id,
                    mutation.title,
                    mutation.description,
                    mutation.assignee,
                    mutation.clear_assignee,
                    now,
                )
                if row is None:
                    raise TicketConflictError(f"Ticket {ticket_id} changed since it was read")
                from_status = TicketStatus(str(current["status"]))
                await self._insert_audit(
                    connection,
                    ticket_id=ticket_id,
                    from_status=from_status,
                    to_status=mutation.status or from_status,
                    audit=audit,
                    created_at=now,
                )
        return self._row_to_ticket(row)

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_AUDIT_SQL, ticket_id)
        return [self._row_to_audit(row) for row in rows]

    async def _insert_audit(
        self,
        connection: Any,
        *,
        ticket_id: str,
        from_status: TicketStatus | None,
        to_status: TicketStatus,
        audit: AuditRecord,
        created_at: datetime,
    ) -> None:
        await connection.execute(
            self._INSERT_AUDIT_SQL,
            str(uuid4()),
            ticket_id,
            None if from_status is None else from_status.value,
            to_status.value,
            audit.event_name,
            audit.actor,
            audit.note,
            json.dumps(dict(audit.metadata)),
            created_at,
        )

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any]) -> Ticket:
        assignee = row["assignee"]
        process_instance_id = row["process_instance_id"]
        return Ticket(
            id=str(row["id"]),
            title=str(row["title"]),
            description=str(row["description"]),
            requester=str(row["requester"]),
            assignee=None if assignee is None else str(assignee),
            status=TicketStatus(str(row["status"])),
            process_instance_id=None if process_instance_id is None else str(process_instance_id),
            version=int(row["version"]),
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_audit(row: Mapping[str, Any]) -> TicketAuditEntry:
        from_status = row["from_status"]
        metadata = row["metadata"] or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return TicketAuditEntry(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            from_status=TicketStatus(str(from_status)) if from_status else None,
            to_status=TicketStatus(str(row["to_status"])),
            event=str(row["event"]),
            actor=str(row["actor"]),
            note=str(row["note"]),
            metadata={str(key): str(value) for key, value in dict(metadata).items()},
            created_at=_ensure_datetime(row["created_at"]),
        )


class InMemoryTicketRepository:
    """Process-local ticket store for development and tests.

    Writes are serialized by an ``asyncio.Lock`` and every read returns a
    copy, so callers never share mutable ticket instances.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tickets: dict[str, Ticket] = {}
        self._audit: dict[str, list[TicketAuditEntry]] = {}

    async def ensure_schema(self) -> None:
        return None

    async def create(self, ticket: Ticket, audit: AuditRecord) -> Ticket:
        async with self._lock:
            if ticket.id in self._tickets:
                raise TicketConflictError(f"Ticket {ticket.id} already exists")
            self._tickets[ticket.id] = replace(ticket)
            self._audit[ticket.id] = [
                _audit_entry(ticket.id, None, ticket.status, audit, ticket.created_at)
            ]
            return replace(ticket)

    async def get(self, ticket_id: str) -> Ticket | None:
        async with self._lock:
            ticket = self._tickets.get(ticket_id)
            return None if ticket is None else replace(ticket)

    async def get_by_process_instance(self, process_instance_id: str) -> Ticket | None:
        async with self._lock:
            for ticket in self._tickets.values():
                if ticket.process_instance_id == process_instance_id:
                    return replace(ticket)
            return None

    async def list_tickets(self) -> list[Ticket]:
        async with self._lock:
            ordered = sorted(self._tickets.values(), key=lambda item: (item.created_at, item.id))
            return [replace(ticket) for ticket in ordered]

    async def update(
        self,
        ticket_id: str,
        *,
        expected_version: int,
        mutation: TicketMutation,
        audit: AuditRecord,
    ) -> Ticket:
        async with self._lock:
            current = self._tickets.get(ticket_id)
            if current is None:
                raise TicketNotFoundError(f"Ticket {ticket_id} not found")
            if current.version != expected_version:
                raise TicketConflictError(
                    f"Ticket {ticket_id} changed since it was read "
                    f"(expected version {expected_version}, found {current.version})"
                )
            now = _utcnow()
            assignee = current.assignee
            if mutation.clear_assignee:
                assignee = None
            elif mutation.assignee is not None:
                assignee = mutation.assignee
            updated = replace(
                current,
                status=mutation.status or current.status,
                process_instance_id=mutation.process_instance_id or current.process_instance_id,
                title=current.title if mutation.title is None else mutation.title,
                description=current.description if mutation.description is None else mutation.description,
                assignee=assignee,
                version=current.version + 1,
                updated_at=now,
            )
            self._tickets[ticket_id] = updated
            self._audit[ticket_id].append(_audit_entry(ticket_id, current.status, updated.status, audit, now))
            return replace(updated)

    async def get_audit_log(self, ticket_id: str) -> list[TicketAuditEntry]:
        async with self._lock:
            entries = self._audit.get(ticket_id, ())
            return [replace(entry, metadata=dict(entry.metadata)) for entry in entries]


def _audit_entry(
    ticket_id: str,
    from_status: TicketStatus | None,
    to_status: TicketStatus,
    audit: AuditRecord,
    created_at: datetime,
) -> TicketAuditEntry:
    return TicketAuditEntry(
        id=str(uuid4()),
        ticket_id=ticket_id,
        from_status=from_status,
        to_status=to_status,
        event=audit.event_name,
        actor=audit.actor,
        note=audit.note,
        metadata=dict(audit.metadata),
        created_at=created_at,
    )


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
