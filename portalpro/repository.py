"""Database repository for tenant-owned portal data."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple

from psycopg import Rollback
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.errors import ConflictError
from .domain.models import (
    Account,
    AccountSummary,
    Client,
    Folder,
    Invoice,
    InvoiceStatus,
    Plan,
    Portal,
    PortalFile,
    PortalStats,
    Role,
    User,
)

_ACCOUNT_COLUMNS = "id, name, plan, created_at"
_USER_COLUMNS = "id, email, name, account_id, role"
_PORTAL_COLUMNS = "id, account_id, name, slug, custom_domain, is_active, created_at, created_by_id"
_CLIENT_COLUMNS = "id, portal_id, name, email, company, accepted_at, created_at"
_FOLDER_COLUMNS = "id, portal_id, parent_id, name, created_at"
_FILE_COLUMNS = (
    "id, portal_id, folder_id, name, mime_type, size, storage_path, uploaded_by_id, created_at"
)
_INVOICE_COLUMNS = (
    "id, account_id, portal_id, client_id, number, total, status, due_date, created_at"
)


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in audit_log."""

    audit_id: int
    account_id: str | None
    portal_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


def _prefixed(columns: str, alias: str) -> str:
    return ", ".join(f"{alias}.{column.strip()}" for column in columns.split(","))


def _is_uuid(value: str) -> bool:
    """Ids come from URLs; anything that is not a UUID cannot match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PortalRepository:
    """Postgres-backed persistence for accounts, portals and their children.

    Uniqueness (portal slugs, client email per portal, invoice number per
    account, file storage paths) is enforced by constraints declared in
    ``db/schema.sql``; the insert methods here use ``ON CONFLICT DO NOTHING``
    and return ``None`` on conflict instead of checking first.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    # -- rows -------------------------------------------------------------

    def _fetch_one(self, query: str, params: tuple | list) -> tuple | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                return cur.fetchone()

    def _fetch_all(self, query: str, params: tuple | list) -> list[tuple]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                return cur.fetchall()

    def _write_one(self, query: str, params: tuple | list) -> tuple | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        return row

    # -- users and accounts ----------------------------------------------

    def get_user(self, user_id: str) -> User | None:
        row = self._fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
        return _map_user(row) if row else None

    def get_account(self, account_id: str) -> Account | None:
        if not _is_uuid(account_id):
            return None
        row = self._fetch_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,)
        )
        return _map_account(row) if row else None

    def complete_setup(
        self,
        *,
        user_id: str,
        email: str,
        user_name: str,
        account_name: str,
        plan: Plan = Plan.STARTER,
    ) -> Tuple[Account, User] | None:
        """Create an account and bind the user to it in one transaction.

        Returns ``None`` when the user is already bound to an account; the
        account insert is rolled back in that case.
        """
        result: Tuple[Account, User] | None = None
        now = datetime.now(timezone.utc)
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor(row_factory=tuple_row) as cur:
                        cur.execute(
                            """
                            INSERT INTO users (id, email, role, created_at)
                            VALUES (%s, %s, %s, %s)
                            ON CONFLICT (id) DO NOTHING
                            """,
                            (user_id, email.lower(), Role.OWNER.value, now),
                        )
                        cur.execute(
                            f"""
                            INSERT INTO accounts (id, name, plan, created_at)
                            VALUES (%s, %s, %s, %s)
                            RETURNING {_ACCOUNT_COLUMNS}
                            """,
                            (str(uuid.uuid4()), account_name, plan.value, now),
                        )
                        account_row = cur.fetchone()
                        cur.execute(
                            f"""
                            UPDATE users
                            SET name = %s, account_id = %s, role = %s
                            WHERE id = %s AND account_id IS NULL
                            RETURNING {_USER_COLUMNS}
                            """,
                            (user_name, account_row[0], Role.OWNER.value, user_id),
                        )
                        user_row = cur.fetchone()
                        if user_row is None:
                            raise Rollback()
                        result = _map_account(account_row), _map_user(user_row)
        except UniqueViolation as exc:
            raise ConflictError("email already registered to another user") from exc
        return result

    # -- portals ----------------------------------------------------------

    def insert_portal(
        self,
        *,
        account_id: str,
        name: str,
        slug: str,
        created_by_id: str,
        custom_domain: str | None = None,
    ) -> Portal | None:
        """Insert a portal, returning ``None`` when the slug is already taken."""
        row = self._write_one(
            f"""
            INSERT INTO portals (id, account_id, name, slug, custom_domain, is_active, created_at, created_by_id)
            VALUES (%s, %s, %s, %s, %s, TRUE, %s, %s)
            ON CONFLICT (slug) DO NOTHING
            RETURNING {_PORTAL_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                account_id,
                name,
                slug,
                custom_domain,
                datetime.now(timezone.utc),
                created_by_id,
            ),
        )
        return _map_portal(row) if row else None

    def get_portal(self, portal_id: str) -> Portal | None:
        if not _is_uuid(portal_id):
            return None
        row = self._fetch_one(f"SELECT {_PORTAL_COLUMNS} FROM portals WHERE id = %s", (portal_id,))
        return _map_portal(row) if row else None

    def list_portals(self, account_id: str) -> list[Portal]:
        rows = self._fetch_all(
            f"""
            SELECT {_PORTAL_COLUMNS}
            FROM portals
            WHERE account_id = %s
            ORDER BY created_at DESC
            """,
            (account_id,),
        )
        return [_map_portal(row) for row in rows]

    def portal_stats(self, portal_id: str) -> PortalStats:
        row = self._fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM clients WHERE portal_id = %s),
                (SELECT COUNT(*) FROM files WHERE portal_id = %s),
                (SELECT COUNT(*) FROM invoices WHERE portal_id = %s)
            """,
            (portal_id, portal_id, portal_id),
        )
        return PortalStats(clients=row[0], files=row[1], invoices=row[2])

    def account_summary(self, account_id: str) -> AccountSummary:
        row = self._fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM portals WHERE account_id = %s),
                (SELECT COUNT(*) FROM clients c JOIN portals p ON p.id = c.portal_id WHERE p.account_id = %s),
                (SELECT COUNT(*) FROM files f JOIN portals p ON p.id = f.portal_id WHERE p.account_id = %s),
                (SELECT COUNT(*) FROM invoices WHERE account_id = %s)
            """,
            (account_id, account_id, account_id, account_id),
        )
        return AccountSummary(portals=row[0], clients=row[1], files=row[2], invoices=row[3])

    # -- clients ----------------------------------------------------------

    def insert_client(
        self, *, portal_id: str, name: str, email: str, company: str | None
    ) -> Client | None:
        """Insert a client, returning ``None`` when the email is already invited to the portal."""
        row = self._write_one(
            f"""
            INSERT INTO clients (id, portal_id, name, email, company, accepted_at, created_at)
            VALUES (%s, %s, %s, %s, %s, NULL, %s)
            ON CONFLICT (portal_id, email) DO NOTHING
            RETURNING {_CLIENT_COLUMNS}
            """,
            (str(uuid.uuid4()), portal_id, name, email, company, datetime.now(timezone.utc)),
        )
        return _map_client(row) if row else None

    def get_client(self, client_id: str) -> Client | None:
        if not _is_uuid(client_id):
            return None
        row = self._fetch_one(f"SELECT {_CLIENT_COLUMNS} FROM clients WHERE id = %s", (client_id,))
        return _map_client(row) if row else None

    def list_clients(self, account_id: str, portal_id: str | None = None) -> list[Client]:
        clauses = ["p.account_id = %s"]
        params: list[Any] = [account_id]
        if portal_id:
            clauses.append("c.portal_id = %s")
            params.append(portal_id)
        rows = self._fetch_all(
            f"""
            SELECT {_prefixed(_CLIENT_COLUMNS, "c")}
            FROM clients c
            JOIN portals p ON p.id = c.portal_id
            WHERE {" AND ".join(clauses)}
            ORDER BY c.created_at DESC
            """,
            params,
        )
        return [_map_client(row) for row in rows]

    def activate_client(self, client_id: str, accepted_at: datetime) -> Client | None:
        """Set the acceptance timestamp once; later calls return the row unchanged."""
        row = self._write_one(
            f"""
            UPDATE clients
            SET accepted_at = %s
            WHERE id = %s AND accepted_at IS NULL
            RETURNING {_CLIENT_COLUMNS}
            """,
            (accepted_at, client_id),
        )
        if row:
            return _map_client(row)
        return self.get_client(client_id)

    # -- folders and files -----------------------------------------------

    def insert_folder(self, *, portal_id: str, parent_id: str | None, name: str) -> Folder:
        row = self._write_one(
            f"""
            INSERT INTO folders (id, portal_id, parent_id, name, created_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {_FOLDER_COLUMNS}
            """,
            (str(uuid.uuid4()), portal_id, parent_id, name, datetime.now(timezone.utc)),
        )
        return _map_folder(row)

    def get_folder(self, folder_id: str) -> Folder | None:
        if not _is_uuid(folder_id):
            return None
        row = self._fetch_one(f"SELECT {_FOLDER_COLUMNS} FROM folders WHERE id = %s", (folder_id,))
        return _map_folder(row) if row else None

    def list_folders(self, portal_id: str, parent_id: str | None) -> list[Folder]:
        rows = self._fetch_all(
            f"""
            SELECT {_FOLDER_COLUMNS}
            FROM folders
            WHERE portal_id = %s AND parent_id IS NOT DISTINCT FROM %s
            ORDER BY name
            """,
            (portal_id, parent_id),
        )
        return [_map_folder(row) for row in rows]

    def insert_file(
        self,
        *,
        portal_id: str,
        folder_id: str | None,
        name: str,
        mime_type: str,
        size: int,
        storage_path: str,
        uploaded_by_id: str,
    ) -> PortalFile:
        row = self._write_one(
            f"""
            INSERT INTO files (id, portal_id, folder_id, name, mime_type, size, storage_path, uploaded_by_id, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_FILE_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                portal_id,
                folder_id,
                name,
                mime_type,
                size,
                storage_path,
                uploaded_by_id,
                datetime.now(timezone.utc),
            ),
        )
        return _map_file(row)

    def get_file(self, file_id: str) -> PortalFile | None:
        if not _is_uuid(file_id):
            return None
        row = self._fetch_one(f"SELECT {_FILE_COLUMNS} FROM files WHERE id = %s", (file_id,))
        return _map_file(row) if row else None

    def list_files(self, portal_id: str, folder_id: str | None) -> list[PortalFile]:
        rows = self._fetch_all(
            f"""
            SELECT {_FILE_COLUMNS}
            FROM files
            WHERE portal_id = %s AND folder_id IS NOT DISTINCT FROM %s
            ORDER BY created_at DESC
            """,
            (portal_id, folder_id),
        )
        return [_map_file(row) for row in rows]

    def delete_file(self, file_id: str) -> bool:
        row = self._write_one("DELETE FROM files WHERE id = %s RETURNING id", (file_id,))
        return row is not None

    # -- invoices ---------------------------------------------------------

    def insert_invoice(
        self,
        *,
        account_id: str,
        portal_id: str,
        client_id: str,
        number: str,
        total: Decimal,
        due_date: date,
    ) -> Invoice | None:
        """Insert a draft invoice, returning ``None`` when the number is already used by the account."""
        row = self._write_one(
            f"""
            INSERT INTO invoices (id, account_id, portal_id, client_id, number, total, status, due_date, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (account_id, number) DO NOTHING
            RETURNING {_INVOICE_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                account_id,
                portal_id,
                client_id,
                number,
                total,
                InvoiceStatus.DRAFT.value,
                due_date,
                datetime.now(timezone.utc),
            ),
        )
        return _map_invoice(row) if row else None

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        if not _is_uuid(invoice_id):
            return None
        row = self._fetch_one(
            f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE id = %s", (invoice_id,)
        )
        return _map_invoice(row) if row else None

    def list_invoices(self, account_id: str, portal_id: str | None = None) -> list[Invoice]:
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]
        if portal_id:
            clauses.append("portal_id = %s")
            params.append(portal_id)
        rows = self._fetch_all(
            f"""
            SELECT {_INVOICE_COLUMNS}
            FROM invoices
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC
            """,
            params,
        )
        return [_map_invoice(row) for row in rows]

    def update_invoice_status(
        self, invoice_id: str, expected: InvoiceStatus, status: InvoiceStatus
    ) -> Invoice | None:
        """Compare-and-set the status; ``None`` when the stored status is no longer ``expected``."""
        row = self._write_one(
            f"""
            UPDATE invoices
            SET status = %s
            WHERE id = %s AND status = %s
            RETURNING {_INVOICE_COLUMNS}
            """,
            (status.value, invoice_id, expected.value),
        )
        return _map_invoice(row) if row else None

    # -- audit ------------------------------------------------------------

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        portal_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing portal activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO audit_log (account_id, portal_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, portal_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: str,
        portal_id: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries scoped to an account with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]

        if portal_id:
            clauses.append("portal_id = %s")
            params.append(portal_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, portal_id, event_type, actor, metadata, created_at
            FROM audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records = [
            AuditLogRecord(
                audit_id=row[0],
                account_id=str(row[1]) if row[1] else None,
                portal_id=str(row[2]) if row[2] else None,
                event_type=row[3],
                actor=row[4],
                metadata=row[5] or {},
                created_at=row[6],
            )
            for row in self._fetch_all(query, params)
        ]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor


def _map_account(row: tuple) -> Account:
    return Account(account_id=str(row[0]), name=row[1], plan=Plan(row[2]), created_at=row[3])


def _map_user(row: tuple) -> User:
    return User(
        user_id=str(row[0]),
        email=row[1],
        name=row[2],
        account_id=str(row[3]) if row[3] else None,
        role=Role(row[4]),
    )


def _map_portal(row: tuple) -> Portal:
    return Portal(
        portal_id=str(row[0]),
        account_id=str(row[1]),
        name=row[2],
        slug=row[3],
        custom_domain=row[4],
        is_active=row[5],
        created_at=row[6],
        created_by_id=str(row[7]),
    )


def _map_client(row: tuple) -> Client:
    return Client(
        client_id=str(row[0]),
        portal_id=str(row[1]),
        name=row[2],
        email=row[3],
        company=row[4],
        accepted_at=row[5],
        created_at=row[6],
    )


def _map_folder(row: tuple) -> Folder:
    return Folder(
        folder_id=str(row[0]),
        portal_id=str(row[1]),
        parent_id=str(row[2]) if row[2] else None,
        name=row[3],
        created_at=row[4],
    )


def _map_file(row: tuple) -> PortalFile:
    return PortalFile(
        file_id=str(row[0]),
        portal_id=str(row[1]),
        folder_id=str(row[2]) if row[2] else None,
        name=row[3],
        mime_type=row[4],
        size=row[5],
        storage_path=row[6],
        uploaded_by_id=str(row[7]),
        created_at=row[8],
    )


def _map_invoice(row: tuple) -> Invoice:
    return Invoice(
        invoice_id=str(row[0]),
        account_id=str(row[1]),
        portal_id=str(row[2]),
        client_id=str(row[3]),
        number=row[4],
        total=Decimal(row[5]),
        status=InvoiceStatus(row[6]),
        due_date=row[7],
        created_at=row[8],
    )
