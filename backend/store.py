import logging
import os
import secrets
import sqlite3
import string
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from errors import AlreadyFinalized, InvalidState, NotFound, Unauthorized
from models import (
    MUTABLE_STATUSES,
    BillSnapshot,
    BillStatus,
    FinalTotal,
    ItemSnapshot,
    ParticipantSnapshot,
    ParticipantTotal,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(os.path.dirname(__file__), "app.db")
DB_PATH = DEFAULT_DB_PATH
BILL_CODE_ALPHABET = string.ascii_uppercase + string.digits
BILL_CODE_LENGTH = 7


def get_db_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def db_conn(immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on error.

    ``immediate`` takes the write lock before the first read, so a status guard
    and the write it protects see the same bill row.
    """
    conn = get_db_conn()
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with db_conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bills (
                id TEXT PRIMARY KEY,
                code TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                currency TEXT NOT NULL,
                payer_display_name TEXT NOT NULL,
                tax_percentage TEXT NOT NULL,
                service_percentage TEXT NOT NULL,
                tip_amount TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                finalized_at TEXT,
                total_amount TEXT,
                tax_amount TEXT,
                service_amount TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS participants (
                id TEXT PRIMARY KEY,
                bill_id TEXT NOT NULL REFERENCES bills(id),
                display_name TEXT NOT NULL,
                is_payer INTEGER NOT NULL DEFAULT 0,
                session_token TEXT NOT NULL,
                joined_at TEXT NOT NULL,
                UNIQUE (bill_id, session_token)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                bill_id TEXT NOT NULL REFERENCES bills(id),
                name TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                unit_price TEXT NOT NULL,
                total_price TEXT NOT NULL,
                notes TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS claims (
                bill_id TEXT NOT NULL REFERENCES bills(id),
                item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                participant_id TEXT NOT NULL REFERENCES participants(id),
                created_at TEXT NOT NULL,
                PRIMARY KEY (item_id, participant_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS final_totals (
                bill_id TEXT NOT NULL REFERENCES bills(id),
                participant_id TEXT NOT NULL REFERENCES participants(id),
                subtotal TEXT NOT NULL,
                tax_share TEXT NOT NULL,
                service_share TEXT NOT NULL,
                tip_share TEXT NOT NULL,
                total TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (bill_id, participant_id)
            )
            """
        )


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_bill_code() -> str:
    return "".join(secrets.choice(BILL_CODE_ALPHABET) for _ in range(BILL_CODE_LENGTH))


def generate_session_token() -> str:
    return secrets.token_urlsafe(24)


def dec_text(value: Any) -> str:
    return format(Decimal(str(value)), "f")


# Reads


def fetch_bill(conn: sqlite3.Connection, bill_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM bills WHERE id = ?", (bill_id,)).fetchone()


def require_bill(conn: sqlite3.Connection, bill_id: str) -> sqlite3.Row:
    bill = fetch_bill(conn, bill_id)
    if not bill:
        raise NotFound("Bill not found")
    return bill


def fetch_bill_id_by_code(code: str) -> Optional[str]:
    with db_conn() as conn:
        row = conn.execute("SELECT id FROM bills WHERE code = ?", (code.strip().upper(),)).fetchone()
    return row["id"] if row else None


def fetch_participants(conn: sqlite3.Connection, bill_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT id, display_name, is_payer, joined_at FROM participants WHERE bill_id = ? ORDER BY rowid",
        (bill_id,),
    ).fetchall()
    return [{**dict(row), "is_payer": bool(row["is_payer"])} for row in rows]


def fetch_participant_by_token(conn: sqlite3.Connection, bill_id: str, token: Optional[str]) -> Optional[sqlite3.Row]:
    if not token:
        return None
    return conn.execute(
        "SELECT * FROM participants WHERE bill_id = ? AND session_token = ?",
        (bill_id, token.strip()),
    ).fetchone()


def fetch_item(conn: sqlite3.Connection, bill_id: str, item_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM items WHERE id = ? AND bill_id = ?", (item_id, bill_id)).fetchone()


def fetch_claims(conn: sqlite3.Connection, bill_id: str) -> Dict[str, List[str]]:
    claims: Dict[str, List[str]] = {}
    rows = conn.execute(
        "SELECT item_id, participant_id FROM claims WHERE bill_id = ? ORDER BY rowid",
        (bill_id,),
    ).fetchall()
    for row in rows:
        claims.setdefault(row["item_id"], []).append(row["participant_id"])
    return claims


def load_bill_snapshot(conn: sqlite3.Connection, bill_id: str) -> BillSnapshot:
    bill = require_bill(conn, bill_id)
    claims = fetch_claims(conn, bill_id)
    item_rows = conn.execute("SELECT * FROM items WHERE bill_id = ? ORDER BY rowid", (bill_id,)).fetchall()
    items = [
        ItemSnapshot(
            id=row["id"],
            name=row["name"],
            quantity=row["quantity"],
            unit_price=Decimal(row["unit_price"]),
            total_price=Decimal(row["total_price"]),
            notes=row["notes"],
            claimed_by=claims.get(row["id"], []),
        )
        for row in item_rows
    ]
    participants = [
        ParticipantSnapshot(id=p["id"], display_name=p["display_name"], is_payer=p["is_payer"])
        for p in fetch_participants(conn, bill_id)
    ]
    return BillSnapshot(
        id=bill["id"],
        code=bill["code"],
        title=bill["title"],
        currency=bill["currency"],
        status=BillStatus(bill["status"]),
        tax_percentage=Decimal(bill["tax_percentage"]),
        service_percentage=Decimal(bill["service_percentage"]),
        tip_amount=Decimal(bill["tip_amount"]),
        items=items,
        participants=participants,
    )


def get_bill_snapshot(bill_id: str) -> BillSnapshot:
    with db_conn() as conn:
        return load_bill_snapshot(conn, bill_id)


def fetch_final_totals(conn: sqlite3.Connection, bill_id: str) -> List[FinalTotal]:
    rows = conn.execute(
        """
        SELECT f.*, p.display_name FROM final_totals f
        JOIN participants p ON p.id = f.participant_id
        WHERE f.bill_id = ?
        ORDER BY p.rowid
        """,
        (bill_id,),
    ).fetchall()
    return [
        FinalTotal(
            bill_id=row["bill_id"],
            participant_id=row["participant_id"],
            display_name=row["display_name"],
            subtotal=Decimal(row["subtotal"]),
            tax_share=Decimal(row["tax_share"]),
            service_share=Decimal(row["service_share"]),
            tip_share=Decimal(row["tip_share"]),
            total=Decimal(row["total"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
        for row in rows
    ]


def bill_state(bill_id: str) -> Dict[str, Any]:
    with db_conn() as conn:
        bill = require_bill(conn, bill_id)
        snapshot = load_bill_snapshot(conn, bill_id)
        participants = fetch_participants(conn, bill_id)
        final_totals = fetch_final_totals(conn, bill_id)
    state = dict(bill)
    state["items"] = [item.model_dump() for item in snapshot.items]
    state["participants"] = participants
    state["final_totals"] = [ft.model_dump() for ft in final_totals]
    return state


# Guards


def require_mutable(bill: sqlite3.Row, action: str) -> None:
    if BillStatus(bill["status"]) not in MUTABLE_STATUSES:
        raise InvalidState(f"Cannot {action} in a {bill['status'].lower()} bill")


def require_payer(conn: sqlite3.Connection, bill_id: str, token: Optional[str]) -> sqlite3.Row:
    participant = fetch_participant_by_token(conn, bill_id, token)
    if not participant or not participant["is_payer"]:
        raise Unauthorized("Only the payer can do this")
    return participant


# Writes


def insert_item(conn: sqlite3.Connection, bill_id: str, item: Dict[str, Any]) -> str:
    item_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO items (id, bill_id, name, quantity, unit_price, total_price, notes)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            item_id,
            bill_id,
            item["name"].strip(),
            int(item.get("quantity", 1)),
            dec_text(item.get("unit_price", 0)),
            dec_text(item.get("total_price", 0)),
            item.get("notes"),
        ),
    )
    return item_id


def create_bill(
    title: str,
    payer_display_name: str,
    currency: str = "USD",
    tax_percentage: Any = 0,
    service_percentage: Any = 0,
    tip_amount: Any = 0,
    items: Optional[List[Dict[str, Any]]] = None,
) -> Tuple[str, str]:
    """Create a bill with its payer participant. Returns ``(bill_id, payer_token)``."""
    items = items or []
    bill_id = str(uuid.uuid4())
    token = generate_session_token()
    created_at = utc_now()
    status = BillStatus.OPEN if items else BillStatus.DRAFT
    with db_conn() as conn:
        for attempt in range(5):
            try:
                conn.execute(
                    """
                    INSERT INTO bills (
                        id, code, title, currency, payer_display_name,
                        tax_percentage, service_percentage, tip_amount, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        bill_id,
                        generate_bill_code(),
                        title.strip(),
                        currency,
                        payer_display_name.strip(),
                        dec_text(tax_percentage),
                        dec_text(service_percentage),
                        dec_text(tip_amount),
                        status.value,
                        created_at,
                    ),
                )
                break
            except sqlite3.IntegrityError:
                if attempt == 4:
                    raise
                logger.warning("Bill code collision, retrying")
        conn.execute(
            """
            INSERT INTO participants (id, bill_id, display_name, is_payer, session_token, joined_at)
            VALUES (?, ?, ?, 1, ?, ?)
            """,
            (str(uuid.uuid4()), bill_id, payer_display_name.strip(), token, created_at),
        )
        for item in items:
            insert_item(conn, bill_id, item)
    return bill_id, token


def update_bill_settings(bill_id: str, token: Optional[str], changes: Dict[str, Any]) -> None:
    with db_conn(immediate=True) as conn:
        bill = require_bill(conn, bill_id)
        require_payer(conn, bill_id, token)
        require_mutable(bill, "update settings")
        for column in ("title", "tax_percentage", "service_percentage", "tip_amount"):
            if changes.get(column) is None:
                continue
            value = changes[column].strip() if column == "title" else dec_text(changes[column])
            conn.execute(f"UPDATE bills SET {column} = ? WHERE id = ?", (value, bill_id))


def add_item(bill_id: str, token: Optional[str], item: Dict[str, Any]) -> Dict[str, Any]:
    with db_conn(immediate=True) as conn:
        bill = require_bill(conn, bill_id)
        require_payer(conn, bill_id, token)
        require_mutable(bill, "add items")
        item_id = insert_item(conn, bill_id, item)
        if bill["status"] == BillStatus.DRAFT.value:
            conn.execute(
                "UPDATE bills SET status = ? WHERE id = ? AND status = ?",
                (BillStatus.OPEN.value, bill_id, BillStatus.DRAFT.value),
            )
        return dict(fetch_item(conn, bill_id, item_id))


def update_item(bill_id: str, item_id: str, token: Optional[str], changes: Dict[str, Any]) -> Dict[str, Any]:
    with db_conn(immediate=True) as conn:
        bill = require_bill(conn, bill_id)
        require_payer(conn, bill_id, token)
        require_mutable(bill, "update items")
        if not fetch_item(conn, bill_id, item_id):
            raise NotFound("Item not found")
        for column in ("name", "quantity", "unit_price", "total_price", "notes"):
            if changes.get(column) is None:
                continue
            value = changes[column]
            if column == "name":
                value = value.strip()
            elif column == "quantity":
                value = int(value)
            elif column in ("unit_price", "total_price"):
                value = dec_text(value)
            conn.execute(f"UPDATE items SET {column} = ? WHERE id = ?", (value, item_id))
        return dict(fetch_item(conn, bill_id, item_id))


def delete_item(bill_id: str, item_id: str, token: Optional[str]) -> None:
    with db_conn(immediate=True) as conn:
        bill = require_bill(conn, bill_id)
        require_payer(conn, bill_id, token)
        require_mutable(bill, "delete items")
        if not fetch_item(conn, bill_id, item_id):
            raise NotFound("Item not found")
        conn.execute("DELETE FROM claims WHERE item_id = ?", (item_id,))
        conn.execute("DELETE FROM items WHERE id = ?", (item_id,))


def join_bill(bill_id: str, display_name: str, token: Optional[str] = None) -> Tuple[Dict[str, Any], str]:
    """Add a participant, or rename the one already holding ``token``."""
    display_name = display_name.strip()
    with db_conn(immediate=True) as conn:
        bill = require_bill(conn, bill_id)
        require_mutable(bill, "join")
        existing = fetch_participant_by_token(conn, bill_id, token)
        if existing:
            if existing["display_name"] != display_name:
                conn.execute("UPDATE participants SET display_name = ? WHERE id = ?", (display_name, existing["id"]))
            participant_id = existing["id"]
            token = existing["session_token"]
        else:
            participant_id = str(uuid.uuid4())
            token = generate_session_token()
            conn.execute(
                """
                INSERT INTO participants (id, bill_id, display_name, is_payer, session_token, joined_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (participant_id, bill_id, display_name, token, utc_now()),
            )
        row = conn.execute(
            "SELECT id, display_name, is_payer, joined_at FROM participants WHERE id = ?",
            (participant_id,),
        ).fetchone()
    return {**dict(row), "is_payer": bool(row["is_payer"])}, token


def _claim_target(conn: sqlite3.Connection, bill_id: str, item_id: str, participant_id: str, token: Optional[str], action: str) -> None:
    bill = require_bill(conn, bill_id)
    require_mutable(bill, action)
    if not fetch_item(conn, bill_id, item_id):
        raise NotFound("Item not found")
    participant = conn.execute(
        "SELECT id FROM participants WHERE id = ? AND bill_id = ?",
        (participant_id, bill_id),
    ).fetchone()
    if not participant:
        raise NotFound("Participant not found")
    caller = fetch_participant_by_token(conn, bill_id, token)
    if not caller or (caller["id"] != participant_id and not caller["is_payer"]):
        raise Unauthorized("Token does not belong to this participant")


def claim_item(bill_id: str, item_id: str, participant_id: str, token: Optional[str]) -> bool:
    """Record a claim. Returns False when it already existed."""
    with db_conn(immediate=True) as conn:
        _claim_target(conn, bill_id, item_id, participant_id, token, "claim items")
        cur = conn.execute(
            """
            INSERT INTO claims (bill_id, item_id, participant_id, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(item_id, participant_id) DO NOTHING
            """,
            (bill_id, item_id, participant_id, utc_now()),
        )
        return cur.rowcount == 1


def unclaim_item(bill_id: str, item_id: str, participant_id: str, token: Optional[str]) -> bool:
    with db_conn(immediate=True) as conn:
        _claim_target(conn, bill_id, item_id, participant_id, token, "unclaim items")
        cur = conn.execute(
            "DELETE FROM claims WHERE item_id = ? AND participant_id = ?",
            (item_id, participant_id),
        )
        return cur.rowcount > 0


def write_final_totals(
    conn: sqlite3.Connection,
    bill_id: str,
    totals: List[ParticipantTotal],
    finalized_at: datetime,
) -> None:
    """Flip the bill to FINALIZED and store its frozen totals.

    Must run inside the caller's write transaction. The status update is
    conditional, so a bill that is already frozen is never written twice.
    """
    stamp = finalized_at.isoformat()
    total_amount = sum((t.total for t in totals), Decimal("0"))
    tax_amount = sum((t.tax_share for t in totals), Decimal("0"))
    service_amount = sum((t.service_share for t in totals), Decimal("0"))
    cur = conn.execute(
        """
        UPDATE bills
        SET status = ?, finalized_at = ?, total_amount = ?, tax_amount = ?, service_amount = ?
        WHERE id = ? AND status NOT IN (?, ?)
        """,
        (
            BillStatus.FINALIZED.value,
            stamp,
            dec_text(total_amount),
            dec_text(tax_amount),
            dec_text(service_amount),
            bill_id,
            BillStatus.FINALIZED.value,
            BillStatus.ARCHIVED.value,
        ),
    )
    if cur.rowcount != 1:
        raise AlreadyFinalized()
    conn.execute("DELETE FROM final_totals WHERE bill_id = ?", (bill_id,))
    conn.executemany(
        """
        INSERT INTO final_totals (
            bill_id, participant_id, subtotal, tax_share, service_share, tip_share, total, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                bill_id,
                t.participant_id,
                dec_text(t.subtotal),
                dec_text(t.tax_share),
                dec_text(t.service_share),
                dec_text(t.tip_share),
                dec_text(t.total),
                stamp,
            )
            for t in totals
        ],
    )
