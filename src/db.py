import json
import re
import sqlite3
from typing import Callable, List, Optional

from config.settings import DB_PATH
from src.timezone_utils import now_iso


def init_db():
    """
    Initialize the database and ensure the tables exist.
      - orders: one JSON document per order, keyed by order_number
      - settings: JSON settings blobs ("ai", "app")
      - reconciliation: co-join writes that failed after the primary order was saved
    """
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_number TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reconciliation (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_number TEXT NOT NULL,
                phase TEXT,
                reason TEXT NOT NULL,
                payload TEXT,
                created_at TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0
            )
        """)


# -------------------
# ORDERS
# -------------------
def get_all_orders() -> List[dict]:
    """Snapshot of every order, oldest first."""
    with sqlite3.connect(DB_PATH) as conn:
        cursor = conn.execute("SELECT data FROM orders ORDER BY rowid")
        return [json.loads(data) for (data,) in cursor.fetchall()]


def get_order(order_number: str) -> Optional[dict]:
    with sqlite3.connect(DB_PATH) as conn:
        row = conn.execute("SELECT data FROM orders WHERE order_number = ?", (order_number,)).fetchone()
        return json.loads(row[0]) if row else None


def save_order(order: dict) -> dict:
    """
    Insert or replace an order (last write wins). Stamps updated_at,
    and created_at for new orders.
    """
    number = order.get("order_number")
    if not number:
        raise ValueError("order_number is required")

    stamp = now_iso()
    order = dict(order)
    order.setdefault("created_at", stamp)
    order["updated_at"] = stamp

    with sqlite3.connect(DB_PATH) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO orders (order_number, data, updated_at) VALUES (?, ?, ?)",
            (number, json.dumps(order), stamp),
        )
        conn.commit()
    return order


def update_order_by_number(order_number: str, updater: Callable[[dict], dict]) -> List[dict]:
    """
    Apply `updater` (a pure dict -> dict transform) to one order and save it.
    No-op if the order doesn't exist. Returns the full updated collection.
    """
    current = get_order(order_number)
    if current is not None:
        updated = updater(current)
        updated["order_number"] = order_number
        save_order(updated)
    return get_all_orders()


def delete_order(order_number: str) -> bool:
    with sqlite3.connect(DB_PATH) as conn:
        cursor = conn.execute("DELETE FROM orders WHERE order_number = ?", (order_number,))
        conn.commit()
        return cursor.rowcount > 0


def clear_orders():
    """
    Remove all orders (testing only).
    """
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute("DELETE FROM orders")
        conn.commit()


def next_ad_hoc_number() -> str:
    """Next free ad-hoc order number: AH-0001, AH-0002, ..."""
    with sqlite3.connect(DB_PATH) as conn:
        cursor = conn.execute("SELECT order_number FROM orders WHERE order_number LIKE 'AH-%'")
        numbers = [int(m.group(1)) for (n,) in cursor.fetchall() if (m := re.match(r"^AH-(\d+)$", n))]
    return f"AH-{(max(numbers) if numbers else 0) + 1:04d}"


# -------------------
# SETTINGS
# -------------------
def load_settings(key: str) -> dict:
    """Saved settings blob for `key` ("ai" or "app"); {} when nothing is saved."""
    with sqlite3.connect(DB_PATH) as conn:
        row = conn.execute("SELECT data FROM settings WHERE key = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else {}


def save_settings(key: str, data: dict):
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO settings (key, data, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(data), now_iso()),
        )
        conn.commit()


def clear_settings():
    """
    Remove saved settings (testing only).
    """
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute("DELETE FROM settings")
        conn.commit()


# -------------------
# RECONCILIATION
# -------------------
def record_reconciliation(order_number: str, phase: Optional[str], reason: str, payload: Optional[dict] = None) -> int:
    """Flag a cross-order write that needs manual follow-up. Returns the row id."""
    with sqlite3.connect(DB_PATH) as conn:
        cursor = conn.execute(
            "INSERT INTO reconciliation (order_number, phase, reason, payload, created_at) VALUES (?, ?, ?, ?, ?)",
            (order_number, phase, reason, json.dumps(payload) if payload is not None else None, now_iso()),
        )
        conn.commit()
        return cursor.lastrowid


def get_reconciliation(include_resolved: bool = False) -> List[dict]:
    query = "SELECT id, order_number, phase, reason, payload, created_at, resolved FROM reconciliation"
    if not include_resolved:
        query += " WHERE resolved = 0"
    with sqlite3.connect(DB_PATH) as conn:
        cursor = conn.execute(query + " ORDER BY id")
        return [
            {
                "id": row_id,
                "order_number": order_number,
                "phase": phase,
                "reason": reason,
                "payload": json.loads(payload) if payload else None,
                "created_at": created_at,
                "resolved": bool(resolved),
            }
            for row_id, order_number, phase, reason, payload, created_at, resolved in cursor.fetchall()
        ]


def resolve_reconciliation(entry_id: int) -> bool:
    with sqlite3.connect(DB_PATH) as conn:
        cursor = conn.execute("UPDATE reconciliation SET resolved = 1 WHERE id = ?", (entry_id,))
        conn.commit()
        return cursor.rowcount > 0


def clear_reconciliation():
    """
    Remove reconciliation entries (testing only).
    """
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute("DELETE FROM reconciliation")
        conn.commit()
