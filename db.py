"""SQLite persistence: product catalog, key/value settings and try-on run history."""

from __future__ import annotations

import json
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

DB_PATH = Path(os.environ.get("TRYON_DB_PATH", Path(__file__).parent / "tryon.db"))


def _conn() -> sqlite3.Connection:
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS products (
                id          TEXT PRIMARY KEY,
                name        TEXT NOT NULL,
                category    TEXT NOT NULL DEFAULT '',
                image_url   TEXT NOT NULL,
                description TEXT,
                price       REAL,
                currency    TEXT DEFAULT 'USD',
                is_active   INTEGER NOT NULL DEFAULT 1,
                sort_order  INTEGER NOT NULL DEFAULT 0,
                created_at  DATETIME DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS product_colors (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id  TEXT NOT NULL REFERENCES products(id) ON DELETE CASCADE,
                color_name  TEXT NOT NULL,
                color_hex   TEXT NOT NULL,
                image_url   TEXT NOT NULL,
                is_default  INTEGER NOT NULL DEFAULT 0,
                sort_order  INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS site_settings (
                key         TEXT PRIMARY KEY,
                value       TEXT,   -- JSON
                updated_at  DATETIME DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS runs (
                id            TEXT PRIMARY KEY,
                created_at    DATETIME DEFAULT (datetime('now')),
                status        TEXT DEFAULT 'pending',
                total         INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER,
                error_count   INTEGER,
                product_ids   TEXT,   -- JSON  list
                results       TEXT,   -- JSON  {product_id: {status, image_url}}
                duration      REAL
            );
            """
        )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def upsert_product(
    product_id: str,
    name: str,
    category: str,
    image_url: str,
    sort_order: int = 0,
    is_active: bool = True,
    description: Optional[str] = None,
    price: Optional[float] = None,
) -> None:
    with _conn() as con:
        con.execute(
            """
            INSERT INTO products (id, name, category, image_url, sort_order, is_active, description, price)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name, category=excluded.category, image_url=excluded.image_url,
                sort_order=excluded.sort_order, is_active=excluded.is_active,
                description=excluded.description, price=excluded.price
            """,
            (product_id, name, category, image_url, sort_order, int(is_active), description, price),
        )


def add_color_variant(
    product_id: str,
    color_name: str,
    color_hex: str,
    image_url: str,
    is_default: bool = False,
) -> None:
    with _conn() as con:
        row = con.execute(
            "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM product_colors WHERE product_id=?",
            (product_id,),
        ).fetchone()
        if is_default:
            # Only one default per product
            con.execute(
                "UPDATE product_colors SET is_default=0 WHERE product_id=?", (product_id,)
            )
        con.execute(
            "INSERT INTO product_colors (product_id, color_name, color_hex, image_url, is_default, sort_order) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (product_id, color_name, color_hex, image_url, int(is_default), row[0]),
        )


_PRODUCT_SELECT = """
    SELECT p.id, p.name, p.category, p.price, p.currency, p.description,
           COALESCE(c.image_url, p.image_url) AS image_url,
           c.color_name AS color_name
    FROM products p
    LEFT JOIN product_colors c ON c.product_id = p.id AND c.is_default = 1
"""


def list_active_products(category: Optional[str] = None) -> List[Dict]:
    """Active products in display order, resolved to their default colour variant."""
    sql = _PRODUCT_SELECT + " WHERE p.is_active = 1"
    params: tuple = ()
    if category:
        sql += " AND p.category = ?"
        params = (category,)
    sql += " ORDER BY p.sort_order ASC, p.created_at DESC"
    with _conn() as con:
        rows = con.execute(sql, params).fetchall()
    return [dict(r) for r in rows]


def get_product(product_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute(_PRODUCT_SELECT + " WHERE p.id = ?", (product_id,)).fetchone()
    return dict(row) if row else None


def list_categories() -> List[str]:
    with _conn() as con:
        rows = con.execute(
            "SELECT DISTINCT category FROM products WHERE is_active = 1 ORDER BY category"
        ).fetchall()
    return [r["category"] for r in rows]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def get_setting(key: str, default: Any = None) -> Any:
    with _conn() as con:
        row = con.execute("SELECT value FROM site_settings WHERE key=?", (key,)).fetchone()
    if not row or row["value"] is None:
        return default
    try:
        return json.loads(row["value"])
    except (json.JSONDecodeError, TypeError):
        return default


def upsert_setting(key: str, value: Any) -> None:
    with _conn() as con:
        con.execute(
            """
            INSERT INTO site_settings (key, value, updated_at) VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (key, json.dumps(value)),
        )


def list_settings() -> Dict[str, Any]:
    with _conn() as con:
        rows = con.execute("SELECT key, value FROM site_settings ORDER BY key").fetchall()
    out: Dict[str, Any] = {}
    for r in rows:
        try:
            out[r["key"]] = json.loads(r["value"]) if r["value"] is not None else None
        except json.JSONDecodeError:
            out[r["key"]] = None
    return out


# ---------------------------------------------------------------------------
# Run history
# ---------------------------------------------------------------------------

def create_run(run_id: str, product_ids: List[str]) -> None:
    # A fast run may already have been completed by the settle hook.
    with _conn() as con:
        con.execute(
            "INSERT OR IGNORE INTO runs (id, status, total, product_ids) VALUES (?, 'running', ?, ?)",
            (run_id, len(product_ids), json.dumps(product_ids)),
        )


def supersede_running_runs(except_id: Optional[str] = None) -> int:
    with _conn() as con:
        cur = con.execute(
            "UPDATE runs SET status='superseded' WHERE status IN ('pending', 'running') AND id != ?",
            (except_id or "",),
        )
        return cur.rowcount


def complete_run(
    run_id: str,
    results: Dict[str, Dict],
    success_count: int,
    error_count: int,
    duration: Optional[float],
) -> None:
    with _conn() as con:
        con.execute(
            """
            INSERT INTO runs (id, status, total, product_ids, results, success_count, error_count, duration)
            VALUES (?, 'complete', ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status        = 'complete',
                results       = excluded.results,
                success_count = excluded.success_count,
                error_count   = excluded.error_count,
                duration      = excluded.duration
            """,
            (
                run_id,
                len(results),
                json.dumps(list(results)),
                json.dumps(results),
                success_count,
                error_count,
                duration,
            ),
        )


def get_run(run_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
    if not row:
        return None
    return _deserialise(dict(row))


def list_runs(limit: int = 50) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM runs ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_deserialise(dict(r)) for r in rows]


def _deserialise(row: Dict) -> Dict:
    for key in ("product_ids", "results"):
        val = row.get(key)
        if val:
            try:
                row[key] = json.loads(val)
            except (json.JSONDecodeError, TypeError):
                row[key] = {}
    return row
