from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any

from .drift import QuoteSnapshot
from .integrity import FormField
from .parameters import PriceParameter, PriceSetting

SCHEMA = """
CREATE TABLE IF NOT EXISTS price_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    formula TEXT NOT NULL DEFAULT '',
    payload TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS form_fields (
    field_code TEXT PRIMARY KEY,
    label TEXT NOT NULL DEFAULT '',
    field_type TEXT NOT NULL DEFAULT 'text',
    options TEXT NOT NULL DEFAULT '[]',
    is_active INTEGER NOT NULL DEFAULT 1,
    position INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS quotes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    price_setting_id INTEGER,
    form_data TEXT NOT NULL DEFAULT '{}',
    stored_price REAL,
    warning_hidden INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (price_setting_id) REFERENCES price_settings(id)
);
"""

DEFAULT_FORM_FIELDS = [
    {
        "field_code": "size",
        "label": "Size",
        "field_type": "select",
        "options": [
            {"option_code": "small", "option_label": "Small"},
            {"option_code": "medium", "option_label": "Medium"},
            {"option_code": "large", "option_label": "Large"},
        ],
    },
    {"field_code": "quantity", "label": "Quantity", "field_type": "number", "options": []},
    {
        "field_code": "extras",
        "label": "Extras",
        "field_type": "multiselect",
        "options": [
            {"option_code": "gift_wrap", "option_label": "Gift wrap"},
            {"option_code": "express", "option_label": "Express delivery"},
        ],
    },
]

DEFAULT_SETTING = {
    "name": "Standard pricing",
    "formula": "base_price * size_factor * quantity + extras_cost",
    "parameters": [
        {"code": "base_price", "name": "Base price", "kind": "fixed", "fixed_value": 10},
        {
            "code": "size_factor",
            "name": "Size factor",
            "kind": "form_lookup",
            "form_field_code": "size",
            "lookup_table": {"small": 1, "medium": 1.5, "large": 2},
        },
        {"code": "quantity", "name": "Quantity", "kind": "form_lookup", "form_field_code": "quantity"},
        {
            "code": "extras_cost",
            "name": "Extras",
            "kind": "form_lookup",
            "form_field_code": "extras",
            "lookup_table": {"gift_wrap": 5, "express": 15},
        },
    ],
}


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    with closing(connect(db_path)) as conn, conn:
        conn.executescript(SCHEMA)
        migrate_price_settings_schema(conn)
        seed_form_fields(conn)
        seed_default_setting(conn)


def migrate_price_settings_schema(conn: sqlite3.Connection) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(price_settings)").fetchall()}
    if "version" not in columns:
        conn.execute("ALTER TABLE price_settings ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_price_settings_active
        ON price_settings(is_active)
        """
    )


def seed_form_fields(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT field_code FROM form_fields LIMIT 1").fetchone()
    if row is not None:
        return
    for position, form_field in enumerate(DEFAULT_FORM_FIELDS, start=1):
        conn.execute(
            "INSERT INTO form_fields(field_code, label, field_type, options, position) VALUES (?, ?, ?, ?, ?)",
            (
                form_field["field_code"],
                form_field["label"],
                form_field["field_type"],
                json.dumps(form_field["options"]),
                position,
            ),
        )


def seed_default_setting(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT id FROM price_settings LIMIT 1").fetchone()
    if row is not None:
        return
    setting = PriceSetting.from_dict(DEFAULT_SETTING)
    conn.execute(
        "INSERT INTO price_settings(name, version, formula, payload, is_active) VALUES (?, 1, ?, ?, 1)",
        (setting.name, setting.formula, _parameters_payload(setting.parameters)),
    )


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _parameters_payload(parameters: list[PriceParameter]) -> str:
    return json_dumps([parameter.to_dict() for parameter in parameters])


def _setting_from_row(row: sqlite3.Row) -> PriceSetting:
    return PriceSetting(
        id=row["id"],
        name=row["name"],
        version=row["version"],
        formula=row["formula"],
        is_active=bool(row["is_active"]),
        parameters=[PriceParameter.from_dict(item) for item in json.loads(row["payload"])],
    )


def _quote_from_row(row: sqlite3.Row) -> QuoteSnapshot:
    return QuoteSnapshot(
        quote_id=row["id"],
        price_setting_id=row["price_setting_id"],
        form_data=json.loads(row["form_data"]),
        stored_price=row["stored_price"],
        warning_hidden=bool(row["warning_hidden"]),
    )


class SqliteRepository:
    """Price setting store, form template service and quote store on one SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)

    def _connect(self) -> closing[sqlite3.Connection]:
        return closing(connect(self.db_path))

    def get_setting(self, setting_id: int) -> PriceSetting | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM price_settings WHERE id = ?", (setting_id,)).fetchone()
        return _setting_from_row(row) if row else None

    def get_active_setting(self) -> PriceSetting | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM price_settings WHERE is_active = 1 ORDER BY version DESC, id DESC LIMIT 1"
            ).fetchone()
        return _setting_from_row(row) if row else None

    def list_settings(self) -> list[PriceSetting]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM price_settings ORDER BY version DESC, id DESC").fetchall()
        return [_setting_from_row(row) for row in rows]

    def create_setting(self, setting: PriceSetting) -> PriceSetting:
        with self._connect() as conn, conn:
            version = conn.execute("SELECT COALESCE(MAX(version), 0) + 1 FROM price_settings").fetchone()[0]
            cursor = conn.execute(
                "INSERT INTO price_settings(name, version, formula, payload, is_active) VALUES (?, ?, ?, ?, 0)",
                (setting.name, version, setting.formula, _parameters_payload(setting.parameters)),
            )
            setting_id = int(cursor.lastrowid)
        return self.get_setting(setting_id)

    def update_setting(self, setting_id: int, setting: PriceSetting) -> PriceSetting:
        with self._connect() as conn, conn:
            cursor = conn.execute(
                """
                UPDATE price_settings
                SET name = ?, formula = ?, payload = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (setting.name, setting.formula, _parameters_payload(setting.parameters), setting_id),
            )
            updated = cursor.rowcount
        if updated == 0:
            raise LookupError(f"Price setting {setting_id} not found")
        return self.get_setting(setting_id)

    def activate_setting(self, setting_id: int) -> PriceSetting:
        with self._connect() as conn, conn:
            exists = conn.execute("SELECT id FROM price_settings WHERE id = ?", (setting_id,)).fetchone()
            if exists is None:
                raise LookupError(f"Price setting {setting_id} not found")
            conn.execute("UPDATE price_settings SET is_active = 0 WHERE id != ?", (setting_id,))
            conn.execute(
                "UPDATE price_settings SET is_active = 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (setting_id,),
            )
        return self.get_setting(setting_id)

    def create_new_version(self, setting_id: int) -> PriceSetting:
        source = self.get_setting(setting_id)
        if source is None:
            raise LookupError(f"Price setting {setting_id} not found")
        return self.create_setting(source)

    def delete_setting(self, setting_id: int) -> bool:
        with self._connect() as conn, conn:
            cursor = conn.execute("DELETE FROM price_settings WHERE id = ? AND is_active = 0", (setting_id,))
            deleted = cursor.rowcount
        return deleted > 0

    def get_active_field_catalog(self) -> list[FormField]:
        return [FormField.from_dict(item) for item in self.list_form_fields()]

    def list_form_fields(self, include_inactive: bool = False) -> list[dict[str, Any]]:
        query = "SELECT * FROM form_fields"
        if not include_inactive:
            query += " WHERE is_active = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY position, field_code").fetchall()
        return [
            {
                "field_code": row["field_code"],
                "label": row["label"],
                "field_type": row["field_type"],
                "options": json.loads(row["options"]),
                "is_active": bool(row["is_active"]),
            }
            for row in rows
        ]

    def set_field_active(self, field_code: str, is_active: bool) -> bool:
        with self._connect() as conn, conn:
            cursor = conn.execute(
                "UPDATE form_fields SET is_active = ? WHERE field_code = ?", (1 if is_active else 0, field_code)
            )
            updated = cursor.rowcount
        return updated > 0

    def get_quote(self, quote_id: int) -> QuoteSnapshot | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
        return _quote_from_row(row) if row else None

    def create_quote(
        self, form_data: dict[str, Any], price_setting_id: int | None, stored_price: float | None
    ) -> QuoteSnapshot:
        with self._connect() as conn, conn:
            cursor = conn.execute(
                "INSERT INTO quotes(price_setting_id, form_data, stored_price) VALUES (?, ?, ?)",
                (price_setting_id, json_dumps(form_data), stored_price),
            )
            quote_id = int(cursor.lastrowid)
        return self.get_quote(quote_id)

    def save_quote(self, quote: QuoteSnapshot) -> QuoteSnapshot:
        if quote.quote_id is None:
            return self.create_quote(dict(quote.form_data), quote.price_setting_id, quote.stored_price)
        with self._connect() as conn, conn:
            conn.execute(
                """
                UPDATE quotes
                SET price_setting_id = ?, form_data = ?, stored_price = ?, warning_hidden = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (
                    quote.price_setting_id,
                    json_dumps(dict(quote.form_data)),
                    quote.stored_price,
                    1 if quote.warning_hidden else 0,
                    quote.quote_id,
                ),
            )
        return self.get_quote(quote.quote_id)
