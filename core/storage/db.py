"""Database schema for the reconciliation engine.

Creates:
- delivery_place, item_group, product, contract: local domain entities,
  each with a UNIQUE sap_id used for upserts
- operation_report, operation_report_item: batch accounting
- sap_session: persisted Service Layer session slot
- chat_group, chat_thread: inputs of the permission cache rebuilder

Queue jobs live in Temporal, not in this database.
"""

import sqlite3
from pathlib import Path
from typing import Union

from core.config import DEFAULT_DB_PATH
from core.observability.logging import get_logger

logger = get_logger(__name__)

DbPath = Union[str, Path]


def connect(db_path: DbPath = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection with Row access and foreign keys on."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: DbPath = DEFAULT_DB_PATH) -> None:
    """Initialize all engine tables. Safe to call repeatedly."""
    conn = connect(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS delivery_place (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sap_id TEXT UNIQUE,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS item_group (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sap_id TEXT UNIQUE,
                name TEXT NOT NULL,
                display_name TEXT,
                category TEXT NOT NULL,
                minimum_profit_estimation REAL NOT NULL DEFAULT 0,
                prerequisite_contract_item_group_id INTEGER REFERENCES item_group(id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS product (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_group_id INTEGER NOT NULL REFERENCES item_group(id),
                sap_item_code TEXT NOT NULL,
                name TEXT NOT NULL,
                UNIQUE(item_group_id, sap_item_code)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS contract (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                year INTEGER NOT NULL,
                sap_id TEXT UNIQUE,
                delivery_place_id INTEGER NOT NULL REFERENCES delivery_place(id),
                proposed_delivery_place_id INTEGER REFERENCES delivery_place(id),
                item_group_id INTEGER NOT NULL REFERENCES item_group(id),
                contract_quantity REAL,
                delivered_quantity REAL,
                proposed_quantity REAL,
                start_date TEXT,
                end_date TEXT,
                sign_date TEXT,
                term_date TEXT,
                status TEXT NOT NULL,
                area_details TEXT,
                deliver_all INTEGER NOT NULL DEFAULT 0,
                remarks TEXT,
                delivery_place_comment TEXT,
                quantity_comment TEXT,
                reject_comment TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_contract_status
            ON contract(status)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS operation_report (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS operation_report_item (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_report_id INTEGER NOT NULL REFERENCES operation_report(id),
                message TEXT,
                completed INTEGER NOT NULL DEFAULT 0,
                success INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_operation_report_item_report
            ON operation_report_item(operation_report_id)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sap_session (
                slot TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                route_id TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chat_group (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                type TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chat_thread (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_group_id INTEGER NOT NULL REFERENCES chat_group(id),
                title TEXT NOT NULL
            )
        """)

        conn.commit()
        logger.debug(f"Database initialized at {db_path}")
    finally:
        conn.close()
