"""Database utilities for the petcare marketplace."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterator


SCHEMA_VERSION = 1

# Money columns are declared DECIMAL_TEXT: TEXT affinity keeps the exact digits
# and the converter below hands them back as Decimal.
sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("DECIMAL_TEXT", lambda raw: Decimal(raw.decode()))


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return an autocommit SQLite connection with sensible defaults.

    Multi-statement writes must go through :func:`transaction`.
    """

    conn = sqlite3.connect(
        path,
        detect_types=sqlite3.PARSE_DECLTYPES,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block inside one ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken up front so concurrent writers queue on
    ``busy_timeout`` instead of racing. Nested use joins the outer transaction.
    """

    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL,
            api_key TEXT UNIQUE,
            first_name TEXT,
            last_name TEXT,
            phone TEXT,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_number TEXT UNIQUE NOT NULL,
            account_name TEXT NOT NULL,
            owner_user_id INTEGER NOT NULL,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(owner_user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS account_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            role TEXT NOT NULL DEFAULT 'member',
            added_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(account_id, user_id),
            FOREIGN KEY(account_id) REFERENCES accounts(id),
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS pets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            species TEXT,
            breed TEXT,
            age INTEGER,
            weight DECIMAL_TEXT,
            special_notes TEXT,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(account_id) REFERENCES accounts(id)
        );

        CREATE TABLE IF NOT EXISTS sitter_profiles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE NOT NULL,
            bio TEXT,
            hourly_rate DECIMAL_TEXT,
            servicing_radius INTEGER,
            is_verified INTEGER DEFAULT 0,
            is_available_for_bookings INTEGER DEFAULT 1,
            average_rating DECIMAL_TEXT,
            review_count INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS service_offerings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sitter_id INTEGER NOT NULL,
            service_type TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            price DECIMAL_TEXT NOT NULL,
            duration_minutes INTEGER NOT NULL,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(sitter_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS bookings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL,
            pet_id INTEGER NOT NULL,
            sitter_id INTEGER NOT NULL,
            service_offering_id INTEGER NOT NULL,
            booked_by_user_id INTEGER NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            actual_start_time TEXT,
            actual_end_time TEXT,
            total_price DECIMAL_TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'PENDING',
            notes TEXT,
            cancellation_reason TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(account_id) REFERENCES accounts(id),
            FOREIGN KEY(pet_id) REFERENCES pets(id),
            FOREIGN KEY(sitter_id) REFERENCES users(id),
            FOREIGN KEY(service_offering_id) REFERENCES service_offerings(id),
            FOREIGN KEY(booked_by_user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS discount_coupons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            coupon_code TEXT UNIQUE NOT NULL,
            discount_type TEXT NOT NULL,
            discount_value DECIMAL_TEXT NOT NULL,
            expiry_date TEXT NOT NULL,
            max_uses INTEGER,
            used_count INTEGER NOT NULL DEFAULT 0,
            active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            CHECK (max_uses IS NULL OR used_count <= max_uses)
        );

        CREATE TABLE IF NOT EXISTS applied_coupons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            coupon_id INTEGER NOT NULL,
            discount_amount DECIMAL_TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            UNIQUE(booking_id, coupon_id),
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(account_id) REFERENCES accounts(id),
            FOREIGN KEY(coupon_id) REFERENCES discount_coupons(id)
        );

        CREATE TABLE IF NOT EXISTS platform_fees (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            fee_type TEXT NOT NULL,
            value DECIMAL_TEXT NOT NULL,
            effective_date TEXT NOT NULL,
            active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS invoices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER UNIQUE NOT NULL,
            account_id INTEGER NOT NULL,
            invoice_number TEXT UNIQUE NOT NULL,
            issue_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'DRAFT',
            subtotal DECIMAL_TEXT NOT NULL,
            platform_fee DECIMAL_TEXT NOT NULL,
            discount_amount DECIMAL_TEXT NOT NULL,
            total DECIMAL_TEXT NOT NULL,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(account_id) REFERENCES accounts(id)
        );

        CREATE TABLE IF NOT EXISTS invoice_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            description TEXT NOT NULL,
            quantity INTEGER NOT NULL,
            unit_price DECIMAL_TEXT NOT NULL,
            line_total DECIMAL_TEXT NOT NULL,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS payment_methods (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL,
            card_type TEXT NOT NULL,
            last_four TEXT NOT NULL,
            expiry_month INTEGER NOT NULL,
            expiry_year INTEGER NOT NULL,
            cardholder_name TEXT,
            is_default INTEGER DEFAULT 0,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(account_id) REFERENCES accounts(id)
        );

        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            payment_method_id INTEGER,
            amount DECIMAL_TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'COMPLETED',
            transaction_id TEXT,
            processed_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id) ON DELETE CASCADE,
            FOREIGN KEY(payment_method_id) REFERENCES payment_methods(id)
        );

        CREATE TABLE IF NOT EXISTS refunds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            invoice_id INTEGER NOT NULL,
            amount DECIMAL_TEXT NOT NULL,
            reason TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(invoice_id) REFERENCES invoices(id)
        );

        CREATE TABLE IF NOT EXISTS invoice_generation_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER UNIQUE NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id)
        );

        CREATE TABLE IF NOT EXISTS email_outbox (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient TEXT NOT NULL,
            template_name TEXT NOT NULL,
            variables TEXT,
            attachments TEXT,
            status TEXT NOT NULL DEFAULT 'queued',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS reviews (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER UNIQUE NOT NULL,
            reviewer_user_id INTEGER NOT NULL,
            sitter_id INTEGER NOT NULL,
            rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
            comment TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(reviewer_user_id) REFERENCES users(id),
            FOREIGN KEY(sitter_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS sitter_work_experiences (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sitter_profile_id INTEGER NOT NULL,
            company_name TEXT NOT NULL,
            job_title TEXT NOT NULL,
            responsibilities TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            CHECK (end_date IS NULL OR end_date >= start_date),
            FOREIGN KEY(sitter_profile_id) REFERENCES sitter_profiles(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS support_tickets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_by_user_id INTEGER NOT NULL,
            booking_id INTEGER,
            assigned_admin_id INTEGER,
            subject TEXT NOT NULL,
            description TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'OPEN',
            priority TEXT NOT NULL DEFAULT 'MEDIUM',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(created_by_user_id) REFERENCES users(id),
            FOREIGN KEY(booking_id) REFERENCES bookings(id) ON DELETE SET NULL,
            FOREIGN KEY(assigned_admin_id) REFERENCES users(id)
        );
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def next_sequence(conn: sqlite3.Connection, name: str) -> int:
    """Increment and return the named counter kept in ``metadata``."""

    with transaction(conn):
        current = int(get_metadata(conn, f"seq_{name}", "0"))
        set_metadata(conn, f"seq_{name}", current + 1)
    return current + 1
