"""Core orchestration logic for the petcare marketplace."""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import secrets
import sqlite3
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from petcare.config import load_settings

from .database import get_connection, initialize_database, next_sequence, transaction
from .errors import (
    AuthenticationError,
    AuthorizationError,
    BookingClosedError,
    BookingNotCompletedError,
    BookingNotFoundError,
    BusinessRuleError,
    ConflictError,
    CouponAlreadyAppliedError,
    CouponNotEligibleError,
    CouponNotFoundError,
    DuplicateInvoiceError,
    IllegalStatusTransitionError,
    InvalidAmountError,
    InvoiceNotFoundError,
    NoActiveFeeError,
    NotFoundError,
    PdfRenderError,
    ValidationError,
)
from .money import (
    DISCOUNT_TYPES,
    FIXED_AMOUNT,
    PERCENTAGE,
    ZERO,
    compute_coupon_discount,
    compute_invoice_amounts,
    compute_invoice_totals,
    quantize,
    to_decimal,
)
from .notifications import Attachment, EmailDispatcher, OutboxEmailDispatcher
from .pdf import render_invoice_pdf
from .transitions import (
    ADMIN,
    BOOKING_STATUSES,
    BOOKING_TERMINAL,
    CANCELLED,
    CLIENT,
    COMPLETED,
    CONFIRMED,
    DRAFT,
    IN_PROGRESS,
    INVOICE_FINAL,
    PAID,
    PARTIALLY_PAID,
    PENDING,
    REFUNDED,
    ROLES,
    SENT,
    SITTER,
    assert_booking_transition,
    assert_invoice_transition,
)

logger = logging.getLogger(__name__)

SERVICE_TYPES = ("WALKING", "SITTING", "DAYCARE", "BOARDING", "GROOMING", "TRAINING")
ACTIVE_BOOKING_STATUSES = (PENDING, CONFIRMED, IN_PROGRESS)
TICKET_STATUSES = ("OPEN", "IN_PROGRESS", "RESOLVED", "CLOSED")
TICKET_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
SUBJECT_MAX_LENGTH = 100


class PetcareSystem:
    """High level façade that exposes application level behaviours.

    Callers are expected to have authenticated the actor already; operations
    that depend on who is acting take an explicit ``actor_role``.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        settings: Mapping[str, Any] | None = None,
        email_dispatcher: EmailDispatcher | None = None,
        pdf_renderer: Callable[..., bytes] | None = None,
        clock: Callable[[], dt.datetime] | None = None,
        create_schema: bool = True,
    ) -> None:
        self.settings = load_settings(settings)
        self.conn = get_connection(db_path)
        if create_schema:
            initialize_database(self.conn)
        self.email_dispatcher = email_dispatcher or OutboxEmailDispatcher(
            self.conn, sender=self.settings["EMAIL_SENDER"]
        )
        self.pdf_renderer = pdf_renderer or render_invoice_pdf
        self._clock = clock or dt.datetime.now

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 390000)
        return f"pbkdf2_sha256${salt}${digest.hex()}"

    def _verify_password(self, stored: str, provided: str) -> bool:
        algorithm, salt, hex_digest = stored.split("$")
        candidate = hashlib.pbkdf2_hmac("sha256", provided.encode(), salt.encode(), 390000)
        return secrets.compare_digest(candidate.hex(), hex_digest)

    def _now(self) -> dt.datetime:
        return self._clock().replace(microsecond=0)

    def _timestamp(self) -> str:
        return self._now().isoformat(timespec="seconds")

    def _parse_datetime(self, value: str | dt.datetime | dt.date, field: str) -> dt.datetime:
        if isinstance(value, dt.datetime):
            parsed = value
        elif isinstance(value, dt.date):
            # a bare date means the end of that day
            parsed = dt.datetime.combine(value, dt.time(23, 59, 59))
        else:
            try:
                parsed = dt.datetime.fromisoformat(str(value))
            except ValueError:
                raise ValidationError(
                    f"{field} must be an ISO 8601 date or datetime", details={"field": field}
                ) from None
            if len(str(value)) == 10:
                parsed = parsed.replace(hour=23, minute=59, second=59)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
        return parsed.replace(microsecond=0)

    def _parse_date(self, value: str | dt.date, field: str) -> dt.date:
        if isinstance(value, dt.datetime):
            return value.date()
        if isinstance(value, dt.date):
            return value
        try:
            return dt.date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"{field} must be an ISO date", details={"field": field}) from None

    def _update_row(self, table: str, row_id: int, changes: Mapping[str, Any]) -> None:
        if not changes:
            raise ValidationError("Nothing to update")
        assignments = ", ".join(f"{column} = ?" for column in changes)
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?", (*changes.values(), row_id)
        )

    def _count_active_bookings(self, column: str, value: int) -> int:
        placeholders = ",".join("?" for _ in ACTIVE_BOOKING_STATUSES)
        return self.conn.execute(
            f"SELECT COUNT(id) AS total FROM bookings WHERE {column} = ? AND status IN ({placeholders})",
            (value, *ACTIVE_BOOKING_STATUSES),
        ).fetchone()["total"]

    # ------------------------------------------------------------------
    # Authentication & users
    # ------------------------------------------------------------------
    def register_user(
        self,
        *,
        email: str,
        password: str,
        role: str,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = None,
    ) -> dict:
        """Create a user; clients also get an account they own."""

        role = (role or "").lower()
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role}", details={"allowed": list(ROLES)})
        if not email or "@" not in email:
            raise ValidationError("A valid email address is required")
        if not password or len(password) < 8:
            raise ValidationError("Password must be at least 8 characters long")
        password_hash = self._hash_password(password)
        api_key = secrets.token_hex(16)
        try:
            with transaction(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO users(email, password_hash, role, api_key, first_name, last_name, phone)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (email.strip().lower(), password_hash, role, api_key, first_name, last_name, phone),
                )
                user_id = cur.lastrowid
                if role == CLIENT:
                    name = " ".join(part for part in (first_name, last_name) if part) or email
                    self.create_account(owner_user_id=user_id, account_name=f"{name}'s account")
        except sqlite3.IntegrityError:
            raise ConflictError("Email is already registered", details={"email": email}) from None
        logger.info("Registered %s user %s", role, user_id)
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return row

    def login(self, *, email: str, password: str) -> dict:
        row = self.conn.execute(
            "SELECT * FROM users WHERE email = ? AND is_active = 1", (email.strip().lower(),)
        ).fetchone()
        if not row or not self._verify_password(row["password_hash"], password):
            logger.warning("Failed login for %s", email)
            raise AuthenticationError("Invalid credentials")
        return {"user_id": row["id"], "api_key": row["api_key"], "role": row["role"]}

    def authenticate(self, api_key: str | None, allowed: Sequence[str] | None = None) -> dict:
        """Resolve an API key to an active user, optionally restricted to roles."""

        user = None
        if api_key:
            user = self.conn.execute(
                "SELECT * FROM users WHERE api_key = ? AND is_active = 1", (api_key,)
            ).fetchone()
        if not user:
            raise AuthenticationError("A valid API key is required")
        if allowed is not None and user["role"] not in allowed:
            raise AuthorizationError("User does not have permission to perform this action")
        return user

    def list_users(self, *, role: str | None = None) -> list[dict]:
        """Return active users, optionally filtered by role."""

        params: list[Any] = []
        where = " WHERE is_active = 1"
        if role is not None:
            where += " AND role = ?"
            params.append(role)
        return self.conn.execute(
            "SELECT * FROM users" + where + " ORDER BY role, last_name, first_name",
            params,
        ).fetchall()

    def update_user(
        self,
        user_id: int,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = None,
    ) -> dict:
        """Change profile fields; ``None`` leaves a field as it is."""

        self.get_user(user_id)
        changes = {
            column: value.strip()
            for column, value in (("first_name", first_name), ("last_name", last_name), ("phone", phone))
            if value is not None
        }
        self._update_row("users", user_id, changes)
        logger.info("Updated user %s", user_id)
        return self.get_user(user_id)

    def set_user_active(self, user_id: int, *, active: bool) -> dict:
        """Enable or disable a user.

        Disabled users can no longer log in or authenticate. A sitter with
        bookings still pending, confirmed or in progress stays enabled, and a
        disabled sitter stops taking bookings.
        """

        user = self.get_user(user_id)
        with transaction(self.conn):
            if not active and user["role"] == SITTER:
                busy = self._count_active_bookings("sitter_id", user_id)
                if busy:
                    raise BusinessRuleError(
                        "Sitter still has active bookings",
                        details={"user_id": user_id, "active_bookings": busy},
                    )
                self.conn.execute(
                    "UPDATE sitter_profiles SET is_available_for_bookings = 0 WHERE user_id = ?",
                    (user_id,),
                )
            self.conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (int(active), user_id))
        logger.info("User %s %s", user_id, "activated" if active else "deactivated")
        return self.get_user(user_id)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def create_account(self, *, owner_user_id: int, account_name: str) -> dict:
        if not account_name or not account_name.strip():
            raise ValidationError("Account name is required")
        self.get_user(owner_user_id)
        with transaction(self.conn):
            year = self._now().year
            sequence = next_sequence(self.conn, f"account_{year}")
            cur = self.conn.execute(
                """
                INSERT INTO accounts(account_number, account_name, owner_user_id)
                VALUES (?, ?, ?)
                """,
                (f"ACC-{year}-{sequence:06d}", account_name.strip(), owner_user_id),
            )
            account_id = cur.lastrowid
            self.conn.execute(
                "INSERT INTO account_users(account_id, user_id, role) VALUES (?, ?, ?)",
                (account_id, owner_user_id, "owner"),
            )
        return self.get_account(account_id)

    def get_account(self, account_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if not row:
            raise NotFoundError("Account not found", details={"account_id": account_id})
        return row

    def get_account_for_user(self, user_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT accounts.* FROM accounts
            JOIN account_users ON account_users.account_id = accounts.id
            WHERE account_users.user_id = ? AND accounts.is_active = 1
            ORDER BY accounts.id
            LIMIT 1
            """,
            (user_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("User has no account", details={"user_id": user_id})
        return row

    def add_account_member(self, *, account_id: int, user_id: int, role: str = "member") -> dict:
        self.get_account(account_id)
        self.get_user(user_id)
        try:
            self.conn.execute(
                "INSERT INTO account_users(account_id, user_id, role) VALUES (?, ?, ?)",
                (account_id, user_id, role),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("User is already a member of this account") from None
        return self.conn.execute(
            "SELECT * FROM account_users WHERE account_id = ? AND user_id = ?",
            (account_id, user_id),
        ).fetchone()

    def is_account_member(self, account_id: int, user_id: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM account_users WHERE account_id = ? AND user_id = ?",
            (account_id, user_id),
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Pets
    # ------------------------------------------------------------------
    def add_pet(
        self,
        *,
        account_id: int,
        name: str,
        species: str | None = None,
        breed: str | None = None,
        age: int | None = None,
        weight: Decimal | str | None = None,
        special_notes: str | None = None,
    ) -> dict:
        self.get_account(account_id)
        if not name or not name.strip():
            raise ValidationError("Pet name is required")
        if age is not None and age < 0:
            raise ValidationError("Pet age cannot be negative")
        cur = self.conn.execute(
            """
            INSERT INTO pets(account_id, name, species, breed, age, weight, special_notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account_id,
                name.strip(),
                species,
                breed,
                age,
                to_decimal(weight, field="weight") if weight is not None else None,
                special_notes,
                self._timestamp(),
            ),
        )
        return self.get_pet(cur.lastrowid)

    def update_pet(
        self,
        pet_id: int,
        *,
        name: str | None = None,
        species: str | None = None,
        breed: str | None = None,
        age: int | None = None,
        weight: Decimal | str | None = None,
        special_notes: str | None = None,
    ) -> dict:
        pet = self.get_pet(pet_id)
        if not pet["is_active"]:
            raise ConflictError("Inactive pets cannot be modified", details={"pet_id": pet_id})
        if name is not None and not name.strip():
            raise ValidationError("Pet name is required")
        if age is not None and age < 0:
            raise ValidationError("Pet age cannot be negative")
        changes: dict[str, Any] = {
            column: value
            for column, value in (
                ("name", name.strip() if name is not None else None),
                ("species", species),
                ("breed", breed),
                ("age", age),
                ("special_notes", special_notes),
            )
            if value is not None
        }
        if weight is not None:
            changes["weight"] = to_decimal(weight, field="weight")
        self._update_row("pets", pet_id, changes)
        return self.get_pet(pet_id)

    def deactivate_pet(self, pet_id: int) -> dict:
        """Retire a pet; its booking history is kept but it cannot be booked again."""

        with transaction(self.conn):
            self.get_pet(pet_id)
            busy = self._count_active_bookings("pet_id", pet_id)
            if busy:
                raise BusinessRuleError(
                    "Pet still has active bookings",
                    details={"pet_id": pet_id, "active_bookings": busy},
                )
            self.conn.execute("UPDATE pets SET is_active = 0 WHERE id = ?", (pet_id,))
        logger.info("Deactivated pet %s", pet_id)
        return self.get_pet(pet_id)

    def get_pet(self, pet_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        if not row:
            raise NotFoundError("Pet not found", details={"pet_id": pet_id})
        return row

    def list_pets(self, *, account_id: int, include_inactive: bool = False) -> list[dict]:
        where = "account_id = ?"
        if not include_inactive:
            where += " AND is_active = 1"
        return self.conn.execute(
            f"SELECT * FROM pets WHERE {where} ORDER BY name", (account_id,)
        ).fetchall()

    # ------------------------------------------------------------------
    # Sitters & service offerings
    # ------------------------------------------------------------------
    def _require_sitter(self, user_id: int) -> dict:
        user = self.get_user(user_id)
        if user["role"] != SITTER:
            raise ValidationError("User is not a sitter", details={"user_id": user_id})
        if not user["is_active"]:
            raise ValidationError("Sitter is not active", details={"user_id": user_id})
        return user

    def create_sitter_profile(
        self,
        *,
        user_id: int,
        bio: str | None = None,
        hourly_rate: Decimal | str | None = None,
        servicing_radius: int | None = None,
    ) -> dict:
        self._require_sitter(user_id)
        rate = to_decimal(hourly_rate, field="hourly_rate") if hourly_rate is not None else None
        if rate is not None and rate < 0:
            raise InvalidAmountError("Hourly rate cannot be negative")
        try:
            self.conn.execute(
                """
                INSERT INTO sitter_profiles(user_id, bio, hourly_rate, servicing_radius)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, bio, rate, servicing_radius),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("Sitter already has a profile", details={"user_id": user_id}) from None
        return self.get_sitter_profile(user_id)

    def get_sitter_profile(self, user_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM sitter_profiles WHERE user_id = ?", (user_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Sitter profile not found", details={"user_id": user_id})
        return row

    def update_sitter_profile(
        self,
        user_id: int,
        *,
        bio: str | None = None,
        hourly_rate: Decimal | str | None = None,
        servicing_radius: int | None = None,
        is_available_for_bookings: bool | None = None,
    ) -> dict:
        profile = self.get_sitter_profile(user_id)
        changes: dict[str, Any] = {}
        if bio is not None:
            changes["bio"] = bio
        if hourly_rate is not None:
            rate = to_decimal(hourly_rate, field="hourly_rate")
            if rate < 0:
                raise InvalidAmountError("Hourly rate cannot be negative")
            changes["hourly_rate"] = rate
        if servicing_radius is not None:
            if servicing_radius < 0:
                raise ValidationError("Servicing radius cannot be negative")
            changes["servicing_radius"] = servicing_radius
        if is_available_for_bookings is not None:
            if is_available_for_bookings:
                self._require_sitter(user_id)
            changes["is_available_for_bookings"] = int(is_available_for_bookings)
        self._update_row("sitter_profiles", profile["id"], changes)
        return self.get_sitter_profile(user_id)

    def verify_sitter_profile(self, user_id: int, *, verified: bool = True) -> dict:
        profile = self.get_sitter_profile(user_id)
        self._update_row("sitter_profiles", profile["id"], {"is_verified": int(verified)})
        logger.info("Sitter %s verification set to %s", user_id, verified)
        return self.get_sitter_profile(user_id)

    def list_sitters(self, *, available_only: bool = True) -> list[dict]:
        where = "users.is_active = 1"
        if available_only:
            where += " AND sitter_profiles.is_available_for_bookings = 1"
        return self.conn.execute(
            f"""
            SELECT sitter_profiles.*, users.first_name, users.last_name, users.email
            FROM sitter_profiles
            JOIN users ON users.id = sitter_profiles.user_id
            WHERE {where}
            ORDER BY sitter_profiles.average_rating DESC, users.last_name
            """
        ).fetchall()

    def create_service_offering(
        self,
        *,
        sitter_id: int,
        service_type: str,
        name: str,
        price: Decimal | str,
        duration_minutes: int,
        description: str | None = None,
    ) -> dict:
        self._require_sitter(sitter_id)
        service_type = (service_type or "").upper()
        if service_type not in SERVICE_TYPES:
            raise ValidationError(
                f"Unknown service type {service_type}", details={"allowed": list(SERVICE_TYPES)}
            )
        if not name or not name.strip():
            raise ValidationError("Service name is required")
        price = to_decimal(price, field="price")
        if price <= 0:
            raise InvalidAmountError("Price must be greater than zero")
        if not duration_minutes or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        cur = self.conn.execute(
            """
            INSERT INTO service_offerings(sitter_id, service_type, name, description, price, duration_minutes)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (sitter_id, service_type, name.strip(), description, quantize(price), duration_minutes),
        )
        return self.get_service_offering(cur.lastrowid)

    def get_service_offering(self, offering_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM service_offerings WHERE id = ?", (offering_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Service offering not found", details={"offering_id": offering_id})
        return row

    def list_service_offerings(
        self, *, sitter_id: int | None = None, active_only: bool = True
    ) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if sitter_id is not None:
            conditions.append("sitter_id = ?")
            params.append(sitter_id)
        if active_only:
            conditions.append("is_active = 1")
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return self.conn.execute(
            "SELECT * FROM service_offerings" + where + " ORDER BY name", params
        ).fetchall()

    def update_service_offering(
        self,
        offering_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        price: Decimal | str | None = None,
        duration_minutes: int | None = None,
    ) -> dict:
        """Edit an offering. Bookings already made keep the price and length they were booked at."""

        self.get_service_offering(offering_id)
        changes: dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Service name is required")
            changes["name"] = name.strip()
        if description is not None:
            changes["description"] = description
        if price is not None:
            price = to_decimal(price, field="price")
            if price <= 0:
                raise InvalidAmountError("Price must be greater than zero")
            changes["price"] = quantize(price)
        if duration_minutes is not None:
            if duration_minutes <= 0:
                raise ValidationError("Duration must be a positive number of minutes")
            changes["duration_minutes"] = duration_minutes
        self._update_row("service_offerings", offering_id, changes)
        logger.info("Updated service offering %s", offering_id)
        return self.get_service_offering(offering_id)

    def deactivate_service_offering(self, offering_id: int) -> dict:
        self.get_service_offering(offering_id)
        self.conn.execute(
            "UPDATE service_offerings SET is_active = 0 WHERE id = ?", (offering_id,)
        )
        return self.get_service_offering(offering_id)

    # ------------------------------------------------------------------
    # Booking lifecycle
    # ------------------------------------------------------------------
    def _has_schedule_conflict(
        self, *, sitter_id: int, start_time: dt.datetime, end_time: dt.datetime
    ) -> bool:
        placeholders = ",".join("?" for _ in ACTIVE_BOOKING_STATUSES)
        row = self.conn.execute(
            f"""
            SELECT COUNT(id) AS total
            FROM bookings
            WHERE sitter_id = ?
              AND status IN ({placeholders})
              AND NOT (
                    end_time <= ?
                    OR start_time >= ?
              )
            """,
            (sitter_id, *ACTIVE_BOOKING_STATUSES, start_time.isoformat(), end_time.isoformat()),
        ).fetchone()
        return bool(row and row["total"])

    def create_booking(
        self,
        *,
        account_id: int,
        pet_id: int,
        sitter_id: int,
        service_offering_id: int,
        start_time: str | dt.datetime,
        booked_by_user_id: int,
        notes: str | None = None,
    ) -> dict:
        """Book a sitter's service for a pet.

        ``end_time`` and ``total_price`` are snapshotted from the offering at
        creation and never recomputed.
        """

        self.get_account(account_id)
        pet = self.get_pet(pet_id)
        if pet["account_id"] != account_id or not pet["is_active"]:
            raise ValidationError("Pet does not belong to this account", details={"pet_id": pet_id})
        if not self.is_account_member(account_id, booked_by_user_id):
            raise AuthorizationError("User cannot book for this account")
        self._require_sitter(sitter_id)
        offering = self.get_service_offering(service_offering_id)
        if offering["sitter_id"] != sitter_id:
            raise ValidationError("Service offering does not belong to this sitter")
        if not offering["is_active"]:
            raise ValidationError("Service offering is not available")

        start_dt = self._parse_datetime(start_time, "start_time")
        lead = dt.timedelta(minutes=self.settings["BOOKING_MIN_LEAD_MINUTES"])
        if start_dt < self._now() + lead:
            raise ValidationError(
                "Bookings must be scheduled in advance",
                details={"min_lead_minutes": self.settings["BOOKING_MIN_LEAD_MINUTES"]},
            )
        end_dt = start_dt + dt.timedelta(minutes=offering["duration_minutes"])

        with transaction(self.conn):
            if self._has_schedule_conflict(sitter_id=sitter_id, start_time=start_dt, end_time=end_dt):
                raise ConflictError("Sitter is not available at the requested time")
            pending = self.conn.execute(
                "SELECT COUNT(id) AS total FROM bookings WHERE booked_by_user_id = ? AND status = ?",
                (booked_by_user_id, PENDING),
            ).fetchone()["total"]
            if pending >= self.settings["MAX_PENDING_BOOKINGS"]:
                raise BusinessRuleError(
                    "Maximum number of pending bookings reached",
                    details={"limit": self.settings["MAX_PENDING_BOOKINGS"]},
                )
            timestamp = self._timestamp()
            cur = self.conn.execute(
                """
                INSERT INTO bookings(
                    account_id, pet_id, sitter_id, service_offering_id, booked_by_user_id,
                    start_time, end_time, total_price, status, notes, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    pet_id,
                    sitter_id,
                    service_offering_id,
                    booked_by_user_id,
                    start_dt.isoformat(),
                    end_dt.isoformat(),
                    offering["price"],
                    PENDING,
                    notes,
                    timestamp,
                    timestamp,
                ),
            )
        booking_id = cur.lastrowid
        logger.info("Created booking %s for pet %s with sitter %s", booking_id, pet_id, sitter_id)
        return self.get_booking(booking_id)

    def get_booking(self, booking_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise BookingNotFoundError(
                f"Booking {booking_id} not found", details={"booking_id": booking_id}
            )
        return row

    def list_bookings(
        self,
        *,
        account_id: int | None = None,
        sitter_id: int | None = None,
        status: str | None = None,
    ) -> list[dict]:
        """Return bookings filtered by account, sitter and/or status."""

        conditions: list[str] = []
        params: list[Any] = []
        if account_id is not None:
            conditions.append("bookings.account_id = ?")
            params.append(account_id)
        if sitter_id is not None:
            conditions.append("bookings.sitter_id = ?")
            params.append(sitter_id)
        if status is not None:
            conditions.append("bookings.status = ?")
            params.append(status.upper())
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return self.conn.execute(
            """
            SELECT bookings.*, pets.name AS pet_name, service_offerings.name AS service_name
            FROM bookings
            JOIN pets ON pets.id = bookings.pet_id
            JOIN service_offerings ON service_offerings.id = bookings.service_offering_id
            {where}
            ORDER BY bookings.start_time DESC, bookings.id DESC
            """.format(where=where),
            params,
        ).fetchall()

    def update_booking_notes(self, *, booking_id: int, notes: str | None) -> dict:
        booking = self.get_booking(booking_id)
        if booking["status"] in BOOKING_TERMINAL:
            raise BookingClosedError(
                f"Booking in status {booking['status']} cannot be modified",
                details={"booking_id": booking_id},
            )
        self.conn.execute(
            "UPDATE bookings SET notes = ?, updated_at = ? WHERE id = ?",
            (notes, self._timestamp(), booking_id),
        )
        return self.get_booking(booking_id)

    def _write_booking_status(
        self, booking: dict, status: str, *, reason: str | None = None
    ) -> None:
        timestamp = self._timestamp()
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, timestamp]
        if status == IN_PROGRESS:
            assignments.append("actual_start_time = ?")
            params.append(timestamp)
        elif status == COMPLETED:
            assignments.append("actual_end_time = ?")
            params.append(timestamp)
        elif status == CANCELLED:
            assignments.append("cancellation_reason = ?")
            params.append(reason)
        cur = self.conn.execute(
            f"UPDATE bookings SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            (*params, booking["id"], booking["status"]),
        )
        if cur.rowcount != 1:
            # another writer moved it first
            current = self.get_booking(booking["id"])
            raise IllegalStatusTransitionError("Booking", current["status"], status)

    def update_booking_status(
        self,
        *,
        booking_id: int,
        status: str,
        actor_role: str,
        reason: str | None = None,
    ) -> dict:
        """Move a booking through its lifecycle.

        Completing a booking generates its invoice. Invoice generation failures
        are logged and queued for retry; they never undo the completion.
        """

        status = (status or "").upper()
        if status not in BOOKING_STATUSES:
            raise ValidationError(
                f"Unknown booking status {status}", details={"allowed": list(BOOKING_STATUSES)}
            )
        with transaction(self.conn):
            booking = self.get_booking(booking_id)
            try:
                assert_booking_transition(booking["status"], status, actor_role)
            except (IllegalStatusTransitionError, AuthorizationError):
                logger.warning(
                    "Rejected booking %s transition %s -> %s by %s",
                    booking_id,
                    booking["status"],
                    status,
                    actor_role,
                )
                raise
            if status == CANCELLED and not (reason and reason.strip()):
                raise ValidationError("A cancellation reason is required")
            self._write_booking_status(booking, status, reason=reason.strip() if reason else None)
        logger.info("Booking %s moved %s -> %s", booking_id, booking["status"], status)

        updated = self.get_booking(booking_id)
        if status == COMPLETED:
            updated["invoice_generation"] = self._generate_invoice_after_completion(booking_id)
        return updated

    def delete_booking(self, *, booking_id: int) -> dict:
        """Delete a booking that never got going, soft-cancel a confirmed one.

        Returns ``{"deleted": bool, "booking": row-or-None}``.
        """

        with transaction(self.conn):
            booking = self.get_booking(booking_id)
            status = booking["status"]
            if status == IN_PROGRESS:
                raise BusinessRuleError("A booking in progress cannot be deleted")
            if status in BOOKING_TERMINAL:
                raise BookingClosedError(
                    f"Booking in status {status} is kept for the record",
                    details={"booking_id": booking_id},
                )
            has_coupons = self.conn.execute(
                "SELECT 1 FROM applied_coupons WHERE booking_id = ?", (booking_id,)
            ).fetchone()
            if status == PENDING and not has_coupons:
                self.conn.execute("DELETE FROM bookings WHERE id = ?", (booking_id,))
                logger.info("Deleted pending booking %s", booking_id)
                return {"deleted": True, "booking": None}
            self._write_booking_status(booking, CANCELLED, reason="Deleted by user")
        logger.info("Soft-cancelled booking %s on delete", booking_id)
        return {"deleted": False, "booking": self.get_booking(booking_id)}

    # ------------------------------------------------------------------
    # Discount coupons
    # ------------------------------------------------------------------
    def create_coupon(
        self,
        *,
        coupon_code: str,
        discount_type: str,
        discount_value: Decimal | str,
        expiry_date: str | dt.datetime | dt.date,
        max_uses: int | None = None,
        active: bool = True,
    ) -> dict:
        code = (coupon_code or "").strip().upper()
        if not code:
            raise ValidationError("Coupon code is required")
        discount_type = (discount_type or "").upper()
        if discount_type not in DISCOUNT_TYPES:
            raise ValidationError(
                f"Unknown discount type {discount_type}", details={"allowed": list(DISCOUNT_TYPES)}
            )
        value = to_decimal(discount_value, field="discount_value")
        if value <= 0:
            raise InvalidAmountError("Discount value must be greater than zero")
        if discount_type == PERCENTAGE and value > 100:
            raise InvalidAmountError("Percentage discounts cannot exceed 100")
        if max_uses is not None and max_uses < 1:
            raise ValidationError("max_uses must be at least 1 when set")
        expiry = self._parse_datetime(expiry_date, "expiry_date")
        try:
            cur = self.conn.execute(
                """
                INSERT INTO discount_coupons(
                    coupon_code, discount_type, discount_value, expiry_date, max_uses, active
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (code, discount_type, value, expiry.isoformat(), max_uses, int(active)),
            )
        except sqlite3.IntegrityError:
            raise ConflictError("Coupon code already exists", details={"coupon_code": code}) from None
        logger.info("Created coupon %s", code)
        return self.get_coupon(cur.lastrowid)

    def get_coupon(self, coupon_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM discount_coupons WHERE id = ?", (coupon_id,)
        ).fetchone()
        if not row:
            raise CouponNotFoundError("Coupon not found", details={"coupon_id": coupon_id})
        return row

    def get_coupon_by_code(self, coupon_code: str) -> dict:
        code = (coupon_code or "").strip().upper()
        row = self.conn.execute(
            "SELECT * FROM discount_coupons WHERE coupon_code = ?", (code,)
        ).fetchone()
        if not row:
            raise CouponNotFoundError(f"Coupon {code} not found", details={"coupon_code": code})
        return row

    def list_coupons(self, *, active_only: bool = False) -> list[dict]:
        where = " WHERE active = 1" if active_only else ""
        return self.conn.execute(
            "SELECT * FROM discount_coupons" + where + " ORDER BY id DESC"
        ).fetchall()

    def deactivate_coupon(self, coupon_id: int) -> dict:
        self.get_coupon(coupon_id)
        self.conn.execute("UPDATE discount_coupons SET active = 0 WHERE id = ?", (coupon_id,))
        return self.get_coupon(coupon_id)

    def _check_coupon_eligibility(self, coupon: dict) -> None:
        code = coupon["coupon_code"]
        if not coupon["active"]:
            raise CouponNotEligibleError(code, "inactive")
        if self._now() >= dt.datetime.fromisoformat(coupon["expiry_date"]):
            raise CouponNotEligibleError(code, "expired")
        if coupon["max_uses"] is not None and coupon["used_count"] >= coupon["max_uses"]:
            raise CouponNotEligibleError(code, "exhausted")

    def _booking_discount_total(self, booking_id: int, total_price: Decimal) -> Decimal:
        rows = self.conn.execute(
            "SELECT discount_amount FROM applied_coupons WHERE booking_id = ?", (booking_id,)
        ).fetchall()
        applied = sum((row["discount_amount"] for row in rows), ZERO)
        return quantize(min(applied, total_price))

    def validate_coupon(self, *, coupon_code: str, booking_id: int | None = None) -> dict:
        """Preview whether a coupon could be applied, without applying it."""

        coupon = self.get_coupon_by_code(coupon_code)
        result: dict[str, Any] = {"coupon_code": coupon["coupon_code"], "valid": True, "reason": None}
        try:
            self._check_coupon_eligibility(coupon)
        except CouponNotEligibleError as exc:
            result.update(valid=False, reason=exc.reason)
        if booking_id is not None:
            booking = self.get_booking(booking_id)
            result["discount_amount"] = compute_coupon_discount(
                booking["total_price"], coupon["discount_type"], coupon["discount_value"]
            )
        return result

    def apply_coupon(self, *, booking_id: int, account_id: int, coupon_code: str) -> dict:
        """Redeem a coupon against a booking.

        The usage counter is bumped with a compare-and-increment and the
        applied-coupon row is inserted under a unique (booking, coupon) key, both
        inside one immediate transaction, so neither a limited coupon nor a
        single booking can be redeemed twice.
        """

        booking = self.get_booking(booking_id)
        coupon = self.get_coupon_by_code(coupon_code)
        code = coupon["coupon_code"]
        # a repeat redemption is reported as such even once the coupon has lapsed
        existing = self.conn.execute(
            "SELECT id FROM applied_coupons WHERE booking_id = ? AND coupon_id = ?",
            (booking_id, coupon["id"]),
        ).fetchone()
        if existing:
            raise CouponAlreadyAppliedError(
                f"Coupon {code} was already applied to booking {booking_id}",
                details={"booking_id": booking_id, "coupon_code": code},
            )
        try:
            self._check_coupon_eligibility(coupon)
        except CouponNotEligibleError as exc:
            logger.warning("Coupon %s rejected for booking %s: %s", code, booking_id, exc.reason)
            raise
        if booking["account_id"] != account_id:
            raise ValidationError("Booking does not belong to this account", details={"booking_id": booking_id})
        if booking["status"] == CANCELLED or self._find_invoice_for_booking(booking_id):
            raise BookingClosedError(
                "Coupons cannot be applied to a cancelled or invoiced booking",
                details={"booking_id": booking_id},
            )

        discount = compute_coupon_discount(
            booking["total_price"], coupon["discount_type"], coupon["discount_value"]
        )
        applied_at = self._timestamp()
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                UPDATE discount_coupons
                SET used_count = used_count + 1
                WHERE id = ?
                  AND active = 1
                  AND expiry_date > ?
                  AND (max_uses IS NULL OR used_count < max_uses)
                """,
                (coupon["id"], applied_at),
            )
            if cur.rowcount != 1:
                self._check_coupon_eligibility(self.get_coupon(coupon["id"]))
                raise CouponNotEligibleError(code, "exhausted")
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO applied_coupons(booking_id, account_id, coupon_id, discount_amount, applied_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (booking_id, account_id, coupon["id"], discount, applied_at),
                )
            except sqlite3.IntegrityError:
                raise CouponAlreadyAppliedError(
                    f"Coupon {code} was already applied to booking {booking_id}",
                    details={"booking_id": booking_id, "coupon_code": code},
                ) from None
        applied = self.conn.execute(
            "SELECT * FROM applied_coupons WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
        total_discount = self._booking_discount_total(booking_id, booking["total_price"])
        logger.info("Applied coupon %s to booking %s for %s", code, booking_id, discount)
        return {
            "applied_coupon": applied,
            "discount_amount": discount,
            "booking_total": quantize(max(ZERO, booking["total_price"] - total_discount)),
        }

    def list_applied_coupons(
        self,
        *,
        booking_id: int | None = None,
        account_id: int | None = None,
        coupon_id: int | None = None,
    ) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("applied_coupons.booking_id", booking_id),
            ("applied_coupons.account_id", account_id),
            ("applied_coupons.coupon_id", coupon_id),
        ):
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return self.conn.execute(
            """
            SELECT applied_coupons.*, discount_coupons.coupon_code
            FROM applied_coupons
            JOIN discount_coupons ON discount_coupons.id = applied_coupons.coupon_id
            {where}
            ORDER BY applied_coupons.applied_at, applied_coupons.id
            """.format(where=where),
            params,
        ).fetchall()

    # ------------------------------------------------------------------
    # Platform fees
    # ------------------------------------------------------------------
    def create_platform_fee(
        self,
        *,
        value: Decimal | str,
        fee_type: str = PERCENTAGE,
        effective_date: str | None = None,
        active: bool = True,
        deactivate_previous: bool = False,
    ) -> dict:
        """Add a fee schedule entry. Percentage values are fractions (0.10 = 10%)."""

        fee_type = (fee_type or "").upper()
        if fee_type not in (PERCENTAGE, FIXED_AMOUNT):
            raise ValidationError(f"Unknown fee type {fee_type}")
        value = to_decimal(value, field="value")
        if value < 0:
            raise InvalidAmountError("Fee cannot be negative")
        if fee_type == PERCENTAGE and value > 1:
            raise InvalidAmountError("Fee percentage must be between 0 and 1")
        with transaction(self.conn):
            if deactivate_previous:
                self.conn.execute("UPDATE platform_fees SET active = 0 WHERE active = 1")
            cur = self.conn.execute(
                """
                INSERT INTO platform_fees(fee_type, value, effective_date, active, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    fee_type,
                    value,
                    effective_date or self._now().date().isoformat(),
                    int(active),
                    self._timestamp(),
                ),
            )
        logger.info("Created %s platform fee %s", fee_type, value)
        return self.conn.execute(
            "SELECT * FROM platform_fees WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def get_active_platform_fee(self) -> dict:
        """Return the most recently created active fee."""

        row = self.conn.execute(
            "SELECT * FROM platform_fees WHERE active = 1 ORDER BY id DESC LIMIT 1"
        ).fetchone()
        if not row:
            raise NoActiveFeeError("No active platform fee is configured")
        return row

    def list_platform_fees(self) -> list[dict]:
        return self.conn.execute("SELECT * FROM platform_fees ORDER BY id DESC").fetchall()

    def deactivate_platform_fee(self, fee_id: int) -> dict:
        cur = self.conn.execute("UPDATE platform_fees SET active = 0 WHERE id = ?", (fee_id,))
        if cur.rowcount != 1:
            raise NotFoundError("Platform fee not found", details={"fee_id": fee_id})
        return self.conn.execute("SELECT * FROM platform_fees WHERE id = ?", (fee_id,)).fetchone()

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def _generate_invoice_number(self, issue_date: dt.date) -> str:
        sequence = next_sequence(self.conn, f"invoice_{issue_date.year}")
        return f"INV-{issue_date.year}-{sequence:05d}"

    def _find_invoice_for_booking(self, booking_id: int) -> dict | None:
        return self.conn.execute(
            "SELECT * FROM invoices WHERE booking_id = ?", (booking_id,)
        ).fetchone()

    def _get_invoice_row(self, invoice_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        if not row:
            raise InvoiceNotFoundError(
                f"Invoice {invoice_id} not found", details={"invoice_id": invoice_id}
            )
        return row

    def _amount_paid(self, invoice_id: int) -> Decimal:
        rows = self.conn.execute(
            "SELECT amount FROM payments WHERE invoice_id = ? AND status = 'COMPLETED'",
            (invoice_id,),
        ).fetchall()
        return quantize(sum((row["amount"] for row in rows), ZERO))

    def _set_invoice_status(self, invoice: dict, status: str) -> None:
        assert_invoice_transition(invoice["status"], status)
        cur = self.conn.execute(
            "UPDATE invoices SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (status, self._timestamp(), invoice["id"], invoice["status"]),
        )
        if cur.rowcount != 1:
            current = self._get_invoice_row(invoice["id"])
            raise IllegalStatusTransitionError("Invoice", current["status"], status)
        invoice["status"] = status

    def generate_invoice(
        self, *, booking_id: int, notes: str | None = None, auto_send: bool = False
    ) -> dict:
        """Create the one invoice of a completed booking.

        The subtotal is the booking's locked-in price, the fee comes from the
        latest active fee schedule and the discount is the sum of coupons
        applied to the booking.
        """

        booking = self.get_booking(booking_id)
        if booking["status"] != COMPLETED:
            raise BookingNotCompletedError(
                f"Only completed bookings can be invoiced (booking is {booking['status']})",
                details={"booking_id": booking_id, "status": booking["status"]},
            )
        if self._find_invoice_for_booking(booking_id):
            raise DuplicateInvoiceError(
                f"Booking {booking_id} already has an invoice", details={"booking_id": booking_id}
            )
        fee = self.get_active_platform_fee()
        subtotal = booking["total_price"]
        discount = self._booking_discount_total(booking_id, subtotal)
        if fee["fee_type"] == PERCENTAGE:
            amounts = compute_invoice_amounts(subtotal, fee["value"], discount)
        else:
            amounts = compute_invoice_totals(subtotal, fee["value"], discount)
        offering = self.get_service_offering(booking["service_offering_id"])
        issue_date = self._now().date()
        due_date = issue_date + dt.timedelta(days=self.settings["INVOICE_DUE_DAYS"])

        with transaction(self.conn):
            invoice_number = self._generate_invoice_number(issue_date)
            timestamp = self._timestamp()
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO invoices(
                        booking_id, account_id, invoice_number, issue_date, due_date, status,
                        subtotal, platform_fee, discount_amount, total, notes, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        booking_id,
                        booking["account_id"],
                        invoice_number,
                        issue_date.isoformat(),
                        due_date.isoformat(),
                        DRAFT,
                        amounts.subtotal,
                        amounts.platform_fee,
                        amounts.discount_amount,
                        amounts.total,
                        notes,
                        timestamp,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError:
                raise DuplicateInvoiceError(
                    f"Booking {booking_id} already has an invoice",
                    details={"booking_id": booking_id},
                ) from None
            invoice_id = cur.lastrowid
            self.conn.execute(
                """
                INSERT INTO invoice_items(invoice_id, description, quantity, unit_price, line_total)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    invoice_id,
                    f"{offering['name']} - Booking #{booking_id}",
                    1,
                    amounts.subtotal,
                    amounts.subtotal,
                ),
            )
        logger.info(
            "Generated invoice %s for booking %s: subtotal=%s fee=%s discount=%s total=%s",
            invoice_number,
            booking_id,
            amounts.subtotal,
            amounts.platform_fee,
            amounts.discount_amount,
            amounts.total,
        )
        if auto_send:
            return self.send_invoice(invoice_id)
        return self.get_invoice(invoice_id)

    def _queue_invoice_generation(self, booking_id: int, error: str) -> None:
        timestamp = self._timestamp()
        self.conn.execute(
            """
            INSERT INTO invoice_generation_queue(booking_id, attempts, last_error, status, created_at, updated_at)
            VALUES (?, 1, ?, 'pending', ?, ?)
            ON CONFLICT(booking_id) DO UPDATE SET
                attempts = attempts + 1,
                last_error = excluded.last_error,
                status = 'pending',
                updated_at = excluded.updated_at
            """,
            (booking_id, error, timestamp, timestamp),
        )

    def _generate_invoice_after_completion(self, booking_id: int) -> dict:
        try:
            invoice = self.generate_invoice(
                booking_id=booking_id,
                notes="Generated automatically on booking completion",
                auto_send=self.settings["INVOICE_AUTO_SEND"],
            )
        except Exception as exc:
            logger.exception("Invoice generation failed for completed booking %s", booking_id)
            self._queue_invoice_generation(booking_id, str(exc))
            return {"status": "queued", "error": str(exc)}
        return {"status": "generated", "invoice_id": invoice["id"]}

    def list_pending_invoice_generations(self) -> list[dict]:
        return self.conn.execute(
            "SELECT * FROM invoice_generation_queue WHERE status = 'pending' ORDER BY id"
        ).fetchall()

    def retry_pending_invoices(self) -> dict:
        """Retry invoice generation for completed bookings that failed earlier."""

        succeeded: list[int] = []
        failed: list[dict] = []
        for entry in self.list_pending_invoice_generations():
            booking_id = entry["booking_id"]
            try:
                self.generate_invoice(
                    booking_id=booking_id,
                    notes="Generated automatically on booking completion",
                    auto_send=self.settings["INVOICE_AUTO_SEND"],
                )
            except DuplicateInvoiceError:
                pass
            except Exception as exc:
                logger.exception("Retry of invoice generation failed for booking %s", booking_id)
                self._queue_invoice_generation(booking_id, str(exc))
                failed.append({"booking_id": booking_id, "error": str(exc)})
                continue
            self.conn.execute(
                "UPDATE invoice_generation_queue SET status = 'done', updated_at = ? WHERE id = ?",
                (self._timestamp(), entry["id"]),
            )
            succeeded.append(booking_id)
        return {"succeeded": succeeded, "failed": failed}

    def get_invoice(self, invoice_id: int) -> dict:
        row = self._get_invoice_row(invoice_id)
        row["items"] = self.conn.execute(
            "SELECT * FROM invoice_items WHERE invoice_id = ? ORDER BY id",
            (invoice_id,),
        ).fetchall()
        row["payments"] = self.conn.execute(
            "SELECT * FROM payments WHERE invoice_id = ? ORDER BY id",
            (invoice_id,),
        ).fetchall()
        row["refunds"] = self.list_refunds(invoice_id=invoice_id)
        row["amount_paid"] = self._amount_paid(invoice_id)
        row["balance_due"] = quantize(max(ZERO, row["total"] - row["amount_paid"]))
        return row

    def get_invoice_by_number(self, invoice_number: str) -> dict:
        row = self.conn.execute(
            "SELECT id FROM invoices WHERE invoice_number = ?", (invoice_number,)
        ).fetchone()
        if not row:
            raise InvoiceNotFoundError(
                f"Invoice {invoice_number} not found", details={"invoice_number": invoice_number}
            )
        return self.get_invoice(row["id"])

    def get_invoice_for_booking(self, booking_id: int) -> dict:
        row = self._find_invoice_for_booking(booking_id)
        if not row:
            raise InvoiceNotFoundError(
                f"Booking {booking_id} has no invoice", details={"booking_id": booking_id}
            )
        return self.get_invoice(row["id"])

    def list_invoices(
        self,
        *,
        account_id: int | None = None,
        status: Sequence[str] | None = None,
    ) -> list[dict]:
        """Return invoices optionally filtered by account or status."""

        params: list[Any] = []
        conditions: list[str] = []
        if account_id is not None:
            conditions.append("invoices.account_id = ?")
            params.append(account_id)
        if status:
            placeholders = ",".join("?" for _ in status)
            conditions.append(f"invoices.status IN ({placeholders})")
            params.extend(value.upper() for value in status)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        query = (
            """
            SELECT invoices.*, bookings.start_time, bookings.sitter_id
            FROM invoices
            JOIN bookings ON bookings.id = invoices.booking_id
            {where}
            ORDER BY issue_date DESC, invoices.id DESC
            """.format(where=where)
        )
        return self.conn.execute(query, params).fetchall()

    def list_overdue_invoices(self, *, as_of: dt.date | None = None) -> list[dict]:
        """Invoices still awaiting payment after their due date."""

        as_of = as_of or self._now().date()
        return self.conn.execute(
            """
            SELECT * FROM invoices
            WHERE status IN (?, ?) AND due_date < ?
            ORDER BY due_date
            """,
            (SENT, PARTIALLY_PAID, as_of.isoformat()),
        ).fetchall()

    def update_invoice(
        self,
        *,
        invoice_id: int,
        due_date: str | dt.date | None = None,
        notes: str | None = None,
    ) -> dict:
        if due_date is None and notes is None:
            raise ValidationError("Nothing to update")
        invoice = self._get_invoice_row(invoice_id)
        if invoice["status"] in INVOICE_FINAL:
            raise ConflictError(
                f"Invoice in status {invoice['status']} cannot be modified",
                details={"invoice_id": invoice_id, "status": invoice["status"]},
            )
        assignments = ["updated_at = ?"]
        params: list[Any] = [self._timestamp()]
        if due_date is not None:
            try:
                parsed = dt.date.fromisoformat(str(due_date))
            except ValueError:
                raise ValidationError("due_date must be an ISO date") from None
            if parsed < dt.date.fromisoformat(invoice["issue_date"]):
                raise ValidationError("Due date cannot be before the issue date")
            assignments.append("due_date = ?")
            params.append(parsed.isoformat())
        if notes is not None:
            assignments.append("notes = ?")
            params.append(notes)
        self.conn.execute(
            f"UPDATE invoices SET {', '.join(assignments)} WHERE id = ?",
            (*params, invoice_id),
        )
        logger.info("Updated invoice %s", invoice["invoice_number"])
        return self.get_invoice(invoice_id)

    def _deliver_invoice(self, invoice: dict) -> str:
        """Render and email an invoice; failures are logged, never raised."""

        try:
            account = self.get_account(invoice["account_id"])
            owner = self.get_user(account["owner_user_id"])
            pdf_bytes = self.pdf_renderer(invoice, platform_name=self.settings["PLATFORM_NAME"])
            self.email_dispatcher.send(
                owner["email"],
                "invoice_sent",
                {
                    "invoice_number": invoice["invoice_number"],
                    "total": str(invoice["total"]),
                    "due_date": invoice["due_date"],
                    "customer_name": owner["first_name"] or owner["email"],
                },
                [Attachment.pdf(f"{invoice['invoice_number']}.pdf", pdf_bytes)],
            )
        except Exception:
            logger.exception("Delivery of invoice %s failed", invoice["invoice_number"])
            return "failed"
        return "sent"

    def send_invoice(self, invoice_id: int) -> dict:
        """Move a draft invoice to SENT and hand it to the email dispatcher.

        The returned invoice carries ``delivery`` (``"sent"`` or ``"failed"``);
        a failed delivery leaves the invoice SENT.
        """

        with transaction(self.conn):
            invoice = self._get_invoice_row(invoice_id)
            self._set_invoice_status(invoice, SENT)
            if invoice["total"] == ZERO:
                # nothing to collect on a fully discounted booking
                self._set_invoice_status(invoice, PAID)
        logger.info("Invoice %s sent", invoice["invoice_number"])
        detail = self.get_invoice(invoice_id)
        detail["delivery"] = self._deliver_invoice(detail)
        return detail

    def record_payment(
        self,
        *,
        invoice_id: int,
        amount: Decimal | str,
        payment_method_id: int | None = None,
        transaction_id: str | None = None,
    ) -> dict:
        """Record a settled payment and move the invoice to PARTIALLY_PAID or PAID."""

        amount = to_decimal(amount, field="amount")
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be greater than zero")
        amount = quantize(amount)
        with transaction(self.conn):
            invoice = self._get_invoice_row(invoice_id)
            paid = self._amount_paid(invoice_id)
            balance = invoice["total"] - paid
            target = PAID if paid + amount >= invoice["total"] else PARTIALLY_PAID
            if invoice["status"] not in (SENT, PARTIALLY_PAID):
                raise IllegalStatusTransitionError("Invoice", invoice["status"], target)
            if amount > balance:
                raise InvalidAmountError(
                    "Payment exceeds the outstanding balance",
                    details={"amount": str(amount), "balance_due": str(balance)},
                )
            if payment_method_id is not None:
                method = self.get_payment_method(payment_method_id)
                if method["account_id"] != invoice["account_id"] or not method["is_active"]:
                    raise ValidationError("Payment method cannot be used for this invoice")
            if target != invoice["status"]:
                self._set_invoice_status(invoice, target)
            timestamp = self._timestamp()
            self.conn.execute(
                """
                INSERT INTO payments(invoice_id, payment_method_id, amount, status, transaction_id, processed_at, created_at)
                VALUES (?, ?, ?, 'COMPLETED', ?, ?, ?)
                """,
                (invoice_id, payment_method_id, amount, transaction_id, timestamp, timestamp),
            )
        logger.info("Recorded payment of %s on invoice %s", amount, invoice["invoice_number"])
        return self.get_invoice(invoice_id)

    def _record_refund(self, invoice_id: int, amount: Decimal, reason: str) -> dict:
        cur = self.conn.execute(
            "INSERT INTO refunds(invoice_id, amount, reason, status, created_at) VALUES (?, ?, ?, 'pending', ?)",
            (invoice_id, amount, reason, self._timestamp()),
        )
        return self.conn.execute("SELECT * FROM refunds WHERE id = ?", (cur.lastrowid,)).fetchone()

    def cancel_invoice(self, *, invoice_id: int, reason: str) -> dict:
        """Cancel an unpaid or partly paid invoice.

        Money already collected is recorded as a pending refund for the payment
        provider to process; a draft cancels with no financial side effect.
        """

        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")
        reason = reason.strip()
        with transaction(self.conn):
            invoice = self._get_invoice_row(invoice_id)
            self._set_invoice_status(invoice, CANCELLED)
            note = f"CANCELLED: {reason}"
            self.conn.execute(
                "UPDATE invoices SET notes = ? WHERE id = ?",
                (f"{invoice['notes']}\n{note}" if invoice["notes"] else note, invoice_id),
            )
            paid = self._amount_paid(invoice_id)
            refund = self._record_refund(invoice_id, paid, reason) if paid > 0 else None
        logger.info(
            "Invoice %s cancelled (refund due: %s)",
            invoice["invoice_number"],
            refund["amount"] if refund else ZERO,
        )
        detail = self.get_invoice(invoice_id)
        detail["refund"] = refund
        return detail

    def refund_invoice(self, *, invoice_id: int, reason: str) -> dict:
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")
        with transaction(self.conn):
            invoice = self._get_invoice_row(invoice_id)
            self._set_invoice_status(invoice, REFUNDED)
            refund = self._record_refund(invoice_id, self._amount_paid(invoice_id), reason.strip())
        logger.info("Invoice %s refunded for %s", invoice["invoice_number"], refund["amount"])
        detail = self.get_invoice(invoice_id)
        detail["refund"] = refund
        return detail

    def list_refunds(self, *, invoice_id: int | None = None, status: str | None = None) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if invoice_id is not None:
            conditions.append("invoice_id = ?")
            params.append(invoice_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return self.conn.execute("SELECT * FROM refunds" + where + " ORDER BY id", params).fetchall()

    def render_invoice_pdf(self, invoice_id: int) -> bytes:
        invoice = self.get_invoice(invoice_id)
        try:
            return self.pdf_renderer(invoice, platform_name=self.settings["PLATFORM_NAME"])
        except Exception as exc:
            logger.exception("PDF rendering failed for invoice %s", invoice["invoice_number"])
            raise PdfRenderError(
                f"Could not render invoice {invoice['invoice_number']}",
                details={"invoice_id": invoice_id},
            ) from exc

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------
    def add_payment_method(
        self,
        *,
        account_id: int,
        card_number: str,
        card_type: str,
        expiry_month: int,
        expiry_year: int,
        cardholder_name: str | None = None,
        make_default: bool = False,
    ) -> dict:
        """Store a card reference; only the last four digits are kept."""

        self.get_account(account_id)
        digits = "".join(ch for ch in str(card_number) if ch.isdigit())
        if not 12 <= len(digits) <= 19:
            raise ValidationError("Card number must have between 12 and 19 digits")
        if not 1 <= expiry_month <= 12:
            raise ValidationError("Expiry month must be between 1 and 12")
        today = self._now().date()
        if (expiry_year, expiry_month) < (today.year, today.month):
            raise ValidationError("Card has expired")
        with transaction(self.conn):
            has_default = self.conn.execute(
                "SELECT 1 FROM payment_methods WHERE account_id = ? AND is_default = 1 AND is_active = 1",
                (account_id,),
            ).fetchone()
            is_default = make_default or not has_default
            if is_default:
                self.conn.execute(
                    "UPDATE payment_methods SET is_default = 0 WHERE account_id = ?", (account_id,)
                )
            cur = self.conn.execute(
                """
                INSERT INTO payment_methods(
                    account_id, card_type, last_four, expiry_month, expiry_year, cardholder_name, is_default
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    card_type.upper(),
                    digits[-4:],
                    expiry_month,
                    expiry_year,
                    cardholder_name,
                    int(is_default),
                ),
            )
        return self.get_payment_method(cur.lastrowid)

    def get_payment_method(self, payment_method_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM payment_methods WHERE id = ?", (payment_method_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(
                "Payment method not found", details={"payment_method_id": payment_method_id}
            )
        return row

    def list_payment_methods(self, *, account_id: int) -> list[dict]:
        return self.conn.execute(
            """
            SELECT * FROM payment_methods
            WHERE account_id = ? AND is_active = 1
            ORDER BY is_default DESC, id
            """,
            (account_id,),
        ).fetchall()

    def set_default_payment_method(self, *, account_id: int, payment_method_id: int) -> dict:
        method = self.get_payment_method(payment_method_id)
        if method["account_id"] != account_id or not method["is_active"]:
            raise ValidationError("Payment method does not belong to this account")
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE payment_methods SET is_default = 0 WHERE account_id = ?", (account_id,)
            )
            self.conn.execute(
                "UPDATE payment_methods SET is_default = 1 WHERE id = ?", (payment_method_id,)
            )
        return self.get_payment_method(payment_method_id)

    def remove_payment_method(self, payment_method_id: int) -> dict:
        method = self.get_payment_method(payment_method_id)
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE payment_methods SET is_active = 0, is_default = 0 WHERE id = ?",
                (payment_method_id,),
            )
            if method["is_default"]:
                self.conn.execute(
                    """
                    UPDATE payment_methods SET is_default = 1
                    WHERE id = (
                        SELECT id FROM payment_methods
                        WHERE account_id = ? AND is_active = 1
                        ORDER BY id LIMIT 1
                    )
                    """,
                    (method["account_id"],),
                )
        return self.get_payment_method(payment_method_id)

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------
    def create_review(
        self,
        *,
        booking_id: int,
        reviewer_user_id: int,
        rating: int,
        comment: str | None = None,
    ) -> dict:
        booking = self.get_booking(booking_id)
        if booking["status"] != COMPLETED:
            raise BookingNotCompletedError(
                "Only completed bookings can be reviewed", details={"booking_id": booking_id}
            )
        if not self.is_account_member(booking["account_id"], reviewer_user_id):
            raise AuthorizationError("Only the booking's account can review it")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")
        with transaction(self.conn):
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO reviews(booking_id, reviewer_user_id, sitter_id, rating, comment)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (booking_id, reviewer_user_id, booking["sitter_id"], rating, comment),
                )
            except sqlite3.IntegrityError:
                raise ConflictError(
                    "Booking has already been reviewed", details={"booking_id": booking_id}
                ) from None
            ratings = [
                row["rating"]
                for row in self.conn.execute(
                    "SELECT rating FROM reviews WHERE sitter_id = ?", (booking["sitter_id"],)
                ).fetchall()
            ]
            average = quantize(Decimal(sum(ratings)) / Decimal(len(ratings)))
            self.conn.execute(
                "UPDATE sitter_profiles SET average_rating = ?, review_count = ? WHERE user_id = ?",
                (average, len(ratings), booking["sitter_id"]),
            )
        return self.conn.execute("SELECT * FROM reviews WHERE id = ?", (cur.lastrowid,)).fetchone()

    def list_reviews_for_sitter(self, sitter_id: int) -> list[dict]:
        return self.conn.execute(
            """
            SELECT reviews.*, users.first_name AS reviewer_first_name
            FROM reviews
            JOIN users ON users.id = reviews.reviewer_user_id
            WHERE reviews.sitter_id = ?
            ORDER BY reviews.created_at DESC, reviews.id DESC
            """,
            (sitter_id,),
        ).fetchall()

    # ------------------------------------------------------------------
    # Sitter work experience
    # ------------------------------------------------------------------
    def _check_work_dates(self, start: dt.date, end: dt.date | None) -> None:
        if start > self._now().date():
            raise ValidationError("Start date cannot be in the future")
        if end is not None and end < start:
            raise ValidationError("End date cannot be before the start date")

    def add_work_experience(
        self,
        *,
        sitter_id: int,
        company_name: str,
        job_title: str,
        start_date: str | dt.date,
        end_date: str | dt.date | None = None,
        responsibilities: str | None = None,
    ) -> dict:
        profile = self.get_sitter_profile(sitter_id)
        if not company_name or not company_name.strip():
            raise ValidationError("Company name is required")
        if not job_title or not job_title.strip():
            raise ValidationError("Job title is required")
        start = self._parse_date(start_date, "start_date")
        end = self._parse_date(end_date, "end_date") if end_date is not None else None
        self._check_work_dates(start, end)
        cur = self.conn.execute(
            """
            INSERT INTO sitter_work_experiences(
                sitter_profile_id, company_name, job_title, responsibilities, start_date, end_date
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                profile["id"],
                company_name.strip(),
                job_title.strip(),
                responsibilities,
                start.isoformat(),
                end.isoformat() if end else None,
            ),
        )
        logger.info("Added work experience %s for sitter %s", cur.lastrowid, sitter_id)
        return self.get_work_experience(cur.lastrowid)

    def get_work_experience(self, experience_id: int) -> dict:
        row = self.conn.execute(
            """
            SELECT sitter_work_experiences.*, sitter_profiles.user_id AS sitter_id
            FROM sitter_work_experiences
            JOIN sitter_profiles ON sitter_profiles.id = sitter_work_experiences.sitter_profile_id
            WHERE sitter_work_experiences.id = ?
            """,
            (experience_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("Work experience not found", details={"experience_id": experience_id})
        return row

    def list_work_experiences(self, sitter_id: int) -> list[dict]:
        """Most recent positions first."""

        profile = self.get_sitter_profile(sitter_id)
        return self.conn.execute(
            """
            SELECT sitter_work_experiences.*, ? AS sitter_id
            FROM sitter_work_experiences
            WHERE sitter_profile_id = ?
            ORDER BY start_date DESC, id DESC
            """,
            (sitter_id, profile["id"]),
        ).fetchall()

    def update_work_experience(
        self,
        experience_id: int,
        *,
        company_name: str | None = None,
        job_title: str | None = None,
        start_date: str | dt.date | None = None,
        end_date: str | dt.date | None = None,
        responsibilities: str | None = None,
    ) -> dict:
        experience = self.get_work_experience(experience_id)
        changes: dict[str, Any] = {}
        for column, value in (("company_name", company_name), ("job_title", job_title)):
            if value is not None:
                if not value.strip():
                    raise ValidationError(f"{column} cannot be blank", details={"field": column})
                changes[column] = value.strip()
        if responsibilities is not None:
            changes["responsibilities"] = responsibilities
        if start_date is not None or end_date is not None:
            start = self._parse_date(start_date or experience["start_date"], "start_date")
            if end_date is not None:
                end = self._parse_date(end_date, "end_date")
            elif experience["end_date"]:
                end = dt.date.fromisoformat(experience["end_date"])
            else:
                end = None
            self._check_work_dates(start, end)
            changes["start_date"] = start.isoformat()
            changes["end_date"] = end.isoformat() if end else None
        self._update_row("sitter_work_experiences", experience_id, changes)
        return self.get_work_experience(experience_id)

    def delete_work_experience(self, experience_id: int) -> dict:
        experience = self.get_work_experience(experience_id)
        self.conn.execute("DELETE FROM sitter_work_experiences WHERE id = ?", (experience_id,))
        logger.info("Deleted work experience %s", experience_id)
        return experience

    # ------------------------------------------------------------------
    # Support tickets
    # ------------------------------------------------------------------
    def _ticket_choice(self, value: str, allowed: Sequence[str], field: str) -> str:
        choice = (value or "").upper()
        if choice not in allowed:
            raise ValidationError(f"Unknown {field} {value}", details={"allowed": list(allowed)})
        return choice

    def _ticket_subject(self, subject: str | None) -> str:
        if not subject or not subject.strip():
            raise ValidationError("Subject is required")
        if len(subject.strip()) > SUBJECT_MAX_LENGTH:
            raise ValidationError(
                f"Subject cannot exceed {SUBJECT_MAX_LENGTH} characters",
                details={"max_length": SUBJECT_MAX_LENGTH},
            )
        return subject.strip()

    def create_support_ticket(
        self,
        *,
        user_id: int,
        subject: str,
        description: str,
        priority: str = "MEDIUM",
        booking_id: int | None = None,
    ) -> dict:
        """Open a ticket, optionally about one of the user's bookings."""

        user = self.get_user(user_id)
        subject = self._ticket_subject(subject)
        if not description or not description.strip():
            raise ValidationError("Description is required")
        priority = self._ticket_choice(priority, TICKET_PRIORITIES, "priority")
        if booking_id is not None:
            booking = self.get_booking(booking_id)
            involved = (
                user["role"] == ADMIN
                or booking["sitter_id"] == user_id
                or self.is_account_member(booking["account_id"], user_id)
            )
            if not involved:
                raise AuthorizationError("Tickets can only reference your own bookings")
        timestamp = self._timestamp()
        cur = self.conn.execute(
            """
            INSERT INTO support_tickets(
                created_by_user_id, booking_id, subject, description, status, priority, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 'OPEN', ?, ?, ?)
            """,
            (user_id, booking_id, subject, description.strip(), priority, timestamp, timestamp),
        )
        logger.info("User %s opened support ticket %s", user_id, cur.lastrowid)
        return self.get_support_ticket(cur.lastrowid)

    def get_support_ticket(self, ticket_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM support_tickets WHERE id = ?", (ticket_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Support ticket not found", details={"ticket_id": ticket_id})
        return row

    def list_support_tickets(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        assigned_admin_id: int | None = None,
    ) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            conditions.append("created_by_user_id = ?")
            params.append(user_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.upper())
        if assigned_admin_id is not None:
            conditions.append("assigned_admin_id = ?")
            params.append(assigned_admin_id)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return self.conn.execute(
            "SELECT * FROM support_tickets" + where + " ORDER BY created_at DESC, id DESC", params
        ).fetchall()

    def update_support_ticket(
        self,
        ticket_id: int,
        *,
        subject: str | None = None,
        description: str | None = None,
        priority: str | None = None,
        status: str | None = None,
        assigned_admin_id: int | None = None,
    ) -> dict:
        """Edit a ticket. A closed ticket only accepts being reopened."""

        ticket = self.get_support_ticket(ticket_id)
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = self._ticket_choice(status, TICKET_STATUSES, "status")
        if ticket["status"] == "CLOSED" and changes.get("status") != "OPEN":
            raise ConflictError("Closed tickets must be reopened first", details={"ticket_id": ticket_id})
        if subject is not None:
            changes["subject"] = self._ticket_subject(subject)
        if description is not None:
            if not description.strip():
                raise ValidationError("Description is required")
            changes["description"] = description.strip()
        if priority is not None:
            changes["priority"] = self._ticket_choice(priority, TICKET_PRIORITIES, "priority")
        if assigned_admin_id is not None:
            if self.get_user(assigned_admin_id)["role"] != ADMIN:
                raise ValidationError("Tickets can only be assigned to administrators")
            changes["assigned_admin_id"] = assigned_admin_id
        if changes:
            changes["updated_at"] = self._timestamp()
        self._update_row("support_tickets", ticket_id, changes)
        logger.info("Updated support ticket %s", ticket_id)
        return self.get_support_ticket(ticket_id)

    def delete_support_ticket(self, ticket_id: int) -> dict:
        ticket = self.get_support_ticket(ticket_id)
        self.conn.execute("DELETE FROM support_tickets WHERE id = ?", (ticket_id,))
        logger.info("Deleted support ticket %s", ticket_id)
        return ticket

    # ------------------------------------------------------------------
    # Statistics & dashboard
    # ------------------------------------------------------------------
    def user_stats(self) -> dict:
        stats = self.conn.execute(
            """
            SELECT COUNT(id) AS total_users,
                   COALESCE(SUM(is_active = 1), 0) AS active_users,
                   COALESCE(SUM(role = 'client'), 0) AS client_count,
                   COALESCE(SUM(role = 'sitter'), 0) AS sitter_count,
                   COALESCE(SUM(role = 'admin'), 0) AS admin_count
            FROM users
            """
        ).fetchone()
        stats["verified_sitters"] = self.conn.execute(
            "SELECT COUNT(id) AS total FROM sitter_profiles WHERE is_verified = 1"
        ).fetchone()["total"]
        return stats

    def pet_stats(self) -> dict:
        """Counts across all pets, with species and age breakdowns and recent registrations."""

        now = self._now()
        stats = self.conn.execute(
            """
            SELECT COUNT(id) AS total_pets,
                   COALESCE(SUM(is_active = 1), 0) AS active_pets,
                   COUNT(DISTINCT account_id) AS accounts_with_pets,
                   COALESCE(SUM(created_at >= ?), 0) AS pets_registered_last_30_days,
                   COALESCE(SUM(created_at >= ?), 0) AS pets_registered_last_7_days
            FROM pets
            """,
            (
                (now - dt.timedelta(days=30)).isoformat(),
                (now - dt.timedelta(days=7)).isoformat(),
            ),
        ).fetchone()
        stats["inactive_pets"] = stats["total_pets"] - stats["active_pets"]
        stats["pets_by_species"] = {
            row["species"]: row["total"]
            for row in self.conn.execute(
                """
                SELECT COALESCE(LOWER(species), 'unknown') AS species, COUNT(id) AS total
                FROM pets GROUP BY 1 ORDER BY 1
                """
            ).fetchall()
        }
        stats["pets_by_age_range"] = {
            row["age_range"]: row["total"]
            for row in self.conn.execute(
                """
                SELECT CASE
                         WHEN age IS NULL THEN 'unknown'
                         WHEN age <= 1 THEN '0-1'
                         WHEN age <= 5 THEN '2-5'
                         WHEN age <= 10 THEN '6-10'
                         WHEN age <= 15 THEN '11-15'
                         ELSE '16+'
                       END AS age_range,
                       COUNT(id) AS total
                FROM pets GROUP BY 1
                """
            ).fetchall()
        }
        if stats["accounts_with_pets"]:
            stats["average_pets_per_account"] = quantize(
                Decimal(stats["total_pets"]) / Decimal(stats["accounts_with_pets"])
            )
        else:
            stats["average_pets_per_account"] = ZERO
        return stats

    def dashboard(self, user_id: int) -> dict:
        """Landing page for a client: profile, pets, next booking, recent sitters and counts."""

        user = self.get_user(user_id)
        account = self.get_account_for_user(user_id)
        now = self._timestamp()
        next_booking = self.conn.execute(
            """
            SELECT bookings.*, pets.name AS pet_name, service_offerings.name AS service_name
            FROM bookings
            JOIN pets ON pets.id = bookings.pet_id
            JOIN service_offerings ON service_offerings.id = bookings.service_offering_id
            WHERE bookings.account_id = ? AND bookings.status IN (?, ?) AND bookings.start_time > ?
            ORDER BY bookings.start_time
            LIMIT 1
            """,
            (account["id"], PENDING, CONFIRMED, now),
        ).fetchone()
        recent_sitters = self.conn.execute(
            """
            SELECT users.id, users.first_name, users.last_name,
                   sitter_profiles.average_rating, MAX(bookings.start_time) AS last_booking
            FROM bookings
            JOIN users ON users.id = bookings.sitter_id
            LEFT JOIN sitter_profiles ON sitter_profiles.user_id = users.id
            WHERE bookings.account_id = ? AND bookings.status = ?
            GROUP BY users.id
            ORDER BY last_booking DESC
            LIMIT 3
            """,
            (account["id"], COMPLETED),
        ).fetchall()
        pets = self.list_pets(account_id=account["id"])
        scheduled = self.conn.execute(
            """
            SELECT COUNT(id) AS total FROM bookings
            WHERE account_id = ? AND status IN (?, ?) AND start_time > ?
            """,
            (account["id"], PENDING, CONFIRMED, now),
        ).fetchone()["total"]
        open_invoices = self.conn.execute(
            "SELECT COUNT(id) AS total FROM invoices WHERE account_id = ? AND status IN (?, ?)",
            (account["id"], SENT, PARTIALLY_PAID),
        ).fetchone()["total"]
        open_tickets = self.conn.execute(
            """
            SELECT COUNT(id) AS total FROM support_tickets
            WHERE created_by_user_id = ? AND status IN ('OPEN', 'IN_PROGRESS')
            """,
            (user_id,),
        ).fetchone()["total"]
        return {
            "user": user,
            "account": account,
            "pets": pets,
            "next_booking": next_booking,
            "recent_sitters": recent_sitters,
            "stats": {
                "active_pets": len(pets),
                "scheduled_bookings": scheduled,
                "open_invoices": open_invoices,
                "open_tickets": open_tickets,
            },
        }

    def close(self) -> None:
        self.conn.close()
