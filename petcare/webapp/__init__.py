"""Flask application exposing the marketplace as a JSON API."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import click
from flask import Flask, Response, g, jsonify, request

from petcare.config import DEFAULTS, configure
from petcare.marketplace.database import get_connection, initialize_database
from petcare.marketplace.errors import AuthorizationError, MarketplaceError, ValidationError
from petcare.marketplace.system import PetcareSystem
from petcare.marketplace.transitions import ADMIN, CLIENT, SITTER

logger = logging.getLogger(__name__)

PRIVATE_USER_FIELDS = ("password_hash", "api_key")


def _public_user(user: dict) -> dict:
    return {key: value for key, value in user.items() if key not in PRIVATE_USER_FIELDS}


def _payload() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _require(payload: Mapping[str, Any], *keys: str) -> None:
    missing = [key for key in keys if payload.get(key) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields", details={"missing": missing})


def create_app(config: Mapping[str, Any] | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    configure(app.config, config)

    bootstrap = get_connection(app.config["DATABASE_PATH"])
    try:
        initialize_database(bootstrap)
    finally:
        bootstrap.close()
    logger.info("Petcare API using database %s", app.config["DATABASE_PATH"])

    def get_system() -> PetcareSystem:
        # one connection per request; sqlite connections are not shared across threads
        if "system" not in g:
            g.system = PetcareSystem(
                app.config["DATABASE_PATH"],
                settings={key: app.config[key] for key in DEFAULTS},
                create_schema=False,
            )
        return g.system

    @app.teardown_appcontext
    def close_system(exc: BaseException | None) -> None:
        system = g.pop("system", None)
        if system is not None:
            system.close()

    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(exc: MarketplaceError) -> tuple[Response, int]:
        if exc.status_code >= 500:
            logger.error("Request %s %s failed: %s", request.method, request.path, exc)
        return jsonify(exc.to_dict()), exc.status_code

    def current_user(*allowed: str) -> dict:
        return get_system().authenticate(
            request.headers.get("X-API-Key"), allowed=allowed or None
        )

    def booking_for(user: dict, booking_id: int) -> dict:
        system = get_system()
        booking = system.get_booking(booking_id)
        if user["role"] == ADMIN:
            return booking
        if user["role"] == SITTER and booking["sitter_id"] == user["id"]:
            return booking
        if user["role"] == CLIENT and system.is_account_member(booking["account_id"], user["id"]):
            return booking
        raise AuthorizationError("You do not have access to this booking")

    def invoice_for(user: dict, invoice_id: int) -> dict:
        system = get_system()
        invoice = system.get_invoice(invoice_id)
        if user["role"] != ADMIN and not system.is_account_member(invoice["account_id"], user["id"]):
            raise AuthorizationError("You do not have access to this invoice")
        return invoice

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.post("/auth/register")
    def register() -> Any:
        payload = _payload()
        _require(payload, "email", "password", "role")
        if payload["role"] == ADMIN:
            raise AuthorizationError("Administrators cannot self-register")
        user = get_system().register_user(
            email=payload["email"],
            password=payload["password"],
            role=payload["role"],
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            phone=payload.get("phone"),
        )
        return jsonify(_public_user(user)), 201

    @app.post("/auth/login")
    def login() -> Any:
        payload = _payload()
        _require(payload, "email", "password")
        return jsonify(get_system().login(email=payload["email"], password=payload["password"]))

    @app.route("/me", methods=["GET", "PATCH"])
    def me() -> Any:
        user = current_user()
        if request.method == "PATCH":
            payload = _payload()
            user = get_system().update_user(
                user["id"],
                first_name=payload.get("first_name"),
                last_name=payload.get("last_name"),
                phone=payload.get("phone"),
            )
        body = _public_user(user)
        if user["role"] == CLIENT:
            body["account"] = get_system().get_account_for_user(user["id"])
        return jsonify(body)

    @app.get("/dashboard")
    def dashboard() -> Any:
        user = current_user(CLIENT)
        body = get_system().dashboard(user["id"])
        body["user"] = _public_user(body["user"])
        return jsonify(body)

    # ------------------------------------------------------------------
    # User administration & statistics
    # ------------------------------------------------------------------
    @app.get("/users")
    def users() -> Any:
        current_user(ADMIN)
        return jsonify([_public_user(user) for user in get_system().list_users(role=request.args.get("role"))])

    @app.post("/users/<int:user_id>/<any(activate, deactivate):action>")
    def toggle_user(user_id: int, action: str) -> Any:
        current_user(ADMIN)
        user = get_system().set_user_active(user_id, active=action == "activate")
        return jsonify(_public_user(user))

    @app.get("/stats/users")
    def user_stats() -> Any:
        current_user(ADMIN)
        return jsonify(get_system().user_stats())

    @app.get("/stats/pets")
    def pet_stats() -> Any:
        current_user(ADMIN)
        return jsonify(get_system().pet_stats())

    # ------------------------------------------------------------------
    # Pets, sitters and offerings
    # ------------------------------------------------------------------
    @app.route("/pets", methods=["GET", "POST"])
    def pets() -> Any:
        user = current_user(CLIENT)
        system = get_system()
        account = system.get_account_for_user(user["id"])
        if request.method == "GET":
            return jsonify(system.list_pets(account_id=account["id"]))
        payload = _payload()
        _require(payload, "name")
        pet = system.add_pet(
            account_id=account["id"],
            name=payload["name"],
            species=payload.get("species"),
            breed=payload.get("breed"),
            age=payload.get("age"),
            weight=payload.get("weight"),
            special_notes=payload.get("special_notes"),
        )
        return jsonify(pet), 201

    @app.route("/pets/<int:pet_id>", methods=["PATCH", "DELETE"])
    def pet_detail(pet_id: int) -> Any:
        user = current_user(CLIENT)
        system = get_system()
        pet = system.get_pet(pet_id)
        if not system.is_account_member(pet["account_id"], user["id"]):
            raise AuthorizationError("You do not own this pet")
        if request.method == "DELETE":
            return jsonify(system.deactivate_pet(pet_id))
        payload = _payload()
        return jsonify(
            system.update_pet(
                pet_id,
                name=payload.get("name"),
                species=payload.get("species"),
                breed=payload.get("breed"),
                age=payload.get("age"),
                weight=payload.get("weight"),
                special_notes=payload.get("special_notes"),
            )
        )

    @app.patch("/sitters/profile")
    def update_sitter_profile() -> Any:
        user = current_user(SITTER)
        payload = _payload()
        profile = get_system().update_sitter_profile(
            user["id"],
            bio=payload.get("bio"),
            hourly_rate=payload.get("hourly_rate"),
            servicing_radius=payload.get("servicing_radius"),
            is_available_for_bookings=payload.get("is_available_for_bookings"),
        )
        return jsonify(profile)

    @app.post("/sitters/<int:sitter_id>/verify")
    def verify_sitter(sitter_id: int) -> Any:
        current_user(ADMIN)
        return jsonify(get_system().verify_sitter_profile(sitter_id))

    @app.route("/sitters/profile/experiences", methods=["GET", "POST"])
    def own_experiences() -> Any:
        user = current_user(SITTER)
        system = get_system()
        if request.method == "GET":
            return jsonify(system.list_work_experiences(user["id"]))
        payload = _payload()
        _require(payload, "company_name", "job_title", "start_date")
        experience = system.add_work_experience(
            sitter_id=user["id"],
            company_name=payload["company_name"],
            job_title=payload["job_title"],
            start_date=payload["start_date"],
            end_date=payload.get("end_date"),
            responsibilities=payload.get("responsibilities"),
        )
        return jsonify(experience), 201

    @app.get("/sitters/<int:sitter_id>/experiences")
    def sitter_experiences(sitter_id: int) -> Any:
        current_user()
        return jsonify(get_system().list_work_experiences(sitter_id))

    @app.route("/experiences/<int:experience_id>", methods=["GET", "PATCH", "DELETE"])
    def experience_detail(experience_id: int) -> Any:
        system = get_system()
        if request.method == "GET":
            current_user()
            return jsonify(system.get_work_experience(experience_id))
        user = current_user(SITTER, ADMIN)
        experience = system.get_work_experience(experience_id)
        if user["role"] == SITTER and experience["sitter_id"] != user["id"]:
            raise AuthorizationError("You cannot modify another sitter's work experience")
        if request.method == "DELETE":
            return jsonify(system.delete_work_experience(experience_id))
        payload = _payload()
        return jsonify(
            system.update_work_experience(
                experience_id,
                company_name=payload.get("company_name"),
                job_title=payload.get("job_title"),
                start_date=payload.get("start_date"),
                end_date=payload.get("end_date"),
                responsibilities=payload.get("responsibilities"),
            )
        )

    @app.post("/sitters/profile")
    def create_sitter_profile() -> Any:
        user = current_user(SITTER)
        payload = _payload()
        profile = get_system().create_sitter_profile(
            user_id=user["id"],
            bio=payload.get("bio"),
            hourly_rate=payload.get("hourly_rate"),
            servicing_radius=payload.get("servicing_radius"),
        )
        return jsonify(profile), 201

    @app.get("/sitters")
    def list_sitters() -> Any:
        current_user()
        return jsonify(get_system().list_sitters())

    @app.get("/sitters/<int:sitter_id>/reviews")
    def sitter_reviews(sitter_id: int) -> Any:
        current_user()
        return jsonify(get_system().list_reviews_for_sitter(sitter_id))

    @app.route("/offerings", methods=["GET", "POST"])
    def offerings() -> Any:
        if request.method == "GET":
            current_user()
            return jsonify(
                get_system().list_service_offerings(sitter_id=request.args.get("sitter_id", type=int))
            )
        user = current_user(SITTER)
        payload = _payload()
        _require(payload, "service_type", "name", "price", "duration_minutes")
        offering = get_system().create_service_offering(
            sitter_id=user["id"],
            service_type=payload["service_type"],
            name=payload["name"],
            price=payload["price"],
            duration_minutes=payload["duration_minutes"],
            description=payload.get("description"),
        )
        return jsonify(offering), 201

    def offering_for(user: dict, offering_id: int) -> dict:
        offering = get_system().get_service_offering(offering_id)
        if user["role"] == SITTER and offering["sitter_id"] != user["id"]:
            raise AuthorizationError("You can only manage your own offerings")
        return offering

    @app.patch("/offerings/<int:offering_id>")
    def update_offering(offering_id: int) -> Any:
        offering_for(current_user(SITTER, ADMIN), offering_id)
        payload = _payload()
        return jsonify(
            get_system().update_service_offering(
                offering_id,
                name=payload.get("name"),
                description=payload.get("description"),
                price=payload.get("price"),
                duration_minutes=payload.get("duration_minutes"),
            )
        )

    @app.post("/offerings/<int:offering_id>/deactivate")
    def deactivate_offering(offering_id: int) -> Any:
        offering_for(current_user(SITTER, ADMIN), offering_id)
        return jsonify(get_system().deactivate_service_offering(offering_id))

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    @app.route("/bookings", methods=["GET", "POST"])
    def bookings() -> Any:
        system = get_system()
        if request.method == "GET":
            user = current_user()
            status = request.args.get("status")
            if user["role"] == ADMIN:
                return jsonify(system.list_bookings(status=status))
            if user["role"] == SITTER:
                return jsonify(system.list_bookings(sitter_id=user["id"], status=status))
            account = system.get_account_for_user(user["id"])
            return jsonify(system.list_bookings(account_id=account["id"], status=status))
        user = current_user(CLIENT)
        payload = _payload()
        _require(payload, "pet_id", "sitter_id", "service_offering_id", "start_time")
        account = system.get_account_for_user(user["id"])
        booking = system.create_booking(
            account_id=account["id"],
            pet_id=payload["pet_id"],
            sitter_id=payload["sitter_id"],
            service_offering_id=payload["service_offering_id"],
            start_time=payload["start_time"],
            booked_by_user_id=user["id"],
            notes=payload.get("notes"),
        )
        return jsonify(booking), 201

    @app.route("/bookings/<int:booking_id>", methods=["GET", "DELETE"])
    def booking_detail(booking_id: int) -> Any:
        if request.method == "GET":
            user = current_user()
            booking = booking_for(user, booking_id)
            booking["applied_coupons"] = get_system().list_applied_coupons(booking_id=booking_id)
            return jsonify(booking)
        user = current_user(CLIENT, ADMIN)
        booking_for(user, booking_id)
        return jsonify(get_system().delete_booking(booking_id=booking_id))

    @app.patch("/bookings/<int:booking_id>/status")
    def booking_status(booking_id: int) -> Any:
        user = current_user()
        booking_for(user, booking_id)
        payload = _payload()
        _require(payload, "status")
        booking = get_system().update_booking_status(
            booking_id=booking_id,
            status=payload["status"],
            actor_role=user["role"],
            reason=payload.get("reason"),
        )
        return jsonify(booking)

    @app.patch("/bookings/<int:booking_id>/notes")
    def booking_notes(booking_id: int) -> Any:
        user = current_user(CLIENT, ADMIN)
        booking_for(user, booking_id)
        payload = _payload()
        return jsonify(get_system().update_booking_notes(booking_id=booking_id, notes=payload.get("notes")))

    @app.post("/bookings/<int:booking_id>/coupons")
    def apply_coupon(booking_id: int) -> Any:
        user = current_user(CLIENT)
        booking = booking_for(user, booking_id)
        payload = _payload()
        _require(payload, "coupon_code")
        result = get_system().apply_coupon(
            booking_id=booking_id,
            account_id=booking["account_id"],
            coupon_code=payload["coupon_code"],
        )
        return jsonify(result), 201

    @app.post("/bookings/<int:booking_id>/reviews")
    def review_booking(booking_id: int) -> Any:
        user = current_user(CLIENT)
        booking_for(user, booking_id)
        payload = _payload()
        _require(payload, "rating")
        review = get_system().create_review(
            booking_id=booking_id,
            reviewer_user_id=user["id"],
            rating=payload["rating"],
            comment=payload.get("comment"),
        )
        return jsonify(review), 201

    # ------------------------------------------------------------------
    # Coupons & platform fees (admin)
    # ------------------------------------------------------------------
    @app.route("/coupons", methods=["GET", "POST"])
    def coupons() -> Any:
        current_user(ADMIN)
        system = get_system()
        if request.method == "GET":
            return jsonify(system.list_coupons(active_only=request.args.get("active") == "1"))
        payload = _payload()
        _require(payload, "coupon_code", "discount_type", "discount_value", "expiry_date")
        coupon = system.create_coupon(
            coupon_code=payload["coupon_code"],
            discount_type=payload["discount_type"],
            discount_value=payload["discount_value"],
            expiry_date=payload["expiry_date"],
            max_uses=payload.get("max_uses"),
            active=payload.get("active", True),
        )
        return jsonify(coupon), 201

    @app.post("/coupons/<int:coupon_id>/deactivate")
    def deactivate_coupon(coupon_id: int) -> Any:
        current_user(ADMIN)
        return jsonify(get_system().deactivate_coupon(coupon_id))

    @app.post("/coupons/validate")
    def validate_coupon() -> Any:
        user = current_user()
        payload = _payload()
        _require(payload, "coupon_code")
        booking_id = payload.get("booking_id")
        if booking_id is not None:
            booking_for(user, booking_id)
        return jsonify(
            get_system().validate_coupon(coupon_code=payload["coupon_code"], booking_id=booking_id)
        )

    @app.route("/platform-fees", methods=["GET", "POST"])
    def platform_fees() -> Any:
        current_user(ADMIN)
        system = get_system()
        if request.method == "GET":
            return jsonify(system.list_platform_fees())
        payload = _payload()
        _require(payload, "value")
        fee = system.create_platform_fee(
            value=payload["value"],
            fee_type=payload.get("fee_type", "PERCENTAGE"),
            effective_date=payload.get("effective_date"),
            deactivate_previous=bool(payload.get("deactivate_previous")),
        )
        return jsonify(fee), 201

    @app.get("/platform-fees/active")
    def active_platform_fee() -> Any:
        current_user(ADMIN)
        return jsonify(get_system().get_active_platform_fee())

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    @app.post("/bookings/<int:booking_id>/invoice")
    def generate_invoice(booking_id: int) -> Any:
        current_user(ADMIN)
        payload = _payload()
        invoice = get_system().generate_invoice(
            booking_id=booking_id,
            notes=payload.get("notes"),
            auto_send=bool(payload.get("send")),
        )
        return jsonify(invoice), 201

    @app.get("/invoices")
    def invoices() -> Any:
        user = current_user()
        system = get_system()
        status = request.args.getlist("status") or None
        if user["role"] == ADMIN:
            return jsonify(system.list_invoices(status=status))
        account = system.get_account_for_user(user["id"])
        return jsonify(system.list_invoices(account_id=account["id"], status=status))

    @app.get("/invoices/overdue")
    def overdue_invoices() -> Any:
        current_user(ADMIN)
        return jsonify(get_system().list_overdue_invoices())

    @app.post("/invoices/retry-pending")
    def retry_pending_invoices() -> Any:
        current_user(ADMIN)
        return jsonify(get_system().retry_pending_invoices())

    @app.route("/invoices/<int:invoice_id>", methods=["GET", "PATCH"])
    def invoice_detail(invoice_id: int) -> Any:
        if request.method == "GET":
            user = current_user()
            return jsonify(invoice_for(user, invoice_id))
        current_user(ADMIN)
        payload = _payload()
        return jsonify(
            get_system().update_invoice(
                invoice_id=invoice_id,
                due_date=payload.get("due_date"),
                notes=payload.get("notes"),
            )
        )

    @app.get("/invoices/<int:invoice_id>/pdf")
    def invoice_pdf(invoice_id: int) -> Any:
        user = current_user()
        invoice = invoice_for(user, invoice_id)
        content = get_system().render_invoice_pdf(invoice_id)
        return Response(
            content,
            mimetype="application/pdf",
            headers={"Content-Disposition": f"inline; filename={invoice['invoice_number']}.pdf"},
        )

    @app.post("/invoices/<int:invoice_id>/send")
    def send_invoice(invoice_id: int) -> Any:
        current_user(ADMIN)
        return jsonify(get_system().send_invoice(invoice_id))

    @app.post("/invoices/<int:invoice_id>/payments")
    def record_payment(invoice_id: int) -> Any:
        user = current_user(CLIENT, ADMIN)
        invoice_for(user, invoice_id)
        payload = _payload()
        _require(payload, "amount")
        invoice = get_system().record_payment(
            invoice_id=invoice_id,
            amount=payload["amount"],
            payment_method_id=payload.get("payment_method_id"),
            transaction_id=payload.get("transaction_id"),
        )
        return jsonify(invoice), 201

    @app.post("/invoices/<int:invoice_id>/cancel")
    def cancel_invoice(invoice_id: int) -> Any:
        current_user(ADMIN)
        payload = _payload()
        return jsonify(get_system().cancel_invoice(invoice_id=invoice_id, reason=payload.get("reason", "")))

    @app.post("/invoices/<int:invoice_id>/refund")
    def refund_invoice(invoice_id: int) -> Any:
        current_user(ADMIN)
        payload = _payload()
        return jsonify(get_system().refund_invoice(invoice_id=invoice_id, reason=payload.get("reason", "")))

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------
    @app.route("/payment-methods", methods=["GET", "POST"])
    def payment_methods() -> Any:
        user = current_user(CLIENT)
        system = get_system()
        account = system.get_account_for_user(user["id"])
        if request.method == "GET":
            return jsonify(system.list_payment_methods(account_id=account["id"]))
        payload = _payload()
        _require(payload, "card_number", "card_type", "expiry_month", "expiry_year")
        method = system.add_payment_method(
            account_id=account["id"],
            card_number=payload["card_number"],
            card_type=payload["card_type"],
            expiry_month=payload["expiry_month"],
            expiry_year=payload["expiry_year"],
            cardholder_name=payload.get("cardholder_name"),
            make_default=bool(payload.get("make_default")),
        )
        return jsonify(method), 201

    @app.post("/payment-methods/<int:payment_method_id>/default")
    def default_payment_method(payment_method_id: int) -> Any:
        user = current_user(CLIENT)
        system = get_system()
        account = system.get_account_for_user(user["id"])
        return jsonify(
            system.set_default_payment_method(
                account_id=account["id"], payment_method_id=payment_method_id
            )
        )

    @app.delete("/payment-methods/<int:payment_method_id>")
    def remove_payment_method(payment_method_id: int) -> Any:
        user = current_user(CLIENT)
        system = get_system()
        account = system.get_account_for_user(user["id"])
        if system.get_payment_method(payment_method_id)["account_id"] != account["id"]:
            raise AuthorizationError("You do not own this payment method")
        return jsonify(system.remove_payment_method(payment_method_id))

    # ------------------------------------------------------------------
    # Support tickets
    # ------------------------------------------------------------------
    def ticket_for(user: dict, ticket_id: int) -> dict:
        ticket = get_system().get_support_ticket(ticket_id)
        if user["role"] != ADMIN and ticket["created_by_user_id"] != user["id"]:
            raise AuthorizationError("You do not have access to this ticket")
        return ticket

    @app.route("/support-tickets", methods=["GET", "POST"])
    def support_tickets() -> Any:
        user = current_user()
        system = get_system()
        if request.method == "GET":
            status = request.args.get("status")
            if user["role"] == ADMIN:
                return jsonify(
                    system.list_support_tickets(
                        status=status, assigned_admin_id=request.args.get("assigned_to", type=int)
                    )
                )
            return jsonify(system.list_support_tickets(user_id=user["id"], status=status))
        payload = _payload()
        _require(payload, "subject", "description")
        ticket = system.create_support_ticket(
            user_id=user["id"],
            subject=payload["subject"],
            description=payload["description"],
            priority=payload.get("priority", "MEDIUM"),
            booking_id=payload.get("booking_id"),
        )
        return jsonify(ticket), 201

    @app.route("/support-tickets/<int:ticket_id>", methods=["GET", "PATCH", "DELETE"])
    def support_ticket_detail(ticket_id: int) -> Any:
        user = current_user()
        ticket = ticket_for(user, ticket_id)
        system = get_system()
        if request.method == "GET":
            return jsonify(ticket)
        if request.method == "DELETE":
            return jsonify(system.delete_support_ticket(ticket_id))
        payload = _payload()
        if user["role"] != ADMIN and (
            payload.get("status") is not None or payload.get("assigned_admin_id") is not None
        ):
            raise AuthorizationError("Only administrators can change status or assignment")
        return jsonify(
            system.update_support_ticket(
                ticket_id,
                subject=payload.get("subject"),
                description=payload.get("description"),
                priority=payload.get("priority"),
                status=payload.get("status"),
                assigned_admin_id=payload.get("assigned_admin_id"),
            )
        )

    @app.cli.command("create-admin")
    @click.argument("email")
    @click.password_option()
    def create_admin(email: str, password: str) -> None:
        """Create an administrator and print its API key."""

        system = get_system()
        user = system.register_user(email=email, password=password, role=ADMIN)
        click.echo(f"Created admin {user['email']} with API key {user['api_key']}")

    return app
