import datetime as dt
import unittest
from decimal import Decimal

from petcare.marketplace.system import PetcareSystem

START = dt.datetime(2026, 3, 2, 9, 0, 0)


class FrozenClock:
    """Deterministic stand-in for ``datetime.now``."""

    def __init__(self, now: dt.datetime = START) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


class MarketplaceTestCase(unittest.TestCase):
    settings = {"INVOICE_AUTO_SEND": False, "MAX_PENDING_BOOKINGS": 50}
    database_path = ":memory:"

    def setUp(self) -> None:
        self.clock = FrozenClock()
        self.system = PetcareSystem(self.database_path, settings=self.settings, clock=self.clock)
        self.admin = self.system.register_user(
            email="admin@example.com", password="Password!23", role="admin"
        )
        self.client_user = self.system.register_user(
            email="jordan@example.com",
            password="Password!23",
            role="client",
            first_name="Jordan",
            last_name="River",
        )
        self.account = self.system.get_account_for_user(self.client_user["id"])
        self.sitter = self.system.register_user(
            email="sam@example.com",
            password="Password!23",
            role="sitter",
            first_name="Sam",
            last_name="Walker",
        )
        self.system.create_sitter_profile(user_id=self.sitter["id"], bio="Dog person")
        self.pet = self.system.add_pet(account_id=self.account["id"], name="Rex", species="dog")
        self.offering = self.system.create_service_offering(
            sitter_id=self.sitter["id"],
            service_type="walking",
            name="Hour walk",
            price="100.00",
            duration_minutes=60,
        )
        self.fee = self.system.create_platform_fee(value="0.10")
        self._next_day = 1

    def tearDown(self) -> None:
        self.system.close()

    def make_booking(self, price: str | None = None) -> dict:
        offering = self.offering
        if price is not None:
            offering = self.system.create_service_offering(
                sitter_id=self.sitter["id"],
                service_type="sitting",
                name=f"Visit at {price}",
                price=price,
                duration_minutes=60,
            )
        start = START + dt.timedelta(days=self._next_day)
        self._next_day += 1
        return self.system.create_booking(
            account_id=self.account["id"],
            pet_id=self.pet["id"],
            sitter_id=self.sitter["id"],
            service_offering_id=offering["id"],
            start_time=start.isoformat(),
            booked_by_user_id=self.client_user["id"],
        )

    def complete_booking(self, booking: dict) -> dict:
        for status in ("CONFIRMED", "IN_PROGRESS", "COMPLETED"):
            result = self.system.update_booking_status(
                booking_id=booking["id"], status=status, actor_role="sitter"
            )
        return result

    def assertMoney(self, value, expected: str) -> None:
        self.assertEqual(value, Decimal(expected))
        self.assertEqual(str(value), expected)
