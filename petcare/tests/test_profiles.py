import unittest

from petcare.marketplace.errors import (
    AuthenticationError,
    BusinessRuleError,
    ConflictError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from petcare.tests.support import MarketplaceTestCase


class UserProfileTestCase(MarketplaceTestCase):
    def test_update_user_keeps_unset_fields(self) -> None:
        updated = self.system.update_user(self.client_user["id"], phone=" 555-0100 ")
        self.assertEqual(updated["phone"], "555-0100")
        self.assertEqual(updated["first_name"], "Jordan")
        with self.assertRaises(ValidationError):
            self.system.update_user(self.client_user["id"])

    def test_deactivated_user_cannot_log_in(self) -> None:
        self.system.set_user_active(self.client_user["id"], active=False)
        with self.assertRaises(AuthenticationError):
            self.system.login(email="jordan@example.com", password="Password!23")
        with self.assertRaises(AuthenticationError):
            self.system.authenticate(self.client_user["api_key"])
        self.system.set_user_active(self.client_user["id"], active=True)
        self.assertEqual(
            self.system.authenticate(self.client_user["api_key"])["id"], self.client_user["id"]
        )

    def test_busy_sitter_stays_active(self) -> None:
        booking = self.make_booking()
        with self.assertRaises(BusinessRuleError):
            self.system.set_user_active(self.sitter["id"], active=False)
        self.complete_booking(booking)
        self.system.set_user_active(self.sitter["id"], active=False)
        profile = self.system.get_sitter_profile(self.sitter["id"])
        self.assertFalse(profile["is_available_for_bookings"])
        self.assertEqual(self.system.list_sitters(), [])


class PetProfileTestCase(MarketplaceTestCase):
    def test_update_pet(self) -> None:
        updated = self.system.update_pet(self.pet["id"], age=4, weight="12.5")
        self.assertEqual(updated["age"], 4)
        self.assertEqual(str(updated["weight"]), "12.5")
        self.assertEqual(updated["name"], "Rex")
        with self.assertRaises(ValidationError):
            self.system.update_pet(self.pet["id"], name=" ")
        with self.assertRaises(ValidationError):
            self.system.update_pet(self.pet["id"], age=-1)

    def test_deactivated_pet_cannot_be_booked(self) -> None:
        retired = self.system.deactivate_pet(self.pet["id"])
        self.assertFalse(retired["is_active"])
        self.assertEqual(self.system.list_pets(account_id=self.account["id"]), [])
        self.assertEqual(
            len(self.system.list_pets(account_id=self.account["id"], include_inactive=True)), 1
        )
        with self.assertRaises(ValidationError):
            self.make_booking()
        with self.assertRaises(ConflictError):
            self.system.update_pet(self.pet["id"], name="Max")

    def test_pet_with_active_booking_stays_active(self) -> None:
        self.make_booking()
        with self.assertRaises(BusinessRuleError):
            self.system.deactivate_pet(self.pet["id"])
        self.assertTrue(self.system.get_pet(self.pet["id"])["is_active"])


class SitterProfileTestCase(MarketplaceTestCase):
    def test_update_profile(self) -> None:
        profile = self.system.update_sitter_profile(
            self.sitter["id"], hourly_rate="25.00", servicing_radius=10
        )
        self.assertMoney(profile["hourly_rate"], "25.00")
        self.assertEqual(profile["servicing_radius"], 10)
        self.assertEqual(profile["bio"], "Dog person")
        with self.assertRaises(InvalidAmountError):
            self.system.update_sitter_profile(self.sitter["id"], hourly_rate="-1")

    def test_unavailable_sitter_is_hidden(self) -> None:
        self.system.update_sitter_profile(self.sitter["id"], is_available_for_bookings=False)
        self.assertEqual(self.system.list_sitters(), [])
        self.assertEqual(len(self.system.list_sitters(available_only=False)), 1)

    def test_verification(self) -> None:
        self.assertFalse(self.system.get_sitter_profile(self.sitter["id"])["is_verified"])
        self.assertTrue(self.system.verify_sitter_profile(self.sitter["id"])["is_verified"])

    def test_offering_edits_do_not_touch_existing_bookings(self) -> None:
        booking = self.make_booking()
        offering = self.system.update_service_offering(
            self.offering["id"], price="120.00", duration_minutes=90
        )
        self.assertMoney(offering["price"], "120.00")
        kept = self.system.get_booking(booking["id"])
        self.assertMoney(kept["total_price"], "100.00")
        self.assertEqual(kept["end_time"], "2026-03-03T10:00:00")
        with self.assertRaises(InvalidAmountError):
            self.system.update_service_offering(self.offering["id"], price="0")
        with self.assertRaises(ValidationError):
            self.system.update_service_offering(self.offering["id"])


class WorkExperienceTestCase(MarketplaceTestCase):
    def add(self, **kwargs) -> dict:
        kwargs.setdefault("company_name", "Happy Paws")
        kwargs.setdefault("job_title", "Kennel assistant")
        kwargs.setdefault("start_date", "2022-01-10")
        return self.system.add_work_experience(sitter_id=self.sitter["id"], **kwargs)

    def test_add_and_list_latest_first(self) -> None:
        older = self.add(end_date="2023-06-30")
        newer = self.add(company_name="City Vets", start_date="2023-07-01")
        self.assertEqual(newer["sitter_id"], self.sitter["id"])
        experiences = self.system.list_work_experiences(self.sitter["id"])
        self.assertEqual([row["id"] for row in experiences], [newer["id"], older["id"]])

    def test_date_rules(self) -> None:
        with self.assertRaises(ValidationError):
            self.add(start_date="2023-01-01", end_date="2022-12-31")
        with self.assertRaises(ValidationError):
            self.add(start_date="2027-01-01")
        with self.assertRaises(ValidationError):
            self.add(start_date="last spring")
        experience = self.add(end_date="2022-12-31")
        with self.assertRaises(ValidationError):
            self.system.update_work_experience(experience["id"], start_date="2023-02-01")

    def test_update_and_delete(self) -> None:
        experience = self.add()
        updated = self.system.update_work_experience(
            experience["id"], job_title="Head groomer", end_date="2024-05-01"
        )
        self.assertEqual(updated["job_title"], "Head groomer")
        self.assertEqual(updated["end_date"], "2024-05-01")
        self.assertEqual(updated["start_date"], "2022-01-10")
        self.system.delete_work_experience(experience["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_work_experience(experience["id"])

    def test_requires_a_sitter_profile(self) -> None:
        with self.assertRaises(NotFoundError):
            self.system.add_work_experience(
                sitter_id=self.client_user["id"],
                company_name="Happy Paws",
                job_title="Walker",
                start_date="2022-01-10",
            )


if __name__ == "__main__":
    unittest.main()
