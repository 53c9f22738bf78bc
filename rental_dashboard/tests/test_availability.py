import unittest
from datetime import date

from support import DatabaseTestCase

from rental_dashboard.services.availability_service import (
    AvailabilityError,
    asset_is_booked,
    available_units,
    committed_units,
    max_daily_usage,
    peak_commitment,
    validate_cart,
)


class MaxDailyUsageTests(unittest.TestCase):
    def test_peak_is_taken_per_day_not_summed_over_range(self):
        reservations = [
            (date(2024, 1, 1), date(2024, 1, 2), 2),
            (date(2024, 1, 4), date(2024, 1, 5), 3),
        ]
        self.assertEqual(max_daily_usage(reservations, date(2024, 1, 1), date(2024, 1, 5)), 3)

    def test_overlapping_reservations_add_up_on_shared_days(self):
        reservations = [
            (date(2024, 1, 1), date(2024, 1, 3), 2),
            (date(2024, 1, 3), date(2024, 1, 6), 1),
        ]
        self.assertEqual(max_daily_usage(reservations, date(2024, 1, 1), date(2024, 1, 10)), 3)
        self.assertEqual(max_daily_usage(reservations, date(2024, 1, 4), date(2024, 1, 10)), 1)

    def test_invalid_window_and_no_reservations(self):
        self.assertEqual(max_daily_usage([(date(2024, 1, 1), date(2024, 1, 3), 2)], date(2024, 1, 3), date(2024, 1, 1)), 0)
        self.assertEqual(max_daily_usage([], date(2024, 1, 1), date(2024, 1, 3)), 0)

    def test_ranges_ending_on_the_last_calendar_day(self):
        reservations = [
            (date(9999, 12, 30), date.max, 1),
            (date(9999, 12, 31), date.max, 2),
        ]
        self.assertEqual(max_daily_usage(reservations, date(9999, 12, 1), date.max), 3)
        self.assertEqual(max_daily_usage(reservations, date(9999, 12, 1), date(9999, 12, 30)), 1)


class AvailabilityTests(DatabaseTestCase):
    def test_overlapping_reservation_reduces_availability(self):
        product = self.add_product(total=5)
        self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 3)], status="reserved")

        self.assertEqual(available_units(self.db, product.ProductID, date(2024, 1, 11), date(2024, 1, 13)), 2)

    def test_order_ending_on_the_last_calendar_day(self):
        product = self.add_product(total=5)
        self.add_order(date(9999, 12, 30), date.max, [(product, 2)], status="reserved")

        self.assertEqual(available_units(self.db, product.ProductID, date(9999, 12, 30), date.max), 3)
        self.assertEqual(peak_commitment(self.db, product.ProductID, date(9999, 12, 1)), 2)

    def test_repeated_calls_return_the_same_value(self):
        product = self.add_product(total=5)
        self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 3)])

        first = available_units(self.db, product.ProductID, date(2024, 1, 11), date(2024, 1, 13))
        second = available_units(self.db, product.ProductID, date(2024, 1, 11), date(2024, 1, 13))
        self.assertEqual(first, second)

    def test_never_negative_when_commitments_exceed_stock(self):
        product = self.add_product(total=2)
        self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 2)])
        self.add_order(date(2024, 1, 11), date(2024, 1, 11), [(product, 3)], status="picked_up")

        self.assertEqual(committed_units(self.db, product.ProductID, date(2024, 1, 10), date(2024, 1, 12)), 5)
        self.assertEqual(available_units(self.db, product.ProductID, date(2024, 1, 10), date(2024, 1, 12)), 0)

    def test_end_before_start_is_zero(self):
        product = self.add_product(total=5)
        self.assertEqual(available_units(self.db, product.ProductID, date(2024, 1, 13), date(2024, 1, 11)), 0)

    def test_missing_product_raises_lookup_error(self):
        with self.assertRaises(LookupError):
            available_units(self.db, 999, date(2024, 1, 1), date(2024, 1, 2))

    def test_only_stock_holding_statuses_count(self):
        product = self.add_product(total=5)
        for status in ("pending_signature", "returned", "canceled"):
            self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 4)], status=status)
        self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 1)], status="signed")

        self.assertEqual(available_units(self.db, product.ProductID, date(2024, 1, 10), date(2024, 1, 12)), 4)

    def test_excluded_order_is_ignored(self):
        product = self.add_product(total=5)
        editing = self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 3)])
        self.add_order(date(2024, 1, 12), date(2024, 1, 14), [(product, 1)])

        self.assertEqual(available_units(self.db, product.ProductID, date(2024, 1, 10), date(2024, 1, 12)), 1)
        self.assertEqual(
            available_units(self.db, product.ProductID, date(2024, 1, 10), date(2024, 1, 12), exclude_order_id=editing.OrderID),
            4,
        )

    def test_bulk_products_use_the_same_math(self):
        product = self.add_product(name="Cadeira Tiffany", total=100, kind="bulk", price="4.50")
        self.add_order(date(2024, 5, 1), date(2024, 5, 2), [(product, 60)])
        self.add_order(date(2024, 5, 2), date(2024, 5, 3), [(product, 30)])

        self.assertEqual(available_units(self.db, product.ProductID, date(2024, 5, 1), date(2024, 5, 3)), 10)

    def test_peak_commitment_looks_forward_from_a_date(self):
        product = self.add_product(total=5)
        self.add_order(date(2024, 1, 1), date(2024, 1, 2), [(product, 4)])
        self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 2)])

        self.assertEqual(peak_commitment(self.db, product.ProductID, date(2024, 1, 1)), 4)
        self.assertEqual(peak_commitment(self.db, product.ProductID, date(2024, 1, 5)), 2)
        self.assertEqual(peak_commitment(self.db, product.ProductID, date(2024, 2, 1)), 0)


class ValidateCartTests(DatabaseTestCase):
    def test_same_product_twice_is_summed(self):
        product = self.add_product(total=5)
        self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 3)])

        with self.assertRaises(AvailabilityError) as ctx:
            validate_cart(
                self.db,
                [(product.ProductID, 1), (product.ProductID, 2)],
                date(2024, 1, 11),
                date(2024, 1, 11),
            )
        self.assertEqual(ctx.exception.requested, 3)
        self.assertEqual(ctx.exception.available, 2)
        self.assertEqual(ctx.exception.committed, 3)
        self.assertIn("3 already committed", str(ctx.exception))

    def test_line_above_total_stock_is_rejected(self):
        product = self.add_product(total=2)
        with self.assertRaises(AvailabilityError) as ctx:
            validate_cart(self.db, [(product.ProductID, 3)], date(2024, 1, 1), date(2024, 1, 2))
        self.assertIn("total stock is 2", str(ctx.exception))

    def test_returns_remaining_units_per_product(self):
        camera = self.add_product(total=5)
        tripod = self.add_product(name="Tripé", total=3, price="20.00")
        remaining = validate_cart(
            self.db,
            [(camera.ProductID, 2), (tripod.ProductID, 3)],
            date(2024, 1, 1),
            date(2024, 1, 2),
        )
        self.assertEqual(remaining, {camera.ProductID: 3, tripod.ProductID: 0})

    def test_bad_quantity_and_range(self):
        product = self.add_product(total=5)
        with self.assertRaises(ValueError):
            validate_cart(self.db, [(product.ProductID, 0)], date(2024, 1, 1), date(2024, 1, 2))
        with self.assertRaises(ValueError):
            validate_cart(self.db, [(product.ProductID, 1)], date(2024, 1, 3), date(2024, 1, 2))

    def test_asset_booking_follows_committed_orders(self):
        product = self.add_product(total=2)
        asset = self.add_asset(product, "SN-001")
        order = self.add_order(date(2024, 1, 10), date(2024, 1, 12), [(product, 1)])
        order.Items[0].AssetID = asset.AssetID
        self.db.commit()

        self.assertTrue(asset_is_booked(self.db, asset.AssetID, date(2024, 1, 12), date(2024, 1, 15)))
        self.assertFalse(asset_is_booked(self.db, asset.AssetID, date(2024, 1, 13), date(2024, 1, 15)))
        self.assertFalse(
            asset_is_booked(self.db, asset.AssetID, date(2024, 1, 10), date(2024, 1, 12), exclude_order_id=order.OrderID)
        )


if __name__ == "__main__":
    unittest.main()
