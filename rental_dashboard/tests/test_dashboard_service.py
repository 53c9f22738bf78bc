from datetime import date, timedelta
from decimal import Decimal

from support import DatabaseTestCase

from rental_dashboard.services.dashboard_service import (
    build_timeline,
    get_metrics,
    monthly_revenue,
    pending_pickups,
    pending_returns,
)


class DashboardTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.user = self.add_user()
        self.other = self.add_user(email="outra@locadora.com.br", business_name=None, cnpj=None)
        self.camera = self.add_product(owner_id=self.user.UserID, total=4)
        self.today = date(2024, 6, 15)

    def test_metrics_count_only_the_owner_rows(self):
        uid = self.user.UserID
        self.add_order(self.today, self.today, [(self.camera, 1)], status="reserved", owner_id=uid, customer="Ana", total="100.00")
        self.add_order(self.today, self.today, [(self.camera, 1)], status="picked_up", owner_id=uid, customer="Bruno", total="250.00")
        self.add_order(self.today, self.today, [(self.camera, 1)], status="canceled", owner_id=uid, customer="Ana", total="999.00")
        self.add_order(self.today, self.today, [(self.camera, 1)], status="returned", owner_id=self.other.UserID, total="50.00")

        metrics = get_metrics(self.db, uid)
        self.assertEqual(metrics["totalOrders"], 3)
        self.assertEqual(metrics["activeRentals"], 2)
        self.assertEqual(Decimal(metrics["totalRevenue"]), Decimal("350.00"))
        self.assertEqual(metrics["totalCustomers"], 2)
        self.assertEqual(metrics["productCount"], 1)
        self.assertTrue(metrics["companyConfigured"])
        self.assertFalse(get_metrics(self.db, self.other.UserID)["companyConfigured"])

    def test_todays_pickups_and_returns(self):
        uid = self.user.UserID
        waiting = self.add_order(self.today, self.today + timedelta(days=2), [(self.camera, 1)], status="signed", owner_id=uid)
        self.add_order(self.today, self.today + timedelta(days=2), [(self.camera, 1)], status="pending_signature", owner_id=uid)
        self.add_order(self.today, self.today + timedelta(days=2), [(self.camera, 1)], status="picked_up", owner_id=uid)
        due = self.add_order(self.today - timedelta(days=3), self.today, [(self.camera, 2)], status="picked_up", owner_id=uid)

        pickups = pending_pickups(self.db, uid, today=self.today)
        returns = pending_returns(self.db, uid, today=self.today)
        self.assertEqual([row["orderID"] for row in pickups], [waiting.OrderID])
        self.assertEqual([row["orderID"] for row in returns], [due.OrderID])
        self.assertEqual(returns[0]["itemCount"], 2)

    def test_monthly_revenue_has_every_month_in_the_window(self):
        uid = self.user.UserID
        self.add_order(date(2024, 6, 2), date(2024, 6, 3), [(self.camera, 1)], owner_id=uid, total="300.00", status="returned")
        self.add_order(date(2024, 6, 20), date(2024, 6, 21), [(self.camera, 1)], owner_id=uid, total="200.00")
        self.add_order(date(2024, 4, 10), date(2024, 4, 11), [(self.camera, 1)], owner_id=uid, total="80.00", status="canceled")
        self.add_order(date(2024, 1, 5), date(2024, 1, 6), [(self.camera, 1)], owner_id=uid, total="75.00")
        self.add_order(date(2023, 12, 5), date(2023, 12, 6), [(self.camera, 1)], owner_id=uid, total="999.00")

        rows = monthly_revenue(self.db, uid, months=6, today=self.today)
        self.assertEqual([(row["year"], row["month"]) for row in rows], [(2024, m) for m in range(1, 7)])
        self.assertEqual(rows[0]["label"], "jan/24")
        self.assertEqual(rows[0]["revenue"], Decimal("75.00"))
        self.assertEqual(rows[3]["revenue"], Decimal("0"))
        self.assertEqual(rows[5]["revenue"], Decimal("500.00"))

    def test_monthly_revenue_window_crosses_year_boundary(self):
        rows = monthly_revenue(self.db, self.user.UserID, months=3, today=date(2024, 2, 10))
        self.assertEqual([(row["year"], row["month"]) for row in rows], [(2023, 12), (2024, 1), (2024, 2)])
        with self.assertRaises(ValueError):
            monthly_revenue(self.db, self.user.UserID, months=0)

    def test_timeline_rows_per_product(self):
        uid = self.user.UserID
        tripod = self.add_product(name="Tripé", owner_id=uid, total=2, price="15.00")
        self.add_order(self.today + timedelta(days=1), self.today + timedelta(days=2), [(self.camera, 2)], status="pending_signature", owner_id=uid)
        self.add_order(self.today + timedelta(days=20), self.today + timedelta(days=22), [(self.camera, 1)], owner_id=uid)
        self.add_order(self.today, self.today, [(tripod, 1)], status="canceled", owner_id=uid)

        timeline = build_timeline(self.db, uid, start=self.today, days=15)
        self.assertEqual(len(timeline["days"]), 15)
        self.assertEqual(timeline["endDate"], (self.today + timedelta(days=14)).isoformat())
        rows = {row["name"]: row for row in timeline["rows"]}
        self.assertEqual(len(rows["Câmera Sony A7"]["bookings"]), 1)
        self.assertFalse(rows["Câmera Sony A7"]["bookings"][0]["holdsStock"])
        self.assertEqual(rows["Tripé"]["bookings"], [])
