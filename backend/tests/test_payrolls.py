import shutil
import tempfile
import unittest
import uuid
from datetime import date
from pathlib import Path
import sys
from unittest.mock import patch

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


class PayoutMathTests(unittest.TestCase):
    def test_negative_balance_carries_forward(self) -> None:
        self.assertEqual(
            main.compute_payout_amounts(0, 500, 0),
            {"amount": 500.0, "amount_paid": 500.0, "carry_forward_out": 0.0},
        )
        self.assertEqual(
            main.compute_payout_amounts(0, -200, 50),
            {"amount": -150.0, "amount_paid": 0.0, "carry_forward_out": -150.0},
        )
        self.assertEqual(
            main.compute_payout_amounts(-150, 400, 0),
            {"amount": 250.0, "amount_paid": 250.0, "carry_forward_out": 0.0},
        )

    def test_unvested_fraction(self) -> None:
        effective = date(2026, 1, 1)
        self.assertEqual(main.unvested_fraction(effective, date(2026, 1, 20)), 1.0)
        self.assertAlmostEqual(main.unvested_fraction(effective, date(2026, 3, 2)), 1 - (60 / 30) / 9)
        self.assertEqual(main.unvested_fraction(effective, date(2026, 12, 1)), 0.0)
        self.assertEqual(main.unvested_fraction(None, date(2026, 3, 2)), 1.0)

    def test_expected_commission_uses_spread_over_downline(self) -> None:
        self.assertEqual(main.expected_commission(1000, 120, 110), 75.0)
        self.assertEqual(main.expected_commission(1000, 110, 120), 0.0)


class PayrollTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_uploads_dir = main.UPLOADS_DIR
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"
        cls.test_uploads_dir = cls.temp_root / "uploads"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.UPLOADS_DIR = cls.original_uploads_dir
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        shutil.rmtree(self.test_uploads_dir, ignore_errors=True)
        self.test_uploads_dir.mkdir(parents=True, exist_ok=True)
        main.DB_PATH = self.test_db_path
        main.UPLOADS_DIR = self.test_uploads_dir
        main.init_db()
        self.admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        self.morgan = self._user("morgan.reyes@summitlife.example")
        self.taylor = self._user("taylor.brooks@summitlife.example")
        self.jordan = self._user("jordan.lee@summitlife.example")

    def _user(self, email: str) -> dict:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE email = ?", (email,))
            return dict(cur.fetchone())

    def _add_commission(self, agent_id: str, amount: float, commission_date: str) -> None:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO Commission (
                    id, agency_id, report_id, deal_id, agent_id, commission_type, percentage, amount,
                    status, payroll_id, commission_date, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    self.admin["agency_id"],
                    None,
                    None,
                    agent_id,
                    "writing",
                    100.0,
                    amount,
                    "pending",
                    None,
                    commission_date,
                    main.now_iso(),
                ),
            )
            conn.commit()

    def _create_payroll(self, pay_date: str, adjustments=None) -> main.PayrollDetailOut:
        with patch.object(main, "require_session_user", return_value=self.admin):
            return main.create_payroll(
                main.PayrollIn(pay_date=pay_date, adjustments=adjustments or {}),
                request=object(),
            )

    def test_payroll_pays_positive_balances_and_carries_negative(self) -> None:
        self._add_commission(self.morgan["id"], 500.0, "2026-01-10")
        self._add_commission(self.taylor["id"], -200.0, "2026-01-12")
        self._add_commission(self.jordan["id"], 100.0, "2026-03-01")

        payroll = self._create_payroll("2026-01-31", {self.taylor["id"]: 50.0})
        self.assertEqual(payroll.status, "draft")
        self.assertEqual(payroll.total_amount, 500.0)
        self.assertEqual(payroll.agent_count, 2)
        self.assertEqual([item.agent for item in payroll.payouts], ["Brooks, Taylor", "Reyes, Morgan"])
        taylor_payout = payroll.payouts[0]
        self.assertEqual(taylor_payout.amount, -150.0)
        self.assertEqual(taylor_payout.amount_paid, 0.0)
        self.assertEqual(taylor_payout.carry_forward_out, -150.0)

        with self.assertRaises(HTTPException) as exc:
            self._create_payroll("2026-02-15")
        self.assertEqual(exc.exception.status_code, 409)

        with patch.object(main, "require_session_user", return_value=self.admin):
            published = main.publish_payroll(payroll.id, request=object())
        self.assertEqual(published.status, "published")
        self.assertIsNotNone(published.published_at)

        self._add_commission(self.taylor["id"], 400.0, "2026-02-15")
        second = self._create_payroll("2026-03-31")
        payouts = {item.agent_id: item for item in second.payouts}
        self.assertEqual(payouts[self.taylor["id"]].carry_forward_in, -150.0)
        self.assertEqual(payouts[self.taylor["id"]].amount_paid, 250.0)
        self.assertEqual(payouts[self.jordan["id"]].amount_paid, 100.0)
        self.assertNotIn(self.morgan["id"], payouts)
        self.assertEqual(second.total_amount, 350.0)

    def test_publish_marks_commissions_paid_and_agents_see_published_only(self) -> None:
        self._add_commission(self.jordan["id"], 120.0, "2026-01-05")
        self._add_commission(self.taylor["id"], 80.0, "2026-01-05")
        payroll = self._create_payroll("2026-01-31")

        with patch.object(main, "require_session_user", return_value=self.jordan):
            self.assertEqual(main.list_payrolls(request=object()), [])
            with self.assertRaises(HTTPException) as hidden:
                main.get_payroll(payroll.id, request=object())
        self.assertEqual(hidden.exception.status_code, 404)

        with patch.object(main, "require_session_user", return_value=self.admin):
            main.publish_payroll(payroll.id, request=object())
            with self.assertRaises(HTTPException) as again:
                main.publish_payroll(payroll.id, request=object())
            self.assertEqual(again.exception.status_code, 409)
            with self.assertRaises(HTTPException) as locked:
                main.delete_payroll(payroll.id, request=object())
            self.assertEqual(locked.exception.status_code, 409)

        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT DISTINCT status FROM Commission WHERE payroll_id = ?", (payroll.id,))
            self.assertEqual([row["status"] for row in cur.fetchall()], ["paid"])

        with patch.object(main, "require_session_user", return_value=self.jordan):
            listed = main.list_payrolls(request=object())
            detail = main.get_payroll(payroll.id, request=object())
        self.assertEqual([item.id for item in listed], [payroll.id])
        self.assertEqual([item.agent_id for item in detail.payouts], [self.jordan["id"]])

    def test_deleting_draft_releases_commissions(self) -> None:
        self._add_commission(self.morgan["id"], 300.0, "2026-01-05")
        payroll = self._create_payroll("2026-01-31")
        with patch.object(main, "require_session_user", return_value=self.admin):
            self.assertEqual(main.delete_payroll(payroll.id, request=object()), {"status": "deleted"})
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) AS cnt FROM Commission WHERE payroll_id IS NULL AND status = 'pending'")
            self.assertEqual(cur.fetchone()["cnt"], 1)
        again = self._create_payroll("2026-01-31")
        self.assertEqual(again.total_amount, 300.0)


class ExpectedPayoutTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_uploads_dir = main.UPLOADS_DIR
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"
        cls.test_uploads_dir = cls.temp_root / "uploads"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.UPLOADS_DIR = cls.original_uploads_dir
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        shutil.rmtree(self.test_uploads_dir, ignore_errors=True)
        self.test_uploads_dir.mkdir(parents=True, exist_ok=True)
        main.DB_PATH = self.test_db_path
        main.UPLOADS_DIR = self.test_uploads_dir
        main.init_db()

    def _user(self, email: str) -> dict:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE email = ?", (email,))
            return dict(cur.fetchone())

    def _payouts(self, user: dict, agent_id=None) -> main.ExpectedPayoutsOut:
        with patch.object(main, "require_session_user", return_value=user):
            return main.get_expected_payouts(request=object(), agent_id=agent_id, start_date=None, end_date=None)

    def test_writing_agent_and_override_payouts(self) -> None:
        jordan = self._user("jordan.lee@summitlife.example")
        taylor = self._user("taylor.brooks@summitlife.example")
        morgan = self._user("morgan.reyes@summitlife.example")

        jordan_payouts = self._payouts(jordan)
        self.assertEqual(jordan_payouts.total, 1732.5)
        self.assertEqual(sum(month.deal_count for month in jordan_payouts.months), 2)

        self.assertEqual(self._payouts(taylor).total, 2047.5)
        # Morgan's own lapsed deal is excluded; only overrides remain.
        self.assertEqual(self._payouts(morgan).total, 315.0)

        viewed_by_upline = self._payouts(morgan, agent_id=jordan["id"])
        self.assertEqual(viewed_by_upline.total, 1732.5)

        with self.assertRaises(HTTPException) as exc:
            self._payouts(jordan, agent_id=morgan["id"])
        self.assertEqual(exc.exception.status_code, 403)

    def test_lapsed_deal_debt_is_prorated(self) -> None:
        morgan = self._user("morgan.reyes@summitlife.example")
        with patch.object(main, "require_session_user", return_value=morgan):
            debt = main.get_agent_debt(request=object(), agent_id=None)
        self.assertEqual(debt.lapsed_deals_count, 1)
        item = debt.breakdown[0]
        self.assertEqual(item.client_name, "Grace Kim")
        self.assertEqual(item.expected_commission, 624.0)
        self.assertAlmostEqual(item.debt, 526.93, places=2)
        self.assertAlmostEqual(debt.total_debt, 526.93, places=2)

        jordan = self._user("jordan.lee@summitlife.example")
        with patch.object(main, "require_session_user", return_value=jordan):
            self.assertEqual(main.get_agent_debt(request=object(), agent_id=None).total_debt, 0.0)


if __name__ == "__main__":
    unittest.main()
