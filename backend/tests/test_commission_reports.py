import io
import shutil
import tempfile
import unittest
from pathlib import Path
import sys
from unittest.mock import patch

import openpyxl
from fastapi import HTTPException, UploadFile

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


AFLAC_REPORT = (
    "AGENT_NUMBER,AGENT_NAME,POLICY_HOLDER,POLICY_NUM,PREMIUM_AMOUNT,COMMISSION_AMT,EFFECTIVE_DT,PAID_DATE,PRODUCT_NAME\n"
    "AFL1003,Jordan Lee,Dana Whitfield,AF-20001,$1200.00,$900.00,01/15/2026,02/01/2026,Accident Advantage\n"
    "AFL1001,Morgan Reyes,Avery Cole,AF-90001,$600.00,$450.00,2026-01-20,2026-02-01,Final Expense Whole Life\n"
    "AFL9999,Nobody Known,Ghost Client,AF-90002,$300.00,$200.00,2026-01-20,2026-02-01,Accident Advantage\n"
    "AFL1002,Taylor Brooks,Zero Premium,AF-90003,$0.00,$0.00,2026-01-20,2026-02-01,Accident Advantage\n"
)


class ReportParsingTests(unittest.TestCase):
    def test_convert_report_date_formats(self) -> None:
        self.assertEqual(main.convert_report_date(45658), "2025-01-01")
        self.assertEqual(main.convert_report_date("01/15/2026"), "2026-01-15")
        self.assertEqual(main.convert_report_date("2026-01-15T00:00:00"), "2026-01-15")
        self.assertIsNone(main.convert_report_date("not a date"))
        self.assertIsNone(main.convert_report_date(""))

    def test_parse_currency_value(self) -> None:
        self.assertEqual(main.parse_currency_value("$1,250.50"), 1250.5)
        self.assertEqual(main.parse_currency_value("($1,250.50)"), -1250.5)
        self.assertEqual(main.parse_currency_value(99), 99.0)
        self.assertEqual(main.parse_currency_value("n/a"), 0.0)

    def test_standardize_record_skips_rows_missing_required_columns(self) -> None:
        config = main.CARRIER_CONFIGS["Aflac"]
        self.assertIsNone(
            main.standardize_report_record({"AGENT_NUMBER": "", "PREMIUM_AMOUNT": "10"}, config)
        )
        record = main.standardize_report_record(
            {
                "AGENT_NUMBER": 1001.0,
                "PREMIUM_AMOUNT": "$10.00",
                "POLICY_HOLDER": "Ann Lee",
                "POLICY_NUM": "P-1",
                "EFFECTIVE_DT": "02/03/2026",
            },
            config,
        )
        self.assertEqual(record["writing_agent_number"], "1001")
        self.assertEqual(record["commissionable_premium"], "$10.00")
        self.assertEqual(record["effective_date"], "2026-02-03")

    def test_load_xlsx_uses_configured_sheet(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "aetna.xlsx"
            wb = openpyxl.Workbook()
            wb.active.title = "Summary"
            ws = wb.create_sheet("Commission Details")
            ws.append(["WRITINGAGENTNUMBER", "CLIENT", "POLICYNUMBER", "COMMISSIONABLEPREMIUM"])
            ws.append(["AET1001", "Ann Lee", "P-1", 500])
            ws.append([None, None, None, None])
            wb.save(path)

            headers, rows = main.load_report_rows(path, "Commission Details")
            self.assertEqual(headers[0], "WRITINGAGENTNUMBER")
            self.assertEqual(rows, [{"WRITINGAGENTNUMBER": "AET1001", "CLIENT": "Ann Lee", "POLICYNUMBER": "P-1", "COMMISSIONABLEPREMIUM": 500}])

            with self.assertRaises(HTTPException) as exc:
                main.load_report_rows(path, "Missing Sheet")
            self.assertEqual(exc.exception.status_code, 400)
            self.assertIn("Commission Details", exc.exception.detail)


class CommissionReportTests(unittest.TestCase):
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

    def _upload(self, user: dict, carrier: str = "Aflac", filename: str = "aflac.csv", content: str = AFLAC_REPORT):
        with patch.object(main, "require_session_user", return_value=user):
            return main.upload_commission_report(
                request=object(),
                carrier=carrier,
                upload_date="2026-02-01",
                amount="$1,800.00",
                payment_identifier="CHK-1001",
                file=UploadFile(file=io.BytesIO(content.encode("utf-8")), filename=filename),
            )

    def test_upload_creates_deals_and_hierarchy_commissions(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        report = self._upload(admin)

        self.assertEqual(report.carrier_name, "Aflac")
        self.assertEqual(report.amount, 1800.0)
        self.assertEqual(report.record_count, 3)
        self.assertEqual(report.processed_count, 2)
        self.assertEqual(report.error_count, 1)
        self.assertEqual(report.status, "error")
        self.assertEqual(report.errors, ["Row 3: no agent found for writing agent number AFL9999"])
        self.assertTrue((self.test_uploads_dir / "commission-reports" / report.id / "aflac.csv").exists())

        with patch.object(main, "require_session_user", return_value=admin):
            detail = main.get_commission_report(report.id, request=object())
        by_agent = {
            (line.policy_number, line.agent_name): line.amount for line in detail.commissions
        }
        self.assertEqual(by_agent[("AF-20001", "Jordan Lee")], 366.67)
        self.assertEqual(by_agent[("AF-20001", "Taylor Brooks")], 400.0)
        self.assertEqual(by_agent[("AF-20001", "Morgan Reyes")], 433.33)
        self.assertEqual(by_agent[("AF-90001", "Morgan Reyes")], 600.0)
        self.assertTrue(all(line.status == "pending" for line in detail.commissions))
        self.assertTrue(all(line.commission_date == "2026-02-01" for line in detail.commissions))

        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT status, status_standardized, annual_premium FROM Deal WHERE policy_number = ?", ("AF-20001",))
            deal = cur.fetchone()
            self.assertEqual(deal["status"], "verified")
            self.assertEqual(deal["status_standardized"], "Active")
            self.assertEqual(deal["annual_premium"], 1200.0)
            cur.execute("SELECT COUNT(*) AS cnt FROM Deal WHERE policy_number = ?", ("AF-90001",))
            self.assertEqual(cur.fetchone()["cnt"], 1)

    def test_agents_only_see_their_hierarchy_lines(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        report = self._upload(admin)
        jordan = self._user("jordan.lee@summitlife.example")
        with patch.object(main, "require_session_user", return_value=jordan):
            detail = main.get_commission_report(report.id, request=object())
            reports = main.list_commission_reports(request=object(), carrier_id=None)
        self.assertEqual({line.agent_name for line in detail.commissions}, {"Jordan Lee"})
        self.assertEqual([item.id for item in reports], [report.id])

    def test_upload_validation(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        with self.assertRaises(HTTPException) as wrong_type:
            self._upload(admin, filename="aflac.xlsx")
        self.assertEqual(wrong_type.exception.status_code, 400)

        with self.assertRaises(HTTPException) as unknown:
            self._upload(admin, carrier="Acme Mutual")
        self.assertEqual(unknown.exception.status_code, 400)

        with self.assertRaises(HTTPException) as empty:
            self._upload(admin, content="AGENT_NUMBER,PREMIUM_AMOUNT,POLICY_HOLDER,POLICY_NUM\n,,,\n")
        self.assertEqual(empty.exception.detail, "No valid records found in the report")

        taylor = self._user("taylor.brooks@summitlife.example")
        with self.assertRaises(HTTPException) as forbidden:
            self._upload(taylor)
        self.assertEqual(forbidden.exception.status_code, 403)

    def test_delete_is_blocked_once_commissions_are_paid(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        report = self._upload(admin)
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("UPDATE Commission SET status = 'paid' WHERE report_id = ?", (report.id,))
            conn.commit()
        with patch.object(main, "require_session_user", return_value=admin):
            with self.assertRaises(HTTPException) as exc:
                main.delete_commission_report(report.id, request=object())
        self.assertEqual(exc.exception.status_code, 409)

        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("UPDATE Commission SET status = 'pending' WHERE report_id = ?", (report.id,))
            conn.commit()
        with patch.object(main, "require_session_user", return_value=admin):
            result = main.delete_commission_report(report.id, request=object())
            self.assertEqual(result, {"status": "deleted"})
            with self.assertRaises(HTTPException) as missing:
                main.get_commission_report(report.id, request=object())
        self.assertEqual(missing.exception.status_code, 404)
        self.assertFalse((self.test_uploads_dir / "commission-reports" / report.id / "aflac.csv").exists())

    def test_chargeback_rows_do_not_overwrite_deal_premium(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        self._upload(admin)
        header = AFLAC_REPORT.split("\n", 1)[0]
        mixed = (
            f"{header}\n"
            "AFL1003,Jordan Lee,Dana Whitfield,AF-20001,($1200.00),($900.00),01/15/2026,03/01/2026,Accident Advantage\n"
            "AFL1001,Morgan Reyes,Casey Park,AF-90004,$480.00,$360.00,2026-02-10,2026-03-01,Final Expense Whole Life\n"
        )
        report = self._upload(admin, content=mixed)
        self.assertEqual(report.record_count, 1)
        self.assertEqual(report.processed_count, 1)

        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT annual_premium FROM Deal WHERE policy_number = ?", ("AF-20001",))
            self.assertEqual(cur.fetchone()["annual_premium"], 1200.0)

        chargeback_only = (
            f"{header}\n"
            "AFL1003,Jordan Lee,Dana Whitfield,AF-20001,($1200.00),($900.00),01/15/2026,03/01/2026,Accident Advantage\n"
        )
        with self.assertRaises(HTTPException) as exc:
            self._upload(admin, content=chargeback_only)
        self.assertEqual(exc.exception.detail, "No valid records found in the report")

    def test_download_returns_stored_file(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        report = self._upload(admin)
        with patch.object(main, "require_session_user", return_value=admin):
            response = main.download_commission_report(report.id, request=object())
            self.assertEqual(Path(response.path).read_text(encoding="utf-8"), AFLAC_REPORT)
            (self.test_uploads_dir / "commission-reports" / report.id / "aflac.csv").unlink()
            with self.assertRaises(HTTPException) as missing:
                main.download_commission_report(report.id, request=object())
        self.assertEqual(missing.exception.status_code, 404)

    def test_carrier_configs_are_listed(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        with patch.object(main, "require_session_user", return_value=admin):
            configs = main.list_commission_report_carriers(request=object())
        by_name = {item.carrier: item for item in configs}
        self.assertEqual(by_name["Aetna"].file_type, "excel")
        self.assertEqual(by_name["Aetna"].sheet_name, "Commission Details")
        self.assertIsNotNone(by_name["Aflac"].carrier_id)


if __name__ == "__main__":
    unittest.main()
