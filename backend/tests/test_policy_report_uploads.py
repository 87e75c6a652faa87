import shutil
import tempfile
import time
import unittest
from pathlib import Path
import sys
from unittest.mock import patch
from urllib import parse as urlparse

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


CSV_TYPE = "text/csv"


class PolicyReportUploadTests(unittest.TestCase):
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
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE email = ?", (main.DEFAULT_ADMIN_EMAIL,))
            self.admin = dict(cur.fetchone())

    def _sign(self, **overrides) -> main.PolicyReportSignOut:
        data = {"filename": "Book Export (Jan).csv", "content_type": CSV_TYPE, "size": 64, "carrier": "Aflac"}
        data.update(overrides)
        with patch.object(main, "require_session_user", return_value=self.admin):
            return main.sign_policy_report_upload(main.PolicyReportSignIn(**data), request=object())

    def _token(self, signed: main.PolicyReportSignOut) -> str:
        query = urlparse.parse_qs(urlparse.urlsplit(signed.signed_url).query)
        return query["token"][0]

    def test_sign_then_upload_stores_file(self) -> None:
        signed = self._sign(carrier="Foresters Financial")
        self.assertTrue(signed.signed_url.startswith("/api/upload-policy-reports/upload?token="))
        self.assertRegex(signed.path, rf"^{self.admin['agency_id']}/Foresters_Financial/\d+_Book_Export_Jan_.csv$")
        self.assertEqual(signed.expires_in_seconds, main.SIGNED_UPLOAD_TTL_SECONDS)

        claims = main.verify_upload_token(self._token(signed))
        self.assertEqual(claims["path"], signed.path)
        body = b"policy,status\nAF-1,Active\n"
        stored = main.store_policy_report_upload(claims, body, "text/csv; charset=utf-8")
        self.assertEqual(stored.size, len(body))
        self.assertEqual(stored.carrier, "Foresters Financial")
        self.assertEqual((self.test_uploads_dir / "policy-reports" / signed.path).read_bytes(), body)

        with self.assertRaises(HTTPException) as reused:
            main.store_policy_report_upload(claims, body, CSV_TYPE)
        self.assertEqual(reused.exception.status_code, 409)

        with patch.object(main, "require_session_user", return_value=self.admin):
            files = main.list_policy_report_files(request=object())
        self.assertEqual([item.id for item in files], [stored.id])

    def test_sign_validation(self) -> None:
        with self.assertRaises(HTTPException) as bad_type:
            self._sign(content_type="application/pdf")
        self.assertEqual(bad_type.exception.status_code, 400)

        with self.assertRaises(HTTPException) as too_large:
            self._sign(size=main.POLICY_REPORT_MAX_BYTES + 1)
        self.assertEqual(too_large.exception.status_code, 413)

        with self.assertRaises(HTTPException) as no_carrier:
            self._sign(carrier="  ")
        self.assertEqual(no_carrier.exception.status_code, 400)

    def test_token_signature_and_expiry(self) -> None:
        token = self._token(self._sign())
        body, _, signature = token.partition(".")
        with self.assertRaises(HTTPException) as tampered:
            main.verify_upload_token(f"{body}.{'0' * len(signature)}")
        self.assertEqual(tampered.exception.status_code, 403)

        with self.assertRaises(HTTPException) as expired:
            main.verify_upload_token(token, now=time.time() + main.SIGNED_UPLOAD_TTL_SECONDS + 5)
        self.assertEqual(expired.exception.status_code, 403)

        with self.assertRaises(HTTPException) as garbage:
            main.verify_upload_token("not-a-token")
        self.assertEqual(garbage.exception.status_code, 400)

    def test_upload_body_must_match_signed_claims(self) -> None:
        claims = main.verify_upload_token(self._token(self._sign(size=10)))
        with self.assertRaises(HTTPException) as wrong_type:
            main.store_policy_report_upload(claims, b"a,b\n1,2\n", "application/vnd.ms-excel")
        self.assertEqual(wrong_type.exception.status_code, 400)

        with self.assertRaises(HTTPException) as empty:
            main.store_policy_report_upload(claims, b"", CSV_TYPE)
        self.assertEqual(empty.exception.status_code, 400)

        with self.assertRaises(HTTPException) as oversized:
            main.store_policy_report_upload(claims, b"x" * 11, CSV_TYPE)
        self.assertEqual(oversized.exception.status_code, 413)

    def test_create_job_is_idempotent_per_client_job_id(self) -> None:
        with patch.object(main, "require_session_user", return_value=self.admin):
            first = main.create_policy_report_job(
                main.PolicyReportJobIn(expected_files=3, client_job_id="batch-1"), request=object()
            )
            second = main.create_policy_report_job(
                main.PolicyReportJobIn(expected_files=5, client_job_id="batch-1"), request=object()
            )
            jobs = main.list_policy_report_jobs(request=object())
            with self.assertRaises(HTTPException) as invalid:
                main.create_policy_report_job(
                    main.PolicyReportJobIn(expected_files=0, client_job_id="batch-2"), request=object()
                )
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.expected_files, 3)
        self.assertEqual(first.status, "queued")
        self.assertEqual(len(jobs), 1)
        self.assertEqual(invalid.exception.status_code, 400)


if __name__ == "__main__":
    unittest.main()
