import io
import json
import shutil
import tempfile
import unittest
from pathlib import Path
import sys
from types import SimpleNamespace
from unittest.mock import patch
from urllib import error as urlerror
from urllib import parse as urlparse

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


class FakeResponse:
    def __init__(self, body: bytes) -> None:
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def read(self) -> bytes:
        return self.body


class UnderwritingQuoteTests(unittest.TestCase):
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
        self.request = SimpleNamespace(headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"})

    def _user(self, email: str) -> dict:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE email = ?", (email,))
            return dict(cur.fetchone())

    def _payload(self, **overrides) -> main.UnderwritingQuoteIn:
        data = {
            "birth_month": "4",
            "birth_day": "12",
            "birth_year": "1980",
            "sex": "M",
            "smoker": "N",
            "face_amount": "250000",
            "state": "26",
        }
        data.update(overrides)
        return main.UnderwritingQuoteIn(**data)

    def _quote(self, user: dict, payload: main.UnderwritingQuoteIn):
        with patch.object(main, "require_session_user", return_value=user):
            return main.create_underwriting_quote(payload, request=self.request)

    def test_free_tier_is_rejected_with_upgrade_details(self) -> None:
        jordan = self._user("jordan.lee@summitlife.example")
        response = self._quote(jordan, self._payload())
        self.assertEqual(response.status_code, 403)
        body = json.loads(response.body)
        self.assertEqual(body["current_tier"], "free")
        self.assertEqual(body["required_tiers"], ["pro", "expert"])

    def test_missing_fields_and_unconfigured_service(self) -> None:
        morgan = self._user("morgan.reyes@summitlife.example")
        with self.assertRaises(HTTPException) as missing:
            self._quote(morgan, self._payload(face_amount=None))
        self.assertEqual(missing.exception.status_code, 400)

        with patch.object(main, "COMPULIFE_ENV", "development"), patch.object(main, "COMPULIFE_DEV_AUTHORIZATION_ID", ""):
            with self.assertRaises(HTTPException) as unconfigured:
                self._quote(morgan, self._payload())
        self.assertEqual(unconfigured.exception.status_code, 500)

    def test_quote_forwards_request_to_compulife(self) -> None:
        morgan = self._user("morgan.reyes@summitlife.example")
        captured = {}

        def fake_urlopen(req, timeout=None):
            captured["url"] = req.full_url
            captured["timeout"] = timeout
            return FakeResponse(b'{"Compulife_ComparisonResults": []}')

        payload = self._payload(do_cigarettes=True, period_cigarettes="3", num_cigarettes="10", weight="180")
        with patch.object(main, "COMPULIFE_ENV", "development"), patch.object(
            main, "COMPULIFE_DEV_AUTHORIZATION_ID", "dev-123"
        ), patch.object(main.urlrequest, "urlopen", side_effect=fake_urlopen):
            result = self._quote(morgan, payload)

        self.assertEqual(result, {"success": True, "data": {"Compulife_ComparisonResults": []}, "environment": "development"})
        self.assertEqual(captured["timeout"], 30)
        query = urlparse.parse_qs(urlparse.urlsplit(captured["url"]).query)
        sent = json.loads(query["COMPULIFE"][0])
        self.assertEqual(sent["COMPULIFEAUTHORIZATIONID"], "dev-123")
        self.assertEqual(sent["REMOTE_IP"], "203.0.113.9")
        self.assertEqual(sent["Health"], "PP")
        self.assertEqual(sent["Weight"], "180")
        self.assertEqual(sent["DoCigarettes"], "Y")
        self.assertEqual(sent["periodCigarettes"], "3")
        self.assertEqual(sent["numCigarettes"], "10")
        self.assertNotIn("DoCigars", sent)

    def test_upstream_error_maps_to_bad_gateway(self) -> None:
        expert = self._user(main.DEFAULT_ADMIN_EMAIL)
        error = urlerror.HTTPError(main.COMPULIFE_API_URL, 500, "Server Error", {}, io.BytesIO(b"boom"))
        with patch.object(main, "COMPULIFE_ENV", "development"), patch.object(
            main, "COMPULIFE_DEV_AUTHORIZATION_ID", "dev-123"
        ), patch.object(main.urlrequest, "urlopen", side_effect=error):
            with self.assertRaises(HTTPException) as exc:
                self._quote(expert, self._payload())
        self.assertEqual(exc.exception.status_code, 502)
        self.assertIn("500", exc.exception.detail)

    def test_client_ip_falls_back_to_real_ip_header(self) -> None:
        self.assertEqual(main.client_ip_from_request(SimpleNamespace(headers={"x-real-ip": "198.51.100.4"})), "198.51.100.4")
        self.assertEqual(main.client_ip_from_request(object()), "127.0.0.1")


if __name__ == "__main__":
    unittest.main()
