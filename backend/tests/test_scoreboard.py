import shutil
import tempfile
import unittest
from datetime import date, timedelta
from pathlib import Path
import sys
from unittest.mock import patch

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


class TimeframeRangeTests(unittest.TestCase):
    def test_week_and_month_ranges(self) -> None:
        wednesday = date(2026, 10, 14)
        self.assertEqual(
            main.resolve_timeframe_range("this_week", wednesday),
            (date(2026, 10, 12), date(2026, 10, 18)),
        )
        self.assertEqual(
            main.resolve_timeframe_range("last_week", wednesday),
            (date(2026, 10, 5), date(2026, 10, 11)),
        )
        self.assertEqual(
            main.resolve_timeframe_range("this_month", date(2026, 2, 10)),
            (date(2026, 2, 1), date(2026, 2, 28)),
        )
        self.assertEqual(
            main.resolve_timeframe_range("last_month", date(2026, 3, 15)),
            (date(2026, 2, 1), date(2026, 2, 28)),
        )

    def test_rolling_and_year_ranges(self) -> None:
        today = date(2026, 10, 14)
        self.assertEqual(main.resolve_timeframe_range("past_7_days", today), (today - timedelta(days=6), today))
        self.assertEqual(main.resolve_timeframe_range("ytd", today), (date(2026, 1, 1), today))
        self.assertEqual(
            main.resolve_timeframe_range("past_12_months", date(2024, 2, 29)),
            (date(2023, 2, 28), date(2024, 2, 29)),
        )

    def test_custom_range_validation(self) -> None:
        today = date(2026, 10, 14)
        self.assertEqual(
            main.resolve_timeframe_range("custom", today, "2026-01-01", "2026-01-31"),
            (date(2026, 1, 1), date(2026, 1, 31)),
        )
        for args in (("custom", today), ("custom", today, "2026-02-01", "2026-01-01"), ("fortnight", today)):
            with self.assertRaises(HTTPException) as exc:
                main.resolve_timeframe_range(*args)
            self.assertEqual(exc.exception.status_code, 400)


class ScoreboardTests(unittest.TestCase):
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

    def _scoreboard(self, user: dict, **kwargs) -> main.ScoreboardOut:
        params = {
            "timeframe": "past_90_days",
            "start_date": None,
            "end_date": None,
            "scope": None,
            "submitted": False,
            "use_submitted_date": False,
        }
        params.update(kwargs)
        with patch.object(main, "require_session_user", return_value=user):
            return main.get_scoreboard(request=object(), **params)

    def test_leaderboard_ranks_issued_production(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        board = self._scoreboard(admin)
        self.assertEqual(board.scope, "agency")
        self.assertEqual(
            [(entry.rank, entry.agent_name, entry.total) for entry in board.leaderboard],
            [(1, "Taylor Brooks", 2100.0), (2, "Jordan Lee", 1240.0), (3, "Morgan Reyes", 640.0)],
        )
        self.assertEqual(board.stats.total_production, 3980.0)
        self.assertEqual(board.stats.total_deals, 3)
        self.assertEqual(board.stats.active_agents, 3)
        jordan_entry = board.leaderboard[1]
        self.assertEqual(sum(jordan_entry.daily_breakdown.values()), 1240.0)

    def test_submitted_mode_counts_pending_deals(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        board = self._scoreboard(admin, submitted=True)
        leaders = [(entry.agent_name, entry.total, entry.deal_count) for entry in board.leaderboard]
        # Jordan and Taylor tie on 2100; ties order by name.
        self.assertEqual(leaders[0], ("Jordan Lee", 2100.0, 2))
        self.assertEqual(leaders[1], ("Taylor Brooks", 2100.0, 1))

    def test_agents_are_limited_to_team_until_visibility_enabled(self) -> None:
        jordan = self._user("jordan.lee@summitlife.example")
        board = self._scoreboard(jordan, scope="agency")
        self.assertEqual(board.scope, "team")
        self.assertEqual([entry.agent_name for entry in board.leaderboard], ["Jordan Lee"])

    def test_custom_range_overrides_default_start_in_any_case(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        today = main.today_utc()
        with patch.object(main, "require_session_user", return_value=admin):
            main.update_scoreboard_settings(
                main.ScoreboardSettingsUpdate(default_scoreboard_start_date=(today - timedelta(days=10)).isoformat()),
                request=object(),
            )
        custom_start = (today - timedelta(days=60)).isoformat()
        board = self._scoreboard(
            admin,
            submitted=True,
            timeframe=" CUSTOM ",
            start_date=custom_start,
            end_date=today.isoformat(),
        )
        self.assertEqual(board.date_range.start_date, custom_start)

        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        with patch.object(main, "require_session_user", return_value=admin):
            settings = main.update_scoreboard_settings(
                main.ScoreboardSettingsUpdate(scoreboard_agent_visibility=True),
                request=object(),
            )
        self.assertTrue(settings.scoreboard_agent_visibility)

        board = self._scoreboard(jordan, scope="agency")
        self.assertEqual(board.scope, "agency")
        self.assertEqual(len(board.leaderboard), 3)

    def test_default_start_date_applies_in_submitted_mode(self) -> None:
        admin = self._user(main.DEFAULT_ADMIN_EMAIL)
        start = (main.today_utc() - timedelta(days=10)).isoformat()
        with patch.object(main, "require_session_user", return_value=admin):
            main.update_scoreboard_settings(
                main.ScoreboardSettingsUpdate(default_scoreboard_start_date=start),
                request=object(),
            )
        board = self._scoreboard(admin, submitted=True, timeframe="ytd")
        self.assertEqual(board.date_range.start_date, start)
        self.assertEqual([entry.agent_name for entry in board.leaderboard], ["Jordan Lee"])

    def test_settings_require_admin(self) -> None:
        taylor = self._user("taylor.brooks@summitlife.example")
        with patch.object(main, "require_session_user", return_value=taylor):
            current = main.get_scoreboard_settings(request=object())
            self.assertFalse(current.scoreboard_agent_visibility)
            with self.assertRaises(HTTPException) as exc:
                main.update_scoreboard_settings(
                    main.ScoreboardSettingsUpdate(scoreboard_agent_visibility=True),
                    request=object(),
                )
        self.assertEqual(exc.exception.status_code, 403)


if __name__ == "__main__":
    unittest.main()
