from __future__ import annotations

import base64
import csv
import hashlib
import hmac
import json
import logging
import os
import re
import secrets
import sqlite3
import time
import uuid
from calendar import monthrange
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

import fitz
import openpyxl
import xlrd
from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel

BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

uploads_dir_raw = os.getenv("UPLOADS_DIR", str(BASE_DIR.parent / "uploads"))
UPLOADS_DIR = Path(uploads_dir_raw).expanduser()
if not UPLOADS_DIR.is_absolute():
    UPLOADS_DIR = (BASE_DIR.parent / UPLOADS_DIR).resolve()
else:
    UPLOADS_DIR = UPLOADS_DIR.resolve()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax").strip().lower()
if SESSION_COOKIE_SAMESITE not in {"lax", "strict", "none"}:
    SESSION_COOKIE_SAMESITE = "lax"

DEFAULT_AGENCY_NAME = os.getenv("DEFAULT_AGENCY_NAME", "Summit Life Agency").strip()
DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@summitlife.example").strip().lower()
DEFAULT_ADMIN_FIRST_NAME = os.getenv("DEFAULT_ADMIN_FIRST_NAME", "Avery").strip()
DEFAULT_ADMIN_LAST_NAME = os.getenv("DEFAULT_ADMIN_LAST_NAME", "Stone").strip()
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "ChangeMe123!").strip()
DEFAULT_USER_PASSWORD = os.getenv("DEFAULT_USER_PASSWORD", "ChangeMe123!").strip()

CRON_SECRET = os.getenv("CRON_SECRET", "").strip()
UPLOAD_SIGNING_SECRET = os.getenv("UPLOAD_SIGNING_SECRET", "").strip() or secrets.token_hex(32)
SIGNED_UPLOAD_TTL_SECONDS = int(os.getenv("SIGNED_UPLOAD_TTL_SECONDS", "60"))
POLICY_REPORT_MAX_BYTES = int(os.getenv("POLICY_REPORT_MAX_BYTES", str(25 * 1024 * 1024)))

NIPR_RATE_LIMIT_PER_HOUR = int(os.getenv("NIPR_RATE_LIMIT_PER_HOUR", "20"))
NIPR_MAX_CONCURRENT_JOBS = int(os.getenv("NIPR_MAX_CONCURRENT_JOBS", "2"))
NIPR_JOB_TIMEOUT_MINUTES = int(os.getenv("NIPR_JOB_TIMEOUT_MINUTES", "10"))
NIPR_MAX_ATTEMPTS = int(os.getenv("NIPR_MAX_ATTEMPTS", "3"))
NIPR_SSE_POLL_SECONDS = float(os.getenv("NIPR_SSE_POLL_SECONDS", "2"))
NIPR_SSE_TIMEOUT_SECONDS = float(os.getenv("NIPR_SSE_TIMEOUT_SECONDS", "600"))
NIPR_MAX_UPLOAD_BYTES = int(os.getenv("NIPR_MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))
NIPR_CARRIER_MATCH_THRESHOLD = 0.8

COMPULIFE_API_URL = os.getenv("COMPULIFE_API_URL", "https://www.compulifeapi.com/api/request/").strip()
COMPULIFE_ENV = os.getenv("COMPULIFE_ENV", "development").strip().lower()
COMPULIFE_DEV_AUTHORIZATION_ID = os.getenv("COMPULIFE_DEV_AUTHORIZATION_ID", "").strip()
COMPULIFE_PROD_AUTHORIZATION_ID = os.getenv("COMPULIFE_PROD_AUTHORIZATION_ID", "").strip()

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

SESSION_COOKIE_NAME = "agency_session"
SESSION_DURATION_HOURS = 24 * 7

ALLOWED_USER_ROLES = {"admin", "agent", "client"}
SUBSCRIPTION_TIERS = {"free", "basic", "pro", "expert"}
UNDERWRITING_TIERS = ["pro", "expert"]
PASSWORD_MIN_LENGTH = 8

DEAL_VIEWS = {"self", "downlines", "agency"}
DEAL_PAGE_DEFAULT = 50
DEAL_PAGE_MAX = 200
STATUS_MODE_IMPACTS = {"active": "positive", "pending": "neutral", "inactive": "negative"}
STATUS_IMPACTS = {"positive", "neutral", "negative"}
EXPECTED_PAYOUT_ADVANCE_RATE = 0.75
CHARGEBACK_FULL_DAYS = 30
CHARGEBACK_VESTING_MONTHS = 9
PRODUCT_MATCH_THRESHOLD = 0.7

SCOREBOARD_TIMEFRAMES = {
    "this_week",
    "last_week",
    "past_7_days",
    "past_14_days",
    "this_month",
    "last_month",
    "past_30_days",
    "past_90_days",
    "past_180_days",
    "past_12_months",
    "ytd",
    "custom",
}
ROLLING_TIMEFRAME_DAYS = {
    "past_7_days": 6,
    "past_14_days": 13,
    "past_30_days": 29,
    "past_90_days": 89,
    "past_180_days": 179,
}

POLICY_REPORT_CONTENT_TYPES = {
    "text/csv",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

US_STATES = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas", "CA": "California",
    "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware", "DC": "District of Columbia",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho", "IL": "Illinois",
    "IN": "Indiana", "IA": "Iowa", "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana",
    "ME": "Maine", "MD": "Maryland", "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota",
    "MS": "Mississippi", "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma", "OR": "Oregon",
    "PA": "Pennsylvania", "PR": "Puerto Rico", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah", "VT": "Vermont",
    "VA": "Virginia", "WA": "Washington", "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}

# Column names per carrier statement. Keys on the left are the carrier's headers,
# values are the standardized record fields.
CARRIER_CONFIGS: Dict[str, Dict[str, Any]] = {
    "Aetna": {
        "file_type": "excel",
        "sheet_name": "Commission Details",
        "column_mapping": {
            "COMPANY": "company",
            "COMMISSIONTYPE": "commission_type",
            "WRITINGAGENTNUMBER": "writing_agent_number",
            "WRITINGAGENTNAME": "writing_agent_name",
            "CLIENT": "client_name",
            "POLICYNUMBER": "policy_number",
            "APPDATE": "app_date",
            "STATE": "state",
            "PRODUCT": "product",
            "EFFECTIVEDATE": "effective_date",
            "COMMISSIONABLEPREMIUM": "commissionable_premium",
            "SPLIT%": "split_percentage",
            "RATE%": "commission_rate",
            "COMMISSIONAMOUNT": "commission_amount",
            "MODE": "payment_mode",
            "COMMISSIONPAIDDATE": "commission_paid_date",
        },
        "required_columns": ["WRITINGAGENTNUMBER", "COMMISSIONABLEPREMIUM", "CLIENT", "POLICYNUMBER"],
        "currency_symbol": "$",
    },
    "Aflac": {
        "file_type": "csv",
        "column_mapping": {
            "AGENT_NUMBER": "writing_agent_number",
            "AGENT_NAME": "writing_agent_name",
            "POLICY_HOLDER": "client_name",
            "POLICY_NUM": "policy_number",
            "PREMIUM_AMOUNT": "commissionable_premium",
            "COMMISSION_AMT": "commission_amount",
            "EFFECTIVE_DT": "effective_date",
            "PAID_DATE": "commission_paid_date",
            "PRODUCT_NAME": "product",
        },
        "required_columns": ["AGENT_NUMBER", "PREMIUM_AMOUNT", "POLICY_HOLDER", "POLICY_NUM"],
        "currency_symbol": "$",
    },
    "American Amicable / Occidental": {
        "file_type": "csv",
        "column_mapping": {
            "WritingAgentID": "writing_agent_number",
            "AgentName": "writing_agent_name",
            "ClientName": "client_name",
            "PolicyNumber": "policy_number",
            "Premium": "commissionable_premium",
            "CommissionPaid": "commission_amount",
            "PolicyEffectiveDate": "effective_date",
            "CommissionDate": "commission_paid_date",
            "ProductName": "product",
            "CommissionType": "commission_type",
        },
        "required_columns": ["WritingAgentID", "Premium", "ClientName", "PolicyNumber"],
        "currency_symbol": "$",
    },
    "Foresters Financial": {
        "file_type": "csv",
        "column_mapping": {
            "Agent_Code": "writing_agent_number",
            "Agent_Full_Name": "writing_agent_name",
            "Insured_Name": "client_name",
            "Certificate_Number": "policy_number",
            "Annual_Premium": "commissionable_premium",
            "Commission_Amount": "commission_amount",
            "Issue_Date": "effective_date",
            "Payment_Date": "commission_paid_date",
            "Plan_Name": "product",
        },
        "required_columns": ["Agent_Code", "Annual_Premium", "Insured_Name", "Certificate_Number"],
        "currency_symbol": "$",
    },
    "Baltimore Life": {
        "file_type": "csv",
        "column_mapping": {
            "AGENT_NO": "writing_agent_number",
            "AGENT_NAME": "writing_agent_name",
            "INSURED_NAME": "client_name",
            "POLICY_NO": "policy_number",
            "PREMIUM": "commissionable_premium",
            "COMM_AMT": "commission_amount",
            "EFF_DATE": "effective_date",
            "COMM_DATE": "commission_paid_date",
            "PLAN_CODE": "product",
        },
        "required_columns": ["AGENT_NO", "PREMIUM", "INSURED_NAME", "POLICY_NO"],
        "currency_symbol": "$",
    },
    "Guarantee Trust Life (GTL)": {
        "file_type": "csv",
        "column_mapping": {
            "AgentNumber": "writing_agent_number",
            "AgentName": "writing_agent_name",
            "PolicyholderName": "client_name",
            "PolicyNumber": "policy_number",
            "AnnualPremium": "commissionable_premium",
            "CommissionAmount": "commission_amount",
            "EffectiveDate": "effective_date",
            "CommissionDate": "commission_paid_date",
            "ProductCode": "product",
        },
        "required_columns": ["AgentNumber", "AnnualPremium", "PolicyholderName", "PolicyNumber"],
        "currency_symbol": "$",
    },
    "Royal Neighbors of America (RNA)": {
        "file_type": "csv",
        "column_mapping": {
            "Rep_Number": "writing_agent_number",
            "Rep_Name": "writing_agent_name",
            "Member_Name": "client_name",
            "Certificate_No": "policy_number",
            "Premium_Amount": "commissionable_premium",
            "Commission_Paid": "commission_amount",
            "Certificate_Date": "effective_date",
            "Paid_Date": "commission_paid_date",
            "Product_Description": "product",
        },
        "required_columns": ["Rep_Number", "Premium_Amount", "Member_Name", "Certificate_No"],
        "currency_symbol": "$",
    },
    "Liberty Bankers Life (LBL)": {
        "file_type": "csv",
        "column_mapping": {
            "AGENT_CODE": "writing_agent_number",
            "AGENT_NAME": "writing_agent_name",
            "OWNER_NAME": "client_name",
            "POLICY_NUMBER": "policy_number",
            "PREMIUM_AMT": "commissionable_premium",
            "COMMISSION_AMT": "commission_amount",
            "ISSUE_DATE": "effective_date",
            "COMM_PAID_DATE": "commission_paid_date",
            "PRODUCT_NAME": "product",
        },
        "required_columns": ["AGENT_CODE", "PREMIUM_AMT", "OWNER_NAME", "POLICY_NUMBER"],
        "currency_symbol": "$",
    },
}
REPORT_DATE_FIELDS = {"app_date", "effective_date", "commission_paid_date"}
REPORT_AMOUNT_FIELDS = {"commissionable_premium", "commission_amount"}

app = FastAPI(title="Agency Back Office API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOW_ORIGIN_REGEX = os.getenv("ALLOWED_ORIGIN_REGEX", "").strip() or None
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Database helpers
# ----------------------

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def today_utc() -> date:
    return datetime.utcnow().date()


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def load_json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return []
    return parsed if isinstance(parsed, list) else []


def digits_only(value: Optional[str]) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def init_db() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Agency(
                id TEXT PRIMARY KEY,
                name TEXT,
                scoreboard_agent_visibility INTEGER DEFAULT 0,
                default_scoreboard_start_date TEXT,
                unique_carriers TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS User(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT UNIQUE,
                phone TEXT,
                role TEXT,
                upline_id TEXT,
                is_active INTEGER DEFAULT 1,
                subscription_tier TEXT DEFAULT 'free',
                commission_level REAL,
                unique_carriers TEXT,
                password_salt TEXT,
                password_hash TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AuthSession(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                session_hash TEXT,
                expires_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Carrier(
                id TEXT PRIMARY KEY,
                name TEXT UNIQUE,
                display_name TEXT,
                is_active INTEGER DEFAULT 1,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Product(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                carrier_id TEXT,
                name TEXT,
                is_active INTEGER DEFAULT 1,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AgentCarrierNumber(
                id TEXT PRIMARY KEY,
                agent_id TEXT,
                carrier_id TEXT,
                agent_number TEXT,
                created_at TEXT,
                UNIQUE(carrier_id, agent_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS StatusMapping(
                id TEXT PRIMARY KEY,
                carrier_id TEXT,
                raw_status TEXT,
                status_standardized TEXT,
                impact TEXT,
                UNIQUE(carrier_id, raw_status)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Client(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                phone TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Deal(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                carrier_id TEXT,
                product_id TEXT,
                client_id TEXT,
                client_name TEXT,
                client_phone TEXT,
                policy_number TEXT,
                application_number TEXT,
                status TEXT,
                status_standardized TEXT,
                annual_premium REAL,
                billing_cycle TEXT,
                lead_source TEXT,
                policy_effective_date TEXT,
                submission_date TEXT,
                writing_agent_number TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CommissionSnapshot(
                id TEXT PRIMARY KEY,
                deal_id TEXT,
                agent_id TEXT,
                upline_agent_id TEXT,
                commission_type TEXT,
                percentage REAL,
                hierarchy_level INTEGER,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CommissionReport(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                carrier_id TEXT,
                carrier_name TEXT,
                filename TEXT,
                path TEXT,
                upload_date TEXT,
                amount REAL,
                payment_identifier TEXT,
                status TEXT,
                record_count INTEGER,
                processed_count INTEGER,
                error_count INTEGER,
                errors TEXT,
                uploaded_by TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Commission(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                report_id TEXT,
                deal_id TEXT,
                agent_id TEXT,
                commission_type TEXT,
                percentage REAL,
                amount REAL,
                status TEXT,
                payroll_id TEXT,
                commission_date TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Payroll(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                pay_date TEXT,
                status TEXT,
                total_amount REAL,
                created_by TEXT,
                created_at TEXT,
                published_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PayrollAgentPayout(
                id TEXT PRIMARY KEY,
                payroll_id TEXT,
                agent_id TEXT,
                carry_forward_in REAL,
                transaction_total REAL,
                adjustments REAL,
                amount REAL,
                amount_paid REAL,
                carry_forward_out REAL,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PolicyReportJob(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                client_job_id TEXT,
                expected_files INTEGER,
                status TEXT,
                created_by TEXT,
                created_at TEXT,
                UNIQUE(agency_id, client_job_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PolicyReportFile(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                carrier TEXT,
                filename TEXT,
                storage_path TEXT UNIQUE,
                content_type TEXT,
                size INTEGER,
                uploaded_by TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS NiprJob(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                agency_id TEXT,
                last_name TEXT,
                npn TEXT,
                ssn_last4 TEXT,
                dob TEXT,
                status TEXT,
                progress INTEGER DEFAULT 0,
                progress_message TEXT,
                attempts INTEGER DEFAULT 0,
                locked_at TEXT,
                started_at TEXT,
                completed_at TEXT,
                result_files TEXT,
                result_carriers TEXT,
                result_states TEXT,
                error_message TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS NiprRequestLog(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                created_at TEXT
            )
            """
        )

        cur.execute("PRAGMA table_info(User)")
        user_cols = {row["name"] for row in cur.fetchall()}
        if "licensed_states" not in user_cols:
            cur.execute("ALTER TABLE User ADD COLUMN licensed_states TEXT")

        cur.execute("PRAGMA table_info(Deal)")
        deal_cols = {row["name"] for row in cur.fetchall()}
        if "lapse_date" not in deal_cols:
            cur.execute("ALTER TABLE Deal ADD COLUMN lapse_date TEXT")

        cur.execute("PRAGMA table_info(AuthSession)")
        session_cols = {row["name"] for row in cur.fetchall()}
        if "created_at" not in session_cols:
            cur.execute("ALTER TABLE AuthSession ADD COLUMN created_at TEXT")
        if "last_seen_at" not in session_cols:
            cur.execute("ALTER TABLE AuthSession ADD COLUMN last_seen_at TEXT")

        conn.commit()

        cur.execute("SELECT COUNT(*) as cnt FROM Carrier")
        if cur.fetchone()["cnt"] == 0:
            seed_carriers(conn)

        cur.execute("SELECT COUNT(*) as cnt FROM Agency")
        if cur.fetchone()["cnt"] == 0:
            seed_data(conn)
        ensure_default_admin_user(conn)


def default_agency_id(conn: sqlite3.Connection) -> Optional[str]:
    cur = conn.cursor()
    cur.execute("SELECT id FROM Agency WHERE name = ? ORDER BY created_at ASC LIMIT 1", (DEFAULT_AGENCY_NAME,))
    row = cur.fetchone()
    if not row:
        cur.execute("SELECT id FROM Agency ORDER BY created_at ASC LIMIT 1")
        row = cur.fetchone()
    return row["id"] if row else None


def ensure_default_admin_user(conn: sqlite3.Connection) -> None:
    email = DEFAULT_ADMIN_EMAIL
    if not email:
        return
    now = now_iso()
    password = DEFAULT_ADMIN_PASSWORD or DEFAULT_USER_PASSWORD
    salt = None
    password_hash = None
    if password:
        salt, password_hash = create_password_credentials(password)
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE email = ?", (email,))
    existing = cur.fetchone()
    if existing:
        if password and not (existing["password_salt"] and existing["password_hash"]):
            cur.execute(
                """
                UPDATE User
                SET password_salt = ?, password_hash = ?, updated_at = ?
                WHERE id = ?
                """,
                (salt, password_hash, now, existing["id"]),
            )
            conn.commit()
        return
    cur.execute(
        """
        INSERT INTO User (
            id, agency_id, first_name, last_name, email, phone, role, upline_id, is_active,
            subscription_tier, password_salt, password_hash, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            default_agency_id(conn),
            DEFAULT_ADMIN_FIRST_NAME,
            DEFAULT_ADMIN_LAST_NAME,
            email,
            "",
            "admin",
            None,
            1,
            "expert",
            salt,
            password_hash,
            now,
            now,
        ),
    )
    conn.commit()


# ----------------------
# Seed data
# ----------------------

SEED_CARRIERS = [
    ("Aetna", "Aetna"),
    ("Aflac", "Aflac"),
    ("American Amicable / Occidental", "American Amicable"),
    ("Foresters Financial", "Foresters"),
    ("Baltimore Life", "Baltimore Life"),
    ("Guarantee Trust Life (GTL)", "GTL"),
    ("Royal Neighbors of America (RNA)", "Royal Neighbors"),
    ("Liberty Bankers Life (LBL)", "Liberty Bankers"),
]

SEED_STATUS_MAPPINGS = [
    ("Active", "Active", "positive"),
    ("In Force", "Active", "positive"),
    ("Issued", "Active", "positive"),
    ("Pending", "Pending", "neutral"),
    ("Submitted", "Pending", "neutral"),
    ("Lapsed", "Lapsed", "negative"),
    ("Terminated", "Terminated", "negative"),
    ("Declined", "Declined", "negative"),
]


def seed_carriers(conn: sqlite3.Connection) -> None:
    now = now_iso()
    cur = conn.cursor()
    for name, display_name in SEED_CARRIERS:
        carrier_id = str(uuid.uuid4())
        cur.execute(
            "INSERT INTO Carrier (id, name, display_name, is_active, created_at) VALUES (?, ?, ?, ?, ?)",
            (carrier_id, name, display_name, 1, now),
        )
        for raw_status, standardized, impact in SEED_STATUS_MAPPINGS:
            cur.execute(
                """
                INSERT INTO StatusMapping (id, carrier_id, raw_status, status_standardized, impact)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), carrier_id, raw_status, standardized, impact),
            )
    conn.commit()


def seed_data(conn: sqlite3.Connection) -> None:
    now = now_iso()
    cur = conn.cursor()
    agency_id = str(uuid.uuid4())
    cur.execute(
        """
        INSERT INTO Agency (
            id, name, scoreboard_agent_visibility, default_scoreboard_start_date, unique_carriers,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (agency_id, DEFAULT_AGENCY_NAME, 0, None, None, now, now),
    )

    salt, password_hash = create_password_credentials(DEFAULT_USER_PASSWORD)
    agents = [
        ("Morgan", "Reyes", "morgan.reyes@summitlife.example", None, "pro", 130.0),
        ("Taylor", "Brooks", "taylor.brooks@summitlife.example", 0, "basic", 120.0),
        ("Jordan", "Lee", "jordan.lee@summitlife.example", 1, "free", 110.0),
    ]
    agent_ids: List[str] = []
    for first_name, last_name, email, upline_idx, tier, level in agents:
        agent_id = str(uuid.uuid4())
        cur.execute(
            """
            INSERT INTO User (
                id, agency_id, first_name, last_name, email, phone, role, upline_id, is_active,
                subscription_tier, commission_level, password_salt, password_hash, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agent_id,
                agency_id,
                first_name,
                last_name,
                email,
                "",
                "agent",
                agent_ids[upline_idx] if upline_idx is not None else None,
                1,
                tier,
                level,
                salt,
                password_hash,
                now,
                now,
            ),
        )
        agent_ids.append(agent_id)

    cur.execute("SELECT id, name FROM Carrier WHERE name IN (?, ?)", ("Aflac", "Foresters Financial"))
    carriers = {row["name"]: row["id"] for row in cur.fetchall()}
    products = {
        "Aflac": ["Accident Advantage", "Final Expense Whole Life"],
        "Foresters Financial": ["PlanRight Whole Life", "Strong Foundation Term"],
    }
    product_ids: Dict[str, List[str]] = {}
    for carrier_name, names in products.items():
        carrier_id = carriers.get(carrier_name)
        if not carrier_id:
            continue
        for product_name in names:
            product_id = str(uuid.uuid4())
            cur.execute(
                """
                INSERT INTO Product (id, agency_id, carrier_id, name, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (product_id, agency_id, carrier_id, product_name, 1, now),
            )
            product_ids.setdefault(carrier_name, []).append(product_id)
        for idx, agent_id in enumerate(agent_ids):
            cur.execute(
                """
                INSERT INTO AgentCarrierNumber (id, agent_id, carrier_id, agent_number, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), agent_id, carrier_id, f"{carrier_name[:3].upper()}{1001 + idx}", now),
            )

    today = today_utc()
    sample_deals = [
        (2, "Aflac", 0, "Dana Whitfield", "8165550101", "AF-20001", "Active", 1240.0, "Monthly", "Referral", 12),
        (2, "Foresters Financial", 0, "Luis Ortega", "8165550102", "FF-30001", "Pending", 860.0, "Monthly", "Facebook", 4),
        (1, "Aflac", 1, "Priya Natarajan", "9135550103", "AF-20002", "Active", 2100.0, "Annual", "Referral", 20),
        (0, "Foresters Financial", 1, "Grace Kim", "9135550104", "FF-30002", "Lapsed", 640.0, "Monthly", "Call In", 45),
    ]
    for agent_idx, carrier_name, product_idx, client_name, phone, policy, status, premium, cycle, source, days_ago in sample_deals:
        carrier_id = carriers.get(carrier_name)
        if not carrier_id:
            continue
        deal_id = str(uuid.uuid4())
        submitted = (today - timedelta(days=days_ago)).isoformat()
        effective = (today - timedelta(days=max(days_ago - 3, 0))).isoformat()
        cur.execute(
            """
            INSERT INTO Deal (
                id, agency_id, agent_id, carrier_id, product_id, client_id, client_name, client_phone,
                policy_number, application_number, status, status_standardized, annual_premium,
                billing_cycle, lead_source, policy_effective_date, submission_date, writing_agent_number,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deal_id,
                agency_id,
                agent_ids[agent_idx],
                carrier_id,
                product_ids[carrier_name][product_idx],
                None,
                client_name,
                phone,
                policy,
                None,
                status,
                resolve_status_standardized(status),
                premium,
                cycle,
                source,
                effective,
                submitted,
                None,
                now,
                now,
            ),
        )
        build_commission_snapshots(conn, deal_id, agent_ids[agent_idx])
    conn.commit()


def resolve_status_standardized(status: Optional[str]) -> str:
    value = (status or "").strip()
    for raw_status, standardized, _impact in SEED_STATUS_MAPPINGS:
        if raw_status.lower() == value.lower():
            return standardized
    return value.title() if value else "Pending"


# ----------------------
# Models
# ----------------------

class AuthLoginIn(BaseModel):
    email: str
    password: str


class AuthUserOut(BaseModel):
    id: str
    email: str
    role: str
    first_name: str
    last_name: str
    agency_id: Optional[str]
    subscription_tier: Optional[str]


class AgentIn(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str = ""
    role: str = "agent"
    upline_id: Optional[str] = None
    subscription_tier: str = "free"
    commission_level: Optional[float] = None
    password: str


class AgentUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    upline_id: Optional[str] = None
    subscription_tier: Optional[str] = None
    commission_level: Optional[float] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None


class AgentOut(BaseModel):
    id: str
    agency_id: Optional[str]
    first_name: str
    last_name: str
    email: str
    phone: str
    role: str
    upline_id: Optional[str]
    is_active: bool
    subscription_tier: str
    commission_level: Optional[float]
    created_at: str
    updated_at: str


class ProfileOut(AgentOut):
    agency_name: Optional[str]
    unique_carriers: List[str]
    licensed_states: List[str]


class DealIn(BaseModel):
    carrier_id: str
    product_id: Optional[str] = None
    agent_id: Optional[str] = None
    client_id: Optional[str] = None
    client_name: str
    client_phone: str = ""
    policy_number: Optional[str] = None
    application_number: Optional[str] = None
    status: str = "Pending"
    annual_premium: float
    billing_cycle: Optional[str] = None
    lead_source: Optional[str] = None
    policy_effective_date: Optional[str] = None
    submission_date: Optional[str] = None


class DealUpdate(BaseModel):
    product_id: Optional[str] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    policy_number: Optional[str] = None
    application_number: Optional[str] = None
    status: Optional[str] = None
    annual_premium: Optional[float] = None
    billing_cycle: Optional[str] = None
    lead_source: Optional[str] = None
    policy_effective_date: Optional[str] = None
    submission_date: Optional[str] = None


class DealOut(BaseModel):
    id: str
    agency_id: str
    agent_id: Optional[str]
    carrier_id: Optional[str]
    product_id: Optional[str]
    client_id: Optional[str]
    client_name: Optional[str]
    client_phone: Optional[str]
    policy_number: Optional[str]
    application_number: Optional[str]
    status: Optional[str]
    status_standardized: Optional[str]
    annual_premium: float
    billing_cycle: Optional[str]
    lead_source: Optional[str]
    policy_effective_date: Optional[str]
    submission_date: Optional[str]
    lapse_date: Optional[str]
    created_at: str
    updated_at: str


class DealRowOut(BaseModel):
    id: str
    agent_id: Optional[str]
    agent: str
    carrier_id: Optional[str]
    carrier: str
    product_id: Optional[str]
    product: str
    client_id: Optional[str]
    client_name: str
    client_phone: str
    policy_number: str
    application_number: str
    status: str
    status_standardized: str
    status_impact: str
    annual_premium: str
    annual_premium_value: float
    billing_cycle: str
    lead_source: str
    effective_date: str
    submission_date: str
    created_at: str


class DealCursor(BaseModel):
    cursor_created_at: str
    cursor_id: str


class BookOfBusinessOut(BaseModel):
    deals: List[DealRowOut]
    next_cursor: Optional[DealCursor]


class BookOfBusinessSummaryOut(BaseModel):
    count: int
    total_premium: float
    by_status: Dict[str, int]


class FilterOption(BaseModel):
    value: str
    label: str


class DealFilterOptionsOut(BaseModel):
    carriers: List[FilterOption]
    products: List[FilterOption]
    agents: List[FilterOption]
    statuses: List[str]
    billing_cycles: List[str]
    lead_sources: List[str]


class ScoreboardSettingsOut(BaseModel):
    agency_id: str
    scoreboard_agent_visibility: bool
    default_scoreboard_start_date: Optional[str]


class ScoreboardSettingsUpdate(BaseModel):
    scoreboard_agent_visibility: Optional[bool] = None
    default_scoreboard_start_date: Optional[str] = None


class ScoreboardEntry(BaseModel):
    rank: int
    agent_id: str
    agent_name: str
    total: float
    deal_count: int
    daily_breakdown: Dict[str, float]


class ScoreboardStats(BaseModel):
    total_production: float
    total_deals: int
    active_agents: int


class DateRangeOut(BaseModel):
    start_date: str
    end_date: str


class ScoreboardOut(BaseModel):
    timeframe: str
    scope: str
    date_range: DateRangeOut
    leaderboard: List[ScoreboardEntry]
    stats: ScoreboardStats


class CarrierConfigOut(BaseModel):
    carrier: str
    carrier_id: Optional[str]
    file_type: str
    sheet_name: Optional[str]
    required_columns: List[str]


class CommissionReportOut(BaseModel):
    id: str
    carrier_id: Optional[str]
    carrier_name: str
    filename: str
    upload_date: Optional[str]
    amount: Optional[float]
    payment_identifier: Optional[str]
    status: str
    record_count: int
    processed_count: int
    error_count: int
    errors: List[str]
    created_at: str


class CommissionLineOut(BaseModel):
    id: str
    deal_id: Optional[str]
    agent_id: Optional[str]
    agent_name: str
    policy_number: str
    client_name: str
    commission_type: Optional[str]
    percentage: float
    amount: float
    status: str
    commission_date: Optional[str]


class CommissionReportDetailOut(CommissionReportOut):
    commissions: List[CommissionLineOut]


class PayrollIn(BaseModel):
    pay_date: str
    adjustments: Dict[str, float] = {}


class PayrollOut(BaseModel):
    id: str
    pay_date: str
    status: str
    total_amount: float
    agent_count: int
    created_at: str
    published_at: Optional[str]


class PayrollAgentPayoutOut(BaseModel):
    id: str
    agent_id: str
    agent: str
    carry_forward_in: float
    transaction_total: float
    adjustments: float
    amount: float
    amount_paid: float
    carry_forward_out: float


class PayrollDetailOut(PayrollOut):
    payouts: List[PayrollAgentPayoutOut]


class ExpectedPayoutMonth(BaseModel):
    month: str
    total: float
    deal_count: int


class ExpectedPayoutsOut(BaseModel):
    agent_id: str
    start_date: str
    end_date: str
    total: float
    months: List[ExpectedPayoutMonth]


class DebtBreakdownItem(BaseModel):
    deal_id: str
    policy_number: str
    client_name: str
    lapse_date: Optional[str]
    expected_commission: float
    debt: float


class AgentDebtOut(BaseModel):
    agent_id: str
    total_debt: float
    lapsed_deals_count: int
    breakdown: List[DebtBreakdownItem]


class UnderwritingQuoteIn(BaseModel):
    birth_month: Optional[str] = None
    birth_day: Optional[str] = None
    birth_year: Optional[str] = None
    sex: Optional[str] = None
    smoker: Optional[str] = None
    health: Optional[str] = None
    face_amount: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    height_feet: Optional[str] = None
    height_inches: Optional[str] = None
    weight: Optional[str] = None
    systolic: Optional[str] = None
    diastolic: Optional[str] = None
    blood_pressure_medication: Optional[str] = None
    cholesterol_level: Optional[str] = None
    hdl_ratio: Optional[str] = None
    cholesterol_medication: Optional[str] = None
    period_cholesterol_control_duration: Optional[str] = None
    do_cigarettes: Optional[bool] = None
    period_cigarettes: Optional[str] = None
    num_cigarettes: Optional[str] = None
    do_cigars: Optional[bool] = None
    period_cigars: Optional[str] = None
    num_cigars: Optional[str] = None
    do_pipe: Optional[bool] = None
    period_pipe: Optional[str] = None
    do_chewing_tobacco: Optional[bool] = None
    period_chewing_tobacco: Optional[str] = None
    do_nicotine_patches_or_gum: Optional[bool] = None
    period_nicotine_patches_or_gum: Optional[str] = None
    had_drivers_license: Optional[str] = None
    moving_violations0: Optional[str] = None
    moving_violations1: Optional[str] = None
    moving_violations2: Optional[str] = None
    moving_violations3: Optional[str] = None
    moving_violations4: Optional[str] = None
    reckless_conviction: Optional[str] = None
    period_reckless_conviction: Optional[str] = None
    dwi_conviction: Optional[str] = None
    period_dwi_conviction: Optional[str] = None
    suspended_conviction: Optional[str] = None
    period_suspended_conviction: Optional[str] = None
    more_than_one_accident: Optional[str] = None
    period_more_than_one_accident: Optional[str] = None
    num_deaths: Optional[str] = None
    num_contracted: Optional[str] = None
    alcohol: Optional[str] = None
    alcohol_years_since_treatment: Optional[str] = None
    drugs: Optional[str] = None
    drugs_years_since_treatment: Optional[str] = None


class PolicyReportSignIn(BaseModel):
    filename: str
    content_type: str
    size: int
    carrier: str


class PolicyReportSignOut(BaseModel):
    signed_url: str
    path: str
    content_type: str
    max_size: int
    expires_in_seconds: int


class PolicyReportFileOut(BaseModel):
    id: str
    carrier: str
    filename: str
    storage_path: str
    content_type: str
    size: int
    created_at: str


class PolicyReportJobIn(BaseModel):
    expected_files: int
    client_job_id: str


class PolicyReportJobOut(BaseModel):
    id: str
    client_job_id: str
    expected_files: int
    status: str
    created_at: str


class NiprRunIn(BaseModel):
    last_name: str = ""
    npn: str = ""
    ssn_last4: str = ""
    dob: str = ""


class NiprJobOut(BaseModel):
    job_id: str
    status: str
    progress: int
    progress_message: Optional[str]
    queue_position: Optional[int]
    result_carriers: List[str]
    result_files: List[str]
    error_message: Optional[str]
    created_at: str
    completed_at: Optional[str]


class NiprStatusOut(BaseModel):
    completed: bool
    carriers: List[str]


class NiprUploadOut(BaseModel):
    success: bool
    carriers: List[str]
    licensed_states: Dict[str, List[str]]
    state_codes: List[str]


class NiprCarrierMatch(BaseModel):
    carrier_id: str
    carrier_name: str
    matched_with: str
    similarity: float


class NiprProgressIn(BaseModel):
    job_id: str
    progress: int
    message: Optional[str] = None


class NiprCompleteIn(BaseModel):
    job_id: str
    success: bool
    files: List[str] = []
    carriers: List[str] = []
    states: List[str] = []
    error: Optional[str] = None


class NiprQueueStatusOut(BaseModel):
    pending: int
    running: int
    completed: int
    failed: int


# ----------------------
# Lookups and auth
# ----------------------

def fetch_user(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE id = ?", (user_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return row


def fetch_agency(conn: sqlite3.Connection, agency_id: Optional[str]) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Agency WHERE id = ?", (agency_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Agency not found")
    return row


def fetch_carrier(conn: sqlite3.Connection, carrier_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Carrier WHERE id = ?", (carrier_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Carrier not found")
    return row


def fetch_carrier_by_name(conn: sqlite3.Connection, name: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Carrier WHERE lower(name) = lower(?)", ((name or "").strip(),))
    return cur.fetchone()


def to_agent_out(row: sqlite3.Row) -> AgentOut:
    data = dict(row)
    data["phone"] = data.get("phone") or ""
    data["is_active"] = bool(data.get("is_active"))
    data["subscription_tier"] = data.get("subscription_tier") or "free"
    return AgentOut(**{key: data.get(key) for key in AgentOut.__fields__})


def auth_user_payload(row: sqlite3.Row) -> AuthUserOut:
    return AuthUserOut(
        id=row["id"],
        email=row["email"],
        role=row["role"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        agency_id=row["agency_id"],
        subscription_tier=row["subscription_tier"],
    )


def agent_display_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    name = f"{(first_name or '').strip()} {(last_name or '').strip()}".strip()
    return name or "Unknown Agent"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    ).hex()


def create_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return salt, hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not password or not salt or not expected_hash:
        return False
    actual_hash = hash_password(password, salt)
    return secrets.compare_digest(actual_hash, expected_hash)


def normalize_user_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or "@" not in value:
        raise HTTPException(status_code=400, detail="A valid email is required")
    return value


def normalize_user_role(role: Optional[str]) -> str:
    value = (role or "").strip().lower()
    if value not in ALLOWED_USER_ROLES:
        allowed = ", ".join(sorted(ALLOWED_USER_ROLES))
        raise HTTPException(status_code=400, detail=f"Role must be one of: {allowed}")
    return value


def normalize_subscription_tier(tier: Optional[str]) -> str:
    value = (tier or "free").strip().lower()
    if value not in SUBSCRIPTION_TIERS:
        allowed = ", ".join(sorted(SUBSCRIPTION_TIERS))
        raise HTTPException(status_code=400, detail=f"Subscription tier must be one of: {allowed}")
    return value


def require_valid_password(password: Optional[str], *, required: bool) -> Optional[str]:
    value = (password or "").strip()
    if not value:
        if required:
            raise HTTPException(status_code=400, detail="Password is required")
        return None
    if len(value) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
        )
    return value


def revoke_user_sessions(conn: sqlite3.Connection, user_id: str) -> None:
    cur = conn.cursor()
    cur.execute("DELETE FROM AuthSession WHERE user_id = ?", (user_id,))


def create_auth_session(conn: sqlite3.Connection, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    session_hash = sha256_hex(token)
    now = now_iso()
    expires_at = (datetime.utcnow() + timedelta(hours=SESSION_DURATION_HOURS)).isoformat()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuthSession (id, user_id, session_hash, expires_at, created_at, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), user_id, session_hash, expires_at, now, now),
    )
    conn.commit()
    return token


def get_session_user(conn: sqlite3.Connection, request: Request) -> Optional[sqlite3.Row]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    session_hash = sha256_hex(token)
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT u.*
        FROM AuthSession s
        JOIN User u ON u.id = s.user_id
        WHERE s.session_hash = ? AND s.expires_at > ? AND u.is_active = 1
        ORDER BY s.created_at DESC
        LIMIT 1
        """,
        (session_hash, now),
    )
    row = cur.fetchone()
    if not row:
        return None
    cur.execute(
        "UPDATE AuthSession SET last_seen_at = ? WHERE session_hash = ?",
        (now_iso(), session_hash),
    )
    conn.commit()
    return row


def require_session_user(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    user = get_session_user(conn, request)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_session_role(
    conn: sqlite3.Connection, request: Request, allowed_roles: set[str]
) -> sqlite3.Row:
    user = require_session_user(conn, request)
    if (user["role"] or "").strip().lower() not in allowed_roles:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


def require_cron_secret(request: Request) -> None:
    provided = (request.headers.get("x-cron-secret") or "").strip()
    if not CRON_SECRET or not provided or not secrets.compare_digest(provided, CRON_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")


def is_admin(user: Any) -> bool:
    return (user["role"] or "").strip().lower() == "admin"


# ----------------------
# Agency hierarchy
# ----------------------

def fetch_downline_ids(conn: sqlite3.Connection, agent_id: str) -> List[str]:
    cur = conn.cursor()
    cur.execute(
        """
        WITH RECURSIVE downline(id) AS (
            SELECT id FROM User WHERE upline_id = ?
            UNION
            SELECT u.id FROM User u JOIN downline d ON u.upline_id = d.id
        )
        SELECT id FROM downline
        """,
        (agent_id,),
    )
    return [row["id"] for row in cur.fetchall() if row["id"] != agent_id]


def fetch_upline_chain(conn: sqlite3.Connection, agent_id: str) -> List[sqlite3.Row]:
    """Writing agent first, then each upline in order. Stops on a cycle."""
    chain: List[sqlite3.Row] = []
    seen: set[str] = set()
    cur = conn.cursor()
    current_id: Optional[str] = agent_id
    while current_id and current_id not in seen:
        seen.add(current_id)
        cur.execute("SELECT * FROM User WHERE id = ?", (current_id,))
        row = cur.fetchone()
        if not row:
            break
        chain.append(row)
        current_id = row["upline_id"]
    return chain


def visible_agent_ids(conn: sqlite3.Connection, user: Any) -> List[str]:
    return [user["id"], *fetch_downline_ids(conn, user["id"])]


def require_agent_access(conn: sqlite3.Connection, user: Any, agent_id: str) -> sqlite3.Row:
    agent = fetch_user(conn, agent_id)
    if agent["agency_id"] != user["agency_id"]:
        raise HTTPException(status_code=404, detail="User not found")
    if not is_admin(user) and agent_id not in visible_agent_ids(conn, user):
        raise HTTPException(status_code=403, detail="You can only view yourself or your downline")
    return agent


def build_commission_snapshots(conn: sqlite3.Connection, deal_id: str, agent_id: str) -> int:
    """Freeze the hierarchy percentages for a deal at the time it is written."""
    cur = conn.cursor()
    cur.execute("DELETE FROM CommissionSnapshot WHERE deal_id = ?", (deal_id,))
    now = now_iso()
    count = 0
    for level, agent in enumerate(fetch_upline_chain(conn, agent_id)):
        if agent["commission_level"] is None:
            continue
        cur.execute(
            """
            INSERT INTO CommissionSnapshot (
                id, deal_id, agent_id, upline_agent_id, commission_type, percentage, hierarchy_level, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                deal_id,
                agent["id"],
                agent["upline_id"],
                "writing" if level == 0 else "override",
                float(agent["commission_level"]),
                level,
                now,
            ),
        )
        count += 1
    return count


# ----------------------
# Formatting and matching
# ----------------------

def format_display_date(value: Optional[str]) -> str:
    parsed = parse_iso_date(value)
    if not parsed or parsed.year < 2000:
        return "N/A"
    return parsed.strftime("%m/%d/%Y")


def format_currency(value: Optional[float]) -> str:
    return f"${float(value or 0):.2f}"


def levenshtein_distance(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity_score(left: Optional[str], right: Optional[str]) -> float:
    a = (left or "").strip().lower()
    b = (right or "").strip().lower()
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein_distance(a, b)) / longer


def match_carriers(
    names: List[str], carriers: List[Any], threshold: float = NIPR_CARRIER_MATCH_THRESHOLD
) -> List[NiprCarrierMatch]:
    best: Dict[str, NiprCarrierMatch] = {}
    for name in names:
        for carrier in carriers:
            for candidate in (carrier["name"], carrier["display_name"]):
                if not candidate:
                    continue
                score = similarity_score(name, candidate)
                if score < threshold:
                    continue
                current = best.get(carrier["id"])
                if current is None or score > current.similarity:
                    best[carrier["id"]] = NiprCarrierMatch(
                        carrier_id=carrier["id"],
                        carrier_name=carrier["display_name"] or carrier["name"],
                        matched_with=name,
                        similarity=round(score, 4),
                    )
    return sorted(best.values(), key=lambda match: (-match.similarity, match.carrier_name))


# ----------------------
# Book of business
# ----------------------

DEAL_SELECT = """
    SELECT d.*,
        u.first_name AS agent_first_name,
        u.last_name AS agent_last_name,
        c.name AS carrier_name,
        c.display_name AS carrier_display_name,
        p.name AS product_name,
        COALESCE(sm.impact, 'neutral') AS status_impact
    FROM Deal d
    LEFT JOIN User u ON u.id = d.agent_id
    LEFT JOIN Carrier c ON c.id = d.carrier_id
    LEFT JOIN Product p ON p.id = d.product_id
    LEFT JOIN StatusMapping sm ON sm.carrier_id = d.carrier_id AND lower(sm.raw_status) = lower(d.status)
"""


def resolve_deal_view(user: Any, view: Optional[str]) -> str:
    value = (view or "downlines").strip().lower()
    if value not in DEAL_VIEWS:
        allowed = ", ".join(sorted(DEAL_VIEWS))
        raise HTTPException(status_code=400, detail=f"View must be one of: {allowed}")
    if value == "agency" and not is_admin(user):
        return "downlines"
    return value


def deal_scope_clauses(conn: sqlite3.Connection, user: Any, view: str) -> tuple[List[str], List[Any]]:
    clauses = ["d.agency_id = ?"]
    params: List[Any] = [user["agency_id"]]
    if view == "self":
        clauses.append("d.agent_id = ?")
        params.append(user["id"])
    elif view == "downlines":
        agent_ids = visible_agent_ids(conn, user)
        clauses.append(f"d.agent_id IN ({', '.join('?' for _ in agent_ids)})")
        params.extend(agent_ids)
    return clauses, params


def is_filter_set(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() != "all"


def deal_filter_clauses(filters: Dict[str, Optional[str]]) -> tuple[List[str], List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    for key, column in (
        ("agent_id", "d.agent_id"),
        ("carrier_id", "d.carrier_id"),
        ("product_id", "d.product_id"),
        ("client_id", "d.client_id"),
        ("status_standardized", "d.status_standardized"),
        ("billing_cycle", "d.billing_cycle"),
        ("lead_source", "d.lead_source"),
    ):
        value = filters.get(key)
        if is_filter_set(value):
            clauses.append(f"{column} = ?")
            params.append(value.strip())

    policy_number = filters.get("policy_number")
    if is_filter_set(policy_number):
        clauses.append("d.policy_number LIKE ?")
        params.append(f"%{policy_number.strip()}%")

    status_mode = filters.get("status_mode")
    if is_filter_set(status_mode):
        impact = STATUS_MODE_IMPACTS.get(status_mode.strip().lower())
        if not impact:
            raise HTTPException(status_code=400, detail="Status mode must be one of: active, inactive, pending")
        clauses.append("COALESCE(sm.impact, 'neutral') = ?")
        params.append(impact)

    phone = digits_only(filters.get("client_phone"))
    if phone:
        clauses.append("d.client_phone LIKE ?")
        params.append(f"%{phone}%")

    for key, column, op in (
        ("effective_date_start", "d.policy_effective_date", ">="),
        ("effective_date_end", "d.policy_effective_date", "<="),
        ("submitted_date_start", "d.submission_date", ">="),
        ("submitted_date_end", "d.submission_date", "<="),
    ):
        value = filters.get(key)
        if not is_filter_set(value):
            continue
        parsed = parse_iso_date(value)
        if not parsed:
            raise HTTPException(status_code=400, detail=f"{key} must be a YYYY-MM-DD date")
        clauses.append(f"{column} {op} ?")
        params.append(parsed.isoformat())
    return clauses, params


def should_hide_client_phone(user: Any, view: str, row: Any) -> bool:
    return (
        view == "downlines"
        and not is_admin(user)
        and row["agent_id"] != user["id"]
        and row["status_impact"] in {"positive", "neutral"}
    )


def to_deal_row(user: Any, view: str, row: Any) -> DealRowOut:
    carrier = row["carrier_display_name"] or row["carrier_name"] or "Unknown Carrier"
    phone = row["client_phone"] or ""
    if phone and should_hide_client_phone(user, view, row):
        phone = "HIDDEN"
    return DealRowOut(
        id=row["id"],
        agent_id=row["agent_id"],
        agent=agent_display_name(row["agent_first_name"], row["agent_last_name"]),
        carrier_id=row["carrier_id"],
        carrier=carrier,
        product_id=row["product_id"],
        product=row["product_name"] or "Unknown Product",
        client_id=row["client_id"],
        client_name=row["client_name"] or "",
        client_phone=phone,
        policy_number=row["policy_number"] or "",
        application_number=row["application_number"] or "",
        status=row["status"] or "",
        status_standardized=row["status_standardized"] or "",
        status_impact=row["status_impact"] or "neutral",
        annual_premium=format_currency(row["annual_premium"]),
        annual_premium_value=float(row["annual_premium"] or 0),
        billing_cycle=row["billing_cycle"] or "",
        lead_source=row["lead_source"] or "",
        effective_date=format_display_date(row["policy_effective_date"]),
        submission_date=format_display_date(row["submission_date"]),
        created_at=row["created_at"],
    )


def query_book_of_business(
    conn: sqlite3.Connection,
    user: Any,
    view: str,
    filters: Dict[str, Optional[str]],
    *,
    limit: Optional[int] = None,
    cursor_created_at: Optional[str] = None,
    cursor_id: Optional[str] = None,
) -> BookOfBusinessOut:
    page_size = min(limit or DEAL_PAGE_DEFAULT, DEAL_PAGE_MAX)
    if page_size < 1:
        page_size = DEAL_PAGE_DEFAULT
    scope_clauses, params = deal_scope_clauses(conn, user, view)
    filter_clauses, filter_params = deal_filter_clauses(filters)
    clauses = scope_clauses + filter_clauses
    params.extend(filter_params)
    if cursor_created_at and cursor_id:
        clauses.append("(d.created_at < ? OR (d.created_at = ? AND d.id < ?))")
        params.extend([cursor_created_at, cursor_created_at, cursor_id])
    cur = conn.cursor()
    cur.execute(
        f"{DEAL_SELECT} WHERE {' AND '.join(clauses)} ORDER BY d.created_at DESC, d.id DESC LIMIT ?",
        (*params, page_size),
    )
    rows = cur.fetchall()
    next_cursor = None
    if len(rows) == page_size:
        last = rows[-1]
        next_cursor = DealCursor(cursor_created_at=last["created_at"], cursor_id=last["id"])
    return BookOfBusinessOut(deals=[to_deal_row(user, view, row) for row in rows], next_cursor=next_cursor)


def summarize_book_of_business(
    conn: sqlite3.Connection, user: Any, view: str, filters: Dict[str, Optional[str]]
) -> BookOfBusinessSummaryOut:
    scope_clauses, params = deal_scope_clauses(conn, user, view)
    filter_clauses, filter_params = deal_filter_clauses(filters)
    params.extend(filter_params)
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT COALESCE(d.status_standardized, 'Unknown') AS status, COUNT(*) AS cnt,
            COALESCE(SUM(d.annual_premium), 0) AS premium
        FROM Deal d
        LEFT JOIN StatusMapping sm ON sm.carrier_id = d.carrier_id AND lower(sm.raw_status) = lower(d.status)
        WHERE {' AND '.join(scope_clauses + filter_clauses)}
        GROUP BY COALESCE(d.status_standardized, 'Unknown')
        """,
        params,
    )
    by_status: Dict[str, int] = {}
    total_premium = 0.0
    for row in cur.fetchall():
        by_status[row["status"]] = row["cnt"]
        total_premium += float(row["premium"] or 0)
    return BookOfBusinessSummaryOut(
        count=sum(by_status.values()),
        total_premium=round(total_premium, 2),
        by_status=by_status,
    )


def fetch_deal(conn: sqlite3.Connection, user: Any, deal_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Deal WHERE id = ? AND agency_id = ?", (deal_id, user["agency_id"]))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Deal not found")
    if not is_admin(user) and row["agent_id"] not in visible_agent_ids(conn, user):
        raise HTTPException(status_code=404, detail="Deal not found")
    return row


def normalize_optional_date(value: Optional[str], field: str) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    parsed = parse_iso_date(value)
    if not parsed:
        raise HTTPException(status_code=400, detail=f"{field} must be a YYYY-MM-DD date")
    return parsed.isoformat()


def lookup_status_mapping(conn: sqlite3.Connection, carrier_id: Optional[str], status: Optional[str]) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM StatusMapping WHERE carrier_id = ? AND lower(raw_status) = lower(?)",
        (carrier_id, (status or "").strip()),
    )
    return cur.fetchone()


def standardize_deal_status(conn: sqlite3.Connection, carrier_id: Optional[str], status: Optional[str]) -> str:
    mapping = lookup_status_mapping(conn, carrier_id, status)
    if mapping:
        return mapping["status_standardized"]
    return resolve_status_standardized(status)


# ----------------------
# Scoreboard
# ----------------------

def shift_years(value: date, years: int) -> date:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return value.replace(year=value.year + years, day=28)


def resolve_timeframe_range(
    timeframe: str,
    today: date,
    custom_start: Optional[str] = None,
    custom_end: Optional[str] = None,
) -> tuple[date, date]:
    key = (timeframe or "").strip().lower()
    if key not in SCOREBOARD_TIMEFRAMES:
        raise HTTPException(status_code=400, detail=f"Unsupported timeframe: {timeframe}")
    if key == "this_week":
        start = today - timedelta(days=today.weekday())
        return start, start + timedelta(days=6)
    if key == "last_week":
        start = today - timedelta(days=today.weekday() + 7)
        return start, start + timedelta(days=6)
    if key in ROLLING_TIMEFRAME_DAYS:
        return today - timedelta(days=ROLLING_TIMEFRAME_DAYS[key]), today
    if key == "this_month":
        return today.replace(day=1), today.replace(day=monthrange(today.year, today.month)[1])
    if key == "last_month":
        end = today.replace(day=1) - timedelta(days=1)
        return end.replace(day=1), end
    if key == "past_12_months":
        return shift_years(today, -1), today
    if key == "ytd":
        return date(today.year, 1, 1), today
    start = parse_iso_date(custom_start)
    end = parse_iso_date(custom_end)
    if not start or not end:
        raise HTTPException(status_code=400, detail="Custom timeframe requires start_date and end_date")
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
    return start, end


def resolve_scoreboard_scope(agency: Any, user: Any, scope: Optional[str]) -> str:
    value = (scope or "agency").strip().lower()
    if value not in {"agency", "team"}:
        raise HTTPException(status_code=400, detail="Scope must be one of: agency, team")
    if value == "agency" and not is_admin(user) and not agency["scoreboard_agent_visibility"]:
        return "team"
    return value


def compute_scoreboard(
    conn: sqlite3.Connection,
    agency_id: str,
    start: date,
    end: date,
    *,
    agent_ids: Optional[List[str]] = None,
    submitted: bool = False,
    use_submitted_date: bool = False,
) -> tuple[List[ScoreboardEntry], ScoreboardStats]:
    date_expr = (
        "d.submission_date"
        if use_submitted_date
        else "COALESCE(d.policy_effective_date, d.submission_date)"
    )
    clauses = [
        "d.agency_id = ?",
        "d.annual_premium > 0",
        f"substr({date_expr}, 1, 10) BETWEEN ? AND ?",
    ]
    params: List[Any] = [agency_id, start.isoformat(), end.isoformat()]
    if not submitted:
        clauses.append("(COALESCE(sm.impact, 'neutral') = 'positive' OR d.status_standardized = 'Lapsed')")
    if agent_ids is not None:
        clauses.append(f"d.agent_id IN ({', '.join('?' for _ in agent_ids)})")
        params.extend(agent_ids)
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT d.agent_id, u.first_name, u.last_name, d.annual_premium,
            substr({date_expr}, 1, 10) AS production_date
        FROM Deal d
        JOIN User u ON u.id = d.agent_id
        LEFT JOIN StatusMapping sm ON sm.carrier_id = d.carrier_id AND lower(sm.raw_status) = lower(d.status)
        WHERE {' AND '.join(clauses)}
        """,
        params,
    )
    totals: Dict[str, Dict[str, Any]] = {}
    for row in cur.fetchall():
        entry = totals.setdefault(
            row["agent_id"],
            {
                "agent_name": agent_display_name(row["first_name"], row["last_name"]),
                "total": 0.0,
                "deal_count": 0,
                "daily_breakdown": {},
            },
        )
        premium = float(row["annual_premium"] or 0)
        entry["total"] += premium
        entry["deal_count"] += 1
        day = row["production_date"]
        entry["daily_breakdown"][day] = round(entry["daily_breakdown"].get(day, 0.0) + premium, 2)

    ranked = sorted(
        (item for item in totals.items() if item[1]["deal_count"] > 0),
        key=lambda item: (-item[1]["total"], item[1]["agent_name"]),
    )
    leaderboard = [
        ScoreboardEntry(
            rank=idx,
            agent_id=agent_id,
            agent_name=data["agent_name"],
            total=round(data["total"], 2),
            deal_count=data["deal_count"],
            daily_breakdown=dict(sorted(data["daily_breakdown"].items())),
        )
        for idx, (agent_id, data) in enumerate(ranked, start=1)
    ]
    stats = ScoreboardStats(
        total_production=round(sum(entry.total for entry in leaderboard), 2),
        total_deals=sum(entry.deal_count for entry in leaderboard),
        active_agents=len(leaderboard),
    )
    return leaderboard, stats


def to_scoreboard_settings(agency: Any) -> ScoreboardSettingsOut:
    return ScoreboardSettingsOut(
        agency_id=agency["id"],
        scoreboard_agent_visibility=bool(agency["scoreboard_agent_visibility"]),
        default_scoreboard_start_date=agency["default_scoreboard_start_date"],
    )


# ----------------------
# Commission reports
# ----------------------

def cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def load_report_rows(path: Path, sheet_name: Optional[str] = None) -> tuple[List[str], List[Dict[str, Any]]]:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with path.open("r", encoding="utf-8-sig", errors="ignore") as f:
            sample = f.read(2048)
            f.seek(0)
            delimiter = ","
            try:
                delimiter = csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
            except csv.Error:
                delimiter = ","
            reader = csv.DictReader(f, delimiter=delimiter)
            if not reader.fieldnames:
                raise HTTPException(status_code=400, detail="Report file has no header row")
            rows = []
            for row in reader:
                cleaned = {(key or "").strip(): (value or "").strip() for key, value in row.items() if key}
                if any(cleaned.values()):
                    rows.append(cleaned)
            return [name.strip() for name in reader.fieldnames], rows
    if suffix == ".xlsx":
        wb = openpyxl.load_workbook(path, data_only=True, read_only=True)
        try:
            if sheet_name:
                if sheet_name not in wb.sheetnames:
                    available = ", ".join(wb.sheetnames)
                    raise HTTPException(
                        status_code=400,
                        detail=f'Sheet "{sheet_name}" not found. Available sheets: {available}',
                    )
                ws = wb[sheet_name]
            else:
                ws = wb.active
            rows_iter = list(ws.iter_rows(values_only=True))
        finally:
            wb.close()
        if not rows_iter:
            raise HTTPException(status_code=400, detail="Report file has no rows")
        headers = [str(cell).strip() if cell is not None else "" for cell in rows_iter[0]]
        if not any(headers):
            raise HTTPException(status_code=400, detail="Report file has no header row")
        rows = []
        for row in rows_iter[1:]:
            row_dict: Dict[str, Any] = {}
            for idx, header in enumerate(headers):
                if header == "":
                    continue
                value = row[idx] if idx < len(row) else None
                row_dict[header] = value.strip() if isinstance(value, str) else value
            if any(value not in (None, "") for value in row_dict.values()):
                rows.append(row_dict)
        return headers, rows
    if suffix == ".xls":
        book = xlrd.open_workbook(path)
        if sheet_name:
            if sheet_name not in book.sheet_names():
                available = ", ".join(book.sheet_names())
                raise HTTPException(
                    status_code=400,
                    detail=f'Sheet "{sheet_name}" not found. Available sheets: {available}',
                )
            sheet = book.sheet_by_name(sheet_name)
        else:
            sheet = book.sheet_by_index(0)
        if sheet.nrows == 0:
            raise HTTPException(status_code=400, detail="Report file has no rows")
        headers = [str(cell.value).strip() for cell in sheet.row(0)]
        if not any(headers):
            raise HTTPException(status_code=400, detail="Report file has no header row")
        rows = []
        for r in range(1, sheet.nrows):
            row_dict = {}
            for c, header in enumerate(headers):
                if header == "":
                    continue
                value = sheet.cell_value(r, c)
                row_dict[header] = value.strip() if isinstance(value, str) else value
            if any(value not in (None, "") for value in row_dict.values()):
                rows.append(row_dict)
        return headers, rows
    raise HTTPException(
        status_code=400,
        detail="Unsupported file type. Please upload a .csv or .xls/.xlsx file.",
    )


def convert_report_date(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        # Excel serial day numbers count from 1899-12-30; 25569 is 1970-01-01.
        try:
            return (datetime(1970, 1, 1) + timedelta(days=float(value) - 25569)).date().isoformat()
        except OverflowError:
            return None
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text[:10] if fmt == "%Y-%m-%d" else text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_currency_value(value: Any, currency_symbol: str = "$") -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace(currency_symbol, "").replace(",", "").strip()
    negative = text.startswith("(") and text.endswith(")")
    text = text.strip("()")
    try:
        amount = float(text)
    except ValueError:
        return 0.0
    return -amount if negative else amount


def standardize_report_record(raw: Dict[str, Any], config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for column in config["required_columns"]:
        value = raw.get(column)
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
    record: Dict[str, Any] = {}
    for column, field in config["column_mapping"].items():
        value = raw.get(column)
        if value is None or value == "":
            continue
        if field in REPORT_DATE_FIELDS:
            record[field] = convert_report_date(value)
        elif field in REPORT_AMOUNT_FIELDS:
            record[field] = value
        else:
            record[field] = cell_to_text(value)
    return record


def find_best_product(products: List[Any], name: Optional[str]) -> Optional[Any]:
    if not name:
        return None
    best = None
    best_score = 0.0
    for product in products:
        score = similarity_score(name, product["name"])
        if score > best_score:
            best, best_score = product, score
    if best is None or best_score < PRODUCT_MATCH_THRESHOLD:
        return None
    return best


def create_commissions_for_deal(
    conn: sqlite3.Connection,
    agency_id: str,
    report_id: Optional[str],
    deal_id: str,
    premium: float,
    commission_date: Optional[str],
) -> int:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM CommissionSnapshot WHERE deal_id = ? ORDER BY hierarchy_level ASC",
        (deal_id,),
    )
    snapshots = cur.fetchall()
    total_pct = sum(float(row["percentage"] or 0) for row in snapshots)
    if premium <= 0 or total_pct <= 0:
        return 0
    now = now_iso()
    for snapshot in snapshots:
        share = float(snapshot["percentage"] or 0) / total_pct
        cur.execute(
            """
            INSERT INTO Commission (
                id, agency_id, report_id, deal_id, agent_id, commission_type, percentage, amount,
                status, payroll_id, commission_date, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                agency_id,
                report_id,
                deal_id,
                snapshot["agent_id"],
                snapshot["commission_type"],
                float(snapshot["percentage"] or 0),
                round(premium * share, 2),
                "pending",
                None,
                commission_date,
                now,
            ),
        )
    return len(snapshots)


def process_commission_records(
    conn: sqlite3.Connection,
    agency_id: str,
    carrier: Any,
    report_id: str,
    records: List[Dict[str, Any]],
    *,
    currency_symbol: str = "$",
    default_date: Optional[str] = None,
) -> tuple[int, List[str]]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM Product WHERE agency_id = ? AND carrier_id = ? AND is_active = 1",
        (agency_id, carrier["id"]),
    )
    products = cur.fetchall()
    processed = 0
    errors: List[str] = []
    for idx, record in enumerate(records, start=1):
        premium = parse_currency_value(record.get("commissionable_premium"), currency_symbol)
        if premium <= 0:
            continue
        policy_number = cell_to_text(record.get("policy_number"))
        agent_number = cell_to_text(record.get("writing_agent_number"))
        cur.execute(
            """
            SELECT a.agent_id FROM AgentCarrierNumber a
            JOIN User u ON u.id = a.agent_id
            WHERE a.carrier_id = ? AND a.agent_number = ? AND u.agency_id = ?
            """,
            (carrier["id"], agent_number, agency_id),
        )
        agent_row = cur.fetchone()
        if not agent_row:
            errors.append(f"Row {idx}: no agent found for writing agent number {agent_number}")
            continue
        product = find_best_product(products, record.get("product"))
        if not product:
            errors.append(f"Row {idx}: no matching product for '{record.get('product') or ''}'")
            continue

        now = now_iso()
        effective_date = record.get("effective_date")
        cur.execute(
            "SELECT id FROM Deal WHERE policy_number = ? AND carrier_id = ? AND agency_id = ?",
            (policy_number, carrier["id"], agency_id),
        )
        existing = cur.fetchone()
        if existing:
            deal_id = existing["id"]
            cur.execute(
                """
                UPDATE Deal
                SET agent_id = ?, product_id = ?, client_name = ?, annual_premium = ?, status = ?,
                    status_standardized = ?, policy_effective_date = COALESCE(?, policy_effective_date),
                    writing_agent_number = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    agent_row["agent_id"],
                    product["id"],
                    record.get("client_name") or "",
                    premium,
                    "verified",
                    standardize_deal_status(conn, carrier["id"], "Active"),
                    effective_date,
                    agent_number,
                    now,
                    deal_id,
                ),
            )
        else:
            deal_id = str(uuid.uuid4())
            cur.execute(
                """
                INSERT INTO Deal (
                    id, agency_id, agent_id, carrier_id, product_id, client_id, client_name, client_phone,
                    policy_number, application_number, status, status_standardized, annual_premium,
                    billing_cycle, lead_source, policy_effective_date, submission_date, writing_agent_number,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    deal_id,
                    agency_id,
                    agent_row["agent_id"],
                    carrier["id"],
                    product["id"],
                    None,
                    record.get("client_name") or "",
                    "",
                    policy_number,
                    None,
                    "verified",
                    standardize_deal_status(conn, carrier["id"], "Active"),
                    premium,
                    record.get("payment_mode"),
                    None,
                    effective_date,
                    record.get("app_date") or effective_date,
                    agent_number,
                    now,
                    now,
                ),
            )
        cur.execute("SELECT COUNT(*) AS cnt FROM CommissionSnapshot WHERE deal_id = ?", (deal_id,))
        if cur.fetchone()["cnt"] == 0:
            build_commission_snapshots(conn, deal_id, agent_row["agent_id"])
        commission_date = record.get("commission_paid_date") or default_date
        create_commissions_for_deal(conn, agency_id, report_id, deal_id, premium, commission_date)
        processed += 1
    return processed, errors


def to_commission_report_out(row: Any) -> CommissionReportOut:
    return CommissionReportOut(
        id=row["id"],
        carrier_id=row["carrier_id"],
        carrier_name=row["carrier_name"] or "Unknown Carrier",
        filename=row["filename"] or "",
        upload_date=row["upload_date"],
        amount=row["amount"],
        payment_identifier=row["payment_identifier"],
        status=row["status"] or "pending",
        record_count=row["record_count"] or 0,
        processed_count=row["processed_count"] or 0,
        error_count=row["error_count"] or 0,
        errors=[str(item) for item in load_json_list(row["errors"])],
        created_at=row["created_at"],
    )


def fetch_commission_report(conn: sqlite3.Connection, user: Any, report_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM CommissionReport WHERE id = ? AND agency_id = ?",
        (report_id, user["agency_id"]),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Commission report not found")
    return row


def remove_file_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        logger.warning("[Uploads] Could not remove %s", path, exc_info=True)


# ----------------------
# Payrolls and payouts
# ----------------------

def compute_payout_amounts(carry_forward_in: float, transaction_total: float, adjustments: float) -> Dict[str, float]:
    amount = round(carry_forward_in + transaction_total + adjustments, 2)
    return {
        "amount": amount,
        "amount_paid": max(amount, 0.0),
        "carry_forward_out": min(amount, 0.0),
    }


def latest_carry_forward(conn: sqlite3.Connection, agency_id: str, agent_id: str, exclude_payroll_id: str) -> float:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT pap.carry_forward_out
        FROM PayrollAgentPayout pap
        JOIN Payroll p ON p.id = pap.payroll_id
        WHERE pap.agent_id = ? AND p.agency_id = ? AND p.id != ?
        ORDER BY p.pay_date DESC, p.created_at DESC
        LIMIT 1
        """,
        (agent_id, agency_id, exclude_payroll_id),
    )
    row = cur.fetchone()
    return float(row["carry_forward_out"] or 0) if row else 0.0


def build_payroll(
    conn: sqlite3.Connection, agency_id: str, pay_date: date, adjustments: Dict[str, float], created_by: str
) -> str:
    payroll_id = str(uuid.uuid4())
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT agent_id, COALESCE(SUM(amount), 0) AS total
        FROM Commission
        WHERE agency_id = ? AND status = 'pending' AND payroll_id IS NULL
            AND (commission_date IS NULL OR commission_date <= ?)
        GROUP BY agent_id
        """,
        (agency_id, pay_date.isoformat()),
    )
    transactions = {row["agent_id"]: float(row["total"] or 0) for row in cur.fetchall()}
    cur.execute("SELECT id FROM User WHERE agency_id = ? AND role != 'client'", (agency_id,))
    agent_ids = [row["id"] for row in cur.fetchall()]

    total_paid = 0.0
    for agent_id in agent_ids:
        carry_in = latest_carry_forward(conn, agency_id, agent_id, payroll_id)
        transaction_total = round(transactions.get(agent_id, 0.0), 2)
        adjustment = round(float(adjustments.get(agent_id, 0.0)), 2)
        if carry_in == 0 and transaction_total == 0 and adjustment == 0:
            continue
        amounts = compute_payout_amounts(carry_in, transaction_total, adjustment)
        cur.execute(
            """
            INSERT INTO PayrollAgentPayout (
                id, payroll_id, agent_id, carry_forward_in, transaction_total, adjustments,
                amount, amount_paid, carry_forward_out, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                payroll_id,
                agent_id,
                carry_in,
                transaction_total,
                adjustment,
                amounts["amount"],
                amounts["amount_paid"],
                amounts["carry_forward_out"],
                now,
            ),
        )
        total_paid += amounts["amount_paid"]

    cur.execute(
        """
        UPDATE Commission SET payroll_id = ?
        WHERE agency_id = ? AND status = 'pending' AND payroll_id IS NULL
            AND (commission_date IS NULL OR commission_date <= ?)
        """,
        (payroll_id, agency_id, pay_date.isoformat()),
    )
    cur.execute(
        """
        INSERT INTO Payroll (id, agency_id, pay_date, status, total_amount, created_by, created_at, published_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (payroll_id, agency_id, pay_date.isoformat(), "draft", round(total_paid, 2), created_by, now, None),
    )
    return payroll_id


def fetch_payroll(conn: sqlite3.Connection, user: Any, payroll_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT p.*, (SELECT COUNT(*) FROM PayrollAgentPayout pap WHERE pap.payroll_id = p.id) AS agent_count
        FROM Payroll p
        WHERE p.id = ? AND p.agency_id = ?
        """,
        (payroll_id, user["agency_id"]),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Payroll not found")
    return row


def to_payroll_out(row: Any) -> PayrollOut:
    return PayrollOut(
        id=row["id"],
        pay_date=row["pay_date"],
        status=row["status"],
        total_amount=float(row["total_amount"] or 0),
        agent_count=row["agent_count"] or 0,
        created_at=row["created_at"],
        published_at=row["published_at"],
    )


def fetch_payroll_detail(conn: sqlite3.Connection, user: Any, payroll_id: str) -> PayrollDetailOut:
    payroll = fetch_payroll(conn, user, payroll_id)
    cur = conn.cursor()
    cur.execute(
        """
        SELECT pap.*, u.first_name, u.last_name
        FROM PayrollAgentPayout pap
        LEFT JOIN User u ON u.id = pap.agent_id
        WHERE pap.payroll_id = ?
        """,
        (payroll_id,),
    )
    rows = cur.fetchall()
    if not is_admin(user):
        rows = [row for row in rows if row["agent_id"] == user["id"]]
    payouts = [
        PayrollAgentPayoutOut(
            id=row["id"],
            agent_id=row["agent_id"],
            agent=f"{row['last_name'] or ''}, {row['first_name'] or ''}".strip(", ") or "Unknown Agent",
            carry_forward_in=float(row["carry_forward_in"] or 0),
            transaction_total=float(row["transaction_total"] or 0),
            adjustments=float(row["adjustments"] or 0),
            amount=float(row["amount"] or 0),
            amount_paid=float(row["amount_paid"] or 0),
            carry_forward_out=float(row["carry_forward_out"] or 0),
        )
        for row in rows
    ]
    payouts.sort(key=lambda item: item.agent.lower())
    return PayrollDetailOut(**to_payroll_out(payroll).dict(), payouts=payouts)


def expected_commission(premium: float, agent_pct: float, downline_pct: float) -> float:
    spread = max(agent_pct - downline_pct, 0.0)
    return round(premium * EXPECTED_PAYOUT_ADVANCE_RATE * spread / 100.0, 2)


SNAPSHOT_SPREAD_SELECT = """
    SELECT d.id AS deal_id, d.annual_premium, d.policy_number, d.client_name, d.status_standardized,
        d.lapse_date, d.updated_at,
        COALESCE(d.policy_effective_date, d.submission_date) AS payout_date,
        COALESCE(sm.impact, 'neutral') AS impact,
        s.percentage AS agent_pct,
        COALESCE((
            SELECT s2.percentage FROM CommissionSnapshot s2
            WHERE s2.deal_id = s.deal_id AND s2.hierarchy_level < s.hierarchy_level
            ORDER BY s2.hierarchy_level DESC
            LIMIT 1
        ), 0) AS downline_pct
    FROM CommissionSnapshot s
    JOIN Deal d ON d.id = s.deal_id
    LEFT JOIN StatusMapping sm ON sm.carrier_id = d.carrier_id AND lower(sm.raw_status) = lower(d.status)
"""


def compute_expected_payouts(conn: sqlite3.Connection, agent_id: str, start: date, end: date) -> ExpectedPayoutsOut:
    cur = conn.cursor()
    cur.execute(
        f"""
        {SNAPSHOT_SPREAD_SELECT}
        WHERE s.agent_id = ? AND d.annual_premium > 0
            AND substr(COALESCE(d.policy_effective_date, d.submission_date), 1, 10) BETWEEN ? AND ?
        """,
        (agent_id, start.isoformat(), end.isoformat()),
    )
    months: Dict[str, Dict[str, Any]] = {}
    for row in cur.fetchall():
        if row["impact"] == "negative":
            continue
        payout = expected_commission(float(row["annual_premium"]), float(row["agent_pct"] or 0), float(row["downline_pct"] or 0))
        month = str(row["payout_date"])[:7]
        bucket = months.setdefault(month, {"total": 0.0, "deal_count": 0})
        bucket["total"] += payout
        bucket["deal_count"] += 1
    month_rows = [
        ExpectedPayoutMonth(month=month, total=round(data["total"], 2), deal_count=data["deal_count"])
        for month, data in sorted(months.items())
    ]
    return ExpectedPayoutsOut(
        agent_id=agent_id,
        start_date=start.isoformat(),
        end_date=end.isoformat(),
        total=round(sum(item.total for item in month_rows), 2),
        months=month_rows,
    )


def unvested_fraction(effective: Optional[date], lapsed_on: Optional[date]) -> float:
    if not effective or not lapsed_on:
        return 1.0
    days = (lapsed_on - effective).days
    if days <= CHARGEBACK_FULL_DAYS:
        return 1.0
    months = days / 30.0
    return max(0.0, 1.0 - months / CHARGEBACK_VESTING_MONTHS)


def compute_agent_debt(conn: sqlite3.Connection, agent_id: str) -> AgentDebtOut:
    cur = conn.cursor()
    cur.execute(
        f"""
        {SNAPSHOT_SPREAD_SELECT}
        WHERE s.agent_id = ? AND d.annual_premium > 0 AND d.status_standardized = 'Lapsed'
        """,
        (agent_id,),
    )
    breakdown: List[DebtBreakdownItem] = []
    for row in cur.fetchall():
        owed = expected_commission(float(row["annual_premium"]), float(row["agent_pct"] or 0), float(row["downline_pct"] or 0))
        lapse_date = row["lapse_date"] or str(row["updated_at"] or "")[:10] or None
        fraction = unvested_fraction(parse_iso_date(row["payout_date"]), parse_iso_date(lapse_date))
        breakdown.append(
            DebtBreakdownItem(
                deal_id=row["deal_id"],
                policy_number=row["policy_number"] or "",
                client_name=row["client_name"] or "",
                lapse_date=lapse_date,
                expected_commission=owed,
                debt=round(owed * fraction, 2),
            )
        )
    return AgentDebtOut(
        agent_id=agent_id,
        total_debt=round(sum(item.debt for item in breakdown), 2),
        lapsed_deals_count=len(breakdown),
        breakdown=breakdown,
    )


# ----------------------
# Underwriting
# ----------------------

COMPULIFE_OPTIONAL_FIELDS = [
    ("height_feet", "HeightFeet"),
    ("height_inches", "HeightInches"),
    ("weight", "Weight"),
    ("systolic", "Systolic"),
    ("diastolic", "Diastolic"),
    ("blood_pressure_medication", "BloodPressureMedication"),
    ("cholesterol_level", "CholesterolLevel"),
    ("hdl_ratio", "HDLRatio"),
    ("cholesterol_medication", "CholesterolMedication"),
    ("period_cholesterol_control_duration", "periodCholesterolControlDuration"),
    ("had_drivers_license", "hadDriversLicense"),
    ("moving_violations0", "movingViolations0"),
    ("moving_violations1", "movingViolations1"),
    ("moving_violations2", "movingViolations2"),
    ("moving_violations3", "movingViolations3"),
    ("moving_violations4", "movingViolations4"),
    ("num_deaths", "numDeaths"),
    ("num_contracted", "numContracted"),
]

# flag field, Compulife flag key, flag value (None sends the field value), dependent fields
COMPULIFE_GROUPED_FIELDS = [
    ("do_cigarettes", "DoCigarettes", "Y", [("period_cigarettes", "periodCigarettes"), ("num_cigarettes", "numCigarettes")]),
    ("do_cigars", "DoCigars", "Y", [("period_cigars", "periodCigars"), ("num_cigars", "numCigars")]),
    ("do_pipe", "DoPipe", "Y", [("period_pipe", "periodPipe")]),
    ("do_chewing_tobacco", "DoChewingTobacco", "Y", [("period_chewing_tobacco", "periodChewingTobacco")]),
    (
        "do_nicotine_patches_or_gum",
        "DoNicotinePatchesOrGum",
        "Y",
        [("period_nicotine_patches_or_gum", "periodNicotinePatchesOrGum")],
    ),
    ("reckless_conviction", "recklessConviction", None, [("period_reckless_conviction", "periodRecklessConviction")]),
    ("dwi_conviction", "dwiConviction", None, [("period_dwi_conviction", "periodDwiConviction")]),
    ("suspended_conviction", "suspendedConviction", None, [("period_suspended_conviction", "periodSuspendedConviction")]),
    (
        "more_than_one_accident",
        "moreThanOneAccident",
        None,
        [("period_more_than_one_accident", "periodMoreThanOneAccident")],
    ),
    ("alcohol", "alcohol", None, [("alcohol_years_since_treatment", "alcoholYearsSinceTreatment")]),
    ("drugs", "drugs", None, [("drugs_years_since_treatment", "drugsYearsSinceTreatment")]),
]


def compulife_authorization_id() -> Optional[str]:
    if COMPULIFE_ENV == "production":
        value = COMPULIFE_PROD_AUTHORIZATION_ID
    else:
        value = COMPULIFE_DEV_AUTHORIZATION_ID
    if not value or value in {"YOUR_DEV_ID_HERE", "YOUR_PROD_ID_HERE"}:
        return None
    return value


def build_compulife_request(payload: UnderwritingQuoteIn, authorization_id: str, remote_ip: str) -> Dict[str, Any]:
    data = payload.dict()
    compulife_request: Dict[str, Any] = {
        "COMPULIFEAUTHORIZATIONID": authorization_id,
        "REMOTE_IP": remote_ip,
        "BirthMonth": data["birth_month"],
        "BirthDay": data["birth_day"],
        "BirthYear": data["birth_year"],
        "Sex": data["sex"],
        "Smoker": data["smoker"],
        "Health": data["health"] or "PP",
        "FaceAmount": data["face_amount"],
        "State": data["state"] or "0",
        "ZipCode": data["zip_code"] or "",
        "ModeUsed": "M",
        "NewCategory": "7",
        "CompRating": "4",
        "SortOverride1": "A",
        "ErrOnMissingZipCode": "ON",
    }
    for field, key in COMPULIFE_OPTIONAL_FIELDS:
        if data.get(field):
            compulife_request[key] = data[field]
    for flag_field, flag_key, flag_value, dependents in COMPULIFE_GROUPED_FIELDS:
        if not data.get(flag_field):
            continue
        compulife_request[flag_key] = flag_value if flag_value is not None else data[flag_field]
        for field, key in dependents:
            if data.get(field):
                compulife_request[key] = data[field]
    return compulife_request


def request_compulife_quote(compulife_request: Dict[str, Any]) -> Any:
    query = urlparse.urlencode({"COMPULIFE": json.dumps(compulife_request)})
    req = urlrequest.Request(
        f"{COMPULIFE_API_URL}?{query}",
        headers={"Accept": "application/json"},
        method="GET",
    )
    try:
        with urlrequest.urlopen(req, timeout=30) as resp:
            raw = resp.read().decode("utf-8").strip()
    except urlerror.HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8")
        except Exception:
            detail = str(exc)
        logger.warning("[Underwriting] Compulife returned %s: %s", exc.code, detail[:500])
        raise HTTPException(status_code=502, detail=f"Compulife API error ({exc.code})")
    except Exception as exc:
        logger.warning("[Underwriting] Compulife request failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Compulife API request failed: {exc}")
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("[Underwriting] Compulife returned non-JSON body: %s", raw[:200])
        raise HTTPException(status_code=502, detail="Compulife API returned an invalid response")


def client_ip_from_request(request: Any) -> str:
    headers = getattr(request, "headers", None) or {}
    forwarded = headers.get("x-forwarded-for") or ""
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or "127.0.0.1"


# ----------------------
# Policy report uploads
# ----------------------

def sanitize_storage_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", (value or "").strip()).strip("._")
    return cleaned or "file"


def sign_upload_token(payload: Dict[str, Any]) -> str:
    body = base64.urlsafe_b64encode(json.dumps(payload, sort_keys=True).encode("utf-8")).decode("ascii").rstrip("=")
    signature = hmac.new(UPLOAD_SIGNING_SECRET.encode("utf-8"), body.encode("ascii"), hashlib.sha256).hexdigest()
    return f"{body}.{signature}"


def verify_upload_token(token: str, now: Optional[float] = None) -> Dict[str, Any]:
    body, _, signature = (token or "").partition(".")
    if not body or not signature:
        raise HTTPException(status_code=400, detail="Invalid upload token")
    expected = hmac.new(UPLOAD_SIGNING_SECRET.encode("utf-8"), body.encode("ascii"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=403, detail="Invalid upload signature")
    padded = body + "=" * (-len(body) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid upload token")
    if float(payload.get("exp") or 0) < (now if now is not None else time.time()):
        raise HTTPException(status_code=403, detail="Upload URL has expired")
    return payload


def build_policy_report_path(agency_id: str, carrier: str, filename: str, timestamp_ms: Optional[int] = None) -> str:
    stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"{agency_id}/{sanitize_storage_segment(carrier)}/{stamp}_{sanitize_storage_segment(filename)}"


def to_policy_report_job_out(row: Any) -> PolicyReportJobOut:
    return PolicyReportJobOut(
        id=row["id"],
        client_job_id=row["client_job_id"],
        expected_files=row["expected_files"],
        status=row["status"],
        created_at=row["created_at"],
    )


# ----------------------
# NIPR verification
# ----------------------

NPN_RE = re.compile(r"^\d+$")
SSN_LAST4_RE = re.compile(r"^\d{4}$")
DOB_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")
STATE_CODE_RE = re.compile(r"\(([A-Z]{2})\)")
STATE_ABBR_RE = re.compile(r"\(([A-Z]{2})\)$")
COMPANY_LABEL_RE = re.compile(r"^\s*(?:company name|company|carrier)\s*[:\-]\s*(?P<name>.+?)\s*$", re.IGNORECASE)
COMPANY_LINE_RE = re.compile(
    r"^[A-Z][A-Z0-9&.,'/ -]*\b(?:INSURANCE|ASSURANCE|LIFE|MUTUAL|FINANCIAL|BENEFIT|CASUALTY)\b"
    r"[A-Z0-9&.,'/ -]*\b(?:COMPANY|CO\.?|CORPORATION|CORP\.?|SOCIETY|ASSOCIATION|INC\.?)$"
)
LOWERCASE_NAME_WORDS = {"of", "and", "the", "for", "in"}
NIPR_ACTIVE_STATUSES = ("pending", "running")


def validate_nipr_form(payload: NiprRunIn) -> Optional[str]:
    last_name = (payload.last_name or "").strip()
    npn = (payload.npn or "").strip()
    ssn_last4 = (payload.ssn_last4 or "").strip()
    dob = (payload.dob or "").strip()
    if not last_name:
        return "Last name is required"
    if not npn:
        return "NPN is required"
    if not NPN_RE.match(npn):
        return "NPN must contain only numbers"
    if not SSN_LAST4_RE.match(ssn_last4):
        return "SSN last 4 must be exactly 4 digits"
    if not DOB_RE.match(dob):
        return "Date of birth must be in MM/DD/YYYY format"
    return None


def nipr_rate_limit_retry_after(conn: sqlite3.Connection, user_id: str, now: Optional[datetime] = None) -> Optional[int]:
    """Seconds until another run is allowed, or None when under the hourly limit."""
    current = now or datetime.utcnow()
    window_start = (current - timedelta(hours=1)).isoformat()
    cur = conn.cursor()
    cur.execute(
        "SELECT created_at FROM NiprRequestLog WHERE user_id = ? AND created_at > ? ORDER BY created_at ASC",
        (user_id, window_start),
    )
    rows = cur.fetchall()
    if len(rows) < NIPR_RATE_LIMIT_PER_HOUR:
        return None
    oldest = parse_iso_datetime(rows[0]["created_at"]) or current
    return max(int((oldest + timedelta(hours=1) - current).total_seconds()) + 1, 1)


def record_nipr_request(conn: sqlite3.Connection, user_id: str) -> None:
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO NiprRequestLog (id, user_id, created_at) VALUES (?, ?, ?)",
        (str(uuid.uuid4()), user_id, now_iso()),
    )


def fetch_nipr_job(conn: sqlite3.Connection, job_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM NiprJob WHERE id = ?", (job_id,))
    return cur.fetchone()


def fetch_active_nipr_job(conn: sqlite3.Connection, user_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM NiprJob
        WHERE user_id = ? AND status IN (?, ?)
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (user_id, *NIPR_ACTIVE_STATUSES),
    )
    return cur.fetchone()


def nipr_queue_position(conn: sqlite3.Connection, job: Any) -> Optional[int]:
    if job["status"] != "pending":
        return None
    cur = conn.cursor()
    cur.execute(
        """
        SELECT COUNT(*) AS cnt FROM NiprJob
        WHERE status = 'pending' AND (created_at < ? OR (created_at = ? AND id < ?))
        """,
        (job["created_at"], job["created_at"], job["id"]),
    )
    return cur.fetchone()["cnt"] + 1


def to_nipr_job_out(conn: sqlite3.Connection, job: Any) -> NiprJobOut:
    return NiprJobOut(
        job_id=job["id"],
        status=job["status"],
        progress=int(job["progress"] or 0),
        progress_message=job["progress_message"],
        queue_position=nipr_queue_position(conn, job),
        result_carriers=[str(item) for item in load_json_list(job["result_carriers"])],
        result_files=[str(item) for item in load_json_list(job["result_files"])],
        error_message=job["error_message"],
        created_at=job["created_at"],
        completed_at=job["completed_at"],
    )


def save_nipr_results(
    conn: sqlite3.Connection,
    user_id: str,
    agency_id: Optional[str],
    carriers: List[str],
    states: Optional[List[str]] = None,
) -> None:
    cur = conn.cursor()
    now = now_iso()
    if states is None:
        cur.execute("UPDATE User SET unique_carriers = ?, updated_at = ? WHERE id = ?", (json.dumps(carriers), now, user_id))
    else:
        cur.execute(
            "UPDATE User SET unique_carriers = ?, licensed_states = ?, updated_at = ? WHERE id = ?",
            (json.dumps(carriers), json.dumps(states), now, user_id),
        )
    if not agency_id:
        return
    cur.execute("SELECT unique_carriers FROM Agency WHERE id = ?", (agency_id,))
    row = cur.fetchone()
    merged = [str(item) for item in load_json_list(row["unique_carriers"] if row else None)]
    seen = {item.lower() for item in merged}
    for carrier in carriers:
        if carrier.lower() not in seen:
            merged.append(carrier)
            seen.add(carrier.lower())
    cur.execute("UPDATE Agency SET unique_carriers = ?, updated_at = ? WHERE id = ?", (json.dumps(merged), now, agency_id))


def normalize_carrier_name(value: str) -> str:
    words = re.sub(r"\s+", " ", value.strip().strip(",;")).split(" ")
    normalized = []
    for idx, word in enumerate(words):
        lower = word.lower()
        if idx > 0 and lower in LOWERCASE_NAME_WORDS:
            normalized.append(lower)
        elif word.isupper() or word.islower():
            normalized.append(word[:1].upper() + word[1:].lower())
        else:
            normalized.append(word)
    return " ".join(normalized)


def analyze_nipr_text(text: str) -> Dict[str, Any]:
    """Pull carrier names and licensed states out of an NIPR PDB report's text."""
    carriers: List[str] = []
    seen_carriers: Set[str] = set()
    resident: List[str] = []
    non_resident: List[str] = []
    section: Optional[str] = None

    def add_carrier(raw: str) -> None:
        name = normalize_carrier_name(raw)
        key = name.lower()
        if name and key not in seen_carriers:
            seen_carriers.add(key)
            carriers.append(name)

    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        lower = stripped.lower()
        if "non-resident" in lower or "nonresident" in lower or "non resident" in lower:
            section = "non_resident"
        elif "resident" in lower:
            section = "resident"

        label = COMPANY_LABEL_RE.match(stripped)
        if label:
            add_carrier(label.group("name"))
            continue
        if COMPANY_LINE_RE.match(stripped):
            add_carrier(stripped)
            continue

        for match in STATE_CODE_RE.finditer(stripped):
            abbr = match.group(1)
            state_name = US_STATES.get(abbr)
            if not state_name or not stripped[: match.start()].rstrip().lower().endswith(state_name.lower()):
                continue
            entry = f"{US_STATES[abbr]} ({abbr})"
            target = non_resident if section == "non_resident" else resident
            if entry not in resident and entry not in non_resident:
                target.append(entry)
    return {
        "carriers": carriers,
        "licensed_states": {"resident": resident, "non_resident": non_resident},
    }


def extract_state_abbreviations(licensed_states: Dict[str, List[str]]) -> List[str]:
    result: List[str] = []
    for entry in [*licensed_states.get("resident", []), *licensed_states.get("non_resident", [])]:
        match = STATE_ABBR_RE.search(entry.strip())
        if match and match.group(1) not in result:
            result.append(match.group(1))
    return result


def extract_pdf_text(path: Path) -> str:
    with fitz.open(path) as doc:
        return "\n".join(page.get_text() for page in doc)


def format_sse_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def nipr_job_event_stream(
    job_id: str,
    user_id: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    poll_seconds: Optional[float] = None,
    timeout_seconds: Optional[float] = None,
) -> Iterator[str]:
    poll = NIPR_SSE_POLL_SECONDS if poll_seconds is None else poll_seconds
    timeout = NIPR_SSE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    started = clock()
    last_snapshot: Optional[tuple] = None
    while True:
        with get_db() as conn:
            job = fetch_nipr_job(conn, job_id)
            if not job or job["user_id"] != user_id:
                yield format_sse_event("error", {"job_id": job_id, "error": "Job not found"})
                return
            view = to_nipr_job_out(conn, job)
        snapshot = (view.status, view.progress, view.progress_message, view.queue_position)
        if snapshot != last_snapshot:
            last_snapshot = snapshot
            yield format_sse_event(
                "progress",
                {
                    "job_id": view.job_id,
                    "status": view.status,
                    "progress": view.progress,
                    "progress_message": view.progress_message,
                    "queue_position": view.queue_position,
                },
            )
        if view.status == "completed":
            yield format_sse_event(
                "completed",
                {
                    "job_id": view.job_id,
                    "result_carriers": view.result_carriers,
                    "result_files": view.result_files,
                    "completed_at": view.completed_at,
                },
            )
            return
        if view.status == "failed":
            yield format_sse_event(
                "failed",
                {"job_id": view.job_id, "error_message": view.error_message or "Verification failed"},
            )
            return
        if clock() - started >= timeout:
            yield format_sse_event("timeout", {"job_id": view.job_id})
            return
        sleep(poll)


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    init_db()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/login", response_model=AuthUserOut)
def login_with_password(payload: AuthLoginIn, response: Response) -> AuthUserOut:
    email = normalize_user_email(payload.email)
    password = payload.password
    if not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM User WHERE email = ?", (email,))
        user = cur.fetchone()
        if not user or not user["is_active"] or not verify_password(
            password,
            user["password_salt"],
            user["password_hash"],
        ):
            logger.info("[Auth] Failed login for %s", email)
            raise HTTPException(status_code=401, detail="Invalid email or password.")
        session_token = create_auth_session(conn, user["id"])

    response.set_cookie(
        SESSION_COOKIE_NAME,
        session_token,
        httponly=True,
        samesite=SESSION_COOKIE_SAMESITE,
        secure=SESSION_COOKIE_SECURE,
        max_age=SESSION_DURATION_HOURS * 3600,
        path="/",
    )
    return auth_user_payload(user)


@app.get("/api/auth/me", response_model=AuthUserOut)
def get_auth_me(request: Request) -> AuthUserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
    return auth_user_payload(user)


@app.post("/api/auth/logout")
def logout(response: Response, request: Request) -> Dict[str, str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        session_hash = sha256_hex(token)
        with get_db() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM AuthSession WHERE session_hash = ?", (session_hash,))
            conn.commit()
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}


@app.get("/api/user/profile", response_model=ProfileOut)
def get_user_profile(request: Request) -> ProfileOut:
    with get_db() as conn:
        session_user = require_session_user(conn, request)
        user = fetch_user(conn, session_user["id"])
        cur = conn.cursor()
        cur.execute("SELECT name FROM Agency WHERE id = ?", (user["agency_id"],))
        agency = cur.fetchone()
    return ProfileOut(
        **to_agent_out(user).dict(),
        agency_name=agency["name"] if agency else None,
        unique_carriers=[str(item) for item in load_json_list(user["unique_carriers"])],
        licensed_states=[str(item) for item in load_json_list(user["licensed_states"])],
    )


@app.get("/api/agents", response_model=List[AgentOut])
def list_agents(request: Request) -> List[AgentOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        if is_admin(user):
            cur.execute(
                "SELECT * FROM User WHERE agency_id = ? ORDER BY last_name ASC, first_name ASC",
                (user["agency_id"],),
            )
            rows = cur.fetchall()
        else:
            agent_ids = visible_agent_ids(conn, user)
            cur.execute(
                f"""
                SELECT * FROM User WHERE id IN ({', '.join('?' for _ in agent_ids)})
                ORDER BY last_name ASC, first_name ASC
                """,
                agent_ids,
            )
            rows = cur.fetchall()
    return [to_agent_out(row) for row in rows]


def require_upline_in_agency(conn: sqlite3.Connection, agency_id: str, upline_id: Optional[str], agent_id: Optional[str] = None) -> None:
    if not upline_id:
        return
    upline = fetch_user(conn, upline_id)
    if upline["agency_id"] != agency_id:
        raise HTTPException(status_code=400, detail="Upline must belong to the same agency")
    if agent_id and (upline_id == agent_id or upline_id in fetch_downline_ids(conn, agent_id)):
        raise HTTPException(status_code=400, detail="Upline cannot be the agent or one of their downlines")


@app.post("/api/agents", response_model=AgentOut)
def create_agent(payload: AgentIn, request: Request) -> AgentOut:
    agent_id = str(uuid.uuid4())
    now = now_iso()
    raw_password = require_valid_password(payload.password, required=True)
    password_salt, password_hash = create_password_credentials(raw_password)
    email = normalize_user_email(payload.email)
    role = normalize_user_role(payload.role)
    tier = normalize_subscription_tier(payload.subscription_tier)
    with get_db() as conn:
        admin = require_session_role(conn, request, {"admin"})
        require_upline_in_agency(conn, admin["agency_id"], payload.upline_id)
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO User (
                    id, agency_id, first_name, last_name, email, phone, role, upline_id, is_active,
                    subscription_tier, commission_level, password_salt, password_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    agent_id,
                    admin["agency_id"],
                    payload.first_name.strip(),
                    payload.last_name.strip(),
                    email,
                    payload.phone.strip(),
                    role,
                    payload.upline_id,
                    1,
                    tier,
                    payload.commission_level,
                    password_salt,
                    password_hash,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        conn.commit()
        row = fetch_user(conn, agent_id)
    return to_agent_out(row)


@app.patch("/api/agents/{agent_id}", response_model=AgentOut)
def update_agent(agent_id: str, payload: AgentUpdate, request: Request) -> AgentOut:
    with get_db() as conn:
        admin = require_session_role(conn, request, {"admin"})
        agent = fetch_user(conn, agent_id)
        if agent["agency_id"] != admin["agency_id"]:
            raise HTTPException(status_code=404, detail="User not found")
        updates = payload.dict(exclude_unset=True)
        data = dict(agent)
        password_changed = False
        for key, value in updates.items():
            if key == "password":
                continue
            if isinstance(value, str):
                value = value.strip()
            if key == "email" and value:
                value = normalize_user_email(value)
            if key == "role" and value:
                value = normalize_user_role(value)
            if key == "subscription_tier":
                value = normalize_subscription_tier(value)
            if key == "upline_id":
                value = value or None
                require_upline_in_agency(conn, admin["agency_id"], value, agent_id)
            if key == "is_active":
                value = 1 if value else 0
            data[key] = value
        if "password" in updates:
            password_value = require_valid_password(updates.get("password"), required=True)
            data["password_salt"], data["password_hash"] = create_password_credentials(password_value)
            password_changed = True
        data["updated_at"] = now_iso()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE User
                SET first_name = ?, last_name = ?, email = ?, phone = ?, role = ?, upline_id = ?, is_active = ?,
                    subscription_tier = ?, commission_level = ?, password_salt = ?, password_hash = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    data["first_name"],
                    data["last_name"],
                    data["email"],
                    data.get("phone") or "",
                    data["role"],
                    data.get("upline_id"),
                    data["is_active"],
                    data["subscription_tier"],
                    data.get("commission_level"),
                    data.get("password_salt"),
                    data.get("password_hash"),
                    data["updated_at"],
                    agent_id,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        if password_changed or not data["is_active"]:
            revoke_user_sessions(conn, agent_id)
        conn.commit()
        row = fetch_user(conn, agent_id)
    return to_agent_out(row)


@app.get("/api/agents/{agent_id}/downlines", response_model=List[AgentOut])
def list_agent_downlines(agent_id: str, request: Request) -> List[AgentOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_agent_access(conn, user, agent_id)
        downline_ids = fetch_downline_ids(conn, agent_id)
        if not downline_ids:
            return []
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT * FROM User WHERE id IN ({', '.join('?' for _ in downline_ids)})
            ORDER BY last_name ASC, first_name ASC
            """,
            downline_ids,
        )
        rows = cur.fetchall()
    return [to_agent_out(row) for row in rows]


def collect_deal_filters(**filters: Optional[str]) -> Dict[str, Optional[str]]:
    return {key: value for key, value in filters.items() if value is not None}


@app.get("/api/deals/book-of-business", response_model=BookOfBusinessOut)
def get_book_of_business(
    request: Request,
    view: Optional[str] = None,
    limit: Optional[int] = None,
    cursor_created_at: Optional[str] = None,
    cursor_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    carrier_id: Optional[str] = None,
    product_id: Optional[str] = None,
    client_id: Optional[str] = None,
    policy_number: Optional[str] = None,
    status_mode: Optional[str] = None,
    status_standardized: Optional[str] = None,
    billing_cycle: Optional[str] = None,
    lead_source: Optional[str] = None,
    client_phone: Optional[str] = None,
    effective_date_start: Optional[str] = None,
    effective_date_end: Optional[str] = None,
    submitted_date_start: Optional[str] = None,
    submitted_date_end: Optional[str] = None,
) -> BookOfBusinessOut:
    filters = collect_deal_filters(
        agent_id=agent_id,
        carrier_id=carrier_id,
        product_id=product_id,
        client_id=client_id,
        policy_number=policy_number,
        status_mode=status_mode,
        status_standardized=status_standardized,
        billing_cycle=billing_cycle,
        lead_source=lead_source,
        client_phone=client_phone,
        effective_date_start=effective_date_start,
        effective_date_end=effective_date_end,
        submitted_date_start=submitted_date_start,
        submitted_date_end=submitted_date_end,
    )
    with get_db() as conn:
        user = require_session_user(conn, request)
        resolved_view = resolve_deal_view(user, view)
        return query_book_of_business(
            conn,
            user,
            resolved_view,
            filters,
            limit=limit,
            cursor_created_at=cursor_created_at,
            cursor_id=cursor_id,
        )


@app.get("/api/deals/book-of-business/summary", response_model=BookOfBusinessSummaryOut)
def get_book_of_business_summary(
    request: Request,
    view: Optional[str] = None,
    agent_id: Optional[str] = None,
    carrier_id: Optional[str] = None,
    product_id: Optional[str] = None,
    client_id: Optional[str] = None,
    policy_number: Optional[str] = None,
    status_mode: Optional[str] = None,
    status_standardized: Optional[str] = None,
    billing_cycle: Optional[str] = None,
    lead_source: Optional[str] = None,
    client_phone: Optional[str] = None,
    effective_date_start: Optional[str] = None,
    effective_date_end: Optional[str] = None,
    submitted_date_start: Optional[str] = None,
    submitted_date_end: Optional[str] = None,
) -> BookOfBusinessSummaryOut:
    filters = collect_deal_filters(
        agent_id=agent_id,
        carrier_id=carrier_id,
        product_id=product_id,
        client_id=client_id,
        policy_number=policy_number,
        status_mode=status_mode,
        status_standardized=status_standardized,
        billing_cycle=billing_cycle,
        lead_source=lead_source,
        client_phone=client_phone,
        effective_date_start=effective_date_start,
        effective_date_end=effective_date_end,
        submitted_date_start=submitted_date_start,
        submitted_date_end=submitted_date_end,
    )
    with get_db() as conn:
        user = require_session_user(conn, request)
        return summarize_book_of_business(conn, user, resolve_deal_view(user, view), filters)


@app.get("/api/deals/filter-options", response_model=DealFilterOptionsOut)
def get_deal_filter_options(request: Request, view: Optional[str] = None) -> DealFilterOptionsOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        resolved_view = resolve_deal_view(user, view)
        scope_clauses, params = deal_scope_clauses(conn, user, resolved_view)
        where = " AND ".join(scope_clauses)
        cur = conn.cursor()
        cur.execute("SELECT id, name, display_name FROM Carrier WHERE is_active = 1 ORDER BY name ASC")
        carriers = [FilterOption(value=row["id"], label=row["display_name"] or row["name"]) for row in cur.fetchall()]
        cur.execute(
            "SELECT id, name FROM Product WHERE agency_id = ? AND is_active = 1 ORDER BY name ASC",
            (user["agency_id"],),
        )
        products = [FilterOption(value=row["id"], label=row["name"]) for row in cur.fetchall()]
        if resolved_view == "agency":
            cur.execute(
                "SELECT id, first_name, last_name FROM User WHERE agency_id = ? AND role != 'client' ORDER BY last_name, first_name",
                (user["agency_id"],),
            )
        else:
            agent_ids = [user["id"]] if resolved_view == "self" else visible_agent_ids(conn, user)
            cur.execute(
                f"""
                SELECT id, first_name, last_name FROM User WHERE id IN ({', '.join('?' for _ in agent_ids)})
                ORDER BY last_name, first_name
                """,
                agent_ids,
            )
        agents = [
            FilterOption(value=row["id"], label=agent_display_name(row["first_name"], row["last_name"]))
            for row in cur.fetchall()
        ]
        distinct: Dict[str, List[str]] = {}
        for column in ("status_standardized", "billing_cycle", "lead_source"):
            cur.execute(
                f"""
                SELECT DISTINCT d.{column} AS value FROM Deal d
                WHERE {where} AND d.{column} IS NOT NULL AND d.{column} != ''
                ORDER BY d.{column} ASC
                """,
                params,
            )
            distinct[column] = [row["value"] for row in cur.fetchall()]
    return DealFilterOptionsOut(
        carriers=carriers,
        products=products,
        agents=agents,
        statuses=distinct["status_standardized"],
        billing_cycles=distinct["billing_cycle"],
        lead_sources=distinct["lead_source"],
    )


@app.post("/api/deals", response_model=DealOut)
def create_deal(payload: DealIn, request: Request) -> DealOut:
    if payload.annual_premium < 0:
        raise HTTPException(status_code=400, detail="Annual premium cannot be negative")
    if not payload.client_name.strip():
        raise HTTPException(status_code=400, detail="Client name is required")
    effective_date = normalize_optional_date(payload.policy_effective_date, "policy_effective_date")
    submission_date = normalize_optional_date(payload.submission_date, "submission_date") or today_utc().isoformat()
    deal_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_session_user(conn, request)
        agent_id = payload.agent_id or user["id"]
        require_agent_access(conn, user, agent_id)
        carrier = fetch_carrier(conn, payload.carrier_id)
        if payload.product_id:
            cur = conn.cursor()
            cur.execute(
                "SELECT id FROM Product WHERE id = ? AND carrier_id = ? AND agency_id = ?",
                (payload.product_id, carrier["id"], user["agency_id"]),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=400, detail="Product does not belong to this carrier")
        status = payload.status.strip() or "Pending"
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Deal (
                id, agency_id, agent_id, carrier_id, product_id, client_id, client_name, client_phone,
                policy_number, application_number, status, status_standardized, annual_premium,
                billing_cycle, lead_source, policy_effective_date, submission_date, writing_agent_number,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deal_id,
                user["agency_id"],
                agent_id,
                carrier["id"],
                payload.product_id,
                payload.client_id,
                payload.client_name.strip(),
                digits_only(payload.client_phone),
                (payload.policy_number or "").strip() or None,
                (payload.application_number or "").strip() or None,
                status,
                standardize_deal_status(conn, carrier["id"], status),
                float(payload.annual_premium),
                payload.billing_cycle,
                payload.lead_source,
                effective_date,
                submission_date,
                None,
                now,
                now,
            ),
        )
        build_commission_snapshots(conn, deal_id, agent_id)
        conn.commit()
        row = fetch_deal(conn, user, deal_id)
    return DealOut(**dict(row))


@app.get("/api/deals/{deal_id}", response_model=DealOut)
def get_deal(deal_id: str, request: Request) -> DealOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_deal(conn, user, deal_id)
    return DealOut(**dict(row))


@app.patch("/api/deals/{deal_id}", response_model=DealOut)
def update_deal(deal_id: str, payload: DealUpdate, request: Request) -> DealOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        deal = fetch_deal(conn, user, deal_id)
        updates = payload.dict(exclude_unset=True)
        data = dict(deal)
        for key, value in updates.items():
            if isinstance(value, str):
                value = value.strip()
            if key in {"policy_effective_date", "submission_date"}:
                value = normalize_optional_date(value, key)
            if key == "client_phone":
                value = digits_only(value)
            if key == "annual_premium" and value is not None and value < 0:
                raise HTTPException(status_code=400, detail="Annual premium cannot be negative")
            data[key] = value
        if "status" in updates:
            data["status_standardized"] = standardize_deal_status(conn, deal["carrier_id"], data["status"])
            if data["status_standardized"] == "Lapsed" and deal["status_standardized"] != "Lapsed":
                data["lapse_date"] = today_utc().isoformat()
            elif data["status_standardized"] != "Lapsed":
                data["lapse_date"] = None
        data["updated_at"] = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE Deal
            SET product_id = ?, client_name = ?, client_phone = ?, policy_number = ?, application_number = ?,
                status = ?, status_standardized = ?, annual_premium = ?, billing_cycle = ?, lead_source = ?,
                policy_effective_date = ?, submission_date = ?, lapse_date = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                data["product_id"],
                data["client_name"],
                data["client_phone"],
                data["policy_number"],
                data["application_number"],
                data["status"],
                data["status_standardized"],
                data["annual_premium"],
                data["billing_cycle"],
                data["lead_source"],
                data["policy_effective_date"],
                data["submission_date"],
                data.get("lapse_date"),
                data["updated_at"],
                deal_id,
            ),
        )
        conn.commit()
        row = fetch_deal(conn, user, deal_id)
    return DealOut(**dict(row))


@app.get("/api/scoreboard", response_model=ScoreboardOut)
def get_scoreboard(
    request: Request,
    timeframe: str = "this_week",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    scope: Optional[str] = None,
    submitted: bool = False,
    use_submitted_date: bool = False,
) -> ScoreboardOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        agency = fetch_agency(conn, user["agency_id"])
        start, end = resolve_timeframe_range(timeframe, today_utc(), start_date, end_date)
        default_start = parse_iso_date(agency["default_scoreboard_start_date"])
        if submitted and (timeframe or "").strip().lower() != "custom" and default_start:
            start = default_start
        resolved_scope = resolve_scoreboard_scope(agency, user, scope)
        agent_ids = None if resolved_scope == "agency" else visible_agent_ids(conn, user)
        leaderboard, stats = compute_scoreboard(
            conn,
            agency["id"],
            start,
            end,
            agent_ids=agent_ids,
            submitted=submitted,
            use_submitted_date=use_submitted_date,
        )
    return ScoreboardOut(
        timeframe=timeframe,
        scope=resolved_scope,
        date_range=DateRangeOut(start_date=start.isoformat(), end_date=end.isoformat()),
        leaderboard=leaderboard,
        stats=stats,
    )


@app.get("/api/agency/scoreboard-settings", response_model=ScoreboardSettingsOut)
def get_scoreboard_settings(request: Request) -> ScoreboardSettingsOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        agency = fetch_agency(conn, user["agency_id"])
    return to_scoreboard_settings(agency)


@app.put("/api/agency/scoreboard-settings", response_model=ScoreboardSettingsOut)
def update_scoreboard_settings(payload: ScoreboardSettingsUpdate, request: Request) -> ScoreboardSettingsOut:
    updates = payload.dict(exclude_unset=True)
    with get_db() as conn:
        admin = require_session_role(conn, request, {"admin"})
        agency = fetch_agency(conn, admin["agency_id"])
        visibility = agency["scoreboard_agent_visibility"]
        start_date = agency["default_scoreboard_start_date"]
        if "scoreboard_agent_visibility" in updates:
            visibility = 1 if updates["scoreboard_agent_visibility"] else 0
        if "default_scoreboard_start_date" in updates:
            start_date = normalize_optional_date(updates["default_scoreboard_start_date"], "default_scoreboard_start_date")
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE Agency
            SET scoreboard_agent_visibility = ?, default_scoreboard_start_date = ?, updated_at = ?
            WHERE id = ?
            """,
            (visibility, start_date, now_iso(), agency["id"]),
        )
        conn.commit()
        agency = fetch_agency(conn, agency["id"])
    return to_scoreboard_settings(agency)


@app.get("/api/commission-reports/carriers", response_model=List[CarrierConfigOut])
def list_commission_report_carriers(request: Request) -> List[CarrierConfigOut]:
    with get_db() as conn:
        require_session_user(conn, request)
        result = []
        for name, config in CARRIER_CONFIGS.items():
            carrier = fetch_carrier_by_name(conn, name)
            result.append(
                CarrierConfigOut(
                    carrier=name,
                    carrier_id=carrier["id"] if carrier else None,
                    file_type=config["file_type"],
                    sheet_name=config.get("sheet_name"),
                    required_columns=list(config["required_columns"]),
                )
            )
    return result


@app.post("/api/commission-reports/upload", response_model=CommissionReportOut)
def upload_commission_report(
    request: Request,
    carrier: str = Form(...),
    upload_date: Optional[str] = Form(None),
    amount: Optional[str] = Form(None),
    payment_identifier: Optional[str] = Form(None),
    file: UploadFile = File(...),
) -> CommissionReportOut:
    config = CARRIER_CONFIGS.get(carrier.strip())
    filename = Path(file.filename or "report").name
    suffix = Path(filename).suffix.lower()
    if not config:
        raise HTTPException(status_code=400, detail=f"No commission report configuration for carrier: {carrier}")
    if config["file_type"] == "excel" and suffix not in {".xlsx", ".xls"}:
        raise HTTPException(status_code=400, detail=f"{carrier} reports must be uploaded as an Excel file")
    if config["file_type"] == "csv" and suffix != ".csv":
        raise HTTPException(status_code=400, detail=f"{carrier} reports must be uploaded as a CSV file")
    report_date = normalize_optional_date(upload_date, "upload_date") or today_utc().isoformat()

    with get_db() as conn:
        user = require_session_role(conn, request, {"admin"})
        carrier_row = fetch_carrier_by_name(conn, carrier)
        if not carrier_row:
            raise HTTPException(status_code=400, detail="Invalid carrier selected")

        report_id = str(uuid.uuid4())
        report_dir = UPLOADS_DIR / "commission-reports" / report_id
        report_dir.mkdir(parents=True, exist_ok=True)
        target_path = report_dir / filename
        with target_path.open("wb") as f:
            f.write(file.file.read())

        try:
            _headers, raw_rows = load_report_rows(target_path, config.get("sheet_name"))
        except HTTPException:
            remove_file_quietly(str(target_path))
            raise
        except Exception as exc:
            logger.exception("[CommissionReport] Could not parse %s", filename)
            remove_file_quietly(str(target_path))
            raise HTTPException(status_code=400, detail=f"Could not read report file: {exc}")

        currency_symbol = config.get("currency_symbol", "$")
        records = [
            record
            for record in (standardize_report_record(row, config) for row in raw_rows)
            if record and parse_currency_value(record.get("commissionable_premium"), currency_symbol) > 0
        ]
        if not records:
            remove_file_quietly(str(target_path))
            raise HTTPException(status_code=400, detail="No valid records found in the report")

        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO CommissionReport (
                id, agency_id, carrier_id, carrier_name, filename, path, upload_date, amount, payment_identifier,
                status, record_count, processed_count, error_count, errors, uploaded_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report_id,
                user["agency_id"],
                carrier_row["id"],
                carrier_row["name"],
                filename,
                str(target_path),
                report_date,
                parse_currency_value(amount, config.get("currency_symbol", "$")) if amount else None,
                (payment_identifier or "").strip() or None,
                "processing",
                len(records),
                0,
                0,
                json.dumps([]),
                user["id"],
                now,
                now,
            ),
        )
        processed, errors = process_commission_records(
            conn,
            user["agency_id"],
            carrier_row,
            report_id,
            records,
            currency_symbol=config.get("currency_symbol", "$"),
            default_date=report_date,
        )
        if errors:
            logger.warning("[CommissionReport] %s finished with %d errors", report_id, len(errors))
        cur.execute(
            """
            UPDATE CommissionReport
            SET status = ?, processed_count = ?, error_count = ?, errors = ?, updated_at = ?
            WHERE id = ?
            """,
            ("error" if errors else "processed", processed, len(errors), json.dumps(errors), now_iso(), report_id),
        )
        conn.commit()
        row = fetch_commission_report(conn, user, report_id)
    logger.info("[CommissionReport] Processed %d of %d records for %s", processed, len(records), carrier_row["name"])
    return to_commission_report_out(row)


@app.get("/api/commission-reports", response_model=List[CommissionReportOut])
def list_commission_reports(request: Request, carrier_id: Optional[str] = None) -> List[CommissionReportOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        if is_filter_set(carrier_id):
            cur.execute(
                "SELECT * FROM CommissionReport WHERE agency_id = ? AND carrier_id = ? ORDER BY created_at DESC",
                (user["agency_id"], carrier_id),
            )
        else:
            cur.execute(
                "SELECT * FROM CommissionReport WHERE agency_id = ? ORDER BY created_at DESC",
                (user["agency_id"],),
            )
        rows = cur.fetchall()
    return [to_commission_report_out(row) for row in rows]


@app.get("/api/commission-reports/{report_id}", response_model=CommissionReportDetailOut)
def get_commission_report(report_id: str, request: Request) -> CommissionReportDetailOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        report = fetch_commission_report(conn, user, report_id)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT c.*, d.policy_number, d.client_name, u.first_name, u.last_name
            FROM Commission c
            LEFT JOIN Deal d ON d.id = c.deal_id
            LEFT JOIN User u ON u.id = c.agent_id
            WHERE c.report_id = ?
            ORDER BY d.policy_number ASC, c.percentage DESC
            """,
            (report_id,),
        )
        rows = cur.fetchall()
        if not is_admin(user):
            allowed = set(visible_agent_ids(conn, user))
            rows = [row for row in rows if row["agent_id"] in allowed]
    commissions = [
        CommissionLineOut(
            id=row["id"],
            deal_id=row["deal_id"],
            agent_id=row["agent_id"],
            agent_name=agent_display_name(row["first_name"], row["last_name"]),
            policy_number=row["policy_number"] or "",
            client_name=row["client_name"] or "",
            commission_type=row["commission_type"],
            percentage=float(row["percentage"] or 0),
            amount=float(row["amount"] or 0),
            status=row["status"] or "pending",
            commission_date=row["commission_date"],
        )
        for row in rows
    ]
    return CommissionReportDetailOut(**to_commission_report_out(report).dict(), commissions=commissions)


@app.get("/api/commission-reports/{report_id}/download")
def download_commission_report(report_id: str, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        report = fetch_commission_report(conn, user, report_id)
    file_path = Path(report["path"] or "")
    if not report["path"] or not file_path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=str(file_path), filename=report["filename"])


@app.delete("/api/commission-reports/{report_id}")
def delete_commission_report(report_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_role(conn, request, {"admin"})
        report = fetch_commission_report(conn, user, report_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT COUNT(*) AS cnt FROM Commission WHERE report_id = ? AND status = 'paid'",
            (report_id,),
        )
        if cur.fetchone()["cnt"]:
            raise HTTPException(status_code=409, detail="Report has commissions on a published payroll")
        cur.execute("DELETE FROM Commission WHERE report_id = ?", (report_id,))
        cur.execute("DELETE FROM CommissionReport WHERE id = ?", (report_id,))
        conn.commit()
    remove_file_quietly(report["path"])
    return {"status": "deleted"}


@app.post("/api/payrolls", response_model=PayrollDetailOut)
def create_payroll(payload: PayrollIn, request: Request) -> PayrollDetailOut:
    pay_date = parse_iso_date(payload.pay_date)
    if not pay_date:
        raise HTTPException(status_code=400, detail="pay_date must be a YYYY-MM-DD date")
    with get_db() as conn:
        admin = require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute(
            "SELECT id FROM Payroll WHERE agency_id = ? AND status = 'draft'",
            (admin["agency_id"],),
        )
        if cur.fetchone():
            raise HTTPException(status_code=409, detail="Publish or delete the current draft payroll first")
        payroll_id = build_payroll(conn, admin["agency_id"], pay_date, payload.adjustments, admin["id"])
        conn.commit()
        logger.info("[Payroll] Created payroll %s for %s", payroll_id, pay_date.isoformat())
        return fetch_payroll_detail(conn, admin, payroll_id)


@app.get("/api/payrolls", response_model=List[PayrollOut])
def list_payrolls(request: Request) -> List[PayrollOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        status_clause = "" if is_admin(user) else "AND p.status = 'published'"
        cur.execute(
            f"""
            SELECT p.*, (SELECT COUNT(*) FROM PayrollAgentPayout pap WHERE pap.payroll_id = p.id) AS agent_count
            FROM Payroll p
            WHERE p.agency_id = ? {status_clause}
            ORDER BY p.pay_date DESC, p.created_at DESC
            """,
            (user["agency_id"],),
        )
        rows = cur.fetchall()
    return [to_payroll_out(row) for row in rows]


@app.get("/api/payrolls/{payroll_id}", response_model=PayrollDetailOut)
def get_payroll(payroll_id: str, request: Request) -> PayrollDetailOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        payroll = fetch_payroll(conn, user, payroll_id)
        if payroll["status"] != "published" and not is_admin(user):
            raise HTTPException(status_code=404, detail="Payroll not found")
        return fetch_payroll_detail(conn, user, payroll_id)


@app.post("/api/payrolls/{payroll_id}/publish", response_model=PayrollDetailOut)
def publish_payroll(payroll_id: str, request: Request) -> PayrollDetailOut:
    with get_db() as conn:
        admin = require_session_role(conn, request, {"admin"})
        payroll = fetch_payroll(conn, admin, payroll_id)
        if payroll["status"] == "published":
            raise HTTPException(status_code=409, detail="Payroll is already published")
        cur = conn.cursor()
        cur.execute(
            "UPDATE Payroll SET status = 'published', published_at = ? WHERE id = ?",
            (now_iso(), payroll_id),
        )
        cur.execute("UPDATE Commission SET status = 'paid' WHERE payroll_id = ?", (payroll_id,))
        conn.commit()
        return fetch_payroll_detail(conn, admin, payroll_id)


@app.delete("/api/payrolls/{payroll_id}")
def delete_payroll(payroll_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        admin = require_session_role(conn, request, {"admin"})
        payroll = fetch_payroll(conn, admin, payroll_id)
        if payroll["status"] == "published":
            raise HTTPException(status_code=409, detail="Published payrolls cannot be deleted")
        cur = conn.cursor()
        cur.execute("UPDATE Commission SET payroll_id = NULL WHERE payroll_id = ?", (payroll_id,))
        cur.execute("DELETE FROM PayrollAgentPayout WHERE payroll_id = ?", (payroll_id,))
        cur.execute("DELETE FROM Payroll WHERE id = ?", (payroll_id,))
        conn.commit()
    return {"status": "deleted"}


@app.get("/api/expected-payouts", response_model=ExpectedPayoutsOut)
def get_expected_payouts(
    request: Request,
    agent_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> ExpectedPayoutsOut:
    today = today_utc()
    start = parse_iso_date(start_date) if start_date else shift_years(today, -1)
    end = parse_iso_date(end_date) if end_date else today
    if not start or not end:
        raise HTTPException(status_code=400, detail="start_date and end_date must be YYYY-MM-DD dates")
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
    with get_db() as conn:
        user = require_session_user(conn, request)
        target_id = agent_id or user["id"]
        require_agent_access(conn, user, target_id)
        return compute_expected_payouts(conn, target_id, start, end)


@app.get("/api/expected-payouts/debt", response_model=AgentDebtOut)
def get_agent_debt(request: Request, agent_id: Optional[str] = None) -> AgentDebtOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        target_id = agent_id or user["id"]
        require_agent_access(conn, user, target_id)
        return compute_agent_debt(conn, target_id)


@app.post("/api/underwriting/quote")
def create_underwriting_quote(payload: UnderwritingQuoteIn, request: Request) -> Any:
    with get_db() as conn:
        user = require_session_user(conn, request)
    tier = (user["subscription_tier"] or "free").strip().lower()
    if tier not in UNDERWRITING_TIERS:
        return JSONResponse(
            status_code=403,
            content={
                "error": "Underwriting tool is only available for Pro and Expert tier users",
                "current_tier": tier,
                "required_tiers": UNDERWRITING_TIERS,
            },
        )
    required = [payload.birth_month, payload.birth_day, payload.birth_year, payload.sex, payload.smoker, payload.face_amount]
    if not all(required):
        raise HTTPException(status_code=400, detail="Missing required fields")
    authorization_id = compulife_authorization_id()
    if not authorization_id:
        logger.error("[Underwriting] Compulife authorization id is not configured for %s", COMPULIFE_ENV)
        raise HTTPException(
            status_code=500,
            detail="Underwriting service is not configured. Please contact your administrator.",
        )
    compulife_request = build_compulife_request(payload, authorization_id, client_ip_from_request(request))
    data = request_compulife_quote(compulife_request)
    return {"success": True, "data": data, "environment": COMPULIFE_ENV}


@app.post("/api/upload-policy-reports/sign", response_model=PolicyReportSignOut)
def sign_policy_report_upload(payload: PolicyReportSignIn, request: Request) -> PolicyReportSignOut:
    content_type = (payload.content_type or "").strip().lower()
    filename = Path(payload.filename or "").name
    if not filename:
        raise HTTPException(status_code=400, detail="Filename is required")
    if content_type not in POLICY_REPORT_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Only CSV and Excel files are allowed")
    if payload.size <= 0:
        raise HTTPException(status_code=400, detail="File is empty")
    if payload.size > POLICY_REPORT_MAX_BYTES:
        raise HTTPException(status_code=413, detail="File exceeds the maximum upload size")
    if not (payload.carrier or "").strip():
        raise HTTPException(status_code=400, detail="Carrier is required")
    with get_db() as conn:
        user = require_session_user(conn, request)
    path = build_policy_report_path(user["agency_id"], payload.carrier, filename)
    token = sign_upload_token(
        {
            "path": path,
            "agency_id": user["agency_id"],
            "user_id": user["id"],
            "carrier": payload.carrier.strip(),
            "filename": filename,
            "content_type": content_type,
            "max_size": payload.size,
            "exp": time.time() + SIGNED_UPLOAD_TTL_SECONDS,
        }
    )
    return PolicyReportSignOut(
        signed_url=f"/api/upload-policy-reports/upload?token={urlparse.quote(token)}",
        path=path,
        content_type=content_type,
        max_size=POLICY_REPORT_MAX_BYTES,
        expires_in_seconds=SIGNED_UPLOAD_TTL_SECONDS,
    )


def store_policy_report_upload(claims: Dict[str, Any], body: bytes, content_type: Optional[str]) -> PolicyReportFileOut:
    if (content_type or "").split(";")[0].strip().lower() != claims["content_type"]:
        raise HTTPException(status_code=400, detail="Content type does not match the signed upload")
    if not body:
        raise HTTPException(status_code=400, detail="File is empty")
    if len(body) > min(int(claims["max_size"]), POLICY_REPORT_MAX_BYTES):
        raise HTTPException(status_code=413, detail="File exceeds the signed upload size")
    target_path = UPLOADS_DIR / "policy-reports" / claims["path"]
    target_path.parent.mkdir(parents=True, exist_ok=True)
    file_id = str(uuid.uuid4())
    created_at = now_iso()
    with get_db() as conn:
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO PolicyReportFile (
                    id, agency_id, carrier, filename, storage_path, content_type, size, uploaded_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    file_id,
                    claims["agency_id"],
                    claims["carrier"],
                    claims["filename"],
                    claims["path"],
                    claims["content_type"],
                    len(body),
                    claims["user_id"],
                    created_at,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="This upload URL has already been used")
        with target_path.open("wb") as f:
            f.write(body)
        conn.commit()
    return PolicyReportFileOut(
        id=file_id,
        carrier=claims["carrier"],
        filename=claims["filename"],
        storage_path=claims["path"],
        content_type=claims["content_type"],
        size=len(body),
        created_at=created_at,
    )


@app.put("/api/upload-policy-reports/upload", response_model=PolicyReportFileOut)
async def upload_policy_report(token: str, request: Request) -> PolicyReportFileOut:
    claims = verify_upload_token(token)
    body = await request.body()
    return store_policy_report_upload(claims, body, request.headers.get("content-type"))


@app.get("/api/upload-policy-reports/files", response_model=List[PolicyReportFileOut])
def list_policy_report_files(request: Request) -> List[PolicyReportFileOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM PolicyReportFile WHERE agency_id = ? ORDER BY created_at DESC",
            (user["agency_id"],),
        )
        rows = cur.fetchall()
    return [
        PolicyReportFileOut(
            id=row["id"],
            carrier=row["carrier"],
            filename=row["filename"],
            storage_path=row["storage_path"],
            content_type=row["content_type"],
            size=row["size"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.post("/api/upload-policy-reports/create-job", response_model=PolicyReportJobOut)
def create_policy_report_job(payload: PolicyReportJobIn, request: Request) -> PolicyReportJobOut:
    client_job_id = (payload.client_job_id or "").strip()
    if not client_job_id:
        raise HTTPException(status_code=400, detail="client_job_id is required")
    if payload.expected_files < 1:
        raise HTTPException(status_code=400, detail="expected_files must be at least 1")
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM PolicyReportJob WHERE agency_id = ? AND client_job_id = ?",
            (user["agency_id"], client_job_id),
        )
        existing = cur.fetchone()
        if existing:
            return to_policy_report_job_out(existing)
        job_id = str(uuid.uuid4())
        cur.execute(
            """
            INSERT INTO PolicyReportJob (id, agency_id, client_job_id, expected_files, status, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (job_id, user["agency_id"], client_job_id, payload.expected_files, "queued", user["id"], now_iso()),
        )
        conn.commit()
        cur.execute("SELECT * FROM PolicyReportJob WHERE id = ?", (job_id,))
        row = cur.fetchone()
    return to_policy_report_job_out(row)


@app.get("/api/upload-policy-reports/jobs", response_model=List[PolicyReportJobOut])
def list_policy_report_jobs(request: Request) -> List[PolicyReportJobOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM PolicyReportJob WHERE agency_id = ? ORDER BY created_at DESC",
            (user["agency_id"],),
        )
        rows = cur.fetchall()
    return [to_policy_report_job_out(row) for row in rows]


@app.post("/api/nipr/run")
def run_nipr_verification(payload: NiprRunIn, request: Request) -> Any:
    with get_db() as conn:
        user = require_session_user(conn, request)
        retry_after = nipr_rate_limit_retry_after(conn, user["id"])
        if retry_after is not None:
            logger.warning("[NIPR] Rate limit hit for user %s", user["id"])
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded", "retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )
        record_nipr_request(conn, user["id"])
        conn.commit()

        if user["agency_id"]:
            agency = fetch_agency(conn, user["agency_id"])
            agency_carriers = load_json_list(agency["unique_carriers"])
            if agency_carriers:
                return JSONResponse(
                    status_code=400,
                    content={
                        "error": "NIPR verification has already been completed for this agency",
                        "already_completed": True,
                        "carriers": agency_carriers,
                    },
                )

        message = validate_nipr_form(payload)
        if message:
            raise HTTPException(status_code=400, detail=message)

        active = fetch_active_nipr_job(conn, user["id"])
        if active:
            return JSONResponse(
                status_code=409,
                content={
                    "error": "A verification is already in progress",
                    "job_id": active["id"],
                    "processing": True,
                    "status": active["status"],
                },
            )

        job_id = str(uuid.uuid4())
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO NiprJob (
                id, user_id, agency_id, last_name, npn, ssn_last4, dob, status, progress, progress_message,
                attempts, locked_at, started_at, completed_at, result_files, result_carriers, result_states,
                error_message, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                user["id"],
                user["agency_id"],
                payload.last_name.strip(),
                payload.npn.strip(),
                payload.ssn_last4.strip(),
                payload.dob.strip(),
                "pending",
                0,
                "Waiting in queue",
                0,
                None,
                None,
                None,
                None,
                None,
                None,
                None,
                now,
                now,
            ),
        )
        conn.commit()
        job = fetch_nipr_job(conn, job_id)
        position = nipr_queue_position(conn, job)
    logger.info("[NIPR] Queued job %s at position %s", job_id, position)
    return {"success": True, "queued": True, "processing": False, "job_id": job_id, "position": position}


@app.get("/api/nipr/status", response_model=NiprStatusOut)
def get_nipr_status(request: Request) -> NiprStatusOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        carriers: List[Any] = []
        if user["agency_id"]:
            agency = fetch_agency(conn, user["agency_id"])
            carriers = load_json_list(agency["unique_carriers"])
    return NiprStatusOut(completed=bool(carriers), carriers=[str(item) for item in carriers])


@app.get("/api/nipr/job/{job_id}", response_model=NiprJobOut)
def get_nipr_job(job_id: str, request: Request) -> NiprJobOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        job = fetch_nipr_job(conn, job_id)
        if not job or job["user_id"] != user["id"]:
            raise HTTPException(status_code=404, detail="Job not found")
        return to_nipr_job_out(conn, job)


@app.get("/api/onboarding/nipr/sse")
def stream_nipr_job(job_id: str, request: Request) -> StreamingResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
    return StreamingResponse(
        nipr_job_event_stream(job_id, user["id"]),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/api/nipr/upload", response_model=NiprUploadOut)
def upload_nipr_document(request: Request, file: UploadFile = File(...)) -> NiprUploadOut:
    filename = Path(file.filename or "").name
    content_type = (file.content_type or "").lower()
    if not filename.lower().endswith(".pdf") and content_type != "application/pdf":
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")
    body = file.file.read()
    if not body:
        raise HTTPException(status_code=400, detail="File is empty")
    if len(body) > NIPR_MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File size exceeds the 50MB limit")
    if not body.startswith(b"%PDF"):
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")

    with get_db() as conn:
        user = require_session_user(conn, request)
        upload_dir = UPLOADS_DIR / "nipr" / user["id"]
        upload_dir.mkdir(parents=True, exist_ok=True)
        target_path = upload_dir / f"{uuid.uuid4()}-{sanitize_storage_segment(filename or 'report.pdf')}"
        with target_path.open("wb") as f:
            f.write(body)
        try:
            text = extract_pdf_text(target_path)
        except Exception as exc:
            logger.exception("[NIPR] Could not read uploaded PDF %s", target_path.name)
            raise HTTPException(status_code=422, detail=f"Could not read PDF: {exc}")
        finally:
            remove_file_quietly(str(target_path))
        analysis = analyze_nipr_text(text)
        carriers = analysis["carriers"]
        if not carriers:
            logger.warning("[NIPR] No carriers found in uploaded document for user %s", user["id"])
            raise HTTPException(status_code=422, detail="No carriers could be found in the uploaded document")
        state_codes = extract_state_abbreviations(analysis["licensed_states"])
        save_nipr_results(conn, user["id"], user["agency_id"], carriers, state_codes)
        conn.commit()
    logger.info("[NIPR] Document upload found %d carriers for user %s", len(carriers), user["id"])
    return NiprUploadOut(
        success=True,
        carriers=carriers,
        licensed_states=analysis["licensed_states"],
        state_codes=state_codes,
    )


@app.get("/api/nipr/carrier-matches", response_model=List[NiprCarrierMatch])
def get_nipr_carrier_matches(request: Request) -> List[NiprCarrierMatch]:
    with get_db() as conn:
        session_user = require_session_user(conn, request)
        user = fetch_user(conn, session_user["id"])
        names = [str(item) for item in load_json_list(user["unique_carriers"])]
        if not names:
            return []
        cur = conn.cursor()
        cur.execute("SELECT id, name, display_name FROM Carrier WHERE is_active = 1")
        carriers = cur.fetchall()
    return match_carriers(names, carriers)


@app.post("/api/nipr/release-locks")
def release_nipr_locks(request: Request) -> Dict[str, int]:
    require_cron_secret(request)
    cutoff = (datetime.utcnow() - timedelta(minutes=NIPR_JOB_TIMEOUT_MINUTES)).isoformat()
    now = now_iso()
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT id, attempts FROM NiprJob WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?",
            (cutoff,),
        )
        stale = cur.fetchall()
        requeued = 0
        failed = 0
        for job in stale:
            if (job["attempts"] or 0) >= NIPR_MAX_ATTEMPTS:
                cur.execute(
                    """
                    UPDATE NiprJob
                    SET status = 'failed', locked_at = NULL, completed_at = ?, error_message = ?, updated_at = ?
                    WHERE id = ? AND status = 'running'
                    """,
                    (now, f"Verification timed out after {job['attempts']} attempts", now, job["id"]),
                )
                failed += cur.rowcount
            else:
                cur.execute(
                    """
                    UPDATE NiprJob
                    SET status = 'pending', locked_at = NULL, progress = 0, progress_message = ?, updated_at = ?
                    WHERE id = ? AND status = 'running'
                    """,
                    ("Retrying verification", now, job["id"]),
                )
                requeued += cur.rowcount
        conn.commit()
    if stale:
        logger.warning("[NIPR] Released %d stale locks (%d requeued, %d failed)", len(stale), requeued, failed)
    return {"count": requeued + failed, "requeued": requeued, "failed": failed}


@app.post("/api/nipr/acquire-job")
def acquire_nipr_job(request: Request) -> Dict[str, Any]:
    require_cron_secret(request)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS cnt FROM NiprJob WHERE status = 'running'")
        if cur.fetchone()["cnt"] >= NIPR_MAX_CONCURRENT_JOBS:
            return {"acquired": False, "reason": "max_concurrency"}
        cur.execute(
            "SELECT * FROM NiprJob WHERE status = 'pending' ORDER BY created_at ASC, id ASC LIMIT 5"
        )
        candidates = cur.fetchall()
        for job in candidates:
            now = now_iso()
            cur.execute(
                """
                UPDATE NiprJob
                SET status = 'running', locked_at = ?, started_at = COALESCE(started_at, ?),
                    attempts = COALESCE(attempts, 0) + 1, progress = 5, progress_message = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (now, now, "Starting verification", now, job["id"]),
            )
            if cur.rowcount == 1:
                conn.commit()
                logger.info("[NIPR] Acquired job %s", job["id"])
                return {
                    "acquired": True,
                    "job": {
                        "job_id": job["id"],
                        "job_user_id": job["user_id"],
                        "job_last_name": job["last_name"],
                        "job_npn": job["npn"],
                        "job_ssn_last4": job["ssn_last4"],
                        "job_dob": job["dob"],
                    },
                }
        conn.commit()
    return {"acquired": False, "reason": "empty_queue"}


@app.post("/api/nipr/job-progress")
def update_nipr_job_progress(payload: NiprProgressIn, request: Request) -> Dict[str, Any]:
    require_cron_secret(request)
    progress = max(0, min(100, int(payload.progress)))
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE NiprJob SET progress = ?, progress_message = COALESCE(?, progress_message), updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (progress, payload.message, now_iso(), payload.job_id),
        )
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Running job not found")
        conn.commit()
    return {"success": True, "progress": progress}


@app.post("/api/nipr/complete-job")
def complete_nipr_job(payload: NiprCompleteIn, request: Request) -> Dict[str, Any]:
    require_cron_secret(request)
    now = now_iso()
    with get_db() as conn:
        job = fetch_nipr_job(conn, payload.job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        if job["status"] in {"completed", "failed"}:
            raise HTTPException(status_code=409, detail=f"Job is already {job['status']}")
        cur = conn.cursor()
        if payload.success:
            carriers: List[str] = []
            for name in payload.carriers:
                cleaned = normalize_carrier_name(name)
                if cleaned and cleaned.lower() not in {item.lower() for item in carriers}:
                    carriers.append(cleaned)
            cur.execute(
                """
                UPDATE NiprJob
                SET status = 'completed', progress = 100, progress_message = ?, locked_at = NULL, completed_at = ?,
                    result_files = ?, result_carriers = ?, result_states = ?, error_message = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    "Verification complete",
                    now,
                    json.dumps(payload.files),
                    json.dumps(carriers),
                    json.dumps(payload.states),
                    now,
                    payload.job_id,
                ),
            )
            save_nipr_results(conn, job["user_id"], job["agency_id"], carriers, payload.states or None)
            logger.info("[NIPR] Job %s completed with %d carriers", payload.job_id, len(carriers))
        else:
            cur.execute(
                """
                UPDATE NiprJob
                SET status = 'failed', locked_at = NULL, completed_at = ?, error_message = ?, updated_at = ?
                WHERE id = ?
                """,
                (now, payload.error or "Verification failed", now, payload.job_id),
            )
            logger.warning("[NIPR] Job %s failed: %s", payload.job_id, payload.error)
        conn.commit()
    return {"success": True}


@app.get("/api/nipr/has-pending")
def has_pending_nipr_jobs(request: Request) -> Dict[str, Any]:
    require_cron_secret(request)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS cnt FROM NiprJob WHERE status = 'pending'")
        pending = cur.fetchone()["cnt"]
    return {"has_pending": pending > 0, "pending": pending}


@app.get("/api/onboarding/nipr/status", response_model=NiprQueueStatusOut)
def get_nipr_queue_status(request: Request) -> NiprQueueStatusOut:
    require_cron_secret(request)
    counts = {"pending": 0, "running": 0, "completed": 0, "failed": 0}
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT status, COUNT(*) AS cnt FROM NiprJob GROUP BY status")
        for row in cur.fetchall():
            if row["status"] in counts:
                counts[row["status"]] = row["cnt"]
    return NiprQueueStatusOut(**counts)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
