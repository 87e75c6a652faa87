import http.client
import json
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest


logger = logging.getLogger(__name__)


NPN_RE = re.compile(r"^\d+$")
SSN_LAST4_RE = re.compile(r"^\d{4}$")
DOB_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")


class NiprVerificationError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NiprRateLimitError(NiprVerificationError):
    def __init__(self, retry_after: int):
        self.retry_after = max(int(retry_after or 0), 0)
        super().__init__(message_for_rate_limit(self.retry_after), status_code=429)


@dataclass
class NiprProgress:
    status: str = "idle"
    progress: int = 0
    message: str = ""
    queue_position: Optional[int] = None


@dataclass
class NiprVerificationResult:
    success: bool
    message: str
    carriers: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    licensed_states: Dict[str, List[str]] = field(default_factory=dict)
    completed_at: Optional[str] = None


def message_for_rate_limit(retry_after: int) -> str:
    minutes = max(math.ceil(retry_after / 60), 1)
    suffix = "" if minutes == 1 else "s"
    return f"Rate limit exceeded. Please try again in {minutes} minute{suffix}."


def validate_nipr_form(form: Dict[str, Any]) -> Optional[str]:
    last_name = str(form.get("last_name") or "").strip()
    npn = str(form.get("npn") or "").strip()
    ssn_last4 = str(form.get("ssn_last4") or "").strip()
    dob = str(form.get("dob") or "").strip()
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


def iter_sse_events(lines: Iterable[Any]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (event, data) pairs from a text/event-stream body.

    Accepts raw bytes or str lines. Frames without a data payload and
    comment lines are skipped; unparseable JSON data is logged and dropped.
    """
    event = "message"
    data_lines: List[str] = []
    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                payload = "\n".join(data_lines)
                try:
                    parsed = json.loads(payload)
                except ValueError:
                    logger.warning("[NIPR] Dropping unparseable %s event", event)
                else:
                    yield event, parsed if isinstance(parsed, dict) else {"value": parsed}
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value or "message"
        elif name == "data":
            data_lines.append(value)
    if data_lines:
        try:
            parsed = json.loads("\n".join(data_lines))
        except ValueError:
            logger.warning("[NIPR] Dropping unparseable trailing %s event", event)
        else:
            yield event, parsed if isinstance(parsed, dict) else {"value": parsed}


class NiprJobStore:
    """Remembers the active verification job between restarts."""

    def __init__(self, path: Any):
        self.path = Path(path).expanduser()

    def load(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            logger.warning("[NIPR] Ignoring unreadable job store at %s", self.path)
            return None
        job_id = str(data.get("job_id") or "").strip() if isinstance(data, dict) else ""
        return job_id or None

    def save(self, job_id: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"job_id": job_id}), encoding="utf-8")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("[NIPR] Could not clear job store at %s", self.path)


class NiprVerificationClient:
    def __init__(
        self,
        base_url: str,
        store: NiprJobStore,
        *,
        headers: Optional[Dict[str, str]] = None,
        on_complete: Optional[Callable[[List[str]], None]] = None,
        on_progress: Optional[Callable[[NiprProgress], None]] = None,
        opener: Callable[..., Any] = urlrequest.urlopen,
        timeout: float = 30,
        stream_timeout: float = 660,
    ):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.headers = dict(headers or {})
        self.on_complete = on_complete
        self.on_progress = on_progress
        self.opener = opener
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.job_id: Optional[str] = None
        self.progress = NiprProgress()
        self.result: Optional[NiprVerificationResult] = None

    @property
    def state(self) -> str:
        return self.progress.status

    def _set_progress(
        self,
        status: str,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        queue_position: Optional[int] = None,
    ) -> None:
        self.progress = NiprProgress(
            status=status,
            progress=self.progress.progress if progress is None else max(0, min(100, int(progress))),
            message=self.progress.message if message is None else message,
            queue_position=queue_position,
        )
        if self.on_progress:
            self.on_progress(self.progress)

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        headers = {"Accept": "application/json", **self.headers}
        if content_type:
            headers["Content-Type"] = content_type
        req = urlrequest.Request(f"{self.base_url}{path}", data=body, headers=headers, method=method)
        try:
            with self.opener(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                raw = resp.read().decode("utf-8").strip()
        except urlerror.HTTPError as exc:
            status = exc.code
            try:
                raw = exc.read().decode("utf-8").strip()
            except Exception:
                raw = ""
        except urlerror.URLError as exc:
            logger.warning("[NIPR] Request to %s failed: %s", path, exc.reason)
            raise NiprVerificationError(f"Could not reach the verification service: {exc.reason}")
        except (OSError, http.client.HTTPException) as exc:
            logger.warning("[NIPR] Request to %s dropped: %s", path, exc)
            raise NiprVerificationError(f"Lost connection to the verification service: {exc}")
        if not raw:
            return status, {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return status, {"error": raw}
        return status, parsed if isinstance(parsed, dict) else {"data": parsed}

    def _finish(self, result: NiprVerificationResult) -> NiprVerificationResult:
        self.store.clear()
        self.result = result
        if result.success:
            self._set_progress("completed", 100, result.message, None)
            if result.carriers and self.on_complete:
                self.on_complete(result.carriers)
        else:
            self._set_progress("failed", None, result.message, None)
        return result

    def _adopt_job(self, job_id: str, status: str, message: str, queue_position: Optional[int] = None) -> None:
        self.job_id = job_id
        self.store.save(job_id)
        self._set_progress(status, 0, message, queue_position)

    def submit(self, form: Dict[str, Any]) -> NiprProgress:
        """Send credentials for automated verification.

        Returns the client progress after the server answers. A queued or
        processing answer leaves the job persisted for watch(); an immediate
        answer finishes the verification on the spot.
        """
        message = validate_nipr_form(form)
        if message:
            raise NiprVerificationError(message, status_code=400)

        self.result = None
        self.job_id = None
        self._set_progress("submitting", 0, "Submitting verification request...", None)
        body = json.dumps(
            {
                "last_name": str(form.get("last_name") or "").strip(),
                "npn": str(form.get("npn") or "").strip(),
                "ssn_last4": str(form.get("ssn_last4") or "").strip(),
                "dob": str(form.get("dob") or "").strip(),
            }
        ).encode("utf-8")
        try:
            status, payload = self._request("POST", "/api/nipr/run", body=body, content_type="application/json")
        except NiprVerificationError:
            self._set_progress("idle", 0, "", None)
            raise

        if status == 429:
            retry_after = int(payload.get("retry_after") or 0)
            logger.warning("[NIPR] Rate limited, retry after %ss", retry_after)
            self._set_progress("idle", 0, "", None)
            raise NiprRateLimitError(retry_after)

        if status == 409 and payload.get("job_id"):
            running = payload.get("processing") and payload.get("status") == "running"
            self._adopt_job(
                str(payload["job_id"]),
                "running" if running else "queued",
                "Verification in progress..." if running else "Waiting in queue...",
            )
            return self.progress

        if status == 400 and payload.get("already_completed"):
            carriers = [str(item) for item in payload.get("carriers") or []]
            self._finish(
                NiprVerificationResult(success=True, message="NIPR verification already completed", carriers=carriers)
            )
            return self.progress

        if status >= 400:
            error_message = str(payload.get("error") or payload.get("detail") or "NIPR verification failed")
            self._set_progress("idle", 0, "", None)
            raise NiprVerificationError(error_message, status_code=status)

        job_id = payload.get("job_id")
        if payload.get("queued") and job_id:
            position = payload.get("position")
            self._adopt_job(
                str(job_id),
                "queued",
                f"Waiting in queue (position {position or '?'})...",
                int(position) if position else None,
            )
            return self.progress
        if payload.get("processing") and job_id:
            self._adopt_job(str(job_id), "running", "Starting verification...")
            return self.progress

        carriers = [str(item) for item in payload.get("carriers") or []]
        success = bool(payload.get("success"))
        self._finish(
            NiprVerificationResult(
                success=success,
                message="NIPR verification completed!" if success else str(payload.get("error") or "NIPR verification failed"),
                carriers=carriers,
            )
        )
        return self.progress

    def upload_document(self, path: Any) -> NiprVerificationResult:
        file_path = Path(path)
        if file_path.suffix.lower() != ".pdf":
            raise NiprVerificationError("Only PDF files are allowed", status_code=400)
        content = file_path.read_bytes()
        boundary = uuid.uuid4().hex
        body = b"".join(
            [
                f"--{boundary}\r\n".encode("utf-8"),
                f'Content-Disposition: form-data; name="file"; filename="{file_path.name}"\r\n'.encode("utf-8"),
                b"Content-Type: application/pdf\r\n\r\n",
                content,
                f"\r\n--{boundary}--\r\n".encode("utf-8"),
            ]
        )
        self._set_progress("submitting", 0, "Uploading document...", None)
        try:
            status, payload = self._request(
                "POST",
                "/api/nipr/upload",
                body=body,
                content_type=f"multipart/form-data; boundary={boundary}",
            )
        except NiprVerificationError:
            self._set_progress("idle", 0, "", None)
            raise
        if status >= 400:
            error_message = str(payload.get("detail") or payload.get("error") or "Failed to upload NIPR document")
            logger.warning("[NIPR] Document upload rejected (%s): %s", status, error_message)
            self._set_progress("idle", 0, "", None)
            raise NiprVerificationError(error_message, status_code=status)

        carriers = [str(item) for item in payload.get("carriers") or []]
        return self._finish(
            NiprVerificationResult(
                success=True,
                message=f"Successfully extracted {len(carriers)} carriers from your NIPR document",
                carriers=carriers,
                licensed_states=payload.get("licensed_states") or {"resident": [], "non_resident": []},
            )
        )

    def resume(self) -> Optional[NiprVerificationResult]:
        job_id = self.store.load()
        if not job_id:
            return None
        logger.info("[NIPR] Resuming job %s", job_id)
        self.job_id = job_id
        self._set_progress("queued", 0, "Reconnecting...", None)
        return self.watch()

    def watch(self) -> Optional[NiprVerificationResult]:
        """Follow the job's event stream until it reaches a terminal event.

        Returns the result on completed/failed, or None when the stream
        ends first; the persisted job id is kept in that case so a later
        resume() can pick it up again.
        """
        if not self.job_id:
            raise NiprVerificationError("No verification job to watch")
        query = urlparse.urlencode({"job_id": self.job_id})
        headers = {"Accept": "text/event-stream", **self.headers}
        req = urlrequest.Request(f"{self.base_url}/api/onboarding/nipr/sse?{query}", headers=headers, method="GET")
        try:
            with self.opener(req, timeout=self.stream_timeout) as resp:
                for event, data in iter_sse_events(resp):
                    outcome = self._handle_event(event, data)
                    if outcome is not None:
                        return outcome
                    if event in {"timeout", "error"}:
                        return None
        except urlerror.HTTPError as exc:
            logger.warning("[NIPR] Event stream for job %s rejected (%s)", self.job_id, exc.code)
            raise NiprVerificationError(f"Could not watch verification job ({exc.code})", status_code=exc.code)
        except urlerror.URLError as exc:
            logger.warning("[NIPR] Event stream for job %s failed: %s", self.job_id, exc.reason)
            raise NiprVerificationError(f"Could not reach the verification service: {exc.reason}")
        except (OSError, http.client.HTTPException) as exc:
            logger.warning("[NIPR] Event stream for job %s dropped: %s", self.job_id, exc)
            raise NiprVerificationError(f"Lost connection to the verification service: {exc}")
        logger.info("[NIPR] Event stream for job %s closed before a result", self.job_id)
        return None

    def _handle_event(self, event: str, data: Dict[str, Any]) -> Optional[NiprVerificationResult]:
        if event == "progress":
            status = {"running": "running", "pending": "queued"}.get(data.get("status"), self.progress.status)
            queue_position = data.get("queue_position")
            self._set_progress(
                status,
                int(data.get("progress") or 0),
                str(data.get("progress_message") or ""),
                int(queue_position) if queue_position else None,
            )
            return None
        if event == "completed":
            carriers = [str(item) for item in data.get("result_carriers") or []]
            self.job_id = None
            return self._finish(
                NiprVerificationResult(
                    success=True,
                    message="NIPR verification completed successfully!",
                    carriers=carriers,
                    files=[str(item) for item in data.get("result_files") or []],
                    completed_at=data.get("completed_at"),
                )
            )
        if event == "failed":
            self.job_id = None
            return self._finish(
                NiprVerificationResult(
                    success=False,
                    message=str(data.get("error_message") or "NIPR verification failed. Please try again."),
                )
            )
        if event == "error":
            logger.warning("[NIPR] Event stream error for job %s: %s", self.job_id, data.get("error"))
            self.store.clear()
            self.job_id = None
            self._set_progress("idle", 0, str(data.get("error") or ""), None)
        elif event == "timeout":
            logger.info("[NIPR] Event stream for job %s timed out", self.job_id)
        return None

    def reset(self) -> None:
        self.store.clear()
        self.job_id = None
        self.result = None
        self.progress = NiprProgress()
        if self.on_progress:
            self.on_progress(self.progress)
