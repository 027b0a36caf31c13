#!/usr/bin/env python3
# ============================================================
# ATTENDANCE PORTAL
# FastAPI + Supabase + Redis
# Students / teachers  •  Manual, OTP and QR attendance
# ============================================================
#
# The portal is a presentation layer. Supabase owns auth, storage
# and the attendance stored procedures; this service forwards
# requests, keeps per-user flow state and serves the single-page
# front end.
#
# REQUIREMENTS (pip)
# ──────────────────
#  fastapi uvicorn[standard] supabase redis
#  python-jose[cryptography] python-multipart
#  opencv-python-headless numpy qrcode[pil]
#
# ENV VARS
# ────────
#  SUPABASE_URL          - https://xxxx.supabase.co
#  SUPABASE_KEY          - service_role secret key (NOT the anon key)
#  REDIS_HOST  REDIS_PORT  REDIS_ENABLED
#  JWT_SECRET
#  APP_BASE_URL          - public origin used in QR links (optional)
#  OTP_VALIDITY_MINUTES  - default 2
#  QR_VALIDITY_HOURS     - default 24
# ============================================================

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date as date_cls
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

import redis
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from pydantic import BaseModel


import attendance_stats as stats
from portal_backend import Backend, BackendError, today_iso
from portal_sessions import SessionRegistry, UserSession
from qr_capture import ScanError, render_qr_png, share_url
from redemption import (
    OTP_LENGTH,
    ClockSnapshot,
    ExpiryClock,
    classify,
    extract_token,
    seconds_remaining,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ================================================================
# CONFIG
# ================================================================

REDIS_HOST    = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT    = int(os.getenv("REDIS_PORT", "6379"))
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "1") == "1"
JWT_SECRET    = os.getenv("JWT_SECRET", "change_me_in_production_2026")
ALGORITHM     = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "480"))

APP_BASE_URL         = os.getenv("APP_BASE_URL", "")
OTP_VALIDITY_MINUTES = int(os.getenv("OTP_VALIDITY_MINUTES", "2"))
QR_VALIDITY_HOURS    = int(os.getenv("QR_VALIDITY_HOURS", "24"))

DEFAULT_SUBJECTS     = [f"Subject {i}" for i in range(1, 6)]
DEPARTMENTS_KEY      = "cache:departments"
DEPARTMENTS_TTL      = 300
MIN_PASSWORD_LENGTH  = 6

# ================================================================
# SUPABASE BACKEND (created on first use)
# ================================================================

_backend: Optional[Backend] = None


def get_backend() -> Backend:
    global _backend
    if _backend is None:
        _backend = Backend.from_env()
    return _backend


sessions = SessionRegistry(get_backend)

# ================================================================
# APP
# ================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    sessions.close_all()
    logger.info("All portal sessions closed.")


app = FastAPI(title="Attendance Portal: students, teachers, OTP & QR", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    logger.warning("Backend error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=502, content={"detail": exc.message})


# ================================================================
# REDIS / IN-MEMORY STORE
# (Redis optional, falls back to an in-process dict for single-worker dev)
# ================================================================

_redis: Optional[redis.Redis] = None
_store: Dict[str, dict] = {}


def get_redis() -> Optional[redis.Redis]:
    global _redis
    if _redis is None and REDIS_ENABLED:
        try:
            c = redis.Redis(
                host=REDIS_HOST, port=REDIS_PORT,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
            )
            c.ping()
            _redis = c
            logger.info("Redis connected.")
        except redis.RedisError as e:
            logger.warning("Redis unavailable (%s). Using in-memory store.", e)
    return _redis


def kv_set(key: str, val: str, ex: int) -> None:
    r = get_redis()
    if r:
        r.set(key, val, ex=ex)
    else:
        _store[key] = {"v": val, "exp": time.time() + ex}


def kv_get(key: str) -> Optional[str]:
    r = get_redis()
    if r:
        return r.get(key)
    e = _store.get(key)
    if e and time.time() < e["exp"]:
        return e["v"]
    _store.pop(key, None)
    return None


def kv_del(key: str) -> None:
    r = get_redis()
    if r:
        r.delete(key)
    else:
        _store.pop(key, None)


# ================================================================
# AUTH
# ================================================================

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass
class Caller:
    user_id: str
    role: str
    jti: str
    exp: int


def make_token(user_id: str, role: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {"sub": user_id, "role": role, "jti": uuid.uuid4().hex, "exp": exp}
    return jwt.encode(claims, JWT_SECRET, algorithm=ALGORITHM)


def current_caller(token: str = Depends(oauth2_scheme)) -> Caller:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            401, "Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = payload.get("sub")
    jti     = payload.get("jti", "")
    if not user_id or payload.get("role") not in ("student", "teacher"):
        raise HTTPException(401, "Invalid token")
    if jti and kv_get(f"revoked:{jti}"):
        raise HTTPException(
            401, "Session ended. Please sign in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Caller(user_id, payload["role"], jti, int(payload.get("exp", 0)))


def require_student(caller: Caller = Depends(current_caller)) -> Caller:
    if caller.role != "student":
        raise HTTPException(403, "Students only")
    return caller


def require_teacher(caller: Caller = Depends(current_caller)) -> Caller:
    if caller.role != "teacher":
        raise HTTPException(403, "Teachers only")
    return caller


def student_session(caller: Caller = Depends(require_student)) -> UserSession:
    return sessions.get_or_open(caller.user_id, caller.role)


def teacher_session(caller: Caller = Depends(require_teacher)) -> UserSession:
    return sessions.get_or_open(caller.user_id, caller.role)


# ================================================================
# HELPERS
# ================================================================

def check_rpc_result(result: Any, fallback: str) -> dict:
    """Structured {success, error} replies: success=false is a 400 with the backend text."""
    if not isinstance(result, dict):
        raise HTTPException(502, "Invalid response from server")
    if not result.get("success"):
        raise HTTPException(400, result.get("error") or fallback)
    return result


def check_passwords(password: str, confirm_password: str) -> None:
    if password != confirm_password:
        raise HTTPException(400, "Passwords do not match")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def parse_subjects(raw: str) -> List[str]:
    out: List[str] = []
    for part in re.split(r"[,\n]", raw or ""):
        subject = part.strip()
        if subject and subject not in out:
            out.append(subject)
    return out


def parse_date(value: Optional[str]) -> str:
    if not value:
        return today_iso()
    try:
        return date_cls.fromisoformat(value.strip()).isoformat()
    except ValueError:
        raise HTTPException(400, "Date must be YYYY-MM-DD")


def base_url_for(request: Request) -> str:
    return APP_BASE_URL or str(request.base_url)


def load_teacher(backend: Backend, user_id: str) -> dict:
    teacher = backend.get_teacher(user_id)
    if not teacher:
        raise HTTPException(404, "Teacher profile not found")
    return teacher


def load_student(backend: Backend, user_id: str) -> dict:
    student = backend.get_student(user_id)
    if not student:
        raise HTTPException(404, "Student profile not found")
    return student


def require_assigned(teacher: dict, subject: str) -> str:
    subject = (subject or "").strip()
    if not subject:
        raise HTTPException(400, "Please select a subject")
    if subject not in (teacher.get("assigned_subjects") or []):
        raise HTTPException(403, f"{subject} is not one of your assigned subjects")
    return subject


def with_countdown(code: dict, now: Optional[float] = None) -> dict:
    remaining = 0
    if code.get("is_active", True):
        remaining = seconds_remaining(code["expires_at"], now if now is not None else time.time())
    return dict(code, **ClockSnapshot(remaining, classify(remaining)).as_dict())


# ================================================================
# REGISTRATION / LOGIN
# ================================================================

@app.get("/departments")
def list_departments(backend: Backend = Depends(get_backend)):
    cached = kv_get(DEPARTMENTS_KEY)
    if cached:
        return json.loads(cached)
    rows = backend.get_departments()
    kv_set(DEPARTMENTS_KEY, json.dumps(rows), ex=DEPARTMENTS_TTL)
    return rows


@app.post("/auth/register/student")
def register_student(
    full_name:        str = Form(...),
    email:            str = Form(...),
    password:         str = Form(...),
    confirm_password: str = Form(...),
    department_name:  str = Form(...),
    roll_number:      str = Form(...),
    section:          str = Form(""),
    backend: Backend = Depends(get_backend),
):
    check_passwords(password, confirm_password)
    dept_name = department_name.strip()
    if not dept_name:
        raise HTTPException(400, "Please enter a department name")
    if not roll_number.strip():
        raise HTTPException(400, "Roll number is required")

    dept_id = backend.find_or_create_department(dept_name, DEFAULT_SUBJECTS)
    user_id = backend.sign_up(email.strip(), password)

    department = backend.get_department(dept_id) or {}
    subjects   = department.get("subjects") or DEFAULT_SUBJECTS

    check_rpc_result(
        backend.register_student(
            user_id, email.strip(), full_name.strip(), dept_id,
            roll_number.strip(), subjects, section=section.strip() or None,
        ),
        "Registration failed",
    )
    kv_del(DEPARTMENTS_KEY)
    logger.info("Registered student %s in %s", user_id, dept_name)
    return {"status": "registered", "role": "student", "user_id": user_id}


@app.post("/auth/register/teacher")
def register_teacher(
    full_name:         str = Form(...),
    email:             str = Form(...),
    password:          str = Form(...),
    confirm_password:  str = Form(...),
    department_name:   str = Form(...),
    assigned_subjects: str = Form(""),
    backend: Backend = Depends(get_backend),
):
    check_passwords(password, confirm_password)
    dept_name = department_name.strip()
    if not dept_name:
        raise HTTPException(400, "Please enter a department name")
    subjects = parse_subjects(assigned_subjects)
    if not subjects:
        raise HTTPException(400, "Please add at least one subject")

    dept_id = backend.find_or_create_department(dept_name, subjects)
    user_id = backend.sign_up(email.strip(), password)

    check_rpc_result(
        backend.register_teacher(user_id, email.strip(), full_name.strip(), dept_id, subjects),
        "Registration failed",
    )
    kv_del(DEPARTMENTS_KEY)
    logger.info("Registered teacher %s in %s (%d subjects)", user_id, dept_name, len(subjects))
    return {"status": "registered", "role": "teacher", "user_id": user_id}


@app.post("/auth/login")
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    backend: Backend = Depends(get_backend),
):
    try:
        user_id = backend.sign_in(form_data.username.strip(), form_data.password)
    except BackendError as e:
        raise HTTPException(401, e.message or "Invalid credentials")

    profile = backend.get_profile(user_id)
    if not profile or profile.get("role") not in ("student", "teacher"):
        raise HTTPException(403, "Profile not found. Please complete registration.")

    role = profile["role"]
    sessions.open(user_id, role, full_name=profile.get("full_name", ""), email=profile.get("email", ""))
    return {
        "access_token": make_token(user_id, role),
        "token_type":   "bearer",
        "role":         role,
        "full_name":    profile.get("full_name", ""),
    }


@app.post("/auth/logout")
def logout(caller: Caller = Depends(current_caller)):
    if caller.jti:
        ttl = max(1, caller.exp - int(time.time()))
        kv_set(f"revoked:{caller.jti}", "1", ex=ttl)
    sessions.close(caller.user_id)
    return {"status": "signed_out"}


@app.get("/me")
def me(caller: Caller = Depends(current_caller), backend: Backend = Depends(get_backend)):
    profile = backend.get_profile(caller.user_id)
    if not profile:
        raise HTTPException(404, "Profile not found")
    return profile


# ================================================================
# STUDENT
# ================================================================

@app.get("/student/dashboard")
def student_dashboard(caller: Caller = Depends(require_student), backend: Backend = Depends(get_backend)):
    student = load_student(backend, caller.user_id)
    records = backend.get_student_attendance(caller.user_id)
    summary = stats.totals(records)
    summary["student"]       = student
    summary["subject_stats"] = stats.subject_breakdown(student.get("subjects") or [], records)
    summary["recent"]        = records[:5]
    return summary


@app.get("/student/attendance")
def student_attendance(caller: Caller = Depends(require_student), backend: Backend = Depends(get_backend)):
    load_student(backend, caller.user_id)
    return backend.get_student_attendance(caller.user_id)


@app.get("/student/analytics")
def student_analytics(caller: Caller = Depends(require_student), backend: Backend = Depends(get_backend)):
    student = backend.get_student_with_profile(caller.user_id)
    if not student:
        raise HTTPException(404, "Student profile not found")
    return stats.student_stats(student, backend.get_student_attendance(caller.user_id))


# ── OTP ──────────────────────────────────────────────────────

@app.post("/student/otp")
def submit_otp(
    digits:  Optional[List[str]] = Form(None),
    code:    str                 = Form(""),
    session: UserSession         = Depends(student_session),
):
    """
    Redeem a teacher's six-digit code. Either all six cells (repeated
    ``digits`` fields) or a pasted ``code`` is accepted; shape errors
    never reach the backend.
    """
    flow = session.otp_flow
    if flow.in_flight:
        raise HTTPException(409, "A submission is already in progress")

    accepted = flow.paste(code) if code.strip() else flow.load_cells(digits or [])
    if not accepted or not flow.capture.is_complete:
        raise HTTPException(422, f"Enter all {OTP_LENGTH} digits of the attendance code")

    if flow.submit_code() is None:
        raise HTTPException(409, "A submission is already in progress")
    return flow.as_dict()


@app.get("/student/otp/today")
def otp_today(session: UserSession = Depends(student_session)):
    return session.otp_flow.refresh_summary()


# ── QR ───────────────────────────────────────────────────────

@app.post("/student/qr/redeem")
def redeem_qr(scanned: str = Form(...), session: UserSession = Depends(student_session)):
    flow = session.qr_flow
    if not extract_token(scanned):
        raise HTTPException(422, "No attendance token found")
    if flow.in_flight or flow.redeem(scanned) is None:
        raise HTTPException(409, "A submission is already in progress")
    return flow.as_dict()


@app.post("/student/qr/scan/start")
def scan_start(session: UserSession = Depends(student_session)):
    session.capture.start()
    return session.capture.as_dict()


@app.post("/student/qr/scan/stop")
def scan_stop(session: UserSession = Depends(student_session)):
    session.capture.stop()
    return session.capture.as_dict()


@app.post("/student/qr/scan/error")
def scan_error(
    name:    str         = Form(...),
    message: str         = Form(""),
    session: UserSession = Depends(student_session),
):
    session.capture.report_client_error(name, message)
    return session.capture.as_dict()


@app.post("/student/qr/scan/grant")
def scan_grant(session: UserSession = Depends(student_session)):
    session.capture.grant_permission()
    return session.capture.as_dict()


@app.post("/student/qr/frame")
async def scan_frame(frame: UploadFile = File(...), session: UserSession = Depends(student_session)):
    data   = await frame.read()
    result = await run_in_threadpool(session.capture.feed, data)
    return {
        "decoded": result is not None,
        "capture": session.capture.as_dict(),
        "flow":    session.qr_flow.as_dict(),
    }


@app.post("/student/qr/image")
async def scan_image(image: UploadFile = File(...), session: UserSession = Depends(student_session)):
    """One-shot decode of an uploaded photo of the QR code."""
    data = await image.read()

    def decode_once():
        with session.capture.scanning_scope():
            return session.capture.feed(data)

    try:
        result = await run_in_threadpool(decode_once)
    except ScanError as e:
        raise HTTPException(403, e.message)
    if result is None:
        raise HTTPException(422, "No QR code found in the image")
    return session.qr_flow.as_dict()


@app.get("/student/qr/recent")
def qr_recent(session: UserSession = Depends(student_session)):
    return session.qr_flow.refresh_summary()


@app.get("/student/scan-attendance", response_class=HTMLResponse)
def scan_link_page():
    # the page picks ?token= up and redeems it once the student is signed in
    return HTML_PAGE


# ================================================================
# TEACHER
# ================================================================

@app.get("/teacher/dashboard")
def teacher_dashboard(caller: Caller = Depends(require_teacher), backend: Backend = Depends(get_backend)):
    teacher  = load_teacher(backend, caller.user_id)
    students = backend.get_students_by_department(teacher["department_id"])
    records  = backend.get_attendance_for_students([s["id"] for s in students])
    return {
        "teacher":        teacher,
        "total_students": len(students),
        "subject_stats":  stats.teacher_subject_stats(teacher.get("assigned_subjects") or [], records),
    }


@app.get("/teacher/students")
def teacher_students(
    q: str = "",
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    teacher  = load_teacher(backend, caller.user_id)
    students = backend.get_students_by_department(teacher["department_id"])
    query = q.strip().lower()
    if not query:
        return students

    def matches(s: dict) -> bool:
        name = ((s.get("profile") or {}).get("full_name") or "").lower()
        return (
            query in name
            or query in (s.get("roll_number") or "").lower()
            or query in (s.get("section") or "").lower()
        )

    return [s for s in students if matches(s)]


class AttendanceSheet(BaseModel):
    subject: str
    date: Optional[str] = None
    statuses: Dict[str, Literal["present", "absent"]] = {}


@app.get("/teacher/attendance")
def teacher_attendance_for_day(
    subject: str,
    date: Optional[str] = None,
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    teacher = load_teacher(backend, caller.user_id)
    subject = require_assigned(teacher, subject)
    return backend.get_attendance_by_date(subject, parse_date(date))


@app.post("/teacher/attendance")
def mark_attendance(
    sheet: AttendanceSheet,
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    teacher  = load_teacher(backend, caller.user_id)
    subject  = require_assigned(teacher, sheet.subject)
    day      = parse_date(sheet.date)
    students = backend.get_students_by_department(teacher["department_id"])

    records = [
        {
            "student_id": s["id"],
            "subject":    subject,
            "date":       day,
            "status":     sheet.statuses.get(s["id"], "present"),
            "marked_by":  caller.user_id,
        }
        for s in students
    ]
    backend.mark_bulk_attendance(records)
    present = sum(1 for r in records if r["status"] == "present")
    logger.info("Marked %s on %s: %d/%d present", subject, day, present, len(records))
    return {"status": "saved", "subject": subject, "date": day, "count": len(records), "present": present}


# ── OTP ──────────────────────────────────────────────────────

@app.post("/teacher/otp")
def generate_otp(
    subject: str = Form(...),
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    teacher = load_teacher(backend, caller.user_id)
    subject = require_assigned(teacher, subject)
    issued  = check_rpc_result(
        backend.create_otp_code(caller.user_id, subject, OTP_VALIDITY_MINUTES),
        "Failed to generate OTP code",
    )
    logger.info("OTP issued by %s for %s", caller.user_id, subject)
    return {
        "message": f"OTP code generated successfully for {subject}",
        "issued":  issued,
        "codes":   [with_countdown(c) for c in backend.get_active_otp_codes(caller.user_id)],
    }


@app.get("/teacher/otp")
def active_otp_codes(caller: Caller = Depends(require_teacher), backend: Backend = Depends(get_backend)):
    return [with_countdown(c) for c in backend.get_active_otp_codes(caller.user_id)]


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


_EXPIRED = "expired"
_CLOSED  = "closed"


async def countdown_events(session: UserSession, code: dict):
    loop  = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    # a code deactivated server-side counts as already expired
    expires_at = code["expires_at"] if code.get("is_active", True) else 0
    clock = ExpiryClock(
        expires_at,
        on_tick=queue.put_nowait,
        on_expire=lambda: queue.put_nowait(_EXPIRED),
        # sign-out closes the session from a worker thread
        on_stop=lambda: loop.call_soon_threadsafe(queue.put_nowait, _CLOSED),
    )
    session.track_clock(clock)
    about = {"code_id": code.get("id"), "subject": code.get("subject")}
    try:
        if clock.stopped:
            yield _sse(_CLOSED, about)
            return
        clock.start()
        while True:
            item = await queue.get()
            if item == _EXPIRED or item == _CLOSED:
                yield _sse(item, about)
                break
            yield _sse("tick", item.as_dict())
    finally:
        session.release_clock(clock)


@app.get("/teacher/otp/{code_id}/countdown")
async def otp_countdown(
    code_id: str,
    session: UserSession = Depends(teacher_session),
    backend: Backend = Depends(get_backend),
):
    code = await run_in_threadpool(backend.get_otp_code, code_id, session.user_id)
    if not code:
        raise HTTPException(404, "OTP code not found")
    return StreamingResponse(countdown_events(session, code), media_type="text/event-stream")


# ── QR ───────────────────────────────────────────────────────

def _qr_view(row: dict, base_url: str) -> dict:
    return dict(
        row,
        share_url=share_url(base_url, row.get("qr_token", "")),
        qr_png=f"/teacher/qr/{row.get('id')}.png",
    )


@app.post("/teacher/qr")
def generate_qr(
    request: Request,
    subject: str = Form(...),
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    teacher = load_teacher(backend, caller.user_id)
    subject = require_assigned(teacher, subject)
    check_rpc_result(
        backend.create_qr_session(caller.user_id, subject, today_iso(), QR_VALIDITY_HOURS),
        "Failed to create QR session",
    )
    logger.info("QR session created by %s for %s", caller.user_id, subject)
    base = base_url_for(request)
    return {
        "message":  f"QR code generated successfully for {subject}",
        "sessions": [_qr_view(s, base) for s in backend.get_active_qr_sessions(caller.user_id)],
    }


@app.get("/teacher/qr")
def active_qr_sessions(
    request: Request,
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    base = base_url_for(request)
    return [_qr_view(s, base) for s in backend.get_active_qr_sessions(caller.user_id)]


@app.get("/teacher/qr/{session_id}.png")
def qr_png(
    session_id: str,
    request: Request,
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    row = backend.get_qr_session(session_id, caller.user_id)
    if not row:
        raise HTTPException(404, "QR session not found")
    png = render_qr_png(share_url(base_url_for(request), row["qr_token"]))
    filename = f"QR-{row.get('subject', 'session')}-{row.get('date', '')}.png"
    return Response(
        png, media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


@app.post("/teacher/qr/{session_id}/deactivate")
def deactivate_qr(
    session_id: str,
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    if not backend.get_qr_session(session_id, caller.user_id):
        raise HTTPException(404, "QR session not found")
    backend.deactivate_qr_session(session_id, caller.user_id)
    return {"message": "QR session deactivated"}


# ── Analytics ────────────────────────────────────────────────

@app.get("/teacher/analytics")
def teacher_analytics(caller: Caller = Depends(require_teacher), backend: Backend = Depends(get_backend)):
    teacher    = load_teacher(backend, caller.user_id)
    department = backend.get_department(teacher["department_id"])
    students   = backend.get_students_by_department(teacher["department_id"])
    records    = backend.get_attendance_for_students([s["id"] for s in students])
    result = stats.class_stats(department, students, records)
    result["students"] = students
    return result


@app.get("/teacher/analytics/students/{student_id}")
def teacher_student_analytics(
    student_id: str,
    caller: Caller = Depends(require_teacher),
    backend: Backend = Depends(get_backend),
):
    teacher = load_teacher(backend, caller.user_id)
    student = backend.get_student_with_profile(student_id)
    if not student or student.get("department_id") != teacher["department_id"]:
        raise HTTPException(404, "Student not found in your department")
    result = stats.student_stats(student, backend.get_student_attendance(student_id))
    return {
        "overall_percentage": result["overall_percentage"],
        "subject_wise":       result["subject_wise"],
        "total_classes":      result["total_classes"],
    }


# ================================================================
# FRONTEND: Single-Page Application
# ================================================================

@app.get("/", response_class=HTMLResponse)
def home():
    return HTML_PAGE


# ── HTML is in a raw string to avoid f-string / JS template conflicts ──
HTML_PAGE = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0, maximum-scale=1.0">
<title>Attendance Portal</title>
<style>
*,*::before,*::after{box-sizing:border-box;margin:0;padding:0}
:root{
  --ink:#0a0b10;--paper:#f5f4ef;--surface:#fff;--surface2:#f0efe9;--border:#e0dfd7;
  --accent:#1c3faa;--accent-lt:#e8ecf9;--green:#1a7a4a;--green-lt:#e6f4ed;
  --red:#c0392b;--red-lt:#fdf0ee;--amber:#b45309;--amber-lt:#fef3e2;--muted:#888070;
  --font:system-ui,-apple-system,'Segoe UI',sans-serif;--mono:ui-monospace,Menlo,monospace;
  --r:8px;--r-lg:14px;--shadow:0 1px 3px rgba(0,0,0,.08),0 4px 16px rgba(0,0,0,.06);
}
body{font-family:var(--font);background:var(--paper);color:var(--ink);min-height:100vh}
.shell{max-width:880px;margin:0 auto;padding:24px 16px 80px}
.topbar{display:flex;align-items:center;gap:14px;margin-bottom:28px;padding-bottom:18px;border-bottom:2px solid var(--border)}
.logo{width:44px;height:44px;background:var(--accent);color:#fff;display:grid;place-items:center;border-radius:10px;font-family:var(--mono)}
.brand-name{font-size:1.45rem;font-weight:900;letter-spacing:-.04em}
.brand-sub{font-family:var(--mono);font-size:.65rem;color:var(--muted);letter-spacing:.08em}
.who{margin-left:auto;font-family:var(--mono);font-size:.72rem;color:var(--muted)}
.tabs{display:flex;flex-wrap:wrap;gap:2px;background:var(--surface);border:1.5px solid var(--border);border-radius:var(--r-lg);padding:4px;margin-bottom:22px}
.tab-btn{flex:1;padding:10px 6px;border:none;background:transparent;font-weight:700;color:var(--muted);border-radius:10px;cursor:pointer;font-size:.82rem}
.tab-btn.active{background:var(--accent);color:#fff}
.panel{display:none}.panel.active{display:block}
.card{background:var(--surface);border:1.5px solid var(--border);border-radius:var(--r-lg);padding:22px;margin-bottom:14px;box-shadow:var(--shadow)}
.card-label{font-family:var(--mono);font-size:.62rem;color:var(--muted);text-transform:uppercase;letter-spacing:.1em;margin-bottom:14px}
.field{margin-bottom:11px}
.field label{display:block;font-family:var(--mono);font-size:.62rem;color:var(--muted);text-transform:uppercase;margin-bottom:5px}
input,select,textarea{width:100%;background:var(--surface2);border:1.5px solid var(--border);border-radius:var(--r);font-family:var(--mono);font-size:.88rem;padding:10px 13px;outline:none}
input:focus,select:focus{border-color:var(--accent);background:#fff}
.btn{display:inline-flex;align-items:center;justify-content:center;gap:8px;padding:11px 20px;border:none;border-radius:var(--r);font-weight:700;cursor:pointer;font-size:.86rem}
.btn:disabled{opacity:.4;cursor:not-allowed}
.btn-primary{background:var(--accent);color:#fff}.btn-green{background:var(--green);color:#fff}
.btn-ghost{background:transparent;border:1.5px solid var(--border)}
.btn-danger{background:transparent;border:1.5px solid #f5c6c2;color:var(--red)}
.btn-full{width:100%}
.row{display:flex;gap:8px;align-items:center}
.split{display:grid;grid-template-columns:1fr 1fr;gap:14px}
@media(max-width:600px){.split{grid-template-columns:1fr}}
.status{display:none;padding:11px 14px;border-radius:var(--r);font-size:.84rem;margin:10px 0}
.status.show{display:block}
.status.ok{background:var(--green-lt);color:var(--green)}
.status.err{background:var(--red-lt);color:var(--red)}
.status.info{background:var(--accent-lt);color:var(--accent)}
.status.warn{background:var(--amber-lt);color:var(--amber)}
.otp-cells{display:flex;justify-content:center;gap:8px;margin:8px 0 16px}
.otp-cells input{width:48px;height:56px;text-align:center;font-size:1.6rem;font-weight:800;padding:0}
.code-big{font-family:var(--mono);font-size:2.6rem;font-weight:800;letter-spacing:.3em;color:var(--accent);text-align:center}
.timer{text-align:center;font-family:var(--mono);font-size:.85rem;margin-top:6px}
.timer.expiring_soon{color:var(--amber)}.timer.expired{color:var(--red)}
.stats{display:grid;grid-template-columns:repeat(3,1fr);gap:10px;margin-bottom:18px}
.stat{background:var(--surface2);border:1.5px solid var(--border);border-radius:var(--r);padding:15px}
.stat-val{font-size:1.6rem;font-weight:900;color:var(--accent)}
.stat-lbl{font-family:var(--mono);font-size:.6rem;color:var(--muted);text-transform:uppercase}
.bar{height:6px;background:var(--border);border-radius:3px;overflow:hidden;margin-top:4px}
.bar>div{height:100%;background:var(--green)}
.tbl-wrap{border:1.5px solid var(--border);border-radius:var(--r);overflow:auto;max-height:340px}
table{width:100%;border-collapse:collapse}
th{font-family:var(--mono);font-size:.6rem;color:var(--muted);text-transform:uppercase;text-align:left;padding:8px 12px;background:var(--surface2);position:sticky;top:0}
td{font-family:var(--mono);font-size:.78rem;padding:9px 12px;border-top:1px solid var(--border)}
.badge{display:inline-block;font-size:.62rem;padding:2px 7px;border-radius:10px;cursor:pointer}
.b-present{background:var(--green-lt);color:var(--green)}.b-absent{background:var(--red-lt);color:var(--red)}
.cam-wrap{border-radius:var(--r);overflow:hidden;background:#0a0b10;aspect-ratio:1}
.cam-wrap video{width:100%;height:100%;object-fit:cover;display:block}
.qr-img{display:block;margin:0 auto 10px;width:220px;height:220px;image-rendering:pixelated}
.hidden{display:none}
</style>
</head>
<body>
<div class="shell">
  <div class="topbar">
    <div class="logo">AP</div>
    <div>
      <div class="brand-name">Attendance Portal</div>
      <div class="brand-sub">MANUAL • OTP • QR ATTENDANCE</div>
    </div>
    <div class="who" id="who"></div>
    <button class="btn btn-danger hidden" id="btn-logout" onclick="logout()">Logout</button>
  </div>

  <!-- ═══════════════════ SIGNED OUT ═══════════════════ -->
  <div id="guest">
    <div class="tabs" id="guest-tabs">
      <button class="tab-btn active" onclick="tab('guest',0)">Sign in</button>
      <button class="tab-btn" onclick="tab('guest',1)">Student sign-up</button>
      <button class="tab-btn" onclick="tab('guest',2)">Teacher sign-up</button>
    </div>
    <div class="panel active" data-group="guest">
      <div class="card">
        <div class="card-label">Sign in</div>
        <div class="field"><label>Email</label><input id="l-email" type="email" autocomplete="username"></div>
        <div class="field"><label>Password</label><input id="l-pass" type="password" autocomplete="current-password"></div>
        <div id="st-login" class="status"></div>
        <button class="btn btn-primary btn-full" onclick="login()">Sign in</button>
      </div>
    </div>
    <div class="panel" data-group="guest">
      <div class="card">
        <div class="card-label">Student registration</div>
        <div class="split">
          <div>
            <div class="field"><label>Full name</label><input id="rs-name"></div>
            <div class="field"><label>Email</label><input id="rs-email" type="email"></div>
            <div class="field"><label>Password</label><input id="rs-pass" type="password"></div>
            <div class="field"><label>Confirm password</label><input id="rs-pass2" type="password"></div>
          </div>
          <div>
            <div class="field"><label>Department</label><input id="rs-dept" list="dept-list"></div>
            <div class="field"><label>Section</label><input id="rs-section"></div>
            <div class="field"><label>Roll number</label><input id="rs-roll"></div>
          </div>
        </div>
        <div id="st-rs" class="status"></div>
        <button class="btn btn-primary btn-full" onclick="registerStudent()">Create student account</button>
      </div>
    </div>
    <div class="panel" data-group="guest">
      <div class="card">
        <div class="card-label">Teacher registration</div>
        <div class="split">
          <div>
            <div class="field"><label>Full name</label><input id="rt-name"></div>
            <div class="field"><label>Email</label><input id="rt-email" type="email"></div>
            <div class="field"><label>Password</label><input id="rt-pass" type="password"></div>
            <div class="field"><label>Confirm password</label><input id="rt-pass2" type="password"></div>
          </div>
          <div>
            <div class="field"><label>Department</label><input id="rt-dept" list="dept-list"></div>
            <div class="field"><label>Subjects (comma separated)</label><textarea id="rt-subjects" rows="4"></textarea></div>
          </div>
        </div>
        <div id="st-rt" class="status"></div>
        <button class="btn btn-primary btn-full" onclick="registerTeacher()">Create teacher account</button>
      </div>
    </div>
    <datalist id="dept-list"></datalist>
  </div>

  <!-- ═══════════════════ STUDENT ═══════════════════ -->
  <div id="student" class="hidden">
    <div class="tabs">
      <button class="tab-btn active" onclick="tab('student',0)">Dashboard</button>
      <button class="tab-btn" onclick="tab('student',1)">Enter code</button>
      <button class="tab-btn" onclick="tab('student',2)">Scan QR</button>
      <button class="tab-btn" onclick="tab('student',3)">History</button>
    </div>
    <div class="panel active" data-group="student">
      <div class="stats">
        <div class="stat"><div class="stat-val" id="sd-pct">—</div><div class="stat-lbl">Overall</div></div>
        <div class="stat"><div class="stat-val" id="sd-present">—</div><div class="stat-lbl">Present</div></div>
        <div class="stat"><div class="stat-val" id="sd-absent">—</div><div class="stat-lbl">Absent</div></div>
      </div>
      <div class="card"><div class="card-label">By subject</div><div id="sd-subjects"></div></div>
    </div>
    <div class="panel" data-group="student">
      <div class="card">
        <div class="card-label">Enter attendance code</div>
        <div class="otp-cells" id="otp-cells"></div>
        <div class="row">
          <button class="btn btn-ghost" id="otp-clear" onclick="otpClear()" disabled>Clear</button>
          <button class="btn btn-primary btn-full" id="otp-submit" onclick="otpSubmit()" disabled>Submit code</button>
        </div>
        <div id="st-otp" class="status"></div>
      </div>
      <div class="card"><div class="card-label">Today's attendance</div><div id="otp-today"></div></div>
    </div>
    <div class="panel" data-group="student">
      <div class="card">
        <div class="card-label">QR code scanner</div>
        <div id="st-qr" class="status"></div>
        <div class="cam-wrap hidden" id="qr-cam"><video id="qr-vid" autoplay playsinline muted></video></div>
        <div class="row" style="margin-top:10px">
          <button class="btn btn-primary btn-full" id="qr-start" onclick="qrStart()">Start camera</button>
          <button class="btn btn-danger btn-full hidden" id="qr-stop" onclick="qrStop()">Stop camera</button>
        </div>
        <div class="field" style="margin-top:14px"><label>…or upload a photo of the code</label>
          <input type="file" accept="image/*" capture="environment" onchange="qrUpload(this)">
        </div>
      </div>
      <div class="card"><div class="card-label">Recent attendance</div><div id="qr-recent"></div></div>
    </div>
    <div class="panel" data-group="student">
      <div class="tbl-wrap"><table>
        <thead><tr><th>Date</th><th>Subject</th><th>Status</th></tr></thead>
        <tbody id="sh-body"></tbody>
      </table></div>
    </div>
  </div>

  <!-- ═══════════════════ TEACHER ═══════════════════ -->
  <div id="teacher" class="hidden">
    <div class="tabs">
      <button class="tab-btn active" onclick="tab('teacher',0)">Dashboard</button>
      <button class="tab-btn" onclick="tab('teacher',1)">Students</button>
      <button class="tab-btn" onclick="tab('teacher',2)">Mark</button>
      <button class="tab-btn" onclick="tab('teacher',3)">OTP</button>
      <button class="tab-btn" onclick="tab('teacher',4)">QR</button>
      <button class="tab-btn" onclick="tab('teacher',5)">Analytics</button>
    </div>
    <div class="panel active" data-group="teacher">
      <div class="stats">
        <div class="stat"><div class="stat-val" id="td-students">—</div><div class="stat-lbl">Students</div></div>
        <div class="stat"><div class="stat-val" id="td-subjects">—</div><div class="stat-lbl">Subjects</div></div>
        <div class="stat"><div class="stat-val" id="td-classes">—</div><div class="stat-lbl">Records</div></div>
      </div>
      <div class="card"><div class="card-label">Average attendance by subject</div><div id="td-stats"></div></div>
    </div>
    <div class="panel" data-group="teacher">
      <div class="field"><input id="ts-q" placeholder="Search name, roll number or section" oninput="loadStudents()"></div>
      <div class="tbl-wrap"><table>
        <thead><tr><th>Roll</th><th>Name</th><th>Section</th><th>Email</th></tr></thead>
        <tbody id="ts-body"></tbody>
      </table></div>
    </div>
    <div class="panel" data-group="teacher">
      <div class="card">
        <div class="split">
          <div class="field"><label>Subject</label><select id="tm-subject" class="subject-select"></select></div>
          <div class="field"><label>Date</label><input id="tm-date" type="date"></div>
        </div>
        <div class="row" style="margin-bottom:10px">
          <button class="btn btn-ghost" onclick="markAll('present')">All present</button>
          <button class="btn btn-ghost" onclick="markAll('absent')">All absent</button>
        </div>
        <div class="tbl-wrap"><table>
          <thead><tr><th>Roll</th><th>Name</th><th>Status</th></tr></thead>
          <tbody id="tm-body"></tbody>
        </table></div>
        <div id="st-mark" class="status"></div>
        <button class="btn btn-green btn-full" style="margin-top:10px" onclick="saveSheet()">Save attendance</button>
      </div>
    </div>
    <div class="panel" data-group="teacher">
      <div class="card">
        <div class="card-label">Generate a code</div>
        <div class="row"><select id="to-subject" class="subject-select"></select>
          <button class="btn btn-primary" onclick="generateOtp()">Generate</button></div>
        <div id="st-otpgen" class="status"></div>
      </div>
      <div id="to-codes"></div>
    </div>
    <div class="panel" data-group="teacher">
      <div class="card">
        <div class="card-label">Generate a QR session (24h)</div>
        <div class="row"><select id="tq-subject" class="subject-select"></select>
          <button class="btn btn-primary" onclick="generateQr()">Generate</button></div>
        <div id="st-qrgen" class="status"></div>
      </div>
      <div id="tq-sessions"></div>
    </div>
    <div class="panel" data-group="teacher">
      <div class="stats">
        <div class="stat"><div class="stat-val" id="ta-pct">—</div><div class="stat-lbl">Overall</div></div>
        <div class="stat"><div class="stat-val" id="ta-students">—</div><div class="stat-lbl">Students</div></div>
        <div class="stat"><div class="stat-val" id="ta-student-pct">—</div><div class="stat-lbl">Selected student</div></div>
      </div>
      <div class="card"><div class="card-label">Class by subject</div><div id="ta-subjects"></div></div>
      <div class="card">
        <div class="field"><label>Student</label><select id="ta-student" onchange="loadStudentStats()"></select></div>
        <div id="ta-student-subjects"></div>
      </div>
    </div>
  </div>
</div>

<script>
// ================================================================
// UTILS
// ================================================================
let tok  = sessionStorage.getItem("tok");
let role = sessionStorage.getItem("role");
let teacherSubjects = [];
const OTP_LEN = 6;

function st(id, msg, type) {
  const el = document.getElementById(id);
  el.textContent = msg;
  el.className = "status show " + type;
}
function stHide(id) { document.getElementById(id).className = "status"; }
function esc(s) {
  return String(s == null ? "" : s).replace(/[&<>"']/g, c =>
    ({"&":"&amp;","<":"&lt;",">":"&gt;",'"':"&quot;","'":"&#39;"}[c]));
}
async function api(path, init = {}) {
  init.headers = Object.assign({}, init.headers || {}, tok ? {Authorization: "Bearer " + tok} : {});
  const r = await fetch(path, init);
  let d; try { d = await r.json(); } catch { d = {}; }
  if (r.status === 401 && tok) { signedOut(); }
  if (!r.ok) throw new Error(typeof d.detail === "string" ? d.detail : "HTTP " + r.status);
  return d;
}
function fd(obj) {
  const f = new FormData();
  Object.entries(obj).forEach(([k, v]) => {
    if (Array.isArray(v)) v.forEach(x => f.append(k, x)); else f.append(k, v);
  });
  return f;
}
function tab(group, i) {
  const root = document.getElementById(group);
  root.querySelectorAll(".panel").forEach((p, j) => p.classList.toggle("active", i === j));
  root.querySelectorAll(".tab-btn").forEach((b, j) => b.classList.toggle("active", i === j));
  if (group === "student") [loadStudentDash, loadOtpToday, loadQrRecent, loadHistory][i]();
  if (group === "teacher") [loadTeacherDash, loadStudents, loadSheet, loadOtpCodes, loadQrSessions, loadClassStats][i]();
  if (!(group === "student" && i === 2)) qrStop();
}
function bars(rows, key) {
  return rows.map(s => `
    <div style="margin-bottom:10px">
      <div class="row" style="justify-content:space-between;font-size:.82rem">
        <b>${esc(s.subject)}</b><span>${s[key]}% · ${s.total_classes} classes</span></div>
      <div class="bar"><div style="width:${s[key]}%"></div></div>
    </div>`).join("") || "<div class='stat-lbl'>No data yet</div>";
}
function recordList(rows) {
  return rows.map(r => `
    <div class="row" style="justify-content:space-between;padding:6px 0;border-bottom:1px solid var(--border)">
      <span>${esc(r.subject)} <span class="stat-lbl">${esc(r.date)}</span></span>
      <span class="badge b-${esc(r.status)}">${esc(r.status)}</span></div>`).join("")
    || "<div class='stat-lbl'>Nothing yet</div>";
}

// ================================================================
// AUTH
// ================================================================
async function loadDepartments() {
  try {
    const rows = await api("/departments");
    document.getElementById("dept-list").innerHTML = rows.map(d => `<option value="${esc(d.name)}">`).join("");
  } catch (e) { /* registration still works with a typed name */ }
}
async function login() {
  const body = new URLSearchParams({
    username: document.getElementById("l-email").value.trim(),
    password: document.getElementById("l-pass").value,
  });
  try {
    const d = await api("/auth/login", {method: "POST", body});
    tok = d.access_token; role = d.role;
    sessionStorage.setItem("tok", tok); sessionStorage.setItem("role", role);
    sessionStorage.setItem("name", d.full_name || "");
    stHide("st-login");
    show();
  } catch (e) { st("st-login", e.message, "err"); }
}
async function registerStudent() {
  const v = id => document.getElementById(id).value;
  try {
    await api("/auth/register/student", {method: "POST", body: fd({
      full_name: v("rs-name"), email: v("rs-email"), password: v("rs-pass"),
      confirm_password: v("rs-pass2"), department_name: v("rs-dept"),
      section: v("rs-section"), roll_number: v("rs-roll"),
    })});
    st("st-rs", "Registration successful. You can sign in now.", "ok");
    setTimeout(() => tab("guest", 0), 2000);
  } catch (e) { st("st-rs", e.message, "err"); }
}
async function registerTeacher() {
  const v = id => document.getElementById(id).value;
  try {
    await api("/auth/register/teacher", {method: "POST", body: fd({
      full_name: v("rt-name"), email: v("rt-email"), password: v("rt-pass"),
      confirm_password: v("rt-pass2"), department_name: v("rt-dept"),
      assigned_subjects: v("rt-subjects"),
    })});
    st("st-rt", "Registration successful. You can sign in now.", "ok");
    setTimeout(() => tab("guest", 0), 2000);
  } catch (e) { st("st-rt", e.message, "err"); }
}
async function logout() {
  qrStop();
  stopCountdowns();
  try { await api("/auth/logout", {method: "POST"}); } catch (e) { /* token may already be gone */ }
  signedOut();
}
function signedOut() {
  tok = null; role = null;
  sessionStorage.clear();
  show();
}
function show() {
  document.getElementById("guest").classList.toggle("hidden", !!tok);
  document.getElementById("student").classList.toggle("hidden", role !== "student");
  document.getElementById("teacher").classList.toggle("hidden", role !== "teacher");
  document.getElementById("btn-logout").classList.toggle("hidden", !tok);
  document.getElementById("who").textContent = tok ? (sessionStorage.getItem("name") || "") + " · " + role : "";
  if (role === "student") { tab("student", 0); redeemLinkToken(); }
  if (role === "teacher") tab("teacher", 0);
  if (!tok) loadDepartments();
}

// ================================================================
// STUDENT
// ================================================================
async function loadStudentDash() {
  const d = await api("/student/dashboard");
  document.getElementById("sd-pct").textContent = d.overall_percentage + "%";
  document.getElementById("sd-present").textContent = d.total_present;
  document.getElementById("sd-absent").textContent = d.total_absent;
  document.getElementById("sd-subjects").innerHTML = bars(d.subject_stats, "percentage");
}
async function loadHistory() {
  const rows = await api("/student/attendance");
  document.getElementById("sh-body").innerHTML = rows.map(r =>
    `<tr><td>${esc(r.date)}</td><td>${esc(r.subject)}</td><td><span class="badge b-${esc(r.status)}">${esc(r.status)}</span></td></tr>`
  ).join("");
}

// -- digit group ---------------------------------------------------
let otpBusy = false;
function otpCells() { return [...document.querySelectorAll("#otp-cells input")]; }
function otpRefresh() {
  const vals = otpCells().map(c => c.value);
  document.getElementById("otp-submit").disabled = otpBusy || !vals.every(v => v !== "");
  document.getElementById("otp-clear").disabled = otpBusy || !vals.some(v => v !== "");
}
function buildOtpCells() {
  const wrap = document.getElementById("otp-cells");
  wrap.innerHTML = "";
  for (let i = 0; i < OTP_LEN; i++) {
    const c = document.createElement("input");
    c.maxLength = 1; c.inputMode = "numeric";
    c.addEventListener("input", () => {
      if (c.value && !/^\d$/.test(c.value)) { c.value = c.dataset.last || ""; return; }
      c.dataset.last = c.value;
      stHide("st-otp");
      if (c.value && i < OTP_LEN - 1) otpCells()[i + 1].focus();
      otpRefresh();
    });
    c.addEventListener("keydown", e => {
      if (e.key === "Backspace" && !c.value && i > 0) otpCells()[i - 1].focus();
    });
    c.addEventListener("paste", e => {
      e.preventDefault();
      const text = (e.clipboardData.getData("text") || "").trim();
      if (!new RegExp("^\\d{" + OTP_LEN + "}$").test(text)) return;
      otpCells().forEach((cell, j) => { cell.value = text[j]; cell.dataset.last = text[j]; });
      otpCells()[OTP_LEN - 1].focus();
      stHide("st-otp");
      otpRefresh();
    });
    wrap.appendChild(c);
  }
}
function otpClear() {
  otpCells().forEach(c => { c.value = ""; c.dataset.last = ""; });
  otpCells()[0].focus();
  otpRefresh();
}
async function otpSubmit() {
  if (otpBusy) return;
  otpBusy = true; otpRefresh();
  otpCells().forEach(c => c.disabled = true);
  try {
    const d = await api("/student/otp", {method: "POST", body: fd({digits: otpCells().map(c => c.value)})});
    st("st-otp", d.message, d.state === "success" ? "ok" : "err");
    if (d.state === "success") { otpClear(); renderToday(d.summary); }
  } catch (e) {
    st("st-otp", e.message || "Failed to mark attendance", "err");
  } finally {
    otpBusy = false;
    otpCells().forEach(c => c.disabled = false);
    otpRefresh();
  }
}
function renderToday(rows) { document.getElementById("otp-today").innerHTML = recordList(rows); }
async function loadOtpToday() { renderToday(await api("/student/otp/today")); }

// -- QR ------------------------------------------------------------
let qrStream = null, qrTimer = null, qrBusy = false;
async function qrStart() {
  await qrStop();
  stHide("st-qr");
  const btn = document.getElementById("qr-start");
  btn.disabled = true; btn.textContent = "Initializing camera…";
  try {
    qrStream = await navigator.mediaDevices.getUserMedia({video: {facingMode: "environment"}});
    await api("/student/qr/scan/grant", {method: "POST"});
  } catch (e) {
    const s = await api("/student/qr/scan/error", {method: "POST", body: fd({name: e.name || "Error", message: e.message || ""})});
    st("st-qr", s.error || "Failed to start camera", "err");
    btn.disabled = false; btn.textContent = "Start camera";
    return;
  }
  const s = await api("/student/qr/scan/start", {method: "POST"});
  if (!s.scanning) { st("st-qr", s.error || "Failed to start camera", "err"); await qrStop(); return; }
  const vid = document.getElementById("qr-vid");
  vid.srcObject = qrStream; await vid.play();
  document.getElementById("qr-cam").classList.remove("hidden");
  btn.classList.add("hidden"); document.getElementById("qr-stop").classList.remove("hidden");
  st("st-qr", "Camera active. Point it at the QR code.", "info");
  qrTimer = setInterval(qrFrame, 300);
}
function grabFrame(vid) {
  const c = document.createElement("canvas");
  c.width = vid.videoWidth || 640; c.height = vid.videoHeight || 480;
  c.getContext("2d").drawImage(vid, 0, 0);
  return new Promise(res => c.toBlob(res, "image/jpeg", 0.9));
}
async function qrFrame() {
  if (qrBusy || !qrStream) return;
  qrBusy = true;
  try {
    const f = new FormData();
    f.append("frame", await grabFrame(document.getElementById("qr-vid")), "frame.jpg");
    const d = await api("/student/qr/frame", {method: "POST", body: f});
    if (d.decoded) { await qrStop(); showQrResult(d.flow); }
  } catch (e) { st("st-qr", e.message, "err"); }
  finally { qrBusy = false; }
}
async function qrStop() {
  clearInterval(qrTimer); qrTimer = null;
  const wasActive = !!qrStream;
  if (qrStream) { qrStream.getTracks().forEach(t => t.stop()); qrStream = null; }
  const btn = document.getElementById("qr-start");
  btn.disabled = false; btn.textContent = "Start camera"; btn.classList.remove("hidden");
  document.getElementById("qr-stop").classList.add("hidden");
  document.getElementById("qr-cam").classList.add("hidden");
  if (wasActive && tok) { try { await api("/student/qr/scan/stop", {method: "POST"}); } catch (e) {} }
}
function showQrResult(flow) {
  st("st-qr", flow.message, flow.state === "success" ? "ok" : "err");
  document.getElementById("qr-recent").innerHTML = recordList(flow.summary || []);
}
async function qrUpload(input) {
  if (!input.files.length) return;
  const f = new FormData(); f.append("image", input.files[0]);
  try { showQrResult(await api("/student/qr/image", {method: "POST", body: f})); }
  catch (e) { st("st-qr", e.message, "err"); }
  input.value = "";
}
async function redeemLinkToken() {
  const params = new URLSearchParams(location.search);
  const t = params.get("token") || sessionStorage.getItem("pendingToken");
  if (!t) return;
  sessionStorage.removeItem("pendingToken");
  history.replaceState(null, "", "/");
  tab("student", 2);
  try { showQrResult(await api("/student/qr/redeem", {method: "POST", body: fd({scanned: t})})); }
  catch (e) { st("st-qr", e.message, "err"); }
}
async function loadQrRecent() { document.getElementById("qr-recent").innerHTML = recordList(await api("/student/qr/recent")); }

// ================================================================
// TEACHER
// ================================================================
let sheetStudents = [], sheet = {};
function fillSubjects(list) {
  teacherSubjects = list;
  document.querySelectorAll(".subject-select").forEach(s => {
    const keep = s.value;
    s.innerHTML = list.map(x => `<option>${esc(x)}</option>`).join("");
    if (list.includes(keep)) s.value = keep;
  });
}
async function loadTeacherDash() {
  const d = await api("/teacher/dashboard");
  fillSubjects(d.teacher.assigned_subjects || []);
  document.getElementById("td-students").textContent = d.total_students;
  document.getElementById("td-subjects").textContent = teacherSubjects.length;
  document.getElementById("td-classes").textContent = d.subject_stats.reduce((a, s) => a + s.total_classes, 0);
  document.getElementById("td-stats").innerHTML = bars(d.subject_stats, "average_attendance");
}
async function loadStudents() {
  const q = encodeURIComponent(document.getElementById("ts-q").value);
  const rows = await api("/teacher/students?q=" + q);
  document.getElementById("ts-body").innerHTML = rows.map(s =>
    `<tr><td>${esc(s.roll_number)}</td><td>${esc((s.profile||{}).full_name)}</td><td>${esc(s.section)}</td><td>${esc((s.profile||{}).email)}</td></tr>`
  ).join("");
}
async function loadSheet() {
  if (!teacherSubjects.length) await loadTeacherDash();
  const dateInput = document.getElementById("tm-date");
  if (!dateInput.value) dateInput.value = new Date().toISOString().split("T")[0];
  sheetStudents = await api("/teacher/students");
  sheet = {}; sheetStudents.forEach(s => sheet[s.id] = "present");
  renderSheet();
}
function renderSheet() {
  document.getElementById("tm-body").innerHTML = sheetStudents.map(s =>
    `<tr><td>${esc(s.roll_number)}</td><td>${esc((s.profile||{}).full_name)}</td>
     <td><span class="badge b-${sheet[s.id]}" onclick="toggleMark('${esc(s.id)}')">${sheet[s.id]}</span></td></tr>`
  ).join("");
}
function toggleMark(id) { sheet[id] = sheet[id] === "present" ? "absent" : "present"; renderSheet(); }
function markAll(status) { sheetStudents.forEach(s => sheet[s.id] = status); renderSheet(); }
async function saveSheet() {
  try {
    const d = await api("/teacher/attendance", {
      method: "POST", headers: {"Content-Type": "application/json"},
      body: JSON.stringify({
        subject: document.getElementById("tm-subject").value,
        date: document.getElementById("tm-date").value, statuses: sheet,
      }),
    });
    st("st-mark", `Attendance marked successfully! ${d.present}/${d.count} present.`, "ok");
  } catch (e) { st("st-mark", e.message, "err"); }
}

// -- OTP countdowns --------------------------------------------------
const countdowns = {};
function stopCountdowns() { Object.values(countdowns).forEach(c => c.abort()); for (const k in countdowns) delete countdowns[k]; }
async function generateOtp() {
  try {
    const d = await api("/teacher/otp", {method: "POST", body: fd({subject: document.getElementById("to-subject").value})});
    st("st-otpgen", d.message, "ok");
    renderOtpCodes(d.codes);
  } catch (e) { st("st-otpgen", e.message, "err"); }
}
async function loadOtpCodes() {
  if (!teacherSubjects.length) await loadTeacherDash();
  renderOtpCodes(await api("/teacher/otp"));
}
function renderOtpCodes(codes) {
  stopCountdowns();
  document.getElementById("to-codes").innerHTML = codes.map(c => `
    <div class="card">
      <div class="card-label">${esc(c.subject)}</div>
      <div class="code-big">${esc(c.otp_code)}</div>
      <div class="timer ${c.state}" id="tm-${esc(c.id)}">Expires in ${c.display}</div>
      <button class="btn btn-ghost btn-full" style="margin-top:10px" onclick="navigator.clipboard.writeText('${esc(c.otp_code)}')">Copy code</button>
    </div>`).join("") || "<div class='card stat-lbl'>No active codes</div>";
  codes.forEach(c => followCountdown(c.id));
}
async function followCountdown(id) {
  const ctl = new AbortController(); countdowns[id] = ctl;
  try {
    const r = await fetch(`/teacher/otp/${id}/countdown`, {headers: {Authorization: "Bearer " + tok}, signal: ctl.signal});
    const reader = r.body.getReader(); const dec = new TextDecoder(); let buf = "";
    while (true) {
      const {value, done} = await reader.read();
      if (done) break;
      buf += dec.decode(value, {stream: true});
      let idx;
      while ((idx = buf.indexOf("\n\n")) >= 0) {
        const chunk = buf.slice(0, idx); buf = buf.slice(idx + 2);
        const ev = (chunk.match(/^event: (.*)$/m) || [])[1];
        const data = JSON.parse((chunk.match(/^data: (.*)$/m) || [])[1] || "{}");
        const el = document.getElementById("tm-" + id);
        if (!el) continue;
        if (ev === "tick") {
          el.className = "timer " + data.state;
          el.textContent = data.state === "expired" ? "Expired" : "Expires in " + data.display
            + (data.state === "expiring_soon" ? " · expiring soon" : "");
        }
        if (ev === "expired") { delete countdowns[id]; setTimeout(loadOtpCodes, 1500); }
      }
    }
  } catch (e) { /* aborted */ }
}

// -- QR sessions -----------------------------------------------------
async function generateQr() {
  try {
    const d = await api("/teacher/qr", {method: "POST", body: fd({subject: document.getElementById("tq-subject").value})});
    st("st-qrgen", d.message, "ok");
    renderQrSessions(d.sessions);
  } catch (e) { st("st-qrgen", e.message, "err"); }
}
async function loadQrSessions() {
  if (!teacherSubjects.length) await loadTeacherDash();
  renderQrSessions(await api("/teacher/qr"));
}
async function renderQrSessions(rows) {
  const box = document.getElementById("tq-sessions");
  box.innerHTML = rows.map(s => `
    <div class="card">
      <div class="card-label">${esc(s.subject)} · ${esc(s.date)}</div>
      <img class="qr-img" id="qr-${esc(s.id)}" alt="QR code">
      <div class="row">
        <button class="btn btn-ghost btn-full" onclick="navigator.clipboard.writeText('${esc(s.share_url)}')">Copy link</button>
        <button class="btn btn-danger btn-full" onclick="deactivateQr('${esc(s.id)}')">Deactivate</button>
      </div>
    </div>`).join("") || "<div class='card stat-lbl'>No active QR sessions</div>";
  for (const s of rows) {
    const r = await fetch(s.qr_png, {headers: {Authorization: "Bearer " + tok}});
    if (r.ok) document.getElementById("qr-" + s.id).src = URL.createObjectURL(await r.blob());
  }
}
async function deactivateQr(id) {
  try {
    const d = await api(`/teacher/qr/${id}/deactivate`, {method: "POST"});
    st("st-qrgen", d.message, "ok");
    loadQrSessions();
  } catch (e) { st("st-qrgen", e.message, "err"); }
}

// -- analytics ------------------------------------------------------
async function loadClassStats() {
  const d = await api("/teacher/analytics");
  document.getElementById("ta-pct").textContent = d.overall_percentage + "%";
  document.getElementById("ta-students").textContent = d.total_students;
  document.getElementById("ta-subjects").innerHTML = bars(d.subject_wise, "percentage");
  document.getElementById("ta-student").innerHTML = "<option value=''>— Select —</option>" + d.students.map(s =>
    `<option value="${esc(s.id)}">${esc(s.roll_number)} · ${esc((s.profile||{}).full_name)}</option>`).join("");
}
async function loadStudentStats() {
  const id = document.getElementById("ta-student").value;
  if (!id) return;
  const d = await api("/teacher/analytics/students/" + encodeURIComponent(id));
  document.getElementById("ta-student-pct").textContent = d.overall_percentage + "%";
  document.getElementById("ta-student-subjects").innerHTML = bars(d.subject_wise, "percentage");
}

// ================================================================
// BOOT
// ================================================================
buildOtpCells();
otpRefresh();
(function () {
  const t = new URLSearchParams(location.search).get("token");
  if (t && role !== "student") sessionStorage.setItem("pendingToken", t);
})();
show();
window.addEventListener("beforeunload", () => { qrStop(); stopCountdowns(); });
</script>
</body>
</html>
"""
