# ============================================================
# portal_backend.py  -  Supabase boundary
# ============================================================
#
# Everything authoritative happens in the hosted Supabase project:
# auth, row storage and the attendance stored procedures. This module
# only forwards calls and turns client errors into BackendError.
#
# SUPABASE SETUP
# ──────────────
#  Tables : profiles, departments, students, teachers,
#           attendance_records, otp_attendance_codes,
#           qr_attendance_sessions
#  RPCs   : find_or_create_department, register_student,
#           register_teacher, create_otp_attendance_code,
#           mark_attendance_via_otp, create_qr_session,
#           mark_attendance_via_qr
# ============================================================

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from supabase import Client, create_client

logger = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")   # use service_role key

STUDENT_JOIN = (
    "*,"
    "profile:profiles!students_id_fkey(*),"
    "department:departments!students_department_id_fkey(*)"
)
ATTENDANCE_STUDENT_JOIN = (
    "*,"
    "student:students!attendance_records_student_id_fkey("
    "*,"
    "profile:profiles!students_id_fkey(*),"
    "department:departments!students_department_id_fkey(*)"
    ")"
)


class BackendError(Exception):
    """A failed call to the hosted backend (transport, auth or query)."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _message(e: Exception) -> str:
    # postgrest APIError keeps the server text in .message
    return getattr(e, "message", None) or str(e) or e.__class__.__name__


def _rows(result: Any) -> List[dict]:
    data = getattr(result, "data", None) if result is not None else None
    return data if isinstance(data, list) else []


def _row(result: Any) -> Optional[dict]:
    # maybe_single().execute() returns None (not an empty response) on no match
    if result is None:
        return None
    return getattr(result, "data", None)


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class Backend:
    """
    Thin wrapper over a service-role Supabase client.

    Sign-up and sign-in run on a fresh client from ``auth_factory`` so the
    shared client never picks up an end user's session.
    """

    def __init__(self, client: Client, auth_factory: Optional[Callable[[], Client]] = None):
        self.client       = client
        self.auth_factory = auth_factory or (lambda: client)

    @classmethod
    def from_env(cls) -> "Backend":
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_KEY environment variables are required.\n"
                "Set them before starting the server:\n"
                "  export SUPABASE_URL=https://xxxx.supabase.co\n"
                "  export SUPABASE_KEY=your_service_role_key"
            )
        client = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("Supabase client initialised → %s", SUPABASE_URL)
        return cls(client, lambda: create_client(SUPABASE_URL, SUPABASE_KEY))

    # ============================================================
    # AUTH
    # ============================================================

    def sign_up(self, email: str, password: str) -> str:
        """Create the auth user and return its id."""
        try:
            res = self.auth_factory().auth.sign_up({"email": email, "password": password})
        except Exception as e:
            raise BackendError(_message(e))
        if not res or not res.user:
            raise BackendError("Failed to create user")
        return res.user.id

    def sign_in(self, email: str, password: str) -> str:
        try:
            res = self.auth_factory().auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as e:
            raise BackendError(_message(e))
        if not res or not res.user:
            raise BackendError("Invalid login credentials")
        return res.user.id

    # ============================================================
    # REMOTE PROCEDURES
    # ============================================================

    def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        try:
            return self.client.rpc(name, params).execute().data
        except Exception as e:
            logger.warning("RPC %s failed: %s", name, e)
            raise BackendError(_message(e))

    def find_or_create_department(self, name: str, subjects: List[str]) -> str:
        dept_id = self.rpc("find_or_create_department", {
            "p_department_name": name,
            "p_subjects":        subjects,
        })
        if not dept_id:
            raise BackendError("Failed to create or find department")
        return dept_id

    def register_student(
        self,
        user_id: str,
        email: str,
        full_name: str,
        department_id: str,
        roll_number: str,
        subjects: List[str],
        section: Optional[str] = None,
    ) -> Any:
        return self.rpc("register_student", {
            "p_user_id":       user_id,
            "p_email":         email,
            "p_full_name":     full_name,
            "p_department_id": department_id,
            "p_section":       section or None,
            "p_roll_number":   roll_number,
            "p_subjects":      subjects,
        })

    def register_teacher(
        self,
        user_id: str,
        email: str,
        full_name: str,
        department_id: str,
        assigned_subjects: List[str],
    ) -> Any:
        return self.rpc("register_teacher", {
            "p_user_id":           user_id,
            "p_email":             email,
            "p_full_name":         full_name,
            "p_department_id":     department_id,
            "p_assigned_subjects": assigned_subjects,
        })

    def create_otp_code(self, teacher_id: str, subject: str, minutes: int = 2) -> Any:
        return self.rpc("create_otp_attendance_code", {
            "p_teacher_id":       teacher_id,
            "p_subject":          subject,
            "p_validity_minutes": minutes,
        })

    def mark_via_otp(self, student_id: str, code: str) -> Any:
        return self.rpc("mark_attendance_via_otp", {
            "p_student_id": student_id,
            "p_otp_code":   code,
        })

    def create_qr_session(self, teacher_id: str, subject: str, date: str, hours: int = 24) -> Any:
        return self.rpc("create_qr_session", {
            "p_teacher_id":    teacher_id,
            "p_subject":       subject,
            "p_date":          date,
            "p_expires_hours": hours,
        })

    def mark_via_qr(self, student_id: str, token: str) -> Any:
        return self.rpc("mark_attendance_via_qr", {
            "p_student_id": student_id,
            "p_qr_token":   token,
        })

    # ============================================================
    # TABLES
    # ============================================================

    def _execute(self, what: str, query: Any) -> Any:
        try:
            return query.execute()
        except Exception as e:
            logger.warning("Query %s failed: %s", what, e)
            raise BackendError(_message(e))

    def get_profile(self, user_id: str) -> Optional[dict]:
        return _row(self._execute(
            "profile",
            self.client.table("profiles").select("*").eq("id", user_id).maybe_single(),
        ))

    def get_departments(self) -> List[dict]:
        return _rows(self._execute(
            "departments",
            self.client.table("departments").select("*").order("name"),
        ))

    def get_department(self, department_id: str) -> Optional[dict]:
        return _row(self._execute(
            "department",
            self.client.table("departments").select("*").eq("id", department_id).maybe_single(),
        ))

    def get_student(self, user_id: str) -> Optional[dict]:
        return _row(self._execute(
            "student",
            self.client.table("students").select("*").eq("id", user_id).maybe_single(),
        ))

    def get_student_with_profile(self, user_id: str) -> Optional[dict]:
        return _row(self._execute(
            "student+profile",
            self.client.table("students").select(STUDENT_JOIN).eq("id", user_id).maybe_single(),
        ))

    def get_teacher(self, user_id: str) -> Optional[dict]:
        return _row(self._execute(
            "teacher",
            self.client.table("teachers").select("*").eq("id", user_id).maybe_single(),
        ))

    def get_students_by_department(self, department_id: str) -> List[dict]:
        return _rows(self._execute(
            "students by department",
            self.client.table("students")
            .select(STUDENT_JOIN)
            .eq("department_id", department_id)
            .order("roll_number"),
        ))

    def mark_bulk_attendance(self, records: List[dict]) -> List[dict]:
        if not records:
            return []
        return _rows(self._execute(
            "attendance upsert",
            self.client.table("attendance_records")
            .upsert(records, on_conflict="student_id,subject,date"),
        ))

    def get_student_attendance(self, student_id: str) -> List[dict]:
        return _rows(self._execute(
            "student attendance",
            self.client.table("attendance_records")
            .select("*")
            .eq("student_id", student_id)
            .order("date", desc=True),
        ))

    def get_today_attendance(self, student_id: str) -> List[dict]:
        today = today_iso()
        return [r for r in self.get_student_attendance(student_id) if r.get("date") == today]

    def get_recent_attendance(self, student_id: str, limit: int = 5) -> List[dict]:
        return _rows(self._execute(
            "recent attendance",
            self.client.table("attendance_records")
            .select("subject,date,status,created_at")
            .eq("student_id", student_id)
            .order("created_at", desc=True)
            .limit(limit),
        ))

    def get_attendance_by_date(self, subject: str, date: str) -> List[dict]:
        return _rows(self._execute(
            "attendance by date",
            self.client.table("attendance_records")
            .select(ATTENDANCE_STUDENT_JOIN)
            .eq("subject", subject)
            .eq("date", date)
            .order("created_at"),
        ))

    def get_attendance_for_students(self, student_ids: List[str]) -> List[dict]:
        if not student_ids:
            return []
        return _rows(self._execute(
            "department attendance",
            self.client.table("attendance_records").select("*").in_("student_id", student_ids),
        ))

    # -- OTP / QR sessions ---------------------------------------

    def get_active_otp_codes(self, teacher_id: str) -> List[dict]:
        now_iso = datetime.now(timezone.utc).isoformat()
        return _rows(self._execute(
            "active otp codes",
            self.client.table("otp_attendance_codes")
            .select("*")
            .eq("teacher_id", teacher_id)
            .eq("is_active", True)
            .gte("expires_at", now_iso)
            .order("created_at", desc=True),
        ))

    def get_otp_code(self, code_id: str, teacher_id: str) -> Optional[dict]:
        return _row(self._execute(
            "otp code",
            self.client.table("otp_attendance_codes")
            .select("*")
            .eq("id", code_id)
            .eq("teacher_id", teacher_id)
            .maybe_single(),
        ))

    def get_active_qr_sessions(self, teacher_id: str) -> List[dict]:
        return _rows(self._execute(
            "active qr sessions",
            self.client.table("qr_attendance_sessions")
            .select("*")
            .eq("teacher_id", teacher_id)
            .eq("is_active", True)
            .order("created_at", desc=True),
        ))

    def get_qr_session(self, session_id: str, teacher_id: str) -> Optional[dict]:
        return _row(self._execute(
            "qr session",
            self.client.table("qr_attendance_sessions")
            .select("*")
            .eq("id", session_id)
            .eq("teacher_id", teacher_id)
            .maybe_single(),
        ))

    def deactivate_qr_session(self, session_id: str, teacher_id: str) -> None:
        self._execute(
            "qr deactivate",
            self.client.table("qr_attendance_sessions")
            .update({"is_active": False})
            .eq("id", session_id)
            .eq("teacher_id", teacher_id),
        )
