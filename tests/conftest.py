import os

os.environ.setdefault("REDIS_ENABLED", "0")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("APP_BASE_URL", "https://portal.example")

import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import attendance_portal as portal
from portal_backend import BackendError, today_iso
from qr_capture import CameraUnavailableError, QRScanner, ScanHandle


# ================================================================
# FAKE SUPABASE BACKEND
# ================================================================

def _iso(dt):
    return dt.isoformat()


class FakeBackend:
    """In-memory stand-in for portal_backend.Backend with the same methods."""

    def __init__(self):
        self._ids        = itertools.count(1)
        self.users       = {}     # email -> (user_id, password)
        self.profiles    = {}
        self.departments = {}
        self.students    = {}
        self.teachers    = {}
        self.records     = []
        self.otp_codes   = []
        self.qr_sessions = []
        self.redeem_calls = []
        self.register_result = None
        self.fail_teacher_lookup = False

    def _new_id(self, prefix):
        return f"{prefix}-{next(self._ids)}"

    # -- auth ------------------------------------------------------
    def sign_up(self, email, password):
        if email in self.users:
            raise BackendError("User already registered")
        user_id = self._new_id("user")
        self.users[email] = (user_id, password)
        return user_id

    def sign_in(self, email, password):
        entry = self.users.get(email)
        if not entry or entry[1] != password:
            raise BackendError("Invalid login credentials")
        return entry[0]

    # -- rpc -------------------------------------------------------
    def find_or_create_department(self, name, subjects):
        for d in self.departments.values():
            if d["name"].lower() == name.lower():
                return d["id"]
        dept_id = self._new_id("dept")
        self.departments[dept_id] = {"id": dept_id, "name": name, "subjects": list(subjects)}
        return dept_id

    def register_student(self, user_id, email, full_name, department_id, roll_number, subjects, section=None):
        if self.register_result is not None:
            return self.register_result
        self.profiles[user_id] = {"id": user_id, "email": email, "full_name": full_name, "role": "student"}
        self.students[user_id] = {
            "id": user_id, "department_id": department_id, "section": section,
            "roll_number": roll_number, "subjects": list(subjects),
        }
        return {"success": True}

    def register_teacher(self, user_id, email, full_name, department_id, assigned_subjects):
        if self.register_result is not None:
            return self.register_result
        self.profiles[user_id] = {"id": user_id, "email": email, "full_name": full_name, "role": "teacher"}
        self.teachers[user_id] = {
            "id": user_id, "department_id": department_id,
            "assigned_subjects": list(assigned_subjects),
        }
        return {"success": True}

    def create_otp_code(self, teacher_id, subject, minutes=2):
        code = f"{482900 + len(self.otp_codes)}"
        row = {
            "id": self._new_id("otp"), "teacher_id": teacher_id, "subject": subject,
            "otp_code": code, "is_active": True,
            "expires_at": _iso(datetime.now(timezone.utc) + timedelta(minutes=minutes)),
            "created_at": _iso(datetime.now(timezone.utc)),
        }
        self.otp_codes.append(row)
        return {"success": True, "otp_code": code, "expires_at": row["expires_at"]}

    def _mark(self, student_id, subject, date, teacher_id):
        for r in self.records:
            if r["student_id"] == student_id and r["subject"] == subject and r["date"] == date:
                return {"success": False, "error": "Attendance already marked for this subject today"}
        self.records.append({
            "id": self._new_id("rec"), "student_id": student_id, "subject": subject,
            "date": date, "status": "present", "marked_by": teacher_id,
            "created_at": _iso(datetime.now(timezone.utc)),
        })
        return {"success": True, "subject": subject}

    def mark_via_otp(self, student_id, code):
        self.redeem_calls.append(("otp", student_id, code))
        now = datetime.now(timezone.utc).isoformat()
        for row in self.otp_codes:
            if row["otp_code"] == code and row["is_active"] and row["expires_at"] > now:
                return self._mark(student_id, row["subject"], today_iso(), row["teacher_id"])
        return {"success": False, "error": "Invalid or expired OTP code"}

    def create_qr_session(self, teacher_id, subject, date, hours=24):
        row = {
            "id": self._new_id("qr"), "teacher_id": teacher_id, "subject": subject,
            "date": date, "qr_token": f"tok{len(self.qr_sessions)}abc", "is_active": True,
            "expires_at": _iso(datetime.now(timezone.utc) + timedelta(hours=hours)),
        }
        self.qr_sessions.append(row)
        return {"success": True, "qr_token": row["qr_token"]}

    def mark_via_qr(self, student_id, token):
        self.redeem_calls.append(("qr", student_id, token))
        for row in self.qr_sessions:
            if row["qr_token"] == token and row["is_active"]:
                return self._mark(student_id, row["subject"], row["date"], row["teacher_id"])
        return {"success": False, "error": "Invalid or expired QR code"}

    # -- tables ----------------------------------------------------
    def get_profile(self, user_id):
        return self.profiles.get(user_id)

    def get_departments(self):
        return sorted(self.departments.values(), key=lambda d: d["name"])

    def get_department(self, department_id):
        return self.departments.get(department_id)

    def get_student(self, user_id):
        return self.students.get(user_id)

    def get_student_with_profile(self, user_id):
        s = self.students.get(user_id)
        if not s:
            return None
        return dict(s, profile=self.profiles.get(user_id), department=self.departments.get(s["department_id"]))

    def get_teacher(self, user_id):
        if self.fail_teacher_lookup:
            raise BackendError("connection refused")
        return self.teachers.get(user_id)

    def get_students_by_department(self, department_id):
        rows = [self.get_student_with_profile(sid) for sid, s in self.students.items()
                if s["department_id"] == department_id]
        return sorted(rows, key=lambda s: s["roll_number"])

    def mark_bulk_attendance(self, records):
        for rec in records:
            self.records = [
                r for r in self.records
                if (r["student_id"], r["subject"], r["date"]) != (rec["student_id"], rec["subject"], rec["date"])
            ]
            self.records.append(dict(rec, id=self._new_id("rec")))
        return records

    def get_student_attendance(self, student_id):
        rows = [r for r in self.records if r["student_id"] == student_id]
        return sorted(rows, key=lambda r: r["date"], reverse=True)

    def get_today_attendance(self, student_id):
        return [r for r in self.get_student_attendance(student_id) if r["date"] == today_iso()]

    def get_recent_attendance(self, student_id, limit=5):
        return self.get_student_attendance(student_id)[:limit]

    def get_attendance_by_date(self, subject, date):
        return [r for r in self.records if r["subject"] == subject and r["date"] == date]

    def get_attendance_for_students(self, student_ids):
        return [r for r in self.records if r["student_id"] in student_ids]

    def get_active_otp_codes(self, teacher_id):
        return [c for c in self.otp_codes if c["teacher_id"] == teacher_id and c["is_active"]]

    def get_otp_code(self, code_id, teacher_id):
        for c in self.otp_codes:
            if c["id"] == code_id and c["teacher_id"] == teacher_id:
                return c
        return None

    def get_active_qr_sessions(self, teacher_id):
        return [s for s in self.qr_sessions if s["teacher_id"] == teacher_id and s["is_active"]]

    def get_qr_session(self, session_id, teacher_id):
        for s in self.qr_sessions:
            if s["id"] == session_id and s["teacher_id"] == teacher_id:
                return s
        return None

    def deactivate_qr_session(self, session_id, teacher_id):
        for s in self.qr_sessions:
            if s["id"] == session_id and s["teacher_id"] == teacher_id:
                s["is_active"] = False

    # -- seeding helpers ------------------------------------------
    def add_teacher(self, email="teacher@uni.edu", password="secret1", subjects=("Maths", "Physics"),
                    department="Computer Science"):
        dept_id = self.find_or_create_department(department, list(subjects))
        user_id = self.sign_up(email, password)
        self.register_teacher(user_id, email, "Dr. Rao", dept_id, list(subjects))
        return user_id

    def add_student(self, email="student@uni.edu", password="secret1", roll="CS-01", section="A",
                    department="Computer Science", name="Asha Verma"):
        dept_id = self.find_or_create_department(department, ["Maths", "Physics"])
        user_id = self.sign_up(email, password)
        subjects = self.departments[dept_id]["subjects"]
        self.register_student(user_id, email, name, dept_id, roll, subjects, section=section)
        return user_id


# ================================================================
# FAKE QR SCANNER
# ================================================================

class FakeHandle(ScanHandle):
    """Frames are raw text: b"" is a miss, b"!lost" fails the device."""

    def push(self, frame):
        if not self.active:
            return
        text = frame.decode()
        if text == "!lost":
            self.on_error(CameraUnavailableError("Camera disconnected"))
        elif text:
            self.on_decode(text)


class FakeScanner(QRScanner):
    def __init__(self, fail=None):
        self.fail    = fail
        self.started = []
        self.stopped = []

    def start(self, constraints, on_decode, on_error):
        if self.fail is not None:
            raise self.fail
        handle = FakeHandle(constraints, on_decode, on_error)
        self.started.append(handle)
        return handle

    def stop(self, handle):
        handle.active = False
        self.stopped.append(handle)

    @property
    def live(self):
        return [h for h in self.started if h.active]


# ================================================================
# FIXTURES
# ================================================================

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend, monkeypatch):
    monkeypatch.setattr(portal, "_backend", backend)
    portal._store.clear()
    with TestClient(portal.app) as c:
        yield c
    portal.sessions.close_all()
    portal._store.clear()


@pytest.fixture
def login(client):
    def _login(email, password="secret1"):
        res = client.post("/auth/login", data={"username": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}
    return _login
