# ============================================================
# attendance_stats.py  -  dashboard and analytics arithmetic
# ============================================================
#
# One rounding rule for every percentage the portal shows:
# present / total * 100, rounded half-up to one decimal.
# ============================================================

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional


def percentage(present: int, total: int) -> float:
    if total <= 0:
        return 0.0
    value = Decimal(present) * 100 / Decimal(total)
    return float(value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def subject_breakdown(subjects: Iterable[str], records: Iterable[dict]) -> List[dict]:
    """Per-subject counts; records for subjects outside ``subjects`` are ignored."""
    counts: Dict[str, Dict[str, int]] = {}
    for subject in subjects:
        counts.setdefault(subject, {"present": 0, "absent": 0})
    for r in records:
        bucket = counts.get(r.get("subject"))
        if bucket is None:
            continue
        if r.get("status") == "present":
            bucket["present"] += 1
        else:
            bucket["absent"] += 1

    out = []
    for subject, c in counts.items():
        total = c["present"] + c["absent"]
        out.append({
            "subject":       subject,
            "total_classes": total,
            "present_count": c["present"],
            "absent_count":  c["absent"],
            "percentage":    percentage(c["present"], total),
        })
    return out


def totals(records: Iterable[dict]) -> Dict[str, float]:
    records = list(records)
    present = sum(1 for r in records if r.get("status") == "present")
    total   = len(records)
    return {
        "total_classes":      total,
        "total_present":      present,
        "total_absent":       total - present,
        "overall_percentage": percentage(present, total),
    }


def student_stats(student: dict, records: List[dict]) -> dict:
    stats = totals(records)
    stats["subject_wise"] = subject_breakdown(student.get("subjects") or [], records)
    stats["student"] = student
    return stats


def class_stats(department: Optional[dict], students: List[dict], records: List[dict]) -> dict:
    if not department or not students:
        return {
            "department":         department,
            "total_students":     0,
            "overall_percentage": 0.0,
            "subject_wise":       [],
        }
    return {
        "department":         department,
        "total_students":     len(students),
        "overall_percentage": totals(records)["overall_percentage"],
        "subject_wise":       subject_breakdown(department.get("subjects") or [], records),
    }


def teacher_subject_stats(subjects: List[str], records: List[dict]) -> List[dict]:
    """Dashboard cards for a teacher: one entry per assigned subject."""
    return [
        {
            "subject":            s["subject"],
            "total_classes":      s["total_classes"],
            "average_attendance": s["percentage"],
            "present_count":      s["present_count"],
            "absent_count":       s["absent_count"],
        }
        for s in subject_breakdown(subjects, records)
    ]
