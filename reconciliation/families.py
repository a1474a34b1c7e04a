"""Bulk family upload: one row creates a parent, a student, their portal
accounts and the link between them. Rows fail independently."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from werkzeug.security import generate_password_hash

from models import StaffUser

from .controller import IsolationController
from .derived import DerivedConfig
from .grouping import group_rows
from .report import ReconciliationReport
from .rows import Field, SourceRow, as_bool, as_date, as_gender, as_upper, extract
from .stages import (
    PARENT_FIELDS,
    Policy,
    Stage,
    StageContext,
    link_parent_student,
    store_student,
    upsert_parent,
)

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "Password@123"

FAMILY_REQUIRED_COLUMNS = (
    "school_code",
    "parent_full_name",
    "parent_phone",
    "student_admission_number",
    "student_full_name",
    "student_date_of_birth",
    "student_admission_date",
    "student_admission_class",
)

FAMILY_STUDENT_FIELDS = (
    Field("admission_number", ("student_admission_number",), required=True),
    Field("full_name", ("student_full_name",), required=True),
    Field("date_of_birth", ("student_date_of_birth",), parse=as_date, required=True),
    Field("admission_date", ("student_admission_date",), parse=as_date, required=True),
    Field("admission_class", ("student_admission_class",), required=True),
    Field("branch_code"),
    Field("gender", ("student_gender",), parse=as_gender),
    Field("blood_group", ("student_blood_group",)),
    Field("aadhar_number", ("student_aadhar_number",)),
    Field("roll_number", ("student_roll_number",)),
    Field("email", ("student_email",)),
    Field("phone", ("student_phone",)),
    Field("address_line1", ("student_address_line",)),
    Field("city", ("student_city",)),
    Field("state", ("student_state",)),
    Field("pincode", ("student_pincode",)),
    Field("medical_conditions", ("student_medical_conditions",)),
    Field("emergency_contact_name", ("student_emergency_contact_name",)),
    Field("emergency_contact_phone", ("student_emergency_contact_phone",)),
)

FLAG_FIELDS = (
    Field("relationship_type", parse=as_upper),
    Field("is_primary_contact", parse=as_bool),
    Field("is_fee_responsible", parse=as_bool),
    Field("is_emergency_contact", parse=as_bool),
)


class FamilyLoader:
    """Stage handler for family rows. Hashes each distinct password once."""

    def __init__(self, default_password: str = DEFAULT_PASSWORD):
        self.default_password = default_password
        self._hashes: Dict[str, str] = {}

    def password_hash(self, plain: str) -> str:
        if plain not in self._hashes:
            self._hashes[plain] = generate_password_hash(plain)
        return self._hashes[plain]

    def _account(self, ctx: StageContext, school_id: int, username: str, role: str, values: dict, pw_hash: str) -> int:
        values = {k: v for k, v in values.items() if v is not None}
        values.update({"role": role, "school_id": school_id})
        return ctx.resolver.resolve(
            StaffUser,
            {"username": username},
            values,
            defaults={"password_hash": pw_hash, "is_active": True},
            insert_only=("school_id", "password_hash"),
        )

    def __call__(self, ctx: StageContext, row: SourceRow):
        student = extract(row, FAMILY_STUDENT_FIELDS)
        link = extract(row, FLAG_FIELDS)
        code = row.school_code
        school_id = ctx.school_id(row)
        parent = extract(row, PARENT_FIELDS)
        phone, parent_name = parent["phone"], parent["full_name"]
        pw_hash = self.password_hash(row.get("default_password") or self.default_password)

        parent_user_id = self._account(
            ctx,
            school_id,
            row.get("parent_username") or f"P_{code}_{phone}",
            "PARENT",
            {"full_name": parent_name, "phone": phone, "email": row.get("parent_email")},
            pw_hash,
        )
        parent_id = upsert_parent(ctx, row, extra={"user_id": parent_user_id})

        admission = student["admission_number"]
        student["user_id"] = self._account(
            ctx,
            school_id,
            row.get("student_username") or f"S_{code}_{admission}",
            "STUDENT",
            {"full_name": student["full_name"], "phone": row.get("student_phone"), "email": row.get("student_email")},
            pw_hash,
        )
        student_id = store_student(ctx, row, student)

        rel_type = link.pop("relationship_type", "FATHER")
        flags = {
            "is_primary_contact": link.get("is_primary_contact", False),
            "is_fee_responsible": link.get("is_fee_responsible", False),
            "is_emergency_contact": link.get("is_emergency_contact", False),
        }
        link_parent_student(ctx, row, parent_id, student_id, rel_type, flags)
        return (row.sheet, row.line)


def import_families(
    rows: Iterable[SourceRow],
    engine,
    config: Optional[DerivedConfig] = None,
    default_password: str = DEFAULT_PASSWORD,
) -> dict:
    rows = list(rows)
    report = ReconciliationReport(total_records=len(rows))
    groups, unprocessable = group_rows(rows, ("families",))
    for row in unprocessable:
        report.unprocessable(row)

    stage = Stage("families", FamilyLoader(default_password), Policy.ROW_ISOLATED)
    IsolationController(engine, [stage], config).run(groups, report)

    success = report.counts.get("families", 0)
    logger.info("Family upload: %d of %d row(s) imported", success, len(rows))
    result = {
        "total_rows": len(rows),
        "success_rows": success,
        "failed_rows": len(rows) - success,
        "errors": [{"row": e.get("row"), "error": e["error"]} for e in report.errors],
    }
    if report.warnings:
        result["warnings"] = list(report.warnings)
    return result
