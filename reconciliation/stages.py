"""Per-entity stage handlers and the loop that applies a stage's failure policy.

A handler takes ``(ctx, row)``, writes through the resolver and returns the
natural key it reconciled (or None when the row had nothing for this stage).
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import Session

from models import (
    AcademicYear,
    Branch,
    FeePayment,
    FeeStructure,
    Parent,
    ParentStudentRelationship,
    School,
    SchoolClass,
    Section,
    StaffUser,
    Student,
    StudentEnrollment,
    StudentFeeAssignment,
    TeacherAssignment,
)

from .derived import DerivedConfig, fee_components, installment_plan, json_ready, normalize_category
from .errors import InvalidInput, OptionalSubsystemFailure, ReconciliationError, ValidationError
from .resolver import NaturalKeyResolver
from .rows import (
    Field,
    SourceRow,
    as_bool,
    as_date,
    as_decimal,
    as_flag,
    as_gender,
    as_int,
    as_subjects,
    as_upper,
    extract,
)

logger = logging.getLogger(__name__)

RELATIONSHIP_TYPES = ("FATHER", "MOTHER", "GUARDIAN", "UNCLE", "AUNT", "GRANDFATHER", "GRANDMOTHER")


class Policy(enum.Enum):
    # Failure escapes and rolls the whole group back
    MANDATORY = "mandatory"
    # Per-row savepoint; failure becomes a warning
    OPTIONAL = "optional"
    # Per-row savepoint; failure becomes a row error
    ROW_ISOLATED = "row_isolated"


class StageContext:
    def __init__(self, session: Session, resolver: NaturalKeyResolver, config: DerivedConfig, group):
        self.session = session
        self.resolver = resolver
        self.config = config
        self.group = group

    def school_id(self, row: SourceRow) -> int:
        return self.resolver.require(School, school_code=row.school_code)

    def warn(self, row: SourceRow, message: str) -> None:
        self.group.warn(row, message)

    def fail(self, row: SourceRow, message: str) -> None:
        self.group.fail(row, message)


@dataclass(frozen=True)
class Stage:
    entity: str
    handler: Callable[[StageContext, SourceRow], Optional[tuple]]
    policy: Policy = Policy.MANDATORY
    # Rows carrying none of these columns are skipped without comment
    trigger: Tuple[str, ...] = ()


def _pop_key(values: Dict[str, Any], *names: str) -> Dict[str, Any]:
    return {n: values.pop(n) for n in names}


# --------------------------
# Hierarchy: School → Branch → Class → Year → Section → Fee Structure
# --------------------------

SCHOOL_FIELDS = (
    Field("school_code", required=True),
    Field("name", ("school_name",), required=True),
    Field("address_line1", ("school_address_line1", "address_line1")),
    Field("address_line2", ("school_address_line2", "address_line2")),
    Field("city", ("school_city", "city")),
    Field("state", ("school_state", "state")),
    Field("pincode", ("school_pincode", "pincode")),
    Field("phone", ("school_phone", "phone")),
    Field("email", ("school_email", "email")),
    Field("website", ("school_website", "website")),
    Field("board_type", parse=as_upper),
    Field("academic_session_start_month", parse=as_int),
    Field("grading_system", parse=as_upper),
    Field("affiliation_number"),
    Field("recognition_status", parse=as_upper),
    Field("rte_compliance", parse=as_flag),
    Field("is_active", ("school_is_active",), parse=as_flag),
)
SCHOOL_DEFAULTS = {
    "board_type": "CBSE",
    "academic_session_start_month": 4,
    "grading_system": "PERCENTAGE",
    "recognition_status": "RECOGNIZED",
    "rte_compliance": True,
    "is_active": True,
}


def upsert_school(ctx: StageContext, row: SourceRow):
    values = extract(row, SCHOOL_FIELDS)
    key = _pop_key(values, "school_code")
    ctx.resolver.resolve(School, key, values, defaults=SCHOOL_DEFAULTS)
    return (key["school_code"],)


BRANCH_FIELDS = (
    Field("branch_code", required=True),
    Field("branch_name"),
    Field("address_line1", ("branch_address_line1", "address_line1")),
    Field("city", ("branch_city", "city")),
    Field("state", ("branch_state", "state")),
    Field("pincode", ("branch_pincode", "school_pincode", "pincode")),
    Field("phone", ("branch_phone", "phone")),
    Field("is_main_branch", parse=as_bool),
    Field("max_students", ("branch_max_students", "max_students"), parse=as_int),
    Field("current_students", ("branch_current_students", "current_students"), parse=as_int),
    Field("is_active", ("branch_is_active",), parse=as_flag),
)


def upsert_branch(ctx: StageContext, row: SourceRow):
    values = extract(row, BRANCH_FIELDS)
    school_id = ctx.school_id(row)
    code = values.pop("branch_code")
    defaults = {
        "branch_name": f"Branch {code}",
        "is_main_branch": False,
        "max_students": 1000,
        "current_students": 0,
        "is_active": True,
    }
    ctx.resolver.resolve(Branch, {"school_id": school_id, "branch_code": code}, values, defaults=defaults)
    return (school_id, code)


CLASS_FIELDS = (
    Field("class_name", required=True),
    Field("class_order", parse=as_int),
    Field("class_category"),
    Field("subjects", parse=as_subjects),
    Field("passing_percentage", parse=as_decimal),
    Field("max_students_per_section", parse=as_int),
    Field("is_active", ("class_is_active",), parse=as_flag),
)
CLASS_DEFAULTS = {
    "class_order": 0,
    "class_category": "PRIMARY",
    "subjects": [],
    "passing_percentage": 35,
    "max_students_per_section": 40,
    "is_active": True,
}


def upsert_class(ctx: StageContext, row: SourceRow):
    values = extract(row, CLASS_FIELDS)
    school_id = ctx.school_id(row)
    name = values.pop("class_name")
    if "class_category" in values:
        category, warning = normalize_category(values["class_category"], ctx.config)
        if warning:
            ctx.warn(row, f"{warning} for class {name}")
        values["class_category"] = category
    ctx.resolver.resolve(SchoolClass, {"school_id": school_id, "class_name": name}, values, defaults=CLASS_DEFAULTS)
    return (school_id, name)


YEAR_FIELDS = (
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("start_date", ("year_start_date", "start_date"), parse=as_date, required=True),
    Field("end_date", ("year_end_date", "end_date"), parse=as_date, required=True),
    Field("is_current", ("is_current_year", "is_current"), parse=as_bool),
)


def upsert_academic_year(ctx: StageContext, row: SourceRow):
    values = extract(row, YEAR_FIELDS)
    if values["end_date"] < values["start_date"]:
        raise InvalidInput(f"year {values['year_name']} ends before it starts")
    school_id = ctx.school_id(row)
    name = values.pop("year_name")
    ctx.resolver.resolve(
        AcademicYear, {"school_id": school_id, "year_name": name}, values, defaults={"is_current": False}
    )
    return (school_id, name)


def _class_and_year(ctx: StageContext, school_id: int, values: Dict[str, Any]) -> Tuple[int, int]:
    class_id = ctx.resolver.require(SchoolClass, "Class", school_id=school_id, class_name=values.pop("class_name"))
    year_id = ctx.resolver.require(AcademicYear, "Academic year", school_id=school_id, year_name=values.pop("year_name"))
    return class_id, year_id


def _branch(ctx: StageContext, row: SourceRow, school_id: int, code: Optional[str]) -> Optional[int]:
    branch_id = ctx.resolver.optional(Branch, school_id=school_id, branch_code=code)
    if code is not None and branch_id is None:
        ctx.warn(row, f"Branch {code} not found; stored without a branch")
    return branch_id


SECTION_FIELDS = (
    Field("section_name", required=True),
    Field("class_name", required=True),
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("branch_code"),
    Field("max_students", ("section_max_students", "max_students_per_section", "max_students"), parse=as_int),
    Field("current_students", ("section_current_students", "current_students"), parse=as_int),
    Field("is_active", ("section_is_active",), parse=as_flag),
)


def upsert_section(ctx: StageContext, row: SourceRow):
    values = extract(row, SECTION_FIELDS)
    school_id = ctx.school_id(row)
    class_id, year_id = _class_and_year(ctx, school_id, values)
    branch_id = _branch(ctx, row, school_id, values.pop("branch_code", None))
    if branch_id is not None:
        values["branch_id"] = branch_id
    key = {"school_id": school_id, "class_id": class_id, "year_id": year_id, "section_name": values.pop("section_name")}
    defaults = {"max_students": 40, "current_students": 0, "is_active": True}
    ctx.resolver.resolve(Section, key, values, defaults=defaults)
    return tuple(key.values())


FEE_STRUCTURE_FIELDS = (
    Field("class_name", required=True),
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("structure_name", ("fee_structure_name", "structure_name")),
    Field("total_annual_fee", parse=as_decimal, required=True),
    Field("effective_from", ("fee_effective_from", "effective_from", "year_start_date"), parse=as_date),
    Field("effective_to", ("fee_effective_to", "effective_to", "year_end_date"), parse=as_date),
    Field("is_active", ("fee_is_active",), parse=as_flag),
)


def _explicit_due_dates(row: SourceRow, count: int) -> List[Optional[date]]:
    dates = []
    for n in range(1, count + 1):
        raw = row.get(f"installment_{n}_due_date")
        dates.append(as_date(raw, f"installment_{n}_due_date") if raw else None)
    return dates


def upsert_fee_structure(ctx: StageContext, row: SourceRow):
    values = extract(row, FEE_STRUCTURE_FIELDS)
    class_name, year_name = values["class_name"], values["year_name"]
    name = values.pop("structure_name", None) or f"{class_name}-{year_name}-Fee"
    school_id = ctx.school_id(row)
    class_id, year_id = _class_and_year(ctx, school_id, values)

    total = values["total_annual_fee"]
    year_start = ctx.session.execute(
        sa.select(AcademicYear.start_date).where(AcademicYear.id == year_id)
    ).scalar_one()
    components = fee_components(total, ctx.config)
    plan = installment_plan(total, year_start, ctx.config, _explicit_due_dates(row, ctx.config.installment_count))
    values.update(components)
    values["fee_components"] = json_ready(components)
    values["installment_plan"] = json_ready(plan)

    key = {"school_id": school_id, "class_id": class_id, "year_id": year_id, "structure_name": name}
    ctx.resolver.resolve(FeeStructure, key, values, defaults={"effective_from": year_start, "is_active": True})
    return tuple(key.values())


# --------------------------
# Cross-cutting: families, enrollment, fees, staff
# --------------------------

PARENT_FIELDS = (
    Field("phone", ("parent_phone", "phone"), required=True),
    Field("full_name", ("parent_name", "parent_full_name", "full_name"), required=True),
    Field("whatsapp_number", ("whatsapp_number", "whatsapp", "parent_whatsapp_number")),
    Field("email", ("email", "parent_email")),
    Field("occupation", ("occupation", "parent_occupation")),
    Field("annual_income_range", ("annual_income_range", "parent_annual_income_range")),
    Field("education_level", ("education_level", "parent_education_level")),
    Field("address_line1", ("address_line1", "parent_address_line")),
    Field("address_line2"),
    Field("city", ("city", "parent_city")),
    Field("state", ("state", "parent_state")),
    Field("pincode", ("pincode", "parent_pincode")),
)


def upsert_parent(ctx: StageContext, row: SourceRow, extra: Optional[Dict[str, Any]] = None) -> int:
    values = extract(row, PARENT_FIELDS)
    values.update(extra or {})
    values["school_id"] = ctx.school_id(row)
    key = _pop_key(values, "phone")
    # A parent keeps the school that first registered them
    return ctx.resolver.resolve(Parent, key, values, defaults={"is_active": True}, insert_only=("school_id",))


def parent_stage(ctx: StageContext, row: SourceRow):
    upsert_parent(ctx, row)
    return (row.get("parent_phone", "phone"),)


STUDENT_FIELDS = (
    Field("admission_number", ("admission_number", "admission_no"), required=True),
    Field("full_name", ("student_name", "full_name"), required=True),
    Field("branch_code"),
    Field("roll_number", ("roll_number", "roll_no")),
    Field("date_of_birth", ("date_of_birth", "dob"), parse=as_date),
    Field("gender", parse=as_gender),
    Field("blood_group"),
    Field("aadhar_number", ("aadhar_number", "aadhar", "aadhaar")),
    Field("admission_date", parse=as_date),
    Field("admission_class"),
    Field("current_status", ("current_status", "status"), parse=as_upper),
    Field("address_line1"),
    Field("city"),
    Field("state"),
    Field("pincode"),
    Field("medical_conditions"),
    Field("emergency_contact_name", ("emergency_contact_name", "emergency_name")),
    Field("emergency_contact_phone", ("emergency_contact_phone", "emergency_phone")),
)


def store_student(ctx: StageContext, row: SourceRow, values: Dict[str, Any]) -> int:
    """Upsert an already-extracted student record."""
    school_id = ctx.school_id(row)
    branch_id = _branch(ctx, row, school_id, values.pop("branch_code", None))
    if branch_id is not None:
        values["branch_id"] = branch_id
    key = {"school_id": school_id, "admission_number": values.pop("admission_number")}
    defaults = {"admission_date": date.today(), "current_status": "ACTIVE"}
    return ctx.resolver.resolve(Student, key, values, defaults=defaults)


def student_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, STUDENT_FIELDS)
    admission = values["admission_number"]
    store_student(ctx, row, values)
    return (row.school_code, admission)


def _student_id(ctx: StageContext, row: SourceRow, admission_number: str) -> int:
    return ctx.resolver.require(
        Student, school_id=ctx.school_id(row), admission_number=admission_number
    )


def link_parent_student(
    ctx: StageContext,
    row: SourceRow,
    parent_id: int,
    student_id: int,
    relationship_type: str,
    flags: Dict[str, bool],
    update: bool = True,
) -> int:
    if relationship_type not in RELATIONSHIP_TYPES:
        raise InvalidInput(
            f"relationship_type must be one of {', '.join(RELATIONSHIP_TYPES)}, got {relationship_type!r}"
        )
    flags = dict(flags)
    if flags.get("is_primary_contact"):
        other = ctx.session.execute(
            sa.select(ParentStudentRelationship.id).where(
                ParentStudentRelationship.student_id == student_id,
                ParentStudentRelationship.is_primary_contact.is_(True),
                sa.or_(
                    ParentStudentRelationship.parent_id != parent_id,
                    ParentStudentRelationship.relationship_type != relationship_type,
                ),
            )
        ).first()
        if other is not None:
            flags["is_primary_contact"] = False
            ctx.warn(row, "Student already has a primary contact; new link stored as secondary")
    key = {"parent_id": parent_id, "student_id": student_id, "relationship_type": relationship_type}
    if update:
        return ctx.resolver.resolve(ParentStudentRelationship, key, flags)
    return ctx.resolver.resolve(ParentStudentRelationship, key, defaults=flags, update=False)


RELATIONSHIP_FIELDS = (
    Field("admission_number", ("admission_number", "admission_no", "student_admission_number"), required=True),
    Field("parent_phone", required=True),
    Field("relationship_type", parse=as_upper),
    Field("is_primary_contact", parse=as_bool),
    Field("is_fee_responsible", parse=as_bool),
    Field("is_emergency_contact", parse=as_bool),
)


def relationship_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, RELATIONSHIP_FIELDS)
    student_id = _student_id(ctx, row, values.pop("admission_number"))
    parent_id = ctx.resolver.require(Parent, phone=values.pop("parent_phone"))
    rel_type = values.pop("relationship_type", "FATHER")
    flags = {"is_primary_contact": True, "is_fee_responsible": True, "is_emergency_contact": True}
    flags.update(values)
    # Existing links are left untouched on re-upload
    link_parent_student(ctx, row, parent_id, student_id, rel_type, flags, update=False)
    return (parent_id, student_id, rel_type)


ENROLLMENT_FIELDS = (
    Field("admission_number", ("admission_number", "admission_no"), required=True),
    Field("class_name", required=True),
    Field("section_name", required=True),
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("enrollment_date", parse=as_date),
    Field("roll_number_in_section", ("roll_number_in_section", "roll_in_section"), parse=as_int),
    Field("is_active", parse=as_flag),
)


def enrollment_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, ENROLLMENT_FIELDS)
    school_id = ctx.school_id(row)
    student_id = _student_id(ctx, row, values.pop("admission_number"))
    class_id, year_id = _class_and_year(ctx, school_id, values)
    values["section_id"] = ctx.resolver.require(
        Section, school_id=school_id, class_id=class_id, year_id=year_id, section_name=values.pop("section_name")
    )
    key = {"student_id": student_id, "year_id": year_id}
    defaults = {"enrollment_date": date.today(), "is_active": True}
    ctx.resolver.resolve(StudentEnrollment, key, values, defaults=defaults)
    return (student_id, year_id)


FEE_ASSIGNMENT_FIELDS = (
    Field("admission_number", ("admission_number", "admission_no"), required=True),
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("structure_name", ("structure_name", "fee_structure_name"), required=True),
    Field("class_name"),
    Field("total_fee_amount", ("total_fee_amount", "total_fee"), parse=as_decimal),
    Field("concession_amount", ("concession_amount", "concession"), parse=as_decimal),
    Field("concession_reason"),
)


def fee_assignment_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, FEE_ASSIGNMENT_FIELDS)
    school_id = ctx.school_id(row)
    student_id = _student_id(ctx, row, values.pop("admission_number"))
    year_id = ctx.resolver.require(AcademicYear, "Academic year", school_id=school_id, year_name=values.pop("year_name"))
    lookup = {"school_id": school_id, "year_id": year_id, "structure_name": values.pop("structure_name")}
    class_name = values.pop("class_name", None)
    if class_name:
        lookup["class_id"] = ctx.resolver.require(SchoolClass, "Class", school_id=school_id, class_name=class_name)
    structure_id = ctx.resolver.require(FeeStructure, "Fee structure", **lookup)
    values["fee_structure_id"] = structure_id

    structure_total = ctx.session.execute(
        sa.select(FeeStructure.total_annual_fee).where(FeeStructure.id == structure_id)
    ).scalar_one()
    defaults = {"total_fee_amount": structure_total, "concession_amount": 0}
    ctx.resolver.resolve(StudentFeeAssignment, {"student_id": student_id, "year_id": year_id}, values, defaults=defaults)
    return (student_id, year_id)


FEE_PAYMENT_FIELDS = (
    Field("admission_number", ("admission_number", "admission_no"), required=True),
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("installment_number", ("installment_number", "installment_no"), parse=as_int),
    Field("amount_due", parse=as_decimal),
    Field("amount_paid", parse=as_decimal),
    Field("balance_amount", parse=as_decimal),
    Field("due_date", parse=as_date),
    Field("payment_date", parse=as_date),
    Field("payment_mode", parse=as_upper),
    Field("transaction_reference"),
    Field("status", parse=as_upper),
)


def fee_payment_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, FEE_PAYMENT_FIELDS)
    school_id = ctx.school_id(row)
    student_id = _student_id(ctx, row, values.pop("admission_number"))
    year_id = ctx.resolver.require(AcademicYear, "Academic year", school_id=school_id, year_name=values.pop("year_name"))
    assignment_id = ctx.resolver.require(StudentFeeAssignment, "Fee assignment", student_id=student_id, year_id=year_id)
    if "balance_amount" not in values and "amount_due" in values and "amount_paid" in values:
        values["balance_amount"] = max(values["amount_due"] - values["amount_paid"], 0)
    key = {"fee_assignment_id": assignment_id, "installment_number": values.pop("installment_number", 1)}
    values["student_id"] = student_id
    ctx.resolver.resolve(FeePayment, key, values, defaults={"status": "PENDING"}, insert_only=("student_id",))
    return tuple(key.values())


USER_FIELDS = (
    Field("username", required=True),
    Field("email", required=True),
    Field("phone", required=True),
    Field("full_name", ("full_name", "name"), required=True),
    Field("role", parse=as_upper, required=True),
    Field("branch_code"),
    Field("password_hash"),
)


def user_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, USER_FIELDS)
    school_id = ctx.school_id(row)
    branch_id = _branch(ctx, row, school_id, values.pop("branch_code", None))
    if branch_id is not None:
        values["branch_id"] = branch_id
    values["school_id"] = school_id
    key = _pop_key(values, "username")
    ctx.resolver.resolve(
        StaffUser,
        key,
        values,
        defaults={"password_hash": "MIGRATED", "is_active": True},
        insert_only=("school_id", "password_hash"),
    )
    return (key["username"],)


TEACHER_ASSIGNMENT_FIELDS = (
    Field("teacher_username", ("teacher_username", "username"), required=True),
    Field("class_name", required=True),
    Field("section_name", required=True),
    Field("year_name", ("year_name", "academic_year"), required=True),
    Field("is_class_teacher", parse=as_bool),
)


def teacher_assignment_stage(ctx: StageContext, row: SourceRow):
    values = extract(row, TEACHER_ASSIGNMENT_FIELDS)
    school_id = ctx.school_id(row)
    teacher_id = ctx.resolver.require(StaffUser, "Teacher", school_id=school_id, username=values.pop("teacher_username"))
    class_id, year_id = _class_and_year(ctx, school_id, values)
    section_id = ctx.resolver.require(
        Section, school_id=school_id, class_id=class_id, year_id=year_id, section_name=values.pop("section_name")
    )
    key = {"teacher_id": teacher_id, "section_id": section_id, "year_id": year_id}
    defaults = {"is_class_teacher": values.get("is_class_teacher", True)}
    ctx.resolver.resolve(TeacherAssignment, key, defaults=defaults, update=False)
    return tuple(key.values())


# --------------------------
# Stage tables
# --------------------------

HANDLERS: Dict[str, Tuple[Callable, Policy]] = {
    "schools": (upsert_school, Policy.MANDATORY),
    "branches": (upsert_branch, Policy.MANDATORY),
    "classes": (upsert_class, Policy.MANDATORY),
    "academic_years": (upsert_academic_year, Policy.MANDATORY),
    "sections": (upsert_section, Policy.MANDATORY),
    "fee_structures": (upsert_fee_structure, Policy.OPTIONAL),
    "parents": (parent_stage, Policy.ROW_ISOLATED),
    "students": (student_stage, Policy.ROW_ISOLATED),
    "parent_student_relationships": (relationship_stage, Policy.ROW_ISOLATED),
    "student_enrollments": (enrollment_stage, Policy.ROW_ISOLATED),
    "student_fee_assignments": (fee_assignment_stage, Policy.ROW_ISOLATED),
    "fee_payments": (fee_payment_stage, Policy.OPTIONAL),
    "users": (user_stage, Policy.ROW_ISOLATED),
    "teacher_assignments": (teacher_assignment_stage, Policy.ROW_ISOLATED),
}


def stage_for(entity: str, trigger: Sequence[str] = ()) -> Stage:
    handler, policy = HANDLERS[entity]
    return Stage(entity, handler, policy, tuple(trigger))


def _skip_optional(ctx: StageContext, stage: Stage, row: SourceRow, cause: BaseException) -> None:
    failure = OptionalSubsystemFailure(stage.entity, cause)
    logger.warning("%s %s: %s", ctx.group.school_code, row.label(), failure)
    ctx.warn(row, f"{row.label()}: {failure}")


def run_stage(ctx: StageContext, stage: Stage, rows: Sequence[SourceRow]) -> int:
    """Push ``rows`` through one stage, applying its failure policy.

    Returns the number of rows reconciled. Under MANDATORY anything but a
    row-level ValidationError propagates to the caller.
    """
    done = 0
    for row in rows:
        if stage.trigger and not row.has_any(stage.trigger):
            continue

        if stage.policy is Policy.MANDATORY:
            try:
                key = stage.handler(ctx, row)
            except ValidationError as exc:
                ctx.fail(row, f"{stage.entity}: {exc}")
                continue
        else:
            mark = ctx.resolver.mark()
            try:
                with ctx.session.begin_nested():
                    key = stage.handler(ctx, row)
            except ReconciliationError as exc:
                ctx.resolver.rewind(mark)
                if stage.policy is Policy.OPTIONAL:
                    _skip_optional(ctx, stage, row, exc)
                else:
                    ctx.fail(row, f"{stage.entity}: {exc}")
                continue
            except Exception as exc:
                # Best-effort stages never take the group down
                if stage.policy is not Policy.OPTIONAL:
                    raise
                logger.exception("%s %s: unexpected %s failure", ctx.group.school_code, row.label(), stage.entity)
                ctx.resolver.rewind(mark)
                _skip_optional(ctx, stage, row, exc)
                continue

        if key is not None:
            ctx.group.tally(stage.entity, key)
            done += 1
    logger.info("  %s %s: %d row(s)", ctx.group.school_code, stage.entity, done)
    return done
