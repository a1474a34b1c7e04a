from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    AcademicYear,
    Branch,
    FeeStructure,
    Parent,
    School,
    SchoolClass,
    Section,
    StaffUser,
    Student,
)
from reconciliation import (
    FAMILY_REQUIRED_COLUMNS,
    UNIFIED_REQUIRED_COLUMNS,
    DerivedConfig,
    ValidationError,
    import_families,
    reconcile_table,
    reconcile_unified,
    reconcile_workbook,
)
from reconciliation.ingest import UploadError, check_filename, is_workbook, read_rows, read_workbook
from reconciliation.rows import missing_columns

setup_bp = Blueprint("setup", __name__, url_prefix="/setup")


def _error(message: str, status: int = 400, **extra):
    payload = {"success": False, "message": message}
    payload.update(extra)
    return jsonify(payload), status


def _uploaded():
    """Return ``(data, filename)`` for the multipart ``file`` field, or raise UploadError."""
    upload = request.files.get("file")
    if not upload or not upload.filename:
        raise UploadError("Please upload a CSV or XLSX file in the 'file' field.")
    check_filename(upload.filename)
    data = upload.read()
    if not data:
        raise UploadError("The uploaded file is empty.")
    return data, upload.filename


def _columns(rows) -> list:
    seen = []
    for row in rows:
        for col in row.data:
            if col not in seen:
                seen.append(col)
    return seen


def _derived_config() -> DerivedConfig:
    return DerivedConfig.from_mapping(current_app.config)


def _partial(summary: dict):
    return jsonify(summary), (207 if summary.get("errors") else 200)


@setup_bp.route("/unified", methods=["POST"])
def unified_setup():
    try:
        data, filename = _uploaded()
        rows = read_rows(data, filename)
    except UploadError as exc:
        return _error(str(exc))
    if not rows:
        return _error("The file has no data rows.")

    current_app.logger.info("Unified setup upload %s: %d row(s)", filename, len(rows))
    summary = reconcile_unified(rows, db.engine, _derived_config())
    return _partial(summary)


@setup_bp.route("/validate", methods=["POST"])
def validate_upload():
    """Header and school-code check without touching the store."""
    mode = (request.args.get("mode") or request.form.get("mode") or "unified").lower()
    required = FAMILY_REQUIRED_COLUMNS if mode == "families" else UNIFIED_REQUIRED_COLUMNS
    try:
        data, filename = _uploaded()
        rows = read_rows(data, filename)
    except UploadError as exc:
        return _error(str(exc))

    missing = missing_columns(_columns(rows), required)
    schools = sorted({r.school_code for r in rows if r.school_code})
    no_school = [r.line for r in rows if not r.school_code]
    return jsonify({
        "success": True,
        "valid": bool(rows) and not missing,
        "mode": mode,
        "total_rows": len(rows),
        "missing_columns": missing,
        "schools": schools,
        "rows_without_school": no_school,
    })


@setup_bp.route("/migrate", methods=["POST"])
def migrate_upload():
    table = (request.args.get("table") or request.form.get("table") or "").strip().lower() or None
    try:
        data, filename = _uploaded()
        if table is None:
            if not is_workbook(data, filename):
                return _error("Specify ?table=<name> for CSV uploads.")
            sheets = read_workbook(data)
            summary = reconcile_workbook(sheets, db.engine, _derived_config())
        else:
            rows = read_rows(data, filename)
            summary = reconcile_table(rows, table, db.engine, _derived_config())
    except UploadError as exc:
        return _error(str(exc))
    except ValidationError as exc:
        return _error(str(exc))

    current_app.logger.info("Migration upload %s (%s): %s", filename, table or "workbook", summary)
    return _partial(summary)


@setup_bp.route("/families", methods=["POST"])
def families_upload():
    try:
        data, filename = _uploaded()
        rows = read_rows(data, filename)
    except UploadError as exc:
        return _error(str(exc))
    if not rows:
        return _error("The file has no data rows.")

    missing = missing_columns(_columns(rows), FAMILY_REQUIRED_COLUMNS)
    if missing:
        return _error("Missing required columns", missing_columns=missing)

    result = import_families(
        rows,
        db.engine,
        _derived_config(),
        default_password=current_app.config.get("BULK_DEFAULT_PASSWORD") or "Password@123",
    )
    result["status"] = "completed"
    result["headers"] = _columns(rows)
    return _partial(result)


@setup_bp.route("/hierarchy/<int:school_id>", methods=["GET"])
def school_hierarchy(school_id: int):
    school = db.session.get(School, school_id)
    if school is None:
        return _error("School not found", 404)

    branches = Branch.query.filter_by(school_id=school_id).order_by(Branch.branch_code).all()
    classes = SchoolClass.query.filter_by(school_id=school_id).order_by(SchoolClass.class_order).all()
    years = AcademicYear.query.filter_by(school_id=school_id).order_by(AcademicYear.start_date).all()
    sections = Section.query.filter_by(school_id=school_id).order_by(Section.section_name).all()
    fees = FeeStructure.query.filter_by(school_id=school_id).all()

    return jsonify({
        "success": True,
        "school": {
            "id": school.id,
            "school_code": school.school_code,
            "name": school.name,
            "city": school.city,
            "state": school.state,
            "board_type": school.board_type,
        },
        "branches": [
            {"id": b.id, "branch_code": b.branch_code, "branch_name": b.branch_name, "is_main_branch": b.is_main_branch}
            for b in branches
        ],
        "classes": [
            {
                "id": c.id,
                "class_name": c.class_name,
                "class_order": c.class_order,
                "class_category": c.class_category,
                "sections": [
                    {"id": s.id, "section_name": s.section_name, "year_id": s.year_id, "branch_id": s.branch_id}
                    for s in sections
                    if s.class_id == c.id
                ],
            }
            for c in classes
        ],
        "academic_years": [
            {
                "id": y.id,
                "year_name": y.year_name,
                "start_date": y.start_date.isoformat(),
                "end_date": y.end_date.isoformat(),
                "is_current": y.is_current,
            }
            for y in years
        ],
        "fee_structures": [
            {
                "id": f.id,
                "structure_name": f.structure_name,
                "class_id": f.class_id,
                "year_id": f.year_id,
                "total_annual_fee": float(f.total_annual_fee),
                "installment_plan": f.installment_plan,
            }
            for f in fees
        ],
        "summary": {
            "branches": len(branches),
            "classes": len(classes),
            "academic_years": len(years),
            "sections": len(sections),
            "fee_structures": len(fees),
        },
    })


def _counts_by_school(model) -> dict:
    rows = db.session.execute(
        db.select(model.school_id, func.count(model.id)).group_by(model.school_id)
    ).all()
    return {school_id: count for school_id, count in rows}


@setup_bp.route("/summary", methods=["GET"])
def setup_summary():
    per_model = {
        "branches": _counts_by_school(Branch),
        "classes": _counts_by_school(SchoolClass),
        "academic_years": _counts_by_school(AcademicYear),
        "sections": _counts_by_school(Section),
        "fee_structures": _counts_by_school(FeeStructure),
        "students": _counts_by_school(Student),
    }
    schools = []
    for school in School.query.order_by(School.school_code).all():
        entry = {"id": school.id, "school_code": school.school_code, "name": school.name}
        for name, counts in per_model.items():
            entry[name] = counts.get(school.id, 0)
        schools.append(entry)
    return jsonify({"success": True, "total_schools": len(schools), "schools": schools})


@setup_bp.route("/health", methods=["GET"])
def health():
    try:
        db.session.execute(db.text("SELECT 1"))
        counts = {
            model.__tablename__: db.session.scalar(db.select(func.count(model.id)))
            for model in (School, Branch, SchoolClass, AcademicYear, Section, FeeStructure, Parent, Student, StaffUser)
        }
    except SQLAlchemyError as exc:
        current_app.logger.exception("Health check failed")
        return jsonify({"status": "unhealthy", "database": "unreachable", "error": str(exc)}), 503
    return jsonify({"status": "healthy", "database": "connected", "counts": counts})
