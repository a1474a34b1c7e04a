from .derived import DerivedConfig, fee_components, installment_plan, letter_grade, normalize_category, percentage
from .errors import (
    ForeignKeyViolation,
    InvalidInput,
    OptionalSubsystemFailure,
    ParentNotFound,
    ReconciliationError,
    StoreError,
    UniqueViolation,
    ValidationError,
    classify_store_error,
)
from .families import FAMILY_REQUIRED_COLUMNS, import_families
from .modes import UNIFIED_REQUIRED_COLUMNS, reconcile_table, reconcile_unified, reconcile_workbook
from .rows import SourceRow
