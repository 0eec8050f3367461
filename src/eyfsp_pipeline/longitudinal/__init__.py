"""Cross-year longitudinal aggregation of school census snapshots."""

from .aggregator import (
    Cohort,
    LongitudinalConfig,
    build_panel,
    derive_school_changes,
    index_by_academic_year,
    resolve_ever_true,
    resolve_first_available,
    resolve_max_over_years,
    to_long,
)

__all__ = [
    "Cohort",
    "LongitudinalConfig",
    "build_panel",
    "derive_school_changes",
    "index_by_academic_year",
    "resolve_ever_true",
    "resolve_first_available",
    "resolve_max_over_years",
    "to_long",
]
