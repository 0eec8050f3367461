"""EYFSP item recovery and total validation."""

from .item_recovery import (
    Domain,
    RecoveryReport,
    RecoveryResult,
    domains_from_config,
    item_columns,
    parse_item,
    parse_total,
    recover_assessment,
    recover_total,
)

__all__ = [
    "Domain",
    "RecoveryReport",
    "RecoveryResult",
    "domains_from_config",
    "item_columns",
    "parse_item",
    "parse_total",
    "recover_assessment",
    "recover_total",
]
