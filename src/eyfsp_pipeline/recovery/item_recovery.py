"""
EYFSP Item Recovery and Validation

Converts raw EYFSP item responses into binary indicators, recovers missing
scale, area-of-learning and overall totals from the level below, and counts
disagreements between reported and recomputed totals.

Recovery runs bottom-up:
    items -> sub-scale totals -> domain totals -> overall total

At every level the reported total wins when it is a valid integer token.
A missing total is recomputed only when every input at the level below is
present. Mismatches are diagnostics and never change a reported value.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


ITEMS_PER_SCALE = 9
OVERALL_COLUMN = 'score_eyfsp_overall'

DEFAULT_TRUE_TOKENS = frozenset({'true', 't', 'yes', 'y', '1'})
DEFAULT_FALSE_TOKENS = frozenset({'false', 'f', 'no', 'n', '0'})

DEFAULT_DOMAINS = {
    'psed': ['att', 'soc', 'emo'],
    'cll': ['lang', 'link', 'read', 'write'],
    'psrn': ['num', 'cal', 'ssm'],
    'kuw': ['kuw'],
    'pd': ['phys'],
    'cd': ['crea'],
}

_INTEGER_TOKEN = re.compile(r'[0-9]+')


@dataclass(frozen=True)
class Domain:
    """One EYFSP area of learning and its sub-scales."""
    name: str
    scales: Tuple[str, ...]
    items_per_scale: int = ITEMS_PER_SCALE

    @property
    def total_column(self) -> str:
        return f'score_{self.name}'

    @property
    def max_score(self) -> int:
        return self.items_per_scale * len(self.scales)


def domains_from_config(config: Optional[Dict] = None) -> List[Domain]:
    """
    Build the domain list from the ``eyfsp`` config block

    Args:
        config: ``eyfsp`` section of the pipeline config (optional)

    Returns:
        List of Domain objects in configured order
    """
    config = config or {}
    n_items = int(config.get('items_per_scale', ITEMS_PER_SCALE))
    spec = config.get('domains') or DEFAULT_DOMAINS

    domains = [Domain(name, tuple(scales), n_items) for name, scales in spec.items()]

    seen = set()
    for domain in domains:
        if not domain.scales:
            raise ValueError(f"Domain '{domain.name}' has no sub-scales")
        for scale in domain.scales:
            if scale in seen:
                raise ValueError(f"Sub-scale '{scale}' assigned to more than one domain")
            seen.add(scale)

    return domains


def item_columns(scale: str, items_per_scale: int = ITEMS_PER_SCALE) -> List[str]:
    """Item column names for a sub-scale, e.g. write1 ... write9"""
    return [f'{scale}{k}' for k in range(1, items_per_scale + 1)]


def scale_column(scale: str) -> str:
    return f'score_{scale}'


def overall_max(domains: Iterable[Domain]) -> int:
    return sum(d.max_score for d in domains)


# =============================================================================
# TOKEN PARSING
# =============================================================================

def _is_missing(value) -> bool:
    if value is None or value is pd.NA:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_item(value, true_tokens=DEFAULT_TRUE_TOKENS, false_tokens=DEFAULT_FALSE_TOKENS):
    """
    Map a raw item response to 1, 0 or missing

    Strings are compared case-insensitively against the token sets. Numeric
    0 and 1 map to themselves so cleaned output parses to itself.

    Examples:
        >>> parse_item('TRUE')
        1
        >>> parse_item(' no ')
        0
        >>> parse_item('maybe') is pd.NA
        True
    """
    if _is_missing(value):
        return pd.NA

    if isinstance(value, (bool, np.bool_)):
        return int(value)

    if isinstance(value, (int, float, np.integer, np.floating)):
        if value == 1:
            return 1
        if value == 0:
            return 0
        return pd.NA

    token = str(value).strip().lower()
    if token in true_tokens:
        return 1
    if token in false_tokens:
        return 0
    return pd.NA


def parse_total(value, max_value: int):
    """
    Accept a reported total only if it is an exact integer within [0, max_value]

    Strings must be bare digit tokens: '7' is accepted, while '7.0', '-1',
    '+7' and '7a' are rejected. Numbers must be integral.

    Examples:
        >>> parse_total('7', 9)
        7
        >>> parse_total('10', 9) is pd.NA
        True
    """
    if _is_missing(value) or isinstance(value, (bool, np.bool_)):
        return pd.NA

    if isinstance(value, (int, np.integer)):
        number = int(value)
    elif isinstance(value, (float, np.floating)):
        if not float(value).is_integer():
            return pd.NA
        number = int(value)
    else:
        token = str(value).strip()
        if not _INTEGER_TOKEN.fullmatch(token):
            return pd.NA
        number = int(token)

    if 0 <= number <= max_value:
        return number
    return pd.NA


def _is_blank(value) -> bool:
    return _is_missing(value) or (isinstance(value, str) and not value.strip())


def parse_items(series: pd.Series, true_tokens=DEFAULT_TRUE_TOKENS,
                false_tokens=DEFAULT_FALSE_TOKENS) -> Tuple[pd.Series, int]:
    """
    Parse an item column

    Returns:
        (Int64 series of 0/1/<NA>, number of non-blank tokens rejected)
    """
    parsed = series.map(lambda v: parse_item(v, true_tokens, false_tokens)).astype('Int64')
    rejected = int((parsed.isna() & ~series.map(_is_blank)).sum())
    return parsed, rejected


def parse_totals(series: pd.Series, max_value: int) -> Tuple[pd.Series, int]:
    """
    Parse a reported-total column

    Returns:
        (Int64 series, number of non-blank tokens rejected)
    """
    parsed = series.map(lambda v: parse_total(v, max_value)).astype('Int64')
    rejected = int((parsed.isna() & ~series.map(_is_blank)).sum())
    return parsed, rejected


# =============================================================================
# RECOVERY
# =============================================================================

@dataclass
class LevelStats:
    """Recovery diagnostics for one total column"""
    target: str
    level: str
    max_value: int
    n_reported: int = 0
    n_recovered: int = 0
    n_missing: int = 0
    n_checked: int = 0
    n_mismatch: int = 0
    n_rejected: int = 0


def recover_total(reported: pd.Series, inputs: pd.DataFrame, max_value: int,
                  level: str = 'scale') -> Tuple[pd.Series, pd.Series, LevelStats]:
    """
    Apply the recovery rule to one total

    Args:
        reported: Reported total column, raw tokens or already parsed
        inputs: Parsed values at the level below, one column per input
        max_value: Largest valid total
        level: Hierarchy level recorded in the stats ('scale', 'domain', 'overall')

    Returns:
        (recovered total, mismatch flag, LevelStats)

        The mismatch flag is True/False only where the reported total and
        all inputs are present, and <NA> elsewhere.
    """
    parsed, rejected = parse_totals(reported, max_value)

    complete = inputs.notna().all(axis=1)
    computed = inputs.astype('Int64').sum(axis=1, skipna=True).astype('Int64')
    computed = computed.mask(~complete)

    total = parsed.where(parsed.notna(), computed).astype('Int64')

    mismatch = pd.Series(pd.NA, index=parsed.index, dtype='boolean')
    checked = complete & parsed.notna()
    mismatch[checked] = (parsed[checked] != computed[checked]).astype(bool)

    stats = LevelStats(
        target=str(reported.name),
        level=level,
        max_value=max_value,
        n_reported=int(parsed.notna().sum()),
        n_recovered=int((parsed.isna() & total.notna()).sum()),
        n_missing=int(total.isna().sum()),
        n_checked=int(mismatch.notna().sum()),
        n_mismatch=int(mismatch.fillna(False).sum()),
        n_rejected=rejected,
    )
    return total, mismatch, stats


@dataclass
class RecoveryReport:
    levels: List[LevelStats] = field(default_factory=list)
    n_rejected_items: int = 0
    n_rows: int = 0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([vars(s) for s in self.levels])

    @property
    def total_mismatches(self) -> int:
        return sum(s.n_mismatch for s in self.levels)

    def get(self, target: str) -> LevelStats:
        for stats in self.levels:
            if stats.target == target:
                return stats
        raise KeyError(target)

    def log_summary(self):
        logger.info("\n" + "=" * 60)
        logger.info("EYFSP RECOVERY SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Pupils: {self.n_rows:,}")
        logger.info(f"Rejected item tokens: {self.n_rejected_items:,}")
        for s in self.levels:
            logger.info(
                f"  {s.target:<22} reported={s.n_reported:>7,} recovered={s.n_recovered:>6,} "
                f"missing={s.n_missing:>6,} mismatches={s.n_mismatch:>5,} rejected={s.n_rejected:>4,}"
            )
        if self.total_mismatches:
            logger.warning(f"{self.total_mismatches:,} reported totals disagree with recomputed sums")


@dataclass
class RecoveryResult:
    table: pd.DataFrame
    report: RecoveryReport


def _column_or_missing(df: pd.DataFrame, column: str) -> pd.Series:
    if column in df.columns:
        return df[column]
    return pd.Series(pd.NA, index=df.index, dtype='object', name=column)


def _recover_level(df: pd.DataFrame, out: Dict[str, pd.Series], target: str, flag: str,
                   level: str, inputs: pd.DataFrame, max_value: int) -> LevelStats:
    """Recover one total into ``out`` and store its flag as ``mismatch_{flag}``"""
    total, mismatch, stats = recover_total(_column_or_missing(df, target), inputs, max_value, level)

    out[target] = total
    out[f'mismatch_{flag}'] = mismatch
    return stats


def recover_assessment(
    raw: pd.DataFrame,
    domains: Optional[List[Domain]] = None,
    true_tokens: Iterable[str] = DEFAULT_TRUE_TOKENS,
    false_tokens: Iterable[str] = DEFAULT_FALSE_TOKENS,
    overall_column: str = OVERALL_COLUMN,
) -> RecoveryResult:
    """
    Clean an EYFSP extract and recover missing totals

    Args:
        raw: Raw extract with item columns ({scale}{k}) and reported totals
            (score_{scale}, score_{domain}, overall_column). Any other
            columns are passed through unchanged.
        domains: Domain definitions (defaults to the six EYFSP areas)
        true_tokens: Affirmative item tokens (case-insensitive)
        false_tokens: Negative item tokens (case-insensitive)
        overall_column: Name of the overall total

    Returns:
        RecoveryResult with the cleaned table and diagnostics. The input
        frame is not modified.
    """
    domains = domains or domains_from_config()
    true_tokens = frozenset(t.lower() for t in true_tokens)
    false_tokens = frozenset(t.lower() for t in false_tokens)

    report = RecoveryReport(n_rows=len(raw))
    out: Dict[str, pd.Series] = {}
    missing_counts: Dict[str, pd.Series] = {}

    # Items -> sub-scale totals
    for domain in domains:
        for scale in domain.scales:
            cols = item_columns(scale, domain.items_per_scale)
            absent = [c for c in cols if c not in raw.columns]
            if absent:
                logger.warning(f"{scale}: {len(absent)} item columns absent, treated as missing")

            for col in cols:
                parsed, rejected = parse_items(_column_or_missing(raw, col), true_tokens, false_tokens)
                out[col] = parsed
                report.n_rejected_items += rejected

            items = pd.DataFrame({c: out[c] for c in cols}, index=raw.index)
            missing_counts[scale] = items.isna().sum(axis=1).astype('int64')

            report.levels.append(_recover_level(
                raw, out, scale_column(scale), scale, 'scale', items, domain.items_per_scale
            ))

    # Sub-scale totals -> domain totals
    for domain in domains:
        inputs = pd.DataFrame(
            {scale_column(s): out[scale_column(s)] for s in domain.scales}, index=raw.index
        )
        report.levels.append(_recover_level(
            raw, out, domain.total_column, f'domain_{domain.name}', 'domain', inputs, domain.max_score
        ))

    # Domain totals -> overall total
    inputs = pd.DataFrame({d.total_column: out[d.total_column] for d in domains}, index=raw.index)
    report.levels.append(_recover_level(
        raw, out, overall_column, 'overall', 'overall', inputs, overall_max(domains)
    ))

    for scale, counts in missing_counts.items():
        out[f'n_missing_items_{scale}'] = counts
    out['n_missing_items'] = sum(missing_counts.values())

    passthrough = raw.drop(columns=[c for c in out if c in raw.columns])
    table = pd.concat([passthrough, pd.DataFrame(out, index=raw.index)], axis=1)

    return RecoveryResult(table=table, report=report)


def select_nonzero_overall(table: pd.DataFrame, overall_column: str = OVERALL_COLUMN) -> pd.Series:
    """Mask of pupils with a present, non-zero overall EYFSP score"""
    overall = table[overall_column]
    return (overall.notna() & (overall != 0)).fillna(False).astype(bool)
