"""
Cross-Year Longitudinal Aggregator

Builds one record per pupil from yearly school census snapshots.

Every snapshot is first normalised into a long table of
(pupil_id, year, field, value) observations. Each resolution rule is then a
filter over a bounded year range followed by a fold:

- time-invariant fields: baseline year first, then the first later year
  with a value
- sibling count: maximum over the sibling years, with fallback years used
  only where that maximum is missing
- ever-true flags: logical OR over the cohort window
- school / LA identifiers: re-indexed to academic years 0-11

The baseline cohort table defines the population. Snapshot rows for any
other pupil are dropped.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from eyfsp_pipeline.recovery.item_recovery import (
    DEFAULT_FALSE_TOKENS,
    DEFAULT_TRUE_TOKENS,
    parse_item,
)

logger = logging.getLogger(__name__)


LONG_COLUMNS = ['year', 'field', 'value']
N_ACADEMIC_YEARS = 12


@dataclass(frozen=True)
class Cohort:
    """
    A group of pupils sharing a reception year

    Attributes:
        cohort_id: Cohort label used in the baseline cohort table
        reception_year: Census year that maps to academic year 0
        baseline_year: Census year time-invariant fields are read from first
        ever_window: Inclusive (first, last) census years for ever-true flags
        school_change_years: Academic years a whose change a-1 -> a is counted
    """
    cohort_id: int
    reception_year: int
    baseline_year: int
    ever_window: Tuple[int, int]
    school_change_years: Tuple[int, ...] = ()

    def academic_year(self, census_year: int) -> int:
        return census_year - self.reception_year


@dataclass
class LongitudinalConfig:
    cohorts: Dict[int, Cohort]
    pupil_id: str = 'pupil_id'
    n_academic_years: int = N_ACADEMIC_YEARS
    strip_suffix_pattern: Optional[str] = None
    field_aliases: Dict[str, str] = field(default_factory=dict)
    derived_flags: Dict[str, Dict] = field(default_factory=dict)
    time_invariant_fields: List[str] = field(default_factory=list)
    ever_true_fields: List[str] = field(default_factory=list)
    year_indexed_fields: List[str] = field(default_factory=list)
    sibling_field: Optional[str] = None
    sibling_years: List[int] = field(default_factory=list)
    sibling_fallback_years: List[int] = field(default_factory=list)
    sen_provision: Dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: Dict, pupil_id: str = 'pupil_id') -> 'LongitudinalConfig':
        """
        Build from the ``longitudinal`` block of the pipeline config

        Raises:
            ValueError: If no cohorts are configured or a window is malformed
        """
        raw_cohorts = config.get('cohorts') or {}
        if not raw_cohorts:
            raise ValueError("longitudinal config defines no cohorts")

        cohorts = {}
        for cohort_id, spec in raw_cohorts.items():
            window = tuple(spec['ever_window'])
            if len(window) != 2 or window[0] > window[1]:
                raise ValueError(f"Cohort {cohort_id}: ever_window must be [first, last], got {window}")
            cohorts[int(cohort_id)] = Cohort(
                cohort_id=int(cohort_id),
                reception_year=int(spec['reception_year']),
                baseline_year=int(spec.get('baseline_year', spec['reception_year'])),
                ever_window=(int(window[0]), int(window[1])),
                school_change_years=tuple(int(a) for a in spec.get('school_change_years', [])),
            )

        return cls(
            cohorts=cohorts,
            pupil_id=pupil_id,
            n_academic_years=int(config.get('n_academic_years', N_ACADEMIC_YEARS)),
            strip_suffix_pattern=config.get('strip_suffix_pattern'),
            field_aliases=dict(config.get('field_aliases') or {}),
            derived_flags=dict(config.get('derived_flags') or {}),
            time_invariant_fields=list(config.get('time_invariant_fields') or []),
            ever_true_fields=list(config.get('ever_true_fields') or []),
            year_indexed_fields=list(config.get('year_indexed_fields') or []),
            sibling_field=config.get('sibling_field'),
            sibling_years=[int(y) for y in config.get('sibling_years') or []],
            sibling_fallback_years=[int(y) for y in config.get('sibling_fallback_years') or []],
            sen_provision=dict(config.get('sen_provision') or {}),
        )


# =============================================================================
# NORMALISATION TO LONG FORM
# =============================================================================

def canonical_column(column: str, aliases: Dict[str, str],
                     strip_suffix_pattern: Optional[str] = None) -> str:
    """
    Map a raw census column name to its canonical field name

    Examples:
        >>> canonical_column('FSMeligible_SPR09', {'FSMeligible': 'fsm'}, r'_SPR\\d{2}$')
        'fsm'
    """
    name = column
    if strip_suffix_pattern:
        name = re.sub(strip_suffix_pattern, '', name)
    return aliases.get(name, name)


def to_long(
    snapshots: Dict[int, pd.DataFrame],
    pupil_id: str = 'pupil_id',
    aliases: Optional[Dict[str, str]] = None,
    strip_suffix_pattern: Optional[str] = None,
) -> pd.DataFrame:
    """
    Stack yearly snapshots into (pupil_id, year, field, value) observations

    Fields missing from a year simply produce no rows for that year. Missing
    and blank values are dropped. If a pupil has several records in one year
    the first non-missing value per field is kept.

    Args:
        snapshots: Mapping of census year to that year's extract
        pupil_id: Identifier column shared by all extracts
        aliases: Raw-to-canonical column name mapping
        strip_suffix_pattern: Regex removed from column names before aliasing

    Returns:
        Long-form DataFrame
    """
    aliases = aliases or {}
    frames = []

    for year in sorted(snapshots):
        df = snapshots[year]
        if pupil_id not in df.columns:
            raise ValueError(f"Census {year} has no '{pupil_id}' column")

        renamed = df.rename(columns=lambda c: c if c == pupil_id
                            else canonical_column(c, aliases, strip_suffix_pattern))

        duplicated = renamed.columns[renamed.columns.duplicated()].unique().tolist()
        if duplicated:
            logger.warning(f"Census {year}: several columns map to {duplicated}, keeping the first")
            renamed = renamed.loc[:, ~renamed.columns.duplicated()]

        long = renamed.melt(id_vars=[pupil_id], var_name='field', value_name='value')
        blank = long['value'].map(lambda v: isinstance(v, str) and not v.strip()).astype(bool)
        long = long.loc[long['value'].notna() & ~blank].copy()
        long.insert(1, 'year', int(year))
        frames.append(long)

        logger.info(f"  Census {year}: {len(df):,} rows, {renamed.shape[1] - 1} fields")

    if not frames:
        return pd.DataFrame(columns=[pupil_id] + LONG_COLUMNS)

    long = pd.concat(frames, ignore_index=True)
    before = len(long)
    long = long.drop_duplicates(subset=[pupil_id, 'year', 'field'], keep='first')
    if len(long) < before:
        logger.info(f"  Dropped {before - len(long):,} duplicate pupil-year observations")

    return long.reset_index(drop=True)


def _observations(long: pd.DataFrame, fields: Iterable[str]) -> pd.DataFrame:
    return long[long['field'].isin(list(fields))]


def _with_cohort(obs: pd.DataFrame, cohort_of: pd.Series, pupil_id: str) -> pd.DataFrame:
    return obs.merge(cohort_of.rename('cohort').reset_index(), on=pupil_id, how='inner')


def _cohort_attribute(obs: pd.DataFrame, cohorts: Dict[int, Cohort], attribute) -> pd.Series:
    lookup = {cid: attribute(c) for cid, c in cohorts.items()}
    return obs['cohort'].map(lookup)


def _parse_flag(value, true_tokens=DEFAULT_TRUE_TOKENS, false_tokens=DEFAULT_FALSE_TOKENS):
    return parse_item(value, true_tokens, false_tokens)


def derive_sen_flags(long: pd.DataFrame, provision: Dict, pupil_id: str = 'pupil_id') -> pd.DataFrame:
    """
    Derive yearly sen / sen_statement / sen_support observations

    Uses the SEN provision code where the field exists in a year. Codes
    outside the configured lists produce no observation.

    Returns:
        Long-form observations for the derived flags only
    """
    source = provision.get('field', 'sen_provision')
    none_codes = {str(c).upper() for c in provision.get('none_codes', ['N'])}
    statement_codes = {str(c).upper() for c in provision.get('statement_codes', ['S', 'E'])}
    support_codes = {str(c).upper() for c in provision.get('support_codes', ['A', 'P', 'K'])}

    obs = _observations(long, [source])
    if obs.empty:
        return pd.DataFrame(columns=[pupil_id] + LONG_COLUMNS)

    codes = obs['value'].astype(str).str.strip().str.upper()
    known = codes.isin(none_codes | statement_codes | support_codes)
    obs, codes = obs[known], codes[known]

    statement = codes.isin(statement_codes).astype(int)
    support = codes.isin(support_codes).astype(int)

    frames = []
    for name, values in (('sen', statement | support),
                         ('sen_statement', statement),
                         ('sen_support', support)):
        frames.append(pd.DataFrame({
            pupil_id: obs[pupil_id].values,
            'year': obs['year'].values,
            'field': name,
            'value': values.values,
        }))

    return pd.concat(frames, ignore_index=True)


def derive_category_flags(long: pd.DataFrame, flags: Dict[str, Dict],
                          pupil_id: str = 'pupil_id') -> pd.DataFrame:
    """
    Collapse categorical fields (e.g. major ethnic group) into 1/0 flags

    Args:
        flags: {flag_name: {'source': field, 'true_values': [...]}}
    """
    frames = []
    for name, spec in flags.items():
        obs = _observations(long, [spec['source']])
        if obs.empty:
            continue
        true_values = {str(v).strip().upper() for v in spec.get('true_values', [])}
        values = obs['value'].astype(str).str.strip().str.upper().isin(true_values).astype(int)
        frames.append(pd.DataFrame({
            pupil_id: obs[pupil_id].values,
            'year': obs['year'].values,
            'field': name,
            'value': values.values,
        }))

    if not frames:
        return pd.DataFrame(columns=[pupil_id] + LONG_COLUMNS)
    return pd.concat(frames, ignore_index=True)


# =============================================================================
# RESOLUTION RULES
# =============================================================================

def resolve_first_available(
    long: pd.DataFrame,
    cohort_of: pd.Series,
    cohorts: Dict[int, Cohort],
    fields: List[str],
    pupil_id: str = 'pupil_id',
) -> pd.DataFrame:
    """
    Resolve time-invariant fields

    The cohort's baseline year is used when it has a value. Otherwise the
    first later year with a value is used. Years before the baseline are
    never consulted and later years never override a resolved value.

    Returns:
        DataFrame indexed by pupil_id with one column per field
    """
    obs = _with_cohort(_observations(long, fields), cohort_of, pupil_id)
    obs = obs[obs['year'] >= _cohort_attribute(obs, cohorts, lambda c: c.baseline_year)]
    if obs.empty:
        return pd.DataFrame(index=cohort_of.index, columns=fields, dtype='object')

    resolved = (
        obs.sort_values([pupil_id, 'field', 'year'])
        .groupby([pupil_id, 'field'], sort=False)['value']
        .first()
        .unstack('field')
    )
    return resolved.reindex(index=cohort_of.index, columns=fields)


def resolve_max_over_years(
    long: pd.DataFrame,
    field_name: str,
    years: List[int],
    fallback_years: Optional[List[int]] = None,
    pupil_id: str = 'pupil_id',
) -> pd.Series:
    """
    Resolve a count that can only grow over time (e.g. number of siblings)

    Takes the maximum over ``years``. The fallback years fill only pupils
    with no value in ``years``, taking the earliest fallback year available.
    """
    obs = _observations(long, [field_name]).copy()
    obs['value'] = pd.to_numeric(obs['value'], errors='coerce')
    obs = obs[obs['value'].notna()]

    primary = obs[obs['year'].isin(years)].groupby(pupil_id)['value'].max()

    if fallback_years:
        fallback = (
            obs[obs['year'].isin(fallback_years)]
            .sort_values([pupil_id, 'year'])
            .groupby(pupil_id)['value']
            .first()
        )
        primary = primary.combine_first(fallback)

    return primary.rename(field_name)


def resolve_ever_true(
    long: pd.DataFrame,
    cohort_of: pd.Series,
    cohorts: Dict[int, Cohort],
    fields: List[str],
    pupil_id: str = 'pupil_id',
    prefix: str = 'ever_',
) -> pd.DataFrame:
    """
    Logical OR of boolean fields over each pupil's cohort window

    1 if any observation in the window is true, 0 if every observation is
    false, and missing when nothing was observed in the window. Adding a true
    observation can only move a pupil to 1.

    Returns:
        DataFrame indexed by pupil_id with columns ``{prefix}{field}``
    """
    obs = _with_cohort(_observations(long, fields), cohort_of, pupil_id)
    first = _cohort_attribute(obs, cohorts, lambda c: c.ever_window[0])
    last = _cohort_attribute(obs, cohorts, lambda c: c.ever_window[1])
    obs = obs[(obs['year'] >= first) & (obs['year'] <= last)].copy()

    obs['flag'] = obs['value'].map(_parse_flag)
    obs = obs[obs['flag'].notna()]
    obs['flag'] = obs['flag'].astype(int)
    if obs.empty:
        empty = pd.DataFrame(pd.NA, index=cohort_of.index, columns=fields, dtype='Int64')
        return empty.add_prefix(prefix)

    ever = obs.groupby([pupil_id, 'field'])['flag'].max().unstack('field')
    ever = ever.reindex(index=cohort_of.index, columns=fields).astype('Int64')
    return ever.add_prefix(prefix)


def _normalise_identifier(value):
    """Identifiers arrive as strings in some years and floats in others"""
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    return str(value).strip()


def index_by_academic_year(
    long: pd.DataFrame,
    cohort_of: pd.Series,
    cohorts: Dict[int, Cohort],
    fields: List[str],
    n_years: int = N_ACADEMIC_YEARS,
    pupil_id: str = 'pupil_id',
) -> pd.DataFrame:
    """
    Re-index yearly identifiers from census year to academic year 0..n_years-1

    Returns:
        DataFrame indexed by pupil_id with columns ``{field}_y{a}``
    """
    obs = _with_cohort(_observations(long, fields), cohort_of, pupil_id)
    obs = obs.assign(
        academic_year=obs['year'] - _cohort_attribute(obs, cohorts, lambda c: c.reception_year),
        value=obs['value'].map(_normalise_identifier),
    )
    obs = obs[(obs['academic_year'] >= 0) & (obs['academic_year'] < n_years)]

    columns = [f'{f}_y{a}' for f in fields for a in range(n_years)]
    if obs.empty:
        return pd.DataFrame(index=cohort_of.index, columns=columns, dtype='object')

    obs = obs.assign(column=obs['field'] + '_y' + obs['academic_year'].astype(int).astype(str))
    wide = obs.groupby([pupil_id, 'column'])['value'].first().unstack('column')
    return wide.reindex(index=cohort_of.index, columns=columns)


def derive_school_changes(
    panel: pd.DataFrame,
    cohorts: Dict[int, Cohort],
    n_years: int = N_ACADEMIC_YEARS,
    school_field: str = 'school_id',
    cohort_column: str = 'cohort',
) -> pd.DataFrame:
    """
    Add changed_school_y{a} indicators and the per-cohort change count

    changed_school_y{a} compares academic years a-1 and a and is defined only
    when both identifiers are present. n_school_changes sums the indicators
    listed in the pupil's cohort ``school_change_years``, skipping undefined
    ones. It is missing if none of them are defined.
    """
    result = panel.copy()

    for a in range(1, n_years):
        prev = panel.get(f'{school_field}_y{a - 1}')
        cur = panel.get(f'{school_field}_y{a}')
        indicator = pd.Series(pd.NA, index=panel.index, dtype='boolean')
        if prev is not None and cur is not None:
            defined = prev.notna() & cur.notna()
            indicator[defined] = (prev[defined] != cur[defined]).astype(bool)
        result[f'changed_school_y{a}'] = indicator

    counts = pd.Series(pd.NA, index=panel.index, dtype='Int64')
    for cohort_id, cohort in cohorts.items():
        members = result[cohort_column] == cohort_id
        cols = [f'changed_school_y{a}' for a in cohort.school_change_years if 0 < a < n_years]
        if not cols or not members.any():
            continue
        window = result.loc[members, cols].astype('Int64')
        counts[members] = window.sum(axis=1, min_count=1)

    result['n_school_changes'] = counts
    return result


# =============================================================================
# PANEL
# =============================================================================

def restrict_to_population(long: pd.DataFrame, population: pd.Index,
                           pupil_id: str = 'pupil_id') -> pd.DataFrame:
    kept = long[long[pupil_id].isin(population)]
    dropped = len(long) - len(kept)
    if dropped:
        n_pupils = long.loc[~long[pupil_id].isin(population), pupil_id].nunique()
        logger.info(f"  Dropped {dropped:,} observations for {n_pupils:,} pupils outside the cohort table")
    return kept


def _cohort_membership(cohort_table: pd.DataFrame, config: LongitudinalConfig) -> pd.Series:
    pupil_id = config.pupil_id
    missing = [c for c in (pupil_id, 'cohort') if c not in cohort_table.columns]
    if missing:
        raise ValueError(f"Cohort table missing required columns: {', '.join(missing)}")

    table = cohort_table[[pupil_id, 'cohort']].dropna()
    table = table.assign(cohort=pd.to_numeric(table['cohort'], errors='coerce'))

    unknown = ~table['cohort'].isin(list(config.cohorts))
    if unknown.any():
        logger.warning(f"Dropping {unknown.sum():,} pupils with an unconfigured cohort")
        table = table[~unknown]

    duplicated = table[pupil_id].duplicated()
    if duplicated.any():
        logger.warning(f"Dropping {duplicated.sum():,} duplicate pupils in the cohort table")
        table = table[~duplicated]

    return table.set_index(pupil_id)['cohort'].astype(int)


def build_panel(
    cohort_table: pd.DataFrame,
    snapshots: Dict[int, pd.DataFrame],
    config: LongitudinalConfig,
) -> pd.DataFrame:
    """
    Build the longitudinal pupil panel

    Args:
        cohort_table: Baseline cohort table with pupil_id and cohort columns
        snapshots: Mapping of census year to that year's extract
        config: Aggregation rules

    Returns:
        One row per pupil of the cohort table
    """
    pupil_id = config.pupil_id
    logger.info("Building longitudinal panel...")

    cohort_of = _cohort_membership(cohort_table, config)
    logger.info(f"  Population: {len(cohort_of):,} pupils in {cohort_of.nunique()} cohorts")

    long = to_long(snapshots, pupil_id, config.field_aliases, config.strip_suffix_pattern)
    long = restrict_to_population(long, cohort_of.index, pupil_id)

    derived = [long]
    if config.sen_provision:
        derived.append(derive_sen_flags(long, config.sen_provision, pupil_id))
    if config.derived_flags:
        derived.append(derive_category_flags(long, config.derived_flags, pupil_id))
    long = pd.concat(derived, ignore_index=True)

    parts = [cohort_of.rename('cohort').to_frame()]

    if config.time_invariant_fields:
        parts.append(resolve_first_available(
            long, cohort_of, config.cohorts, config.time_invariant_fields, pupil_id
        ))

    if config.sibling_field:
        siblings = resolve_max_over_years(
            long, config.sibling_field, config.sibling_years,
            config.sibling_fallback_years, pupil_id
        )
        parts.append(siblings.reindex(cohort_of.index).to_frame())

    if config.ever_true_fields:
        parts.append(resolve_ever_true(
            long, cohort_of, config.cohorts, config.ever_true_fields, pupil_id
        ))

    if config.year_indexed_fields:
        parts.append(index_by_academic_year(
            long, cohort_of, config.cohorts, config.year_indexed_fields,
            config.n_academic_years, pupil_id
        ))

    panel = pd.concat(parts, axis=1)
    panel.index.name = pupil_id
    panel = panel.reset_index()

    if 'school_id' in config.year_indexed_fields:
        panel = derive_school_changes(panel, config.cohorts, config.n_academic_years)

    for name in config.time_invariant_fields:
        missing = panel[name].isna().sum()
        if missing:
            logger.info(f"  {name}: {missing:,} pupils unresolved in every year")

    logger.info(f"  Panel: {len(panel):,} pupils, {panel.shape[1]} columns")
    return panel
