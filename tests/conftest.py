"""
Shared fixtures for the EYFSP pipeline tests

Usage:
    pytest tests/ -v
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from eyfsp_pipeline.factors.esem import FactorConfig
from eyfsp_pipeline.longitudinal.aggregator import LongitudinalConfig
from eyfsp_pipeline.recovery.item_recovery import domains_from_config, item_columns


# --- Configuration ---

@pytest.fixture(scope="session")
def pipeline_config():
    """The shipped config/pipeline.yaml"""
    with open(project_root / "config" / "pipeline.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def domains():
    return domains_from_config()


@pytest.fixture
def longitudinal_config():
    """Two cohorts with short windows, enough for the resolution rules"""
    return LongitudinalConfig.from_dict({
        'n_academic_years': 12,
        'strip_suffix_pattern': r'_SPR\d{2}$',
        'field_aliases': {'FSMeligible': 'fsm', 'NumberOfSiblings': 'nsiblings', 'URN': 'school_id'},
        'time_invariant_fields': ['sex', 'birth_month'],
        'ever_true_fields': ['fsm', 'sen'],
        'year_indexed_fields': ['school_id'],
        'sibling_field': 'nsiblings',
        'sibling_years': [2008, 2010, 2013],
        'sibling_fallback_years': [2015],
        'sen_provision': {
            'field': 'sen_provision',
            'none_codes': ['N'],
            'statement_codes': ['S', 'E'],
            'support_codes': ['A', 'P', 'K'],
        },
        'cohorts': {
            1: {'reception_year': 2007, 'baseline_year': 2007, 'ever_window': [2007, 2013],
                'school_change_years': [3, 4, 5, 6, 7]},
            2: {'reception_year': 2008, 'baseline_year': 2008, 'ever_window': [2008, 2014],
                'school_change_years': [2, 3, 4, 5, 6]},
        },
    })


# --- Assessment data ---

@pytest.fixture
def make_assessment(domains):
    """
    Build a raw EYFSP extract

    Every item is answered 'true' unless overridden, and no totals are
    reported unless given in ``totals``.

        make_assessment(items={'att': [1, 0, ...]}, totals={'score_att': '7'})
    """
    def _make(items=None, totals=None, n_rows=1, tokens=('true', 'false')):
        items = items or {}
        row = {'pupil_id': None}
        for domain in domains:
            for scale in domain.scales:
                values = items.get(scale, [1] * domain.items_per_scale)
                for column, value in zip(item_columns(scale), values):
                    if value == 1:
                        row[column] = tokens[0]
                    elif value == 0:
                        row[column] = tokens[1]
                    else:
                        row[column] = value
        row.update(totals or {})
        rows = []
        for i in range(n_rows):
            record = dict(row)
            record['pupil_id'] = 1000 + i
            rows.append(record)
        return pd.DataFrame(rows)

    return _make


# --- Simulated two-factor binary data ---

SIM_ITEMS = {
    'cogn': [f'c{k}' for k in range(1, 7)],
    'semo': [f's{k}' for k in range(1, 7)],
}
SIM_LOADING = 0.7
SIM_PHI = 0.5


@pytest.fixture(scope="session")
def two_factor_items():
    """
    3,000 pupils answering 12 binary items with a known structure

    Each factor has 6 items loading 0.7 on it and 0 on the other, the factor
    correlation is 0.5 and thresholds vary from -0.8 to 0.8.
    """
    rng = np.random.default_rng(20240611)
    n = 3000
    psi = np.array([[1.0, SIM_PHI], [SIM_PHI, 1.0]])
    eta = rng.multivariate_normal([0.0, 0.0], psi, size=n)

    thresholds = np.linspace(-0.8, 0.8, 6)
    columns = {}
    for k, (group, items) in enumerate(SIM_ITEMS.items()):
        for item, tau in zip(items, thresholds):
            latent = SIM_LOADING * eta[:, k] + np.sqrt(1 - SIM_LOADING ** 2) * rng.standard_normal(n)
            columns[item] = (latent > tau).astype(float)

    return pd.DataFrame(columns, index=pd.RangeIndex(n, name='pupil_id'))


@pytest.fixture(scope="session")
def factor_config():
    return FactorConfig(
        groups={'cogn': list(SIM_ITEMS['cogn']), 'semo': list(SIM_ITEMS['semo'])},
        anchors={'cogn': 'c1', 'semo': 's1'},
    )


@pytest.fixture(scope="session")
def esem_result(two_factor_items, factor_config):
    from eyfsp_pipeline.factors.esem import run_esem
    return run_esem(two_factor_items, factor_config)
