"""
Shared fixtures: small synthetic versions of the source datasets and of the
aligned observation table.
"""

import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

PREDICTORS = ['fleet_total', 'fleet_motorcycles', 'gdp', 'accidents', 'fatal_accidents', 'injured']


@pytest.fixture
def observation_table():
    """24 quarters for three states, response linear in the predictors plus noise."""
    rng = np.random.default_rng(42)
    periods = pd.period_range('2016Q1', periods=24, freq='Q')
    frames = []

    for scale, uf in ((3.0, 'SP'), (1.5, 'RJ'), (1.0, 'MG')):
        t = np.arange(len(periods))
        df = pd.DataFrame({
            'period': periods,
            'area': uf,
            'fleet_total': scale * (1_000_000 + 8_000 * t + rng.normal(0, 2_000, len(t))),
            'fleet_motorcycles': scale * (200_000 + 3_000 * t + rng.normal(0, 1_000, len(t))),
            'gdp': 1_500_000 + 10_000 * t + rng.normal(0, 20_000, len(t)),
            'accidents': scale * (900 + rng.normal(0, 40, len(t))),
            'fatal_accidents': scale * (60 + rng.normal(0, 5, len(t))),
            'injured': scale * (1_000 + rng.normal(0, 50, len(t))),
        })
        df['deaths_datasus'] = (
            50
            + 0.0001 * df['fleet_total']
            + 0.0004 * df['fleet_motorcycles']
            + 2.0 * df['fatal_accidents']
            + rng.normal(0, 5, len(t))
        )
        frames.append(df)

    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def accident_records():
    """PRF per-occurrence records for 2020-2021 in three states."""
    rng = np.random.default_rng(7)
    dates = pd.date_range('2020-01-01', '2021-12-31', freq='3D')
    rows = []
    next_id = 1
    for uf in ('SP', 'RJ', 'PR'):
        for date in dates:
            deaths = int(rng.poisson(0.3))
            rows.append({
                'id': next_id,
                'data_inversa': date.strftime('%Y-%m-%d'),
                'uf': uf,
                'mortos': deaths,
                'feridos': int(rng.poisson(1.2)),
            })
            next_id += 1
    return pd.DataFrame(rows)


@pytest.fixture
def fleet_records():
    """Monthly RENAVAM counts, 2020-2021."""
    rows = []
    for uf, base in (('SP', 30_000_000), ('RJ', 7_000_000), ('PR', 8_000_000)):
        for i, month in enumerate(pd.period_range('2020-01', '2021-12', freq='M')):
            automovel = base * 0.55 + 1_000 * i
            motocicleta = base * 0.2 + 800 * i
            rows.append({
                'ano': month.year,
                'mes': month.month,
                'uf': uf,
                'total': base + 5_000 * i,
                'automovel': automovel,
                'motocicleta': motocicleta,
                'motoneta': base * 0.03,
                'ciclomotor': base * 0.001,
            })
    return pd.DataFrame(rows)


@pytest.fixture
def gdp_records():
    """National quarterly GDP, 2020-2021."""
    return pd.DataFrame({
        'ano': [2020] * 4 + [2021] * 4,
        'trimestre': [1, 2, 3, 4] * 2,
        'pib': [1.8e6, 1.7e6, 1.9e6, 2.0e6, 2.1e6, 2.2e6, 2.2e6, 2.3e6],
    })


@pytest.fixture
def death_records():
    """DataSUS SIM rows, one per death, DTOBITO as ddmmyyyy."""
    rng = np.random.default_rng(11)
    rows = []
    for code in ('355030', '330455', '410690'):
        for date in pd.date_range('2020-01-01', '2021-12-31', freq='2D'):
            rows.append({
                'dtobito': date.strftime('%d%m%Y'),
                'codmunocor': code,
                'causabas': 'V031' if rng.random() < 0.8 else 'I219',
            })
    return pd.DataFrame(rows)


@pytest.fixture
def raw_sources(accident_records, fleet_records, gdp_records, death_records):
    return {
        'accidents': accident_records,
        'fleet': fleet_records,
        'gdp': gdp_records,
        'deaths': death_records,
    }
