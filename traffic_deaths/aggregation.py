"""
Aggregation Module
==================

Reduces the heterogeneous source series (PRF accidents, RENAVAM fleet, IBGE
GDP, DataSUS deaths) to a single table aligned on (period, area).

Flows (accidents, deaths, GDP) are summed when moving to a coarser period;
stocks (fleet counts) keep the last observation of the period.

Functions:
    - parse_dates: Parse the date formats found in the source files
    - change_frequency: Re-aggregate a periodized table to a coarser frequency
    - aggregate_accidents / aggregate_fleet / aggregate_gdp / aggregate_deaths
    - rollup: Sum state tables to region or national level
    - join_observations: Align tables on their shared keys
    - build_observation_table: Full reduction for one geographic level
"""

import logging
from typing import Dict, Any, List, Optional, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

FREQUENCIES = ('M', 'Q', 'Y')
LEVELS = ('nacional', 'regiao', 'uf')
NATIONAL_AREA = 'BR'

_FREQ_RANK = {'M': 0, 'Q': 1, 'Y': 2}

UF_TO_REGION = {
    'AC': 'Norte', 'AM': 'Norte', 'AP': 'Norte', 'PA': 'Norte',
    'RO': 'Norte', 'RR': 'Norte', 'TO': 'Norte',
    'AL': 'Nordeste', 'BA': 'Nordeste', 'CE': 'Nordeste', 'MA': 'Nordeste',
    'PB': 'Nordeste', 'PE': 'Nordeste', 'PI': 'Nordeste', 'RN': 'Nordeste',
    'SE': 'Nordeste',
    'DF': 'Centro-Oeste', 'GO': 'Centro-Oeste', 'MS': 'Centro-Oeste',
    'MT': 'Centro-Oeste',
    'ES': 'Sudeste', 'MG': 'Sudeste', 'RJ': 'Sudeste', 'SP': 'Sudeste',
    'PR': 'Sul', 'RS': 'Sul', 'SC': 'Sul',
}

IBGE_UF_CODES = {
    '11': 'RO', '12': 'AC', '13': 'AM', '14': 'RR', '15': 'PA', '16': 'AP',
    '17': 'TO', '21': 'MA', '22': 'PI', '23': 'CE', '24': 'RN', '25': 'PB',
    '26': 'PE', '27': 'AL', '28': 'SE', '29': 'BA', '31': 'MG', '32': 'ES',
    '33': 'RJ', '35': 'SP', '41': 'PR', '42': 'SC', '43': 'RS', '50': 'MS',
    '51': 'MT', '52': 'GO', '53': 'DF',
}

MONTHS_PT = {
    'janeiro': 1, 'fevereiro': 2, 'marco': 3, 'março': 3, 'abril': 4,
    'maio': 5, 'junho': 6, 'julho': 7, 'agosto': 8, 'setembro': 9,
    'outubro': 10, 'novembro': 11, 'dezembro': 12,
}

# ISO first; older PRF files use dd/mm/yy, DataSUS uses ddmmyyyy
DATE_FORMATS = ('%Y-%m-%d', '%d/%m/%Y', '%d/%m/%y', '%d%m%Y')

DEFAULT_FLEET_GROUPS = {
    'fleet_motorcycles': ['motocicleta', 'motoneta', 'ciclomotor'],
    'fleet_automobiles': ['automovel'],
}

# ICD-10 V01-V89: land transport accidents
TRANSPORT_ICD_PATTERN = r'^V(?:0[1-9]|[1-8]\d)'

FLOW_COLUMNS = ['accidents', 'fatal_accidents', 'injured', 'deaths_prf', 'gdp', 'deaths_datasus']
STOCK_COLUMNS = ['fleet_total', 'fleet_motorcycles', 'fleet_automobiles']


def _check_freq(freq: str) -> str:
    freq = freq.upper()
    if freq not in FREQUENCIES:
        raise ValueError(f"Unknown frequency '{freq}'. Choose from: {FREQUENCIES}")
    return freq


def period_frequency(periods: pd.Series) -> str:
    """Return 'M', 'Q' or 'Y' for a Period-typed series."""
    if not isinstance(periods.dtype, pd.PeriodDtype):
        raise ValueError(f"Expected a period column, got dtype {periods.dtype}")
    code = periods.dtype.freq.freqstr[0].upper()
    return 'Y' if code == 'A' else code


def parse_dates(values: pd.Series) -> pd.Series:
    """
    Parse date strings in any of the formats used by the sources.

    Unparseable values become NaT.
    """
    if pd.api.types.is_datetime64_any_dtype(values):
        return values

    text = values.astype(str).str.strip().str.replace(r'\.0$', '', regex=True)
    # ddmmyyyy read as an integer loses its leading zero
    text = text.where(~text.str.fullmatch(r'\d{7}'), text.str.zfill(8))

    parsed = pd.to_datetime(text, format=DATE_FORMATS[0], errors='coerce')
    for fmt in DATE_FORMATS[1:]:
        if not parsed.isna().any():
            break
        parsed = parsed.combine_first(pd.to_datetime(text, format=fmt, errors='coerce'))

    return parsed


def to_period(values: pd.Series, freq: str) -> pd.Series:
    """Parse dates and convert them to periods of the given frequency."""
    return parse_dates(values).dt.to_period(_check_freq(freq))


def normalize_uf(values: pd.Series) -> pd.Series:
    """
    Map UF siglas or IBGE codes (state or municipality) to UF siglas.

    Unknown values become NaN.
    """
    text = values.astype(str).str.strip().str.upper().str.replace(r'\.0$', '', regex=True)
    is_code = text.str.fullmatch(r'\d{2,7}')
    result = text.where(~is_code, text.str[:2].map(IBGE_UF_CODES))
    return result.where(result.isin(list(UF_TO_REGION)))


def _month_numbers(values: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(values, errors='coerce')
    names = values.astype(str).str.strip().str.lower().map(MONTHS_PT)
    return numeric.fillna(names)


def _monthly_periods(years: pd.Series, months: pd.Series) -> pd.Series:
    years = pd.to_numeric(years, errors='coerce')
    months = _month_numbers(months)
    valid = years.notna() & months.between(1, 12)

    labels = (
        years.astype('Int64').astype(str) + '-'
        + months.astype('Int64').astype(str).str.zfill(2)
    )
    dates = pd.to_datetime(labels.where(valid), format='%Y-%m', errors='coerce')
    return dates.dt.to_period('M')


def _occurrence_ids(df: pd.DataFrame, id_column: str) -> pd.Series:
    row_ids = pd.Series([f"row-{i}" for i in range(len(df))], index=df.index)
    if id_column not in df.columns:
        return row_ids
    return df[id_column].astype(object).where(df[id_column].notna(), row_ids)


def _drop_unkeyed(df: pd.DataFrame, keys: List[str], source: str) -> pd.DataFrame:
    missing = df[keys].isna().any(axis=1)
    if missing.any():
        logger.warning(f"{source}: dropping {int(missing.sum())} rows with unparseable {keys}")
    return df[~missing]


def change_frequency(
    df: pd.DataFrame,
    freq: str,
    flow_columns: Sequence[str] = (),
    stock_columns: Sequence[str] = (),
    keys: Sequence[str] = ('area',),
    period_column: str = 'period'
) -> pd.DataFrame:
    """
    Re-aggregate a periodized table to the same or a coarser frequency.

    Args:
        df: Table with a Period column
        freq: Target frequency ('M', 'Q' or 'Y')
        flow_columns: Columns summed within the target period
        stock_columns: Columns taking the last observation of the target period
        keys: Grouping keys besides the period (ignored when absent)
        period_column: Name of the Period column

    Returns:
        Table at the target frequency

    Raises:
        ValueError: If the target frequency is finer than the source
    """
    freq = _check_freq(freq)
    current = period_frequency(df[period_column])

    if _FREQ_RANK[freq] < _FREQ_RANK[current]:
        raise ValueError(
            f"Cannot disaggregate '{current}' data to the finer frequency '{freq}'"
        )

    flow_columns = [c for c in flow_columns if c in df.columns]
    stock_columns = [c for c in stock_columns if c in df.columns]
    group_keys = [period_column] + [k for k in keys if k in df.columns]

    out = df.sort_values(period_column).copy()
    out[period_column] = out[period_column].dt.asfreq(freq)
    grouped = out.groupby(group_keys, sort=True)

    parts = []
    if flow_columns:
        parts.append(grouped[flow_columns].sum(min_count=1))
    if stock_columns:
        parts.append(grouped[stock_columns].last())
    if not parts:
        raise ValueError("No value columns to aggregate")

    return pd.concat(parts, axis=1).reset_index()


def aggregate_accidents(
    df: pd.DataFrame,
    freq: str,
    date_column: str = 'data_inversa',
    uf_column: str = 'uf',
    id_column: str = 'id'
) -> pd.DataFrame:
    """
    Aggregate PRF accident records per (period, UF).

    Records sharing an occurrence id are collapsed first, so both the
    per-occurrence and per-person PRF files yield the same counts.

    Returns:
        Table with accidents, fatal_accidents, injured and deaths_prf
    """
    freq = _check_freq(freq)

    if 'feridos' in df.columns:
        injured = pd.to_numeric(df['feridos'], errors='coerce')
    else:
        parts = [pd.to_numeric(df[c], errors='coerce') for c in ('feridos_leves', 'feridos_graves') if c in df.columns]
        injured = sum(parts) if parts else pd.Series(0, index=df.index)

    records = pd.DataFrame({
        'period': to_period(df[date_column], freq),
        'area': normalize_uf(df[uf_column]),
        'id': _occurrence_ids(df, id_column),
        'deaths': pd.to_numeric(df['mortos'], errors='coerce').fillna(0),
        'injured': injured.fillna(0),
    })
    records = _drop_unkeyed(records, ['period', 'area'], 'accidents')

    occurrences = records.groupby(['period', 'area', 'id'], as_index=False)[['deaths', 'injured']].sum()
    occurrences['fatal'] = occurrences['deaths'] > 0

    result = occurrences.groupby(['period', 'area']).agg(
        accidents=('id', 'size'),
        fatal_accidents=('fatal', 'sum'),
        injured=('injured', 'sum'),
        deaths_prf=('deaths', 'sum'),
    ).reset_index()

    value_columns = ['accidents', 'fatal_accidents', 'injured', 'deaths_prf']
    result[value_columns] = result[value_columns].astype('int64')

    logger.info(f"Aggregated {len(records)} accident records into {len(result)} rows ({freq})")
    return result


def aggregate_fleet(
    df: pd.DataFrame,
    freq: str,
    groups: Optional[Dict[str, List[str]]] = None,
    year_column: str = 'ano',
    month_column: str = 'mes',
    uf_column: str = 'uf',
    total_column: str = 'total'
) -> pd.DataFrame:
    """
    Aggregate monthly RENAVAM fleet counts per (period, UF).

    Municipality rows are summed into their UF. Fleet counts are stocks:
    a quarter or year keeps the count of its last month.

    Args:
        df: Fleet registry with one column per vehicle category
        freq: Target frequency
        groups: Output column -> vehicle category columns to add up
        year_column, month_column, uf_column: Key columns
        total_column: Column with the total fleet (summed from categories if absent)

    Returns:
        Table with fleet_total and one column per group
    """
    freq = _check_freq(freq)
    groups = groups or DEFAULT_FLEET_GROUPS
    keys = {year_column, month_column, uf_column}

    categories = [c for c in df.columns if c not in keys and c != total_column]
    counts = df[categories].apply(pd.to_numeric, errors='coerce')

    table = pd.DataFrame({
        'period': _monthly_periods(df[year_column], df[month_column]),
        'area': normalize_uf(df[uf_column]),
    })

    if total_column in df.columns:
        table['fleet_total'] = pd.to_numeric(df[total_column], errors='coerce')
    else:
        table['fleet_total'] = counts.select_dtypes(include=[np.number]).sum(axis=1, min_count=1)

    for name, members in groups.items():
        present = [c for c in members if c in counts.columns]
        if not present:
            raise ValueError(f"Fleet group '{name}' has none of its columns {members} in the data")
        table[name] = counts[present].sum(axis=1, min_count=1)

    table = _drop_unkeyed(table, ['period', 'area'], 'fleet')
    value_columns = ['fleet_total'] + list(groups)

    monthly = table.groupby(['period', 'area'], as_index=False)[value_columns].sum(min_count=1)
    result = change_frequency(monthly, freq, stock_columns=value_columns)

    logger.info(f"Aggregated fleet registry into {len(result)} rows ({freq})")
    return result


def gdp_frequency(df: pd.DataFrame, quarter_column: str = 'trimestre') -> str:
    """Native frequency of a GDP table: 'Q' with a quarter column, 'Y' otherwise."""
    return 'Q' if quarter_column in df.columns else 'Y'


def aggregate_gdp(
    df: pd.DataFrame,
    freq: str,
    year_column: str = 'ano',
    quarter_column: str = 'trimestre',
    value_column: str = 'pib',
    uf_column: str = 'uf'
) -> pd.DataFrame:
    """
    Aggregate GDP per period (and per UF when the series has one).

    Quarterly series can be summed to years; annual series stay annual.

    Raises:
        ValueError: If the target frequency is finer than the series
    """
    freq = _check_freq(freq)
    if gdp_frequency(df, quarter_column) == 'Q':
        quarters = pd.to_numeric(df[quarter_column].astype(str).str.extract(r'([1-4])')[0], errors='coerce')
        periods = _monthly_periods(df[year_column], (quarters - 1) * 3 + 1).dt.asfreq('Q')
    else:
        periods = _monthly_periods(df[year_column], pd.Series(1, index=df.index)).dt.asfreq('Y')

    table = pd.DataFrame({
        'period': periods,
        'gdp': pd.to_numeric(df[value_column], errors='coerce'),
    })
    keys = ['period']
    if uf_column in df.columns:
        table['area'] = normalize_uf(df[uf_column])
        keys.append('area')

    table = _drop_unkeyed(table, keys, 'gdp')
    table = table.groupby(keys, as_index=False)['gdp'].sum(min_count=1)

    result = change_frequency(table, freq, flow_columns=['gdp'])
    logger.info(f"Aggregated GDP series into {len(result)} rows ({freq})")
    return result


def aggregate_deaths(
    df: pd.DataFrame,
    freq: str,
    date_column: str = 'dtobito',
    count_column: str = 'obitos',
    uf_columns: Sequence[str] = ('uf', 'codmunocor', 'codmunres'),
    cause_column: str = 'causabas',
    year_column: str = 'ano',
    month_column: str = 'mes'
) -> pd.DataFrame:
    """
    Aggregate DataSUS death records per (period, UF).

    Accepts either one row per death (with a date column, optionally an
    underlying-cause column restricted to ICD-10 V01-V89) or pre-counted
    monthly rows (year, month and a count column).

    Returns:
        Table with deaths_datasus
    """
    freq = _check_freq(freq)

    uf_column = next((c for c in uf_columns if c in df.columns), None)
    if uf_column is None:
        raise ValueError(f"No UF column among {list(uf_columns)} in death records")

    if cause_column in df.columns:
        transport = df[cause_column].astype(str).str.upper().str.match(TRANSPORT_ICD_PATTERN)
        logger.info(f"Keeping {int(transport.sum())} of {len(df)} deaths with transport ICD codes")
        df = df[transport]

    if date_column in df.columns:
        periods = to_period(df[date_column], 'M')
    elif year_column in df.columns and month_column in df.columns:
        periods = _monthly_periods(df[year_column], df[month_column])
    else:
        raise ValueError(
            f"Death records need a '{date_column}' column or '{year_column}'/'{month_column}' columns"
        )

    if count_column in df.columns:
        counts = pd.to_numeric(df[count_column], errors='coerce')
    else:
        counts = pd.Series(1, index=df.index)

    table = pd.DataFrame({
        'period': periods,
        'area': normalize_uf(df[uf_column]),
        'deaths_datasus': counts,
    })
    table = _drop_unkeyed(table, ['period', 'area'], 'deaths')
    monthly = table.groupby(['period', 'area'], as_index=False)['deaths_datasus'].sum(min_count=1)

    result = change_frequency(monthly, freq, flow_columns=['deaths_datasus'])
    logger.info(f"Aggregated death records into {len(result)} rows ({freq})")
    return result


def rollup(df: pd.DataFrame, level: str) -> pd.DataFrame:
    """
    Sum a per-UF table to the requested geographic level.

    Args:
        df: Table keyed by (period, area) with UF siglas as areas
        level: 'uf', 'regiao' or 'nacional'

    Returns:
        Table keyed by (period, area) at the requested level. Tables
        without an area column are returned unchanged.
    """
    if level not in LEVELS:
        raise ValueError(f"Unknown level '{level}'. Choose from: {LEVELS}")

    if 'area' not in df.columns or level == 'uf':
        return df.copy()

    out = df.copy()
    if level == 'regiao':
        out['area'] = out['area'].map(UF_TO_REGION)
        out = _drop_unkeyed(out, ['area'], 'rollup')
    else:
        out['area'] = NATIONAL_AREA

    value_columns = [c for c in out.columns if c not in ('period', 'area')]
    return out.groupby(['period', 'area'], as_index=False)[value_columns].sum(min_count=1)


def join_observations(
    frames: Sequence[pd.DataFrame],
    how: str = 'inner',
    keys: Sequence[str] = ('period', 'area')
) -> pd.DataFrame:
    """
    Join aggregated tables on their shared keys.

    Each merge uses the keys both sides carry, so a national-only series
    (no area column) is broadcast to every area.

    Args:
        frames: Tables to join, all at the same frequency
        how: 'inner', 'outer' or 'left'
        keys: Candidate join keys

    Returns:
        Joined table sorted by its keys

    Raises:
        ValueError: On mismatched frequencies or duplicated value columns
    """
    if not frames:
        raise ValueError("No tables to join")
    if how not in ('inner', 'outer', 'left'):
        raise ValueError(f"Unsupported join '{how}'")

    freqs = {period_frequency(f['period']) for f in frames}
    if len(freqs) > 1:
        raise ValueError(f"Tables have mixed frequencies: {sorted(freqs)}")

    result = frames[0]
    for frame in frames[1:]:
        on = [k for k in keys if k in result.columns and k in frame.columns]
        overlap = (set(result.columns) & set(frame.columns)) - set(on)
        if overlap:
            raise ValueError(f"Duplicate value columns across tables: {sorted(overlap)}")

        before = len(result)
        result = result.merge(frame, on=on, how=how)
        logger.debug(f"Joined on {on} ({how}): {before} -> {len(result)} rows")

    sort_keys = [k for k in keys if k in result.columns]
    return result.sort_values(sort_keys).reset_index(drop=True)


def aggregate_sources(
    sources: Dict[str, pd.DataFrame],
    freq: str,
    options: Optional[Dict[str, Any]] = None
) -> Dict[str, pd.DataFrame]:
    """
    Aggregate every available source to per-UF tables at one frequency.

    Args:
        sources: Raw tables keyed by 'accidents', 'fleet', 'gdp', 'deaths'
        freq: Target frequency
        options: Per-source keyword overrides (e.g. {'fleet': {'groups': ...}})

    Returns:
        Aggregated tables keyed like `sources`
    """
    freq = _check_freq(freq)
    options = options or {}
    aggregators = {
        'accidents': aggregate_accidents,
        'fleet': aggregate_fleet,
        'gdp': aggregate_gdp,
        'deaths': aggregate_deaths,
    }

    aggregated = {}
    for name, func in aggregators.items():
        if name not in sources:
            continue
        if name == 'gdp':
            native = gdp_frequency(sources[name], options.get(name, {}).get('quarter_column', 'trimestre'))
            if _FREQ_RANK[freq] < _FREQ_RANK[native]:
                logger.warning(f"GDP series is {native}; leaving it out of the {freq} table")
                continue
        aggregated[name] = func(sources[name], freq, **options.get(name, {}))

    return aggregated


def build_observation_table(
    aggregated: Dict[str, pd.DataFrame],
    level: str,
    how: str = 'inner'
) -> pd.DataFrame:
    """
    Roll aggregated per-UF tables up to a level and join them.

    Args:
        aggregated: Output of aggregate_sources
        level: 'uf', 'regiao' or 'nacional'
        how: Join type

    Returns:
        One row per (period, area)
    """
    logger.info("=" * 60)
    logger.info(f"BUILDING OBSERVATION TABLE (level={level}, join={how})")
    logger.info("=" * 60)

    frames = [rollup(table, level) for table in aggregated.values()]
    table = join_observations(frames, how=how)

    logger.info(f"Observation table: {len(table)} rows, {table['area'].nunique() if 'area' in table else 1} areas")
    return table
