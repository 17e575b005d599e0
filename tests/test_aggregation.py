"""
Test Suite for Aggregation Module
=================================

Tests for temporal aggregation, geographic rollup and joins.
"""

import pytest
import numpy as np
import pandas as pd

from traffic_deaths.aggregation import (
    parse_dates,
    normalize_uf,
    period_frequency,
    change_frequency,
    aggregate_accidents,
    aggregate_fleet,
    aggregate_gdp,
    gdp_frequency,
    aggregate_deaths,
    rollup,
    join_observations,
    aggregate_sources,
    build_observation_table,
    UF_TO_REGION,
)


class TestParsing:
    """Tests for date and UF parsing helpers."""

    def test_parse_dates_formats(self):
        values = pd.Series(['2020-01-05', '05/01/2020', '05/01/20', '05012020', 5012020, 'garbage'])
        parsed = parse_dates(values)

        expected = pd.Timestamp('2020-01-05')
        assert (parsed.iloc[:5] == expected).all()
        assert pd.isna(parsed.iloc[5])

    def test_normalize_uf(self):
        values = pd.Series(['sp', ' RJ ', '35', 355030, '330455', 'XX'])
        result = normalize_uf(values)

        assert result.tolist()[:5] == ['SP', 'RJ', 'SP', 'SP', 'RJ']
        assert pd.isna(result.iloc[5])

    def test_every_uf_has_a_region(self):
        assert len(UF_TO_REGION) == 27
        assert set(UF_TO_REGION.values()) == {'Norte', 'Nordeste', 'Centro-Oeste', 'Sudeste', 'Sul'}

    def test_period_frequency(self):
        assert period_frequency(pd.Series(pd.period_range('2020-01', periods=2, freq='M'))) == 'M'
        assert period_frequency(pd.Series(pd.period_range('2020Q1', periods=2, freq='Q'))) == 'Q'
        assert period_frequency(pd.Series(pd.period_range('2020', periods=2, freq='Y'))) == 'Y'

    def test_period_frequency_rejects_dates(self):
        with pytest.raises(ValueError, match="period column"):
            period_frequency(pd.Series(pd.date_range('2020-01-01', periods=2)))


class TestChangeFrequency:
    """Tests for flow/stock re-aggregation."""

    @pytest.fixture
    def monthly(self):
        return pd.DataFrame({
            'period': pd.period_range('2020-01', periods=6, freq='M'),
            'area': 'SP',
            'deaths': [1, 2, 3, 4, 5, 6],
            'fleet': [100, 110, 120, 130, 140, 150],
        })

    def test_flows_sum_and_stocks_keep_last(self, monthly):
        quarterly = change_frequency(monthly, 'Q', flow_columns=['deaths'], stock_columns=['fleet'])

        assert len(quarterly) == 2
        assert quarterly['deaths'].tolist() == [6, 15]
        assert quarterly['fleet'].tolist() == [120, 150]
        assert period_frequency(quarterly['period']) == 'Q'

    def test_stock_uses_last_period_even_if_unsorted(self, monthly):
        shuffled = monthly.sample(frac=1, random_state=0)
        quarterly = change_frequency(shuffled, 'Q', stock_columns=['fleet'])

        assert quarterly['fleet'].tolist() == [120, 150]

    def test_finer_frequency_raises(self, monthly):
        quarterly = change_frequency(monthly, 'Q', flow_columns=['deaths'])

        with pytest.raises(ValueError, match="disaggregate"):
            change_frequency(quarterly, 'M', flow_columns=['deaths'])

    def test_unknown_frequency_raises(self, monthly):
        with pytest.raises(ValueError, match="Unknown frequency"):
            change_frequency(monthly, 'W', flow_columns=['deaths'])


class TestSourceAggregation:
    """Tests for the per-source aggregators."""

    def test_aggregate_accidents_counts(self):
        records = pd.DataFrame({
            'id': [1, 2, 2, 3, 4, 5],
            'data_inversa': ['2020-01-10', '2020-01-11', '2020-01-11', '2020-02-01', '2020-02-03', 'n/a'],
            'uf': ['SP', 'SP', 'SP', 'SP', 'RJ', 'RJ'],
            'mortos': [0, 1, 1, 0, 2, 5],
            'feridos': [2, 0, 1, 0, 0, 1],
        })

        result = aggregate_accidents(records, 'Q').set_index('area')

        assert result.loc['SP', 'accidents'] == 3
        assert result.loc['SP', 'fatal_accidents'] == 1
        assert result.loc['SP', 'injured'] == 3
        assert result.loc['SP', 'deaths_prf'] == 2
        # the undated RJ record is dropped
        assert result.loc['RJ', 'accidents'] == 1
        assert result.loc['RJ', 'deaths_prf'] == 2

    def test_aggregate_accidents_injured_from_parts(self):
        records = pd.DataFrame({
            'id': [1],
            'data_inversa': ['2020-03-01'],
            'uf': ['PR'],
            'mortos': [0],
            'feridos_leves': [2],
            'feridos_graves': [1],
        })

        result = aggregate_accidents(records, 'M')
        assert result['injured'].iloc[0] == 3

    def test_aggregate_fleet_stock(self, fleet_records):
        result = aggregate_fleet(fleet_records, 'Q')
        sp = result[result['area'] == 'SP'].reset_index(drop=True)

        assert len(sp) == 8
        # March is the last month of 2020Q1 (index 2)
        assert sp.loc[0, 'fleet_total'] == 30_000_000 + 5_000 * 2
        expected_motorcycles = 30_000_000 * 0.2 + 800 * 2 + 30_000_000 * 0.03 + 30_000_000 * 0.001
        assert sp.loc[0, 'fleet_motorcycles'] == pytest.approx(expected_motorcycles)

    def test_aggregate_fleet_sums_municipalities(self):
        df = pd.DataFrame({
            'ano': [2020, 2020],
            'mes': ['janeiro', 'janeiro'],
            'uf': ['SC', 'SC'],
            'automovel': [10, 20],
            'motocicleta': [1, 2],
        })

        result = aggregate_fleet(df, 'M', groups={'fleet_motorcycles': ['motocicleta']})
        assert result['fleet_total'].iloc[0] == 33
        assert result['fleet_motorcycles'].iloc[0] == 3

    def test_aggregate_fleet_missing_group_raises(self, fleet_records):
        with pytest.raises(ValueError, match="fleet_trucks"):
            aggregate_fleet(fleet_records, 'Q', groups={'fleet_trucks': ['caminhao']})

    def test_aggregate_gdp_quarterly_to_annual(self, gdp_records):
        result = aggregate_gdp(gdp_records, 'Y')

        assert len(result) == 2
        assert result['gdp'].tolist() == pytest.approx([7.4e6, 8.8e6])
        assert 'area' not in result.columns

    def test_aggregate_gdp_quarter_labels(self):
        df = pd.DataFrame({'ano': [2021, 2021], 'trimestre': ['1º trimestre', '2º trimestre'], 'pib': [1.0, 2.0]})
        result = aggregate_gdp(df, 'Q')

        assert [str(p) for p in result['period']] == ['2021Q1', '2021Q2']

    def test_aggregate_gdp_monthly_raises(self, gdp_records):
        with pytest.raises(ValueError, match="disaggregate"):
            aggregate_gdp(gdp_records, 'M')

    def test_gdp_frequency(self, gdp_records):
        assert gdp_frequency(gdp_records) == 'Q'
        assert gdp_frequency(gdp_records.drop(columns='trimestre')) == 'Y'
        assert gdp_frequency(gdp_records, quarter_column='quarter') == 'Y'

    def test_aggregate_deaths_filters_transport_causes(self, death_records):
        result = aggregate_deaths(death_records, 'Y')
        expected = death_records['causabas'].eq('V031').groupby(death_records['codmunocor']).sum()

        by_area = result.groupby('area')['deaths_datasus'].sum()
        assert by_area['SP'] == expected['355030']
        assert by_area['RJ'] == expected['330455']
        assert by_area['PR'] == expected['410690']

    def test_aggregate_deaths_precounted(self):
        df = pd.DataFrame({
            'ano': [2020, 2020, 2020],
            'mes': [1, 2, 4],
            'uf': ['BA', 'BA', 'BA'],
            'obitos': [10, 12, 7],
        })

        result = aggregate_deaths(df, 'Q')
        assert result['deaths_datasus'].tolist() == [22, 7]

    def test_aggregate_deaths_without_uf_raises(self):
        df = pd.DataFrame({'dtobito': ['01012020']})
        with pytest.raises(ValueError, match="No UF column"):
            aggregate_deaths(df, 'M')


class TestRollupAndJoin:
    """Tests for geographic rollup and joins."""

    @pytest.fixture
    def state_table(self):
        periods = pd.period_range('2020Q1', periods=2, freq='Q')
        return pd.DataFrame({
            'period': pd.PeriodIndex(list(periods) * 3, freq='Q'),
            'area': ['SP', 'SP', 'RJ', 'RJ', 'PR', 'PR'],
            'accidents': [10, 20, 1, 2, 5, 5],
        })

    def test_rollup_region(self, state_table):
        result = rollup(state_table, 'regiao').set_index(['area', 'period'])

        assert result.loc[('Sudeste', pd.Period('2020Q1', 'Q')), 'accidents'] == 11
        assert result.loc[('Sul', pd.Period('2020Q2', 'Q')), 'accidents'] == 5

    def test_rollup_national(self, state_table):
        result = rollup(state_table, 'nacional')

        assert result['area'].unique().tolist() == ['BR']
        assert result['accidents'].tolist() == [16, 27]

    def test_rollup_unknown_level_raises(self, state_table):
        with pytest.raises(ValueError, match="Unknown level"):
            rollup(state_table, 'municipio')

    def test_inner_join_bounds(self, state_table):
        other = state_table[state_table['area'] != 'PR'].rename(columns={'accidents': 'deaths'})
        joined = join_observations([state_table, other], how='inner')

        assert len(joined) <= min(len(state_table), len(other))
        assert set(joined['area']) == {'SP', 'RJ'}

    def test_outer_join_bounds(self, state_table):
        other = state_table[state_table['area'] != 'PR'].rename(columns={'accidents': 'deaths'})
        joined = join_observations([state_table, other], how='outer')

        assert len(joined) >= max(len(state_table), len(other))
        assert joined.loc[joined['area'] == 'PR', 'deaths'].isna().all()

    def test_national_series_broadcast(self, state_table):
        gdp = pd.DataFrame({
            'period': pd.period_range('2020Q1', periods=2, freq='Q'),
            'gdp': [100.0, 200.0],
        })
        joined = join_observations([state_table, gdp])

        assert len(joined) == len(state_table)
        assert joined.loc[joined['period'] == pd.Period('2020Q2', 'Q'), 'gdp'].eq(200.0).all()

    def test_duplicate_columns_raise(self, state_table):
        with pytest.raises(ValueError, match="Duplicate"):
            join_observations([state_table, state_table.copy()])

    def test_mixed_frequencies_raise(self, state_table):
        monthly = pd.DataFrame({
            'period': pd.period_range('2020-01', periods=2, freq='M'),
            'gdp': [1.0, 2.0],
        })
        with pytest.raises(ValueError, match="mixed frequencies"):
            join_observations([state_table, monthly])


class TestObservationTable:
    """End-to-end reduction of the synthetic sources."""

    @pytest.mark.parametrize("level, n_areas", [('uf', 3), ('regiao', 2), ('nacional', 1)])
    def test_levels(self, raw_sources, level, n_areas):
        aggregated = aggregate_sources(raw_sources, 'Q')
        table = build_observation_table(aggregated, level)

        assert table['area'].nunique() == n_areas
        assert len(table) == 8 * n_areas
        for col in ('accidents', 'fleet_total', 'gdp', 'deaths_datasus'):
            assert table[col].notna().all()

    def test_national_equals_sum_of_states(self, raw_sources):
        aggregated = aggregate_sources(raw_sources, 'Q')
        states = build_observation_table(aggregated, 'uf')
        nation = build_observation_table(aggregated, 'nacional')

        summed = states.groupby('period')['deaths_prf'].sum()
        np.testing.assert_array_equal(nation.set_index('period')['deaths_prf'], summed)

    def test_monthly_table_leaves_out_gdp(self, raw_sources):
        aggregated = aggregate_sources(raw_sources, 'M')
        table = build_observation_table(aggregated, 'nacional')

        assert 'gdp' not in table.columns
        assert len(table) == 24

    def test_annual_gdp_left_out_of_quarterly_table(self, raw_sources):
        """Test that an annual GDP series does not halt a quarterly run."""
        sources = dict(raw_sources, gdp=raw_sources['gdp'].drop(columns='trimestre'))

        aggregated = aggregate_sources(sources, 'Q')
        table = build_observation_table(aggregated, 'nacional')

        assert 'gdp' not in aggregated
        assert 'gdp' not in table.columns
        assert len(table) == 8

    def test_annual_gdp_kept_in_annual_table(self, raw_sources):
        sources = dict(raw_sources, gdp=raw_sources['gdp'].drop(columns='trimestre'))

        aggregated = aggregate_sources(sources, 'Y')

        assert aggregated['gdp']['gdp'].tolist() == pytest.approx([7.4e6, 8.8e6])
