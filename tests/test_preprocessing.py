"""
Test Suite for Preprocessing Module
===================================

Tests for the RegressionPreprocessor class and preprocessing functions.
"""

import pytest
import numpy as np
import pandas as pd
import tempfile
import os

from traffic_deaths.preprocessing import RegressionPreprocessor, check_train_split, preprocess_pipeline

from conftest import PREDICTORS


class TestRegressionPreprocessor:
    """Tests for RegressionPreprocessor class."""

    @pytest.fixture
    def preprocessor(self):
        """Create a preprocessor instance."""
        return RegressionPreprocessor(
            response='deaths_datasus',
            predictors=PREDICTORS,
            train_split=0.75
        )

    def test_init(self, preprocessor):
        """Test preprocessor initialization."""
        assert preprocessor.response == 'deaths_datasus'
        assert preprocessor.predictors == PREDICTORS
        assert preprocessor.train_split == 0.75
        assert preprocessor._is_fitted == False

    @pytest.mark.parametrize("split", [0, -0.1, 1.0, 1.5])
    def test_invalid_split(self, split):
        """Test that out-of-range train_split values are rejected."""
        with pytest.raises(ValueError, match="train_split"):
            RegressionPreprocessor(train_split=split)

    def test_build_dataset(self, preprocessor, observation_table):
        """Test column selection and ordering."""
        dataset = preprocessor.build_dataset(observation_table)

        assert list(dataset.columns) == ['period', 'area', 'deaths_datasus'] + PREDICTORS
        assert len(dataset) == len(observation_table)
        assert dataset['area'].tolist() == sorted(dataset['area'].tolist())
        assert preprocessor._is_fitted == True

    def test_build_dataset_drops_incomplete_rows(self, preprocessor, observation_table):
        """Test that rows with missing values are dropped."""
        table = observation_table.copy()
        table.loc[[0, 5], 'gdp'] = np.nan
        table.loc[7, 'deaths_datasus'] = np.nan

        dataset = preprocessor.build_dataset(table)

        assert len(dataset) == len(table) - 3
        assert not dataset.isnull().any().any()

    def test_missing_predictor_is_dropped(self, preprocessor, observation_table):
        """Test that absent predictors are dropped and recorded."""
        dataset = preprocessor.build_dataset(observation_table.drop(columns=['gdp']))

        assert preprocessor.dropped_predictors == ['gdp']
        assert 'gdp' not in preprocessor.predictors
        assert 'gdp' not in dataset.columns

    def test_missing_response_raises(self, preprocessor, observation_table):
        """Test that a missing response column is an error."""
        with pytest.raises(ValueError, match="Response column"):
            preprocessor.build_dataset(observation_table.drop(columns=['deaths_datasus']))

    def test_no_predictors_raises(self, observation_table):
        preprocessor = RegressionPreprocessor(predictors=['not_a_column'])
        with pytest.raises(ValueError, match="No predictor"):
            preprocessor.build_dataset(observation_table)

    def test_national_table_without_area(self, preprocessor, observation_table):
        """Test that a table without areas becomes a single 'BR' partition."""
        national = observation_table[observation_table['area'] == 'SP'].drop(columns=['area'])
        dataset = preprocessor.build_dataset(national)

        assert dataset['area'].unique().tolist() == ['BR']

    def test_split_before_build(self, preprocessor, observation_table):
        """Test that split raises error before build_dataset."""
        with pytest.raises(ValueError, match="build_dataset"):
            preprocessor.split(observation_table)

    def test_chronological_split(self, preprocessor, observation_table):
        """Test that each area keeps its earliest periods for training."""
        dataset = preprocessor.build_dataset(observation_table)
        train, test = preprocessor.split(dataset)

        assert len(train) + len(test) == len(dataset)
        for area in ('SP', 'RJ', 'MG'):
            area_train = train[train['area'] == area]
            area_test = test[test['area'] == area]
            # 24 quarters, 75% -> 18 / 6
            assert len(area_train) == 18
            assert len(area_test) == 6
            assert area_train['period'].max() < area_test['period'].min()

    def test_split_sizes_round_down(self, observation_table):
        preprocessor = RegressionPreprocessor(predictors=PREDICTORS, train_split=0.8)
        dataset = preprocessor.build_dataset(observation_table)
        train, test = preprocessor.split(dataset)

        # int(24 * 0.8) == 19 per area
        assert train.groupby('area').size().eq(19).all()
        assert test.groupby('area').size().eq(5).all()

    def test_full_train_split_rejected(self):
        """Test that train_split=1 is rejected since it would leave no test rows."""
        with pytest.raises(ValueError, match=r"\(0, 1\)"):
            RegressionPreprocessor(predictors=PREDICTORS, train_split=1.0)

    def test_check_train_split(self):
        assert check_train_split(0.75) == 0.75
        with pytest.raises(ValueError, match="train_split"):
            check_train_split(1)

    def test_shuffled_split_is_reproducible(self, observation_table):
        """Test that a seeded shuffle gives the same partition twice."""
        results = []
        for _ in range(2):
            preprocessor = RegressionPreprocessor(
                predictors=PREDICTORS, train_split=0.75, shuffle=True, random_state=3
            )
            dataset = preprocessor.build_dataset(observation_table)
            results.append(preprocessor.split(dataset))

        pd.testing.assert_frame_equal(results[0][0], results[1][0])
        pd.testing.assert_frame_equal(results[0][1], results[1][1])

        train, test = results[0]
        assert len(train) == 54
        merged = pd.concat([train, test])
        assert not merged.duplicated(['area', 'period']).any()

    def test_save_load(self, preprocessor, observation_table):
        """Test saving and loading preprocessor."""
        preprocessor.build_dataset(observation_table.drop(columns=['gdp']))

        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, 'preprocessor.joblib')
            preprocessor.save(filepath)

            loaded = RegressionPreprocessor.load(filepath)

            assert loaded.response == preprocessor.response
            assert loaded.predictors == preprocessor.predictors
            assert loaded.dropped_predictors == ['gdp']
            assert loaded._is_fitted == True


class TestPreprocessPipeline:
    """Tests for the preprocess_pipeline function."""

    def test_pipeline_output(self, observation_table):
        """Test pipeline returns expected outputs."""
        config = {
            'regression': {
                'response': 'deaths_datasus',
                'predictors': PREDICTORS,
                'train_split': 0.75,
            }
        }

        result = preprocess_pipeline(observation_table, config)

        assert 'dataset' in result
        assert 'train' in result
        assert 'test' in result
        assert 'preprocessor' in result

        assert len(result['train']) == 54
        assert len(result['test']) == 18

    def test_pipeline_defaults(self, observation_table):
        """Test pipeline without a config."""
        result = preprocess_pipeline(observation_table)

        assert result['preprocessor'].response == 'deaths_datasus'
        assert result['preprocessor'].train_split == 0.8

    def test_pipeline_saves_preprocessor(self, observation_table, tmp_path):
        path = tmp_path / 'prep.joblib'
        preprocess_pipeline(observation_table, save_preprocessor=str(path))

        assert path.exists()
