"""
Data Preprocessing Module
=========================

Builds the regression dataset from the observation table and splits it into
train and test sets, independently for every geographic partition.

Classes:
    - RegressionPreprocessor: Column selection, cleaning and train/test split

Functions:
    - preprocess_pipeline: Complete preprocessing for one observation table
"""

import logging
from typing import Dict, Any, Tuple, Optional, List

import numpy as np
import pandas as pd
import joblib

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE = 'deaths_datasus'
DEFAULT_PREDICTORS = ['fleet_total', 'fleet_motorcycles', 'gdp', 'accidents', 'fatal_accidents', 'injured']


def check_train_split(train_split: float) -> float:
    """Both sets must be non-empty, so the split is strictly between 0 and 1."""
    if not 0 < train_split < 1:
        raise ValueError(f"train_split must be in (0, 1), got {train_split}")
    return train_split


class RegressionPreprocessor:
    """
    Prepares (period, area) observations for per-area regression.

    The split is made inside each area so that every partition contributes
    to both sets. Without shuffling, the most recent periods of each area
    form the test set.
    """

    def __init__(
        self,
        response: str = DEFAULT_RESPONSE,
        predictors: Optional[List[str]] = None,
        train_split: float = 0.8,
        shuffle: bool = False,
        random_state: int = 42,
        partition_column: str = 'area'
    ):
        """
        Initialize the preprocessor.

        Args:
            response: Column to predict
            predictors: Numeric predictor columns
            train_split: Fraction of each partition used for training
            shuffle: Draw the training rows at random instead of chronologically
            random_state: Seed used when shuffling
            partition_column: Column identifying the geographic partition
        """
        check_train_split(train_split)

        self.response = response
        self.predictors = list(predictors) if predictors is not None else list(DEFAULT_PREDICTORS)
        self.train_split = train_split
        self.shuffle = shuffle
        self.random_state = random_state
        self.partition_column = partition_column

        self.dropped_predictors: List[str] = []
        self._is_fitted = False

    @property
    def columns(self) -> List[str]:
        return ['period', self.partition_column, self.response] + self.predictors

    def build_dataset(self, table: pd.DataFrame) -> pd.DataFrame:
        """
        Select the regression columns and drop incomplete rows.

        Predictors absent from the table (e.g. GDP in a monthly table) are
        dropped with a warning; a missing response is an error.

        Args:
            table: Observation table

        Returns:
            Regression dataset sorted by (area, period)
        """
        if self.response not in table.columns:
            raise ValueError(f"Response column '{self.response}' not in table: {list(table.columns)}")

        self.dropped_predictors = [p for p in self.predictors if p not in table.columns]
        if self.dropped_predictors:
            logger.warning(f"Predictors not available, dropping: {self.dropped_predictors}")
            self.predictors = [p for p in self.predictors if p in table.columns]

        if not self.predictors:
            raise ValueError("No predictor columns available")

        dataset = table.copy()
        if self.partition_column not in dataset.columns:
            dataset[self.partition_column] = 'BR'

        dataset = dataset[self.columns]
        incomplete = dataset.isnull().any(axis=1)
        if incomplete.any():
            logger.info(f"Dropping {int(incomplete.sum())} incomplete rows")
        dataset = dataset[~incomplete].copy()

        dataset[self.predictors] = dataset[self.predictors].astype(float)
        dataset[self.response] = dataset[self.response].astype(float)

        self._is_fitted = True
        return dataset.sort_values([self.partition_column, 'period']).reset_index(drop=True)

    def _split_partition(self, group: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        n_train = int(len(group) * self.train_split)

        if self.shuffle:
            rng = np.random.default_rng(self.random_state)
            order = rng.permutation(len(group))
            train = group.iloc[np.sort(order[:n_train])]
            test = group.iloc[np.sort(order[n_train:])]
        else:
            train = group.iloc[:n_train]
            test = group.iloc[n_train:]

        return train, test

    def split(self, dataset: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Split each partition into train and test sets.

        Args:
            dataset: Output of build_dataset

        Returns:
            Tuple of (train, test)
        """
        if not self._is_fitted:
            raise ValueError("Preprocessor must build a dataset before split. Call build_dataset() first.")

        train_parts, test_parts = [], []
        for _, group in dataset.groupby(self.partition_column, sort=True):
            train, test = self._split_partition(group.sort_values('period'))
            train_parts.append(train)
            test_parts.append(test)

        train = pd.concat(train_parts).reset_index(drop=True) if train_parts else dataset.iloc[0:0]
        test = pd.concat(test_parts).reset_index(drop=True) if test_parts else dataset.iloc[0:0]

        logger.info(f"Train/Test split: {len(train)} train rows, {len(test)} test rows")
        return train, test

    def save(self, filepath: str) -> None:
        """
        Save the preprocessor state to disk.

        Args:
            filepath: Path to save the preprocessor
        """
        state = {
            'response': self.response,
            'predictors': self.predictors,
            'train_split': self.train_split,
            'shuffle': self.shuffle,
            'random_state': self.random_state,
            'partition_column': self.partition_column,
            'dropped_predictors': self.dropped_predictors,
            '_is_fitted': self._is_fitted
        }
        joblib.dump(state, filepath)
        logger.info(f"Preprocessor saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'RegressionPreprocessor':
        """
        Load a preprocessor from disk.

        Args:
            filepath: Path to the saved preprocessor

        Returns:
            Loaded RegressionPreprocessor instance
        """
        state = joblib.load(filepath)

        preprocessor = cls(
            response=state['response'],
            predictors=state['predictors'],
            train_split=state['train_split'],
            shuffle=state['shuffle'],
            random_state=state['random_state'],
            partition_column=state['partition_column']
        )
        preprocessor.dropped_predictors = state['dropped_predictors']
        preprocessor._is_fitted = state['_is_fitted']

        logger.info(f"Preprocessor loaded from {filepath}")
        return preprocessor


def preprocess_pipeline(
    table: pd.DataFrame,
    config: Optional[Dict[str, Any]] = None,
    save_preprocessor: Optional[str] = None
) -> Dict[str, Any]:
    """
    Complete preprocessing for one observation table.

    Args:
        table: Observation table from build_observation_table
        config: Configuration dictionary (reads the 'regression' section)
        save_preprocessor: Path to save the preprocessor

    Returns:
        Dictionary containing:
            - dataset: Full regression dataset
            - train, test: Split datasets
            - preprocessor: The RegressionPreprocessor used
    """
    reg_config = (config or {}).get('regression', {})

    logger.info("=" * 60)
    logger.info("STARTING DATA PREPROCESSING")
    logger.info("=" * 60)

    preprocessor = RegressionPreprocessor(
        response=reg_config.get('response', DEFAULT_RESPONSE),
        predictors=reg_config.get('predictors', DEFAULT_PREDICTORS),
        train_split=reg_config.get('train_split', 0.8),
        shuffle=reg_config.get('shuffle', False),
        random_state=reg_config.get('random_state', 42)
    )

    dataset = preprocessor.build_dataset(table)
    train, test = preprocessor.split(dataset)

    if save_preprocessor:
        preprocessor.save(save_preprocessor)

    logger.info("=" * 60)
    logger.info("PREPROCESSING COMPLETE")
    logger.info(f"  Response: {preprocessor.response}")
    logger.info(f"  Predictors: {preprocessor.predictors}")
    logger.info(f"  Partitions: {dataset[preprocessor.partition_column].nunique()}")
    logger.info("=" * 60)

    return {
        'dataset': dataset,
        'train': train,
        'test': test,
        'preprocessor': preprocessor
    }


def print_preprocessing_summary(result: Dict[str, Any]) -> None:
    """
    Print a summary of the preprocessing results.

    Args:
        result: Dictionary from preprocess_pipeline
    """
    preprocessor = result['preprocessor']
    print("\n" + "=" * 50)
    print("PREPROCESSING SUMMARY")
    print("=" * 50)
    print(f"Dataset rows: {len(result['dataset'])}")
    print(f"Training rows: {len(result['train'])}")
    print(f"Test rows: {len(result['test'])}")
    print(f"Partitions: {result['dataset'][preprocessor.partition_column].nunique()}")
    print(f"\nResponse: {preprocessor.response}")
    print(f"Predictors: {', '.join(preprocessor.predictors)}")
    print(f"Train/Test split: {preprocessor.train_split}")
    print("=" * 50 + "\n")
