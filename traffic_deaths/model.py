"""
Model Training Module
=====================

Ordinary least squares regression of traffic deaths on standardized
predictors, fitted independently for every geographic partition.

Features:
    - StandardScaler (fitted on training rows) + statsmodels OLS with intercept
    - Confidence and prediction intervals for new rows
    - One model per partition (state, region or country)
    - Model persistence (save/load)
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from datetime import datetime

import numpy as np
import pandas as pd
import joblib
import statsmodels.api as sm
from sklearn.preprocessing import StandardScaler

logger = logging.getLogger(__name__)

INTERVAL_KINDS = ('confidence', 'prediction')


class OLSRegressionModel:
    """
    Linear model fitted by ordinary least squares.

    Predictors are standardized with the training mean and deviation, so
    the coefficients are comparable across predictors.
    """

    def __init__(self, normalize: bool = True):
        """
        Initialize the model.

        Args:
            normalize: Whether to standardize predictors before fitting
        """
        self.normalize = normalize

        self.scaler: Optional[StandardScaler] = None
        self.results = None
        self.feature_names_: Optional[List[str]] = None
        self.training_info: Dict[str, Any] = {}
        self._is_fitted = False

    def _design_matrix(self, X: pd.DataFrame) -> pd.DataFrame:
        values = X[self.feature_names_].to_numpy(dtype=float)
        if self.scaler is not None:
            values = self.scaler.transform(values)
        design = pd.DataFrame(values, columns=self.feature_names_, index=X.index)
        return sm.add_constant(design, has_constant='add')

    def fit(self, X: pd.DataFrame, y: pd.Series) -> 'OLSRegressionModel':
        """
        Fit the model.

        Args:
            X: Predictor columns
            y: Response values

        Returns:
            Self for method chaining

        Raises:
            ValueError: If there are not more rows than parameters
        """
        n_params = X.shape[1] + 1
        if len(X) <= n_params:
            raise ValueError(
                f"Need more than {n_params} training rows for {X.shape[1]} predictors, got {len(X)}"
            )

        start_time = datetime.now()
        self.feature_names_ = list(X.columns)

        if self.normalize:
            self.scaler = StandardScaler()
            self.scaler.fit(X.to_numpy(dtype=float))

        self.results = sm.OLS(np.asarray(y, dtype=float), self._design_matrix(X)).fit()

        self.training_info = {
            'training_duration_seconds': (datetime.now() - start_time).total_seconds(),
            'n_samples': int(len(X)),
            'n_features': int(X.shape[1]),
            'trained_at': datetime.now().isoformat(),
        }
        self._is_fitted = True
        return self

    def _check_fitted(self) -> None:
        if not self._is_fitted:
            raise ValueError("Model must be trained before prediction. Call fit() first.")

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        """
        Point predictions.

        Args:
            X: Predictor columns (same names as in training)

        Returns:
            Predictions array of shape (n_samples,)
        """
        self._check_fitted()
        return np.asarray(self.results.predict(self._design_matrix(X)))

    def predict_interval(
        self,
        X: pd.DataFrame,
        confidence_level: float = 0.95,
        kind: str = 'confidence'
    ) -> pd.DataFrame:
        """
        Point predictions with interval bounds.

        'confidence' bounds the mean response; 'prediction' bounds a new
        observation and is always the wider of the two.

        Args:
            X: Predictor columns
            confidence_level: Interval coverage (e.g. 0.95)
            kind: 'confidence' or 'prediction'

        Returns:
            DataFrame indexed like X with predicted, lower and upper columns
        """
        self._check_fitted()
        if kind not in INTERVAL_KINDS:
            raise ValueError(f"Unknown interval kind '{kind}'. Choose from: {INTERVAL_KINDS}")
        if not 0 < confidence_level < 1:
            raise ValueError(f"confidence_level must be in (0, 1), got {confidence_level}")

        frame = self.results.get_prediction(self._design_matrix(X)).summary_frame(alpha=1 - confidence_level)
        prefix = 'mean_ci' if kind == 'confidence' else 'obs_ci'

        return pd.DataFrame({
            'predicted': frame['mean'].to_numpy(),
            'lower': frame[f'{prefix}_lower'].to_numpy(),
            'upper': frame[f'{prefix}_upper'].to_numpy(),
        }, index=X.index)

    def coefficients(self) -> pd.DataFrame:
        """Coefficient table: estimate, standard error, t statistic, p-value."""
        self._check_fitted()
        return pd.DataFrame({
            'coef': self.results.params,
            'std_err': self.results.bse,
            't': self.results.tvalues,
            'p_value': self.results.pvalues,
        })

    def summary(self) -> Dict[str, float]:
        """In-sample fit statistics."""
        self._check_fitted()
        return {
            'r2': float(self.results.rsquared),
            'adj_r2': float(self.results.rsquared_adj),
            'aic': float(self.results.aic),
            'bic': float(self.results.bic),
            'sigma': float(np.sqrt(self.results.scale)),
            'n_obs': int(self.results.nobs),
        }

    def save(self, filepath: str) -> None:
        """
        Save the trained model to disk.

        Args:
            filepath: Path to save the model
        """
        if not self._is_fitted:
            raise ValueError("Cannot save untrained model.")

        state = {
            'normalize': self.normalize,
            'scaler': self.scaler,
            'results': self.results,
            'feature_names_': self.feature_names_,
            'training_info': self.training_info,
            '_is_fitted': self._is_fitted
        }

        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'OLSRegressionModel':
        """
        Load a trained model from disk.

        Args:
            filepath: Path to the saved model

        Returns:
            Loaded OLSRegressionModel instance
        """
        state = joblib.load(filepath)

        model = cls(normalize=state['normalize'])
        model.scaler = state['scaler']
        model.results = state['results']
        model.feature_names_ = state['feature_names_']
        model.training_info = state['training_info']
        model._is_fitted = state['_is_fitted']

        logger.info(f"Model loaded from {filepath}")
        return model


class PartitionedOLSModel:
    """
    One independent OLSRegressionModel per geographic partition.

    Partitions with too few training rows are skipped and reported in
    `skipped`; predicting for them yields no records.
    """

    def __init__(self, partition_column: str = 'area', normalize: bool = True):
        self.partition_column = partition_column
        self.normalize = normalize

        self.models: Dict[str, OLSRegressionModel] = {}
        self.skipped: Dict[str, str] = {}
        self.response: Optional[str] = None
        self.predictors: Optional[List[str]] = None
        self._is_fitted = False

    @property
    def partitions(self) -> List[str]:
        return sorted(self.models)

    def fit(
        self,
        train: pd.DataFrame,
        response: str,
        predictors: List[str]
    ) -> 'PartitionedOLSModel':
        """
        Fit one model per partition.

        Args:
            train: Training rows with partition, response and predictor columns
            response: Response column
            predictors: Predictor columns

        Returns:
            Self for method chaining

        Raises:
            ValueError: If no partition could be fitted
        """
        logger.info("=" * 60)
        logger.info("STARTING MODEL TRAINING")
        logger.info("=" * 60)
        logger.info(f"Response: {response} | Predictors: {predictors}")

        self.response = response
        self.predictors = list(predictors)
        self.models = {}
        self.skipped = {}

        for area, group in train.groupby(self.partition_column, sort=True):
            model = OLSRegressionModel(normalize=self.normalize)
            try:
                model.fit(group[self.predictors], group[response])
            except ValueError as e:
                logger.warning(f"Skipping partition {area}: {e}")
                self.skipped[area] = str(e)
                continue

            self.models[area] = model
            logger.info(f"  {area}: n={len(group)}, R²={model.summary()['r2']:.4f}")

        if not self.models:
            raise ValueError(f"No partition could be fitted: {self.skipped}")

        self._is_fitted = True

        logger.info("=" * 60)
        logger.info(f"MODEL TRAINING COMPLETE: {len(self.models)} models, {len(self.skipped)} skipped")
        logger.info("=" * 60)
        return self

    def predict(
        self,
        df: pd.DataFrame,
        confidence_level: float = 0.95,
        kind: str = 'confidence'
    ) -> pd.DataFrame:
        """
        Prediction records for every row whose partition has a model.

        Args:
            df: Rows with partition and predictor columns
            confidence_level: Interval coverage
            kind: 'confidence' or 'prediction'

        Returns:
            Input rows plus predicted, lower and upper columns
        """
        if not self._is_fitted:
            raise ValueError("Model must be trained before prediction. Call fit() first.")

        parts = []
        for area, group in df.groupby(self.partition_column, sort=True):
            model = self.models.get(area)
            if model is None:
                logger.warning(f"No model for partition {area}; {len(group)} rows not predicted")
                continue
            intervals = model.predict_interval(group[self.predictors], confidence_level, kind)
            parts.append(group.join(intervals))

        if not parts:
            return df.iloc[0:0].assign(predicted=[], lower=[], upper=[])

        return pd.concat(parts).reset_index(drop=True)

    def coefficients_table(self) -> pd.DataFrame:
        """Coefficients of every partition model in long format."""
        frames = []
        for area in self.partitions:
            coefs = self.models[area].coefficients()
            coefs.index.name = 'term'
            frames.append(coefs.reset_index().assign(**{self.partition_column: area}))

        table = pd.concat(frames, ignore_index=True)
        return table[[self.partition_column, 'term', 'coef', 'std_err', 't', 'p_value']]

    def summary_table(self) -> pd.DataFrame:
        """In-sample fit statistics, one row per partition."""
        rows = [{self.partition_column: area, **self.models[area].summary()} for area in self.partitions]
        return pd.DataFrame(rows)

    def save(self, filepath: str) -> None:
        """Save all partition models to one file."""
        if not self._is_fitted:
            raise ValueError("Cannot save untrained model.")

        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self, filepath)
        logger.info(f"Partitioned model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'PartitionedOLSModel':
        model = joblib.load(filepath)
        if not isinstance(model, cls):
            raise ValueError(f"{filepath} does not hold a {cls.__name__}")
        logger.info(f"Partitioned model loaded from {filepath}")
        return model


def train_model(
    train: pd.DataFrame,
    response: str,
    predictors: List[str],
    config: Dict[str, Any],
    save_path: Optional[str] = None
) -> PartitionedOLSModel:
    """
    Train per-partition models using configuration parameters.

    Args:
        train: Training rows
        response: Response column
        predictors: Predictor columns
        config: Configuration dictionary (reads the 'model' section)
        save_path: Path to save the trained models (optional)

    Returns:
        Trained PartitionedOLSModel
    """
    model_config = config.get('model', {})

    model = PartitionedOLSModel(normalize=model_config.get('normalize', True))
    model.fit(train, response, predictors)

    if save_path:
        model.save(save_path)

    return model


def print_model_summary(model: PartitionedOLSModel) -> None:
    """
    Print a summary of the trained models.

    Args:
        model: Trained model instance
    """
    print("\n" + "=" * 60)
    print("MODEL SUMMARY")
    print("=" * 60)
    print("Model Type: OLS per partition (statsmodels)")
    print(f"Response: {model.response}")
    print(f"Predictors: {', '.join(model.predictors or [])}")
    print(f"Standardized predictors: {model.normalize}")
    print(f"\n{'Partition':<15} {'n':<6} {'R²':<10} {'Adj. R²':<10} {'Sigma':<12}")
    print("-" * 60)

    for row in model.summary_table().itertuples(index=False):
        row = row._asdict()
        print(f"{str(row[model.partition_column]):<15} {row['n_obs']:<6} "
              f"{row['r2']:<10.4f} {row['adj_r2']:<10.4f} {row['sigma']:<12.2f}")

    if model.skipped:
        print(f"\nSkipped partitions: {', '.join(map(str, model.skipped))}")

    print("=" * 60 + "\n")
