"""
Prediction Module
=================

Turns fitted partition models into prediction records: the input row plus
the point estimate and the lower/upper interval bounds.

Features:
    - Confidence or prediction intervals from the OLS fit
    - Records for training and test rows, tagged by split
    - Export predictions to CSV
    - Prediction report generation (JSON)
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from .evaluation import plot_prediction_timeline
from .model import PartitionedOLSModel

logger = logging.getLogger(__name__)


def predict_with_intervals(
    model: PartitionedOLSModel,
    df: pd.DataFrame,
    confidence_level: float = 0.95,
    kind: str = 'confidence'
) -> pd.DataFrame:
    """
    Prediction records for a set of rows.

    Args:
        model: Trained partition models
        df: Rows with partition and predictor columns
        confidence_level: Interval coverage
        kind: 'confidence' or 'prediction'

    Returns:
        Input rows plus predicted, lower and upper

    Raises:
        ValueError: If any prediction is not finite
    """
    records = model.predict(df, confidence_level=confidence_level, kind=kind)

    if not np.isfinite(records['predicted'].to_numpy(dtype=float)).all():
        raise ValueError("Model produced non-finite predictions")

    return records


def build_prediction_records(
    model: PartitionedOLSModel,
    train: pd.DataFrame,
    test: pd.DataFrame,
    confidence_level: float = 0.95,
    kind: str = 'confidence'
) -> pd.DataFrame:
    """
    Prediction records for training and test rows, tagged in a 'split' column.

    Returns:
        Records sorted by (area, period)
    """
    parts = []
    for name, rows in (('train', train), ('test', test)):
        if rows.empty:
            continue
        parts.append(predict_with_intervals(model, rows, confidence_level, kind).assign(split=name))

    records = pd.concat(parts, ignore_index=True)
    return records.sort_values([model.partition_column, 'period']).reset_index(drop=True)


def export_predictions(
    records: pd.DataFrame,
    output_path: str,
    name: str = "predictions",
    include_timestamp: bool = False
) -> str:
    """
    Export prediction records to CSV.

    Args:
        records: Prediction records
        output_path: Directory to save the file
        name: Base file name (e.g. the geographic level)
        include_timestamp: Whether to add timestamp to filename

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.mkdir(parents=True, exist_ok=True)

    if include_timestamp:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{name}_{timestamp}.csv"
    else:
        filename = f"{name}.csv"

    out = records.copy()
    out['period'] = out['period'].astype(str)

    filepath = output_path / filename
    out.to_csv(filepath, index=False)

    logger.info(f"Predictions exported to {filepath}")
    return str(filepath)


def _json_number(value) -> Optional[float]:
    """Float for the JSON report; NaN and infinities become null."""
    value = float(value)
    return value if np.isfinite(value) else None


def generate_prediction_report(
    records: pd.DataFrame,
    response: str,
    metrics: Optional[pd.DataFrame] = None,
    confidence_level: float = 0.95,
    partition_column: str = 'area',
    output_path: Optional[str] = None
) -> Dict[str, Any]:
    """
    Summarize the latest prediction of every partition.

    Args:
        records: Prediction records
        response: Observed response column
        metrics: Test-set metrics per partition (optional)
        confidence_level: Interval coverage used for the records
        partition_column: Partition column
        output_path: Path to save the report as JSON (optional)

    Returns:
        Report dictionary
    """
    report = {
        'generated_at': datetime.now().isoformat(),
        'response': response,
        'confidence_level': confidence_level,
        'predictions': {},
    }

    metrics_by_area = {}
    if metrics is not None:
        metrics_by_area = metrics.set_index(partition_column).to_dict(orient='index')

    for area, group in records.groupby(partition_column, sort=True):
        latest = group.sort_values('period').iloc[-1]
        area_report = {
            'period': str(latest['period']),
            'observed': _json_number(latest[response]),
            'predicted': _json_number(latest['predicted']),
            'lower_bound': _json_number(latest['lower']),
            'upper_bound': _json_number(latest['upper']),
        }
        if area in metrics_by_area:
            area_report['test_rmse'] = _json_number(metrics_by_area[area]['rmse'])
            area_report['test_r2'] = _json_number(metrics_by_area[area]['r2'])

        report['predictions'][str(area)] = area_report

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2, allow_nan=False)
        logger.info(f"Prediction report saved to {output_path}")

    return report


def run_final_prediction(
    model: PartitionedOLSModel,
    prep_result: Dict[str, Any],
    metrics: Optional[pd.DataFrame] = None,
    output_dir: str = "data/predictions/",
    level: str = "nacional",
    confidence_level: float = 0.95,
    kind: str = 'confidence',
    figures_dir: Optional[str] = None
) -> Dict[str, Any]:
    """
    Execute the prediction workflow for one geographic level.

    This function:
    1. Predicts every training and test row with interval bounds
    2. Exports the records to CSV
    3. Writes a JSON report with the latest prediction per partition
    4. Plots the timeline of every partition (when figures_dir is given)

    Args:
        model: Trained partition models
        prep_result: Output of preprocess_pipeline
        metrics: Test-set metrics per partition
        output_dir: Directory for output files
        level: Geographic level, used in file names
        confidence_level: Interval coverage
        kind: 'confidence' or 'prediction'
        figures_dir: Directory for the timeline figure (optional)

    Returns:
        Dictionary containing records, report and file paths
    """
    logger.info("=" * 60)
    logger.info(f"STARTING PREDICTION ({level})")
    logger.info("=" * 60)

    records = build_prediction_records(
        model, prep_result['train'], prep_result['test'], confidence_level, kind
    )

    csv_path = export_predictions(records, output_dir, name=f"predictions_{level}")

    report_path = Path(output_dir) / f"prediction_report_{level}.json"
    report = generate_prediction_report(
        records, model.response, metrics, confidence_level,
        partition_column=model.partition_column, output_path=str(report_path)
    )

    timeline_figure = None
    if figures_dir:
        figures_dir = Path(figures_dir)
        figures_dir.mkdir(parents=True, exist_ok=True)
        timeline_figure = str(figures_dir / f"timeline_{level}.png")

        train_end = (
            prep_result['train'].groupby(model.partition_column)['period'].max().astype(str).to_dict()
        )
        n_rows = -(-records[model.partition_column].nunique() // 3)
        plot_prediction_timeline(
            records, model.response, model.partition_column, train_end=train_end,
            figsize=(14, max(4, 3 * n_rows)), save_path=timeline_figure
        )
        plt.close('all')

    logger.info("=" * 60)
    logger.info("PREDICTION COMPLETE")
    logger.info(f"  Records: {len(records)}")
    logger.info(f"  Output: {csv_path}")
    logger.info("=" * 60)

    return {
        'records': records,
        'level': level,
        'interval_kind': kind,
        'confidence_level': confidence_level,
        'csv_path': csv_path,
        'report_path': str(report_path),
        'timeline_figure': timeline_figure,
        'report': report
    }


def print_prediction_results(result: Dict[str, Any]) -> None:
    """
    Print the latest prediction of every partition.

    Args:
        result: Result dictionary from run_final_prediction
    """
    report = result['report']
    pct = int(round(result['confidence_level'] * 100))

    print("\n" + "=" * 78)
    print(f"PREDICTION RESULTS - {result['level'].upper()} ({report['response']})")
    print("=" * 78)
    print(f"\n{'Partition':<15} {'Period':<10} {'Observed':<12} {'Predicted':<12} "
          f"{f'{pct}% Lower':<12} {f'{pct}% Upper':<12}")
    print("-" * 78)

    for area, item in report['predictions'].items():
        print(f"{area:<15} {item['period']:<10} {item['observed']:<12.1f} {item['predicted']:<12.1f} "
              f"{item['lower_bound']:<12.1f} {item['upper_bound']:<12.1f}")

    print("-" * 78)
    print(f"\nPredictions exported to: {result['csv_path']}")
    print(f"Full report saved to: {result['report_path']}")
    print(f"\nNote: bounds are {result['interval_kind']} intervals from the OLS fit.")
    print("=" * 78 + "\n")
