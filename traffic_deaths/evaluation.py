"""
Model Evaluation Module
=======================

Provides evaluation metrics and visualizations for the partition models.

Features:
    - RMSE, MAE, R² per partition and overall
    - Actual vs Predicted plots
    - Prediction timeline with interval bands
    - Residual analysis
    - Evaluation report generation
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import mean_squared_error, mean_absolute_error, r2_score

logger = logging.getLogger(__name__)


def calculate_metrics(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    """
    Calculate regression metrics for one set of predictions.

    R² is NaN when fewer than two observations are available.

    Args:
        y_true: Observed values
        y_pred: Predicted values

    Returns:
        Dictionary with rmse, mae, r2, mape, mean_error, max_error and n_samples
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)

    if len(y_true) == 0:
        raise ValueError("Cannot compute metrics on an empty set")

    errors = y_true - y_pred
    nonzero = y_true != 0

    return {
        'rmse': float(np.sqrt(mean_squared_error(y_true, y_pred))),
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'r2': float(r2_score(y_true, y_pred)) if len(y_true) > 1 else float('nan'),
        'mape': float(np.mean(np.abs(errors[nonzero] / y_true[nonzero])) * 100) if nonzero.any() else float('nan'),
        'mean_error': float(np.mean(errors)),
        'max_error': float(np.max(np.abs(errors))),
        'n_samples': int(len(y_true))
    }


def calculate_partition_metrics(
    records: pd.DataFrame,
    response: str,
    partition_column: str = 'area'
) -> pd.DataFrame:
    """
    Metrics per partition plus an 'overall' row over all records.

    Args:
        records: Prediction records with the response and 'predicted'
        response: Observed response column
        partition_column: Partition column

    Returns:
        DataFrame with one row per partition
    """
    rows = []
    for area, group in records.groupby(partition_column, sort=True):
        rows.append({partition_column: area, **calculate_metrics(group[response], group['predicted'])})

    rows.append({partition_column: 'overall', **calculate_metrics(records[response], records['predicted'])})
    return pd.DataFrame(rows)


def _grid(n_panels: int, figsize: Tuple[int, int]):
    n_cols = min(n_panels, 3)
    n_rows = int(np.ceil(n_panels / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize, squeeze=False)
    axes = axes.flatten()
    for idx in range(n_panels, len(axes)):
        axes[idx].set_visible(False)
    return fig, axes


def plot_actual_vs_predicted(
    records: pd.DataFrame,
    response: str,
    partition_column: str = 'area',
    figsize: Tuple[int, int] = (14, 10),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Actual vs predicted scatter plots, one panel per partition.

    Args:
        records: Prediction records
        response: Observed response column
        partition_column: Partition column
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    groups = list(records.groupby(partition_column, sort=True))
    fig, axes = _grid(len(groups), figsize)

    for ax, (area, group) in zip(axes, groups):
        true_col = group[response].to_numpy(dtype=float)
        pred_col = group['predicted'].to_numpy(dtype=float)

        ax.scatter(true_col, pred_col, alpha=0.6, s=20)

        min_val = min(true_col.min(), pred_col.min())
        max_val = max(true_col.max(), pred_col.max())
        ax.plot([min_val, max_val], [min_val, max_val], 'r--', linewidth=2, label='Perfect')

        metrics = calculate_metrics(true_col, pred_col)
        ax.set_xlabel('Actual')
        ax.set_ylabel('Predicted')
        ax.set_title(f"{area}\nR²={metrics['r2']:.3f}, RMSE={metrics['rmse']:.1f}", fontsize=10, fontweight='bold')
        ax.legend(loc='upper left', fontsize=8)

    plt.suptitle('Actual vs Predicted', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Actual vs Predicted plot saved to {save_path}")

    return fig


def plot_prediction_timeline(
    records: pd.DataFrame,
    response: str,
    partition_column: str = 'area',
    train_end: Optional[Dict[str, Any]] = None,
    figsize: Tuple[int, int] = (14, 10),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Observed and predicted values over time with the interval band.

    Args:
        records: Prediction records with period, predicted, lower and upper
        response: Observed response column
        partition_column: Partition column
        train_end: Optional {area: last training period} marked with a vertical line
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    groups = list(records.groupby(partition_column, sort=True))
    fig, axes = _grid(len(groups), figsize)

    for ax, (area, group) in zip(axes, groups):
        group = group.sort_values('period')
        x = group['period'].dt.to_timestamp()

        ax.plot(x, group[response], 'b-', marker='o', markersize=3, linewidth=1.5, label='Observed')
        ax.plot(x, group['predicted'], 'r--', linewidth=1.5, label='Predicted')
        ax.fill_between(x, group['lower'], group['upper'], alpha=0.2, color='red', label='Interval')

        if train_end and area in train_end:
            ax.axvline(pd.Period(train_end[area]).to_timestamp(), color='gray', linestyle=':', label='Train end')

        ax.set_title(f'{area}', fontsize=10, fontweight='bold')
        ax.set_ylabel(response)
        ax.tick_params(axis='x', labelrotation=45)
        ax.legend(loc='upper left', fontsize=7)

    plt.suptitle('Prediction Timeline', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Prediction timeline plot saved to {save_path}")

    return fig


def plot_residuals(
    records: pd.DataFrame,
    response: str,
    figsize: Tuple[int, int] = (12, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Residual distribution and residuals vs fitted values.

    Args:
        records: Prediction records
        response: Observed response column
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    residuals = records[response] - records['predicted']

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    sns.histplot(residuals, kde=len(residuals) > 2, ax=axes[0], bins=30, alpha=0.7)
    axes[0].axvline(0, color='red', linestyle='--', linewidth=2, label='Zero')
    axes[0].axvline(residuals.mean(), color='green', linestyle='--',
                    linewidth=2, label=f'Mean: {residuals.mean():.2f}')
    axes[0].set_xlabel('Residual (Actual - Predicted)')
    axes[0].set_title(f'Residual Distribution (Std: {residuals.std():.2f})', fontweight='bold')
    axes[0].legend(fontsize=8)

    axes[1].scatter(records['predicted'], residuals, alpha=0.6, s=20)
    axes[1].axhline(0, color='red', linestyle='--')
    axes[1].set_xlabel('Predicted')
    axes[1].set_ylabel('Residual')
    axes[1].set_title('Residuals vs Predicted', fontweight='bold')

    plt.suptitle('Residual Analysis', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Residuals plot saved to {save_path}")

    return fig


def plot_error_summary(
    metrics: pd.DataFrame,
    partition_column: str = 'area',
    figsize: Tuple[int, int] = (14, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Bar chart of RMSE, MAE and R² for each partition.

    Args:
        metrics: Output of calculate_partition_metrics
        partition_column: Partition column
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    per_area = metrics[metrics[partition_column] != 'overall']
    overall = metrics[metrics[partition_column] == 'overall'].iloc[0]
    labels = per_area[partition_column].astype(str).tolist()
    x = np.arange(len(labels))

    fig, axes = plt.subplots(1, 3, figsize=figsize)

    for ax, key, title, color in (
        (axes[0], 'rmse', 'Root Mean Squared Error', 'steelblue'),
        (axes[1], 'mae', 'Mean Absolute Error', 'coral'),
    ):
        ax.bar(x, per_area[key], 0.6, color=color, alpha=0.8)
        ax.axhline(overall[key], color='red', linestyle='--', label=f"Overall: {overall[key]:.2f}")
        ax.set_title(title, fontweight='bold')
        ax.set_xticks(x)
        ax.set_xticklabels(labels, rotation=45, ha='right')
        ax.legend()

    r2_values = per_area['r2'].fillna(0).tolist()
    colors = ['green' if r2 > 0.8 else 'orange' if r2 > 0.5 else 'red' for r2 in r2_values]
    axes[2].bar(x, r2_values, 0.6, color=colors, alpha=0.8)
    axes[2].axhline(1.0, color='gray', linestyle=':', alpha=0.5)
    axes[2].set_title('R² Score (test set)', fontweight='bold')
    axes[2].set_xticks(x)
    axes[2].set_xticklabels(labels, rotation=45, ha='right')
    axes[2].set_ylim([min(0, min(r2_values, default=0) - 0.1), 1.1])

    plt.suptitle('Model Performance Summary', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Error summary plot saved to {save_path}")

    return fig


def evaluate_model(
    records: pd.DataFrame,
    response: str,
    output_dir: str = "reports/",
    prefix: str = "eval",
    partition_column: str = 'area',
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Run complete evaluation of test-set prediction records.

    Args:
        records: Test-set prediction records
        response: Observed response column
        output_dir: Directory for output files
        prefix: File name prefix (e.g. the geographic level)
        partition_column: Partition column
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary containing metrics, figure paths and the metrics file path
    """
    output_dir = Path(output_dir)
    figures_dir = output_dir / "figures"
    metrics_dir = output_dir / "metrics"

    figures_dir.mkdir(parents=True, exist_ok=True)
    metrics_dir.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 60)
    logger.info("STARTING MODEL EVALUATION")
    logger.info("=" * 60)

    if records.empty:
        raise ValueError("No prediction records to evaluate")

    metrics = calculate_partition_metrics(records, response, partition_column)

    metrics_file = metrics_dir / f"{prefix}_metrics.json"
    with open(metrics_file, 'w') as f:
        json.dump(json.loads(metrics.to_json(orient='records')), f, indent=2)
    logger.info(f"Metrics saved to {metrics_file}")

    figures = {
        'actual_vs_predicted': str(figures_dir / f"{prefix}_actual_vs_predicted.png"),
        'residuals': str(figures_dir / f"{prefix}_residuals.png"),
        'error_summary': str(figures_dir / f"{prefix}_error_summary.png"),
    }

    logger.info("Generating Actual vs Predicted plots...")
    plot_actual_vs_predicted(records, response, partition_column, save_path=figures['actual_vs_predicted'])

    logger.info("Generating residual analysis...")
    plot_residuals(records, response, save_path=figures['residuals'])

    logger.info("Generating error summary...")
    plot_error_summary(metrics, partition_column, save_path=figures['error_summary'])

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    overall = metrics[metrics[partition_column] == 'overall'].iloc[0]

    logger.info("=" * 60)
    logger.info("EVALUATION COMPLETE")
    logger.info(f"  RMSE: {overall['rmse']:.4f}")
    logger.info(f"  MAE: {overall['mae']:.4f}")
    logger.info(f"  R²: {overall['r2']:.4f}")
    logger.info("=" * 60)

    return {
        'metrics': metrics,
        'figures': figures,
        'metrics_file': str(metrics_file)
    }


def print_evaluation_report(metrics: pd.DataFrame, partition_column: str = 'area') -> None:
    """
    Print a formatted evaluation report to console.

    Args:
        metrics: Output of calculate_partition_metrics
        partition_column: Partition column
    """
    print("\n" + "=" * 70)
    print("MODEL EVALUATION REPORT (test set)")
    print("=" * 70)
    print(f"{'Partition':<15} {'RMSE':<12} {'MAE':<12} {'R²':<12} {'MAPE (%)':<12} {'n':<6}")
    print("-" * 70)

    for row in metrics.to_dict(orient='records'):
        print(f"{str(row[partition_column]):<15} {row['rmse']:<12.2f} {row['mae']:<12.2f} "
              f"{row['r2']:<12.4f} {row['mape']:<12.2f} {row['n_samples']:<6}")

    overall_r2 = metrics.loc[metrics[partition_column] == 'overall', 'r2'].iloc[0]
    print("\nInterpretation:")
    if overall_r2 > 0.9:
        print("  ✓ Excellent fit on the test set (R² > 0.9)")
    elif overall_r2 > 0.7:
        print("  ✓ Good fit on the test set (R² > 0.7)")
    elif overall_r2 > 0.5:
        print("  ⚠ Moderate fit on the test set (R² > 0.5)")
    else:
        print("  ✗ Poor fit on the test set (R² < 0.5)")

    print("=" * 70 + "\n")
