"""
Exploratory Data Analysis (EDA) Module
======================================

Visual summaries of the observation table before modelling.

Functions:
    - plot_series_by_area: Line charts of one column for every area
    - plot_correlation_matrix: Correlation heatmap of the numeric columns
    - plot_distributions: Histograms with a normality test, scatter against the response
    - generate_eda_report: All of the above for one observation table
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

logger = logging.getLogger(__name__)

plt.style.use('seaborn-v0_8-whitegrid')
sns.set_palette("husl")


def _numeric_columns(df: pd.DataFrame) -> List[str]:
    return df.select_dtypes(include=[np.number]).columns.tolist()


def plot_series_by_area(
    df: pd.DataFrame,
    column: str,
    max_areas: int = 12,
    figsize: Tuple[int, int] = (12, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Plot one column over time, one line per area.

    Only the `max_areas` areas with the largest totals are drawn.

    Args:
        df: Observation table
        column: Column to plot
        max_areas: Maximum number of lines
        figsize: Figure size
        save_path: Path to save the figure (optional)

    Returns:
        Matplotlib Figure object
    """
    fig, ax = plt.subplots(figsize=figsize)

    totals = df.groupby('area')[column].sum().sort_values(ascending=False)
    for area in totals.index[:max_areas]:
        series = df[df['area'] == area].sort_values('period')
        ax.plot(series['period'].dt.to_timestamp(), series[column], linewidth=1.2, label=str(area))

    ax.set_title(f'{column} by area', fontsize=12, fontweight='bold')
    ax.set_xlabel('Period')
    ax.set_ylabel(column)
    ax.legend(loc='upper left', fontsize=8, ncol=2)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Series plot saved to {save_path}")

    return fig


def plot_correlation_matrix(
    df: pd.DataFrame,
    columns: Optional[List[str]] = None,
    method: str = 'pearson',
    figsize: Tuple[int, int] = (10, 8),
    save_path: Optional[str] = None
) -> Tuple[plt.Figure, pd.DataFrame]:
    """
    Pairwise correlation of the observation columns as a lower-triangle heatmap.

    Args:
        df: Observation table
        columns: Columns to correlate (default: every numeric column)
        method: 'pearson', 'spearman' or 'kendall'
        figsize: Figure size
        save_path: Path to save the figure (optional)

    Returns:
        Tuple of (Figure, correlation matrix)
    """
    columns = columns or _numeric_columns(df)
    corr = df[columns].astype(float).corr(method=method)

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        corr,
        mask=np.triu(np.ones(corr.shape, dtype=bool), k=1),
        annot=len(columns) <= 12,
        fmt='.2f',
        cmap='vlag',
        vmin=-1,
        vmax=1,
        square=True,
        cbar_kws={"shrink": 0.7},
        ax=ax
    )
    ax.set_title(f'{method.capitalize()} correlation', fontsize=12, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Correlation heatmap saved to {save_path}")

    return fig, corr


def plot_distributions(
    df: pd.DataFrame,
    response: str,
    columns: Optional[List[str]] = None,
    figsize: Tuple[int, int] = (14, 10),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Histogram of every column, with the response against each predictor below.

    A D'Agostino-Pearson test labels each histogram when the column has at
    least 8 values.
    """
    columns = [c for c in (columns or _numeric_columns(df)) if c != response]
    panels = [response] + columns
    n_cols = 3
    n_rows = 2 * int(np.ceil(len(panels) / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize, squeeze=False)
    hist_axes = axes[0::2].flatten()
    scatter_axes = axes[1::2].flatten()

    for ax, col in zip(hist_axes, panels):
        values = df[col].dropna().astype(float)
        sns.histplot(values, kde=len(values) > 2, ax=ax, bins=20)

        title = col
        if len(values) >= 8:
            _, p_value = stats.normaltest(values)
            title += f" (normaltest p={p_value:.3f})"
        ax.set_title(title, fontsize=9, fontweight='bold')

    for ax, col in zip(scatter_axes, panels):
        if col == response:
            ax.set_visible(False)
            continue
        sns.scatterplot(data=df, x=col, y=response, hue='area' if 'area' in df else None,
                        ax=ax, s=15, legend=False)

    for ax in list(hist_axes[len(panels):]) + list(scatter_axes[len(panels):]):
        ax.set_visible(False)

    plt.suptitle('Distributions and relation to the response', fontsize=13, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Distribution plots saved to {save_path}")

    return fig


def generate_eda_report(
    df: pd.DataFrame,
    response: str,
    output_dir: str = "reports/figures/",
    prefix: str = "eda",
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Generate the EDA figures and statistics for one observation table.

    Args:
        df: Observation table
        response: Response column, plotted over time per area
        output_dir: Directory to save figures
        prefix: File name prefix (e.g. the geographic level)
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary with figure paths, the correlation matrix and per-column
        statistics
    """
    logger.info("=" * 60)
    logger.info(f"EXPLORATORY ANALYSIS ({prefix})")
    logger.info("=" * 60)

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    columns = _numeric_columns(df)

    figures = {
        'series': str(output_dir / f"{prefix}_series.png"),
        'correlation_matrix': str(output_dir / f"{prefix}_correlation_matrix.png"),
        'distributions': str(output_dir / f"{prefix}_distributions.png"),
    }

    plot_series_by_area(df, response, save_path=figures['series'])
    _, corr = plot_correlation_matrix(df, columns, save_path=figures['correlation_matrix'])
    plot_distributions(df, response, columns, save_path=figures['distributions'])

    statistics = df[columns].astype(float).agg(['mean', 'std', 'min', 'max', 'skew']).to_dict()

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    logger.info(f"EDA figures saved to {output_dir}")

    return {
        'data_shape': df.shape,
        'columns': list(df.columns),
        'figures': figures,
        'correlation_matrix': corr,
        'statistics': statistics,
    }


def print_correlation_insights(
    corr_matrix: pd.DataFrame,
    response: str,
    threshold: float = 0.5
) -> None:
    """
    Print the predictors most correlated with the response.

    Args:
        corr_matrix: Correlation matrix DataFrame
        response: Response column
        threshold: Correlation threshold for "strong" correlation
    """
    print("\n" + "=" * 50)
    print(f"CORRELATION WITH {response.upper()}")
    print("=" * 50)

    if response not in corr_matrix.columns:
        print(f"  {response} not in the correlation matrix")
        print("=" * 50 + "\n")
        return

    correlations = corr_matrix[response].drop(response).dropna()
    for col, value in correlations.reindex(correlations.abs().sort_values(ascending=False).index).items():
        marker = "•" if abs(value) >= threshold else " "
        print(f"  {marker} {col:<20} {value:+.3f}")

    strong = correlations[correlations.abs() >= threshold]
    if strong.empty:
        print(f"\nNo predictor reaches |r| >= {threshold}")
    else:
        print(f"\n{len(strong)} predictor(s) with |r| >= {threshold}")

    print("=" * 50 + "\n")
