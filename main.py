#!/usr/bin/env python3
"""
Traffic Deaths Regression Report - Main Pipeline
================================================

Orchestrates the report for one or more geographic levels.

Phases:
    1. Ingestion - Download/extract PRF accidents, load reference tables
    2. Aggregation - Align all sources on (period, area)
    3. EDA - Exploratory plots of the observation table
    4. Training - One OLS model per partition
    5. Evaluation - RMSE, MAE, R² on the test set
    6. Prediction - Records with interval bounds
    7. Report - HTML document with tables and charts

Usage:
    # Run complete pipeline for every configured level
    python main.py

    # Only the state-level models
    python main.py --level uf

    # Stop after a phase
    python main.py --phase evaluate --config config/custom.yaml
"""

import argparse
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, List, Optional

import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from traffic_deaths.data_loader import load_config, load_sources, validate_data, print_data_summary
from traffic_deaths.aggregation import LEVELS, aggregate_sources, build_observation_table
from traffic_deaths.eda import generate_eda_report, print_correlation_insights
from traffic_deaths.preprocessing import check_train_split, preprocess_pipeline, print_preprocessing_summary
from traffic_deaths.model import train_model, print_model_summary, PartitionedOLSModel
from traffic_deaths.evaluation import evaluate_model, print_evaluation_report
from traffic_deaths.prediction import run_final_prediction, print_prediction_results
from traffic_deaths.report import build_level_section, render_report

PHASES = ['ingest', 'aggregate', 'eda', 'train', 'evaluate', 'predict', 'report']

REQUIRED_COLUMNS = {
    'accidents': ['data_inversa', 'uf', 'mortos'],
    'fleet': ['ano', 'mes', 'uf'],
    'gdp': ['ano', 'pib'],
    'deaths': [],
}


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(f'pipeline_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log')
        ]
    )


def banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70)


def run_ingestion(config: Dict[str, Any]) -> Dict[str, pd.DataFrame]:
    """
    Execute Phase 1: load every source dataset.

    Download failures propagate and stop the run.
    """
    banner("PHASE 1: INGESTION")

    sources = load_sources(config)
    for name, df in sources.items():
        print_data_summary(df, name=name)
        is_valid, _ = validate_data(df, required_columns=REQUIRED_COLUMNS.get(name), strict=False)
        if not is_valid:
            print(f"⚠️  Validation warnings for '{name}'. Proceeding anyway...")

    return sources


def run_aggregation(
    sources: Dict[str, pd.DataFrame],
    config: Dict[str, Any]
) -> Dict[str, pd.DataFrame]:
    """Execute Phase 2: aggregate every source to per-UF tables."""
    banner("PHASE 2: AGGREGATION")

    agg_config = config.get('aggregation', {})
    freq = agg_config.get('frequency', 'Q')

    aggregated = aggregate_sources(sources, freq, options=agg_config.get('sources', {}))
    for name, table in aggregated.items():
        print(f"  • {name}: {len(table)} rows")

    return aggregated


def run_eda(table: pd.DataFrame, config: Dict[str, Any], level: str) -> Dict[str, Any]:
    """Execute Phase 3: exploratory analysis of one observation table."""
    banner(f"PHASE 3: EXPLORATORY DATA ANALYSIS ({level})")

    response = config.get('regression', {}).get('response', 'deaths_datasus')
    output_dir = config.get('output', {}).get('figures_path', 'reports/figures/')

    report = generate_eda_report(table, response, output_dir=output_dir, prefix=f"eda_{level}")
    print_correlation_insights(report['correlation_matrix'], response)

    return report


def run_preprocessing(table: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """Split the observation table into train and test sets."""
    result = preprocess_pipeline(table, config)
    print_preprocessing_summary(result)
    return result


def run_training(
    prep_result: Dict[str, Any],
    config: Dict[str, Any],
    level: str
) -> PartitionedOLSModel:
    """Execute Phase 4: fit one OLS model per partition."""
    banner(f"PHASE 4: MODEL TRAINING ({level})")

    model_dir = Path(config.get('output', {}).get('model_path', 'models/'))
    preprocessor = prep_result['preprocessor']

    model = train_model(
        prep_result['train'],
        preprocessor.response,
        preprocessor.predictors,
        config,
        save_path=str(model_dir / f"ols_{level}.joblib")
    )

    print_model_summary(model)
    return model


def run_evaluation(
    model: PartitionedOLSModel,
    prep_result: Dict[str, Any],
    config: Dict[str, Any],
    level: str
) -> Dict[str, Any]:
    """Execute Phase 5: test-set metrics and diagnostic plots."""
    banner(f"PHASE 5: MODEL EVALUATION ({level})")

    reg_config = config.get('regression', {})
    records = model.predict(
        prep_result['test'],
        confidence_level=reg_config.get('confidence_level', 0.95),
        kind=reg_config.get('interval', 'confidence')
    )

    output_dir = config.get('output', {}).get('metrics_path', 'reports/')
    result = evaluate_model(records, model.response, output_dir=output_dir, prefix=f"eval_{level}")

    print_evaluation_report(result['metrics'])
    return result


def run_prediction_phase(
    model: PartitionedOLSModel,
    prep_result: Dict[str, Any],
    eval_result: Dict[str, Any],
    config: Dict[str, Any],
    level: str
) -> Dict[str, Any]:
    """Execute Phase 6: prediction records for every row, with intervals."""
    banner(f"PHASE 6: PREDICTION ({level})")

    reg_config = config.get('regression', {})
    output_dir = config.get('data', {}).get('predictions_path', 'data/predictions/')

    result = run_final_prediction(
        model,
        prep_result,
        metrics=eval_result['metrics'],
        output_dir=output_dir,
        level=level,
        confidence_level=reg_config.get('confidence_level', 0.95),
        kind=reg_config.get('interval', 'confidence'),
        figures_dir=config.get('output', {}).get('figures_path', 'reports/figures/')
    )

    print_prediction_results(result)
    return result


def run_level(
    aggregated: Dict[str, pd.DataFrame],
    config: Dict[str, Any],
    level: str,
    last_phase: str = 'report'
) -> Dict[str, Any]:
    """
    Run phases 3-6 for one geographic level.

    Args:
        aggregated: Per-UF tables from run_aggregation
        config: Configuration dictionary
        level: 'nacional', 'regiao' or 'uf'
        last_phase: Stop after this phase

    Returns:
        Dictionary of phase results for the level
    """
    how = config.get('aggregation', {}).get('join', 'inner')
    table = build_observation_table(aggregated, level, how=how)
    results: Dict[str, Any] = {'table': table}

    results['eda'] = run_eda(table, config, level)
    if last_phase == 'eda':
        return results

    results['preprocessing'] = run_preprocessing(table, config)
    results['model'] = run_training(results['preprocessing'], config, level)
    if last_phase == 'train':
        return results

    results['evaluation'] = run_evaluation(results['model'], results['preprocessing'], config, level)
    if last_phase == 'evaluate':
        return results

    results['prediction'] = run_prediction_phase(
        results['model'], results['preprocessing'], results['evaluation'], config, level
    )
    results['timeline_figure'] = results['prediction']['timeline_figure']
    return results


def run_report(level_results: Dict[str, Dict[str, Any]], config: Dict[str, Any]) -> str:
    """Execute Phase 7: render the HTML report."""
    banner("PHASE 7: REPORT")

    agg_config = config.get('aggregation', {})
    years = config.get('data', {}).get('prf', {}).get('years', [])
    notes = [
        f"Frequency: {agg_config.get('frequency', 'Q')}; join: {agg_config.get('join', 'inner')}; "
        f"PRF years: {', '.join(map(str, years))}.",
    ]

    sections = [build_level_section(level, results) for level, results in level_results.items()]
    output_path = config.get('output', {}).get('report_path', 'reports/report.html')

    path = render_report(sections, output_path=output_path, notes=notes)
    print(f"\n✓ Report written to {path}")
    return path


def run_pipeline(
    config_path: str = "config/config.yaml",
    levels: Optional[List[str]] = None,
    last_phase: str = 'report'
) -> Dict[str, Any]:
    """
    Execute the pipeline up to `last_phase` for the requested levels.

    Args:
        config_path: Path to configuration file
        levels: Geographic levels (default: as configured)
        last_phase: One of PHASES

    Returns:
        Dictionary containing all phase results
    """
    if last_phase not in PHASES:
        raise ValueError(f"Unknown phase: {last_phase}. Choose from: {', '.join(PHASES)}")

    config = load_config(config_path)
    setup_logging(config.get('logging', {}).get('level', 'INFO'))

    levels = levels or config.get('regression', {}).get('levels', list(LEVELS))
    unknown = [level for level in levels if level not in LEVELS]
    if unknown:
        raise ValueError(f"Unknown level(s): {unknown}. Choose from: {', '.join(LEVELS)}")
    check_train_split(config.get('regression', {}).get('train_split', 0.8))

    banner("TRAFFIC DEATHS REGRESSION PIPELINE")
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Levels: {', '.join(levels)}")

    results: Dict[str, Any] = {'config': config}

    results['sources'] = run_ingestion(config)
    if last_phase == 'ingest':
        return results

    results['aggregated'] = run_aggregation(results['sources'], config)
    if last_phase == 'aggregate':
        return results

    results['levels'] = {
        level: run_level(results['aggregated'], config, level, last_phase)
        for level in levels
    }
    if last_phase != 'report':
        return results

    results['report_path'] = run_report(results['levels'], config)

    banner("PIPELINE COMPLETE")
    for level, level_result in results['levels'].items():
        metrics = level_result['evaluation']['metrics']
        overall = metrics[metrics['area'] == 'overall'].iloc[0]
        print(f"  • {level}: {len(level_result['model'].models)} models, "
              f"test RMSE={overall['rmse']:.2f}, R²={overall['r2']:.4f}")
    print(f"  • Report: {results['report_path']}")
    print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70 + "\n")

    return results


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Linear-regression report of traffic deaths in Brazil",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py
  python main.py --level uf
  python main.py --phase evaluate --config config/custom.yaml
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file (default: config/config.yaml)'
    )

    parser.add_argument(
        '--level', '-l',
        type=str,
        choices=list(LEVELS) + ['all'],
        default='all',
        help='Geographic level to model (default: all configured levels)'
    )

    parser.add_argument(
        '--phase', '-p',
        type=str,
        choices=PHASES,
        default='report',
        help='Last phase to run (default: report)'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    levels = None if args.level == 'all' else [args.level]

    try:
        run_pipeline(args.config, levels=levels, last_phase=args.phase)
        return 0

    except Exception as e:
        logging.error(f"Pipeline failed: {e}", exc_info=True)
        print(f"\n❌ Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
