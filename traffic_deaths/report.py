"""
Report Module
=============

Renders the results of every geographic level into a single self-contained
HTML document: tables via pandas, figures embedded as base64 PNG.
"""

import base64
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

LEVEL_TITLES = {
    'nacional': 'Brazil',
    'regiao': 'Regions',
    'uf': 'States (UF)',
}

_STYLE = """
body { font-family: Helvetica, Arial, sans-serif; margin: 2em auto; max-width: 1100px; color: #222; }
h1 { border-bottom: 2px solid #444; padding-bottom: .3em; }
h2 { margin-top: 2em; border-bottom: 1px solid #aaa; }
table.dataframe { border-collapse: collapse; font-size: .85em; margin: .5em 0 1.5em; }
table.dataframe th, table.dataframe td { border: 1px solid #ccc; padding: 3px 8px; text-align: right; }
table.dataframe th { background: #eee; }
figure { margin: 1em 0; }
figure img { max-width: 100%; }
figcaption { font-size: .85em; color: #555; }
p.meta { color: #666; font-size: .9em; }
"""


@dataclass
class ReportSection:
    """One report section: a heading, free text, tables and figures."""
    title: str
    description: str = ""
    tables: List[Tuple[str, pd.DataFrame]] = field(default_factory=list)
    figures: List[Tuple[str, str]] = field(default_factory=list)


def _embed_figure(path: str) -> str:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Figure not found: {path}")
    encoded = base64.b64encode(path.read_bytes()).decode('ascii')
    return f"data:image/png;base64,{encoded}"


def _format_table(df: pd.DataFrame, float_format: str = "{:,.3f}") -> str:
    out = df.copy()
    for col in out.columns:
        if isinstance(out[col].dtype, pd.PeriodDtype):
            out[col] = out[col].astype(str)
    return out.to_html(
        index=False,
        border=0,
        na_rep='-',
        float_format=float_format.format,
        classes='dataframe'
    )


def render_section(section: ReportSection) -> str:
    parts = [f"<h2>{html.escape(section.title)}</h2>"]
    if section.description:
        parts.append(f"<p>{html.escape(section.description)}</p>")

    for caption, table in section.tables:
        parts.append(f"<h3>{html.escape(caption)}</h3>")
        parts.append(_format_table(table))

    for caption, path in section.figures:
        parts.append(
            f'<figure><img src="{_embed_figure(path)}" alt="{html.escape(caption)}">'
            f"<figcaption>{html.escape(caption)}</figcaption></figure>"
        )

    return "\n".join(parts)


def render_report(
    sections: List[ReportSection],
    output_path: str = "reports/report.html",
    title: str = "Traffic deaths in Brazil: linear regression models",
    notes: Optional[List[str]] = None
) -> str:
    """
    Write the HTML report.

    Args:
        sections: Sections in display order
        output_path: Destination file
        title: Document title
        notes: Paragraphs shown under the title

    Returns:
        Path to the written report
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    body = [f"<h1>{html.escape(title)}</h1>",
            f'<p class="meta">Generated {datetime.now().strftime("%Y-%m-%d %H:%M")}</p>']
    body.extend(f"<p>{html.escape(note)}</p>" for note in notes or [])
    body.extend(render_section(section) for section in sections)

    document = (
        "<!DOCTYPE html>\n<html lang=\"en\">\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>{html.escape(title)}</title>\n<style>{_STYLE}</style>\n</head>\n<body>\n"
        + "\n".join(body)
        + "\n</body>\n</html>\n"
    )

    output_path.write_text(document, encoding='utf-8')
    logger.info(f"Report written to {output_path} ({len(sections)} sections)")
    return str(output_path)


def build_level_section(level: str, results: Dict[str, Any]) -> ReportSection:
    """
    Assemble the report section of one geographic level.

    Args:
        level: 'nacional', 'regiao' or 'uf'
        results: Phase results for the level, with keys 'preprocessing',
            'model', 'evaluation', 'prediction' and optionally 'eda' and
            'timeline_figure'

    Returns:
        ReportSection with dataset, coefficient, metric and prediction tables
    """
    prep = results['preprocessing']
    model = results['model']
    preprocessor = prep['preprocessor']
    dataset = prep['dataset']

    periods = dataset['period']
    description = (
        f"{dataset['area'].nunique()} partition(s), {len(dataset)} observations "
        f"from {periods.min()} to {periods.max()}. Response: {preprocessor.response}; "
        f"predictors: {', '.join(preprocessor.predictors)}. "
        f"Train/test split {preprocessor.train_split:.0%} / {1 - preprocessor.train_split:.0%}."
    )
    if model.skipped:
        description += f" Partitions without a model: {', '.join(map(str, model.skipped))}."

    section = ReportSection(title=LEVEL_TITLES.get(level, level), description=description)

    section.tables.append(("Statistics of the regression dataset", dataset.describe().T.reset_index()))
    section.tables.append(("In-sample fit", model.summary_table()))
    section.tables.append(("Coefficients (standardized predictors)", model.coefficients_table()))
    section.tables.append(("Test-set metrics", results['evaluation']['metrics']))

    report = results['prediction']['report']
    latest = pd.DataFrame.from_dict(report['predictions'], orient='index')
    latest.index.name = 'area'
    section.tables.append((
        f"Latest period: predicted vs observed ({report['confidence_level']:.0%} bounds)",
        latest.reset_index()
    ))

    eda = results.get('eda')
    if eda:
        section.figures.append((f"{preprocessor.response} over time", eda['figures']['series']))
        section.figures.append(("Correlation matrix", eda['figures']['correlation_matrix']))

    if results.get('timeline_figure'):
        section.figures.append(("Observed and predicted values with interval band", results['timeline_figure']))

    figures = results['evaluation']['figures']
    section.figures.append(("Actual vs predicted (test set)", figures['actual_vs_predicted']))
    section.figures.append(("Residual analysis (test set)", figures['residuals']))
    section.figures.append(("Metrics per partition (test set)", figures['error_summary']))

    return section
