"""
Data Loader Module
==================

Handles configuration, remote archive download and ingestion of the source
datasets (PRF accidents, RENAVAM fleet, IBGE GDP, DataSUS deaths).

Functions:
    - load_config: Load YAML configuration file
    - discover_prf_archive_url: Find the yearly PRF archive on the open-data page
    - download_archive: Fetch a remote ZIP archive to disk
    - extract_csv_from_zip: Read a CSV member from a ZIP archive
    - load_prf_accidents: Fetch and concatenate every configured PRF year
    - load_reference_table: Load a local reference CSV
    - validate_data: Check data quality constraints
"""

import logging
import re
import zipfile
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import urljoin

import pandas as pd
import requests
import yaml
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

PRF_INDEX_URL = "https://www.gov.br/prf/pt-br/acesso-a-informacao/dados-abertos/dados-abertos-da-prf"

REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36'
}


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def discover_prf_archive_url(
    year: int,
    index_url: str = PRF_INDEX_URL,
    timeout: float = 30.0
) -> str:
    """
    Scrape the PRF open-data page for the accident archive of a given year.

    The page lists one link per year under "Agrupados por ocorrência"; the
    anchor text carries the year (e.g. "datatran2021.zip").

    Args:
        year: Year of the archive
        index_url: URL of the PRF open-data page
        timeout: Request timeout in seconds

    Returns:
        Absolute URL of the archive

    Raises:
        requests.HTTPError: If the page cannot be fetched
        ValueError: If no link for the year is found
    """
    logger.info(f"Looking up PRF archive for {year} at {index_url}")
    response = requests.get(index_url, headers=REQUEST_HEADERS, timeout=timeout)
    response.raise_for_status()

    soup = BeautifulSoup(response.content, 'html.parser')
    pattern = re.compile(rf"datatran\s*{year}", re.IGNORECASE)

    for anchor in soup.find_all('a', href=True):
        text = anchor.get_text(strip=True)
        if pattern.search(text) or pattern.search(anchor['href']):
            href = urljoin(index_url, anchor['href'])
            logger.info(f"Found archive link for {year}: {href}")
            return href

    raise ValueError(f"No PRF accident archive found for {year} at {index_url}")


def download_archive(
    url: str,
    dest_dir: str = "data/raw/",
    filename: Optional[str] = None,
    overwrite: bool = False,
    timeout: float = 120.0,
    chunk_size: int = 1 << 20
) -> Path:
    """
    Download a remote archive to disk.

    An already downloaded file is reused unless `overwrite` is set.

    Args:
        url: Archive URL
        dest_dir: Directory to store the archive
        filename: Target file name (default: last URL segment)
        overwrite: Download again even when the file exists
        timeout: Request timeout in seconds
        chunk_size: Streaming chunk size in bytes

    Returns:
        Path to the downloaded archive

    Raises:
        requests.HTTPError: If the server answers with an error status
        requests.RequestException: If the transfer fails; no partial file is left
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    if filename is None:
        filename = url.rstrip('/').split('/')[-1].split('?')[0] or "archive.zip"
    target = dest_dir / filename

    if target.exists() and not overwrite:
        logger.info(f"Using cached archive {target}")
        return target

    logger.info(f"Downloading {url} -> {target}")
    with requests.get(url, headers=REQUEST_HEADERS, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        partial = target.with_suffix(target.suffix + '.part')
        try:
            with open(partial, 'wb') as f:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if chunk:
                        f.write(chunk)
        except Exception:
            logger.error(f"Download of {url} failed, removing {partial}")
            partial.unlink(missing_ok=True)
            raise
        partial.replace(target)

    logger.info(f"Downloaded {target.stat().st_size / 1024 / 1024:.2f} MB")
    return target


def extract_csv_from_zip(
    zip_path: str,
    member: Optional[str] = None,
    sep: str = ';',
    encoding: str = 'latin-1',
    decimal: str = ','
) -> pd.DataFrame:
    """
    Read a CSV member of a ZIP archive into a DataFrame.

    Args:
        zip_path: Path to the ZIP archive
        member: Name of the CSV member (default: first .csv in the archive)
        sep: Field separator
        encoding: File encoding (PRF files are latin-1)
        decimal: Decimal mark

    Returns:
        DataFrame with the CSV contents

    Raises:
        FileNotFoundError: If the archive doesn't exist
        ValueError: If the archive holds no CSV member
    """
    zip_path = Path(zip_path)

    if not zip_path.exists():
        raise FileNotFoundError(f"Archive not found: {zip_path}")

    with zipfile.ZipFile(zip_path, 'r') as archive:
        csv_members = [n for n in archive.namelist() if n.lower().endswith('.csv')]

        if member is None:
            if not csv_members:
                raise ValueError(f"No CSV file inside {zip_path}: {archive.namelist()}")
            member = csv_members[0]
        elif member not in archive.namelist():
            raise ValueError(f"Member '{member}' not found in {zip_path}")

        with archive.open(member) as f:
            df = pd.read_csv(f, sep=sep, encoding=encoding, decimal=decimal, low_memory=False)

    logger.info(f"Extracted {member} from {zip_path.name}: {df.shape[0]} rows × {df.shape[1]} columns")
    return df


def load_prf_accidents(config: Dict[str, Any]) -> pd.DataFrame:
    """
    Fetch and concatenate the PRF accident records of every configured year.

    Each year uses, in order of preference, an explicit URL from
    `data.prf.urls`, a local archive already in `data.raw_path`, or a link
    discovered on the PRF open-data page.

    Args:
        config: Configuration dictionary

    Returns:
        Concatenated accident records
    """
    data_config = config.get('data', {})
    prf_config = data_config.get('prf', {})
    raw_path = Path(data_config.get('raw_path', 'data/raw/'))

    years: List[int] = prf_config.get('years', [])
    urls: Dict[int, str] = {int(k): v for k, v in (prf_config.get('urls') or {}).items()}
    index_url = prf_config.get('index_url', PRF_INDEX_URL)

    if not years:
        raise ValueError("No PRF years configured under data.prf.years")

    frames = []
    for year in years:
        filename = f"datatran{year}.zip"
        local = raw_path / filename

        if year in urls:
            archive = download_archive(urls[year], str(raw_path), filename=filename)
        elif local.exists():
            archive = local
        else:
            url = discover_prf_archive_url(year, index_url=index_url)
            archive = download_archive(url, str(raw_path), filename=filename)

        df = extract_csv_from_zip(
            str(archive),
            sep=prf_config.get('sep', ';'),
            encoding=prf_config.get('encoding', 'latin-1')
        )
        df['ano_arquivo'] = year
        frames.append(df)

    accidents = pd.concat(frames, ignore_index=True, sort=False)
    logger.info(f"Loaded {len(accidents)} PRF accident records for years {years}")
    return accidents


def load_reference_table(
    file_path: str,
    sep: str = ',',
    encoding: str = 'utf-8'
) -> pd.DataFrame:
    """
    Load a reference dataset (fleet, GDP or DataSUS deaths) from CSV.

    Args:
        file_path: Path to the CSV file
        sep: Field separator
        encoding: File encoding

    Returns:
        DataFrame containing the loaded data

    Raises:
        FileNotFoundError: If data file doesn't exist
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    df = pd.read_csv(file_path, sep=sep, encoding=encoding)
    df.columns = [str(c).strip().lower() for c in df.columns]
    logger.info(f"Loaded data from {file_path}: {df.shape[0]} rows × {df.shape[1]} columns")

    return df


def load_sources(config: Dict[str, Any]) -> Dict[str, pd.DataFrame]:
    """
    Load every configured source dataset.

    Optional sources (GDP) are skipped when their path is not configured.

    Returns:
        Dictionary keyed by 'accidents', 'fleet', 'gdp' and 'deaths'
    """
    data_config = config.get('data', {})
    sep = data_config.get('reference_sep', ',')
    encoding = data_config.get('reference_encoding', 'utf-8')

    sources = {'accidents': load_prf_accidents(config)}

    for name in ('fleet', 'gdp', 'deaths'):
        path = data_config.get(f'{name}_path')
        if path:
            sources[name] = load_reference_table(path, sep=sep, encoding=encoding)
        else:
            logger.warning(f"No path configured for '{name}' data, skipping")

    return sources


def validate_data(
    df: pd.DataFrame,
    required_columns: Optional[List[str]] = None,
    strict: bool = True
) -> Tuple[bool, Dict[str, Any]]:
    """
    Validate data quality constraints for a source table.

    Checks:
        - Required columns are present
        - No missing values in required columns
        - No duplicate rows

    Args:
        df: DataFrame to validate
        required_columns: Columns that must be present
        strict: If True, raise errors on validation failure

    Returns:
        Tuple of (is_valid, validation_report)
    """
    report = {
        "total_rows": len(df),
        "total_columns": len(df.columns),
        "column_names": list(df.columns),
        "issues": []
    }

    required_columns = required_columns or []
    missing_columns = [c for c in required_columns if c not in df.columns]
    if missing_columns:
        issue = f"Missing required columns: {missing_columns}"
        report["issues"].append(issue)
        logger.warning(issue)

    present = [c for c in required_columns if c in df.columns] or list(df.columns)
    missing_counts = df[present].isnull().sum()
    total_missing = int(missing_counts.sum())
    if total_missing > 0:
        issue = f"Missing values: {total_missing}"
        report["issues"].append(issue)
        report["missing_by_column"] = missing_counts[missing_counts > 0].to_dict()
        logger.warning(issue)

    duplicates = int(df.duplicated().sum())
    if duplicates > 0:
        issue = f"Duplicate rows found: {duplicates}"
        report["issues"].append(issue)
        logger.warning(issue)

    is_valid = len(report["issues"]) == 0
    report["is_valid"] = is_valid

    if strict and not is_valid:
        raise ValueError(f"Data validation failed: {report['issues']}")

    return is_valid, report


def print_data_summary(df: pd.DataFrame, name: str = "DATASET") -> None:
    """
    Print a formatted summary of a dataset to console.

    Args:
        df: DataFrame to summarize
        name: Title for the summary
    """
    print("\n" + "=" * 60)
    print(f"{name.upper()} SUMMARY")
    print("=" * 60)
    print(f"Shape: {df.shape[0]} rows × {df.shape[1]} columns")
    print(f"Memory Usage: {df.memory_usage(deep=True).sum() / 1024:.2f} KB")
    print("\nColumn Information:")
    print("-" * 40)

    for col in df.columns:
        non_null = df[col].count()
        null_pct = (1 - non_null / len(df)) * 100 if len(df) else 0.0
        print(f"  {col}: {df[col].dtype} | {non_null} non-null ({null_pct:.1f}% missing)")

    print("=" * 60 + "\n")
