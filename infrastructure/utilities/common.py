"""
Utility functions for the EYFSP latent traits pipeline

Configuration, logging and file helpers shared by the stage scripts.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Union
import pandas as pd
import yaml

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = Path('config') / 'pipeline.yaml'

# census_2009.csv, Census_SPR09.dta, ...
_CENSUS_YEAR = re.compile(r'(?:(?<!\d)(20\d{2})(?!\d))|(?:SPR(\d{2})(?!\d))', re.IGNORECASE)


def load_yaml_config(config_path: Union[str, Path]) -> dict:
    """
    Load a YAML configuration file

    Args:
        config_path: Path to YAML file

    Returns:
        Dictionary from YAML file

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If file is not valid YAML
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, 'r') as f:
        try:
            config = yaml.safe_load(f)
            return config if config else {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Error parsing YAML: {e}")


def save_yaml_config(data: dict, config_path: Union[str, Path]):
    """
    Save a dictionary as a YAML file

    Args:
        data: Dictionary to save
        config_path: Where to save the file
    """
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_project_root() -> Path:
    """
    Get the project root directory

    Returns:
        Path to project root
    """
    # Assumes this file is in infrastructure/utilities/
    return Path(__file__).parent.parent.parent


def load_pipeline_config(config_path: Optional[Union[str, Path]] = None) -> dict:
    """
    Load the pipeline configuration (config/pipeline.yaml by default)

    Raises:
        FileNotFoundError: If the config file doesn't exist
    """
    path = Path(config_path) if config_path else get_project_root() / DEFAULT_CONFIG
    config = load_yaml_config(path)
    logger.debug(f"Loaded pipeline config from {path}")
    return config


def resolve_path(path: Optional[Union[str, Path]]) -> Optional[Path]:
    """Resolve a configured path relative to the project root"""
    if path is None:
        return None
    path = Path(path)
    return path if path.is_absolute() else get_project_root() / path


def setup_logging(
    log_level: str = 'INFO',
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Set up logging configuration

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file to write logs to

    Returns:
        Configured logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


def validate_required_columns(
    df: pd.DataFrame,
    required_columns: List[str],
    dataset_name: str = "dataset"
) -> bool:
    """
    Validate that a DataFrame has required columns

    Args:
        df: DataFrame to validate
        required_columns: List of required column names
        dataset_name: Name for error messages

    Returns:
        True if all columns present, False otherwise
    """
    missing = [col for col in required_columns if col not in df.columns]

    if missing:
        logger.error(f"{dataset_name} missing required columns: {', '.join(missing)}")
        logger.info(f"Available columns: {', '.join(map(str, df.columns))}")
        return False

    return True


def format_number(value: Union[int, float], decimals: int = 0) -> str:
    """
    Format a number with thousands separators

    Examples:
        >>> format_number(1234567)
        '1,234,567'
        >>> format_number(0.12345, 3)
        '0.123'
    """
    if pd.isna(value):
        return "N/A"

    return f"{value:,.{decimals}f}"


def create_data_lineage_file(
    output_path: Path,
    source_files: List[Path],
    processing_steps: List[str],
    additional_info: Optional[Dict] = None
) -> Path:
    """
    Write <output>_lineage.yaml next to a stage output

    Args:
        output_path: Where the processed data was saved
        source_files: Input files the output was built from
        processing_steps: Processing steps applied
        additional_info: Extra metadata (counts, diagnostics)

    Returns:
        Path of the lineage file
    """
    output_path = Path(output_path)
    lineage_path = output_path.parent / f"{output_path.stem}_lineage.yaml"

    lineage = {
        'output_file': str(output_path),
        'created': pd.Timestamp.now().isoformat(),
        'source_files': [str(f) for f in source_files],
        'processing_steps': processing_steps,
    }

    if additional_info:
        lineage.update(additional_info)

    save_yaml_config(lineage, lineage_path)
    logger.info(f"Data lineage saved: {lineage_path}")
    return lineage_path


def find_files_by_pattern(
    directory: Path,
    pattern: str = "*.csv",
    recursive: bool = False
) -> List[Path]:
    """
    Find files matching a glob pattern, sorted by name

    Returns:
        List of matching file paths (empty if the directory is absent)
    """
    dir_path = Path(directory)

    if not dir_path.exists():
        logger.warning(f"Directory does not exist: {directory}")
        return []

    if recursive:
        files = list(dir_path.rglob(pattern))
    else:
        files = list(dir_path.glob(pattern))

    return sorted(files)


def census_year(path: Path) -> Optional[int]:
    """
    Collection year encoded in a census file name

    Examples:
        >>> census_year(Path('census_2009.csv'))
        2009
        >>> census_year(Path('Census_SPR12.dta'))
        2012
    """
    match = _CENSUS_YEAR.search(Path(path).stem)
    if not match:
        return None
    if match.group(1):
        return int(match.group(1))
    return 2000 + int(match.group(2))


def find_census_files(directory: Path, pattern: str = "census_*.csv") -> Dict[int, Path]:
    """
    Map collection year to census file

    Files whose name carries no year are skipped with a warning.

    Raises:
        ValueError: If two files carry the same year
    """
    found: Dict[int, Path] = {}
    for path in find_files_by_pattern(directory, pattern):
        year = census_year(path)
        if year is None:
            logger.warning(f"Skipping {path.name}: no census year in file name")
            continue
        if year in found:
            raise ValueError(f"Two census files for {year}: {found[year].name}, {path.name}")
        found[year] = path
    return found


class DataProcessor:
    """
    Base class for stage scripts

    Holds the pipeline configuration and reads/writes flat tables.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize processor

        Args:
            config_path: Path to configuration file (default config/pipeline.yaml)
        """
        self.config = load_pipeline_config(config_path)
        self.pupil_id = self.config.get('pupil_id_column', 'pupil_id')
        self.logger = logging.getLogger(self.__class__.__name__)

    def path(self, key: str) -> Optional[Path]:
        """Configured path under ``paths:``, resolved against the project root"""
        return resolve_path((self.config.get('paths') or {}).get(key))

    def load_data(self, file_path: Path) -> pd.DataFrame:
        """
        Load data from a file

        Args:
            file_path: CSV, Excel, Parquet or Stata file

        Returns:
            DataFrame with loaded data

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: On an unsupported file type
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Input file not found: {file_path}")

        self.logger.info(f"Loading data from {file_path}")

        suffix = file_path.suffix.lower()
        if suffix == '.csv':
            df = pd.read_csv(file_path, low_memory=False)
        elif suffix in ['.xlsx', '.xls']:
            df = pd.read_excel(file_path)
        elif suffix == '.parquet':
            df = pd.read_parquet(file_path)
        elif suffix == '.dta':
            df = pd.read_stata(file_path, convert_categoricals=False)
        else:
            raise ValueError(f"Unsupported file type: {file_path.suffix}")

        self.logger.info(f"  Loaded {len(df):,} rows, {len(df.columns)} columns")
        return df

    def save_data(self, df: pd.DataFrame, output_path: Path):
        """
        Save data to a file

        Args:
            df: DataFrame to save
            output_path: CSV, Excel or Parquet destination
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        suffix = output_path.suffix.lower()
        if suffix == '.csv':
            df.to_csv(output_path, index=False)
        elif suffix in ['.xlsx', '.xls']:
            df.to_excel(output_path, index=False)
        elif suffix == '.parquet':
            df.to_parquet(output_path, index=False)
        else:
            raise ValueError(f"Unsupported file type: {output_path.suffix}")

        self.logger.info(f"  Saved {len(df):,} rows to {output_path}")
