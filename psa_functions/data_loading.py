"""
Data loading for the propensity-score analysis tutorial.

Every analysis reads one fixed-schema table. The schemas below list the exact
columns each chapter needs; a file that does not carry them is rejected before
any model is fitted.

Usage:
    from psa_functions.data_loading import CDS_PCSS97, load_analysis_data
    df = load_analysis_data("./data/cds_pcss97.dta", CDS_PCSS97)
"""

from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple, Union

import pandas as pd

# Seed shared by every stochastic step of the tutorial
SEED = 42


class DatasetSchema(NamedTuple):
    """Column layout of one analysis dataset."""
    name: str
    treatment: str
    outcome: str
    covariates: Tuple[str, ...]
    categorical: Tuple[str, ...] = ()
    cluster: Optional[str] = None
    propensity: Optional[str] = None

    def columns(self) -> List[str]:
        """Required columns, in schema order (the propensity column is optional)."""
        cols = [self.treatment, self.outcome] + list(self.covariates)
        if self.cluster:
            cols.append(self.cluster)
        return cols

    @property
    def continuous(self) -> List[str]:
        return [c for c in self.covariates if c not in self.categorical]


# Child Development Supplement: passage comprehension (matching chapter)
CDS_PCSS97 = DatasetSchema(
    name="cds_pcss97",
    treatment="kuse",
    outcome="pcss97",
    covariates=("male", "black", "age97", "pcged97", "mratio96", "pcg_adc"),
    cluster="pcgid",
)

# Child Development Supplement: letter-word identification (GBM / weighting chapter)
CDS_WEIGHTING = DatasetSchema(
    name="cds_lwss97",
    treatment="kuse",
    outcome="lwss97",
    covariates=("male", "black", "age97", "pcged97", "mratio96", "pcg_adc"),
    categorical=("pcg_adc",),
    cluster="pcgid",
    propensity="ps",
)

# Minimal generic layout used for worked examples
EXAMPLE = DatasetSchema(
    name="example",
    treatment="t",
    outcome="y",
    covariates=("x1", "x2", "x3"),
)

SCHEMAS = {s.name: s for s in (CDS_PCSS97, CDS_WEIGHTING, EXAMPLE)}


def validate_analysis_data(data: pd.DataFrame, schema: DatasetSchema) -> pd.DataFrame:
    """
    Check that a table matches its schema.

    Parameters
    ----------
    data : pd.DataFrame
        Table to validate.
    schema : DatasetSchema
        Expected layout.

    Returns
    -------
    pd.DataFrame
        The same table, unchanged, if it is valid.

    Raises
    ------
    TypeError
        If ``data`` is not a DataFrame.
    ValueError
        If required columns are missing, a covariate has no observed values,
        or the treatment indicator is not strictly coded 0/1 with both groups
        present.
    """
    if not isinstance(data, pd.DataFrame):
        raise TypeError("Input 'data' must be a pandas DataFrame.")

    missing_cols = [c for c in schema.columns() if c not in data.columns]
    if missing_cols:
        raise ValueError(
            f"Dataset '{schema.name}' is missing required columns: {missing_cols}"
        )

    empty_covs = [c for c in schema.covariates if data[c].isna().all()]
    if empty_covs:
        raise ValueError(f"Covariates with all null values: {empty_covs}")

    treatment = data[schema.treatment].dropna()
    unique_vals = set(treatment.unique().tolist())
    if not unique_vals.issubset({0, 1}):
        raise ValueError(
            f"Treatment variable '{schema.treatment}' must be strictly coded as 0/1. "
            f"Found values: {sorted(unique_vals)}"
        )
    if len(unique_vals) < 2:
        raise ValueError(
            f"Only one treatment group present in data: {sorted(unique_vals)}"
        )

    return data


def drop_missing_rows(
    data: pd.DataFrame,
    columns: List[str],
    verbose: bool = True
) -> pd.DataFrame:
    """Listwise deletion on ``columns``; the rest of the table is untouched."""
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"Missing required variables: {missing}")

    df = data.dropna(subset=list(columns)).copy()
    n_dropped = len(data) - len(df)
    if verbose and n_dropped > 0:
        print(f"  Note: dropped {n_dropped} rows with missing values "
              f"({len(df)} remaining)")
    if df.empty:
        raise ValueError(
            f"Insufficient data after removing missing values: 0 rows remaining"
        )
    return df


def load_analysis_data(
    path: Union[str, Path],
    schema: DatasetSchema,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Read a Stata (.dta) or CSV file and return the schema columns.

    Stata value labels and display formats are discarded so that every
    column comes back as plain numbers.
    """
    path = Path(path)
    if not path.exists():
        raise ValueError(f"Data file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".dta":
        df = pd.read_stata(path, convert_categoricals=False,
                           convert_missing=False, preserve_dtypes=False)
    elif suffix == ".csv":
        df = pd.read_csv(path)
    else:
        raise ValueError(f"Unsupported file type '{suffix}' (expected .dta or .csv)")

    df.attrs = {}
    keep = schema.columns()
    if schema.propensity and schema.propensity in df.columns:
        keep.append(schema.propensity)

    validate_analysis_data(df, schema)
    df = df[keep].copy()

    if verbose:
        print(f"Loaded '{schema.name}' from {path.name}: "
              f"{len(df)} rows, {len(keep)} columns")
        print(f"  Treated: {int((df[schema.treatment] == 1).sum())}, "
              f"Control: {int((df[schema.treatment] == 0).sum())}")

    return df
