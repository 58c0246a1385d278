"""
Result tables and Excel export for the tutorial scripts.

The Excel helpers write one formatted sheet per table: dark-blue header row,
alternating row shading, green/yellow/red p-value cells and auto-fitted column
widths.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

# ---------------------------------------------------------------------------
# Formatting constants
# ---------------------------------------------------------------------------
HEADER_FILL = PatternFill(start_color="1F3864", end_color="1F3864", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
ALT_ROW_FILL = PatternFill(start_color="DCE6F1", end_color="DCE6F1", fill_type="solid")
WHITE_FILL = PatternFill(start_color="FFFFFF", end_color="FFFFFF", fill_type="solid")
TITLE_FONT = Font(bold=True, size=13, color="1F3864")
THIN_BORDER = Border(bottom=Side(style='thin', color='B0B0B0'))

GREEN_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
YELLOW_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
RED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")

PVALUE_COLUMNS = ("p_value", "P_Value", "P_Value_Raw", "p")

# Excel sheet names are limited to 31 characters
_MAX_SHEET_NAME = 31


def significance_stars(p_value: float) -> str:
    """'***' if p < 0.001, '**' if p < 0.01, '*' if p < 0.05, '' otherwise."""
    if p_value < 0.001:
        return "***"
    elif p_value < 0.01:
        return "**"
    elif p_value < 0.05:
        return "*"
    return ""


def format_pvalue(p: float) -> str:
    """Format a p-value for printed tables."""
    if pd.isna(p):
        return "—"
    if p < 0.0001:
        return "< 0.0001"
    elif p < 0.001:
        return "< 0.001"
    return f"{p:.3f}"


def estimator_table(results: Iterable) -> pd.DataFrame:
    """
    Stack estimator result records into a DataFrame.

    Parameters
    ----------
    results : iterable of NamedTuple
        Records exposing ``_asdict()`` (e.g. ``MatchingResult``).

    Returns
    -------
    pd.DataFrame
        One row per record plus a ``sig`` column of significance stars.
    """
    rows = [r._asdict() for r in results]
    if not rows:
        raise ValueError("No estimator results to tabulate")
    table = pd.DataFrame(rows)
    if "p_value" in table.columns:
        table["sig"] = [significance_stars(p) for p in table["p_value"]]
    return table


def descriptives_by_treatment(df: pd.DataFrame, variables: List[str],
                              treatment_var: str) -> pd.DataFrame:
    """Descriptive statistics for each variable by treatment group and overall."""
    rows = []
    for var in variables:
        for label, subset in [('Treated', df[df[treatment_var] == 1]),
                              ('Control', df[df[treatment_var] == 0]),
                              ('Overall', df)]:
            s = subset[var].dropna()
            rows.append({
                'Variable': var,
                'Group': label,
                'n': len(s),
                'Mean': round(s.mean(), 3),
                'SD': round(s.std(), 3),
                'Min': round(s.min(), 3),
                'Max': round(s.max(), 3),
                'Median': round(s.median(), 3),
            })
    return pd.DataFrame(rows)


def print_table(df: pd.DataFrame, title: str, decimals: int = 4) -> None:
    """Print a table under a banner, p-value columns formatted."""
    display_df = df.copy()
    for col in display_df.columns:
        if col in PVALUE_COLUMNS:
            display_df[col] = display_df[col].apply(format_pvalue)
        elif pd.api.types.is_float_dtype(display_df[col]):
            display_df[col] = display_df[col].round(decimals)
    print(f"\n{'=' * 80}")
    print(f"  {title}")
    print(f"{'=' * 80}")
    print(display_df.to_string(index=False))


# ---------------------------------------------------------------------------
# openpyxl sheet helpers
# ---------------------------------------------------------------------------

def apply_header_format(ws, row, max_col):
    """Apply dark-blue header formatting to a row."""
    for col in range(1, max_col + 1):
        cell = ws.cell(row=row, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal='center', vertical='center', wrap_text=True)


def apply_alternating_rows(ws, start_row, end_row, max_col):
    for r in range(start_row, end_row + 1):
        fill = ALT_ROW_FILL if (r - start_row) % 2 == 0 else WHITE_FILL
        for col in range(1, max_col + 1):
            cell = ws.cell(row=r, column=col)
            cell.fill = fill
            cell.border = THIN_BORDER
            cell.alignment = Alignment(horizontal='center', vertical='center')


def auto_fit_columns(ws, min_width=10, max_width=40):
    """Auto-fit column widths based on content."""
    for col_cells in ws.columns:
        max_len = 0
        col_letter = get_column_letter(col_cells[0].column)
        for cell in col_cells:
            if cell.value is not None:
                max_len = max(max_len, len(str(cell.value)))
        ws.column_dimensions[col_letter].width = min(max(max_len + 3, min_width), max_width)


def write_title(ws, row, title_text, max_col=1):
    cell = ws.cell(row=row, column=1, value=title_text)
    cell.font = TITLE_FONT
    cell.alignment = Alignment(horizontal='left')
    if max_col > 1:
        ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=max_col)


def write_df(ws, df, start_row, start_col=1):
    """Write a DataFrame starting at (start_row, start_col); returns the last data row."""
    for c_idx, col_name in enumerate(df.columns, start=start_col):
        ws.cell(row=start_row, column=c_idx, value=str(col_name))
    apply_header_format(ws, start_row, start_col + len(df.columns) - 1)

    for r_idx, row_data in enumerate(df.itertuples(index=False), start=start_row + 1):
        for c_idx, value in enumerate(row_data, start=start_col):
            cell = ws.cell(row=r_idx, column=c_idx)
            # openpyxl only accepts native Python scalars
            if isinstance(value, (np.bool_, bool)):
                cell.value = bool(value)
            elif isinstance(value, np.integer):
                cell.value = int(value)
            elif isinstance(value, (np.floating, float)):
                cell.value = None if np.isnan(value) else round(float(value), 4)
            else:
                cell.value = value

    end_row = start_row + len(df)
    apply_alternating_rows(ws, start_row + 1, end_row, start_col + len(df.columns) - 1)
    return end_row


def apply_pvalue_conditional(ws, col_letter, start_row, end_row):
    """Green (p < .05), yellow (.05 <= p < .10), red (p >= .10)."""
    for r in range(start_row, end_row + 1):
        cell = ws[f"{col_letter}{r}"]
        try:
            val = float(cell.value)
        except (TypeError, ValueError):
            continue
        if val < 0.05:
            cell.fill = GREEN_FILL
        elif val < 0.10:
            cell.fill = YELLOW_FILL
        else:
            cell.fill = RED_FILL


def export_tables_to_excel(
    tables: Dict[str, pd.DataFrame],
    path,
    title: Optional[str] = None,
    verbose: bool = True
) -> Path:
    """
    Write each DataFrame in ``tables`` to its own formatted sheet.

    Parameters
    ----------
    tables : dict
        Sheet name -> DataFrame. Sheet names longer than 31 characters are
        truncated.
    path : str or Path
        Destination ``.xlsx`` file; parent directories are created.
    title : str, optional
        Title written above every table.

    Returns
    -------
    Path
        The written file.
    """
    if not tables:
        raise ValueError("No tables to export")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    wb.remove(wb.active)
    for sheet_name, df in tables.items():
        ws = wb.create_sheet(str(sheet_name)[:_MAX_SHEET_NAME])
        start_row = 1
        if title:
            write_title(ws, 1, f"{title} – {sheet_name}", max_col=max(len(df.columns), 1))
            start_row = 3
        df = df.reset_index(drop=True)
        end_row = write_df(ws, df, start_row=start_row)
        for c_idx, col_name in enumerate(df.columns, start=1):
            if col_name in PVALUE_COLUMNS:
                apply_pvalue_conditional(ws, get_column_letter(c_idx), start_row + 1, end_row)
        auto_fit_columns(ws)

    wb.save(path)
    if verbose:
        print(f"  [OK] Results exported to {path}")
    return path
