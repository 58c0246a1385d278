"""Tests for result tables and the Excel export."""

import numpy as np
import pandas as pd
import pytest
from openpyxl import load_workbook

from psa_functions.matching_estimators import MatchingResult
from psa_functions.reporting import (
    GREEN_FILL,
    HEADER_FILL,
    RED_FILL,
    descriptives_by_treatment,
    estimator_table,
    export_tables_to_excel,
    format_pvalue,
    print_table,
    significance_stars,
)


@pytest.mark.parametrize("p,stars", [
    (0.0005, "***"),
    (0.005, "**"),
    (0.03, "*"),
    (0.05, ""),
    (0.7, ""),
])
def test_significance_stars(p, stars):
    assert significance_stars(p) == stars


def test_format_pvalue():
    assert format_pvalue(0.00001) == "< 0.0001"
    assert format_pvalue(0.0005) == "< 0.001"
    assert format_pvalue(0.1234) == "0.123"
    assert format_pvalue(np.nan) == "—"


class TestTables:
    def setup_method(self):
        self.results = [
            MatchingResult("ATE", "sample", -3.2, 1.1, -3.2 / 1.1, 0.0036, 400, 4),
            MatchingResult("ATE", "population", -3.2, 1.4, -3.2 / 1.4, 0.022, 400, 4),
        ]

    def test_estimator_table(self):
        table = estimator_table(self.results)
        assert list(table.columns) == ["estimand", "sample", "estimate", "std_error",
                                       "t_stat", "p_value", "n_obs", "n_matches", "sig"]
        assert list(table["sig"]) == ["**", "*"]

    def test_estimator_table_empty(self):
        with pytest.raises(ValueError):
            estimator_table([])

    def test_descriptives_by_treatment(self, example_df):
        table = descriptives_by_treatment(example_df, ["y", "x1"], "t")
        assert len(table) == 6
        overall = table[(table["Variable"] == "y") & (table["Group"] == "Overall")].iloc[0]
        assert overall["n"] == len(example_df)
        assert overall["Mean"] == pytest.approx(round(example_df["y"].mean(), 3))

    def test_print_table(self, capsys):
        print_table(estimator_table(self.results), "MATCHING")
        out = capsys.readouterr().out
        assert "MATCHING" in out
        assert "0.004" in out


class TestExcelExport:
    def test_sheets_and_formatting(self, tmp_path):
        long_name = "A_Sheet_Name_Longer_Than_Thirty_One"
        tables = {
            "Estimates": pd.DataFrame({"term": ["kuse", "age97"], "p_value": [0.01, 0.4]}),
            long_name: pd.DataFrame({"flag": [True, False], "n": [np.int64(3), np.int64(4)]}),
        }
        path = export_tables_to_excel(tables, tmp_path / "out" / "report.xlsx",
                                      title="Test", verbose=False)
        assert path.exists()

        wb = load_workbook(path)
        assert wb.sheetnames == ["Estimates", long_name[:31]]
        ws = wb["Estimates"]
        assert ws["A1"].value == "Test – Estimates"
        assert ws["A3"].value == "term"
        assert ws["A3"].fill.start_color.rgb.endswith(HEADER_FILL.start_color.rgb[-6:])
        assert ws["B4"].value == pytest.approx(0.01)
        assert ws["B4"].fill.start_color.rgb.endswith(GREEN_FILL.start_color.rgb[-6:])
        assert ws["B5"].fill.start_color.rgb.endswith(RED_FILL.start_color.rgb[-6:])
        assert wb[long_name[:31]]["A4"].value is True

    def test_no_tables(self, tmp_path):
        with pytest.raises(ValueError):
            export_tables_to_excel({}, tmp_path / "x.xlsx")
