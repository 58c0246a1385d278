"""Shared fixtures for the tutorial helper tests."""

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from psa_functions.simulated_data import generate_cds_data, generate_example_data


@pytest.fixture
def example_df():
    """500 rows: treatment t, outcome y, covariates x1, x2 and binary x3."""
    return generate_example_data(n=500, seed=42)


@pytest.fixture
def cds_df():
    return generate_cds_data(n=400, seed=7)


@pytest.fixture
def heteroskedastic_df():
    """Residual spread grows linearly with z; w is unrelated noise."""
    rng = np.random.default_rng(3)
    n = 500
    z = rng.uniform(0, 3, n)
    w = rng.normal(0, 1, n)
    t = rng.binomial(1, 0.5, n)
    y = 1.0 + 0.5 * t + 0.3 * z + rng.normal(0, 1, n) * (0.2 + z)
    return pd.DataFrame({"y": y, "t": t, "z": z, "w": w})


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")
