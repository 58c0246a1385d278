"""
Mock data generators for the propensity-score analysis tutorial.

The real Child Development Supplement extracts cannot be redistributed, so the
tutorial ships deterministic look-alikes with the same columns:

- Treatment ``kuse`` (child ever used AFDC) is self-selected: it depends on
  race, caregiver education, the income-to-needs ratio and the caregiver's own
  welfare history, so the raw comparison is confounded.
- Outcomes ``pcss97`` / ``lwss97`` are standardized test scores with a true
  treatment effect of ``TRUE_EFFECT`` points and residual variance that grows
  with ``age97`` (heteroskedastic by construction).
- Children are nested in caregivers (``pcgid``), so siblings share a random
  family effect.
"""

import numpy as np
import pandas as pd
from scipy.special import expit  # logistic function

from .data_loading import SEED

TRUE_EFFECT = -4.0
N_CHILDREN = 1000
MAX_SIBLINGS = 3


def _family_ids(n, rng, max_siblings=MAX_SIBLINGS):
    """Assign children to caregivers with 1..max_siblings children each."""
    sizes = []
    while sum(sizes) < n:
        sizes.append(int(rng.integers(1, max_siblings + 1)))
    ids = np.repeat(np.arange(1, len(sizes) + 1), sizes)[:n]
    return ids


def generate_cds_data(n=N_CHILDREN, outcome="pcss97", true_effect=TRUE_EFFECT,
                      seed=SEED):
    """
    Generate one CDS-style child-level table.

    Parameters
    ----------
    n : int
        Number of children.
    outcome : str
        Name of the test-score column (``pcss97`` or ``lwss97``).
    true_effect : float
        Effect of ``kuse`` on the outcome, in score points.
    seed : int
        Seed for ``numpy.random.default_rng``.

    Returns
    -------
    pd.DataFrame
        Columns: pcgid, kuse, outcome, male, black, age97, pcged97, mratio96,
        pcg_adc.
    """
    rng = np.random.default_rng(seed)

    pcgid = _family_ids(n, rng)
    n_families = pcgid.max()

    # Family-level characteristics are shared by siblings
    fam_black = rng.binomial(1, 0.45, n_families)
    fam_pcged = np.clip(np.round(rng.normal(12.2, 2.4, n_families)), 6, 18)
    fam_mratio = np.round(rng.lognormal(np.log(1.9), 0.6, n_families), 2)
    fam_adc = rng.choice([0, 1, 2], size=n_families, p=[0.6, 0.25, 0.15])
    fam_effect = rng.normal(0, 4.0, n_families)

    idx = pcgid - 1
    black = fam_black[idx]
    pcged97 = fam_pcged[idx]
    mratio96 = fam_mratio[idx]
    pcg_adc = fam_adc[idx]
    male = rng.binomial(1, 0.5, n)
    age97 = rng.integers(3, 13, n).astype(float)

    # Self-selection into welfare use
    logit = (-0.9 + 0.8 * black - 0.25 * (pcged97 - 12) - 0.9 * (mratio96 - 1.9)
             + 0.6 * pcg_adc)
    kuse = rng.binomial(1, expit(logit))

    # Noise standard deviation rises with age
    noise_sd = 6.0 + 1.1 * (age97 - 3)
    y = (100 + true_effect * kuse
         + 1.2 * (pcged97 - 12)
         + 2.5 * np.log(mratio96)
         - 3.0 * black
         - 1.0 * male
         + 0.4 * (age97 - 7)
         + fam_effect[idx]
         + rng.normal(0, 1, n) * noise_sd)

    return pd.DataFrame({
        "pcgid": pcgid,
        "kuse": kuse,
        outcome: np.round(y, 1),
        "male": male,
        "black": black,
        "age97": age97,
        "pcged97": pcged97,
        "mratio96": mratio96,
        "pcg_adc": pcg_adc,
    })


def generate_example_data(n=500, true_effect=2.0, seed=SEED):
    """Small worked example: treatment ``t``, outcome ``y``, covariates ``x1..x3``."""
    rng = np.random.default_rng(seed)
    x1 = rng.normal(0, 1, n)
    x2 = rng.normal(0, 1, n)
    x3 = rng.binomial(1, 0.4, n)
    t = rng.binomial(1, expit(0.6 * x1 - 0.4 * x2 + 0.5 * x3))
    y = (1.0 + true_effect * t + 1.5 * x1 + 0.8 * x2 - 0.5 * x3
         + rng.normal(0, 1, n) * (1 + 0.5 * np.abs(x1)))
    return pd.DataFrame({"t": t, "y": y, "x1": x1, "x2": x2, "x3": x3})
