"""
Shared fixtures: simulated CpG counts with known hypomethylated blocks.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from hypometh_hmm.data_loader import SiteTable  # noqa: E402


def simulate_sites(seed=0, n_blocks=6, fg_len=40, bg_len=80,
                   chrom="chr1", spacing=100, first_start=1000):
    """
    Alternating background / hypomethylated blocks on one chromosome.

    Returns:
        (SiteTable, truth) where truth is True at hypomethylated CpGs
    """
    rng = np.random.default_rng(seed)
    truth = []
    for _ in range(n_blocks):
        truth += [False] * bg_len + [True] * fg_len
    truth += [False] * bg_len
    truth = np.array(truth)

    n = len(truth)
    coverage = rng.integers(5, 30, size=n)
    levels = np.where(truth, rng.beta(1, 9, size=n), rng.beta(9, 1, size=n))
    meth = rng.binomial(coverage, levels)
    starts = first_start + np.arange(n) * spacing

    sites = SiteTable.from_counts([chrom] * n, starts, meth, coverage - meth)
    return sites, truth


def write_cpg_bed(path, sites, zero_coverage_every=0):
    """Write sites in the hmr input format (level in score, coverage in name)."""
    with open(path, 'w') as f:
        for i in range(len(sites)):
            cov = int(sites.coverage[i])
            if zero_coverage_every and i % zero_coverage_every == 0:
                cov, level = 0, 0.0
            else:
                level = sites.meth[i] / cov
            f.write(f"{sites.chroms[i]}\t{sites.starts[i]}\t{sites.ends[i]}\t"
                    f"CpG:{cov}\t{level:.6f}\t+\n")
    return path


@pytest.fixture
def simulated():
    return simulate_sites()


@pytest.fixture
def site_simulator():
    return simulate_sites


@pytest.fixture
def bed_writer():
    return write_cpg_bed


@pytest.fixture
def scenario_sites():
    """Five CpGs on one chromosome, coverage 10 each."""
    return SiteTable.from_counts(
        chroms=["chr1"] * 5,
        starts=[100, 200, 300, 400, 500],
        meth=[9, 8, 9, 1, 0],
        unmeth=[1, 2, 1, 9, 10],
    )
