"""
Separation of CpG sites into independent chains.

Sites with no reads never enter the model. The remaining sites are cut
into chains at chromosome changes and at CpG deserts, gaps between
consecutive sites longer than the desert size.
"""

import sys
from typing import Iterator, Tuple

import numpy as np

from .data_loader import SiteTable


def remove_uncovered(sites: SiteTable) -> SiteTable:
    """Drop sites with zero total coverage."""
    return sites.subset(sites.coverage > 0)


def find_reset_points(sites: SiteTable, desert_size: int) -> np.ndarray:
    """
    Find the chain start indices of an already filtered site table.

    Args:
        sites: Sites with coverage, in genomic order
        desert_size: Largest start-to-start distance kept inside a chain

    Returns:
        Strictly increasing int64 array starting at 0 and ending with
        len(sites)
    """
    n = len(sites)
    if n == 0:
        return np.zeros(1, dtype=np.int64)

    same_chrom = sites.chroms[1:] == sites.chroms[:-1]
    dist = np.diff(sites.starts)
    breaks = np.flatnonzero(~same_chrom | (dist > desert_size)) + 1

    return np.concatenate(([0], breaks, [n])).astype(np.int64)


def separate_regions(
    sites: SiteTable,
    desert_size: int,
    verbose: bool = False
) -> Tuple[SiteTable, np.ndarray]:
    """
    Remove uncovered sites, then split the rest at deserts.

    Distances are only measured between retained sites, so the coverage
    filter runs first.

    Args:
        sites: Full site table in genomic order
        desert_size: Desert distance in bases
        verbose: Print a summary to stderr

    Returns:
        (retained_sites, reset_points)
    """
    if verbose:
        print("[SEPARATING BY CPG DESERT]", file=sys.stderr)

    retained = remove_uncovered(sites)
    reset_points = find_reset_points(retained, desert_size)

    if verbose:
        print(f"CPGS RETAINED: {len(retained)}", file=sys.stderr)
        print(f"DESERTS REMOVED: {len(reset_points) - 1}", file=sys.stderr)

    return retained, reset_points


def iter_chains(reset_points: np.ndarray) -> Iterator[Tuple[int, int]]:
    """Yield (start, stop) index ranges of each chain."""
    for i in range(len(reset_points) - 1):
        yield int(reset_points[i]), int(reset_points[i + 1])


def chain_ids(reset_points: np.ndarray) -> np.ndarray:
    """Chain index of every site covered by the reset points."""
    lengths = np.diff(reset_points)
    return np.repeat(np.arange(len(lengths)), lengths)
