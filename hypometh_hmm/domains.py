"""
Construction of hypomethylated domains from per-CpG labels.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from .data_loader import SiteTable
from .segmentation import chain_ids


@dataclass
class Domain:
    """A run of foreground CpGs inside one chain."""
    chrom: str
    start: int
    end: int
    name: str
    score: float
    n_cpgs: int
    strand: str = '+'

    def __len__(self) -> int:
        return self.end - self.start


def build_domains(
    sites: SiteTable,
    post_scores: np.ndarray,
    reset_points: np.ndarray,
    classes: np.ndarray,
    close_final: bool = True,
    name_prefix: str = "HYPO"
) -> List[Domain]:
    """
    Collapse foreground labels into domains.

    A domain opens at the first foreground CpG after a background CpG or
    a chain boundary. It closes at a background CpG or a chain boundary,
    ending at the end coordinate of its last member. Its score is the
    sum of its members' posterior scores.

    Args:
        sites: Site table with coverage
        post_scores: Posterior score per site
        reset_points: Chain boundaries (0, ..., n_sites)
        classes: Foreground label per site
        close_final: Emit a domain still open at the last CpG. With
            False that domain is dropped.
        name_prefix: Prefix of the sequential domain names

    Returns:
        List of Domain in genomic order
    """
    chains = chain_ids(reset_points)
    if not (len(post_scores) == len(classes) == len(sites) == len(chains)):
        raise ValueError("sites, post_scores, classes and chains must be aligned")

    domains: List[Domain] = []
    current: Optional[Domain] = None
    prev_end = 0

    def close(end: int) -> None:
        current.end = end
        domains.append(current)

    for i in range(len(classes)):
        if i > 0 and chains[i] != chains[i - 1] and current is not None:
            close(prev_end)
            current = None

        if classes[i]:
            if current is None:
                current = Domain(
                    chrom=str(sites.chroms[i]),
                    start=int(sites.starts[i]),
                    end=int(sites.ends[i]),
                    name=f"{name_prefix}{len(domains)}",
                    score=0.0,
                    n_cpgs=0,
                )
            current.n_cpgs += 1
            current.score += float(post_scores[i])
        elif current is not None:
            close(prev_end)
            current = None

        prev_end = int(sites.ends[i])

    if current is not None and close_final:
        close(prev_end)

    return domains


def filter_domains(domains: List[Domain], cutoff: float) -> List[Domain]:
    """Keep domains scoring at least the cutoff."""
    return [d for d in domains if d.score >= cutoff]


def domain_scores(domains: List[Domain]) -> np.ndarray:
    return np.array([d.score for d in domains], dtype=float)
