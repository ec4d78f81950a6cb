"""
False discovery rate control for HMR calls.

The null distribution of domain scores comes from the same model run on
data whose counts were shuffled within each chain, which keeps the
coverage distribution and chain structure but destroys the spatial
correlation the HMM relies on.
"""

import sys
from typing import List, Optional, Sequence

import numpy as np

from .data_loader import SiteTable
from .domains import Domain, build_domains, domain_scores
from .segmentation import iter_chains
from .two_state_hmm import HMMParameters, TwoStateHMM

MAX_SCORE = sys.float_info.max
MIN_SCORE = -sys.float_info.max


def get_posterior_cutoff(null_scores: Sequence[float], fdr: float) -> float:
    """
    Domain score cutoff for a target false discovery rate.

    Takes the (1 - fdr) quantile of the null scores and moves up to the
    next strictly larger null score when there is one, which gives the
    more stringent cutoff.

    Args:
        null_scores: Scores of domains found in shuffled data
        fdr: Target false discovery rate

    Returns:
        Cutoff; MAX_SCORE admits nothing and MIN_SCORE admits everything
    """
    if fdr <= 0:
        return MAX_SCORE
    if fdr > 1:
        return MIN_SCORE

    scores = np.sort(np.asarray(null_scores, dtype=float))
    n = len(scores)
    if n == 0:
        return MIN_SCORE

    index = min(int(n * (1 - fdr)), n - 1)
    stricter = int(np.searchsorted(scores, scores[index], side='right'))
    if stricter < n:
        index = stricter

    return float(scores[index])


def shuffle_counts(
    sites: SiteTable,
    reset_points: np.ndarray,
    rng: np.random.Generator
) -> SiteTable:
    """
    Copy of the sites with (meth, unmeth) pairs permuted inside each chain.

    Args:
        sites: Site table with coverage
        reset_points: Chain boundaries
        rng: Random generator

    Returns:
        New SiteTable; the input is not modified
    """
    order = np.arange(len(sites))
    for start, stop in iter_chains(reset_points):
        order[start:stop] = start + rng.permutation(stop - start)
    return sites.with_counts(sites.meth[order], sites.unmeth[order])


class FDRCutoffEstimator:
    """Posterior score cutoff from a shuffled null."""

    def __init__(
        self,
        params: HMMParameters,
        rng: Optional[np.random.Generator] = None,
        use_viterbi: bool = False,
        close_final: bool = True,
        verbose: bool = False
    ):
        """
        Initialize estimator.

        Args:
            params: Trained HMM parameters
            rng: Random generator for the shuffle (default: unseeded)
            use_viterbi: Decode the null with Viterbi instead of posteriors
            close_final: Passed on to build_domains
            verbose: Print progress to stderr
        """
        self.hmm = TwoStateHMM(params)
        self.rng = rng if rng is not None else np.random.default_rng()
        self.use_viterbi = use_viterbi
        self.close_final = close_final
        self.verbose = verbose

    def null_domains(
        self,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> List[Domain]:
        """Domains called on a within-chain shuffle of the counts."""
        shuffled = shuffle_counts(sites, reset_points, self.rng)
        track = self.hmm.posteriors(shuffled, reset_points)
        classes = self.hmm.decode(shuffled, reset_points, self.use_viterbi,
                                  track=track)
        return build_domains(shuffled, track.log_odds, reset_points, classes,
                             close_final=self.close_final)

    def estimate(
        self,
        sites: SiteTable,
        reset_points: np.ndarray,
        fdr: float
    ) -> float:
        """
        Shuffle, decode, and derive the cutoff.

        Args:
            sites: Site table with coverage
            reset_points: Chain boundaries
            fdr: Target false discovery rate

        Returns:
            Posterior score cutoff for real domains
        """
        if self.verbose:
            print("Computing cutoff by randomly shuffling original data ...",
                  file=sys.stderr)

        null = self.null_domains(sites, reset_points)
        cutoff = get_posterior_cutoff(domain_scores(null), fdr)

        if self.verbose:
            print(f"  {len(null)} null domains, FDR = {fdr}, "
                  f"posterior score >= {cutoff:.6g}", file=sys.stderr)

        return cutoff
