"""
Baum-Welch training for the two-state HMR model.

Every chain returns its own expected statistics; they are combined in
chain order before the M-step, so results do not depend on how chains
are visited.
"""

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from .config import HMRConfig
from .data_loader import SiteTable
from .errors import NumericalInstabilityError
from .two_state_hmm import BG, FG, ChainStatistics, HMMParameters, TwoStateHMM


class TrainingStatus(Enum):
    """How the EM loop ended."""
    CONVERGED = 'converged'
    ITERATION_CAP_REACHED = 'iteration_cap_reached'
    DIVERGED = 'diverged'


@dataclass(frozen=True, eq=False)
class SufficientStatistics:
    """Expected statistics summed over all chains."""
    log_likelihood: float
    transition_counts: np.ndarray   # (2, 2)
    posteriors: np.ndarray          # (n_sites, 2)


@dataclass
class TrainingResult:
    """Trained parameters and how training ended."""
    params: HMMParameters
    status: TrainingStatus
    n_iterations: int
    log_likelihoods: List[float] = field(default_factory=list)
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.status is TrainingStatus.CONVERGED


def combine_statistics(chain_stats: List[ChainStatistics]) -> SufficientStatistics:
    """
    Reduce per-chain statistics in chain order.

    Args:
        chain_stats: One ChainStatistics per chain

    Returns:
        SufficientStatistics over the whole site table
    """
    if not chain_stats:
        raise ValueError("No chains to combine")

    log_likelihood = 0.0
    transition_counts = np.zeros((2, 2))
    for s in chain_stats:
        log_likelihood += s.log_likelihood
        transition_counts += s.transition_counts

    return SufficientStatistics(
        log_likelihood=log_likelihood,
        transition_counts=transition_counts,
        posteriors=np.concatenate([s.posteriors for s in chain_stats]),
    )


class BaumWelchTrainer:
    """Baum-Welch training of transitions and beta-binomial shapes."""

    def __init__(
        self,
        min_prob: float = 1e-10,
        tolerance: float = 1e-10,
        max_iterations: int = 10,
        verbose: bool = False
    ):
        """
        Initialize trainer.

        Args:
            min_prob: Floor applied to transition probabilities
            tolerance: Relative log-likelihood improvement that ends training
            max_iterations: Maximum number of E-steps
            verbose: Print per-iteration progress to stderr
        """
        self.min_prob = min_prob
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.verbose = verbose

    @classmethod
    def from_config(cls, config: HMRConfig) -> 'BaumWelchTrainer':
        return cls(
            min_prob=config.min_prob,
            tolerance=config.tolerance,
            max_iterations=config.max_iterations,
            verbose=config.verbose,
        )

    def expectation(
        self,
        params: HMMParameters,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> SufficientStatistics:
        """E-step over every chain."""
        chain_stats = TwoStateHMM(params).chain_statistics(sites, reset_points)
        return combine_statistics(chain_stats)

    def estimate_transitions(
        self,
        params: HMMParameters,
        transition_counts: np.ndarray
    ) -> np.ndarray:
        """Normalized expected transitions, floored away from zero."""
        row_sums = transition_counts.sum(axis=1, keepdims=True)
        trans = np.where(row_sums > 0,
                         transition_counts / np.where(row_sums > 0, row_sums, 1.0),
                         params.trans)
        trans = np.clip(trans, self.min_prob, 1.0)
        return trans / trans.sum(axis=1, keepdims=True)

    def maximization(
        self,
        params: HMMParameters,
        stats: SufficientStatistics,
        sites: SiteTable
    ) -> HMMParameters:
        """
        M-step: new transitions and shape parameters.

        Raises:
            NumericalInstabilityError: If a shape parameter fit fails
        """
        trans = self.estimate_transitions(params, stats.transition_counts)
        fg = params.fg.fit(sites.meth, sites.unmeth, stats.posteriors[:, FG])
        bg = params.bg.fit(sites.meth, sites.unmeth, stats.posteriors[:, BG])

        return HMMParameters(
            start=params.start,
            trans=trans,
            end=params.end,
            fg=fg,
            bg=bg,
        )

    def train(
        self,
        params: HMMParameters,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> TrainingResult:
        """
        Run Baum-Welch until convergence or the iteration cap.

        Args:
            params: Starting parameters
            sites: Site table with coverage
            reset_points: Chain boundaries

        Returns:
            TrainingResult; on divergence the parameters are the last
            ones whose likelihood did not drop
        """
        if self.verbose:
            print("[TRAINING HMM]", file=sys.stderr)

        history: List[float] = []
        previous: Optional[HMMParameters] = None
        status = TrainingStatus.ITERATION_CAP_REACHED
        message = ""

        for i in range(self.max_iterations):
            stats = self.expectation(params, sites, reset_points)
            log_likelihood = stats.log_likelihood

            if not np.isfinite(log_likelihood):
                status = TrainingStatus.DIVERGED
                message = f"Non-finite log-likelihood at iteration {i + 1}"
                if previous is not None:
                    params = previous
                break

            history.append(log_likelihood)
            if self.verbose:
                print(f"  Iteration {i + 1}/{self.max_iterations}: "
                      f"log L = {log_likelihood:.6f} {params}", file=sys.stderr)

            if len(history) > 1:
                prev_ll = history[-2]
                delta = (log_likelihood - prev_ll) / max(abs(prev_ll), 1e-300)
                if delta < -self.tolerance:
                    status = TrainingStatus.DIVERGED
                    message = (f"Log-likelihood dropped from {prev_ll:.6f} "
                               f"to {log_likelihood:.6f}")
                    params = previous
                    break
                if delta < self.tolerance:
                    status = TrainingStatus.CONVERGED
                    break

            try:
                new_params = self.maximization(params, stats, sites)
            except NumericalInstabilityError as e:
                status = TrainingStatus.DIVERGED
                message = str(e)
                break

            previous = params
            params = new_params

        if self.verbose:
            print(f"Training finished: {status.value} after {len(history)} "
                  f"iterations" + (f" ({message})" if message else ""),
                  file=sys.stderr)

        return TrainingResult(
            params=params,
            status=status,
            n_iterations=len(history),
            log_likelihoods=history,
            message=message,
        )

    def save_model(self, result: TrainingResult, filepath: str) -> None:
        """
        Save trained parameters and training outcome to JSON.

        Args:
            result: Output of train()
            filepath: Output path
        """
        result.params.save_json(filepath, extra={
            'status': result.status.value,
            'n_iterations': result.n_iterations,
            'log_likelihoods': result.log_likelihoods,
        })
        if self.verbose:
            print(f"Saved model to {filepath}", file=sys.stderr)

    def load_model(self, filepath: str) -> HMMParameters:
        """Load parameters saved by save_model."""
        params = HMMParameters.load_json(filepath)
        if self.verbose:
            print(f"Loaded model from {filepath}", file=sys.stderr)
        return params
