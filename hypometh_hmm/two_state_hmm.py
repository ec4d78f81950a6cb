"""
Two-state HMM over CpG chains with beta-binomial emissions.

State 0 is the hypomethylated foreground, state 1 the background.
Every chain is an independent sequence: the start distribution applies
at its first CpG and the end-transition vector at its last CpG, and no
transition crosses a chain boundary.

All recursions run in log space. The 2-state structure is unrolled the
same way as a hand-written 2-state forward/backward, so the inner loops
only touch Python floats.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.special import logsumexp

from .data_loader import SiteTable
from .emissions import BetaBinomial
from .segmentation import iter_chains

FG = 0
BG = 1


class Transition(Enum):
    """State transitions whose posteriors can be reported."""
    FG_TO_BG = (FG, BG)
    BG_TO_FG = (BG, FG)


@dataclass(frozen=True, eq=False)
class HMMParameters:
    """Start, transition and end probabilities plus the two emission laws."""
    start: np.ndarray   # (2,)
    trans: np.ndarray   # (2, 2), rows sum to 1
    end: np.ndarray     # (2,) end-of-chain correction
    fg: BetaBinomial
    bg: BetaBinomial

    def __post_init__(self):
        object.__setattr__(self, 'start', np.asarray(self.start, dtype=float))
        object.__setattr__(self, 'trans', np.asarray(self.trans, dtype=float))
        object.__setattr__(self, 'end', np.asarray(self.end, dtype=float))

        if self.start.shape != (2,) or self.end.shape != (2,):
            raise ValueError("start and end must have 2 entries")
        if self.trans.shape != (2, 2):
            raise ValueError(f"trans must be 2x2, got {self.trans.shape}")
        if np.any(self.trans < 0) or not np.allclose(self.trans.sum(axis=1), 1.0):
            raise ValueError(f"Transition rows must sum to 1, got {self.trans.tolist()}")
        if np.any(self.start < 0) or np.any(self.end < 0):
            raise ValueError("start and end probabilities must be non-negative")

    @classmethod
    def initial(cls, mean_coverage: float) -> 'HMMParameters':
        """
        Starting point for Baum-Welch.

        Foreground expects a third of the reads methylated, background two
        thirds, with a pseudo-sample size equal to the mean coverage.
        """
        if mean_coverage <= 0:
            raise ValueError(f"mean_coverage must be positive, got {mean_coverage}")
        return cls(
            start=np.array([0.5, 0.5]),
            trans=np.array([[0.75, 0.25], [0.25, 0.75]]),
            end=np.array([1e-10, 1e-10]),
            fg=BetaBinomial(0.33 * mean_coverage, 0.67 * mean_coverage),
            bg=BetaBinomial(0.67 * mean_coverage, 0.33 * mean_coverage),
        )

    def log_emissions(self, meth: np.ndarray, unmeth: np.ndarray) -> np.ndarray:
        """Per-site emission log-probabilities, shape (n, 2)."""
        return np.column_stack([
            self.fg.log_likelihood(meth, unmeth),
            self.bg.log_likelihood(meth, unmeth),
        ])

    def log_start(self) -> np.ndarray:
        with np.errstate(divide='ignore'):
            return np.log(self.start)

    def log_trans(self) -> np.ndarray:
        with np.errstate(divide='ignore'):
            return np.log(self.trans)

    def log_end(self) -> np.ndarray:
        with np.errstate(divide='ignore'):
            return np.log(self.end)

    def to_dict(self) -> Dict:
        return {
            'start': self.start.tolist(),
            'trans': self.trans.tolist(),
            'end': self.end.tolist(),
            'fg_alpha': self.fg.alpha,
            'fg_beta': self.fg.beta,
            'bg_alpha': self.bg.alpha,
            'bg_beta': self.bg.beta,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> 'HMMParameters':
        return cls(
            start=np.array(d['start']),
            trans=np.array(d['trans']),
            end=np.array(d['end']),
            fg=BetaBinomial(d['fg_alpha'], d['fg_beta']),
            bg=BetaBinomial(d['bg_alpha'], d['bg_beta']),
        )

    def save_json(self, filepath: str, extra: Optional[Dict] = None) -> None:
        """Save parameters to JSON, with optional extra metadata."""
        data = self.to_dict()
        if extra:
            data.update(extra)
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load_json(cls, filepath: str) -> 'HMMParameters':
        with open(filepath) as f:
            return cls.from_dict(json.load(f))

    def __repr__(self) -> str:
        t = self.trans
        return (f"HMMParameters(fg->fg={t[0, 0]:.4g}, bg->bg={t[1, 1]:.4g}, "
                f"fg=({self.fg.alpha:.4g}, {self.fg.beta:.4g}), "
                f"bg=({self.bg.alpha:.4g}, {self.bg.beta:.4g}))")


def forward(
    log_emit: np.ndarray,
    log_start: np.ndarray,
    log_trans: np.ndarray,
    log_end: np.ndarray
) -> Tuple[np.ndarray, float]:
    """
    Forward algorithm for one chain.

    Returns:
        alpha: Forward log-probabilities (n x 2)
        log_prob: Log-likelihood of the chain, end transition included
    """
    n = len(log_emit)
    alpha = np.empty((n, 2))

    t00, t01 = log_trans[0]
    t10, t11 = log_trans[1]

    a0 = log_start[0] + log_emit[0, 0]
    a1 = log_start[1] + log_emit[0, 1]
    alpha[0] = a0, a1

    for i in range(1, n):
        a0, a1 = (np.logaddexp(a0 + t00, a1 + t10) + log_emit[i, 0],
                  np.logaddexp(a0 + t01, a1 + t11) + log_emit[i, 1])
        alpha[i] = a0, a1

    log_prob = float(np.logaddexp(a0 + log_end[0], a1 + log_end[1]))
    return alpha, log_prob


def backward(
    log_emit: np.ndarray,
    log_trans: np.ndarray,
    log_end: np.ndarray
) -> np.ndarray:
    """
    Backward algorithm for one chain.

    Returns:
        beta: Backward log-probabilities (n x 2)
    """
    n = len(log_emit)
    beta = np.empty((n, 2))

    t00, t01 = log_trans[0]
    t10, t11 = log_trans[1]

    b0, b1 = log_end
    beta[-1] = b0, b1

    for i in range(n - 2, -1, -1):
        e0 = log_emit[i + 1, 0] + b0
        e1 = log_emit[i + 1, 1] + b1
        b0, b1 = np.logaddexp(t00 + e0, t01 + e1), np.logaddexp(t10 + e0, t11 + e1)
        beta[i] = b0, b1

    return beta


def viterbi(
    log_emit: np.ndarray,
    log_start: np.ndarray,
    log_trans: np.ndarray,
    log_end: np.ndarray
) -> Tuple[np.ndarray, float]:
    """
    Most likely state path for one chain.

    When both predecessors of a state score the same, the predecessor
    that leads at the previous CpG is taken (foreground on a full tie),
    so the decoded path is deterministic.

    Returns:
        path: Boolean array, True for foreground
        log_prob: Log-probability of the path, end transition included
    """
    n = len(log_emit)
    back = np.zeros((n, 2), dtype=np.int8)

    t00, t01 = log_trans[0]
    t10, t11 = log_trans[1]

    v0 = log_start[0] + log_emit[0, 0]
    v1 = log_start[1] + log_emit[0, 1]

    for i in range(1, n):
        dominant = FG if v0 >= v1 else BG

        from_0, from_1 = v0 + t00, v1 + t10
        if from_0 > from_1 or (from_0 == from_1 and dominant == FG):
            n0, back[i, 0] = from_0, FG
        else:
            n0, back[i, 0] = from_1, BG

        from_0, from_1 = v0 + t01, v1 + t11
        if from_0 > from_1 or (from_0 == from_1 and dominant == FG):
            n1, back[i, 1] = from_0, FG
        else:
            n1, back[i, 1] = from_1, BG

        v0 = n0 + log_emit[i, 0]
        v1 = n1 + log_emit[i, 1]

    final_0, final_1 = v0 + log_end[0], v1 + log_end[1]
    state = FG if final_0 >= final_1 else BG
    log_prob = float(max(final_0, final_1))

    path = np.empty(n, dtype=np.int8)
    path[-1] = state
    for i in range(n - 1, 0, -1):
        state = back[i, state]
        path[i - 1] = state

    return path == FG, log_prob


@dataclass(frozen=True, eq=False)
class ForwardBackwardResult:
    """Posterior quantities of one chain."""
    log_likelihood: float
    log_posteriors: np.ndarray   # (n, 2), log P(state | data)
    transitions: np.ndarray      # (n - 1, 2, 2), P(s_i, s_i+1 | data)

    @property
    def posteriors(self) -> np.ndarray:
        return np.exp(self.log_posteriors)

    @property
    def log_odds(self) -> np.ndarray:
        """log P(fg) - log P(bg) per site."""
        return self.log_posteriors[:, FG] - self.log_posteriors[:, BG]


@dataclass(frozen=True, eq=False)
class ChainStatistics:
    """Expected sufficient statistics from one chain's E-step."""
    log_likelihood: float
    transition_counts: np.ndarray   # (2, 2) expected transitions
    posteriors: np.ndarray          # (n, 2) state weights per site


@dataclass(frozen=True, eq=False)
class PosteriorTrack:
    """Per-site posterior quantities over all chains."""
    fg_posteriors: np.ndarray   # P(fg) per site
    log_odds: np.ndarray        # log P(fg) - log P(bg) per site
    fg_to_bg: np.ndarray        # P(fg at i, bg at i + 1)
    bg_to_fg: np.ndarray        # P(bg at i, fg at i + 1)

    @property
    def classes(self) -> np.ndarray:
        return self.fg_posteriors > 0.5

    def transition(self, transition: Transition) -> np.ndarray:
        if transition is Transition.FG_TO_BG:
            return self.fg_to_bg
        return self.bg_to_fg

    def max_transition(self) -> np.ndarray:
        """Larger of the two state-change posteriors per site."""
        return np.maximum(self.fg_to_bg, self.bg_to_fg)


def forward_backward(
    log_emit: np.ndarray,
    params: HMMParameters
) -> ForwardBackwardResult:
    """
    Run forward-backward on one chain's emission log-probabilities.

    Args:
        log_emit: Emission log-probabilities (n x 2)
        params: HMM parameters

    Returns:
        ForwardBackwardResult
    """
    log_trans = params.log_trans()
    alpha, log_prob = forward(log_emit, params.log_start(), log_trans,
                              params.log_end())
    beta = backward(log_emit, log_trans, params.log_end())

    log_gamma = alpha + beta
    log_gamma -= np.logaddexp(log_gamma[:, 0], log_gamma[:, 1])[:, None]

    # xi[i, a, b] = alpha[i, a] + trans[a, b] + emit[i+1, b] + beta[i+1, b]
    log_xi = (alpha[:-1, :, None] + log_trans[None, :, :]
              + (log_emit[1:] + beta[1:])[:, None, :])
    # Each pair sums to P(data); normalizing per pair keeps rounding out
    log_xi -= logsumexp(log_xi, axis=(1, 2))[:, None, None]

    return ForwardBackwardResult(
        log_likelihood=log_prob,
        log_posteriors=log_gamma,
        transitions=np.exp(log_xi),
    )


class TwoStateHMM:
    """
    Inference over all chains of a site table.

    Architecture:
    - 2 states: foreground (hypomethylated) and background
    - One independent chain per reset-point interval
    - Beta-binomial emissions from HMMParameters
    """

    def __init__(self, params: HMMParameters):
        self.params = params

    def _chains(self, sites: SiteTable, reset_points: np.ndarray):
        log_emit = self.params.log_emissions(sites.meth, sites.unmeth)
        for start, stop in iter_chains(reset_points):
            yield start, stop, log_emit[start:stop]

    def chain_statistics(
        self,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> List[ChainStatistics]:
        """E-step: one ChainStatistics per chain, in chain order."""
        stats = []
        for _, _, log_emit in self._chains(sites, reset_points):
            fb = forward_backward(log_emit, self.params)
            stats.append(ChainStatistics(
                log_likelihood=fb.log_likelihood,
                transition_counts=fb.transitions.sum(axis=0),
                posteriors=fb.posteriors,
            ))
        return stats

    def log_likelihood(self, sites: SiteTable, reset_points: np.ndarray) -> float:
        total = 0.0
        for _, _, log_emit in self._chains(sites, reset_points):
            _, log_prob = forward(log_emit, self.params.log_start(),
                                  self.params.log_trans(), self.params.log_end())
            total += log_prob
        return total

    def viterbi_decoding(
        self,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> np.ndarray:
        """
        MAP state path of every chain.

        Returns:
            Boolean array (n_sites,), True for foreground
        """
        classes = np.zeros(len(sites), dtype=bool)
        log_start = self.params.log_start()
        log_trans = self.params.log_trans()
        log_end = self.params.log_end()
        for start, stop, log_emit in self._chains(sites, reset_points):
            classes[start:stop], _ = viterbi(log_emit, log_start, log_trans, log_end)
        return classes

    def posteriors(
        self,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> PosteriorTrack:
        """
        One forward-backward pass per chain, collected per site.

        Transition posteriors at site i refer to the pair (i, i + 1); the
        last CpG of a chain gets 0.
        """
        n = len(sites)
        fg_posteriors = np.zeros(n)
        log_odds = np.zeros(n)
        fg_to_bg = np.zeros(n)
        bg_to_fg = np.zeros(n)

        for start, stop, log_emit in self._chains(sites, reset_points):
            fb = forward_backward(log_emit, self.params)
            fg_posteriors[start:stop] = fb.posteriors[:, FG]
            log_odds[start:stop] = fb.log_odds
            fg_to_bg[start:stop - 1] = fb.transitions[:, FG, BG]
            bg_to_fg[start:stop - 1] = fb.transitions[:, BG, FG]

        return PosteriorTrack(
            fg_posteriors=fg_posteriors,
            log_odds=log_odds,
            fg_to_bg=fg_to_bg,
            bg_to_fg=bg_to_fg,
        )

    def posterior_decoding(
        self,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Label each site foreground when its posterior exceeds 0.5.

        Returns:
            (classes, fg_posteriors)
        """
        track = self.posteriors(sites, reset_points)
        return track.classes, track.fg_posteriors

    def posterior_scores(
        self,
        sites: SiteTable,
        reset_points: np.ndarray
    ) -> np.ndarray:
        """Log posterior odds of foreground per site (positive favors foreground)."""
        return self.posteriors(sites, reset_points).log_odds

    def transition_posteriors(
        self,
        sites: SiteTable,
        reset_points: np.ndarray,
        transition: Transition
    ) -> np.ndarray:
        """Posterior probability of a transition right after each site."""
        return self.posteriors(sites, reset_points).transition(transition)

    def decode(
        self,
        sites: SiteTable,
        reset_points: np.ndarray,
        use_viterbi: bool = False,
        track: Optional[PosteriorTrack] = None
    ) -> np.ndarray:
        """
        Foreground labels with the requested decoding mode.

        A precomputed track is reused for posterior decoding.
        """
        if use_viterbi:
            return self.viterbi_decoding(sites, reset_points)
        if track is None:
            track = self.posteriors(sites, reset_points)
        return track.classes
