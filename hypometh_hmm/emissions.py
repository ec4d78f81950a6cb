"""
Beta-binomial emission law for the two HMM states.

Each state draws the methylated fraction of a CpG from a Beta(alpha, beta)
distribution and the methylated reads from a binomial over the coverage,
which models the overdispersion of bisulfite read counts.
"""

from dataclasses import dataclass

import numpy as np
from scipy.optimize import Bounds, minimize
from scipy.special import betaln, digamma, gammaln

from .errors import NumericalInstabilityError

# Shape parameters are kept inside [MIN_SHAPE, MAX_SHAPE]. The weighted
# optimum sits on this boundary for all-unmethylated states (alpha -> 0)
# and for binomial data without overdispersion (alpha, beta -> inf).
MIN_SHAPE = 1e-3
MAX_SHAPE = 1e6


def beta_binomial_log_likelihood(
    meth: np.ndarray,
    unmeth: np.ndarray,
    alpha: float,
    beta: float
) -> np.ndarray:
    """
    Log-probability of m methylated reads out of m + u under BetaBin(alpha, beta).

    Uses log-gamma and log-beta functions so coverages in the thousands
    stay accurate.

    Args:
        meth: Methylated read counts
        unmeth: Unmethylated read counts
        alpha: First shape parameter (> 0)
        beta: Second shape parameter (> 0)

    Returns:
        Array of log-probabilities, one per site
    """
    meth = np.asarray(meth, dtype=float)
    unmeth = np.asarray(unmeth, dtype=float)
    total = meth + unmeth

    log_choose = gammaln(total + 1) - gammaln(meth + 1) - gammaln(unmeth + 1)
    return log_choose + betaln(meth + alpha, unmeth + beta) - betaln(alpha, beta)


@dataclass(frozen=True)
class BetaBinomial:
    """Shape parameters of one state's emission law."""
    alpha: float
    beta: float

    def __post_init__(self):
        if not (self.alpha > 0 and self.beta > 0):
            raise ValueError(
                f"Shape parameters must be positive, got "
                f"alpha={self.alpha}, beta={self.beta}")

    @property
    def mean(self) -> float:
        """Expected methylation level."""
        return self.alpha / (self.alpha + self.beta)

    def log_likelihood(self, meth: np.ndarray, unmeth: np.ndarray) -> np.ndarray:
        return beta_binomial_log_likelihood(meth, unmeth, self.alpha, self.beta)

    def fit(
        self,
        meth: np.ndarray,
        unmeth: np.ndarray,
        weights: np.ndarray
    ) -> 'BetaBinomial':
        """
        Weighted maximum-likelihood refit of (alpha, beta).

        Maximizes the weighted beta-binomial log-likelihood over log(alpha)
        and log(beta) with bounded L-BFGS-B; its gradient is the pair of
        score equations. The current parameters (clipped into the bounds)
        are the starting point, and they are kept when the optimizer does
        not improve on them.

        Args:
            meth: Methylated read counts
            unmeth: Unmethylated read counts
            weights: Posterior probability of this state at each site

        Returns:
            New BetaBinomial

        Raises:
            NumericalInstabilityError: If the weights are empty or the
                objective is not finite
        """
        m = np.asarray(meth, dtype=float)
        u = np.asarray(unmeth, dtype=float)
        n = m + u
        w = np.asarray(weights, dtype=float)

        w_total = w.sum()
        if not np.isfinite(w_total) or w_total <= 0:
            raise NumericalInstabilityError(
                "No posterior weight left for beta-binomial fit")
        w = w / w_total

        def objective(x):
            a, b = np.exp(x)
            value = np.dot(w, betaln(m + a, u + b) - betaln(a, b))
            common = digamma(a + b) - digamma(n + a + b)
            grad_a = np.dot(w, digamma(m + a) - digamma(a) + common)
            grad_b = np.dot(w, digamma(u + b) - digamma(b) + common)
            return -value, -np.array([a * grad_a, b * grad_b])

        lo, hi = np.log(MIN_SHAPE), np.log(MAX_SHAPE)
        x0 = np.clip(np.log([self.alpha, self.beta]), lo, hi)
        start_value, _ = objective(x0)
        if not np.isfinite(start_value):
            raise NumericalInstabilityError(
                f"Non-finite beta-binomial objective at alpha={self.alpha}, "
                f"beta={self.beta}")

        with np.errstate(over='ignore', invalid='ignore'):
            sol = minimize(objective, x0, jac=True, method='L-BFGS-B',
                           bounds=Bounds([lo, lo], [hi, hi]),
                           options={'ftol': 1e-12, 'gtol': 1e-9, 'maxiter': 500})

        if not (np.all(np.isfinite(sol.x)) and np.isfinite(sol.fun)):
            raise NumericalInstabilityError(
                f"Beta-binomial fit became non-finite: {sol.message}")

        x = sol.x if sol.fun <= start_value else x0
        alpha, beta = np.exp(x)
        return BetaBinomial(alpha=float(alpha), beta=float(beta))
