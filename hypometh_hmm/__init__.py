"""
Two-state HMM for Hypomethylated Region Detection

Finds hypomethylated regions (HMRs) in bisulfite sequencing data from
per-CpG methylated/unmethylated read counts, using a beta-binomial HMM
trained with Baum-Welch and an FDR cutoff from a shuffled null.

Usage:
    from hypometh_hmm import default_config, run_hmr

    config = default_config("cpgs.bed")
    config.outfile = "hmr.bed"
    result = run_hmr(config)

    # Or on in-memory counts
    from hypometh_hmm import SiteTable, call_hmrs
    sites = SiteTable.from_counts(chroms, starts, meth, unmeth)
    result = call_hmrs(sites, default_config())
"""

from .config import HMRConfig, default_config
from .errors import (
    HMRError,
    InputFormatError,
    ResourceExhaustedError,
    NumericalInstabilityError,
)
from .data_loader import CpGLoader, SiteTable
from .segmentation import separate_regions, find_reset_points, iter_chains
from .emissions import BetaBinomial, beta_binomial_log_likelihood
from .two_state_hmm import (
    HMMParameters,
    TwoStateHMM,
    Transition,
    ForwardBackwardResult,
    PosteriorTrack,
    ChainStatistics,
    forward_backward,
    viterbi,
)
from .training import (
    BaumWelchTrainer,
    TrainingResult,
    TrainingStatus,
    SufficientStatistics,
    combine_statistics,
)
from .domains import Domain, build_domains, filter_domains
from .fdr import FDRCutoffEstimator, get_posterior_cutoff, shuffle_counts
from .output_formatters import save_domains_bed, save_scores_bedgraph
from .pipeline import HMRResult, call_hmrs, run_hmr

__version__ = "0.1.0"

__all__ = [
    # Config
    "HMRConfig",
    "default_config",
    # Errors
    "HMRError",
    "InputFormatError",
    "ResourceExhaustedError",
    "NumericalInstabilityError",
    # Data
    "CpGLoader",
    "SiteTable",
    "separate_regions",
    "find_reset_points",
    "iter_chains",
    # Model
    "BetaBinomial",
    "beta_binomial_log_likelihood",
    "HMMParameters",
    "TwoStateHMM",
    "Transition",
    "ForwardBackwardResult",
    "PosteriorTrack",
    "ChainStatistics",
    "forward_backward",
    "viterbi",
    # Training
    "BaumWelchTrainer",
    "TrainingResult",
    "TrainingStatus",
    "SufficientStatistics",
    "combine_statistics",
    # Domains and FDR
    "Domain",
    "build_domains",
    "filter_domains",
    "FDRCutoffEstimator",
    "get_posterior_cutoff",
    "shuffle_counts",
    # Output
    "save_domains_bed",
    "save_scores_bedgraph",
    # Pipeline
    "HMRResult",
    "call_hmrs",
    "run_hmr",
]
