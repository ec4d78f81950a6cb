"""
Configuration for HMR calling.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class HMRConfig:
    """Configuration for training, decoding and domain filtering."""

    # Input and output paths (empty output path = stdout)
    cpgs_file: str = ""
    outfile: str = ""
    scores_file: str = ""
    trans_file: str = ""

    # Optional parameter files (skip training / save trained model)
    params_in: str = ""
    params_out: str = ""

    # Chain separation
    desert_size: int = 2000

    # Training parameters
    max_iterations: int = 10
    tolerance: float = 1e-10   # Relative log-likelihood improvement
    min_prob: float = 1e-10    # Floor for transition probabilities

    # Decoding and filtering
    use_viterbi: bool = False
    fdr: float = 0.05
    seed: Optional[int] = 42   # Seed for the shuffled null
    close_final_domain: bool = True

    # Output formatting
    verbose: bool = False
    browser: bool = False
    dataset_name: str = ""

    def __post_init__(self):
        """Validate configuration."""
        if self.desert_size < 0:
            raise ValueError(f"desert_size must be >= 0, got {self.desert_size}")
        if self.max_iterations < 1:
            raise ValueError(
                f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if not 0 < self.min_prob < 0.5:
            raise ValueError(f"min_prob must be in (0, 0.5), got {self.min_prob}")


def default_config(cpgs_file: str = "") -> HMRConfig:
    """Create config with the default settings of the hmr program."""
    return HMRConfig(cpgs_file=cpgs_file)
