"""
End-to-end HMR calling.

Load CpGs -> separate chains -> train -> decode and score -> build
domains -> FDR cutoff from a shuffled null -> filtered domains.
"""

import sys
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from .config import HMRConfig
from .data_loader import CpGLoader, SiteTable
from .domains import Domain, build_domains, filter_domains
from .errors import InputFormatError, ResourceExhaustedError
from .fdr import FDRCutoffEstimator
from .output_formatters import save_domains_bed, save_scores_bedgraph
from .segmentation import separate_regions
from .training import BaumWelchTrainer, TrainingResult, TrainingStatus
from .two_state_hmm import HMMParameters, TwoStateHMM


@dataclass
class HMRResult:
    """Everything computed by one HMR run."""
    sites: SiteTable                 # retained sites (coverage > 0)
    reset_points: np.ndarray
    params: HMMParameters
    training: Optional[TrainingResult]
    classes: np.ndarray
    posterior_scores: np.ndarray
    domains: List[Domain]
    cutoff: float
    filtered_domains: List[Domain]
    transition_scores: Optional[np.ndarray] = None


def call_hmrs(
    sites: SiteTable,
    config: HMRConfig,
    params: Optional[HMMParameters] = None,
    with_transitions: bool = False
) -> HMRResult:
    """
    Call HMRs on an in-memory site table.

    Args:
        sites: Sites in genomic order, zero-coverage sites included
        config: Run configuration
        params: Use these parameters and skip training
        with_transitions: Also compute the transition posterior track

    Returns:
        HMRResult

    Raises:
        InputFormatError: If no site has coverage
    """
    verbose = config.verbose
    sites, reset_points = separate_regions(sites, config.desert_size, verbose)
    if len(sites) == 0:
        raise InputFormatError("No CpG sites with coverage", config.cpgs_file)

    training = None
    if params is None:
        trainer = BaumWelchTrainer.from_config(config)
        initial = HMMParameters.initial(sites.mean_coverage())
        training = trainer.train(initial, sites, reset_points)
        params = training.params
        if training.status is TrainingStatus.DIVERGED:
            print(f"WARNING:\ttraining diverged after {training.n_iterations} "
                  f"iterations ({training.message}); decoding with {params}",
                  file=sys.stderr)

    hmm = TwoStateHMM(params)

    if verbose:
        print("[COLLECTING POSTERIOR SCORES]", file=sys.stderr)
    track = hmm.posteriors(sites, reset_points)
    classes = hmm.decode(sites, reset_points, config.use_viterbi, track=track)
    post_scores = track.log_odds

    transition_scores = track.max_transition() if with_transitions else None

    domains = build_domains(sites, post_scores, reset_points, classes,
                            close_final=config.close_final_domain)

    estimator = FDRCutoffEstimator(
        params,
        rng=np.random.default_rng(config.seed),
        use_viterbi=config.use_viterbi,
        close_final=config.close_final_domain,
        verbose=verbose,
    )
    cutoff = estimator.estimate(sites, reset_points, config.fdr)
    filtered = filter_domains(domains, cutoff)

    if verbose:
        print(f"Filtering domains: kept {len(filtered)}/{len(domains)}",
              file=sys.stderr)

    return HMRResult(
        sites=sites,
        reset_points=reset_points,
        params=params,
        training=training,
        classes=classes,
        posterior_scores=post_scores,
        domains=domains,
        cutoff=cutoff,
        filtered_domains=filtered,
        transition_scores=transition_scores,
    )


def write_results(result: HMRResult, config: HMRConfig) -> None:
    """Write domains, optional tracks and optional parameter file."""
    if config.scores_file:
        save_scores_bedgraph(result.sites, result.posterior_scores,
                             config.scores_file, browser=config.browser,
                             dataset_name=config.dataset_name,
                             track_label="posterior")
    if config.trans_file and result.transition_scores is not None:
        save_scores_bedgraph(result.sites, result.transition_scores,
                             config.trans_file, browser=config.browser,
                             dataset_name=config.dataset_name,
                             track_label="transition")
    if config.params_out and result.training is not None:
        BaumWelchTrainer.from_config(config).save_model(result.training,
                                                        config.params_out)

    if config.verbose:
        print("Writing result ...", file=sys.stderr)
    save_domains_bed(result.filtered_domains, config.outfile or None,
                     browser=config.browser, dataset_name=config.dataset_name)


def run_hmr(config: HMRConfig) -> HMRResult:
    """
    Full pipeline from a CpG BED file to written results.

    Nothing is written until every result has been computed.

    Args:
        config: Run configuration (cpgs_file must be set)

    Returns:
        HMRResult

    Raises:
        InputFormatError: Unsorted or malformed input
        ResourceExhaustedError: Arrays could not be allocated
    """
    if not config.cpgs_file:
        raise ValueError("config.cpgs_file must be set")

    try:
        sites = CpGLoader(verbose=config.verbose).load_and_preprocess(config.cpgs_file)

        params = None
        if config.params_in:
            params = BaumWelchTrainer.from_config(config).load_model(config.params_in)

        result = call_hmrs(sites, config, params=params,
                           with_transitions=bool(config.trans_file))
    except MemoryError as e:
        if isinstance(e, ResourceExhaustedError):
            raise
        raise ResourceExhaustedError("could not allocate memory") from e

    write_results(result, config)
    return result
