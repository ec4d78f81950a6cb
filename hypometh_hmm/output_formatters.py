"""
Output formatters for HMR results.

Writes domains as BED6 and per-CpG tracks as bedGraph.
"""

import sys
from pathlib import Path
from typing import List, Union

import numpy as np
import pandas as pd

from .data_loader import SiteTable
from .domains import Domain


def track_line(name: str, description: str, track_type: str = "") -> str:
    """UCSC browser track header."""
    kind = f"type={track_type} " if track_type else ""
    return f'track {kind}name="{name}" description="{description}"'


def _write_table(
    df: pd.DataFrame,
    output_path: Union[str, Path, None],
    header: str = ""
) -> None:
    """Write a headerless TSV to a path, or stdout when no path is given."""
    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            if header:
                f.write(header + '\n')
            df.to_csv(f, sep='\t', header=False, index=False)
    else:
        if header:
            sys.stdout.write(header + '\n')
        df.to_csv(sys.stdout, sep='\t', header=False, index=False)


def domains_to_dataframe(domains: List[Domain]) -> pd.DataFrame:
    """BED6 columns for a list of domains."""
    return pd.DataFrame({
        'chrom': [d.chrom for d in domains],
        'start': np.array([d.start for d in domains], dtype=np.int64),
        'end': np.array([d.end for d in domains], dtype=np.int64),
        'name': [d.name for d in domains],
        'score': [d.score for d in domains],
        'strand': [d.strand for d in domains],
    })


def save_domains_bed(
    domains: List[Domain],
    output_path: Union[str, Path, None] = None,
    browser: bool = False,
    dataset_name: str = "",
) -> None:
    """
    Save domains as BED6.

    Args:
        domains: Domains to write
        output_path: Output path (None or "" for stdout)
        browser: Prepend a UCSC track line
        dataset_name: Track name prefix
    """
    header = ""
    if browser:
        name = f"{dataset_name} HMR" if dataset_name else "HMR"
        header = track_line(name, f"{name} hypomethylated regions")
    _write_table(domains_to_dataframe(domains), output_path, header)


def save_scores_bedgraph(
    sites: SiteTable,
    scores: np.ndarray,
    output_path: Union[str, Path],
    browser: bool = False,
    dataset_name: str = "",
    track_label: str = "posterior",
) -> None:
    """
    Save one score per CpG as bedGraph.

    Args:
        sites: Site table the scores are aligned to
        scores: One value per site
        output_path: Output path
        browser: Prepend a UCSC track line
        dataset_name: Track name prefix
        track_label: Track kind used in the track name
    """
    if len(scores) != len(sites):
        raise ValueError("scores must have one value per site")

    header = ""
    if browser:
        name = f"{dataset_name} {track_label}" if dataset_name else track_label
        header = track_line(name, f"{name} scores", track_type="bedGraph")

    df = pd.DataFrame({
        'chrom': sites.chroms,
        'start': sites.starts,
        'end': sites.ends,
        'score': scores,
    })
    _write_table(df, output_path, header)
