"""
Loading of CpG methylation levels from BED files.

Handles BED parsing, the sort check and conversion of methylation
levels into (methylated, unmethylated) read counts.
"""

import io
import sys
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd

from .errors import InputFormatError

BED_COLUMNS = ['chrom', 'start', 'end', 'name', 'score', 'strand']


@dataclass(frozen=True)
class SiteTable:
    """Parallel per-CpG arrays of location and read counts."""
    chroms: np.ndarray   # chromosome names (object array of str)
    starts: np.ndarray   # int64
    ends: np.ndarray     # int64
    meth: np.ndarray     # methylated reads, int64
    unmeth: np.ndarray   # unmethylated reads, int64

    def __len__(self) -> int:
        return len(self.starts)

    @property
    def coverage(self) -> np.ndarray:
        return self.meth + self.unmeth

    def mean_coverage(self) -> float:
        if len(self) == 0:
            return 0.0
        return float(self.coverage.mean())

    def subset(self, mask: np.ndarray) -> 'SiteTable':
        """Keep the sites selected by a boolean mask."""
        return SiteTable(
            chroms=self.chroms[mask],
            starts=self.starts[mask],
            ends=self.ends[mask],
            meth=self.meth[mask],
            unmeth=self.unmeth[mask],
        )

    def with_counts(self, meth: np.ndarray, unmeth: np.ndarray) -> 'SiteTable':
        """Copy of the table with the same locations and new counts."""
        if len(meth) != len(self) or len(unmeth) != len(self):
            raise ValueError("Count arrays must match the number of sites")
        return replace(self, meth=np.asarray(meth, dtype=np.int64),
                       unmeth=np.asarray(unmeth, dtype=np.int64))

    @classmethod
    def from_counts(cls, chroms, starts, meth, unmeth, ends=None) -> 'SiteTable':
        """
        Build a table from plain sequences.

        Args:
            chroms: Chromosome name per site
            starts: Start coordinate per site
            meth: Methylated read count per site
            unmeth: Unmethylated read count per site
            ends: End coordinate per site (default start + 1)

        Returns:
            SiteTable
        """
        starts = np.asarray(starts, dtype=np.int64)
        if ends is None:
            ends = starts + 1
        return cls(
            chroms=np.asarray(chroms, dtype=object),
            starts=starts,
            ends=np.asarray(ends, dtype=np.int64),
            meth=np.asarray(meth, dtype=np.int64),
            unmeth=np.asarray(unmeth, dtype=np.int64),
        )


class CpGLoader:
    """Load methylation levels and coverage for CpG sites."""

    def __init__(self, verbose: bool = False):
        """
        Initialize loader.

        Args:
            verbose: Print a loading summary to stderr
        """
        self.verbose = verbose

    def load_bed(self, filepath: str) -> pd.DataFrame:
        """
        Load BED with columns (chrom, start, end, name, score[, strand]).

        Args:
            filepath: Path to BED file

        Returns:
            DataFrame with BED columns, coordinates as int64
        """
        # Drop UCSC header lines; their field count differs from the records
        with open(filepath) as f:
            lines = [line for line in f
                     if not line.startswith(('track', 'browser'))]

        try:
            df = pd.read_csv(
                io.StringIO(''.join(lines)),
                sep='\t',
                header=None,
                comment='#',
                dtype=str,
                keep_default_na=False,
            )
        except pd.errors.EmptyDataError:
            raise InputFormatError("No CpG sites found", filepath)
        except pd.errors.ParserError as e:
            raise InputFormatError(f"Malformed BED file ({e})", filepath)

        if df.shape[1] < 5:
            raise InputFormatError(
                f"Expected at least 5 BED columns, got {df.shape[1]}", filepath)

        df = df.iloc[:, :6]
        df.columns = BED_COLUMNS[:df.shape[1]]

        try:
            df['start'] = df['start'].astype(np.int64)
            df['end'] = df['end'].astype(np.int64)
            df['score'] = df['score'].astype(float)
        except ValueError as e:
            raise InputFormatError(f"Malformed BED record ({e})", filepath)

        return df

    def check_sorted(self, df: pd.DataFrame, filepath: str = "") -> None:
        """
        Verify sites are sorted by start within each chromosome.

        A chromosome must form one contiguous block and starts inside the
        block must be strictly increasing.

        Raises:
            InputFormatError: If the sites are not sorted
        """
        chroms = df['chrom'].values
        starts = df['start'].values

        same_chrom = chroms[1:] == chroms[:-1]
        bad = np.flatnonzero(same_chrom & (starts[1:] <= starts[:-1]))
        if len(bad) > 0:
            i = bad[0] + 1
            raise InputFormatError(
                f"CpGs not sorted at {chroms[i]}:{starts[i]}", filepath)

        block_chroms = chroms[np.r_[True, ~same_chrom]] if len(chroms) else chroms
        if len(set(block_chroms)) != len(block_chroms):
            raise InputFormatError(
                "CpGs not sorted: chromosome blocks are interleaved", filepath)

    def to_site_table(self, df: pd.DataFrame, filepath: str = "") -> SiteTable:
        """
        Convert BED records into read counts.

        Coverage is the integer after the first ':' of the name field and
        the methylated count is round(score * coverage).

        Args:
            df: DataFrame from load_bed
            filepath: Source path for error messages

        Returns:
            SiteTable with all sites, including zero-coverage ones
        """
        suffix = df['name'].str.split(':', n=1).str[1]
        reads = pd.to_numeric(suffix.str.extract(r'^\s*(\d+)', expand=False),
                              errors='coerce')
        if reads.isna().any():
            first = df['name'][reads.isna()].iloc[0]
            raise InputFormatError(
                f"Cannot read coverage from name field '{first}'", filepath)

        reads = reads.values.astype(np.int64)
        levels = df['score'].values
        if not np.all(np.isfinite(levels)):
            raise InputFormatError("Non-finite methylation level", filepath)

        meth = np.clip(np.rint(levels * reads), 0, reads).astype(np.int64)

        return SiteTable.from_counts(
            chroms=df['chrom'].values,
            starts=df['start'].values,
            ends=df['end'].values,
            meth=meth,
            unmeth=reads - meth,
        )

    def load_and_preprocess(self, filepath: str) -> SiteTable:
        """
        Full pipeline: load, check order, convert to counts.

        Args:
            filepath: Path to BED file

        Returns:
            SiteTable in file order
        """
        if self.verbose:
            print("[READING CPGS AND METH PROPS]", file=sys.stderr)

        df = self.load_bed(filepath)
        self.check_sorted(df, filepath)
        sites = self.to_site_table(df, filepath)

        if self.verbose:
            print(f"TOTAL CPGS: {len(sites)}", file=sys.stderr)
            print(f"MEAN COVERAGE: {sites.mean_coverage():.4f}", file=sys.stderr)

        return sites
