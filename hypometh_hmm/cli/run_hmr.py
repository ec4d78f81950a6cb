#!/usr/bin/env python
"""
Find hypomethylated regions (HMRs) in a CpG methylation BED file.

Input is a sorted BED file with one CpG per line, the methylation level
in the score column and the coverage after the ':' of the name column
(e.g. "CpG:17").

Examples:
    # Domains to stdout
    hmr cpgs.bed

    # Domains, posterior track and transition track, browser-ready
    hmr cpgs.bed -o hmr.bed -s post.bedgraph -t trans.bedgraph -B -N sample1

    # Reuse parameters trained on another run
    hmr cpgs.bed -P params.json -o first.bed
    hmr other.bed -p params.json -o second.bed
"""

import argparse
import sys
from typing import List, Optional

from hypometh_hmm.config import HMRConfig
from hypometh_hmm.errors import HMRError
from hypometh_hmm.pipeline import run_hmr


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hmr",
        description="A program for finding hypo-methylated regions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("cpgs_file", help="CpG BED file (sorted)")

    # Output arguments
    parser.add_argument("-o", "--out", dest="outfile", default="",
                        help="output file, BED format (default: stdout)")
    parser.add_argument("-s", "--scores", dest="scores_file", default="",
                        help="posterior scores file, bedGraph format")
    parser.add_argument("-t", "--trans", dest="trans_file", default="",
                        help="transition posteriors file, bedGraph format")
    parser.add_argument("-p", "--params-in", dest="params_in", default="",
                        help="read HMM parameters from JSON and skip training")
    parser.add_argument("-P", "--params-out", dest="params_out", default="",
                        help="write trained HMM parameters to JSON")

    # Model arguments
    parser.add_argument("-d", "--desert", dest="desert_size", type=int,
                        default=2000, help="desert size (default: 2000)")
    parser.add_argument("-i", "--itr", dest="max_iterations", type=int,
                        default=10, help="max iterations (default: 10)")
    parser.add_argument("-F", "--fdr", type=float, default=0.05,
                        help="false discovery rate (default: 0.05)")
    parser.add_argument("-V", "--vit", dest="use_viterbi", action="store_true",
                        help="use Viterbi decoding (default: posterior)")
    parser.add_argument("--seed", type=int, default=42,
                        help="random seed for the shuffled null (default: 42)")
    parser.add_argument("--drop-final-open", dest="close_final_domain",
                        action="store_false",
                        help="drop a domain still open at the last CpG")

    # Run mode flags
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="print more run info")
    parser.add_argument("-B", "--browser", action="store_true",
                        help="format for browser")
    parser.add_argument("-N", "--name", dest="dataset_name", default="",
                        help="data set name")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = HMRConfig(**vars(args))
    except ValueError as e:
        parser.error(str(e))

    try:
        run_hmr(config)
    except HMRError as e:
        print(f"ERROR:\t{e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"ERROR:\t{e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
