"""Shared argparse argument factories for chromstate CLI tools.

Each function adds a group of related arguments to an ArgumentParser.
Default values can be overridden per-script where needed.
"""

import argparse

from chromstate.core.initialize import INIT_INFORMATION, INIT_METHODS
from chromstate.core.ordering import ORDER_CHARS, ORDER_EMISSION, ORDER_USER


def add_input_args(parser: argparse.ArgumentParser) -> None:
    """Add positional input directory and -f/--file-list."""
    parser.add_argument(
        'input_dir',
        help="Directory of binarized signal files (names containing '_binary')"
    )
    parser.add_argument(
        '-f', '--file-list', default=None,
        help="File listing the binary files in input_dir to use, one per line"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    help_text: str = "Output directory") -> None:
    """Add positional output directory."""
    parser.add_argument('output_dir', help=help_text)


def add_file_id_args(parser: argparse.ArgumentParser) -> None:
    """Add -i/--id output file tag."""
    parser.add_argument(
        '-i', '--id', dest='file_id', default='',
        help="Tag appended to output file names"
    )


def add_init_args(parser: argparse.ArgumentParser,
                  default: str = INIT_INFORMATION,
                  seed: int = 999) -> None:
    """Add parameter initialization arguments."""
    parser.add_argument(
        '--init', choices=list(INIT_METHODS), default=default,
        help=f"Parameter initialization method (default: {default})"
    )
    parser.add_argument(
        '-m', '--init-file', default=None,
        help="Model file to start from with --init load"
    )
    parser.add_argument(
        '-s', '--seed', type=int, default=seed,
        help=f"Random seed for --init random (default: {seed})"
    )
    parser.add_argument(
        '--info-smooth', type=float, default=0.02,
        help="Smoothing toward uniform for --init information (default: 0.02)"
    )
    parser.add_argument(
        '--load-smooth-emission', type=float, default=0.02,
        help="Emission smoothing toward uniform for --init load (default: 0.02)"
    )
    parser.add_argument(
        '--load-smooth-transition', type=float, default=0.5,
        help="Transition smoothing toward uniform for --init load (default: 0.5)"
    )


def add_convergence_args(parser: argparse.ArgumentParser,
                         max_iterations: int = 200,
                         delta: float = 0.001,
                         max_seconds: float = -1,
                         zero_power: int = 8) -> None:
    """Add EM stopping and transition elimination arguments."""
    parser.add_argument(
        '-r', '--max-iterations', type=int, default=max_iterations,
        help=f"Maximum EM iterations (default: {max_iterations})"
    )
    parser.add_argument(
        '-d', '--delta', type=float, default=delta,
        help=f"Stop when the log-likelihood improves by less than this; "
             f"negative disables (default: {delta})"
    )
    parser.add_argument(
        '-x', '--max-seconds', type=float, default=max_seconds,
        help=f"Stop after this many seconds of training; negative disables "
             f"(default: {max_seconds})"
    )
    parser.add_argument(
        '-z', '--zero-power', type=int, default=zero_power,
        help=f"Eliminate transitions below 10^-z (default: {zero_power})"
    )


def add_binning_args(parser: argparse.ArgumentParser, default: int = 200) -> None:
    """Add -b/--binsize."""
    parser.add_argument(
        '-b', '--binsize', type=int, default=default,
        help=f"Bin size in bp (default: {default})"
    )


def add_segmentation_args(parser: argparse.ArgumentParser) -> None:
    """Add segmentation output arguments (-b, -l and the print flags)."""
    add_binning_args(parser)
    parser.add_argument(
        '-l', '--chrom-lengths', default=None,
        help="Two-column chromosome length file; clips the last segment end"
    )
    parser.add_argument(
        '--print-posterior', action='store_true',
        help="Write per-bin posterior probabilities"
    )
    parser.add_argument(
        '--print-statebyline', action='store_true',
        help="Write the most likely state of every bin"
    )
    parser.add_argument(
        '--no-segments', action='store_true',
        help="Do not write the segment BED files"
    )


def add_order_args(parser: argparse.ArgumentParser,
                   default: str = ORDER_EMISSION) -> None:
    """Add --state-order and -o/--state-ordering-file."""
    parser.add_argument(
        '--state-order', choices=list(ORDER_CHARS), default=default,
        help=f"How to order states in written models (default: {default})"
    )
    parser.add_argument(
        '-o', '--state-ordering-file', default=None,
        help="Tab-delimited file of 1-based 'old new' state pairs; "
             f"implies --state-order {ORDER_USER}"
    )


def order_from_args(args) -> str:
    """Ordering name, switched to user ordering when a file is given."""
    if args.state_ordering_file:
        return ORDER_USER
    return args.state_order


def add_parallel_args(parser: argparse.ArgumentParser,
                      default_cores: int = 1) -> None:
    """Add --cores."""
    parser.add_argument(
        '--cores', '-c', type=int, default=default_cores,
        help=f"Number of CPU cores for the E-step (0=auto, default: {default_cores})"
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from chromstate import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )
