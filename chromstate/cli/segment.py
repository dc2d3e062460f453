#!/usr/bin/env python3
"""
chromstate segment CLI entry point.
Assigns every bin to its most likely state under a trained model.
"""

import argparse
import sys
import warnings
from typing import List, Optional

from chromstate.core.errors import ChromStateError, InputFormatError
from chromstate.core.model_io import load_model
from chromstate.core.observations import ObservationIndex, load_binary_dir
from chromstate.core.params import ModelParameters
from chromstate.inference.engine import Decoder
from chromstate.inference.output import SegmentationWriter, read_chrom_lengths
from chromstate.cli.common import (
    add_input_args, add_output_args, add_file_id_args, add_segmentation_args,
    add_verbose_args, add_version_args,
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Segment binarized mark files with a trained chromatin state model',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Output (in output_dir):
  <cell>_<S>[_<id>]_segments.bed                     four-column segmentation
  POSTERIOR/<cell>_<S>[_<id>]_<chrom>_posterior.txt  with --print-posterior
  STATEBYLINE/<cell>_<S>[_<id>]_<chrom>_statebyline.txt  with --print-statebyline

Examples:
  chromstate-segment model/model_15.txt binarized/ segments/
  chromstate-segment model/model_15.txt binarized/ segments/ -l hg19.txt --print-posterior
'''
    )

    add_version_args(parser)
    parser.add_argument('model', help='Model file written by chromstate-learn')
    add_input_args(parser)
    add_output_args(parser)

    add_file_id_args(parser)
    add_segmentation_args(parser)
    add_verbose_args(parser)

    return parser.parse_args(argv)


def write_segmentation(params: ModelParameters, index: ObservationIndex,
                       output_dir: str, order_char: str, args,
                       ordering: Optional[List[int]] = None) -> List[str]:
    """
    Decode every sequence and write the outputs requested on the command line.

    Returns:
        Paths of the files written
    """
    if args.no_segments and not (args.print_posterior or args.print_statebyline):
        return []

    chrom_lengths = None
    if args.chrom_lengths:
        chrom_lengths = read_chrom_lengths(args.chrom_lengths)

    decoder = Decoder(params, index, ordering)
    with SegmentationWriter(
        output_dir, params.n_states, binsize=args.binsize,
        order_char=order_char, file_id=args.file_id,
        chrom_lengths=chrom_lengths,
        print_segments=not args.no_segments,
        print_posterior=args.print_posterior,
        print_statebyline=args.print_statebyline,
    ) as writer:
        for decoded in decoder.decode_all(verbose=args.verbose):
            writer.write(decoded)
    return writer.written


def main(argv=None):
    args = parse_args(argv)

    try:
        print(f"Loading model from {args.model}")
        params, order_char = load_model(args.model)
        print(f"  States: {params.n_states}, marks: {params.n_marks}")

        index = load_binary_dir(args.input_dir, args.file_list, verbose=args.verbose)
        if index.n_marks != params.n_marks:
            raise InputFormatError(
                f"Model has {params.n_marks} marks but the data has {index.n_marks}"
            )
        if list(index.marks) != list(params.marks):
            warnings.warn("Mark names in the data do not match the model")

        written = write_segmentation(params, index, args.output_dir, order_char, args)
    except ChromStateError as e:
        print(f"Error: {e}")
        sys.exit(1)

    for path in written:
        print(f"Writing to file {path}")
    print("Done!")


if __name__ == '__main__':
    main()
