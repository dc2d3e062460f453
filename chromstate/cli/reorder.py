#!/usr/bin/env python3
"""
chromstate reorder CLI entry point.
Rewrites a trained model and its tables under a new state ordering.
"""

import argparse
import os
import sys

from chromstate.core.errors import ChromStateError
from chromstate.core.model_io import load_model, model_path, save_model, write_tables
from chromstate.core.ordering import state_ordering
from chromstate.cli.common import (
    add_output_args, add_file_id_args, add_order_args, add_version_args,
    order_from_args,
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Reorder the states of a trained chromatin state model',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Output (in output_dir):
  model_<S>[_<id>].txt, emissions_<S>[_<id>].txt, transitions_<S>[_<id>].txt

Examples:
  chromstate-reorder model/model_15.txt reordered/ -o ordering.txt
  chromstate-reorder model/model_15.txt reordered/ --state-order transition
'''
    )

    add_version_args(parser)
    parser.add_argument('model', help='Model file written by chromstate-learn')
    add_output_args(parser)
    add_file_id_args(parser)
    add_order_args(parser)

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    order = order_from_args(args)

    try:
        params, _ = load_model(args.model)
        ordering = state_ordering(params, order, args.state_ordering_file)

        os.makedirs(args.output_dir, exist_ok=True)
        path = model_path(args.output_dir, params.n_states, args.file_id)
        written = list(write_tables(params, args.output_dir, ordering, order, args.file_id))
        save_model(params, path, ordering, order)
        written.append(path)
    except ChromStateError as e:
        print(f"Error: {e}")
        sys.exit(1)

    for p in written:
        print(f"Writing to file {p}")
    print("Done!")
    return ordering


if __name__ == '__main__':
    main()
