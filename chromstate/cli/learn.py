#!/usr/bin/env python3
"""
chromstate learn CLI entry point.
Trains a multivariate HMM on binarized chromatin mark files and segments
the training data with the learned model.
"""

import argparse
import sys

from chromstate.core.errors import ChromStateError
from chromstate.core.observations import load_binary_dir
from chromstate.core.ordering import ORDER_CHARS
from chromstate.inference.em import TrainingConfig, TrainingLoop
from chromstate.cli.common import (
    add_input_args, add_output_args, add_file_id_args, add_init_args,
    add_convergence_args, add_order_args, add_parallel_args,
    add_segmentation_args, add_verbose_args, add_version_args,
    order_from_args,
)
from chromstate.cli.segment import write_segmentation


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Learn a chromatin state model from binarized mark files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Output (in output_dir):
  model_<S>[_<id>].txt        model parameters
  emissions_<S>[_<id>].txt    P(mark present | state)
  transitions_<S>[_<id>].txt  state transition probabilities
  <cell>_<S>[_<id>]_segments.bed  segmentation of the training data
                              (unless --no-segments)

Examples:
  chromstate-learn binarized/ model/ 15
  chromstate-learn binarized/ model/ 15 --init random -s 7 -r 300
  chromstate-learn binarized/ model/ 15 --init load -m old/model_15.txt
  chromstate-learn binarized/ model/ 15 -o ordering.txt --print-posterior
'''
    )

    add_version_args(parser)
    add_input_args(parser)
    add_output_args(parser)
    parser.add_argument('n_states', type=int, help='Number of states')

    add_file_id_args(parser)
    add_init_args(parser)
    add_convergence_args(parser)
    add_order_args(parser)
    add_segmentation_args(parser)
    add_parallel_args(parser)
    parser.add_argument(
        '--incremental', action='store_true',
        help="Re-estimate parameters after every sequence from the second "
             "iteration on instead of once per pass"
    )
    add_verbose_args(parser)

    return parser.parse_args(argv)


def config_from_args(args) -> TrainingConfig:
    return TrainingConfig(
        n_states=args.n_states,
        init_method=args.init,
        seed=args.seed,
        max_iterations=args.max_iterations,
        convergence_delta=args.delta,
        max_seconds=args.max_seconds,
        zero_transition_power=args.zero_power,
        information_smooth=args.info_smooth,
        load_smooth_emission=args.load_smooth_emission,
        load_smooth_transition=args.load_smooth_transition,
        init_file=args.init_file,
        state_order=order_from_args(args),
        ordering_file=args.state_ordering_file,
        output_dir=args.output_dir,
        file_id=args.file_id,
        incremental=args.incremental,
        n_jobs=args.cores,
        verbose=args.verbose,
    )


def main(argv=None):
    args = parse_args(argv)
    config = config_from_args(args)

    print("chromstate LearnModel")
    print(f"  Input: {args.input_dir}")
    print(f"  States: {config.n_states}")
    print(f"  Init: {config.init_method}")

    try:
        index = load_binary_dir(args.input_dir, args.file_list, verbose=args.verbose)
        print(f"  Sequences: {index.n_sequences}, marks: {index.n_marks}, "
              f"distinct combinations: {index.n_combos}")

        loop = TrainingLoop(index, config)
        loop.run()
        print(f"Stopped: {loop.state.value}")

        # segments use the same state labels as the written model
        written = write_segmentation(
            loop.params, index, args.output_dir, ORDER_CHARS[config.state_order],
            args, ordering=loop.output_ordering(),
        )
    except ChromStateError as e:
        print(f"Error: {e}")
        sys.exit(1)

    for path in written:
        print(f"Writing to file {path}")
    print("Done!")
    return loop


if __name__ == '__main__':
    main()
