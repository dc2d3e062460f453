"""
Segmentation output writers.

- <prefix>_segments.bed: chrom, start, end, state label (one file per cell)
- POSTERIOR/<prefix>_<chrom>_posterior.txt: per-bin posterior of every state
- STATEBYLINE/<prefix>_<chrom>_statebyline.txt: per-bin most likely state

where prefix is [<cell>_]<numStates>[_<id>].
"""

import os
from typing import Dict, List, Optional, TextIO

import numpy as np
import pandas as pd

from chromstate.core.errors import InputFormatError

POSTERIOR_DIR = 'POSTERIOR'
STATEBYLINE_DIR = 'STATEBYLINE'
SEGMENT_EXTENSION = '_segments.bed'
POSTERIOR_EXTENSION = '_posterior.txt'
STATEBYLINE_EXTENSION = '_statebyline.txt'


def output_prefix(cell: str, n_states: int, file_id: str = '') -> str:
    prefix = f"{cell}_" if cell else ''
    prefix += str(n_states)
    if file_id:
        prefix += f"_{file_id}"
    return prefix


def read_chrom_lengths(filepath: str) -> Dict[str, int]:
    """Chromosome name -> length from a two-column whitespace-delimited file."""
    try:
        df = pd.read_csv(filepath, sep=r'\s+', header=None, usecols=[0, 1],
                         names=['chrom', 'length'], dtype={'chrom': str})
        return dict(zip(df['chrom'], df['length'].astype(int)))
    except (ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InputFormatError(f"Could not parse chromosome lengths from {filepath}: {e}")


def format_probability(value: float) -> str:
    """At most 4 fraction digits with trailing zeros dropped: 0.5, 1, 0.0625."""
    return f"{value:.4f}".rstrip('0').rstrip('.')


def write_posterior(filepath: str, cell: str, chrom: str,
                    posteriors: np.ndarray, order_char: str = 'E'):
    """Posterior probabilities, one row per bin."""
    n_states = posteriors.shape[1]
    with open(filepath, 'w') as f:
        f.write(f"{cell}\t{chrom}\n")
        f.write('\t'.join(f"{order_char}{k + 1}" for k in range(n_states)) + '\n')
        for row in posteriors:
            f.write('\t'.join(format_probability(v) for v in row) + '\n')


def write_statebyline(filepath: str, cell: str, chrom: str,
                      states: np.ndarray, order_char: str = 'E'):
    """Most likely state (1-based) of every bin."""
    with open(filepath, 'w') as f:
        f.write(f"{cell}\t{chrom}\n")
        f.write(f"MaxState {order_char}\n")
        for state in states:
            f.write(f"{state + 1}\n")


def write_segments(f: TextIO, chrom: str, segments: List, binsize: int,
                   order_char: str = 'E', chrom_length: Optional[int] = None):
    """
    Append one chromosome's segments in four-column BED.

    The end of the final segment is clipped to chrom_length when given.
    """
    for k, seg in enumerate(segments):
        end = seg.end * binsize
        if k == len(segments) - 1 and chrom_length is not None:
            end = min(end, chrom_length)
        f.write(f"{chrom}\t{seg.start * binsize}\t{end}\t{order_char}{seg.state + 1}\n")


class SegmentationWriter:
    """
    Owns the output files of one segmentation run.

    One segment file is kept open per cell type; posterior and state-by-line
    files are written whole, one per chromosome.
    """

    def __init__(self, output_dir: str, n_states: int, binsize: int = 200,
                 order_char: str = 'E', file_id: str = '',
                 chrom_lengths: Optional[Dict[str, int]] = None,
                 print_segments: bool = True, print_posterior: bool = False,
                 print_statebyline: bool = False):
        self.output_dir = output_dir
        self.n_states = n_states
        self.binsize = binsize
        self.order_char = order_char
        self.file_id = file_id
        self.chrom_lengths = chrom_lengths
        self.print_segments = print_segments
        self.print_posterior = print_posterior
        self.print_statebyline = print_statebyline
        self._segment_files: Dict[str, TextIO] = {}
        self.written: List[str] = []

        os.makedirs(output_dir, exist_ok=True)
        if print_posterior:
            os.makedirs(os.path.join(output_dir, POSTERIOR_DIR), exist_ok=True)
        if print_statebyline:
            os.makedirs(os.path.join(output_dir, STATEBYLINE_DIR), exist_ok=True)

    def __enter__(self) -> 'SegmentationWriter':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        for f in self._segment_files.values():
            f.close()
        self._segment_files.clear()

    def _segment_file(self, cell: str) -> TextIO:
        f = self._segment_files.get(cell)
        if f is None:
            prefix = output_prefix(cell, self.n_states, self.file_id)
            path = os.path.join(self.output_dir, prefix + SEGMENT_EXTENSION)
            f = open(path, 'w')
            self._segment_files[cell] = f
            self.written.append(path)
        return f

    def write(self, decoded):
        """Write every requested output for one DecodedSequence."""
        seq = decoded.sequence
        prefix = output_prefix(seq.cell, self.n_states, self.file_id)

        if self.print_posterior:
            path = os.path.join(self.output_dir, POSTERIOR_DIR,
                                f"{prefix}_{seq.chrom}{POSTERIOR_EXTENSION}")
            write_posterior(path, seq.cell, seq.chrom, decoded.posteriors, self.order_char)
            self.written.append(path)

        if self.print_statebyline:
            path = os.path.join(self.output_dir, STATEBYLINE_DIR,
                                f"{prefix}_{seq.chrom}{STATEBYLINE_EXTENSION}")
            write_statebyline(path, seq.cell, seq.chrom, decoded.states, self.order_char)
            self.written.append(path)

        if self.print_segments:
            chrom_length = None
            if self.chrom_lengths is not None:
                chrom_length = self.chrom_lengths.get(seq.chrom)
            write_segments(self._segment_file(seq.cell), seq.chrom, decoded.segments,
                           self.binsize, self.order_char, chrom_length)
