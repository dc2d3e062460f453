"""
chromstate observation loading

Reads binarized per-(cell, chromosome) signal files and deduplicates the
per-bin mark calls into a shared table of observation combinations, so that
emission products are computed once per distinct combination instead of
once per bin.

Binary file format:
    cell<TAB>chrom
    mark1<TAB>mark2<TAB>...
    0<TAB>1<TAB>...        (one row per bin; 0 absent, 1 present, 2 missing)
"""

import gzip
import os
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence as SequenceType, Tuple

import numpy as np
import pandas as pd

from chromstate.core.errors import InputFormatError

ABSENT = 0
PRESENT = 1
MISSING = 2

_VALID_TOKENS = ['0', '1', '2']


@dataclass(frozen=True)
class Sequence:
    """One chromosome's bin sequence for one cell type."""
    cell: str
    chrom: str
    combos: np.ndarray  # int32 index into the combination table, one per bin
    source: str = ''

    def __len__(self) -> int:
        return len(self.combos)


@dataclass
class ObservationIndex:
    """
    Distinct present/absent/missing combinations over all sequences.

    Attributes:
        marks: Mark names, in column order
        values: (n_combos, n_marks) bool, True where the mark is present
        not_missing: (n_combos, n_marks) bool, False where the call is missing
        sequences: Sequences in processing order
        present_in: (n_sequences, n_combos) bool, combination occurs in sequence
    """
    marks: List[str]
    values: np.ndarray
    not_missing: np.ndarray
    sequences: List[Sequence] = field(default_factory=list)
    present_in: Optional[np.ndarray] = None

    @property
    def n_marks(self) -> int:
        return len(self.marks)

    @property
    def n_combos(self) -> int:
        return self.values.shape[0]

    @property
    def n_sequences(self) -> int:
        return len(self.sequences)

    @property
    def max_length(self) -> int:
        return max((len(s) for s in self.sequences), default=0)

    def calls_for(self, combo: int) -> np.ndarray:
        """Mark calls (0/1/2) of one combination."""
        calls = self.values[combo].astype(np.uint8)
        calls[~self.not_missing[combo]] = MISSING
        return calls

    @classmethod
    def from_calls(cls, calls: SequenceType[np.ndarray], marks: List[str],
                   cells: Optional[List[str]] = None,
                   chroms: Optional[List[str]] = None,
                   sources: Optional[List[str]] = None) -> 'ObservationIndex':
        """
        Build the combination table from per-sequence call matrices.

        Combination indices are assigned in first-seen order, walking the
        sequences in the order given and each sequence from its first bin.

        Args:
            calls: One (n_bins, n_marks) integer array per sequence
            marks: Mark names
            cells, chroms, sources: Optional per-sequence labels

        Returns:
            ObservationIndex
        """
        n_marks = len(marks)
        n_seq = len(calls)
        cells = cells if cells is not None else [''] * n_seq
        chroms = chroms if chroms is not None else [str(i) for i in range(n_seq)]
        sources = sources if sources is not None else [''] * n_seq

        lookup: Dict[bytes, int] = {}
        rows: List[np.ndarray] = []
        combo_arrays = []

        for nseq, seq_calls in enumerate(calls):
            seq_calls = np.asarray(seq_calls)
            label = sources[nseq] or chroms[nseq]
            if seq_calls.ndim != 2 or seq_calls.shape[1] != n_marks:
                raise InputFormatError(
                    f"{label}: expected {n_marks} marks per bin, "
                    f"got shape {seq_calls.shape}"
                )
            if seq_calls.shape[0] == 0:
                raise InputFormatError(f"{label} has no bins")
            bad = (seq_calls < ABSENT) | (seq_calls > MISSING)
            if bad.any():
                row, col = np.argwhere(bad)[0]
                raise InputFormatError(
                    f"Unrecognized value {seq_calls[row, col]} found in {label}"
                )
            seq_calls = seq_calls.astype(np.uint8)

            uniq, first, inverse = np.unique(seq_calls, axis=0,
                                             return_index=True, return_inverse=True)
            local_to_global = np.empty(len(uniq), dtype=np.int32)
            for local in np.argsort(first, kind='stable'):
                key = uniq[local].tobytes()
                idx = lookup.get(key)
                if idx is None:
                    idx = len(rows)
                    lookup[key] = idx
                    rows.append(uniq[local])
                local_to_global[local] = idx
            combo_arrays.append(local_to_global[inverse.reshape(-1)])

        table = np.array(rows, dtype=np.uint8).reshape(len(rows), n_marks)
        values = table == PRESENT
        not_missing = table != MISSING

        present_in = np.zeros((n_seq, len(rows)), dtype=bool)
        sequences = []
        for nseq, combos in enumerate(combo_arrays):
            present_in[nseq, combos] = True
            combos = np.ascontiguousarray(combos, dtype=np.int32)
            combos.flags.writeable = False
            sequences.append(Sequence(cells[nseq], chroms[nseq], combos, sources[nseq]))

        return cls(list(marks), values, not_missing, sequences, present_in)


# =============================================================================
# Binary file reading
# =============================================================================

def _open_text(path: str):
    if path.endswith('.gz'):
        return gzip.open(path, 'rt')
    return open(path, 'r')


def list_binary_files(input_dir: str, file_list: Optional[str] = None) -> List[str]:
    """
    Names of the binary files to train on, sorted.

    Without a file list every file in input_dir whose name contains
    '_binary' is used.
    """
    if file_list is not None:
        with _open_text(file_list) as f:
            names = [line.strip() for line in f if line.strip()]
    else:
        if not os.path.isdir(input_dir):
            raise InputFormatError(f"{input_dir} is not a valid directory!")
        names = [n for n in os.listdir(input_dir) if '_binary' in n]
        if not names:
            raise InputFormatError(f"No files found in {input_dir} containing '_binary'")
    return sorted(names)


def read_binary_file(path: str) -> Tuple[str, str, List[str], np.ndarray]:
    """
    Read one binarized signal file.

    Returns:
        (cell, chrom, marks, calls) with calls an (n_bins, n_marks) uint8 array
    """
    with _open_text(path) as f:
        first = f.readline()
        if not first:
            raise InputFormatError(f"{path} is empty!")
        fields = first.rstrip('\r\n').split('\t')
        if len(fields) < 2:
            raise InputFormatError(
                "First line must contain cell type and chromosome. Only one entry found."
            )
        if len(fields) > 2:
            raise InputFormatError("First line should only contain cell type and chromosome")
        cell, chrom = fields

        header = f.readline()
        if not header:
            raise InputFormatError(f"{path} only has one line!")
        marks = header.rstrip('\r\n').split('\t')

    n_marks = len(marks)
    try:
        df = pd.read_csv(path, sep='\t', header=None, skiprows=2, dtype=str,
                         usecols=range(n_marks))
    except pd.errors.EmptyDataError:
        raise InputFormatError(f"{path} has no bins")
    except (ValueError, pd.errors.ParserError) as e:
        raise InputFormatError(f"Could not parse {path}: {e}")

    valid = df.isin(_VALID_TOKENS).to_numpy()
    if not valid.all():
        row, col = np.argwhere(~valid)[0]
        raise InputFormatError(
            f"Unrecognized value {df.iat[row, col]} found in {path} (line {row + 3})"
        )

    calls = df.to_numpy(dtype=str).astype(np.uint8)
    return cell, chrom, marks, calls


def load_binary_dir(input_dir: str, file_list: Optional[str] = None,
                    verbose: bool = False) -> ObservationIndex:
    """
    Load every binary file for training into one ObservationIndex.

    Files are processed in sorted name order. All files must have the same
    number of marks; differing mark names only produce a warning.
    """
    names = list_binary_files(input_dir, file_list)

    marks: Optional[List[str]] = None
    all_calls, cells, chroms = [], [], []

    for name in names:
        path = os.path.join(input_dir, name)
        if verbose:
            print(f"  Reading {path}")
        cell, chrom, file_marks, calls = read_binary_file(path)

        if marks is None:
            marks = file_marks
        elif len(file_marks) != len(marks):
            raise InputFormatError(
                f"{name} has {len(file_marks)} marks which does not match {len(marks)}"
            )
        elif file_marks != marks:
            warnings.warn(f"Headers do not match between {name} and {names[0]}")

        all_calls.append(calls)
        cells.append(cell)
        chroms.append(chrom)

    return ObservationIndex.from_calls(all_calls, marks, cells=cells,
                                      chroms=chroms, sources=names)
