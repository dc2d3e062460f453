"""
chromstate - multivariate hidden Markov models for learning and
annotating combinatorial chromatin states from binarized mark data.
"""

__version__ = "1.0.0"

from chromstate.core.errors import (
    ChromStateError, InputFormatError, InitializationError, NumericalError,
)
from chromstate.core.observations import ObservationIndex, load_binary_dir
from chromstate.core.params import ModelParameters, TransitionMatrix, EmissionTable
from chromstate.core.model_io import load_model, save_model
from chromstate.inference.em import TrainingConfig, TrainingLoop, train
from chromstate.inference.engine import Decoder
