"""Core HMM algorithms, parameters and observation loading."""

from chromstate.core.errors import (
    ChromStateError, InputFormatError, InitializationError, NumericalError,
)
from chromstate.core.observations import ObservationIndex, Sequence, load_binary_dir
from chromstate.core.params import (
    ModelParameters, TransitionMatrix, EmissionTable, SufficientStats, mstep,
)
from chromstate.core.hmm import ForwardBackwardEngine
from chromstate.core.initialize import initialize, random_init, information_init, load_init
from chromstate.core.model_io import load_model, save_model, write_tables
