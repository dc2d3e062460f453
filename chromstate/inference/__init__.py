"""EM training, decoding and segmentation output."""

from chromstate.inference.em import (
    TrainingConfig,
    TrainingLoop,
    TrainingState,
    train,
)
from chromstate.inference.engine import (
    Decoder,
    DecodedSequence,
    Segment,
    argmax_states,
    segments_from_states,
)
from chromstate.inference.parallel import ParallelEStep
from chromstate.inference.output import SegmentationWriter

__all__ = [
    'TrainingConfig',
    'TrainingLoop',
    'TrainingState',
    'train',
    'Decoder',
    'DecodedSequence',
    'Segment',
    'argmax_states',
    'segments_from_states',
    'ParallelEStep',
    'SegmentationWriter',
]
