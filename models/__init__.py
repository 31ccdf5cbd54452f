"""
Modèles du gestionnaire d'état de segmentation.

- Segmentation / Segment : métadonnées visibles par le viewer
- SegmentationStore : table canonique segmentation_id -> Segmentation
- Volume / DiscreteSegment : buffers voxel et segments SEG à importer
"""

from .segmentation_model import (
    RepresentationType,
    Segment,
    Segmentation,
    SegmentationSchema,
    SegmentProperties,
)
from .segmentation_store import SegmentationStore, UpsertResult
from .volume_model import DiscreteSegment, SegDisplaySet, Volume

__all__ = [
    'RepresentationType',
    'Segment',
    'Segmentation',
    'SegmentationSchema',
    'SegmentProperties',
    'SegmentationStore',
    'UpsertResult',
    'DiscreteSegment',
    'SegDisplaySet',
    'Volume',
]
