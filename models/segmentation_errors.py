"""Exceptions raised by the segmentation state manager."""

from __future__ import annotations

from typing import Optional, Sequence


class SegmentationError(ValueError):
    """Base class for every caller-visible segmentation failure."""


class InvalidSegmentIndex(SegmentationError):
    def __init__(self, segment_index: int) -> None:
        super().__init__(f'Segment index {segment_index} is reserved for "no label"')
        self.segment_index = segment_index


class DuplicateSegment(SegmentationError):
    def __init__(self, segmentation_id: str, segment_index: int) -> None:
        super().__init__(f"Segment {segment_index} already exists in segmentation {segmentation_id}")
        self.segmentation_id = segmentation_id
        self.segment_index = segment_index


class UnknownSegmentation(SegmentationError, KeyError):
    def __init__(self, segmentation_id: Optional[str]) -> None:
        super().__init__(f"No segmentation for segmentation_id: {segmentation_id}")
        self.segmentation_id = segmentation_id

    def __str__(self) -> str:
        return self.args[0]


class UnknownSegment(SegmentationError, KeyError):
    def __init__(self, segmentation_id: str, segment_index: int) -> None:
        super().__init__(f"Segment {segment_index} not yet added to segmentation: {segmentation_id}")
        self.segmentation_id = segmentation_id
        self.segment_index = segment_index

    def __str__(self) -> str:
        return self.args[0]


class MissingRepresentation(SegmentationError):
    def __init__(self, segmentation_id: str, group_id: Optional[str]) -> None:
        super().__init__(
            f"Segmentation {segmentation_id} has no representation in group {group_id}; "
            "add a representation before changing segment appearance"
        )
        self.segmentation_id = segmentation_id
        self.group_id = group_id


class MissingVolume(SegmentationError, KeyError):
    def __init__(self, volume_id: Optional[str]) -> None:
        super().__init__(f"No volume found for volume_id: {volume_id}")
        self.volume_id = volume_id

    def __str__(self) -> str:
        return self.args[0]


class MisalignedSlice(SegmentationError):
    """The first slice of an imported segment falls between two reference slices."""

    def __init__(self, segment_index: int, position: Sequence[float], estimated_slice: float) -> None:
        super().__init__(
            f"Segment {segment_index} has an invalid image position {list(position)} which starts "
            f"from the middle of a slice of the referenced volume (estimated slice {estimated_slice:.4f})"
        )
        self.segment_index = segment_index
        self.position = tuple(position)
        self.estimated_slice = estimated_slice


class VolumeShapeMismatch(SegmentationError):
    def __init__(self, volume_id: str, expected: Sequence[int], actual: Sequence[int]) -> None:
        super().__init__(f"Derived volume {volume_id} has shape {tuple(actual)}, expected {tuple(expected)}")
        self.volume_id = volume_id
        self.expected = tuple(expected)
        self.actual = tuple(actual)


class UnsupportedRepresentation(SegmentationError):
    def __init__(self, segmentation_id: str, kinds: Sequence[object]) -> None:
        super().__init__(
            f"Segmentation {segmentation_id} has representations {list(kinds)}; "
            "non-labelmap representations are not supported yet"
        )
        self.segmentation_id = segmentation_id
        self.kinds = tuple(kinds)


class ImportInProgress(SegmentationError):
    def __init__(self, segmentation_id: str) -> None:
        super().__init__(f"An import is already running for segmentation {segmentation_id}")
        self.segmentation_id = segmentation_id


class InvalidConfiguration(SegmentationError):
    pass
