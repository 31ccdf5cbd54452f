from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

Color = Tuple[float, float, float]
RGBA = Tuple[float, float, float, float]


class RepresentationType(Enum):
    LABELMAP = "Labelmap"
    # before supporting contours/surfaces, add the kind here


@dataclass
class Segment:
    """One labeled region of a segmentation (index >= 1)."""

    segment_index: int
    label: str = ""
    color: Color = (0, 0, 0)
    opacity: float = 1.0
    is_visible: bool = True
    is_locked: bool = False


@dataclass
class Segmentation:
    """Viewer-visible metadata of a segmentation; voxels live in the engine's volume."""

    id: str
    label: str
    color_lut_index: int
    type: RepresentationType = RepresentationType.LABELMAP
    volume_id: Optional[str] = None
    segments: Dict[int, Segment] = field(default_factory=dict)
    segment_count: int = 0
    active_segment_index: Optional[int] = None
    is_active: bool = False
    is_visible: bool = True
    cached_stats: Dict[str, float] = field(default_factory=dict)
    display_text: List[str] = field(default_factory=list)

    @property
    def segments_locked(self) -> Set[int]:
        return {idx for idx, segment in self.segments.items() if segment.is_locked}

    def get_segment(self, segment_index: int) -> Optional[Segment]:
        return self.segments.get(int(segment_index))

    def sorted_segment_indices(self) -> List[int]:
        return sorted(self.segments)


@dataclass
class SegmentationSchema:
    """
    Metadata payload used to create or update a segmentation.
    Fields left to None are not merged into an existing record.
    """

    id: str
    label: Optional[str] = None
    type: Optional[RepresentationType] = None
    volume_id: Optional[str] = None
    active_segment_index: Optional[int] = None
    cached_stats: Optional[Dict[str, float]] = None
    display_text: Optional[List[str]] = None
    segments_locked: Optional[Set[int]] = None


@dataclass
class SegmentProperties:
    """Optional properties applied when a segment is added."""

    label: Optional[str] = None
    color: Optional[Color] = None
    opacity: Optional[float] = None
    visibility: Optional[bool] = None
    is_locked: Optional[bool] = None
    active: Optional[bool] = None
