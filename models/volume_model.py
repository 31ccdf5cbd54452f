from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

Vector3 = Tuple[float, float, float]


@dataclass
class Volume:
    """
    Voxel buffer registered in the external volume store.

    scalar_data is a flat array in slice-major order:
    voxel (row, column, frame) lives at row + column * rows + frame * rows * columns.
    The array is shared by reference with the rendering engine.
    """

    volume_id: str
    scalar_data: np.ndarray
    dimensions: Tuple[int, int, int]  # (rows, columns, num_frames)
    origin: Vector3 = (0.0, 0.0, 0.0)
    spacing: Vector3 = (1.0, 1.0, 1.0)

    @property
    def frame_length(self) -> int:
        return int(self.dimensions[0]) * int(self.dimensions[1])

    @property
    def num_frames(self) -> int:
        return int(self.dimensions[2])

    @property
    def expected_length(self) -> int:
        return self.frame_length * self.num_frames

    def frames(self) -> np.ndarray:
        """Return a (num_frames, frame_length) view on scalar_data."""
        return self.scalar_data.reshape(self.num_frames, self.frame_length)


@dataclass
class DiscreteSegment:
    """One segment of a SEG display set: its own contiguous stack of binary frames."""

    segment_index: int
    pixel_data: np.ndarray
    number_of_frames: int
    first_image_position: Vector3
    label: Optional[str] = None
    color: Optional[Tuple[float, float, float]] = None


@dataclass
class SegDisplaySet:
    """Decoded SEG payload ready to be merged onto a referenced volume."""

    display_set_id: str
    referenced_volume_id: str
    segments: list[DiscreteSegment] = field(default_factory=list)
