"""
Création de segmentations à partir de volumes dérivés.

- import d'un SEG : fusion des piles de frames de chaque segment dans un seul
  buffer labelmap, après alignement géométrique sur le volume de référence ;
- création d'un labelmap vide de même forme que le volume de référence.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional, Set

from collections.abc import Callable

import numpy as np

from config.constants import (
    COLOR_LUT_SIZE,
    DEFAULT_LABELMAP_BUFFER_KIND,
    MAX_ALPHA,
    SLICE_ALIGNMENT_TOLERANCE,
)
from models.segmentation_errors import (
    ImportInProgress,
    InvalidSegmentIndex,
    MisalignedSlice,
    MissingVolume,
    VolumeShapeMismatch,
)
from models.segmentation_model import RepresentationType, Segment, Segmentation, SegmentationSchema
from models.segmentation_store import SegmentationStore
from models.volume_model import DiscreteSegment, Volume
from services.color_palette_allocator import ColorPaletteAllocator
from services.engine_protocols import VolumeAllocator, VolumeStore
from services.event_broadcaster import EventBroadcaster, SegmentationEvents
from utils.helpers import euclidean_distance

logger = logging.getLogger(__name__)

SegmentationFactory = Callable[[SegmentationSchema, Optional[Callable[[Segmentation], None]]], Segmentation]


def estimate_slice_offset(
    segment: DiscreteSegment,
    referenced_volume: Volume,
    tolerance: float = SLICE_ALIGNMENT_TOLERANCE,
) -> int:
    """
    Destination frame of a segment's first slice in the referenced volume.

    The distance from the volume origin to the segment's first image position,
    divided by the slice spacing, must land on a whole slice.
    """
    slice_spacing = float(referenced_volume.spacing[2])
    if slice_spacing <= 0:
        raise ValueError(f"Invalid slice spacing {slice_spacing} for volume {referenced_volume.volume_id}")
    estimated_slice = euclidean_distance(segment.first_image_position, referenced_volume.origin) / slice_spacing
    nearest = round(estimated_slice)
    if abs(nearest - estimated_slice) > tolerance:
        raise MisalignedSlice(segment.segment_index, segment.first_image_position, estimated_slice)
    return int(nearest)


def merge_segment_frames(
    destination: np.ndarray,
    frame_length: int,
    num_frames: int,
    segment: DiscreteSegment,
    offset: int,
) -> int:
    """
    Write segment.segment_index wherever the segment's own frames are nonzero.

    Only frames [offset, offset + number_of_frames) of the destination are
    touched. Returns the number of voxels written.
    """
    first = max(0, offset)
    last = min(num_frames, offset + int(segment.number_of_frames))
    if last <= first:
        return 0
    source = np.asarray(segment.pixel_data).reshape(-1)
    src_start = (first - offset) * frame_length
    src_stop = (last - offset) * frame_length
    source_block = source[src_start:src_stop]
    # Vue sur le buffer partagé : l'écriture se fait en place
    destination_block = destination[first * frame_length : first * frame_length + source_block.size]
    hits = source_block != 0
    destination_block[hits] = segment.segment_index
    return int(np.count_nonzero(hits))


class VolumeImportEngine:
    """Builds labelmap buffers for new segmentations."""

    def __init__(
        self,
        *,
        volume_store: VolumeStore,
        volume_allocator: VolumeAllocator,
        broadcaster: EventBroadcaster,
        palette_allocator: ColorPaletteAllocator,
        create_segmentation: SegmentationFactory,
    ) -> None:
        """
        Args:
            volume_store: lookup of registered volumes
            volume_allocator: creates derived buffers (awaitable)
            broadcaster: receives SEGMENTATION_ADDED once the record is complete
            palette_allocator: owner of each segmentation's private color LUT
            create_segmentation: registers a new metadata record (store + engine)
                without publishing anything; the optional second argument runs on
                the record before the engine is told about it
        """
        self.volume_store = volume_store
        self.volume_allocator = volume_allocator
        self.broadcaster = broadcaster
        self.palette_allocator = palette_allocator
        self._create_segmentation = create_segmentation
        self._in_flight: Set[str] = set()

    async def create_from_discrete_segments(
        self,
        referenced_volume_id: str,
        segments: Iterable[DiscreteSegment],
        segmentation_id: str,
        suppress_events: bool = False,
    ) -> Segmentation:
        """
        Merge per-segment frame stacks into a new labelmap aligned on the referenced volume.

        Segments are merged in input order; where two segments overlap, the
        later one wins.
        """
        segments = list(segments)
        self._require_volume(referenced_volume_id)
        for segment in segments:
            if not 0 < int(segment.segment_index) < COLOR_LUT_SIZE:
                raise InvalidSegmentIndex(segment.segment_index)

        with self._import_guard(segmentation_id):
            derived = await self.volume_allocator.create_derived_volume(
                referenced_volume_id, segmentation_id, DEFAULT_LABELMAP_BUFFER_KIND
            )
            try:
                # L'allocation a pu se terminer sur un volume source modifié entre-temps
                referenced_volume = self._require_volume(referenced_volume_id)
                self._check_shape(derived, referenced_volume)

                rows, columns, num_frames = (int(d) for d in derived.dimensions)
                frame_length = rows * columns
                for segment in segments:
                    offset = estimate_slice_offset(segment, referenced_volume)
                    written = merge_segment_frames(derived.scalar_data, frame_length, num_frames, segment, offset)
                    logger.debug(
                        "Segment %d merged at frame offset %d (%d voxels)",
                        segment.segment_index,
                        offset,
                        written,
                    )

                schema = SegmentationSchema(
                    id=segmentation_id,
                    volume_id=derived.volume_id,
                    active_segment_index=1,
                    cached_stats={},
                    label="",
                    segments_locked=set(),
                    type=RepresentationType.LABELMAP,
                    display_text=[],
                )
                segmentation = self._create_segmentation(
                    schema, lambda created: self._register_imported_segments(created, segments)
                )
            except Exception:
                self.volume_store.remove_volume_buffer(derived.volume_id)
                raise

        logger.info(
            "Segmentation %s imported from %d segment(s) onto volume %s",
            segmentation_id,
            len(segments),
            referenced_volume_id,
        )
        if not suppress_events:
            self.broadcaster.publish(SegmentationEvents.SEGMENTATION_ADDED, {"segmentation": segmentation})
        return segmentation

    async def create_empty_derived(
        self,
        referenced_volume_id: str,
        segmentation_id: Optional[str] = None,
        label: Optional[str] = None,
        suppress_events: bool = False,
    ) -> Segmentation:
        """Allocate a blank labelmap shaped like the referenced volume."""
        self._require_volume(referenced_volume_id)
        segmentation_id = segmentation_id or str(uuid.uuid4())

        with self._import_guard(segmentation_id):
            derived = await self.volume_allocator.create_derived_volume(
                referenced_volume_id, segmentation_id, DEFAULT_LABELMAP_BUFFER_KIND
            )
            try:
                self._check_shape(derived, self._require_volume(referenced_volume_id))
                schema = SegmentationSchema(
                    id=segmentation_id,
                    volume_id=derived.volume_id,
                    active_segment_index=1,
                    cached_stats={},
                    label=label,
                    segments_locked=set(),
                    type=RepresentationType.LABELMAP,
                    display_text=[],
                )
                segmentation = self._create_segmentation(schema, None)
            except Exception:
                self.volume_store.remove_volume_buffer(derived.volume_id)
                raise

        logger.info("Empty segmentation %s derived from volume %s", segmentation_id, referenced_volume_id)
        if not suppress_events:
            self.broadcaster.publish(SegmentationEvents.SEGMENTATION_ADDED, {"segmentation": segmentation})
        return segmentation

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _require_volume(self, volume_id: str) -> Volume:
        volume = self.volume_store.get_volume(volume_id)
        if volume is None:
            raise MissingVolume(volume_id)
        return volume

    @staticmethod
    def _check_shape(derived: Volume, referenced: Volume) -> None:
        expected = tuple(int(d) for d in referenced.dimensions)
        actual = tuple(int(d) for d in derived.dimensions)
        if actual != expected or derived.scalar_data.size != derived.expected_length:
            raise VolumeShapeMismatch(derived.volume_id, expected, actual)

    def _import_guard(self, segmentation_id: str) -> "_InFlight":
        return _InFlight(self._in_flight, segmentation_id)

    def _register_imported_segments(self, segmentation: Segmentation, segments: List[DiscreteSegment]) -> None:
        """
        Record metadata for every merged index so each nonzero voxel names a known segment.

        A color carried by the segment is written into the segmentation's own
        palette, which is what the engine renders from.
        """
        palette = self.palette_allocator.palette(segmentation.color_lut_index)
        for segment in segments:
            index = int(segment.segment_index)
            if segment.color is not None:
                red, green, blue = (float(c) for c in segment.color)
                palette[index] = [red, green, blue, palette[index][3]]
            rgba = palette[index]
            segmentation.segments[index] = Segment(
                segment_index=index,
                label=segment.label or f"Segment {index}",
                color=(int(rgba[0]), int(rgba[1]), int(rgba[2])),
                opacity=float(rgba[3]) / MAX_ALPHA,
            )
        SegmentationStore.sync_segment_count(segmentation)
        if 1 in segmentation.segments:
            segmentation.active_segment_index = 1
        elif segmentation.segments:
            segmentation.active_segment_index = min(segmentation.segments)


class _InFlight:
    """Context manager rejecting a second concurrent import for the same id."""

    def __init__(self, registry: Set[str], segmentation_id: str) -> None:
        self._registry = registry
        self._segmentation_id = segmentation_id

    def __enter__(self) -> None:
        if self._segmentation_id in self._registry:
            raise ImportInProgress(self._segmentation_id)
        self._registry.add(self._segmentation_id)

    def __exit__(self, exc_type, exc, tb) -> None:
        self._registry.discard(self._segmentation_id)
