from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, fields
from typing import Dict, List, Optional

from config.constants import DEFAULT_SEGMENTATION_LABEL
from models.segmentation_errors import UnknownSegmentation
from models.segmentation_model import RepresentationType, Segmentation, SegmentationSchema


@dataclass(frozen=True)
class UpsertResult:
    created: bool
    segmentation: Segmentation


class SegmentationStore:
    """
    Canonical mapping segmentation_id -> Segmentation (metadata only, no voxels).

    The store enforces the bookkeeping invariants:
      - segment index 0 never has a Segment,
      - segment_count == len(segments),
      - active_segment_index is None or a key of segments,
      - color_lut_index values are unique (delegated to the palette allocator).
    """

    def __init__(self, palette_allocator) -> None:
        self.palette_allocator = palette_allocator
        self._segmentations: Dict[str, Segmentation] = {}
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #
    def get(self, segmentation_id: str) -> Optional[Segmentation]:
        return self._segmentations.get(segmentation_id)

    def require(self, segmentation_id: str) -> Segmentation:
        """Return the segmentation or raise UnknownSegmentation."""
        segmentation = self._segmentations.get(segmentation_id)
        if segmentation is None:
            raise UnknownSegmentation(segmentation_id)
        return segmentation

    def contains(self, segmentation_id: str) -> bool:
        return segmentation_id in self._segmentations

    def list(self) -> List[Segmentation]:
        """Return all segmentations in creation order."""
        return list(self._segmentations.values())

    def __len__(self) -> int:
        return len(self._segmentations)

    # ------------------------------------------------------------------ #
    # Create / update / delete
    # ------------------------------------------------------------------ #
    def upsert_metadata(self, schema: SegmentationSchema) -> UpsertResult:
        """
        Merge the schema into an existing record, or create a fresh one.

        An update never touches the segments mapping structurally; a create
        starts with no segments and a newly allocated color LUT index.
        """
        existing = self._segmentations.get(schema.id)
        if existing is not None:
            self._merge(existing, schema)
            return UpsertResult(created=False, segmentation=existing)

        color_lut_index = self.palette_allocator.allocate()
        segmentation = Segmentation(
            id=schema.id,
            label=schema.label or DEFAULT_SEGMENTATION_LABEL,
            color_lut_index=color_lut_index,
            type=schema.type or RepresentationType.LABELMAP,
            volume_id=schema.volume_id,
            segments={},
            segment_count=0,
            active_segment_index=schema.active_segment_index,
            is_active=False,
            is_visible=True,
            cached_stats=dict(schema.cached_stats or {}),
            display_text=list(schema.display_text or []),
        )
        self.settle_active_segment(segmentation)
        self._segmentations[schema.id] = segmentation
        self.logger.debug(
            "Segmentation created: id=%s | label=%s | color_lut_index=%d",
            segmentation.id,
            segmentation.label,
            color_lut_index,
        )
        return UpsertResult(created=True, segmentation=segmentation)

    def delete(self, segmentation_id: str) -> Optional[Segmentation]:
        """Drop the record and free its color LUT index."""
        segmentation = self._segmentations.pop(segmentation_id, None)
        if segmentation is None:
            return None
        self.palette_allocator.release(segmentation.color_lut_index)
        self.logger.debug("Segmentation deleted: id=%s", segmentation_id)
        return segmentation

    # ------------------------------------------------------------------ #
    # Rollback support
    # ------------------------------------------------------------------ #
    def snapshot(self, segmentation_id: str) -> Optional[Segmentation]:
        """Deep copy of a record, to be handed back to restore()."""
        segmentation = self._segmentations.get(segmentation_id)
        if segmentation is None:
            return None
        return copy.deepcopy(segmentation)

    def restore(self, snapshot: Segmentation) -> None:
        """Put a snapshot back in place, keeping the live object identity."""
        current = self._segmentations.get(snapshot.id)
        if current is None:
            self._segmentations[snapshot.id] = snapshot
            return
        for f in fields(Segmentation):
            setattr(current, f.name, copy.deepcopy(getattr(snapshot, f.name)))

    # ------------------------------------------------------------------ #
    # Invariants
    # ------------------------------------------------------------------ #
    @staticmethod
    def settle_active_segment(segmentation: Segmentation) -> None:
        """Record the active index as None when it does not name an existing segment."""
        active = segmentation.active_segment_index
        if active is not None and int(active) not in segmentation.segments:
            segmentation.active_segment_index = None

    @staticmethod
    def sync_segment_count(segmentation: Segmentation) -> None:
        segmentation.segment_count = len(segmentation.segments)

    def _merge(self, segmentation: Segmentation, schema: SegmentationSchema) -> None:
        if schema.label:
            segmentation.label = schema.label
        if schema.type is not None:
            segmentation.type = schema.type
        if schema.volume_id is not None:
            segmentation.volume_id = schema.volume_id
        if schema.active_segment_index is not None:
            segmentation.active_segment_index = int(schema.active_segment_index)
            self.settle_active_segment(segmentation)
        if schema.cached_stats is not None:
            segmentation.cached_stats = dict(schema.cached_stats)
        if schema.display_text is not None:
            segmentation.display_text = list(schema.display_text)
        if schema.segments_locked is not None:
            locked = {int(idx) for idx in schema.segments_locked}
            for idx, segment in segmentation.segments.items():
                segment.is_locked = idx in locked
