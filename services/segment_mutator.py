"""Ajout, suppression et mise à jour des métadonnées de segments."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from config.constants import BACKGROUND_SEGMENT_INDEX, MAX_ALPHA
from models.segmentation_errors import (
    DuplicateSegment,
    InvalidSegmentIndex,
    MissingVolume,
    UnknownSegment,
)
from models.segmentation_model import Color, Segment, Segmentation, SegmentProperties
from models.segmentation_store import SegmentationStore
from services.engine_protocols import VolumeStore
from services.event_broadcaster import EventBroadcaster, SegmentationEvents
from services.external_sync_adapter import ExternalSyncAdapter
from utils.helpers import normalize_color, validate_opacity

# Segment index the engine paints into when a segmentation has no segment left.
FALLBACK_ACTIVE_SEGMENT_INDEX = 1


def zero_segment_voxels(scalar_data: np.ndarray, frame_length: int, segment_index: int) -> List[int]:
    """
    Zero every voxel equal to segment_index, in place, and return the sorted
    list of frames that changed.

    The buffer is scanned in full: voxels of a segment are not assumed to form
    a contiguous region.
    """
    if frame_length <= 0:
        return []
    hits = scalar_data == segment_index
    voxel_indices = np.flatnonzero(hits)
    if voxel_indices.size == 0:
        return []
    scalar_data[hits] = 0
    modified_frames = np.unique(voxel_indices // frame_length)
    return [int(frame) for frame in modified_frames]


class SegmentMutator:
    """Mutates segments in the store and mirrors each change into the external engine."""

    def __init__(
        self,
        *,
        store: SegmentationStore,
        adapter: ExternalSyncAdapter,
        broadcaster: EventBroadcaster,
        volume_store: VolumeStore,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.broadcaster = broadcaster
        self.volume_store = volume_store
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ #
    # Add / remove
    # ------------------------------------------------------------------ #
    def add_segment(
        self,
        segmentation_id: str,
        segment_index: int,
        properties: Optional[SegmentProperties] = None,
        group_id: Optional[str] = None,
    ) -> Segment:
        """
        Add a segment and apply its optional properties as one atomic update.

        Every check runs before the store or the engine is touched; exactly one
        SEGMENTATION_UPDATED is published for the whole call.
        """
        segment_index = int(segment_index)
        if segment_index == BACKGROUND_SEGMENT_INDEX:
            raise InvalidSegmentIndex(segment_index)

        group_id = self.adapter.resolve_group_id(group_id)
        segmentation = self.store.require(segmentation_id)
        self.adapter.require_representation(segmentation_id, group_id)

        if segment_index in segmentation.segments:
            raise DuplicateSegment(segmentation_id, segment_index)

        props = properties or SegmentProperties()
        if props.color is not None:
            normalize_color(props.color)
        if props.opacity is not None:
            validate_opacity(props.opacity)

        # Le moteur attribue la couleur par défaut de la palette à la première lecture
        rgba = self.adapter.read_segment_rgba(segmentation_id, segment_index, group_id)
        segment = Segment(
            segment_index=segment_index,
            label=props.label if props.label is not None else "",
            color=(rgba[0], rgba[1], rgba[2]),
            opacity=float(rgba[3]) / MAX_ALPHA,
            is_visible=True,
            is_locked=False,
        )
        segmentation.segments[segment_index] = segment
        self.store.sync_segment_count(segmentation)

        if props.color is not None:
            self.set_segment_color(segmentation_id, segment_index, props.color, group_id, suppress_events=True)
        if props.opacity is not None:
            self.set_segment_opacity(segmentation_id, segment_index, props.opacity, group_id, suppress_events=True)
        if props.visibility is not None:
            self.set_segment_visibility(
                segmentation_id, segment_index, props.visibility, group_id, suppress_events=True
            )
        if props.active:
            self.set_active_segment(segmentation_id, segment_index, suppress_events=True)
        if props.is_locked is not None:
            self.set_segment_locked(segmentation_id, segment_index, props.is_locked, suppress_events=True)

        if segmentation.active_segment_index is None:
            self.set_active_segment(segmentation_id, segment_index, suppress_events=True)

        self.logger.debug(
            "Segment added: segmentation=%s | index=%d | count=%d",
            segmentation_id,
            segment_index,
            segmentation.segment_count,
        )
        self._broadcast_updated(segmentation)
        return segment

    def remove_segment(self, segmentation_id: str, segment_index: int) -> List[int]:
        """
        Remove a segment's metadata and erase its voxels.

        Returns the frames that were modified. Removing an absent index is a
        no-op (no event, empty list).
        """
        segmentation = self.store.require(segmentation_id)
        segment_index = int(segment_index)
        if segment_index == BACKGROUND_SEGMENT_INDEX:
            raise InvalidSegmentIndex(segment_index)
        if segment_index not in segmentation.segments:
            return []

        volume = None
        if segmentation.volume_id is not None:
            volume = self.volume_store.get_volume(segmentation.volume_id)
            if volume is None:
                raise MissingVolume(segmentation.volume_id)

        del segmentation.segments[segment_index]
        self.store.sync_segment_count(segmentation)

        modified_frames: List[int] = []
        if volume is not None:
            modified_frames = zero_segment_voxels(volume.scalar_data, volume.frame_length, segment_index)
            # Mise à jour partielle des textures : seules les frames modifiées
            self.adapter.notify_data_modified(segmentation_id, modified_frames)

        if segmentation.active_segment_index == segment_index:
            remaining = segmentation.sorted_segment_indices()
            if remaining:
                self.set_active_segment(segmentation_id, remaining[0], suppress_events=True)
            else:
                self.adapter.apply_active_segment(segmentation_id, FALLBACK_ACTIVE_SEGMENT_INDEX)
                segmentation.active_segment_index = None

        self.logger.info(
            "Segment removed: segmentation=%s | index=%d | modified_frames=%d",
            segmentation_id,
            segment_index,
            len(modified_frames),
        )
        self._broadcast_updated(segmentation)
        return modified_frames

    # ------------------------------------------------------------------ #
    # Per-segment setters
    # ------------------------------------------------------------------ #
    def set_segment_visibility(
        self,
        segmentation_id: str,
        segment_index: int,
        is_visible: bool,
        group_id: Optional[str] = None,
        suppress_events: bool = False,
    ) -> None:
        group_id = self.adapter.resolve_group_id(group_id)
        segmentation, segment = self._require_segment(segmentation_id, segment_index)
        self.adapter.require_representation(segmentation_id, group_id)

        segment.is_visible = bool(is_visible)
        self.adapter.apply_segment_visibility(segmentation_id, segment.segment_index, is_visible, group_id)

        if not suppress_events:
            self._broadcast_updated(segmentation)

    def set_segment_locked(
        self,
        segmentation_id: str,
        segment_index: int,
        is_locked: bool,
        suppress_events: bool = False,
    ) -> None:
        segmentation, segment = self._require_segment(segmentation_id, segment_index)

        segment.is_locked = bool(is_locked)
        self.adapter.apply_segment_locked(segmentation_id, segment.segment_index, is_locked)

        if not suppress_events:
            self._broadcast_updated(segmentation)

    def set_segment_label(
        self,
        segmentation_id: str,
        segment_index: int,
        label: str,
        suppress_events: bool = False,
    ) -> None:
        segmentation, segment = self._require_segment(segmentation_id, segment_index)
        segment.label = str(label)
        if not suppress_events:
            self._broadcast_updated(segmentation)

    def set_segment_color(
        self,
        segmentation_id: str,
        segment_index: int,
        color: Sequence[float],
        group_id: Optional[str] = None,
        suppress_events: bool = False,
    ) -> None:
        group_id = self.adapter.resolve_group_id(group_id)
        segmentation, segment = self._require_segment(segmentation_id, segment_index)
        self.adapter.require_representation(segmentation_id, group_id)
        rgb: Color = normalize_color(color)

        self.adapter.apply_segment_color(segmentation_id, segment.segment_index, rgb, group_id)
        segment.color = rgb

        if not suppress_events:
            self._broadcast_updated(segmentation)

    def set_segment_opacity(
        self,
        segmentation_id: str,
        segment_index: int,
        opacity: float,
        group_id: Optional[str] = None,
        suppress_events: bool = False,
    ) -> None:
        group_id = self.adapter.resolve_group_id(group_id)
        segmentation, segment = self._require_segment(segmentation_id, segment_index)
        self.adapter.require_representation(segmentation_id, group_id)
        value = validate_opacity(opacity)

        self.adapter.apply_segment_opacity(segmentation_id, segment.segment_index, value, group_id)
        segment.opacity = value

        if not suppress_events:
            self._broadcast_updated(segmentation)

    def set_segment_rgba(
        self,
        segmentation_id: str,
        segment_index: int,
        rgba: Sequence[float],
        group_id: Optional[str] = None,
    ) -> None:
        """Set color and opacity together; rgba[3] is an opacity in [0, 1]."""
        if len(rgba) != 4:
            raise ValueError(f"RGBA must have 4 channels, got {len(rgba)}")
        segmentation = self.store.require(segmentation_id)
        validate_opacity(rgba[3])
        self.set_segment_opacity(segmentation_id, segment_index, rgba[3], group_id, suppress_events=True)
        self.set_segment_color(segmentation_id, segment_index, rgba[:3], group_id, suppress_events=True)
        self._broadcast_updated(segmentation)

    # ------------------------------------------------------------------ #
    # Segmentation-level flips
    # ------------------------------------------------------------------ #
    def set_active_segment(
        self,
        segmentation_id: str,
        segment_index: int,
        suppress_events: bool = False,
    ) -> None:
        segmentation, segment = self._require_segment(segmentation_id, segment_index)

        self.adapter.apply_active_segment(segmentation_id, segment.segment_index)
        segmentation.active_segment_index = segment.segment_index

        if not suppress_events:
            self._broadcast_updated(segmentation)

    def set_active_segmentation_for_group(
        self,
        segmentation_id: str,
        group_id: Optional[str] = None,
        suppress_events: bool = False,
    ) -> None:
        group_id = self.adapter.resolve_group_id(group_id)
        target = self.store.require(segmentation_id)

        self.adapter.apply_active_segmentation(segmentation_id, group_id)
        for segmentation in self.store.list():
            segmentation.is_active = segmentation.id == segmentation_id

        if not suppress_events:
            self._broadcast_updated(target)

    def toggle_segmentation_visibility(self, segmentation_id: str, suppress_events: bool = False) -> None:
        segmentation = self.store.require(segmentation_id)

        segmentation.is_visible = not segmentation.is_visible
        self.adapter.toggle_segmentation_visibility(segmentation_id)

        if not suppress_events:
            self._broadcast_updated(segmentation)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _require_segment(self, segmentation_id: str, segment_index: int) -> tuple[Segmentation, Segment]:
        segmentation = self.store.require(segmentation_id)
        segment = segmentation.get_segment(segment_index)
        if segment is None:
            raise UnknownSegment(segmentation_id, segment_index)
        return segmentation, segment

    def _broadcast_updated(self, segmentation: Segmentation) -> None:
        self.broadcaster.publish(SegmentationEvents.SEGMENTATION_UPDATED, {"segmentation": segmentation})
