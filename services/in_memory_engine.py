"""
Implémentation en mémoire des collaborateurs externes.

Sert de moteur de référence pour la démo headless et les tests : les volumes
sont des tableaux numpy plats, les représentations et palettes sont de simples
dictionnaires. Aucun rendu réel n'est effectué.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from config.constants import (
    DEFAULT_BRUSH_SIZE,
    DEFAULT_BRUSH_THRESHOLD_GATE,
    DEFAULT_LABELMAP_CONFIG,
)
from models.segmentation_errors import MissingVolume
from models.segmentation_model import RGBA, RepresentationType
from models.volume_model import Volume
from services.engine_protocols import (
    EngineEvent,
    EngineEvents,
    EngineListener,
    EngineSegmentationState,
    Representation,
)

RepresentationKey = Tuple[str, str]


class InMemoryVolumeCache:
    """Volume store and derived-volume allocator backed by a dict."""

    def __init__(self) -> None:
        self._volumes: Dict[str, Volume] = {}
        self.logger = logging.getLogger(__name__)

    def add_volume(self, volume: Volume) -> Volume:
        self._volumes[volume.volume_id] = volume
        return volume

    def get_volume(self, volume_id: str) -> Optional[Volume]:
        return self._volumes.get(volume_id)

    def remove_volume_buffer(self, volume_id: str) -> None:
        if self._volumes.pop(volume_id, None) is not None:
            self.logger.debug("Volume buffer released: %s", volume_id)

    async def create_derived_volume(self, source_volume_id: str, new_volume_id: str, buffer_kind: str) -> Volume:
        """Allocate a zero-filled buffer with the geometry of the source volume."""
        source = self._volumes.get(source_volume_id)
        if source is None:
            raise MissingVolume(source_volume_id)
        # Rend la main à la boucle : l'allocation est asynchrone côté moteur
        await asyncio.sleep(0)
        derived = Volume(
            volume_id=new_volume_id,
            scalar_data=np.zeros(source.expected_length, dtype=np.dtype(buffer_kind)),
            dimensions=tuple(int(d) for d in source.dimensions),
            origin=tuple(source.origin),
            spacing=tuple(source.spacing),
        )
        self._volumes[new_volume_id] = derived
        self.logger.debug("Derived volume %s allocated from %s (%s)", new_volume_id, source_volume_id, buffer_kind)
        return derived

    def __contains__(self, volume_id: str) -> bool:
        return volume_id in self._volumes


class InMemoryViewportGroupRegistry:
    """Fixed set of viewport groups; records every render request."""

    def __init__(self, group_viewports: Optional[Dict[str, List[str]]] = None) -> None:
        self.group_viewports: Dict[str, List[str]] = dict(group_viewports or {})
        self.render_requests: List[List[str]] = []

    def add_group(self, group_id: str, viewport_ids: Sequence[str] = ()) -> None:
        self.group_viewports[group_id] = list(viewport_ids)

    def get_group_ids(self) -> List[str]:
        return list(self.group_viewports)

    def get_viewport_ids(self) -> List[str]:
        return [vp for viewports in self.group_viewports.values() for vp in viewports]

    def render_viewports(self, viewport_ids: Sequence[str]) -> None:
        self.render_requests.append(list(viewport_ids))


class InMemoryAnnotationEngine:
    """
    Minimal annotation/rendering engine.

    The engine never emits notifications from its own setters; external edits
    are simulated with notify_metadata_modified().
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self._states: Dict[str, EngineSegmentationState] = {}
        self._representations: Dict[str, List[Representation]] = {}
        self._representation_luts: Dict[RepresentationKey, int] = {}
        self._color_luts: Dict[int, List[List[float]]] = {}
        self._segment_visibility: Dict[RepresentationKey, Dict[int, bool]] = {}
        self._segmentation_visibility: Dict[RepresentationKey, bool] = {}
        self._active_representation: Dict[str, str] = {}
        self._brush_size: Dict[str, float] = {}
        self._brush_threshold: Dict[str, Any] = {}
        self._global_config: Dict[str, Any] = {
            "representations": {RepresentationType.LABELMAP: dict(DEFAULT_LABELMAP_CONFIG)},
            "render_inactive_segmentations": True,
        }
        self._listeners: Dict[EngineEvents, List[EngineListener]] = {event: [] for event in EngineEvents}
        self._uid_counter = itertools.count(1)
        self.data_modified_calls: List[Tuple[str, List[int]]] = []

    # ---- segmentations ---- #
    def add_segmentation(
        self, segmentation_id: str, representation_type: RepresentationType, volume_id: Optional[str]
    ) -> None:
        self._states[segmentation_id] = EngineSegmentationState(
            segmentation_id=segmentation_id,
            type=representation_type,
            representation_data={representation_type: {"volume_id": volume_id}},
        )

    def remove_segmentation(self, segmentation_id: str) -> None:
        self._states.pop(segmentation_id, None)

    def get_segmentation_state(self, segmentation_id: str) -> Optional[EngineSegmentationState]:
        return self._states.get(segmentation_id)

    def set_segmentation_label(self, segmentation_id: str, label: str) -> None:
        self._states[segmentation_id].label = label

    # ---- representations ---- #
    def add_representations(
        self, group_id: str, segmentation_id: str, representation_type: RepresentationType
    ) -> List[str]:
        uid = f"{group_id}-{segmentation_id}-{representation_type.value}-{next(self._uid_counter)}"
        self._representations.setdefault(group_id, []).append(
            Representation(representation_uid=uid, segmentation_id=segmentation_id, type=representation_type)
        )
        self._segmentation_visibility[(group_id, uid)] = True
        return [uid]

    def get_representations(self, group_id: str) -> List[Representation]:
        return list(self._representations.get(group_id, []))

    def remove_representations(self, group_id: str, representation_uids: Sequence[str]) -> None:
        uids = set(representation_uids)
        self._representations[group_id] = [
            rep for rep in self._representations.get(group_id, []) if rep.representation_uid not in uids
        ]
        for uid in uids:
            key = (group_id, uid)
            self._representation_luts.pop(key, None)
            self._segment_visibility.pop(key, None)
            self._segmentation_visibility.pop(key, None)
            if self._active_representation.get(group_id) == uid:
                del self._active_representation[group_id]

    def get_groups_with_segmentation(self, segmentation_id: str) -> List[str]:
        return [
            group_id
            for group_id, reps in self._representations.items()
            if any(rep.segmentation_id == segmentation_id for rep in reps)
        ]

    def set_active_representation(self, group_id: str, representation_uid: str) -> None:
        self._active_representation[group_id] = representation_uid

    def get_active_representation(self, group_id: str) -> Optional[str]:
        return self._active_representation.get(group_id)

    # ---- color LUTs ---- #
    def add_color_lut(self, color_lut: List[List[float]], index: int) -> None:
        self._color_luts[index] = color_lut

    def remove_color_lut(self, index: int) -> None:
        self._color_luts.pop(index, None)

    def has_color_lut(self, index: int) -> bool:
        return index in self._color_luts

    def set_color_lut(self, group_id: str, representation_uid: str, index: int) -> None:
        self._representation_luts[(group_id, representation_uid)] = index

    def get_color_for_segment_index(self, group_id: str, representation_uid: str, segment_index: int) -> RGBA:
        lut = self._lut_for(group_id, representation_uid)
        return tuple(lut[segment_index])  # type: ignore[return-value]

    def set_color_for_segment_index(
        self, group_id: str, representation_uid: str, segment_index: int, rgba: Sequence[float]
    ) -> None:
        lut = self._lut_for(group_id, representation_uid)
        lut[segment_index] = list(rgba)

    # ---- visibility / locking / active segment ---- #
    def set_visibility_for_segment_index(
        self, group_id: str, representation_uid: str, segment_index: int, visible: bool
    ) -> None:
        self._segment_visibility.setdefault((group_id, representation_uid), {})[segment_index] = visible

    def get_visibility_for_segment_index(self, group_id: str, representation_uid: str, segment_index: int) -> bool:
        return self._segment_visibility.get((group_id, representation_uid), {}).get(segment_index, True)

    def get_segmentation_visibility(self, group_id: str, representation_uid: str) -> bool:
        return self._segmentation_visibility.get((group_id, representation_uid), True)

    def set_segmentation_visibility(self, group_id: str, representation_uid: str, visible: bool) -> None:
        self._segmentation_visibility[(group_id, representation_uid)] = visible

    def set_segment_index_locked(self, segmentation_id: str, segment_index: int, locked: bool) -> None:
        locked_indices = self._states[segmentation_id].segments_locked
        if locked:
            locked_indices.add(segment_index)
        else:
            locked_indices.discard(segment_index)

    def set_active_segment_index(self, segmentation_id: str, segment_index: int) -> None:
        self._states[segmentation_id].active_segment_index = segment_index

    # ---- configuration ---- #
    def get_global_config(self) -> Dict[str, Any]:
        return copy.deepcopy(self._global_config)

    def set_global_config(self, config: Dict[str, Any]) -> None:
        self._global_config = copy.deepcopy(config)

    def get_brush_size(self, group_id: str) -> Optional[float]:
        return self._brush_size.get(group_id, DEFAULT_BRUSH_SIZE)

    def set_brush_size(self, group_id: str, size: float) -> None:
        self._brush_size[group_id] = size

    def get_brush_threshold(self, group_id: str) -> Optional[Any]:
        return self._brush_threshold.get(group_id, DEFAULT_BRUSH_THRESHOLD_GATE)

    def set_brush_threshold(self, group_id: str, threshold: Any) -> None:
        self._brush_threshold[group_id] = threshold

    # ---- notifications ---- #
    def trigger_data_modified(self, segmentation_id: str, modified_frames: Sequence[int]) -> None:
        frames = list(modified_frames)
        self.data_modified_calls.append((segmentation_id, frames))
        self._dispatch(EngineEvents.DATA_MODIFIED, EngineEvent(segmentation_id, frames))

    def notify_metadata_modified(self, segmentation_id: str) -> None:
        """Simulate an edit made directly on the engine side (tool, other panel...)."""
        self._dispatch(EngineEvents.METADATA_MODIFIED, EngineEvent(segmentation_id))

    def add_listener(self, event: EngineEvents, listener: EngineListener) -> None:
        self._listeners[event].append(listener)

    def remove_listener(self, event: EngineEvents, listener: EngineListener) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def listener_count(self, event: EngineEvents) -> int:
        return len(self._listeners[event])

    def _dispatch(self, event: EngineEvents, payload: EngineEvent) -> None:
        for listener in list(self._listeners[event]):
            listener(payload)

    def _lut_for(self, group_id: str, representation_uid: str) -> List[List[float]]:
        index = self._representation_luts.get((group_id, representation_uid))
        if index is None or index not in self._color_luts:
            raise KeyError(f"No color LUT bound to representation {representation_uid} in group {group_id}")
        return self._color_luts[index]
