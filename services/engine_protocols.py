"""
Interfaces des collaborateurs externes (volume store, allocateur, moteur
d'annotation/rendu, registre des groupes de viewports).

Le gestionnaire d'état ne dépend que de ces protocoles ; une implémentation
en mémoire est fournie dans services.in_memory_engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

from collections.abc import Callable

from models.segmentation_model import RGBA, RepresentationType
from models.volume_model import Volume


class EngineEvents(Enum):
    DATA_MODIFIED = "engine::segmentation_data_modified"
    METADATA_MODIFIED = "engine::segmentation_modified"


@dataclass
class Representation:
    """Binding of a segmentation to a viewport group."""

    representation_uid: str
    segmentation_id: str
    type: RepresentationType = RepresentationType.LABELMAP


@dataclass
class EngineSegmentationState:
    """The engine's own view of a segmentation (read during inbound reconciliation)."""

    segmentation_id: str
    label: str = ""
    type: RepresentationType = RepresentationType.LABELMAP
    active_segment_index: Optional[int] = None
    cached_stats: Dict[str, float] = field(default_factory=dict)
    segments_locked: Set[int] = field(default_factory=set)
    representation_data: Dict[Any, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class EngineEvent:
    segmentation_id: str
    modified_frames: Optional[List[int]] = None


EngineListener = Callable[[EngineEvent], None]


class VolumeStore(Protocol):
    def get_volume(self, volume_id: str) -> Optional[Volume]: ...

    def remove_volume_buffer(self, volume_id: str) -> None: ...


class VolumeAllocator(Protocol):
    async def create_derived_volume(self, source_volume_id: str, new_volume_id: str, buffer_kind: str) -> Volume: ...


class ViewportGroupRegistry(Protocol):
    def get_group_ids(self) -> List[str]: ...

    def get_viewport_ids(self) -> List[str]: ...

    def render_viewports(self, viewport_ids: Sequence[str]) -> None: ...


class AnnotationEngine(Protocol):
    # --- segmentations -------------------------------------------------
    def add_segmentation(
        self, segmentation_id: str, representation_type: RepresentationType, volume_id: Optional[str]
    ) -> None: ...

    def remove_segmentation(self, segmentation_id: str) -> None: ...

    def get_segmentation_state(self, segmentation_id: str) -> Optional[EngineSegmentationState]: ...

    def set_segmentation_label(self, segmentation_id: str, label: str) -> None: ...

    # --- representations -----------------------------------------------
    def add_representations(
        self, group_id: str, segmentation_id: str, representation_type: RepresentationType
    ) -> List[str]: ...

    def get_representations(self, group_id: str) -> List[Representation]: ...

    def remove_representations(self, group_id: str, representation_uids: Sequence[str]) -> None: ...

    def get_groups_with_segmentation(self, segmentation_id: str) -> List[str]: ...

    def set_active_representation(self, group_id: str, representation_uid: str) -> None: ...

    # --- color LUTs ----------------------------------------------------
    def add_color_lut(self, color_lut: List[List[float]], index: int) -> None: ...

    def remove_color_lut(self, index: int) -> None: ...

    def set_color_lut(self, group_id: str, representation_uid: str, index: int) -> None: ...

    def get_color_for_segment_index(self, group_id: str, representation_uid: str, segment_index: int) -> RGBA: ...

    def set_color_for_segment_index(
        self, group_id: str, representation_uid: str, segment_index: int, rgba: Sequence[float]
    ) -> None: ...

    # --- visibility / locking / active segment ---------------------------
    def set_visibility_for_segment_index(
        self, group_id: str, representation_uid: str, segment_index: int, visible: bool
    ) -> None: ...

    def get_segmentation_visibility(self, group_id: str, representation_uid: str) -> bool: ...

    def set_segmentation_visibility(self, group_id: str, representation_uid: str, visible: bool) -> None: ...

    def set_segment_index_locked(self, segmentation_id: str, segment_index: int, locked: bool) -> None: ...

    def set_active_segment_index(self, segmentation_id: str, segment_index: int) -> None: ...

    # --- configuration -------------------------------------------------
    def get_global_config(self) -> Dict[str, Any]: ...

    def set_global_config(self, config: Dict[str, Any]) -> None: ...

    def get_brush_size(self, group_id: str) -> Optional[float]: ...

    def set_brush_size(self, group_id: str, size: float) -> None: ...

    def get_brush_threshold(self, group_id: str) -> Optional[Any]: ...

    def set_brush_threshold(self, group_id: str, threshold: Any) -> None: ...

    # --- notifications -------------------------------------------------
    def trigger_data_modified(self, segmentation_id: str, modified_frames: Sequence[int]) -> None: ...

    def add_listener(self, event: EngineEvents, listener: EngineListener) -> None: ...

    def remove_listener(self, event: EngineEvents, listener: EngineListener) -> None: ...
