"""
Pont bidirectionnel avec le moteur d'annotation/rendu externe.

Sortant : chaque changement de couleur/opacité/visibilité/verrou/segment actif
est répercuté dans la configuration par groupe et par représentation du moteur.
Entrant : les notifications "data modified" et "metadata modified" du moteur
sont réconciliées dans le store puis rediffusées.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from config.constants import LABELMAP_CONFIG_KEYS, MAX_ALPHA
from models.segmentation_errors import MissingRepresentation, UnsupportedRepresentation
from models.segmentation_model import RGBA, Color, RepresentationType, Segmentation, SegmentationSchema
from models.segmentation_store import SegmentationStore
from services.engine_protocols import (
    AnnotationEngine,
    EngineEvent,
    EngineEvents,
    Representation,
    ViewportGroupRegistry,
)
from services.event_broadcaster import EventBroadcaster, SegmentationEvents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationDiagnostic:
    """Structured record of an inbound notification that could not be reconciled."""

    segmentation_id: str
    event: EngineEvents
    error_type: str
    message: str
    timestamp: float


class ExternalSyncAdapter:
    def __init__(
        self,
        *,
        engine: AnnotationEngine,
        store: SegmentationStore,
        broadcaster: EventBroadcaster,
        group_registry: ViewportGroupRegistry,
    ) -> None:
        self.engine = engine
        self.store = store
        self.broadcaster = broadcaster
        self.group_registry = group_registry
        self.diagnostics: List[ReconciliationDiagnostic] = []
        self._connected = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def connect(self) -> None:
        """Start listening to the engine's modification notifications."""
        if self._connected:
            return
        self.engine.add_listener(EngineEvents.METADATA_MODIFIED, self._on_metadata_modified)
        self.engine.add_listener(EngineEvents.DATA_MODIFIED, self._on_data_modified)
        self._connected = True

    def dispose(self) -> None:
        if not self._connected:
            return
        self.engine.remove_listener(EngineEvents.METADATA_MODIFIED, self._on_metadata_modified)
        self.engine.remove_listener(EngineEvents.DATA_MODIFIED, self._on_data_modified)
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------ #
    # Groups & representations
    # ------------------------------------------------------------------ #
    def first_group_id(self) -> Optional[str]:
        group_ids = self.group_registry.get_group_ids()
        return group_ids[0] if group_ids else None

    def resolve_group_id(self, group_id: Optional[str]) -> Optional[str]:
        return group_id if group_id is not None else self.first_group_id()

    def resolve_representation(self, segmentation_id: str, group_id: Optional[str]) -> Optional[Representation]:
        """
        First representation of the group bound to segmentation_id.

        A segmentation shown twice in the same group is not disambiguated:
        the first match wins.
        """
        if group_id is None:
            return None
        for representation in self.engine.get_representations(group_id):
            if representation.segmentation_id == segmentation_id:
                return representation
        return None

    def require_representation(self, segmentation_id: str, group_id: Optional[str]) -> Representation:
        representation = self.resolve_representation(segmentation_id, group_id)
        if representation is None:
            raise MissingRepresentation(segmentation_id, group_id)
        return representation

    def add_representation(self, group_id: str, segmentation: Segmentation) -> str:
        """Bind the segmentation to a group and point the new representation to its LUT."""
        representation_uids = self.engine.add_representations(group_id, segmentation.id, segmentation.type)
        representation_uid = representation_uids[0]
        self.engine.set_color_lut(group_id, representation_uid, segmentation.color_lut_index)
        logger.debug(
            "Representation %s added to group %s for %s (lut=%d)",
            representation_uid,
            group_id,
            segmentation.id,
            segmentation.color_lut_index,
        )
        return representation_uid

    def remove_representations(self, group_id: str, representation_uids: Optional[Sequence[str]] = None) -> None:
        if representation_uids is None:
            representation_uids = [rep.representation_uid for rep in self.engine.get_representations(group_id)]
        self.engine.remove_representations(group_id, list(representation_uids))

    def get_representations(self, group_id: str) -> List[Representation]:
        return self.engine.get_representations(group_id)

    # ------------------------------------------------------------------ #
    # Segmentation registration
    # ------------------------------------------------------------------ #
    def register_segmentation(self, segmentation: Segmentation, color_lut: List[List[float]]) -> None:
        """Declare a new segmentation and its private color LUT to the engine."""
        self.engine.add_segmentation(segmentation.id, segmentation.type, segmentation.volume_id)
        self.engine.add_color_lut(color_lut, segmentation.color_lut_index)

    def refresh_color_lut(self, segmentation: Segmentation, color_lut: List[List[float]]) -> None:
        """Replace the engine copy of a segmentation's LUT after its palette was edited."""
        self.engine.add_color_lut(color_lut, segmentation.color_lut_index)

    def push_label(self, segmentation: Segmentation) -> None:
        state = self.engine.get_segmentation_state(segmentation.id)
        if state is not None and state.label != segmentation.label:
            self.engine.set_segmentation_label(segmentation.id, segmentation.label)

    def unregister_segmentation(self, segmentation_id: str, color_lut_index: int) -> None:
        """Remove every representation of the segmentation, its engine state and its LUT."""
        if self.engine.get_segmentation_state(segmentation_id) is not None:
            for group_id in self.engine.get_groups_with_segmentation(segmentation_id):
                uids = [
                    rep.representation_uid
                    for rep in self.engine.get_representations(group_id)
                    if rep.segmentation_id == segmentation_id
                ]
                self.engine.remove_representations(group_id, uids)
            self.engine.remove_segmentation(segmentation_id)
        self.engine.remove_color_lut(color_lut_index)

    # ------------------------------------------------------------------ #
    # Per-segment appearance
    # ------------------------------------------------------------------ #
    def read_segment_rgba(self, segmentation_id: str, segment_index: int, group_id: Optional[str]) -> RGBA:
        representation = self.require_representation(segmentation_id, group_id)
        rgba = self.engine.get_color_for_segment_index(group_id, representation.representation_uid, segment_index)
        return tuple(rgba)  # type: ignore[return-value]

    def apply_segment_color(
        self, segmentation_id: str, segment_index: int, color: Color, group_id: Optional[str]
    ) -> None:
        # Lecture-modification-écriture : l'alpha existant est conservé
        representation = self.require_representation(segmentation_id, group_id)
        uid = representation.representation_uid
        current = self.engine.get_color_for_segment_index(group_id, uid, segment_index)
        self.engine.set_color_for_segment_index(
            group_id, uid, segment_index, [color[0], color[1], color[2], current[3]]
        )

    def apply_segment_opacity(
        self, segmentation_id: str, segment_index: int, opacity: float, group_id: Optional[str]
    ) -> None:
        representation = self.require_representation(segmentation_id, group_id)
        uid = representation.representation_uid
        current = self.engine.get_color_for_segment_index(group_id, uid, segment_index)
        self.engine.set_color_for_segment_index(
            group_id, uid, segment_index, [current[0], current[1], current[2], float(opacity) * MAX_ALPHA]
        )

    def apply_segment_visibility(
        self, segmentation_id: str, segment_index: int, visible: bool, group_id: Optional[str]
    ) -> None:
        representation = self.require_representation(segmentation_id, group_id)
        self.engine.set_visibility_for_segment_index(
            group_id, representation.representation_uid, segment_index, bool(visible)
        )

    def apply_segment_locked(self, segmentation_id: str, segment_index: int, locked: bool) -> None:
        self.engine.set_segment_index_locked(segmentation_id, segment_index, bool(locked))

    def apply_active_segment(self, segmentation_id: str, segment_index: int) -> None:
        self.engine.set_active_segment_index(segmentation_id, int(segment_index))

    def apply_active_segmentation(self, segmentation_id: str, group_id: Optional[str]) -> None:
        representation = self.require_representation(segmentation_id, group_id)
        self.engine.set_active_representation(group_id, representation.representation_uid)

    def toggle_segmentation_visibility(self, segmentation_id: str) -> None:
        """Flip the visibility of the first matching representation in every group showing it."""
        for group_id in self.engine.get_groups_with_segmentation(segmentation_id):
            representation = self.resolve_representation(segmentation_id, group_id)
            if representation is None:
                continue
            uid = representation.representation_uid
            visible = self.engine.get_segmentation_visibility(group_id, uid)
            self.engine.set_segmentation_visibility(group_id, uid, not visible)

    def notify_data_modified(self, segmentation_id: str, modified_frames: Sequence[int]) -> None:
        """Ask the engine to re-upload only the given frames."""
        self.engine.trigger_data_modified(segmentation_id, list(modified_frames))

    # ------------------------------------------------------------------ #
    # Global render configuration
    # ------------------------------------------------------------------ #
    def get_configuration(self, group_id: Optional[str]) -> Dict[str, Any]:
        config = self.engine.get_global_config()
        labelmap_config = config.get("representations", {}).get(RepresentationType.LABELMAP, {})
        return {
            "brush_size": self.engine.get_brush_size(group_id) if group_id is not None else None,
            "brush_threshold_gate": self.engine.get_brush_threshold(group_id) if group_id is not None else None,
            "fill_alpha": labelmap_config.get("fill_alpha"),
            "fill_alpha_inactive": labelmap_config.get("fill_alpha_inactive"),
            "outline_width_active": labelmap_config.get("outline_width_active"),
            "render_fill": labelmap_config.get("render_fill"),
            "render_inactive_segmentations": config.get("render_inactive_segmentations"),
            "render_outline": labelmap_config.get("render_outline"),
        }

    def set_labelmap_config_value(self, key: str, value: Any) -> None:
        if key not in LABELMAP_CONFIG_KEYS:
            raise KeyError(key)
        config = self.engine.get_global_config()
        config.setdefault("representations", {}).setdefault(RepresentationType.LABELMAP, {})[key] = value
        self.engine.set_global_config(config)
        self.render_all_viewports()

    def set_render_inactive_segmentations(self, enabled: bool) -> None:
        config = self.engine.get_global_config()
        config["render_inactive_segmentations"] = bool(enabled)
        self.engine.set_global_config(config)

    def set_brush_size(self, size: float) -> None:
        for group_id in self.group_registry.get_group_ids():
            self.engine.set_brush_size(group_id, size)

    def set_brush_threshold_gate(self, threshold: Any) -> None:
        for group_id in self.group_registry.get_group_ids():
            self.engine.set_brush_threshold(group_id, threshold)

    def render_all_viewports(self) -> None:
        self.group_registry.render_viewports(self.group_registry.get_viewport_ids())

    # ------------------------------------------------------------------ #
    # Inbound notifications
    # ------------------------------------------------------------------ #
    def _on_data_modified(self, event: EngineEvent) -> None:
        segmentation = self.store.get(event.segmentation_id)
        if segmentation is None:
            # Notification émise pendant la création : rien à rediffuser
            return
        self.broadcaster.publish(
            SegmentationEvents.SEGMENTATION_DATA_MODIFIED, {"segmentation": segmentation}
        )

    def _on_metadata_modified(self, event: EngineEvent) -> None:
        """Reconcile without ever raising into the engine's dispatch loop."""
        segmentation_id = event.segmentation_id
        snapshot = self.store.snapshot(segmentation_id)
        if snapshot is None:
            return
        try:
            self.reconcile(segmentation_id)
        except Exception as exc:
            self.store.restore(snapshot)
            diagnostic = ReconciliationDiagnostic(
                segmentation_id=segmentation_id,
                event=EngineEvents.METADATA_MODIFIED,
                error_type=type(exc).__name__,
                message=str(exc),
                timestamp=time.time(),
            )
            self.diagnostics.append(diagnostic)
            logger.warning(
                "Failed to add/update segmentation %s from engine state: %s",
                segmentation_id,
                exc,
                extra={"diagnostic": diagnostic},
            )

    def reconcile(self, segmentation_id: str) -> Optional[Segmentation]:
        """
        Pull the engine's state for one segmentation back into the store.
        The labelmap volume is owned by this side and is never taken from the engine.

        Returns None when there is nothing to reconcile (no record yet, or
        the engine no longer knows the segmentation).
        Raises UnsupportedRepresentation if the engine holds no labelmap data.
        """
        if not self.store.contains(segmentation_id):
            return None
        state = self.engine.get_segmentation_state(segmentation_id)
        if state is None:
            return None
        if RepresentationType.LABELMAP not in state.representation_data:
            raise UnsupportedRepresentation(segmentation_id, list(state.representation_data))

        schema = SegmentationSchema(
            id=segmentation_id,
            label=state.label,
            type=state.type,
            active_segment_index=state.active_segment_index,
            cached_stats=dict(state.cached_stats),
            display_text=[],
            segments_locked=set(state.segments_locked),
        )
        result = self.store.upsert_metadata(schema)
        self.broadcaster.publish(
            SegmentationEvents.SEGMENTATION_UPDATED, {"segmentation": result.segmentation}
        )
        return result.segmentation
