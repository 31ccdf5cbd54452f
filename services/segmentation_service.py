"""
Service de segmentation : surface publique consommée par l'UI/l'application.

Assemble le store, l'allocateur de palettes, le diffuseur d'événements,
l'adaptateur de synchronisation, le mutateur de segments et le moteur
d'import, et expose les opérations de haut niveau.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from config.constants import CONFIGURATION_OPTIONS
from models.segmentation_errors import InvalidConfiguration, UnknownSegmentation
from models.segmentation_model import (
    RepresentationType,
    Segment,
    Segmentation,
    SegmentationSchema,
    SegmentProperties,
)
from models.segmentation_store import SegmentationStore
from models.volume_model import SegDisplaySet, Volume
from services.color_palette_allocator import ColorPaletteAllocator
from services.engine_protocols import (
    AnnotationEngine,
    Representation,
    ViewportGroupRegistry,
    VolumeAllocator,
    VolumeStore,
)
from services.event_broadcaster import EventBroadcaster, SegmentationEvents, SubscriptionToken
from services.external_sync_adapter import ExternalSyncAdapter
from services.segment_mutator import SegmentMutator
from services.segment_statistics import SegmentStatisticsService
from services.volume_import_engine import VolumeImportEngine


class SegmentationService:
    """Single entry point for segmentation state; owns no voxel data."""

    EVENTS = SegmentationEvents

    def __init__(
        self,
        *,
        engine: AnnotationEngine,
        volume_store: VolumeStore,
        volume_allocator: VolumeAllocator,
        group_registry: ViewportGroupRegistry,
        palette_allocator: Optional[ColorPaletteAllocator] = None,
        broadcaster: Optional[EventBroadcaster] = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.engine = engine
        self.volume_store = volume_store
        self.group_registry = group_registry
        self.palette_allocator = palette_allocator or ColorPaletteAllocator()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.store = SegmentationStore(self.palette_allocator)
        self.adapter = ExternalSyncAdapter(
            engine=engine,
            store=self.store,
            broadcaster=self.broadcaster,
            group_registry=group_registry,
        )
        self.mutator = SegmentMutator(
            store=self.store,
            adapter=self.adapter,
            broadcaster=self.broadcaster,
            volume_store=volume_store,
        )
        self.import_engine = VolumeImportEngine(
            volume_store=volume_store,
            volume_allocator=volume_allocator,
            broadcaster=self.broadcaster,
            palette_allocator=self.palette_allocator,
            create_segmentation=self._create_segmentation_record,
        )
        self.statistics_service = SegmentStatisticsService()
        self.adapter.connect()

    def destroy(self) -> None:
        """Stop listening to engine notifications and drop all subscribers."""
        self.adapter.dispose()
        self.broadcaster.clear()

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #
    def subscribe(self, event: SegmentationEvents, handler) -> SubscriptionToken:
        return self.broadcaster.subscribe(event, handler)

    def unsubscribe(self, token: SubscriptionToken) -> bool:
        return self.broadcaster.unsubscribe(token)

    # ------------------------------------------------------------------ #
    # Segmentations
    # ------------------------------------------------------------------ #
    def get_segmentations(self) -> List[Segmentation]:
        return self.store.list()

    def get_segmentation(self, segmentation_id: str) -> Optional[Segmentation]:
        return self.store.get(segmentation_id)

    def add_or_update_segmentation(
        self,
        schema: SegmentationSchema,
        suppress_events: bool = False,
        not_yet_updated_at_source: bool = False,
    ) -> str:
        """
        Create the segmentation on first call for an id, merge metadata afterwards.

        Publishes SEGMENTATION_ADDED on create and SEGMENTATION_UPDATED on update.
        """
        if self.store.contains(schema.id):
            result = self.store.upsert_metadata(schema)
            if not_yet_updated_at_source:
                self.adapter.push_label(result.segmentation)
            if not suppress_events:
                self.broadcaster.publish(
                    SegmentationEvents.SEGMENTATION_UPDATED, {"segmentation": result.segmentation}
                )
            return schema.id

        segmentation = self._create_segmentation_record(schema)
        if not suppress_events:
            self.broadcaster.publish(SegmentationEvents.SEGMENTATION_ADDED, {"segmentation": segmentation})
        return schema.id

    async def create_segmentation_for_seg_display_set(
        self,
        seg_display_set: SegDisplaySet,
        segmentation_id: Optional[str] = None,
        suppress_events: bool = False,
    ) -> str:
        segmentation_id = segmentation_id or seg_display_set.display_set_id
        segmentation = await self.import_engine.create_from_discrete_segments(
            seg_display_set.referenced_volume_id,
            seg_display_set.segments,
            segmentation_id,
            suppress_events=suppress_events,
        )
        return segmentation.id

    async def create_segmentation_for_display_set(
        self,
        display_set_id: str,
        segmentation_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> str:
        """Create a blank labelmap over the display set's volume."""
        segmentation = await self.import_engine.create_empty_derived(
            display_set_id, segmentation_id=segmentation_id, label=label
        )
        return segmentation.id

    def remove_segmentation(self, segmentation_id: str) -> None:
        """
        Remove the segmentation from the engine, the color LUT table and the store,
        and release its labelmap buffer when it has one.
        If it was active, the first remaining segmentation becomes active.
        """
        segmentation = self.store.get(segmentation_id)
        if segmentation is None:
            self.logger.warning("Unable to find segmentation %s to remove", segmentation_id)
            return

        was_active = segmentation.is_active
        self.adapter.unregister_segmentation(segmentation_id, segmentation.color_lut_index)
        if segmentation.volume_id is not None:
            self.volume_store.remove_volume_buffer(segmentation.volume_id)
        self.store.delete(segmentation_id)

        if was_active:
            remaining = self.store.list()
            group_id = self.adapter.first_group_id()
            if remaining and self.adapter.resolve_representation(remaining[0].id, group_id) is not None:
                self.mutator.set_active_segmentation_for_group(remaining[0].id, group_id)

        self.logger.info("Segmentation removed: %s", segmentation_id)
        self.broadcaster.publish(SegmentationEvents.SEGMENTATION_REMOVED, {"segmentation_id": segmentation_id})

    def toggle_segmentation_visibility(self, segmentation_id: str) -> None:
        self.mutator.toggle_segmentation_visibility(segmentation_id)

    def set_active_segmentation_for_group(self, segmentation_id: str, group_id: Optional[str] = None) -> None:
        self.mutator.set_active_segmentation_for_group(segmentation_id, group_id)

    def get_labelmap_volume(self, segmentation_id: str) -> Optional[Volume]:
        segmentation = self.store.get(segmentation_id)
        if segmentation is None or segmentation.volume_id is None:
            return None
        return self.volume_store.get_volume(segmentation.volume_id)

    # ------------------------------------------------------------------ #
    # Representations
    # ------------------------------------------------------------------ #
    def add_segmentation_representation_to_group(
        self,
        group_id: str,
        segmentation_id: str,
        representation_type: RepresentationType = RepresentationType.LABELMAP,
    ) -> str:
        segmentation = self.store.require(segmentation_id)
        if representation_type is not RepresentationType.LABELMAP:
            raise InvalidConfiguration(f"Unsupported representation type: {representation_type}")
        return self.adapter.add_representation(group_id, segmentation)

    def remove_segmentation_representation_from_group(
        self, group_id: str, representation_uids: Optional[Sequence[str]] = None
    ) -> None:
        self.adapter.remove_representations(group_id, representation_uids)

    def get_segmentation_representations_for_group(self, group_id: str) -> List[Representation]:
        return self.adapter.get_representations(group_id)

    # ------------------------------------------------------------------ #
    # Segments
    # ------------------------------------------------------------------ #
    def add_segment(
        self,
        segmentation_id: str,
        segment_index: int,
        group_id: Optional[str] = None,
        properties: Optional[SegmentProperties] = None,
    ) -> Segment:
        return self.mutator.add_segment(segmentation_id, segment_index, properties, group_id)

    def remove_segment(self, segmentation_id: str, segment_index: int) -> List[int]:
        return self.mutator.remove_segment(segmentation_id, segment_index)

    def set_segment_visibility(
        self, segmentation_id: str, segment_index: int, is_visible: bool, group_id: Optional[str] = None
    ) -> None:
        self.mutator.set_segment_visibility(segmentation_id, segment_index, is_visible, group_id)

    def set_segment_locked(self, segmentation_id: str, segment_index: int, is_locked: bool) -> None:
        self.mutator.set_segment_locked(segmentation_id, segment_index, is_locked)

    def set_segment_label(self, segmentation_id: str, segment_index: int, label: str) -> None:
        self.mutator.set_segment_label(segmentation_id, segment_index, label)

    def set_segment_color(
        self, segmentation_id: str, segment_index: int, color: Sequence[float], group_id: Optional[str] = None
    ) -> None:
        self.mutator.set_segment_color(segmentation_id, segment_index, color, group_id)

    def set_segment_opacity(
        self, segmentation_id: str, segment_index: int, opacity: float, group_id: Optional[str] = None
    ) -> None:
        self.mutator.set_segment_opacity(segmentation_id, segment_index, opacity, group_id)

    def set_segment_rgba(
        self, segmentation_id: str, segment_index: int, rgba: Sequence[float], group_id: Optional[str] = None
    ) -> None:
        self.mutator.set_segment_rgba(segmentation_id, segment_index, rgba, group_id)

    def set_active_segment(self, segmentation_id: str, segment_index: int) -> None:
        self.mutator.set_active_segment(segmentation_id, segment_index)

    # ------------------------------------------------------------------ #
    # Render configuration
    # ------------------------------------------------------------------ #
    def get_configuration(self, group_id: Optional[str] = None) -> Dict[str, Any]:
        return self.adapter.get_configuration(self.adapter.resolve_group_id(group_id))

    def set_configuration(self, configuration: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Apply the recognized options present in configuration (None values are
        skipped) and publish SEGMENTATION_CONFIGURATION_CHANGED with the result.
        """
        unknown = sorted(set(configuration) - set(CONFIGURATION_OPTIONS))
        if unknown:
            self.logger.warning("Ignoring unknown segmentation configuration keys: %s", unknown)

        options = {k: v for k, v in configuration.items() if k in CONFIGURATION_OPTIONS and v is not None}
        for key in ("fill_alpha", "fill_alpha_inactive"):
            if key in options:
                options[key] = self._alpha_option(key, options)

        if "render_outline" in options:
            self.adapter.set_labelmap_config_value("render_outline", bool(options["render_outline"]))
        if "outline_width_active" in options:
            # Même épaisseur pour les segmentations actives et inactives
            width = options["outline_width_active"]
            self.adapter.set_labelmap_config_value("outline_width_active", width)
            self.adapter.set_labelmap_config_value("outline_width_inactive", width)
        if "fill_alpha" in options:
            self.adapter.set_labelmap_config_value("fill_alpha", options["fill_alpha"])
        if "render_fill" in options:
            self.adapter.set_labelmap_config_value("render_fill", bool(options["render_fill"]))
        if "render_inactive_segmentations" in options:
            self.adapter.set_render_inactive_segmentations(options["render_inactive_segmentations"])
        if "fill_alpha_inactive" in options:
            self.adapter.set_labelmap_config_value("fill_alpha_inactive", options["fill_alpha_inactive"])
        if "brush_size" in options:
            self.adapter.set_brush_size(options["brush_size"])
        if "brush_threshold_gate" in options:
            self.adapter.set_brush_threshold_gate(options["brush_threshold_gate"])

        current = self.get_configuration()
        self.broadcaster.publish(SegmentationEvents.SEGMENTATION_CONFIGURATION_CHANGED, current)
        return current

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #
    def compute_segment_statistics(self, segmentation_id: str) -> Dict[str, float]:
        """Count voxels per segment, store them in cached_stats and publish an update."""
        segmentation = self.store.require(segmentation_id)
        volume = self.get_labelmap_volume(segmentation_id)
        stats = self.statistics_service.compute(segmentation, volume)
        self.add_or_update_segmentation(SegmentationSchema(id=segmentation_id, cached_stats=stats))
        return stats

    def get_segment_table(self, segmentation_id: str) -> pd.DataFrame:
        segmentation = self.store.get(segmentation_id)
        if segmentation is None:
            raise UnknownSegmentation(segmentation_id)
        return self.statistics_service.build_segment_table(segmentation)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _create_segmentation_record(
        self,
        schema: SegmentationSchema,
        prepare: Optional[Callable[[Segmentation], None]] = None,
    ) -> Segmentation:
        """
        Create (or merge) the store record and declare it to the engine, without publishing.

        `prepare` runs on the record before the engine sees it. A record created
        here is dropped again if the engine refuses it.
        """
        result = self.store.upsert_metadata(schema)
        segmentation = result.segmentation
        try:
            if prepare is not None:
                prepare(segmentation)
            palette = self.palette_allocator.palette(segmentation.color_lut_index)
            if result.created:
                self.adapter.register_segmentation(segmentation, palette)
                self.adapter.push_label(segmentation)
            elif prepare is not None:
                self.adapter.refresh_color_lut(segmentation, palette)
        except Exception:
            if result.created:
                self.logger.error("Engine registration failed for segmentation %s", segmentation.id)
                self.store.delete(segmentation.id)
            raise
        return segmentation

    @staticmethod
    def _alpha_option(key: str, options: Mapping[str, Any]) -> float:
        value = float(options[key])
        if not 0.0 <= value <= 1.0:
            raise InvalidConfiguration(f"{key} must be in [0, 1], got {value}")
        return value
