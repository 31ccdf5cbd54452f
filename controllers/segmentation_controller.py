"""Controller reliant le service de segmentation à l'UI Qt."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from PyQt6.QtCore import QObject, pyqtSignal
from PyQt6.QtGui import QColor

from models.segmentation_model import SegmentProperties
from services.event_broadcaster import SegmentationEvents, SubscriptionToken
from services.segmentation_service import SegmentationService


class SegmentationController(QObject):
    """
    Relaie les événements du service sous forme de signaux Qt et traduit les
    actions du panneau de segmentation (QColor, toggles) en appels au service.
    """

    segmentation_added = pyqtSignal(object)
    segmentation_updated = pyqtSignal(object)
    segmentation_data_modified = pyqtSignal(object)
    segmentation_removed = pyqtSignal(str)
    configuration_changed = pyqtSignal(dict)

    def __init__(
        self,
        *,
        segmentation_service: SegmentationService,
        logger: Optional[logging.Logger] = None,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.segmentation_service = segmentation_service
        self.logger = logger or logging.getLogger(__name__)
        self._tokens: List[SubscriptionToken] = []
        self._connect_service_events()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def on_segment_added(self, segmentation_id: str, segment_index: int, label: str, color: QColor) -> None:
        """Ajoute un segment avec le libellé et la couleur choisis dans le panneau."""
        properties = SegmentProperties(label=label, color=self._qcolor_to_rgb(color), active=True)
        self.segmentation_service.add_segment(segmentation_id, segment_index, properties=properties)

    def on_segment_removed(self, segmentation_id: str, segment_index: int) -> None:
        frames = self.segmentation_service.remove_segment(segmentation_id, segment_index)
        self.logger.info("Segment %d removed from %s (%d frame(s) updated)", segment_index, segmentation_id, len(frames))

    def on_segment_color_changed(self, segmentation_id: str, segment_index: int, color: QColor) -> None:
        """Couleur et alpha du QColor sont appliqués en une seule mise à jour."""
        r, g, b = self._qcolor_to_rgb(color)
        self.segmentation_service.set_segment_rgba(segmentation_id, segment_index, (r, g, b, color.alphaF()))

    def on_segment_visibility_changed(self, segmentation_id: str, segment_index: int, visible: bool) -> None:
        self.segmentation_service.set_segment_visibility(segmentation_id, segment_index, visible)

    def on_segment_locked_changed(self, segmentation_id: str, segment_index: int, locked: bool) -> None:
        self.segmentation_service.set_segment_locked(segmentation_id, segment_index, locked)

    def on_segment_renamed(self, segmentation_id: str, segment_index: int, label: str) -> None:
        self.segmentation_service.set_segment_label(segmentation_id, segment_index, label)

    def on_active_segment_changed(self, segmentation_id: str, segment_index: int) -> None:
        self.segmentation_service.set_active_segment(segmentation_id, segment_index)

    def on_segmentation_visibility_toggled(self, segmentation_id: str) -> None:
        self.segmentation_service.toggle_segmentation_visibility(segmentation_id)

    def on_configuration_changed(self, configuration: Dict[str, Any]) -> None:
        self.segmentation_service.set_configuration(configuration)

    def dispose(self) -> None:
        """Se désabonne de tous les événements du service."""
        for token in self._tokens:
            self.segmentation_service.unsubscribe(token)
        self._tokens.clear()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _connect_service_events(self) -> None:
        bindings = (
            (SegmentationEvents.SEGMENTATION_ADDED, lambda payload: self.segmentation_added.emit(payload["segmentation"])),
            (SegmentationEvents.SEGMENTATION_UPDATED, lambda payload: self.segmentation_updated.emit(payload["segmentation"])),
            (
                SegmentationEvents.SEGMENTATION_DATA_MODIFIED,
                lambda payload: self.segmentation_data_modified.emit(payload["segmentation"]),
            ),
            (
                SegmentationEvents.SEGMENTATION_REMOVED,
                lambda payload: self.segmentation_removed.emit(payload["segmentation_id"]),
            ),
            (
                SegmentationEvents.SEGMENTATION_CONFIGURATION_CHANGED,
                lambda payload: self.configuration_changed.emit(dict(payload)),
            ),
        )
        for event, handler in bindings:
            self._tokens.append(self.segmentation_service.subscribe(event, handler))

    @staticmethod
    def _qcolor_to_rgb(color: QColor) -> Tuple[int, int, int]:
        return color.red(), color.green(), color.blue()
