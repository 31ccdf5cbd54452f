"""Pytest fixtures: a SegmentationService wired on the in-memory engine."""

import numpy as np
import pytest

from models.segmentation_model import SegmentationSchema
from models.volume_model import Volume
from services.event_broadcaster import SegmentationEvents
from services.in_memory_engine import (
    InMemoryAnnotationEngine,
    InMemoryViewportGroupRegistry,
    InMemoryVolumeCache,
)
from services.segmentation_service import SegmentationService

GROUP_ID = "default"
VIEWPORT_IDS = ["viewport-axial", "viewport-coronal"]


@pytest.fixture
def volume_cache():
    return InMemoryVolumeCache()


@pytest.fixture
def group_registry():
    return InMemoryViewportGroupRegistry({GROUP_ID: list(VIEWPORT_IDS)})


@pytest.fixture
def engine():
    return InMemoryAnnotationEngine()


@pytest.fixture
def service(engine, volume_cache, group_registry):
    service = SegmentationService(
        engine=engine,
        volume_store=volume_cache,
        volume_allocator=volume_cache,
        group_registry=group_registry,
    )
    yield service
    service.destroy()


@pytest.fixture
def reference_volume(volume_cache):
    """4x4 pixels, 6 frames, 2 mm between slices, origin at 0."""
    return volume_cache.add_volume(
        Volume(
            volume_id="ct",
            scalar_data=np.zeros(4 * 4 * 6, dtype=np.int16),
            dimensions=(4, 4, 6),
            origin=(0.0, 0.0, 0.0),
            spacing=(1.0, 1.0, 2.0),
        )
    )


@pytest.fixture
def event_log(service):
    """List of (event, payload) tuples for every event published by the service."""
    received = []
    for event in SegmentationEvents:
        service.subscribe(event, lambda payload, event=event: received.append((event, payload)))
    return received


@pytest.fixture
def make_labelmap(service, volume_cache):
    """Factory creating a metadata segmentation backed by a zeroed uint8 labelmap."""

    def _make(segmentation_id="seg-1", dimensions=(4, 4, 6), with_representation=True):
        volume_id = f"{segmentation_id}-labelmap"
        volume_cache.add_volume(
            Volume(
                volume_id=volume_id,
                scalar_data=np.zeros(int(np.prod(dimensions)), dtype=np.uint8),
                dimensions=dimensions,
            )
        )
        service.add_or_update_segmentation(
            SegmentationSchema(id=segmentation_id, label=f"Labelmap {segmentation_id}", volume_id=volume_id),
            suppress_events=True,
        )
        if with_representation:
            service.add_segmentation_representation_to_group(GROUP_ID, segmentation_id)
        return service.get_segmentation(segmentation_id)

    return _make


def representation_uid(service, segmentation_id, group_id=GROUP_ID):
    for representation in service.get_segmentation_representations_for_group(group_id):
        if representation.segmentation_id == segmentation_id:
            return representation.representation_uid
    raise AssertionError(f"no representation for {segmentation_id}")


def events_of(event_log, event):
    return [payload for received, payload in event_log if received is event]
