import asyncio
import logging
import sys

import numpy as np

from config.logging_config import configure_logging
from models.segmentation_model import SegmentProperties
from models.volume_model import DiscreteSegment, SegDisplaySet, Volume
from services.event_broadcaster import SegmentationEvents
from services.in_memory_engine import (
    InMemoryAnnotationEngine,
    InMemoryViewportGroupRegistry,
    InMemoryVolumeCache,
)
from services.segmentation_service import SegmentationService


def build_demo_service():
    """Service câblé sur le moteur en mémoire avec un groupe de viewports."""
    volume_cache = InMemoryVolumeCache()
    registry = InMemoryViewportGroupRegistry({"default": ["viewport-axial", "viewport-sagittal"]})
    service = SegmentationService(
        engine=InMemoryAnnotationEngine(),
        volume_store=volume_cache,
        volume_allocator=volume_cache,
        group_registry=registry,
    )
    return service, volume_cache


async def run_demo() -> None:
    logger = logging.getLogger("segmentation_demo")
    service, volume_cache = build_demo_service()

    for event in SegmentationEvents:
        service.subscribe(event, lambda payload, event=event: logger.info("%s received", event.value))

    volume_cache.add_volume(
        Volume(
            volume_id="ct-volume",
            scalar_data=np.zeros(64 * 64 * 20, dtype=np.int16),
            dimensions=(64, 64, 20),
            spacing=(1.0, 1.0, 2.0),
        )
    )

    # SEG à deux segments : chacun couvre 3 coupes consécutives
    frames = np.zeros((3, 64, 64), dtype=np.uint8)
    frames[:, 20:40, 20:40] = 1
    seg_display_set = SegDisplaySet(
        display_set_id="seg-1",
        referenced_volume_id="ct-volume",
        segments=[
            DiscreteSegment(1, frames, 3, (0.0, 0.0, 4.0), label="Liver"),
            DiscreteSegment(2, frames, 3, (0.0, 0.0, 20.0), label="Lesion"),
        ],
    )
    segmentation_id = await service.create_segmentation_for_seg_display_set(seg_display_set)
    service.add_segmentation_representation_to_group("default", segmentation_id)
    service.set_active_segmentation_for_group(segmentation_id, "default")

    service.add_segment(segmentation_id, 3, properties=SegmentProperties(label="Vessel", color=(10, 20, 30)))
    service.set_segment_opacity(segmentation_id, 3, 0.5)

    service.compute_segment_statistics(segmentation_id)
    logger.info("Segment table:\n%s", service.get_segment_table(segmentation_id).to_string())

    modified_frames = service.remove_segment(segmentation_id, 2)
    logger.info("Frames cleared when removing segment 2: %s", modified_frames)

    service.set_configuration({"fill_alpha": 0.4, "outline_width_active": 2, "brush_size": 10})
    service.remove_segmentation(segmentation_id)
    service.destroy()


if __name__ == "__main__":
    configure_logging(sys.argv[1] if len(sys.argv) > 1 else "INFO")
    asyncio.run(run_demo())
