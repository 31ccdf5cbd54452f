import asyncio

import numpy as np
import pytest

from config.constants import COLOR_LUT_SIZE
from conftest import GROUP_ID, events_of
from models.segmentation_errors import (
    ImportInProgress,
    InvalidSegmentIndex,
    MisalignedSlice,
    MissingVolume,
    VolumeShapeMismatch,
)
from models.volume_model import DiscreteSegment, SegDisplaySet, Volume
from services.event_broadcaster import SegmentationEvents
from services.in_memory_engine import InMemoryAnnotationEngine
from services.segmentation_service import SegmentationService
from services.volume_import_engine import estimate_slice_offset, merge_segment_frames

ADDED = SegmentationEvents.SEGMENTATION_ADDED


def full_segment(segment_index, z, number_of_frames=3, **kwargs):
    return DiscreteSegment(
        segment_index=segment_index,
        pixel_data=np.ones((number_of_frames, 4, 4), dtype=np.uint8),
        number_of_frames=number_of_frames,
        first_image_position=(0.0, 0.0, z),
        **kwargs,
    )


def seg_display_set(*segments):
    return SegDisplaySet(display_set_id="seg-1", referenced_volume_id="ct", segments=list(segments))


# ---- Algorithm B ---- #

def test_estimate_slice_offset_on_slice_boundaries(reference_volume):
    assert estimate_slice_offset(full_segment(1, 0.0), reference_volume) == 0
    assert estimate_slice_offset(full_segment(2, 6.0), reference_volume) == 3


def test_estimate_slice_offset_tolerates_rounding_noise(reference_volume):
    assert estimate_slice_offset(full_segment(1, 6.00005), reference_volume) == 3


def test_estimate_slice_offset_rejects_mid_slice_position(reference_volume):
    with pytest.raises(MisalignedSlice) as excinfo:
        estimate_slice_offset(full_segment(2, 6.9), reference_volume)

    assert excinfo.value.segment_index == 2
    assert excinfo.value.estimated_slice == pytest.approx(3.45)


def test_merge_segment_frames_writes_only_nonzero_voxels():
    destination = np.zeros(4 * 3, dtype=np.uint8)
    pixel_data = np.zeros((2, 2, 2), dtype=np.uint8)
    pixel_data[0, 0, 1] = 1
    pixel_data[1, 1, 1] = 1
    segment = DiscreteSegment(7, pixel_data, 2, (0.0, 0.0, 0.0))

    written = merge_segment_frames(destination, 4, 3, segment, 1)

    assert written == 2
    assert destination.tolist() == [0, 0, 0, 0, 0, 7, 0, 0, 0, 0, 0, 7]


def test_merge_segment_frames_clips_to_volume():
    destination = np.zeros(4 * 2, dtype=np.uint8)
    segment = DiscreteSegment(3, np.ones((3, 2, 2), dtype=np.uint8), 3, (0.0, 0.0, 0.0))

    written = merge_segment_frames(destination, 4, 2, segment, 1)

    assert written == 4
    assert destination.tolist() == [0, 0, 0, 0, 3, 3, 3, 3]


# ---- import through the service ---- #

def test_import_places_segments_at_their_slice_offsets(service, volume_cache, reference_volume, event_log):
    segmentation_id = asyncio.run(
        service.create_segmentation_for_seg_display_set(
            seg_display_set(full_segment(1, 0.0, label="A"), full_segment(2, 6.0, label="B"))
        )
    )

    segmentation = service.get_segmentation(segmentation_id)
    frames = service.get_labelmap_volume(segmentation_id).frames()
    assert (frames[0:3] == 1).all()
    assert (frames[3:6] == 2).all()
    assert volume_cache.get_volume(segmentation.volume_id).scalar_data.dtype == np.uint8
    assert sorted(segmentation.segments) == [1, 2]
    assert segmentation.segment_count == 2
    assert segmentation.active_segment_index == 1
    assert segmentation.segments[2].label == "B"
    assert segmentation.cached_stats == {}
    assert segmentation.display_text == []
    assert len(events_of(event_log, ADDED)) == 1


def test_import_leaves_only_known_indices_in_buffer(service, reference_volume):
    asyncio.run(
        service.create_segmentation_for_seg_display_set(
            seg_display_set(full_segment(4, 2.0, number_of_frames=2), full_segment(9, 8.0, number_of_frames=1))
        )
    )

    segmentation = service.get_segmentation("seg-1")
    values = set(np.unique(service.get_labelmap_volume("seg-1").scalar_data).tolist())
    assert values <= set(segmentation.segments) | {0}
    assert segmentation.active_segment_index == 4


def test_overlapping_segments_last_write_wins(service, reference_volume):
    asyncio.run(
        service.create_segmentation_for_seg_display_set(
            seg_display_set(full_segment(1, 0.0), full_segment(2, 2.0))
        )
    )

    frames = service.get_labelmap_volume("seg-1").frames()
    assert (frames[0] == 1).all()
    assert (frames[1:4] == 2).all()
    assert (frames[4:] == 0).all()


def test_misaligned_import_fails_and_releases_buffer(service, volume_cache, reference_volume, event_log):
    with pytest.raises(MisalignedSlice):
        asyncio.run(
            service.create_segmentation_for_seg_display_set(
                seg_display_set(full_segment(1, 0.0), full_segment(2, 6.9))
            )
        )

    assert service.get_segmentation("seg-1") is None
    assert "seg-1" not in volume_cache
    assert event_log == []


def test_import_without_reference_volume(service):
    with pytest.raises(MissingVolume):
        asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))))


def test_import_rejects_background_index(service, reference_volume):
    with pytest.raises(InvalidSegmentIndex):
        asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(0, 0.0))))


def test_import_rejects_index_outside_color_lut(service, volume_cache, reference_volume):
    with pytest.raises(InvalidSegmentIndex):
        asyncio.run(
            service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(COLOR_LUT_SIZE, 0.0)))
        )

    assert "seg-1" not in volume_cache


def test_import_suppressed_events(service, reference_volume, event_log):
    asyncio.run(
        service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0)), suppress_events=True)
    )

    assert service.get_segmentation("seg-1") is not None
    assert event_log == []


def test_import_registers_segmentation_with_engine(service, engine, reference_volume):
    asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))))

    state = engine.get_segmentation_state("seg-1")
    assert state is not None
    assert state.label == "Segmentation"
    assert engine.has_color_lut(service.get_segmentation("seg-1").color_lut_index)


def test_imported_segment_color_is_rendered_by_engine(service, engine, reference_volume):
    asyncio.run(
        service.create_segmentation_for_seg_display_set(
            seg_display_set(full_segment(1, 0.0, color=(10, 20, 30)), full_segment(2, 6.0))
        )
    )
    uid = service.add_segmentation_representation_to_group(GROUP_ID, "seg-1")

    segments = service.get_segmentation("seg-1").segments
    assert segments[1].color == (10, 20, 30)
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 1) == (10, 20, 30, 255)
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 2)[:3] == segments[2].color


def test_reimport_onto_existing_id_refreshes_engine_palette(service, engine, reference_volume):
    asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))))
    uid = service.add_segmentation_representation_to_group(GROUP_ID, "seg-1")

    asyncio.run(
        service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0, color=(1, 2, 3))))
    )

    assert service.get_segmentation("seg-1").segments[1].color == (1, 2, 3)
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 1)[:3] == (1, 2, 3)


class RejectingEngine(InMemoryAnnotationEngine):
    """Engine refusing every new segmentation."""

    def add_segmentation(self, segmentation_id, representation_type, volume_id):
        raise RuntimeError("engine unavailable")


def test_engine_refusal_releases_buffer_and_record(volume_cache, group_registry, reference_volume):
    service = SegmentationService(
        engine=RejectingEngine(),
        volume_store=volume_cache,
        volume_allocator=volume_cache,
        group_registry=group_registry,
    )

    with pytest.raises(RuntimeError):
        asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))))
    with pytest.raises(RuntimeError):
        asyncio.run(service.create_segmentation_for_display_set("ct", "blank"))

    assert "seg-1" not in volume_cache
    assert "blank" not in volume_cache
    assert service.get_segmentations() == []
    assert service.palette_allocator.allocated() == []
    service.destroy()


class ShrinkingAllocator:
    """Allocator whose derived volume comes back with one frame less than the source."""

    def __init__(self, volume_cache):
        self.volume_cache = volume_cache

    async def create_derived_volume(self, source_volume_id, new_volume_id, buffer_kind):
        source = self.volume_cache.get_volume(source_volume_id)
        rows, columns, num_frames = source.dimensions
        await asyncio.sleep(0)
        return self.volume_cache.add_volume(
            Volume(
                volume_id=new_volume_id,
                scalar_data=np.zeros(rows * columns * (num_frames - 1), dtype=np.dtype(buffer_kind)),
                dimensions=(rows, columns, num_frames - 1),
            )
        )


def test_shape_mismatch_after_allocation(engine, volume_cache, group_registry, reference_volume):
    service = SegmentationService(
        engine=engine,
        volume_store=volume_cache,
        volume_allocator=ShrinkingAllocator(volume_cache),
        group_registry=group_registry,
    )

    with pytest.raises(VolumeShapeMismatch) as excinfo:
        asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))))

    assert excinfo.value.expected == (4, 4, 6)
    assert excinfo.value.actual == (4, 4, 5)
    assert "seg-1" not in volume_cache
    assert service.get_segmentations() == []
    service.destroy()


def test_concurrent_import_for_same_id_is_rejected(service, reference_volume):
    async def import_twice():
        return await asyncio.gather(
            service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))),
            service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(2, 6.0))),
            return_exceptions=True,
        )

    first, second = asyncio.run(import_twice())

    assert first == "seg-1"
    assert isinstance(second, ImportInProgress)
    assert sorted(service.get_segmentation("seg-1").segments) == [1]


def test_import_guard_is_released_after_failure(service, reference_volume):
    with pytest.raises(MisalignedSlice):
        asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.5))))

    segmentation_id = asyncio.run(service.create_segmentation_for_seg_display_set(seg_display_set(full_segment(1, 0.0))))

    assert segmentation_id == "seg-1"


# ---- empty derived labelmap ---- #

def test_create_empty_labelmap(service, reference_volume, event_log):
    segmentation_id = asyncio.run(service.create_segmentation_for_display_set("ct", "blank", label="Manual"))

    segmentation = service.get_segmentation(segmentation_id)
    labelmap = service.get_labelmap_volume(segmentation_id)
    assert segmentation.label == "Manual"
    assert segmentation.segments == {}
    assert segmentation.active_segment_index is None
    assert labelmap.dimensions == (4, 4, 6)
    assert not labelmap.scalar_data.any()
    assert len(events_of(event_log, ADDED)) == 1


def test_create_empty_labelmap_generates_id(service, reference_volume):
    segmentation_id = asyncio.run(service.create_segmentation_for_display_set("ct"))

    assert service.get_segmentation(segmentation_id).label == "Segmentation"
