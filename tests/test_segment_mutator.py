import random

import numpy as np
import pytest

from conftest import GROUP_ID, events_of, representation_uid
from models.segmentation_errors import (
    DuplicateSegment,
    InvalidSegmentIndex,
    MissingRepresentation,
    MissingVolume,
    UnknownSegment,
    UnknownSegmentation,
)
from models.segmentation_model import SegmentationSchema, SegmentProperties
from services.event_broadcaster import SegmentationEvents
from services.segment_mutator import zero_segment_voxels

UPDATED = SegmentationEvents.SEGMENTATION_UPDATED


def assert_invariants(segmentation):
    assert 0 not in segmentation.segments
    assert segmentation.segment_count == len(segmentation.segments)
    assert segmentation.active_segment_index is None or segmentation.active_segment_index in segmentation.segments
    for index, segment in segmentation.segments.items():
        assert segment.segment_index == index


# ---- Algorithm A ---- #

def test_zero_segment_voxels_reports_modified_frames():
    scalar_data = np.array([5, 5, 2, 0, 0, 3, 0, 5], dtype=np.uint8)

    frames = zero_segment_voxels(scalar_data, 4, 5)

    assert frames == [0, 1]
    assert scalar_data.tolist() == [0, 0, 2, 0, 0, 3, 0, 0]


def test_zero_segment_voxels_absent_index():
    scalar_data = np.array([1, 2, 3, 4], dtype=np.uint8)

    assert zero_segment_voxels(scalar_data, 2, 9) == []
    assert scalar_data.tolist() == [1, 2, 3, 4]


def test_remove_segment_zeroes_voxels_and_notifies_engine(service, engine, volume_cache, make_labelmap):
    segmentation = make_labelmap(dimensions=(2, 2, 2))
    service.add_segment("seg-1", 5)
    labelmap = volume_cache.get_volume(segmentation.volume_id)
    labelmap.scalar_data[:] = [5, 5, 0, 0, 0, 0, 0, 5]

    modified_frames = service.remove_segment("seg-1", 5)

    assert modified_frames == [0, 1]
    assert labelmap.scalar_data.tolist() == [0] * 8
    assert engine.data_modified_calls[-1] == ("seg-1", [0, 1])


# ---- add_segment ---- #

def test_add_segment_reads_default_color_from_engine(service, make_labelmap):
    make_labelmap()

    segment = service.add_segment("seg-1", 1)

    assert segment.color == (221, 84, 84)
    assert segment.opacity == 1.0
    assert segment.is_visible is True
    assert segment.is_locked is False


def test_add_segment_with_properties_round_trip(service, engine, make_labelmap, event_log):
    make_labelmap()
    event_log.clear()

    service.add_segment("seg-1", 1, properties=SegmentProperties(label="Liver", color=(10, 20, 30), opacity=0.5))

    segment = service.get_segmentation("seg-1").segments[1]
    assert segment.label == "Liver"
    assert segment.color == (10, 20, 30)
    assert segment.opacity == 0.5
    uid = representation_uid(service, "seg-1")
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 1) == (10, 20, 30, 127.5)
    assert len(events_of(event_log, UPDATED)) == 1
    assert len(event_log) == 1


def test_first_segment_becomes_active(service, make_labelmap):
    make_labelmap()

    service.add_segment("seg-1", 3)
    service.add_segment("seg-1", 1)

    assert service.get_segmentation("seg-1").active_segment_index == 3


def test_add_segment_active_property(service, engine, make_labelmap):
    make_labelmap()
    service.add_segment("seg-1", 1)

    service.add_segment("seg-1", 2, properties=SegmentProperties(active=True, is_locked=True, visibility=False))

    segmentation = service.get_segmentation("seg-1")
    assert segmentation.active_segment_index == 2
    assert segmentation.segments[2].is_locked
    assert not segmentation.segments[2].is_visible
    assert engine.get_segmentation_state("seg-1").active_segment_index == 2
    assert engine.get_segmentation_state("seg-1").segments_locked == {2}


@pytest.mark.parametrize("segmentation_id", ["seg-1", "unknown"])
def test_add_segment_index_zero_always_fails(service, make_labelmap, segmentation_id):
    make_labelmap()

    with pytest.raises(InvalidSegmentIndex):
        service.add_segment(segmentation_id, 0)

    assert service.get_segmentation("seg-1").segments == {}


def test_add_duplicate_segment_fails_before_any_change(service, make_labelmap, event_log):
    make_labelmap()
    service.add_segment("seg-1", 1, properties=SegmentProperties(label="Liver"))
    event_log.clear()

    with pytest.raises(DuplicateSegment):
        service.add_segment("seg-1", 1, properties=SegmentProperties(label="Other"))

    segmentation = service.get_segmentation("seg-1")
    assert segmentation.segments[1].label == "Liver"
    assert segmentation.segment_count == 1
    assert event_log == []


def test_add_segment_requires_representation(service, make_labelmap):
    make_labelmap(with_representation=False)

    with pytest.raises(MissingRepresentation):
        service.add_segment("seg-1", 1)

    assert service.get_segmentation("seg-1").segments == {}


def test_add_segment_rejects_invalid_opacity_before_mutation(service, make_labelmap):
    make_labelmap()

    with pytest.raises(ValueError):
        service.add_segment("seg-1", 1, properties=SegmentProperties(opacity=1.5))

    assert service.get_segmentation("seg-1").segments == {}


# ---- remove_segment ---- #

def test_remove_active_segment_selects_lowest_remaining(service, make_labelmap, event_log):
    make_labelmap()
    for index in (1, 2, 3):
        service.add_segment("seg-1", index)
    service.set_active_segment("seg-1", 2)
    event_log.clear()

    service.remove_segment("seg-1", 2)

    segmentation = service.get_segmentation("seg-1")
    assert segmentation.segment_count == 2
    assert sorted(segmentation.segments) == [1, 3]
    assert segmentation.active_segment_index == 1
    assert len(events_of(event_log, UPDATED)) == 1


def test_remove_absent_segment_is_noop(service, make_labelmap, event_log):
    make_labelmap()
    service.add_segment("seg-1", 1)
    before = service.store.snapshot("seg-1")
    event_log.clear()

    assert service.remove_segment("seg-1", 99) == []

    assert event_log == []
    assert service.get_segmentation("seg-1") == before


def test_remove_last_segment_clears_active_index(service, engine, make_labelmap):
    make_labelmap()
    service.add_segment("seg-1", 4)

    service.remove_segment("seg-1", 4)

    segmentation = service.get_segmentation("seg-1")
    assert segmentation.active_segment_index is None
    assert segmentation.segment_count == 0
    assert engine.get_segmentation_state("seg-1").active_segment_index == 1


def test_remove_segment_index_zero_fails(service, make_labelmap):
    make_labelmap()

    with pytest.raises(InvalidSegmentIndex):
        service.remove_segment("seg-1", 0)


def test_remove_segment_with_missing_volume_fails_before_mutation(service):
    service.add_or_update_segmentation(SegmentationSchema(id="ghost", volume_id="not-registered"))
    service.add_segmentation_representation_to_group(GROUP_ID, "ghost")
    service.add_segment("ghost", 1)

    with pytest.raises(MissingVolume):
        service.remove_segment("ghost", 1)

    assert 1 in service.get_segmentation("ghost").segments


# ---- setters ---- #

def test_color_and_opacity_setters_do_not_clobber_each_other(service, engine, make_labelmap):
    make_labelmap()
    service.add_segment("seg-1", 1)
    uid = representation_uid(service, "seg-1")

    service.set_segment_opacity("seg-1", 1, 0.5)
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 1) == (221, 84, 84, 127.5)

    service.set_segment_color("seg-1", 1, (1, 2, 3))
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 1) == (1, 2, 3, 127.5)

    segment = service.get_segmentation("seg-1").segments[1]
    assert segment.color == (1, 2, 3)
    assert segment.opacity == 0.5


def test_set_segment_rgba_publishes_once(service, engine, make_labelmap, event_log):
    make_labelmap()
    service.add_segment("seg-1", 1)
    event_log.clear()

    service.set_segment_rgba("seg-1", 1, (40, 50, 60, 0.25))

    uid = representation_uid(service, "seg-1")
    assert engine.get_color_for_segment_index(GROUP_ID, uid, 1) == (40, 50, 60, 63.75)
    assert len(event_log) == 1


def test_set_segment_color_requires_three_channels(service, make_labelmap):
    make_labelmap()
    service.add_segment("seg-1", 1)

    with pytest.raises(ValueError):
        service.set_segment_color("seg-1", 1, (1, 2))


def test_set_visibility_twice_is_idempotent(service, engine, make_labelmap, event_log):
    make_labelmap()
    service.add_segment("seg-1", 1)
    uid = representation_uid(service, "seg-1")
    event_log.clear()

    service.set_segment_visibility("seg-1", 1, False)
    first = service.store.snapshot("seg-1")
    service.set_segment_visibility("seg-1", 1, False)

    assert service.get_segmentation("seg-1") == first
    assert engine.get_visibility_for_segment_index(GROUP_ID, uid, 1) is False
    assert len(events_of(event_log, UPDATED)) == 2


def test_set_segment_locked_and_label(service, engine, make_labelmap):
    make_labelmap()
    service.add_segment("seg-1", 1)

    service.set_segment_locked("seg-1", 1, True)
    service.set_segment_label("seg-1", 1, "Kidney")

    segment = service.get_segmentation("seg-1").segments[1]
    assert segment.is_locked
    assert segment.label == "Kidney"
    assert engine.get_segmentation_state("seg-1").segments_locked == {1}


def test_setters_on_unknown_targets(service, make_labelmap):
    make_labelmap()

    with pytest.raises(UnknownSegment):
        service.set_segment_label("seg-1", 7, "x")
    with pytest.raises(UnknownSegmentation):
        service.set_segment_visibility("missing", 1, True)
    with pytest.raises(UnknownSegment):
        service.set_active_segment("seg-1", 7)


# ---- segmentation-level flips ---- #

def test_set_active_segmentation_for_group(service, engine, make_labelmap):
    make_labelmap("seg-1")
    make_labelmap("seg-2")

    service.set_active_segmentation_for_group("seg-1", GROUP_ID)
    service.set_active_segmentation_for_group("seg-2", GROUP_ID)

    assert not service.get_segmentation("seg-1").is_active
    assert service.get_segmentation("seg-2").is_active
    assert engine.get_active_representation(GROUP_ID) == representation_uid(service, "seg-2")


def test_toggle_segmentation_visibility(service, engine, make_labelmap, event_log):
    make_labelmap()
    uid = representation_uid(service, "seg-1")
    event_log.clear()

    service.toggle_segmentation_visibility("seg-1")

    assert service.get_segmentation("seg-1").is_visible is False
    assert engine.get_segmentation_visibility(GROUP_ID, uid) is False
    assert len(events_of(event_log, UPDATED)) == 1

    service.toggle_segmentation_visibility("seg-1")
    assert service.get_segmentation("seg-1").is_visible is True


def test_invariants_hold_under_random_edits(service, make_labelmap):
    make_labelmap()
    rng = random.Random(1234)

    for _ in range(200):
        segmentation = service.get_segmentation("seg-1")
        index = rng.randint(1, 6)
        action = rng.choice(["toggle", "toggle", "activate"])
        if action == "activate" and index in segmentation.segments:
            service.set_active_segment("seg-1", index)
        elif index in segmentation.segments:
            service.remove_segment("seg-1", index)
        else:
            service.add_segment("seg-1", index)
        assert_invariants(service.get_segmentation("seg-1"))
