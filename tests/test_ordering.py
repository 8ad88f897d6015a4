"""
Test Suite: Order Reconstruction

- permutation and contiguous output positions
- stable tie handling
- tail truncation on segment/angle count mismatch
- sweep direction labelling
"""

import logging

import pytest

from tiltstack_backend.errors import EmptyInputError
from tiltstack_backend.ordering import Direction, reconstruct_order, sweep_directions
from tiltstack_backend.segments import Segment


def _segments(count, length=5, gap=2):
    out = []
    start = 1
    for _ in range(count):
        out.append(Segment(start, start + length - 1))
        start += length + gap
    return out


def test_seven_segments_sorted_angles():
    segments = _segments(7)
    angles = [-60, -40, -20, 0, 20, 40, 60]
    order = reconstruct_order(segments, angles)

    assert [e.output_position for e in order] == list(range(1, 8))
    assert [e.tilt_angle for e in order] == [float(a) for a in angles]
    assert [e.segment for e in order] == segments


def test_output_is_a_permutation_sorted_by_angle():
    segments = _segments(6)
    angles = [0, 3, -3, 6, -6, 9]
    order = reconstruct_order(segments, angles)

    assert sorted(e.segment for e in order) == sorted(segments)
    assert [e.output_position for e in order] == list(range(1, 7))
    assert [e.tilt_angle for e in order] == sorted(float(a) for a in angles)
    by_angle = {e.tilt_angle: e.segment for e in order}
    assert by_angle[-3.0] == segments[2]
    assert by_angle[9.0] == segments[5]


def test_ties_keep_acquisition_order():
    segments = _segments(4)
    order = reconstruct_order(segments, [10, 0, 10, 0])
    assert [e.segment for e in order] == [segments[1], segments[3], segments[0], segments[2]]


def test_extra_angles_are_dropped_from_tail(caplog):
    segments = _segments(3)
    with caplog.at_level(logging.WARNING, logger="tiltstack_backend.ordering"):
        order = reconstruct_order(segments, [0, 3, -3, 6, 9])
    assert len(order) == 3
    assert sorted(e.tilt_angle for e in order) == [-3.0, 0.0, 3.0]
    assert "count mismatch" in caplog.text


def test_extra_segments_are_dropped_from_tail(caplog):
    segments = _segments(5)
    with caplog.at_level(logging.WARNING, logger="tiltstack_backend.ordering"):
        order = reconstruct_order(segments, [0, 3, -3])
    assert [e.segment for e in order] == [segments[2], segments[0], segments[1]]
    assert "dropping trailing segment" in caplog.text


def test_empty_pairing_raises():
    with pytest.raises(EmptyInputError):
        reconstruct_order(_segments(2), [])


def test_sweep_directions_dose_symmetric_like():
    # start at 0, go up, then come back down past the start
    angles = [0, 3, 6, 9, -3, -6, -9]
    assert sweep_directions(angles) == [Direction.FORWARD] * 4 + [Direction.REVERSE] * 3


def test_monotonic_sweep_is_forward():
    assert set(sweep_directions([-60, -58, -56, -54])) == {Direction.FORWARD}
    assert set(sweep_directions([5, 5, 5])) == {Direction.FORWARD}


def test_order_entries_carry_direction():
    segments = _segments(4)
    order = reconstruct_order(segments, [0, 10, -10, -20])
    directions = {e.tilt_angle: e.direction for e in order}
    assert directions[0.0] is Direction.FORWARD
    assert directions[10.0] is Direction.FORWARD
    assert directions[-10.0] is Direction.REVERSE
    assert order[0].to_dict()["direction"] == "reverse"
