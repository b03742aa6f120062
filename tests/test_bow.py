import random
from dataclasses import dataclass

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from objslam.bow import (
    FeatureView,
    TriangulationView,
    search_by_bow,
    search_by_bow_keyframes,
    search_for_triangulation,
)
from objslam.matching import TH_LOW, KeyPoint, descriptor_distance


@dataclass(eq=False)
class Point:
    name: str
    bad: bool = False


def descriptor(seed):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(32))


def flipped(base, bits):
    data = bytearray(base)
    for bit in range(bits):
        data[bit // 8] ^= 1 << (bit % 8)
    return bytes(data)


def view(descriptors, words, points=None, angles=None):
    angles = angles or [0.0] * len(descriptors)
    keypoints = [KeyPoint(float(i), float(i), angle=a) for i, a in enumerate(angles)]
    return FeatureView(keypoints, list(descriptors), words, points)


def test_search_by_bow_matches_identical_descriptors():
    descs = [descriptor(i) for i in range(3)]
    points = [Point("a"), Point("b"), Point("c")]
    source = view(descs, {1: [0, 1, 2]}, points)
    target = view(list(reversed(descs)), {1: [0, 1, 2]})
    matches = search_by_bow(source, target, 0.6, False)
    assert matches == [points[2], points[1], points[0]]


def test_search_by_bow_ignores_other_words():
    descs = [descriptor(0)]
    source = view(descs, {1: [0]}, [Point("a")])
    target = view(descs, {2: [0]})
    assert search_by_bow(source, target, 0.6, False) == [None]


def test_search_by_bow_skips_bad_and_missing_points():
    descs = [descriptor(0), descriptor(1)]
    source = view(descs, {1: [0, 1]}, [Point("a", bad=True), None])
    target = view(descs, {1: [0, 1]})
    assert search_by_bow(source, target, 0.6, False) == [None, None]


@pytest.mark.parametrize("bits, matched", [(TH_LOW, True), (TH_LOW + 1, False)])
def test_search_by_bow_distance_threshold_is_inclusive(bits, matched):
    base = descriptor(0)
    point = Point("a")
    source = view([base], {1: [0]}, [point])
    target = view([flipped(base, bits)], {1: [0]})
    assert search_by_bow(source, target, 0.6, False) == [point if matched else None]


def test_search_by_bow_ratio_test_rejects_ambiguous():
    base = descriptor(0)
    source = view([base], {1: [0]}, [Point("a")])
    target = view([base, base], {1: [0, 1]})
    assert search_by_bow(source, target, 0.6, False) == [None, None]


def test_search_by_bow_target_used_once():
    base = descriptor(0)
    first, second = Point("a"), Point("b")
    source = view([base, base], {1: [0, 1]}, [first, second])
    target = view([base], {1: [0]})
    assert search_by_bow(source, target, 0.6, False) == [first]


def test_search_by_bow_rotation_consistency():
    n = 12
    descs = [descriptor(i) for i in range(n + 1)]
    points = [Point(str(i)) for i in range(n + 1)]
    source_angles = [0.0] * n + [180.0]
    source = view(descs, {1: list(range(n + 1))}, points, source_angles)
    target = view(descs, {1: list(range(n + 1))})

    checked = search_by_bow(source, target, 0.6, True)
    assert checked[:n] == points[:n]
    assert checked[n] is None

    unchecked = search_by_bow(source, target, 0.6, False)
    assert unchecked == points


def test_feature_view_rejects_bad_indices():
    with pytest.raises(ValueError):
        view([descriptor(0)], {1: [3]})
    with pytest.raises(ValueError):
        FeatureView([KeyPoint(0, 0)], [], {})


def test_keyframes_match_map_points():
    descs = [descriptor(i) for i in range(3)]
    points1 = [Point("a"), Point("b"), None]
    points2 = [Point("x"), Point("y"), Point("z")]
    view1 = view(descs, {4: [0, 1, 2]}, points1)
    view2 = view(list(reversed(descs)), {4: [0, 1, 2]}, points2)
    matches = search_by_bow_keyframes(view1, view2, 0.6, False)
    assert matches == [points2[2], points2[1], None]


def test_keyframes_threshold_is_strict():
    base = descriptor(0)
    view1 = view([base], {1: [0]}, [Point("a")])
    view2 = view([flipped(base, TH_LOW)], {1: [0]}, [Point("b")])
    assert search_by_bow_keyframes(view1, view2, 0.6, False) == [None]


def test_keyframes_skip_bad_target_points():
    base = descriptor(0)
    view1 = view([base], {1: [0]}, [Point("a")])
    view2 = view([base], {1: [0]}, [Point("b", bad=True)])
    assert search_by_bow_keyframes(view1, view2, 0.6, False) == [None]


@settings(max_examples=30, deadline=None)
@given(st.lists(st.integers(0, 5), min_size=1, max_size=8), st.lists(st.integers(0, 5), min_size=1, max_size=8))
def test_keyframe_matches_are_close_and_unique(seeds1, seeds2):
    descs1 = [descriptor(s) for s in seeds1]
    descs2 = [descriptor(s) for s in seeds2]
    points2 = [Point(str(i)) for i in range(len(seeds2))]
    view1 = view(descs1, {0: list(range(len(seeds1)))}, [Point("p")] * len(seeds1))
    view2 = view(descs2, {0: list(range(len(seeds2)))}, points2)
    matches = search_by_bow_keyframes(view1, view2, 0.6, False)
    assert len(matches) == len(seeds1)
    used = [m for m in matches if m is not None]
    assert len(used) == len({id(m) for m in used})
    for idx1, match in enumerate(matches):
        if match is not None:
            idx2 = points2.index(match)
            assert descriptor_distance(descs1[idx1], descs2[idx2]) < TH_LOW


# Fundamental matrix of a pure sideways translation: epipolar lines are rows.
F_SIDEWAYS = [[0, 0, 0], [0, 0, -1], [0, 1, 0]]
FAR_EPIPOLE = (1e4, 1e4)


def tri_view(keypoints, descs, words, points=None, right=None):
    return TriangulationView(
        keypoints,
        descs,
        words,
        points,
        right=right if right is not None else [-1.0] * len(keypoints),
        scale_factors=[1.0],
        level_sigma2=[1.0],
    )


def test_triangulation_keeps_points_on_epipolar_line():
    base = descriptor(0)
    view1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]})
    view2 = tri_view([KeyPoint(50, 20.5), KeyPoint(60, 40)], [base, base], {1: [0, 1]})
    assert search_for_triangulation(view1, view2, F_SIDEWAYS, FAR_EPIPOLE, False, False) == [(0, 0)]


def test_triangulation_prefers_closer_descriptor():
    base = descriptor(0)
    view1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]})
    view2 = tri_view(
        [KeyPoint(50, 20), KeyPoint(60, 20)],
        [flipped(base, 10), flipped(base, 2)],
        {1: [0, 1]},
    )
    assert search_for_triangulation(view1, view2, F_SIDEWAYS, FAR_EPIPOLE, False, False) == [(0, 1)]


def test_triangulation_skips_existing_map_points():
    base = descriptor(0)
    view1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]}, [Point("a")])
    view2 = tri_view([KeyPoint(50, 20)], [base], {1: [0]})
    assert search_for_triangulation(view1, view2, F_SIDEWAYS, FAR_EPIPOLE, False, False) == []


def test_triangulation_rejects_points_near_epipole():
    base = descriptor(0)
    view1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]})
    view2 = tri_view([KeyPoint(50, 20)], [base], {1: [0]})
    assert search_for_triangulation(view1, view2, F_SIDEWAYS, (50, 20), False, False) == []


def test_triangulation_only_stereo():
    base = descriptor(0)
    view1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]})
    view2 = tri_view([KeyPoint(50, 20)], [base], {1: [0]})
    assert search_for_triangulation(view1, view2, F_SIDEWAYS, FAR_EPIPOLE, True, False) == []

    stereo1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]}, right=[5.0])
    stereo2 = tri_view([KeyPoint(50, 20)], [base], {1: [0]}, right=[45.0])
    assert search_for_triangulation(stereo1, stereo2, F_SIDEWAYS, (50, 20), True, False) == [(0, 0)]


def test_triangulation_rejects_bad_fundamental_matrix():
    base = descriptor(0)
    view1 = tri_view([KeyPoint(10, 20)], [base], {1: [0]})
    with pytest.raises(ValueError):
        search_for_triangulation(view1, view1, [[1, 0], [0, 1]], FAR_EPIPOLE, False, False)


def test_triangulation_view_checks_right_length():
    with pytest.raises(ValueError):
        tri_view([KeyPoint(0, 0)], [descriptor(0)], {}, right=[])