"""Quorum math and leader selection."""

import pytest

from concord.core.threshold import Leader, ThresholdEngine


@pytest.mark.parametrize("ratio", [0.01, 0.1, 0.25, 0.5, 0.75, 1.0])
def test_quorum_never_below_one(ratio):
    for present in range(0, 60):
        assert ThresholdEngine.quorum(present, ratio) >= 1


@pytest.mark.parametrize(
    "present,ratio,expected",
    [
        (4, 0.5, 2),
        (5, 0.5, 3),
        (0, 0.5, 1),
        (1, 0.5, 1),
        (30, 0.1, 3),
        (10, 1.0, 10),
    ],
)
def test_quorum_values(present, ratio, expected):
    assert ThresholdEngine.quorum(present, ratio) == expected


def test_evaluate_picks_most_supporters():
    leader = ThresholdEngine.evaluate(
        {"waves": {"alice", "bob"}, "spiral": {"carol"}},
        {"waves": 20.0, "spiral": 10.0},
    )
    assert leader == Leader("waves", 2)


def test_tie_goes_to_earliest_submission():
    leader = ThresholdEngine.evaluate(
        {"b": {"alice"}, "a": {"bob"}},
        {"a": 2.0, "b": 1.0},
    )
    assert leader.candidate_id == "b"


def test_tie_with_same_timestamp_goes_to_lowest_id():
    leader = ThresholdEngine.evaluate(
        {"zeta": {"alice"}, "alpha": {"bob"}},
        {"zeta": 5.0, "alpha": 5.0},
    )
    assert leader.candidate_id == "alpha"


def test_no_supporters_means_no_leader():
    assert ThresholdEngine.evaluate({}, {}) is None
    assert ThresholdEngine.evaluate({"a": set()}, {"a": 1.0}) is None
    assert not ThresholdEngine.has_crossed(None, 1)


def test_has_crossed():
    assert ThresholdEngine.has_crossed(Leader("a", 2), 2)
    assert not ThresholdEngine.has_crossed(Leader("a", 1), 2)
