"""FeatureEngine: submissions, quorum transitions, trash and targets."""

import pytest

from concord.core.errors import InvalidTransition, NotFound, RateLimited, Unauthorized
from concord.core.models import ItemStatus, TransitionKind


def submit_all(engine, clock, *payloads, user="dave", classification=None):
    items = []
    for payload in payloads:
        items.append(engine.submit(user, payload, classification).item)
        clock.advance(1)
    return items


# ----------------------------------------------------------------------
# Leaderboard
# ----------------------------------------------------------------------
def test_leader_fires_exactly_once_and_clears_votes(make_engine, actuator, clock):
    engine = make_engine("patterns")
    current, waves, spiral = submit_all(engine, clock, "pattern:current", "pattern:waves", "pattern:spiral")
    assert engine.current_quorum() == 2

    first = engine.vote(waves.item_id, "alice", "up")
    assert first.transition is None
    assert engine.vote(spiral.item_id, "carol", "up").transition is None

    fired = engine.vote(waves.item_id, "bob", "up")

    assert fired.transition is not None
    assert fired.transition.kind is TransitionKind.PLAY_CANDIDATE
    assert fired.transition.subject_id == waves.item_id
    assert engine.store.current("sand-table").item_id == waves.item_id
    assert engine.ledger.scope_is_empty("sand-table")
    assert actuator.calls[-1]["payload"] == "pattern:waves"

    # nothing left to fire
    assert engine.scheduler.evaluate(engine, "sand-table") is None
    assert engine.vote(spiral.item_id, "carol", "up").transition is None
    assert engine.stats()["counters"]["transition.play_candidate"] == 1

    # the outgoing pattern is retired to history
    assert engine.history()[0]["id"] == current.item_id


def test_playing_leader_does_not_fire_again(make_engine, actuator, clock):
    engine = make_engine("patterns")
    _, waves, spiral = submit_all(engine, clock, "pattern:current", "pattern:waves", "pattern:spiral")
    engine.vote(waves.item_id, "alice", "up")
    assert engine.vote(waves.item_id, "bob", "up").transition is not None

    engine.vote(spiral.item_id, "carol", "up")
    engine.vote(waves.item_id, "dave", "up")
    again = engine.vote(waves.item_id, "alice", "up")

    assert again.transition is None
    assert engine.store.current("sand-table").item_id == waves.item_id
    assert engine.ledger.supporters(spiral.item_id) == {"carol"}
    assert engine.stats()["counters"]["transition.play_candidate"] == 1
    assert [c["payload"] for c in actuator.calls].count("pattern:waves") == 1

    # the waiting candidate can still win on its own
    fired = engine.vote(spiral.item_id, "bob", "up")
    assert fired.transition.subject_id == spiral.item_id


def test_leaderboard_up_vote_moves_between_candidates(make_engine, clock):
    engine = make_engine("patterns")
    _, waves, spiral = submit_all(engine, clock, "pattern:current", "pattern:waves", "pattern:spiral")

    engine.vote(waves.item_id, "alice", "up")
    result = engine.vote(spiral.item_id, "alice", "up")

    assert result.net_votes == 1
    assert engine.ledger.supporters(waves.item_id) == set()


def test_leaderboard_rejects_down_votes(make_engine, clock):
    engine = make_engine("patterns")
    (item,) = submit_all(engine, clock, "pattern:waves")
    with pytest.raises(ValueError):
        engine.vote(item.item_id, "alice", "down")


# ----------------------------------------------------------------------
# Queue mode
# ----------------------------------------------------------------------
def test_down_votes_skip_active_item(make_engine, actuator, clock):
    engine = make_engine("music")
    first, second = submit_all(engine, clock, "spotify:track:a", "spotify:track:b")

    assert engine.vote(first.item_id, "alice", "down").marked_for_threshold is False
    result = engine.vote(first.item_id, "bob", "down")

    assert result.transition.kind is TransitionKind.SKIP
    assert first.status is ItemStatus.EVICTED
    assert first.removal_reason == "skipped"
    assert engine.store.current("speaker").item_id == second.item_id
    assert actuator.calls[-1]["payload"] == "spotify:track:b"
    assert engine.ledger.is_empty(first.item_id)


def test_down_votes_evict_waiting_item(make_engine, clock):
    engine = make_engine("music")
    first, second = submit_all(engine, clock, "spotify:track:a", "spotify:track:b")

    engine.vote(second.item_id, "alice", "down")
    result = engine.vote(second.item_id, "bob", "down")

    assert result.transition.kind is TransitionKind.EVICT
    assert engine.store.current("speaker").item_id == first.item_id
    assert [i.item_id for i in engine.store.items("speaker")] == [first.item_id]
    with pytest.raises(NotFound):
        engine.get_item(second.item_id)


def test_up_votes_offset_down_votes(make_engine, clock):
    engine = make_engine("music")
    (item,) = submit_all(engine, clock, "spotify:track:a")
    engine.vote(item.item_id, "alice", "down")
    engine.vote(item.item_id, "bob", "down")
    # already skipped; a fresh item needs a margin of two
    (fresh,) = submit_all(engine, clock, "spotify:track:b")
    engine.vote(fresh.item_id, "carol", "up")
    engine.vote(fresh.item_id, "alice", "down")
    result = engine.vote(fresh.item_id, "bob", "down")
    assert result.transition is None
    assert result.net_votes == -1


def test_toggling_vote_cancels_it(make_engine, clock):
    engine = make_engine("music")
    (item,) = submit_all(engine, clock, "spotify:track:a")
    engine.vote(item.item_id, "alice", "down")
    result = engine.vote(item.item_id, "alice", "down")
    assert result.net_votes == 0
    assert result.user_vote is None


def test_absent_user_cannot_vote_or_trash(make_engine, clock):
    engine = make_engine("music")
    (item,) = submit_all(engine, clock, "spotify:track:a")
    with pytest.raises(Unauthorized) as exc:
        engine.vote(item.item_id, "eve", "down")
    assert exc.value.error_code == "not_present"
    with pytest.raises(Unauthorized):
        engine.trash(item.item_id, "eve")


def test_absent_user_cannot_submit(make_engine):
    engine = make_engine("music")
    with pytest.raises(Unauthorized) as exc:
        engine.submit("mallory", "spotify:track:a")
    assert exc.value.error_code == "not_present"
    assert engine.store.is_empty("speaker")
    assert engine.holding() == []
    assert "submitted" not in engine.stats()["counters"]


def test_presence_drop_lowers_quorum_and_fires(make_engine, presence, clock):
    engine = make_engine("music")
    first, second = submit_all(engine, clock, "spotify:track:a", "spotify:track:b")
    engine.vote(first.item_id, "alice", "down")

    presence.check_out("carol")
    presence.check_out("dave")
    events = engine.on_presence_changed()

    assert [e.kind for e in events] == [TransitionKind.SKIP]
    assert engine.store.current("speaker").item_id == second.item_id


def test_finished_advances_and_ignores_stale_signal(make_engine, clock):
    engine = make_engine("frames")
    first, second = submit_all(engine, clock, "https://media/a.jpg", "https://media/b.jpg", classification="horizontal")
    # round robin put them on different frames
    assert first.target_id != second.target_id

    target_id = first.target_id
    assert engine.item_finished(target_id, "not-the-current-item") is None
    event = engine.item_finished(target_id, first.item_id)
    assert event.kind is TransitionKind.FINISHED
    # a single photo loops back onto itself
    assert engine.store.current(target_id).item_id == first.item_id
    assert first.play_count == 1


# ----------------------------------------------------------------------
# Trash & owner removal
# ----------------------------------------------------------------------
def test_trash_quota_with_warnings(make_engine, clock):
    engine = make_engine("music")
    items = submit_all(engine, clock, *[f"spotify:track:{n}" for n in range(5)], user="bob")

    first = engine.trash(items[1].item_id, "alice")
    assert (first.remaining, first.warning) == (2, None)

    second = engine.trash(items[2].item_id, "alice")
    assert second.remaining == 1
    assert "1 trash action left" in second.warning

    third = engine.trash(items[3].item_id, "alice")
    assert third.remaining == 0
    assert "last trash action" in third.warning

    with pytest.raises(RateLimited) as exc:
        engine.trash(items[4].item_id, "alice")
    assert exc.value.resets_in_seconds > 0
    assert "thumbs down" in exc.value.message
    # the rejected trash left the item alone
    assert engine.get_item(items[4].item_id).status is ItemStatus.QUEUED

    history = engine.history()
    assert {h["removalReason"] for h in history} == {"trashed"}
    assert engine.trash_limit("alice")["used"] == 3


def test_trash_quota_recovers_after_window(make_engine, clock):
    engine = make_engine("music")
    items = submit_all(engine, clock, *[f"spotify:track:{n}" for n in range(5)], user="bob")
    for item in items[:3]:
        engine.trash(item.item_id, "alice")
    clock.advance(15 * 60)
    assert engine.trash(items[3].item_id, "alice").remaining == 2


def test_trash_held_item(make_engine, clock):
    engine = make_engine("frames")
    result = engine.submit("bob", "https://media/square.jpg", "square")
    assert not result.route.assigned

    engine.trash(result.item.item_id, "alice")
    assert engine.holding() == []


def test_remove_own_requires_submitter(make_engine, clock):
    engine = make_engine("music")
    (item,) = submit_all(engine, clock, "spotify:track:a", user="bob")

    with pytest.raises(Unauthorized) as exc:
        engine.remove_own(item.item_id, "alice")
    assert exc.value.error_code == "not_owner"

    removed = engine.remove_own(item.item_id, "bob")
    assert removed.removal_reason == "owner"
    assert engine.store.is_empty("speaker")
    # owner removal does not use the trash quota
    assert engine.trash_limit("bob")["used"] == 0


def test_unknown_item(make_engine):
    engine = make_engine("music")
    with pytest.raises(NotFound):
        engine.vote("missing", "alice", "down")


# ----------------------------------------------------------------------
# Routing, limits & targets
# ----------------------------------------------------------------------
def test_unmatched_item_held_until_target_added(make_engine, clock):
    engine = make_engine("frames", targets=[{"id": "1", "classifications": ["horizontal"]}])
    result = engine.submit("alice", "https://media/tall.jpg", "vertical")

    assert not result.route.assigned
    assert result.route.reason == "No vertical targets available"
    assert len(engine.holding()) == 1
    with pytest.raises(InvalidTransition):
        engine.vote(result.item.item_id, "bob", "down")

    outcome = engine.add_target({"id": "3", "classifications": ["vertical"]})
    assert (outcome.distributed, outcome.remaining) == (1, 0)
    assert engine.holding() == []
    assert result.item.target_id == "3"
    assert [t.id for t in engine.settings.targets] == ["1", "3"]


def test_eleventh_submission_is_held_or_evicts_played(make_engine, clock):
    engine = make_engine("frames", targets=[{"id": "1"}], queue_limit=10)
    submit_all(engine, clock, *[f"https://media/{n}.jpg" for n in range(10)])

    held = engine.submit("alice", "https://media/10.jpg")
    assert not held.route.assigned
    assert held.route.reason
    assert len(engine.store.items("1")) == 10

    first = engine.store.current("1")
    engine.item_finished("1", first.item_id)
    placed = engine.submit("alice", "https://media/11.jpg")

    assert placed.route.assigned
    assert len(engine.store.items("1")) == 10
    assert engine.history()[0]["id"] == first.item_id
    assert engine.history()[0]["removalReason"] == "limit"


def test_remove_target_reroutes_items(make_engine, clock):
    engine = make_engine("frames")
    items = submit_all(engine, clock, *[f"https://media/{n}.jpg" for n in range(4)], classification="horizontal")
    on_one = [i for i in items if i.target_id == "1"]
    assert on_one

    rerouted = engine.remove_target("1")

    assert {i.item_id for i in rerouted} == {i.item_id for i in on_one}
    assert all(i.target_id == "2" for i in on_one)
    assert "1" not in engine.target_ids()


def test_rotating_a_frame_redistributes(make_engine, clock):
    engine = make_engine("frames", targets=[{"id": "1", "classifications": ["horizontal"]}])
    held = engine.submit("alice", "https://media/tall.jpg", "vertical").item

    result = engine.set_target_classifications("1", ["horizontal", "vertical"])

    assert result.distributed == 1
    assert held.target_id == "1"


def test_update_settings(make_engine, clock):
    engine = make_engine("frames")
    settings = engine.update_settings({"queueLimit": 5, "imageDisplayTime": 12, "quorumRatio": 0.25})
    assert (settings.queue_limit, settings.display_time, settings.quorum_ratio) == (5, 12, 0.25)
    assert engine.store.queue_limit == 5
    assert engine.current_quorum() == 1

    with pytest.raises(ValueError):
        engine.update_settings({"mode": "leaderboard"})
    with pytest.raises(ValueError):
        engine.update_settings({"queueLimit": 0})
    assert engine.settings.queue_limit == 5


def test_snapshot_reports_user_vote(make_engine, clock):
    engine = make_engine("music")
    (item,) = submit_all(engine, clock, "spotify:track:a")
    engine.vote(item.item_id, "alice", "up")

    snapshot = engine.snapshot("alice")
    queued = snapshot["targets"][0]["queue"][0]
    assert queued["userVote"] == "up"
    assert queued["netVotes"] == 1
    assert snapshot["quorum"] == 2
    assert snapshot["presentCount"] == 4
