"""SchedulerLoop: guarded transitions, actuation retries, external changes."""

import time

from concord.core.models import TransitionKind
from concord.core.scheduler import SchedulerLoop


def test_failed_actuation_is_retried_after_backoff(make_engine, actuator, scheduler, clock):
    engine = make_engine("music")
    actuator.fail_next = 1
    item = engine.submit("alice", "spotify:track:a").item

    target = engine.store.target("speaker")
    assert actuator.calls == []
    assert target.pending_actuation == item.item_id
    assert not target.transition_in_flight
    assert scheduler.status()["failures"] == {"music/speaker": 1}

    # still inside the backoff window
    scheduler.tick()
    assert actuator.calls == []

    clock.advance(30)
    scheduler.tick()
    assert [c["payload"] for c in actuator.calls] == ["spotify:track:a"]
    assert target.pending_actuation is None
    assert scheduler.status()["failures"] == {}


def test_lost_actuation_expires_and_is_redone(make_engine, actuator, scheduler, clock):
    engine = make_engine("music")
    actuator.fail_next = 1
    engine.submit("alice", "spotify:track:a")

    # a worker claims the target and never reports back
    with engine.target_lock("speaker"):
        claim = scheduler._claim(engine, "speaker")
    assert claim is not None
    assert engine.store.target("speaker").transition_in_flight

    clock.advance(scheduler.actuation_timeout + 30)
    scheduler.tick()

    assert not engine.store.target("speaker").transition_in_flight
    assert actuator.current_payload("speaker") == "spotify:track:a"
    assert scheduler.status()["in_flight"] == []


def test_in_flight_target_does_not_fire_twice(make_engine, scheduler, clock):
    engine = make_engine("music")
    first = engine.submit("alice", "spotify:track:a").item
    engine.submit("alice", "spotify:track:b")
    target = engine.store.target("speaker")

    target.transition_in_flight = True
    engine.vote(first.item_id, "alice", "down")
    blocked = engine.vote(first.item_id, "bob", "down")
    assert blocked.transition is None
    assert blocked.marked_for_threshold
    assert engine.store.current("speaker").item_id == first.item_id

    target.transition_in_flight = False
    event = scheduler.evaluate(engine, "speaker")
    assert event.kind is TransitionKind.SKIP
    assert scheduler.evaluate(engine, "speaker") is None


def test_external_change_resets_votes(make_engine, actuator, scheduler, clock):
    engine = make_engine("music")
    first = engine.submit("alice", "spotify:track:a").item
    engine.submit("alice", "spotify:track:b")
    engine.vote(first.item_id, "alice", "down")
    assert engine.ledger.tally(first.item_id).downvotes == 1

    actuator.set_external("speaker", "spotify:track:somebody-else")
    scheduler.tick()

    assert engine.ledger.tally(first.item_id).downvotes == 0
    assert engine.store.target("speaker").last_external_payload == "spotify:track:somebody-else"


def test_confirmed_payload_does_not_reset_votes(make_engine, scheduler):
    engine = make_engine("music")
    first = engine.submit("alice", "spotify:track:a").item
    engine.vote(first.item_id, "alice", "down")

    scheduler.tick()
    assert engine.ledger.tally(first.item_id).downvotes == 1


def test_leaderboard_external_change_clears_target(make_engine, actuator, scheduler, clock):
    engine = make_engine("patterns")
    engine.submit("dave", "pattern:current")
    waves = engine.submit("dave", "pattern:waves").item
    engine.vote(waves.item_id, "alice", "up")

    actuator.set_external("sand-table", "pattern:manual")
    scheduler.tick()

    assert engine.ledger.scope_is_empty("sand-table")


def test_tick_evaluates_after_presence_drop(make_engine, presence, scheduler):
    engine = make_engine("music")
    first = engine.submit("alice", "spotify:track:a").item
    engine.vote(first.item_id, "alice", "down")

    presence.check_out("bob")
    presence.check_out("carol")
    scheduler.tick()

    assert first.removal_reason == "skipped"


def test_thread_lifecycle():
    loop = SchedulerLoop(tick_seconds=0.05)
    loop.start()
    try:
        assert loop.is_running()
        loop.start()  # idempotent
        loop.wake()
        deadline = time.time() + 2
        while loop.status()["ticks"] == 0 and time.time() < deadline:
            time.sleep(0.01)
        assert loop.status()["ticks"] >= 1
    finally:
        loop.stop()
    assert not loop.is_running()


def test_backoff_grows_and_is_capped():
    loop = SchedulerLoop()
    delays = [loop._compute_backoff(attempt) for attempt in range(6)]
    assert 1 <= delays[0] < 2
    assert delays[3] >= 8
    assert all(delay <= 10.7 for delay in delays)
