import asyncio
import json
import sqlite3

import pytest

from errors import NotFound
from event_log import stream_key
from models import FAILED, PROCESSING, SUCCEEDED
from relay import JobRelay, RelayEvent, RelayState, format_sse, replay_events
from worker import Worker


def make_relay(store, events, fast_settings, job_id, **kwargs):
    opts = fast_settings.relay_kwargs()
    opts.update(kwargs)
    return JobRelay(store, events, job_id, **opts)


async def collect(relay, limit=1000):
    out = []
    async for event in relay.stream():
        out.append(event)
        if len(out) >= limit:
            break
    return out


def finished_job(store, records):
    job = store.create_job({"x": 1})
    store.update_status(job.id, PROCESSING)
    store.update_status(job.id, SUCCEEDED, output=records)
    store.remove_from_queue(job.id)
    return store.get_job(job.id)


def test_unknown_job_fails_before_any_event(store, events, fast_settings):
    relay = make_relay(store, events, fast_settings, "missing")
    with pytest.raises(NotFound):
        relay.open()

    relay = make_relay(store, events, fast_settings, "missing")
    emitted = []

    async def consume():
        async for event in relay.stream():
            emitted.append(event)

    with pytest.raises(NotFound):
        asyncio.run(consume())
    assert emitted == []


def test_tails_log_until_terminal_event(store, events, fast_settings):
    job = store.create_job({"x": 1})
    store.update_status(job.id, PROCESSING)
    key = stream_key(job.id)
    events.append(key, {"type": "started", "jobId": job.id, "timestamp": 1})
    events.append(key, {"type": "progress", "jobId": job.id, "step": 1})
    events.append(key, {"type": "completed", "jobId": job.id})
    events.append(key, {"type": "progress", "jobId": job.id, "step": 99})

    relay = make_relay(store, events, fast_settings, job.id)
    out = asyncio.run(collect(relay))

    assert [e.type for e in out] == ["initial", "started", "progress", "completed"]
    assert out[0].data["job"]["id"] == job.id
    assert out[0].data["job"]["status"] == PROCESSING
    ids = [e.id for e in out[1:]]
    assert ids == sorted(ids)
    assert relay.completed is True
    assert relay.state is RelayState.CLOSED


def test_tails_across_small_batches(store, events, fast_settings):
    job = store.create_job({"x": 1})
    key = stream_key(job.id)
    for i in range(1, 8):
        events.append(key, {"type": "progress", "step": i})
    events.append(key, {"type": "error", "error": "boom"})

    relay = make_relay(store, events, fast_settings, job.id, batch_size=3)
    out = asyncio.run(collect(relay))

    assert [e.data.get("step") for e in out[1:-1]] == [str(i) for i in range(1, 8)]
    assert out[-1].type == "error"


def test_replays_finished_job_from_output(store, events, fast_settings):
    records = [{"step": i, "timestamp": 1000 + i, "processingTime": i * 10, "data": f"chunk {i}"} for i in range(1, 5)]
    job = finished_job(store, records)

    relay = make_relay(store, events, fast_settings, job.id)
    out = asyncio.run(collect(relay))

    assert [e.type for e in out] == ["initial", "started"] + ["progress"] * 4 + ["completed"]
    assert out[1].data["timestamp"] == str(job.created)
    assert [e.data["step"] for e in out[2:6]] == ["1", "2", "3", "4"]
    assert out[2].data["data"] == "chunk 1"
    assert out[-1].data["timestamp"] == str(job.updated)
    assert out[-1].data["processingTime"] == str(job.updated - job.created)
    assert all(e.id is None for e in out)
    assert relay.state is RelayState.CLOSED


def test_replay_is_deterministic(store, events, fast_settings):
    job = finished_job(store, [{"step": 1, "data": "a"}, {"step": 2, "data": "b"}])

    first = asyncio.run(collect(make_relay(store, events, fast_settings, job.id)))
    second = asyncio.run(collect(make_relay(store, events, fast_settings, job.id)))

    assert [e.data for e in first[1:]] == [e.data for e in second[1:]]
    assert replay_events(job) == replay_events(store.get_job(job.id))


def test_replay_of_non_list_output_has_no_progress(store):
    job = finished_job(store, {"total": 3})
    assert [e["type"] for e in replay_events(job)] == ["started", "completed"]


def test_failed_job_without_history_replays_error(store, events, fast_settings):
    job = store.create_job({"x": 1})
    store.update_status(job.id, PROCESSING)
    store.update_status(job.id, FAILED, error="step 2 failed: boom")

    out = asyncio.run(collect(make_relay(store, events, fast_settings, job.id)))

    assert [e.type for e in out] == ["initial", "started", "error"]
    assert out[-1].data["error"] == "step 2 failed: boom"


def test_failed_job_with_history_is_tailed(store, events, fast_settings):
    job = store.create_job({"x": 1})
    w = Worker(store, events, step_handler=lambda j, s: 1 / 0, **fast_settings.worker_kwargs())
    asyncio.run(w.run_once())

    out = asyncio.run(collect(make_relay(store, events, fast_settings, job.id)))

    assert [e.type for e in out] == ["initial", "started", "error"]
    assert out[-1].id is not None


def test_two_observers_see_the_same_live_sequence(store, events, fast_settings):
    job = store.create_job({"x": 1})
    w = Worker(store, events, **dict(fast_settings.worker_kwargs(), steps=5, step_delay=0.01))

    async def scenario():
        r1 = make_relay(store, events, fast_settings, job.id)
        r2 = make_relay(store, events, fast_settings, job.id)
        _, a, b = await asyncio.gather(w.run_once(), collect(r1), collect(r2))
        return a, b

    a, b = asyncio.run(scenario())

    assert a[0].type == "initial" and b[0].type == "initial"
    assert [(e.id, e.data) for e in a[1:]] == [(e.id, e.data) for e in b[1:]]
    assert [e.type for e in a[1:]] == ["started"] + ["progress"] * 5 + ["completed"]


def test_observer_disconnect_closes_relay(store, events, fast_settings):
    job = store.create_job({"x": 1})
    relay = make_relay(store, events, fast_settings, job.id)

    async def scenario():
        gen = relay.stream()
        first = await gen.__anext__()
        assert relay.state is RelayState.INITIALIZING
        await gen.aclose()
        return first

    first = asyncio.run(scenario())
    assert first.type == "initial"
    assert relay.state is RelayState.CLOSED
    assert relay.completed is False


def test_cancelling_a_tailing_relay_releases_it(store, events, fast_settings):
    job = store.create_job({"x": 1})
    relay = make_relay(store, events, fast_settings, job.id)

    async def scenario():
        task = asyncio.create_task(collect(relay))
        await asyncio.sleep(0.05)
        assert relay.state is RelayState.TAILING
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert relay.state is RelayState.CLOSED


def test_resume_from_last_event_id(store, events, fast_settings):
    job = store.create_job({"x": 1})
    key = stream_key(job.id)
    first = events.append(key, {"type": "started"})
    events.append(key, {"type": "progress", "step": 1})
    events.append(key, {"type": "completed"})

    relay = make_relay(store, events, fast_settings, job.id, last_event_id=str(first))
    out = asyncio.run(collect(relay))
    assert [e.type for e in out] == ["initial", "progress", "completed"]

    relay = make_relay(store, events, fast_settings, job.id, last_event_id="garbage")
    assert relay.cursor == 0


def test_relay_streams_only_once(store, events, fast_settings):
    job = finished_job(store, [{"step": 1}])
    relay = make_relay(store, events, fast_settings, job.id)
    asyncio.run(collect(relay))

    with pytest.raises(RuntimeError):
        asyncio.run(collect(relay))


def test_format_sse():
    chunk = format_sse(RelayEvent({"type": "progress", "step": "1"}, id=7))
    lines = chunk.splitlines()
    assert lines[0] == "id: 7"
    assert lines[1] == "event: progress"
    assert json.loads(lines[2][len("data: "):]) == {"type": "progress", "step": "1"}
    assert chunk.endswith("\n\n")

    assert not format_sse(RelayEvent({"type": "initial"})).startswith("id:")


def test_resuming_past_the_error_entry_still_ends(store, events, fast_settings):
    job = store.create_job({"x": 1})
    w = Worker(store, events, step_handler=lambda j, s: 1 / 0, **fast_settings.worker_kwargs())
    asyncio.run(w.run_once())
    last = events.last_id(stream_key(job.id))

    relay = make_relay(store, events, fast_settings, job.id, last_event_id=str(last))
    out = asyncio.run(asyncio.wait_for(collect(relay), timeout=2.0))

    assert [e.type for e in out] == ["initial", "error"]
    assert out[-1].data["error"] == store.get_job(job.id).error
    assert relay.completed is True
    assert relay.state is RelayState.CLOSED


def test_tailing_waits_for_logged_terminal_entry(store, events, fast_settings):
    job = store.create_job({"x": 1})
    store.update_status(job.id, PROCESSING)
    key = stream_key(job.id)
    events.append(key, {"type": "started"})

    relay = make_relay(store, events, fast_settings, job.id)
    relay.open()
    events.append(key, {"type": "completed", "message": "from the log"})
    store.update_status(job.id, SUCCEEDED, output=[])
    out = asyncio.run(collect(relay))

    assert [e.type for e in out] == ["initial", "started", "completed"]
    assert out[0].data["job"]["status"] == PROCESSING
    assert out[-1].data["message"] == "from the log"


def test_internal_error_is_sent_as_error_event(store, events, fast_settings, monkeypatch):
    job = store.create_job({"x": 1})
    store.update_status(job.id, PROCESSING)
    store.update_status(job.id, FAILED, error="boom")

    def locked(key):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(events, "length", locked)
    relay = make_relay(store, events, fast_settings, job.id)
    out = asyncio.run(collect(relay))

    assert [e.type for e in out] == ["initial", "error"]
    assert out[-1].data["jobId"] == job.id
    assert "database is locked" in out[-1].data["error"]
    assert relay.state is RelayState.CLOSED


def test_replay_failure_is_sent_as_error_event(store, events, fast_settings, monkeypatch):
    job = finished_job(store, [{"step": 1}])

    def broken(job):
        raise ValueError("bad record")

    monkeypatch.setattr("relay.replay_events", broken)
    out = asyncio.run(collect(make_relay(store, events, fast_settings, job.id)))

    assert [e.type for e in out] == ["initial", "error"]
    assert out[-1].data["error"] == "bad record"
