import json

from jobs import JobStore
from migrate import import_legacy_files
from models import PENDING, SUCCEEDED


def write(path, obj):
    path.write_text(json.dumps(obj), encoding="utf-8")
    return str(path)


def test_imports_jobs_and_queue(storage, tmp_path):
    jobs_path = write(tmp_path / "jobs.json", [
        {"id": "a", "status": "succeeded", "created": 10, "updated": 50, "data": {"x": 1},
         "output": [{"step": 1}]},
        {"id": "b", "status": "pending", "created": 20, "updated": 20, "data": {"x": 2}},
        {"id": "c", "status": "processing", "created": 30, "updated": 35, "data": "three"},
        {"status": "pending"},
        {"id": "d", "status": "weird", "data": 1},
    ])
    queue_path = write(tmp_path / "queue.json", {"jobs": ["b", "c", "b", "a", "ghost"]})

    assert import_legacy_files(storage, jobs_path, queue_path) == (3, 2)

    store = JobStore(storage)
    assert store.queue_ids() == ["b", "c"]
    a = store.get_job("a")
    assert a.status == SUCCEEDED
    assert a.output == [{"step": 1}]
    assert store.get_job("b").status == PENDING
    assert store.get_job("d") is None


def test_import_is_idempotent(storage, tmp_path):
    jobs_path = write(tmp_path / "jobs.json", [
        {"id": "b", "status": "pending", "created": 20, "updated": 20, "data": {"x": 2}},
    ])
    queue_path = write(tmp_path / "queue.json", {"jobs": ["b"]})

    import_legacy_files(storage, jobs_path, queue_path)
    assert import_legacy_files(storage, jobs_path, queue_path) == (0, 1)
    assert JobStore(storage).queue_ids() == ["b"]


def test_missing_or_corrupt_files_are_empty(storage, tmp_path):
    assert import_legacy_files(storage, str(tmp_path / "none.json"), str(tmp_path / "none2.json")) == (0, 0)

    bad = tmp_path / "jobs.json"
    bad.write_text("{not json", encoding="utf-8")
    assert import_legacy_files(storage, str(bad), str(bad)) == (0, 0)
