"""Tests for job state, progress publication and the job store."""

import json

from sitepress.jobs import (
    Artifact,
    Job,
    JobKind,
    JobStatus,
    JobStore,
    ProgressEvent,
    ProgressSubscriber,
    StartJobRequest,
)


def _artifact(**kwargs):
    return Artifact(filename="out.pdf", media_type="application/pdf", **kwargs)


def test_percent_never_decreases():
    job = Job(JobKind.PDF)
    assert job.percent == 1
    job.update(percent=30, message="a")
    job.update(percent=10, message="b")
    assert job.percent == 30
    assert job.message == "b"
    job.update(percent=250)
    assert job.percent == 100


def test_terminal_states_are_sticky():
    job = Job(JobKind.PDF)
    assert job.finish(_artifact(data=b"%PDF"), "PDF ready (1/1 pages)")
    assert job.status == JobStatus.DONE
    assert job.percent == 100
    assert not job.update(percent=50, message="late")
    assert not job.fail("late failure")
    assert job.status == JobStatus.DONE
    assert job.message == "PDF ready (1/1 pages)"
    assert job.error is None


def test_fail_releases_artifact(tmp_path):
    path = tmp_path / "partial.zip"
    path.write_bytes(b"PK")
    job = Job(JobKind.IMAGES)
    job.artifact = _artifact(path=path)
    assert job.fail("Job cancelled.")
    assert job.status == JobStatus.ERROR
    assert job.error == "Job cancelled."
    assert job.artifact.freed
    assert not path.exists()


async def test_subscriber_sees_snapshot_then_updates():
    job = Job(JobKind.PDF)
    subscriber = job.subscribe()
    job.update(percent=40, message="Extracting text 1/2...")
    job.finish(_artifact(data=b"%PDF"), "PDF ready (2/2 pages)")

    events = [event async for event in subscriber.events()]
    assert [e.percent for e in events] == [1, 40, 100]
    assert events[0].message == "Job created"
    assert events[-1].status == JobStatus.DONE
    assert job.subscriber_count == 0


async def test_subscribing_to_finished_job_replays_final_state():
    job = Job(JobKind.PDF)
    job.fail("No content found: no readable text on 1 page(s)")
    events = [event async for event in job.subscribe().events()]
    assert len(events) == 1
    assert events[0].status == JobStatus.ERROR
    assert events[0].message.startswith("No content found")


async def test_slow_subscriber_keeps_newest_snapshots():
    subscriber = ProgressSubscriber(maxsize=2)
    for percent in (10, 20, 30):
        subscriber.push(ProgressEvent(status=JobStatus.RUNNING, percent=percent, message=""))
    subscriber.close()
    events = [event async for event in subscriber.events()]
    assert [e.percent for e in events] == [30]


def test_closed_subscriber_is_dropped_on_publish():
    job = Job(JobKind.PDF)
    subscriber = job.subscribe()
    subscriber.close()
    job.update(percent=5)
    assert job.subscriber_count == 0


def test_sse_format():
    event = ProgressEvent(status=JobStatus.RUNNING, percent=22, message="Found 3 pages", current=0, total=3)
    frame = event.to_sse()
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: "):])
    assert payload == {"status": "running", "percent": 22, "message": "Found 3 pages", "current": 0, "total": 3}


def test_start_request_accepts_client_field_names():
    request = StartJobRequest.model_validate({
        "mode": "site",
        "startUrl": "https://example.com",
        "maxPages": 5,
        "maxDepth": 0,
        "includePatterns": "/blog,/docs",
        "excludePatterns": ["/tag"],
        "minKB": 12.5,
        "somethingElse": True,
    })
    assert request.start_url == "https://example.com"
    assert request.max_pages == 5
    assert request.max_depth == 0
    assert request.include_patterns == "/blog,/docs"
    assert request.exclude_patterns == ["/tag"]
    assert request.min_kb == 12.5


def test_store_expiry_and_stats():
    store = JobStore()
    old, fresh = Job(JobKind.PDF), Job(JobKind.IMAGES)
    old._created_monotonic -= 3600
    fresh.fail("boom")
    store.add(old)
    store.add(fresh)

    assert store.expired(1200) == [old]
    assert store.get_stats() == {"running": 1, "done": 0, "error": 1, "total": 2}
    assert store.remove(old.job_id) is old
    assert store.get(old.job_id) is None
    assert len(store) == 1
