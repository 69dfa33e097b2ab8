"""Progress tracker behaviour."""
from __future__ import annotations

from labby.models import StepStatus
from labby.services.progress import ProgressTracker


def _tracker() -> ProgressTracker:
    tracker = ProgressTracker(max_log_entries=3)
    tracker.initialize("lab1")
    tracker.add_service("lab1", "svc-a", "Service A", steps=("one", "two"))
    tracker.add_service("lab1", "svc-b", "Service B")
    return tracker


def test_overall_counts_completed_steps() -> None:
    tracker = _tracker()
    tracker.update_step("lab1", "svc-a", "one", StepStatus.COMPLETED)

    snapshot = tracker.snapshot("lab1")

    # Two declared steps plus one implicit step for the service without any.
    assert snapshot["overall"] == 33
    assert snapshot["current_step"] == "one"
    assert snapshot["services"][0]["progress"] == 50


def test_undeclared_steps_are_appended() -> None:
    tracker = _tracker()
    tracker.update_step("lab1", "svc-b", "surprise", StepStatus.RUNNING, "working")

    service = tracker.snapshot("lab1")["services"][1]

    assert service["status"] == "running"
    assert [step["name"] for step in service["steps"]] == ["surprise"]
    assert service["steps"][0]["message"] == "working"


def test_fail_service_closes_open_steps() -> None:
    tracker = _tracker()
    tracker.update_step("lab1", "svc-a", "one", StepStatus.COMPLETED)
    tracker.fail_service("lab1", "svc-a", "boom")

    snapshot = tracker.snapshot("lab1")
    service = snapshot["services"][0]

    assert service["status"] == "failed"
    assert service["error"] == "boom"
    assert [step["status"] for step in service["steps"]] == ["completed", "failed"]
    assert snapshot["current_step"] == "Service A failed: boom"


def test_complete_sets_terminal_state() -> None:
    tracker = _tracker()
    tracker.complete("lab1")

    snapshot = tracker.snapshot("lab1")

    assert snapshot["overall"] == 100
    assert snapshot["status"] == "completed"
    assert snapshot["current_step"] == "Lab setup completed successfully"
    assert all(service["status"] == "completed" for service in snapshot["services"])


def test_fail_records_error() -> None:
    tracker = _tracker()
    tracker.fail("lab1", "svc-a: boom")

    snapshot = tracker.snapshot("lab1")

    assert snapshot["status"] == "failed"
    assert snapshot["error"] == "svc-a: boom"


def test_logs_are_bounded() -> None:
    tracker = _tracker()
    for index in range(5):
        tracker.add_log("lab1", f"entry {index}")

    logs = tracker.snapshot("lab1")["logs"]

    assert len(logs) == 3
    assert logs[-1].endswith("entry 4")
    assert logs[0].startswith("[")


def test_unknown_lab_is_ignored() -> None:
    tracker = ProgressTracker()
    tracker.add_log("ghost", "hello")
    tracker.update_step("ghost", "svc", "step", StepStatus.RUNNING)

    assert tracker.snapshot("ghost") is None
    assert not tracker.has("ghost")


def test_remove_forgets_lab() -> None:
    tracker = _tracker()
    tracker.remove("lab1")

    assert tracker.snapshot("lab1") is None
