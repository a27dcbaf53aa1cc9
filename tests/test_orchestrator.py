from __future__ import annotations

import json
import threading
import time

import pytest

from backend.videosaas import lifecycle, orchestrator
from backend.videosaas.orchestrator import LocalOrchestrator, StepFunctionsOrchestrator
from backend.videosaas.status import ProjectStatus


@pytest.fixture
def local(wired_stores) -> LocalOrchestrator:
    return LocalOrchestrator(background=False)


def _approve(store, project_id: str):
    project = store.get("acme", project_id)
    return store.save(lifecycle.approve(project, project.manifest or []))


def test_local_run_pauses_for_review_then_completes(local, wired_stores) -> None:
    project = wired_stores.create("acme", "Login tour", "", ["f1"])
    thread_id = local.start("acme", project.id, voice_id="Joanna")

    run = local.get_run(project.id)
    assert run is not None and run.thread_id == thread_id
    assert run.status == "waiting_review"
    assert run.review_payload["task_token"] == f"local:{thread_id}"  # type: ignore[index]

    reviewed = wired_stores.get("acme", project.id)
    assert reviewed.status == ProjectStatus.REVIEW
    assert reviewed.task_token == f"local:{thread_id}"

    _approve(wired_stores, project.id)
    local.resume(f"local:{thread_id}", {"projectId": project.id, "status": "APPROVED"})

    run = local.get_run(project.id)
    assert run.status == "completed"  # type: ignore[union-attr]
    assert run.state["review"]["status"] == "APPROVED"  # type: ignore[union-attr]
    assert wired_stores.get("acme", project.id).status == ProjectStatus.COMPLETE


def test_resume_without_approval_fails_the_project(local, wired_stores) -> None:
    project = wired_stores.create("acme", "Login tour", "", ["f1"])
    thread_id = local.start("acme", project.id)
    local.resume(f"local:{thread_id}", {"status": "APPROVED"})

    assert local.get_run(project.id).status == "failed"  # type: ignore[union-attr]
    failed = wired_stores.get("acme", project.id)
    assert failed.status == ProjectStatus.ERROR
    assert "review resumed while project is REVIEW" in (failed.error_message or "")


def test_resume_rejects_bad_tokens(local, wired_stores) -> None:
    with pytest.raises(ValueError):
        local.resume("arn:aws:states:token", {})
    with pytest.raises(KeyError):
        local.resume("local:thread-unknown", {})

    project = wired_stores.create("acme", "Login tour", "", ["f1"])
    thread_id = local.start("acme", project.id)
    _approve(wired_stores, project.id)
    local.resume(f"local:{thread_id}", {})
    with pytest.raises(ValueError):
        local.resume(f"local:{thread_id}", {})


def test_empty_resume_payload_still_advances_the_run(local, wired_stores) -> None:
    project = wired_stores.create("acme", "Login tour", "", ["f1"])
    thread_id = local.start("acme", project.id)
    _approve(wired_stores, project.id)

    local.resume(f"local:{thread_id}", {})

    run = local.get_run(project.id)
    assert run.status == "completed"  # type: ignore[union-attr]
    assert run.state["review"] == {"approved": True}  # type: ignore[union-attr]
    assert wired_stores.get("acme", project.id).status == ProjectStatus.COMPLETE


def test_resume_waits_for_the_run_to_reach_review(monkeypatch) -> None:
    local = LocalOrchestrator(background=False, resume_wait_seconds=5.0)
    spawned: list[tuple] = []
    monkeypatch.setattr(local, "_spawn", lambda thread_id, resume_payload: spawned.append((thread_id, resume_payload)))
    thread_id = local.start("acme", "proj-9")
    assert local.get_run("proj-9").status == "running"  # type: ignore[union-attr]

    def _reach_review() -> None:
        time.sleep(0.05)
        with local._settled:
            local.get_run("proj-9").status = "waiting_review"  # type: ignore[union-attr]
            local._settled.notify_all()

    worker = threading.Thread(target=_reach_review)
    worker.start()
    local.resume(f"local:{thread_id}", {"status": "APPROVED"})
    worker.join()

    assert spawned[-1] == (thread_id, {"approved": True, "status": "APPROVED"})
    assert local.get_run("proj-9").status == "running"  # type: ignore[union-attr]


def test_resume_gives_up_when_the_run_never_reaches_review(monkeypatch) -> None:
    local = LocalOrchestrator(background=False, resume_wait_seconds=0.05)
    monkeypatch.setattr(local, "_spawn", lambda thread_id, resume_payload: None)
    thread_id = local.start("acme", "proj-9")
    with pytest.raises(ValueError):
        local.resume(f"local:{thread_id}", {"status": "APPROVED"})


class FakeStepFunctions:
    def __init__(self) -> None:
        self.started: list[dict] = []
        self.successes: list[dict] = []

    def start_execution(self, **kwargs):
        self.started.append(kwargs)
        return {"executionArn": f"arn:aws:states:execution:{kwargs['name']}"}

    def send_task_success(self, **kwargs):
        self.successes.append(kwargs)
        return {}


def test_step_functions_start_and_resume(fake_aws) -> None:
    sfn = FakeStepFunctions()
    fake_aws.services["stepfunctions"] = sfn
    orch = StepFunctionsOrchestrator("arn:aws:states:machine")

    arn = orch.start("acme", "proj-1", use_simple_recording=False)
    assert arn.startswith("arn:aws:states:execution:proj-1-")
    payload = json.loads(sfn.started[0]["input"])
    assert payload["tenantId"] == "TENANT#acme"
    assert payload["useSimpleRecording"] is False
    assert payload["voiceId"]

    orch.resume("sfn-token", {"projectId": "proj-1", "status": "APPROVED"})
    assert sfn.successes[0]["taskToken"] == "sfn-token"
    assert json.loads(sfn.successes[0]["output"])["status"] == "APPROVED"


def test_step_functions_needs_a_state_machine() -> None:
    with pytest.raises(ValueError):
        StepFunctionsOrchestrator("")


def test_get_orchestrator_selects_backend(patch_settings) -> None:
    orchestrator.get_orchestrator.cache_clear()
    patch_settings(orchestrator, orchestrator="stepfunctions", state_machine_arn="arn:aws:states:machine")
    try:
        assert isinstance(orchestrator.get_orchestrator(), StepFunctionsOrchestrator)
    finally:
        orchestrator.get_orchestrator.cache_clear()
