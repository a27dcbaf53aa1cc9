from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

from langgraph.types import Command
from loguru import logger

from . import aws
from .config import SETTINGS
from .models import tenant_pk
from .pipeline.graph import build_graph
from .pipeline.retry import retry_call

LOCAL_TOKEN_PREFIX = "local:"
RESUME_WAIT_SECONDS = 10.0


class Orchestrator(Protocol):
    def start(
        self,
        tenant_id: str,
        project_id: str,
        voice_id: str | None = None,
        use_simple_recording: bool = True,
    ) -> str: ...

    def resume(self, task_token: str, payload: dict[str, Any]) -> None: ...


@dataclass
class RunRecord:
    project_id: str
    thread_id: str
    status: str
    updated_at: datetime
    state: dict[str, Any] = field(default_factory=dict)
    review_payload: dict[str, Any] | None = None
    error: str | None = None


class LocalOrchestrator:
    """Runs the project graph in worker threads with in-memory checkpoints."""

    def __init__(self, background: bool = True, resume_wait_seconds: float = RESUME_WAIT_SECONDS) -> None:
        self._lock = threading.RLock()
        self._settled = threading.Condition(self._lock)
        self._resume_wait_seconds = resume_wait_seconds
        self._runs: dict[str, RunRecord] = {}
        self._graph = build_graph()
        self._background = background

    @staticmethod
    def thread_id(project_id: str) -> str:
        return f"thread-{project_id}"

    def start(
        self,
        tenant_id: str,
        project_id: str,
        voice_id: str | None = None,
        use_simple_recording: bool = True,
    ) -> str:
        thread_id = self.thread_id(project_id)
        token = f"{LOCAL_TOKEN_PREFIX}{thread_id}"
        state: dict[str, Any] = {
            "tenant_id": tenant_pk(tenant_id),
            "project_id": project_id,
            "task_token": token,
            "use_simple_recording": use_simple_recording,
            "status": "DRAFT",
            "errors": [],
        }
        if voice_id:
            state["voice_id"] = voice_id
        with self._lock:
            self._runs[thread_id] = RunRecord(
                project_id=project_id,
                thread_id=thread_id,
                status="running",
                updated_at=datetime.now(timezone.utc),
                state=state,
            )
        self._spawn(thread_id, resume_payload=None)
        return thread_id

    def resume(self, task_token: str, payload: dict[str, Any]) -> None:
        if not task_token.startswith(LOCAL_TOKEN_PREFIX):
            raise ValueError(f"not a local task token: {task_token}")
        thread_id = task_token[len(LOCAL_TOKEN_PREFIX):]
        with self._lock:
            record = self._runs.get(thread_id)
            if record is None:
                raise KeyError(thread_id)
            # the project becomes REVIEW just before the graph reaches its interrupt
            self._settled.wait_for(lambda: record.status != "running", timeout=self._resume_wait_seconds)
            if record.status != "waiting_review":
                raise ValueError(f"run {thread_id} is not waiting_review.")
            record.status = "running"
            record.review_payload = None
            record.updated_at = datetime.now(timezone.utc)
        self._spawn(thread_id, resume_payload={"approved": True, **payload})

    def get_run(self, project_id: str) -> RunRecord | None:
        with self._lock:
            return self._runs.get(self.thread_id(project_id))

    def _spawn(self, thread_id: str, resume_payload: dict[str, Any] | None) -> None:
        if not self._background:
            self._run(thread_id, resume_payload)
            return
        t = threading.Thread(
            target=self._run,
            args=(thread_id, resume_payload),
            daemon=True,
            name=f"worker-{thread_id}",
        )
        t.start()

    def _run(self, thread_id: str, resume_payload: dict[str, Any] | None) -> None:
        with self._lock:
            record = self._runs.get(thread_id)
            if not record:
                return
            state = dict(record.state)
            config = {"configurable": {"thread_id": thread_id}}

        try:
            logger.info("Running {} (resume={})", thread_id, resume_payload is not None)
            if resume_payload is None:
                result = self._graph.invoke(state, config=config)
            else:
                result = self._graph.invoke(Command(resume=resume_payload), config=config)

            with self._lock:
                record = self._runs[thread_id]
                cleaned = dict(result)
                cleaned.pop("__interrupt__", None)
                record.state = cleaned
                record.updated_at = datetime.now(timezone.utc)
                if "__interrupt__" in result:
                    record.review_payload = self._extract_interrupt_payload(result)
                    record.status = "waiting_review"
                elif result.get("next_action") == "complete":
                    record.status = "completed"
                else:
                    record.status = "failed"
                record.error = None
                self._settled.notify_all()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run {} crashed", thread_id)
            with self._lock:
                record = self._runs[thread_id]
                record.status = "failed"
                record.error = str(exc)
                record.updated_at = datetime.now(timezone.utc)
                self._settled.notify_all()

    @staticmethod
    def _extract_interrupt_payload(result: dict[str, Any]) -> dict[str, Any]:
        interrupts = result.get("__interrupt__", [])
        if not interrupts:
            return {}
        first = interrupts[0]
        value = getattr(first, "value", first)
        if isinstance(value, dict):
            return value
        return {"message": str(value)}


class StepFunctionsOrchestrator:
    """Delegates the pipeline to an AWS Step Functions state machine."""

    def __init__(self, state_machine_arn: str) -> None:
        if not state_machine_arn:
            raise ValueError("STATE_MACHINE_ARN is required for the stepfunctions orchestrator")
        self._arn = state_machine_arn

    def start(
        self,
        tenant_id: str,
        project_id: str,
        voice_id: str | None = None,
        use_simple_recording: bool = True,
    ) -> str:
        payload = {
            "tenantId": tenant_pk(tenant_id),
            "projectId": project_id,
            "voiceId": voice_id or SETTINGS.polly_voice_id,
            "useSimpleRecording": use_simple_recording,
        }
        response = retry_call(
            f"start_execution:{project_id}",
            lambda: aws.client("stepfunctions").start_execution(
                stateMachineArn=self._arn,
                name=f"{project_id}-{int(time.time())}",
                input=json.dumps(payload),
            ),
        )
        logger.info("Started execution {} for project {}", response["executionArn"], project_id)
        return str(response["executionArn"])

    def resume(self, task_token: str, payload: dict[str, Any]) -> None:
        retry_call(
            "send_task_success",
            lambda: aws.client("stepfunctions").send_task_success(
                taskToken=task_token,
                output=json.dumps(payload),
            ),
        )


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    if SETTINGS.orchestrator == "stepfunctions":
        return StepFunctionsOrchestrator(SETTINGS.state_machine_arn)
    return LocalOrchestrator()
