from __future__ import annotations

import copy
import dataclasses
import io
from typing import Any

import pytest
from botocore.exceptions import ClientError

from backend.videosaas import aws
from backend.videosaas.config import SETTINGS
from backend.videosaas.store import FileRegistry, ProjectStore


def _conditional_failure() -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        "PutItem",
    )


class FakeTable:
    """In-memory stand-in for a DynamoDB Table resource keyed on PK/SK."""

    def __init__(self, page_size: int | None = None) -> None:
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.page_size = page_size
        self.query_calls = 0

    def put_item(
        self,
        Item: dict[str, Any],
        ConditionExpression: str | None = None,
        ExpressionAttributeNames: dict[str, str] | None = None,
        ExpressionAttributeValues: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        key = (Item["PK"], Item["SK"])
        existing = self.items.get(key)
        if ConditionExpression == "attribute_not_exists(PK)" and existing is not None:
            raise _conditional_failure()
        values = ExpressionAttributeValues or {}
        if ":expected" in values:
            if existing is None or existing.get("version") != values[":expected"]:
                raise _conditional_failure()
        self.items[key] = copy.deepcopy(Item)
        return {}

    def get_item(self, Key: dict[str, str]) -> dict[str, Any]:
        item = self.items.get((Key["PK"], Key["SK"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def query(
        self,
        KeyConditionExpression: str,
        ExpressionAttributeValues: dict[str, Any],
        ExclusiveStartKey: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self.query_calls += 1
        pk = ExpressionAttributeValues[":pk"]
        prefix = ExpressionAttributeValues[":sk"]
        matches = sorted(
            (item for (p, s), item in self.items.items() if p == pk and s.startswith(prefix)),
            key=lambda item: item["SK"],
        )
        start = 0
        if ExclusiveStartKey:
            keys = [item["SK"] for item in matches]
            start = keys.index(ExclusiveStartKey["SK"]) + 1
        end = len(matches) if self.page_size is None else start + self.page_size
        response: dict[str, Any] = {"Items": [copy.deepcopy(i) for i in matches[start:end]]}
        if end < len(matches):
            last = matches[end - 1]
            response["LastEvaluatedKey"] = {"PK": last["PK"], "SK": last["SK"]}
        return response


class FakeBody:
    def __init__(self, data: bytes) -> None:
        self._stream = io.BytesIO(data)

    def read(self) -> bytes:
        return self._stream.read()


class FakeS3:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.put_calls: list[dict[str, Any]] = []

    def put_object(self, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        self.objects[(Bucket, Key)] = Body
        self.put_calls.append({"Bucket": Bucket, "Key": Key, **kwargs})
        return {}

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": FakeBody(self.objects[(Bucket, Key)])}

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def generate_presigned_url(self, operation: str, Params: dict[str, Any], ExpiresIn: int) -> str:
        return f"https://signed.example/{operation}/{Params['Key']}?expires={ExpiresIn}"


class FakeAws:
    """Routes ``aws.client(service)`` to per-service fakes."""

    def __init__(self) -> None:
        self.services: dict[str, Any] = {"s3": FakeS3()}

    def __call__(self, service: str) -> Any:
        return self.services[service]


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def project_store(table: FakeTable) -> ProjectStore:
    return ProjectStore(table)


@pytest.fixture
def file_registry(table: FakeTable) -> FileRegistry:
    return FileRegistry(table)


@pytest.fixture
def fake_aws(monkeypatch: pytest.MonkeyPatch) -> FakeAws:
    fake = FakeAws()
    monkeypatch.setattr(aws, "client", fake)
    return fake


@pytest.fixture
def patch_settings(monkeypatch: pytest.MonkeyPatch):
    """Replace the frozen SETTINGS object in the given modules."""

    def _apply(*modules: Any, **overrides: Any):
        patched = dataclasses.replace(SETTINGS, **overrides)
        for module in modules:
            monkeypatch.setattr(module, "SETTINGS", patched)
        return patched

    return _apply


@pytest.fixture
def mock_mode(patch_settings):
    from backend.videosaas.pipeline.nodes import audio_node, script_node, sync_node, video_node

    return patch_settings(
        aws,
        script_node,
        audio_node,
        sync_node,
        video_node,
        s3_bucket="",
        use_mock_polly=True,
        use_mock_bedrock=True,
        use_mock_video=True,
    )


@pytest.fixture
def manifest():
    from backend.videosaas.models import ScriptStep

    return [
        ScriptStep(step_id=1, code_action="page.goto('https://app.test/')", narration="Let's open the app."),
        ScriptStep(
            step_id=2,
            code_action="page.fill('#username', 'demo')",
            narration="Enter your username here.",
        ),
        ScriptStep(step_id=3, code_action="page.click('#submit')", narration="Click submit to sign in."),
    ]


@pytest.fixture
def build_project(manifest):
    """Walk a fresh project forward to the requested status."""
    from backend.videosaas import lifecycle
    from backend.videosaas.models import Project
    from backend.videosaas.status import PROJECT_FORWARD_ORDER, ProjectStatus

    def _build(status: ProjectStatus = ProjectStatus.DRAFT, **fields: Any) -> Project:
        project = Project(
            id=fields.pop("id", "proj-1"),
            tenant_id=fields.pop("tenant_id", "TENANT#acme"),
            name="Checkout tour",
            selected_files=fields.pop("selected_files", ["f1"]),
            **fields,
        )
        steps = {
            ProjectStatus.GENERATING: lifecycle.start_generation,
            ProjectStatus.REVIEW: lambda p: lifecycle.submit_for_review(p, "token-1", manifest),
            ProjectStatus.APPROVED: lambda p: lifecycle.approve(p, p.manifest or []),
            ProjectStatus.AUDIO_GENERATING: lifecycle.start_audio,
            ProjectStatus.AUDIO_COMPLETE: _all_audio,
            ProjectStatus.SYNCING: lifecycle.start_sync,
            ProjectStatus.RENDERING: lambda p: lifecycle.finish_sync(p, "scripts/acme/proj-1/synced_runner.ts"),
            ProjectStatus.VIDEO_GENERATING: lifecycle.start_video,
            ProjectStatus.COMPLETE: lambda p: lifecycle.complete(p, "videos/acme/proj-1/recording.mp4"),
        }
        if status == ProjectStatus.ERROR:
            return lifecycle.fail(project, "boom")
        for target in PROJECT_FORWARD_ORDER[1:]:
            if project.status == status:
                break
            project = steps[target](project)
        return project

    def _all_audio(project):
        for step in project.manifest or []:
            project = lifecycle.record_step_audio(project, step.step_id, f"audio/acme/proj-1/step_{step.step_id}.mp3", 1500)
        return lifecycle.complete_audio(project)

    return _build


@pytest.fixture
def wired_stores(monkeypatch, project_store, file_registry, mock_mode):
    """Point every stage module's store accessors at the in-memory table."""
    from backend.videosaas.lambdas import pipeline_steps
    from backend.videosaas.pipeline.nodes import audio_node, review_node, script_node, sync_node, video_node

    for module in (pipeline_steps, script_node, review_node, audio_node, sync_node, video_node):
        monkeypatch.setattr(module, "get_project_store", lambda: project_store)
        if hasattr(module, "get_file_registry"):
            monkeypatch.setattr(module, "get_file_registry", lambda: file_registry)
    return project_store
