from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .status import ProjectStatus, VideoStage

TENANT_PREFIX = "TENANT#"
FILE_PREFIX = "FILE#"
PROJECT_PREFIX = "PROJ#"

FileType = Literal["pdf", "playwright", "other"]
Importance = Literal["low", "medium", "high"]

_STORED_FILE_TYPES: dict[str, FileType] = {
    "guide": "pdf",
    "pdf": "pdf",
    "test": "playwright",
    "playwright": "playwright",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tenant_pk(tenant_id: str) -> str:
    return tenant_id if tenant_id.startswith(TENANT_PREFIX) else f"{TENANT_PREFIX}{tenant_id}"


def clean_tenant(tenant_id: str) -> str:
    return tenant_id.removeprefix(TENANT_PREFIX)


def plain_value(value: Any) -> Any:
    """Undo boto3's Decimal wrapping so pydantic sees ints and floats."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: plain_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain_value(v) for v in value]
    return value


class FileItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    type: FileType = "other"
    s3_key: str = Field(alias="s3Key")
    uploaded_at: datetime = Field(alias="uploadedAt")

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "FileItem":
        data = plain_value(item)
        raw_type = str(data.get("type", "")).lower()
        return cls(
            id=str(data["SK"]).removeprefix(FILE_PREFIX),
            name=str(data.get("name", "")),
            type=_STORED_FILE_TYPES.get(raw_type, "other"),
            s3_key=str(data.get("s3_key") or data.get("s3Key") or ""),
            uploaded_at=data.get("uploadedAt") or data.get("createdAt") or utcnow(),
        )


class ScriptStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: int = Field(ge=1)
    code_action: str
    narration: str
    importance: Importance = "medium"


class AudioStep(ScriptStep):
    audio_s3_key: str | None = Field(default=None, alias="audioS3Key")
    duration_ms: int | None = Field(default=None, alias="durationMs", ge=0)
    audio_generated: bool = Field(default=False, alias="audioGenerated")


def unique_step_ids(steps: list[AudioStep] | None) -> list[AudioStep] | None:
    if steps is None:
        return steps
    ids = [step.step_id for step in steps]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"manifest step_id values must be unique, duplicated: {duplicates}")
    return steps


class AudioProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int = Field(ge=0)
    completed: int = Field(default=0, ge=0)
    current_step: int | None = Field(default=None, alias="currentStep")

    @model_validator(mode="after")
    def _completed_within_total(self) -> "AudioProgress":
        if self.completed > self.total:
            raise ValueError(f"audioProgress.completed ({self.completed}) exceeds total ({self.total})")
        return self


class VideoProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stage: VideoStage = VideoStage.STARTING
    task_arn: str | None = Field(default=None, alias="taskArn")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    mock: bool = False


class Project(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    tenant_id: str = Field(alias="tenantId")
    name: str
    status: ProjectStatus = ProjectStatus.DRAFT
    user_prompt: str = Field(default="", alias="userPrompt")
    selected_files: list[str] = Field(default_factory=list, alias="selectedFiles")
    manifest: list[AudioStep] | None = None
    audio_progress: AudioProgress | None = Field(default=None, alias="audioProgress")
    duration_map: dict[int, int] | None = Field(default=None, alias="durationMap")
    synced_script_s3_key: str | None = Field(default=None, alias="syncedScriptS3Key")
    video_s3_key: str | None = Field(default=None, alias="videoS3Key")
    video_progress: VideoProgress | None = Field(default=None, alias="videoProgress")
    task_token: str | None = Field(default=None, alias="taskToken")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")
    error_message: str | None = Field(default=None, alias="errorMessage")
    version: int = Field(default=0, ge=0)

    @field_validator("selected_files")
    @classmethod
    def _dedupe_files(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for file_id in value:
            if file_id not in seen:
                seen.append(file_id)
        return seen

    @field_validator("manifest")
    @classmethod
    def _unique_step_ids(cls, value: list[AudioStep] | None) -> list[AudioStep] | None:
        return unique_step_ids(value)

    @model_validator(mode="after")
    def _status_invariants(self) -> "Project":
        if self.status == ProjectStatus.COMPLETE and not self.video_s3_key:
            raise ValueError("a COMPLETE project requires videoS3Key")
        if self.video_s3_key and self.status != ProjectStatus.COMPLETE:
            raise ValueError("videoS3Key may only be set once the project is COMPLETE")
        if self.status == ProjectStatus.ERROR and not (self.error_message or "").strip():
            raise ValueError("an ERROR project requires errorMessage")
        return self

    @property
    def pk(self) -> str:
        return tenant_pk(self.tenant_id)

    @property
    def sk(self) -> str:
        return f"{PROJECT_PREFIX}{self.id}"

    def to_item(self) -> dict[str, Any]:
        payload = self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"id", "tenant_id"},
        )
        if "durationMap" in payload:
            payload["durationMap"] = {str(k): v for k, v in payload["durationMap"].items()}
        return {"PK": self.pk, "SK": self.sk, **payload}

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Project":
        data = plain_value(dict(item))
        data["tenantId"] = data.pop("PK")
        data["id"] = str(data.pop("SK")).removeprefix(PROJECT_PREFIX)
        return cls.model_validate(data)


class CreateProjectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=200)
    user_prompt: str = Field(default="Create a professional video tutorial.", alias="userPrompt")
    selected_files: list[str] = Field(min_length=1, alias="selectedFiles")
    voice_id: str | None = Field(default=None, alias="voiceId")
    use_simple_recording: bool = Field(default=True, alias="useSimpleRecording")


class ApproveScriptRequest(BaseModel):
    manifest: list[AudioStep] = Field(min_length=1)

    @field_validator("manifest")
    @classmethod
    def _unique_step_ids(cls, value: list[AudioStep]) -> list[AudioStep] | None:
        return unique_step_ids(value)


class UpdateProjectRequest(BaseModel):
    manifest: list[AudioStep] | None = None

    @field_validator("manifest")
    @classmethod
    def _unique_step_ids(cls, value: list[AudioStep] | None) -> list[AudioStep] | None:
        return unique_step_ids(value)


class RegisterFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(min_length=1, alias="fileName")
    file_key: str = Field(min_length=1, alias="fileKey")
    file_type: str = Field(min_length=1, alias="fileType")


class UploadUrlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(min_length=1, alias="fileName")
    file_type: str = Field(min_length=1, alias="fileType")


class FileListResponse(BaseModel):
    files: list[FileItem]
    count: int
