from __future__ import annotations

import uuid
from functools import lru_cache
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError
from loguru import logger

from . import lifecycle
from .config import SETTINGS
from .models import (
    FILE_PREFIX,
    PROJECT_PREFIX,
    FileItem,
    Project,
    tenant_pk,
    utcnow,
)
from .pipeline.retry import retry_call


class ProjectNotFoundError(KeyError):
    pass


class ConcurrentModificationError(RuntimeError):
    pass


@lru_cache(maxsize=1)
def get_table() -> Any:
    dynamodb = boto3.resource("dynamodb", region_name=SETTINGS.aws_region)
    return dynamodb.Table(SETTINGS.table_name)


def query_prefix(table: Any, pk: str, sk_prefix: str) -> list[dict[str, Any]]:
    kwargs: dict[str, Any] = {
        "KeyConditionExpression": "PK = :pk AND begins_with(SK, :sk)",
        "ExpressionAttributeValues": {":pk": pk, ":sk": sk_prefix},
    }
    items: list[dict[str, Any]] = []
    while True:
        response = retry_call(f"query:{sk_prefix}", lambda: table.query(**kwargs))
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _stored_file_type(mime_type: str, file_name: str) -> str:
    lowered = f"{mime_type} {file_name}".lower()
    if "pdf" in lowered:
        return "guide"
    if any(token in lowered for token in ("typescript", "javascript", ".ts", ".js")):
        return "test"
    return "other"


class FileRegistry:
    def __init__(self, table: Any) -> None:
        self._table = table

    def list_files(self, tenant_id: str) -> list[FileItem]:
        items = query_prefix(self._table, tenant_pk(tenant_id), FILE_PREFIX)
        return [FileItem.from_item(item) for item in items]

    def get_file(self, tenant_id: str, file_id: str) -> FileItem | None:
        key = {"PK": tenant_pk(tenant_id), "SK": f"{FILE_PREFIX}{file_id}"}
        response = retry_call(f"get_file:{file_id}", lambda: self._table.get_item(Key=key))
        item = response.get("Item")
        return FileItem.from_item(item) if item else None

    def register_file(self, tenant_id: str, file_name: str, s3_key: str, mime_type: str) -> FileItem:
        file_id = uuid.uuid4().hex
        item = {
            "PK": tenant_pk(tenant_id),
            "SK": f"{FILE_PREFIX}{file_id}",
            "type": _stored_file_type(mime_type, file_name),
            "s3_key": s3_key,
            "name": file_name,
            "fileType": mime_type,
            "createdAt": utcnow().isoformat(),
        }
        retry_call(f"register_file:{file_id}", lambda: self._table.put_item(Item=item))
        logger.info("Registered file {} for {}", file_id, item["PK"])
        return FileItem.from_item(item)


class ProjectStore:
    def __init__(self, table: Any) -> None:
        self._table = table

    def create(self, tenant_id: str, name: str, user_prompt: str, selected_files: list[str]) -> Project:
        project = Project(
            id=str(uuid.uuid4()),
            tenant_id=tenant_pk(tenant_id),
            name=name,
            user_prompt=user_prompt,
            selected_files=selected_files,
        )
        return self.save(project)

    def get(self, tenant_id: str, project_id: str) -> Project:
        key = {"PK": tenant_pk(tenant_id), "SK": f"{PROJECT_PREFIX}{project_id}"}
        response = retry_call(f"get_project:{project_id}", lambda: self._table.get_item(Key=key))
        item = response.get("Item")
        if not item:
            raise ProjectNotFoundError(project_id)
        return Project.from_item(item)

    def list(self, tenant_id: str) -> list[Project]:
        items = query_prefix(self._table, tenant_pk(tenant_id), PROJECT_PREFIX)
        projects = [Project.from_item(item) for item in items]
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    def save(self, project: Project) -> Project:
        expected = project.version
        stored = project.model_copy(update={"version": expected + 1})
        kwargs: dict[str, Any] = {"Item": stored.to_item()}
        if expected == 0:
            kwargs["ConditionExpression"] = "attribute_not_exists(PK)"
        else:
            kwargs["ConditionExpression"] = "#version = :expected"
            kwargs["ExpressionAttributeNames"] = {"#version": "version"}
            kwargs["ExpressionAttributeValues"] = {":expected": expected}
        try:
            retry_call(f"save_project:{project.id}", lambda: self._table.put_item(**kwargs))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise ConcurrentModificationError(
                    f"project {project.id} was modified concurrently (expected version {expected})"
                ) from exc
            raise
        return stored

    def mutate(self, tenant_id: str, project_id: str, change: Callable[[Project], Project]) -> Project:
        return self.save(change(self.get(tenant_id, project_id)))

    def fail(self, tenant_id: str, project_id: str, message: str) -> Project:
        project = self.get(tenant_id, project_id)
        if project.status.is_terminal:
            logger.warning("Project {} already {}, not recording error: {}", project_id, project.status.value, message)
            return project
        logger.error("Project {} failed: {}", project_id, message)
        return self.save(lifecycle.fail(project, message))


@lru_cache(maxsize=1)
def get_project_store() -> ProjectStore:
    return ProjectStore(get_table())


@lru_cache(maxsize=1)
def get_file_registry() -> FileRegistry:
    return FileRegistry(get_table())
