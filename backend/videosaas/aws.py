from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .config import SETTINGS


@lru_cache(maxsize=None)
def client(service: str) -> Any:
    return boto3.client(service, region_name=SETTINGS.aws_region)


def presign_get(bucket: str, key: str, expires_seconds: int | None = None) -> str:
    return str(
        client("s3").generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=int(expires_seconds or SETTINGS.presign_seconds),
        )
    )


def presign_put(bucket: str, key: str, content_type: str, expires_seconds: int | None = None) -> str:
    return str(
        client("s3").generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=int(expires_seconds or SETTINGS.presign_seconds),
        )
    )


def read_text(bucket: str, key: str) -> str:
    response = client("s3").get_object(Bucket=bucket, Key=key)
    return response["Body"].read().decode("utf-8", errors="replace")


def read_bytes(bucket: str, key: str) -> bytes:
    response = client("s3").get_object(Bucket=bucket, Key=key)
    return response["Body"].read()


def object_exists(bucket: str, key: str) -> bool:
    try:
        client("s3").head_object(Bucket=bucket, Key=key)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code in {"404", "NoSuchKey", "NotFound"}:
            return False
        raise
    return True


def invoke_claude(system: str, prompt: str, max_tokens: int = 4096) -> str:
    body = json.dumps(
        {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
    )
    response = client("bedrock-runtime").invoke_model(
        modelId=SETTINGS.bedrock_model_id,
        contentType="application/json",
        accept="application/json",
        body=body,
    )
    payload = json.loads(response["body"].read())
    content = payload.get("content") or [{}]
    return str(content[0].get("text", ""))
