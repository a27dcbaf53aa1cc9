from __future__ import annotations

import random
import time
from typing import Callable, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from loguru import logger

T = TypeVar("T")

TRANSIENT_CODES = {
    "InternalFailure",
    "InternalServerError",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "SlowDown",
    "ThrottledException",
    "ThrottlingException",
    "TooManyRequestsException",
}
NETWORK_ERRORS = (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)
MAX_DELAY_SECONDS = 8.0


def is_transient_error(exc: Exception) -> bool:
    """AWS throttling, 5xx responses and dropped connections are worth retrying."""
    if isinstance(exc, NETWORK_ERRORS):
        return True
    if not isinstance(exc, ClientError):
        return False
    if exc.response.get("Error", {}).get("Code") in TRANSIENT_CODES:
        return True
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    return status == 429 or 500 <= status < 600


def backoff_delay(attempt: int, base_delay: float) -> float:
    return min(MAX_DELAY_SECONDS, base_delay * 2 ** (attempt - 1)) + random.uniform(0, 0.2)


def retry_call(
    operation: str,
    func: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 0.75,
    retryable: Callable[[Exception], bool] = is_transient_error,
) -> T:
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:  # noqa: BLE001
            transient = retryable(exc)
            logger.warning(
                "AWS call '{}' failed ({}/{}, transient={}): {}",
                operation,
                attempt,
                max_attempts,
                transient,
                exc,
            )
            if not transient or attempt >= max_attempts:
                raise
        time.sleep(backoff_delay(attempt, base_delay))
        attempt += 1
