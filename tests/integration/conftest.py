"""Integration test fixtures: LocalStack SQS and a live Redis."""

from __future__ import annotations

import os
import uuid

import boto3
import pytest
import redis

# Default LocalStack endpoint
LOCALSTACK_URL = os.environ.get("LOCALSTACK_URL", "http://localhost:4566")
REDIS_HOST = os.environ.get("STEPIQ_REDIS_HOST", "localhost")


def _localstack_available() -> bool:
    """Check if LocalStack is reachable."""
    try:
        client = boto3.client("sqs", region_name="us-east-1", endpoint_url=LOCALSTACK_URL)
        client.list_queues()
        return True
    except Exception:
        return False


def _redis_available() -> bool:
    try:
        return bool(redis.Redis(host=REDIS_HOST, socket_connect_timeout=1).ping())
    except redis.RedisError:
        return False


skip_no_localstack = pytest.mark.skipif(
    not _localstack_available(),
    reason="LocalStack not available",
)

skip_no_redis = pytest.mark.skipif(
    not _redis_available(),
    reason="Redis not available",
)


@pytest.fixture
def localstack_queue_url():
    """Fresh SQS queue on LocalStack, deleted afterwards."""
    client = boto3.client("sqs", region_name="us-east-1", endpoint_url=LOCALSTACK_URL)
    url = client.create_queue(QueueName=f"stepiq-runs-{uuid.uuid4().hex[:8]}")["QueueUrl"]
    yield url
    client.delete_queue(QueueUrl=url)
