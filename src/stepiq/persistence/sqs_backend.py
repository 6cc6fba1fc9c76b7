"""SQS backend implementing IRunQueue."""

from __future__ import annotations

import json

import boto3
from botocore.exceptions import ClientError

from stepiq.core.exceptions import QueueError


class SqsRunQueue:
    """Production IRunQueue backed by an SQS queue.

    Messages carry ``{"name": "execute", "data": {"runId": ...}}``. Jobs run
    with a single attempt: the consumer acks (deletes) every received
    message once the run has been processed, successful or not.
    """

    JOB_NAME = "execute"

    def __init__(self, queue_url: str, region: str = "us-east-1",
                 endpoint_url: str | None = None, wait_time_seconds: int = 10) -> None:
        self._queue_url = queue_url
        self._wait_time_seconds = wait_time_seconds
        kwargs: dict = {"region_name": region}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        self._client = boto3.client("sqs", **kwargs)

    def enqueue_execute(self, run_id: str) -> None:
        body = json.dumps({"name": self.JOB_NAME, "data": {"runId": run_id}})
        try:
            self._client.send_message(QueueUrl=self._queue_url, MessageBody=body)
        except ClientError as exc:
            raise QueueError(f"SQS send failed for run {run_id!r}: {exc}") from exc

    def receive(self, max_messages: int = 1) -> list[tuple[str, str]]:
        try:
            resp = self._client.receive_message(
                QueueUrl=self._queue_url,
                MaxNumberOfMessages=max(1, min(max_messages, 10)),
                WaitTimeSeconds=self._wait_time_seconds,
            )
        except ClientError as exc:
            raise QueueError(f"SQS receive failed: {exc}") from exc

        jobs: list[tuple[str, str]] = []
        for message in resp.get("Messages", []):
            receipt = message["ReceiptHandle"]
            try:
                payload = json.loads(message["Body"])
                run_id = payload["data"]["runId"]
            except (ValueError, KeyError, TypeError):
                # Not ours; drop it so it does not block the queue
                self.ack(receipt)
                continue
            if payload.get("name") != self.JOB_NAME:
                self.ack(receipt)
                continue
            jobs.append((receipt, run_id))
        return jobs

    def ack(self, receipt: str) -> None:
        try:
            self._client.delete_message(QueueUrl=self._queue_url, ReceiptHandle=receipt)
        except ClientError as exc:
            raise QueueError(f"SQS delete failed: {exc}") from exc
