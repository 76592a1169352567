"""
AWS SQS helpers for the status-change queue. Used when SQS_QUEUE_URL is set.
"""
import asyncio
import json
from typing import Any

import boto3

from reconciler.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict) -> None:
    """Send message to the status-change queue (run boto3 in thread to not block)."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=settings.sqs_queue_url,
        MessageBody=json.dumps(body),
    )


async def get_queue_depth() -> int:
    """Return ApproximateNumberOfMessages for metrics (0 when SQS is not configured)."""
    if not settings.sqs_queue_url:
        return 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages"],
        )
        attrs = r.get("Attributes") or {}
        return int(attrs.get("ApproximateNumberOfMessages", 0))

    return await asyncio.to_thread(_get)
