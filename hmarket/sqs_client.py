"""
AWS SQS helpers for notification fan-out. Used when notifier_backend is "sqs".
"""
import asyncio
import json
from typing import Any

import boto3

from hmarket.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, queue_url: str | None = None) -> None:
    """Send message to the notifications queue (run boto3 in thread to not block)."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=queue_url or settings.sqs_notifications_url,
        MessageBody=json.dumps(body),
    )
