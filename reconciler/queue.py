"""
Push billing status-change notifications to the downstream service-access queue.
Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
from datetime import datetime, timezone

from reconciler.config import settings
from reconciler.redis_client import enqueue
from reconciler.sqs_client import send_message

STATUS_CHANGE_QUEUE_KEY = "queue:billing_status_changes"


def make_body(tenant_id: str, old_status: str, new_status: str, attempts: int = 0) -> dict:
    return {
        "tenant_id": tenant_id,
        "old_status": old_status,
        "new_status": new_status,
        # consumers dedupe on this; the engine may notify the same change more than once
        "change_key": f"{tenant_id}:{old_status}->{new_status}",
        "notified_at": datetime.now(timezone.utc).isoformat(),
        "attempts": attempts,
    }


async def push_status_change(body: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        await enqueue(STATUS_CHANGE_QUEUE_KEY, body)
