import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from reconciler.db import TransientStorageError
from reconciler.dependencies import get_engine
from reconciler.engine import ReconciliationEngine
from reconciler.models import BillingEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _validation_reason(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()[:3]
    )


@router.post("/billing")
async def receive_billing_event(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
) -> JSONResponse:
    """
    Reconcile one verified provider event. Every recorded outcome (applied, ignored,
    rejected, including bodies that are not a valid event) is acknowledged with 200 so
    the provider stops redelivering. Storage trouble -> 503 so the provider retries later.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    event_id = payload.get("external_event_id") if isinstance(payload, dict) else None

    try:
        try:
            event = BillingEvent.model_validate(payload)
        except ValidationError as e:
            result = await engine.reject_unparseable(payload, _validation_reason(e))
        else:
            result = await engine.process(event)
    except TransientStorageError as e:
        logger.warning("external_event_id=%s not processed, asking provider to retry: %s", event_id, e)
        return JSONResponse(
            status_code=503,
            content={"status": "retry", "external_event_id": event_id},
        )
    return JSONResponse(
        status_code=200,
        content={
            "outcome": result.outcome.value,
            "external_event_id": result.external_event_id,
            "tenant_id": result.tenant_id,
        },
    )
