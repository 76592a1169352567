from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from reconciler import provisioning
from reconciler.billing_state import PaymentAuthority
from reconciler.config import settings
from reconciler.db import TransientStorageError
from reconciler.dependencies import get_engine, get_ledger, get_store
from reconciler.engine import ReconciliationEngine
from reconciler.repository import BillingRecordStore, IdempotencyLedger
from reconciler.sweep import recover_stale_reservations

router = APIRouter(prefix="/admin", tags=["admin"])


class CheckoutBody(BaseModel):
    customer_ref: str = Field(..., min_length=1, description="Provider customer created for this tenant")
    subscription_ref: str | None = Field(default=None, description="Provider subscription, when already known")


class AuthorityBody(BaseModel):
    payment_authority: PaymentAuthority


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "detail": detail})


async def _run(operation) -> JSONResponse:
    try:
        record = await operation
    except provisioning.TenantNotFound as e:
        return _error(404, f"unknown tenant {e}")
    except provisioning.InvalidAdminTransition as e:
        return _error(409, str(e))
    except TransientStorageError as e:
        return _error(503, str(e))
    return JSONResponse(status_code=200, content=provisioning.billing_summary(record))


@router.get("/tenants/{tenant_id}/billing")
async def get_billing(tenant_id: str, store: BillingRecordStore = Depends(get_store)) -> JSONResponse:
    try:
        record = await store.get(tenant_id)
    except TransientStorageError as e:
        return _error(503, str(e))
    if record is None:
        return _error(404, f"unknown tenant {tenant_id}")
    return JSONResponse(status_code=200, content=provisioning.billing_summary(record))


@router.get("/billing/counts")
async def billing_counts(store: BillingRecordStore = Depends(get_store)) -> JSONResponse:
    try:
        counts = await provisioning.billing_status_counts(store)
    except TransientStorageError as e:
        return _error(503, str(e))
    return JSONResponse(status_code=200, content={"status": "ok", "counts": counts})


@router.get("/billing/summaries")
async def billing_summaries(
    limit: int = Query(default=500, ge=1, le=5000),
    store: BillingRecordStore = Depends(get_store),
) -> JSONResponse:
    """Every tenant's billing summary, most urgent first (past due, expiring trials)."""
    try:
        summaries = await provisioning.all_billing_summaries(store, limit=limit)
    except TransientStorageError as e:
        return _error(503, str(e))
    return JSONResponse(status_code=200, content={"status": "ok", "tenants": summaries})


@router.post("/tenants/{tenant_id}/provision")
async def provision(tenant_id: str, store: BillingRecordStore = Depends(get_store)) -> JSONResponse:
    return await _run(provisioning.provision_tenant(store, tenant_id))


@router.post("/tenants/{tenant_id}/trial")
async def start_trial(tenant_id: str, store: BillingRecordStore = Depends(get_store)) -> JSONResponse:
    return await _run(provisioning.start_trial_pending(store, tenant_id))


@router.post("/tenants/{tenant_id}/checkout")
async def begin_checkout(
    tenant_id: str,
    body: CheckoutBody,
    store: BillingRecordStore = Depends(get_store),
) -> JSONResponse:
    """Must run before the provider can deliver any activation event for this tenant."""
    return await _run(provisioning.begin_checkout(store, tenant_id, body.customer_ref, body.subscription_ref))


@router.post("/tenants/{tenant_id}/authority")
async def set_authority(
    tenant_id: str,
    body: AuthorityBody,
    store: BillingRecordStore = Depends(get_store),
) -> JSONResponse:
    return await _run(provisioning.set_payment_authority(store, tenant_id, body.payment_authority))


@router.post("/tenants/{tenant_id}/reprovision")
async def reprovision(tenant_id: str, store: BillingRecordStore = Depends(get_store)) -> JSONResponse:
    return await _run(provisioning.reprovision_after_cancel(store, tenant_id))


@router.post("/reservations/sweep")
async def sweep_reservations(
    limit: int = Query(default=100, ge=1, le=1000),
    engine: ReconciliationEngine = Depends(get_engine),
    ledger: IdempotencyLedger = Depends(get_ledger),
) -> JSONResponse:
    """
    Re-evaluate ledger reservations abandoned in PENDING (crash between claim and commit).
    Returns counts per outcome.
    """
    try:
        report = await recover_stale_reservations(
            engine,
            ledger,
            stale_after_seconds=settings.sweep_stale_after_seconds,
            batch_size=limit,
        )
    except TransientStorageError as e:
        return _error(503, str(e))
    return JSONResponse(status_code=200, content={"status": "ok", **report.as_dict()})
