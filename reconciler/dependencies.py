from fastapi import Request

from reconciler.engine import ReconciliationEngine
from reconciler.repository import BillingRecordStore, IdempotencyLedger


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_store(request: Request) -> BillingRecordStore:
    return request.app.state.store


def get_ledger(request: Request) -> IdempotencyLedger:
    return request.app.state.ledger
