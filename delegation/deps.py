"""FastAPI dependencies resolving the components owned by the app."""

from fastapi import Request

from delegation.jobs.store import JobStore
from delegation.services.orchestrator import Orchestrator
from delegation.services.reconciler import Reconciler


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler
