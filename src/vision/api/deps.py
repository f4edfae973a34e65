from __future__ import annotations

"""FastAPI dependencies that hand out the collaborators built at startup."""

from fastapi import Request

from ..config import Settings
from ..infrastructure.storage import Storage
from ..services.ledger import UsageLedger
from ..services.orchestrator import Orchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_ledger(request: Request) -> UsageLedger:
    return UsageLedger(request.app.state.storage)


def get_orchestrator(request: Request) -> Orchestrator:
    state = request.app.state
    return Orchestrator(state.storage, state.gateway, UsageLedger(state.storage), state.settings, state.model_router)
