from __future__ import annotations

from functools import lru_cache

from fastapi import APIRouter, Depends

from advisor.models.chat import ChatRequest, ChatResponse, ErrorResponse
from advisor.services.session_store import InMemorySessionStore, SessionStore
from advisor.services.settings import settings
from advisor.services.turns import TurnCoordinator

router = APIRouter(tags=["chat"])


def build_session_store() -> SessionStore:
    if settings.session_store == "mongo":
        from advisor.services.database import MongoSessionStore

        return MongoSessionStore()
    return InMemorySessionStore()


@lru_cache(maxsize=1)
def get_coordinator() -> TurnCoordinator:
    return TurnCoordinator(store=build_session_store())


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def chat(
    payload: ChatRequest,
    coordinator: TurnCoordinator = Depends(get_coordinator),
) -> ChatResponse:
    result = await coordinator.handle_turn(payload.session_id, payload.user_response)
    return ChatResponse(response=result.reply, history=result.history)
