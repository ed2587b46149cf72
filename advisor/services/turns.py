from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

from fastapi.concurrency import run_in_threadpool

from advisor.models.chat import Turn
from advisor.services.errors import (
    ChatServiceError,
    SessionStoreError,
    UpstreamError,
    UpstreamProtocolError,
    UpstreamTransientError,
    ValidationError,
)
from advisor.services.fragments import fragment_text
from advisor.services.llm import LLMClient
from advisor.services.session_store import InMemorySessionStore, SessionStore
from advisor.services.settings import settings

logger = logging.getLogger(__name__)

# Sent in place of a user message when the client asks Tina to open the
# conversation. Never shown to the user but stored as the first user turn.
OPENING_UTTERANCE = "Start conversation with Tina."
MISSING_FIELDS_MESSAGE = "Missing sessionId or userResponse in request body."


class Phase(Enum):
    INITIAL = "initial"
    ONGOING = "ongoing"

    @classmethod
    def for_turn(cls, history: Sequence[Turn], user_utterance: str) -> "Phase":
        if not history and user_utterance == "":
            return cls.INITIAL
        return cls.ONGOING


@dataclass(frozen=True)
class TurnResult:
    reply: str
    history: List[Turn]


class TurnCoordinator:
    """Runs one chat turn: builds the outgoing history, streams the reply and
    commits both turns to the session store once the reply is complete."""

    def __init__(
        self,
        store: SessionStore | None = None,
        llm_client: LLMClient | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store if store is not None else InMemorySessionStore()
        self._llm = llm_client or LLMClient()
        self._timeout = timeout_seconds or settings.upstream_timeout_seconds
        # Entries disappear once no turn holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def handle_turn(
        self, session_id: str | None, user_utterance: str | None
    ) -> TurnResult:
        if not session_id or not session_id.strip() or user_utterance is None:
            raise ValidationError(MISSING_FIELDS_MESSAGE)

        # Held across the model call so concurrent turns for one session
        # cannot overwrite each other's commit.
        async with self._lock_for(session_id):
            history = await self._load_history(session_id)
            phase = Phase.for_turn(history, user_utterance)
            contents = self._outgoing_contents(phase, history, user_utterance)
            try:
                ensure_alternating(contents)
            except UpstreamProtocolError:
                logger.error(
                    "Stored history of session '%s' breaks role alternation", session_id
                )
                raise

            logger.info(
                "Handling %s turn for session '%s' (%d stored turn(s))",
                phase.value,
                session_id,
                len(history),
            )
            reply = await self._request_reply(session_id, contents)

            committed = [*contents, Turn(role="assistant", text=reply)]
            await self._commit(session_id, committed)

        return TurnResult(reply=reply, history=committed)

    @staticmethod
    def _outgoing_contents(
        phase: Phase, history: Sequence[Turn], user_utterance: str
    ) -> List[Turn]:
        if phase is Phase.INITIAL:
            return [Turn(role="user", text=OPENING_UTTERANCE)]
        return [*history, Turn(role="user", text=user_utterance)]

    async def _load_history(self, session_id: str) -> List[Turn]:
        try:
            return await run_in_threadpool(self._store.get, session_id)
        except ChatServiceError:
            raise
        except Exception as exc:
            logger.exception("Failed to load history of session '%s'", session_id)
            raise SessionStoreError(str(exc)) from exc

    async def _commit(self, session_id: str, turns: Sequence[Turn]) -> None:
        try:
            await run_in_threadpool(self._store.set, session_id, turns)
        except Exception as exc:
            logger.exception(
                "Reply received but history of session '%s' could not be saved", session_id
            )
            raise SessionStoreError(str(exc)) from exc

    async def _request_reply(self, session_id: str, contents: Sequence[Turn]) -> str:
        try:
            return await asyncio.wait_for(
                self._collect_reply(contents), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Model call for session '%s' timed out after %gs", session_id, self._timeout
            )
            raise UpstreamTransientError(
                f"Model did not respond within {self._timeout:g} seconds"
            ) from exc
        except UpstreamProtocolError:
            logger.error(
                "Model rejected the history of session '%s' as badly ordered", session_id
            )
            raise
        except UpstreamError as exc:
            logger.warning("Model call for session '%s' failed: %s", session_id, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected failure calling the model for session '%s'", session_id)
            raise UpstreamError(str(exc)) from exc

    async def _collect_reply(self, contents: Sequence[Turn]) -> str:
        pieces: List[str] = []
        async for chunk in self._llm.stream_reply(contents):
            pieces.append(fragment_text(chunk))
        return "".join(pieces)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock


def ensure_alternating(contents: Sequence[Turn]) -> None:
    """Raise ``UpstreamProtocolError`` unless ``contents`` can be sent as is.

    The history must start with a user turn, alternate strictly and end with
    the user turn being sent.
    """
    if not contents:
        raise UpstreamProtocolError("Outgoing history is empty")

    expected = "user"
    for index, turn in enumerate(contents):
        if turn.role != expected:
            raise UpstreamProtocolError(
                f"Turn {index} has role '{turn.role}', expected '{expected}'"
            )
        expected = "assistant" if expected == "user" else "user"

    if contents[-1].role != "user":
        raise UpstreamProtocolError("Outgoing history must end with a user turn")
