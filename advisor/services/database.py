from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Sequence

from pydantic import ValidationError as PydanticValidationError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from advisor.models.chat import Turn
from advisor.services.errors import UpstreamProtocolError
from advisor.services.settings import settings


# Gemini-native role names written by earlier versions of the service.
ROLE_ALIASES = {"model": "assistant"}


class MongoSessionStore:
    """Session store that keeps one MongoDB document per conversation.

    Documents look like ``{"sessionId": ..., "turns": [{"role", "text"}, ...]}``
    and are replaced wholesale on every commit.
    """

    def __init__(
        self,
        client: MongoClient | None = None,
        database: str | None = None,
        collection: str | None = None,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._uri_description = self._mask_uri(settings.mongo_uri)
        if client is None:
            self._client = MongoClient(settings.mongo_uri)
        else:
            self._client = client
            # When a client is injected (e.g. tests), avoid leaking configuration
            # details and use a synthetic description.
            self._uri_description = "<injected MongoClient>"

        self._db = self._client[database or settings.mongo_db]
        self._collection = self._db[collection or settings.mongo_session_collection]
        self._connection_ok = self._check_connection()

    @property
    def connection_ok(self) -> bool:
        return self._connection_ok

    def get(self, session_id: str) -> List[Turn]:
        try:
            document = self._collection.find_one({"sessionId": session_id})
        except PyMongoError:
            self._logger.exception(
                "Failed to load session '%s' from %s", session_id, self._uri_description
            )
            raise

        if not document:
            return []
        return self._parse_turns(session_id, document.get("turns") or [])

    def set(self, session_id: str, turns: Sequence[Turn]) -> None:
        payload = {
            "sessionId": session_id,
            "turns": [turn.model_dump() for turn in turns],
            "updatedAt": datetime.now(timezone.utc),
        }
        try:
            self._collection.replace_one({"sessionId": session_id}, payload, upsert=True)
        except PyMongoError:
            self._logger.exception(
                "Failed to store session '%s' in %s", session_id, self._uri_description
            )
            raise

        self._logger.debug(
            "Stored %d turn(s) for session '%s'", len(payload["turns"]), session_id
        )

    def _parse_turns(self, session_id: str, raw_turns: Sequence[Any]) -> List[Turn]:
        turns: List[Turn] = []
        for index, raw_turn in enumerate(raw_turns):
            if not isinstance(raw_turn, dict):
                self._logger.warning(
                    "Skipping malformed turn %d in session '%s': %r",
                    index,
                    session_id,
                    raw_turn,
                )
                continue
            role = raw_turn.get("role")
            if isinstance(role, str):
                role = ROLE_ALIASES.get(role, role)
            try:
                turns.append(Turn(role=role, text=raw_turn.get("text", "")))
            except PydanticValidationError as exc:
                self._logger.error(
                    "Turn %d of session '%s' is not a valid turn: %r",
                    index,
                    session_id,
                    raw_turn,
                )
                raise UpstreamProtocolError(
                    f"Stored turn {index} of session '{session_id}' is invalid"
                ) from exc
        return turns

    def _check_connection(self) -> bool:
        try:
            self._client.admin.command("ping")
        except PyMongoError:
            self._logger.exception(
                "MongoDB ping failed for %s/%s",
                self._uri_description,
                self._db.name,
            )
            return False

        self._logger.info(
            "MongoDB ping succeeded for %s/%s",
            self._uri_description,
            self._db.name,
        )
        return True

    @staticmethod
    def _mask_uri(uri: str) -> str:
        if "@" not in uri:
            return uri
        prefix, suffix = uri.split("@", 1)
        if "//" in prefix:
            scheme, _ = prefix.split("//", 1)
            masked_prefix = f"{scheme}//***"
        else:
            masked_prefix = "***"
        return f"{masked_prefix}@{suffix}"
