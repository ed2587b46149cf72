from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]


class Turn(BaseModel):
    """A single message in a session transcript."""

    model_config = ConfigDict(frozen=True)

    role: Role = Field(..., description="Speaker of the turn")
    text: str = Field(..., description="Message text exactly as sent or received")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(
        default=None,
        alias="sessionId",
        description="Client-generated identifier of the conversation",
    )
    user_response: Optional[str] = Field(
        default=None,
        alias="userResponse",
        description="The user's message; an empty string asks Tina to open the conversation",
    )


class ChatResponse(BaseModel):
    response: str
    history: List[Turn] = Field(
        ..., description="Full stored transcript after this turn, oldest first"
    )


class ErrorResponse(BaseModel):
    error: str
