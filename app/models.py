from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


SESSION_ID_MAX_LENGTH = 128
# Largest age a datetime.timedelta can hold, in milliseconds.
MAX_AGE_MS_LIMIT = (timedelta.max.days * 86400 + timedelta.max.seconds) * 1000


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(
        default=None,
        alias="sessionId",
        min_length=1,
        max_length=SESSION_ID_MAX_LENGTH,
        description="Optional caller-chosen id; generated when omitted",
    )


class ChatMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(
        ...,
        alias="sessionId",
        min_length=1,
        max_length=SESSION_ID_MAX_LENGTH,
        description="Target session",
    )
    message: str = Field(..., description="User's latest message")

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value


class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_age_ms: Optional[int] = Field(
        default=None,
        alias="maxAge",
        ge=0,
        le=MAX_AGE_MS_LIMIT,
        description="Evict sessions idle for longer than this many milliseconds",
    )
