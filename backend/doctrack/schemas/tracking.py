"""Pydantic schemas for viewer tracking pings

Field values are validated and clamped by the engagement service, so these
schemas only accept the spellings viewing clients send.
"""
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class OpenRequest(BaseModel):
    """Body of an open ping"""
    viewer_email: Optional[str] = Field(None, validation_alias=AliasChoices("viewer_email", "viewerEmail", "email"))
    session_id: Optional[str] = Field(None, validation_alias=AliasChoices("session_id", "sessionId"))


class ProgressRequest(BaseModel):
    """Body of a progress ping"""
    viewer_email: Optional[str] = Field(None, validation_alias=AliasChoices("viewer_email", "viewerEmail", "email"))
    read_percentage: Any = Field(0, validation_alias=AliasChoices("read_percentage", "readPercentage"))
    max_page_reached: Any = Field(1, validation_alias=AliasChoices("max_page_reached", "maxPageReached", "page_reached", "pageReached"))
    elapsed_seconds: Any = Field(0, validation_alias=AliasChoices("elapsed_seconds", "elapsedSeconds"))
