"""Pydantic schemas for the distribution registry and documents"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class Recipient(BaseModel):
    """Recipient identity, all fields optional free text"""
    company_name: Optional[str] = Field(None, max_length=255)
    contact_name: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    homepage_url: Optional[str] = Field(None, max_length=512)


class RegisterDistributionRequest(BaseModel):
    document_id: int
    recipient: Recipient = Field(default_factory=Recipient)
    sent_at: Optional[datetime] = None


class BatchRegisterRequest(BaseModel):
    document_id: int
    recipients: List[Recipient] = Field(..., min_length=1)
    sent_at: Optional[datetime] = None


class ShareLinkRequest(BaseModel):
    document_id: int


class CreateDocumentRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    original_filename: str = Field(..., min_length=1, max_length=255)
    storage_path: str = Field(..., min_length=1, max_length=512)
    size_bytes: Optional[int] = Field(None, ge=0)
