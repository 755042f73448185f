"""
Pydantic schemas for analytics queries.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class AnalyticsQuery(BaseModel):
    """Query-string filters shared by the analytics endpoints."""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = Field(None, description="approved, declined or error")
    response_code: Optional[str] = None
    retry_stage: Optional[str] = Field(None, description="initial or retry_N")
    card_brand: Optional[str] = None


class DescriptorValidateRequest(BaseModel):
    descriptor: str
