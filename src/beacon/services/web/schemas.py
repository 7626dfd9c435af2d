"""
Request bodies for the REST API
"""

from typing import Optional

from pydantic import BaseModel, Field


class EmergencyCreateRequest(BaseModel):
    emergency_type: str = Field(..., alias="emergencyType")
    description: str
    longitude: float
    latitude: float


class StatusUpdateRequest(BaseModel):
    status: str


class FeedbackRequest(BaseModel):
    rating: int
    comment: Optional[str] = ""


class LocationUpdateRequest(BaseModel):
    longitude: float
    latitude: float


class AvailabilityUpdateRequest(BaseModel):
    availability_status: bool = Field(..., alias="availabilityStatus")
