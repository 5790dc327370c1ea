from typing import Optional
from pydantic import BaseModel, Field


class AttendanceLocation(BaseModel):
    # Range checks happen in the geofence so they surface as invalid_coordinate
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: Optional[str] = Field(default=None, max_length=500)
