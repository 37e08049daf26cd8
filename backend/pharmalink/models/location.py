from pydantic import BaseModel, Field, computed_field
from typing import Optional, Tuple
from pharmalink.utils.geohash import encode


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None

    # Derived from lat/lng on every read, so it can never drift from them.
    # Any incoming "geohash" key is ignored.
    @computed_field
    @property
    def geohash(self) -> str:
        return encode(self.lat, self.lng)

    @property
    def point(self) -> Tuple[float, float]:
        return (self.lat, self.lng)
