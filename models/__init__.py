from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VehicleType(str, Enum):
    """Categories of registered ambulances."""
    BASIC = "basic"
    ADVANCED = "advanced"
    PATIENT_TRANSPORT = "patient-transport"
    NEONATAL = "neonatal"
    AIR = "air"


class NotificationStatus(str, Enum):
    """Outcome of one notification attempt."""
    NOTIFIED = "notified"
    FAILED = "failed"
    SKIPPED = "skipped"


class DispatchState(str, Enum):
    """Lifecycle of a single emergency request."""
    RECEIVED = "received"
    LOCATED = "located"
    NO_CANDIDATES = "no_candidates"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"


class GeoPoint(CamelModel):
    """A longitude/latitude pair in degrees."""
    longitude: float = Field(..., description="Longitude in degrees (-180..180)")
    latitude: float = Field(..., description="Latitude in degrees (-90..90)")


class AmbulanceRecord(CamelModel):
    """A registered ambulance."""
    id: str = Field(..., description="Registry-assigned identifier")
    name: str = Field(..., description="Display label for the service or vehicle")
    vehicle_number: str = Field(..., description="Plate or fleet identifier")
    driver_name: Optional[str] = Field(None, description="Driver's name")
    driver_contact: str = Field("", description="Driver's phone number")
    location: GeoPoint = Field(..., description="Last reported position")
    vehicle_type: VehicleType = Field(VehicleType.BASIC, description="Vehicle category")
    address: Optional[str] = Field(None, description="Street address of the base station")
    city: Optional[str] = Field(None, description="City of the base station")
    registered_at: datetime = Field(..., description="First registration timestamp")
    updated_at: datetime = Field(..., description="Last location/driver update timestamp")


class AmbulanceRegistration(CamelModel):
    """Registration payload; every field is checked by the registry."""
    name: Optional[str] = None
    vehicle_number: Optional[str] = None
    driver_name: Optional[str] = None
    driver_contact: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    vehicle_type: Optional[VehicleType] = None
    address: Optional[str] = None
    city: Optional[str] = None


class EmergencyRequest(BaseModel):
    """An emergency call for help at a location."""
    requester_location: Optional[GeoPoint] = None
    callback_phone: Optional[str] = None
    radius_km: Optional[float] = None


class EmergencyCallPayload(CamelModel):
    """HTTP body of an emergency call."""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    callback_phone: Optional[str] = None
    patient_phone: Optional[str] = Field(None, description="Alias of callbackPhone")
    radius_km: Optional[float] = None

    def to_request(self) -> EmergencyRequest:
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = GeoPoint(latitude=self.latitude, longitude=self.longitude)
        return EmergencyRequest(
            requester_location=location,
            callback_phone=self.callback_phone or self.patient_phone,
            radius_km=self.radius_km
        )


class GatewayReceipt(CamelModel):
    """What the notification provider reported for one contact."""
    status: str = Field(..., description="Provider status string")
    provider: str = Field(..., description="Name of the gateway implementation")
    provider_id: Optional[str] = Field(None, description="Call identifier")
    sms_id: Optional[str] = Field(None, description="SMS identifier")


class CandidateOutcome(CamelModel):
    """One ambulance in a dispatch and what happened when it was notified."""
    ambulance_id: str
    name: str
    vehicle_number: str
    driver_name: Optional[str] = None
    driver_contact: str = ""
    distance_km: float
    notification_status: NotificationStatus
    reason: Optional[str] = None
    provider_id: Optional[str] = None
    sms_id: Optional[str] = None
    call_link: Optional[str] = None


class DispatchSummary(CamelModel):
    """Outcome counts of a dispatch."""
    total: int = 0
    notified: int = 0
    failed: int = 0
    skipped: int = 0


class DispatchResult(CamelModel):
    """Result of one emergency request."""
    dispatch_id: str
    state: DispatchState
    live: bool = Field(False, description="Whether the notification gateway was used")
    requester_location: GeoPoint
    radius_km: float
    candidates: List[CandidateOutcome] = Field(default_factory=list)
    summary: DispatchSummary = Field(default_factory=DispatchSummary)
    message: str = ""
    created_at: datetime


class RegistryStats(CamelModel):
    """Statistics about the ambulance registry."""
    total_ambulances: int = 0
    vehicle_types: Dict[str, int] = Field(default_factory=dict)
    indexed_cells: int = 0
    last_updated: datetime
