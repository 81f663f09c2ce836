"""
RapidResQ Command Dispatcher
============================
Maps a validated AST to one of four handlers. Handlers never perform I/O
themselves; location and status lookups go through resolver interfaces
supplied by the caller.

Actions
-------
  ALERT_CREATED     alert accepted, id minted, nearest responders attached
  QUERY_EXECUTED    services found through the location resolver
  QUERY_FAILED      resolver raised; static fallback entries returned
  STATUS_RETRIEVED  status resolver knew the request
  STATUS_NOT_FOUND  status resolver returned nothing
  STATUS_FAILED     status resolver raised
  HELP_PROVIDED     topic guidance and emergency numbers
  CANNOT_EXECUTE    a required attribute is missing
"""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import structlog

from resq_semantics import (
    AST, HELP_TOPICS, AlertAttributes, CommandType, HelpAttributes, Location,
    LocationKind, QueryAttributes, StatusAttributes, help_topic_key,
    response_time_for, search_radius_km, urgency_for,
)

log = structlog.get_logger()


# ==========================================
# Resolver interfaces
# ==========================================

@dataclass(frozen=True)
class PointOfInterest:
    name: str
    amenity: str
    lat: float
    lon: float
    phone: Optional[str] = None
    address: Optional[str] = None
    nationwide: bool = False
    distance_km: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "amenity": self.amenity,
            "lat": self.lat,
            "lon": self.lon,
            "phone": self.phone,
            "address": self.address,
            "distance_km": self.distance_km,
        }


class LocationResolver(Protocol):
    def resolve(self, location: Location, amenity: str, radius_km: int) -> List[PointOfInterest]: ...


class StatusResolver(Protocol):
    def lookup(self, request_id: str) -> Optional[dict]: ...


# ==========================================
# Built-in resolvers (no network access)
# ==========================================

DEFAULT_CENTER = (31.5204, 74.3587)  # Lahore

KNOWN_PLACES: Dict[str, Tuple[float, float]] = {
    "lahore":     (31.5204, 74.3587),
    "islamabad":  (33.6844, 73.0479),
    "rawalpindi": (33.5651, 73.0169),
    "karachi":    (24.8607, 67.0011),
    "peshawar":   (34.0151, 71.5249),
    "quetta":     (30.1798, 66.9750),
    "multan":     (30.1575, 71.5249),
    "faisalabad": (31.4504, 73.1350),
}

FALLBACK_DIRECTORY: List[PointOfInterest] = [
    PointOfInterest("Pakistan Institute of Medical Sciences (PIMS)", "hospital", 33.6693, 73.0762, "+92-51-9260601", "G-8/3, Islamabad"),
    PointOfInterest("Shifa International Hospital", "hospital", 33.6566, 73.0645, "+92-51-8464646", "Sector H-8/4, Islamabad"),
    PointOfInterest("Armed Forces Institute of Cardiology", "hospital", 33.6007, 73.0679, "+92-51-9271858", "Rawalpindi"),
    PointOfInterest("Holy Family Hospital", "hospital", 33.5939, 73.0479, "+92-51-5560394", "Rawalpindi"),
    PointOfInterest("Combined Military Hospital (CMH)", "hospital", 33.5951, 73.0560, "+92-51-9270463", "Rawalpindi"),
    PointOfInterest("Benazir Bhutto Hospital", "hospital", 33.5978, 73.0444, "+92-51-9290301", "Rawalpindi"),
    PointOfInterest("Poly Clinic Hospital", "hospital", 33.6944, 73.0638, "+92-51-9218944", "G-6/2, Islamabad"),
    PointOfInterest("Capital Hospital CDA", "hospital", 33.6889, 73.0583, "+92-51-9252371", "G-6/4, Islamabad"),
    PointOfInterest("Mayo Hospital", "hospital", 31.5749, 74.3095, "+92-42-99211100", "Lahore"),
    PointOfInterest("Services Hospital", "hospital", 31.5406, 74.3361, "+92-42-99203402", "Lahore"),
    PointOfInterest("Jinnah Hospital", "hospital", 31.4846, 74.2977, "+92-42-99231400", "Lahore"),
    PointOfInterest("Aga Khan University Hospital", "hospital", 24.8918, 67.0746, "+92-21-34930051", "Karachi"),
    PointOfInterest("Pakistan Police Emergency", "police", 33.6362, 72.9837, "15", "Nationwide", nationwide=True),
    PointOfInterest("Rescue 1122", "ambulance_station", 33.6362, 72.9837, "1122", "Emergency Medical Services", nationwide=True),
    PointOfInterest("Fire Brigade", "fire_station", 33.6362, 72.9837, "16", "Fire Emergency", nationwide=True),
    PointOfInterest("Motorway Police", "police", 33.6362, 72.9837, "130", "Highway Emergency", nationwide=True),
]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class FallbackLocationResolver:
    """
    Static directory lookup. Named places are matched against a small
    gazetteer; anything unknown is searched around Lahore.
    """

    def __init__(self, directory: Optional[List[PointOfInterest]] = None,
                 places: Optional[Dict[str, Tuple[float, float]]] = None):
        self.directory = FALLBACK_DIRECTORY if directory is None else directory
        self.places = KNOWN_PLACES if places is None else places

    def center_of(self, location: Location) -> Tuple[float, float]:
        if location.kind is LocationKind.GPS:
            return location.latitude, location.longitude
        for word in reversed(location.name.lower().split()):
            if word.strip(".,") in self.places:
                return self.places[word.strip(".,")]
        return DEFAULT_CENTER

    def resolve(self, location: Location, amenity: str, radius_km: int) -> List[PointOfInterest]:
        lat, lon = self.center_of(location)
        found = []
        for poi in self.directory:
            if poi.amenity != amenity:
                continue
            distance = round(haversine_km(lat, lon, poi.lat, poi.lon), 2)
            if poi.nationwide or distance <= radius_km:
                found.append(PointOfInterest(
                    poi.name, poi.amenity, poi.lat, poi.lon, poi.phone, poi.address,
                    poi.nationwide, distance,
                ))
        return sorted(found, key=lambda p: (p.nationwide, p.distance_km))


class SimulatedStatusResolver:
    """Reports every request as in progress with a dispatched unit."""

    def lookup(self, request_id: str) -> Optional[dict]:
        now = datetime.now(timezone.utc).isoformat()
        return {
            "status": "IN_PROGRESS",
            "created": now,
            "last_update": now,
            "assigned_unit": "UNIT-1122-A",
            "estimated_arrival": "8-12 minutes",
        }


# ==========================================
# Results
# ==========================================

class Action(str, Enum):
    ALERT_CREATED    = "ALERT_CREATED"
    QUERY_EXECUTED   = "QUERY_EXECUTED"
    QUERY_FAILED     = "QUERY_FAILED"
    STATUS_RETRIEVED = "STATUS_RETRIEVED"
    STATUS_NOT_FOUND = "STATUS_NOT_FOUND"
    STATUS_FAILED    = "STATUS_FAILED"
    HELP_PROVIDED    = "HELP_PROVIDED"
    CANNOT_EXECUTE   = "CANNOT_EXECUTE"


@dataclass
class ExecutionResult:
    action: Action
    message: str
    payload: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.action is not Action.CANNOT_EXECUTE

    def to_dict(self) -> dict:
        data = {"action": self.action.value, "message": self.message, **self.payload}
        if self.error:
            data["error"] = self.error
        return data


EMERGENCY_NUMBERS = {
    "Police": "15",
    "Fire": "16",
    "Medical/Rescue": "1122",
    "Motorway Police": "130",
}

SERVICE_AMENITIES = {
    "HOSPITAL":     "hospital",
    "AMBULANCE":    "ambulance_station",
    "POLICE":       "police",
    "FIRE_STATION": "fire_station",
    "RESCUE":       "ambulance_station",
}

ALERT_AMENITIES = {
    "fire":     "fire_station",
    "medical":  "hospital",
    "accident": "ambulance_station",
    "crime":    "police",
    "robbery":  "police",
    "theft":    "police",
}


def _missing(attrs, *names: str) -> List[str]:
    return [n for n in names if getattr(attrs, n, None) in (None, "")]


def _cannot_execute(command_type: CommandType, missing: List[str]) -> ExecutionResult:
    return ExecutionResult(
        Action.CANNOT_EXECUTE,
        f"{command_type.value} cannot be executed",
        payload={"command_type": command_type.value, "missing": missing},
        error=f"missing required attributes: {', '.join(missing)}",
    )


def _default_id() -> str:
    return f"EMG-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


# ==========================================
# Dispatcher
# ==========================================

_HANDLERS: Dict[CommandType, str] = {
    CommandType.ALERT:  "_handle_alert",
    CommandType.QUERY:  "_handle_query",
    CommandType.STATUS: "_handle_status",
    CommandType.HELP:   "_handle_help",
}

_unhandled = set(CommandType) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"no handler for {sorted(c.value for c in _unhandled)}")


class CommandDispatcher:
    def __init__(
        self,
        location_resolver: Optional[LocationResolver] = None,
        status_resolver: Optional[StatusResolver] = None,
        id_factory: Optional[Callable[[], str]] = None,
        max_results: int = 5,
    ):
        self.location_resolver = location_resolver or FallbackLocationResolver()
        self.status_resolver = status_resolver or SimulatedStatusResolver()
        self.id_factory = id_factory or _default_id
        self.max_results = max_results

    def dispatch(self, ast: AST, request_id: Optional[str] = None) -> ExecutionResult:
        handler = getattr(self, _HANDLERS[ast.command_type])
        result = handler(ast.attributes, request_id)
        log.info("command_dispatched", command_type=ast.command_type.value,
                 action=result.action.value)
        return result

    def _handle_alert(self, attrs: AlertAttributes, request_id: Optional[str]) -> ExecutionResult:
        missing = _missing(attrs, "alert_type", "location")
        if missing:
            return _cannot_execute(CommandType.ALERT, missing)

        request_id = request_id or self.id_factory()
        amenity = ALERT_AMENITIES.get(attrs.alert_type.split()[0].lower(), "ambulance_station")
        try:
            responders = self.location_resolver.resolve(attrs.location, amenity, search_radius_km(attrs.location))
        except Exception as e:
            # the alert stands even when responders cannot be looked up
            log.warning("location_resolver_failed", error=str(e), amenity=amenity)
            responders = []
        return ExecutionResult(
            Action.ALERT_CREATED,
            f"Emergency alert created with ID {request_id}. Response units being dispatched.",
            payload={
                "request_id": request_id,
                "details": {
                    "type": attrs.alert_type,
                    "location": attrs.location.model_dump(mode="json"),
                    "priority": attrs.priority,
                    "contact": attrs.contact,
                    "status": "DISPATCHING",
                    "urgency_level": urgency_for(attrs.priority),
                    "estimated_response": response_time_for(attrs.priority),
                },
                "responders": [p.to_dict() for p in responders[:3]],
            },
        )

    def _handle_query(self, attrs: QueryAttributes, request_id: Optional[str]) -> ExecutionResult:
        missing = _missing(attrs, "service_type", "location")
        if missing:
            return _cannot_execute(CommandType.QUERY, missing)

        amenity = SERVICE_AMENITIES.get(attrs.service_type, "hospital")
        radius = search_radius_km(attrs.location)
        location = attrs.location.model_dump(mode="json")
        try:
            services = self.location_resolver.resolve(attrs.location, amenity, radius)
        except Exception as e:
            log.warning("location_resolver_failed", error=str(e), amenity=amenity)
            fallback = [p for p in FALLBACK_DIRECTORY if p.amenity == "hospital"][:3]
            return ExecutionResult(
                Action.QUERY_FAILED,
                f"Lookup failed for {attrs.service_type.lower()} services; showing fallback entries",
                payload={"service_type": attrs.service_type, "location": location,
                         "fallback": [p.to_dict() for p in fallback]},
                error=str(e),
            )

        return ExecutionResult(
            Action.QUERY_EXECUTED,
            f"Found {len(services)} {attrs.service_type.lower()} services near {attrs.location.name}",
            payload={
                "service_type": attrs.service_type,
                "location": location,
                "search_radius_km": radius,
                "results": [p.to_dict() for p in services[:self.max_results]],
            },
        )

    def _handle_status(self, attrs: StatusAttributes, request_id: Optional[str]) -> ExecutionResult:
        missing = _missing(attrs, "request_id")
        if missing:
            return _cannot_execute(CommandType.STATUS, missing)

        try:
            details = self.status_resolver.lookup(attrs.request_id)
        except Exception as e:
            log.warning("status_resolver_failed", error=str(e), request_id=attrs.request_id)
            return ExecutionResult(
                Action.STATUS_FAILED,
                f"Status lookup for {attrs.request_id} failed; try again shortly.",
                payload={"request_id": attrs.request_id},
                error=str(e),
            )
        if details is None:
            return ExecutionResult(
                Action.STATUS_NOT_FOUND,
                f"No emergency request found with ID {attrs.request_id}.",
                payload={"request_id": attrs.request_id},
            )
        return ExecutionResult(
            Action.STATUS_RETRIEVED,
            f"Request {attrs.request_id} is {details.get('status', 'UNKNOWN').lower().replace('_', ' ')}.",
            payload={"request_id": attrs.request_id, "details": details},
        )

    def _handle_help(self, attrs: HelpAttributes, request_id: Optional[str]) -> ExecutionResult:
        key = help_topic_key(attrs.topic) or "general"
        return ExecutionResult(
            Action.HELP_PROVIDED,
            HELP_TOPICS[key],
            payload={
                "topic": attrs.topic or "general",
                "information": HELP_TOPICS[key],
                "emergency_numbers": dict(EMERGENCY_NUMBERS),
            },
        )
