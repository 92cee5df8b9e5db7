"""Response shapes for the HTTP integration (health, publish, stats)."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


# ---- Health ----

@dataclass
class HealthResponse:
    """Response for GET /health."""
    uptime_sec: float
    identity: str
    policy: str
    producers: List[str] = field(default_factory=list)
    pending_dispatch: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_sec": int(self.uptime_sec),
            "identity": self.identity,
            "policy": self.policy,
            "producers": self.producers,
            "pending_dispatch": self.pending_dispatch,
        }


# ---- Publish ----

@dataclass
class PublishAccepted:
    """Response for POST /publish (202 Accepted). The store work happens after the response."""
    status: str = "accepted"
    action: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def stats_response(snapshot: Dict[str, Dict[str, int]]) -> Dict[str, Any]:
    """Response for GET /stats."""
    return {"counters": snapshot.get("counters", {}), "gauges": snapshot.get("gauges", {})}


# Error codes
ERROR_BAD_REQUEST = "BAD_REQUEST"
ERROR_NOT_STARTED = "NOT_STARTED"


def error_body(code: str, message: str) -> Dict[str, Any]:
    return {"error": code, "message": message}
