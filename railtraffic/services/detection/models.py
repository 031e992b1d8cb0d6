"""
Data models for the live conflict detector.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from railtraffic.services.optimization.models import utcnow


class ConflictType(Enum):
    CONVERGING_PATHS = "CONVERGING_PATHS"
    RESOURCE_OVERALLOCATION = "RESOURCE_OVERALLOCATION"
    DELAY_BUBBLE_UP = "DELAY_BUBBLE_UP"
    SAFETY_DISTANCE_VIOLATION = "SAFETY_DISTANCE_VIOLATION"


class ConflictSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecommendedAction(Enum):
    PRIORITY_BASED_SEQUENCING = "PRIORITY_BASED_SEQUENCING"
    STAGGER_ARRIVALS = "STAGGER_ARRIVALS"
    PRIORITY_RESEQUENCING = "PRIORITY_RESEQUENCING"
    EMERGENCY_HALT = "EMERGENCY_HALT"


@dataclass
class Conflict:
    """A detected conflict event."""
    conflict_id: str
    detected_at: datetime
    conflict_type: ConflictType
    severity: ConflictSeverity
    train_ids: List[str]
    location: Dict[str, Any]
    description: str
    recommended_action: RecommendedAction
    estimated_conflict_time: Optional[datetime] = None
    resolution_order: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(
        conflict_type: ConflictType,
        severity: ConflictSeverity,
        train_ids: List[str],
        location: Dict[str, Any],
        description: str,
        recommended_action: RecommendedAction,
        estimated_conflict_time: Optional[datetime] = None,
        resolution_order: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
        detected_at: Optional[datetime] = None,
    ) -> "Conflict":
        return Conflict(
            conflict_id=f"conflict_{uuid.uuid4().hex[:12]}",
            detected_at=detected_at or utcnow(),
            conflict_type=conflict_type,
            severity=severity,
            train_ids=list(train_ids),
            location=location,
            description=description,
            recommended_action=recommended_action,
            estimated_conflict_time=estimated_conflict_time,
            resolution_order=list(resolution_order or []),
            details=details or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "type": self.conflict_type.value,
            "severity": self.severity.value,
            "trains": self.train_ids,
            "location": self.location,
            "description": self.description,
            "recommended_action": self.recommended_action.value,
            "detected_at": self.detected_at.isoformat(),
            "estimated_conflict_time": (
                self.estimated_conflict_time.isoformat() if self.estimated_conflict_time else None
            ),
            "resolution_order": self.resolution_order,
            "details": self.details,
        }
