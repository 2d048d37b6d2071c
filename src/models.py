"""Record types shared by the stores and the engines."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Episode:
    episode_id: int
    user_id: int
    episode_type: str
    episode_date: datetime
    severity_score: float
    trigger_category: Optional[str] = None
    location: Optional[str] = None
    has_biological_factors: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Episode":
        return cls(
            episode_id=int(row["episode_id"]),
            user_id=int(row["user_id"]),
            episode_type=str(row["episode_type"]),
            episode_date=row["episode_date"],
            severity_score=float(row["severity_score"] or 0),
            trigger_category=row.get("trigger_category") or None,
            location=row.get("location") or None,
            has_biological_factors=bool(row.get("has_biological_factors")),
        )


@dataclass
class Correlation:
    user_id: int
    primary_episode_id: int
    primary_type: str
    related_episode_id: int
    related_type: str
    correlation_type: str
    time_offset_hours: float
    correlation_strength: float
    confidence_score: float
    factors: List[str] = field(default_factory=list)
    discovered_date: Optional[datetime] = None
    correlation_id: Optional[int] = None

    def pair_key(self) -> frozenset:
        return frozenset((self.primary_episode_id, self.related_episode_id))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Correlation":
        factors = row.get("factors") or []
        if isinstance(factors, str):
            factors = [f for f in factors.split(",") if f]
        return cls(
            correlation_id=row.get("correlation_id"),
            user_id=int(row["user_id"]),
            primary_episode_id=int(row["primary_episode_id"]),
            primary_type=str(row["primary_type"]),
            related_episode_id=int(row["related_episode_id"]),
            related_type=str(row["related_type"]),
            correlation_type=str(row["correlation_type"]),
            time_offset_hours=float(row["time_offset_hours"]),
            correlation_strength=float(row["correlation_strength"]),
            confidence_score=float(row["confidence_score"]),
            factors=list(factors),
            discovered_date=row.get("discovered_date"),
        )


@dataclass
class CorrelationPattern:
    user_id: int
    pattern_subtype: str
    pattern_level: str
    correlation_type: str
    occurrence_count: int
    average_strength: float
    average_time_offset: float
    confidence_score: float
    first_detected: datetime
    last_detected: datetime
    pattern_type: str = "correlation"
    pattern_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CorrelationPattern":
        return cls(
            pattern_id=row.get("pattern_id"),
            user_id=int(row["user_id"]),
            pattern_type=row.get("pattern_type") or "correlation",
            pattern_subtype=str(row["pattern_subtype"]),
            pattern_level=str(row["pattern_level"]),
            correlation_type=str(row["correlation_type"]),
            occurrence_count=int(row["occurrence_count"]),
            average_strength=float(row["average_strength"]),
            average_time_offset=float(row["average_time_offset"]),
            confidence_score=float(row["confidence_score"]),
            first_detected=row["first_detected"],
            last_detected=row["last_detected"],
        )


@dataclass
class ForecastWindow:
    key: str
    name: str
    hours: int
    min_membership: str
    update_frequency: str
    algorithms: List[str]

    @classmethod
    def from_config(cls, key: str, config: Dict[str, Any]) -> "ForecastWindow":
        return cls(
            key=key,
            name=config["name"],
            hours=int(config["hours"]),
            min_membership=config["min_membership"],
            update_frequency=config["update_frequency"],
            algorithms=list(config["algorithms"]),
        )
