"""
Collaborator interfaces consumed by the engines.

The engines never reach for globals: every store, registry and service is
passed in at construction time, so tests swap in fakes freely.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from models import Correlation, CorrelationPattern, Episode


class EpisodeStore(Protocol):
    def get_episode(self, episode_id: int) -> Optional[Episode]: ...

    def get_episodes(self, user_id: int, start: datetime, end: datetime,
                     episode_type: Optional[str] = None) -> List[Episode]: ...

    def count_episodes(self, user_id: int) -> int: ...

    def get_active_user_ids(self, since: datetime) -> List[int]: ...

    def get_last_episode_date(self, user_id: int,
                              min_severity: Optional[float] = None) -> Optional[datetime]: ...


class CorrelationStore(Protocol):
    def find_correlation(self, episode_a: int, episode_b: int) -> Optional[Correlation]: ...

    def insert_correlation(self, correlation: Correlation) -> int: ...

    def update_correlation_scores(self, correlation_id: int, strength: float,
                                  confidence: float) -> None: ...

    def count_correlations(self, user_id: int, primary_type: str, related_type: str,
                           correlation_type: str,
                           min_strength: Optional[float] = None) -> int: ...

    def average_strength(self, user_id: int, type_a: str, type_b: str) -> Optional[float]: ...

    def get_correlations(self, user_id: int, min_strength: Optional[float] = None,
                         since: Optional[datetime] = None) -> List[Correlation]: ...

    def get_group_correlations(self, user_id: int, primary_type: str, related_type: str,
                               correlation_type: str) -> List[Correlation]: ...

    def delete_weak_correlations(self, max_strength: float, older_than: datetime) -> int: ...

    def insert_ai_correlation(self, user_id: int, correlation: Dict[str, Any],
                              discovered_at: datetime) -> None: ...

    def get_pattern_levels(self, user_id: int, pattern_subtype: str,
                           correlation_type: str) -> Set[str]: ...

    def insert_pattern(self, pattern: CorrelationPattern) -> bool: ...

    def get_patterns(self, user_id: int) -> List[CorrelationPattern]: ...


class ForecastLogStore(Protocol):
    def log_forecast(self, record: Dict[str, Any]) -> None: ...

    def get_forecast_logs(self, user_id: int, window: str,
                          since: datetime) -> List[Dict[str, Any]]: ...


class ForecastContributor(Protocol):
    def contribute_to_forecast(self, user_id: int, window: str) -> Optional[Dict[str, Any]]: ...


class EpisodeTypeRegistry(Protocol):
    def can_correlate(self, type_a: str, type_b: str) -> bool: ...

    def base_correlation_strength(self, type_a: str, type_b: str) -> float: ...

    def get_type_config(self, episode_type: str) -> Optional[Dict[str, Any]]: ...

    def get_contributor(self, episode_type: str) -> Optional[ForecastContributor]: ...


class PatternSource(Protocol):
    def get_user_patterns(self, user_id: int,
                          episode_type: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]: ...

    def check_active_sequence(self, user_id: int,
                              sequence_data: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def calculate_risk_score(self, user_id: int, episode_type: str, window: str) -> float: ...


class MembershipService(Protocol):
    def get_user_tier(self, user_id: int) -> str: ...


class AIService(Protocol):
    def detect_correlations(self, user_id: int, window_days: int) -> List[Dict[str, Any]]: ...

    def predict_episode_risk(self, user_id: int, window: str,
                             forecast: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...


class ForecastCache(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class BiologicalDataSource(Protocol):
    def get_tracking_preferences(self, user_id: int) -> Dict[str, Any]: ...

    def get_menstrual_cycle_data(self, user_id: int) -> Optional[Dict[str, Any]]: ...

    def get_sleep_summary(self, user_id: int, days: int) -> Optional[Dict[str, Any]]: ...


class UserPreferences(Protocol):
    def get_enabled_episode_types(self, user_id: int) -> Iterable[str]: ...

    def get_emergency_contacts(self, user_id: int) -> List[Dict[str, Any]]: ...


class CopingStrategySource(Protocol):
    def get_effective_strategies(self, user_id: int) -> List[Dict[str, Any]]: ...
