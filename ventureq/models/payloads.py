"""Typed job payloads, one variant per queue"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Union

from ventureq.exceptions import InvalidPayload


class Source(Enum):
    """Trend sources scanned by opportunity detection"""
    GOOGLE_TRENDS = "google_trends"
    REDDIT = "reddit"
    PRODUCT_HUNT = "product_hunt"
    INDIE_HACKERS = "indie_hackers"


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    """Read a field by its snake_case name, falling back to the producers' camelCase"""
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayload(f"'{field_name}' must be a non-empty string")
    return value


@dataclass(frozen=True)
class OpportunityDetectionPayload:
    sources: FrozenSet[Source]
    force_refresh: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.sources, (set, frozenset, list, tuple)) or not self.sources:
            raise InvalidPayload("'sources' must be a non-empty collection")
        parsed = frozenset(_parse_source(s) for s in self.sources)
        object.__setattr__(self, 'sources', parsed)
        if not isinstance(self.force_refresh, bool):
            raise InvalidPayload("'force_refresh' must be a boolean")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sources': sorted(s.value for s in self.sources),
            'force_refresh': self.force_refresh,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OpportunityDetectionPayload':
        return cls(
            sources=data.get('sources'),
            force_refresh=_pick(data, 'force_refresh', 'forceRefresh', False),
        )


def _parse_source(value: Union[str, Source]) -> Source:
    if isinstance(value, Source):
        return value
    try:
        return Source(value)
    except ValueError:
        valid = ', '.join(s.value for s in Source)
        raise InvalidPayload(f"Unknown source '{value}' (expected one of: {valid})") from None


@dataclass(frozen=True)
class BusinessLaunchStepPayload:
    business_id: str
    user_id: str
    step: int

    MIN_STEP = 1
    MAX_STEP = 8

    def __post_init__(self) -> None:
        _require_str(self.business_id, 'business_id')
        _require_str(self.user_id, 'user_id')
        # bool is an int subclass; reject it explicitly
        if not isinstance(self.step, int) or isinstance(self.step, bool):
            raise InvalidPayload("'step' must be an integer")
        if not self.MIN_STEP <= self.step <= self.MAX_STEP:
            raise InvalidPayload(
                f"'step' must be between {self.MIN_STEP} and {self.MAX_STEP}, got {self.step}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {'business_id': self.business_id, 'user_id': self.user_id, 'step': self.step}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BusinessLaunchStepPayload':
        return cls(
            business_id=_pick(data, 'business_id', 'businessId'),
            user_id=_pick(data, 'user_id', 'userId'),
            step=data.get('step'),
        )


@dataclass(frozen=True)
class MetricsAggregationPayload:
    business_id: str
    date: date

    def __post_init__(self) -> None:
        _require_str(self.business_id, 'business_id')
        value = self.date
        # datetime is a date subclass; keep only the calendar day
        if isinstance(value, datetime):
            object.__setattr__(self, 'date', value.date())
        elif isinstance(value, str):
            try:
                value = date.fromisoformat(value)
            except ValueError:
                raise InvalidPayload(f"'date' must be an ISO date (YYYY-MM-DD), got '{self.date}'") from None
            object.__setattr__(self, 'date', value)
        elif not isinstance(value, date):
            raise InvalidPayload("'date' must be a calendar date")

    def to_dict(self) -> Dict[str, Any]:
        return {'business_id': self.business_id, 'date': self.date.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetricsAggregationPayload':
        return cls(
            business_id=_pick(data, 'business_id', 'businessId'),
            date=data.get('date'),
        )


Payload = Union[OpportunityDetectionPayload, BusinessLaunchStepPayload, MetricsAggregationPayload]


def sources_from(values: Iterable[Union[str, Source]]) -> FrozenSet[Source]:
    """Parse source names (CLI/HTTP input) into a set of Source members"""
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise InvalidPayload("'sources' must be a list of source names")
    return frozenset(_parse_source(v) for v in values)
