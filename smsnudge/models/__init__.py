"""
Data Models
Dataclasses for all entities. These are pure Python objects, no database logic.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class VisitingType(Enum):
    """Visit cadence categories assigned by the booking sync."""
    NEW = 'new'
    CONSISTENT = 'consistent'
    SEMI_CONSISTENT = 'semi-consistent'
    REGULAR = 'regular'
    EASY_GOING = 'easy-going'
    OCCASIONAL = 'occasional'
    RARE = 'rare'
    LAPSED = 'lapsed'

    @property
    def expected_interval_days(self) -> int:
        return _EXPECTED_INTERVAL_DAYS[self]

    @property
    def max_days_since_visit(self) -> int:
        """Auto-nudge skips clients not seen for longer than this."""
        return _MAX_DAYS_SINCE_VISIT[self]

    @property
    def is_priority(self) -> bool:
        return self in _PRIORITY_TYPES


_EXPECTED_INTERVAL_DAYS = {
    VisitingType.NEW: 21,
    VisitingType.CONSISTENT: 14,
    VisitingType.SEMI_CONSISTENT: 28,
    VisitingType.REGULAR: 30,
    VisitingType.EASY_GOING: 45,
    VisitingType.OCCASIONAL: 60,
    VisitingType.RARE: 90,
    VisitingType.LAPSED: 180,
}

_MAX_DAYS_SINCE_VISIT = {
    VisitingType.NEW: 90,
    VisitingType.CONSISTENT: 60,
    VisitingType.SEMI_CONSISTENT: 90,
    VisitingType.REGULAR: 90,
    VisitingType.EASY_GOING: 120,
    VisitingType.OCCASIONAL: 150,
    VisitingType.RARE: 210,
    VisitingType.LAPSED: 365,
}

_PRIORITY_TYPES = {VisitingType.CONSISTENT, VisitingType.SEMI_CONSISTENT, VisitingType.REGULAR}


@dataclass
class Client:
    """A customer of an account (barber), as synced from the booking platform."""
    client_id: str = ''
    account_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_normalized: Optional[str] = None
    first_appt: Optional[date] = None
    last_appt: Optional[date] = None
    total_appointments: int = 0
    visiting_type: Optional[str] = None
    avg_weekly_visits: Optional[float] = None
    sms_subscribed: bool = True
    date_last_sms_sent: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass
class ScoredClient(Client):
    """Client annotated with selection-time fields. Recomputed on every call."""
    score: float = 0
    days_since_last_visit: int = 0
    expected_visit_interval_days: int = 0
    days_overdue: int = 0
    boost: int = 0
    matched_last_year: bool = False
    holiday_cohort: Optional[str] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_client(cls, client: Client, **computed) -> 'ScoredClient':
        base = {k: v for k, v in vars(client).items() if k in _CLIENT_FIELDS}
        return cls(**base, **computed)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, (date, datetime)):
                data[key] = value.isoformat()
        data['full_name'] = self.full_name
        return data


_CLIENT_FIELDS = set(Client.__dataclass_fields__)


@dataclass(frozen=True)
class Holiday:
    """Recurring promotional window. id is '<base>_<year>'."""
    id: str
    name: str
    year: int
    start_date: date
    end_date: date
    activation_days_before: int = 0


@dataclass
class HolidaySensitivity:
    """Whether a client visited around last year's edition of a holiday."""
    boost: int = 0
    matched_last_year: bool = False
    holiday_cohort: Optional[str] = None


@dataclass
class CreditAccount:
    """SMS credit balance for an account."""
    account_id: str = ''
    available_credits: int = 0
    reserved_credits: int = 0
    updated_at: Optional[datetime] = None


@dataclass
class MessageOverrides:
    """Manual picks saved on an existing scheduled message."""
    selected_clients: List[Dict[str, Any]] = field(default_factory=list)
    deselected_phones: List[str] = field(default_factory=list)


@dataclass
class SelectionResult:
    """Ranked recipients plus the clients who qualified but were left out."""
    clients: List[ScoredClient] = field(default_factory=list)
    deselected_clients: List[ScoredClient] = field(default_factory=list)
    rejected: List[ScoredClient] = field(default_factory=list)

    @property
    def total_available_clients(self) -> int:
        return len(self.clients) + len(self.deselected_clients)


@dataclass
class PreviewResult:
    """Response shape for a recipient preview."""
    success: bool = True
    algorithm: str = ''
    clients: List[ScoredClient] = field(default_factory=list)
    deselected_clients: Optional[List[ScoredClient]] = None
    total_available_clients: Optional[int] = None
    stats: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def phone_numbers(self) -> List[Dict[str, Any]]:
        return [
            {
                'full_name': c.full_name,
                'phone_normalized': c.phone_normalized,
                'client_id': c.client_id or None,
            }
            for c in self.clients
        ]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'success': self.success,
            'algorithm': self.algorithm,
            'clients': [c.to_dict() for c in self.clients],
            'phoneNumbers': self.phone_numbers,
            'stats': self.stats,
        }
        if self.deselected_clients is not None:
            data['deselectedClients'] = [c.to_dict() for c in self.deselected_clients]
        if self.total_available_clients is not None:
            data['totalAvailableClients'] = self.total_available_clients
        if self.message:
            data['message'] = self.message
        return data


@dataclass
class BucketResult:
    """Outcome of a weekly auto-nudge run."""
    success: bool = True
    iso_week: str = ''
    bucket_id: Optional[int] = None
    created: bool = False
    total_clients: int = 0
