"""
Race result record types

Shared dataclasses for parsed participant results, document metadata,
rosters and season standings.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Optional, List, Tuple


class DocumentUnreadable(Exception):
    """Source document is missing or cannot be opened"""


class RaceType(Enum):
    RACE_TIME = 'RACE_TIME'
    TIME_PER_KM = 'TIME_PER_KM'


@dataclass(frozen=True)
class RosterEntry:
    """Club member as listed in the roster file"""
    first_name: str
    last_name: str
    email: str = ''
    is_challenger: bool = False


@dataclass
class ParsedParticipantResult:
    """One participant row extracted from a results document"""
    position: int
    first_name: str
    last_name: str
    full_name_raw: str = ''
    race_time: Optional[timedelta] = None
    pace: Optional[timedelta] = None  # time per km
    team: Optional[str] = None
    speed_kmh: Optional[float] = None
    sex: Optional[str] = None  # 'M' or 'F'
    position_by_sex: Optional[int] = None
    age_category: Optional[str] = None
    position_by_category: Optional[int] = None
    is_member: bool = False
    is_disqualified: bool = False

    def completeness(self) -> int:
        """Score used to keep the richest row when a position appears twice"""
        score = 0
        if self.race_time:
            score += 10
        if self.speed_kmh is not None:
            score += 5
        if self.pace:
            score += 5
        if self.team:
            score += 3
        if self.sex:
            score += 2
        if self.age_category:
            score += 2
        if self.first_name and self.first_name != 'Unknown':
            score += 20
        if self.last_name and self.last_name != 'Unknown':
            score += 20
        return score


@dataclass
class DocumentMetadata:
    """Race facts derived from the document filename"""
    file_stem: str = ''
    race_date: Optional[date] = None
    race_name: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    distance_km: Optional[float] = None


@dataclass
class ParseStats:
    total_lines: int = 0
    blank_lines: int = 0
    successes: int = 0
    failures: int = 0
    header_skips: int = 0
    disqualified_skips: int = 0
    duplicates_removed: int = 0
    filtered_out: int = 0


@dataclass
class ParsedDocument:
    """Everything extracted from one results document"""
    source: str
    file_type: str
    format_name: str
    metadata: DocumentMetadata
    race_type: RaceType
    reference_time: Optional[timedelta] = None
    results: List[ParsedParticipantResult] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)

    @property
    def winner(self) -> Optional[ParsedParticipantResult]:
        for r in self.results:
            if r.position == 1:
                return r
        return None


# ---------------------------------------------------------------------------
# Season standings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassificationEntry:
    """A participant's scored result in one race of the season"""
    first_name: str
    last_name: str
    race_name: str
    race_number: int
    distance_km: float
    points: int
    bonus_km: float
    email: str = ''
    team: Optional[str] = None
    position: Optional[int] = None
    race_time: Optional[timedelta] = None
    pace: Optional[timedelta] = None
    speed_kmh: Optional[float] = None
    is_member: bool = True
    is_challenger: bool = False


@dataclass(frozen=True)
class RaceContribution:
    race_name: str
    race_number: int
    distance_km: float
    points: int
    bonus_km: float
    position: Optional[int] = None
    race_time: Optional[timedelta] = None
    speed_kmh: Optional[float] = None
    is_in_best7: bool = False


@dataclass(frozen=True)
class ChallengerSeasonRecord:
    """Aggregated season line for one challenger"""
    first_name: str
    last_name: str
    email: str
    team: Optional[str]
    contributions: Tuple[RaceContribution, ...]
    best7_points: int
    bonus_distance: float
    total_points: float
    total_distance: float
    race_count: int
    rank_by_points: int = 0
    rank_by_kms: int = 0
