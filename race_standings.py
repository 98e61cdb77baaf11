"""
Challenge standings

Scores each race of the season against its reference time and rolls the
per-race entries up into the challenger classification: best 7 races plus
distance bonus, ranked by points and by kilometres.
"""

import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import timedelta
from typing import Optional, List, Dict, Tuple

import pandas as pd

from race_models import (
    ChallengerSeasonRecord,
    ClassificationEntry,
    ParsedDocument,
    ParsedParticipantResult,
    RaceContribution,
    RaceType,
    RosterEntry,
)

log = logging.getLogger(__name__)

BEST_RACES_COUNT = 7
POINTS_SCALE = 1000
MIN_VALID_RACE_TIME = timedelta(minutes=10)
MAX_VALID_RACE_TIME = timedelta(hours=5)


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------

def compute_points(reference: timedelta, time: timedelta) -> int:
    """round(reference / time * 1000); equal to the reference scores 1000

    >>> compute_points(timedelta(minutes=30), timedelta(minutes=40))
    750
    """
    if time.total_seconds() <= 0:
        raise ValueError('participant time must be positive')
    return int(round(reference.total_seconds() / time.total_seconds() * POINTS_SCALE))


def is_valid_race_time(time: Optional[timedelta]) -> bool:
    return time is not None and MIN_VALID_RACE_TIME < time < MAX_VALID_RACE_TIME


def _scored_time(result: ParsedParticipantResult, race_type: RaceType) -> Optional[timedelta]:
    if race_type == RaceType.TIME_PER_KM:
        return result.pace
    return result.race_time


def classify_race(document: ParsedDocument, roster: List[RosterEntry], race_name: str,
                  race_number: int, distance_km: float) -> List[ClassificationEntry]:
    """Scored entries for the members (and the winner) of one race.

    The reference is the document's TREF time, or the winner's time when
    the document has none. Pace races compare time per km.
    """
    race_type = document.race_type
    reference = document.reference_time
    if reference is None and document.winner is not None:
        reference = _scored_time(document.winner, race_type)
    if reference is None:
        log.warning('%s: no reference time, members score 0 points', race_name)

    by_name: Dict[Tuple[str, str], RosterEntry] = {}
    for member in roster:
        by_name.setdefault((member.first_name, member.last_name), member)

    entries = []
    for r in document.results:
        if not r.is_member and r.position != 1:
            continue
        time = _scored_time(r, race_type)
        points = 0
        if reference is not None and time:
            if race_type == RaceType.RACE_TIME and not is_valid_race_time(time):
                log.debug('%s: ignoring race time %s of %s %s', race_name, time,
                          r.first_name, r.last_name)
            else:
                points = compute_points(reference, time)
        member = by_name.get((r.first_name, r.last_name)) if r.is_member else None
        entries.append(ClassificationEntry(
            first_name=r.first_name,
            last_name=r.last_name,
            race_name=race_name,
            race_number=race_number,
            distance_km=distance_km,
            points=points,
            bonus_km=distance_km if r.is_member else 0,
            email=member.email if member else '',
            team=r.team,
            position=r.position,
            race_time=r.race_time,
            pace=r.pace,
            speed_kmh=r.speed_kmh,
            is_member=r.is_member,
            is_challenger=bool(member and member.is_challenger),
        ))
    return entries


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _name_key(record: ChallengerSeasonRecord):
    return record.last_name.lower(), record.first_name.lower(), record.email.lower()


def aggregate(entries: List[ClassificationEntry],
              best_count: int = BEST_RACES_COUNT) -> List[ChallengerSeasonRecord]:
    """Season standings of the challengers in entries, ordered by rank.

    Entries are grouped by (first name, last name, email, team). Each group
    scores its best ``best_count`` races plus the distance bonus of every
    race. Ties on points go to the longer total distance, then by name.
    """
    groups: Dict[tuple, List[ClassificationEntry]] = OrderedDict()
    for e in entries:
        if not e.is_challenger:
            continue
        groups.setdefault((e.first_name, e.last_name, e.email, e.team), []).append(e)

    records = []
    for (first, last, email, team), items in groups.items():
        ranked = sorted(range(len(items)), key=lambda i: (-items[i].points, items[i].race_number))
        best = set(ranked[:best_count])
        best_points = sum(items[i].points for i in best)
        bonus = sum(e.bonus_km for e in items)
        contributions = tuple(
            RaceContribution(
                race_name=items[i].race_name,
                race_number=items[i].race_number,
                distance_km=items[i].distance_km,
                points=items[i].points,
                bonus_km=items[i].bonus_km,
                position=items[i].position,
                race_time=items[i].race_time,
                speed_kmh=items[i].speed_kmh,
                is_in_best7=i in best,
            )
            for i in sorted(range(len(items)), key=lambda i: items[i].race_number)
        )
        records.append(ChallengerSeasonRecord(
            first_name=first,
            last_name=last,
            email=email,
            team=team,
            contributions=contributions,
            best7_points=best_points,
            bonus_distance=bonus,
            total_points=best_points + bonus,
            total_distance=sum(e.distance_km for e in items),
            race_count=len(items),
        ))

    by_kms = sorted(records, key=lambda r: (-r.total_distance,) + _name_key(r))
    km_rank = {id(r): i for i, r in enumerate(by_kms, start=1)}
    by_points = sorted(records, key=lambda r: (-r.total_points, -r.total_distance) + _name_key(r))
    return [replace(r, rank_by_points=i, rank_by_kms=km_rank[id(r)])
            for i, r in enumerate(by_points, start=1)]


def standings_to_dataframe(records: List[ChallengerSeasonRecord]) -> pd.DataFrame:
    if not records:
        return pd.DataFrame()
    return pd.DataFrame([{
        'rank_by_points': r.rank_by_points,
        'rank_by_kms': r.rank_by_kms,
        'last_name': r.last_name,
        'first_name': r.first_name,
        'email': r.email,
        'team': r.team,
        'race_count': r.race_count,
        'best7_points': r.best7_points,
        'bonus_distance': r.bonus_distance,
        'total_points': r.total_points,
        'total_distance': r.total_distance,
        'races': ', '.join(
            f"{c.race_number}:{c.points}{'*' if c.is_in_best7 else ''}" for c in r.contributions),
    } for r in records])
