"""Heuristic lookup of a meeting by title, date and time.

Used when a caller (for instance the chat assistant) refers to a meeting
without its ID. Matching is fuzzy by nature; this module never feeds the sync
engine, which works with IDs only.
"""

import logging
from datetime import date as date_type
from enum import IntEnum
from typing import Iterable, List, NamedTuple, Optional, Union

from .converter import normalize_time
from .models import Meeting

logger = logging.getLogger(__name__)


class MatchStage(IntEnum):
    """How a candidate matched; higher is more specific."""

    SUBSTRING = 1
    TITLE = 2
    TITLE_DATE = 3
    TITLE_DATE_TIME = 4


class Match(NamedTuple):
    meeting: Meeting
    stage: MatchStage


def _clean(text: Optional[str]) -> str:
    return (text or '').strip().lower()


def rank_matches(
    meetings: Iterable[Meeting],
    title: str,
    date: Union[str, date_type, None] = None,
    time: Optional[str] = None,
) -> List[Match]:
    """Every candidate with the most specific stage it satisfies.

    Exact (case-insensitive) title matches are refined by date, then by date
    and time. Substring matches are only considered when no title matches
    exactly. Results are ordered most specific first, then by input order.
    """
    wanted = _clean(title)
    if not wanted:
        return []
    wanted_date = date.isoformat() if isinstance(date, date_type) else date
    wanted_time = normalize_time(time) if time else None

    exact: List[Match] = []
    partial: List[Match] = []
    for meeting in meetings:
        current = _clean(meeting.title)
        if current == wanted:
            stage = MatchStage.TITLE
            if wanted_date and meeting.date == wanted_date:
                stage = MatchStage.TITLE_DATE
                if wanted_time and normalize_time(meeting.time) == wanted_time:
                    stage = MatchStage.TITLE_DATE_TIME
            exact.append(Match(meeting, stage))
        elif wanted in current:
            partial.append(Match(meeting, MatchStage.SUBSTRING))

    candidates = exact or partial
    return sorted(candidates, key=lambda match: -match.stage)


def find_best_match(
    meetings: Iterable[Meeting],
    title: str,
    date: Union[str, date_type, None] = None,
    time: Optional[str] = None,
) -> Optional[Meeting]:
    """Pick the meeting a title/date/time most likely refers to.

    Date and time only narrow down meetings sharing the exact title. When the
    best stage reached is a bare title or a substring, a single candidate is
    required; several equally good candidates yield None rather than a guess.
    """
    ranked = rank_matches(meetings, title, date, time)
    if not ranked:
        return None

    best_stage = ranked[0].stage
    best = [match for match in ranked if match.stage == best_stage]
    if best_stage <= MatchStage.TITLE and len(best) > 1:
        logger.info(f"{len(best)} meetings match '{title}' equally well, not guessing")
        return None
    return best[0].meeting
