"""
Attendance aggregation
Collapses raw scans into one time_in / time_out record per person per day
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from terminal.models import RawEvent

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r'(?:^|[T ])(\d{2}):(\d{2}):(\d{2})')


@dataclass(frozen=True)
class TimeThreshold:
    """Time of day at or after which a scan counts as a check-out"""
    hour: int = 14
    minute: int = 30

    def reached_by(self, hour: int, minute: int) -> bool:
        return hour > self.hour or (hour == self.hour and minute >= self.minute)


@dataclass(frozen=True)
class AggregatedRecord:
    person_id: str
    time_in: str
    time_out: Optional[str] = None

    def to_payload(self) -> Dict[str, str]:
        payload = {'adm_no': self.person_id, 'time_in': self.time_in}
        if self.time_out is not None:
            payload['time_out'] = self.time_out
        return payload


def parse_device_time(value: Optional[str]) -> Optional[Tuple[int, int, int, str]]:
    """
    Extract (hour, minute, second, "HH:MM:SS") from a device timestamp such as
    2024-11-20T14:35:07, 2024-11-20T14:35:07+03:00 or 2024-11-20T14:35:07Z.
    The offset is ignored: the terminal clock is assumed to be local time.
    """
    if not value:
        return None
    local = re.sub(r'(Z|[+-]\d{2}:?\d{2})$', '', str(value).strip())
    match = _TIME_PATTERN.search(local)
    if not match:
        return None
    hour, minute, second = (int(part) for part in match.groups())
    if hour > 23 or minute > 59 or second > 59:
        return None
    return hour, minute, second, f"{match.group(1)}:{match.group(2)}:{match.group(3)}"


def _valid_person_id(person_id: Optional[str]) -> Optional[str]:
    pid = (person_id or "").strip()
    if not pid or not pid.strip('0'):
        return None
    return pid


def aggregate(events: Iterable[RawEvent], threshold: TimeThreshold = TimeThreshold()) -> List[AggregatedRecord]:
    """
    time_in  = earliest valid scan of the person
    time_out = latest scan at or after the threshold, absent when none exists
    A single pre-threshold badge-in is not evidence of departure.
    """
    events = list(events)
    by_person: Dict[str, List[Tuple[int, int, int, str]]] = {}
    skipped = 0

    for event in events:
        person_id = _valid_person_id(event.person_id)
        if person_id is None:
            skipped += 1
            continue
        by_person.setdefault(person_id, [])
        parsed = parse_device_time(event.event_time_local)
        if parsed is not None:
            by_person[person_id].append(parsed)

    logger.info(f"[AGGREGATE] {len(events)} raw event(s), {skipped} skipped (no ID), "
                f"{len(events) - skipped} retained for {len(by_person)} person(s)")

    records = []
    for person_id, times in by_person.items():
        if not times:
            logger.debug(f"[AGGREGATE] {person_id}: no parseable timestamps, dropped")
            continue

        # Zero-padded, timezone-free HH:MM:SS sorts chronologically
        times.sort(key=lambda t: t[3])
        after_threshold = [t for t in times if threshold.reached_by(t[0], t[1])]

        records.append(AggregatedRecord(
            person_id=person_id,
            time_in=times[0][3],
            time_out=after_threshold[-1][3] if after_threshold else None,
        ))

    return records
