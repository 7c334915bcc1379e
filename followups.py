"""Follow-up trail of maintenance activities.

Older records keep the whole trail in ``Activity.observation`` as free text,
each note followed by a header naming its author and time::

    Nota A

    --- Seguimiento por: ana@x.com (1/1/2024, 10:00:00) ---

    Nota B

    --- Seguimiento por: beto@x.com (2/1/2024, 09:30:00) ---

New notes are stored as ``FollowUp`` rows. The text format is still parsed
once per activity to migrate old data, and still written so clients that
only read ``observation`` see the same trail.
"""
import re
import datetime as dt
from dataclasses import dataclass
from typing import List, Optional

from models import FollowUp

FOLLOW_UP_HEADER = re.compile(r'--- Seguimiento por: (.*?) \((.*?)\) ---')

UNIDENTIFIED_AUTHOR = 'Usuario no identificado'
UNFORMATTED_AUTHOR = 'Entrada sin formato'
NO_TIMESTAMP = 'Fecha no registrada'


@dataclass(frozen=True)
class AuditEntry:
    content: str
    author: Optional[str] = None
    timestamp: Optional[str] = None
    # Text written before headers existed at all.
    legacy: bool = False

    def display_author(self) -> str:
        if self.author is not None:
            return self.author
        return UNIDENTIFIED_AUTHOR if self.legacy else UNFORMATTED_AUTHOR

    def display_timestamp(self) -> str:
        return self.timestamp if self.timestamp is not None else NO_TIMESTAMP

    def as_dict(self) -> dict:
        return {'autor': self.display_author(),
                'fecha': self.display_timestamp(),
                'contenido': self.content}


def format_follow_up_timestamp(moment: dt.datetime) -> str:
    return f'{moment.day}/{moment.month}/{moment.year}, {moment:%H:%M:%S}'


def follow_up_header(author: str, timestamp: str) -> str:
    return f'--- Seguimiento por: {author} ({timestamp}) ---'


def append_follow_up(existing: Optional[str], content: str, author: str,
                     timestamp: str) -> str:
    entry = f'{content.strip()}\n\n{follow_up_header(author, timestamp)}'
    return f'{existing}\n\n{entry}' if existing else entry


def parse_follow_ups(text: Optional[str]) -> List[AuditEntry]:
    """Split a follow-up text blob into entries, oldest first.

    A header closes the note written before it. Text after the last header
    has not been signed yet and comes back without author or timestamp."""
    if not text:
        return []
    headers = list(FOLLOW_UP_HEADER.finditer(text))
    if not headers:
        return [AuditEntry(text.strip(), legacy=True)]

    entries = []
    start = 0
    for match in headers:
        content = text[start:match.start()].strip()
        if content:
            entries.append(AuditEntry(content, match.group(1).strip(),
                                      match.group(2).strip()))
        start = match.end()
    trailing = text[start:].strip()
    if trailing:
        entries.append(AuditEntry(trailing))
    return entries


def entries_for_display(entries, newest_first=False):
    ordered = reversed(entries) if newest_first else entries
    return [e.as_dict() for e in ordered]


def _row_entry(row: FollowUp) -> AuditEntry:
    return AuditEntry(row.content, row.author, row.timestamp, bool(row.legacy))


def migrate_follow_ups(activity) -> int:
    """Turn an activity's legacy observation text into FollowUp rows.

    Runs once per activity; returns how many rows were created. The caller
    commits."""
    if activity.follow_ups_migrated:
        return 0
    created = 0
    for entry in parse_follow_ups(activity.observation):
        if not entry.content:
            continue
        activity.follow_ups.append(FollowUp(
            position=len(activity.follow_ups), author=entry.author,
            timestamp=entry.timestamp, content=entry.content,
            legacy=entry.legacy))
        created += 1
    activity.follow_ups_migrated = True
    return created


def activity_entries(activity) -> List[AuditEntry]:
    migrate_follow_ups(activity)
    return [_row_entry(row) for row in activity.follow_ups]


def add_follow_up(activity, content: str, author: str, moment=None) -> FollowUp:
    migrate_follow_ups(activity)
    timestamp = format_follow_up_timestamp(moment or dt.datetime.now())
    row = FollowUp(position=len(activity.follow_ups), author=author,
                   timestamp=timestamp, content=content.strip())
    activity.follow_ups.append(row)
    activity.observation = append_follow_up(activity.observation, content,
                                            author, timestamp)
    return row


def reset_follow_ups(activity):
    """Drop migrated rows after the observation text was rewritten."""
    activity.follow_ups.clear()
    activity.follow_ups_migrated = False
