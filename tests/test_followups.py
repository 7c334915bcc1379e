import os, sys
import datetime as dt
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from followups import (AuditEntry, parse_follow_ups, append_follow_up, follow_up_header,
                       format_follow_up_timestamp, entries_for_display,
                       UNIDENTIFIED_AUTHOR, UNFORMATTED_AUTHOR, NO_TIMESTAMP)


def test_empty_input_has_no_entries():
    assert parse_follow_ups('') == []
    assert parse_follow_ups(None) == []


def test_text_without_headers_is_one_legacy_entry():
    entries = parse_follow_ups('  Revisado \n')
    assert entries == [AuditEntry('Revisado', legacy=True)]
    assert entries[0].as_dict() == {'autor': UNIDENTIFIED_AUTHOR,
                                    'fecha': NO_TIMESTAMP,
                                    'contenido': 'Revisado'}


def test_header_trails_its_content():
    text = 'Nota A\n\n--- Seguimiento por: ana@x.com (2024-01-01 10:00) ---'
    entries = entries_for_display(parse_follow_ups(text))
    assert entries == [{'autor': 'ana@x.com', 'fecha': '2024-01-01 10:00',
                        'contenido': 'Nota A'}]


def test_appends_parse_back_in_order():
    t1 = format_follow_up_timestamp(dt.datetime(2024, 1, 1, 10, 0, 0))
    t2 = format_follow_up_timestamp(dt.datetime(2024, 1, 2, 9, 30, 5))
    text = append_follow_up(None, 'Nota A', 'ana@x.com', t1)
    text = append_follow_up(text, 'Nota B\nsegunda línea', 'beto@x.com', t2)
    entries = parse_follow_ups(text)
    assert [(e.author, e.timestamp, e.content) for e in entries] == [
        ('ana@x.com', '1/1/2024, 10:00:00', 'Nota A'),
        ('beto@x.com', '2/1/2024, 09:30:05', 'Nota B\nsegunda línea'),
    ]
    newest = entries_for_display(entries, newest_first=True)
    assert [e['autor'] for e in newest] == ['beto@x.com', 'ana@x.com']


def test_unsigned_trailing_text():
    text = 'Nota A\n\n' + follow_up_header('ana@x.com', 'T1') + '\n\nBorrador'
    entries = parse_follow_ups(text)
    assert len(entries) == 2
    assert entries[1].author is None and not entries[1].legacy
    assert entries[1].as_dict() == {'autor': UNFORMATTED_AUTHOR,
                                    'fecha': NO_TIMESTAMP,
                                    'contenido': 'Borrador'}


def test_headers_without_content_are_skipped():
    text = follow_up_header('ana@x.com', 'T1') + '\n\nNota B\n\n' + follow_up_header('beto@x.com', 'T2')
    entries = parse_follow_ups(text)
    assert [(e.author, e.content) for e in entries] == [('beto@x.com', 'Nota B')]


def test_whitespace_only_text_is_one_blank_entry():
    entries = parse_follow_ups('  \n  ')
    assert len(entries) == 1
    assert entries[0].as_dict() == {'autor': UNIDENTIFIED_AUTHOR,
                                    'fecha': NO_TIMESTAMP,
                                    'contenido': ''}
