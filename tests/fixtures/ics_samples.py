"""Sample iCalendar feeds used across tests."""


def calendar(*events: str, header: str = "") -> str:
    """Wrap VEVENT blocks in a VCALENDAR with CRLF line endings."""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//CalendarSync Tests//EN"]
    if header:
        lines.extend(header.strip().splitlines())
    for event in events:
        lines.extend(event.strip().splitlines())
    lines.append("END:VCALENDAR")
    return "\r\n".join(line.strip() for line in lines) + "\r\n"


EVT_1 = """
BEGIN:VEVENT
UID:evt-1
DTSTAMP:20240201T000000Z
DTSTART:20240301T100000Z
DTEND:20240301T110000Z
SUMMARY:Planning
DESCRIPTION:Quarterly planning
LOCATION:Room 1
END:VEVENT
"""

EVT_2 = """
BEGIN:VEVENT
UID:evt-2
DTSTAMP:20240201T000000Z
DTSTART:20240305T150000Z
DTEND:20240305T153000Z
SUMMARY:Review
END:VEVENT
"""

WEEKLY_SERIES = """
BEGIN:VEVENT
UID:series-1
DTSTAMP:20240201T000000Z
DTSTART;TZID=America/New_York:20240304T090000
DTEND;TZID=America/New_York:20240304T100000
RRULE:FREQ=WEEKLY;COUNT=3
SUMMARY:Weekly sync
END:VEVENT
"""

SIMPLE_FEED = calendar(EVT_1, EVT_2)
WEEKLY_FEED = calendar(WEEKLY_SERIES)
DUPLICATED_FEED = calendar(EVT_1, EVT_1, EVT_2)
MIXED_FEED = calendar(EVT_1, EVT_2, WEEKLY_SERIES)
