"""
Attendee list rendering.

Writes the printable attendee list for an event to a file in the output
directory, either as CSV or as a fixed-width text table.
"""

import csv
import logging
import re
from pathlib import Path
from typing import Any, Dict, List

from autoprint.models import parse_timestamp

logger = logging.getLogger(__name__)

COLUMNS = ['First Name', 'Last Name', 'Phone', 'Signed Up', 'Fee', 'Status']


def _format_date(value: Any, with_time: bool = False) -> str:
    try:
        parsed = parse_timestamp(value)
    except (TypeError, ValueError):
        return str(value or '')
    if parsed is None:
        return ''
    return parsed.strftime('%Y-%m-%d %H:%M') if with_time else parsed.strftime('%Y-%m-%d')


def payment_status(attendee: Dict[str, Any]) -> str:
    if attendee.get('isPaid'):
        return 'Paid'
    return 'Owing' if attendee.get('hasFee') else 'No Fee'


def attendee_fee(attendee: Dict[str, Any]) -> str:
    rule = attendee.get('rule') or {}
    fee = rule.get('fee') if isinstance(rule, dict) else None
    if attendee.get('hasFee') and fee:
        return f"{float(fee):.2f}"
    return ''


def attendee_row(attendee: Dict[str, Any]) -> List[str]:
    return [
        attendee.get('firstName') or '',
        attendee.get('lastName') or '',
        attendee.get('phone') or '',
        _format_date(attendee.get('signUpDate')),
        attendee_fee(attendee),
        payment_status(attendee),
    ]


class AttendeeListRenderer:
    """Renders attendee lists into files under output_dir."""

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir).expanduser()

    def _output_path(self, event: Dict[str, Any], suffix: str) -> Path:
        safe_id = re.sub(r'[^A-Za-z0-9_.-]', '_', str(event.get('id', 'event')))
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir / f"attendees-{safe_id}.{suffix}"

    def render(self, event: Dict[str, Any], attendees: List[Dict[str, Any]], layout: str = "csv") -> Path:
        """
        Render the attendee list.

        Args:
            event: Event details (name, startDate, id)
            attendees: Attendee payloads, already sorted
            layout: 'csv' or 'text'

        Returns:
            Path of the written document
        """
        if layout == 'csv':
            path = self._render_csv(event, attendees)
        elif layout == 'text':
            path = self._render_text(event, attendees)
        else:
            raise ValueError(f"Unknown layout: {layout}")

        logger.info(f"Successfully created {path}")
        return path

    def _render_csv(self, event: Dict[str, Any], attendees: List[Dict[str, Any]]) -> Path:
        path = self._output_path(event, 'csv')
        with open(path, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(['Event Name', 'Event Date'])
            writer.writerow([event.get('name', ''), _format_date(event.get('startDate'), with_time=True)])
            writer.writerow([])
            writer.writerow(COLUMNS)
            for attendee in attendees:
                writer.writerow(attendee_row(attendee))
        return path

    def _render_text(self, event: Dict[str, Any], attendees: List[Dict[str, Any]]) -> Path:
        rows = [attendee_row(attendee) for attendee in attendees]
        widths = [
            max([len(column)] + [len(row[i]) for row in rows])
            for i, column in enumerate(COLUMNS)
        ]

        def line(values: List[str]) -> str:
            return '  '.join(value.ljust(width) for value, width in zip(values, widths)).rstrip()

        lines = [
            event.get('name', ''),
            _format_date(event.get('startDate'), with_time=True),
            f"{len(attendees)} attendee(s)",
            '',
            line(COLUMNS),
            line(['-' * width for width in widths]),
        ]
        lines.extend(line(row) for row in rows)

        path = self._output_path(event, 'txt')
        path.write_text('\n'.join(lines) + '\n')
        return path
