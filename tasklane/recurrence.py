"""Recurrence rules for repeating todos.

Rules are stored on ``Todo.recurrence_rule`` as a compact RRULE-style string::

    FREQ=DAILY|WEEKLY|MONTHLY[;INTERVAL=n][;BYDAY=MO,WE][;BYMONTHDAY=15|-1]

Internally a rule is a :class:`RecurrenceOptions`; the string form is only
used at the storage and HTTP boundaries. Anything that cannot be decoded is
treated as a "custom" rule: :func:`decode_rule` and :func:`next_occurrence`
return ``None`` and :func:`describe_rule` returns ``'Custom'``; none of them
raise on bad input.

Two weekday numberings meet here. Date pickers send Sunday-first numbers
(:class:`UiWeekday`, 0=Sunday) while BYDAY codes are Monday-first
(:class:`RuleWeekday`, 0=Monday, the same as ``datetime.weekday()`` and
dateutil). Convert only with :func:`ui_to_rule_weekday` and
:func:`rule_to_ui_weekday`.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Mapping
import logging

from dateutil import rrule as _rrule

from .utils import as_utc, to_datetime

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


class UiWeekday(IntEnum):
    """Sunday-first weekday numbering used by the UI (JavaScript getDay())."""
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6


class RuleWeekday(IntEnum):
    """Monday-first weekday numbering used by BYDAY codes."""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


def ui_to_rule_weekday(day: int) -> RuleWeekday:
    """Map a Sunday-first UI weekday to its Monday-first rule weekday.

    Raises ValueError when ``day`` is outside 0..6.
    """
    return RuleWeekday((int(UiWeekday(day)) - 1) % 7)


def rule_to_ui_weekday(day: int) -> UiWeekday:
    """Inverse of :func:`ui_to_rule_weekday`."""
    return UiWeekday((int(RuleWeekday(day)) + 1) % 7)


# Indexed by RuleWeekday
RULE_WEEKDAY_CODES = ('MO', 'TU', 'WE', 'TH', 'FR', 'SA', 'SU')
RULE_WEEKDAY_NAMES = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')
_CODE_TO_RULE_WEEKDAY = {code: RuleWeekday(i) for i, code in enumerate(RULE_WEEKDAY_CODES)}
_DATEUTIL_WEEKDAYS = (_rrule.MO, _rrule.TU, _rrule.WE, _rrule.TH, _rrule.FR, _rrule.SA, _rrule.SU)

_FREQ_CODES = {
    Frequency.DAILY: 'DAILY',
    Frequency.WEEKLY: 'WEEKLY',
    Frequency.MONTHLY: 'MONTHLY',
}
_CODE_TO_FREQ = {v: k for k, v in _FREQ_CODES.items()}
_DATEUTIL_FREQ = {
    Frequency.DAILY: _rrule.DAILY,
    Frequency.WEEKLY: _rrule.WEEKLY,
    Frequency.MONTHLY: _rrule.MONTHLY,
}
_PERIOD_PLURALS = {
    Frequency.DAILY: 'days',
    Frequency.WEEKLY: 'weeks',
    Frequency.MONTHLY: 'months',
}

# BYMONTHDAY sentinel
LAST_DAY_OF_MONTH = -1

RECURRENCE_PRESETS = {
    'none': None,
    'daily': 'FREQ=DAILY',
    'weekly': 'FREQ=WEEKLY',
    'monthly': 'FREQ=MONTHLY',
}

_DTSTART_FORMATS = ('%Y%m%dT%H%M%SZ', '%Y%m%dT%H%M%S', '%Y%m%d')


def _valid_day_of_month(value: int) -> bool:
    return value == LAST_DAY_OF_MONTH or 1 <= value <= 31


@dataclass(frozen=True)
class RecurrenceOptions:
    """Structured form of a recurrence rule.

    ``weekdays`` holds Sunday-first UI weekdays and only survives for weekly
    rules; ``day_of_month`` only survives for monthly rules. Both are
    normalized on construction so two options describing the same pattern
    compare equal.
    """
    frequency: Frequency
    interval: int = 1
    weekdays: tuple[UiWeekday, ...] = field(default=())
    day_of_month: int | None = None
    dtstart: datetime | None = None

    def __post_init__(self):
        freq = Frequency(self.frequency.lower() if isinstance(self.frequency, str) else self.frequency)
        object.__setattr__(self, 'frequency', freq)

        interval = int(self.interval or 1)
        object.__setattr__(self, 'interval', interval if interval > 1 else 1)

        days: tuple[UiWeekday, ...] = ()
        if freq is Frequency.WEEKLY and self.weekdays:
            unique = {UiWeekday(int(d)) for d in self.weekdays}
            days = tuple(sorted(unique, key=ui_to_rule_weekday))
        object.__setattr__(self, 'weekdays', days)

        dom = None
        if freq is Frequency.MONTHLY and self.day_of_month is not None:
            dom = int(self.day_of_month)
            if not _valid_day_of_month(dom):
                raise ValueError(f'day_of_month must be 1..31 or -1, got {dom}')
        object.__setattr__(self, 'day_of_month', dom)

    @property
    def rule_weekdays(self) -> tuple[RuleWeekday, ...]:
        return tuple(ui_to_rule_weekday(d) for d in self.weekdays)

    @classmethod
    def from_mapping(cls, data: Mapping) -> 'RecurrenceOptions':
        """Build options from a plain dict such as a JSON request body.

        Accepts ``day_of_month`` or the camelCase ``dayOfMonth``.
        """
        if 'frequency' not in data or data['frequency'] is None:
            raise ValueError('frequency is required')
        dom = data.get('day_of_month', data.get('dayOfMonth'))
        return cls(
            frequency=data['frequency'],
            interval=data.get('interval') or 1,
            weekdays=tuple(data.get('weekdays') or ()),
            day_of_month=dom,
        )

    def as_dict(self) -> dict:
        out = {
            'frequency': self.frequency.value,
            'interval': self.interval,
        }
        if self.weekdays:
            out['weekdays'] = [int(d) for d in self.weekdays]
        if self.day_of_month is not None:
            out['day_of_month'] = self.day_of_month
        return out


def _format_dtstart(dt: datetime) -> str:
    if dt.tzinfo is not None:
        return as_utc(dt).strftime('%Y%m%dT%H%M%SZ')
    return dt.strftime('%Y%m%dT%H%M%S')


def _parse_dtstart(value: str) -> datetime:
    for fmt in _DTSTART_FORMATS:
        try:
            dt = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if fmt.endswith('Z'):
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    raise ValueError(f'bad DTSTART {value!r}')


def encode_rule(options: RecurrenceOptions | Mapping) -> str:
    """Serialize options to the stored rule string.

    INTERVAL is omitted when it is 1, BYDAY is written Monday-first for weekly
    rules with weekdays, BYMONTHDAY only for monthly rules that set a day.
    Raises ValueError for invalid structured input.
    """
    if not isinstance(options, RecurrenceOptions):
        options = RecurrenceOptions.from_mapping(options)
    parts = [f'FREQ={_FREQ_CODES[options.frequency]}']
    if options.interval > 1:
        parts.append(f'INTERVAL={options.interval}')
    if options.weekdays:
        parts.append('BYDAY=' + ','.join(RULE_WEEKDAY_CODES[d] for d in options.rule_weekdays))
    if options.day_of_month is not None:
        parts.append(f'BYMONTHDAY={options.day_of_month}')
    if options.dtstart is not None:
        parts.append(f'DTSTART={_format_dtstart(options.dtstart)}')
    return ';'.join(parts)


def _parse_rule(rule: str) -> RecurrenceOptions:
    """Strict parser behind :func:`decode_rule`; raises ValueError."""
    if not isinstance(rule, str):
        raise ValueError('rule must be a string')
    text = rule.strip()
    if text.upper().startswith('RRULE:'):
        text = text[6:]
    if not text:
        raise ValueError('empty rule')

    fields: dict[str, str] = {}
    for part in text.split(';'):
        if not part:
            continue
        key, sep, value = part.partition('=')
        key = key.strip().upper()
        if not sep or not key:
            raise ValueError(f'malformed part {part!r}')
        if key in fields:
            raise ValueError(f'duplicate key {key}')
        fields[key] = value.strip()

    unknown = set(fields) - {'FREQ', 'INTERVAL', 'BYDAY', 'BYMONTHDAY', 'DTSTART'}
    if unknown:
        raise ValueError(f'unsupported keys {sorted(unknown)}')

    freq = _CODE_TO_FREQ.get(fields.get('FREQ', '').upper())
    if freq is None:
        raise ValueError(f'unsupported FREQ {fields.get("FREQ")!r}')

    interval = 1
    if 'INTERVAL' in fields:
        interval = int(fields['INTERVAL'])
        if interval < 1:
            raise ValueError('INTERVAL must be positive')

    weekdays: list[UiWeekday] = []
    if 'BYDAY' in fields:
        for code in fields['BYDAY'].split(','):
            rule_day = _CODE_TO_RULE_WEEKDAY[code.strip().upper()]
            weekdays.append(rule_to_ui_weekday(rule_day))

    day_of_month = None
    if 'BYMONTHDAY' in fields:
        # Only the first value of a list is honoured.
        day_of_month = int(fields['BYMONTHDAY'].split(',')[0])
        if not _valid_day_of_month(day_of_month):
            raise ValueError('BYMONTHDAY out of range')

    dtstart = _parse_dtstart(fields['DTSTART']) if 'DTSTART' in fields else None

    return RecurrenceOptions(
        frequency=freq,
        interval=interval,
        weekdays=tuple(weekdays),
        day_of_month=day_of_month,
        dtstart=dtstart,
    )


def decode_rule(rule: str | None) -> RecurrenceOptions | None:
    """Parse a stored rule; returns None for anything unparseable."""
    if not rule:
        return None
    try:
        return _parse_rule(rule)
    except (ValueError, KeyError, TypeError) as e:
        logger.debug('unparseable recurrence rule %r: %s', rule, e)
        return None


def describe_rule(rule: str | None) -> str:
    """Human-readable description of a rule.

    When the interval is above 1 only the period is described ("Every 2
    weeks"); weekday and month-day detail is intentionally dropped in that
    case.
    """
    opts = decode_rule(rule)
    if opts is None:
        return 'Custom'
    if opts.interval > 1:
        return f'Every {opts.interval} {_PERIOD_PLURALS[opts.frequency]}'
    if opts.frequency is Frequency.DAILY:
        return 'Daily'
    if opts.frequency is Frequency.WEEKLY:
        if opts.weekdays:
            names = [RULE_WEEKDAY_NAMES[d] for d in opts.rule_weekdays]
            return 'Weekly on ' + ', '.join(names)
        return 'Weekly'
    if opts.day_of_month == LAST_DAY_OF_MONTH:
        return 'Monthly on last day'
    if opts.day_of_month is not None:
        return f'Monthly on day {opts.day_of_month}'
    return 'Monthly'


def build_rrule(options: RecurrenceOptions, dtstart: datetime):
    """Build a dateutil rrule for ``options`` anchored at ``dtstart``.

    dateutil fills the pattern from the anchor where the rule is silent:
    weekly rules without BYDAY repeat on the anchor's weekday, monthly rules
    without BYMONTHDAY on the anchor's day of month (months lacking that day
    are skipped).
    """
    params: dict = {
        'freq': _DATEUTIL_FREQ[options.frequency],
        'interval': options.interval,
    }
    if options.weekdays:
        params['byweekday'] = tuple(_DATEUTIL_WEEKDAYS[d] for d in options.rule_weekdays)
    if options.day_of_month is not None:
        params['bymonthday'] = options.day_of_month
    return _rrule.rrule(dtstart=dtstart, **params)


def _align(a: datetime, b: datetime) -> tuple[datetime, datetime]:
    """Make two datetimes comparable, treating naive values as UTC."""
    if (a.tzinfo is None) == (b.tzinfo is None):
        return a, b
    return as_utc(a), as_utc(b)


def _past_end(candidate: datetime, end: date | datetime) -> bool:
    if not isinstance(end, datetime):
        # a bare end date covers that whole day
        return candidate.date() > end
    c, e = _align(candidate, end)
    return c > e


def next_occurrence(rule: str | None, after: date | datetime, end: date | datetime | None = None):
    """Return the first occurrence of ``rule`` strictly after ``after``.

    The pattern is anchored at ``after`` unless the rule embeds a DTSTART.
    Returns None when the rule cannot be decoded or when the occurrence
    falls after ``end`` (an occurrence equal to ``end`` is still returned).
    A ``date`` argument yields a ``date``; a ``datetime`` yields a
    ``datetime`` keeping the anchor's time of day.
    """
    opts = decode_rule(rule)
    if opts is None:
        return None
    try:
        after_dt = to_datetime(after)
        anchor = opts.dtstart or after_dt
        anchor, after_cmp = _align(anchor, after_dt)
        candidate = build_rrule(opts, anchor).after(after_cmp, inc=False)
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug('next_occurrence failed for rule %r after %r: %s', rule, after, e)
        return None
    if candidate is None:
        return None
    if end is not None and _past_end(candidate, end):
        return None
    if not isinstance(after, datetime):
        return candidate.date()
    if after.tzinfo is None and candidate.tzinfo is not None:
        # caller works in naive UTC; hand back the same flavour
        candidate = as_utc(candidate).replace(tzinfo=None)
    return candidate


def occurrences(rule: str | None, after: date | datetime, end: date | datetime | None = None, limit: int = 10) -> list:
    """Chain :func:`next_occurrence` up to ``limit`` times.

    Each step is anchored at the previous result, which is how successive
    todo completions advance a series.
    """
    out: list = []
    cur: date | datetime = after
    for _ in range(max(0, limit)):
        nxt = next_occurrence(rule, cur, end)
        if nxt is None:
            break
        out.append(nxt)
        cur = nxt
    return out
