import pytest

from tasklane.recurrence import (
    Frequency,
    RecurrenceOptions,
    RuleWeekday,
    UiWeekday,
    decode_rule,
    describe_rule,
    encode_rule,
    rule_to_ui_weekday,
    ui_to_rule_weekday,
)


def test_ui_weekday_maps_sunday_first_to_monday_first():
    assert ui_to_rule_weekday(UiWeekday.SUNDAY) == RuleWeekday.SUNDAY
    assert ui_to_rule_weekday(UiWeekday.MONDAY) == RuleWeekday.MONDAY
    assert ui_to_rule_weekday(6) == RuleWeekday.SATURDAY
    assert int(ui_to_rule_weekday(0)) == 6
    assert int(ui_to_rule_weekday(1)) == 0


def test_weekday_conversion_is_invertible():
    for ui in UiWeekday:
        assert rule_to_ui_weekday(ui_to_rule_weekday(ui)) == ui


def test_weekday_conversion_rejects_out_of_range():
    with pytest.raises(ValueError):
        ui_to_rule_weekday(7)
    with pytest.raises(ValueError):
        rule_to_ui_weekday(-1)


def test_encode_weekly_with_ui_weekdays():
    # UI numbering: 1=Mon, 3=Wed, 5=Fri
    assert encode_rule({'frequency': 'weekly', 'weekdays': [5, 1, 3]}) == 'FREQ=WEEKLY;BYDAY=MO,WE,FR'


def test_encode_sorts_weekend_monday_first():
    # Sunday (0) sorts after Saturday (6) once mapped to BYDAY order
    assert encode_rule({'frequency': 'weekly', 'weekdays': [0, 6]}) == 'FREQ=WEEKLY;BYDAY=SA,SU'


def test_encode_omits_interval_of_one_or_less():
    assert encode_rule({'frequency': 'daily', 'interval': 1}) == 'FREQ=DAILY'
    assert encode_rule({'frequency': 'daily', 'interval': 0}) == 'FREQ=DAILY'
    assert encode_rule({'frequency': 'daily', 'interval': 3}) == 'FREQ=DAILY;INTERVAL=3'


def test_encode_drops_fields_that_do_not_apply():
    assert encode_rule({'frequency': 'daily', 'weekdays': [1], 'day_of_month': 4}) == 'FREQ=DAILY'
    assert encode_rule({'frequency': 'weekly', 'weekdays': []}) == 'FREQ=WEEKLY'
    assert encode_rule({'frequency': 'weekly', 'day_of_month': 4}) == 'FREQ=WEEKLY'
    assert encode_rule({'frequency': 'monthly', 'weekdays': [1]}) == 'FREQ=MONTHLY'


def test_encode_monthly_day_of_month():
    assert encode_rule({'frequency': 'monthly', 'day_of_month': 15}) == 'FREQ=MONTHLY;BYMONTHDAY=15'
    assert encode_rule({'frequency': 'monthly', 'dayOfMonth': -1}) == 'FREQ=MONTHLY;BYMONTHDAY=-1'
    assert encode_rule({'frequency': 'monthly', 'interval': 2, 'day_of_month': 1}) == 'FREQ=MONTHLY;INTERVAL=2;BYMONTHDAY=1'


def test_encode_rejects_bad_structured_input():
    with pytest.raises(ValueError):
        encode_rule({'frequency': 'monthly', 'day_of_month': 32})
    with pytest.raises(ValueError):
        encode_rule({'frequency': 'monthly', 'day_of_month': 0})
    with pytest.raises(ValueError):
        encode_rule({'frequency': 'yearly'})
    with pytest.raises(ValueError):
        encode_rule({'interval': 2})


def test_decode_weekly_byday():
    opts = decode_rule('FREQ=WEEKLY;BYDAY=MO,WE,FR')
    assert opts.frequency is Frequency.WEEKLY
    assert opts.interval == 1
    assert opts.weekdays == (UiWeekday.MONDAY, UiWeekday.WEDNESDAY, UiWeekday.FRIDAY)
    assert opts.day_of_month is None


def test_decode_accepts_rrule_prefix_and_any_key_order():
    assert decode_rule('RRULE:FREQ=DAILY') == RecurrenceOptions(Frequency.DAILY)
    assert decode_rule('BYMONTHDAY=-1;FREQ=MONTHLY') == RecurrenceOptions(Frequency.MONTHLY, day_of_month=-1)
    assert decode_rule('freq=weekly;interval=2') == RecurrenceOptions(Frequency.WEEKLY, interval=2)


def test_decode_ignores_byday_on_non_weekly_rule():
    opts = decode_rule('FREQ=DAILY;BYDAY=MO')
    assert opts == RecurrenceOptions(Frequency.DAILY)


@pytest.mark.parametrize('rule', [
    None,
    '',
    'garbage',
    'FREQ=YEARLY',
    'FREQ=HOURLY;INTERVAL=2',
    'FREQ=WEEKLY;BYDAY=XX',
    'FREQ=DAILY;INTERVAL=abc',
    'FREQ=DAILY;INTERVAL=0',
    'FREQ=MONTHLY;BYMONTHDAY=40',
    'FREQ=DAILY;COUNT=3',
    'FREQ=DAILY;FREQ=WEEKLY',
    'INTERVAL=2',
])
def test_decode_returns_none_for_unparseable(rule):
    assert decode_rule(rule) is None


def test_decode_reverses_encode():
    cases = [
        {'frequency': 'daily'},
        {'frequency': 'daily', 'interval': 4},
        {'frequency': 'weekly', 'weekdays': [0, 2, 4]},
        {'frequency': 'weekly', 'interval': 2, 'weekdays': [1]},
        {'frequency': 'monthly', 'day_of_month': -1},
        {'frequency': 'monthly', 'interval': 3, 'day_of_month': 28},
    ]
    for case in cases:
        opts = RecurrenceOptions.from_mapping(case)
        assert decode_rule(encode_rule(opts)) == opts


def test_options_normalize_weekdays():
    a = RecurrenceOptions(Frequency.WEEKLY, weekdays=(5, 1, 1, 3))
    b = RecurrenceOptions(Frequency.WEEKLY, weekdays=(1, 3, 5))
    assert a == b
    assert a.as_dict() == {'frequency': 'weekly', 'interval': 1, 'weekdays': [1, 3, 5]}


@pytest.mark.parametrize('rule,expected', [
    ('FREQ=DAILY', 'Daily'),
    ('FREQ=WEEKLY;BYDAY=MO,WE,FR', 'Weekly on Mon, Wed, Fri'),
    ('FREQ=WEEKLY;BYDAY=SU,MO', 'Weekly on Mon, Sun'),
    ('FREQ=WEEKLY', 'Weekly'),
    ('FREQ=MONTHLY;BYMONTHDAY=15', 'Monthly on day 15'),
    ('FREQ=MONTHLY;BYMONTHDAY=-1', 'Monthly on last day'),
    ('FREQ=MONTHLY', 'Monthly'),
    ('FREQ=WEEKLY;INTERVAL=2', 'Every 2 weeks'),
    ('FREQ=DAILY;INTERVAL=3', 'Every 3 days'),
    ('FREQ=MONTHLY;INTERVAL=2;BYMONTHDAY=1', 'Every 2 months'),
    ('FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,FR', 'Every 2 weeks'),
    ('not a rule', 'Custom'),
    ('', 'Custom'),
])
def test_describe_rule(rule, expected):
    assert describe_rule(rule) == expected
