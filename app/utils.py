import re
from datetime import datetime, date


def parse_nfe_datetime(value):
    """
    Parse dhEmi/dEmi style values ('2026-01-15T10:30:00-03:00' or '2026-01-15').
    The UTC offset is dropped; dates are stored as issued (local time).
    Raises ValueError for anything else.
    """
    if value is None:
        raise ValueError('empty date')
    value = value.strip()
    if 'T' in value:
        parsed = datetime.fromisoformat(value)
        return parsed.replace(tzinfo=None)
    return datetime.strptime(value, '%Y-%m-%d')


def only_digits(value):
    return re.sub(r'\D', '', value or '')


def normalize_cnpj(value):
    """Digits-only CNPJ, or None if it does not have 14 digits."""
    digits = only_digits(value)
    return digits if len(digits) == 14 else None


def month_bounds(today=None):
    today = today or date.today()
    start = datetime(today.year, today.month, 1)
    if today.month == 12:
        end = datetime(today.year + 1, 1, 1)
    else:
        end = datetime(today.year, today.month + 1, 1)
    return start, end
