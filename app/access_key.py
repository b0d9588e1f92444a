"""
NFe access key (chave de acesso) validation.

Layout of the 44 digits:
    cUF(2) AAMM(4) CNPJ(14) mod(2) serie(3) nNF(9) tpEmis(1) cNF(8) cDV(1)

The last digit is a modulo-11 check digit computed over the first 43.
"""
import re
from collections import namedtuple

KEY_LENGTH = 44

MALFORMED_KEY = 'MALFORMED_KEY'
CHECKSUM_MISMATCH = 'CHECKSUM_MISMATCH'

_KEY_RE = re.compile(r'[0-9]{44}')
_PREFIX_RE = re.compile(r'[0-9]{43}')

KeyValidation = namedtuple('KeyValidation', ['valid', 'reason', 'message'])

# (name, start, end) slices of the key
KEY_SEGMENTS = (
    ('cuf', 0, 2),
    ('aamm', 2, 6),
    ('cnpj', 6, 20),
    ('modelo', 20, 22),
    ('serie', 22, 25),
    ('numero', 25, 34),
    ('tp_emis', 34, 35),
    ('codigo_numerico', 35, 43),
    ('dv', 43, 44),
)


def compute_check_digit(prefix):
    """Modulo-11 check digit for the 43-digit key prefix.

    Weights 2..9 are applied from the rightmost digit to the left, wrapping
    back to 2 after 9.
    """
    if not isinstance(prefix, str) or not _PREFIX_RE.fullmatch(prefix):
        raise ValueError('access key prefix must be 43 numeric characters')

    total = 0
    weight = 2
    for digit in reversed(prefix):
        total += int(digit) * weight
        weight = 2 if weight == 9 else weight + 1

    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def validate_access_key(key):
    if not isinstance(key, str) or not _KEY_RE.fullmatch(key):
        return KeyValidation(False, MALFORMED_KEY, 'access key must be exactly 44 numeric characters')

    expected = compute_check_digit(key[:43])
    if expected != int(key[43]):
        return KeyValidation(False, CHECKSUM_MISMATCH, f'checksum mismatch (expected check digit {expected}, got {key[43]})')

    return KeyValidation(True, None, None)


def is_valid_access_key(key):
    return validate_access_key(key).valid


def describe_access_key(key):
    """Split a well-formed key into its named segments."""
    if not isinstance(key, str) or not _KEY_RE.fullmatch(key):
        raise ValueError('access key must be exactly 44 numeric characters')
    return {name: key[start:end] for name, start, end in KEY_SEGMENTS}


def format_access_key(key):
    cleaned = re.sub(r'\D', '', key or '')
    if len(cleaned) != KEY_LENGTH:
        return key
    return ' '.join(cleaned[i:i + 4] for i in range(0, KEY_LENGTH, 4))
