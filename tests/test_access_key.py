import pytest

from app.access_key import (
    CHECKSUM_MISMATCH,
    MALFORMED_KEY,
    compute_check_digit,
    describe_access_key,
    format_access_key,
    is_valid_access_key,
    validate_access_key,
)
from nfe_samples import build_access_key


def test_check_digit_for_single_one_is_nine():
    prefix = '0' * 42 + '1'
    assert compute_check_digit(prefix) == 9
    assert validate_access_key(prefix + '9').valid


def test_all_zero_key_is_valid():
    result = validate_access_key('0' * 44)
    assert result.valid
    assert result.reason is None


def test_weights_wrap_after_nine():
    # Ninth digit from the right gets weight 2 again: 1*2 -> remainder 2 -> digit 9
    prefix = '0' * 34 + '1' + '0' * 8
    assert compute_check_digit(prefix) == 9


def test_remainder_below_two_gives_zero():
    # 1*3 + 1*2 + 1*6 = 11 -> remainder 0
    prefix = '0' * 38 + '10011'
    assert compute_check_digit(prefix) == 0
    # 1*2 + 1*3 + 1*7 = 12 -> remainder 1
    assert compute_check_digit('0' * 37 + '100011') == 0


def test_every_single_digit_mutation_invalidates_key():
    key = build_access_key()
    assert validate_access_key(key).valid

    for position in range(44):
        for digit in '0123456789':
            if digit == key[position]:
                continue
            mutated = key[:position] + digit + key[position + 1:]
            assert not validate_access_key(mutated).valid, (position, digit)


def test_checksum_mismatch_reports_expected_digit():
    key = build_access_key()
    wrong = str((int(key[43]) + 1) % 10)
    result = validate_access_key(key[:43] + wrong)
    assert not result.valid
    assert result.reason == CHECKSUM_MISMATCH
    assert 'checksum mismatch' in result.message
    assert f'expected check digit {key[43]}' in result.message


@pytest.mark.parametrize('key', [
    '',
    '0' * 43,
    '0' * 45,
    '0' * 43 + 'A',
    ' ' + '0' * 43,
    '3526 0112 3456 7800 0190 5500 1000 0123 4512 3456 7890',
    None,
    44,
])
def test_malformed_keys(key):
    result = validate_access_key(key)
    assert not result.valid
    assert result.reason == MALFORMED_KEY


def test_compute_check_digit_rejects_bad_prefix():
    with pytest.raises(ValueError):
        compute_check_digit('123')


def test_describe_access_key_segments():
    key = build_access_key()
    segments = describe_access_key(key)
    assert segments['cuf'] == '35'
    assert segments['aamm'] == '2601'
    assert segments['cnpj'] == '12345678000190'
    assert segments['modelo'] == '55'
    assert segments['serie'] == '001'
    assert segments['numero'] == '000012345'
    assert segments['tp_emis'] == '1'
    assert segments['codigo_numerico'] == '23456789'
    assert segments['dv'] == key[43]


def test_format_access_key_groups_by_four():
    key = build_access_key()
    formatted = format_access_key(key)
    assert formatted.replace(' ', '') == key
    assert len(formatted.split(' ')) == 11
    assert format_access_key('123') == '123'
    assert is_valid_access_key(key)
