import pytest

from opd_agents.phone import format_phone_for_display, is_valid_whatsapp_phone, normalize_phone


@pytest.mark.parametrize(
    "raw",
    ["08780465286", "8780465286", "918780465286", "+91 8780465286", "(878) 046-5286", "+91-87804-65286"],
)
def test_normalize_common_indian_formats(raw):
    assert normalize_phone(raw) == "918780465286"


@pytest.mark.parametrize("ten", ["9876543210", "9123456789", "7012345678", "1234567890"])
def test_ten_digit_numbers_always_get_country_code(ten):
    assert len(ten) == 10
    assert normalize_phone(ten) == "91" + ten


def test_already_prefixed_twelve_digits_unchanged_and_idempotent():
    s = "919876543210"
    assert normalize_phone(s) == s
    assert normalize_phone(normalize_phone("98765 43210")) == normalize_phone("98765 43210")


def test_empty_input():
    assert normalize_phone("") == ""
    assert normalize_phone(None) == ""


def test_eleven_digits_leading_one_restores_dropped_nine():
    assert normalize_phone("18780465286") == "918780465286"


def test_eleven_digit_branch_only_for_india():
    # no "9" repair for other country codes
    assert normalize_phone("18780465286", default_country_code="44") == "4418780465286"


def test_other_lengths_get_country_code_prepended():
    assert normalize_phone("12345") == "9112345"
    assert normalize_phone("5551234567", default_country_code="1") == "15551234567"


def test_is_valid_whatsapp_phone():
    assert is_valid_whatsapp_phone("+91 87804 65286")
    assert is_valid_whatsapp_phone("8780465286")
    assert not is_valid_whatsapp_phone("12345")
    assert not is_valid_whatsapp_phone("1" * 16)
    assert not is_valid_whatsapp_phone(None)


def test_format_phone_for_display():
    assert format_phone_for_display("918780465286") == "+91 87804 65286"
    assert format_phone_for_display("4420712345678") == "+442 0712345678"
    assert format_phone_for_display("8780465286") == "8780465286"
    assert format_phone_for_display("123") == "123"
