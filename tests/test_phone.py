import pytest

from app.errors import PhoneNormalizationError
from app.services.phone import normalize_phone, try_normalize_phone


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        ["971501234567", "+971501234567", "+971 50 123 4567", "00971501234567", "0501234567", "050-123-4567"],
    )
    def test_uae_mobile_variants_converge(self, raw):
        assert normalize_phone(raw) == "+971501234567"

    def test_international_digits_without_plus(self):
        assert normalize_phone("447911123456") == "+447911123456"

    def test_invalid_raises(self):
        with pytest.raises(PhoneNormalizationError) as exc:
            normalize_phone("12345")
        assert exc.value.raw == "12345"

    def test_empty_raises(self):
        with pytest.raises(PhoneNormalizationError):
            normalize_phone("   ")


class TestTryNormalizePhone:
    def test_returns_none_on_failure(self):
        assert try_normalize_phone("not a phone") is None

    def test_skips_instagram_and_email_addresses(self):
        assert try_normalize_phone("ig:1784140000") is None
        assert try_normalize_phone("someone@example.com") is None
        assert try_normalize_phone(None) is None

    def test_valid_number(self):
        assert try_normalize_phone("971501234567") == "+971501234567"
