import pytest

from app.services.phone_service import (
    InvalidPhoneError,
    format_phone_mask,
    is_mobile,
    normalize_phone,
    phone_variants,
    sanitize_phone,
    to_chat_id,
)


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        [
            "85996201636",
            "5585996201636",
            "(85) 99620-1636",
            "+55 85 99620-1636",
            "5585996201636@c.us",
            "8596201636",
            "558596201636",
            "085996201636",
        ],
    )
    def test_equivalent_formats_share_one_key(self, raw):
        assert normalize_phone(raw) == "85996201636"

    def test_landline_keeps_ten_digits(self):
        assert normalize_phone("(85) 3224-1000") == "8532241000"
        assert normalize_phone("558532241000") == "8532241000"

    def test_sao_paulo_chat_id(self):
        assert normalize_phone("5511999999999@c.us") == "11999999999"

    @pytest.mark.parametrize("raw", [None, "", "abc", "12345", "999999999"])
    def test_too_short_is_invalid(self, raw):
        with pytest.raises(InvalidPhoneError):
            normalize_phone(raw)

    def test_too_long_is_invalid(self):
        with pytest.raises(InvalidPhoneError) as exc_info:
            normalize_phone("55859962016361234")
        assert exc_info.value.raw == "55859962016361234"

    def test_eleven_digits_must_be_mobile(self):
        with pytest.raises(InvalidPhoneError):
            normalize_phone("85396201636")

    def test_invalid_phone_is_value_error(self):
        with pytest.raises(ValueError):
            normalize_phone("123")


class TestPhoneVariants:
    def test_mobile_variants_in_order(self):
        assert phone_variants("85996201636") == [
            "85996201636",
            "5585996201636",
            "8596201636",
            "558596201636",
        ]

    def test_landline_variants(self):
        assert phone_variants("8532241000") == ["8532241000", "558532241000"]

    def test_variants_have_no_duplicates(self):
        variants = phone_variants("5585996201636@c.us")
        assert len(variants) == len(set(variants))

    def test_every_variant_normalizes_back(self):
        for variant in phone_variants("11999999999"):
            assert normalize_phone(variant) == "11999999999"


class TestHelpers:
    def test_sanitize_strips_chat_suffix(self):
        assert sanitize_phone("5511999999999@c.us") == "5511999999999"

    def test_is_mobile(self):
        assert is_mobile("85996201636") is True
        assert is_mobile("8532241000") is False

    def test_format_mask(self):
        assert format_phone_mask("5585996201636") == "(85) 99620-1636"
        assert format_phone_mask("8532241000") == "(85) 3224-1000"

    def test_to_chat_id(self):
        assert to_chat_id("(85) 99620-1636") == "5585996201636@c.us"
