"""
Tests for phone identity canonicalisation.

Covers: E.164 conversion of UK national / international / channel-prefixed
forms, alias sets used for inbound matching, rejection of unusable input.
"""
import pytest

from utils.phone import phone_identity, same_phone, to_e164


class TestToE164:

    @pytest.mark.parametrize("raw", [
        "+447700900123",
        "07700 900123",
        "07700-900-123",
        "447700900123",
        "0044 7700 900123",
        "whatsapp:+447700900123",
        "WhatsApp:07700900123",
        " tel:+44 7700 900123 ",
    ])
    def test_uk_forms_share_one_canonical(self, raw):
        assert to_e164(raw) == "+447700900123"

    def test_other_country_kept(self):
        assert to_e164("+14155550123") == "+14155550123"

    @pytest.mark.parametrize("raw", [None, "", "whatsapp:", "12345", "not a number"])
    def test_unusable_input_is_none(self, raw):
        assert to_e164(raw) is None


class TestPhoneIdentity:

    def test_aliases_cover_legacy_formats(self):
        identity = phone_identity("whatsapp:07700 900123")
        assert identity.canonical == "+447700900123"
        assert identity.aliases == ("+447700900123", "07700900123", "447700900123")

    def test_foreign_number_has_no_national_alias(self):
        identity = phone_identity("+14155550123")
        assert identity.aliases == ("+14155550123", "14155550123")

    def test_matches_any_spelling(self):
        identity = phone_identity("+447700900123")
        assert identity.matches("07700900123")
        assert identity.matches("whatsapp:+447700900123")
        assert not identity.matches("+447700900124")
        assert not identity.matches(None)

    def test_invalid_returns_none(self):
        assert phone_identity("abc") is None


class TestSamePhone:

    def test_equal_after_canonicalisation(self):
        assert same_phone("07700 900123", "+447700900123")

    def test_two_invalid_numbers_are_not_equal(self):
        assert not same_phone("", "")
        assert not same_phone(None, None)
