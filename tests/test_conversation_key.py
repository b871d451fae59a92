import pytest

from adminbot.services.conversation_key import (
    ConversationKey,
    InvalidSubscriberId,
    normalize_subscriber_id,
    normalize_tenant_id,
)


class TestNormalizeSubscriberId:
    @pytest.mark.parametrize(
        "raw",
        [
            "79001234567@s.whatsapp.net",
            "79001234567:12@s.whatsapp.net",
            "79001234567@c.us",
            "+7 900 123 45 67",
            "8 (900) 123-45-67",
            "9001234567",
        ],
    )
    def test_same_number_in_every_format(self, raw):
        assert normalize_subscriber_id(raw, default_country_code="7") == "79001234567"

    def test_ten_digits_use_configured_country_code(self):
        assert normalize_subscriber_id("7011234567", default_country_code="1") == "17011234567"

    def test_international_number_kept(self):
        assert normalize_subscriber_id("+44 20 7946 0958") == "442079460958"

    def test_too_short(self):
        with pytest.raises(InvalidSubscriberId):
            normalize_subscriber_id("12345")

    def test_too_long(self):
        with pytest.raises(InvalidSubscriberId):
            normalize_subscriber_id("1234567890123456")

    def test_empty(self):
        with pytest.raises(InvalidSubscriberId):
            normalize_subscriber_id("")

    def test_invalid_is_value_error(self):
        assert issubclass(InvalidSubscriberId, ValueError)


class TestConversationKey:
    def test_from_raw_normalizes_both_parts(self):
        key = ConversationKey.from_raw(" Salon-1 ", "8 (900) 123-45-67")
        assert key == ConversationKey("salon-1", "79001234567")

    def test_equal_keys_from_different_raw_ids(self):
        first = ConversationKey.from_raw("salon-1", "79001234567@s.whatsapp.net")
        second = ConversationKey.from_raw("salon-1", "+7 900 123-45-67")
        assert first == second
        assert hash(first) == hash(second)

    def test_different_tenants_are_different_conversations(self):
        assert ConversationKey.from_raw("a", "79001234567") != ConversationKey.from_raw("b", "79001234567")

    def test_str_and_parse_roundtrip(self):
        key = ConversationKey("962302", "79001234567")
        assert str(key) == "962302:79001234567"
        assert ConversationKey.parse(str(key)) == key

    def test_parse_rejects_malformed(self):
        with pytest.raises(ValueError):
            ConversationKey.parse("no-separator")

    def test_jid(self):
        assert ConversationKey("t", "79001234567").jid == "79001234567@s.whatsapp.net"

    def test_tenant_required(self):
        with pytest.raises(ValueError):
            normalize_tenant_id("  ")
