"""
Tests for contact identity resolution.

Tests cover:
- Phone-number JIDs with and without device suffixes
- Linked identifiers resolved through the alternate JID
- Rejection of groups, broadcasts and unresolvable linked identities
"""

import pytest

from clinic_monitor.identity import (
    UnresolvableIdentityError,
    resolve_contact_key,
    stored_forms,
    try_resolve_contact_key,
)


class TestPhoneIdentifiers:

    def test_standard_jid(self):
        assert resolve_contact_key("971501234567@s.whatsapp.net", None) == "971501234567"

    def test_legacy_c_us_suffix(self):
        assert resolve_contact_key("971501234567@c.us") == "971501234567"

    def test_device_suffix_stripped(self):
        assert resolve_contact_key("971501234567:12@s.whatsapp.net") == "971501234567"

    def test_bare_number_passes_through(self):
        """Log tables store plain numbers."""
        assert resolve_contact_key("971501234567") == "971501234567"

    def test_alternate_ignored_for_phone_jid(self):
        assert resolve_contact_key("971501234567@s.whatsapp.net", "111@s.whatsapp.net") == "971501234567"


class TestLinkedIdentifiers:

    def test_linked_with_alternate(self):
        assert resolve_contact_key("8839201@lid", "971501234567@s.whatsapp.net") == "971501234567"

    def test_linked_without_alternate_rejected(self):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("8839201@lid", None)

    def test_linked_with_empty_alternate_rejected(self):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("8839201@lid", "")

    def test_linked_alternate_rejected(self):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("8839201@lid", "5550001@lid")


class TestRejected:

    @pytest.mark.parametrize("alternate", [None, "971501234567@s.whatsapp.net"])
    def test_group_always_rejected(self, alternate):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("1234@g.us", alternate)

    def test_broadcast_rejected(self):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("status@broadcast")

    def test_empty_rejected(self):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("")

    def test_suffix_only_rejected(self):
        with pytest.raises(UnresolvableIdentityError):
            resolve_contact_key("@s.whatsapp.net")

    def test_try_resolve_returns_none(self):
        assert try_resolve_contact_key("1234@g.us") is None
        assert try_resolve_contact_key("8839201@lid") is None
        assert try_resolve_contact_key("8839201@lid", "971501234567@s.whatsapp.net") == "971501234567"

    def test_stored_forms(self):
        assert stored_forms("971501234567") == [
            "971501234567",
            "971501234567@s.whatsapp.net",
            "971501234567@c.us",
        ]
