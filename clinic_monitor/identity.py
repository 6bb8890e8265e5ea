"""
Contact identity resolution.

The provider addresses a one-to-one chat either by a phone-number JID
(``971501234567@s.whatsapp.net``) or by an opaque linked identifier
(``8839201@lid``) which only resolves through the alternate JID the provider
sends alongside it. Every message is keyed by the bare phone number.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

LINKED_SUFFIX = "@lid"
GROUP_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")
PHONE_SUFFIXES = ("@s.whatsapp.net", "@c.us")


class UnresolvableIdentityError(ValueError):
    """The identifier cannot be mapped to a one-to-one phone number."""


def _strip_suffix(jid: str) -> str:
    jid = jid.strip()
    for suffix in PHONE_SUFFIXES:
        if jid.endswith(suffix):
            jid = jid[: -len(suffix)]
            break
    # Multi-device JIDs carry the device number: 971501234567:12@s.whatsapp.net
    return jid.split(":", 1)[0]


def _is_group(jid: str) -> bool:
    return jid.strip().endswith(GROUP_SUFFIXES)


def _is_linked(jid: str) -> bool:
    return jid.strip().endswith(LINKED_SUFFIX)


def resolve_contact_key(identifier: str, alternate: Optional[str] = None) -> str:
    """
    Resolve a provider contact identifier to its canonical phone number.

    Args:
        identifier: Primary JID from the message key
        alternate: Alternate JID the provider supplies for linked identities

    Returns:
        The phone number with all suffix markers removed

    Raises:
        UnresolvableIdentityError: group chats, linked identities without an
            alternate, or identifiers that strip to nothing
    """
    if not identifier or _is_group(identifier):
        raise UnresolvableIdentityError(f"not a one-to-one contact: {identifier!r}")

    if _is_linked(identifier):
        if not alternate or _is_group(alternate) or _is_linked(alternate):
            raise UnresolvableIdentityError(f"linked identity without phone number: {identifier!r}")
        contact_key = _strip_suffix(alternate)
    else:
        contact_key = _strip_suffix(identifier)

    if not contact_key:
        raise UnresolvableIdentityError(f"empty contact key for {identifier!r}")
    return contact_key


def try_resolve_contact_key(identifier: str, alternate: Optional[str] = None) -> Optional[str]:
    """Like resolve_contact_key, but returns None instead of raising."""
    try:
        return resolve_contact_key(identifier, alternate)
    except UnresolvableIdentityError as e:
        logger.debug(f"Skipping identity: {e}")
        return None


def stored_forms(contact_key: str) -> list[str]:
    """The ways a log table may have stored this contact's identifier."""
    return [contact_key] + [contact_key + suffix for suffix in PHONE_SUFFIXES]
