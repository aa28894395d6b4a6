"""Typed core of the bridge: identities, message elements, records and ports."""
