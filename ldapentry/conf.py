"""
Settings lookup.

ldapentry reads its configuration from Django settings:

``LDAP_SERVERS``
    Connection blocks, as described in :py:func:`ldapentry.client.connect`.

``LDAPENTRY_CODECS``
    Extra ``{attribute: "dotted.path.Codec"}`` registrations.

``LDAPENTRY_PAGE_SIZE``
    Page size for paged searches; ``0`` (the default) disables paging.

``LDAPENTRY_IMPORT_DEFAULT_ATTRIBUTES``
    The attributes a bare-DN import manages.  Defaults to ``["objectClass"]``.
"""

from typing import Any

from django.conf import settings


def get_config(setting_name: str, default_value: Any) -> Any:
    """
    Get configuration value from Django settings with fallback.

    Args:
        setting_name: Name of the setting (without LDAPENTRY_ prefix)
        default_value: Default value if setting not found

    Returns:
        Configuration value from settings or default

    """
    return getattr(settings, f"LDAPENTRY_{setting_name}", default_value)
