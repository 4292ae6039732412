"""
Type aliases shared by the ldapentry modules.

These mirror the shapes python-ldap accepts and returns for add, modify and
search requests.
"""

DeleteModListEntry = tuple[int, str, None]
ReplaceModListEntry = tuple[int, str, list[bytes]]
ModifyModList = list[DeleteModListEntry | ReplaceModListEntry]
AddModlist = list[tuple[str, list[bytes]]]
LDAPData = tuple[str, dict[str, list[bytes]]]
#: A search result after decoding: ``(dn, {attribute: [value, ...]})``
SearchData = tuple[str, dict[str, list[str]]]
#: Attribute values as they appear in configuration.  ``None`` marks an
#: attribute as unmanaged.
ConfigAttributes = dict[str, list[str] | None]
