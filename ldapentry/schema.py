"""
Descriptions of the payloads a declarative framework exchanges with us.

A framework that drives :py:class:`~ldapentry.reconciler.EntryReconciler` or
:py:func:`~ldapentry.search.search` needs to know which keys are required,
which are computed on our side, which are secret, and which force the entry
to be replaced when they change.  :py:data:`ENTRY_SCHEMA` and
:py:data:`SEARCH_SCHEMA` describe exactly that.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class SchemaField:
    """
    One key of a payload.

    Args:
        name: the key
        required: the key must be present
        optional: the key may be omitted
        computed: we fill the key in; the framework must not set it
        write_only: the value is sent to the server but never stored in state
        sensitive: the value must be masked in any display
        replace_on_change: changing the value replaces the entry
        description: human readable help

    """

    name: str
    required: bool = False
    optional: bool = False
    computed: bool = False
    write_only: bool = False
    sensitive: bool = False
    replace_on_change: bool = False
    description: str = ""


class Schema:
    """
    An ordered collection of :py:class:`SchemaField`.
    """

    def __init__(self, name: str, fields: list[SchemaField], description: str = "") -> None:
        self.name = name
        self.description = description
        self.fields: dict[str, SchemaField] = {f.name: f for f in fields}

    def __getitem__(self, key: str) -> SchemaField:
        return self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def __iter__(self):
        return iter(self.fields.values())

    def __repr__(self) -> str:
        return f"<Schema {self.name}: {', '.join(self.fields)}>"

    @property
    def required(self) -> list[str]:
        return [f.name for f in self if f.required]

    @property
    def computed(self) -> list[str]:
        return [f.name for f in self if f.computed]

    @property
    def sensitive(self) -> list[str]:
        return [f.name for f in self if f.sensitive]

    def validate(self, payload: dict[str, Any]) -> None:
        """
        Check the keys of a framework supplied ``payload``.

        Raises:
            ValueError: ``payload`` has a key we don't know, lacks a required
                key, or sets a computed key

        """
        unknown = sorted(set(payload) - set(self.fields))
        if unknown:
            msg = f"{self.name}: unknown keys: {', '.join(unknown)}"
            raise ValueError(msg)
        missing = [key for key in self.required if key not in payload]
        if missing:
            msg = f"{self.name}: missing required keys: {', '.join(missing)}"
            raise ValueError(msg)
        computed = [key for key in self.computed if payload.get(key) is not None]
        if computed:
            msg = f"{self.name}: computed keys can't be set: {', '.join(computed)}"
            raise ValueError(msg)


ENTRY_SCHEMA = Schema(
    "ldap_entry",
    [
        SchemaField(
            "dn",
            required=True,
            replace_on_change=True,
            description="Distinguished name of the entry.",
        ),
        SchemaField(
            "attributes",
            required=True,
            description=(
                "Attribute name to list of values.  null leaves an attribute "
                "unmanaged; an empty list removes it from the server."
            ),
        ),
        SchemaField(
            "attributes_wo",
            optional=True,
            write_only=True,
            sensitive=True,
            description=(
                "Write-only attributes.  Sent on create and whenever "
                "attributes_wo_version changes; never stored."
            ),
        ),
        SchemaField(
            "attributes_wo_version",
            optional=True,
            description="Change this to send attributes_wo again.",
        ),
        SchemaField("id", computed=True, description="Same as dn."),
    ],
    description="A single LDAP entry.",
)


SEARCH_SCHEMA = Schema(
    "ldap_search",
    [
        SchemaField("basedn", required=True, description="Base DN of the search."),
        SchemaField(
            "scope",
            optional=True,
            description="One of base, one or sub.  Defaults to sub.",
        ),
        SchemaField("filter", required=True, description="LDAP filter."),
        SchemaField(
            "requested_attributes",
            optional=True,
            description=(
                "Attributes to return.  Requested attributes an entry lacks "
                "come back as empty lists."
            ),
        ),
        SchemaField("results", computed=True, description="The matching entries."),
    ],
    description="Search the directory.",
)
