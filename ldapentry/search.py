"""
Read-only directory searches.

This is the data source side of ldapentry: run a search and hand the matches
back in a shape that is easy to store, with every requested attribute present
on every entry.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from ldap_filter import Filter

from .client import DirectoryClient, get_scope
from .schema import SEARCH_SCHEMA

logger = logging.getLogger(__name__)


@dataclass
class SearchQuery:
    """
    A directory search.

    Args:
        basedn: the DN to search from
        filter: an LDAP filter, as a string or an ``ldap_filter.Filter``
        scope: ``base``, ``one`` or ``sub``
        requested_attributes: the attributes to return, or ``None`` for all
            user attributes.  Special names like ``*``, ``+`` or ``@class``
            are passed through to the server as is.

    """

    basedn: str
    filter: str | Filter
    scope: str = "sub"
    requested_attributes: list[str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchQuery":
        """
        Build a query from a framework payload, checking it against
        :py:data:`~ldapentry.schema.SEARCH_SCHEMA`.

        Raises:
            ValueError: the payload is not a valid search

        """
        SEARCH_SCHEMA.validate(data)
        return cls(
            basedn=data["basedn"],
            filter=data["filter"],
            scope=data.get("scope") or "sub",
            requested_attributes=data.get("requested_attributes"),
        )

    @property
    def filterstr(self) -> str:
        if isinstance(self.filter, Filter):
            return self.filter.to_string()
        return self.filter


@dataclass
class SearchEntry:
    dn: str
    attributes: dict[str, list[str]]


@dataclass
class SearchResult:
    """
    The entries a :py:class:`SearchQuery` matched, plus the scope that was
    actually used.
    """

    scope: str
    results: list[SearchEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "results": [
                {"dn": entry.dn, "attributes": entry.attributes} for entry in self.results
            ],
        }


def search(client: DirectoryClient, query: SearchQuery) -> SearchResult:
    """
    Run ``query`` through ``client``.

    If ``query.requested_attributes`` is set, every entry in the result has
    every one of those names; names the server did not return for an entry
    are empty lists.  Names are matched case-insensitively and keep the
    requested spelling.

    Args:
        client: the directory client
        query: what to search for

    Raises:
        ValueError: ``query.scope`` is not a valid scope
        ConnectionUnavailable: there is no connection
        ProtocolError: the server rejected the search

    Returns:
        The matching entries.  A missing ``basedn`` gives no entries.

    """
    scope = query.scope or "sub"
    get_scope(scope)
    data = client.search(
        query.basedn, scope, query.filterstr, query.requested_attributes
    )
    result = SearchResult(scope=scope)
    for dn, attrs in data:
        attributes = {name: list(values) for name, values in attrs.items()}
        for name in query.requested_attributes or []:
            if name in ("*", "+") or name.startswith("@"):
                continue
            match = next((a for a in attributes if a.casefold() == name.casefold()), None)
            if match is None:
                attributes[name] = []
            elif match != name:
                attributes[name] = attributes.pop(match)
        result.results.append(SearchEntry(dn=dn, attributes=attributes))
    logger.info(
        "ldapentry.search.success basedn=%s scope=%s filter=%s results=%d",
        query.basedn,
        scope,
        query.filterstr,
        len(result.results),
    )
    return result
