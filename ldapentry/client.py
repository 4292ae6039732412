"""
The directory client that ldapentry issues its requests through.

:py:class:`DirectoryClient` is the interface the reconciler needs: four
operations, ``add``, ``search``, ``modify`` and ``delete``.  Anything that
implements them can be used; :py:class:`LdapClient` is the python-ldap backed
implementation.

The client never owns its connection.  A bound ``LDAPObject`` is handed to it
(see :py:func:`connect` to build one from Django settings), and a missing
connection is reported as :py:exc:`~ldapentry.exceptions.ConnectionUnavailable`
rather than reconnected.
"""

import logging
from collections.abc import Callable, Iterable
from functools import wraps
from pathlib import Path
from typing import Any, Protocol, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap import modlist
from ldap.controls import SimplePagedResultsControl
from ldap_filter import Filter

from ldapentry import ldap

from .attributes import decode_value
from .codecs import CodecRegistry
from .conf import get_config
from .differ import Delete, Operation, Replace
from .exceptions import ConnectionUnavailable, ProtocolError, SchemaViolation
from .typing import AddModlist, LDAPData, ModifyModList, SearchData

logger = logging.getLogger(__name__)

#: Search scopes by name.  ``base``/``one``/``sub`` are the ldapsearch names;
#: ``object``/``children``/``subtree`` are accepted as synonyms.
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "object": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "children": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    "subtree": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}

#: Matches every entry; used for base scope reads of a single entry
ANY_OBJECT = Filter.attribute("objectClass").present().to_string()


def get_scope(scope: str) -> int:
    """
    Convert a human readable scope name to a python-ldap scope.

    Args:
        scope: one of ``base``, ``one`` or ``sub`` (or ``object``,
            ``children``, ``subtree``)

    Raises:
        ValueError: ``scope`` is not a known scope name

    Returns:
        The python-ldap ``SCOPE_*`` constant.

    """
    try:
        return SCOPES[scope]
    except KeyError:
        msg = f"scope must be one of 'base', 'one', or 'sub', got: {scope}"
        raise ValueError(msg) from None


class DirectoryClient(Protocol):
    """
    What the reconciler needs from a directory client.
    """

    def add(self, dn: str, attributes: dict[str, list[str]]) -> None: ...

    def search(
        self,
        base: str,
        scope: str = "base",
        filterstr: str = ANY_OBJECT,
        attributes: list[str] | None = None,
    ) -> list[SearchData]: ...

    def modify(self, dn: str, operations: list[Operation]) -> None: ...

    def delete(self, dn: str) -> bool: ...


# -----------------------
# Decorators
# -----------------------


def _error_details(exc: Exception) -> tuple[int | None, str]:
    """
    Pull the result code and a message out of a python-ldap exception.
    """
    info: dict[str, Any] = {}
    if exc.args and isinstance(exc.args[0], dict):
        info = exc.args[0]
    code = info.get("result")
    parts = [info.get("desc", ""), info.get("info", "")]
    message = ": ".join(p for p in parts if p) or str(exc)
    return code, message


def translate_errors(operation: str) -> Callable:
    """
    Decorator that turns python-ldap exceptions raised by a client method
    into ldapentry exceptions.

    Args:
        operation: the name of the operation, for logging.

    Returns:
        A decorator for :py:class:`LdapClient` methods.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            dn = args[0] if args else kwargs.get("dn", kwargs.get("base"))
            try:
                return func(self, *args, **kwargs)
            except (ldap.SERVER_DOWN, ldap.CONNECT_ERROR) as e:  # type: ignore[attr-defined]
                _, message = _error_details(e)
                logger.error(
                    "ldapentry.client.%s.connection-lost dn=%s error=%s",
                    operation,
                    dn,
                    message,
                )
                raise ConnectionUnavailable(message) from e
            except ldap.OBJECT_CLASS_VIOLATION as e:  # type: ignore[attr-defined]
                code, message = _error_details(e)
                logger.warning(
                    "ldapentry.client.%s.schema-violation dn=%s code=%s error=%s",
                    operation,
                    dn,
                    code,
                    message,
                )
                raise SchemaViolation(code, message) from e
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                code, message = _error_details(e)
                logger.warning(
                    "ldapentry.client.%s.failed dn=%s code=%s error=%s",
                    operation,
                    dn,
                    code,
                    message,
                )
                raise ProtocolError(code, message) from e

        return wrapper

    return real_decorator


# -----------------------
# Helper Classes
# -----------------------


class Modlist:
    """
    Helper for constructing python-ldap modlists for add and modify requests.

    This is where attribute values are encoded, so every value passes through
    its :py:class:`~ldapentry.codecs.Codec` exactly once, and an encoding
    failure happens before anything is sent.

    Args:
        codecs: the codec registry to encode values with.

    """

    def __init__(self, codecs: CodecRegistry) -> None:
        self.codecs = codecs

    def add(self, attributes: dict[str, list[str]]) -> AddModlist:
        """
        Convert ``{name: [value, ...]}`` to a modlist suitable for ``add_s``.

        Attributes with no values are left out.

        Args:
            attributes: the attributes of the new entry

        Raises:
            EncodingError: a value could not be encoded

        Returns:
            The modlist for the add operation.

        """
        new = {
            name: self.codecs.encode_values(name, values)
            for name, values in attributes.items()
            if values
        }
        return modlist.addModlist(new)

    def update(self, operations: Iterable[Operation]) -> ModifyModList:
        """
        Convert :py:class:`~ldapentry.differ.Replace` and
        :py:class:`~ldapentry.differ.Delete` operations into a modlist for
        ``modify_s``, preserving their order.

        Args:
            operations: the operations to apply

        Raises:
            EncodingError: a value could not be encoded

        Returns:
            A list of ``MOD_REPLACE`` and ``MOD_DELETE`` modifications.

        """
        _modlist: ModifyModList = []
        for op in operations:
            if isinstance(op, Replace):
                _modlist.append(
                    (
                        ldap.MOD_REPLACE,  # type: ignore[attr-defined]
                        op.name,
                        self.codecs.encode_values(op.name, op.values),
                    )
                )
            elif isinstance(op, Delete):
                _modlist.append((ldap.MOD_DELETE, op.name, None))  # type: ignore[attr-defined]
            else:
                msg = f"Unknown operation: {op!r}"
                raise TypeError(msg)
        return _modlist


# -----------------------
# Connections
# -----------------------


def get_server_config(server: str = "default", key: str = "write") -> dict[str, Any]:
    """
    Return ``settings.LDAP_SERVERS[server][key]``.

    Raises:
        ImproperlyConfigured: the setting or one of the keys is missing

    """
    try:
        servers = settings.LDAP_SERVERS
    except AttributeError as e:
        msg = "settings.LDAP_SERVERS does not exist!"
        raise ImproperlyConfigured(msg) from e
    try:
        return servers[server][key]
    except KeyError as e:
        msg = f"settings.LDAP_SERVERS has no key '{server}' with a '{key}' section"
        raise ImproperlyConfigured(msg) from e


def connect(  # noqa: PLR0912
    server: str = "default", key: str = "write"
) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
    """
    Create and bind a new LDAP connection from Django settings.

    The configuration lives in ``settings.LDAP_SERVERS[server][key]``::

        LDAP_SERVERS = {
            "default": {
                "write": {
                    "url": "ldaps://ldap.example.com",
                    "user": "cn=Manager,dc=example,dc=com",
                    "password": "secret",
                    "use_starttls": False,
                    "tls_verify": "always",
                },
            },
        }

    A ``user`` of ``None`` binds anonymously.

    Args:
        server: the key into ``settings.LDAP_SERVERS``
        key: which connection block of that server to use

    Raises:
        ImproperlyConfigured: the settings are missing or have no ``url``
        ValueError: ``tls_verify`` is not ``never`` or ``always``
        OSError: a configured TLS file does not exist or is not a file
        ConnectionUnavailable: the server could not be reached
        ProtocolError: the server refused the bind

    Returns:
        A bound ``LDAPObject``.

    """
    config = get_server_config(server, key)
    if not config.get("url"):
        msg = f"settings.LDAP_SERVERS['{server}']['{key}'] has no 'url'"
        raise ImproperlyConfigured(msg)
    ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
    if config.get("follow_referrals", False):
        ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
    else:
        ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
    timeout = config.get("timeout", 15.0)
    ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
    tls_verify = config.get("tls_verify", "always")
    if tls_verify == "never":
        ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
    elif tls_verify == "always":
        ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
    else:
        msg = f"Invalid tls_verify value: {tls_verify}"
        raise ValueError(msg)
    for option, setting_name in (
        (ldap.OPT_X_TLS_CACERTFILE, "tls_ca_certfile"),  # type: ignore[attr-defined]
        (ldap.OPT_X_TLS_CERTFILE, "tls_certfile"),  # type: ignore[attr-defined]
        (ldap.OPT_X_TLS_KEYFILE, "tls_keyfile"),  # type: ignore[attr-defined]
    ):
        if filename := config.get(setting_name, None):
            path = Path(filename)
            if not path.is_file():
                msg = f"{setting_name} does not exist or is not a file: {filename}"
                raise OSError(msg)
            ldap_object.set_option(option, filename)
    ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
    try:
        if config.get("use_starttls", False):
            ldap_object.start_tls_s()
        if config.get("user"):
            ldap_object.simple_bind_s(config["user"], config.get("password"))
    except (ldap.SERVER_DOWN, ldap.CONNECT_ERROR) as e:  # type: ignore[attr-defined]
        _, message = _error_details(e)
        msg = f"Error connecting to LDAP server at {config['url']}: {message}"
        raise ConnectionUnavailable(msg) from e
    except ldap.LDAPError as e:  # type: ignore[attr-defined]
        code, message = _error_details(e)
        msg = f"Error binding to LDAP server with DN {config.get('user')}: {message}"
        raise ProtocolError(code, msg) from e
    logger.info(
        "ldapentry.client.connect.success url=%s user=%s",
        config["url"],
        config.get("user") or "anonymous",
    )
    return ldap_object


class LdapClient:
    """
    A :py:class:`DirectoryClient` backed by a python-ldap connection.

    Args:
        connection: a bound ``LDAPObject``, or ``None`` if no connection has
            been configured (every request then raises
            :py:exc:`~ldapentry.exceptions.ConnectionUnavailable`).

    Keyword Args:
        codecs: the codec registry to encode outgoing values with.
        page_size: if non-zero, searches use the simple paged results control
            with this page size.  Defaults to ``settings.LDAPENTRY_PAGE_SIZE``,
            or ``0``.

    """

    def __init__(
        self,
        connection: ldap.ldapobject.LDAPObject | None,  # type: ignore[name-defined]
        codecs: CodecRegistry | None = None,
        page_size: int | None = None,
    ) -> None:
        self._connection = connection
        self.codecs = codecs if codecs is not None else CodecRegistry()
        self.page_size: int = (
            page_size if page_size is not None else int(get_config("PAGE_SIZE", 0))
        )

    @classmethod
    def from_settings(
        cls, server: str = "default", key: str = "write", **kwargs
    ) -> "LdapClient":
        """
        Build an :py:class:`LdapClient` on a new connection made by
        :py:func:`connect`.
        """
        return cls(connect(server, key), **kwargs)

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        The connection we were given.

        Raises:
            ConnectionUnavailable: there is no connection

        """
        if self._connection is None:
            msg = "No LDAP connection is configured"
            raise ConnectionUnavailable(msg)
        return self._connection

    def _decode(self, data: list[LDAPData]) -> list[SearchData]:
        # AD returns referrals as entries whose attrs are not a dict
        return [
            (dn, {name: [decode_value(v) for v in values] for name, values in attrs.items()})
            for dn, attrs in data
            if isinstance(attrs, dict)
        ]

    def _paged_search(
        self,
        base: str,
        scope: int,
        filterstr: str,
        attributes: list[str] | None,
    ) -> list[LDAPData]:
        """
        Perform a paged search, collecting every page.
        """
        paging = SimplePagedResultsControl(True, size=self.page_size, cookie="")  # noqa: FBT003
        results: list[LDAPData] = []
        while True:
            msgid = self.connection.search_ext(
                base, scope, filterstr, attributes, serverctrls=[paging]
            )
            _, rdata, _, serverctrls = self.connection.result3(msgid)
            results.extend(rdata)
            paged_controls = [
                c
                for c in serverctrls
                if c.controlType == SimplePagedResultsControl.controlType
            ]
            if not paged_controls or not paged_controls[0].cookie:
                break
            paging.cookie = paged_controls[0].cookie
        return results

    @translate_errors("search")
    def search(
        self,
        base: str,
        scope: str = "base",
        filterstr: str | Filter = ANY_OBJECT,
        attributes: list[str] | None = None,
    ) -> list[SearchData]:
        """
        Search the directory.

        A missing ``base`` entry is not an error; it just means there are no
        results.

        Args:
            base: the DN to search from
            scope: ``base``, ``one`` or ``sub``
            filterstr: an LDAP filter, as a string or an ``ldap_filter.Filter``
            attributes: the attributes to return; ``None`` means all user
                attributes

        Raises:
            ValueError: ``scope`` is not valid
            ConnectionUnavailable: there is no connection
            ProtocolError: the server rejected the search

        Returns:
            A list of ``(dn, {name: [value, ...]})`` tuples.

        """
        ldap_scope = get_scope(scope)
        if not isinstance(filterstr, str):
            filterstr = filterstr.to_string()
        try:
            if self.page_size:
                data = self._paged_search(base, ldap_scope, filterstr, attributes)
            else:
                data = self.connection.search_s(
                    base, ldap_scope, filterstr=filterstr, attrlist=attributes
                )
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            logger.debug("ldapentry.client.search.no-such-object base=%s", base)
            return []
        return self._decode(cast("list[LDAPData]", data))

    @translate_errors("add")
    def add(self, dn: str, attributes: dict[str, list[str]]) -> None:
        """
        Add a new entry.

        Args:
            dn: the DN of the new entry
            attributes: ``{name: [value, ...]}``; empty lists are skipped

        Raises:
            EncodingError: a value could not be encoded; nothing was sent
            ConnectionUnavailable: there is no connection
            SchemaViolation: the server rejected the entry's schema
            ProtocolError: the server rejected the add

        """
        _modlist = Modlist(self.codecs).add(attributes)
        self.connection.add_s(dn, _modlist)
        logger.info(
            "ldapentry.client.add.success dn=%s attributes=%s",
            dn,
            ",".join(name for name, _ in _modlist),
        )

    @translate_errors("modify")
    def modify(self, dn: str, operations: list[Operation]) -> None:
        """
        Apply ``operations`` to ``dn`` in a single modify request.

        Args:
            dn: the DN of the entry to modify
            operations: the operations to apply, in order

        Raises:
            EncodingError: a value could not be encoded; nothing was sent
            ConnectionUnavailable: there is no connection
            SchemaViolation: the server rejected the change for schema reasons
            ProtocolError: the server rejected the modify

        """
        if not operations:
            logger.debug("ldapentry.client.modify.no-changes dn=%s", dn)
            return
        _modlist = Modlist(self.codecs).update(operations)
        self.connection.modify_s(dn, _modlist)
        logger.info(
            "ldapentry.client.modify.success dn=%s replaced=%s deleted=%s",
            dn,
            ",".join(op.name for op in operations if isinstance(op, Replace)),
            ",".join(op.name for op in operations if isinstance(op, Delete)),
        )

    @translate_errors("delete")
    def delete(self, dn: str) -> bool:
        """
        Delete the entry at ``dn``.

        Args:
            dn: the DN of the entry to delete

        Raises:
            ConnectionUnavailable: there is no connection
            ProtocolError: the server rejected the delete

        Returns:
            ``True`` if the entry was deleted, ``False`` if it did not exist.

        """
        try:
            self.connection.delete_s(dn)
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            logger.info("ldapentry.client.delete.already-absent dn=%s", dn)
            return False
        logger.info("ldapentry.client.delete.success dn=%s", dn)
        return True
