"""
Exceptions raised by ldapentry.

python-ldap exceptions never escape the directory client; they are translated
into the classes below at the client boundary.  None of these are retried by
ldapentry itself: retry and backoff belong to whatever orchestrates the
reconciliation cycles.
"""

from django.core.exceptions import ImproperlyConfigured


class LdapEntryError(Exception):
    """Base class for all ldapentry errors."""


class ConnectionUnavailable(LdapEntryError, ImproperlyConfigured):  # noqa: N818
    """
    Raised when there is no usable directory connection.

    This is treated as a configuration error: the connection is handed to us
    already bound, so if it is missing or the server went away there is
    nothing useful we can do but stop.
    """


class ProtocolError(LdapEntryError):
    """
    The directory server rejected a request.

    Args:
        code: the LDAP result code, exactly as the server returned it.
        message: the server's diagnostic message.

    """

    def __init__(self, code: int | None, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"LDAP error {code}: {message}" if code is not None else message)


class SchemaViolation(ProtocolError):  # noqa: N818
    """
    The server refused an add or modify because of its schema, usually a
    missing mandatory attribute.  The server's message is passed along
    untouched.
    """


class EncodingError(LdapEntryError):
    """
    An attribute value could not be encoded for transmission.

    Raised before any request is sent, so a failed encoding never results in a
    partially applied entry.

    Args:
        attribute: the attribute whose value failed to encode.
        message: why it failed.

    """

    def __init__(self, attribute: str, message: str) -> None:
        self.attribute = attribute
        self.message = message
        super().__init__(f"Unable to encode {attribute} value: {message}")
