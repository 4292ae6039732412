"""
Per-attribute value encoding.

Most attributes are sent to the server as plain UTF-8.  A few need their value
transformed first; the canonical example is Active Directory's ``unicodePwd``,
which must be wrapped in double quotes and encoded as UTF-16LE.

Codecs are applied exactly once, when an add or modify request is built.
Diffing always works on the logical (unencoded) values.
"""

import hashlib
import logging
import os
from base64 import b64encode as encode
from collections.abc import Iterable

from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

from .conf import get_config
from .exceptions import EncodingError

logger = logging.getLogger(__name__)


class Codec:
    """
    The identity codec: values go out as UTF-8.

    Subclasses override :py:meth:`transform` to do something more
    interesting.
    """

    def transform(self, value: str) -> bytes:
        """
        Turn a logical value into the bytes we send to the server.

        Args:
            value: the value as it appears in configuration

        Raises:
            UnicodeError: the value can't be represented in the target encoding

        Returns:
            The encoded value.

        """
        return value.encode("utf-8", "surrogateescape")

    def encode(self, attribute: str, value: str) -> bytes:
        """
        Encode ``value`` for ``attribute``, converting any failure to
        :py:exc:`~ldapentry.exceptions.EncodingError`.

        The value itself never ends up in the error message.
        """
        try:
            return self.transform(value)
        except (UnicodeError, ValueError) as e:
            msg = f"{type(e).__name__} ({self.__class__.__name__})"
            raise EncodingError(attribute, msg) from None


class UnicodePwdCodec(Codec):
    """
    Active Directory's ``unicodePwd`` format: the password surrounded by
    double quotes, encoded as UTF-16LE.

    Values containing unpaired surrogates can't be encoded and raise
    :py:exc:`~ldapentry.exceptions.EncodingError`.
    """

    def transform(self, value: str) -> bytes:
        return f'"{value}"'.encode("utf-16-le")


class SSHAPasswordCodec(Codec):
    """
    Salted SHA1 (``{SSHA}``) password hashing, for servers that expect
    ``userPassword`` to arrive pre-hashed.
    """

    def transform(self, value: str) -> bytes:
        salt = os.urandom(8)
        h = hashlib.sha1(value.encode("utf-8"))  # noqa: S324
        h.update(salt)
        return b"{SSHA}" + encode(h.digest() + salt)


#: Codecs registered for every :py:class:`CodecRegistry`
DEFAULT_CODECS: dict[str, type[Codec]] = {
    "unicodePwd": UnicodePwdCodec,
}


class CodecRegistry:
    """
    Look up the :py:class:`Codec` for an attribute name.

    Attribute names are matched case-insensitively.  Anything not registered
    uses the identity :py:class:`Codec`.

    On top of :py:data:`DEFAULT_CODECS`, codecs can be registered in Django
    settings::

        LDAPENTRY_CODECS = {
            "userPassword": "ldapentry.codecs.SSHAPasswordCodec",
        }

    Keyword Args:
        codecs: explicit ``{attribute: Codec instance}`` registrations; these
            win over both the defaults and settings.

    Raises:
        ImproperlyConfigured: a codec named in ``LDAPENTRY_CODECS`` can't be
            imported

    """

    def __init__(self, codecs: dict[str, Codec] | None = None) -> None:
        self.default = Codec()
        self._codecs: dict[str, Codec] = {}
        for name, codec_class in DEFAULT_CODECS.items():
            self.register(name, codec_class())
        for name, path in get_config("CODECS", {}).items():
            try:
                codec_class = import_string(path)
            except ImportError as e:
                msg = f"LDAPENTRY_CODECS['{name}']: cannot import '{path}'"
                raise ImproperlyConfigured(msg) from e
            self.register(name, codec_class())
        for name, codec in (codecs or {}).items():
            self.register(name, codec)

    def register(self, attribute: str, codec: Codec) -> None:
        self._codecs[attribute.casefold()] = codec

    def get(self, attribute: str) -> Codec:
        return self._codecs.get(attribute.casefold(), self.default)

    def encode(self, attribute: str, value: str) -> bytes:
        """
        Encode a single value of ``attribute``.

        Raises:
            EncodingError: the value could not be encoded

        """
        return self.get(attribute).encode(attribute, value)

    def encode_values(self, attribute: str, values: Iterable[str]) -> list[bytes]:
        """
        Encode every value of ``attribute``.  Either all values are encoded or
        :py:exc:`~ldapentry.exceptions.EncodingError` is raised.
        """
        codec = self.get(attribute)
        if codec is not self.default:
            logger.debug(
                "ldapentry.codecs.encode attribute=%s codec=%s",
                attribute,
                codec.__class__.__name__,
            )
        return [codec.encode(attribute, value) for value in values]
