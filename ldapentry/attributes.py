"""
In-memory representation of a directory entry's attributes.

Every attribute name in an :py:class:`AttributeSet` is in exactly one of three
states:

* :py:data:`ABSENT` -- the attribute is not part of the entry's description
  at all.  This is what lookups of unknown names return; it is never stored.
* :py:data:`UNMANAGED` -- the attribute is deliberately left alone.  We never
  write or delete it, whatever its remote value is.
* :py:class:`Managed` -- the attribute is under our control.  An empty
  :py:class:`Managed` means "this attribute must not exist on the server".

Attribute names are compared case-insensitively, since directory schemas are,
but are stored the way they were last spelled.  Values are compared as
multisets: LDAP multi-valued attributes have no order, so ``["a", "b"]`` and
``["b", "a"]`` are the same value.
"""

from collections import Counter
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any


def equal_as_sets(a: Sequence[str], b: Sequence[str]) -> bool:
    """
    Compare two value lists ignoring order.

    Duplicates are counted, and the comparison is case-sensitive.

    Args:
        a: the first list of values
        b: the second list of values

    Returns:
        ``True`` if ``a`` and ``b`` hold the same multiset of values.

    """
    if len(a) != len(b):
        return False
    return Counter(a) == Counter(b)


def decode_value(value: bytes | str) -> str:
    """
    Decode a value as returned by python-ldap.

    Binary values that are not valid UTF-8 are decoded with
    ``surrogateescape`` so that encoding them again yields the original bytes.
    """
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return value


class _Absent:
    """The state of an attribute that is not mentioned at all."""

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


class _Unmanaged:
    """The state of an attribute that is explicitly not under our control."""

    def __repr__(self) -> str:
        return "UNMANAGED"


#: The state of an attribute that is not part of the entry description.
ABSENT = _Absent()
#: The state of an attribute that we read through but never write.
UNMANAGED = _Unmanaged()


class Managed:
    """
    The state of an attribute under our control.

    ``values`` keeps the order it was given in, for display and round-trips,
    but two :py:class:`Managed` states are equal whenever their values are
    equal as multisets.

    Args:
        values: the desired (or observed) values.  May be empty.

    """

    __slots__ = ("values",)

    def __init__(self, values: Iterable[str] = ()) -> None:
        if isinstance(values, (str, bytes)):
            msg = f"Managed values must be a list of strings, not {type(values).__name__}"
            raise TypeError(msg)
        self.values: tuple[str, ...] = tuple(values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Managed):
            return NotImplemented
        return equal_as_sets(self.values, other.values)

    def __hash__(self) -> int:
        return hash(tuple(sorted(self.values)))

    def __repr__(self) -> str:
        return f"Managed({list(self.values)!r})"

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)


AttributeState = _Absent | _Unmanaged | Managed


class AttributeSet(Mapping):
    """
    A mapping of attribute name to :py:data:`AttributeState`.

    No two entries may normalize to the same case-insensitive name: assigning
    to ``"Mail"`` after ``"mail"`` replaces the earlier entry, and the newer
    spelling is the one that is kept.

    Args:
        entries: an optional mapping or iterable of ``(name, state)`` pairs.

    """

    def __init__(
        self,
        entries: Mapping[str, AttributeState]
        | Iterable[tuple[str, AttributeState]]
        | None = None,
    ) -> None:
        #: casefolded name -> (stored name, state)
        self._entries: dict[str, tuple[str, AttributeState]] = {}
        if entries is None:
            return
        items = entries.items() if isinstance(entries, Mapping) else entries
        for name, state in items:
            self[name] = state

    @staticmethod
    def _key(name: str) -> str:
        return name.casefold()

    @classmethod
    def from_snapshot(
        cls, data: Mapping[str, Iterable[bytes | str]]
    ) -> "AttributeSet":
        """
        Build an :py:class:`AttributeSet` from values read from the server.

        The server has no notion of "unmanaged", so every attribute becomes
        :py:class:`Managed`.

        Args:
            data: ``{name: [value, ...]}``, with either ``bytes`` or ``str``
                values.

        Returns:
            A new :py:class:`AttributeSet`.

        """
        return cls(
            (name, Managed(decode_value(v) for v in values))
            for name, values in data.items()
        )

    @classmethod
    def from_config(cls, data: Mapping[str, Sequence[str] | None] | None) -> "AttributeSet":
        """
        Build an :py:class:`AttributeSet` from desired configuration.

        ``None`` marks an attribute as :py:data:`UNMANAGED`, a list (even an
        empty one) as :py:class:`Managed`.  Attributes not in ``data`` are
        :py:data:`ABSENT`.

        Args:
            data: ``{name: [value, ...] | None}``

        Raises:
            TypeError: a value is neither ``None`` nor a list of strings
            ValueError: two names differ only by case

        Returns:
            A new :py:class:`AttributeSet`.

        """
        attributes = cls()
        for name, values in (data or {}).items():
            if name in attributes:
                msg = (
                    f"Attribute '{name}' is configured more than once "
                    f"(also as '{attributes.name_for(name)}')"
                )
                raise ValueError(msg)
            if values is None:
                attributes[name] = UNMANAGED
            elif isinstance(values, (str, bytes)):
                msg = f"Attribute '{name}' must be a list of values, not a string"
                raise TypeError(msg)
            else:
                attributes[name] = Managed(values)
        return attributes

    def __setitem__(self, name: str, state: AttributeState) -> None:
        if not isinstance(state, (_Absent, _Unmanaged, Managed)):
            msg = f"Invalid attribute state for '{name}': {state!r}"
            raise TypeError(msg)
        key = self._key(name)
        if state is ABSENT:
            self._entries.pop(key, None)
            return
        self._entries[key] = (name, state)

    def __getitem__(self, name: str) -> AttributeState:
        try:
            return self._entries[self._key(name)][1]
        except KeyError:
            raise KeyError(name) from None

    def __delitem__(self, name: str) -> None:
        try:
            del self._entries[self._key(name)]
        except KeyError:
            raise KeyError(name) from None

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._key(name) in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AttributeSet):
            return NotImplemented
        if self._entries.keys() != other._entries.keys():
            return False
        return all(
            state == other._entries[key][1]
            for key, (_, state) in self._entries.items()
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        inner = ", ".join(f"{name!r}: {state!r}" for name, state in self.items())
        return f"AttributeSet({{{inner}}})"

    def get(self, name: str, default: Any = ABSENT) -> AttributeState:  # type: ignore[override]
        """
        Return the state of ``name``, or :py:data:`ABSENT` if we don't have it.
        """
        entry = self._entries.get(self._key(name))
        if entry is None:
            return default
        return entry[1]

    def name_for(self, name: str) -> str | None:
        """
        Return the spelling we store for ``name``, or ``None``.
        """
        entry = self._entries.get(self._key(name))
        return entry[0] if entry else None

    def managed(self) -> dict[str, list[str]]:
        """
        Return the managed attributes as ``{name: [value, ...]}``.
        """
        return {
            name: list(state.values)
            for name, state in self._entries.values()
            if isinstance(state, Managed)
        }

    def managed_names(self) -> list[str]:
        return [
            name for name, state in self._entries.values() if isinstance(state, Managed)
        ]

    def unmanaged_names(self) -> list[str]:
        return [name for name, state in self._entries.values() if state is UNMANAGED]

    def to_dict(self) -> dict[str, list[str] | None]:
        """
        Render the set the way configuration spells it: lists for managed
        attributes, ``None`` for unmanaged ones.
        """
        return {
            name: list(state.values) if isinstance(state, Managed) else None
            for name, state in self._entries.values()
        }

    def copy(self) -> "AttributeSet":
        return AttributeSet(self.items())
