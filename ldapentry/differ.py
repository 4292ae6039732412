"""
Compute the modifications that converge one :py:class:`AttributeSet` to
another.

The rules:

* A desired :py:class:`~ldapentry.attributes.Managed` attribute that is
  missing from the current set, or whose values differ as a set, is replaced.
  If its desired value list is empty it is deleted instead, since most servers
  refuse a replace with no values.
* A desired :py:data:`~ldapentry.attributes.UNMANAGED` attribute is never
  touched.
* A current attribute that has values but is not mentioned in the desired
  set at all is deleted.  One already known to be empty is left alone, since
  servers reject deleting an attribute that does not exist.

All replacements come before all deletions.
"""

from typing import NamedTuple

from .attributes import ABSENT, UNMANAGED, AttributeSet, Managed, equal_as_sets


class Replace(NamedTuple):
    """Replace every value of ``name`` with ``values``."""

    name: str
    values: tuple[str, ...]


class Delete(NamedTuple):
    """Remove ``name`` from the entry entirely."""

    name: str


Operation = Replace | Delete


def diff(current: AttributeSet, desired: AttributeSet) -> list[Operation]:
    """
    Return the operations that turn ``current`` into ``desired``.

    ``current`` is what the server has (or an empty set before creation);
    ``desired`` comes from configuration.  Running :py:func:`diff` again after
    the returned operations were applied gives an empty list.

    Args:
        current: the observed attributes
        desired: the configured attributes

    Returns:
        A list of :py:class:`Replace` and :py:class:`Delete` operations,
        replacements first.

    """
    replaces: list[Operation] = []
    deletes: list[Operation] = []
    for name, state in desired.items():
        if state is UNMANAGED:
            continue
        values = state.values  # type: ignore[union-attr]
        existing = current.get(name)
        if isinstance(existing, Managed) and equal_as_sets(existing.values, values):
            continue
        if values:
            replaces.append(Replace(name, tuple(values)))
        else:
            deletes.append(Delete(name))
    for name, existing in current.items():
        if desired.get(name) is ABSENT and isinstance(existing, Managed) and existing.values:
            deletes.append(Delete(name))
    return replaces + deletes


def stabilize(config: AttributeSet, state: AttributeSet) -> AttributeSet:
    """
    Keep a plan from showing a change when only value order differs.

    If ``config`` and ``state`` name the same attributes and every managed
    attribute is set-equal, return ``state`` so that the planned value keeps
    the server's ordering.  Otherwise return ``config`` as is.

    Args:
        config: the attributes from configuration
        state: the attributes from the last observed state

    Returns:
        Whichever of the two should be planned.

    """
    if config == state:
        return state
    return config
