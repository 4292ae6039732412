"""
Gate for write-only attributes.

Write-only attributes (passwords and similar secrets) are sent to the server
but never kept in any state we hand back, so there is nothing to diff them
against.  Instead each entry carries a revision token: the write-only payload
is transmitted only when the requested revision differs from the revision
recorded after the last successful transmission.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from .differ import Delete, Operation, Replace

logger = logging.getLogger(__name__)


class _NeverApplied:
    def __repr__(self) -> str:
        return "NEVER_APPLIED"


#: ``last_revision`` for an entry that has never been written; differs from
#: every revision, including ``None``
NEVER_APPLIED = _NeverApplied()


def should_transmit(last_applied: Any, requested: Any) -> bool:
    """
    Decide whether the write-only payload needs to be sent.

    Args:
        last_applied: the revision recorded at the last successful transmission
        requested: the revision in the current configuration

    Returns:
        ``True`` if the revisions differ.

    """
    return last_applied != requested


class WriteOnceGate:
    """
    Decide whether, and what, write-only attributes go out this cycle.

    The payload must come from configuration; by construction no persisted
    copy of it exists anywhere.

    Args:
        attributes: the write-only payload, ``{name: [value, ...]}``, or
            ``None`` if nothing is configured.
        requested_revision: the revision token in the current configuration.
        last_revision: the revision token recorded in the last state, or
            :py:data:`NEVER_APPLIED` when the entry does not exist yet.

    """

    def __init__(
        self,
        attributes: Mapping[str, Sequence[str] | None] | None,
        requested_revision: Any,
        last_revision: Any = NEVER_APPLIED,
    ) -> None:
        self.attributes = attributes or {}
        self.requested_revision = requested_revision
        self.last_revision = last_revision

    @property
    def is_open(self) -> bool:
        """
        ``True`` when the payload should be transmitted this cycle.
        """
        return bool(self.attributes) and should_transmit(
            self.last_revision, self.requested_revision
        )

    def names(self) -> list[str]:
        return [name for name, values in self.attributes.items() if values is not None]

    def operations(self) -> list[Operation]:
        """
        Return a :py:class:`~ldapentry.differ.Replace` for each write-only
        attribute if the gate is open, otherwise nothing.

        Attributes configured as ``None`` are skipped, and an empty list
        becomes a :py:class:`~ldapentry.differ.Delete`.
        """
        if not self.is_open:
            logger.debug(
                "ldapentry.gate.closed revision=%s last_revision=%s",
                self.requested_revision,
                self.last_revision,
            )
            return []
        logger.debug(
            "ldapentry.gate.open revision=%s last_revision=%s attributes=%s",
            self.requested_revision,
            self.last_revision,
            ",".join(self.names()),
        )
        ops: list[Operation] = []
        for name, values in self.attributes.items():
            if values is None:
                continue
            if isinstance(values, (str, bytes)):
                msg = f"Write-only attribute '{name}' must be a list of values"
                raise TypeError(msg)
            ops.append(Replace(name, tuple(values)) if values else Delete(name))
        return ops

    def applied_revision(self, succeeded: bool) -> Any:  # noqa: FBT001
        """
        Return the revision to record after this cycle: the requested one if
        the transmission succeeded, otherwise the last one so the next cycle
        tries again.
        """
        if succeeded:
            return self.requested_revision
        return self.last_revision
