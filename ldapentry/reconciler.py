"""
Lifecycle management for a single directory entry.

:py:class:`EntryReconciler` is what a declarative framework calls to create,
refresh, converge, destroy and import an entry.  Each call is one
reconciliation cycle: it rebuilds its view of the entry from the
:py:class:`EntryState` and :py:class:`EntryConfig` it is handed, talks to the
directory client, and returns the new state for the framework to persist.
Nothing is kept on the reconciler between cycles, so one reconciler can serve
any number of entries concurrently.

An entry moves through these lifecycle states::

    ABSENT -> CREATED -> OBSERVED <-> CONVERGING -> DESTROYED

Write-only attributes (``attributes_wo``) are sent when the entry is created
and afterwards only when ``attributes_wo_version`` changes.  They never appear
in any :py:class:`EntryState`.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .attributes import AttributeSet, Managed
from .client import ANY_OBJECT, DirectoryClient
from .conf import get_config
from .differ import Delete, Operation, Replace, diff, stabilize
from .gate import WriteOnceGate
from .schema import ENTRY_SCHEMA, Schema
from .typing import ConfigAttributes

logger = logging.getLogger(__name__)


def get_import_default_attributes() -> list[str]:
    """
    The attributes an import brings under management when none are named.
    """
    return list(get_config("IMPORT_DEFAULT_ATTRIBUTES", ["objectClass"]))


class EntryLifecycle:
    """
    The lifecycle states of a managed entry.

    Nothing is kept between cycles, so transitions are only logged.
    """

    ABSENT = "absent"
    CREATED = "created"
    OBSERVED = "observed"
    CONVERGING = "converging"
    DESTROYED = "destroyed"

    @classmethod
    def transition(cls, dn: str, old: str, new: str) -> str:
        """
        Log a lifecycle transition for ``dn`` and return the new state.
        """
        logger.debug("ldapentry.reconciler.transition dn=%s from=%s to=%s", dn, old, new)
        return new


@dataclass
class EntryConfig:
    """
    The desired configuration of an entry.

    Args:
        dn: the entry's distinguished name.  Changing it replaces the entry.
        attributes: ``{name: [value, ...]}``.  A value of ``None`` leaves the
            attribute unmanaged; an empty list means the attribute must not
            exist.
        attributes_wo: write-only attributes, sent but never persisted.
        attributes_wo_version: the revision token for ``attributes_wo``.

    """

    dn: str
    attributes: ConfigAttributes
    attributes_wo: ConfigAttributes | None = field(default=None, repr=False)
    attributes_wo_version: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntryConfig":
        """
        Build a config from a framework payload, checking it against
        :py:data:`~ldapentry.schema.ENTRY_SCHEMA`.

        Raises:
            ValueError: the payload is not a valid entry configuration

        """
        ENTRY_SCHEMA.validate(data)
        return cls(
            dn=data["dn"],
            attributes=dict(data["attributes"]),
            attributes_wo=data.get("attributes_wo"),
            attributes_wo_version=data.get("attributes_wo_version"),
        )


@dataclass
class EntryState:
    """
    The state of an entry, as handed back to the framework for persistence.

    ``attributes`` mirrors :py:attr:`EntryConfig.attributes`: lists for
    managed attributes, ``None`` for unmanaged ones.  There is deliberately no
    field for write-only attributes.
    """

    dn: str
    attributes: ConfigAttributes
    attributes_wo_version: Any = None

    @property
    def id(self) -> str:
        return self.dn

    def to_dict(self) -> dict[str, Any]:
        return {
            "dn": self.dn,
            "attributes": {k: (list(v) if v is not None else None) for k, v in self.attributes.items()},
            "attributes_wo_version": self.attributes_wo_version,
            "id": self.id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntryState":
        return cls(
            dn=data["dn"],
            attributes=dict(data.get("attributes") or {}),
            attributes_wo_version=data.get("attributes_wo_version"),
        )


@dataclass
class Plan:
    """
    What :py:meth:`EntryReconciler.apply` would do.

    Args:
        action: one of ``create``, ``update``, ``replace``, ``delete`` or
            ``noop``.
        state: the planned state, or ``None`` if the entry will be gone.
        operations: the modify operations an ``update`` would send.  Empty
            for the other actions.

    """

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"

    action: str
    state: EntryState | None
    operations: list[Operation] = field(default_factory=list)


def same_dn(a: str, b: str) -> bool:
    """
    DNs are compared case-insensitively.
    """
    return a.casefold() == b.casefold()


def parse_import_id(import_id: str) -> tuple[str, list[str]]:
    """
    Parse an import identifier.

    The identifier is either a bare DN, which imports the default attributes
    (see ``LDAPENTRY_IMPORT_DEFAULT_ATTRIBUTES``), or a JSON object naming the
    attributes to bring under management::

        {"dn": "cn=user,ou=Users,dc=example,dc=com", "attributes": ["cn", "sn"]}

    ``identity`` is accepted in place of ``dn``.

    Args:
        import_id: the import identifier

    Raises:
        ValueError: the identifier is empty, is malformed JSON, has no DN, or
            its ``attributes`` is not a list of strings

    Returns:
        A ``(dn, attributes)`` tuple.

    """
    import_id = import_id.strip()
    if not import_id:
        msg = "Import identifier must be a DN or a JSON object"
        raise ValueError(msg)
    if not import_id.startswith("{"):
        return import_id, get_import_default_attributes()
    try:
        data = json.loads(import_id)
    except json.JSONDecodeError as e:
        msg = f"Unable to parse import identifier as JSON: {e}"
        raise ValueError(msg) from e
    if not isinstance(data, dict):
        msg = "Import identifier JSON must be an object"
        raise ValueError(msg)
    dn = data.get("dn") or data.get("identity")
    if not dn or not isinstance(dn, str):
        msg = "Import identifier JSON must include a 'dn'"
        raise ValueError(msg)
    attributes = data.get("attributes")
    if attributes is None:
        return dn, get_import_default_attributes()
    if not isinstance(attributes, list) or not all(isinstance(a, str) for a in attributes):
        msg = "Import identifier 'attributes' must be a list of attribute names"
        raise ValueError(msg)
    return dn, attributes


class EntryReconciler:
    """
    Converge directory entries to their configuration.

    Args:
        client: the directory client to issue requests through.  It is
            shared, never owned.

    """

    #: The schema the framework sees for a managed entry
    schema: Schema = ENTRY_SCHEMA

    def __init__(self, client: DirectoryClient) -> None:
        self.client = client

    def _current(self, state: EntryState) -> AttributeSet:
        """
        The last observed attributes: the managed ones from ``state``.
        """
        return AttributeSet(
            (name, Managed(values))
            for name, values in state.attributes.items()
            if values is not None
        )

    def _observe(self, dn: str, names: list[str]) -> AttributeSet | None:
        """
        Read ``names`` from the entry at ``dn``.

        Every requested name is in the result; names the server did not
        return are ``Managed([])``, since silence about a requested attribute
        means it does not exist.  The requested spelling of each name is kept.

        Returns:
            The observed attributes, or ``None`` if the entry does not exist.

        """
        # "1.1" asks for no attributes at all
        results = self.client.search(dn, "base", ANY_OBJECT, names or ["1.1"])
        if not results:
            return None
        _, data = results[0]
        snapshot = AttributeSet.from_snapshot(data)
        observed = AttributeSet()
        for name in names:
            state = snapshot.get(name)
            observed[name] = state if isinstance(state, Managed) else Managed()
        return observed

    def _operations(
        self, state: EntryState, config: EntryConfig
    ) -> tuple[list[Operation], WriteOnceGate]:
        """
        Work out the modify operations for an update, plus the write-only
        gate that decided whether ``attributes_wo`` goes along.

        Attributes that are managed in ``config`` but were not managed in
        ``state`` are read from the server first, so that values somebody else
        put there are diffed rather than assumed absent.
        """
        desired = AttributeSet.from_config(config.attributes)
        current = self._current(state)
        newly_managed = [
            name
            for name in desired.managed_names()
            if not isinstance(current.get(name), Managed)
        ]
        if newly_managed:
            logger.debug(
                "ldapentry.reconciler.observe-newly-managed dn=%s attributes=%s",
                config.dn,
                ",".join(newly_managed),
            )
            observed = self._observe(config.dn, newly_managed)
            if observed is not None:
                for name, observed_state in observed.items():
                    current[name] = observed_state
        operations = diff(current, desired)
        gate = WriteOnceGate(
            config.attributes_wo,
            config.attributes_wo_version,
            state.attributes_wo_version,
        )
        gated = gate.operations()
        if gated:
            # write-only values win over whatever the differ wanted for the same name
            names = {op.name.casefold() for op in gated}
            operations = [op for op in operations if op.name.casefold() not in names]
            operations = sorted(operations + gated, key=lambda op: isinstance(op, Delete))
        return operations, gate

    def create(self, config: EntryConfig) -> EntryState:
        """
        Create the entry with a single add request.

        Only managed attributes with values are sent, together with the
        write-only attributes.  The returned state holds the managed
        attributes just applied and none of the write-only values.

        Args:
            config: the desired configuration

        Raises:
            EncodingError: a value could not be encoded; nothing was sent
            ConnectionUnavailable: there is no connection
            SchemaViolation: the server rejected the entry's schema
            ProtocolError: the server rejected the add

        Returns:
            The state of the new entry.

        """
        desired = AttributeSet.from_config(config.attributes)
        outgoing = AttributeSet(
            (name, Managed(values)) for name, values in desired.managed().items()
        )
        gate = WriteOnceGate(config.attributes_wo, config.attributes_wo_version)
        for op in gate.operations():
            outgoing[op.name] = Managed(op.values if isinstance(op, Replace) else ())
        self.client.add(
            config.dn,
            {name: values for name, values in outgoing.managed().items() if values},
        )
        lifecycle = EntryLifecycle.transition(
            config.dn, EntryLifecycle.ABSENT, EntryLifecycle.CREATED
        )
        logger.info(
            "ldapentry.reconciler.create.success dn=%s attributes_wo_version=%s",
            config.dn,
            config.attributes_wo_version,
        )
        EntryLifecycle.transition(config.dn, lifecycle, EntryLifecycle.OBSERVED)
        return EntryState(
            dn=config.dn,
            attributes=desired.to_dict(),
            attributes_wo_version=gate.applied_revision(True),  # noqa: FBT003
        )

    def read(self, state: EntryState) -> EntryState | None:
        """
        Refresh ``state`` from the server.

        Only the attributes managed in ``state`` are requested.  Requested
        attributes the server doesn't return come back as empty lists;
        unmanaged attributes stay ``None`` and are not requested.

        Args:
            state: the last known state

        Raises:
            ConnectionUnavailable: there is no connection
            ProtocolError: the server rejected the search

        Returns:
            The refreshed state, or ``None`` if the entry no longer exists.

        """
        managed = [name for name, values in state.attributes.items() if values is not None]
        observed = self._observe(state.dn, managed)
        if observed is None:
            logger.info("ldapentry.reconciler.read.gone dn=%s", state.dn)
            return None
        attributes: ConfigAttributes = {}
        for name, values in state.attributes.items():
            if values is None:
                attributes[name] = None
            else:
                attributes[name] = list(observed[name].values)  # type: ignore[union-attr]
        return EntryState(
            dn=state.dn,
            attributes=attributes,
            attributes_wo_version=state.attributes_wo_version,
        )

    def _converge(self, config: EntryConfig, operations: list[Operation]) -> EntryState:
        lifecycle = EntryLifecycle.transition(
            config.dn, EntryLifecycle.OBSERVED, EntryLifecycle.CONVERGING
        )
        if operations:
            self.client.modify(config.dn, operations)
        else:
            logger.debug("ldapentry.reconciler.update.no-changes dn=%s", config.dn)
        EntryLifecycle.transition(config.dn, lifecycle, EntryLifecycle.OBSERVED)
        return EntryState(
            dn=config.dn,
            attributes=AttributeSet.from_config(config.attributes).to_dict(),
            attributes_wo_version=config.attributes_wo_version,
        )

    def update(self, state: EntryState, config: EntryConfig) -> EntryState:
        """
        Converge the entry from ``state`` to ``config`` with at most one
        modify request.

        If there is nothing to change no request is sent at all.  If the
        request fails the exception propagates, so the caller keeps its old
        state, including the old ``attributes_wo_version``, and the next
        cycle sends the write-only attributes again.

        Args:
            state: the last observed state
            config: the desired configuration

        Raises:
            ValueError: the DN changed; that needs a replace, not an update
            EncodingError: a value could not be encoded; nothing was sent
            ConnectionUnavailable: there is no connection
            SchemaViolation: the server rejected the change for schema reasons
            ProtocolError: the server rejected the modify

        Returns:
            The new state.

        """
        if not same_dn(state.dn, config.dn):
            msg = (
                f"Cannot update {state.dn} to {config.dn}: changing the DN "
                "requires replacing the entry"
            )
            raise ValueError(msg)
        operations, _ = self._operations(state, config)
        return self._converge(config, operations)

    def delete(self, state: EntryState) -> bool:
        """
        Delete the entry.  No per-attribute cleanup is attempted.

        Returns:
            ``True`` if the entry was deleted, ``False`` if it was already gone.

        """
        deleted = self.client.delete(state.dn)
        EntryLifecycle.transition(
            state.dn, EntryLifecycle.OBSERVED, EntryLifecycle.DESTROYED
        )
        return deleted

    def import_entry(self, import_id: str) -> EntryState | None:
        """
        Bring an existing entry under management.

        Only the attributes named in ``import_id`` (see
        :py:func:`parse_import_id`) are read and managed, so importing an
        entry does not take over every attribute it happens to have.

        Args:
            import_id: a DN, or a JSON object with ``dn`` and ``attributes``

        Raises:
            ValueError: ``import_id`` is malformed

        Returns:
            The imported state, or ``None`` if there is no such entry.

        """
        dn, names = parse_import_id(import_id)
        logger.info(
            "ldapentry.reconciler.import dn=%s attributes=%s", dn, ",".join(names)
        )
        state = self.read(EntryState(dn=dn, attributes={name: [] for name in names}))
        if state is not None:
            EntryLifecycle.transition(dn, EntryLifecycle.ABSENT, EntryLifecycle.OBSERVED)
        return state

    def plan(self, state: EntryState | None, config: EntryConfig | None) -> Plan:
        """
        Decide what :py:meth:`apply` would do, without changing anything.

        If the configured attributes only differ from ``state`` in value
        order, the planned attributes are taken from ``state`` so the plan
        shows no change.

        Args:
            state: the last observed state, or ``None`` if there is no entry
            config: the desired configuration, or ``None`` to destroy

        Returns:
            The :py:class:`Plan`.

        """
        if config is None:
            if state is None:
                return Plan(Plan.NOOP, None)
            return Plan(Plan.DELETE, None)
        desired = AttributeSet.from_config(config.attributes)
        if state is None:
            planned = EntryState(config.dn, desired.to_dict(), config.attributes_wo_version)
            return Plan(Plan.CREATE, planned)
        observed = AttributeSet.from_config(state.attributes)
        planned = EntryState(
            config.dn,
            stabilize(desired, observed).to_dict(),
            config.attributes_wo_version,
        )
        if not same_dn(state.dn, config.dn):
            return Plan(Plan.REPLACE, planned)
        operations, _ = self._operations(state, config)
        if (
            operations
            or desired != observed
            or state.attributes_wo_version != config.attributes_wo_version
        ):
            return Plan(Plan.UPDATE, planned, operations)
        return Plan(Plan.NOOP, planned)

    def apply(
        self, state: EntryState | None, config: EntryConfig | None
    ) -> EntryState | None:
        """
        Plan and then carry out the plan.

        A ``replace`` deletes the old entry and creates the new one.

        Returns:
            The new state, or ``None`` if the entry was destroyed.

        """
        plan = self.plan(state, config)
        logger.info(
            "ldapentry.reconciler.apply dn=%s action=%s",
            config.dn if config else state.dn if state else None,
            plan.action,
        )
        if plan.action == Plan.CREATE:
            return self.create(config)  # type: ignore[arg-type]
        if plan.action == Plan.REPLACE:
            self.delete(state)  # type: ignore[arg-type]
            return self.create(config)  # type: ignore[arg-type]
        if plan.action == Plan.DELETE:
            self.delete(state)  # type: ignore[arg-type]
            return None
        if plan.action == Plan.UPDATE:
            return self._converge(config, plan.operations)  # type: ignore[arg-type]
        return state
