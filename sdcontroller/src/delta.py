from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from sdcontroller.src.models import ControllerRef, Envelope, Operation, SelectiveDeployment

ENTRY_SEPARATOR = "/?delta?/ "
FIELD_SEPARATOR = "-?delta?- "


@dataclass(frozen=True)
class DeletedSelectiveDeployment:
    """Fields recovered from a delete delta once the object has left the cache."""

    name: str
    namespace: str
    type: str
    controllers: tuple[ControllerRef, ...]


def removed_controllers(
    old: Sequence[ControllerRef], new: Sequence[ControllerRef]
) -> list[str]:
    """Return every ``old`` entry whose ``(type, name)`` is missing from ``new``.

    Entries keep the order of ``old`` and are rendered as ``"Type Name"``.
    Duplicates in ``old`` are reported once per occurrence.
    """
    removed: list[str] = []
    for old_ref in old:
        if not any(
            old_ref.type == new_ref.type and old_ref.name == new_ref.name for new_ref in new
        ):
            removed.append(f"{old_ref.type} {old_ref.name}")
    return removed


def update_delta(old: SelectiveDeployment, new: SelectiveDeployment) -> str:
    return ENTRY_SEPARATOR.join(removed_controllers(old.controllers, new.controllers))


def delete_delta(sd: SelectiveDeployment) -> str:
    """Describe a deleted selective deployment, reporting every controller as removed."""
    return _format_delete_delta(
        sd.name, sd.namespace, sd.type, removed_controllers(sd.controllers, [])
    )


def _format_delete_delta(name: str, namespace: str, sd_type: str, entries: Sequence[str]) -> str:
    return FIELD_SEPARATOR.join([name, namespace, sd_type, ENTRY_SEPARATOR.join(entries)])


def split_entries(delta: str) -> list[str]:
    return [entry for entry in delta.split(ENTRY_SEPARATOR) if entry]


def parse_controller_entries(delta: str) -> tuple[ControllerRef, ...]:
    refs: list[ControllerRef] = []
    for entry in split_entries(delta):
        kind, _, name = entry.partition(" ")
        refs.append(ControllerRef(type=kind, name=name))
    return tuple(refs)


def parse_delete_delta(delta: str) -> DeletedSelectiveDeployment:
    parts = delta.split(FIELD_SEPARATOR, 3)
    if len(parts) != 4:
        raise ValueError(f"malformed delete delta: {delta!r}")
    name, namespace, sd_type, controllers = parts
    return DeletedSelectiveDeployment(
        name=name,
        namespace=namespace,
        type=sd_type,
        controllers=parse_controller_entries(controllers),
    )


def _removed_entries(envelope: Envelope) -> list[str]:
    if envelope.operation is Operation.UPDATE:
        return split_entries(envelope.delta)
    if envelope.operation is Operation.DELETE:
        try:
            deleted = parse_delete_delta(envelope.delta)
        except ValueError:
            return []
        return [f"{ref.type} {ref.name}" for ref in deleted.controllers]
    return []


def _union(first: Sequence[str], second: Sequence[str]) -> list[str]:
    merged = list(first)
    merged.extend(entry for entry in second if entry not in first)
    return merged


def merge_envelopes(older: Envelope, newer: Envelope) -> Envelope:
    """Fold two envelopes queued for the same key into one.

    Controllers reported as removed by either envelope are kept, so a
    dispatcher still learns about every controller it has to clean up:

    * update + update: one update listing both sets of removed entries.
    * update + create: the update stands; a create carries no delta.
    * update or delete + delete: the delete, with the earlier removed
      entries appended to its controller field.
    * delete + create or update: the newer envelope, since the object was
      created again and owns its controllers afresh.
    * create + anything: the newer envelope.
    """
    if older == newer:
        return newer

    if newer.operation is Operation.DELETE:
        if older.operation is Operation.CREATE:
            return newer
        try:
            deleted = parse_delete_delta(newer.delta)
        except ValueError:
            return newer
        entries = _union(_removed_entries(newer), _removed_entries(older))
        return Envelope(
            key=newer.key,
            operation=Operation.DELETE,
            delta=_format_delete_delta(deleted.name, deleted.namespace, deleted.type, entries),
        )

    if older.operation is Operation.UPDATE:
        entries = _union(split_entries(older.delta), _removed_entries(newer))
        return Envelope(
            key=newer.key, operation=Operation.UPDATE, delta=ENTRY_SEPARATOR.join(entries)
        )

    return newer
