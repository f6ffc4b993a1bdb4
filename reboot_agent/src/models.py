from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PodEventType(Enum):
    """Watch event kinds the agent distinguishes.

    Anything the API server sends that is not one of the first three
    (``BOOKMARK``, ``ERROR``, future additions) collapses to ``UNKNOWN``.
    """

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_raw(cls, raw: str | None) -> PodEventType:
        normalized = (raw or "").strip().upper()
        for member in (cls.ADDED, cls.MODIFIED, cls.DELETED):
            if member.value == normalized:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class OwnerReference:
    kind: str
    name: str


def owner_references_of(obj: Any) -> tuple[OwnerReference, ...]:
    """Return the owner references of any API object as plain tuples.

    Entries without a kind or name are dropped; a missing ``metadata`` or
    ``owner_references`` field yields an empty tuple.
    """
    metadata = getattr(obj, "metadata", None)
    raw_refs = getattr(metadata, "owner_references", None) or []
    refs: list[OwnerReference] = []
    for ref in raw_refs:
        kind = getattr(ref, "kind", None)
        name = getattr(ref, "name", None)
        if kind and name:
            refs.append(OwnerReference(kind=str(kind), name=str(name)))
    return tuple(refs)


@dataclass(frozen=True)
class PodSnapshot:
    """Immutable view of a pod as delivered by a single watch event."""

    name: str
    namespace: str
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: tuple[OwnerReference, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_pod(cls, pod: Any) -> PodSnapshot:
        metadata = getattr(pod, "metadata", None)
        raw_annotations = getattr(metadata, "annotations", None)
        annotations: dict[str, str] = {}
        if isinstance(raw_annotations, dict):
            annotations = {
                k: ("" if v is None else str(v))
                for k, v in raw_annotations.items()
                if isinstance(k, str)
            }
        return cls(
            name=getattr(metadata, "name", None) or "<unknown>",
            namespace=getattr(metadata, "namespace", None) or "default",
            annotations=annotations,
            owner_references=owner_references_of(pod),
        )
