"""In-memory object store and read-only listers for IP pools and reservations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Union

API_GROUP = "whereabouts.cni.cncf.io"

Selector = Optional[Mapping[str, str]]


class NotFoundError(LookupError):
    """The requested object is not present in the store."""

    def __init__(self, resource: str, name: str):
        self.resource = resource
        self.name = name
        super().__init__(f'{resource}.{API_GROUP} "{name}" not found')


@dataclass
class IPAllocation:
    """One address of a pool held by a pod."""

    container_id: str = ""
    pod_ref: str = ""


@dataclass
class IPPool:
    """A range of addresses together with the allocations made from it."""

    name: str
    namespace: str = ""
    range: str = ""
    allocations: dict[str, IPAllocation] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class OverlappingRangeIPReservation:
    """A cluster-wide reservation of a single address."""

    name: str
    namespace: str = ""
    container_id: str = ""
    pod_ref: str = ""
    labels: dict[str, str] = field(default_factory=dict)


Stored = Union[IPPool, OverlappingRangeIPReservation]


def _key(obj) -> str:
    return f"{obj.namespace}/{obj.name}" if obj.namespace else obj.name


def _matches(selector: Selector, labels: Mapping[str, str]) -> bool:
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


class Indexer:
    """Objects keyed by ``namespace/name`` (or ``name`` when not namespaced)."""

    def __init__(self) -> None:
        self._items: dict[str, object] = {}

    def add(self, obj) -> None:
        self._items[_key(obj)] = obj

    def update(self, obj) -> None:
        self._items[_key(obj)] = obj

    def delete(self, obj) -> None:
        self._items.pop(_key(obj), None)

    def get_by_key(self, key: str):
        """Return the object stored under ``key``, or None."""
        return self._items.get(key)

    def list(self) -> list:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)


def _list_all(indexer: Indexer, kind: type, selector: Selector) -> list:
    return [
        obj for obj in indexer.list()
        if isinstance(obj, kind) and _matches(selector, obj.labels)
    ]


def _list_namespace(indexer: Indexer, kind: type, namespace: str, selector: Selector) -> list:
    return [
        obj for obj in indexer.list()
        if isinstance(obj, kind)
        and (not namespace or obj.namespace == namespace)
        and _matches(selector, obj.labels)
    ]


def _get(indexer: Indexer, kind: type, resource: str, namespace: str, name: str):
    obj = indexer.get_by_key(f"{namespace}/{name}")
    if obj is None:
        raise NotFoundError(resource, name)
    if not isinstance(obj, kind):
        raise TypeError(f"object stored as {name!r} is not a {kind.__name__}")
    return obj


class IPPoolNamespaceLister:
    """Lists and gets IP pools within one namespace."""

    def __init__(self, indexer: Indexer, namespace: str):
        self._indexer = indexer
        self._namespace = namespace

    def list(self, selector: Selector = None) -> list[IPPool]:
        """Pools in this namespace (all namespaces when empty) matching ``selector``."""
        return _list_namespace(self._indexer, IPPool, self._namespace, selector)

    def get(self, name: str) -> IPPool:
        """Return the named pool or raise :class:`NotFoundError`."""
        return _get(self._indexer, IPPool, "ippool", self._namespace, name)


class IPPoolLister:
    """Lists IP pools held by an indexer."""

    def __init__(self, indexer: Indexer):
        self._indexer = indexer

    def list(self, selector: Selector = None) -> list[IPPool]:
        """All pools matching ``selector``."""
        return _list_all(self._indexer, IPPool, selector)

    def ip_pools(self, namespace: str) -> IPPoolNamespaceLister:
        return IPPoolNamespaceLister(self._indexer, namespace)


class OverlappingRangeIPReservationNamespaceLister:
    """Lists and gets reservations within one namespace."""

    def __init__(self, indexer: Indexer, namespace: str):
        self._indexer = indexer
        self._namespace = namespace

    def list(self, selector: Selector = None) -> list[OverlappingRangeIPReservation]:
        """Reservations in this namespace (all when empty) matching ``selector``."""
        return _list_namespace(
            self._indexer, OverlappingRangeIPReservation, self._namespace, selector
        )

    def get(self, name: str) -> OverlappingRangeIPReservation:
        """Return the named reservation or raise :class:`NotFoundError`."""
        return _get(
            self._indexer,
            OverlappingRangeIPReservation,
            "overlappingrangeipreservation",
            self._namespace,
            name,
        )


class OverlappingRangeIPReservationLister:
    """Lists reservations held by an indexer."""

    def __init__(self, indexer: Indexer):
        self._indexer = indexer

    def list(self, selector: Selector = None) -> list[OverlappingRangeIPReservation]:
        """All reservations matching ``selector``."""
        return _list_all(self._indexer, OverlappingRangeIPReservation, selector)

    def overlapping_range_ip_reservations(
        self, namespace: str
    ) -> OverlappingRangeIPReservationNamespaceLister:
        return OverlappingRangeIPReservationNamespaceLister(self._indexer, namespace)