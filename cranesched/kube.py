"""Small object model of cluster resources: quantities, pods, nodes and resource sums."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from fractions import Fraction
from functools import total_ordering
from typing import Mapping

DECIMAL_SI = "DecimalSI"
BINARY_SI = "BinarySI"
DECIMAL_EXPONENT = "DecimalExponent"

RESOURCE_CPU = "cpu"
RESOURCE_MEMORY = "memory"
RESOURCE_PODS = "pods"
RESOURCE_EPHEMERAL_STORAGE = "ephemeral-storage"
HUGE_PAGES_PREFIX = "hugepages-"
ATTACHABLE_VOLUMES_PREFIX = "attachable-volumes-"
NODE_INTERNAL_IP = "InternalIP"

_BINARY_SUFFIXES = {"Ki": 2**10, "Mi": 2**20, "Gi": 2**30, "Ti": 2**40, "Pi": 2**50, "Ei": 2**60}
_DECIMAL_SUFFIXES = {
    "n": Fraction(1, 10**9),
    "u": Fraction(1, 10**6),
    "m": Fraction(1, 1000),
    "": Fraction(1),
    "k": Fraction(10**3),
    "M": Fraction(10**6),
    "G": Fraction(10**9),
    "T": Fraction(10**12),
    "P": Fraction(10**15),
    "E": Fraction(10**18),
}
_BINARY_ORDER = ["", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei"]
_DECIMAL_ORDER = ["", "k", "M", "G", "T", "P", "E"]
_FRACTION_SCALES = [("m", 1000), ("u", 10**6), ("n", 10**9)]

_QUANTITY_RE = re.compile(
    r"^([+-]?)(\d+(?:\.\d*)?|\.\d+)(?:([eE][+-]?\d+)|(Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE]))?$"
)


def _round_up(value: Fraction) -> int:
    return math.ceil(value) if value >= 0 else math.floor(value)


@total_ordering
@dataclass(frozen=True, eq=False)
class Quantity:
    """An exact resource amount together with the notation it prints in."""

    amount: Fraction
    format: str = DECIMAL_SI

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", Fraction(self.amount))

    def value(self) -> int:
        """The amount as an integer, rounded up."""
        return _round_up(self.amount)

    def milli_value(self) -> int:
        """The amount in thousandths, rounded up."""
        return _round_up(self.amount * 1000)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Quantity):
            return self.amount == other.amount
        return NotImplemented

    def __lt__(self, other: object) -> bool:
        if isinstance(other, Quantity):
            return self.amount < other.amount
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.amount)

    def __str__(self) -> str:
        sign = "-" if self.amount < 0 else ""
        magnitude = abs(self.amount)
        if magnitude.denominator == 1:
            number = magnitude.numerator
            if self.format == BINARY_SI:
                return sign + _scaled_integer(number, 1024, _BINARY_ORDER)
            if self.format == DECIMAL_EXPONENT:
                text = _scaled_integer(number, 1000, [""] * 7, exponent=True)
                return sign + text
            return sign + _scaled_integer(number, 1000, _DECIMAL_ORDER)
        for suffix, scale in _FRACTION_SCALES:
            scaled = magnitude * scale
            if scaled.denominator == 1:
                return f"{sign}{scaled.numerator}{suffix}"
        return f"{sign}{math.ceil(magnitude * 10**9)}n"


def _scaled_integer(number: int, base: int, suffixes: list[str], exponent: bool = False) -> str:
    if number == 0:
        return "0"
    index = 0
    while number % base == 0 and index < len(suffixes) - 1:
        number //= base
        index += 1
    if exponent:
        return f"{number}e{3 * index}" if index else str(number)
    return f"{number}{suffixes[index]}"


def parse_quantity(text: str) -> Quantity:
    """Parse a quantity such as ``"2.5"``, ``"500m"`` or ``"1Gi"``."""
    match = _QUANTITY_RE.match(text) if isinstance(text, str) else None
    if match is None:
        raise ValueError(f"quantities must match the regular expression: {text!r}")
    sign, number, exponent, suffix = match.groups()
    if number.endswith("."):
        number = number[:-1]
    amount = Fraction(number)
    if exponent is not None:
        amount *= Fraction(10) ** int(exponent[1:])
        fmt = DECIMAL_EXPONENT
    elif suffix in _BINARY_SUFFIXES:
        amount *= _BINARY_SUFFIXES[suffix]
        fmt = BINARY_SI
    else:
        amount *= _DECIMAL_SUFFIXES[suffix or ""]
        fmt = DECIMAL_SI
    if sign == "-":
        amount = -amount
    return Quantity(amount, fmt)


ResourceList = dict[str, Quantity]


@dataclass
class OwnerReference:
    kind: str
    name: str = ""
    controller: bool = False


@dataclass
class Container:
    name: str = ""
    requests: ResourceList = field(default_factory=dict)
    limits: ResourceList = field(default_factory=dict)


@dataclass
class Pod:
    name: str = ""
    namespace: str = "default"
    uid: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    containers: list[Container] = field(default_factory=list)

    def key(self) -> str:
        """The cache key of the pod, which is its UID."""
        if not self.uid:
            raise ValueError("cannot get cache key for pod with empty UID")
        return self.uid


@dataclass
class NodeAddress:
    type: str
    address: str


@dataclass
class Node:
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    addresses: list[NodeAddress] = field(default_factory=list)


@dataclass
class NodeInfo:
    node: Node | None = None
    pods: list[Pod] = field(default_factory=list)

    def add_pod(self, pod: Pod) -> None:
        self.pods.append(pod)


def _is_scalar_resource_name(name: str) -> bool:
    if name.startswith(HUGE_PAGES_PREFIX) or name.startswith(ATTACHABLE_VOLUMES_PREFIX):
        return True
    if "kubernetes.io/" in name:
        return True
    return "/" in name and not name.startswith("requests.")


@dataclass
class Resource:
    """Summed resource amounts, CPU in millicores and the rest in units."""

    milli_cpu: int = 0
    memory: int = 0
    ephemeral_storage: int = 0
    allowed_pod_number: int = 0
    scalar_resources: dict[str, int] = field(default_factory=dict)

    def add(self, resource_list: Mapping[str, Quantity] | None) -> None:
        if not resource_list:
            return
        for name, quantity in resource_list.items():
            if name == RESOURCE_CPU:
                self.milli_cpu += quantity.milli_value()
            elif name == RESOURCE_MEMORY:
                self.memory += quantity.value()
            elif name == RESOURCE_PODS:
                self.allowed_pod_number += quantity.value()
            elif name == RESOURCE_EPHEMERAL_STORAGE:
                self.ephemeral_storage += quantity.value()
            elif _is_scalar_resource_name(name):
                self.scalar_resources[name] = self.scalar_resources.get(name, 0) + quantity.value()

    def clone(self) -> Resource:
        return Resource(
            milli_cpu=self.milli_cpu,
            memory=self.memory,
            ephemeral_storage=self.ephemeral_storage,
            allowed_pod_number=self.allowed_pod_number,
            scalar_resources=dict(self.scalar_resources),
        )


def new_resource(resource_list: Mapping[str, Quantity] | None) -> Resource:
    resource = Resource()
    resource.add(resource_list)
    return resource