"""
route53_records.py

Record types and change documents shared by the route53 tooling.

  - ResourceRecord / ChangeRequest value types
  - reverse (in-addr.arpa.) name construction for PTR records
  - expected A / PTR records for an instance
  - Route53 change batch rendering and record set matching
"""
from __future__ import annotations
import ipaddress
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

RECORD_TYPES = ("A", "PTR")
ACTIONS = ("UPSERT", "DELETE")
REVERSE_SUFFIX = "in-addr.arpa."


class Route53ToolError(Exception):
    """Base error for the route53 tooling."""


class PreconditionError(Route53ToolError):
    """Missing or malformed input, raised before any network call."""


class LockBusyError(Route53ToolError):
    def __init__(self, path: str, owner_pid: Optional[int]):
        self.path = path
        self.owner_pid = owner_pid
        owner = owner_pid if owner_pid is not None else "unknown"
        super().__init__(f"Unable to create lock file {path} (current owner: {owner})")


class MetadataError(Route53ToolError):
    """Instance metadata or tag lookup returned nothing usable."""


class DnsServiceError(Route53ToolError):
    def __init__(self, operation: str, error: Exception):
        self.operation = operation
        self.error = error
        super().__init__(f"Route53 {operation} failed: {error}")


def absolute_name(name: str) -> str:
    name = (name or "").strip()
    if not name.rstrip("."):
        raise PreconditionError("Record name is empty")
    return name.rstrip(".") + "."


def reverse_name(ipv4: str) -> str:
    """Return the in-addr.arpa. name for a dotted-quad IPv4 address.

    10.0.1.7 -> 7.1.0.10.in-addr.arpa.
    """
    try:
        address = ipaddress.IPv4Address((ipv4 or "").strip())
    except ipaddress.AddressValueError as e:
        raise PreconditionError(f"Malformed IPv4 address {ipv4!r}: {e}")
    octets = str(address).split(".")
    return ".".join(reversed(octets)) + "." + REVERSE_SUFFIX


@dataclass(frozen=True)
class ResourceRecord:
    name: str
    type: str
    ttl: int
    value: str

    def __post_init__(self):
        if self.type not in RECORD_TYPES:
            raise PreconditionError(f"Unsupported record type {self.type!r}")
        if isinstance(self.ttl, bool) or not isinstance(self.ttl, int) or self.ttl <= 0:
            raise PreconditionError(f"TTL must be a positive integer, got {self.ttl!r}")
        object.__setattr__(self, "name", absolute_name(self.name))

    def to_record_set(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "Type": self.type,
            "TTL": self.ttl,
            "ResourceRecords": [{"Value": self.value}],
        }

    def matches(self, other: "ResourceRecord") -> bool:
        # Route53 hands names back lower-cased, DNS names compare without case.
        if self.type != other.type or self.ttl != other.ttl:
            return False
        if self.name.lower() != other.name.lower():
            return False
        if self.type == "PTR":
            return absolute_name(self.value).lower() == absolute_name(other.value).lower()
        return self.value == other.value

    def describe(self) -> str:
        return f"{self.name} {self.type} {self.value} {self.ttl}"


@dataclass(frozen=True)
class ChangeRequest:
    zone_id: str
    action: str
    record: ResourceRecord

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise PreconditionError(f"Unsupported change action {self.action!r}")
        if not self.zone_id:
            raise PreconditionError("Change request needs a hosted zone id")

    def to_change_batch(self, comment: str = "route53 instance record") -> Dict[str, Any]:
        return {
            "Comment": comment,
            "Changes": [
                {
                    "Action": self.action,
                    "ResourceRecordSet": self.record.to_record_set(),
                }
            ],
        }


def forward_record(identity: str, ipv4: str, ttl: int) -> ResourceRecord:
    reverse_name(ipv4)  # validates the address
    return ResourceRecord(name=identity, type="A", ttl=ttl, value=ipv4.strip())


def ptr_record(identity: str, ipv4: str, ttl: int) -> ResourceRecord:
    return ResourceRecord(name=reverse_name(ipv4), type="PTR", ttl=ttl, value=absolute_name(identity))


def expected_records(identity: str, ipv4: str, ttl: int, with_reverse: bool) -> List[ResourceRecord]:
    records = [forward_record(identity, ipv4, ttl)]
    if with_reverse:
        records.append(ptr_record(identity, ipv4, ttl))
    return records


def normalize_zone_id(zone_id: str) -> str:
    # "/hostedzone/Z1PA6795UKMFR9" from some APIs
    return (zone_id or "").strip().rsplit("/", 1)[-1]


def records_from_sets(record_sets: Iterable[Dict[str, Any]]) -> List[ResourceRecord]:
    """Convert Route53 ResourceRecordSets into A/PTR ResourceRecords.

    Alias records and sets without a TTL carry no comparable value and are skipped.
    Only the first value of a set is considered.
    """
    out: List[ResourceRecord] = []
    for rrset in record_sets:
        if rrset.get("Type") not in RECORD_TYPES:
            continue
        values = rrset.get("ResourceRecords") or []
        ttl = rrset.get("TTL")
        if not values or not ttl:
            continue
        out.append(ResourceRecord(
            name=rrset.get("Name", ""),
            type=rrset["Type"],
            ttl=int(ttl),
            value=values[0].get("Value", ""),
        ))
    return out


def find_match(expected: ResourceRecord, existing: Iterable[ResourceRecord]) -> Optional[ResourceRecord]:
    for record in existing:
        if expected.matches(record):
            return record
    return None
