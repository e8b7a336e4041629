"""
route53_defaults.py

Read and write the key=value defaults file (/etc/default/route53) that the
bootstrap step leaves behind for the route53 reconciler, and turn it into an
immutable Settings value.

The file stays shell compatible: KEY=VALUE lines, '#' comments, optional
quotes and an optional 'export ' prefix.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from route53_records import PreconditionError, normalize_zone_id

DEFAULTS_PATH = "/etc/default/route53"
IDENTITY_SOURCES = ("tag", "hostname")

log = logging.getLogger(__name__)


def parse_defaults(text: str) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        env[key.strip()] = value
    return env


def load_defaults(path: str) -> Dict[str, str]:
    try:
        with open(path) as f:
            return parse_defaults(f.read())
    except OSError as e:
        raise PreconditionError(f"Unable to load environment variables from '{path}': {e.strerror or e}")


def render_defaults(values: Mapping[str, Optional[str]]) -> str:
    lines = []
    for key, value in values.items():
        if value is None or value == "":
            continue
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def write_defaults(path: str, values: Mapping[str, Optional[str]]) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w") as f:
        f.write(render_defaults(values))
    os.chmod(tmp, 0o644)
    os.replace(tmp, path)
    log.info("Wrote %s", path)


def parse_ttl(raw: Optional[str]) -> int:
    try:
        ttl = int(str(raw).strip())
    except (TypeError, ValueError):
        raise PreconditionError(f"The 'TTL' value has to be a positive integer, got {raw!r}")
    if ttl <= 0:
        raise PreconditionError(f"The 'TTL' value has to be a positive integer, got {raw!r}")
    return ttl


@dataclass(frozen=True)
class Settings:
    ttl: int
    zone_id: str
    region: str
    reverse_zone_id: Optional[str] = None
    instance_id: Optional[str] = None
    identity_source: str = "tag"
    name_tag: str = "Name"
    zone_domain: Optional[str] = None

    @property
    def with_reverse(self) -> bool:
        return bool(self.reverse_zone_id)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from defaults-file values, using environ for keys the file omits.

        Raises PreconditionError naming the first missing or invalid key.
        """
        environ = os.environ if environ is None else environ

        def get(key: str) -> Optional[str]:
            value = values.get(key)
            if value is None or value == "":
                value = environ.get(key)
            return value.strip() if value else None

        missing = []
        ttl_raw = get("TTL")
        zone_id = get("HOSTED_ZONE_ID") or get("PRIVATE_ZONE_ID")
        region = get("REGION")
        if not ttl_raw:
            missing.append("TTL")
        if not zone_id:
            missing.append("HOSTED_ZONE_ID")
        if not region:
            missing.append("REGION")
        if missing:
            raise PreconditionError(f"The '{missing[0]}' environment variable has to be set (missing: {', '.join(missing)})")

        identity_source = (get("IDENTITY_SOURCE") or "tag").lower()
        if identity_source not in IDENTITY_SOURCES:
            raise PreconditionError(f"IDENTITY_SOURCE must be one of {', '.join(IDENTITY_SOURCES)}, got {identity_source!r}")

        reverse_zone_id = get("REVERSE_ZONE_ID")
        return cls(
            ttl=parse_ttl(ttl_raw),
            zone_id=normalize_zone_id(zone_id),
            region=region,
            reverse_zone_id=normalize_zone_id(reverse_zone_id) if reverse_zone_id else None,
            instance_id=get("INSTANCE_ID"),
            identity_source=identity_source,
            name_tag=get("NAME_TAG") or "Name",
            zone_domain=(get("HOSTED_ZONE_DN") or "").rstrip(".") or None,
        )

    @classmethod
    def load(cls, path: str = DEFAULTS_PATH, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        return cls.from_mapping(load_defaults(path), environ)
