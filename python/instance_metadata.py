"""
instance_metadata.py

What the route53 reconciler needs to know about the instance it runs on:

  - EC2 instance metadata (instance-id, local-ipv4, hostname, region) over HTTP,
    using an IMDSv2 session token when the endpoint hands one out
  - the value of the instance's "Name" tag (ec2:DescribeTags)
  - the domain of a hosted zone (route53:GetHostedZone), retried a few times
  - the name the instance should publish, from either of the above

Permissions:
  - ec2:DescribeTags, route53:GetHostedZone
"""
from __future__ import annotations
import logging
import socket
import time
from typing import Any, Callable, Optional

import requests
from botocore.exceptions import BotoCoreError, ClientError

from route53_records import DnsServiceError, MetadataError

METADATA_URL = "http://169.254.169.254/latest"
TOKEN_TTL_SECONDS = 21600
ZONE_LOOKUP_ATTEMPTS = 5

log = logging.getLogger(__name__)


def linear_backoff(attempt: int, step: float = 2.0) -> float:
    return attempt * step


def retry(func: Callable[[], Any], attempts: int = ZONE_LOOKUP_ATTEMPTS,
          backoff: Callable[[int], float] = linear_backoff,
          sleep: Callable[[float], None] = time.sleep,
          what: str = "call") -> Optional[Any]:
    """Call func until it returns something truthy, at most `attempts` times.

    Exceptions count as a failed attempt. Returns None once attempts run out.
    """
    for attempt in range(1, attempts + 1):
        try:
            result = func()
        except Exception as e:
            log.warning("%s failed on attempt %d/%d: %s", what, attempt, attempts, e)
            result = None
        if result:
            return result
        if attempt < attempts:
            delay = backoff(attempt)
            log.info("No result for %s after attempt %d, pausing %.1fs before retry", what, attempt, delay)
            sleep(delay)
    log.warning("Giving up on %s after %d attempts", what, attempts)
    return None


class InstanceMetadata:
    def __init__(self, base_url: str = METADATA_URL, timeout: float = 2.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_checked = False

    def _imds_token(self) -> Optional[str]:
        if self._token_checked:
            return self._token
        self._token_checked = True
        try:
            resp = self.session.put(
                f"{self.base_url}/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
                timeout=self.timeout,
            )
            if resp.status_code == 200 and resp.text:
                self._token = resp.text.strip()
        except requests.RequestException as e:
            log.info("IMDSv2 token unavailable, falling back to IMDSv1: %s", e)
        return self._token

    def get(self, path: str) -> str:
        headers = {}
        token = self._imds_token()
        if token:
            headers["X-aws-ec2-metadata-token"] = token
        url = f"{self.base_url}/meta-data/{path.lstrip('/')}"
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise MetadataError(f"Instance metadata {path} unavailable: {e}")
        value = resp.text.strip()
        if not value:
            raise MetadataError(f"Instance metadata {path} is empty")
        return value

    def instance_id(self) -> str:
        return self.get("instance-id")

    def local_ipv4(self) -> str:
        return self.get("local-ipv4")

    def hostname(self) -> str:
        return self.get("hostname")

    def region(self) -> str:
        return self.get("placement/region")


def lookup_tag(ec2, instance_id: str, key: str = "Name") -> Optional[str]:
    try:
        resp = ec2.describe_tags(Filters=[
            {"Name": "resource-id", "Values": [instance_id]},
            {"Name": "key", "Values": [key]},
        ])
    except (BotoCoreError, ClientError) as e:
        raise MetadataError(f"Unable to read tags of {instance_id}: {e}")
    for tag in resp.get("Tags", []):
        value = (tag.get("Value") or "").strip()
        if value:
            return value
    return None


def zone_domain(route53, zone_id: str, sleep: Callable[[float], None] = time.sleep) -> Optional[str]:
    """Domain of a hosted zone without Route53's trailing dot, or None."""
    def fetch():
        return route53.get_hosted_zone(Id=zone_id).get("HostedZone", {}).get("Name")

    name = retry(fetch, sleep=sleep, what=f"get-hosted-zone {zone_id}")
    if not name:
        log.error("Failed to get the domain of hosted zone '%s', is it the correct Hosted Zone Id?", zone_id)
        return None
    return name.rstrip(".")


def short_hostname(metadata: InstanceMetadata) -> str:
    try:
        fqdn = metadata.hostname()
    except MetadataError as e:
        log.warning("%s, using the local FQDN", e)
        fqdn = socket.getfqdn()
    short = fqdn.split(".", 1)[0].strip()
    if not short:
        raise MetadataError("Unable to determine the short hostname of this instance")
    return short


def resolve_identity(settings, metadata: InstanceMetadata, ec2, route53,
                     sleep: Callable[[float], None] = time.sleep) -> str:
    """Name this instance should publish, per settings.identity_source."""
    if settings.identity_source == "hostname":
        # HOSTED_ZONE_DN is cached at bootstrap, so only older defaults files need the lookup
        domain = settings.zone_domain or zone_domain(route53, settings.zone_id, sleep=sleep)
        if not domain:
            raise DnsServiceError("get-hosted-zone", RuntimeError(f"no domain for zone {settings.zone_id}"))
        identity = f"{short_hostname(metadata)}.{domain}"
    else:
        instance_id = settings.instance_id or metadata.instance_id()
        identity = lookup_tag(ec2, instance_id, settings.name_tag)
        if not identity:
            raise MetadataError(f"The '{settings.name_tag}' tag is empty or has not been set on {instance_id}")
    log.info("Instance identity is %s", identity)
    return identity
