#!/usr/bin/env python3
"""route53.py

Add, remove or check the DNS entry of *this* EC2 instance in Route53.

The instance publishes an "A" record named after its "Name" tag (or after its
short hostname within the hosted zone's domain, see IDENTITY_SOURCE) pointing
at its private IP address. When REVERSE_ZONE_ID is configured the matching
"PTR" record is managed in the reverse zone as well.

Hosted zone ids, TTL and region come from /etc/default/route53, written
earlier in the boot sequence by prepare-dns.

Usage examples:
  route53 --add
  route53 --remove
  route53 --check --defaults ./route53.env --log-file ''

Permissions:
  - route53:ChangeResourceRecordSets, route53:ListResourceRecordSets,
    route53:GetHostedZone, ec2:DescribeTags

Exit Codes:
  0 success (check: every expected record found)
  1 failure (missing settings, lock busy, lookup or Route53 error, check found nothing)
  2 usage error
  130 interrupted
"""
from __future__ import annotations
import argparse
import json
import logging
import os
import signal
import sys
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from instance_lock import LOCK_PATH, InstanceLock
from instance_metadata import InstanceMetadata, resolve_identity
from route53_defaults import DEFAULTS_PATH, Settings
from route53_records import (
    ChangeRequest,
    DnsServiceError,
    PreconditionError,
    ResourceRecord,
    Route53ToolError,
    expected_records,
    find_match,
    records_from_sets,
)

LOG_PATH = "/var/log/route53.log"
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
ACTIONS = ("add", "remove", "check")
TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)

log = logging.getLogger("route53")


def setup_logging(log_file: Optional[str], verbose: bool = False) -> None:
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    handlers: List[logging.Handler] = [console]
    file_error = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            file_error = e
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT,
                        handlers=handlers, force=True)
    if file_error:
        log.warning("Cannot write log file %s (%s), logging to stderr only", log_file, file_error)


@contextmanager
def exit_on_signals() -> Iterator[None]:
    """Turn SIGTERM/SIGHUP/SIGQUIT into SystemExit so cleanup code runs."""
    def handler(signum, frame):
        log.warning("Received signal %d, cleaning up", signum)
        raise SystemExit(128 + signum)

    previous = {sig: signal.signal(sig, handler) for sig in TERMINATION_SIGNALS}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@contextmanager
def scratch_document(document: Dict[str, Any]) -> Iterator[str]:
    fd, path = tempfile.mkstemp(prefix="route53.", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(document, f, indent=2)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class Route53Records:
    """Thin layer over the boto3 route53 client."""

    def __init__(self, client):
        self.client = client

    def list_records(self, zone_id: str) -> List[ResourceRecord]:
        record_sets: List[Dict[str, Any]] = []
        try:
            paginator = self.client.get_paginator("list_resource_record_sets")
            for page in paginator.paginate(HostedZoneId=zone_id):
                record_sets.extend(page.get("ResourceRecordSets", []))
        except (BotoCoreError, ClientError) as e:
            raise DnsServiceError("list-resource-record-sets", e)
        records = records_from_sets(record_sets)
        log.info("Zone %s holds %d A/PTR records", zone_id, len(records))
        return records

    def submit(self, change: ChangeRequest) -> Dict[str, Any]:
        # Route53 queues the batch; acceptance is success, propagation is not awaited.
        with scratch_document(change.to_change_batch()) as path:
            with open(path) as f:
                batch = json.load(f)
            log.info("Submitting %s %s %s to zone %s (%s)", change.action, change.record.type,
                     change.record.name, change.zone_id, path)
            try:
                resp = self.client.change_resource_record_sets(HostedZoneId=change.zone_id, ChangeBatch=batch)
            except (BotoCoreError, ClientError) as e:
                raise DnsServiceError("change-resource-record-sets", e)
        info = resp.get("ChangeInfo", {})
        log.info("Change submitted: %s (%s)", info.get("Id"), info.get("Status"))
        return info


class Reconciler:
    def __init__(self, settings: Settings, records: Route53Records, identity: str, ipv4: str):
        self.settings = settings
        self.records = records
        self.identity = identity
        self.ipv4 = ipv4

    def expected(self) -> List[Tuple[str, ResourceRecord]]:
        wanted = expected_records(self.identity, self.ipv4, self.settings.ttl, self.settings.with_reverse)
        return list(zip(self.zones(), wanted))

    def zones(self) -> List[str]:
        zones = [self.settings.zone_id]
        if self.settings.with_reverse:
            zones.append(self.settings.reverse_zone_id)
        return zones

    def check(self) -> Optional[List[ResourceRecord]]:
        """Matching records when every expected record exists, otherwise None."""
        existing: List[ResourceRecord] = []
        for zone_id in self.zones():
            existing.extend(self.records.list_records(zone_id))
        found = []
        for _, record in self.expected():
            match = find_match(record, existing)
            if match is None:
                log.warning("Missing resource record: %s", record.describe())
                return None
            found.append(record)
        return found

    def apply(self, action: str) -> List[Dict[str, Any]]:
        return [
            self.records.submit(ChangeRequest(zone_id=zone_id, action=action, record=record))
            for zone_id, record in self.expected()
        ]

    def add(self) -> List[Dict[str, Any]]:
        return self.apply("UPSERT")

    def remove(self) -> List[Dict[str, Any]]:
        return self.apply("DELETE")


def build_clients(settings: Settings):
    sess = boto3.Session(region_name=settings.region)
    return InstanceMetadata(), sess.client("ec2"), sess.client("route53")


def run(action: Optional[str], defaults_path: str, lock_path: str, out=None) -> int:
    if action not in ACTIONS:
        raise PreconditionError("Unknown or no action given")
    settings = Settings.load(defaults_path)
    out = out or sys.stdout

    with InstanceLock(lock_path):
        metadata, ec2, route53 = build_clients(settings)
        ipv4 = metadata.local_ipv4()
        identity = resolve_identity(settings, metadata, ec2, route53)
        reconciler = Reconciler(settings, Route53Records(route53), identity, ipv4)

        if action == "check":
            found = reconciler.check()
            if not found:
                log.error("No resource records found")
                return 1
            for record in found:
                print(json.dumps({"ResourceRecordSet": record.to_record_set()}, indent=2), file=out)
            return 0

        if action == "add":
            reconciler.add()
        else:
            reconciler.remove()
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="route53",
        description="Automatically add, remove or check a DNS entry in Route53 for this instance.",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("-a", "--add", dest="action", action="store_const", const="add", help="Add (or update) the DNS entry")
    group.add_argument("-r", "--remove", dest="action", action="store_const", const="remove", help="Remove the DNS entry")
    group.add_argument("-c", "--check", dest="action", action="store_const", const="check", help="Check the DNS entry exists")
    parser.add_argument("command", nargs="?", choices=sorted(ACTIONS), help="Action, as an alternative to the flags")
    parser.add_argument("--defaults", default=os.environ.get("ROUTE53_DEFAULTS", DEFAULTS_PATH),
                        help=f"Defaults file (default: {DEFAULTS_PATH})")
    parser.add_argument("--lock-file", default=os.environ.get("ROUTE53_LOCK_FILE", LOCK_PATH),
                        help=f"Lock file (default: {LOCK_PATH})")
    parser.add_argument("--log-file", default=os.environ.get("ROUTE53_LOG_FILE", LOG_PATH),
                        help=f"Log file, empty to log to stderr only (default: {LOG_PATH})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output on stderr")
    args = parser.parse_args(argv)
    if args.command and args.action and args.command != args.action:
        parser.error(f"conflicting actions: {args.action} and {args.command}")
    args.action = args.action or args.command
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file, args.verbose)
    try:
        with exit_on_signals():
            return run(args.action, args.defaults, args.lock_file)
    except Route53ToolError as e:
        log.error("%s, aborting...", e)
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    except Exception:
        log.exception("Unexpected error")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
