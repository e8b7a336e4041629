#!/usr/bin/env python3
"""
prepare_dns.py

Purpose:
  Boot-time preparation for the route53 reconciler on a fresh EC2 instance.

Steps:
  - write /etc/default/route53 (TTL, hosted zone ids and domain, region, instance id)
  - optionally make the DHCP client use the hosted zone's domain for search (--dhclient)
  - optionally register a route53 service that adds the DNS entry on boot and
    removes it on shutdown (--register-service)

Usage:
  prepare-dns Z123EXAMPLE 300
  prepare-dns Z123EXAMPLE 300 --reverse-zone-id Z456REVERSE --dhclient --register-service

Exit Codes:
  0 success, or no hosted zone id given (DNS not set up for this instance)
  1 failure writing the defaults file or resolving instance metadata
"""
from __future__ import annotations
import argparse
import logging
import os
import shutil
import subprocess
import sys
import time
from typing import Callable, List, Optional

import boto3

from instance_metadata import InstanceMetadata, zone_domain
from route53 import setup_logging
from route53_defaults import DEFAULTS_PATH, write_defaults
from route53_records import MetadataError, Route53ToolError

LOG_PATH = "/var/log/prepare-dns.log"
DEFAULT_TTL = 300
DHCLIENT_CONF = "/etc/dhcp/dhclient.conf"
SYSTEMD_UNIT_PATH = "/etc/systemd/system/route53.service"
INIT_SCRIPT_PATH = "/etc/init.d/route53"
SYSTEMD_FLAVORS = ("ubuntu", "centos")

SYSTEMD_UNIT = """[Unit]
Description=Route53 DNS entry for this instance
Wants=network-online.target
After=network-online.target

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart={route53} --add
ExecStop={route53} --remove

[Install]
WantedBy=multi-user.target
"""

INIT_SCRIPT = """#!/bin/sh
#
# route53  Route53 DNS entry for this instance
#
# chkconfig: 2345 99 01
# description: Adds the DNS entry of this instance on boot and removes it on shutdown.

LOCK_FILE=/var/lock/subsys/route53

case "$1" in
    start)
        {route53} --add && touch $LOCK_FILE
        ;;
    stop)
        {route53} --remove
        rm -f $LOCK_FILE
        ;;
    status)
        {route53} --check
        ;;
    restart)
        $0 stop
        $0 start
        ;;
    *)
        echo "Usage: $0 {{start|stop|status|restart}}"
        exit 2
        ;;
esac
"""

log = logging.getLogger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="prepare-dns", description="Prepare this instance for Route53 DNS registration")
    p.add_argument("hosted_zone_id", nargs="?", help="Forward hosted zone id; without it DNS is not set up")
    p.add_argument("ttl", nargs="?", help=f"Record TTL in seconds (default: {DEFAULT_TTL})")
    p.add_argument("--reverse-zone-id", help="Reverse (in-addr.arpa.) hosted zone id, enables PTR records")
    p.add_argument("--identity-source", choices=["tag", "hostname"], default="tag",
                   help="Publish the Name tag or the short hostname within the zone (default: tag)")
    p.add_argument("--defaults", default=os.environ.get("ROUTE53_DEFAULTS", DEFAULTS_PATH),
                   help=f"Defaults file to write (default: {DEFAULTS_PATH})")
    p.add_argument("--dhclient", action="store_true", help="Set the DHCP client search domain to the zone domain")
    p.add_argument("--interface", default="eth0", help="Interface for the dhclient stanza (default: eth0)")
    p.add_argument("--dhclient-conf", default=DHCLIENT_CONF, help=f"dhclient config (default: {DHCLIENT_CONF})")
    p.add_argument("--register-service", action="store_true", help="Register the route53 boot/shutdown service")
    p.add_argument("--log-file", default=os.environ.get("PREPARE_DNS_LOG_FILE", LOG_PATH),
                   help=f"Log file, empty for stderr only (default: {LOG_PATH})")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose output on stderr")
    return p.parse_args(argv)


def resolve_ttl(raw: Optional[str]) -> int:
    try:
        ttl = int(raw)
    except (TypeError, ValueError):
        ttl = 0
    if ttl <= 0:
        log.warning("TTL is expected to be a positive integer, got %r, using %d", raw, DEFAULT_TTL)
        return DEFAULT_TTL
    log.info("TTL is set to %d", ttl)
    return ttl


def route53_client(region: str):
    return boto3.client("route53", region_name=region)


def write_route53_defaults(path: str, zone_id: str, ttl: int, metadata: InstanceMetadata,
                           reverse_zone_id: Optional[str] = None, identity_source: str = "tag",
                           domain: Optional[str] = None, region: Optional[str] = None) -> dict:
    values = {
        "TTL": str(ttl),
        "HOSTED_ZONE_ID": zone_id,
        "HOSTED_ZONE_DN": domain,
        "REVERSE_ZONE_ID": reverse_zone_id,
        "REGION": region or metadata.region(),
        "INSTANCE_ID": metadata.instance_id(),
        "IDENTITY_SOURCE": identity_source,
    }
    write_defaults(path, values)
    return values


def dhclient_stanza(interface: str, domain: str) -> str:
    return (
        f'interface "{interface}" {{\n'
        f'    supersede domain-name "{domain}";\n'
        f'    supersede domain-search "{domain}";\n'
        "}\n"
    )


def configure_dhclient(conf_path: str, interface: str, domain: str,
                       runner: Callable[[List[str]], object] = subprocess.run) -> bool:
    """Append the search-domain stanza and renew the lease. False when already configured."""
    stanza = dhclient_stanza(interface, domain)
    try:
        with open(conf_path) as f:
            current = f.read()
    except FileNotFoundError:
        current = ""
    if stanza in current:
        log.info("%s already sets the search domain to %s", conf_path, domain)
        return False

    log.info("Updating %s to set the search domain to %s", conf_path, domain)
    with open(conf_path, "a") as f:
        if current and not current.endswith("\n"):
            f.write("\n")
        f.write(stanza)

    log.info("Renewing the DHCP lease for %s", interface)
    runner(["dhclient", "-r", interface], check=True)
    runner(["dhclient", interface], check=True)
    return True


def detect_linux_flavor(paths=("/etc/os-release", "/etc/issue")) -> str:
    text = ""
    for path in paths:
        try:
            with open(path) as f:
                text += f.read().lower()
        except OSError:
            continue
    for flavor in ("ubuntu", "amazon", "centos"):
        if flavor in text:
            log.info("Linux flavor is %s", flavor)
            return flavor
    log.warning("Unable to determine the Linux flavor, treating it as 'unknown'")
    return "unknown"


def register_service(flavor: str, unit_path: str = SYSTEMD_UNIT_PATH,
                     runner: Callable[[List[str]], object] = subprocess.run,
                     init_script_path: str = INIT_SCRIPT_PATH) -> bool:
    log.info("Registering the route53 service on %s", flavor)
    route53_bin = shutil.which("route53") or "/usr/local/bin/route53"
    if flavor in SYSTEMD_FLAVORS:
        with open(unit_path, "w") as f:
            f.write(SYSTEMD_UNIT.format(route53=route53_bin))
        runner(["systemctl", "daemon-reload"], check=True)
        runner(["systemctl", "enable", "route53"], check=True)
        runner(["systemctl", "start", "route53"], check=True)
        return True
    if flavor == "amazon":
        # chkconfig only registers scripts that already exist under /etc/init.d
        with open(init_script_path, "w") as f:
            f.write(INIT_SCRIPT.format(route53=route53_bin))
        os.chmod(init_script_path, 0o755)
        runner(["chkconfig", "--add", "route53"], check=True)
        runner(["service", "route53", "start"], check=True)
        return True
    log.warning("Unsupported Linux flavor %r, unable to register the route53 service", flavor)
    return False


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file, args.verbose)
    log.info("prepare-dns started at %s", time.ctime())

    if not args.hosted_zone_id:
        log.warning("No hosted zone id given, not setting up DNS")
        return 0
    log.info("Using Hosted Zone ID '%s'", args.hosted_zone_id)
    ttl = resolve_ttl(args.ttl)

    metadata = InstanceMetadata()
    try:
        region = metadata.region()
        domain = None
        if args.dhclient or args.identity_source == "hostname":
            domain = zone_domain(route53_client(region), args.hosted_zone_id)
            if domain:
                log.info("Hosted zone domain is %s", domain)
        write_route53_defaults(args.defaults, args.hosted_zone_id, ttl, metadata,
                               args.reverse_zone_id, args.identity_source,
                               domain=domain, region=region)
    except (OSError, MetadataError) as e:
        log.error("Failed to write %s, aborting dns setup: %s", args.defaults, e)
        return 1

    try:
        if args.dhclient and domain:
            configure_dhclient(args.dhclient_conf, args.interface, domain)
        if args.register_service:
            register_service(detect_linux_flavor())
    except (OSError, subprocess.CalledProcessError, Route53ToolError) as e:
        log.error("DNS preparation failed: %s", e)
        return 1

    log.info("prepare-dns finished at %s", time.ctime())
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
