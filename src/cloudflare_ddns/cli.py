#!/usr/bin/env python3
"""cloudflare-ddns - Dynamic DNS for Cloudflare

Looks up the host's current public IPv4 and IPv6 addresses and points the
configured Cloudflare A/AAAA records at them. Records whose content already
matches are left alone, so running it repeatedly (e.g. from cron) is safe.

Every setting can be given as a flag, an environment variable or a key in an
optional YAML config file. A flag wins over the environment, which wins over
the config file.

    Required:
        -zone-id       CLOUDFLARE_ZONE_ID       Cloudflare zone ID
        -email         CLOUDFLARE_EMAIL         Cloudflare account email
        -auth-key      CLOUDFLARE_AUTH_KEY      Cloudflare global API key
        -names         CLOUDFLARE_SYNC_NAMES    Comma-separated DNS names to keep in sync
                                                (e.g. "home.example.com,vpn.example.com")

    Optional:
        -config        CLOUDFLARE_DDNS_CONFIG   Path to a YAML config file, e.g.:
                                                  zone_id: "023e105f4ecef8ad9ca31a8372d0c353"
                                                  email: "me@example.com"
                                                  auth_key: "c2547eb745079dac9320b638f5e225cf483cc5cfdda41"
                                                  names:
                                                    - home.example.com
                                                    - vpn.example.com
                                                zone_id, email and auth_key must be quoted.
        -api-url       CLOUDFLARE_API_URL       API base URL
                                                (default: https://api.cloudflare.com/client/v4)
        -ip-echo-host  IP_ECHO_HOST             Address echo service; queried as
                                                https://ipv4.<host>/ and https://ipv6.<host>/
                                                (default: icanhazip.com)
        -log-level     LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)

Exit status is 0 when every record is in sync (or was updated), 1 on any
configuration, lookup or API failure. The first failure stops the run.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import requests
import yaml

# =============================================================================
# Constants
# =============================================================================

A = "A"
AAAA = "AAAA"

# Record type -> address family label used by the echo service host name.
ADDRESS_FAMILIES: Dict[str, str] = {A: "ipv4", AAAA: "ipv6"}

DEFAULT_API_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_IP_ECHO_HOST = "icanhazip.com"
DEFAULT_LOG_LEVEL = "INFO"

AddressSet = Mapping[str, str]

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DDNSError(Exception):
    """Base class for failures that abort a sync run."""


class ConfigError(DDNSError):
    """Required configuration is missing or unreadable."""


class AddressLookupError(DDNSError):
    """The external address could not be determined."""


class FetchError(DDNSError):
    """DNS records could not be listed."""


class UpdateError(DDNSError):
    """A DNS record update was rejected or could not be sent.

    Carries the JSON payload that was sent and, when the provider answered,
    its status code and response body.
    """

    def __init__(
        self,
        message: str,
        *,
        payload: str = "",
        status_code: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.payload = payload
        self.status_code = status_code
        self.body = body


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class RecordMeta:
    auto_added: bool = False
    managed_by_apps: bool = False
    managed_by_argo_tunnel: bool = False
    source: str = ""


@dataclass(frozen=True)
class ProviderRecord:
    """A DNS record as returned by the Cloudflare API."""

    id: str
    zone_id: str
    name: str
    type: str
    content: str
    zone_name: str = ""
    proxiable: bool = False
    proxied: bool = False
    ttl: int = 0
    locked: bool = False
    meta: RecordMeta = field(default_factory=RecordMeta)
    created_on: str = ""
    modified_on: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], zone_id: str = "") -> "ProviderRecord":
        """Build a record from API JSON; `zone_id` fills in a missing zone."""
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        return cls(
            id=str(data.get("id") or ""),
            zone_id=str(data.get("zone_id") or zone_id),
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            content=str(data.get("content") or ""),
            zone_name=str(data.get("zone_name") or ""),
            proxiable=data.get("proxiable", False),
            proxied=data.get("proxied", False),
            ttl=data.get("ttl", 0),
            locked=data.get("locked", False),
            meta=RecordMeta(
                auto_added=meta.get("auto_added", False),
                managed_by_apps=meta.get("managed_by_apps", False),
                managed_by_argo_tunnel=meta.get("managed_by_argo_tunnel", False),
                source=str(meta.get("source") or ""),
            ),
            created_on=str(data.get("created_on") or ""),
            modified_on=str(data.get("modified_on") or ""),
        )


@dataclass(frozen=True)
class DnsRecord:
    """The fields of a record that reconciliation looks at."""

    id: str
    zone_id: str
    type: str
    name: str
    content: str

    @classmethod
    def from_provider(cls, record: ProviderRecord) -> "DnsRecord":
        return cls(
            id=record.id,
            zone_id=record.zone_id,
            type=record.type,
            name=record.name,
            content=record.content,
        )


@dataclass(frozen=True)
class UpdateInstruction:
    """Set the content of one record."""

    record_id: str
    zone_id: str
    new_content: str


@dataclass(frozen=True)
class Config:
    zone_id: str
    email: str
    auth_key: str
    sync_names: Tuple[str, ...]
    api_url: str = DEFAULT_API_URL
    ip_echo_host: str = DEFAULT_IP_ECHO_HOST
    log_level: str = DEFAULT_LOG_LEVEL


# =============================================================================
# Configuration
# =============================================================================

# (dest, flag, environment variable, default)
_SETTINGS: Tuple[Tuple[str, str, str, str], ...] = (
    ("zone_id", "-zone-id", "CLOUDFLARE_ZONE_ID", ""),
    ("email", "-email", "CLOUDFLARE_EMAIL", ""),
    ("auth_key", "-auth-key", "CLOUDFLARE_AUTH_KEY", ""),
    ("names", "-names", "CLOUDFLARE_SYNC_NAMES", ""),
    ("api_url", "-api-url", "CLOUDFLARE_API_URL", DEFAULT_API_URL),
    ("ip_echo_host", "-ip-echo-host", "IP_ECHO_HOST", DEFAULT_IP_ECHO_HOST),
    ("log_level", "-log-level", "LOG_LEVEL", DEFAULT_LOG_LEVEL),
)

_REQUIRED = ("zone_id", "email", "auth_key", "names")

# YAML would turn unquoted values such as 0123 into numbers.
_STRING_KEYS = ("zone_id", "email", "auth_key")

_HELP = {
    "zone_id": "Cloudflare Zone ID",
    "email": "Cloudflare email address",
    "auth_key": "Cloudflare global API key",
    "names": "Comma-separated DNS names",
    "api_url": "Cloudflare API base URL",
    "ip_echo_host": "Host of the address echo service",
    "log_level": "Log level",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudflare-ddns",
        description="Point Cloudflare A/AAAA records at this host's public addresses.",
        epilog=(
            "Values starting with \"-\" must be joined to their flag, "
            "e.g. -auth-key=-abc123."
        ),
        allow_abbrev=False,
    )
    for dest, flag, env, _default in _SETTINGS:
        parser.add_argument(
            flag, "-" + flag, dest=dest, default=None, help=f"{_HELP[dest]} (env: {env})"
        )
    parser.add_argument(
        "-config",
        "--config",
        dest="config",
        default=None,
        help="YAML config file (env: CLOUDFLARE_DDNS_CONFIG)",
    )
    return parser


def _parse_names(value: str) -> Tuple[str, ...]:
    """Split a comma-separated list of DNS names, dropping blanks."""
    return tuple(item.strip() for item in value.split(",") if item.strip())


def load_config_file(path: str) -> Dict[str, str]:
    """Read a YAML config file into a flat dict of string settings."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    values: Dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if key in _STRING_KEYS and not isinstance(value, str):
            raise ConfigError(f"Config file {path}: {key} must be a quoted string")
        if key == "names" and isinstance(value, list):
            value = ",".join(str(item) for item in value)
        values[str(key)] = str(value)
    return values


def load_config(
    argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Resolve settings from flags, environment and config file, in that order."""
    if environ is None:
        environ = os.environ
    args = build_parser().parse_args(argv)

    config_path = args.config or environ.get("CLOUDFLARE_DDNS_CONFIG", "")
    file_values = load_config_file(config_path) if config_path else {}

    values: Dict[str, str] = {}
    for dest, _flag, env, default in _SETTINGS:
        flag_value = getattr(args, dest)
        if flag_value is not None:
            values[dest] = flag_value
        elif environ.get(env):
            values[dest] = environ[env]
        elif file_values.get(dest):
            values[dest] = file_values[dest]
        else:
            values[dest] = default

    sync_names = _parse_names(values["names"])
    missing = [
        flag
        for dest, flag, _env, _default in _SETTINGS
        if dest in _REQUIRED and not (sync_names if dest == "names" else values[dest])
    ]
    if missing:
        raise ConfigError(f"Missing arguments: {', '.join(missing)}. Use -h for help")

    log_level = values["log_level"].upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"Invalid log level: {values['log_level']}")

    return Config(
        zone_id=values["zone_id"],
        email=values["email"],
        auth_key=values["auth_key"],
        sync_names=sync_names,
        api_url=values["api_url"].rstrip("/"),
        ip_echo_host=values["ip_echo_host"],
        log_level=log_level,
    )


# =============================================================================
# Address Resolver
# =============================================================================


class AddressResolver:
    """Looks up this host's public addresses via an echo service."""

    def __init__(self, host: str = DEFAULT_IP_ECHO_HOST):
        self._host = host
        self._session = requests.Session()

    def lookup(self, family: str) -> str:
        url = f"https://{family}.{self._host}/"
        try:
            with self._session.get(url) as response:
                if response.status_code != 200:
                    raise AddressLookupError(
                        f"Address lookup {url} failed: {response.status_code} {response.reason}"
                    )
                address = response.text.strip()
        except requests.exceptions.RequestException as e:
            raise AddressLookupError(f"Address lookup {url} failed: {e}") from e

        if not address:
            raise AddressLookupError(f"Address lookup {url} returned an empty body")
        return address

    def resolve(self) -> AddressSet:
        """Return the A and AAAA addresses; either lookup failing fails both."""
        addresses = {
            record_type: self.lookup(family) for record_type, family in ADDRESS_FAMILIES.items()
        }
        return MappingProxyType(addresses)


# =============================================================================
# Cloudflare API
# =============================================================================


class CloudflareClient:
    """Lists and patches DNS records with global API key authentication."""

    def __init__(self, email: str, auth_key: str, url: str = DEFAULT_API_URL):
        self._url = url.rstrip("/")
        self._session = requests.Session()
        self._session.headers.update(
            {
                "x-auth-email": email,
                "x-auth-key": auth_key,
                "Content-Type": "application/json",
            }
        )

    def get_records(self, zone_id: str) -> List[ProviderRecord]:
        url = f"{self._url}/zones/{zone_id}/dns_records"
        try:
            with self._session.get(url) as response:
                if response.status_code != 200:
                    raise FetchError(
                        f"Failed to list DNS records for zone {zone_id}: "
                        f"{response.status_code} {response.reason}\n{response.text}"
                    )
                data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise FetchError(f"Failed to list DNS records for zone {zone_id}: {e}") from e

        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, list):
            raise FetchError(f"Unexpected DNS record listing for zone {zone_id}: {data}")

        records = []
        for entry in result:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise FetchError(f"Malformed DNS record in zone {zone_id}: {entry}")
            records.append(ProviderRecord.from_dict(entry, zone_id=zone_id))
        return records

    def update_record(self, instruction: UpdateInstruction) -> None:
        url = f"{self._url}/zones/{instruction.zone_id}/dns_records/{instruction.record_id}"
        payload = json.dumps({"content": instruction.new_content})
        try:
            with self._session.patch(url, data=payload) as response:
                status_code = response.status_code
                status = f"{status_code} {response.reason}"
                body = response.text
        except requests.exceptions.RequestException as e:
            raise UpdateError(
                f"Could not update DNS record {payload}\n{e}", payload=payload
            ) from e

        if status_code != 200:
            raise UpdateError(
                f"Could not update DNS record {payload}\nResponse status: {status}\n{body}",
                payload=payload,
                status_code=status_code,
                body=body,
            )
        logger.debug(f"Updated DNS record {instruction.record_id} -> {instruction.new_content}")


# =============================================================================
# Reconciliation
# =============================================================================


def reconcile(
    records: Iterable[ProviderRecord], addresses: AddressSet, sync_names: Iterable[str]
) -> List[UpdateInstruction]:
    """Work out which synced records point at a stale address.

    Records keep the provider's order. A record is only considered when its
    name is one of ``sync_names`` (exact match) and its type has a resolved
    address; it is updated when its content differs from that address.
    """
    names = set(sync_names)
    instructions: List[UpdateInstruction] = []

    for provider_record in records:
        record = DnsRecord.from_provider(provider_record)
        if record.name not in names:
            continue

        address = addresses.get(record.type)
        if address is None or address == record.content:
            continue

        logger.info(f"{record.type} {record.name} {record.content} -> {address}")
        instructions.append(
            UpdateInstruction(record_id=record.id, zone_id=record.zone_id, new_content=address)
        )

    return instructions


# =============================================================================
# Core Syncer
# =============================================================================


class DDNSSyncer:
    def __init__(
        self,
        *,
        resolver: AddressResolver,
        client: CloudflareClient,
        zone_id: str,
        sync_names: Iterable[str],
    ):
        self.resolver = resolver
        self.client = client
        self.zone_id = zone_id
        self.sync_names = tuple(sync_names)

    def sync_once(self) -> List[UpdateInstruction]:
        """Run one pass and return the updates that were applied."""
        addresses = self.resolver.resolve()
        logger.info(f"External addresses: {A}={addresses[A]} {AAAA}={addresses[AAAA]}")

        records = self.client.get_records(self.zone_id)
        logger.debug(f"Fetched {len(records)} record(s) from zone {self.zone_id}")

        instructions = reconcile(records, addresses, self.sync_names)
        if not instructions:
            logger.info("All synced DNS records are up to date")
            return instructions

        for instruction in instructions:
            self.client.update_record(instruction)

        logger.info(f"Updated {len(instructions)} DNS record(s)")
        return instructions


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    try:
        config = load_config(argv)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)
    logger.info(f"cloudflare-ddns: zone {config.zone_id}")
    logger.info(f"Sync names: {', '.join(config.sync_names)}")

    syncer = DDNSSyncer(
        resolver=AddressResolver(config.ip_echo_host),
        client=CloudflareClient(config.email, config.auth_key, config.api_url),
        zone_id=config.zone_id,
        sync_names=config.sync_names,
    )

    try:
        syncer.sync_once()
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except DDNSError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
