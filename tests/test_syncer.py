"""Unit tests for DDNSSyncer and the CLI entry point.

Tests the full run: resolve addresses, list records, reconcile, apply updates,
and the exit status for each kind of failure.
"""

from typing import Dict, List
from unittest.mock import patch

import pytest

from cloudflare_ddns.cli import (
    AddressLookupError,
    AddressResolver,
    CloudflareClient,
    DDNSSyncer,
    FetchError,
    ProviderRecord,
    UpdateError,
    UpdateInstruction,
    main,
)

# =============================================================================
# Fakes
# =============================================================================


class FakeResolver(AddressResolver):
    def __init__(self, addresses: Dict[str, str] | None = None, error: Exception | None = None):
        self._addresses = addresses or {"A": "5.6.7.8", "AAAA": "2001:db8::1"}
        self._error = error

    def resolve(self) -> Dict[str, str]:
        if self._error:
            raise self._error
        return dict(self._addresses)


class FakeCloudflareClient(CloudflareClient):
    """In-memory zone with call tracking."""

    def __init__(self, records: List[ProviderRecord], fail_on: str = ""):
        self._records = {r.id: r for r in records}
        self._fail_on = fail_on
        self.get_calls: List[str] = []
        self.update_calls: List[UpdateInstruction] = []

    def get_records(self, zone_id: str) -> List[ProviderRecord]:
        self.get_calls.append(zone_id)
        return list(self._records.values())

    def update_record(self, instruction: UpdateInstruction) -> None:
        self.update_calls.append(instruction)
        if instruction.record_id == self._fail_on:
            raise UpdateError("Could not update DNS record", status_code=403, body="forbidden")
        old = self._records[instruction.record_id]
        self._records[old.id] = ProviderRecord(
            id=old.id,
            zone_id=old.zone_id,
            name=old.name,
            type=old.type,
            content=instruction.new_content,
        )


def make_record(
    record_id: str, name: str, type: str = "A", content: str = "1.2.3.4"
) -> ProviderRecord:
    return ProviderRecord(id=record_id, zone_id="zone1", name=name, type=type, content=content)


ZONE = [
    make_record("r1", "home.example.com"),
    make_record("r2", "home.example.com", type="AAAA", content="2001:db8::ff"),
    make_record("r3", "vpn.example.com", content="5.6.7.8"),
    make_record("r4", "www.example.com"),
    make_record("r5", "home.example.com", type="TXT", content="hello"),
]


def make_syncer(client: FakeCloudflareClient, resolver: FakeResolver | None = None) -> DDNSSyncer:
    return DDNSSyncer(
        resolver=resolver or FakeResolver(),
        client=client,
        zone_id="zone1",
        sync_names=["home.example.com", "vpn.example.com"],
    )


# =============================================================================
# Syncer
# =============================================================================


def test_sync_updates_stale_records_in_order() -> None:
    client = FakeCloudflareClient(ZONE)

    applied = make_syncer(client).sync_once()

    assert client.get_calls == ["zone1"]
    assert client.update_calls == applied == [
        UpdateInstruction(record_id="r1", zone_id="zone1", new_content="5.6.7.8"),
        UpdateInstruction(record_id="r2", zone_id="zone1", new_content="2001:db8::1"),
    ]


def test_second_sync_is_a_no_op() -> None:
    client = FakeCloudflareClient(ZONE)
    syncer = make_syncer(client)

    syncer.sync_once()
    client.update_calls.clear()

    assert syncer.sync_once() == []
    assert client.update_calls == []


def test_lookup_failure_stops_before_listing_records() -> None:
    client = FakeCloudflareClient(ZONE)
    resolver = FakeResolver(error=AddressLookupError("ipv6 lookup failed"))

    with pytest.raises(AddressLookupError):
        make_syncer(client, resolver).sync_once()

    assert client.get_calls == []
    assert client.update_calls == []


def test_update_failure_stops_remaining_updates() -> None:
    client = FakeCloudflareClient(ZONE, fail_on="r1")

    with pytest.raises(UpdateError):
        make_syncer(client).sync_once()

    assert [i.record_id for i in client.update_calls] == ["r1"]


# =============================================================================
# CLI Entry Point
# =============================================================================

ARGV = [
    "-zone-id",
    "zone1",
    "-email",
    "me@example.com",
    "-auth-key",
    "secret",
    "-names",
    "home.example.com,vpn.example.com",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CLOUDFLARE_ZONE_ID",
        "CLOUDFLARE_EMAIL",
        "CLOUDFLARE_AUTH_KEY",
        "CLOUDFLARE_SYNC_NAMES",
        "CLOUDFLARE_API_URL",
        "CLOUDFLARE_DDNS_CONFIG",
        "IP_ECHO_HOST",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_main_missing_configuration_exits_1() -> None:
    with pytest.raises(SystemExit) as exc_info:
        main([])

    assert exc_info.value.code == 1


def test_main_applies_updates() -> None:
    addresses = {"A": "5.6.7.8", "AAAA": "2001:db8::1"}

    with patch.object(AddressResolver, "resolve", return_value=addresses), patch.object(
        CloudflareClient, "get_records", return_value=ZONE
    ) as mock_get, patch.object(CloudflareClient, "update_record") as mock_update:
        main(ARGV)

    mock_get.assert_called_once_with("zone1")
    assert [c.args[0].record_id for c in mock_update.call_args_list] == ["r1", "r2"]


def test_main_nothing_to_update_returns_normally() -> None:
    addresses = {"A": "1.2.3.4", "AAAA": "2001:db8::ff"}

    with patch.object(AddressResolver, "resolve", return_value=addresses), patch.object(
        CloudflareClient, "get_records", return_value=ZONE[:2]
    ), patch.object(CloudflareClient, "update_record") as mock_update:
        main(ARGV)

    mock_update.assert_not_called()


@pytest.mark.parametrize(
    "target, error",
    [
        ("resolve", AddressLookupError("lookup failed")),
        ("get_records", FetchError("listing failed")),
        ("update_record", UpdateError("update failed", status_code=500)),
    ],
)
def test_main_failures_exit_1(target: str, error: Exception) -> None:
    addresses = {"A": "5.6.7.8", "AAAA": "2001:db8::1"}
    side_effects = {target: error}

    with patch.object(
        AddressResolver, "resolve", return_value=addresses, side_effect=side_effects.get("resolve")
    ), patch.object(
        CloudflareClient,
        "get_records",
        return_value=ZONE,
        side_effect=side_effects.get("get_records"),
    ), patch.object(
        CloudflareClient, "update_record", side_effect=side_effects.get("update_record")
    ):
        with pytest.raises(SystemExit) as exc_info:
            main(ARGV)

    assert exc_info.value.code == 1
