import ipaddress
import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime

# DNS record TTL defaults to 5 minutes
RECORD_TTL = 300
RECORD_TYPE = "A"

CREATED = "created"
UPDATED = "updated"
UNTOUCHED = "untouched"
SKIPPED = "skipped"
FAILED = "failed"
STATUSES = (CREATED, UPDATED, UNTOUCHED, SKIPPED, FAILED)


class ApiError(RuntimeError):
    """Raised by the API layer when a call to the provider fails."""


@dataclass(frozen=True)
class DeviceObservation:
    id: str
    name: str
    updated: datetime


@dataclass
class CanonicalDevice:
    id: str
    name: str
    updated: datetime
    address: str | None = None


@dataclass(frozen=True)
class DnsRecord:
    id: str
    name: str
    content: str


@dataclass
class Outcome:
    device: str
    name: str
    status: str
    reason: str = ""
    record_id: str | None = None


@dataclass
class CycleReport:
    zone_name: str
    outcomes: list[Outcome] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        c = Counter(o.status for o in self.outcomes)
        return {status: c.get(status, 0) for status in STATUSES}

    @property
    def failed(self) -> bool:
        return any(o.status == FAILED for o in self.outcomes)

    def summary(self) -> str:
        return ", ".join(f"{n} {status}" for status, n in self.counts().items())


def is_ipv4(value) -> bool:
    """Strict dotted-quad check: four decimal octets, 0-255, no leading zeros."""
    if not isinstance(value, str):
        return False
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    # must round-trip exactly, so no leading zeros or other spellings
    return ip.version == 4 and str(ip) == value


def normalize_name(name: str) -> str:
    return name.strip().lower().rstrip(".")


def qualified_name(device_name: str, zone_name: str) -> str:
    return f"{normalize_name(device_name)}.{normalize_name(zone_name)}"


def deduplicate_devices(observations) -> dict[str, CanonicalDevice]:
    """Collapse device observations into one device per name.

    The most recently updated observation wins; on equal timestamps the one
    seen first is kept.
    """
    devices: dict[str, CanonicalDevice] = {}
    by_name: dict[str, str] = {}

    for obs in observations:
        current_id = by_name.get(obs.name)
        if current_id is not None:
            if devices[current_id].updated >= obs.updated:
                continue
            del devices[current_id]

        devices[obs.id] = CanonicalDevice(id=obs.id, name=obs.name, updated=obs.updated)
        by_name[obs.name] = obs.id

    return devices


def resolve_addresses(devices: dict[str, CanonicalDevice], lookup, workers: int = 4) -> dict[str, str]:
    """Look up the address of every device with at most `workers` calls in flight.

    `lookup(device_id)` returns an address or None. Addresses are written onto
    the devices once all lookups are done. Returns {device_id: reason} for the
    lookups that raised.
    """
    addresses: dict[str, str | None] = {}
    failures: dict[str, str] = {}

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {executor.submit(lookup, device_id): device_id for device_id in devices}
        for future in as_completed(futures):
            device_id = futures[future]
            try:
                addresses[device_id] = future.result()
            except ApiError as ex:
                logging.warning(f"Address lookup for {devices[device_id].name} failed: {ex}")
                failures[device_id] = f"resolver failure: {ex}"

    for device_id, address in addresses.items():
        devices[device_id].address = address
        if address is not None:
            logging.debug(f"{devices[device_id].name} has IP address {address}")

    return failures


def build_record_index(records) -> dict[str, DnsRecord]:
    return {r.id: r for r in records}


def records_by_name(index: dict[str, DnsRecord]) -> dict[str, list[DnsRecord]]:
    grouped = defaultdict(list)
    for record in index.values():
        grouped[normalize_name(record.name)].append(record)
    return grouped


def reconcile_device(device: CanonicalDevice, zone_name: str, by_name: dict[str, list[DnsRecord]],
                     api, zone_id: str) -> Outcome:
    """Create or update the A record of a single device."""
    name = qualified_name(device.name, zone_name)

    if device.address is None:
        return Outcome(device.id, name, SKIPPED, "no resolvable address")
    content = device.address
    if not is_ipv4(content):
        return Outcome(device.id, name, SKIPPED, f"invalid address format: {content!r}")

    entries = by_name.get(name) or []
    if len(entries) > 1:
        ignored = ", ".join(r.id for r in entries[1:])
        logging.warning(f"Multiple A records for {name}; using {entries[0].id}, ignoring {ignored}")

    try:
        if not entries:
            record_id = api.create_record(zone_id, name, RECORD_TYPE, content, RECORD_TTL)
            return Outcome(device.id, name, CREATED, record_id=record_id)

        record = entries[0]
        if record.content == content:
            return Outcome(device.id, name, UNTOUCHED, record_id=record.id)

        api.update_record(zone_id, record.id, name, RECORD_TYPE, content, RECORD_TTL)
        return Outcome(device.id, name, UPDATED, f"{record.content or '(empty)'} -> {content}", record.id)
    except ApiError as ex:
        return Outcome(device.id, name, FAILED, str(ex), entries[0].id if entries else None)


def drop_shadowed(devices: dict[str, CanonicalDevice], zone_name: str) -> dict[str, str]:
    """Keep one device per qualified name when device names differ only by case.

    Returns {device_id: reason} for the devices that were dropped.
    """
    owner: dict[str, CanonicalDevice] = {}
    shadowed: dict[str, str] = {}

    for device in list(devices.values()):
        # devices without a usable address never claim a name
        if not is_ipv4(device.address):
            continue
        name = qualified_name(device.name, zone_name)
        other = owner.get(name)
        if other is None:
            owner[name] = device
            continue
        if other.updated >= device.updated:
            loser, winner = device, other
        else:
            loser, winner = other, device
            owner[name] = device
        shadowed[loser.id] = f"shadowed by {winner.id} ({winner.name})"
        del devices[loser.id]

    return shadowed


def log_outcome(outcome: Outcome):
    if outcome.status == FAILED:
        logging.error(f"DNS record for {outcome.name} failed: {outcome.reason}")
    elif outcome.status == SKIPPED:
        logging.warning(f"DNS record for {outcome.name} skipped: {outcome.reason}")
    else:
        logging.info(f"DNS record for {outcome.name} {outcome.status}")


def run_cycle(account_id: str, zone_id: str, api, workers: int = 4) -> CycleReport:
    """Run one reconciliation cycle and return its per-device report.

    `api` provides get_zone_name, list_devices, get_warp_ip, list_dns_records,
    create_record and update_record (see cf_api). A failure to read the zone,
    the devices or the records aborts the cycle.
    """
    zone_name = normalize_name(api.get_zone_name(zone_id))
    logging.info(f"Updating {zone_name}")

    devices = deduplicate_devices(api.list_devices(account_id))
    logging.info(f"Found {len(devices)} devices")

    report = CycleReport(zone_name=zone_name)
    names = {device_id: qualified_name(d.name, zone_name) for device_id, d in devices.items()}

    failures = resolve_addresses(devices, lambda device_id: api.get_warp_ip(account_id, device_id), workers)
    for device_id, reason in failures.items():
        report.outcomes.append(Outcome(device_id, names[device_id], SKIPPED, reason))
        del devices[device_id]

    index = build_record_index(api.list_dns_records(zone_id))
    logging.info(f"Found {len(index)} existing DNS records")
    by_name = records_by_name(index)

    for device_id, reason in drop_shadowed(devices, zone_name).items():
        report.outcomes.append(Outcome(device_id, names[device_id], SKIPPED, reason))

    for device in devices.values():
        report.outcomes.append(reconcile_device(device, zone_name, by_name, api, zone_id))

    for outcome in report.outcomes:
        log_outcome(outcome)
    logging.info(f"Reconciled {zone_name}: {report.summary()}")
    return report
