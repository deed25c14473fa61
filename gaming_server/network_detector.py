"""
network_detector.py - locate the console on the LAN.

Lookup runs three tiers, cheapest first, and stops at the first hit:

  1. cache           the persisted record, if younger than CACHE_MAX_AGE_SEC
                     (a last_seen in the future counts as stale)
  2. targeted probe  ping a candidate address (caller supplied, or the
                     stale cached one) and confirm its MAC in the
                     neighbour table
  3. full scan       nmap ping sweep of the subnet, matching the known
                     hardware id, or the vendor string before any
                     identity is known

A tier failing is never an error by itself; only a failed full scan
surfaces, as ApplianceNotFound.  Hits from tiers 2 and 3 are written
back to the cache file.

Cache file
----------
A single JSON object:

    {"ip": "192.168.1.100", "mac": "AA:BB:CC:DD:EE:FF",
     "last_seen": 1767225600, "online": true}

Written to a temporary file in the same directory and renamed over the
old one, so a reader never sees half a record.  A file that does not
parse, lacks ip/mac/last_seen, or has a non-finite last_seen, is
discarded and rebuilt by the next successful lookup.
"""

import ipaddress
import json
import logging
import math
import os
import re
import tempfile
import threading
import time

from .errors import (
    ApplianceNotFound,
    CacheInvalid,
    CommandFailed,
    InvalidParameter,
    ProbeTimeout,
)
from .models import ApplianceRecord
from .probes import SystemNetwork

LOG = logging.getLogger("gaming-server.detect")

CACHE_MAX_AGE_SEC = 3600
DEFAULT_VENDOR = "Sony Interactive Entertainment"

_OCTETS_RE = re.compile(r"(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})", re.ASCII)
_HARDWARE_ID_RE = re.compile(r"[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_address(address) -> bool:
    """True for a dotted-quad IPv4 address with every octet in 0-255."""
    if not isinstance(address, str):
        return False
    # "0.0.0.0" to "255.255.255.255"
    if not 7 <= len(address) <= 15:
        return False
    match = _OCTETS_RE.fullmatch(address)
    if match is None:
        return False
    return all(int(octet) <= 255 for octet in match.groups())


def validate_hardware_id(hardware_id) -> bool:
    """True for AA:BB:CC:DD:EE:FF, hex digits in either case."""
    if not isinstance(hardware_id, str) or len(hardware_id) != 17:
        return False
    return _HARDWARE_ID_RE.fullmatch(hardware_id) is not None


def same_hardware_id(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


# ---------------------------------------------------------------------------
# Cache file
# ---------------------------------------------------------------------------


def load_cache(path: str) -> ApplianceRecord | None:
    """
    Read the cache file.

    Returns None if the file does not exist; raises CacheInvalid if it
    exists but does not hold a well-formed record.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        raise CacheInvalid(f"cannot read {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise CacheInvalid(f"{path} does not contain a JSON object")

    ip = data.get("ip")
    mac = data.get("mac")
    last_seen = data.get("last_seen")
    if (
        not isinstance(ip, str)
        or not isinstance(mac, str)
        or isinstance(last_seen, bool)
        or not isinstance(last_seen, (int, float))
    ):
        raise CacheInvalid(f"{path} is missing ip, mac or last_seen")
    if not validate_address(ip) or not validate_hardware_id(mac):
        raise CacheInvalid(f"{path} holds a malformed address {ip!r} / {mac!r}")
    try:
        last_seen = float(last_seen)
    except OverflowError as exc:
        raise CacheInvalid(f"{path} holds an out-of-range last_seen") from exc
    # json accepts NaN and Infinity
    if not math.isfinite(last_seen):
        raise CacheInvalid(f"{path} holds a non-finite last_seen")

    return ApplianceRecord(
        address=ip,
        hardware_id=mac,
        last_seen=last_seen,
        reachable=data.get("online") is True,
    )


def save_cache(path: str, record: ApplianceRecord) -> None:
    """Atomically replace the cache file with record; raises OSError."""
    data = {
        "ip": record.address,
        "mac": record.hardware_id,
        "last_seen": record.last_seen,
        "online": record.reachable,
    }
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class NetworkDetector:
    """Tiered console lookup for one subnet and one cache file."""

    validate_address = staticmethod(validate_address)
    validate_hardware_id = staticmethod(validate_hardware_id)

    def __init__(
        self,
        subnet: str,
        cache_path: str,
        network=None,
        hardware_id: str | None = None,
        vendor: str = DEFAULT_VENDOR,
        clock=time.time,
        max_age: float = CACHE_MAX_AGE_SEC,
    ):
        try:
            self.subnet = str(ipaddress.ip_network(subnet, strict=False))
        except (TypeError, ValueError) as exc:
            raise InvalidParameter(f"invalid subnet {subnet!r}: {exc}") from exc
        if not cache_path:
            raise InvalidParameter("cache path must not be empty")
        if hardware_id is not None and not validate_hardware_id(hardware_id):
            raise InvalidParameter(f"invalid hardware id {hardware_id!r}")

        self.cache_path = cache_path
        self.hardware_id = hardware_id
        self.vendor = vendor
        self.max_age = max_age
        self._network = network if network is not None else SystemNetwork()
        self._clock = clock
        self._record: ApplianceRecord | None = None
        # Guards _record and the cache file; detection writes from a worker thread.
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        try:
            self._record = load_cache(self.cache_path)
        except CacheInvalid as exc:
            LOG.warning("Discarding appliance cache: %s", exc)
            self._record = None
            try:
                self.clear_cache()
            except OSError as clear_exc:
                LOG.warning("Could not remove %s: %s", self.cache_path, clear_exc)
            return

        if self._record is not None:
            LOG.info(
                "Loaded cached console %s (%s), age %ds",
                self._record.address,
                self._record.hardware_id,
                self.get_cache_age(),
            )

    # ---- cache ----

    @property
    def cached_record(self) -> ApplianceRecord | None:
        """The persisted record regardless of age, or None."""
        return self._record

    @property
    def known_hardware_id(self) -> str | None:
        if self.hardware_id is not None:
            return self.hardware_id
        record = self._record
        return record.hardware_id if record is not None else None

    def get_cache_age(self) -> int:
        """Seconds since the cached record was last seen; -1 with no cache."""
        record = self._record
        if record is None:
            return -1
        return int(self._clock() - record.last_seen)

    def cache_is_fresh(self) -> bool:
        """True if the record was seen less than max_age ago, and not in the future."""
        return self._fresh(self._record)

    def _fresh(self, record: ApplianceRecord | None) -> bool:
        if record is None:
            return False
        return 0 <= self._clock() - record.last_seen < self.max_age

    def clear_cache(self) -> None:
        """Forget the cached record and delete the cache file."""
        with self._lock:
            self._record = None
            try:
                os.remove(self.cache_path)
            except FileNotFoundError:
                pass
        LOG.info("Appliance cache cleared")

    def save_cache(self, record: ApplianceRecord) -> None:
        """Validate and persist record; raises InvalidParameter or OSError."""
        if not validate_address(record.address):
            raise InvalidParameter(f"invalid address {record.address!r}")
        if not validate_hardware_id(record.hardware_id):
            raise InvalidParameter(f"invalid hardware id {record.hardware_id!r}")
        with self._lock:
            save_cache(self.cache_path, record)
            self._record = record

    def _store(self, record: ApplianceRecord) -> None:
        try:
            self.save_cache(record)
        except OSError as exc:
            # Keep the hit in memory; the next write may succeed.
            LOG.warning("Could not write %s: %s", self.cache_path, exc)
            with self._lock:
                self._record = record

    # ---- probes ----

    def ping(self, address) -> bool:
        if not validate_address(address):
            return False
        return self._network.probe_reachable(address)

    def locate(self, candidate: str | None = None) -> ApplianceRecord:
        """Run the tiers in order; raises ApplianceNotFound if all fail."""
        cached = self._record
        if self._fresh(cached):
            LOG.debug("Console found in cache at %s", cached.address)
            return cached

        for address in self._candidates(candidate, cached):
            record = self._probe(address)
            if record is not None:
                LOG.info("Console confirmed at %s by targeted probe", address)
                self._store(record)
                return record

        record = self._full_scan()
        if record is not None:
            LOG.info(
                "Console found at %s (%s) by subnet scan",
                record.address,
                record.hardware_id,
            )
            self._store(record)
            return record

        raise ApplianceNotFound(f"console not found on {self.subnet}")

    def _candidates(self, candidate: str | None, cached: ApplianceRecord | None) -> list:
        addresses = []
        for address in (candidate, cached.address if cached else None):
            if address is None or address in addresses:
                continue
            if not validate_address(address):
                LOG.debug("Skipping invalid candidate address %r", address)
                continue
            addresses.append(address)
        return addresses

    def _probe(self, address: str) -> ApplianceRecord | None:
        if not self._network.probe_reachable(address):
            LOG.debug("Candidate %s did not answer", address)
            return None

        known = self.known_hardware_id
        mac = self._network.neighbor_mac(address)
        if mac is not None and known is not None and not same_hardware_id(mac, known):
            LOG.info("%s now belongs to %s, not the console", address, mac)
            return None

        hardware_id = mac if mac is not None else known
        if not validate_hardware_id(hardware_id):
            LOG.debug("Cannot confirm identity of %s", address)
            return None
        return ApplianceRecord(address, hardware_id, self._clock(), True)

    def _full_scan(self) -> ApplianceRecord | None:
        LOG.info("Scanning %s for the console", self.subnet)
        try:
            hits = self._network.scan(self.subnet)
        except (CommandFailed, ProbeTimeout) as exc:
            LOG.warning("Subnet scan failed: %s", exc)
            return None

        known = self.known_hardware_id
        for hit in hits:
            if not validate_address(hit.address) or not validate_hardware_id(hit.hardware_id):
                continue
            if known is not None:
                matched = same_hardware_id(hit.hardware_id, known)
            else:
                matched = bool(self.vendor) and self.vendor.lower() in hit.vendor.lower()
            if matched:
                return ApplianceRecord(hit.address, hit.hardware_id, self._clock(), True)
        return None
