"""TCP connection table decoding and connection/country merging.

Reads a container's sockets from its network namespace via
`<host_proc>/<pid>/net/tcp` and `tcp6`, counts connections per state and
resolves established peers to countries.

Table format (header line skipped):
    sl  local_address rem_address   st tx_queue:rx_queue ...
    0:  0100007F:0050 0A00020F:C350 01 00000000:00000000 ...

Addresses are `HEXADDR:HEXPORT`. The port is big-endian. IPv4 addresses are
one little-endian 32-bit word; IPv6 addresses are four little-endian 32-bit
words, each reversed on its own.
"""

from __future__ import annotations

import ipaddress
import logging
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from conduit_expose.core.constants import TCP_ESTABLISHED, TCP_STATES
from conduit_expose.core.schemas import ConnectionStats, CountryStats

if TYPE_CHECKING:
    from conduit_expose.monitoring.geoip import GeoIPResolver

logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass(frozen=True)
class ConnectionRecord:
    """One row of a kernel TCP table."""

    remote_ip: IPAddress
    remote_port: int
    state: str  # hex state code, upper-case, e.g. "01"

    @property
    def state_name(self) -> str | None:
        return TCP_STATES.get(self.state)

    @property
    def peer_ip(self) -> IPAddress:
        """Remote address with IPv4-mapped IPv6 (`::ffff:a.b.c.d`) unwrapped to IPv4."""
        ip = self.remote_ip
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            return ip.ipv4_mapped
        return ip

    def is_loopback(self) -> bool:
        return self.peer_ip.is_loopback


def decode_hex_address(value: str, ipv6: bool) -> tuple[IPAddress, int]:
    """Decode a kernel `HEXADDR:HEXPORT` address.

    Args:
        value: Address field, e.g. "0100007F:0050"
        ipv6: True for rows of the tcp6 table

    Returns:
        Tuple of (ip, port)

    Raises:
        ValueError: If the field is malformed
    """
    hex_ip, sep, hex_port = value.partition(":")
    if not sep or len(hex_port) != 4:
        raise ValueError(f"invalid address format: {value}")

    port = int.from_bytes(bytes.fromhex(hex_port), "big")
    raw = bytes.fromhex(hex_ip)

    if ipv6:
        if len(raw) != 16:
            raise ValueError(f"invalid IPv6 length: {len(raw)}")
        # Reverse each 32-bit word, not the whole 16 bytes
        packed = b"".join(raw[i : i + 4][::-1] for i in range(0, 16, 4))
        return ipaddress.IPv6Address(packed), port

    if len(raw) != 4:
        raise ValueError(f"invalid IPv4 length: {len(raw)}")
    return ipaddress.IPv4Address(raw[::-1]), port


def parse_tcp_table(lines: Iterable[str], ipv6: bool) -> Iterator[ConnectionRecord]:
    """Yield records from a kernel TCP table, skipping the header and malformed rows."""
    iterator = iter(lines)
    next(iterator, None)  # header

    for line in iterator:
        fields = line.split()
        if len(fields) < 4:
            continue
        try:
            ip, port = decode_hex_address(fields[2], ipv6)
        except ValueError:
            continue
        yield ConnectionRecord(remote_ip=ip, remote_port=port, state=fields[3].upper())


def read_tcp_table(path: Path, ipv6: bool) -> list[ConnectionRecord]:
    """Read and parse one TCP table file.

    Raises:
        OSError: If the file cannot be read
    """
    with open(path, encoding="ascii", errors="replace") as f:
        return list(parse_tcp_table(f, ipv6))


def summarize_connections(
    records_by_family: Iterable[Iterable[ConnectionRecord]],
    geo: GeoIPResolver | None = None,
) -> tuple[ConnectionStats, list[CountryStats]]:
    """Aggregate connection records into state counts and a country list.

    Listening sockets (remote port 0) and loopback peers are excluded.
    IPv4-mapped IPv6 peers count as their IPv4 address, so a peer seen in both
    tables is one unique IP.
    Unrecognized state codes count towards the total only. Only established
    connections are resolved to countries.

    Args:
        records_by_family: One record iterable per address family
        geo: Optional GeoIP resolver

    Returns:
        Tuple of (ConnectionStats, countries sorted by connections descending)
    """
    total = 0
    states: Counter[str] = Counter()
    countries: Counter[str] = Counter()
    unique: set[IPAddress] = set()

    for records in records_by_family:
        family_ips: set[IPAddress] = set()
        for record in records:
            if record.remote_port == 0 or record.is_loopback():
                continue

            total += 1
            state_name = record.state_name
            if state_name is not None:
                states[state_name] += 1
            family_ips.add(record.peer_ip)

            if record.state == TCP_ESTABLISHED and geo is not None:
                country = geo.lookup(record.peer_ip)
                if country:
                    countries[country] += 1
        unique |= family_ips

    stats = ConnectionStats(total=total, unique_ips=len(unique), states=dict(states))
    return stats, _sorted_countries(countries)


def collect_container_connections(
    host_proc_path: Path,
    pid: int,
    geo: GeoIPResolver | None = None,
) -> tuple[ConnectionStats, list[CountryStats]]:
    """Read both TCP tables of a process's network namespace and summarize them.

    A missing or unreadable table contributes nothing.
    """
    tables: list[list[ConnectionRecord]] = []
    for proto, ipv6 in (("tcp", False), ("tcp6", True)):
        path = Path(host_proc_path) / str(pid) / "net" / proto
        try:
            tables.append(read_tcp_table(path, ipv6))
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
    return summarize_connections(tables, geo)


def merge_connection_stats(all_stats: Iterable[ConnectionStats | None]) -> ConnectionStats | None:
    """Merge per-container connection stats.

    Totals and state buckets sum. Unique IP counts also sum without
    deduplication: containers live in separate network namespaces, so this
    approximates the fleet-wide count.

    Returns:
        Merged stats, or None when nothing (or only zeros) was observed
    """
    total = 0
    unique_ips = 0
    states: Counter[str] = Counter()
    for stats in all_stats:
        if stats is None:
            continue
        total += stats.total
        unique_ips += stats.unique_ips
        states.update(stats.states)

    merged = ConnectionStats(total=total, unique_ips=unique_ips, states=dict(states))
    return None if merged.is_empty() else merged


def merge_country_stats(all_lists: Iterable[Iterable[CountryStats] | None]) -> list[CountryStats]:
    """Sum counts per country across lists, sorted by count descending.

    Equal counts keep first-seen order (stable sort).
    """
    counts: Counter[str] = Counter()
    for stats_list in all_lists:
        for entry in stats_list or ():
            counts[entry.country] += entry.connections
    return _sorted_countries(counts)


def _sorted_countries(counts: Counter[str]) -> list[CountryStats]:
    result = [CountryStats(country=code, connections=count) for code, count in counts.items()]
    result.sort(key=lambda c: c.connections, reverse=True)
    return result
