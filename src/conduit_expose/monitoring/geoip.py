"""Offline IP to country resolution with a MaxMind GeoLite2 Country database."""

from __future__ import annotations

import ipaddress
import logging
import threading
from pathlib import Path

import geoip2.database
import geoip2.errors
import maxminddb

from conduit_expose.core.constants import UNKNOWN_COUNTRY

logger = logging.getLogger(__name__)


class GeoIPResolver:
    """Resolves IP addresses to ISO country codes.

    Results are cached for the life of the resolver; addresses missing from
    the database resolve to "XX". Lookups are safe from multiple workers.
    """

    def __init__(self, reader: geoip2.database.Reader) -> None:
        self._reader = reader
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: Path | str) -> GeoIPResolver | None:
        """Open the database at `db_path`.

        Returns:
            A resolver, or None when the database is absent or unreadable
        """
        db_path = Path(db_path)
        if not db_path.exists():
            logger.warning(f"GeoIP database not found at {db_path}, country resolution disabled")
            return None
        try:
            reader = geoip2.database.Reader(str(db_path))
        except (OSError, maxminddb.InvalidDatabaseError) as e:
            logger.warning(f"Failed to open GeoIP database: {e}, country resolution disabled")
            return None
        logger.info(f"GeoIP database loaded from {db_path}")
        return cls(reader)

    def lookup(self, ip: ipaddress.IPv4Address | ipaddress.IPv6Address | str) -> str:
        """Return the ISO country code for `ip`, or "XX" if unknown."""
        key = str(ip)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            code = self._reader.country(key).country.iso_code or UNKNOWN_COUNTRY
        except (geoip2.errors.AddressNotFoundError, ValueError):
            code = UNKNOWN_COUNTRY

        with self._lock:
            self._cache[key] = code
        return code

    def close(self) -> None:
        self._reader.close()
