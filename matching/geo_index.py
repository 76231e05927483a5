# matching/geo_index.py
"""
Grid-bucketed geo index over donor last-known locations.

Donors are bucketed into lat/lon cells of `cell_size_deg` degrees. A radius
query collects the cells overlapping the query's bounding box and computes
exact haversine distances for the donors in them only.

Writers serialise on a lock and swap in new immutable per-cell frozensets;
readers never lock and see either the old or the new cell.
"""
import logging
import math
import threading
from dataclasses import dataclass
from datetime import timedelta

import numpy as np
from django.utils import timezone

from algorithms.haversine import bounding_box, haversine_many
from matching.entities import Coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoHit:
    donor_id: str
    coordinates: Coordinates
    distance_km: float
    stale: bool = False


class GeoIndex:

    def __init__(self, cell_size_deg=0.1, staleness=timedelta(hours=6), clock=timezone.now):
        if cell_size_deg <= 0:
            raise ValueError("cell_size_deg must be positive")
        self.cell_size_deg = cell_size_deg
        self.staleness = staleness
        self.clock = clock
        self._records = {}
        self._cells = {}
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, clock=timezone.now):
        from matching.conf import matching_settings

        return cls(
            cell_size_deg=matching_settings.GRID_CELL_DEGREES,
            staleness=timedelta(seconds=matching_settings.LOCATION_STALENESS_SECONDS),
            clock=clock,
        )

    def __len__(self):
        return len(self._records)

    def __contains__(self, donor_id):
        return donor_id in self._records

    def _cell_of(self, lat, lon):
        return (math.floor(lat / self.cell_size_deg), math.floor(lon / self.cell_size_deg))

    def get(self, donor_id):
        return self._records.get(donor_id)

    def upsert_location(self, donor_id, coordinates):
        """
        Replace the donor's last-known position.

        Replays carrying the same or an older timestamp are ignored.

        Returns:
            True if the index changed
        """
        coordinates.validate()
        new_cell = self._cell_of(coordinates.latitude, coordinates.longitude)

        with self._write_lock:
            current = self._records.get(donor_id)
            if current is not None and coordinates.timestamp <= current.timestamp:
                return False

            if current is not None:
                old_cell = self._cell_of(current.latitude, current.longitude)
                if old_cell != new_cell:
                    remaining = self._cells.get(old_cell, frozenset()) - {donor_id}
                    if remaining:
                        self._cells[old_cell] = remaining
                    else:
                        self._cells.pop(old_cell, None)

            self._cells[new_cell] = self._cells.get(new_cell, frozenset()) | {donor_id}
            self._records[donor_id] = coordinates

        return True

    def remove(self, donor_id):
        with self._write_lock:
            current = self._records.pop(donor_id, None)
            if current is None:
                return False
            cell = self._cell_of(current.latitude, current.longitude)
            remaining = self._cells.get(cell, frozenset()) - {donor_id}
            if remaining:
                self._cells[cell] = remaining
            else:
                self._cells.pop(cell, None)
        return True

    def sync_from(self, location_store, donor_ids):
        """
        Project the location store's current positions into the index.

        Returns:
            Number of donors whose position changed
        """
        changed = 0
        for donor_id in donor_ids:
            coordinates = location_store.current_location(donor_id)
            if coordinates is None:
                continue
            if self.upsert_location(donor_id, coordinates):
                changed += 1
        logger.info(f"Geo index synced: {changed} of {len(donor_ids)} donor positions updated")
        return changed

    def _candidate_ids(self, min_lat, max_lat, min_lon, max_lon):
        lat_lo, lon_lo = self._cell_of(min_lat, min_lon)
        lat_hi, lon_hi = self._cell_of(max_lat, max_lon)
        cells = self._cells
        span = (lat_hi - lat_lo + 1) * (lon_hi - lon_lo + 1)

        ids = set()
        if span > len(cells):
            # Wide query over a sparse index: walk occupied cells instead
            for (clat, clon), members in list(cells.items()):
                if lat_lo <= clat <= lat_hi and lon_lo <= clon <= lon_hi:
                    ids.update(members)
            return ids

        for clat in range(lat_lo, lat_hi + 1):
            for clon in range(lon_lo, lon_hi + 1):
                members = cells.get((clat, clon))
                if members:
                    ids.update(members)
        return ids

    def query(self, center, radius_km, now=None):
        """
        Donors within radius_km of center.

        Args:
            center: Coordinates of the request
            radius_km: Search radius in km
            now: Reference time for staleness (defaults to the clock)

        Returns:
            List of GeoHit sorted by distance, then donor id. Positions older
            than the staleness window are included with stale=True; callers
            decide whether to fall back on them.
        """
        center.validate()
        if radius_km < 0:
            raise ValueError("radius_km must be non-negative")
        now = now or self.clock()

        box = bounding_box(center.latitude, center.longitude, radius_km)
        records = self._records
        snapshot = []
        for donor_id in self._candidate_ids(*box):
            coords = records.get(donor_id)
            if coords is not None:
                snapshot.append((donor_id, coords))

        if not snapshot:
            return []

        lats = np.fromiter((c.latitude for _, c in snapshot), dtype=float, count=len(snapshot))
        lons = np.fromiter((c.longitude for _, c in snapshot), dtype=float, count=len(snapshot))
        distances = haversine_many(center.latitude, center.longitude, lats, lons)

        hits = []
        cutoff = now - self.staleness
        for (donor_id, coords), distance in zip(snapshot, distances.tolist()):
            if distance <= radius_km:
                hits.append(GeoHit(donor_id, coords, distance, stale=coords.timestamp < cutoff))

        hits.sort(key=lambda h: (h.distance_km, h.donor_id))
        return hits
