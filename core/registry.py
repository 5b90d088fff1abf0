import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import numpy as np
from cachetools import LRUCache

from config import Config
from core import geo
from core.errors import ConflictError, DatastoreError, NotFoundError, ValidationError
from models import AmbulanceRecord, AmbulanceRegistration, GeoPoint, RegistryStats, VehicleType

logger = logging.getLogger(__name__)

DUPLICATE_POLICIES = ("upsert", "reject")

# Slack for the vectorised prefilter; the scalar haversine makes the final call
PREFILTER_SLACK_KM = 1e-6


class AmbulanceRegistry:
    """Ambulance store with a latitude/longitude grid index for radius queries."""

    def __init__(
        self,
        data_dir: Optional[str] = "registry_data",
        cell_deg: float = 0.05,
        cache_size: int = 1000,
        duplicate_policy: str = "upsert",
    ):
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(f"duplicate_policy must be one of {DUPLICATE_POLICIES}")
        if cell_deg <= 0:
            raise ValueError("cell_deg must be positive")

        # data_dir=None keeps the registry in memory only
        self.data_dir = Path(data_dir) if data_dir else None
        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)

        self.cell_deg = cell_deg
        self.duplicate_policy = duplicate_policy

        # Record storage
        self.records: Dict[str, AmbulanceRecord] = {}
        self.vehicle_index: Dict[str, str] = {}

        # Spatial index: grid cell -> record ids
        self.grid: Dict[geo.Cell, Set[str]] = {}
        self.record_cells: Dict[str, geo.Cell] = {}

        self.record_cache = LRUCache(maxsize=cache_size)
        self.counter = 0
        self.last_updated = datetime.now()

        self._lock = threading.RLock()
        self._save_lock = threading.Lock()

        self._load()

    @classmethod
    def from_config(cls, settings: Config) -> "AmbulanceRegistry":
        return cls(
            data_dir=settings.data_dir,
            cell_deg=settings.grid_cell_deg,
            cache_size=settings.cache_size,
            duplicate_policy=settings.duplicate_policy,
        )

    @property
    def storage_path(self) -> Optional[Path]:
        return self.data_dir / "ambulances.json" if self.data_dir else None

    def register(self, registration: AmbulanceRegistration) -> AmbulanceRecord:
        """Validate and store an ambulance, or refresh an existing one with the same vehicle number."""
        cleaned = self._validate_registration(registration)
        key = _vehicle_key(cleaned["vehicle_number"])
        now = datetime.now()

        # Writers queue on the save lock; readers only wait for the in-memory update
        with self._save_lock:
            with self._lock:
                existing_id = self.vehicle_index.get(key)

                if existing_id is not None:
                    if self.duplicate_policy == "reject":
                        raise ConflictError("An ambulance with this vehicle number already exists")

                    previous = self.records[existing_id]
                    # Optional fields that were not resent keep their stored values
                    update = {k: v for k, v in cleaned.items() if v is not None}
                    update["updated_at"] = now
                    record = previous.model_copy(update=update)
                else:
                    previous = None
                    self.counter += 1
                    record = AmbulanceRecord(
                        id=f"amb_{self.counter:06d}",
                        registered_at=now,
                        updated_at=now,
                        **{**cleaned, "vehicle_type": cleaned["vehicle_type"] or VehicleType.BASIC},
                    )

                self._store(record)
                self.record_cache.pop(record.id, None)
                records, counter = self._snapshot()

            try:
                self._write(records, counter)
            except DatastoreError:
                with self._lock:
                    if previous is not None:
                        self._store(previous)
                        self.record_cache.pop(record.id, None)
                    else:
                        self._remove(record)
                        self.counter -= 1
                raise

            with self._lock:
                self.last_updated = now

        if previous is None:
            logger.info("Registered ambulance %s (%s)", record.id, record.vehicle_number)
        else:
            logger.info("Updated ambulance %s (%s)", record.id, record.vehicle_number)
        return record

    def find_within_radius(self, center: GeoPoint, radius_km: float) -> List[AmbulanceRecord]:
        """All records whose great-circle distance from ``center`` is at most ``radius_km``."""
        geo.validate_point(center, "center")
        if radius_km is None or not radius_km >= 0:
            raise ValidationError("radius must be a non-negative number", {"radiusKm": "must be >= 0"})

        rows, columns = geo.query_window(center, radius_km, self.cell_deg)

        with self._lock:
            candidate_ids: Set[str] = set()
            if len(rows) * len(columns) <= len(self.grid):
                for row in rows:
                    for col in columns:
                        candidate_ids.update(self.grid.get((row, col), ()))
            else:
                # Walking the occupied cells is cheaper than probing every cell in the window
                column_set = set(columns)
                for (row, col), ids in self.grid.items():
                    if row in rows and col in column_set:
                        candidate_ids.update(ids)

            candidates = [self.records[record_id] for record_id in candidate_ids]

        if not candidates:
            return []

        lats = np.array([r.location.latitude for r in candidates], dtype=np.float64)
        lngs = np.array([r.location.longitude for r in candidates], dtype=np.float64)
        near = geo.haversine_many(center, lats, lngs) <= radius_km + PREFILTER_SLACK_KM

        results = [
            record for record, keep in zip(candidates, near)
            if keep and geo.distance_between(center, record.location) <= radius_km
        ]
        results.sort(key=lambda r: r.id)
        return results

    def list_all(self) -> List[AmbulanceRecord]:
        with self._lock:
            return sorted(self.records.values(), key=lambda r: r.id)

    def get(self, ambulance_id: str) -> AmbulanceRecord:
        """Get a record by id."""
        with self._lock:
            record = self.record_cache.get(ambulance_id)
            if record is None:
                record = self.records.get(ambulance_id)
                if record is None:
                    raise NotFoundError(f"Ambulance not found: {ambulance_id}")
                self.record_cache[ambulance_id] = record
            return record

    def rebuild_index(self) -> int:
        """Drop and recreate the grid index from the stored records. Returns the number of cells."""
        with self._lock:
            self.grid = {}
            self.record_cells = {}
            self.vehicle_index = {}

            records = list(self.records.values())
            if records:
                lats = np.array([r.location.latitude for r in records], dtype=np.float64)
                lngs = np.array([r.location.longitude for r in records], dtype=np.float64)
                for record, cell in zip(records, geo.cells_for(lats, lngs, self.cell_deg)):
                    self.grid.setdefault(cell, set()).add(record.id)
                    self.record_cells[record.id] = cell
                    self.vehicle_index[_vehicle_key(record.vehicle_number)] = record.id

            self.record_cache.clear()
            logger.info("Rebuilt grid index: %d records in %d cells", len(records), len(self.grid))
            return len(self.grid)

    def clear(self) -> None:
        """Remove every record. Used by the seed command."""
        with self._save_lock:
            with self._lock:
                self.records = {}
                self.rebuild_index()
                self.last_updated = datetime.now()
                records, counter = self._snapshot()
            self._write(records, counter)

    def get_stats(self) -> RegistryStats:
        with self._lock:
            vehicle_types: Dict[str, int] = {}
            for record in self.records.values():
                vehicle_type = record.vehicle_type.value
                vehicle_types[vehicle_type] = vehicle_types.get(vehicle_type, 0) + 1

            return RegistryStats(
                total_ambulances=len(self.records),
                vehicle_types=vehicle_types,
                indexed_cells=len(self.grid),
                last_updated=self.last_updated,
            )

    def save(self):
        """Write all records to disk atomically."""
        with self._save_lock:
            with self._lock:
                records, counter = self._snapshot()
            self._write(records, counter)

    def _snapshot(self) -> Tuple[List[AmbulanceRecord], int]:
        # Records are replaced, never mutated, so a shallow copy is a consistent view
        return list(self.records.values()), self.counter

    def _write(self, records: List[AmbulanceRecord], counter: int):
        """Serialise a snapshot outside the record lock. Callers hold the save lock."""
        if self.storage_path is None:
            return

        payload = {
            "counter": counter,
            "ambulances": [r.model_dump(mode="json") for r in records],
        }

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".ambulances", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.storage_path)
        except OSError as e:
            logger.error("Error saving registry to %s: %s", self.storage_path, e)
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise DatastoreError(f"Could not save registry: {e}") from e

    def _load(self):
        """Load records from disk and build the index."""
        path = self.storage_path
        if path is None or not path.exists():
            return

        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            records = [AmbulanceRecord.model_validate(item) for item in payload.get("ambulances", [])]
        except (OSError, ValueError) as e:
            logger.error("Error loading registry from %s: %s", path, e)
            raise DatastoreError(f"Could not load registry: {e}") from e

        self.records = {r.id: r for r in records}
        self.counter = max(payload.get("counter", 0), _highest_counter(self.records))
        self.rebuild_index()
        logger.info("Loaded %d ambulances from %s", len(self.records), path)

    def _store(self, record: AmbulanceRecord):
        """Insert or replace a record and move its index entry."""
        self._unindex(record.id)

        cell = geo.cell_for(record.location.latitude, record.location.longitude, self.cell_deg)
        self.grid.setdefault(cell, set()).add(record.id)
        self.record_cells[record.id] = cell
        self.records[record.id] = record
        self.vehicle_index[_vehicle_key(record.vehicle_number)] = record.id

    def _remove(self, record: AmbulanceRecord):
        self._unindex(record.id)
        self.records.pop(record.id, None)
        self.vehicle_index.pop(_vehicle_key(record.vehicle_number), None)
        self.record_cache.pop(record.id, None)

    def _unindex(self, record_id: str):
        old_cell = self.record_cells.pop(record_id, None)
        if old_cell is not None:
            ids = self.grid.get(old_cell)
            if ids is not None:
                ids.discard(record_id)
                if not ids:
                    del self.grid[old_cell]

    def _validate_registration(self, registration: AmbulanceRegistration) -> dict:
        errors: Dict[str, str] = {}

        name = (registration.name or "").strip()
        vehicle_number = (registration.vehicle_number or "").strip()
        driver_contact = (registration.driver_contact or "").strip()
        driver_name = (registration.driver_name or "").strip() or None

        if not name:
            errors["name"] = "name is required"
        if not vehicle_number:
            errors["vehicleNumber"] = "vehicle number is required"
        if not driver_contact:
            errors["driverContact"] = "driver contact is required"
        errors.update(geo.coordinate_errors(registration.latitude, registration.longitude))

        if errors:
            raise ValidationError("Invalid ambulance registration: " + "; ".join(errors.values()), errors)

        return {
            "name": name,
            "vehicle_number": vehicle_number,
            "driver_name": driver_name,
            "driver_contact": driver_contact,
            "location": GeoPoint(latitude=registration.latitude, longitude=registration.longitude),
            "vehicle_type": registration.vehicle_type,
            "address": registration.address,
            "city": registration.city,
        }


def _vehicle_key(vehicle_number: str) -> str:
    return vehicle_number.strip().upper()


def _highest_counter(records: Dict[str, AmbulanceRecord]) -> int:
    highest = 0
    for record_id in records:
        _, _, suffix = record_id.partition("_")
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest
