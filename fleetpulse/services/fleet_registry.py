"""
Vehicle registry kept in a JSON file.

Holds the configured fleet (number, route, capacity, status, occupancy) so
it survives restarts even when database persistence is disabled. Live state
(location, trip) is not stored here; the vehicles API merges it in.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from fleetpulse.models import VehicleStatus

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1


def _default_storage_path() -> Path:
    explicit = os.getenv("FLEET_STORAGE_PATH", "").strip()
    if explicit:
        return Path(explicit)
    data_dir = os.getenv("FLEETPULSE_DATA_DIR", "").strip()
    if data_dir:
        return Path(data_dir) / "fleet.json"
    return Path(__file__).resolve().parents[2] / "data" / "fleet.json"


def _number_key(vehicle: Dict[str, Any]) -> tuple:
    """Sort BUS-2 before BUS-10; numbers without digits go last."""
    number = str(vehicle.get("number") or "")
    digits = "".join(ch for ch in number if ch.isdigit())
    return (0, int(digits), number) if digits else (1, 0, number)


def _check_bounds(vehicle: Dict[str, Any]) -> None:
    capacity = int(vehicle.get("capacity") or 0)
    occupancy = int(vehicle.get("current_occupancy") or 0)
    if capacity < 1:
        raise ValueError("capacity must be at least 1")
    if not 0 <= occupancy <= capacity:
        raise ValueError(f"current_occupancy must be between 0 and capacity ({capacity})")
    VehicleStatus(vehicle.get("status", VehicleStatus.ACTIVE.value))


class FleetRegistry:
    """Thread-safe JSON-backed vehicle registry."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self.storage_path = Path(storage_path) if storage_path else _default_storage_path()
        self._lock = threading.Lock()
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.storage_path.exists():
            self._save([])

    def _load(self) -> List[Dict[str, Any]]:
        try:
            data = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            logger.error(f"Fleet registry {self.storage_path} is unreadable, treating it as empty: {e}")
            return []
        vehicles = data.get("vehicles") if isinstance(data, dict) else None
        if not isinstance(vehicles, list):
            return []
        return [v for v in vehicles if isinstance(v, dict)]

    def _save(self, vehicles: List[Dict[str, Any]]) -> None:
        payload = {"version": REGISTRY_VERSION, "vehicles": vehicles}
        self.storage_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    @contextmanager
    def _editing(self) -> Iterator[List[Dict[str, Any]]]:
        """Load, let the caller mutate the list in place, then write it back."""
        with self._lock:
            vehicles = self._load()
            yield vehicles
            self._save(vehicles)

    @staticmethod
    def _ensure_unique(vehicles: List[Dict[str, Any]], candidate: Dict[str, Any]) -> None:
        number = str(candidate.get("number") or "").strip().upper()
        vehicle_id = str(candidate.get("id") or "").strip()
        for existing in vehicles:
            if number and str(existing.get("number") or "").strip().upper() == number:
                raise ValueError(f"Vehicle number '{candidate.get('number')}' already exists")
            if vehicle_id and str(existing.get("id")) == vehicle_id:
                raise ValueError(f"Vehicle id '{vehicle_id}' already exists")

    def list_vehicles(self) -> List[Dict[str, Any]]:
        with self._lock:
            return sorted(self._load(), key=_number_key)

    def get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return next((v for v in self._load() if str(v.get("id")) == str(vehicle_id)), None)

    def create_vehicle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Add a vehicle to the fleet.

        Raises:
            ValueError: on a duplicate number or id, or out-of-range capacity / occupancy
        """
        _check_bounds(payload)
        now = datetime.now(timezone.utc).isoformat()
        vehicle = {
            "id": str(payload.get("id") or "").strip() or str(uuid4()),
            "number": str(payload.get("number") or "").strip(),
            "route_name": str(payload.get("route_name") or "").strip(),
            "capacity": int(payload["capacity"]),
            "status": VehicleStatus(payload.get("status", VehicleStatus.ACTIVE.value)).value,
            "current_occupancy": int(payload.get("current_occupancy") or 0),
            "created_at": now,
            "updated_at": now,
        }
        with self._editing() as vehicles:
            self._ensure_unique(vehicles, payload)
            vehicles.append(vehicle)
        logger.info(f"Registered vehicle {vehicle['number']} ({vehicle['id']})")
        return vehicle

    def _update(self, vehicle_id: str, **changes: Any) -> Dict[str, Any]:
        with self._editing() as vehicles:
            for idx, vehicle in enumerate(vehicles):
                if str(vehicle.get("id")) != str(vehicle_id):
                    continue
                updated = {**vehicle, **changes}
                _check_bounds(updated)
                updated["updated_at"] = datetime.now(timezone.utc).isoformat()
                vehicles[idx] = updated
                return updated
            raise KeyError(f"Vehicle {vehicle_id} not found")

    def update_status(self, vehicle_id: str, status: VehicleStatus) -> Dict[str, Any]:
        return self._update(vehicle_id, status=VehicleStatus(status).value)

    def set_occupancy(self, vehicle_id: str, occupancy: int) -> Dict[str, Any]:
        return self._update(vehicle_id, current_occupancy=int(occupancy))

    def delete_vehicle(self, vehicle_id: str) -> bool:
        with self._editing() as vehicles:
            remaining = [v for v in vehicles if str(v.get("id")) != str(vehicle_id)]
            if len(remaining) == len(vehicles):
                return False
            vehicles[:] = remaining
        return True
