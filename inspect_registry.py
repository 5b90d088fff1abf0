#!/usr/bin/env python3
"""
Registry Inspector - export the ambulance registry and its spatial index
to JSON/CSV files for viewing in an editor or spreadsheet.
"""

import csv
import json
from datetime import datetime
from pathlib import Path
from typing import List

from config import config
from core.registry import AmbulanceRegistry

CSV_FIELDS = [
    "id", "name", "vehicle_number", "vehicle_type", "driver_name", "driver_contact",
    "latitude", "longitude", "address", "city", "registered_at", "updated_at"
]


def export_registry(registry: AmbulanceRegistry, output_dir: str = "registry_export") -> List[Path]:
    """Write ambulances.json, ambulances.csv, grid_index.json and summary.json. Returns the paths."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    records = registry.list_all()
    rows = []
    for record in records:
        row = record.model_dump(mode="json")
        location = row.pop("location")
        row["latitude"] = location["latitude"]
        row["longitude"] = location["longitude"]
        rows.append(row)

    json_path = output_dir / "ambulances.json"
    with open(json_path, 'w', encoding='utf-8') as f:
        json.dump(rows, f, indent=2, ensure_ascii=False)

    csv_path = output_dir / "ambulances.csv"
    with open(csv_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS, extrasaction='ignore')
        writer.writeheader()
        writer.writerows(rows)

    # Grid cells as "row:col" -> ids
    with registry._lock:
        grid = {f"{row}:{col}": sorted(ids) for (row, col), ids in registry.grid.items()}

    grid_path = output_dir / "grid_index.json"
    with open(grid_path, 'w', encoding='utf-8') as f:
        json.dump({"cell_deg": registry.cell_deg, "cells": grid}, f, indent=2, sort_keys=True)

    stats = registry.get_stats()
    summary = {
        "total_ambulances": stats.total_ambulances,
        "indexed_cells": stats.indexed_cells,
        "vehicle_types": stats.vehicle_types,
        "export_timestamp": datetime.now().isoformat(),
        "exported_files": ["ambulances.json", "ambulances.csv", "grid_index.json", "summary.json"]
    }

    summary_path = output_dir / "summary.json"
    with open(summary_path, 'w', encoding='utf-8') as f:
        json.dump(summary, f, indent=2)

    return [json_path, csv_path, grid_path, summary_path]


if __name__ == "__main__":
    print("Inspecting ambulance registry...")
    print("=" * 50)

    store = AmbulanceRegistry.from_config(config)
    for path in export_registry(store):
        print(f"[✓] {path}")
