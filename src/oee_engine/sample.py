"""Sample reference data for offline runs (``oee-engine init``).

Produces a reference.yaml with machines, one released order per machine,
a few downtimes and a three-shift model, loadable by StaticReferenceData.
"""

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from faker import Faker

from .models import format_timestamp

fake = Faker()

MATERIAL_PARTS = ["Bracket", "Housing", "Panel", "Frame", "Cover", "Flange", "Profile"]
DOWNTIME_REASONS = ["Tool change", "Material shortage", "Maintenance", "Cleaning", "Quality check"]

SHIFT_MODEL = [
    {"name": "Early", "shift_start": "06:00", "shift_end": "14:00", "break_start": "10:00", "break_end": "10:30"},
    {"name": "Late", "shift_start": "14:00", "shift_end": "22:00", "break_start": "18:00", "break_end": "18:30"},
    {"name": "Night", "shift_start": "22:00", "shift_end": "06:00", "break_start": "02:00", "break_end": "02:30"},
]


def generate_reference_data(
    machine_count: int = 3,
    plant: str = "Plant1",
    area: str = "Area1",
    seed: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build a reference data document around ``now``."""
    if seed is not None:
        Faker.seed(seed)
        rng = random.Random(seed)
    else:
        rng = random.Random()
    now = (now or datetime.now(timezone.utc)).replace(minute=0, second=0, microsecond=0)

    machines: List[Dict[str, Any]] = []
    orders: List[Dict[str, Any]] = []
    planned: List[Dict[str, Any]] = []
    unplanned: List[Dict[str, Any]] = []
    shifts: List[Dict[str, Any]] = []

    for index in range(1, machine_count + 1):
        machine_id = f"WC{index:03d}"
        machines.append({
            "machine_id": machine_id,
            "name": f"Line{index}",
            "plant": plant,
            "area": area,
            "line_id": f"Line{index}",
            "oee_enabled": True,
        })

        hours = rng.randint(4, 10)
        start = now - timedelta(hours=rng.randint(0, 2))
        end = start + timedelta(hours=hours)
        processing = hours * 60 - 30
        orders.append({
            "order_id": str(index),
            "order_number": fake.bothify(text="PO-#######"),
            "machine_id": machine_id,
            "material_number": fake.bothify(text="MAT-####-??").upper(),
            "material_description": f"{fake.color_name()} {rng.choice(MATERIAL_PARTS)}",
            "planned_start": format_timestamp(start),
            "planned_end": format_timestamp(end),
            "planned_quantity": rng.randrange(100, 2000, 10),
            "setup_time": 20,
            "processing_time": processing,
            "teardown_time": 10,
            "target_performance": 85,
            "status": "released",
        })

        pause = start + timedelta(hours=1)
        planned.append({
            "machine_id": machine_id,
            "start": format_timestamp(pause),
            "end": format_timestamp(pause + timedelta(minutes=15)),
            "reason": "Planned maintenance",
        })
        stop = start + timedelta(hours=2, minutes=rng.randint(0, 45))
        unplanned.append({
            "machine_id": machine_id,
            "start": format_timestamp(stop),
            "end": format_timestamp(stop + timedelta(minutes=rng.randint(5, 40))),
            "reason": rng.choice(DOWNTIME_REASONS),
        })

        for shift in SHIFT_MODEL:
            shifts.append({"machine_id": machine_id, "shift_id": f"{machine_id}-{shift['name']}", **shift})

    return {
        "machines": machines,
        "orders": orders,
        "planned_downtime": planned,
        "unplanned_downtime": unplanned,
        "microstops": [],
        "shifts": shifts,
    }


def write_reference_yaml(path: Path, **kwargs) -> Path:
    data = generate_reference_data(**kwargs)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return path
