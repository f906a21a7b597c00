"""Data loading utilities for resource definitions and settings."""

from __future__ import annotations

import json
from pathlib import Path

from booking_primitives.schema import parse_time, validate_resource
from booking_primitives.settings import SchedulerSettings
from booking_primitives.types import Resource, ResourceStatus


def _resource_from_dict(resource_id: str, data: dict) -> Resource:
    opening = data.get("opening_time")
    closing = data.get("closing_time")
    return Resource(
        id=resource_id,
        name=data.get("name", resource_id),
        status=ResourceStatus(data.get("status", ResourceStatus.AVAILABLE.value)),
        operating_days=frozenset(int(d) for d in data.get("operating_days", [])),
        opening_time=parse_time(opening) if opening else None,
        closing_time=parse_time(closing) if closing else None,
        min_duration_minutes=data.get("min_duration_minutes", 60),
        max_duration_minutes=data.get("max_duration_minutes", 180),
        max_days_in_advance=data.get("max_days_in_advance", 30),
        capacity=data.get("capacity"),
    )


def load_resources_json(path: str | Path) -> dict[str, Resource]:
    """Load resource definitions from a JSON file.

    The JSON must have the format:
    {
        "resources": {
            "court-1": {
                "operating_days": [0, 1, 2, 3, 4],
                "opening_time": "08:00",
                "closing_time": "22:00",
                "min_duration_minutes": 30,
                ...
            },
            ...
        }
    }

    Raises ValueError if any resource fails validation.
    """
    path = Path(path)
    with open(path) as f:
        data = json.load(f)

    resources: dict[str, Resource] = {}
    for resource_id, res_data in data["resources"].items():
        try:
            resource = _resource_from_dict(resource_id, res_data)
        except (ValueError, TypeError, IndexError) as e:
            raise ValueError(
                f"Validation errors for {resource_id} in {path.name}:\n  - {e}"
            ) from e

        errors = validate_resource(resource)
        if errors:
            raise ValueError(
                f"Validation errors for {resource_id} in {path.name}:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
        resources[resource_id] = resource

    return resources


def load_settings_json(path: str | Path) -> SchedulerSettings:
    """Load SchedulerSettings from a JSON object of overrides.

    Keys absent from the file keep their defaults. Raises ValueError on
    unknown keys or invalid values.
    """
    path = Path(path)
    with open(path) as f:
        data = json.load(f)

    return SchedulerSettings.from_mapping(data.get("scheduler", data))
