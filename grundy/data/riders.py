from __future__ import annotations

RIDERS = [
    {"id": "RIDER_001", "name": "John Rider", "terminal_id": "TERMINAL_001", "status": "available"},
    {"id": "RIDER_002", "name": "Jane Rider", "terminal_id": "TERMINAL_002", "status": "available"},
]


def find_rider(rider_id: str | None) -> dict | None:
    rid = (rider_id or "").strip()
    for rider in RIDERS:
        if rider["id"] == rid:
            return dict(rider)
    return None
