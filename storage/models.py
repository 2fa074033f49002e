"""Dataclasses representing journalled strategy records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class CycleRecord:
    id: int
    cycle_number: int
    started_at: datetime
    finished_at: Optional[datetime]
    last_phase: str


@dataclass(slots=True)
class PhaseResultRecord:
    id: int
    cycle_id: int
    phase: str
    recorded_at: datetime
    tx_hash: Optional[str]
    payload: dict
