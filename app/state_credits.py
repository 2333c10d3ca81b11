"""
State R&D Credit Reference Table

Per-state credit parameters (rate, method, availability) keyed by two-letter
state code. The table ships as JSON next to this module, is loaded once per
process and handed out read-only.

Methods:
- flat:        rate% x total QRE
- incremental: rate% x QRE in excess of 50% of the prior-year average QRE
- none:        the state has no R&D credit program
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_TABLE_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "state_rd_credits.json")

VALID_METHODS = ("flat", "incremental", "none")


@dataclass(frozen=True)
class StateCreditRow:
    code: str
    name: str
    rate: float  # percent
    method: str
    available: bool
    notes: str = ""

    @property
    def has_program(self) -> bool:
        return self.available and self.method != "none" and self.rate > 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StateCreditTable:
    version: str
    rows: Mapping[str, StateCreditRow]

    def get(self, code: Optional[str]) -> Optional[StateCreditRow]:
        if not code:
            return None
        return self.rows.get(code.strip().upper())

    def to_list(self) -> list:
        return [row.to_dict() for row in sorted(self.rows.values(), key=lambda r: r.code)]


def _parse_row(raw: dict) -> StateCreditRow:
    method = str(raw.get("method") or "none").lower()
    if method not in VALID_METHODS:
        raise ValueError(f"Unknown state credit method '{method}' for {raw.get('code')}")
    return StateCreditRow(
        code=str(raw["code"]).upper(),
        name=raw.get("name", raw["code"]),
        rate=max(0.0, float(raw.get("rate") or 0)),
        method=method,
        available=bool(raw.get("available", False)),
        notes=raw.get("notes") or "",
    )


@lru_cache(maxsize=None)
def load_state_credit_table(path: Optional[str] = None) -> StateCreditTable:
    """
    Load the reference table.

    Args:
        path: JSON file to read. Defaults to STATE_CREDIT_TABLE_PATH from the
              environment, then the bundled table.

    Returns:
        StateCreditTable with an immutable code -> row mapping
    """
    table_path = path or os.environ.get("STATE_CREDIT_TABLE_PATH") or DEFAULT_TABLE_PATH

    with open(table_path, "r", encoding="utf-8") as f:
        payload = json.load(f)

    rows = {}
    for raw in payload.get("states", []):
        row = _parse_row(raw)
        rows[row.code] = row

    version = str(payload.get("version", "unversioned"))
    logger.info(f"Loaded state credit table {version} ({len(rows)} states) from {table_path}")

    return StateCreditTable(version=version, rows=MappingProxyType(rows))
