"""
Calculation Cache

Memoizes engine results keyed by a content hash of the whole input snapshot
(plus engine settings and state table version). An identical snapshot
returns the cached CalculationResult instead of recomputing. Callers
invalidate explicitly; nothing is tracked implicitly.
"""

import logging
import threading
from collections import OrderedDict
from typing import Optional

from app.credit_engine import CalculationResult, calculate_assessment, compute_snapshot_hash
from app.engine_settings import EngineSettings, LookbackPolicy
from app.schemas import AssessmentInput
from app.state_credits import StateCreditTable, load_state_credit_table

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 256


class CalculationCache:
    """Bounded LRU of snapshot hash -> CalculationResult."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, state_table: Optional[StateCreditTable] = None):
        self.max_entries = max(1, max_entries)
        self._state_table = state_table
        self._entries: "OrderedDict[str, CalculationResult]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def state_table(self) -> StateCreditTable:
        return self._state_table or load_state_credit_table()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def key_for(
        self,
        assessment: AssessmentInput,
        settings: Optional[EngineSettings] = None,
        lookback_policy: Optional[LookbackPolicy] = None,
    ) -> str:
        return compute_snapshot_hash(
            assessment, settings or EngineSettings(), self.state_table.version, lookback_policy
        )

    def get_or_compute(
        self,
        assessment: AssessmentInput,
        settings: Optional[EngineSettings] = None,
        lookback_policy: Optional[LookbackPolicy] = None,
    ) -> CalculationResult:
        """
        Return the cached result for this snapshot, computing it on a miss.

        Args:
            assessment: snapshot to calculate
            settings: engine settings in effect (part of the key)
            lookback_policy: optional override (part of the key)

        Returns:
            CalculationResult, the same object for repeated identical snapshots
        """
        settings = settings or EngineSettings()
        key = self.key_for(assessment, settings, lookback_policy)

        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                logger.debug(f"Calculation cache hit {key[:12]}")
                return cached

        result = calculate_assessment(
            assessment,
            settings=settings,
            state_table=self.state_table,
            lookback_policy=lookback_policy,
        )

        with self._lock:
            self.misses += 1
            self._entries[key] = result
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Calculation cache evicted {evicted[:12]}")

        return result

    def invalidate(self, key: Optional[str] = None):
        """
        Drop cached results.

        Args:
            key: Specific snapshot hash to drop, or None for all
        """
        with self._lock:
            if key:
                self._entries.pop(key, None)
            else:
                self._entries.clear()


# Process-wide cache used by the API routes
calculation_cache = CalculationCache()
