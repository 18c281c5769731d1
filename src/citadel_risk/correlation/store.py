# PRD: Correlation Module - Cluster Store
# Reference: docs/ARCHITECTURE.md, Section: Correlation Engine
#
# Append-only, run-keyed storage for correlation output. A run is stored
# once and never overwritten, so clusters from different passes are
# never merged.

import copy
import threading
from typing import Dict, List, Optional

from ..core.errors import CitadelRiskError
from .models import ClusterType, CorrelationCluster, CorrelationRun


class DuplicateRun(CitadelRiskError):
    """A run with this id has already been stored."""


class ClusterStore:
    """Thread-safe in-memory store of correlation runs."""

    def __init__(self):
        self._runs: Dict[str, CorrelationRun] = {}
        self._order: List[str] = []
        self._lock = threading.Lock()

    def save_run(self, run: CorrelationRun) -> None:
        snapshot = copy.deepcopy(run)
        with self._lock:
            if run.run_id in self._runs:
                raise DuplicateRun(f"Correlation run {run.run_id} already stored")
            self._runs[run.run_id] = snapshot
            self._order.append(run.run_id)

    def get_run(self, run_id: str) -> Optional[CorrelationRun]:
        with self._lock:
            run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    def latest(self) -> Optional[CorrelationRun]:
        with self._lock:
            if not self._order:
                return None
            run = self._runs[self._order[-1]]
        return copy.deepcopy(run)

    def run_ids(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def clusters(
        self, run_id: str, cluster_type: Optional[ClusterType] = None
    ) -> List[CorrelationCluster]:
        run = self.get_run(run_id)
        if run is None:
            return []
        if cluster_type is None:
            return run.clusters
        return run.clusters_of(cluster_type)

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)
