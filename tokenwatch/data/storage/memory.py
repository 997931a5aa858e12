"""
In-process TokenStore for development and tests
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from tokenwatch.data.storage.base import TokenStore
from tokenwatch.data.storage.models import (
    HistorySample, MLPrediction, ProtectionRecord, TokenSnapshot
)

logger = logging.getLogger(__name__)


class MemoryStore(TokenStore):
    """Dict-backed store; snapshots are copied in and out so callers never share state"""

    def __init__(self):
        self.snapshots: Dict[str, TokenSnapshot] = {}
        self.history: Dict[str, List[HistorySample]] = defaultdict(list)
        self.protections: Dict[Tuple[str, str], ProtectionRecord] = {}
        self.predictions: Dict[str, MLPrediction] = {}

    async def get_snapshot(self, token_id: str) -> Optional[TokenSnapshot]:
        snapshot = self.snapshots.get(token_id)
        return snapshot.copy() if snapshot else None

    async def upsert_snapshot(self, snapshot: TokenSnapshot) -> None:
        self.snapshots[snapshot.token_id] = snapshot.copy()

    async def append_history(self, sample: HistorySample) -> None:
        self.history[sample.token_id].append(sample)

    async def get_history(self, token_id: str, since: datetime,
                          limit: int = 500) -> List[HistorySample]:
        samples = [s for s in self.history.get(token_id, []) if s.recorded_at >= since]
        samples.sort(key=lambda s: s.recorded_at, reverse=True)
        return samples[:limit]

    async def get_protection(self, token_id: str,
                             wallet_id: str) -> Optional[ProtectionRecord]:
        return self.protections.get((token_id, wallet_id))

    async def get_ml_prediction(self, token_id: str) -> Optional[MLPrediction]:
        return self.predictions.get(token_id)

    # Seeding helpers for collaborator-owned data

    def set_protection(self, record: ProtectionRecord) -> None:
        self.protections[(record.token_id, record.wallet_id)] = record

    def set_ml_prediction(self, prediction: MLPrediction) -> None:
        self.predictions[prediction.token_id] = prediction
