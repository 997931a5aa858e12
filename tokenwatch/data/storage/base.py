"""
Storage interface for the Snapshot Store and History Ledger

The orchestrator is the only writer. Protection records and model
predictions are owned by other services and only read here.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from tokenwatch.data.storage.models import (
    HistorySample, MLPrediction, ProtectionRecord, TokenSnapshot
)


class TokenStore(ABC):
    """Abstract persistent store used by the aggregation orchestrator"""

    async def connect(self) -> None:
        """Open resources; no-op by default"""

    async def disconnect(self) -> None:
        """Release resources; no-op by default"""

    @abstractmethod
    async def get_snapshot(self, token_id: str) -> Optional[TokenSnapshot]:
        """Latest snapshot for a token, or None if never seen"""

    @abstractmethod
    async def upsert_snapshot(self, snapshot: TokenSnapshot) -> None:
        """Insert or replace the snapshot keyed by token id"""

    @abstractmethod
    async def append_history(self, sample: HistorySample) -> None:
        """Append one sample to the token's history"""

    @abstractmethod
    async def get_history(self, token_id: str, since: datetime,
                          limit: int = 500) -> List[HistorySample]:
        """Samples recorded at or after ``since``, newest first"""

    @abstractmethod
    async def get_protection(self, token_id: str,
                             wallet_id: str) -> Optional[ProtectionRecord]:
        """Protection settings for token+wallet, if any"""

    @abstractmethod
    async def get_ml_prediction(self, token_id: str) -> Optional[MLPrediction]:
        """Most recent upstream model prediction, if any"""
