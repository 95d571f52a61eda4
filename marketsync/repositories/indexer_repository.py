"""
Repositories for indexer bookkeeping: stream cursors, raw events and sync anomalies.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from marketsync.models import ChainEvent, IndexerCursor, SyncAnomaly
from marketsync.repositories.base import BaseRepository


class CursorRepository(BaseRepository[IndexerCursor]):
    """Repository for per-stream indexer cursors."""

    def __init__(self, db):
        super().__init__(IndexerCursor, db)

    def get_or_create(self, stream: str, contract_address: str, start_block: int, batch_size: int) -> IndexerCursor:
        """
        Load the stream's cursor, creating it just before `start_block` on first run.
        """
        cursor = self.find_by_id(stream)
        if cursor is None:
            cursor = self.create(
                stream=stream,
                contract_address=contract_address,
                last_indexed_block=max(start_block - 1, -1),
                batch_size=batch_size,
                updated_at=datetime.utcnow(),
            )
        return cursor

    def advance(self, cursor: IndexerCursor, block: int, batch_size: int) -> None:
        cursor.last_indexed_block = block
        cursor.batch_size = batch_size
        cursor.updated_at = datetime.utcnow()
        self.db.flush()


class ChainEventRepository(BaseRepository[ChainEvent]):
    """Repository for raw decoded logs."""

    def __init__(self, db):
        super().__init__(ChainEvent, db)

    def record(
        self,
        stream: str,
        contract_address: str,
        event_name: str,
        block_number: int,
        transaction_hash: str,
        log_index: int,
        args: Dict[str, Any],
    ) -> Optional[ChainEvent]:
        """
        Persist a log once.

        Returns:
            The new row, or None when this (block, tx, log_index) was already seen
        """
        return self.insert_if_absent(
            {
                "block_number": block_number,
                "transaction_hash": transaction_hash,
                "log_index": log_index,
            },
            stream=stream,
            contract_address=contract_address,
            event_name=event_name,
            args=args,
        )

    def find_by_stream(self, stream: str) -> List[ChainEvent]:
        return self.db.query(ChainEvent).filter(
            ChainEvent.stream == stream
        ).order_by(ChainEvent.block_number, ChainEvent.log_index).all()


class AnomalyRepository(BaseRepository[SyncAnomaly]):
    """Repository for recorded chain/mirror divergences."""

    def __init__(self, db):
        super().__init__(SyncAnomaly, db)

    def record(self, kind: str, entity_id: Any, detail: str = "") -> Optional[SyncAnomaly]:
        """Record an anomaly once per (kind, entity)."""
        return self.insert_if_absent(
            {"kind": kind, "entity_id": str(entity_id)},
            detail=detail,
            created_at=datetime.utcnow(),
        )

    def find_by_kind(self, kind: str) -> List[SyncAnomaly]:
        return self.filter_by(kind=kind)

    def is_recorded(self, kind: str, entity_id: Any) -> bool:
        return self.filter_by_first(kind=kind, entity_id=str(entity_id)) is not None
