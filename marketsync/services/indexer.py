"""
Resumable log scanner.

For each watched stream (one contract and its event topics) the indexer walks
confirmed blocks forward in windows, hands the decoded logs to the stream's
handlers and advances the stream cursor in the same DB transaction. A failed
window rolls back and is retried on the next tick.

Window sizing is adaptive: a provider range-limit error halves the window
(down to a floor) and retries the same start block; after a shrink the
window grows back by a fixed step on each of the following successful ticks.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from marketsync.chain.contracts import ContractRegistry, DecodedEvent, to_hex
from marketsync.core.database import session_scope
from marketsync.core.errors import BlockRangeTooLarge
from marketsync.core.logging import get_logger
from marketsync.core.metrics import indexer_events_total, update_indexer_metrics
from marketsync.repositories import AnomalyRepository, ChainEventRepository, CursorRepository

logger = get_logger(__name__)

EventHandler = Callable[[Session, DecodedEvent], Awaitable[None]]


@dataclass
class Stream:
    """
    One (contract, topic set) log stream.

    Attributes:
        name: Cursor key, e.g. "pool_core"
        contract: Logical contract name in the registry
        handlers: Event name -> async handler(db, event)
    """
    name: str
    contract: str
    handlers: Dict[str, EventHandler]
    batch_size: Optional[int] = None
    growth_ticks_left: int = 0
    shrunk: bool = False


@dataclass
class WindowResult:
    stream: str
    from_block: int
    to_block: int
    logs: int = 0
    new_events: int = 0
    duplicates: int = 0


@dataclass
class TickResult:
    head: int
    confirmed: int
    windows: List[WindowResult] = field(default_factory=list)
    lag: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def max_lag(self) -> int:
        return max(self.lag.values(), default=0)


def jsonable(value: Any) -> Any:
    """Event args as JSON-safe values (bytes -> hex, tuples -> lists, big ints -> str)."""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and abs(value) > 2 ** 53:
        return str(value)
    return value


class IndexerCore:
    """
    Drives every stream forward one window per tick.

    Attributes:
        confirmation_depth: Blocks behind head that are treated as final
        next_run_at: Monotonic time before which `maybe_tick` does nothing
    """

    def __init__(
        self,
        gateway,
        registry: ContractRegistry,
        session_factory: sessionmaker,
        streams: Sequence[Stream],
        confirmation_depth: int = 3,
        batch_initial: int = 500,
        batch_min: int = 25,
        batch_max: int = 500,
        batch_growth: int = 25,
        growth_ticks: int = 10,
        poll_interval_base: float = 45,
        poll_interval_active: float = 10,
        lag_warning_blocks: int = 1000,
        start_block: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.registry = registry
        self.session_factory = session_factory
        self.streams = list(streams)
        self.confirmation_depth = confirmation_depth
        self.batch_initial = batch_initial
        self.batch_min = batch_min
        self.batch_max = batch_max
        self.batch_growth = batch_growth
        self.growth_ticks = growth_ticks
        self.poll_interval_base = poll_interval_base
        self.poll_interval_active = poll_interval_active
        self.lag_warning_blocks = lag_warning_blocks
        self.start_block = start_block
        self.clock = clock
        self.next_run_at = 0.0
        self.backpressure = False

    async def maybe_tick(self) -> Optional[TickResult]:
        """Run a tick if the self-paced poll interval has elapsed."""
        if self.clock() < self.next_run_at:
            return None
        return await self.tick()

    async def tick(self) -> TickResult:
        """
        Index one window per stream up to the confirmed head.

        Raises:
            RpcError: Head could not be read
            Exception: The first stream failure of this tick (after all streams ran)
        """
        head = await self.gateway.get_block_number(priority=True)
        confirmed = head - self.confirmation_depth
        result = TickResult(head=head, confirmed=confirmed)
        first_error: Optional[Exception] = None

        for stream in self.streams:
            if not self.registry.has(stream.contract):
                continue
            try:
                window, lag = await self.index_stream(stream, confirmed)
                if window is not None:
                    result.windows.append(window)
                result.lag[stream.name] = lag
            except Exception as exc:
                logger.error(f"❌ Indexing {stream.name} failed: {exc}", exc_info=True)
                result.errors[stream.name] = str(exc)
                first_error = first_error or exc

        self._apply_pacing(result.max_lag)

        if first_error is not None:
            raise first_error
        return result

    def _apply_pacing(self, lag: int) -> None:
        interval = self.poll_interval_active if lag > 0 else self.poll_interval_base
        self.next_run_at = self.clock() + interval

        lagging = lag > self.lag_warning_blocks
        if lagging:
            logger.warning(f"⚠️ Indexer is {lag} blocks behind the confirmed head")
        if lagging != self.backpressure:
            self.backpressure = lagging
            self.gateway.set_backpressure(lagging)

    async def index_stream(self, stream: Stream, confirmed: int):
        """
        Index the next window of one stream.

        Returns:
            (WindowResult or None when already caught up, remaining lag)
        """
        address = self.registry.address(stream.contract)

        with session_scope(self.session_factory) as db:
            cursors = CursorRepository(db)
            cursor = cursors.get_or_create(
                stream.name, address, self.start_block, stream.batch_size or self.batch_initial
            )
            if stream.batch_size is None:
                stream.batch_size = cursor.batch_size or self.batch_initial

            last = cursor.last_indexed_block
            if confirmed < last - self.confirmation_depth:
                AnomalyRepository(db).record(
                    "head_behind_cursor",
                    f"{stream.name}:{confirmed}",
                    f"confirmed head {confirmed} is behind cursor {last}",
                )
                logger.warning(f"⚠️ {stream.name}: confirmed head {confirmed} behind cursor {last}")

            if last >= confirmed:
                update_indexer_metrics(stream.name, last, 0, stream.batch_size)
                return None, 0

            from_block = last + 1
            logs, to_block = await self._fetch_window(stream, address, from_block, confirmed)

            window = await self._process_window(db, stream, address, logs, from_block, to_block)
            cursors.advance(cursor, to_block, stream.batch_size)

        self._grow(stream)
        lag = confirmed - to_block
        update_indexer_metrics(stream.name, to_block, lag, stream.batch_size)
        logger.info(
            f"✅ {stream.name}: indexed [{from_block}, {to_block}] "
            f"({window.new_events} new, {window.duplicates} seen, lag {lag})"
        )
        return window, lag

    async def _fetch_window(self, stream: Stream, address: str, from_block: int, confirmed: int):
        """getLogs for the stream, halving the window on range-limit errors."""
        topics = [self.registry.event_topics(stream.contract, stream.handlers.keys())]
        while True:
            to_block = min(from_block + stream.batch_size - 1, confirmed)
            try:
                logs = await self.gateway.get_logs(from_block, to_block, address, topics)
                return logs, to_block
            except BlockRangeTooLarge:
                if stream.batch_size <= self.batch_min:
                    raise
                stream.batch_size = max(self.batch_min, stream.batch_size // 2)
                stream.growth_ticks_left = self.growth_ticks
                stream.shrunk = True
                logger.warning(
                    f"⚠️ {stream.name}: range [{from_block}, {to_block}] too large, "
                    f"batch size now {stream.batch_size}"
                )

    def _grow(self, stream: Stream) -> None:
        # The tick that shrank the window does not count toward growth
        if stream.shrunk:
            stream.shrunk = False
            return
        if stream.growth_ticks_left <= 0:
            return
        stream.batch_size = min(self.batch_max, stream.batch_size + self.batch_growth)
        stream.growth_ticks_left -= 1

    async def _process_window(
        self,
        db: Session,
        stream: Stream,
        address: str,
        logs: List[Dict[str, Any]],
        from_block: int,
        to_block: int,
    ) -> WindowResult:
        events = []
        for log in logs:
            event = self.registry.decode_log(log)
            if event is None or event.name not in stream.handlers:
                continue
            events.append(event)
        events.sort(key=lambda e: e.position)

        window = WindowResult(stream.name, from_block, to_block, logs=len(logs))
        event_repo = ChainEventRepository(db)

        for event in events:
            row = event_repo.record(
                stream=stream.name,
                contract_address=address.lower(),
                event_name=event.name,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                args=jsonable(event.args),
            )
            if row is None:
                window.duplicates += 1
                continue
            await stream.handlers[event.name](db, event)
            window.new_events += 1
            indexer_events_total.labels(stream=stream.name, event=event.name).inc()

        return window
