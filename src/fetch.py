import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from errors import RpcError
from utils import with_retries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MintEvent:
    blockchain: str
    network: str
    token_id: str
    eth_address: str


@dataclass
class WindowResult:
    """Outcome of one eth_getLogs window. error is set when the query failed."""
    from_block: int
    to_block: int
    events: List[MintEvent] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (token_id, error)
    error: Optional[str] = None

    @property
    def ok(self):
        return self.error is None


@dataclass
class FetchReport:
    start_block: int
    end_block: int
    windows: List[WindowResult] = field(default_factory=list)

    @property
    def events(self):
        return [e for w in self.windows for e in w.events]

    @property
    def failed_windows(self):
        return [w for w in self.windows if not w.ok]

    @property
    def skipped(self):
        return [s for w in self.windows for s in w.skipped]

    @property
    def last_contiguous_block(self):
        """Last block before the first failed window (start - 1 if the first window failed)."""
        for w in self.windows:
            if not w.ok:
                return w.from_block - 1
        return self.end_block


def window_ranges(start_block, end_block, window_size):
    """Tiles [start_block, end_block] into consecutive windows of at most window_size blocks."""
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    from_block = start_block
    while from_block <= end_block:
        to_block = min(from_block + window_size - 1, end_block)
        yield from_block, to_block
        from_block = to_block + 1


class EventFetcher:
    """Walks a block range window by window, resolving each PKPMinted token to its ETH address."""

    def __init__(self, reader, window_size, window_delay=2.0, max_attempts=2, backoff=1.0, sleep=time.sleep):
        self.reader = reader
        self.window_size = window_size
        self.window_delay = window_delay
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep

    def _call(self, fn, label):
        return with_retries(
            fn,
            attempts=self.max_attempts,
            backoff=self.backoff,
            label=label,
            retry_on=(RpcError,),
            sleep=self.sleep,
        )

    def fetch_window(self, from_block, to_block):
        chain, network = self.reader.chain.name, self.reader.network.name
        result = WindowResult(from_block, to_block)

        try:
            logs = self._call(lambda: self.reader.query_logs(from_block, to_block), f"getLogs {from_block}-{to_block}")
        except RpcError as e:
            logger.error(f"{e}")
            result.error = str(e)
            return result

        logger.info(
            f"Found {len(logs)} PKPMinted events from block {from_block} to {to_block} "
            f"on {chain} blockchain and {network} network"
        )

        for log in logs:
            token_id = None
            try:
                token_id = self.reader.decode_token_id(log)
                eth_address = self._call(
                    lambda: self.reader.get_eth_address(token_id), f"getEthAddress {token_id}"
                )
            except RpcError as e:
                logger.error(f"{e}")
                result.skipped.append((token_id or "?", str(e)))
                continue

            logger.info(f"Blockchain: {chain}, Network: {network}, Token ID: {token_id} -> ETH Address: {eth_address}")
            result.events.append(MintEvent(chain, network, token_id, eth_address))

        return result

    def iter_windows(self, start_block, end_block):
        """Lazily yields one WindowResult per window. Restart by passing a later start_block."""
        first = True
        for from_block, to_block in window_ranges(start_block, end_block, self.window_size):
            if not first and self.window_delay:
                self.sleep(self.window_delay)
            first = False
            yield self.fetch_window(from_block, to_block)

    def fetch(self, start_block, end_block):
        report = FetchReport(start_block, end_block)
        for window in self.iter_windows(start_block, end_block):
            report.windows.append(window)

        if report.failed_windows:
            ranges = ", ".join(f"{w.from_block}-{w.to_block}" for w in report.failed_windows)
            logger.warning(f"{len(report.failed_windows)} window(s) failed and were dropped: {ranges}")
        if report.skipped:
            logger.warning(f"Skipped {len(report.skipped)} token(s): {', '.join(t for t, _ in report.skipped)}")
        return report
