"""Block cursor tracker.

One watermark per network: the last block whose deposit events have all been
enumerated and dispatched. The watermark only moves forward, and only after
a cycle over [watermark + 1, to] finished without an unrecoverable error.
Holding it back is how a failed range gets retried on the next cycle.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class BlockCursorTracker:
    """Per-network last-processed-block watermarks."""

    def __init__(
        self,
        lookback_blocks: int = 100,
        max_blocks_per_scan: int = 2000,
        confirmation_blocks: int = 0,
    ):
        """Initialize tracker.

        Args:
            lookback_blocks: Blocks behind head to start from on a cold start
            max_blocks_per_scan: Largest range handed out by next_range
            confirmation_blocks: Blocks to stay behind the chain head
        """
        self.lookback_blocks = lookback_blocks
        self.max_blocks_per_scan = max_blocks_per_scan
        self.confirmation_blocks = confirmation_blocks
        self._cursors: dict[str, int] = {}

    def initialize(self, network: str, head: int, persisted: Optional[int] = None) -> int:
        """Set the starting watermark for a network.

        A persisted watermark wins; otherwise start `lookback_blocks` behind
        head so deposits made just before startup are still seen.
        """
        if persisted is not None:
            start = persisted
            logger.info(f"Resuming {network} from persisted block {start}")
        else:
            start = max(head - self.lookback_blocks, 0)
            logger.info(f"Starting {network} at block {start} (head {head}, lookback {self.lookback_blocks})")

        self._cursors[network] = start
        return start

    def is_initialized(self, network: str) -> bool:
        return network in self._cursors

    def get(self, network: str) -> Optional[int]:
        """Last processed block for a network, or None before initialize()."""
        return self._cursors.get(network)

    def next_range(self, network: str, head: int) -> Optional[tuple[int, int]]:
        """Next block range to scan, or None when there are no new blocks.

        Raises:
            KeyError: If the network was never initialized
        """
        cursor = self._cursors[network]
        safe_head = head - self.confirmation_blocks
        from_block = cursor + 1

        if from_block > safe_head:
            return None

        to_block = min(safe_head, cursor + self.max_blocks_per_scan)
        return from_block, to_block

    def advance(self, network: str, to_block: int) -> int:
        """Move the watermark to to_block; never moves backwards."""
        current = self._cursors[network]
        if to_block > current:
            self._cursors[network] = to_block
        else:
            logger.debug(f"Ignoring non-forward cursor move on {network}: {current} -> {to_block}")
        return self._cursors[network]

    def lag(self, network: str, head: int) -> Optional[int]:
        """Blocks between the watermark and head."""
        cursor = self._cursors.get(network)
        if cursor is None:
            return None
        return head - cursor

    def as_dict(self) -> dict[str, int]:
        return dict(self._cursors)
