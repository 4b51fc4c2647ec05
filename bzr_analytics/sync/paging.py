# sync/paging.py
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bzr_analytics.models import TransferEvent

logger = logging.getLogger(__name__)


@dataclass
class WindowBatch:
    """
    Result of reading one ascending block window.

    checkpoint is the highest block whose transfers are all contained in
    events (None when nothing can be marked complete yet). exhausted means the
    provider returned a short page, so no further rows exist in the window.
    """
    events: List[TransferEvent] = field(default_factory=list)
    checkpoint: Optional[int] = None
    exhausted: bool = False
    pages: int = 1

    @property
    def max_block(self) -> Optional[int]:
        return self.events[-1].block_number if self.events else None


def fetch_block_window(client, chain: Dict, start_block: int, end_block: Optional[int] = None,
                       page_size: Optional[int] = None) -> WindowBatch:
    """
    Fetch the first ascending page of [start_block, end_block].

    A full page can stop in the middle of its last block, so the checkpoint
    only covers blocks strictly below it. When the whole page sits in a single
    block that block is drained page by page before it is marked complete.
    """
    size = client.clamp_page_size(page_size)
    events = client.fetch_page(chain, page=1, page_size=size, sort='asc',
                               start_block=start_block, end_block=end_block)

    if len(events) < size:
        if end_block is not None:
            checkpoint = end_block
        elif events:
            checkpoint = events[-1].block_number
        else:
            checkpoint = None
        return WindowBatch(events=events, checkpoint=checkpoint, exhausted=True)

    first_block = events[0].block_number
    last_block = events[-1].block_number
    if first_block < last_block:
        return WindowBatch(events=events, checkpoint=last_block - 1, exhausted=False)

    drained, pages = drain_block(client, chain, last_block, size, events)
    return WindowBatch(events=drained, checkpoint=last_block, exhausted=False, pages=pages)


def drain_block(client, chain: Dict, block: int, page_size: int, first_page: List[TransferEvent]):
    """Read every page of a single block, bounded by the provider result window"""
    events = list(first_page)
    page = 1
    max_pages = max(1, client.result_window // page_size)

    while page < max_pages:
        page += 1
        rows = client.fetch_page(chain, page=page, page_size=page_size, sort='asc',
                                 start_block=block, end_block=block)
        events.extend(rows)
        if len(rows) < page_size:
            break
    else:
        logger.warning(
            f"Block {block} on {chain['name']} holds more than {max_pages * page_size} transfers, "
            f"rows beyond the provider result window cannot be paged"
        )

    logger.info(f"Drained block {block} on {chain['name']}: {len(events)} transfers over {page} pages")
    return events, page
