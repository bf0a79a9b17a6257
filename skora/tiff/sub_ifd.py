"""SubIFDs (tag 330) traversal."""

import logging
from typing import List

from skora.tiff.parser import SUBIFDS_TAG, Ifd, TiffFile

logger = logging.getLogger(__name__)


def read_sub_ifd_offsets(tiff: TiffFile, ifd: Ifd) -> List[int]:
    """Return the offsets listed in an IFD's SubIFDs tag (empty if absent)."""
    values = tiff.tag_values(ifd, SUBIFDS_TAG)
    if not values:
        return []
    return [int(v) for v in values if v]


def read_sub_ifd_chains(tiff: TiffFile, ifd: Ifd) -> List[Ifd]:
    """Read every IFD reachable from ``ifd``'s SubIFDs tag.

    Each listed offset starts a chain that is followed through its "next
    IFD" pointers. Returns all IFDs in order: first chain first, each chain
    in link order. An IFD reachable twice is returned once.
    """
    result = []
    seen = set()
    for start in read_sub_ifd_offsets(tiff, ifd):
        for sub in tiff.iter_ifds(start=start):
            if sub.offset in seen or sub.offset == ifd.offset:
                logger.debug('Skipping already visited sub-IFD at %d', sub.offset)
                continue
            seen.add(sub.offset)
            result.append(sub)
    return result
