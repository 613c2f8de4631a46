"""Object filters applied between enumeration and execution."""

import logging
from typing import List

from anchor_sync.models import DirectoryObjectRef, is_unset

logger = logging.getLogger(__name__)


def only_null_target(objects: List[DirectoryObjectRef], target_attribute: str) -> List[DirectoryObjectRef]:
    """Keep the objects whose target attribute is not set."""
    kept = [obj for obj in objects if is_unset(obj.get_attribute(target_attribute))]
    logger.info(f"{len(kept)} of {len(objects)} object(s) have no {target_attribute} value")
    return kept
