"""
Run context shared by every component of a propagation or join run.

Carries the run timestamp, the log, error-log and report destinations, and
the directory client that is currently active.
"""

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)


class EnvironmentPreconditionError(Exception):
    """Raised when a run starts without a bound directory client."""
    pass


@dataclass
class RunContext:
    started_at: datetime = field(default_factory=datetime.now)
    log_path: Optional[str] = None
    error_log_path: Optional[str] = None
    report_path: Optional[str] = None
    directory: Any = None

    @classmethod
    def create(cls, config: Dict[str, Any], name: str = 'anchor_sync') -> 'RunContext':
        """
        Build a run context whose output file names carry the run timestamp.

        Args:
            config: Full application configuration
            name: Prefix for log and report files
        """
        started_at = datetime.now()
        stamp = started_at.strftime('%Y%m%d_%H%M%S')
        log_dir = config.get('logging', {}).get('log_dir', 'logs')
        report_dir = config.get('output', {}).get('report_dir', 'reports')
        return cls(
            started_at=started_at,
            log_path=os.path.join(log_dir, f"{name}_{stamp}.log"),
            error_log_path=os.path.join(log_dir, f"{name}_{stamp}_errors.log"),
            report_path=os.path.join(report_dir, f"{name}_{stamp}.csv"),
        )

    def require_directory(self):
        """
        Return the active directory client.

        Raises:
            EnvironmentPreconditionError: If no bound client is active
        """
        if self.directory is None:
            raise EnvironmentPreconditionError(
                "No directory connection is active; connect a directory client before starting"
            )
        if not getattr(self.directory, 'is_connected', False):
            raise EnvironmentPreconditionError(
                "The active directory client is not bound; call connect() before starting"
            )
        return self.directory

    @contextmanager
    def use_directory(self, client) -> Iterator[Any]:
        """
        Make a client the active directory for the duration of the block.

        Connects the client if needed and disconnects it again on exit when it
        was connected here. The previously active client is restored on every
        exit path.
        """
        previous = self.directory
        connected_here = False
        try:
            if not client.is_connected:
                client.connect()
                connected_here = True
            self.directory = client
            yield client
        finally:
            self.directory = previous
            if connected_here:
                client.disconnect()
            logger.debug("Restored previous directory context")
