"""
Attribute propagation pipeline.

Scope resolution, enumeration, the optional null-target filter, execution
and result collection, in that order.
"""

import logging
from typing import Optional

from anchor_sync.context import RunContext
from anchor_sync.enumerator import ObjectEnumerator
from anchor_sync.executor import PropagationExecutor, ConfirmCallback
from anchor_sync.filters import only_null_target
from anchor_sync.models import PropagationOptions
from anchor_sync.reporting import ResultReporter
from anchor_sync.scope import ScopeResolver

logger = logging.getLogger(__name__)


def propagate(run_context: RunContext, options: PropagationOptions,
              confirm: Optional[ConfirmCallback] = None) -> ResultReporter:
    """
    Run one attribute propagation against the active directory client.

    Args:
        run_context: Context holding the bound directory client
        options: Scope, attribute pair and mode flags
        confirm: Per-object confirmation callback, defaults to approving all

    Returns:
        Reporter holding every result record of the run

    Raises:
        EnvironmentPreconditionError: If no bound directory client is active
        ScopeResolutionError: If the scope cannot be resolved or queried
    """
    client = run_context.require_directory()
    reporter = ResultReporter()

    units = ScopeResolver(client).resolve(options.scope)

    enumerator = ObjectEnumerator(client, options.attributes, reporter, run_context)
    objects = enumerator.enumerate(options.scope, units)

    if options.only_update_null_target:
        objects = only_null_target(objects, options.attributes.target)

    executor = PropagationExecutor(
        client, options.attributes, reporter, run_context,
        report_only=options.report_only,
        dry_run=options.dry_run,
        confirm=confirm
    )
    executor.execute(objects)

    summary = reporter.summary()
    logger.info(f"Propagation finished: {summary.succeeded} succeeded, {summary.failed} failed "
                f"of {summary.attempted} attempted")
    return reporter
