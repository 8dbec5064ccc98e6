"""
Driver: runs the selected scenarios one after another and streams TAP.
"""

import logging

from . import CLIENT_NAME, __version__
from .report import Outcome, TapReporter
from .scenarios import SKIP_POLICY, ScenarioContext, ScenarioSpec, skip_reason
from .supervisor import supervise

logger = logging.getLogger(__name__)


async def run_scenarios(
    specs: list[ScenarioSpec],
    context: ScenarioContext,
    reporter: TapReporter,
    skip_policy=SKIP_POLICY,
) -> bool:
    """
    Run ``specs`` strictly in order and report each outcome as it lands.
    Returns True when no executed scenario failed.
    """
    reporter.header(f"{CLIENT_NAME} v{__version__}", context.relay_url, len(specs))

    all_passed = True
    for number, spec in enumerate(specs, start=1):
        reason = skip_reason(spec.name, skip_policy)
        if reason is not None:
            outcome = Outcome.skipped(reason)
        else:
            logger.debug("running %s (timeout %.1fs)", spec.name, spec.timeout)
            outcome = await supervise(spec, context)
        if outcome.is_failure:
            all_passed = False
        reporter.result(number, spec.name, outcome)

    return all_passed
