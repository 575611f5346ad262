"""Shared step plumbing for tasks.

Leaf module — no dependencies on other task submodules.

Key exports:
    run_step — retry a step with an independent deadline per attempt
"""

import config
from cancellation import OperationCancelled, StepTimeout
from detection import random_delay


def run_step(step_name, action, cancel, rng, log,
             attempts=config.STEP_ATTEMPTS, timeout_s=config.STEP_TIMEOUT_S):
    """Run ``action(step_token)`` until it returns True, up to ``attempts`` times.

    Each attempt gets a child token expiring after ``timeout_s``. A step
    timeout or an exception is logged and retried after a short random
    pause; cancellation of ``cancel`` itself propagates. Returns False once
    the attempts are used up.
    """
    for attempt in range(1, attempts + 1):
        step = cancel.child(timeout_s)
        try:
            if action(step):
                return True
            log.warning("Step failed: %s, attempt %d/%d", step_name, attempt, attempts)
        except StepTimeout:
            if cancel.is_set():
                raise
            log.warning("Step timeout: %s, attempt %d/%d", step_name, attempt, attempts)
        except OperationCancelled:
            raise
        except Exception as e:
            log.error("Step error: %s, attempt %d/%d: %s", step_name, attempt, attempts, e,
                      exc_info=True)
        random_delay(rng, cancel, *config.STEP_RETRY_DELAY_MS)

    log.error("Step exhausted retries: %s", step_name)
    return False
