"""Risk governor: time-to-expiry and imbalance guardrails.

A pure function of the reconciled imbalance, the time left in the window
and the configuration.  The state machine consults it at the top of every
tick, before any state-specific logic runs.
"""

from decimal import Decimal
from enum import Enum

from duration_hedger.apps.hedger.models import HedgeConfig
from duration_hedger.core.models import ZERO


class RiskAction(Enum):
    """Permission granted to the state machine for the current tick."""

    ALLOW_NEW_EXPOSURE = "allow_new_exposure"
    HEDGE_ONLY = "hedge_only"
    FORCE_CLOSE = "force_close"
    PAUSE_NO_IMBALANCE = "pause_no_imbalance"


def assess_risk(imbalance: Decimal, seconds_to_expiry: float, config: HedgeConfig) -> RiskAction:
    """Decide what the state machine may do this tick.

    Rules are checked in order and the first match wins:

    1. Inside the stop-new-trades window, a flat book pauses trading for
       the rest of the market.
    2. Inside the force-close window, any imbalance is flattened.
    3. Elsewhere in the stop-new-trades window, only hedging is allowed.
    4. An imbalance above ``max_imbalance`` blocks new exposure.
    5. Otherwise new exposure is allowed.

    Args:
        imbalance: Reconciled leg A shares minus leg B shares.
        seconds_to_expiry: Seconds until the market stops trading.
        config: Strategy thresholds.

    Returns:
        The permitted action.

    """
    if seconds_to_expiry < config.stop_new_trades_seconds:
        if imbalance == ZERO:
            return RiskAction.PAUSE_NO_IMBALANCE
        if seconds_to_expiry < config.force_close_seconds:
            return RiskAction.FORCE_CLOSE
        return RiskAction.HEDGE_ONLY
    if abs(imbalance) > config.max_imbalance:
        return RiskAction.HEDGE_ONLY
    return RiskAction.ALLOW_NEW_EXPOSURE
