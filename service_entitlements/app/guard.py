"""
Route guard over an access session.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from shared.logging import get_logger
from .rules.models import AccessOutcome, EntitlementDecision, Feature
from .session import AccessSession, SessionState

SIGN_IN_MESSAGE = "Please sign in to access this feature"
UPGRADE_MESSAGE = "This feature requires a premium subscription. Upgrade to continue."


class GuardAction(str, Enum):
    PENDING = "pending"
    RENDER = "render"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GuardResult:
    action: GuardAction
    location: Optional[str] = None
    message: Optional[str] = None
    decision: Optional[EntitlementDecision] = None

    @property
    def should_render(self) -> bool:
        return self.action is GuardAction.RENDER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "location": self.location,
            "message": self.message,
            "decision": self.decision.to_dict() if self.decision else None,
        }


class RouteGuard:
    """Maps an access session to render, redirect or wait."""

    def __init__(self, sign_in_path: str = "/auth", upgrade_path: str = "/subscriptions"):
        self.sign_in_path = sign_in_path
        self.upgrade_path = upgrade_path
        self.logger = get_logger("entitlements.guard")

    def resolve(self, session: AccessSession, feature: Union[str, Feature]) -> GuardResult:
        """Guard result for the session's current state; performs no I/O."""
        if session.state is not SessionState.RESOLVED or session.snapshot is None:
            # Pending and cancelled sessions render nothing
            return GuardResult(action=GuardAction.PENDING)

        return self.from_decision(session.evaluate(feature))

    def from_decision(self, decision: EntitlementDecision) -> GuardResult:
        if decision.outcome is AccessOutcome.ALLOWED:
            return GuardResult(action=GuardAction.RENDER, decision=decision)

        if decision.outcome is AccessOutcome.UNAUTHENTICATED:
            result = GuardResult(
                action=GuardAction.REDIRECT,
                location=self.sign_in_path,
                message=SIGN_IN_MESSAGE,
                decision=decision
            )
        else:
            result = GuardResult(
                action=GuardAction.REDIRECT,
                location=self.upgrade_path,
                message=UPGRADE_MESSAGE,
                decision=decision
            )

        self.logger.info(
            "Guard redirect",
            feature=decision.feature,
            outcome=decision.outcome.value,
            location=result.location
        )
        return result

    async def check(self, session: AccessSession, feature: Union[str, Feature]) -> GuardResult:
        """Load the session if needed, then resolve."""
        await session.load()
        return self.resolve(session, feature)
