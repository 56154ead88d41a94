"""
Entitlement and budget policy.

Decides whether a user may call a model and which budget pays for it.
The policy is pure: it reads a budget snapshot and proposes a new state,
persisting it is left to the account store.

Rules by subscription tier:
1. Unsubscribed - free models only, metered against the free token allowance
2. Trialing - free models only, unmetered
3. Active - paid models against the credits balance, free models unmetered

Callers must run authorize and settle for one user under a mutual
exclusion scope so two requests cannot spend the same credits.
"""

from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Optional

from .catalog import ModelCatalog
from .pricing import UsageResult

DENIED_PAID_UNSUBSCRIBED = "Subscribe to access paid models. Free users can only use free models."
DENIED_PAID_TRIAL = "Trial allows free models only. Upgrade to access paid models."
DENIED_NO_CREDITS = "Insufficient credits. You can still use free models or upgrade your plan."
DENIED_FREE_TOKENS = "You have used all {limit} free tokens. Subscribe for unlimited access to free models."


class SubscriptionTier(Enum):
    """Subscription state relevant to entitlements."""
    UNSUBSCRIBED = "unsubscribed"
    TRIALING = "trialing"
    ACTIVE = "active"

    @classmethod
    def from_status(cls, status: Optional[str]) -> "SubscriptionTier":
        """Map a billing provider status; anything but active/trialing is unsubscribed."""
        if status == "active":
            return cls.ACTIVE
        if status == "trialing":
            return cls.TRIALING
        return cls.UNSUBSCRIBED


class BudgetSource(Enum):
    """Budget debited for an allowed request."""
    CREDITS = auto()
    FREE_TOKENS = auto()
    UNMETERED = auto()


class EntitlementDenied(Exception):
    """Raised when a user is not entitled to use a model."""
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class UserBudgetState:
    """Snapshot of a user's budget."""
    tier: SubscriptionTier
    credits_balance: float = 0.0
    credits_allocated: float = 0.0
    credits_used: float = 0.0
    free_tokens_used: int = 0
    free_tokens_limit: int = 1_000_000

    def __post_init__(self):
        """Validate counters."""
        if self.free_tokens_limit <= 0:
            raise ValueError("free_tokens_limit must be > 0")
        if self.free_tokens_used < 0:
            raise ValueError("free_tokens_used must be >= 0")
        if self.credits_allocated < 0 or self.credits_used < 0:
            raise ValueError("credit counters must be >= 0")

    @property
    def free_tokens_remaining(self) -> int:
        return max(0, self.free_tokens_limit - self.free_tokens_used)


@dataclass(frozen=True)
class AuthorizationDecision:
    """Result of an entitlement check."""
    allowed: bool
    budget: Optional[BudgetSource] = None
    reason: str = ""

    @classmethod
    def allow(cls, budget: BudgetSource) -> "AuthorizationDecision":
        return cls(allowed=True, budget=budget)

    @classmethod
    def deny(cls, reason: str) -> "AuthorizationDecision":
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True)
class ProposedDebit:
    """State change proposed after a successful completion."""
    credits_debited: float
    free_tokens_debited: int
    new_state: UserBudgetState
    shortfall: float = 0.0  # Cost not covered by the credits balance
    limit_exceeded: bool = False  # Free token allowance overflowed

    @property
    def is_noop(self) -> bool:
        return self.credits_debited == 0 and self.free_tokens_debited == 0


class BudgetPolicy:
    """Entitlement checks and settlement against a model catalog.

    Models missing from the catalog are treated as paid.
    """

    def __init__(self, catalog: ModelCatalog):
        self.catalog = catalog

    def authorize(
        self,
        state: UserBudgetState,
        model_id: str,
        estimated_tokens: int = 0,
    ) -> AuthorizationDecision:
        """Check whether a request may be sent to the provider.

        Args:
            state: Budget snapshot taken before the call
            model_id: Model the user selected
            estimated_tokens: Expected request size, checked against the
                free token allowance

        Returns:
            AuthorizationDecision with the budget to debit or the denial reason
        """
        model_is_free = self.catalog.is_free(model_id)

        if state.tier == SubscriptionTier.UNSUBSCRIBED:
            if not model_is_free:
                return AuthorizationDecision.deny(DENIED_PAID_UNSUBSCRIBED)
            if (state.free_tokens_used >= state.free_tokens_limit or
                    state.free_tokens_used + estimated_tokens > state.free_tokens_limit):
                return AuthorizationDecision.deny(
                    DENIED_FREE_TOKENS.format(limit=state.free_tokens_limit)
                )
            return AuthorizationDecision.allow(BudgetSource.FREE_TOKENS)

        if state.tier == SubscriptionTier.TRIALING:
            if not model_is_free:
                return AuthorizationDecision.deny(DENIED_PAID_TRIAL)
            return AuthorizationDecision.allow(BudgetSource.UNMETERED)

        # Active subscription
        if not model_is_free:
            if state.credits_balance <= 0:
                return AuthorizationDecision.deny(DENIED_NO_CREDITS)
            return AuthorizationDecision.allow(BudgetSource.CREDITS)
        return AuthorizationDecision.allow(BudgetSource.UNMETERED)

    def enforce(
        self,
        state: UserBudgetState,
        model_id: str,
        estimated_tokens: int = 0,
    ) -> AuthorizationDecision:
        """Authorize a request, raising when it is denied.

        Raises:
            EntitlementDenied: If the user may not use the model
        """
        decision = self.authorize(state, model_id, estimated_tokens)
        if not decision.allowed:
            raise EntitlementDenied(decision.reason)
        return decision

    def settle(
        self,
        state: UserBudgetState,
        model_id: str,
        usage: UsageResult,
        allow_overdraft: bool = False,
    ) -> ProposedDebit:
        """Compute the budget change for a completed request.

        Args:
            state: Budget snapshot used for authorization
            model_id: Model that served the request
            usage: Usage reported for the request
            allow_overdraft: Let the credits balance go negative and
                credits_used exceed credits_allocated

        Returns:
            ProposedDebit with the new state
        """
        model_is_free = self.catalog.is_free(model_id)

        if state.tier == SubscriptionTier.ACTIVE and not model_is_free:
            return self._settle_credits(state, usage.total_cost, allow_overdraft)

        if state.tier == SubscriptionTier.UNSUBSCRIBED and model_is_free:
            return self._settle_free_tokens(state, usage.total_tokens)

        return ProposedDebit(credits_debited=0.0, free_tokens_debited=0, new_state=state)

    def _settle_credits(
        self,
        state: UserBudgetState,
        cost: float,
        allow_overdraft: bool,
    ) -> ProposedDebit:
        debit = max(0.0, cost)
        shortfall = 0.0
        if not allow_overdraft and debit > state.credits_balance:
            covered = max(0.0, state.credits_balance)
            shortfall = debit - covered
            debit = covered

        credits_used = state.credits_used + debit
        if not allow_overdraft:
            credits_used = min(credits_used, max(state.credits_allocated, state.credits_used))

        new_state = replace(
            state,
            credits_balance=state.credits_balance - debit,
            credits_used=credits_used,
        )
        return ProposedDebit(
            credits_debited=debit,
            free_tokens_debited=0,
            new_state=new_state,
            shortfall=shortfall,
        )

    def _settle_free_tokens(self, state: UserBudgetState, tokens: int) -> ProposedDebit:
        if state.free_tokens_used >= state.free_tokens_limit:
            # Already exhausted; do not keep growing past the overflowing request
            return ProposedDebit(
                credits_debited=0.0,
                free_tokens_debited=0,
                new_state=state,
                limit_exceeded=True,
            )

        tokens = max(0, tokens)
        free_tokens_used = state.free_tokens_used + tokens
        return ProposedDebit(
            credits_debited=0.0,
            free_tokens_debited=tokens,
            new_state=replace(state, free_tokens_used=free_tokens_used),
            limit_exceeded=free_tokens_used > state.free_tokens_limit,
        )
