"""
Usage recording.

Computes the cost of a model call, appends it to the ledger and updates the
user's monthly quota. Failures are loud: the caller decides whether to log
and continue or to propagate.
"""

import logging
from datetime import datetime
from typing import Callable

from .pricing import CostCalculator
from .quota import QuotaManager
from .token_counter import TokenUsage
from coach_meter.storage.models import UsageData, UsageEvent, utc_now
from coach_meter.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Records one metered model call."""

    def __init__(
        self,
        repository: UsageRepository,
        calculator: CostCalculator,
        quotas: QuotaManager,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.calculator = calculator
        self.quotas = quotas
        self.clock = clock

    def record(self, usage: UsageData) -> UsageEvent:
        """Record a model call's usage.

        Steps run in order: cost calculation, ledger append, quota update.
        If the quota update fails the ledger row stays; the ledger is the
        source of truth for every aggregate.

        Args:
            usage: Token counts reported by the provider

        Returns:
            The appended ledger event, including its id and cost

        Raises:
            sqlite3.Error: If the ledger append or quota update fails
        """
        model = usage.model or self.calculator.default_model
        cost_cents = self.calculator.calculate_cost_cents(
            model,
            TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens
            )
        )

        event = self.repository.append_event(UsageEvent(
            user_id=usage.user_id,
            coach_type=usage.coach_type,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost_cents=cost_cents,
            model=model,
            created_at=self.clock(),
            conversation_id=usage.conversation_id
        ))

        self.quotas.apply_usage(usage.user_id, usage.total_tokens)

        logger.info(
            "Token usage tracked: %d tokens for user %s, cost: $%.2f",
            event.total_tokens, event.user_id, event.cost_dollars
        )
        return event
