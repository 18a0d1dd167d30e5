"""
Metered OpenAI client wrapper.

Checks the daily token cap before a coaching chat call and records usage
after it.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Union

from openai import OpenAI

from ..core.engine import MeteringEngine
from ..storage.models import CoachType, UsageData

logger = logging.getLogger(__name__)

DAILY_LIMIT_MESSAGE = (
    "Thank you, we have reached today's usage limit. Please join me again "
    "tomorrow to continue your healing journey. Have a blessed and amazing "
    "day ahead."
)


class MeteredOpenAI:
    """OpenAI chat client gated by the metering engine.

    The model response is never withheld because of a metering write
    failure: once the provider has answered, recording errors are logged
    and the reply is returned.
    """

    def __init__(
        self,
        engine: MeteringEngine,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize metered OpenAI client.

        Args:
            engine: Metering engine used for the limit check and recording
            model: OpenAI model name (defaults to the pricing default model)
            client: Preconfigured OpenAI client (defaults to ``OpenAI()``)

        Raises:
            ValueError: If model is given but empty
        """
        if model is not None and not model.strip():
            raise ValueError("model cannot be empty")

        self.engine = engine
        self.model = model or engine.calculator.default_model
        self.client = client or OpenAI()

    def chat(
        self,
        user_id: int,
        coach_type: Union[CoachType, str],
        messages: List[Dict[str, str]],
        conversation_id: Optional[int] = None,
        **kwargs: Any
    ) -> str:
        """Create a chat completion for a user, within their daily cap.

        Args:
            user_id: User the call is made for
            coach_type: Coaching category of the conversation
            messages: List of message dictionaries (required)
            conversation_id: Optional conversation back-reference
            **kwargs: Additional OpenAI parameters

        Returns:
            The assistant reply, or DAILY_LIMIT_MESSAGE when the cap is reached

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        status = self.engine.check_daily_limit(user_id)
        if not status.can_proceed:
            logger.info(
                "Daily token limit reached for user %s (%d tokens used)",
                user_id, status.tokens_used_today
            )
            return DAILY_LIMIT_MESSAGE

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        usage = response.usage
        if usage is None:
            logger.warning("OpenAI response %s missing usage information", response.id)
        else:
            try:
                self.engine.record_usage(UsageData(
                    user_id=user_id,
                    coach_type=coach_type,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    total_tokens=usage.total_tokens,
                    model=self.model,
                    conversation_id=conversation_id
                ))
            except (sqlite3.Error, ValueError):
                logger.exception("Error tracking token usage for user %s", user_id)

        return response.choices[0].message.content or ""
