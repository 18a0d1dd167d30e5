"""
SDK for Coach Meter.

Provides a metered OpenAI chat client for the coaching dispatcher.
"""

from .openai_client import DAILY_LIMIT_MESSAGE, MeteredOpenAI

__all__ = ["DAILY_LIMIT_MESSAGE", "MeteredOpenAI"]
