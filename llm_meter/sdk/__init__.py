"""
SDK for LLM Meter.

Provider clients that enforce budgets and record usage.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
