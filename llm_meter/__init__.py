"""
LLM Meter.

Usage metering and budget enforcement for paid LLM provider calls.
"""

__version__ = "0.1.0"
