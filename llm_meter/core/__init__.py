"""
Core modules for LLM Meter.

This package contains cost calculation, aggregation counters, budget
evaluation and usage reporting.
"""
