"""
Core modules for Coach Meter.

This package contains cost calculation, the daily token cap, monthly quota
tracking, usage recording and usage analytics.
"""
