"""
Core modules for LLM Quota Guard.

This package contains pricing, the usage ledger, admission control,
stream sessions, and the streaming coordinator.
"""
