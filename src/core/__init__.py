"""Core domain package for beacon.

Core contains authentication, admission control, deduplication, rule
evaluation, dispatch and health aggregation without any HTTP, Telegram or
storage-specific code, keeping the decision pipeline portable.
"""
