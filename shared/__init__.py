"""
Shared utilities for the rate-limiting core.

This package aggregates common building blocks consumed by the limiter:

- config: Limiter configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Do not import from service_* packages into shared/.
"""
