"""
Shared utilities for the Rule Engine Platform.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/execution correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for idempotent collaborator calls
- base_service: FastAPI service skeleton with health and metrics routes

Do not import from service packages into shared/.
"""
