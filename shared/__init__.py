"""
Shared utilities for the learning portal access layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/user correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for backend reads
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Do not import from service packages into shared/.
"""
