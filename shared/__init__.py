"""
Shared utilities for the organizing dashboard worker.

This package aggregates common building blocks consumed by the worker:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Resilient upstream call protection
- base_service: FastAPI application scaffolding

Do not import from service_* packages into shared/.
"""
