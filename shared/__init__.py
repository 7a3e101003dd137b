"""
Shared utilities for the Identity Federation service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical federation error types and responses
- circuit_breaker: Resilient provider call protection
- base_service: FastAPI application scaffolding

Do not import from service_federation into shared/.
"""
