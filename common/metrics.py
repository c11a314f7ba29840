#!/usr/bin/env python3
"""
Tiris Backend
Metrics Collection Module

This module provides the Prometheus metrics of the API Gateway: HTTP traffic,
authentication requests, ledger activity and errors. Every collector owns its
registry, so several applications can share one process.
"""

from typing import Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram, CONTENT_TYPE_LATEST, generate_latest
)

from common.constants import METRICS_NAMESPACE, METRICS_OTHER_LABEL, BUSINESS_LOGIC_TYPES

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


class MetricsCollector:
    """Prometheus collectors for one application."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = METRICS_NAMESPACE):
        """
        Initialize the collectors.

        Args:
            registry: Registry to register with, a fresh one by default
            namespace: Prefix of every metric name
        """
        self.registry = registry if registry is not None else CollectorRegistry()
        self.namespace = namespace

        # HTTP
        self.http_requests = self._counter(
            "http_requests_total", "Total number of HTTP requests",
            ["method", "endpoint", "status_code"],
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds", "HTTP request duration in seconds",
            ["method", "endpoint", "status_code"],
            namespace=namespace, registry=self.registry,
        )
        self.http_requests_in_flight = Gauge(
            "http_requests_in_flight", "Number of HTTP requests currently being served",
            namespace=namespace, registry=self.registry,
        )

        # Authentication
        self.auth_requests = self._counter(
            "auth_requests_total", "Total number of authentication requests",
            ["method", "provider", "status"],
        )
        self.token_refreshes = self._counter(
            "token_refresh_total", "Total number of token refresh attempts", ["status"],
        )

        # Ledger
        self.trading_logs = self._counter(
            "trading_logs_total", "Total number of trading log entries", ["type", "source"],
        )
        self.transactions = self._counter(
            "transactions_total", "Total number of transactions", ["direction", "reason"],
        )
        self.balance_updates = self._counter(
            "balance_updates_total", "Total number of balance updates", ["direction", "status"],
        )

        # Errors
        self.errors = self._counter(
            "errors_total", "Total number of errors", ["component", "error_type"],
        )

    def _counter(self, name: str, documentation: str, labels) -> Counter:
        return Counter(name, documentation, labels, namespace=self.namespace, registry=self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float) -> None:
        labels = (method, endpoint, str(status_code))
        self.http_requests.labels(*labels).inc()
        self.http_request_duration.labels(*labels).observe(duration)

    def record_auth_request(self, method: str, provider: str, success: bool) -> None:
        status = STATUS_SUCCESS if success else STATUS_FAILURE
        self.auth_requests.labels(method, provider or METRICS_OTHER_LABEL, status).inc()

    def record_token_refresh(self, success: bool) -> None:
        self.token_refreshes.labels(STATUS_SUCCESS if success else STATUS_FAILURE).inc()

    def record_trading_log(self, log_type: str, source: str) -> None:
        # Free-form types share one label value
        if log_type not in BUSINESS_LOGIC_TYPES:
            log_type = METRICS_OTHER_LABEL
        self.trading_logs.labels(log_type, source).inc()

    def record_transaction(self, direction: str, reason: str) -> None:
        self.transactions.labels(direction, reason).inc()

    def record_balance_update(self, direction: str, status: str) -> None:
        self.balance_updates.labels(direction, status).inc()

    def record_error(self, component: str, error_type: str) -> None:
        self.errors.labels(component, error_type).inc()

    def sample(self, name: str, labels: dict = None) -> Optional[float]:
        """Current value of a sample, or None if it was never recorded."""
        return self.registry.get_sample_value(f"{self.namespace}_{name}", labels or {})

    def render(self) -> bytes:
        """Exposition-format snapshot of every collector."""
        return generate_latest(self.registry)
