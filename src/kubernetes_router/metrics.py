#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Prometheus collectors of the router API."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

HTTP_REQUESTS = Counter(
    "kubernetes_router_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "kubernetes_router_http_request_duration_seconds",
    "HTTP request latency",
    ["endpoint"],
)

RECONCILES = Counter(
    "kubernetes_router_reconcile_total",
    "Router operations by result",
    ["mode", "operation", "result"],  # result: success/error
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
