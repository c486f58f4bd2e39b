#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""HTTP server of the router: Flask app factory."""

import logging
import time

from flask import Flask, Response, g, request
from werkzeug.exceptions import HTTPException

from kubernetes_router.api.routes import router_bp
from kubernetes_router.backend import Backend
from kubernetes_router.metrics import (
    HTTP_REQUEST_DURATION,
    HTTP_REQUESTS,
    generate_metrics,
    get_content_type,
)
from kubernetes_router.router import RouterError

logger = logging.getLogger(__name__)


def create_app(backend: Backend, api_user: str = "", api_password: str = "") -> Flask:
    """Create the Flask application serving ``backend``.

    :param backend: resolves the router of each request.
    :param api_user: basic auth user of the ``/api`` endpoints.
    :param api_password: basic auth password of the ``/api`` endpoints.
    """
    app = Flask(__name__)
    app.config["BACKEND"] = backend
    app.config["API_USER"] = api_user
    app.config["API_PASSWORD"] = api_password

    app.register_blueprint(router_bp, url_prefix="/api")
    app.register_blueprint(router_bp, url_prefix="/api/<mode>", name="router_mode")

    @app.route("/healthcheck")
    def healthcheck():
        try:
            backend.healthcheck()
        except Exception as e:
            logger.error(f"failed to write healthcheck: {e}")
            return str(e), 500
        return "WORKING"

    @app.route("/metrics")
    def metrics():
        return Response(generate_metrics(), content_type=get_content_type())

    @app.before_request
    def _start_timer():
        g.start_time = time.monotonic()

    @app.after_request
    def _record_request(response):
        endpoint = request.url_rule.rule if request.url_rule else "unmatched"
        HTTP_REQUESTS.labels(
            method=request.method, endpoint=endpoint, status=str(response.status_code)
        ).inc()
        if "start_time" in g:
            HTTP_REQUEST_DURATION.labels(endpoint=endpoint).observe(
                time.monotonic() - g.start_time
            )
        return response

    @app.errorhandler(Exception)
    def _handle_error(e):
        if isinstance(e, HTTPException):
            return e
        if isinstance(e, RouterError):
            if e.status_code >= 500:
                logger.error(f"{request.method} {request.path} failed: {e}")
            return f"{e}\n", e.status_code
        logger.exception(f"{request.method} {request.path} failed")
        return f"{e}\n", 500

    logger.info("Router API created")
    return app
