#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""HTTP basic authentication of the router API."""

import hmac
import logging

from flask import Response, current_app, request

logger = logging.getLogger(__name__)

REALM = "Authorization Required"


def check_basic_auth():
    """Reject requests without the configured credentials.

    Authentication is disabled when neither user nor password is configured.
    """
    user = current_app.config.get("API_USER") or ""
    password = current_app.config.get("API_PASSWORD") or ""
    if not user and not password:
        return None

    auth = request.authorization
    if (
        auth is not None
        and hmac.compare_digest((auth.username or "").encode(), user.encode())
        and hmac.compare_digest((auth.password or "").encode(), password.encode())
    ):
        return None

    logger.warning(f"Unauthorized request to {request.path}")
    return Response(
        "Not Authorized\n",
        status=401,
        headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
    )
