#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Backend serving every request from the cluster the process runs in."""

import logging
from typing import Dict, Mapping

from kubernetes_router.backend import Backend, BackendNotFound
from kubernetes_router.router import Router

logger = logging.getLogger(__name__)


class HealthcheckError(Exception):
    def __init__(self, errors):
        super().__init__(" - ".join(errors))
        self.errors = errors


class LocalCluster(Backend):
    """Routers built once at startup, indexed by mode."""

    def __init__(self, routers: Dict[str, Router], default_mode: str = "service"):
        self.routers = routers
        self.default_mode = default_mode

    def router(self, mode: str, headers: Mapping[str, str]) -> Router:
        try:
            return self.routers[mode or self.default_mode]
        except KeyError:
            raise BackendNotFound() from None

    def healthcheck(self):
        errors = []
        for mode, router in self.routers.items():
            try:
                router.healthcheck()
            except Exception as e:
                logger.error(f"Healthcheck of {mode} failed: {e}")
                errors.append(f"failed to check IngressService {mode}: {e}")
        if errors:
            raise HealthcheckError(errors)
