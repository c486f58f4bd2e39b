#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Collaborators shared by the Kubernetes routers.

:class:`BaseService` bundles the cluster client with the namespace, the
extra labels/annotations configured for the process and the lookups every
router needs (tsuru app, web service, backend targets, resource names).
Routers receive it at construction time instead of inheriting from it.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from lightkube import ApiError, Client
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.apiextensions_v1 import CustomResourceDefinition
from lightkube.resources.core_v1 import Event, Service

from kubernetes_router.kubernetes.resources import App
from kubernetes_router.router import BackendPrefix, BackendTarget, InstanceID, RouterError
from kubernetes_router.utils import parse_bool

logger = logging.getLogger(__name__)

# added to every service created by the router
MANAGED_SERVICE_LABEL = "tsuru.io/router-lb"
# added to every service with tsuru app labels not managed by tsuru itself
EXTERNAL_SERVICE_LABEL = "tsuru.io/external-controller"

APP_BASE_SERVICE_NAMESPACE_LABEL = "router.tsuru.io/base-service-namespace"
APP_BASE_SERVICE_NAME_LABEL = "router.tsuru.io/base-service-name"
ROUTER_FREEZE_LABEL = "router.tsuru.io/freeze"
SWAP_LABEL = "router.tsuru.io/swapped-with"

EXTERNAL_DNS_HOSTNAME_LABEL = "external-dns.alpha.kubernetes.io/hostname"

DEFAULT_SERVICE_PORT = 8888
APP_LABEL = "tsuru.io/app-name"
TEAM_LABEL = "tsuru.io/app-team"
DOMAIN_LABEL = "tsuru.io/domain-name"
PROCESS_LABEL = "tsuru.io/app-process"
APP_POOL_LABEL = "tsuru.io/app-pool"
CUSTOM_TAG_PREFIX = "tsuru.io/custom-tag-"

APP_CRD_NAME = "apps.tsuru.io"


class NoService(RouterError):
    """Raised when the app has no service running."""

    def __init__(self, app: str):
        super().__init__(f'no service found for app "{app}"')
        self.app = app


class NoBackendTarget(RouterError):
    """Raised when no default (empty prefix) backend target is given."""

    def __init__(self):
        super().__init__("No default backend target found")


class AppSwapped(RouterError):
    """Raised when removing the resources of a swapped app."""

    def __init__(self, app: str, dst_app: str):
        super().__init__(f"app {app} currently swapped with {dst_app}")
        self.app = app
        self.dst_app = dst_app


class CrossNamespaceSwap(RouterError):
    """Raised when swapping apps living in different namespaces."""

    def __init__(self, src_namespace: str, dst_namespace: str):
        super().__init__(
            f"unable to swap apps with different namespaces: {src_namespace} != {dst_namespace}"
        )


class SwapRollbackError(RouterError):
    """Raised when a failed swap could not be rolled back."""

    def __init__(self, error: Exception, rollback_error: Exception):
        super().__init__(f"failed to rollback swap {error}: {rollback_error}")
        self.error = error
        self.rollback_error = rollback_error


class BaseService:
    """Cluster access shared by the routers of one cluster."""

    def __init__(
        self,
        client: Client,
        namespace: str = "default",
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ):
        self.client = client
        self.namespace = namespace
        self.labels = labels or {}
        self.annotations = annotations or {}

    def healthcheck(self):
        """Raise if services can't be listed."""
        for _ in self.client.list(Service, namespace=self.namespace):
            break

    def get_web_service(self, app_name: str, target: BackendTarget) -> Service:
        try:
            return self.client.get(Service, name=target.service, namespace=target.namespace)
        except ApiError as e:
            if e.status.code == 404:
                raise NoService(app_name) from e
            raise

    def has_crd(self) -> bool:
        try:
            self.client.get(CustomResourceDefinition, name=APP_CRD_NAME)
        except ApiError as e:
            if e.status.code == 404:
                return False
            raise
        return True

    def get_app(self, app_name: str):
        """Return the tsuru App resource or None when the CRD isn't installed."""
        if not self.has_crd():
            return None
        return self.client.get(App, name=app_name, namespace=self.namespace)

    def get_app_namespace(self, app_name: str) -> str:
        app = self.get_app(app_name)
        if app is None:
            return self.namespace
        return app_namespace(app) or self.namespace

    def default_backend_target(
        self, prefixes: List[BackendPrefix], namespace: str = ""
    ) -> BackendTarget:
        """Target of the empty prefix; a target without namespace lives in ``namespace``."""
        for prefix in prefixes:
            if prefix.prefix == "":
                return _in_namespace(prefix.target, namespace)
        raise NoBackendTarget()

    def backend_targets(
        self, prefixes: List[BackendPrefix], all_backends: bool, namespace: str = ""
    ) -> Dict[str, BackendTarget]:
        """Targets keyed by sanitized prefix, the base one under ``default``.

        Without ``all_backends`` only the base target is returned.
        """
        targets: Dict[str, BackendTarget] = {}
        if all_backends:
            for prefix in prefixes:
                if prefix.prefix == "":
                    targets["default"] = _in_namespace(prefix.target, namespace)
                else:
                    key = prefix.prefix.replace("_", "-")
                    targets[key] = _in_namespace(prefix.target, namespace)
        else:
            targets["default"] = self.default_backend_target(prefixes, namespace)
        if not targets:
            raise NoBackendTarget()
        return targets

    def status_for_object(self, namespace: str, kind: str, uid: str) -> str:
        """Describe the most recent event of each reason for an object."""
        events = list(
            self.client.list(
                Event,
                namespace=namespace,
                fields={"involvedObject.kind": kind, "involvedObject.uid": uid},
            )
        )
        events.sort(key=_event_time, reverse=True)

        lines = []
        seen_reasons = set()
        for event in events:
            if event.reason in seen_reasons:
                continue
            seen_reasons.add(event.reason)
            lines.append(f"{_rfc3339(_event_time(event))} - {event.type} - {event.message}\n")
        return "".join(lines)

    def replace_pair(self, src, dst, undo: Callable[[], None]):
        """Write two swapped objects, compensating on the first if the second fails.

        ``undo`` reverts the in-memory swap of ``src`` and ``dst``.
        """
        updated = self.client.replace(src)
        try:
            self.client.replace(dst)
        except ApiError as e:
            logger.error(f"Failed to update {dst.metadata.name}, rolling back swap: {e}")
            undo()
            src.metadata.resourceVersion = updated.metadata.resourceVersion
            try:
                self.client.replace(src)
            except ApiError as rollback_error:
                raise SwapRollbackError(e, rollback_error) from e
            raise


def hashed_resource_name(id: InstanceID, name: str, limit: int) -> str:
    """Bound ``name`` (plus the instance suffix) to ``limit`` characters.

    Truncated names end with the first 16 hex digits of the sha256 of the
    full name.
    """
    if id.instance_name:
        name = f"{name}-{id.instance_name}"
    if len(name) <= limit:
        return name
    digest = hashlib.sha256(name.encode()).hexdigest()
    return f"{name[:limit - 17]}-{digest[:16]}"


def app_namespace(app) -> str:
    return (app.spec or {}).get("namespaceName", "")


def app_web_port(app) -> int:
    """Port the web process listens on according to the tsuru App resource."""
    if app is None:
        return DEFAULT_SERVICE_PORT
    groups = (((app.spec or {}).get("configs") or {}).get("groups")) or {}
    fallback = None
    for group in sorted(groups):
        processes = groups[group] or {}
        for process in sorted(processes):
            ports = (processes[process] or {}).get("ports") or []
            if not ports:
                continue
            port = ports[0].get("target_port") or ports[0].get("port")
            if not port:
                continue
            if process == "web":
                return int(port)
            if fallback is None:
                fallback = int(port)
    return fallback or DEFAULT_SERVICE_PORT


def is_frozen(values: Optional[Dict[str, str]]) -> bool:
    return parse_bool((values or {}).get(ROUTER_FREEZE_LABEL))


def is_swapped(meta: Optional[ObjectMeta]) -> Tuple[str, bool]:
    """Return the app ``meta`` is swapped with, if any."""
    target = ((meta and meta.labels) or {}).get(SWAP_LABEL, "")
    return target, bool(target)


def swap_labels(src: ObjectMeta, dst: ObjectMeta):
    """Toggle the symmetric swapped-with labels of two resources."""
    if src.labels is None:
        src.labels = {}
    if dst.labels is None:
        dst.labels = {}
    if src.labels.get(SWAP_LABEL) and src.labels.get(SWAP_LABEL) == dst.labels.get(APP_LABEL):
        src.labels.pop(SWAP_LABEL, None)
        dst.labels.pop(SWAP_LABEL, None)
    else:
        src.labels[SWAP_LABEL] = dst.labels.get(APP_LABEL, "")
        dst.labels[SWAP_LABEL] = src.labels.get(APP_LABEL, "")


def _event_time(event: Event) -> datetime:
    if event.metadata and event.metadata.creationTimestamp:
        return event.metadata.creationTimestamp
    return datetime.min.replace(tzinfo=timezone.utc)


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _in_namespace(target: BackendTarget, namespace: str) -> BackendTarget:
    if target.namespace or not namespace:
        return target
    return BackendTarget(service=target.service, namespace=namespace)
