#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Router exposing apps through an Istio Gateway and VirtualService.

The VirtualService may be edited by hand, so hosts, gateways and route
destinations the router doesn't know about are left alone.
"""

import logging
from typing import Dict, List, Optional, Set

from lightkube import ApiError
from lightkube.models.meta_v1 import ObjectMeta

from kubernetes_router.kubernetes.resources import Gateway, VirtualService
from kubernetes_router.kubernetes.service import (
    APP_LABEL,
    AppSwapped,
    BaseService,
    hashed_resource_name,
    is_frozen,
    is_swapped,
)
from kubernetes_router.router import (
    EnsureBackendOpts,
    InstanceID,
    Router,
    RouterCNAME,
    RouterError,
    RoutesRequestExtraData,
)
from kubernetes_router.utils import join_hosts, split_hosts

logger = logging.getLogger(__name__)

ANNOTATION_ADDITIONAL_HOSTS = "tsuru.io/additional-hosts"
MESH_GATEWAY = "mesh"
PLACEHOLDER_HOST = "kubernetes-router-placeholder"
DEFAULT_DOMAIN = "local"


class SwapNotSupported(RouterError):
    def __init__(self):
        super().__init__("swap is not supported, the virtualservice should be edited manually")


class IstioGateway(Router, RouterCNAME):
    """Manages one Gateway and one VirtualService per app.

    :param base: cluster access shared with the other routers.
    :param domain_suffix: suffix of the app host, ``<app>.<suffix>``.
    :param gateway_selector: pod selector of the Gateway servers.
    """

    def __init__(
        self,
        base: BaseService,
        domain_suffix: str = DEFAULT_DOMAIN,
        gateway_selector: Optional[Dict[str, str]] = None,
    ):
        self.base = base
        self.client = base.client
        self.domain_suffix = domain_suffix or DEFAULT_DOMAIN
        self.gateway_selector = gateway_selector or {}

    def healthcheck(self):
        """Check the cluster API is reachable."""
        self.base.healthcheck()

    def supported_options(self) -> Dict[str, str]:
        """Istio routers take no extra options."""
        return {}

    def gateway_name(self, id: InstanceID) -> str:
        """Name of the Gateway of ``id``."""
        return hashed_resource_name(id, id.app_name, 253)

    def vs_name(self, id: InstanceID) -> str:
        """Name of the VirtualService of ``id``."""
        return hashed_resource_name(id, id.app_name, 253)

    def gateway_host(self, id: InstanceID) -> str:
        """Default host of ``id`` under the domain suffix."""
        if id.instance_name:
            return f"{id.instance_name}.instance.{id.app_name}.{self.domain_suffix}"
        return f"{id.app_name}.{self.domain_suffix}"

    def ensure(self, id: InstanceID, opts: EnsureBackendOpts):
        """Converge the Gateway and VirtualService of ``id`` to ``opts``."""
        namespace = self.base.get_app_namespace(id.app_name)
        target = self.base.default_backend_target(opts.prefixes, namespace)

        vs = self._get_vs(id, namespace)
        existing = vs is not None
        if existing and is_frozen(vs.metadata.annotations):
            logger.info(f"VirtualService {vs.metadata.name} is frozen, skipping")
            return

        self._ensure_gateway(id, namespace, opts)

        if not existing:
            vs = VirtualService(
                metadata=ObjectMeta(name=self.vs_name(id), namespace=namespace),
                spec={"gateways": [MESH_GATEWAY]},
            )
        meta = vs.metadata
        meta.labels = {**(meta.labels or {}), **self.base.labels, APP_LABEL: id.app_name}

        spec = vs.spec
        gateways = spec.setdefault("gateways", [])
        if self.gateway_name(id) not in gateways:
            gateways.append(self.gateway_name(id))

        hosts = spec.setdefault("hosts", [])
        for host in (self.gateway_host(id), target.service or PLACEHOLDER_HOST):
            if host != PLACEHOLDER_HOST and host not in hosts:
                hosts.append(host)
        _set_destination(spec, target.service or PLACEHOLDER_HOST)

        meta.annotations = meta.annotations or {}
        _update_additional_hosts(meta.annotations, hosts, set(opts.cnames))
        vs["metadata"] = meta

        if existing:
            self.client.replace(vs)
            logger.info(f"Updated VirtualService {meta.name} in namespace {namespace}")
        else:
            self.client.create(vs)
            logger.info(f"Created VirtualService {meta.name} in namespace {namespace}")

    def update(self, id: InstanceID, extra_data: RoutesRequestExtraData):
        """Point the route of the VirtualService to another service."""
        namespace = self.base.get_app_namespace(id.app_name)
        vs = self.client.get(VirtualService, name=self.vs_name(id), namespace=namespace)
        if is_frozen(vs.metadata.annotations):
            return
        service = extra_data.service or f"{id.app_name}-web"
        spec = vs.spec
        hosts = spec.setdefault("hosts", [])
        for route in _routes(spec):
            previous = route["destination"].get("host")
            route["destination"]["host"] = service
            if previous in hosts:
                hosts.remove(previous)
            break
        else:
            _set_destination(spec, service)
        if service not in hosts:
            hosts.append(service)
        self.client.replace(vs)
        logger.info(f"Updated VirtualService {vs.metadata.name} to service {service}")

    def remove(self, id: InstanceID):
        """Delete the Gateway of ``id`` and detach it from the VirtualService."""
        namespace = self.base.get_app_namespace(id.app_name)
        vs = self._get_vs(id, namespace)
        if vs is not None:
            dst_app, swapped = is_swapped(vs.metadata)
            if swapped:
                raise AppSwapped(id.app_name, dst_app)
            gateways = vs.spec.get("gateways") or []
            if self.gateway_name(id) in gateways:
                gateways.remove(self.gateway_name(id))
                self.client.replace(vs)
        try:
            self.client.delete(Gateway, name=self.gateway_name(id), namespace=namespace)
            logger.info(f"Deleted Gateway {self.gateway_name(id)} in namespace {namespace}")
        except ApiError as e:
            if e.status.code != 404:
                raise
            logger.debug(f"Gateway {self.gateway_name(id)} already deleted")

    def swap(self, src: InstanceID, dst: InstanceID):
        """Swapping is not available for Istio gateways."""
        raise SwapNotSupported()

    def get_addresses(self, id: InstanceID) -> List[str]:
        """Default host of ``id``."""
        return [self.gateway_host(id)]

    def set_cname(self, id: InstanceID, cname: str):
        """Add ``cname`` to the VirtualService hosts."""
        self._update_cnames(id, lambda cnames: cnames | {cname})

    def unset_cname(self, id: InstanceID, cname: str):
        """Remove ``cname`` from the VirtualService hosts."""
        self._update_cnames(id, lambda cnames: cnames - {cname})

    def get_cnames(self, id: InstanceID) -> List[str]:
        """CNAMEs recorded on the VirtualService."""
        namespace = self.base.get_app_namespace(id.app_name)
        vs = self.client.get(VirtualService, name=self.vs_name(id), namespace=namespace)
        return split_hosts((vs.metadata.annotations or {}).get(ANNOTATION_ADDITIONAL_HOSTS))

    def _update_cnames(self, id: InstanceID, change):
        namespace = self.base.get_app_namespace(id.app_name)
        vs = self.client.get(VirtualService, name=self.vs_name(id), namespace=namespace)
        meta = vs.metadata
        if is_frozen(meta.annotations):
            return
        meta.annotations = meta.annotations or {}
        current = set(split_hosts(meta.annotations.get(ANNOTATION_ADDITIONAL_HOSTS)))
        hosts = vs.spec.setdefault("hosts", [])
        _update_additional_hosts(meta.annotations, hosts, change(current))
        vs["metadata"] = meta
        self.client.replace(vs)

    def _ensure_gateway(self, id: InstanceID, namespace: str, opts: EnsureBackendOpts):
        annotations = dict(self.base.annotations)
        annotations.update(opts.opts.additional_opts)
        gateway = Gateway(
            metadata=ObjectMeta(
                name=self.gateway_name(id),
                namespace=namespace,
                labels={**self.base.labels, APP_LABEL: id.app_name},
                annotations=annotations,
            ),
            spec={
                "selector": dict(self.gateway_selector),
                "servers": [
                    {
                        "port": {"number": 80, "name": "http2", "protocol": "HTTP2"},
                        "hosts": ["*"],
                    }
                ],
            },
        )
        try:
            self.client.create(gateway)
            logger.info(f"Created Gateway {gateway.metadata.name} in namespace {namespace}")
        except ApiError as e:
            if e.status.code != 409:
                raise
            logger.debug(f"Gateway {gateway.metadata.name} already exists")

    def _get_vs(self, id: InstanceID, namespace: str):
        try:
            return self.client.get(VirtualService, name=self.vs_name(id), namespace=namespace)
        except ApiError as e:
            if e.status.code == 404:
                return None
            raise


def _routes(spec: dict):
    for http in spec.get("http") or []:
        for route in http.get("route") or []:
            if isinstance(route.get("destination"), dict):
                yield route


def _set_destination(spec: dict, host: str):
    """Make the first http entry route to ``host``, keeping other destinations."""
    http = spec.setdefault("http", [])
    if not http:
        http.append({})
    routes = http[0].setdefault("route", [])
    for route in routes:
        destination = route.get("destination") or {}
        if destination.get("host") in (host, PLACEHOLDER_HOST):
            destination["host"] = host
            route["destination"] = destination
            return
    routes.append({"destination": {"host": host}})


def _update_additional_hosts(annotations: Dict[str, str], hosts: List[str], cnames: Set[str]):
    """Apply the CNAME set diff to ``hosts`` and record it in ``annotations``."""
    previous = set(split_hosts(annotations.get(ANNOTATION_ADDITIONAL_HOSTS)))
    for host in sorted(previous - cnames):
        if host in hosts:
            hosts.remove(host)
    for host in sorted(cnames):
        if host not in hosts:
            hosts.append(host)
    if cnames:
        annotations[ANNOTATION_ADDITIONAL_HOSTS] = join_hosts(cnames)
    else:
        annotations.pop(ANNOTATION_ADDITIONAL_HOSTS, None)
