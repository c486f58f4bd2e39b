#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Router exposing apps through Services of type LoadBalancer."""

import logging
from copy import deepcopy
from typing import Dict, List, Optional, Tuple

from lightkube import ApiError
from lightkube.models.core_v1 import ServicePort, ServiceSpec
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import Service

from kubernetes_router.kubernetes.service import (
    APP_BASE_SERVICE_NAME_LABEL,
    APP_BASE_SERVICE_NAMESPACE_LABEL,
    APP_LABEL,
    APP_POOL_LABEL,
    DEFAULT_SERVICE_PORT,
    EXTERNAL_DNS_HOSTNAME_LABEL,
    EXTERNAL_SERVICE_LABEL,
    MANAGED_SERVICE_LABEL,
    AppSwapped,
    BaseService,
    CrossNamespaceSwap,
    app_namespace,
    hashed_resource_name,
    is_frozen,
    is_swapped,
    swap_labels,
)
from kubernetes_router.router import (
    BACKEND_STATUS_NOT_READY,
    BACKEND_STATUS_READY,
    EXPOSED_PORT,
    BackendPrefix,
    BackendTarget,
    EnsureBackendOpts,
    InstanceID,
    Opts,
    Router,
    RouterError,
    RouterStatus,
    RoutesRequestExtraData,
)
from kubernetes_router.utils import is_hostname, merge_maps, parse_bool

logger = logging.getLogger(__name__)

DEFAULT_LB_PORT = 80
EXPOSE_ALL_PORTS_OPT = "expose-all-ports"
# tsuru can't send option names containing dots; this prefix allows ":" instead.
ANNOTATION_OPT_PREFIX = "svc-annotation-"
OPTS_ANNOTATION = "router.tsuru.io/opts"


class LoadBalancerNotReady(RouterError):
    """Raised when the load balancer has no address assigned yet."""

    def __init__(self):
        super().__init__("load balancer is not ready")


class LBService(Router, RouterStatus):
    """Manages one LoadBalancer Service per app.

    :param base: cluster access shared with the other routers.
    :param opts_as_labels: router options copied to service labels, mapped to the label name.
    :param opts_as_labels_docs: help text for the ``opts_as_labels`` options.
    :param pool_labels: extra labels set on the services of a given pool.
    """

    def __init__(
        self,
        base: BaseService,
        opts_as_labels: Optional[Dict[str, str]] = None,
        opts_as_labels_docs: Optional[Dict[str, str]] = None,
        pool_labels: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.base = base
        self.client = base.client
        self.opts_as_labels = opts_as_labels or {}
        self.opts_as_labels_docs = opts_as_labels_docs or {}
        self.pool_labels = pool_labels or {}

    def healthcheck(self):
        """Check the cluster API is reachable."""
        self.base.healthcheck()

    def supported_options(self) -> Dict[str, str]:
        """Options understood by this router, with their help text."""
        opts = {
            EXPOSED_PORT: "",
            EXPOSE_ALL_PORTS_OPT: (
                "Expose all ports used by application in the Load Balancer. Defaults to false."
            ),
        }
        for name, label in self.opts_as_labels.items():
            opts[name] = self.opts_as_labels_docs.get(name) or label
        return opts

    def service_name(self, id: InstanceID) -> str:
        """Name of the load balancer service of ``id``."""
        return hashed_resource_name(id, f"{id.app_name}-router-lb", 63)

    def ensure(self, id: InstanceID, opts: EnsureBackendOpts):
        """Converge the load balancer service of ``id`` to ``opts``."""
        app = self.base.get_app(id.app_name)
        namespace = (app_namespace(app) if app is not None else "") or self.base.namespace
        existing = self._get_lb_service(id, namespace)
        if existing is None:
            lb_service = Service(
                metadata=ObjectMeta(name=self.service_name(id), namespace=namespace),
                spec=ServiceSpec(type="LoadBalancer"),
            )
        else:
            lb_service = deepcopy(existing)

        if is_frozen(lb_service.metadata.labels):
            logger.info(f"LoadBalancer {lb_service.metadata.name} is frozen, skipping")
            return
        if is_swapped(lb_service.metadata)[1]:
            logger.info(f"LoadBalancer {lb_service.metadata.name} is swapped, skipping")
            return

        target = self.base.default_backend_target(opts.prefixes, namespace)
        web_service = self.base.get_web_service(id.app_name, target)

        lb_service.spec.selector = deepcopy(web_service.spec.selector)
        self._fill_labels_and_annotations(lb_service, id, web_service, opts.opts, target)
        lb_service.spec.ports = self._ports_for_service(lb_service, opts.opts, web_service)
        lb_service.spec.externalTrafficPolicy = opts.opts.external_traffic_policy or None

        if existing is None:
            self.client.create(lb_service)
            logger.info(f"Created LoadBalancer {lb_service.metadata.name} in {namespace}")
            return

        if _service_has_changes(existing, lb_service):
            self.client.replace(lb_service)
            logger.info(f"Updated LoadBalancer {lb_service.metadata.name} in {namespace}")
        else:
            logger.debug(f"No changes for LoadBalancer {lb_service.metadata.name}")

    def update(self, id: InstanceID, extra_data: RoutesRequestExtraData):
        """Re-point the load balancer using the options it was created with."""
        namespace = self.base.get_app_namespace(id.app_name)
        existing = self._get_lb_service(id, namespace)
        opts = Opts()
        if existing is not None:
            if not is_ready(existing):
                raise LoadBalancerNotReady()
            opts = Opts.from_annotation((existing.metadata.annotations or {}).get(OPTS_ANNOTATION))
        target = BackendTarget(
            service=extra_data.service or f"{id.app_name}-web",
            namespace=extra_data.namespace or namespace,
        )
        self.ensure(id, EnsureBackendOpts(opts=opts, prefixes=[BackendPrefix(target=target)]))

    def remove(self, id: InstanceID):
        """Delete the load balancer service of ``id``."""
        namespace = self.base.get_app_namespace(id.app_name)
        service = self._get_lb_service(id, namespace)
        if service is None:
            return
        dst_app, swapped = is_swapped(service.metadata)
        if swapped:
            raise AppSwapped(id.app_name, dst_app)
        try:
            self.client.delete(Service, name=service.metadata.name, namespace=namespace)
            logger.info(f"Deleted LoadBalancer {service.metadata.name} in namespace {namespace}")
        except ApiError as e:
            if e.status.code != 404:
                raise
            logger.debug(f"LoadBalancer {service.metadata.name} already deleted")

    def swap(self, src: InstanceID, dst: InstanceID):
        """Exchange the selectors of two ready load balancers."""
        src_namespace = self.base.get_app_namespace(src.app_name)
        dst_namespace = self.base.get_app_namespace(dst.app_name)
        src_service = self.client.get(
            Service, name=self.service_name(src), namespace=src_namespace
        )
        if not is_ready(src_service):
            raise LoadBalancerNotReady()
        dst_service = self.client.get(
            Service, name=self.service_name(dst), namespace=dst_namespace
        )
        if not is_ready(dst_service):
            raise LoadBalancerNotReady()
        if is_frozen(src_service.metadata.labels) or is_frozen(dst_service.metadata.labels):
            logger.info(f"Not swapping {src.app_name} and {dst.app_name}: frozen load balancer")
            return
        if src_namespace != dst_namespace:
            raise CrossNamespaceSwap(src_namespace, dst_namespace)

        def _swap():
            src_service.spec.selector, dst_service.spec.selector = (
                dst_service.spec.selector,
                src_service.spec.selector,
            )
            swap_labels(src_service.metadata, dst_service.metadata)

        _swap()
        self.base.replace_pair(src_service, dst_service, _swap)
        logger.info(f"Swapped LoadBalancers of {src.app_name} and {dst.app_name}")

    def get_addresses(self, id: InstanceID) -> List[str]:
        """External addresses of the load balancer."""
        namespace = self.base.get_app_namespace(id.app_name)
        service = self.client.get(Service, name=self.service_name(id), namespace=namespace)
        hostnames = (service.metadata.annotations or {}).get(EXTERNAL_DNS_HOSTNAME_LABEL)
        if hostnames:
            return hostnames.split(",")
        addr = ""
        ingresses = _lb_ingresses(service)
        if ingresses:
            addr = ingresses[0].ip or ""
            if service.spec.ports:
                addr = f"{addr}:{service.spec.ports[0].port}"
            if is_hostname(ingresses[0].hostname):
                addr = ingresses[0].hostname
        return [addr]

    def get_status(self, id: InstanceID) -> Tuple[str, str]:
        """Readiness of the load balancer and its recent events."""
        namespace = self.base.get_app_namespace(id.app_name)
        service = self.client.get(Service, name=self.service_name(id), namespace=namespace)
        if is_ready(service):
            return BACKEND_STATUS_READY, ""
        detail = self.base.status_for_object(
            service.metadata.namespace or namespace, "Service", service.metadata.uid
        )
        return BACKEND_STATUS_NOT_READY, detail

    def _get_lb_service(self, id: InstanceID, namespace: str) -> Optional[Service]:
        try:
            return self.client.get(Service, name=self.service_name(id), namespace=namespace)
        except ApiError as e:
            if e.status.code == 404:
                return None
            raise

    def _fill_labels_and_annotations(
        self,
        svc: Service,
        id: InstanceID,
        web_service: Service,
        opts: Opts,
        target: BackendTarget,
    ):
        opts_labels: Dict[str, str] = {}
        registered_opts = self.supported_options()

        annotations = merge_maps(self.base.annotations, {OPTS_ANNOTATION: opts.to_annotation()})
        for name, value in opts.additional_opts.items():
            if name in self.opts_as_labels:
                opts_labels[self.opts_as_labels[name]] = value
                continue
            if name in registered_opts:
                continue
            if name.startswith(ANNOTATION_OPT_PREFIX):
                name = name[len(ANNOTATION_OPT_PREFIX):].replace(":", ".")
            if name.endswith("-"):
                annotations.pop(name[:-1], None)
            else:
                annotations[name] = value

        vhost = ""
        if opts.domain:
            vhost = opts.domain
        elif opts.domain_suffix:
            if opts.domain_prefix:
                vhost = f"{opts.domain_prefix}.{id.app_name}.{opts.domain_suffix}"
            else:
                vhost = f"{id.app_name}.{opts.domain_suffix}"
        if vhost:
            annotations[EXTERNAL_DNS_HOSTNAME_LABEL] = vhost

        svc.metadata.labels = merge_maps(
            svc.metadata.labels,
            self.pool_labels.get(opts.pool),
            opts_labels,
            self.base.labels,
            {
                APP_LABEL: id.app_name,
                MANAGED_SERVICE_LABEL: "true",
                EXTERNAL_SERVICE_LABEL: "true",
                APP_POOL_LABEL: opts.pool,
            },
            web_service.metadata.labels,
            {
                APP_BASE_SERVICE_NAMESPACE_LABEL: target.namespace,
                APP_BASE_SERVICE_NAME_LABEL: target.service,
            },
        )
        svc.metadata.annotations = merge_maps(annotations, web_service.metadata.annotations)

    def _ports_for_service(
        self, svc: Service, opts: Opts, base_service: Service
    ) -> List[ServicePort]:
        try:
            additional_port = int(opts.exposed_port)
        except ValueError:
            additional_port = 0
        if not additional_port:
            additional_port = DEFAULT_LB_PORT

        existing_ports = {p.port: p for p in (svc.spec.ports or [])}
        expose_all_ports = parse_bool(opts.additional_opts.get(EXPOSE_ALL_PORTS_OPT))

        wanted: List[ServicePort] = []
        for base_port in base_service.spec.ports or []:
            if not wanted:
                if base_port.name:
                    name = f"{base_port.name}-extra"
                else:
                    name = f"port-{additional_port}"
                wanted.append(
                    ServicePort(
                        name=name,
                        protocol=base_port.protocol,
                        port=additional_port,
                        targetPort=base_port.targetPort,
                    )
                )
            if not expose_all_ports:
                break
            if base_port.port == additional_port:
                # conflicts with the additional port
                continue
            port = deepcopy(base_port)
            port.nodePort = None
            wanted.append(port)

        if not wanted:
            wanted.append(
                ServicePort(
                    name=f"port-{additional_port}",
                    protocol="TCP",
                    port=additional_port,
                    targetPort=DEFAULT_SERVICE_PORT,
                )
            )

        for port in wanted:
            if port.port in existing_ports:
                port.nodePort = existing_ports[port.port].nodePort
        return wanted


def _lb_ingresses(service: Service) -> list:
    status = service.status
    if status is None or status.loadBalancer is None:
        return []
    return status.loadBalancer.ingress or []


def is_ready(service: Service) -> bool:
    ingresses = _lb_ingresses(service)
    if not ingresses:
        return False
    # aws load balancers have no IP
    return bool(ingresses[0].ip or ingresses[0].hostname)


def _service_has_changes(existing: Service, svc: Service) -> bool:
    if existing.spec != svc.spec:
        return True
    existing_annotations = existing.metadata.annotations or {}
    for key, value in (svc.metadata.annotations or {}).items():
        if existing_annotations.get(key) != value:
            return True
    existing_labels = existing.metadata.labels or {}
    for key, value in (svc.metadata.labels or {}).items():
        if existing_labels.get(key) != value:
            return True
    return False
