#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Resolution of the router serving a request.

A :class:`Backend` turns the controller mode of a request (and, for multiple
clusters, its cluster headers) into a :class:`~kubernetes_router.router.Router`.
"""

from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from kubernetes_router.kubernetes.ingress import IngressService, new_nginx_ingress_service
from kubernetes_router.kubernetes.istio import IstioGateway
from kubernetes_router.kubernetes.loadbalancer import LBService
from kubernetes_router.kubernetes.service import BaseService
from kubernetes_router.router import Router, RouterError

SERVICE_MODES = ("service", "loadbalancer", "")
INGRESS_MODE = "ingress"
NGINX_INGRESS_MODES = ("ingress-nginx", "nginx-ingress")
ISTIO_GATEWAY_MODE = "istio-gateway"


class BackendNotFound(RouterError):
    """Raised when no router is configured for the requested mode."""

    status_code = 404

    def __init__(self):
        super().__init__("Backend not found")


class ModeNotFound(RouterError):
    status_code = 404

    def __init__(self, mode: str):
        super().__init__("Mode not found")
        self.mode = mode


class Backend(ABC):
    @abstractmethod
    def router(self, mode: str, headers: Mapping[str, str]) -> Router:
        """Return the router for ``mode``; an empty mode selects the default one."""

    @abstractmethod
    def healthcheck(self) -> None:
        pass


class RouterFactory:
    """Builds routers of every mode from the process wide settings.

    :param domain: suffix of the ingress and gateway hosts.
    :param ingress_class: class of the ingresses of the ``ingress`` mode.
    :param use_ingress_class_name: use ``spec.ingressClassName`` for the ``ingress`` mode.
    :param http_port: port appended to non TLS ingress addresses.
    :param opts_as_labels: router options copied to load balancer labels.
    :param opts_as_labels_docs: help text for ``opts_as_labels``.
    :param pool_labels: extra load balancer labels per pool.
    :param gateway_selector: pod selector of the Istio gateway servers.
    """

    def __init__(
        self,
        domain: str = "",
        ingress_class: str = "",
        use_ingress_class_name: bool = False,
        http_port: int = 0,
        opts_as_labels: Optional[Dict[str, str]] = None,
        opts_as_labels_docs: Optional[Dict[str, str]] = None,
        pool_labels: Optional[Dict[str, Dict[str, str]]] = None,
        gateway_selector: Optional[Dict[str, str]] = None,
    ):
        self.domain = domain
        self.ingress_class = ingress_class
        self.use_ingress_class_name = use_ingress_class_name
        self.http_port = http_port
        self.opts_as_labels = opts_as_labels or {}
        self.opts_as_labels_docs = opts_as_labels_docs or {}
        self.pool_labels = pool_labels or {}
        self.gateway_selector = gateway_selector or {}

    def __call__(self, mode: str, base: BaseService) -> Router:
        if mode in SERVICE_MODES:
            return LBService(
                base,
                opts_as_labels=self.opts_as_labels,
                opts_as_labels_docs=self.opts_as_labels_docs,
                pool_labels=self.pool_labels,
            )
        if mode == INGRESS_MODE:
            return IngressService(
                base,
                domain_suffix=self.domain,
                ingress_class=self.ingress_class,
                use_ingress_class_name=self.use_ingress_class_name,
                http_port=self.http_port,
            )
        if mode in NGINX_INGRESS_MODES:
            return new_nginx_ingress_service(
                base, domain_suffix=self.domain, http_port=self.http_port
            )
        if mode == ISTIO_GATEWAY_MODE:
            return IstioGateway(
                base, domain_suffix=self.domain, gateway_selector=self.gateway_selector
            )
        raise ModeNotFound(mode)
