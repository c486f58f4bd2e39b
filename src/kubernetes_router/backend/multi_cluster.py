#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Backend dispatching requests to the cluster named in their headers.

tsuru identifies the target cluster with ``X-Tsuru-Cluster-Name`` and either
``X-Tsuru-Cluster-Addresses`` (credentials come from the clusters file) or
``X-Tsuru-Cluster-Kube-Config`` (a base64 JSON document with ``cluster`` and
``user`` sections). Requests without them are served by the fallback backend.
"""

import base64
import json
import logging
import threading
from typing import Dict, List, Mapping, Optional, Tuple

import httpx
from deepmerge import always_merger
from lightkube import Client, KubeConfig
from pydantic import BaseModel, ConfigDict, Field

from kubernetes_router.backend import Backend, RouterFactory
from kubernetes_router.kubernetes.service import BaseService
from kubernetes_router.router import Router, RouterError

logger = logging.getLogger(__name__)

CLUSTER_NAME_HEADER = "X-Tsuru-Cluster-Name"
CLUSTER_ADDRESSES_HEADER = "X-Tsuru-Cluster-Addresses"
CLUSTER_KUBE_CONFIG_HEADER = "X-Tsuru-Cluster-Kube-Config"

DEFAULT_TIMEOUT = 10.0
DEFAULT_CONTEXT = "tsuru"


class ClusterNotFound(RouterError):
    def __init__(self):
        super().__init__("cluster not found")


class AmbiguousAuth(RouterError):
    def __init__(self):
        super().__init__(
            "both exec and authProvider mutually exclusive are set in the cluster config"
        )


class AuthProviderConfig(BaseModel):
    name: str
    config: Dict[str, str] = Field(default_factory=dict)


class ExecEnvVar(BaseModel):
    name: str
    value: str


class ExecConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field("client.authentication.k8s.io/v1beta1", alias="apiVersion")
    command: str
    args: List[str] = Field(default_factory=list)
    env: List[ExecEnvVar] = Field(default_factory=list)


class ClusterConfig(BaseModel):
    """One entry of the clusters file."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    default: bool = False
    address: str = ""
    token: str = ""
    ca: str = ""
    auth_provider: Optional[AuthProviderConfig] = Field(None, alias="authProvider")
    exec: Optional[ExecConfig] = None

    def kubeconfig_sections(self, address: str) -> Tuple[dict, dict]:
        """Return the kubeconfig ``cluster`` and ``user`` sections of this cluster."""
        if self.exec is not None and self.auth_provider is not None:
            raise AmbiguousAuth()

        cluster = {"server": self.address or address}
        if self.ca:
            # must be valid base64
            base64.b64decode(self.ca, validate=True)
            cluster["certificate-authority-data"] = self.ca

        user: dict = {}
        if self.token:
            user["token"] = self.token
        if self.auth_provider is not None:
            user["auth-provider"] = self.auth_provider.model_dump()
        if self.exec is not None:
            user["exec"] = self.exec.model_dump(by_alias=True)
            user["exec"]["interactiveMode"] = "Never"
        return cluster, user


class ClustersFile(BaseModel):
    clusters: List[ClusterConfig] = Field(default_factory=list)


class MultiCluster(Backend):
    """Builds routers against the cluster selected by the request headers.

    Clients are cached per cluster name and address for the lifetime of the
    process.
    """

    def __init__(
        self,
        fallback: Backend,
        router_factory: RouterFactory,
        clusters: Optional[List[ClusterConfig]] = None,
        namespace: str = "default",
        timeout: Optional[float] = None,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ):
        self.fallback = fallback
        self.router_factory = router_factory
        self.clusters = clusters or []
        self.namespace = namespace
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.labels = labels or {}
        self.annotations = annotations or {}
        self._clients: Dict[Tuple[str, str], Client] = {}
        self._lock = threading.Lock()

    def router(self, mode: str, headers: Mapping[str, str]) -> Router:
        name = headers.get(CLUSTER_NAME_HEADER) or ""
        kube_config = headers.get(CLUSTER_KUBE_CONFIG_HEADER) or ""
        if kube_config:
            client = self._client(
                (name, kube_config), lambda: self._config_from_header(name, kube_config)
            )
        else:
            address = headers.get(CLUSTER_ADDRESSES_HEADER) or ""
            if not address:
                return self.fallback.router(mode, headers)
            client = self._client(
                (name, address), lambda: self._config_from_settings(name, address)
            )

        base = BaseService(
            client, namespace=self.namespace, labels=self.labels, annotations=self.annotations
        )
        return self.router_factory(mode, base)

    def healthcheck(self):
        self.fallback.healthcheck()

    def select_cluster(self, name: str) -> ClusterConfig:
        """The cluster called ``name``, else the default one."""
        selected = None
        for cluster in self.clusters:
            if cluster.name == name:
                return cluster
            if cluster.default:
                selected = cluster
        if selected is None:
            raise ClusterNotFound()
        return selected

    def _client(self, key: Tuple[str, str], config_factory) -> Client:
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                logger.info(f"Creating client for cluster {key[0] or DEFAULT_CONTEXT}")
                client = Client(
                    config=KubeConfig.from_dict(config_factory()),
                    namespace=self.namespace,
                    timeout=httpx.Timeout(self.timeout),
                )
                self._clients[key] = client
            return client

    def _config_from_settings(self, name: str, address: str) -> dict:
        cluster = self.select_cluster(name)
        cluster_section, user_section = cluster.kubeconfig_sections(address)
        return _kubeconfig(name or cluster.name, cluster_section, user_section)

    def _config_from_header(self, name: str, raw: str) -> dict:
        """Kubeconfig from the header, on top of the configured settings of ``name``."""
        data = json.loads(base64.b64decode(raw))
        cluster_section: dict = {}
        user_section: dict = {}
        for cluster in self.clusters:
            if cluster.name == name:
                cluster_section, user_section = cluster.kubeconfig_sections("")
                if not cluster_section["server"]:
                    del cluster_section["server"]
                break
        cluster_section = always_merger.merge(cluster_section, data.get("cluster") or {})
        user_section = always_merger.merge(user_section, data.get("user") or {})
        return _kubeconfig(name, cluster_section, user_section)


def load_clusters_file(data: dict) -> List[ClusterConfig]:
    return ClustersFile.model_validate(data or {}).clusters


def _kubeconfig(name: str, cluster: dict, user: dict) -> dict:
    name = name or DEFAULT_CONTEXT
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": name,
        "clusters": [{"name": name, "cluster": cluster}],
        "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
        "users": [{"name": name, "user": user}],
    }
