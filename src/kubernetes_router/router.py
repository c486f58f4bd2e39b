#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Router capabilities and the data exchanged with the tsuru router API.

Every controller mode (load balancer, ingress, nginx ingress, istio gateway)
implements :class:`Router`; the optional :class:`RouterTLS`,
:class:`RouterCNAME` and :class:`RouterStatus` capabilities are probed by the
HTTP layer with ``isinstance``.
"""

import json
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kubernetes_router.utils import parse_bool

# Option names understood by every router flavor.
POOL = "tsuru.io/app-pool"
EXPOSED_PORT = "exposed-port"
DOMAIN = "domain"
ROUTE = "route"
ACME = "tls-acme"
ACME_CNAME = "tls-acme-cname"
DOMAIN_SUFFIX = "domain-suffix"
DOMAIN_PREFIX = "domain-prefix"
EXTERNAL_TRAFFIC_POLICY = "external-traffic-policy"
EXPOSE_ALL_SERVICES = "expose-all-services"

BACKEND_STATUS_READY = "ready"
BACKEND_STATUS_NOT_READY = "not ready"

# Keys serialized in the opts annotation, in this order.
_ANNOTATION_FIELDS = (
    ("Pool", "pool"),
    ("ExposedPort", "exposed_port"),
    ("Domain", "domain"),
    ("Route", "route"),
    ("DomainSuffix", "domain_suffix"),
    ("DomainPrefix", "domain_prefix"),
    ("ExternalTrafficPolicy", "external_traffic_policy"),
    ("Acme", "acme"),
    ("AcmeCName", "acme_cname"),
    ("ExposeAllServices", "expose_all_services"),
    ("AdditionalOpts", "additional_opts"),
)


class RouterError(Exception):
    """Base class for errors reported by a router.

    ``status_code`` is the HTTP status used when the error reaches the API.
    """

    status_code = 500


class IngressAlreadyExists(RouterError):
    """Raised when creating a routing resource that already exists."""

    status_code = 409

    def __init__(self):
        super().__init__("ingress already exists")


class HTTPError(RouterError):
    """An error carrying an explicit HTTP status and body."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(body)
        self.status_code = status
        self.body = body


class InstanceID(NamedTuple):
    """Identifies one router instance of an app."""

    app_name: str
    instance_name: str = ""


class BackendTarget(BaseModel):
    """A cluster-local service serving an app (or one of its prefixes)."""

    service: str = ""
    namespace: str = ""


class BackendPrefix(BaseModel):
    prefix: str = ""
    target: BackendTarget = Field(default_factory=BackendTarget)


class Opts(BaseModel):
    """Router options sent by tsuru as a flat string map."""

    model_config = ConfigDict(validate_assignment=True)

    pool: str = ""
    exposed_port: str = ""
    domain: str = ""
    route: str = ""
    domain_suffix: str = ""
    domain_prefix: str = ""
    external_traffic_policy: str = ""
    acme: bool = False
    acme_cname: bool = False
    expose_all_services: bool = False
    additional_opts: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_flat(cls, data: Optional[dict], header_opts: Iterable[str] = ()) -> "Opts":
        """Build the options from the tsuru request format.

        ``header_opts`` are raw ``key=value`` strings coming from the
        ``X-Router-Opt`` header; keys from ``data`` take precedence. Values
        that are not strings are ignored.
        """
        opts = cls()
        additional: Dict[str, str] = {}
        for header_value in header_opts:
            # repeated headers may arrive joined by commas
            for header_opt in header_value.split(","):
                key, sep, value = header_opt.partition("=")
                if sep:
                    additional[key.strip()] = value.strip()

        for key, value in (data or {}).items():
            if not isinstance(value, str):
                continue
            if key == POOL:
                opts.pool = value
            elif key == EXPOSED_PORT:
                opts.exposed_port = value
            elif key == DOMAIN:
                opts.domain = value
            elif key == ROUTE:
                opts.route = value
            elif key == ACME:
                opts.acme = parse_bool(value)
            elif key == ACME_CNAME:
                opts.acme_cname = parse_bool(value)
            elif key == DOMAIN_SUFFIX:
                opts.domain_suffix = value
            elif key == DOMAIN_PREFIX:
                opts.domain_prefix = value
            elif key == EXTERNAL_TRAFFIC_POLICY:
                opts.external_traffic_policy = value
            elif key == EXPOSE_ALL_SERVICES:
                opts.expose_all_services = parse_bool(value)
            else:
                additional[key] = value
        opts.additional_opts = additional
        return opts

    def to_annotation(self) -> str:
        """Serialize the options for the ``router.tsuru.io/opts`` annotation."""
        out = {}
        for key, attr in _ANNOTATION_FIELDS:
            value = getattr(self, attr)
            if not value:
                continue
            if isinstance(value, dict):
                value = dict(sorted(value.items()))
            out[key] = value
        return json.dumps(out, separators=(",", ":"))

    @classmethod
    def from_annotation(cls, raw: Optional[str]) -> "Opts":
        if not raw:
            return cls()
        data = json.loads(raw)
        return cls(**{attr: data[key] for key, attr in _ANNOTATION_FIELDS if key in data})


class EnsureBackendOpts(BaseModel):
    """Full desired state of an app's routing."""

    model_config = ConfigDict(populate_by_name=True)

    opts: Opts = Field(default_factory=Opts)
    cnames: List[str] = Field(default_factory=list)
    team: str = ""
    cert_issuers: Dict[str, str] = Field(default_factory=dict, alias="certIssuers")
    tags: List[str] = Field(default_factory=list)
    prefixes: List[BackendPrefix] = Field(default_factory=list)

    @field_validator("opts", mode="before")
    @classmethod
    def _flat_opts(cls, value):
        if isinstance(value, dict):
            return Opts.from_flat(value)
        return value

    @field_validator("cnames", "tags", mode="before")
    @classmethod
    def _null_list(cls, value):
        return value or []

    @field_validator("cert_issuers", mode="before")
    @classmethod
    def _null_map(cls, value):
        return value or {}


class CertData(BaseModel):
    certificate: str = ""
    key: str = ""


class RoutesRequestExtraData(BaseModel):
    namespace: str = ""
    service: str = ""


class RoutesRequestData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prefix: str = ""
    extra_data: RoutesRequestExtraData = Field(
        default_factory=RoutesRequestExtraData, alias="extraData"
    )


def described_options() -> Dict[str, str]:
    """Help text for the options shared by all routers."""
    return {
        EXPOSED_PORT: "Port to be exposed by the Load Balancer. Defaults to 80.",
        DOMAIN: "Domain used on Ingress.",
        ROUTE: "Path used on Ingress rule.",
        ACME: "If set to true, adds ingress TLS options to Ingress. Defaults to false.",
        ACME_CNAME: (
            "If set to true, adds ingress TLS options to CName Ingresses. Defaults to false."
        ),
        DOMAIN_SUFFIX: "Domain suffix used to build the app address.",
        DOMAIN_PREFIX: "Domain prefix used to build the app address.",
        EXTERNAL_TRAFFIC_POLICY: "Sets the external traffic policy for the service spec.",
        EXPOSE_ALL_SERVICES: "Expose all processes of the app. Defaults to false.",
    }


class Router(ABC):
    """Reconciles the routing resources of apps."""

    @abstractmethod
    def ensure(self, id: InstanceID, opts: EnsureBackendOpts) -> None:
        """Converge the cluster to the desired state of ``id``."""

    @abstractmethod
    def remove(self, id: InstanceID) -> None:
        """Remove every routing resource owned by ``id``."""

    @abstractmethod
    def update(self, id: InstanceID, extra_data: RoutesRequestExtraData) -> None:
        """Point the existing routing resources at a new base service."""

    @abstractmethod
    def get_addresses(self, id: InstanceID) -> List[str]:
        """Addresses where ``id`` is reachable."""

    @abstractmethod
    def swap(self, src: InstanceID, dst: InstanceID) -> None:
        """Exchange the backends of two apps."""

    @abstractmethod
    def supported_options(self) -> Dict[str, str]:
        """Options understood by this router, mapped to their help text."""

    @abstractmethod
    def healthcheck(self) -> None:
        """Raise if the cluster can't be reached."""


class RouterTLS(ABC):
    @abstractmethod
    def add_certificate(self, id: InstanceID, cert_cname: str, cert: CertData) -> None:
        pass

    @abstractmethod
    def get_certificate(self, id: InstanceID, cert_cname: str) -> CertData:
        pass

    @abstractmethod
    def remove_certificate(self, id: InstanceID, cert_cname: str) -> None:
        pass


class RouterCNAME(ABC):
    @abstractmethod
    def set_cname(self, id: InstanceID, cname: str) -> None:
        pass

    @abstractmethod
    def unset_cname(self, id: InstanceID, cname: str) -> None:
        pass

    @abstractmethod
    def get_cnames(self, id: InstanceID) -> List[str]:
        pass


class RouterStatus(ABC):
    @abstractmethod
    def get_status(self, id: InstanceID) -> Tuple[str, str]:
        """Return the backend status and a human readable detail."""
