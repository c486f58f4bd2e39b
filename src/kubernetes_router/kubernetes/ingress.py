#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Router exposing apps through Ingress resources.

Each app gets a main ingress routing its hosts to the base service and, for
every CNAME, a child ingress routing that hostname to the same backend. The
current CNAME set is recorded in the ``router.tsuru.io/cnames`` annotation of
the main ingress.
"""

import base64
import logging
from copy import deepcopy
from typing import Dict, List, Optional, Set

from lightkube import ApiError
from lightkube.models.meta_v1 import ObjectMeta, OwnerReference
from lightkube.models.networking_v1 import (
    HTTPIngressPath,
    HTTPIngressRuleValue,
    IngressBackend,
    IngressRule,
    IngressServiceBackend,
    IngressSpec,
    IngressTLS,
    ServiceBackendPort,
)
from lightkube.resources.core_v1 import Secret
from lightkube.resources.networking_v1 import Ingress
from lightkube.types import CascadeType

from kubernetes_router.kubernetes.resources import ClusterIssuer, Issuer
from kubernetes_router.kubernetes.service import (
    APP_BASE_SERVICE_NAME_LABEL,
    APP_BASE_SERVICE_NAMESPACE_LABEL,
    APP_LABEL,
    CUSTOM_TAG_PREFIX,
    DOMAIN_LABEL,
    ROUTER_FREEZE_LABEL,
    TEAM_LABEL,
    AppSwapped,
    BaseService,
    CrossNamespaceSwap,
    app_namespace,
    app_web_port,
    hashed_resource_name,
    is_frozen,
    is_swapped,
    swap_labels,
)
from kubernetes_router.router import (
    ACME,
    DOMAIN,
    ROUTE,
    BackendTarget,
    CertData,
    EnsureBackendOpts,
    IngressAlreadyExists,
    InstanceID,
    Opts,
    Router,
    RouterCNAME,
    RouterError,
    RouterTLS,
    RoutesRequestExtraData,
)
from kubernetes_router.utils import join_hosts, parse_bool, split_hosts

logger = logging.getLogger(__name__)

ANNOTATION_CNAMES = "router.tsuru.io/cnames"
ANNOTATION_FREEZE = ROUTER_FREEZE_LABEL
ANNOTATION_ACME = "kubernetes.io/tls-acme"
ANNOTATION_INGRESS_CLASS = "kubernetes.io/ingress.class"
LABEL_CNAME_INGRESS = "router.tsuru.io/is-cname-ingress"

CERT_MANAGER_ISSUER = "cert-manager.io/issuer"
CERT_MANAGER_CLUSTER_ISSUER = "cert-manager.io/cluster-issuer"
CERT_MANAGER_COMMON_NAME = "cert-manager.io/common-name"

CLASS_OPT = "class"
NGINX_ANNOTATIONS_PREFIX = "nginx.ingress.kubernetes.io"
NGINX_INGRESS_CLASS = "nginx"

PATH_TYPE = "ImplementationSpecific"


class ACMEManaged(RouterError):
    """Raised when changing certificates of an ingress handled by ACME."""


class IssuerNotFound(RouterError):
    """Raised when a cert-manager issuer is neither an Issuer nor a ClusterIssuer."""

    def __init__(self, name: str):
        super().__init__(f"issuer {name} not found")
        self.name = name


class CNameInUse(RouterError):
    """Raised when a CNAME ingress already belongs to another app."""

    status_code = 409

    def __init__(self, cname: str, app_name: str):
        super().__init__(f"cname {cname} already exists for app {app_name}")
        self.cname = cname
        self.app_name = app_name


class IngressService(Router, RouterTLS, RouterCNAME):
    """Manages the ingresses of apps.

    :param base: cluster access shared with the other routers.
    :param domain_suffix: suffix of the default app host, ``<app>.<suffix>``.
    :param ingress_class: class of created ingresses, overridable with the ``class`` option.
    :param use_ingress_class_name: set the class on ``spec.ingressClassName`` instead
        of the legacy annotation.
    :param annotations_prefix: prefix for options given without one.
    :param http_port: port appended to non TLS addresses.
    :param opts_as_annotations: extra supported options, mapped to their help text.
    """

    def __init__(
        self,
        base: BaseService,
        domain_suffix: str = "",
        ingress_class: str = "",
        use_ingress_class_name: bool = False,
        annotations_prefix: str = "",
        http_port: int = 0,
        opts_as_annotations: Optional[Dict[str, str]] = None,
    ):
        self.base = base
        self.client = base.client
        self.domain_suffix = domain_suffix
        self.ingress_class = ingress_class
        self.use_ingress_class_name = use_ingress_class_name
        self.annotations_prefix = annotations_prefix
        self.http_port = http_port
        self.opts_as_annotations = opts_as_annotations or {}

    def healthcheck(self):
        """Check the cluster API is reachable."""
        self.base.healthcheck()

    def supported_options(self) -> Dict[str, str]:
        """Options understood by this router, with their help text."""
        opts = {
            DOMAIN: "",
            ACME: "",
            ROUTE: "",
            CLASS_OPT: "Ingress class for the Ingress object",
        }
        opts.update(self.opts_as_annotations)
        return opts

    def ingress_name(self, id: InstanceID) -> str:
        """Name of the main ingress of ``id``."""
        return hashed_resource_name(id, f"kubernetes-router-{id.app_name}-ingress", 253)

    def cname_ingress_name(self, id: InstanceID, cname: str) -> str:
        """Name of the ingress serving ``cname`` for ``id``."""
        return hashed_resource_name(id, f"kubernetes-router-cname-{cname}", 253)

    def secret_name(self, id: InstanceID, cert_name: str) -> str:
        """Name of the TLS secret of ``cert_name``."""
        return hashed_resource_name(id, f"kr-{id.app_name}-{cert_name}", 253)

    def ensure(self, id: InstanceID, opts: EnsureBackendOpts):
        """Converge the main ingress and the CNAME ingresses of ``id`` to ``opts``."""
        app = self.base.get_app(id.app_name)
        namespace = (app_namespace(app) if app is not None else "") or self.base.namespace

        existing = self._get(Ingress, self.ingress_name(id), namespace)
        if existing is not None:
            if is_frozen(existing.metadata.annotations):
                logger.info(f"Ingress {existing.metadata.name} is frozen, skipping")
                return
            if is_swapped(existing.metadata)[1]:
                logger.info(f"Ingress {existing.metadata.name} is swapped, skipping")
                return

        default_target = self.base.default_backend_target(opts.prefixes, namespace)
        targets = self.base.backend_targets(
            opts.prefixes, opts.opts.expose_all_services, namespace
        )
        web_service = self.base.get_web_service(id.app_name, default_target)
        issuers = self._resolve_issuers(namespace, opts.cert_issuers, opts.cnames)
        children = self._cname_children(id, namespace)
        self._check_cnames_available(id, namespace, opts.cnames, children)
        port = app_web_port(app)

        base_host = self._base_host(id, opts.opts)
        rules = [self._rule(base_host, opts.opts.route, default_target, port)]
        for prefix in sorted(k for k in targets if k != "default"):
            rules.append(
                self._rule(f"{prefix}.{base_host}", opts.opts.route, targets[prefix], port)
            )

        labels = dict(self.base.labels)
        labels[APP_LABEL] = id.app_name
        if opts.team:
            labels[TEAM_LABEL] = opts.team
        labels[APP_BASE_SERVICE_NAMESPACE_LABEL] = default_target.namespace
        labels[APP_BASE_SERVICE_NAME_LABEL] = default_target.service
        for tag in opts.tags:
            key, sep, value = tag.partition("=")
            if sep:
                labels[CUSTOM_TAG_PREFIX + key] = value

        annotations, class_name = self._annotations(opts.opts)
        cnames = join_hosts(opts.cnames)
        if cnames:
            annotations[ANNOTATION_CNAMES] = cnames

        tls: List[IngressTLS] = []
        if opts.opts.acme:
            annotations[ANNOTATION_ACME] = "true"
            tls = [
                IngressTLS(hosts=[rule.host], secretName=self.secret_name(id, rule.host))
                for rule in rules
            ]
        else:
            annotations.pop(ANNOTATION_ACME, None)
            annotations.pop(CERT_MANAGER_CLUSTER_ISSUER, None)

        ingress = Ingress(
            metadata=ObjectMeta(
                name=self.ingress_name(id),
                namespace=namespace,
                labels=labels,
                annotations=annotations,
                ownerReferences=[
                    OwnerReference(
                        apiVersion="v1",
                        kind="Service",
                        name=web_service.metadata.name,
                        uid=web_service.metadata.uid,
                        blockOwnerDeletion=True,
                        controller=True,
                    )
                ],
            ),
            spec=IngressSpec(
                ingressClassName=class_name,
                rules=rules,
                tls=tls or None,
            ),
        )
        if existing is not None:
            ingress.metadata.resourceVersion = existing.metadata.resourceVersion
            ingress.spec.defaultBackend = existing.spec.defaultBackend if existing.spec else None
            ingress.spec.tls = _merge_tls(ingress.spec.tls, _kept_tls(existing, rules))
        self._write(existing, ingress)

        self._reconcile_cnames(
            id,
            ingress,
            set(opts.cnames),
            children,
            acme_cname=opts.opts.acme and opts.opts.acme_cname,
            issuers=issuers,
        )

    def update(self, id: InstanceID, extra_data: RoutesRequestExtraData):
        """Point the first rule of the main ingress to another service."""
        app = self.base.get_app(id.app_name)
        namespace = (app_namespace(app) if app is not None else "") or self.base.namespace
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        if is_frozen(ingress.metadata.annotations):
            return
        target = BackendTarget(
            service=extra_data.service or f"{id.app_name}-web",
            namespace=extra_data.namespace or namespace,
        )
        backend = _first_backend(ingress)
        if backend is None:
            raise RouterError(f"ingress {ingress.metadata.name} has no rules")
        backend.service = IngressServiceBackend(
            name=target.service, port=ServiceBackendPort(number=app_web_port(app))
        )
        labels = ingress.metadata.labels or {}
        labels[APP_BASE_SERVICE_NAMESPACE_LABEL] = target.namespace
        labels[APP_BASE_SERVICE_NAME_LABEL] = target.service
        ingress.metadata.labels = labels
        self.client.replace(ingress)
        logger.info(f"Updated Ingress {ingress.metadata.name} to service {target.service}")

    def remove(self, id: InstanceID):
        """Delete the ingresses and certificate secrets of ``id``."""
        namespace = self.base.get_app_namespace(id.app_name)
        ingress = self._get(Ingress, self.ingress_name(id), namespace)
        if ingress is None:
            return
        dst_app, swapped = is_swapped(ingress.metadata)
        if swapped:
            raise AppSwapped(id.app_name, dst_app)
        self._delete(
            Ingress, ingress.metadata.name, namespace, cascade=CascadeType.FOREGROUND
        )
        for child in self._cname_children(id, namespace).values():
            self._delete(Ingress, child.metadata.name, namespace)
        secrets = self.client.list(Secret, namespace=namespace, labels={APP_LABEL: id.app_name})
        for secret in secrets:
            domain = (secret.metadata.labels or {}).get(DOMAIN_LABEL, "")
            if domain and secret.metadata.name == self.secret_name(id, domain):
                self._delete(Secret, secret.metadata.name, namespace)

    def swap(self, src: InstanceID, dst: InstanceID):
        """Exchange the base backends of two apps."""
        src_namespace = self.base.get_app_namespace(src.app_name)
        dst_namespace = self.base.get_app_namespace(dst.app_name)
        src_ingress = self.client.get(
            Ingress, name=self.ingress_name(src), namespace=src_namespace
        )
        dst_ingress = self.client.get(
            Ingress, name=self.ingress_name(dst), namespace=dst_namespace
        )
        if is_frozen(src_ingress.metadata.annotations) or is_frozen(
            dst_ingress.metadata.annotations
        ):
            logger.info(f"Not swapping {src.app_name} and {dst.app_name}: frozen ingress")
            return
        if src_namespace != dst_namespace:
            raise CrossNamespaceSwap(src_namespace, dst_namespace)

        src_backend = _first_backend(src_ingress)
        dst_backend = _first_backend(dst_ingress)
        if src_backend is None or dst_backend is None:
            raise RouterError("unable to swap ingresses without rules")

        def _swap():
            src_backend.service, dst_backend.service = dst_backend.service, src_backend.service
            swap_labels(src_ingress.metadata, dst_ingress.metadata)

        _swap()
        self.base.replace_pair(src_ingress, dst_ingress, _swap)
        logger.info(f"Swapped Ingresses of {src.app_name} and {dst.app_name}")

    def get_addresses(self, id: InstanceID) -> List[str]:
        """URLs of every host served by the main ingress."""
        namespace = self.base.get_app_namespace(id.app_name)
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        tls_hosts: Set[str] = set()
        for entry in ingress.spec.tls or []:
            tls_hosts.update(entry.hosts or [])
        addresses = []
        for rule in ingress.spec.rules or []:
            if rule.host in tls_hosts:
                addresses.append(f"https://{rule.host}")
            elif self.http_port:
                addresses.append(f"http://{rule.host}:{self.http_port}")
            else:
                addresses.append(f"http://{rule.host}")
        return addresses

    def add_certificate(self, id: InstanceID, cert_cname: str, cert: CertData):
        """Store ``cert`` in a TLS secret and serve it for ``cert_cname``."""
        namespace = self.base.get_app_namespace(id.app_name)
        ingress = self._target_ingress(id, namespace, cert_cname)
        if parse_bool((ingress.metadata.annotations or {}).get(ANNOTATION_ACME)):
            raise ACMEManaged(
                f"cannot add certificate to ingress {ingress.metadata.name}, it is managed by ACME"
            )

        secret = Secret(
            metadata=ObjectMeta(
                name=self.secret_name(id, cert_cname),
                namespace=namespace,
                labels={APP_LABEL: id.app_name, DOMAIN_LABEL: cert_cname},
            ),
            type="kubernetes.io/tls",
            stringData={"tls.crt": cert.certificate, "tls.key": cert.key},
        )
        try:
            self.client.create(secret)
            logger.info(f"Created Secret {secret.metadata.name} in namespace {namespace}")
        except ApiError as e:
            if e.status.code != 409:
                raise
            current = self.client.get(Secret, name=secret.metadata.name, namespace=namespace)
            secret.metadata.resourceVersion = current.metadata.resourceVersion
            self.client.replace(secret)
            logger.info(f"Replaced Secret {secret.metadata.name} in namespace {namespace}")

        entry = IngressTLS(hosts=[cert_cname], secretName=secret.metadata.name)
        tls = ingress.spec.tls or []
        if entry not in tls:
            ingress.spec.tls = tls + [entry]
            self.client.replace(ingress)

    def get_certificate(self, id: InstanceID, cert_cname: str) -> CertData:
        """Read the certificate stored for ``cert_cname``."""
        namespace = self.base.get_app_namespace(id.app_name)
        secret = self.client.get(
            Secret, name=self.secret_name(id, cert_cname), namespace=namespace
        )
        data = secret.data or {}
        return CertData(
            certificate=base64.b64decode(data.get("tls.crt", "")).decode(),
            key=base64.b64decode(data.get("tls.key", "")).decode(),
        )

    def remove_certificate(self, id: InstanceID, cert_cname: str):
        """Stop serving the certificate of ``cert_cname`` and delete its secret."""
        namespace = self.base.get_app_namespace(id.app_name)
        try:
            ingress = self._target_ingress(id, namespace, cert_cname)
        except ApiError as e:
            if e.status.code != 404:
                raise
            ingress = None
        if ingress is not None:
            if parse_bool((ingress.metadata.annotations or {}).get(ANNOTATION_ACME)):
                raise ACMEManaged(
                    f"cannot remove certificate from ingress {ingress.metadata.name}, "
                    "it is managed by ACME"
                )
            tls = [t for t in ingress.spec.tls or [] if cert_cname not in (t.hosts or [])]
            if len(tls) != len(ingress.spec.tls or []):
                ingress.spec.tls = tls or None
                self.client.replace(ingress)
        self._delete(Secret, self.secret_name(id, cert_cname), namespace)

    def set_cname(self, id: InstanceID, cname: str):
        """Add ``cname`` to the CNAMEs of ``id``."""
        self._update_cnames(id, lambda cnames: cnames | {cname})

    def unset_cname(self, id: InstanceID, cname: str):
        """Remove ``cname`` from the CNAMEs of ``id``."""
        self._update_cnames(id, lambda cnames: cnames - {cname})

    def get_cnames(self, id: InstanceID) -> List[str]:
        """CNAMEs recorded on the main ingress."""
        namespace = self.base.get_app_namespace(id.app_name)
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        return split_hosts((ingress.metadata.annotations or {}).get(ANNOTATION_CNAMES))

    def _update_cnames(self, id: InstanceID, change):
        namespace = self.base.get_app_namespace(id.app_name)
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        if is_frozen(ingress.metadata.annotations):
            return
        annotations = ingress.metadata.annotations or {}
        previous = set(split_hosts(annotations.get(ANNOTATION_CNAMES)))
        cnames = change(previous)
        if cnames == previous:
            return
        children = self._cname_children(id, namespace)
        self._check_cnames_available(id, namespace, cnames, children)
        if cnames:
            annotations[ANNOTATION_CNAMES] = join_hosts(cnames)
        else:
            annotations.pop(ANNOTATION_CNAMES, None)
        ingress.metadata.annotations = annotations
        ingress = self.client.replace(ingress)
        self._reconcile_cnames(
            id, ingress, cnames, children, acme_cname=False, issuers={}, keep_existing=True
        )

    def _reconcile_cnames(
        self,
        id: InstanceID,
        ingress: Ingress,
        cnames: Set[str],
        children: Dict[str, Ingress],
        acme_cname: bool,
        issuers: Dict[str, tuple],
        keep_existing: bool = False,
    ):
        """Converge the CNAME ingresses of ``id`` to ``cnames``.

        ``children`` are the CNAME ingresses currently owned by ``id``; the
        ones not in ``cnames`` are deleted. With ``keep_existing`` only the
        missing children are created.
        """
        namespace = ingress.metadata.namespace
        for cname in sorted(cnames):
            existing = children.get(cname)
            if existing is not None:
                if keep_existing or is_frozen(existing.metadata.annotations):
                    continue
            child = self._cname_ingress(id, ingress, cname, acme_cname, issuers.get(cname))
            if existing is not None:
                child.metadata.resourceVersion = existing.metadata.resourceVersion
                child.spec.tls = _merge_tls(child.spec.tls, _kept_tls(existing, child.spec.rules))
            self._write(existing, child)
        for cname in sorted(set(children) - cnames):
            self._delete(Ingress, children[cname].metadata.name, namespace)

    def _cname_children(self, id: InstanceID, namespace: str) -> Dict[str, Ingress]:
        """CNAME ingresses owned by ``id``, keyed by host."""
        children = {}
        labels = {LABEL_CNAME_INGRESS: "true", APP_LABEL: id.app_name}
        for child in self.client.list(Ingress, namespace=namespace, labels=labels):
            rules = (child.spec and child.spec.rules) or []
            if not rules or not rules[0].host:
                continue
            host = rules[0].host
            if child.metadata.name == self.cname_ingress_name(id, host):
                children[host] = child
        return children

    def _check_cnames_available(
        self, id: InstanceID, namespace: str, cnames, children: Dict[str, Ingress]
    ):
        for cname in sorted(set(cnames) - set(children)):
            other = self._get(Ingress, self.cname_ingress_name(id, cname), namespace)
            if other is None:
                continue
            owner = (other.metadata.labels or {}).get(APP_LABEL, "")
            if owner != id.app_name:
                raise CNameInUse(cname, owner)

    def _cname_ingress(
        self,
        id: InstanceID,
        ingress: Ingress,
        cname: str,
        acme_cname: bool,
        issuer: Optional[tuple],
    ) -> Ingress:
        labels = dict(ingress.metadata.labels or {})
        labels[LABEL_CNAME_INGRESS] = "true"

        annotations = dict(ingress.metadata.annotations or {})
        annotations.pop(ANNOTATION_CNAMES, None)
        tls = None
        if acme_cname:
            annotations[ANNOTATION_ACME] = "true"
            tls = [IngressTLS(hosts=[cname], secretName=self.secret_name(id, cname))]
        else:
            annotations.pop(ANNOTATION_ACME, None)
            annotations.pop(CERT_MANAGER_CLUSTER_ISSUER, None)
        if issuer is not None:
            key, name = issuer
            annotations.pop(CERT_MANAGER_ISSUER, None)
            annotations.pop(CERT_MANAGER_CLUSTER_ISSUER, None)
            annotations[key] = name
            annotations[CERT_MANAGER_COMMON_NAME] = cname

        main_rule = (ingress.spec.rules or [IngressRule()])[0]
        return Ingress(
            metadata=ObjectMeta(
                name=self.cname_ingress_name(id, cname),
                namespace=ingress.metadata.namespace,
                labels=labels,
                annotations=annotations,
                ownerReferences=deepcopy(ingress.metadata.ownerReferences),
            ),
            spec=IngressSpec(
                ingressClassName=ingress.spec.ingressClassName,
                rules=[IngressRule(host=cname, http=deepcopy(main_rule.http))],
                tls=tls,
            ),
        )

    def _resolve_issuers(
        self, namespace: str, cert_issuers: Dict[str, str], cnames: List[str]
    ) -> Dict[str, tuple]:
        """Map each CNAME to its cert-manager annotation key and issuer name."""
        issuers = {}
        for host in cnames:
            name = cert_issuers.get(host)
            if not name:
                continue
            if self._get(Issuer, name, namespace) is not None:
                issuers[host] = (CERT_MANAGER_ISSUER, name)
            elif self._get(ClusterIssuer, name) is not None:
                issuers[host] = (CERT_MANAGER_CLUSTER_ISSUER, name)
            else:
                raise IssuerNotFound(name)
        return issuers

    def _annotations(self, opts: Opts):
        """Return the ingress annotations and its ``ingressClassName``."""
        annotations = dict(self.base.annotations)
        class_name = opts.additional_opts.get(CLASS_OPT) or self.ingress_class
        if not self.use_ingress_class_name and self.ingress_class:
            annotations[ANNOTATION_INGRESS_CLASS] = self.ingress_class

        for key, value in opts.additional_opts.items():
            if key == CLASS_OPT and self.use_ingress_class_name:
                continue
            if key.endswith("-"):
                annotations.pop(self._annotation_key(key[:-1]), None)
            else:
                annotations[self._annotation_key(key)] = value

        if not self.use_ingress_class_name:
            class_name = None
        return annotations, class_name or None

    def _annotation_key(self, key: str) -> str:
        if "/" in key:
            return key
        if key == CLASS_OPT:
            return ANNOTATION_INGRESS_CLASS
        if self.annotations_prefix:
            return f"{self.annotations_prefix}/{key}"
        return key

    def _base_host(self, id: InstanceID, opts: Opts) -> str:
        if opts.domain:
            return opts.domain
        suffix = opts.domain_suffix or self.domain_suffix
        if id.instance_name:
            return f"{id.instance_name}.instance.{id.app_name}.{suffix}"
        return f"{id.app_name}.{suffix}"

    def _rule(self, host: str, path: str, target: BackendTarget, port: int) -> IngressRule:
        return IngressRule(
            host=host,
            http=HTTPIngressRuleValue(
                paths=[
                    HTTPIngressPath(
                        path=path,
                        pathType=PATH_TYPE,
                        backend=IngressBackend(
                            service=IngressServiceBackend(
                                name=target.service,
                                port=ServiceBackendPort(number=port),
                            )
                        ),
                    )
                ]
            ),
        )

    def _target_ingress(self, id: InstanceID, namespace: str, host: str) -> Ingress:
        """Return the ingress serving ``host``: a CNAME child or the main one."""
        ingress = self.client.get(Ingress, name=self.ingress_name(id), namespace=namespace)
        if host in split_hosts((ingress.metadata.annotations or {}).get(ANNOTATION_CNAMES)):
            return self.client.get(
                Ingress, name=self.cname_ingress_name(id, host), namespace=namespace
            )
        return ingress

    def _write(self, existing: Optional[Ingress], ingress: Ingress):
        name = ingress.metadata.name
        if existing is None:
            try:
                self.client.create(ingress)
            except ApiError as e:
                if e.status.code == 409:
                    raise IngressAlreadyExists() from e
                raise
            logger.info(f"Created Ingress {name} in namespace {ingress.metadata.namespace}")
        elif _ingress_has_changes(existing, ingress):
            self.client.replace(ingress)
            logger.info(f"Updated Ingress {name} in namespace {ingress.metadata.namespace}")
        else:
            logger.debug(f"No changes for Ingress {name}")

    def _get(self, res, name: str, namespace: Optional[str] = None):
        try:
            if namespace is None:
                return self.client.get(res, name=name)
            return self.client.get(res, name=name, namespace=namespace)
        except ApiError as e:
            if e.status.code == 404:
                return None
            raise

    def _delete(self, res, name: str, namespace: str, **kwargs):
        try:
            self.client.delete(res, name=name, namespace=namespace, **kwargs)
            logger.info(f"Deleted {res.__name__} {name} in namespace {namespace}")
        except ApiError as e:
            if e.status.code != 404:
                raise
            logger.debug(f"{res.__name__} {name} already deleted")


def new_nginx_ingress_service(base: BaseService, **kwargs) -> IngressService:
    """Ingress router tuned for ingress-nginx."""
    kwargs.setdefault("ingress_class", NGINX_INGRESS_CLASS)
    kwargs.setdefault("annotations_prefix", NGINX_ANNOTATIONS_PREFIX)
    return IngressService(base, **kwargs)


def _first_backend(ingress: Ingress) -> Optional[IngressBackend]:
    rules = (ingress.spec and ingress.spec.rules) or []
    if not rules or not rules[0].http or not rules[0].http.paths:
        return None
    return rules[0].http.paths[0].backend


def _kept_tls(existing: Ingress, rules: List[IngressRule]) -> List[IngressTLS]:
    """TLS entries of ``existing`` still covering hosts served by ``rules``."""
    hosts = {rule.host for rule in rules or []}
    return [
        entry
        for entry in (existing.spec and existing.spec.tls) or []
        if entry.hosts and set(entry.hosts) <= hosts
    ]


def _merge_tls(
    wanted: Optional[List[IngressTLS]], kept: List[IngressTLS]
) -> Optional[List[IngressTLS]]:
    merged = list(wanted or [])
    for entry in kept:
        if entry not in merged:
            merged.append(entry)
    return merged or None


def _ingress_has_changes(existing: Ingress, ingress: Ingress) -> bool:
    return (
        existing.spec != ingress.spec
        or (existing.metadata.labels or {}) != (ingress.metadata.labels or {})
        or (existing.metadata.annotations or {}) != (ingress.metadata.annotations or {})
        or existing.metadata.ownerReferences != ingress.metadata.ownerReferences
    )
