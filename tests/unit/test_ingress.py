# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

from unittest.mock import patch

import pytest
from lightkube import ApiError
from lightkube.resources.core_v1 import Secret
from lightkube.resources.networking_v1 import Ingress

from kubernetes_router.kubernetes.ingress import (
    ACMEManaged,
    CNameInUse,
    IngressService,
    IssuerNotFound,
    new_nginx_ingress_service,
)
from kubernetes_router.kubernetes.service import (
    SWAP_LABEL,
    AppSwapped,
    CrossNamespaceSwap,
    NoBackendTarget,
    SwapRollbackError,
)
from kubernetes_router.router import (
    BackendPrefix,
    BackendTarget,
    CertData,
    EnsureBackendOpts,
    IngressAlreadyExists,
    InstanceID,
    Opts,
    RoutesRequestExtraData,
)

APP = InstanceID("test")
BLUE, GREEN = InstanceID("test-blue"), InstanceID("test-green")
MAIN = "kubernetes-router-test-ingress"


def _opts(service="test-web", namespace="", cnames=None, prefixes=None, **kwargs):
    kwargs.setdefault("route", "/")
    return EnsureBackendOpts(
        opts=Opts(**kwargs),
        cnames=cnames or [],
        prefixes=prefixes
        or [BackendPrefix(target=BackendTarget(service=service, namespace=namespace))],
    )


def _ingress(client, name, namespace="default"):
    return client.get(Ingress, name=name, namespace=namespace)


def _ingresses(client):
    return sorted(name for kind, _, name in client.objects if kind == "Ingress")


def _backend(ingress, rule=0):
    return ingress.spec.rules[rule].http.paths[0].backend.service


@pytest.fixture
def svc(base):
    return IngressService(base, domain_suffix="mycloud.com")


def test_ensure_plain_ingress(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(namespace="default"))

    assert _ingresses(client) == [MAIN]
    ingress = _ingress(client, MAIN)
    assert ingress.metadata.labels["tsuru.io/app-name"] == "test"
    assert ingress.metadata.labels["router.tsuru.io/base-service-name"] == "test-web"
    assert len(ingress.spec.rules) == 1
    assert ingress.spec.rules[0].host == "test.mycloud.com"
    assert (_backend(ingress).name, _backend(ingress).port.number) == ("test-web", 8888)
    assert ingress.spec.tls is None
    owner = ingress.metadata.ownerReferences[0]
    assert (owner.kind, owner.name) == ("Service", "test-web")


def test_ensure_is_idempotent(client, svc, web_service):
    web_service("test-web")
    opts = _opts(cnames=["test.io", "www.test.io"], domain="test.example.com")
    svc.ensure(APP, opts)
    writes = len(client.writes)
    svc.ensure(APP, opts)
    assert len(client.writes) == writes


def test_ensure_labels(client, svc, web_service):
    web_service("test-web")
    opts = _opts()
    opts.team = "team-a"
    opts.tags = ["env=prod", "invalid"]
    svc.ensure(APP, opts)
    labels = _ingress(client, MAIN).metadata.labels
    assert labels["tsuru.io/app-team"] == "team-a"
    assert labels["tsuru.io/custom-tag-env"] == "prod"
    assert not any(k.endswith("invalid") for k in labels)


def test_ensure_expose_all_services(client, svc, web_service):
    web_service("test-web")
    prefixes = [
        BackendPrefix(prefix="", target=BackendTarget(service="test-web")),
        BackendPrefix(prefix="v1.version", target=BackendTarget(service="test-v1")),
        BackendPrefix(prefix="my_process.process", target=BackendTarget(service="test-proc")),
    ]
    svc.ensure(APP, _opts(prefixes=prefixes, expose_all_services=True))

    ingress = _ingress(client, MAIN)
    assert sorted(rule.host for rule in ingress.spec.rules) == [
        "my-process.process.test.mycloud.com",
        "test.mycloud.com",
        "v1.version.test.mycloud.com",
    ]
    assert ingress.spec.rules[0].host == "test.mycloud.com"
    backends = {rule.host: _backend(ingress, i).name for i, rule in enumerate(ingress.spec.rules)}
    assert backends["v1.version.test.mycloud.com"] == "test-v1"


def test_ensure_without_default_target(svc):
    prefixes = [BackendPrefix(prefix="v1", target=BackendTarget(service="test-v1"))]
    with pytest.raises(NoBackendTarget):
        svc.ensure(APP, _opts(prefixes=prefixes))


def test_ensure_in_app_namespace(client, svc, web_service, tsuru_app):
    tsuru_app(
        "test",
        namespace_name="apps",
        processes={"web": {"ports": [{"port": 80, "target_port": 8080}]}},
    )
    web_service("test-web", namespace="apps")
    svc.ensure(APP, _opts())

    ingress = _ingress(client, MAIN, namespace="apps")
    assert ingress.metadata.labels["router.tsuru.io/base-service-namespace"] == "apps"
    assert _backend(ingress).port.number == 8080


def test_ensure_instance(client, svc, web_service):
    web_service("test-web")
    svc.ensure(InstanceID("test", "blue"), _opts())
    ingress = _ingress(client, f"{MAIN}-blue")
    assert ingress.spec.rules[0].host == "blue.instance.test.mycloud.com"


def test_cname_lifecycle(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["www.test.io", "test.io"]))

    assert _ingresses(client) == [
        "kubernetes-router-cname-test.io",
        "kubernetes-router-cname-www.test.io",
        MAIN,
    ]
    assert _ingress(client, MAIN).metadata.annotations["router.tsuru.io/cnames"] == (
        "test.io,www.test.io"
    )
    child = _ingress(client, "kubernetes-router-cname-www.test.io")
    assert child.metadata.labels["router.tsuru.io/is-cname-ingress"] == "true"
    assert child.metadata.labels["tsuru.io/app-name"] == "test"
    assert "router.tsuru.io/cnames" not in (child.metadata.annotations or {})
    assert child.spec.rules[0].host == "www.test.io"
    assert _backend(child).name == "test-web"

    svc.ensure(APP, _opts(cnames=["test.io"]))
    assert _ingresses(client) == ["kubernetes-router-cname-test.io", MAIN]
    assert svc.get_cnames(APP) == ["test.io"]

    svc.ensure(APP, _opts(cnames=[]))
    assert _ingresses(client) == [MAIN]
    assert "router.tsuru.io/cnames" not in (_ingress(client, MAIN).metadata.annotations or {})


def test_cname_ingresses_reconverge_after_failed_delete(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["a.io"]))
    client.fail_delete[("Ingress", "kubernetes-router-cname-a.io")] = 500

    with pytest.raises(ApiError):
        svc.ensure(APP, _opts(cnames=[]))
    assert "router.tsuru.io/cnames" not in (_ingress(client, MAIN).metadata.annotations or {})

    svc.ensure(APP, _opts(cnames=[]))
    assert _ingresses(client) == [MAIN]


def test_cname_owned_by_another_app(client, svc, web_service):
    web_service("test-web")
    web_service("other-web")
    other = InstanceID("other")
    svc.ensure(APP, _opts(cnames=["x.io"]))

    with pytest.raises(CNameInUse, match="cname x.io already exists for app test"):
        svc.ensure(other, _opts(service="other-web", cnames=["x.io"]))
    svc.ensure(other, _opts(service="other-web"))
    with pytest.raises(CNameInUse):
        svc.set_cname(other, "x.io")
    svc.ensure(other, _opts(service="other-web"))

    child = _ingress(client, "kubernetes-router-cname-x.io")
    assert child.metadata.labels["tsuru.io/app-name"] == "test"
    assert _backend(child).name == "test-web"
    assert svc.get_cnames(other) == []


def test_cname_with_cert_manager(client, svc, web_service, issuers):
    web_service("test-web")
    opts = _opts(cnames=["test.io", "www.test.io"])
    opts.cert_issuers = {"test.io": "letsencrypt", "www.test.io": "letsencrypt-cluster"}
    svc.ensure(APP, opts)

    annotations = _ingress(client, "kubernetes-router-cname-test.io").metadata.annotations
    assert annotations["cert-manager.io/issuer"] == "letsencrypt"
    assert annotations["cert-manager.io/common-name"] == "test.io"
    assert "cert-manager.io/cluster-issuer" not in annotations

    annotations = _ingress(client, "kubernetes-router-cname-www.test.io").metadata.annotations
    assert annotations["cert-manager.io/cluster-issuer"] == "letsencrypt-cluster"
    assert annotations["cert-manager.io/common-name"] == "www.test.io"
    assert "cert-manager.io/issuer" not in annotations


def test_cname_with_missing_issuer(client, svc, web_service, issuers):
    web_service("test-web")
    opts = _opts(cnames=["test.io"])
    opts.cert_issuers = {"test.io": "missing"}
    with pytest.raises(IssuerNotFound, match="issuer missing not found"):
        svc.ensure(APP, opts)
    assert _ingresses(client) == []


def test_acme(client, base, web_service):
    base.annotations = {"cert-manager.io/cluster-issuer": "le"}
    svc = IngressService(base, domain_suffix="mycloud.com")
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["test.io"], acme=True))

    ingress = _ingress(client, MAIN)
    assert ingress.metadata.annotations["kubernetes.io/tls-acme"] == "true"
    assert ingress.metadata.annotations["cert-manager.io/cluster-issuer"] == "le"
    assert [(t.hosts, t.secretName) for t in ingress.spec.tls] == [
        (["test.mycloud.com"], "kr-test-test.mycloud.com")
    ]
    child = _ingress(client, "kubernetes-router-cname-test.io")
    assert "kubernetes.io/tls-acme" not in (child.metadata.annotations or {})
    assert "cert-manager.io/cluster-issuer" not in (child.metadata.annotations or {})
    assert child.spec.tls is None

    svc.ensure(APP, _opts(cnames=["test.io"], acme=True, acme_cname=True))
    child = _ingress(client, "kubernetes-router-cname-test.io")
    assert child.metadata.annotations["kubernetes.io/tls-acme"] == "true"
    assert [(t.hosts, t.secretName) for t in child.spec.tls] == [
        (["test.io"], "kr-test-test.io")
    ]
    assert svc.get_addresses(APP) == ["https://test.mycloud.com"]

    svc.ensure(APP, _opts(cnames=["test.io"]))
    ingress = _ingress(client, MAIN)
    assert "kubernetes.io/tls-acme" not in ingress.metadata.annotations
    assert "cert-manager.io/cluster-issuer" not in ingress.metadata.annotations


def test_acme_managed_certificates(svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(acme=True))
    cert = CertData(certificate="cert", key="key")
    with pytest.raises(ACMEManaged):
        svc.add_certificate(APP, "test.mycloud.com", cert)
    with pytest.raises(ACMEManaged):
        svc.remove_certificate(APP, "test.mycloud.com")


def test_ensure_frozen_ingress_is_untouched(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["test.io"]))
    client.objects[("Ingress", "default", MAIN)]["metadata"]["annotations"][
        "router.tsuru.io/freeze"
    ] = "true"
    client.read_only = True
    svc.ensure(APP, _opts(cnames=["other.io"], acme=True))


def test_ensure_skips_frozen_cname_ingress(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["test.io"]))
    child = client.objects[("Ingress", "default", "kubernetes-router-cname-test.io")]
    child["metadata"].setdefault("annotations", {})["router.tsuru.io/freeze"] = "true"
    version = child["metadata"]["resourceVersion"]

    svc.ensure(APP, _opts(cnames=["test.io"], additional_opts={"new/annotation": "1"}))
    child = _ingress(client, "kubernetes-router-cname-test.io")
    assert child.metadata.resourceVersion == version


def test_certificates(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts())
    cert = CertData(certificate="-----BEGIN CERTIFICATE-----", key="-----BEGIN KEY-----")

    svc.add_certificate(APP, "test.mycloud.com", cert)
    secret = client.get(Secret, name="kr-test-test.mycloud.com", namespace="default")
    assert secret.type == "kubernetes.io/tls"
    assert secret.metadata.labels == {
        "tsuru.io/app-name": "test",
        "tsuru.io/domain-name": "test.mycloud.com",
    }
    assert svc.get_certificate(APP, "test.mycloud.com") == cert
    assert svc.get_addresses(APP) == ["https://test.mycloud.com"]

    # replacing the certificate keeps a single tls entry
    new_cert = CertData(certificate="new-cert", key="new-key")
    svc.add_certificate(APP, "test.mycloud.com", new_cert)
    assert svc.get_certificate(APP, "test.mycloud.com") == new_cert
    assert len(_ingress(client, MAIN).spec.tls) == 1

    # ensure keeps certificates added through the API
    svc.ensure(APP, _opts())
    assert len(_ingress(client, MAIN).spec.tls) == 1

    svc.remove_certificate(APP, "test.mycloud.com")
    assert _ingress(client, MAIN).spec.tls is None
    with pytest.raises(ApiError):
        svc.get_certificate(APP, "test.mycloud.com")


def test_certificate_on_cname(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["test.io"]))
    svc.add_certificate(APP, "test.io", CertData(certificate="c", key="k"))

    child = _ingress(client, "kubernetes-router-cname-test.io")
    assert [(t.hosts, t.secretName) for t in child.spec.tls] == [(["test.io"], "kr-test-test.io")]
    assert _ingress(client, MAIN).spec.tls is None

    svc.ensure(APP, _opts(cnames=["test.io"]))
    assert len(_ingress(client, "kubernetes-router-cname-test.io").spec.tls) == 1


def test_get_addresses_with_http_port(base, web_service):
    svc = IngressService(base, domain_suffix="mycloud.com", http_port=8080)
    web_service("test-web")
    svc.ensure(APP, _opts())
    assert svc.get_addresses(APP) == ["http://test.mycloud.com:8080"]


def test_update(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts())
    svc.update(APP, RoutesRequestExtraData(service="test-web-v2"))

    ingress = _ingress(client, MAIN)
    assert _backend(ingress).name == "test-web-v2"
    assert ingress.metadata.labels["router.tsuru.io/base-service-name"] == "test-web-v2"


def test_remove(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts(cnames=["test.io"]))
    svc.add_certificate(APP, "test.mycloud.com", CertData(certificate="c", key="k"))

    svc.remove(APP)
    assert _ingresses(client) == []
    assert ("Secret", "default", "kr-test-test.mycloud.com") not in client.objects
    svc.remove(APP)


def test_set_and_unset_cname(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts())

    svc.set_cname(APP, "foo.io")
    assert svc.get_cnames(APP) == ["foo.io"]
    child = _ingress(client, "kubernetes-router-cname-foo.io")
    assert child.spec.rules[0].host == "foo.io"

    svc.unset_cname(APP, "foo.io")
    assert svc.get_cnames(APP) == []
    assert _ingresses(client) == [MAIN]


def test_set_cname_keeps_existing_cname_ingresses(client, svc, web_service, issuers):
    web_service("test-web")
    opts = _opts(cnames=["test.io"])
    opts.cert_issuers = {"test.io": "letsencrypt"}
    svc.ensure(APP, opts)
    child = "kubernetes-router-cname-test.io"
    annotations = _ingress(client, child).metadata.annotations
    assert annotations["cert-manager.io/issuer"] == "letsencrypt"

    svc.set_cname(APP, "other.io")
    assert svc.get_cnames(APP) == ["other.io", "test.io"]
    assert _ingress(client, child).metadata.annotations == annotations

    svc.unset_cname(APP, "other.io")
    assert _ingresses(client) == [child, MAIN]
    assert _ingress(client, child).metadata.annotations == annotations


def test_swap(client, svc, web_service):
    blue, green = InstanceID("test-blue"), InstanceID("test-green")
    for app in (blue, green):
        web_service(f"{app.app_name}-web")
        svc.ensure(app, _opts(service=f"{app.app_name}-web"))

    svc.swap(blue, green)
    blue_ingress = _ingress(client, "kubernetes-router-test-blue-ingress")
    green_ingress = _ingress(client, "kubernetes-router-test-green-ingress")
    assert _backend(blue_ingress).name == "test-green-web"
    assert _backend(green_ingress).name == "test-blue-web"
    assert blue_ingress.metadata.labels[SWAP_LABEL] == "test-green"
    assert green_ingress.metadata.labels[SWAP_LABEL] == "test-blue"

    with pytest.raises(AppSwapped):
        svc.remove(blue)

    svc.swap(blue, green)
    blue_ingress = _ingress(client, "kubernetes-router-test-blue-ingress")
    assert _backend(blue_ingress).name == "test-blue-web"
    assert SWAP_LABEL not in blue_ingress.metadata.labels


@pytest.fixture
def swappable(svc, web_service):
    for app in (BLUE, GREEN):
        web_service(f"{app.app_name}-web")
        svc.ensure(app, _opts(service=f"{app.app_name}-web"))
    return svc


def test_swap_rolls_back_on_failure(client, swappable):
    client.fail_replace[("Ingress", "kubernetes-router-test-green-ingress")] = [500]

    with pytest.raises(ApiError):
        swappable.swap(BLUE, GREEN)

    blue_ingress = _ingress(client, "kubernetes-router-test-blue-ingress")
    assert _backend(blue_ingress).name == "test-blue-web"
    assert SWAP_LABEL not in blue_ingress.metadata.labels
    green_ingress = _ingress(client, "kubernetes-router-test-green-ingress")
    assert _backend(green_ingress).name == "test-green-web"


def test_swap_rollback_failure(client, swappable):
    client.fail_replace[("Ingress", "kubernetes-router-test-blue-ingress")] = [0, 500]
    client.fail_replace[("Ingress", "kubernetes-router-test-green-ingress")] = [409]

    with pytest.raises(SwapRollbackError, match="failed to rollback swap") as exc:
        swappable.swap(BLUE, GREEN)
    assert exc.value.error.status.code == 409
    assert exc.value.rollback_error.status.code == 500


def test_swap_across_namespaces(client, svc, web_service, tsuru_app):
    for app, namespace in ((BLUE, "default"), (GREEN, "other")):
        tsuru_app(app.app_name, namespace_name=namespace)
        web_service(f"{app.app_name}-web", namespace=namespace)
        svc.ensure(app, _opts(service=f"{app.app_name}-web"))
    client.read_only = True

    with pytest.raises(CrossNamespaceSwap, match="default != other"):
        svc.swap(BLUE, GREEN)


def test_ensure_conflicting_ingress(client, svc, web_service):
    web_service("test-web")
    svc.ensure(APP, _opts())
    with patch.object(svc, "_get", return_value=None):
        with pytest.raises(IngressAlreadyExists):
            svc.ensure(APP, _opts())


def test_annotations_and_class(client, base, web_service):
    svc = IngressService(base, domain_suffix="mycloud.com", ingress_class="traefik")
    web_service("test-web")
    svc.ensure(APP, _opts(additional_opts={"my.io/annotation": "1", "plain": "2"}))
    annotations = _ingress(client, MAIN).metadata.annotations
    assert annotations["kubernetes.io/ingress.class"] == "traefik"
    assert annotations["my.io/annotation"] == "1"
    assert annotations["plain"] == "2"
    assert _ingress(client, MAIN).spec.ingressClassName is None


def test_ingress_class_name(client, base, web_service):
    svc = IngressService(
        base, domain_suffix="mycloud.com", ingress_class="nginx", use_ingress_class_name=True
    )
    web_service("test-web")
    svc.ensure(APP, _opts())
    ingress = _ingress(client, MAIN)
    assert ingress.spec.ingressClassName == "nginx"
    assert "kubernetes.io/ingress.class" not in (ingress.metadata.annotations or {})

    svc.ensure(APP, _opts(additional_opts={"class": "custom"}))
    ingress = _ingress(client, MAIN)
    assert ingress.spec.ingressClassName == "custom"
    assert "class" not in (ingress.metadata.annotations or {})


def test_nginx_ingress(client, base, web_service):
    svc = new_nginx_ingress_service(base, domain_suffix="mycloud.com")
    web_service("test-web")
    svc.ensure(APP, _opts(additional_opts={"proxy-body-size": "10m", "class": "internal"}))
    annotations = _ingress(client, MAIN).metadata.annotations
    assert annotations["nginx.ingress.kubernetes.io/proxy-body-size"] == "10m"
    assert annotations["kubernetes.io/ingress.class"] == "internal"

    svc.ensure(APP, _opts(additional_opts={"class-": ""}))
    annotations = _ingress(client, MAIN).metadata.annotations
    assert "kubernetes.io/ingress.class" not in annotations
