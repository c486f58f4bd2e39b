# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import base64
import itertools
import uuid
from copy import deepcopy
from unittest.mock import patch

import pytest
from lightkube import ApiError, Client
from lightkube.models.apiextensions_v1 import (
    CustomResourceDefinitionNames,
    CustomResourceDefinitionSpec,
)
from lightkube.models.core_v1 import ServicePort, ServiceSpec
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.apiextensions_v1 import CustomResourceDefinition
from lightkube.resources.core_v1 import Secret, Service

from kubernetes_router.kubernetes.resources import App, ClusterIssuer, Issuer
from kubernetes_router.kubernetes.service import APP_CRD_NAME, BaseService


class _FakeResponse:
    """Used to fake an httpx response during testing only."""

    def __init__(self, code):
        self.code = code

    def json(self):
        return {"apiVersion": "v1", "code": self.code, "message": "broken"}


class _FakeApiError(ApiError):
    """Used to simulate an ApiError during testing."""

    def __init__(self, code):
        super().__init__(response=_FakeResponse(code))  # type: ignore[arg-type]


class UnexpectedWrite(AssertionError):
    pass


class FakeClient:
    """In-memory stand-in for the lightkube Client.

    Objects are stored as dicts, so every read returns a fresh copy like the
    API server would.
    """

    def __init__(self):
        self.objects = {}
        self.writes = []
        self.read_only = False
        # (kind, name) -> status codes of the next replaces, 0 lets one through
        self.fail_replace = {}
        # (kind, name) -> status code of the next failing delete
        self.fail_delete = {}
        self._versions = itertools.count(1)

    @staticmethod
    def _key(res, name, namespace):
        return res._api_info.resource.kind, namespace, name

    @staticmethod
    def _load(res, data):
        data = deepcopy(data)
        if issubclass(res, dict):
            return res(data)
        return res.from_dict(data, lazy=False)

    def _check_write(self, verb, res, name):
        if self.read_only:
            raise UnexpectedWrite(f"{verb} {res._api_info.resource.kind} {name}")
        self.writes.append((verb, res._api_info.resource.kind, name))

    def _store(self, obj, data):
        data.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
        if type(obj) is Secret and data.get("stringData"):
            encoded = {
                k: base64.b64encode(v.encode()).decode() for k, v in data["stringData"].items()
            }
            data["data"] = {**(data.get("data") or {}), **encoded}
            del data["stringData"]
        meta = data["metadata"]
        self.objects[self._key(type(obj), meta["name"], meta.get("namespace"))] = data
        return self._load(type(obj), data)

    def get(self, res, name, namespace=None):
        try:
            return self._load(res, self.objects[self._key(res, name, namespace)])
        except KeyError:
            raise _FakeApiError(404) from None

    def list(self, res, namespace=None, labels=None, fields=None):
        for (kind, ns, _), data in list(self.objects.items()):
            if kind != res._api_info.resource.kind or (namespace is not None and ns != namespace):
                continue
            obj_labels = data["metadata"].get("labels") or {}
            if any(obj_labels.get(k) != v for k, v in (labels or {}).items()):
                continue
            if any(_lookup(data, k) != v for k, v in (fields or {}).items()):
                continue
            yield self._load(res, data)

    def create(self, obj):
        data = deepcopy(obj.to_dict())
        meta = data.setdefault("metadata", {})
        key = self._key(type(obj), meta["name"], meta.get("namespace"))
        self._check_write("create", type(obj), meta["name"])
        if key in self.objects:
            raise _FakeApiError(409)
        meta.setdefault("uid", str(uuid.uuid4()))
        return self._store(obj, data)

    def replace(self, obj):
        data = deepcopy(obj.to_dict())
        meta = data["metadata"]
        key = self._key(type(obj), meta["name"], meta.get("namespace"))
        self._check_write("replace", type(obj), meta["name"])
        codes = self.fail_replace.get((key[0], meta["name"]))
        code = codes.pop(0) if codes else 0
        if code:
            raise _FakeApiError(code)
        if key not in self.objects:
            raise _FakeApiError(404)
        current = self.objects[key]["metadata"]
        version = meta.get("resourceVersion")
        if version and version != current.get("resourceVersion"):
            raise _FakeApiError(409)
        meta["uid"] = current.get("uid")
        return self._store(obj, data)

    def delete(self, res, name, namespace=None, cascade=None):
        self._check_write("delete", res, name)
        code = self.fail_delete.pop((res._api_info.resource.kind, name), None)
        if code:
            raise _FakeApiError(code)
        try:
            del self.objects[self._key(res, name, namespace)]
        except KeyError:
            raise _FakeApiError(404) from None


def _lookup(data, dotted):
    for part in dotted.split("."):
        data = (data or {}).get(part)
    return data


@pytest.fixture(autouse=True)
def mock_lightkube_client():
    """Global mock for the Lightkube Client to avoid loading kubeconfig in CI."""
    with patch.object(Client, "__init__", lambda self, *args, **kwargs: None):
        yield


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def base(client):
    return BaseService(client, namespace="default")


@pytest.fixture
def web_service(client):
    """Factory creating the web service of an app."""

    def _create(name, namespace="default", port=8888, labels=None, annotations=None):
        service = Service(
            metadata=ObjectMeta(
                name=name, namespace=namespace, labels=labels, annotations=annotations
            ),
            spec=ServiceSpec(
                selector={"app": name},
                ports=[
                    ServicePort(name="http-default", protocol="TCP", port=port, targetPort=port)
                ],
            ),
        )
        return client.create(service)

    return _create


@pytest.fixture
def tsuru_app(client):
    """Factory creating the tsuru App resource (and its CRD)."""

    def _create(name, namespace_name="default", processes=None):
        if ("CustomResourceDefinition", None, APP_CRD_NAME) not in client.objects:
            client.create(
                CustomResourceDefinition(
                    metadata=ObjectMeta(name=APP_CRD_NAME),
                    spec=CustomResourceDefinitionSpec(
                        group="tsuru.io",
                        names=CustomResourceDefinitionNames(kind="App", plural="apps"),
                        scope="Namespaced",
                        versions=[],
                    ),
                )
            )
        spec = {"namespaceName": namespace_name}
        if processes:
            spec["configs"] = {"groups": {"0": processes}}
        return client.create(
            App(metadata=ObjectMeta(name=name, namespace="default"), spec=spec)
        )

    return _create


@pytest.fixture
def issuers(client):
    client.create(Issuer(metadata=ObjectMeta(name="letsencrypt", namespace="default"), spec={}))
    client.create(ClusterIssuer(metadata=ObjectMeta(name="letsencrypt-cluster"), spec={}))
