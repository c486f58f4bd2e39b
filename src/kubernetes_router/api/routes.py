#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""tsuru router API.

The blueprint is mounted twice, under ``/api`` (default mode) and under
``/api/<mode>``.

GET    /backend/<name>                     → {address, addresses}
POST   /backend/<name>                     → ensure the app routing
PUT    /backend/<name>                     → no-op
DELETE /backend/<name>                     → remove the app routing
GET    /backend/<name>/routes              → {"addresses": []}
POST   /backend/<name>/routes              → point to a new base service
POST   /backend/<name>/routes/remove       → no-op
POST   /backend/<name>/swap                → swap with {"Target"}
GET    /backend/<name>/status              → {status, detail}
GET    /info                               → supported options
PUT/GET/DELETE /backend/<name>/certificate/<certname>
POST/DELETE    /backend/<name>/cname/<cname>, GET /backend/<name>/cname
GET    /support/{tls,cname,info,prefix}
"""

import logging
from typing import Any, Callable

from flask import Blueprint, current_app, g, jsonify, request
from pydantic import ValidationError

from kubernetes_router.api.auth import check_basic_auth
from kubernetes_router.metrics import RECONCILES
from kubernetes_router.router import (
    BackendPrefix,
    BackendTarget,
    CertData,
    EnsureBackendOpts,
    HTTPError,
    InstanceID,
    Opts,
    Router,
    RouterCNAME,
    RouterError,
    RouterStatus,
    RouterTLS,
    RoutesRequestData,
    described_options,
)

logger = logging.getLogger(__name__)

router_bp = Blueprint("router", __name__)
router_bp.before_request(check_basic_auth)

ROUTER_INSTANCE_HEADER = "X-Router-Instance"
ROUTER_OPT_HEADER = "X-Router-Opt"


@router_bp.url_value_preprocessor
def _pop_mode(endpoint, values):
    g.mode = (values or {}).pop("mode", "")


def _router() -> Router:
    return current_app.config["BACKEND"].router(g.mode, request.headers)


def _instance_id(name: str) -> InstanceID:
    return InstanceID(app_name=name, instance_name=request.headers.get(ROUTER_INSTANCE_HEADER, ""))


def _json_body() -> dict:
    if not request.get_data():
        return {}
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise HTTPError(400, "error parsing request")
    return data


def _reconcile(operation: str, func: Callable[[], Any]) -> Any:
    try:
        result = func()
    except Exception:
        RECONCILES.labels(mode=g.mode or "default", operation=operation, result="error").inc()
        raise
    RECONCILES.labels(mode=g.mode or "default", operation=operation, result="success").inc()
    return result


def _tls_router() -> RouterTLS:
    svc = _router()
    if not isinstance(svc, RouterTLS):
        raise HTTPError(404, "No TLS Capabilities")
    return svc


def _cname_router() -> RouterCNAME:
    svc = _router()
    if not isinstance(svc, RouterCNAME):
        raise HTTPError(404, "No CNAME Capabilities")
    return svc


def parse_ensure_opts(name: str, data: dict, header_opts) -> EnsureBackendOpts:
    """Build the desired state from either request format.

    The legacy format is the flat option map, served by the ``<name>-web``
    service of the app namespace.
    """
    try:
        if "prefixes" in data or isinstance(data.get("opts"), dict):
            opts = EnsureBackendOpts.model_validate(data)
            opts.opts = Opts.from_flat(data.get("opts"), header_opts)
        else:
            opts = EnsureBackendOpts(
                opts=Opts.from_flat(data, header_opts),
                prefixes=[BackendPrefix(target=BackendTarget(service=f"{name}-web"))],
            )
    except ValidationError as e:
        raise HTTPError(400, str(e)) from e
    if opts.opts.domain and not opts.opts.route:
        opts.opts.route = "/"
    return opts


@router_bp.route("/backend/<name>", methods=["GET"])
def get_backend(name):
    addresses = _router().get_addresses(_instance_id(name))
    return jsonify({"address": addresses[0] if addresses else "", "addresses": addresses})


@router_bp.route("/backend/<name>", methods=["POST"])
def add_backend(name):
    opts = parse_ensure_opts(name, _json_body(), request.headers.getlist(ROUTER_OPT_HEADER))
    svc = _router()
    _reconcile("ensure", lambda: svc.ensure(_instance_id(name), opts))
    return ""


@router_bp.route("/backend/<name>", methods=["PUT"])
def update_backend(name):
    return ""


@router_bp.route("/backend/<name>", methods=["DELETE"])
def remove_backend(name):
    svc = _router()
    _reconcile("remove", lambda: svc.remove(_instance_id(name)))
    return ""


@router_bp.route("/backend/<name>/routes", methods=["GET"])
def get_routes(name):
    # always empty so tsuru re-sends the routes on every rebuild
    return jsonify({"addresses": []})


@router_bp.route("/backend/<name>/routes", methods=["POST"])
def add_routes(name):
    try:
        data = RoutesRequestData.model_validate(_json_body())
    except ValidationError as e:
        raise HTTPError(400, str(e)) from e
    if data.prefix:
        return ""
    svc = _router()
    _reconcile("update", lambda: svc.update(_instance_id(name), data.extra_data))
    return ""


@router_bp.route("/backend/<name>/routes/remove", methods=["POST"])
def remove_routes(name):
    return ""


@router_bp.route("/backend/<name>/swap", methods=["POST"])
def swap(name):
    target = _json_body().get("Target")
    if not isinstance(target, str):
        target = ""
    if not target:
        raise HTTPError(400, "empty target")
    svc = _router()
    src = _instance_id(name)
    dst = InstanceID(app_name=target, instance_name=src.instance_name)
    _reconcile("swap", lambda: svc.swap(src, dst))
    return ""


@router_bp.route("/backend/<name>/status", methods=["GET"])
def get_status(name):
    svc = _router()
    if not isinstance(svc, RouterStatus):
        raise HTTPError(404, "No Status Capabilities")
    status, detail = svc.get_status(_instance_id(name))
    return jsonify({"status": status, "detail": detail})


@router_bp.route("/info", methods=["GET"])
def info():
    all_opts = described_options()
    opts = _router().supported_options()
    return jsonify({key: value or all_opts.get(key, "") for key, value in opts.items()})


@router_bp.route("/backend/<name>/certificate/<certname>", methods=["PUT"])
def add_certificate(name, certname):
    logger.info(f"Adding on {name} certificate {certname}")
    try:
        cert = CertData.model_validate(_json_body())
    except ValidationError as e:
        raise HTTPError(400, str(e)) from e
    svc = _tls_router()
    _reconcile("add_certificate", lambda: svc.add_certificate(_instance_id(name), certname, cert))
    return ""


@router_bp.route("/backend/<name>/certificate/<certname>", methods=["GET"])
def get_certificate(name, certname):
    logger.info(f"Getting certificate {certname} from {name}")
    svc = _tls_router()
    try:
        cert = svc.get_certificate(_instance_id(name), certname)
    except Exception as e:
        logger.error(f"Failed to get certificate {certname} from {name}: {e}")
        raise HTTPError(404, str(e)) from e
    return jsonify(cert.model_dump())


@router_bp.route("/backend/<name>/certificate/<certname>", methods=["DELETE"])
def remove_certificate(name, certname):
    logger.info(f"Removing certificate {certname} from {name}")
    svc = _tls_router()
    try:
        _reconcile(
            "remove_certificate", lambda: svc.remove_certificate(_instance_id(name), certname)
        )
    except RouterError:
        raise
    except Exception as e:
        logger.error(f"Failed to remove certificate {certname} from {name}: {e}")
        raise HTTPError(404, str(e)) from e
    return ""


@router_bp.route("/backend/<name>/cname/<cname>", methods=["POST"])
def set_cname(name, cname):
    logger.info(f"Adding on {name} CNAME {cname}")
    svc = _cname_router()
    try:
        _reconcile("set_cname", lambda: svc.set_cname(_instance_id(name), cname))
    except Exception as e:
        logger.error(f"Failed to add CNAME {cname} to {name}: {e}")
        raise HTTPError(409 if "exists" in str(e) else 404, str(e)) from e
    return ""


@router_bp.route("/backend/<name>/cname", methods=["GET"])
def get_cnames(name):
    logger.info(f"Getting CNAMEs from {name}")
    cnames = _cname_router().get_cnames(_instance_id(name))
    return jsonify({"cnames": cnames})


@router_bp.route("/backend/<name>/cname/<cname>", methods=["DELETE"])
def unset_cname(name, cname):
    logger.info(f"Removing CNAME {cname} from {name}")
    svc = _cname_router()
    _reconcile("unset_cname", lambda: svc.unset_cname(_instance_id(name), cname))
    return ""


@router_bp.route("/support/tls", methods=["GET"])
def support_tls():
    if not isinstance(_router(), RouterTLS):
        return "No TLS Capabilities", 404
    return "OK"


@router_bp.route("/support/cname", methods=["GET"])
def support_cname():
    if not isinstance(_router(), RouterCNAME):
        return "No CNAME Capabilities", 404
    return "OK"


@router_bp.route("/support/info", methods=["GET"])
@router_bp.route("/support/prefix", methods=["GET"])
def support():
    return ""
