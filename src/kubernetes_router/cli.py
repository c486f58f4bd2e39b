#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Command line entry point of the router daemon."""

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading
from typing import Dict, List, Optional

import httpx
import yaml
from lightkube import Client
from werkzeug.serving import WSGIRequestHandler, make_server

from kubernetes_router.api import create_app
from kubernetes_router.backend import (
    INGRESS_MODE,
    ISTIO_GATEWAY_MODE,
    NGINX_INGRESS_MODES,
    Backend,
    RouterFactory,
)
from kubernetes_router.backend.local import LocalCluster
from kubernetes_router.backend.multi_cluster import MultiCluster, load_clusters_file
from kubernetes_router.kubernetes.service import BaseService
from kubernetes_router.utils import parse_key_value

logger = logging.getLogger(__name__)

MODES = ("service", INGRESS_MODE) + NGINX_INGRESS_MODES + (ISTIO_GATEWAY_MODE,)
WRITE_TIMEOUT = 30
SHUTDOWN_GRACE = 10

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Parse durations written like ``10s``, ``1m30s`` or ``500ms`` into seconds.

    Plain numbers are seconds.
    """
    try:
        return float(value)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if not value or pos != len(value):
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}")
    return total


def _key_value(raw: str) -> Dict[str, str]:
    try:
        return parse_key_value(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _pool_labels(raw: str) -> Dict[str, Dict[str, str]]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError('must be on the form "key={"key": "value"}"')
    pool, labels = raw.split("=", 1)
    try:
        parsed = json.loads(labels)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError('must be on the form "key={"key": "value"}"')
    return {pool: {str(k): str(v) for k, v in parsed.items()}}


class MergeAction(argparse.Action):
    """Accumulate repeated map flags into one dict."""

    def __call__(self, parser, namespace, values, option_string=None):
        merged = dict(getattr(namespace, self.dest, None) or {})
        merged.update(values)
        setattr(namespace, self.dest, merged)


class ModesAction(argparse.Action):
    def __call__(self, parser, namespace, values, option_string=None):
        modes = list(getattr(namespace, self.dest, None) or [])
        modes.extend(m for m in values.split(",") if m)
        setattr(namespace, self.dest, modes)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubernetes-router",
        description="tsuru router API backed by Kubernetes",
        allow_abbrev=False,
    )
    parser.add_argument("-listen-addr", dest="listen_addr", default=":8077", help="Listen address")
    parser.add_argument(
        "-k8s-namespace",
        dest="namespace",
        default="default",
        help="Kubernetes namespace to create resources",
    )
    parser.add_argument(
        "-k8s-timeout",
        dest="timeout",
        type=parse_duration,
        default=10.0,
        help="Kubernetes per-request timeout",
    )
    parser.add_argument(
        "-k8s-labels",
        dest="labels",
        type=_key_value,
        action=MergeAction,
        default={},
        help="Labels to be added to each resource created. Expects KEY=VALUE format.",
    )
    parser.add_argument(
        "-k8s-annotations",
        dest="annotations",
        type=_key_value,
        action=MergeAction,
        default={},
        help="Annotations to be added to each resource created. Expects KEY=VALUE format.",
    )
    parser.add_argument(
        "-controller-modes",
        dest="modes",
        action=ModesAction,
        default=[],
        help="Defines enabled controller running modes: "
        "service, ingress, ingress-nginx or istio-gateway.",
    )
    parser.add_argument(
        "-ingress-domain",
        dest="domain",
        default="local",
        help="Default domain to be used on created vhosts (eg: serviceName.local)",
    )
    parser.add_argument(
        "-ingress-http-port",
        dest="http_port",
        type=int,
        default=0,
        help="Port appended to the addresses of ingresses without TLS",
    )
    parser.add_argument(
        "-ingress-class",
        dest="ingress_class",
        default="",
        help="Ingress class of the ingress mode",
    )
    parser.add_argument(
        "-ingress-use-ingress-class-name",
        dest="use_ingress_class_name",
        action="store_true",
        help="Set the ingress class on spec.ingressClassName instead of an annotation",
    )
    parser.add_argument(
        "-istio-gateway.gateway-selector",
        dest="gateway_selector",
        type=_key_value,
        action=MergeAction,
        default={},
        help="Gateway selector used in gateways created for apps.",
    )
    parser.add_argument(
        "-cert-file", dest="cert_file", default="", help="Path to certificate used to serve https"
    )
    parser.add_argument(
        "-key-file", dest="key_file", default="", help="Path to private key used to serve https"
    )
    parser.add_argument(
        "-opts-to-label",
        dest="opts_to_label",
        type=_key_value,
        action=MergeAction,
        default={},
        help="Mapping between router options and service labels. Expects KEY=VALUE format.",
    )
    parser.add_argument(
        "-opts-to-label-doc",
        dest="opts_to_label_doc",
        type=_key_value,
        action=MergeAction,
        default={},
        help="Help text of the options in -opts-to-label. Expects KEY=VALUE format.",
    )
    parser.add_argument(
        "-pool-labels",
        dest="pool_labels",
        type=_pool_labels,
        action=MergeAction,
        default={},
        help='Default labels for a given pool. Expects POOL={"LABEL":"VALUE"} format.',
    )
    parser.add_argument(
        "-clusters-file",
        dest="clusters_file",
        default="",
        help="YAML file with the clusters served through the cluster headers",
    )
    parser.add_argument("-log-level", dest="log_level", default="INFO", help="Logging level")
    return parser


def build_backend(args: argparse.Namespace, client: Optional[Client] = None) -> Backend:
    """Create the backend serving the routers enabled by ``args``."""
    factory = RouterFactory(
        domain=args.domain,
        ingress_class=args.ingress_class,
        use_ingress_class_name=args.use_ingress_class_name,
        http_port=args.http_port,
        opts_as_labels=args.opts_to_label,
        opts_as_labels_docs=args.opts_to_label_doc,
        pool_labels=args.pool_labels,
        gateway_selector=args.gateway_selector,
    )
    if client is None:
        client = Client(
            namespace=args.namespace,
            timeout=httpx.Timeout(args.timeout),
            field_manager="kubernetes-router",
        )
    base = BaseService(
        client, namespace=args.namespace, labels=args.labels, annotations=args.annotations
    )

    modes: List[str] = args.modes or ["service"]
    backend: Backend = LocalCluster(
        {mode: factory(mode, base) for mode in modes}, default_mode=modes[0]
    )

    if args.clusters_file:
        with open(args.clusters_file) as f:
            clusters = load_clusters_file(yaml.safe_load(f))
        backend = MultiCluster(
            fallback=backend,
            router_factory=factory,
            clusters=clusters,
            namespace=args.namespace,
            timeout=args.timeout,
            labels=args.labels,
            annotations=args.annotations,
        )
    return backend


def _split_addr(addr: str):
    host, _, port = addr.rpartition(":")
    return host.strip("[]") or "0.0.0.0", int(port)


class _InFlight:
    """Counts requests being served."""

    def __init__(self):
        self._count = 0
        self._cond = threading.Condition()

    def __enter__(self):
        with self._cond:
            self._count += 1

    def __exit__(self, *exc):
        with self._cond:
            self._count -= 1
            self._cond.notify_all()

    def wait(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout)


class _RequestHandler(WSGIRequestHandler):
    timeout = WRITE_TIMEOUT

    def handle(self):
        with self.server.in_flight:
            super().handle()


def serve(app, listen_addr: str, cert_file: str = "", key_file: str = "") -> int:
    """Serve ``app`` until SIGTERM, SIGQUIT or SIGINT; return the exit code."""
    host, port = _split_addr(listen_addr)
    ssl_context = (cert_file, key_file) if cert_file and key_file else None
    try:
        server = make_server(
            host,
            port,
            app,
            threaded=True,
            request_handler=_RequestHandler,
            ssl_context=ssl_context,
        )
    except OSError as e:
        logger.error(f"fail serve: {e}")
        return 1
    server.in_flight = _InFlight()

    def _terminate(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}. Terminating...")
        threading.Thread(target=server.shutdown, daemon=True).start()

    for sig in (signal.SIGTERM, signal.SIGQUIT, signal.SIGINT):
        signal.signal(sig, _terminate)

    if ssl_context:
        logger.info(f"Started listening and serving TLS at {listen_addr}")
    else:
        logger.info(f"Started listening and serving at {listen_addr}")
    server.serve_forever()
    server.server_close()

    if not server.in_flight.wait(SHUTDOWN_GRACE):
        logger.error("Error during server shutdown: requests still running")
        return 1
    logger.info("Server shutdown succeeded.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for mode in args.modes:
        if mode not in MODES:
            parser.error(
                "Use one of the following modes: service, ingress, ingress-nginx or istio-gateway."
            )

    backend = build_backend(args)
    app = create_app(
        backend,
        api_user=os.environ.get("ROUTER_API_USER", ""),
        api_password=os.environ.get("ROUTER_API_PASSWORD", ""),
    )
    return serve(app, args.listen_addr, args.cert_file, args.key_file)


if __name__ == "__main__":
    sys.exit(main())
