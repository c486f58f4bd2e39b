#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Custom resources the routers read or manage."""

from lightkube.generic_resource import create_global_resource, create_namespaced_resource

# tsuru app definition, read only.
App = create_namespaced_resource("tsuru.io", "v1", "App", "apps")

Gateway = create_namespaced_resource("networking.istio.io", "v1beta1", "Gateway", "gateways")
VirtualService = create_namespaced_resource(
    "networking.istio.io", "v1beta1", "VirtualService", "virtualservices"
)

Issuer = create_namespaced_resource("cert-manager.io", "v1", "Issuer", "issuers")
ClusterIssuer = create_global_resource("cert-manager.io", "v1", "ClusterIssuer", "clusterissuers")
