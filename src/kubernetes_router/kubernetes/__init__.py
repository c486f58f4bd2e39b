# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Reconcilers backed by Kubernetes resources."""
