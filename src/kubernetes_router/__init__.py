# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""Router API reconciling tsuru apps into Kubernetes routing resources."""
