# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Kubernetes client for the cluster under test."""

import logging
from pathlib import Path
from typing import Optional

from lightkube import Client, KubeConfig
from lightkube.core.exceptions import ConfigError

from e2e_framework.common import E2EException

LOG = logging.getLogger(__name__)

FIELD_MANAGER = "e2e-framework"


class KubeClientError(E2EException):
    pass


def get_kube_client(
    kube_config: Optional[str] = None, context: Optional[str] = None
) -> Client:
    """Return a lightkube client for the cluster under test.

    Without an explicit kubeconfig path, lightkube's own lookup is used
    (in-cluster config, KUBECONFIG or ~/.kube/config).
    """
    try:
        if kube_config:
            LOG.debug("Loading kubeconfig from %s", kube_config)
            kubeconfig = KubeConfig.from_file(Path(kube_config).expanduser())
        else:
            kubeconfig = KubeConfig.from_env()
        config = kubeconfig.get(context_name=context)
    except ConfigError as e:
        raise KubeClientError(f"Error loading kubeconfig: {e}") from e

    return Client(config, field_manager=FIELD_MANAGER)
