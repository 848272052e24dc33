# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Addon contract and the base addon holding the Kubernetes client.

An addon is a shared test dependency. The suite drives each addon through
``setup`` (read configuration), ``provision`` (create the dependency) and,
at the end of the run, ``deprovision``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Protocol, runtime_checkable

from lightkube import Client

from e2e_framework.common import AddonException
from e2e_framework.config import Config
from e2e_framework.kube import get_kube_client

LOG = logging.getLogger(__name__)


class Addon(ABC):
    """Base class for shared test dependencies."""

    name: str = "addon"

    @abstractmethod
    def setup(self, config: Config) -> None:
        """Configure the addon from the suite configuration.

        Must not create anything in the cluster; it is called on every
        test process, including those that do not own provisioning.
        """

    @abstractmethod
    def provision(self) -> None:
        """Create the dependency."""

    @abstractmethod
    def deprovision(self) -> None:
        """Remove the dependency.

        Also called before ``provision`` to clear leftovers of a previous
        run, so it must succeed when nothing is installed.
        """

    @abstractmethod
    def supports_global(self) -> bool:
        """Whether the addon can be shared by every test in the suite."""


@runtime_checkable
class LoggableAddon(Protocol):
    """Addons able to return logs of what they provisioned."""

    def logs(self) -> Dict[str, str]:
        """Return log contents keyed by a unique name."""
        ...


class BaseDetails:
    """What the base addon exposes to tests and other addons."""

    def __init__(self, config: Config, kube_client: Client):
        self.config = config
        self.kube_client = kube_client


class Base(Addon):
    """Addon providing the Kubernetes client for the cluster under test."""

    name = "base"

    def __init__(self):
        self._details: Optional[BaseDetails] = None

    def setup(self, config: Config) -> None:
        """Build the lightkube client from the configured kubeconfig."""
        LOG.debug(
            "Creating Kubernetes client (kubeconfig=%s, context=%s)",
            config.kube_config,
            config.kube_context,
        )
        kube_client = get_kube_client(config.kube_config, config.kube_context)
        self._details = BaseDetails(config, kube_client)

    def provision(self) -> None:
        pass

    def deprovision(self) -> None:
        pass

    def supports_global(self) -> bool:
        return True

    def details(self) -> BaseDetails:
        """Return the client and configuration, available after setup."""
        if self._details is None:
            raise AddonException("Base addon has not been set up")
        return self._details
