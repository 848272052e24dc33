# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Registry of the addons shared by every test in a suite run."""

import logging
from typing import Dict, List, Optional

from e2e_framework.addon.base import Addon, Base, LoggableAddon
from e2e_framework.addon.vault.addon import Vault
from e2e_framework.common import AddonException, AggregateError
from e2e_framework.config import Config

LOG = logging.getLogger(__name__)


class AddonRegistry:
    """Ordered set of global addons and the subset already provisioned.

    Addons are provisioned in registration order and deprovisioned in
    reverse, so an addon may rely on anything registered before it.
    """

    def __init__(self):
        self.base = Base()
        self._addons: List[Addon] = []
        self._provisioned: List[Addon] = []
        self._inited = False

    @property
    def addons(self) -> List[Addon]:
        """Registered addons, in provisioning order."""
        return list(self._addons)

    @property
    def provisioned(self) -> List[Addon]:
        """Addons handed to provisioning, in the order it happened."""
        return list(self._provisioned)

    def init_globals(self, config: Config) -> None:
        """Allocate the global addons.

        Repeated calls are no-ops.
        """
        if self._inited:
            return
        self._inited = True

        self.base = Base()
        self._addons = [self.base]
        if config.addons.vault.enabled:
            self._addons.append(Vault(self.base))
        LOG.debug(
            "Initialised global addons: %s", ", ".join(a.name for a in self._addons)
        )

    def register(self, addon: Addon) -> None:
        """Append an addon after the ones already registered."""
        self._addons.append(addon)

    def provision_globals(self, config: Config) -> None:
        """Set up and provision every global addon.

        Meant to run once per suite, in the process owning provisioning.
        """
        # TODO: provisioning independent addons in parallel needs dependency
        # information between addons, which registration order only implies.
        for addon in self._addons:
            self._provision_global(addon, config)

    def setup_globals(self, config: Config) -> None:
        """Call setup on every global addon without provisioning.

        Worker processes use this so their addon instances are configured
        for tests while another process owns the provisioned resources.
        """
        for addon in self._addons:
            addon.setup(config)

    def global_logs(self) -> Dict[str, str]:
        """Collect logs from every provisioned addon able to return them."""
        out: Dict[str, str] = {}
        for addon in self._provisioned:
            if not isinstance(addon, LoggableAddon):
                continue

            # Keys are not namespaced per addon; a later addon overwrites an
            # earlier one on collision.
            out.update(addon.logs())
        return out

    def deprovision_globals(self, config: Config) -> None:
        """Deprovision provisioned addons in reverse order.

        A failure does not stop the remaining addons from being
        deprovisioned; all failures are raised together.
        """
        if not config.cleanup:
            LOG.info("Skipping deprovisioning as cleanup set to false.")
            return

        errors: List[Optional[BaseException]] = []
        for addon in reversed(self._provisioned):
            LOG.info("Deprovisioning addon '%s'", addon.name)
            try:
                addon.deprovision()
            except Exception as e:
                LOG.warning("Failed to deprovision addon '%s': %s", addon.name, e)
                errors.append(e)

        error = AggregateError.from_errors(errors)
        if error is not None:
            raise error

    def _provision_global(self, addon: Addon, config: Config) -> None:
        addon.setup(config)
        if not addon.supports_global():
            raise AddonException(
                "Requested global plugin does not support shared mode with "
                "current configuration"
            )
        if config.cleanup:
            addon.deprovision()
        self._provisioned.append(addon)
        LOG.info("Provisioning addon '%s'", addon.name)
        addon.provision()
