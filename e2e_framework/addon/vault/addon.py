# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Vault server shared by the suite, installed with helm in dev mode."""

import logging
import subprocess
from typing import Dict, List, Optional

from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import Pod

from e2e_framework.addon.base import Addon, Base
from e2e_framework.addon.vault.models import Details
from e2e_framework.common import AddonException
from e2e_framework.config import Config, VaultAddonConfig

LOG = logging.getLogger(__name__)

VAULT_CONTAINER = "vault"


class Vault(Addon):
    """Dev-mode Vault server, provisioned once per suite run."""

    name = "vault"

    def __init__(self, base: Base):
        self.base = base
        self._config: Optional[Config] = None
        self._details: Optional[Details] = None

    @property
    def vault_config(self) -> VaultAddonConfig:
        if self._config is None:
            raise AddonException("Vault addon has not been set up")
        return self._config.addons.vault

    def setup(self, config: Config) -> None:
        self._config = config
        self._details = None

    def supports_global(self) -> bool:
        return True

    def provision(self) -> None:
        """Install the Vault chart and wait for the server to be ready."""
        cfg = self.vault_config
        args = [
            "upgrade",
            "--install",
            cfg.release_name,
            cfg.chart,
            "--namespace",
            cfg.namespace,
            "--create-namespace",
            "--wait",
            "--timeout",
            cfg.install_timeout,
            "--set",
            "server.dev.enabled=true",
            "--set",
            f"server.dev.devRootToken={cfg.root_token}",
            "--set",
            "injector.enabled=false",
        ]
        if cfg.chart_version:
            args.extend(["--version", cfg.chart_version])

        LOG.info(
            "Installing Vault release '%s' in '%s'", cfg.release_name, cfg.namespace
        )
        self._helm(args)

    def deprovision(self) -> None:
        """Uninstall the Vault release, succeeding when it is absent."""
        cfg = self.vault_config
        LOG.info(
            "Removing Vault release '%s' from '%s'", cfg.release_name, cfg.namespace
        )
        self._helm(
            [
                "uninstall",
                cfg.release_name,
                "--namespace",
                cfg.namespace,
                "--ignore-not-found",
                "--wait",
            ]
        )
        self._details = None

    def details(self) -> Details:
        """Return how to reach the Vault server pod."""
        if self._details is not None:
            return self._details

        cfg = self.vault_config
        self._details = Details(
            kubectl=self._config.kubectl,
            pod_name=self._find_pod_name(),
            pod_ns=cfg.namespace,
            pod_sa=cfg.service_account,
            host=f"http://{cfg.release_name}.{cfg.namespace}:8200",
            root_token=cfg.root_token,
        )
        return self._details

    def logs(self) -> Dict[str, str]:
        """Return the Vault server logs keyed by namespace/pod/container."""
        details = self.details()
        kube = self.base.details().kube_client
        try:
            lines = kube.log(
                details.pod_name, namespace=details.pod_ns, container=VAULT_CONTAINER
            )
            content = "".join(lines)
        except ApiError as e:
            raise AddonException(
                f"error reading logs of {details.pod_ns}/{details.pod_name}: {e}"
            ) from e
        return {f"{details.pod_ns}/{details.pod_name}/{VAULT_CONTAINER}": content}

    def _find_pod_name(self) -> str:
        cfg = self.vault_config
        kube = self.base.details().kube_client
        labels = {
            "app.kubernetes.io/name": "vault",
            "app.kubernetes.io/instance": cfg.release_name,
            "component": "server",
        }
        try:
            pods = list(kube.list(Pod, namespace=cfg.namespace, labels=labels))
        except ApiError as e:
            raise AddonException(f"error listing Vault pods: {e}") from e
        if not pods:
            raise AddonException(
                f"No Vault server pod found for release '{cfg.release_name}' "
                f"in namespace '{cfg.namespace}'"
            )
        return pods[0].metadata.name

    def _helm(self, args: List[str]) -> subprocess.CompletedProcess:
        command = [self._config.helm] + args
        LOG.debug("Running: %s", " ".join(command))
        result = subprocess.run(command, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            raise AddonException(
                f"helm {args[0]} failed (exit {result.returncode}): "
                f"{result.stderr or result.stdout}"
            )
        return result
