# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Suite-wide configuration for the e2e framework."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import pydantic
import yaml

from e2e_framework.common import E2EException

LOG = logging.getLogger(__name__)


class ConfigNotFoundException(E2EException):
    """Raised when the configuration file does not exist."""

    pass


class ConfigValidationException(E2EException):
    """Raised when the configuration file holds invalid values."""

    pass


class PodIdentity(pydantic.BaseModel):
    """A service account a pod runs as."""

    name: str = "cert-manager"
    namespace: str = "cert-manager"


class VaultAddonConfig(pydantic.BaseModel):
    """Settings for the helm-managed Vault server."""

    enabled: bool = False
    namespace: str = "vault"
    release_name: str = "vault"
    chart: str = "hashicorp/vault"
    chart_version: Optional[str] = None
    root_token: str = "vault-root-token"
    service_account: str = "vault"
    install_timeout: str = pydantic.Field(
        default="5m", description="Value passed to helm --timeout"
    )


class AddonsConfig(pydantic.BaseModel):
    """Per-addon settings."""

    vault: VaultAddonConfig = VaultAddonConfig()


class Config(pydantic.BaseModel):
    """Settings shared by every addon and test in a suite run."""

    kube_config: Optional[str] = None
    kube_context: Optional[str] = None
    kubectl: str = "kubectl"
    helm: str = "helm"
    namespace: str = "cert-manager"
    cleanup: bool = True
    controller: PodIdentity = PodIdentity()
    artifacts_dir: Optional[Path] = None
    addons: AddonsConfig = AddonsConfig()


def _apply_override(data: Dict[str, Any], key: str, value: Any) -> None:
    """Set a dotted key such as ``addons.vault.enabled`` in a nested dict."""
    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def load_config(
    path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None
) -> Config:
    """Load the suite configuration.

    :param path: YAML file to read, defaults are used when None
    :param overrides: dotted keys overriding values from the file
    :return: the validated configuration
    """
    data: Dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise ConfigNotFoundException(f"Configuration file not found: {path}")
        LOG.debug("Loading e2e configuration from %s", path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

    for key, value in (overrides or {}).items():
        if value is not None:
            _apply_override(data, key, value)

    try:
        return Config.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigValidationException(
            f"Invalid configuration in {path or '<defaults>'}: {e}"
        ) from e
