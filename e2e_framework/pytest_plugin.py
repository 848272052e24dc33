# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""pytest plugin provisioning the global addons around a test session.

The process owning the session (the xdist controller, or the only process
without xdist) provisions every global addon before tests are collected
and deprovisions them once the session finishes. xdist workers only set
the addons up so tests can read their details.
"""

import logging
import uuid
from pathlib import Path
from typing import Optional

import pytest

from e2e_framework.addon.registry import AddonRegistry
from e2e_framework.addon.vault.addon import Vault
from e2e_framework.addon.vault.setup import (
    VaultInitializer,
    clean_kubernetes_role_for_service_account_ref_auth,
    create_kubernetes_role_for_service_account_ref_auth,
)
from e2e_framework.common import E2EException
from e2e_framework.config import Config, load_config

LOG = logging.getLogger(__name__)

CONFIG_KEY = pytest.StashKey[Config]()
REGISTRY_KEY = pytest.StashKey[AddonRegistry]()


def pytest_addoption(parser):
    """Add e2e command-line options."""
    group = parser.getgroup("e2e", "e2e addons")
    group.addoption(
        "--e2e-config",
        action="store",
        default=None,
        help="Path to the e2e configuration file; global addons are only "
        "provisioned when set",
    )
    group.addoption(
        "--e2e-no-cleanup",
        action="store_true",
        default=False,
        help="Leave global addons in place after the run, overriding cleanup "
        "from the configuration file",
    )


def _is_worker(config) -> bool:
    return hasattr(config, "workerinput")


def pytest_configure(config):
    """Load the configuration and allocate the global addons."""
    config_path = config.getoption("--e2e-config", default=None)
    if config_path is None:
        return

    overrides = {}
    if config.getoption("--e2e-no-cleanup"):
        overrides["cleanup"] = False

    try:
        e2e_config = load_config(Path(config_path), overrides)
    except E2EException as e:
        raise pytest.UsageError(str(e)) from e

    registry = AddonRegistry()
    registry.init_globals(e2e_config)
    config.stash[CONFIG_KEY] = e2e_config
    config.stash[REGISTRY_KEY] = registry


def pytest_sessionstart(session):
    """Provision global addons, or only set them up on xdist workers."""
    registry = session.config.stash.get(REGISTRY_KEY, None)
    if registry is None:
        return
    e2e_config = session.config.stash[CONFIG_KEY]

    if _is_worker(session.config):
        registry.setup_globals(e2e_config)
        return

    LOG.info("Provisioning global addons")
    try:
        registry.provision_globals(e2e_config)
    except E2EException as e:
        # pytest_sessionfinish does not run after an exit from sessionstart.
        message = f"Provisioning global addons failed: {e}"
        try:
            registry.deprovision_globals(e2e_config)
        except E2EException as cleanup_error:
            LOG.warning("Deprovisioning global addons failed: %s", cleanup_error)
            message += f"; deprovisioning also failed: {cleanup_error}"
        pytest.exit(message, returncode=3)


def pytest_sessionfinish(session, exitstatus):
    """Collect addon logs and deprovision global addons."""
    registry = session.config.stash.get(REGISTRY_KEY, None)
    if registry is None or _is_worker(session.config):
        return
    e2e_config = session.config.stash[CONFIG_KEY]

    if e2e_config.artifacts_dir is not None:
        try:
            write_global_logs(registry, e2e_config.artifacts_dir)
        except E2EException as e:
            LOG.warning("Failed to collect global addon logs: %s", e)

    registry.deprovision_globals(e2e_config)


def write_global_logs(registry: AddonRegistry, artifacts_dir: Path) -> list[Path]:
    """Write logs of the provisioned addons, one file per log key."""
    logs = registry.global_logs()
    if not logs:
        return []

    target = artifacts_dir / "addon-logs"
    target.mkdir(parents=True, exist_ok=True)
    written = []
    for key, content in sorted(logs.items()):
        path = target / (key.replace("/", "_") + ".log")
        path.write_text(content)
        written.append(path)
    LOG.info("Wrote %d addon log files to %s", len(written), target)
    return written


@pytest.fixture(scope="session")
def e2e_config(request) -> Config:
    """Suite configuration loaded from --e2e-config."""
    config = request.config.stash.get(CONFIG_KEY, None)
    if config is None:
        pytest.skip("e2e configuration not given, use --e2e-config")
    return config


@pytest.fixture(scope="session")
def addon_registry(request, e2e_config) -> AddonRegistry:
    """Registry holding the global addons of the session."""
    return request.config.stash[REGISTRY_KEY]


@pytest.fixture(scope="session")
def vault_addon(addon_registry) -> Vault:
    """The global Vault addon, skipping tests when it is disabled."""
    for addon in addon_registry.addons:
        if isinstance(addon, Vault):
            return addon
    pytest.skip("Vault addon is not enabled in the e2e configuration")


@pytest.fixture
def vault_pki(vault_addon):
    """Root and intermediate PKI mounted for a single test."""
    suffix = uuid.uuid4().hex[:8]
    initializer = VaultInitializer(
        details=vault_addon.details(),
        root_mount=f"root-{suffix}",
        intermediate_mount=f"intermediate-{suffix}",
        role=f"role-{suffix}",
    )
    initializer.init()
    try:
        initializer.setup()
    except E2EException:
        # Mounts are left for inspection; only the port-forward is stopped.
        initializer.proxy.clean()
        raise
    yield initializer
    try:
        initializer.clean()
    finally:
        initializer.proxy.clean()


@pytest.fixture
def service_account_ref_auth(e2e_config, addon_registry):
    """Factory letting the controller request tokens for a service account.

    Each call creates ``sa_name`` in ``namespace`` (the suite namespace when
    omitted) with a Role and RoleBinding granting the configured controller
    service account ``create`` on its tokens. Everything created is removed
    at teardown, most recent first.
    """
    client = addon_registry.base.details().kube_client
    created = []

    def _create(role_name: str, sa_name: str, namespace: Optional[str] = None):
        sa_ns = namespace or e2e_config.namespace
        create_kubernetes_role_for_service_account_ref_auth(
            client,
            role_name,
            sa_ns,
            sa_name,
            subject_name=e2e_config.controller.name,
            subject_namespace=e2e_config.controller.namespace,
        )
        created.append((role_name, sa_ns, sa_name))

    yield _create

    for role_name, sa_ns, sa_name in reversed(created):
        clean_kubernetes_role_for_service_account_ref_auth(
            client, role_name, sa_ns, sa_name
        )
