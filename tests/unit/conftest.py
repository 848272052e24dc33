# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

import json
from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest
from lightkube import ApiError

from e2e_framework.addon.vault.models import Details
from e2e_framework.config import Config


@pytest.fixture
def api_error():
    """Factory for lightkube ApiErrors as returned by the API server."""

    def _api_error(code: int = 409, reason: str = "AlreadyExists") -> ApiError:
        return ApiError(
            Mock(),
            httpx.Response(
                status_code=code,
                content=json.dumps(
                    {"code": code, "reason": reason, "message": f"{reason} ({code})"}
                ),
            ),
        )

    return _api_error


@pytest.fixture
def suite_config():
    """Suite configuration with defaults."""
    return Config()


@pytest.fixture
def vault_details():
    """Vault pod coordinates used by most Vault tests."""
    return Details(
        kubectl="kubectl",
        pod_name="vault-0",
        pod_ns="vault",
        pod_sa="vault",
        host="http://vault.vault:8200",
    )


@pytest.fixture
def kube():
    """lightkube client mock."""
    return MagicMock()


@pytest.fixture
def run():
    with patch("subprocess.run") as p:
        yield p
