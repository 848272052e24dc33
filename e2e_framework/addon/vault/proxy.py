# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Connection to a Vault pod through ``kubectl port-forward``."""

import logging
import os
import socket
import subprocess
import tempfile
from typing import IO, Any, Dict, Optional

import hvac
import requests
import tenacity
from hvac.exceptions import VaultError

from e2e_framework.addon.vault.models import VaultException, VaultProxyException

LOG = logging.getLogger(__name__)

VAULT_PORT = 8200


def _free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class VaultProxy:
    """Forward a local port to a Vault pod and issue requests through it."""

    def __init__(
        self,
        namespace: str,
        pod_name: str,
        kubectl: str,
        vault_ca: Optional[str],
        token: str,
    ):
        self.namespace = namespace
        self.pod_name = pod_name
        self.kubectl = kubectl
        self.vault_ca = vault_ca
        self.token = token
        self.local_port: Optional[int] = None
        self.client: Optional[hvac.Client] = None
        self._process: Optional[subprocess.Popen] = None
        self._stderr: Optional[IO[str]] = None
        self._ca_file: Optional[str] = None

    @property
    def url(self) -> str:
        scheme = "https" if self.vault_ca else "http"
        return f"{scheme}://127.0.0.1:{self.local_port}"

    def init(self) -> hvac.Client:
        """Start the port-forward and return a client authenticated as root."""
        self.local_port = _free_local_port()
        command = [
            self.kubectl,
            "port-forward",
            "--namespace",
            self.namespace,
            f"pod/{self.pod_name}",
            f"{self.local_port}:{VAULT_PORT}",
        ]
        LOG.debug("Running: %s", " ".join(command))
        # A file, not a pipe: nothing drains stderr while the forward is up.
        self._stderr = tempfile.TemporaryFile(mode="w+")
        try:
            self._process = subprocess.Popen(
                command,
                stdout=subprocess.DEVNULL,
                stderr=self._stderr,
                text=True,
            )
        except OSError as e:
            self.clean()
            raise VaultProxyException(
                f"error starting port-forward to {self.namespace}/{self.pod_name}: {e}"
            ) from e

        try:
            self._wait_for_port()
        except (OSError, VaultProxyException):
            self.clean()
            raise

        verify: Any = False
        if self.vault_ca:
            fd, self._ca_file = tempfile.mkstemp(prefix="vault-ca-", suffix=".pem")
            with os.fdopen(fd, "w") as f:
                f.write(self.vault_ca)
            verify = self._ca_file

        self.client = hvac.Client(url=self.url, token=self.token, verify=verify)
        LOG.info(
            "Forwarding %s to Vault pod %s/%s",
            self.url,
            self.namespace,
            self.pod_name,
        )
        return self.client

    @tenacity.retry(
        wait=tenacity.wait_fixed(1),
        stop=tenacity.stop_after_delay(30),
        retry=tenacity.retry_if_exception_type(OSError),
        reraise=True,
    )
    def _wait_for_port(self) -> None:
        """Block until the forwarded port accepts connections."""
        if self._process is not None and self._process.poll() is not None:
            stderr = ""
            if self._stderr is not None:
                self._stderr.seek(0)
                stderr = self._stderr.read().strip()
            raise VaultProxyException(
                f"port-forward exited with code {self._process.returncode}: {stderr}"
            )
        with socket.create_connection(("127.0.0.1", self.local_port), timeout=1):
            pass

    def call_vault(
        self,
        method: str,
        url: str,
        response_field: str,
        params: Optional[Dict[str, Any]],
    ) -> str:
        """Send a raw request to the Vault API.

        :param method: HTTP method
        :param url: path of the endpoint, starting with /v1
        :param response_field: key under ``data`` in the response to return,
            empty when the response body is not needed
        :param params: JSON body of the request
        :return: the requested field, or an empty string
        """
        if self.client is None:
            raise VaultProxyException("Vault proxy has not been initialised")

        LOG.debug("Calling Vault: %s %s", method, url)
        try:
            response = self.client.adapter.request(method, url, json=params or None)
        except (VaultError, requests.RequestException) as e:
            raise VaultException(f"{method} {url}: {e}") from e

        if not response_field:
            return ""

        data = response.get("data") if isinstance(response, dict) else None
        if not data or response_field not in data:
            raise VaultException(
                f"{method} {url}: response has no field {response_field!r}"
            )
        return data[response_field]

    def clean(self) -> None:
        """Stop the port-forward and release the client."""
        if self.client is not None:
            self.client.adapter.close()
            self.client = None

        if self._process is not None:
            self._process.terminate()
            try:
                self._process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
            self._process = None

        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None

        if self._ca_file is not None:
            os.unlink(self._ca_file)
            self._ca_file = None
