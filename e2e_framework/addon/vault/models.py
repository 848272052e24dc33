# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Vault addon models, request bodies and exceptions."""

from typing import Optional

import pydantic

from e2e_framework.common import E2EException

# =============================================================================
# Exceptions
# =============================================================================


class VaultException(E2EException):
    """Raised when a call to Vault fails."""

    pass


class VaultProxyException(VaultException):
    """Raised when the connection to the Vault pod cannot be established."""

    pass


class KubernetesRoleException(E2EException):
    """Raised when RBAC objects for Kubernetes auth cannot be created."""

    pass


# =============================================================================
# Data Models
# =============================================================================


class Details(pydantic.BaseModel):
    """How to reach a Vault server running in the cluster."""

    kubectl: str = "kubectl"
    pod_name: str
    pod_ns: str
    pod_sa: str = "vault"
    host: str = pydantic.Field(
        description="Vault address as seen from inside the cluster"
    )
    vault_ca: Optional[str] = pydantic.Field(
        default=None,
        description="PEM CA certificate of the Vault listener, None for plain HTTP",
    )
    root_token: str = "vault-root-token"


# =============================================================================
# Request bodies
# =============================================================================


class VaultRequest(pydantic.BaseModel):
    """Base for Vault API request bodies."""

    model_config = pydantic.ConfigDict(extra="forbid")

    def to_params(self) -> dict:
        """Return the JSON body, leaving unset optional fields out."""
        return self.model_dump(exclude_none=True)


class GenerateCARequest(VaultRequest):
    """Body of pki/root/generate and pki/intermediate/generate."""

    common_name: str
    ttl: str
    exclude_cn_from_sans: bool = True
    key_type: str = "ec"
    key_bits: int = 256


class SignIntermediateRequest(VaultRequest):
    """Body of pki/root/sign-intermediate."""

    csr: str
    use_csr_values: bool = True
    ttl: str = "43800h"
    exclude_cn_from_sans: bool = True


class SetSignedRequest(VaultRequest):
    """Body of pki/intermediate/set-signed."""

    certificate: str


class ConfigURLsRequest(VaultRequest):
    """Body of pki/config/urls."""

    issuing_certificates: str
    crl_distribution_points: str

    @classmethod
    def for_mount(cls, mount: str) -> "ConfigURLsRequest":
        """URLs served by the in-cluster Vault service for a PKI mount."""
        return cls(
            issuing_certificates=f"https://vault.vault:8200/v1/{mount}/ca",
            crl_distribution_points=f"https://vault.vault:8200/v1/{mount}/crl",
        )


class PKIRoleRequest(VaultRequest):
    """Body of pki/roles/<role>."""

    allow_any_name: bool = True
    max_ttl: str = "2160h"
    key_type: str = "any"
    require_cn: bool = False
    allowed_uri_sans: str = "spiffe://cluster.local/*"
    enforce_hostnames: bool = False
    allow_bare_domains: bool = True
    bound_service_account_names: Optional[str] = None
    bound_service_account_namespaces: Optional[str] = None


class AuthRoleRequest(VaultRequest):
    """Body of auth/<approle|kubernetes>/role/<role> for a PKI signing role."""

    policies: str
    period: Optional[str] = "24h"
    bound_service_account_names: Optional[str] = None
    bound_service_account_namespaces: Optional[str] = None


class KubernetesAuthConfigRequest(VaultRequest):
    """Body of auth/kubernetes/config."""

    kubernetes_host: str
    kubernetes_ca_cert: str = ""
    # Static service account tokens are issued by "kubernetes/serviceaccount"
    # while bound tokens carry the API server URL as issuer; both are used
    # against the same auth config.
    disable_iss_validation: bool = True
