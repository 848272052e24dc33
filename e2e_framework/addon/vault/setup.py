# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Vault PKI setup for tests issuing certificates through Vault.

The same Vault server is used by every test. Each scenario mounts its own
root and intermediate PKI engines through a ``VaultInitializer`` and
unmounts them with ``clean``. No step is retried and nothing is rolled back
on failure; callers clean up explicitly.
"""

import logging
from typing import Optional, Tuple

import hvac
import requests
from hvac.exceptions import VaultError
from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.models.rbac_v1 import PolicyRule, RoleRef, Subject
from lightkube.resources.core_v1 import Secret, ServiceAccount
from lightkube.resources.rbac_authorization_v1 import (
    ClusterRole,
    ClusterRoleBinding,
    Role,
    RoleBinding,
)

from e2e_framework.addon.vault.models import (
    AuthRoleRequest,
    ConfigURLsRequest,
    Details,
    GenerateCARequest,
    KubernetesAuthConfigRequest,
    KubernetesRoleException,
    PKIRoleRequest,
    SetSignedRequest,
    SignIntermediateRequest,
    VaultException,
)
from e2e_framework.addon.vault.proxy import VaultProxy

LOG = logging.getLogger(__name__)

ROOT_CA_TTL = "87600h"
INTERMEDIATE_CA_TTL = "43800h"

RBAC_API_GROUP = "rbac.authorization.k8s.io"

_VAULT_ERRORS = (VaultException, VaultError, requests.RequestException)


def new_vault_app_role_secret(secret_name: str, secret_id: str) -> Secret:
    """Secret holding an AppRole secret ID under the ``secretkey`` key."""
    return Secret(
        metadata=ObjectMeta(generateName=secret_name),
        stringData={"secretkey": secret_id},
    )


def new_vault_kubernetes_secret(secret_name: str, service_account_name: str) -> Secret:
    """Service account token Secret for the given service account."""
    return Secret(
        metadata=ObjectMeta(
            name=secret_name,
            annotations={"kubernetes.io/service-account.name": service_account_name},
        ),
        type="kubernetes.io/service-account-token",
    )


def _sign_policy(role_path: str) -> str:
    return f'path "{role_path}" {{ capabilities = [ "create", "update" ] }}'


def _auth_mount_exists(auths: dict, path: str) -> bool:
    mounts = auths.get("data", auths) if isinstance(auths, dict) else {}
    return f"{path.strip('/')}/" in mounts


class VaultInitializer:
    """State of a Vault PKI configured for one test scenario."""

    def __init__(
        self,
        details: Details,
        root_mount: str,
        intermediate_mount: str,
        role: str,
        configure_with_root: bool = False,
        app_role_auth_path: str = "",
        kubernetes_auth_path: str = "",
        api_server_url: str = "",
        api_server_ca: str = "",
    ):
        self.details = details
        self.root_mount = root_mount
        self.intermediate_mount = intermediate_mount
        # Whether the intermediate CA should be configured with the root CA
        self.configure_with_root = configure_with_root
        self.role = role
        self.app_role_auth_path = app_role_auth_path
        self.kubernetes_auth_path = kubernetes_auth_path
        self.api_server_url = api_server_url
        self.api_server_ca = api_server_ca
        self.client: Optional[hvac.Client] = None
        self.proxy: Optional[VaultProxy] = None

    def init(self) -> None:
        """Connect to the Vault pod through a port-forward."""
        if not self.app_role_auth_path:
            self.app_role_auth_path = "approle"

        if not self.kubernetes_auth_path:
            self.kubernetes_auth_path = "kubernetes"

        self.proxy = VaultProxy(
            self.details.pod_ns,
            self.details.pod_name,
            self.details.kubectl,
            self.details.vault_ca,
            self.details.root_token,
        )
        self.client = self.proxy.init()

    def setup(self) -> None:
        """Set up a root and an intermediate CA and a signing role."""
        LOG.info(
            "Setting up Vault PKI (root=%s, intermediate=%s)",
            self.root_mount,
            self.intermediate_mount,
        )
        self._mount_pki(self.root_mount, ROOT_CA_TTL)
        root_ca = self._generate_root_cert()

        # Issuing certificate endpoints and CRL distribution points set on
        # certificates issued by the root.
        self._configure_cert(self.root_mount)

        self._mount_pki(self.intermediate_mount, INTERMEDIATE_CA_TTL)
        csr = self._generate_intermediate_signing_req()
        intermediate_ca = self._sign_certificate(csr)

        ca_chain = intermediate_ca
        if self.configure_with_root:
            ca_chain = f"{intermediate_ca}\n{root_ca}"
        self._import_sign_intermediate(ca_chain, self.intermediate_mount)

        self._configure_cert(self.intermediate_mount)
        self._setup_role()
        self._setup_kubernetes_based_auth()

    def clean(self) -> None:
        """Unmount both PKI engines and close the connection."""
        for mount in (self.intermediate_mount, self.root_mount):
            try:
                self._vault.sys.disable_secrets_engine(path=mount)
            except _VAULT_ERRORS as e:
                raise VaultException(f"unable to unmount {mount}: {e}") from e

        self.proxy.clean()

    def create_app_role(self) -> Tuple[str, str]:
        """Create an AppRole allowed to sign with the PKI role.

        :return: the role ID and a newly generated secret ID
        """
        role_path = f"{self.intermediate_mount}/sign/{self.role}"
        try:
            self._vault.sys.create_or_update_policy(
                name=self.role, policy=_sign_policy(role_path)
            )
        except _VAULT_ERRORS as e:
            raise VaultException(f"error creating policy: {e}") from e

        base_url = f"/v1/auth/{self.app_role_auth_path}/role/{self.role}"
        params = AuthRoleRequest(policies=self.role)
        try:
            self.proxy.call_vault("POST", base_url, "", params.to_params())
        except VaultException as e:
            raise VaultException(f"error creating approle: {e}") from e

        try:
            role_id = self.proxy.call_vault("GET", f"{base_url}/role-id", "role_id", {})
        except VaultException as e:
            raise VaultException(f"error reading role_id: {e}") from e

        try:
            secret_id = self.proxy.call_vault(
                "POST", f"{base_url}/secret-id", "secret_id", {}
            )
        except VaultException as e:
            raise VaultException(f"error reading secret_id: {e}") from e

        return role_id, secret_id

    def clean_app_role(self) -> None:
        """Delete the AppRole and its policy."""
        url = f"/v1/auth/{self.app_role_auth_path}/role/{self.role}"
        try:
            self.proxy.call_vault("DELETE", url, "", {})
        except VaultException as e:
            raise VaultException(f"error deleting AppRole: {e}") from e

        try:
            self._vault.sys.delete_policy(name=self.role)
        except _VAULT_ERRORS as e:
            raise VaultException(f"error deleting policy: {e}") from e

    @property
    def _vault(self) -> hvac.Client:
        if self.client is None:
            raise VaultException("Vault initializer has not been initialised")
        return self.client

    def _mount_pki(self, mount: str, ttl: str) -> None:
        try:
            self._vault.sys.enable_secrets_engine(
                backend_type="pki", path=mount, config={"max_lease_ttl": ttl}
            )
        except _VAULT_ERRORS as e:
            raise VaultException(f"error mounting {mount}: {e}") from e

    def _generate_root_cert(self) -> str:
        params = GenerateCARequest(common_name="Root CA", ttl=ROOT_CA_TTL)
        url = f"/v1/{self.root_mount}/root/generate/internal"
        try:
            return self.proxy.call_vault(
                "POST", url, "certificate", params.to_params()
            )
        except VaultException as e:
            raise VaultException(
                f"error generating CA root certificate: {e}"
            ) from e

    def _generate_intermediate_signing_req(self) -> str:
        params = GenerateCARequest(
            common_name="Intermediate CA", ttl=INTERMEDIATE_CA_TTL
        )
        url = f"/v1/{self.intermediate_mount}/intermediate/generate/internal"
        try:
            return self.proxy.call_vault("POST", url, "csr", params.to_params())
        except VaultException as e:
            raise VaultException(
                f"error generating CA intermediate certificate: {e}"
            ) from e

    def _sign_certificate(self, csr: str) -> str:
        params = SignIntermediateRequest(csr=csr, ttl=INTERMEDIATE_CA_TTL)
        url = f"/v1/{self.root_mount}/root/sign-intermediate"
        try:
            return self.proxy.call_vault(
                "POST", url, "certificate", params.to_params()
            )
        except VaultException as e:
            raise VaultException(
                f"error signing intermediate Vault certificate: {e}"
            ) from e

    def _import_sign_intermediate(self, ca_chain: str, intermediate_mount: str) -> None:
        params = SetSignedRequest(certificate=ca_chain)
        url = f"/v1/{intermediate_mount}/intermediate/set-signed"
        try:
            self.proxy.call_vault("POST", url, "", params.to_params())
        except VaultException as e:
            raise VaultException(
                f"error importing intermediate Vault certificate: {e}"
            ) from e

    def _configure_cert(self, mount: str) -> None:
        params = ConfigURLsRequest.for_mount(mount)
        url = f"/v1/{mount}/config/urls"
        try:
            self.proxy.call_vault("POST", url, "", params.to_params())
        except VaultException as e:
            raise VaultException(f"error configuring Vault certificate: {e}") from e

    def _enable_auth(self, path: str, method_type: str, description: str) -> None:
        try:
            auths = self._vault.sys.list_auth_methods()
        except _VAULT_ERRORS as e:
            raise VaultException(f"error fetching auth mounts: {e}") from e

        if _auth_mount_exists(auths, path):
            return

        LOG.debug("Enabling %s auth at %s", method_type, path)
        try:
            self._vault.sys.enable_auth_method(method_type=method_type, path=path)
        except _VAULT_ERRORS as e:
            raise VaultException(f"error enabling {description}: {e}") from e

    def _write_pki_role(self, params: PKIRoleRequest) -> None:
        url = f"/v1/{self.intermediate_mount}/roles/{self.role}"
        try:
            self.proxy.call_vault("POST", url, "", params.to_params())
        except VaultException as e:
            raise VaultException(f"error creating role {self.role}: {e}") from e

    def _setup_role(self) -> None:
        self._enable_auth(self.app_role_auth_path, "approle", "approle")
        self._write_pki_role(PKIRoleRequest())

    def _setup_kubernetes_based_auth(self) -> None:
        if not self.api_server_url:
            LOG.debug("No API server URL given, skipping Kubernetes auth setup")
            return

        self._enable_auth(
            self.kubernetes_auth_path, "kubernetes", "kubernetes auth"
        )

        params = KubernetesAuthConfigRequest(
            kubernetes_host=self.api_server_url,
            kubernetes_ca_cert=self.api_server_ca,
        )
        url = f"/v1/auth/{self.kubernetes_auth_path}/config"
        try:
            self.proxy.call_vault("POST", url, "", params.to_params())
        except VaultException as e:
            raise VaultException(
                f"error configuring kubernetes auth backend: {e}"
            ) from e

    def create_kubernetes_role(
        self, client: Client, vault_role: str, bound_ns: str, bound_sa: str
    ) -> None:
        """Set up Kubernetes auth delegation for a bound service account.

        Two namespaces are involved: the Vault pod's service account, which
        Vault uses to review tokens, and ``bound_ns``/``bound_sa``, the
        service account logging in through the Vault Kubernetes auth.
        """
        name = role_name(self.details.pod_ns, self.details.pod_sa)
        cluster_role = ClusterRole(
            metadata=ObjectMeta(name=name),
            rules=[
                PolicyRule(
                    apiGroups=["authentication.k8s.io"],
                    resources=["tokenreviews"],
                    verbs=["create"],
                ),
                PolicyRule(
                    apiGroups=["authorization.k8s.io"],
                    resources=["subjectaccessreviews"],
                    verbs=["create"],
                ),
            ],
        )
        try:
            client.create(cluster_role)
        except ApiError as e:
            raise KubernetesRoleException(
                f"error creating Role for Kubernetes auth ServiceAccount: {e}"
            ) from e

        role_binding = ClusterRoleBinding(
            metadata=ObjectMeta(name=name),
            roleRef=RoleRef(apiGroup=RBAC_API_GROUP, kind="ClusterRole", name=name),
            subjects=[
                Subject(
                    kind="ServiceAccount",
                    name=self.details.pod_sa,
                    namespace=self.details.pod_ns,
                )
            ],
        )
        try:
            client.create(role_binding)
        except ApiError as e:
            raise KubernetesRoleException(
                f"error creating RoleBinding for Kubernetes auth ServiceAccount: {e}"
            ) from e

        service_account = ServiceAccount(
            metadata=ObjectMeta(name=bound_sa, namespace=bound_ns)
        )
        try:
            client.create(service_account, namespace=bound_ns)
        except ApiError as e:
            raise KubernetesRoleException(
                f"error creating ServiceAccount for Kubernetes auth: {e}"
            ) from e

        role_params = AuthRoleRequest(
            policies=f"[{self.role}]",
            period=None,
            bound_service_account_names=bound_sa,
            bound_service_account_namespaces=bound_ns,
        )
        url = f"/v1/auth/{self.kubernetes_auth_path}/role/{vault_role}"
        try:
            self.proxy.call_vault("POST", url, "", role_params.to_params())
        except VaultException as e:
            raise VaultException(f"error configuring kubernetes auth role: {e}") from e

        self._write_pki_role(
            PKIRoleRequest(
                bound_service_account_names=bound_sa,
                bound_service_account_namespaces=bound_ns,
            )
        )

        role_path = f"{self.intermediate_mount}/sign/{self.role}"
        try:
            self._vault.sys.create_or_update_policy(
                name=self.role, policy=_sign_policy(role_path)
            )
        except _VAULT_ERRORS as e:
            raise VaultException(f"error creating policy: {e}") from e

        params = AuthRoleRequest(
            policies=self.role,
            bound_service_account_names=bound_sa,
            bound_service_account_namespaces=bound_ns,
        )
        url = f"/v1/auth/{self.kubernetes_auth_path}/role/{self.role}"
        try:
            self.proxy.call_vault("POST", url, "", params.to_params())
        except VaultException as e:
            raise VaultException(f"error creating kubernetes role: {e}") from e

    def clean_kubernetes_role(
        self, client: Client, vault_role: str, bound_ns: str, bound_sa: str
    ) -> None:
        """Remove what create_kubernetes_role created in the cluster and Vault."""
        name = role_name(self.details.pod_ns, self.details.pod_sa)
        client.delete(ClusterRoleBinding, name)
        client.delete(ClusterRole, name)
        client.delete(ServiceAccount, bound_sa, namespace=bound_ns)

        url = f"/v1/auth/{self.kubernetes_auth_path}/role/{vault_role}"
        try:
            self.proxy.call_vault("DELETE", url, "", None)
        except VaultException as e:
            raise VaultException(
                f"error cleaning up kubernetes auth role: {e}"
            ) from e


def role_name(pod_ns: str, pod_sa: str) -> str:
    """Name of the auth delegator ClusterRole for a Vault pod identity."""
    return f"auth-delegator:{pod_ns}:{pod_sa}"


def role_and_binding_for_service_account_ref_auth(
    role_name: str,
    namespace: str,
    service_account: str,
    subject_name: str = "cert-manager",
    subject_namespace: str = "cert-manager",
) -> Tuple[Role, RoleBinding]:
    """Role allowing the controller to request tokens for a service account.

    :param subject_name: service account of the controller doing the token
        request
    :param subject_namespace: namespace of that service account
    """
    role = Role(
        metadata=ObjectMeta(name=role_name, namespace=namespace),
        rules=[
            PolicyRule(
                apiGroups=[""],
                resources=["serviceaccounts/token"],
                resourceNames=[service_account],
                verbs=["create"],
            )
        ],
    )
    binding = RoleBinding(
        metadata=ObjectMeta(name=role_name, namespace=namespace),
        roleRef=RoleRef(apiGroup=RBAC_API_GROUP, kind="Role", name=role_name),
        subjects=[
            Subject(
                kind="ServiceAccount",
                name=subject_name,
                namespace=subject_namespace,
            )
        ],
    )
    return role, binding


def create_kubernetes_role_for_service_account_ref_auth(
    client: Client,
    role_name: str,
    sa_ns: str,
    sa_name: str,
    subject_name: str = "cert-manager",
    subject_namespace: str = "cert-manager",
) -> None:
    """Create a service account and the Role used through serviceAccountRef."""
    role, binding = role_and_binding_for_service_account_ref_auth(
        role_name, sa_ns, sa_name, subject_name, subject_namespace
    )
    try:
        client.create(
            ServiceAccount(metadata=ObjectMeta(name=sa_name, namespace=sa_ns))
        )
    except ApiError as e:
        raise KubernetesRoleException(
            "error creating ServiceAccount for Kubernetes auth with "
            f"serviceAccountRef: {e}"
        ) from e

    try:
        client.create(role, namespace=sa_ns)
    except ApiError as e:
        raise KubernetesRoleException(
            "error creating Role for Kubernetes auth ServiceAccount with "
            f"serviceAccountRef: {e}"
        ) from e

    try:
        client.create(binding, namespace=sa_ns)
    except ApiError as e:
        raise KubernetesRoleException(
            "error creating RoleBinding for Kubernetes auth ServiceAccount with "
            f"serviceAccountRef: {e}"
        ) from e


def clean_kubernetes_role_for_service_account_ref_auth(
    client: Client, role_name: str, sa_ns: str, sa_name: str
) -> None:
    """Delete the RoleBinding, Role and service account, in that order."""
    client.delete(RoleBinding, role_name, namespace=sa_ns)
    client.delete(Role, role_name, namespace=sa_ns)
    client.delete(ServiceAccount, sa_name, namespace=sa_ns)
