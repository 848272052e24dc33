# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

from unittest.mock import MagicMock, call, patch

import pytest
from hvac.exceptions import InvalidRequest
from lightkube import ApiError
from lightkube.resources.core_v1 import ServiceAccount
from lightkube.resources.rbac_authorization_v1 import (
    ClusterRole,
    ClusterRoleBinding,
    Role,
    RoleBinding,
)

from e2e_framework.addon.vault.models import KubernetesRoleException, VaultException
from e2e_framework.addon.vault.setup import (
    VaultInitializer,
    clean_kubernetes_role_for_service_account_ref_auth,
    create_kubernetes_role_for_service_account_ref_auth,
    new_vault_app_role_secret,
    new_vault_kubernetes_secret,
    role_and_binding_for_service_account_ref_auth,
    role_name,
)

SIGN_POLICY = (
    'path "intermediate/sign/issuer" { capabilities = [ "create", "update" ] }'
)


def fake_call_vault(method, url, response_field, params):
    """Answer PKI requests the way a Vault server would."""
    if url.endswith("/root/generate/internal"):
        return "ROOT-PEM"
    if url.endswith("/intermediate/generate/internal"):
        return "CSR-PEM"
    if url.endswith("/root/sign-intermediate"):
        return "INTERMEDIATE-PEM"
    if url.endswith("/role-id"):
        return "the-role-id"
    if url.endswith("/secret-id"):
        return "the-secret-id"
    return ""


@pytest.fixture
def proxy():
    proxy = MagicMock()
    proxy.call_vault.side_effect = fake_call_vault
    return proxy


@pytest.fixture
def vault_client():
    client = MagicMock()
    client.sys.list_auth_methods.return_value = {"data": {"token/": {}}}
    return client


@pytest.fixture
def initializer(vault_details, proxy, vault_client):
    """Initializer connected to mocked Vault proxy and client."""
    initializer = VaultInitializer(
        details=vault_details,
        root_mount="root",
        intermediate_mount="intermediate",
        role="issuer",
    )
    with patch(
        "e2e_framework.addon.vault.setup.VaultProxy", return_value=proxy
    ) as proxy_cls:
        proxy.init.return_value = vault_client
        initializer.init()
    initializer.proxy_cls = proxy_cls
    return initializer


def vault_calls(proxy):
    """(method, url) of every raw Vault request, in order."""
    return [(c.args[0], c.args[1]) for c in proxy.call_vault.call_args_list]


def params_for(proxy, url):
    for c in proxy.call_vault.call_args_list:
        if c.args[1] == url:
            return c.args[3]
    raise AssertionError(f"{url} was not called")


class TestInit:
    def test_defaults_auth_paths(self, initializer):
        assert initializer.app_role_auth_path == "approle"
        assert initializer.kubernetes_auth_path == "kubernetes"

    def test_keeps_given_auth_paths(self, vault_details, proxy):
        initializer = VaultInitializer(
            details=vault_details,
            root_mount="root",
            intermediate_mount="intermediate",
            role="issuer",
            app_role_auth_path="custom-approle",
            kubernetes_auth_path="custom-kube",
        )
        with patch("e2e_framework.addon.vault.setup.VaultProxy", return_value=proxy):
            initializer.init()

        assert initializer.app_role_auth_path == "custom-approle"
        assert initializer.kubernetes_auth_path == "custom-kube"

    def test_builds_proxy_from_details(self, initializer, vault_client):
        initializer.proxy_cls.assert_called_once_with(
            "vault", "vault-0", "kubectl", None, "vault-root-token"
        )
        assert initializer.client is vault_client

    def test_vault_calls_before_init_raise(self, vault_details):
        initializer = VaultInitializer(
            details=vault_details,
            root_mount="root",
            intermediate_mount="intermediate",
            role="issuer",
        )

        with pytest.raises(VaultException, match="not been initialised"):
            initializer.clean_app_role()


class TestSetup:
    def test_mounts_root_then_intermediate(self, initializer, vault_client):
        initializer.setup()

        assert vault_client.sys.enable_secrets_engine.call_args_list == [
            call(backend_type="pki", path="root", config={"max_lease_ttl": "87600h"}),
            call(
                backend_type="pki",
                path="intermediate",
                config={"max_lease_ttl": "43800h"},
            ),
        ]

    def test_request_sequence(self, initializer, proxy):
        initializer.setup()

        assert vault_calls(proxy) == [
            ("POST", "/v1/root/root/generate/internal"),
            ("POST", "/v1/root/config/urls"),
            ("POST", "/v1/intermediate/intermediate/generate/internal"),
            ("POST", "/v1/root/root/sign-intermediate"),
            ("POST", "/v1/intermediate/intermediate/set-signed"),
            ("POST", "/v1/intermediate/config/urls"),
            ("POST", "/v1/intermediate/roles/issuer"),
        ]

    def test_ca_request_bodies(self, initializer, proxy):
        initializer.setup()

        assert params_for(proxy, "/v1/root/root/generate/internal") == {
            "common_name": "Root CA",
            "ttl": "87600h",
            "exclude_cn_from_sans": True,
            "key_type": "ec",
            "key_bits": 256,
        }
        assert params_for(
            proxy, "/v1/intermediate/intermediate/generate/internal"
        ) == {
            "common_name": "Intermediate CA",
            "ttl": "43800h",
            "exclude_cn_from_sans": True,
            "key_type": "ec",
            "key_bits": 256,
        }
        assert params_for(proxy, "/v1/root/root/sign-intermediate") == {
            "csr": "CSR-PEM",
            "use_csr_values": True,
            "ttl": "43800h",
            "exclude_cn_from_sans": True,
        }
        assert params_for(proxy, "/v1/intermediate/config/urls") == {
            "issuing_certificates": "https://vault.vault:8200/v1/intermediate/ca",
            "crl_distribution_points": "https://vault.vault:8200/v1/intermediate/crl",
        }

    def test_imports_intermediate_only_by_default(self, initializer, proxy):
        initializer.setup()

        assert params_for(proxy, "/v1/intermediate/intermediate/set-signed") == {
            "certificate": "INTERMEDIATE-PEM"
        }

    def test_imports_chain_with_root(self, initializer, proxy):
        initializer.configure_with_root = True

        initializer.setup()

        assert params_for(proxy, "/v1/intermediate/intermediate/set-signed") == {
            "certificate": "INTERMEDIATE-PEM\nROOT-PEM"
        }

    def test_pki_role_body(self, initializer, proxy):
        initializer.setup()

        assert params_for(proxy, "/v1/intermediate/roles/issuer") == {
            "allow_any_name": True,
            "max_ttl": "2160h",
            "key_type": "any",
            "require_cn": False,
            "allowed_uri_sans": "spiffe://cluster.local/*",
            "enforce_hostnames": False,
            "allow_bare_domains": True,
        }

    def test_enables_approle_when_absent(self, initializer, vault_client):
        initializer.setup()

        vault_client.sys.enable_auth_method.assert_called_once_with(
            method_type="approle", path="approle"
        )

    def test_keeps_existing_approle(self, initializer, vault_client):
        vault_client.sys.list_auth_methods.return_value = {
            "data": {"token/": {}, "approle/": {}}
        }

        initializer.setup()

        vault_client.sys.enable_auth_method.assert_not_called()

    def test_kubernetes_auth_skipped_without_api_server(
        self, initializer, proxy, vault_client
    ):
        initializer.setup()

        assert ("POST", "/v1/auth/kubernetes/config") not in vault_calls(proxy)
        methods = [
            c.kwargs["method_type"]
            for c in vault_client.sys.enable_auth_method.call_args_list
        ]
        assert "kubernetes" not in methods

    def test_kubernetes_auth_configured(self, initializer, proxy, vault_client):
        initializer.api_server_url = "https://10.0.0.1:6443"
        initializer.api_server_ca = "API-CA"

        initializer.setup()

        assert vault_calls(proxy)[-1] == ("POST", "/v1/auth/kubernetes/config")
        assert params_for(proxy, "/v1/auth/kubernetes/config") == {
            "kubernetes_host": "https://10.0.0.1:6443",
            "kubernetes_ca_cert": "API-CA",
            "disable_iss_validation": True,
        }
        vault_client.sys.enable_auth_method.assert_any_call(
            method_type="kubernetes", path="kubernetes"
        )

    def test_mount_error(self, initializer, vault_client, proxy):
        vault_client.sys.enable_secrets_engine.side_effect = InvalidRequest(
            "path is already in use at root/"
        )

        with pytest.raises(VaultException, match="error mounting root"):
            initializer.setup()

        proxy.call_vault.assert_not_called()

    @pytest.mark.parametrize(
        "failing_url, message",
        [
            ("/v1/root/root/generate/internal", "error generating CA root certificate"),
            ("/v1/root/config/urls", "error configuring Vault certificate"),
            (
                "/v1/intermediate/intermediate/generate/internal",
                "error generating CA intermediate certificate",
            ),
            (
                "/v1/root/root/sign-intermediate",
                "error signing intermediate Vault certificate",
            ),
            (
                "/v1/intermediate/intermediate/set-signed",
                "error importing intermediate Vault certificate",
            ),
            ("/v1/intermediate/roles/issuer", "error creating role issuer"),
        ],
    )
    def test_step_errors_stop_setup(self, initializer, proxy, failing_url, message):
        def failing(method, url, response_field, params):
            if url == failing_url:
                raise VaultException(f"{method} {url}: permission denied")
            return fake_call_vault(method, url, response_field, params)

        proxy.call_vault.side_effect = failing

        with pytest.raises(VaultException, match=message):
            initializer.setup()

        assert vault_calls(proxy)[-1] == ("POST", failing_url)

    def test_auth_listing_error(self, initializer, vault_client):
        vault_client.sys.list_auth_methods.side_effect = InvalidRequest("denied")

        with pytest.raises(VaultException, match="error fetching auth mounts"):
            initializer.setup()

    def test_auth_enable_error(self, initializer, vault_client):
        vault_client.sys.enable_auth_method.side_effect = InvalidRequest("denied")

        with pytest.raises(VaultException, match="error enabling approle"):
            initializer.setup()


class TestClean:
    def test_unmounts_intermediate_then_root(self, initializer, vault_client, proxy):
        initializer.clean()

        assert vault_client.sys.disable_secrets_engine.call_args_list == [
            call(path="intermediate"),
            call(path="root"),
        ]
        proxy.clean.assert_called_once_with()

    def test_unmount_error_keeps_proxy(self, initializer, vault_client, proxy):
        vault_client.sys.disable_secrets_engine.side_effect = InvalidRequest("denied")

        with pytest.raises(VaultException, match="unable to unmount intermediate"):
            initializer.clean()

        proxy.clean.assert_not_called()


class TestAppRole:
    def test_create(self, initializer, vault_client, proxy):
        role_id, secret_id = initializer.create_app_role()

        assert (role_id, secret_id) == ("the-role-id", "the-secret-id")
        vault_client.sys.create_or_update_policy.assert_called_once_with(
            name="issuer", policy=SIGN_POLICY
        )
        assert vault_calls(proxy) == [
            ("POST", "/v1/auth/approle/role/issuer"),
            ("GET", "/v1/auth/approle/role/issuer/role-id"),
            ("POST", "/v1/auth/approle/role/issuer/secret-id"),
        ]
        assert params_for(proxy, "/v1/auth/approle/role/issuer") == {
            "policies": "issuer",
            "period": "24h",
        }

    def test_create_policy_error(self, initializer, vault_client, proxy):
        vault_client.sys.create_or_update_policy.side_effect = InvalidRequest("bad")

        with pytest.raises(VaultException, match="error creating policy"):
            initializer.create_app_role()

        proxy.call_vault.assert_not_called()

    @pytest.mark.parametrize(
        "failing_suffix, message",
        [
            ("/role/issuer", "error creating approle"),
            ("/role-id", "error reading role_id"),
            ("/secret-id", "error reading secret_id"),
        ],
    )
    def test_create_request_errors(self, initializer, proxy, failing_suffix, message):
        def failing(method, url, response_field, params):
            if url.endswith(failing_suffix):
                raise VaultException("denied")
            return fake_call_vault(method, url, response_field, params)

        proxy.call_vault.side_effect = failing

        with pytest.raises(VaultException, match=message):
            initializer.create_app_role()

    def test_clean(self, initializer, vault_client, proxy):
        initializer.clean_app_role()

        assert vault_calls(proxy) == [("DELETE", "/v1/auth/approle/role/issuer")]
        vault_client.sys.delete_policy.assert_called_once_with(name="issuer")

    def test_clean_delete_error_keeps_policy(self, initializer, vault_client, proxy):
        proxy.call_vault.side_effect = VaultException("denied")

        with pytest.raises(VaultException, match="error deleting AppRole"):
            initializer.clean_app_role()

        vault_client.sys.delete_policy.assert_not_called()

    def test_clean_policy_error(self, initializer, vault_client):
        vault_client.sys.delete_policy.side_effect = InvalidRequest("denied")

        with pytest.raises(VaultException, match="error deleting policy"):
            initializer.clean_app_role()


class TestKubernetesRole:
    def test_create(self, initializer, kube, vault_client, proxy):
        initializer.create_kubernetes_role(kube, "vault-issuer", "sandbox", "app")

        created = [c.args[0] for c in kube.create.call_args_list]
        assert [type(r) for r in created] == [
            ClusterRole,
            ClusterRoleBinding,
            ServiceAccount,
        ]
        cluster_role, binding, service_account = created
        assert cluster_role.metadata.name == "auth-delegator:vault:vault"
        assert [r.resources for r in cluster_role.rules] == [
            ["tokenreviews"],
            ["subjectaccessreviews"],
        ]
        assert binding.roleRef.name == "auth-delegator:vault:vault"
        assert binding.subjects[0].name == "vault"
        assert binding.subjects[0].namespace == "vault"
        assert service_account.metadata.name == "app"
        assert kube.create.call_args_list[2].kwargs == {"namespace": "sandbox"}

        assert vault_calls(proxy) == [
            ("POST", "/v1/auth/kubernetes/role/vault-issuer"),
            ("POST", "/v1/intermediate/roles/issuer"),
            ("POST", "/v1/auth/kubernetes/role/issuer"),
        ]
        assert params_for(proxy, "/v1/auth/kubernetes/role/vault-issuer") == {
            "policies": "[issuer]",
            "bound_service_account_names": "app",
            "bound_service_account_namespaces": "sandbox",
        }
        assert params_for(proxy, "/v1/auth/kubernetes/role/issuer") == {
            "policies": "issuer",
            "period": "24h",
            "bound_service_account_names": "app",
            "bound_service_account_namespaces": "sandbox",
        }
        role_params = params_for(proxy, "/v1/intermediate/roles/issuer")
        assert role_params["bound_service_account_names"] == "app"
        assert role_params["bound_service_account_namespaces"] == "sandbox"
        vault_client.sys.create_or_update_policy.assert_called_once_with(
            name="issuer", policy=SIGN_POLICY
        )

    @pytest.mark.parametrize(
        "failing_index, message",
        [
            (0, "error creating Role for Kubernetes auth ServiceAccount"),
            (1, "error creating RoleBinding for Kubernetes auth ServiceAccount"),
            (2, "error creating ServiceAccount for Kubernetes auth"),
        ],
    )
    def test_create_kubernetes_errors(
        self, initializer, kube, proxy, api_error, failing_index, message
    ):
        side_effect = [None, None, None]
        side_effect[failing_index] = api_error()
        kube.create.side_effect = side_effect

        with pytest.raises(KubernetesRoleException, match=message):
            initializer.create_kubernetes_role(kube, "vault-issuer", "sandbox", "app")

        assert kube.create.call_count == failing_index + 1
        proxy.call_vault.assert_not_called()

    def test_create_auth_role_error(self, initializer, kube, proxy):
        proxy.call_vault.side_effect = VaultException("denied")

        with pytest.raises(
            VaultException, match="error configuring kubernetes auth role"
        ):
            initializer.create_kubernetes_role(kube, "vault-issuer", "sandbox", "app")

    def test_clean(self, initializer, kube, proxy):
        initializer.clean_kubernetes_role(kube, "vault-issuer", "sandbox", "app")

        assert kube.delete.call_args_list == [
            call(ClusterRoleBinding, "auth-delegator:vault:vault"),
            call(ClusterRole, "auth-delegator:vault:vault"),
            call(ServiceAccount, "app", namespace="sandbox"),
        ]
        proxy.call_vault.assert_called_once_with(
            "DELETE", "/v1/auth/kubernetes/role/vault-issuer", "", None
        )

    def test_clean_vault_error(self, initializer, kube, proxy):
        proxy.call_vault.side_effect = VaultException("denied")

        with pytest.raises(
            VaultException, match="error cleaning up kubernetes auth role"
        ):
            initializer.clean_kubernetes_role(kube, "vault-issuer", "sandbox", "app")

    def test_clean_api_error_propagates(self, initializer, kube, proxy, api_error):
        kube.delete.side_effect = api_error(404, "NotFound")

        with pytest.raises(ApiError) as exc_info:
            initializer.clean_kubernetes_role(kube, "vault-issuer", "sandbox", "app")

        assert exc_info.value.status.code == 404
        proxy.call_vault.assert_not_called()


class TestServiceAccountRefAuth:
    def test_role_name(self):
        assert role_name("vault", "vault") == "auth-delegator:vault:vault"

    def test_role_and_binding(self):
        role, binding = role_and_binding_for_service_account_ref_auth(
            "token-requester", "sandbox", "app"
        )

        assert role.metadata.namespace == "sandbox"
        rule = role.rules[0]
        assert rule.resources == ["serviceaccounts/token"]
        assert rule.resourceNames == ["app"]
        assert rule.verbs == ["create"]
        assert binding.roleRef.kind == "Role"
        assert binding.roleRef.name == "token-requester"
        assert binding.subjects[0].name == "cert-manager"
        assert binding.subjects[0].namespace == "cert-manager"

    def test_role_and_binding_custom_subject(self):
        _, binding = role_and_binding_for_service_account_ref_auth(
            "token-requester", "sandbox", "app", "controller", "operators"
        )

        assert binding.subjects[0].name == "controller"
        assert binding.subjects[0].namespace == "operators"

    def test_create(self, kube):
        create_kubernetes_role_for_service_account_ref_auth(
            kube, "token-requester", "sandbox", "app"
        )

        created = [c.args[0] for c in kube.create.call_args_list]
        assert [type(r) for r in created] == [ServiceAccount, Role, RoleBinding]
        assert created[0].metadata.name == "app"
        assert created[0].metadata.namespace == "sandbox"

    def test_create_role_error(self, kube, api_error):
        kube.create.side_effect = [None, api_error(), None]

        with pytest.raises(
            KubernetesRoleException,
            match="error creating Role for Kubernetes auth ServiceAccount with",
        ):
            create_kubernetes_role_for_service_account_ref_auth(
                kube, "token-requester", "sandbox", "app"
            )

        assert kube.create.call_count == 2

    def test_clean(self, kube):
        clean_kubernetes_role_for_service_account_ref_auth(
            kube, "token-requester", "sandbox", "app"
        )

        assert kube.delete.call_args_list == [
            call(RoleBinding, "token-requester", namespace="sandbox"),
            call(Role, "token-requester", namespace="sandbox"),
            call(ServiceAccount, "app", namespace="sandbox"),
        ]


class TestSecrets:
    def test_app_role_secret(self):
        secret = new_vault_app_role_secret("vault-approle-", "the-secret-id")

        assert secret.metadata.generateName == "vault-approle-"
        assert secret.metadata.name is None
        assert secret.stringData == {"secretkey": "the-secret-id"}

    def test_kubernetes_secret(self):
        secret = new_vault_kubernetes_secret("vault-token", "app")

        assert secret.metadata.name == "vault-token"
        assert secret.type == "kubernetes.io/service-account-token"
        assert secret.metadata.annotations == {
            "kubernetes.io/service-account.name": "app"
        }
