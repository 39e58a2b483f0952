"""Tests for secretless credential enforcement."""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from actuator.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_credentials,
    get_managed_identity_credential,
    log_machine_audit_event,
)


class TestSecretlessEnforcement:
    """Tests for secretless credential enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_credentials()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_credentials()

        assert env_var in str(exc_info.value)
        assert "some-secret-value" not in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that a set but empty variable is not a violation."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_credentials()


class TestGetManagedIdentityCredential:
    """Tests for the managed identity credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("actuator.security.ManagedIdentityCredential")
    def test_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential_class.return_value

    @mock.patch("actuator.security.ManagedIdentityCredential")
    def test_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        client_id = "test-client-id-12345"

        with mock.patch.dict(os.environ, {}, clear=True):
            get_managed_identity_credential(client_id=client_id)

        mock_credential_class.assert_called_once_with(client_id=client_id)


class TestAuditEvent:
    """Tests for machine audit logging."""

    def test_audit_event_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="actuator.security")

        log_machine_audit_event("delete", "worker-1", "demo", "success")

        record = caplog.records[-1]
        assert record.getMessage() == "Machine audit: delete"
        assert record.security_audit is True
        assert (record.machine, record.cluster, record.result) == ("worker-1", "demo", "success")
