"""Security enforcement for secretless architecture.

The operator never authenticates with long-lived secrets:
- Azure: User-Assigned (or system-assigned) Managed Identity only
- AWS: role-based credentials only (instance profile, IRSA, ECS task role)

SECURITY INVARIANTS:
1. No static credential may be present in the environment at startup
2. ManagedIdentityCredential is the ONLY Azure credential type
3. AWS sessions resolve credentials from the role chain, never from keys
"""

from __future__ import annotations

import logging
import os

import boto3
from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
)

# Error message for security violations
SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION DETECTED

This operator enforces a SECRETLESS architecture.
Detected: {env_var}

This environment variable indicates key, secret or password based
authentication, which is NOT ALLOWED.

RESOLUTION:
  Azure: assign a managed identity to the workload and grant it RBAC roles
  AWS:   attach an IAM role (instance profile, IRSA or task role)
  Then remove all credential environment variables.
"""


class SecretlessViolationError(Exception):
    """Raised when secretless architecture is violated.

    This is a fatal security error that prevents operator startup.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            error_message = SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var)
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(error_message)

    logger.info("Secretless architecture verified", extra={"security_event": "secretless_verified"})


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def get_aws_session(region: str) -> boto3.session.Session:
    """Get a boto3 session bound to the role credential chain.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()
    logger.info("Using role-based AWS credentials", extra={"region": region})
    return boto3.session.Session(region_name=region)
