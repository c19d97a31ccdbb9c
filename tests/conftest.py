"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provider_mock import MockProvider  # noqa: E402

from compliance_operator.models import ResourceKind  # noqa: E402
from compliance_operator.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402


@pytest.fixture
def provider() -> MockProvider:
    """Mock provider with two load balancers, neither associated."""
    mock = MockProvider()
    mock.add_resource("alb-1", ResourceKind.LOAD_BALANCER)
    mock.add_resource("alb-2", ResourceKind.LOAD_BALANCER)
    return mock


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Environment without static credentials or operator settings."""
    for var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    for var in (
        "PROVIDER",
        "POLICY_FILE",
        "AZURE_SUBSCRIPTION_ID",
        "AZURE_CLIENT_ID",
        "AWS_REGION",
        "AWS_DEFAULT_REGION",
        "RECONCILE_MODE",
        "SCAN_INTERVAL",
        "MAX_REMEDIATION_ATTEMPTS",
        "RETRY_BASE_DELAY",
        "RETRY_MAX_DELAY",
        "CALL_TIMEOUT",
        "MAX_WORKERS",
        "MAX_CALLS_PER_SECOND",
        "ENABLE_EVENTS",
        "EVENT_POLL_INTERVAL",
        "WATCHED_EVENTS",
        "EVENT_INGESTION_LAG",
    ):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    """A valid policy file guarding alb-1 with waf-default."""
    path = tmp_path / "policies.yaml"
    path.write_text(
        "policies:\n"
        "  - kind: loadBalancer\n"
        "    webAclArn: waf-default\n"
        "    resources:\n"
        "      - alb-1\n"
    )
    return path
