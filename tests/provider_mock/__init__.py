"""In-memory provider mock for integration testing.

Key Features:
- In-memory resource associations for any ResourceKind
- Error injection per operation and resource (transient, not found, denied)
- Call accounting and per-resource overlap tracking
- Queue-backed change-notification source

Usage:
    from provider_mock import MockProvider, build_stack, web_acl_policies

    provider = MockProvider()
    provider.add_resource("alb-1", ResourceKind.LOAD_BALANCER)
    stack = build_stack(provider, web_acl_policies("alb-1"))
    report = await stack.scheduler.run_scan()
"""

from .harness import OTHER_WEB_ACL, WEB_ACL, Stack, build_stack, web_acl_policies
from .state import MockEventSource, MockProvider, MockResource

__all__ = [
    "OTHER_WEB_ACL",
    "WEB_ACL",
    "MockEventSource",
    "MockProvider",
    "MockResource",
    "Stack",
    "build_stack",
    "web_acl_policies",
]
