"""Resource Compliance Operator CLI.

Usage:
    compliance-operator run                    # Run the operator (long-running)
    compliance-operator scan                   # One-shot scan of the managed fleet
    compliance-operator check RESOURCE_ID      # Inspect and evaluate, never remediate
    compliance-operator validate POLICY_FILE   # Validate a policy file

Configuration is read from the environment (see Config.from_env).
"""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path

import click

from . import main as operator_main
from .config import Config, ConfigurationError, ReconciliationMode
from .evaluator import evaluate
from .main import Operator, build_operator, create_provider
from .models import ResourceKind
from .policy_loader import PolicyLoadError, load_policies
from .provenance import JobStatus, ScanReport
from .provider import ProviderError
from .security import SecretlessViolationError

STATUS_COLORS = {
    JobStatus.COMPLIANT: "green",
    JobStatus.REMEDIATED: "green",
    JobStatus.NON_COMPLIANT: "yellow",
    JobStatus.DEFERRED: "yellow",
    JobStatus.NOT_FOUND: "yellow",
    JobStatus.CANCELLED: "yellow",
}


def load_operator(mode: str | None = None) -> Operator:
    """Build an operator from the environment.

    Raises:
        click.ClickException: On configuration, policy or security errors.
    """
    try:
        config = Config.from_env()
        if mode is not None:
            config = dataclasses.replace(config, mode=ReconciliationMode(mode))
        policies = load_policies(config.policy_file)
        provider, event_source = create_provider(config)
    except (ConfigurationError, PolicyLoadError, SecretlessViolationError) as e:
        raise click.ClickException(str(e)) from e
    return build_operator(config, policies, provider, event_source)


def print_report(report: ScanReport) -> None:
    """Print a scan report as a table."""
    click.echo(f"{'RESOURCE':<60} {'STATUS':<20} {'ATTEMPTS':>8}  DETAIL")
    for outcome in sorted(report.outcomes, key=lambda o: o.resource_id):
        color = STATUS_COLORS.get(outcome.status, "red")
        status = click.style(f"{outcome.status.value:<20}", fg=color)
        detail = outcome.error or outcome.detail
        click.echo(f"{outcome.resource_id:<60} {status} {outcome.attempts:>8}  {detail}")

    summary = ", ".join(f"{k}={v}" for k, v in report.summary().items())
    click.echo(f"\n{summary}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="compliance-operator")
def cli() -> None:
    """Resource Compliance Operator.

    Keeps cloud resources attached to their declared protective policies
    (WAF web ACLs, firewall policies).
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM/SIGINT."""
    operator_main.run()


@cli.command()
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ReconciliationMode]),
    default=None,
    help="Override RECONCILE_MODE for this scan",
)
def scan(mode: str | None) -> None:
    """Reconcile the managed fleet once and print the outcomes.

    Exits non-zero if any resource ends in a terminal failure.
    """
    operator = load_operator(mode)

    async def _scan() -> ScanReport:
        await operator.scheduler.refresh_fleet()
        return await operator.scheduler.run_scan()

    report = asyncio.run(_scan())
    print_report(report)

    if report.failures:
        raise click.ClickException(f"{len(report.failures)} resource(s) failed reconciliation")


@cli.command()
@click.argument("resource_id")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in ResourceKind]),
    default=None,
    help="Resource kind (defaults to the kind the policy set declares)",
)
def check(resource_id: str, kind: str | None) -> None:
    """Inspect RESOURCE_ID and evaluate it. Never remediates.

    Exits 1 if the resource is non-compliant.
    """
    operator = load_operator(ReconciliationMode.OBSERVE.value)
    declared = operator.policies.declared_resources()

    if kind is not None:
        resource_kind = ResourceKind(kind)
    elif resource_id in declared:
        resource_kind = declared[resource_id]
    else:
        raise click.UsageError(f"{resource_id} is not declared in the policy set; pass --kind")

    try:
        policy = operator.policies.for_kind(resource_kind)
    except KeyError as e:
        raise click.ClickException(f"No policy governs kind '{resource_kind.value}'") from e

    try:
        observed = asyncio.run(operator.scheduler.inspector.inspect(resource_id, resource_kind))
    except ProviderError as e:
        raise click.ClickException(f"Inspection failed ({e.kind.value}): {e}") from e

    verdict = evaluate(policy, observed)
    if verdict.compliant:
        click.secho(f"✓ {resource_id}: compliant ({verdict.detail})", fg="green")
        return

    click.secho(f"✗ {resource_id}: non-compliant ({verdict.detail})", fg="red")
    raise SystemExit(1)


@cli.command()
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(policy_file: Path) -> None:
    """Validate POLICY_FILE without contacting any provider."""
    try:
        policies = load_policies(policy_file)
    except PolicyLoadError as e:
        raise click.ClickException(str(e)) from e

    for policy in policies.policies:
        discover = " (+ discovery)" if policy.discover else ""
        click.echo(
            f"  {policy.resource_kind.value}: {len(policy.resources)} resource(s) "
            f"-> {policy.required_association}{discover}"
        )
    click.secho(f"✓ {policy_file} is valid", fg="green")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
