"""Command-line entry point for delegated administration provisioning.

This module serves as a CLI wrapper around crossadmin.core pipelines.
"""
from __future__ import annotations
import argparse
import csv
import json
import logging
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from azure.core.exceptions import ClientAuthenticationError

from crossadmin.config import load_settings
from crossadmin.core.access_package import build_pipeline
from crossadmin.core.azure import (
    ConfigurationError,
    DelegationService,
    PipelineAborted,
    ProvisioningError,
    SubscriptionService,
    create_clients,
)
from crossadmin.core.eligibility import scan
from crossadmin.core.lighthouse import LighthouseDeployer, run_lighthouse
from crossadmin.core.models import GuestRecord, ProgressEvent
from crossadmin.core.validators import require_guid, validate_display_name, validate_email
from scripts import audit

logger = logging.getLogger("crossadmin.cli")

GUEST_COLUMNS = ("displayName", "email")


def load_guests(path: str) -> list[GuestRecord]:
    """Read the guest list CSV (displayName, email, optional employeeTag).

    Rows repeating an email already seen are dropped.

    Raises:
        ConfigurationError: Missing file, missing columns or an invalid row
    """
    file = Path(path)
    if not file.is_file():
        raise ConfigurationError(f"Guest list not found: {path}")

    with file.open("r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        missing = [column for column in GUEST_COLUMNS if column not in (reader.fieldnames or [])]
        if missing:
            raise ConfigurationError(f"Guest list {path} is missing column(s): {', '.join(missing)}")

        records = []
        seen = set()
        for line, row in enumerate(reader, start=2):
            try:
                email = validate_email(row.get("email") or "")
                display_name = validate_display_name(row.get("displayName") or "")
            except ValueError as exc:
                raise ConfigurationError(f"Guest list {path}, line {line}: {exc}") from exc
            if email.lower() in seen:
                logger.warning("[guests] Duplicate entry for %s on line %d ignored", email, line)
                continue
            seen.add(email.lower())
            records.append(GuestRecord(display_name, email, (row.get("employeeTag") or "").strip()))
    return records


def _log_event(event: ProgressEvent) -> None:
    level = logging.getLevelName(event.level.upper())
    logger.log(level if isinstance(level, int) else logging.INFO, "[%s] %s", event.stage, event.message)


def _fail(stage: str, key: str, reason: object) -> None:
    print(f"[FAILED] {stage} ({key}): {reason}", file=sys.stderr)
    sys.exit(1)


def _print(args: argparse.Namespace, payload: dict, lines: list[str]) -> None:
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        for line in lines:
            print(line)


def cmd_whoami(args, config, graph, arm) -> None:
    principal = graph.token_identity()
    _print(args, vars(principal).copy(), [
        f"id:        {principal.id}",
        f"name:      {principal.display_name}",
        f"kind:      {principal.kind}",
        f"tenant:    {principal.tenant_id}",
    ])


def cmd_scan(args, config, graph, arm) -> None:
    principal_id = args.principal_id or arm.token_identity().id
    require_guid(principal_id, "principal id")
    report = scan(SubscriptionService(arm), principal_id, config.required_subscription_roles)
    audit.safe_log_provisioning_event(
        "eligibility_scan",
        principal_id,
        operator=args.operator,
        tenant_id=args.tenant_id,
        details={name: len(subs) for name, subs in (
            ("eligible", report.eligible), ("ineligible", report.ineligible), ("disabled", report.disabled),
        )},
        success=True,
    )
    lines = []
    for label, subs in (("ELIGIBLE", report.eligible), ("INELIGIBLE", report.ineligible), ("DISABLED", report.disabled)):
        for sub in subs:
            lines.append(f"[{label}] {sub.id} {sub.display_name}")
    _print(args, report.to_dict(), lines or ["No subscriptions visible to this principal"])


def cmd_access_package(args, config, graph, arm) -> None:
    try:
        guests = load_guests(args.guests) if args.guests else []
    except ConfigurationError as exc:
        _fail("guests", args.guests, exc)

    pipeline = build_pipeline(config, graph, on_event=_log_event)
    try:
        report = pipeline.run(guests)
    except PipelineAborted as exc:
        audit.safe_log_provisioning_event(
            "access_package",
            config.access_package_name,
            operator=args.operator,
            tenant_id=args.tenant_id,
            details={"stage": exc.stage, "key": exc.key, "error": str(exc.cause),
                     "stages": pipeline.report.to_dict()["stages"]},
            success=False,
        )
        _fail(exc.stage, exc.key, exc.cause)

    audit.safe_log_provisioning_event(
        "access_package",
        config.access_package_name,
        operator=args.operator,
        tenant_id=args.tenant_id,
        details={"created": report.created_count, "guests": report.guest_counts(),
                 "warnings": [f"{stage.stage}: {stage.detail}" for stage in report.warnings]},
        success=not report.warnings,
    )
    lines = [
        f"[{stage.outcome.upper()}] {stage.stage} ({stage.key})" + (f": {stage.detail}" if stage.detail else "")
        for stage in report.stages
    ]
    lines += [
        f"  guest {guest.record.email}: {guest.invitation_status}/{guest.tag_status}"
        + (f" ({guest.detail})" if guest.detail else "")
        for guest in report.guests
    ]
    _print(args, report.to_dict(), lines)


def cmd_lighthouse(args, config, graph, arm) -> None:
    requested = [require_guid(sub_id, "subscription id") for sub_id in args.subscription or []]
    subscriptions = SubscriptionService(arm)

    if args.skip_scan:
        if not requested:
            _fail("scan", "-", "--skip-scan requires at least one --subscription")
        targets = requested
    else:
        principal_id = arm.token_identity().id
        eligibility = scan(subscriptions, principal_id, config.required_subscription_roles, only=requested or None)
        for sub in eligibility.ineligible + eligibility.disabled:
            logger.warning("[scan] Skipping %s (%s): not eligible", sub.id, sub.display_name)
        if not eligibility.eligible:
            audit.safe_log_provisioning_event(
                "lighthouse", principal_id, operator=args.operator, tenant_id=args.tenant_id,
                details={"error": "no eligible subscription"}, success=False,
            )
            _fail("scan", principal_id, "no eligible subscription for the acting principal")
        targets = [sub.id for sub in eligibility.eligible]

    deployer = LighthouseDeployer(
        DelegationService(arm),
        subscriptions,
        poll_attempts=config.deployment_poll_attempts,
        poll_delay=config.deployment_poll_delay_seconds,
        on_event=_log_event,
    )
    try:
        report = run_lighthouse(
            deployer,
            targets,
            args.template,
            args.parameters,
            location=config.location,
            expected_group=config.resolved_expected_group_name,
            expected_role=config.expected_role_name,
        )
    except PipelineAborted as exc:
        audit.safe_log_provisioning_event(
            "lighthouse", ",".join(targets), operator=args.operator, tenant_id=args.tenant_id,
            details={"stage": exc.stage, "key": exc.key, "error": str(exc.cause)}, success=False,
        )
        _fail(exc.stage, exc.key, exc.cause)

    audit.safe_log_provisioning_event(
        "lighthouse",
        ",".join(targets),
        operator=args.operator,
        tenant_id=args.tenant_id,
        details={result.subscription_id: result.status for result in report.results},
        success=report.succeeded,
    )
    _print(args, report.to_dict(), [
        f"{result.status} {result.subscription_id}" + (f": {result.detail}" if result.detail else "")
        for result in report.results
    ])
    if not report.succeeded:
        sys.exit(1)


COMMANDS = {
    "whoami": cmd_whoami,
    "scan": cmd_scan,
    "access-package": cmd_access_package,
    "lighthouse": cmd_lighthouse,
}


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Delegated cross-tenant administration provisioning")
    parser.add_argument("--config", help="YAML settings file (default: $CROSSADMIN_CONFIG)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--operator", default=None,
                        help="Operator identifier for audit logs (default: token upn/oid)")

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("whoami")

    ss = sub.add_parser("scan")
    ss.add_argument("--principal-id", default=None)

    sa = sub.add_parser("access-package")
    sa.add_argument("--guests", default=None, help="CSV with displayName,email[,employeeTag]")
    sa.add_argument("--tag", default=None, help="Tag written to guests without an employeeTag column value")

    sl = sub.add_parser("lighthouse")
    sl.add_argument("--template", required=True, help="https URI or local JSON file")
    sl.add_argument("--parameters", required=True, help="https URI or local JSON file")
    sl.add_argument("--subscription", action="append", default=None)
    sl.add_argument("--location", default=None)
    sl.add_argument("--skip-scan", action="store_true")

    args = parser.parse_args()

    if not args.cmd:
        parser.print_help()
        return

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_settings(
            args.config,
            employee_tag=getattr(args, "tag", None),
            location=getattr(args, "location", None),
        )
    except ConfigurationError as exc:
        _fail("settings", args.config or "-", exc)

    graph, arm = create_clients(config)

    try:
        identity = graph.token_identity()
        args.operator = args.operator or identity.display_name or identity.id or "automation"
        args.tenant_id = config.tenant_id or identity.tenant_id or ""
        COMMANDS[args.cmd](args, config, graph, arm)
    except ClientAuthenticationError as exc:
        _fail("auth", "-", f"could not acquire a token: {exc.message}")
    except ProvisioningError as exc:
        _fail(args.cmd, "-", exc)


if __name__ == "__main__":
    main()
