"""Audit trail for provisioning runs (one signed JSON line per pipeline run)."""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import os
import sys
from pathlib import Path
from typing import Any, Iterator, Literal

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "provisioning-events.jsonl"

EventType = Literal["access_package", "lighthouse", "eligibility_scan"]


def _get_signing_key() -> bytes:
    """Read the signing key at call time (file path first, then the key itself)."""
    key_file = os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE")
    if key_file:
        path = Path(key_file)
        if path.is_file():
            try:
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
            except OSError:
                pass
    return os.environ.get("AUDIT_LOG_SIGNING_KEY", "").strip().encode("utf-8")


def _ensure_audit_dir() -> None:
    """Create audit directory with restricted permissions."""
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)


def _sign_event(event: dict[str, Any]) -> str:
    """HMAC-SHA256 over the canonical JSON form; empty when no key is configured."""
    signing_key = _get_signing_key()
    if not signing_key:
        return ""
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"))
    return hmac.new(signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_provisioning_event(
    event_type: EventType,
    target: str,
    *,
    operator: str = "system",
    tenant_id: str = "",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Append a provisioning event to the audit trail.

    Args:
        event_type: Pipeline that ran
        target: What the run operated on (access package name, subscription ids, principal id)
        operator: Acting identity (token upn/oid or --operator)
        tenant_id: Tenant the run was executed against
        details: Run summary (created objects, per-subscription status, counts)
        success: Whether the run completed without failures
    """
    _ensure_audit_dir()

    event = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "tenant_id": tenant_id,
        "target": target,
        "operator": operator,
        "success": success,
        "details": details or {},
    }

    signature = _sign_event(event)
    if signature:
        event["signature"] = signature

    with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")

    AUDIT_LOG_FILE.chmod(0o600)


def safe_log_provisioning_event(
    event_type: EventType,
    target: str,
    *,
    operator: str = "system",
    tenant_id: str = "",
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """Like log_provisioning_event(), but never raises.

    Audit failures must not turn a completed provisioning run into a failed
    one; they are reported on stderr instead.

    Returns:
        True if the event was written, False otherwise
    """
    try:
        log_provisioning_event(
            event_type,
            target,
            operator=operator,
            tenant_id=tenant_id,
            details=details,
            success=success,
        )
        return True
    except Exception as e:
        print(f"[audit] Warning: Failed to log {event_type} event for {target}: {e}", file=sys.stderr)
        return False


def iter_events() -> Iterator[tuple[dict[str, Any] | None, bool]]:
    """Yield ``(event, signature_ok)`` for every non-blank line of the audit log.

    Lines that are not valid JSON are yielded as ``(None, False)``.
    """
    if not AUDIT_LOG_FILE.exists():
        return
    for raw in AUDIT_LOG_FILE.read_text(encoding="utf-8").splitlines():
        if not raw.strip():
            continue
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            yield None, False
            continue
        stored = event.pop("signature", "")
        yield event, bool(stored) and hmac.compare_digest(stored, _sign_event(event))


def verify_audit_log() -> tuple[int, int]:
    """Count audit events and those whose signature checks out."""
    results = [ok for _, ok in iter_events()]
    return len(results), sum(results)


if __name__ == "__main__":
    total, valid = verify_audit_log()
    print(f"{AUDIT_LOG_FILE}: {valid}/{total} signed events verified")
    sys.exit(0 if total == valid else 1)
