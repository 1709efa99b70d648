#!/usr/bin/env python3
"""
Keep an Intune iOS compliance policy's minimum OS version in step with Apple.

Flow:
- GET the device compliance policies from Microsoft Graph, pick ours by id
- read Apple's developer releases feed, take the newest non-beta headline
- pull the x.y.z build out of the headline
- PATCH osMinimumVersion (and a dated description) only if it changed

Usage:
  export GRAPH_ACCESS_TOKEN=...   # issued elsewhere (az cli, app registration, etc.)
  python -m tools.compliance_sync --policy-id 00000000-0000-0000-0000-000000000000
  python -m tools.compliance_sync --policy-id ... --dry-run --audit-out out/audit_sync.json

Exit codes:
  0 = updated, already current, or nothing to do
  1 = API/feed failure or policy not found
"""

from __future__ import annotations

import argparse
import json
import os
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree as ET

import requests
from packaging.version import InvalidVersion, Version
from rich.console import Console
from rich.markup import escape

from tools.release_feed import DEFAULT_FEED_URL, DEFAULT_TIMEOUT, latest_release_title

console = Console()

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/beta"
POLICIES_PATH = "deviceManagement/deviceCompliancePolicies"

BUILD_RE = re.compile(r"\d+\.\d+\.\d+")


@dataclass
class SyncConfig:
    policy_id: str
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    feed_url: str = DEFAULT_FEED_URL
    os_name: str = "iOS"
    release_line: str = "26"
    exclude: str = "Beta"
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class CompliancePolicy:
    id: str
    display_name: str
    os_minimum_version: str
    odata_type: str
    description: str = ""

    @classmethod
    def from_graph(cls, record: Dict[str, Any]) -> "CompliancePolicy":
        return cls(
            id=record["id"],
            display_name=record.get("displayName") or "",
            os_minimum_version=record.get("osMinimumVersion") or "",
            odata_type=record.get("@odata.type") or "",
            description=record.get("description") or "",
        )


@dataclass
class UpdatePayload:
    odata_type: str
    description: str
    os_minimum_version: str

    def to_json(self) -> str:
        return json.dumps({
            "@odata.type": self.odata_type,
            "description": self.description,
            "osMinimumVersion": self.os_minimum_version,
        })


@dataclass
class SyncResult:
    policy_id: str
    status: str  # updated|no_change|no_release|skipped|dry_run
    current_version: str = ""
    target_version: str = ""
    title: str = ""
    detail: str = ""


def is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError as e:
        console.print(f"[red]Invalid JSON payload: {e}[/red]")
        return False
    return True


def ensure_valid_payload(policy_id: str, payload_json: str) -> None:
    if not is_valid_json(payload_json):
        raise RuntimeError(f"Refusing to PATCH policy {policy_id}: payload is not valid JSON")


class GraphClient:
    """
    Thin wrapper over the Graph compliance policy endpoints.

    Authentication is not handled here: pass a session that already carries
    credentials, or use `from_token()` with a bearer token issued elsewhere.
    """

    def __init__(self, session: requests.Session, base_url: str = DEFAULT_GRAPH_BASE_URL,
                 timeout: float = DEFAULT_TIMEOUT):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_token(cls, token: str, base_url: str = DEFAULT_GRAPH_BASE_URL,
                   timeout: float = DEFAULT_TIMEOUT) -> "GraphClient":
        session = requests.Session()
        session.headers.update({"Authorization": f"Bearer {token}", "Accept": "application/json"})
        return cls(session, base_url=base_url, timeout=timeout)

    def list_policies(self, platform: Optional[str] = None) -> List[Dict[str, Any]]:
        """Graph wraps pages as {"value": [...], "@odata.nextLink": ...}; a bare array is one page."""
        records: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self.base_url}/{POLICIES_PATH}"
        while url:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
            if isinstance(body, list):
                records.extend(body)
                break
            records.extend(body.get("value", []))
            url = body.get("@odata.nextLink")

        if platform:
            needle = platform.lower()
            records = [r for r in records if needle in (r.get("@odata.type") or "").lower()]
        return records

    def update_policy(self, policy_id: str, payload_json: str) -> None:
        ensure_valid_payload(policy_id, payload_json)
        resp = self.session.patch(
            f"{self.base_url}/{POLICIES_PATH}/{policy_id}",
            data=payload_json,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()


def select_policy(records: List[Dict[str, Any]], policy_id: str) -> Optional[Dict[str, Any]]:
    for r in records:
        if r.get("id") == policy_id:
            return r
    return None


def extract_build(title: str) -> Optional[str]:
    m = BUILD_RE.search(title)
    return m.group(0) if m else None


def is_downgrade(current: str, target: str) -> bool:
    try:
        return Version(target) < Version(current)
    except InvalidVersion:
        # Can't order these; let the plain inequality decide.
        return False


def sync_policy(client: GraphClient, config: SyncConfig, *, now: Optional[datetime] = None,
                dry_run: bool = False, allow_downgrade: bool = True,
                session: Optional[requests.Session] = None) -> SyncResult:
    """
    Run one sync pass and report what happened.

    `session` is used for the feed download only; Graph calls go through `client`.
    """
    timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    description = f"Minimum OS version updated automatically on {timestamp}"

    console.print(f"[blue]Fetching compliance policies from {client.base_url}...[/blue]")
    record = select_policy(client.list_policies(), config.policy_id)
    if record is None:
        raise RuntimeError(f"Compliance policy not found: {config.policy_id}")
    policy = CompliancePolicy.from_graph(record)
    current = policy.os_minimum_version

    major_hint = current[:2]
    console.print(f"Policy '{escape(policy.display_name)}' requires {current or '<unset>'} (major {major_hint or '?'})")

    console.print(f"[blue]Reading release feed for {config.os_name} {config.release_line}...[/blue]")
    title = latest_release_title(
        os_name=config.os_name,
        release_line=config.release_line,
        exclude=config.exclude,
        url=config.feed_url,
        session=session,
        timeout=config.timeout,
    )
    if not title:
        console.print(f"[yellow]No {config.os_name} {config.release_line} release found in feed; nothing to do.[/yellow]")
        return SyncResult(policy_id=policy.id, status="no_release", current_version=current)

    build = extract_build(title)
    if build is None:
        console.print(f"[yellow]No x.y.z build in '{escape(title)}'; leaving policy unchanged.[/yellow]")
        return SyncResult(policy_id=policy.id, status="skipped", current_version=current,
                          title=title, detail="no build number in title")

    if build == current:
        console.print(f"[green]Policy already at {current}; no update needed.[/green]")
        return SyncResult(policy_id=policy.id, status="no_change", current_version=current,
                          target_version=build, title=title)

    if not allow_downgrade and is_downgrade(current, build):
        console.print(f"[yellow]Feed build {build} is older than {current}; downgrade not allowed.[/yellow]")
        return SyncResult(policy_id=policy.id, status="skipped", current_version=current,
                          target_version=build, title=title, detail="downgrade blocked")

    payload = UpdatePayload(
        odata_type=policy.odata_type,
        description=description,
        os_minimum_version=build,
    ).to_json()

    if dry_run:
        ensure_valid_payload(policy.id, payload)
        console.print(f"[yellow]Dry run: would update {policy.id} from {current} to {build}[/yellow]")
        return SyncResult(policy_id=policy.id, status="dry_run", current_version=current,
                          target_version=build, title=title, detail=payload)

    client.update_policy(policy.id, payload)
    console.print(f"[green]Updated '{escape(policy.display_name)}' minimum OS version {current} -> {build}[/green]")
    return SyncResult(policy_id=policy.id, status="updated", current_version=current,
                      target_version=build, title=title)


def now_utc() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def write_audit_log(out_path: Path, result: SyncResult, dry_run: bool = False) -> None:
    payload = {
        "timestamp": now_utc(),
        "dry_run": dry_run,
        "result": asdict(result),
    }
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def describe_http_error(exc: requests.RequestException) -> str:
    """Prefer the service's own error message (Graph wraps it in error.message)."""
    resp = exc.response
    if resp is None:
        return str(exc)
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text}"
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict) and err.get("message"):
        code = err.get("code")
        prefix = f"HTTP {resp.status_code} {code}" if code else f"HTTP {resp.status_code}"
        return f"{prefix}: {err['message']}"
    return f"HTTP {resp.status_code}: {resp.text}"


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--policy-id", default=os.environ.get("COMPLIANCE_POLICY_ID"))
    ap.add_argument("--graph-base-url", default=os.environ.get("GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL))
    ap.add_argument("--feed-url", default=os.environ.get("RELEASE_FEED_URL", DEFAULT_FEED_URL))
    ap.add_argument("--os-name", default="iOS")
    ap.add_argument("--release-line", default="26")
    ap.add_argument("--exclude", default="Beta", help="Skip feed titles containing this substring (any case)")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT)
    ap.add_argument("--dry-run", action="store_true", help="Build the update but don't send it")
    ap.add_argument("--no-downgrade", action="store_true", help="Never lower the minimum version")
    ap.add_argument("--audit-out", type=Path, required=False)
    args = ap.parse_args()

    if not args.policy_id:
        raise SystemExit("You must provide --policy-id (or set COMPLIANCE_POLICY_ID)")

    token = os.environ.get("GRAPH_ACCESS_TOKEN", "")
    if not token:
        raise SystemExit("GRAPH_ACCESS_TOKEN not set")

    config = SyncConfig(
        policy_id=args.policy_id,
        graph_base_url=args.graph_base_url,
        feed_url=args.feed_url,
        os_name=args.os_name,
        release_line=args.release_line,
        exclude=args.exclude,
        timeout=args.timeout,
    )
    client = GraphClient.from_token(token, base_url=config.graph_base_url, timeout=config.timeout)

    try:
        result = sync_policy(client, config, dry_run=args.dry_run, allow_downgrade=not args.no_downgrade)
    except requests.RequestException as e:
        console.print(f"[red]FAIL: {describe_http_error(e)}[/red]")
        return 1
    except ET.ParseError as e:
        console.print(f"[red]FAIL: release feed is not valid XML: {e}[/red]")
        return 1
    except RuntimeError as e:
        console.print(f"[red]FAIL: {e}[/red]")
        return 1

    if args.audit_out:
        write_audit_log(args.audit_out, result, dry_run=args.dry_run)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
