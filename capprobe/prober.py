from __future__ import annotations

import enum
import json
import os
from dataclasses import dataclass
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from capprobe.catalog import (
    DRY_RUN_NATIVE,
    DRY_RUN_SIMULATE,
    Catalog,
    ClassificationRules,
    ProbeSpec,
    render_context,
    render_params,
)
from capprobe.config import BOTO3_CONFIG, ProbeConfig
from capprobe.console import Console
from capprobe.identity import Principal
from capprobe.report import append_jsonl, append_text, write_text


SIMULATION_UNAVAILABLE = "SimulationUnavailable"
SUMMARY_FILE = "summary.txt"


class Outcome(str, enum.Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class CallResult:
    """What one probe call produced: the exit status plus whatever error it raised."""

    succeeded: bool
    error_code: Optional[str] = None
    error_text: str = ""
    output: Any = None


@dataclass(frozen=True)
class Classification:
    outcome: Outcome
    diagnostic: str = ""
    via_dry_run: bool = False


@dataclass(frozen=True)
class ProbeResult:
    service: str
    operation: str
    description: str
    outcome: Outcome
    raw_error: Optional[str] = None
    via_dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.ALLOWED

    def to_log_record(self) -> dict:
        return {
            "service": self.service,
            "operation": self.operation,
            "description": self.description,
            "success": self.success,
            "outcome": self.outcome.value,
            "error": self.raw_error or "",
        }


def first_line(text: Optional[str]) -> str:
    """First non-blank line of the error text, stripped. Leading blank lines are skipped."""
    if not text:
        return ""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def classify_outcome(call: CallResult, rules: ClassificationRules) -> Classification:
    """
    First match wins:
      1. the call succeeded                                  -> ALLOWED
      2. dry-run code, or a dry-run phrase in the error text -> ALLOWED
      3. denial code, or a denial phrase in the error text   -> DENIED
      4. anything else                                       -> ERROR (first error line)
    """
    if call.succeeded:
        return Classification(Outcome.ALLOWED)

    code = call.error_code or ""
    text = call.error_text or ""
    diagnostic = first_line(text)

    if code in rules.dry_run_codes or any(p in text for p in rules.dry_run_phrases):
        return Classification(Outcome.ALLOWED, diagnostic, via_dry_run=True)
    if code in rules.denial_codes or any(p in text for p in rules.denial_phrases):
        return Classification(Outcome.DENIED, diagnostic)
    return Classification(Outcome.ERROR, diagnostic)


def _dump_output(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        output = {k: v for k, v in output.items() if k != "ResponseMetadata"}
    return json.dumps(output, indent=2, default=str)


class CapabilityProber:
    """
    Runs a probe catalog in declared order, one blocking call at a time.

    Mutating probes never touch real infrastructure unless the config opts into
    destructive mode: `native` probes go out with DryRun=True and `simulate`
    probes are answered by iam:SimulatePrincipalPolicy instead of the real API.
    """

    def __init__(
        self,
        session,
        catalog: Catalog,
        config: ProbeConfig,
        principal: Principal,
        *,
        run_id: str,
        bundle_dir: Optional[str] = None,
        console: Optional[Console] = None,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.config = config
        self.principal = principal
        self.bundle_dir = bundle_dir
        self.console = console or Console(verbose=config.verbose)
        self.results: list[ProbeResult] = []
        self._clients: dict[str, Any] = {}
        self._context = render_context(
            timestamp=run_id,
            account_id=principal.account_id,
            region=config.region,
        )

    def _client(self, name: str):
        if name not in self._clients:
            self._clients[name] = self.session.client(name, region_name=self.config.region, config=BOTO3_CONFIG)
        return self._clients[name]

    def _call_api(self, spec: ProbeSpec, params: dict) -> CallResult:
        try:
            client = self._client(spec.client)
            response = getattr(client, spec.method)(**params)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            return CallResult(False, code, str(e))
        except BotoCoreError as e:
            return CallResult(False, None, str(e))
        return CallResult(True, output=response)

    def _simulate(self, spec: ProbeSpec) -> CallResult:
        if not self.principal.simulation_arn:
            return CallResult(
                False,
                SIMULATION_UNAVAILABLE,
                f"Cannot simulate {spec.action}: caller principal could not be resolved",
            )
        try:
            response = self._client("iam").simulate_principal_policy(
                PolicySourceArn=self.principal.simulation_arn,
                ActionNames=[spec.action],
            )
        except (ClientError, BotoCoreError) as e:
            # The provider text goes to the capture file only; it would otherwise
            # be read as a denial of the probed action itself.
            return CallResult(
                False,
                SIMULATION_UNAVAILABLE,
                f"Cannot simulate {spec.action}: permission simulation call failed",
                output=str(e),
            )

        results = response.get("EvaluationResults") or []
        decision = results[0].get("EvalDecision", "implicitDeny") if results else "implicitDeny"
        if decision == "allowed":
            return CallResult(True, output=response)
        return CallResult(
            False,
            "AccessDenied",
            f"{spec.action} is not authorized (simulated decision: {decision})",
            output=response,
        )

    def execute(self, spec: ProbeSpec) -> CallResult:
        params = render_params(spec.params, self._context)
        if spec.mutating and not self.config.destructive_mode:
            if spec.dry_run == DRY_RUN_NATIVE:
                params["DryRun"] = True
            elif spec.dry_run == DRY_RUN_SIMULATE:
                return self._simulate(spec)
        self.console.debug(f"{spec.client}.{spec.method}({', '.join(sorted(params))})")
        return self._call_api(spec, params)

    def _capture(self, spec: ProbeSpec, call: CallResult) -> None:
        if not self.bundle_dir:
            return
        base = os.path.join(self.bundle_dir, spec.key)
        write_text(f"{base}_output.txt", _dump_output(call.output))
        write_text(f"{base}_error.txt", call.error_text or "")

    def _report(self, spec: ProbeSpec, result: ProbeResult) -> None:
        label = f"Testing {spec.service}:{spec.operation} - {spec.description}... "
        if result.outcome is Outcome.ALLOWED:
            verdict = "✓ ALLOWED (dry-run success)" if result.via_dry_run else "✓ ALLOWED"
            self.console.line(label + verdict, "green")
        elif result.outcome is Outcome.DENIED:
            self.console.line(label + "✗ DENIED", "red")
        else:
            self.console.line(label + f"⚠ ERROR: {result.raw_error}", "yellow")

    def probe(self, spec: ProbeSpec) -> ProbeResult:
        call = self.execute(spec)
        verdict = classify_outcome(call, self.catalog.rules)
        result = ProbeResult(
            service=spec.service,
            operation=spec.operation,
            description=spec.description,
            outcome=verdict.outcome,
            raw_error=verdict.diagnostic or None,
            via_dry_run=verdict.via_dry_run,
        )
        self._capture(spec, call)
        if self.bundle_dir:
            append_jsonl(os.path.join(self.bundle_dir, "test_log.jsonl"), result.to_log_record())
        self.results.append(result)
        return result

    def run(self) -> list[ProbeResult]:
        if self.config.destructive_mode:
            self.console.warn("Destructive mode: mutating probes will create real resources")

        section = None
        bar = tqdm(total=len(self.catalog), desc="Probing", unit="probe", leave=False, disable=not self.config.show_progress)
        try:
            for spec in self.catalog:
                if spec.section != section:
                    section = spec.section
                    self.console.line()
                    self.console.line(f"=== {section} ===", "cyan")
                    if self.bundle_dir:
                        append_text(os.path.join(self.bundle_dir, SUMMARY_FILE), f"=== {section} ===")
                self._report(spec, self.probe(spec))
                bar.update(1)
        finally:
            bar.close()
        return self.results
