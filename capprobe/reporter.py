from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from capprobe.catalog import load_report_rules
from capprobe.config import BOTO3_CONFIG, ProbeConfig
from capprobe.console import Console
from capprobe.errors import OptionalFeatureUnavailable
from capprobe.events import query_access_denied_events
from capprobe.identity import KIND_ROLE, KIND_USER, Principal, resolve_identity
from capprobe.normalize import decision_counts, merge_pages, normalize_quotas, normalize_simulation
from capprobe.progress import StageProgress
from capprobe.report import atomic_write_json, write_text


STAGES = (
    "identity",
    "aliases",
    "principal",
    "simulation",
    "authorization_details",
    "quotas",
    "events",
    "manifest",
)

QUOTA_CALLS = (
    ("list_service_quotas", "list_service_quotas"),
    ("list_aws_default_service_quotas", "list_default_service_quotas"),
)


@dataclass(frozen=True)
class QuotaRecord:
    region: str
    service_code: str
    payload: dict
    source: str = "list_service_quotas"


class AccessLimitsReporter:
    """
    Collects the access-limits proof bundle for the calling principal.

    Only the identity step is fatal (AuthFailure propagates). Every later
    step records its failure in `errors` and the run carries on.
    """

    def __init__(
        self,
        session,
        config: ProbeConfig,
        *,
        bundle_dir: str,
        run_id: str,
        console: Optional[Console] = None,
        rules: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.config = config
        self.bundle_dir = bundle_dir
        self.run_id = run_id
        self.console = console or Console(verbose=config.verbose)
        self.rules = rules or load_report_rules()
        self._sleep = sleep
        self.errors: list[dict] = []
        self.quota_records: list[QuotaRecord] = []
        self.written: list[str] = []
        self._iam = None

    @property
    def iam(self):
        if self._iam is None:
            self._iam = self.session.client("iam", config=BOTO3_CONFIG)
        return self._iam

    def _save(self, relpath: str, obj: Any) -> str:
        path = os.path.join(self.bundle_dir, relpath)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        atomic_write_json(path, obj)
        self.written.append(relpath)
        return path

    def _fail(self, operation: str, error: Exception, *, quiet: bool = False) -> None:
        if isinstance(error, ClientError):
            message = error.response.get("Error", {}).get("Message") or str(error)
        else:
            message = str(error)
        self.errors.append({"operation": operation, "error": message})
        if quiet:
            self.console.debug(f"{operation}: {message}")
        else:
            self.console.warn(f"{operation} failed: {message}")

    def _paginate(self, client, operation: str, list_keys, **kwargs) -> dict:
        pages = client.get_paginator(operation).paginate(**kwargs)
        return merge_pages(pages, list_keys)

    def _dump(self, relpath: str, operation: str, fn: Callable[[], Any]) -> Optional[Any]:
        try:
            result = fn()
        except (ClientError, BotoCoreError) as e:
            self._fail(operation, e)
            return None
        if isinstance(result, dict):
            result.pop("ResponseMetadata", None)
        self._save(relpath, result)
        return result

    ##########################
    ####### Pipeline ########
    ##########################

    def resolve_identity(self) -> Principal:
        self.console.step("STS get-caller-identity")
        principal, response = resolve_identity(self.session)
        response.pop("ResponseMetadata", None)
        self._save("sts_get_caller_identity.json", response)
        self.console.info(f"Account ID: {principal.account_id}")
        self.console.info(f"Caller ARN: {principal.arn}")
        self.console.info(f"Principal type: {principal.kind}")
        self.console.info(f"Principal name: {principal.name}")
        self.console.info(f"Simulation principal ARN: {principal.simulation_arn or ''}")
        return principal

    def list_account_aliases(self) -> Optional[dict]:
        self.console.step("IAM list-account-aliases")
        return self._dump(
            "iam_list_account_aliases.json",
            "ListAccountAliases",
            lambda: self._paginate(self.iam, "list_account_aliases", ["AccountAliases"]),
        )

    def _policy_documents(self, principal: Principal, attached: Optional[dict], inline: Optional[dict]) -> dict:
        docs: dict[str, list] = {"attached": [], "inline": []}
        for policy in (attached or {}).get("AttachedPolicies", []):
            arn = policy.get("PolicyArn")
            try:
                meta = self.iam.get_policy(PolicyArn=arn)["Policy"]
                version = self.iam.get_policy_version(PolicyArn=arn, VersionId=meta["DefaultVersionId"])
                docs["attached"].append(
                    {
                        "PolicyArn": arn,
                        "PolicyName": policy.get("PolicyName"),
                        "VersionId": meta["DefaultVersionId"],
                        "Document": version["PolicyVersion"]["Document"],
                    }
                )
            except (ClientError, BotoCoreError) as e:
                self._fail(f"GetPolicyVersion {arn}", e)

        for name in (inline or {}).get("PolicyNames", []):
            try:
                if principal.kind == KIND_USER:
                    doc = self.iam.get_user_policy(UserName=principal.name, PolicyName=name)
                else:
                    doc = self.iam.get_role_policy(RoleName=principal.name, PolicyName=name)
                docs["inline"].append({"PolicyName": name, "Document": doc["PolicyDocument"]})
            except (ClientError, BotoCoreError) as e:
                self._fail(f"GetInlinePolicy {name}", e)
        return docs

    def dump_principal(self, principal: Principal) -> None:
        self.console.step("Dump principal details")
        name = principal.name
        if principal.kind == KIND_USER:
            self._dump("iam_get_user.json", "GetUser", lambda: self.iam.get_user(UserName=name))
            attached = self._dump(
                "iam_list_attached_user_policies.json",
                "ListAttachedUserPolicies",
                lambda: self._paginate(self.iam, "list_attached_user_policies", ["AttachedPolicies"], UserName=name),
            )
            inline = self._dump(
                "iam_list_user_policies.json",
                "ListUserPolicies",
                lambda: self._paginate(self.iam, "list_user_policies", ["PolicyNames"], UserName=name),
            )
            self._dump(
                "iam_list_groups_for_user.json",
                "ListGroupsForUser",
                lambda: self._paginate(self.iam, "list_groups_for_user", ["Groups"], UserName=name),
            )
        elif principal.kind == KIND_ROLE:
            self._dump("iam_get_role.json", "GetRole", lambda: self.iam.get_role(RoleName=name))
            attached = self._dump(
                "iam_list_attached_role_policies.json",
                "ListAttachedRolePolicies",
                lambda: self._paginate(self.iam, "list_attached_role_policies", ["AttachedPolicies"], RoleName=name),
            )
            inline = self._dump(
                "iam_list_role_policies.json",
                "ListRolePolicies",
                lambda: self._paginate(self.iam, "list_role_policies", ["PolicyNames"], RoleName=name),
            )
        else:
            self.console.warn("Unknown principal type; skipping entity-specific dumps")
            return

        if attached or inline:
            self._save(
                f"iam_{principal.kind}_policy_documents.json",
                self._policy_documents(principal, attached, inline),
            )

    def simulate(self, principal: Principal) -> Optional[dict]:
        self.console.step("IAM simulate-principal-policy (targeted actions)")
        actions = list(self.rules["simulation_actions"])
        self._save("actions_to_simulate.json", actions)
        if not principal.simulation_arn:
            self.console.warn("No simulation principal ARN; skipping simulation")
            return None

        response = self._dump(
            "iam_simulate_principal_policy.json",
            "SimulatePrincipalPolicy",
            lambda: self.iam.simulate_principal_policy(
                PolicySourceArn=principal.simulation_arn,
                ActionNames=actions,
            ),
        )
        if response is None:
            return None
        rows = normalize_simulation(response)
        self._save("iam_simulate_principal_policy_summary.json", rows)
        counts = decision_counts(rows)
        self.console.info(
            "Simulation: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) if counts else "Simulation: no results"
        )
        return response

    def dump_authorization_details(self) -> Optional[dict]:
        self.console.step("IAM get-account-authorization-details (may take time)")
        return self._dump(
            "iam_account_authorization_details.json",
            "GetAccountAuthorizationDetails",
            lambda: self._paginate(
                self.iam,
                "get_account_authorization_details",
                ["UserDetailList", "GroupDetailList", "RoleDetailList", "Policies"],
            ),
        )

    def sweep_quotas(self) -> list[QuotaRecord]:
        for region in self.config.regions:
            self.console.step(f"Service Quotas in {region}")
            try:
                quotas = self.session.client("service-quotas", region_name=region, config=BOTO3_CONFIG)
            except BotoCoreError as e:
                self._fail(f"Service Quotas client {region}", e)
                continue
            region_dir = f"service_quotas_{region}"
            os.makedirs(os.path.join(self.bundle_dir, region_dir), exist_ok=True)

            for svc in self.rules["quota_services"]:
                self.console.line(f"  - {svc}")
                for operation, suffix in QUOTA_CALLS:
                    try:
                        payload = self._paginate(quotas, operation, ["Quotas"], ServiceCode=svc)
                    except (ClientError, BotoCoreError) as e:
                        self._fail(f"{operation} {region}/{svc}", e, quiet=True)
                        continue
                    self._save(os.path.join(region_dir, f"{svc}_{suffix}.json"), payload)
                    self.quota_records.append(QuotaRecord(region, svc, payload, operation))
                    self.console.debug(f"{region}/{svc} {operation}: {len(normalize_quotas(payload))} quotas")
        return self.quota_records

    def query_events(self) -> None:
        self.console.step("Attempting to query recent AccessDenied events (optional)")
        ct = self.rules.get("cloudtrail") or {}
        for region in self.config.regions:
            try:
                events = query_access_denied_events(
                    self.session,
                    region,
                    lookback_days=int(ct.get("lookback_days", 7)),
                    max_attempts=int(ct.get("max_poll_attempts", 10)),
                    delay=float(ct.get("poll_delay_seconds", 2)),
                    limit=int(ct.get("row_limit", 200)),
                    sleep=self._sleep,
                )
            except OptionalFeatureUnavailable as e:
                self.console.debug(str(e))
                continue
            self._save(os.path.join(f"cloudtrail_{region}", "access_denied_events.json"), events)
            self.console.info(f"{region}: {len(events['QueryResultRows'])} AccessDenied rows")

    def render_manifest(self, principal: Principal) -> str:
        lines = [
            "AWS Access Limits Proof Bundle",
            f"Generated: {self.run_id}",
            f"Profile: {self.config.profile_label}",
            f"Principal: {principal.arn} ({principal.kind})",
            f"Regions: {' '.join(self.config.regions)}",
            "",
            "Contents:",
            "  - sts_get_caller_identity.json: Proof of current account and caller ARN",
            "  - iam_list_account_aliases.json: Account alias(es)",
            "  - iam_get_user.json / iam_get_role.json: Active principal details",
            "  - iam_list_attached_*_policies.json, iam_list_*_policies.json, iam_list_groups_for_user.json: Attached/inline policies and groups",
            "  - iam_<user|role>_policy_documents.json: Resolved attached (default version) and inline policy documents",
            "  - actions_to_simulate.json: Critical actions used for permission simulation",
            "  - iam_simulate_principal_policy.json: Allowed/explicitly denied results for targeted actions",
            "  - iam_simulate_principal_policy_summary.json: One {action, decision} row per simulated action",
            "  - iam_account_authorization_details.json: Full IAM entities and policies snapshot (large)",
            "  - service_quotas_<region>/...: Tracked and default Service Quotas per selected services",
            "  - cloudtrail_<region>/access_denied_events.json: Recent AccessDenied events if CloudTrail Lake is available",
            "  - _log.txt: Run log",
            "",
            "Notes:",
            "  - Service Quotas only include quotas tracked by the Service Quotas API. Some services have limits not surfaced here.",
            "  - Permission simulation evaluates the specified actions for the active IAM principal; refine the action set as needed.",
            f"  - Non-fatal errors during collection: {len(self.errors)} (see _log.txt)",
        ]
        return "\n".join(lines) + "\n"

    def write_manifest(self, principal: Principal) -> str:
        path = os.path.join(self.bundle_dir, "README.txt")
        write_text(path, self.render_manifest(principal))
        return path

    def run(self) -> Principal:
        progress = StageProgress(stages=STAGES, desc="Access report", enabled=self.config.show_progress)
        try:
            progress.set_stage("identity")
            principal = self.resolve_identity()
            progress.set_stage("aliases")
            self.list_account_aliases()
            progress.set_stage("principal")
            self.dump_principal(principal)
            progress.set_stage("simulation")
            self.simulate(principal)
            progress.set_stage("authorization_details")
            self.dump_authorization_details()
            progress.set_stage("quotas")
            self.sweep_quotas()
            progress.set_stage("events")
            self.query_events()
            progress.set_stage("manifest")
            self.write_manifest(principal)
            progress.finish()
        finally:
            progress.close()
        return principal
