"""
Proof Writer
============
Serializes a COMPLETE run into a proof bundle:

    PROOF_DIR/<project>/proof_<ts>.json    machine-readable summary
    PROOF_DIR/<project>/proof_<ts>.md      criteria-vs-actual table
    PROOF_DIR/<project>/evidence_<ts>/     per-node logs, connection
                                           reports, metrics snapshot
"""
import json
import logging
import os
from typing import Any, Dict, Optional

from fleetloop.core.config import PROOF_DIR
from fleetloop.models.evidence import EvidenceBundle
from fleetloop.models.test_result import TestResult
from fleetloop.state.loop_state import LoopState, utcnow

logger = logging.getLogger(__name__)


def _fmt(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:g}"


def render_markdown(state: LoopState, result: TestResult, evidence_dir: str) -> str:
    plan = state.plan
    lines = [
        f"# Proof: {state.project}",
        "",
        f"- Focus: {plan.focus.value}",
        f"- Criteria: {plan.success_criteria.kind.value}",
        f"- Proof method: {plan.proof_method.value}",
        f"- Started: {state.started_at.isoformat()}",
        f"- Completed: {utcnow().isoformat()}",
        f"- Builds / deploys / tests: {state.build_count} / {state.deploy_count} / {state.test_count}",
        f"- Fix attempts: {state.fix_attempts}",
        "",
        "## Criteria vs actual",
        "",
        "| Metric | Required | Actual | Result |",
        "|---|---|---|---|",
    ]
    for row in result.criteria_rows:
        verdict = "PASS" if row.passed else "FAIL"
        if row.note:
            verdict = f"{verdict} ({row.note})"
        lines.append(f"| {row.metric} | {_fmt(row.required)} | {_fmt(row.actual)} | {verdict} |")

    lines.extend(["", "## Suites", ""])
    for suite in result.suites:
        lines.append(
            f"- {suite.suite}: {suite.succeeded}/{suite.attempted} checks "
            f"({suite.success_rate:g}%)"
        )
        if suite.throughput is not None:
            t = suite.throughput
            lines.append(
                f"  - throughput avg {t.avg_mbps:g} Mbps, min {t.min_mbps:g}, "
                f"max {t.max_mbps:g} ({t.samples} samples)"
            )

    if state.applied_fixes:
        lines.extend(["", "## Applied fixes", ""])
        for fix in state.applied_fixes:
            lines.append(f"- `{fix.change_ref[:12] or fix.fix_id}` {fix.description}")

    lines.extend(["", f"Evidence: `{evidence_dir}`", ""])
    return "\n".join(lines)


class ProofWriter:
    """
    Writes proof bundles for completed runs.
    """

    def __init__(self, proof_dir: str = PROOF_DIR) -> None:
        self.proof_dir = proof_dir

    def write_proof(self, state: LoopState, result: TestResult,
                    evidence: Optional[EvidenceBundle] = None) -> str:
        """Write the bundle and return the path of the JSON summary."""
        stamp = utcnow().strftime("%Y%m%dT%H%M%SZ")
        project_dir = os.path.join(self.proof_dir, state.project)
        evidence_dir = os.path.join(project_dir, f"evidence_{stamp}")
        os.makedirs(evidence_dir, exist_ok=True)

        evidence_files = self._write_evidence(evidence, evidence_dir) if evidence else {}

        data: Dict[str, Any] = {
            "project": state.project,
            "plan": state.plan.model_dump(mode="json"),
            "started_at": state.started_at.isoformat(),
            "completed_at": utcnow().isoformat(),
            "counters": {
                "builds": state.build_count,
                "deploys": state.deploy_count,
                "tests": state.test_count,
                "fix_attempts": state.fix_attempts,
            },
            "applied_fixes": [f.model_dump(mode="json") for f in state.applied_fixes],
            "result": result.model_dump(mode="json"),
            "criteria": [r.model_dump(mode="json") for r in result.criteria_rows],
            "evidence": {
                "types": evidence.evidence_types if evidence else [],
                "gaps": evidence.gaps if evidence else [],
                "files": evidence_files,
            },
        }

        json_path = os.path.join(project_dir, f"proof_{stamp}.json")
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        with open(os.path.join(project_dir, f"proof_{stamp}.md"), "w", encoding="utf-8") as f:
            f.write(render_markdown(state, result, evidence_dir))

        logger.info("Proof bundle written to %s", os.path.abspath(json_path))
        return json_path

    @staticmethod
    def _write_evidence(evidence: EvidenceBundle, evidence_dir: str) -> Dict[str, Any]:
        files: Dict[str, Any] = {}
        for name, node in evidence.nodes.items():
            if node.log_lines:
                path = os.path.join(evidence_dir, f"{name}.log")
                with open(path, "w", encoding="utf-8") as f:
                    f.write("\n".join(node.log_lines) + "\n")
                files[f"{name}.log"] = path
            if node.connection_report is not None:
                path = os.path.join(evidence_dir, f"{name}.connections.json")
                with open(path, "w", encoding="utf-8") as f:
                    json.dump(node.connection_report, f, indent=2)
                files[f"{name}.connections"] = path
            if node.gap:
                files[f"{name}.gap"] = "; ".join(node.notes)
        if evidence.metrics is not None:
            path = os.path.join(evidence_dir, "metrics.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(evidence.metrics, f, indent=2)
            files["metrics"] = path
        elif evidence.metrics_error:
            files["metrics.gap"] = evidence.metrics_error
        return files
