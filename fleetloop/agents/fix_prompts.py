"""
Fix Prompts
===========
Builds the text handed to the external fix provider on stdin.

Prompt Design Rules:
    - Fix only the reported failure; minimum diff
    - Do not touch deployment scripts or the NAT simulation
    - Edit files in place; the loop commits, never the provider
"""
from typing import List

SYSTEM_PROMPT = (
    "You are fixing a P2P test binary that failed on a live test fleet.\n"
    "\n"
    "HARD RULES:\n"
    "1. Fix ONLY the reported failure. Minimum diff.\n"
    "2. Do NOT refactor or rename unrelated code.\n"
    "3. Do NOT modify deployment scripts, systemd units or NAT simulation scripts.\n"
    "4. Edit files in the working tree. Do NOT commit; the loop commits after local tests pass.\n"
    "5. If you cannot find a fix, make no change and exit non-zero.\n"
)

# Caps keep prompts small enough for any provider
_MAX_DIAGNOSTICS = 20
_MAX_LOG_LINES = 40
_MAX_FEEDBACK_CHARS = 4000


def _section(title: str, lines: List[str]) -> str:
    if not lines:
        return ""
    return f"## {title}\n" + "\n".join(lines) + "\n"


def build_fix_prompt(diagnostics, previous_feedback: str = "") -> str:
    """Assemble the provider prompt from a FixDiagnostics."""
    failure = diagnostics.failure
    parts = [SYSTEM_PROMPT, f"## Failure\nphase: {failure.phase.value}\n{failure.summary}\n"]

    parts.append(_section("Compiler diagnostics", [
        f"- {d.level}{'[' + d.code + ']' if d.code else ''} {d.location()}: {d.message}"
        for d in failure.build_diagnostics[:_MAX_DIAGNOSTICS]
    ]))

    if failure.failed_nodes:
        parts.append(_section("Failed nodes", [f"- {n}" for n in failure.failed_nodes]))

    if failure.test_result is not None:
        rows = []
        for row in failure.test_result.criteria_rows:
            required = "-" if row.required is None else f"{row.required:g}"
            actual = "-" if row.actual is None else f"{row.actual:g}"
            verdict = "PASS" if row.passed else "FAIL"
            rows.append(f"- {row.metric}: required {required}, actual {actual} [{verdict}] {row.note}".rstrip())
        for node, err in failure.test_result.node_errors.items():
            rows.append(f"- node error {node}: {err}")
        parts.append(_section("Test criteria", rows))

    analysis = diagnostics.analysis
    if analysis is not None and analysis.root_cause is not None:
        cause = analysis.root_cause
        lines = [f"{cause.primary_cause} (confidence {cause.confidence:.2f})"]
        lines.extend(f"  evidence: {e}" for e in cause.evidence)
        parts.append(_section("Probable root cause", lines))
        parts.append(_section("Suggestions", [
            f"- [{s.priority}] {s.component}: {s.description}" for s in analysis.suggestions
        ]))

    if diagnostics.log_excerpt:
        parts.append(_section("Log excerpt", diagnostics.log_excerpt[:_MAX_LOG_LINES]))
    elif failure.stderr:
        parts.append(_section("Output", failure.stderr.splitlines()[-_MAX_LOG_LINES:]))

    if diagnostics.evidence is not None and diagnostics.evidence.gaps:
        parts.append(_section("Evidence gaps", [f"- {n}" for n in diagnostics.evidence.gaps]))

    if previous_feedback:
        parts.append(_section(
            "Previous attempt was reverted: local tests failed",
            previous_feedback[-_MAX_FEEDBACK_CHARS:].splitlines(),
        ))

    return "\n".join(p for p in parts if p)
