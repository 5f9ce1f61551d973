"""
Constants
Centralised storage for exit codes, suite ordering and evidence types.
"""
# Operator-facing exit codes
EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_UNREACHABLE_FLEET = 2
EXIT_BUILD_FAILURE = 3
EXIT_TEST_FAILURE = 4
EXIT_INVALID_INPUT = 5
EXIT_STOPPED = 6

# Fixed execution order for the full suite
FULL_SUITE_ORDER = ["connectivity", "nat-traversal", "gossip", "throughput"]

EVIDENCE_LOGS = "logs"
EVIDENCE_METRICS = "metrics"
EVIDENCE_CONNECTION_REPORT = "connectionReport"
ALL_EVIDENCE_TYPES = (EVIDENCE_LOGS, EVIDENCE_METRICS, EVIDENCE_CONNECTION_REPORT)

# Stop reasons recorded on LoopState
STOP_QUORUM_BREACH = "quorum_breach"
STOP_UNFIXABLE = "unfixable"
STOP_OPERATOR = "operator"
STOP_ERROR = "error"
