"""
Log Analyzer
============
Turns the journal tails of a failed run into anomalies, a probable root
cause and prioritised fix suggestions.

Pipeline:
    1. Match every log line against the pattern catalogue (case-insensitive)
    2. Keep matches at or above the minimum severity
    3. Correlate anomalies whose timestamps fall in the same window
    4. Root cause = most frequent pattern;
       confidence = (frequency score + severity score) / 2
    5. One suggestion per distinct fix, highest priority first

Contract:
    - DETERMINISTIC for a given input.
    - Regex only. Never raises on malformed lines.
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Severity(IntEnum):
    INFO = 1
    WARNING = 2
    ERROR = 3
    CRITICAL = 4


_SEVERITY_SCORE = {
    Severity.CRITICAL: 1.0,
    Severity.ERROR: 0.8,
    Severity.WARNING: 0.6,
    Severity.INFO: 0.4,
}

_SEVERITY_PRIORITY = {
    Severity.CRITICAL: 100,
    Severity.ERROR: 75,
    Severity.WARNING: 50,
    Severity.INFO: 25,
}


@dataclass(frozen=True)
class ErrorPattern:
    name: str
    regex: re.Pattern
    severity: Severity
    suggested_cause: str
    suggested_fix: str


def _pattern(name: str, alternatives: str, severity: Severity, cause: str, fix: str) -> ErrorPattern:
    parts = [re.escape(p.strip()) for p in alternatives.split("|")]
    return ErrorPattern(name, re.compile("|".join(parts), re.I), severity, cause, fix)


# ---------------------------------------------------------------------------
# Pattern Catalogue
# ---------------------------------------------------------------------------
DEFAULT_PATTERNS: List[ErrorPattern] = [
    _pattern("zero_active_peers", "active peers: 0|0 active|active_view_size: 0|active view: 0",
             Severity.ERROR,
             "Overlay not bootstrapping: no initial peers or join failed",
             "Check registry connectivity, verify the peer list is non-empty"),
    _pattern("address_accumulation", "too many addresses|address overflow|addresses accumulated",
             Severity.WARNING,
             "Peers are not pruning stale addresses",
             "Check address TTL settings, verify the cleanup task is running"),
    _pattern("connection_timeout", "connection timeout|timed out|ConnectTimeout|connect failed",
             Severity.WARNING,
             "Connection timeouts: network issues or firewall blocking",
             "Check firewall rules, verify QUIC ports are open (UDP)"),
    _pattern("state_divergence", "divergent state|state mismatch|convergence failed|not converged",
             Severity.CRITICAL,
             "CRDT state divergence: nodes are not converging",
             "Check vector clock sync, verify gossip message delivery"),
    _pattern("gossip_drop", "message dropped|gossip failed|broadcast error|delivery failed",
             Severity.WARNING,
             "Gossip messages are being dropped",
             "Check message queue sizes, verify network bandwidth"),
    _pattern("memory_pressure", "out of memory|OOM|memory exhausted|allocation failed",
             Severity.CRITICAL,
             "Memory exhaustion: likely a leak or unbounded growth",
             "Check for unbounded collections, profile memory usage"),
    _pattern("certificate_error", "certificate invalid|cert error|TLS failed|handshake failed",
             Severity.ERROR,
             "Certificate or TLS misconfiguration",
             "Check certificate dates, verify crypto configuration"),
    _pattern("panic", "panicked|panic|unwrap failed",
             Severity.CRITICAL,
             "Code panic: unexpected error condition",
             "Check the stack trace for the source location"),
    _pattern("swim_false_positive", "false positive|incorrectly marked dead|alive but dead",
             Severity.WARNING,
             "Membership false positive: live node marked as dead",
             "Check SWIM timeout settings, reduce the suspicion threshold"),
    _pattern("nat_traversal_failed", "NAT traversal failed|hole punch failed|relay required",
             Severity.WARNING,
             "NAT traversal failing: fallback to relay needed",
             "Check relay availability, verify STUN server connectivity"),
]

# journalctl -o short-iso prefix: 2024-05-01T12:00:00+0000 host unit[pid]: message
_ISO_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:[+-]\d{2}:?\d{2}|Z)?)\s+")


@dataclass
class Anomaly:
    node: str
    message: str
    pattern_name: str
    severity: Severity
    suggested_cause: str
    suggested_fix: str
    timestamp: Optional[datetime] = None
    related: List[int] = field(default_factory=list)


@dataclass
class RootCause:
    primary_cause: str
    pattern_name: str
    confidence: float
    evidence: List[str] = field(default_factory=list)
    alternatives: List[Tuple[str, float]] = field(default_factory=list)


@dataclass
class SuggestedFix:
    description: str
    priority: int
    component: str


@dataclass
class AnalysisReport:
    anomalies: List[Anomaly] = field(default_factory=list)
    root_cause: Optional[RootCause] = None
    suggestions: List[SuggestedFix] = field(default_factory=list)
    by_severity: Dict[str, int] = field(default_factory=dict)

    def summary(self) -> str:
        if self.root_cause is None:
            return "no known anomaly patterns in the collected logs"
        return (
            f"{self.root_cause.primary_cause} "
            f"({self.root_cause.pattern_name}, confidence {self.root_cause.confidence:.2f}, "
            f"{len(self.anomalies)} anomalies)"
        )


def parse_timestamp(line: str) -> Optional[datetime]:
    match = _ISO_PREFIX.match(line)
    if not match:
        return None
    raw = match.group(1)
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    elif re.search(r"[+-]\d{4}$", raw):
        raw = raw[:-2] + ":" + raw[-2:]
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class LogAnalyzer:
    """
    Pattern-based log investigation.

    Parameters
    ----------
    patterns : list[ErrorPattern]
        Catalogue to match against (defaults to DEFAULT_PATTERNS).
    min_severity : Severity
        Anomalies below this severity are ignored.
    correlation_window_seconds : float
        Anomalies closer than this in time are marked related.
    """

    def __init__(self, patterns: Optional[List[ErrorPattern]] = None,
                 min_severity: Severity = Severity.WARNING,
                 correlation_window_seconds: float = 5.0) -> None:
        self.patterns = patterns if patterns is not None else DEFAULT_PATTERNS
        self.min_severity = min_severity
        self.correlation_window_seconds = correlation_window_seconds

    def detect_anomalies(self, lines: Iterable[Tuple[str, str]]) -> List[Anomaly]:
        """``lines`` are (node, raw log line) pairs. First matching pattern wins."""
        anomalies: List[Anomaly] = []
        for node, line in lines:
            text = line.strip()
            if not text:
                continue
            for pattern in self.patterns:
                if pattern.severity < self.min_severity:
                    continue
                if pattern.regex.search(text):
                    anomalies.append(Anomaly(
                        node=node,
                        message=text,
                        pattern_name=pattern.name,
                        severity=pattern.severity,
                        suggested_cause=pattern.suggested_cause,
                        suggested_fix=pattern.suggested_fix,
                        timestamp=parse_timestamp(text),
                    ))
                    break
        self._correlate(anomalies)
        return anomalies

    def _correlate(self, anomalies: List[Anomaly]) -> None:
        for i, first in enumerate(anomalies):
            if first.timestamp is None:
                continue
            for j in range(i + 1, len(anomalies)):
                second = anomalies[j]
                if second.timestamp is None:
                    continue
                try:
                    gap = abs((first.timestamp - second.timestamp).total_seconds())
                except TypeError:
                    # naive vs aware timestamps
                    continue
                if gap <= self.correlation_window_seconds:
                    first.related.append(j)
                    second.related.append(i)

    def identify_root_cause(self, anomalies: List[Anomaly]) -> Optional[RootCause]:
        if not anomalies:
            return None
        counts = Counter(a.pattern_name for a in anomalies)
        # most_common keeps first-seen order on ties
        primary_name, count = counts.most_common(1)[0]
        primary = next(a for a in anomalies if a.pattern_name == primary_name)

        total = len(anomalies)
        confidence = (count / total + _SEVERITY_SCORE[primary.severity]) / 2.0
        evidence = [
            f"[{a.node}] {a.message}" for a in anomalies if a.pattern_name == primary_name
        ][:5]
        alternatives = [
            (name, round(c / total, 3)) for name, c in counts.items() if name != primary_name
        ]
        return RootCause(
            primary_cause=primary.suggested_cause,
            pattern_name=primary_name,
            confidence=round(confidence, 3),
            evidence=evidence,
            alternatives=alternatives,
        )

    def generate_suggestions(self, anomalies: List[Anomaly]) -> List[SuggestedFix]:
        seen = set()
        suggestions: List[SuggestedFix] = []
        for anomaly in anomalies:
            if anomaly.suggested_fix in seen:
                continue
            seen.add(anomaly.suggested_fix)
            suggestions.append(SuggestedFix(
                description=anomaly.suggested_fix,
                priority=_SEVERITY_PRIORITY[anomaly.severity],
                component=anomaly.pattern_name,
            ))
        suggestions.sort(key=lambda s: s.priority, reverse=True)
        return suggestions

    def investigate(self, lines: Iterable[Tuple[str, str]]) -> AnalysisReport:
        anomalies = self.detect_anomalies(lines)
        report = AnalysisReport(
            anomalies=anomalies,
            root_cause=self.identify_root_cause(anomalies),
            suggestions=self.generate_suggestions(anomalies),
            by_severity=dict(Counter(a.severity.name.lower() for a in anomalies)),
        )
        logger.info("Log analysis: %s", report.summary())
        return report
