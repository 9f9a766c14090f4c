"""Content inspection: threat scanning and secret redaction.

The gatekeeper depends only on the :class:`ContentInspector` protocol.
:class:`PatternInspector` implements it with ordered regex rule tables; the
default tables are deliberately small and deployments are expected to supply
their own.

Scan order is rule order, then match position within a rule.  The
gatekeeper reports :attr:`ScanResult.first_threat`, so rule order decides
which threat a caller sees when several match; severity plays no part.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class Threat:
    type: str
    pattern: str
    description: str
    severity: str


@dataclass(frozen=True)
class ScanResult:
    safe: bool
    threats: list[Threat] = field(default_factory=list)

    @property
    def first_threat(self) -> Threat | None:
        """The threat reported to callers: the first one in scan order."""
        return self.threats[0] if self.threats else None


@dataclass(frozen=True)
class SecretFinding:
    """One redacted secret occurrence.  The raw value is not kept."""

    type: str
    start: int
    end: int


@dataclass(frozen=True)
class SecretScanResult:
    redacted: str
    secrets_found: list[SecretFinding] = field(default_factory=list)


@runtime_checkable
class ContentInspector(Protocol):
    """Contract for content inspectors.

    Both scans must be deterministic and free of side effects; the
    gatekeeper calls :meth:`scan_for_threats` on inbound payloads and on
    forwarded responses and expects identical treatment.
    """

    def scan_for_threats(self, text: str) -> ScanResult:
        ...

    def scan_and_redact_secrets(self, text: str) -> SecretScanResult:
        ...

    def generate_signature_hash(self, threat: Threat) -> str:
        ...


@dataclass(frozen=True)
class ThreatRule:
    type: str
    regex: str
    description: str
    severity: str = "high"
    flags: int = re.IGNORECASE


@dataclass(frozen=True)
class SecretRule:
    type: str
    regex: str


DEFAULT_THREAT_RULES: tuple[ThreatRule, ...] = (
    ThreatRule(
        "prompt_injection",
        r"ignore\s+(?:all\s+)?(?:previous|prior|above)\s+instructions",
        "Attempt to override prior instructions",
        "critical",
    ),
    ThreatRule(
        "prompt_injection",
        r"disregard\s+(?:your|the)\s+system\s+prompt",
        "Attempt to discard the system prompt",
        "critical",
    ),
    ThreatRule(
        "command_injection",
        r"(?:;|&&|\|\|)\s*(?:rm\s+-rf|curl\s+[^|]*\|\s*(?:ba)?sh)",
        "Chained destructive or remote-execution shell command",
        "high",
    ),
    ThreatRule(
        "path_traversal",
        r"(?:\.\./){2,}",
        "Relative path traversal sequence",
        "medium",
    ),
    ThreatRule(
        "sql_injection",
        r"'\s*or\s+'?1'?\s*=\s*'?1",
        "Tautology-based SQL injection",
        "high",
    ),
)

# Secret values are restricted to characters that are safe inside a JSON
# string so the redacted payload stays parseable.  A private key match runs
# from the BEGIN line through the base64 body (raw or ``\n``-escaped line
# breaks) to the END line when one is present.  It comes first so token
# rules cannot claim a span inside the key body.
DEFAULT_SECRET_RULES: tuple[SecretRule, ...] = (
    SecretRule(
        "private_key",
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----"
        r"(?:[A-Za-z0-9+/=\s]|\\[nr])*"
        r"(?:-----END [A-Z ]*PRIVATE KEY-----)?",
    ),
    SecretRule("openai_api_key", r"sk-[A-Za-z0-9_-]{20,}"),
    SecretRule("aws_access_key", r"AKIA[0-9A-Z]{16}"),
    SecretRule("github_token", r"gh[pousr]_[A-Za-z0-9]{36,}"),
    SecretRule("slack_token", r"xox[abprs]-[A-Za-z0-9-]{10,}"),
)


class PatternInspector:
    """Regex-table implementation of :class:`ContentInspector`."""

    def __init__(
        self,
        threat_rules: Sequence[ThreatRule] = DEFAULT_THREAT_RULES,
        secret_rules: Sequence[SecretRule] = DEFAULT_SECRET_RULES,
    ) -> None:
        self._threat_rules = [
            (rule, re.compile(rule.regex, rule.flags)) for rule in threat_rules
        ]
        self._secret_rules = [
            (rule, re.compile(rule.regex)) for rule in secret_rules
        ]

    def scan_for_threats(self, text: str) -> ScanResult:
        threats: list[Threat] = []
        for rule, compiled in self._threat_rules:
            for match in compiled.finditer(text):
                threats.append(
                    Threat(
                        type=rule.type,
                        pattern=match.group(0),
                        description=rule.description,
                        severity=rule.severity,
                    )
                )
        return ScanResult(safe=not threats, threats=threats)

    def scan_and_redact_secrets(self, text: str) -> SecretScanResult:
        spans: list[tuple[int, int, str]] = []
        for rule, compiled in self._secret_rules:
            for match in compiled.finditer(text):
                start, end = match.span()
                if any(start < e and s < end for s, e, _ in spans):
                    continue
                spans.append((start, end, rule.type))

        if not spans:
            return SecretScanResult(redacted=text)

        spans.sort()
        parts: list[str] = []
        cursor = 0
        for start, end, secret_type in spans:
            parts.append(text[cursor:start])
            parts.append(f"[REDACTED:{secret_type}]")
            cursor = end
        parts.append(text[cursor:])

        return SecretScanResult(
            redacted="".join(parts),
            secrets_found=[SecretFinding(t, s, e) for s, e, t in spans],
        )

    def generate_signature_hash(self, threat: Threat) -> str:
        return generate_signature_hash(threat)


def generate_signature_hash(threat: Threat) -> str:
    """Stable dedup key for the shared threat feed."""
    material = f"{threat.type}:{threat.pattern.strip().lower()}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
