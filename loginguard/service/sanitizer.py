"""Input normalization and hostile-input detection for login fields.

``sanitize_input`` makes a value safe to forward; ``detect_suspicious_input``
reports what an attacker may have tried. They are independent: the login
pipeline runs both on the raw values and reports both results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional

InputKind = Literal["email", "password"]

MAX_EMAIL_LENGTH = 254

_SCRIPT_BLOCK = re.compile(r"<\s*script\b[^>]*>.*?<\s*/\s*script\s*>", re.IGNORECASE | re.DOTALL)
_SCRIPT_TAG = re.compile(r"<\s*/?\s*script\b[^>]*>", re.IGNORECASE)
_JS_URI = re.compile(r"javascript\s*:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)

_EMAIL_SHAPE = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)*\.[a-z]{2,}$")

SQL_INJECTION = "Potential SQL injection detected"
XSS = "Potential cross-site scripting detected"
COMMAND_INJECTION = "Potential command injection detected"

_THREAT_PATTERNS = [
    (SQL_INJECTION, re.compile(r"['\"]|--|/\*|\*/")),
    # Keywords only count when followed by whitespace, so "update@example.com" passes
    (
        SQL_INJECTION,
        re.compile(
            r"\b(union|select|insert|update|delete|drop|alter|exec|execute)\b\s",
            re.IGNORECASE,
        ),
    ),
    (XSS, re.compile(r"<\s*script", re.IGNORECASE)),
    (XSS, re.compile(r"\bon\w+\s*=", re.IGNORECASE)),
    (XSS, re.compile(r"javascript\s*:", re.IGNORECASE)),
    (COMMAND_INJECTION, re.compile(r"[|&`]|\$\(")),
]


@dataclass
class ThreatReport:
    is_suspicious: bool = False
    threats: List[str] = field(default_factory=list)


def strip_dangerous_markup(value: str) -> str:
    value = _SCRIPT_BLOCK.sub("", value)
    value = _SCRIPT_TAG.sub("", value)
    value = _JS_URI.sub("", value)
    return _EVENT_HANDLER.sub("", value)


def sanitize_input(raw: Optional[str], kind: InputKind, *, min_length: int = 1) -> Optional[str]:
    """Return a cleaned value, or None when it cannot be used.

    Emails are stripped of script markup, trimmed, lower-cased and checked
    against the usual ``local@domain.tld`` shape. Passwords are stripped of the
    same markup and only held to ``min_length``; strength is judged elsewhere.
    """
    if not isinstance(raw, str):
        return None
    cleaned = strip_dangerous_markup(raw)
    if kind == "email":
        cleaned = cleaned.strip().lower()
        if not cleaned or len(cleaned) > MAX_EMAIL_LENGTH:
            return None
        if not _EMAIL_SHAPE.match(cleaned):
            return None
        return cleaned
    if kind == "password":
        if len(cleaned) < min_length:
            return None
        return cleaned
    raise ValueError(f"unknown input kind: {kind}")


def detect_suspicious_input(text: Optional[str]) -> ThreatReport:
    """Scan for SQL-injection, XSS and shell metacharacter signatures."""
    report = ThreatReport()
    if not text:
        return report
    for label, pattern in _THREAT_PATTERNS:
        if label not in report.threats and pattern.search(text):
            report.threats.append(label)
    report.is_suspicious = bool(report.threats)
    return report


def merge_reports(*reports: ThreatReport) -> ThreatReport:
    merged = ThreatReport()
    for report in reports:
        for threat in report.threats:
            if threat not in merged.threats:
                merged.threats.append(threat)
    merged.is_suspicious = bool(merged.threats)
    return merged
