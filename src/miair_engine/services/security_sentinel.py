"""Security sentinel — detects leaked secrets and hazardous instructions.

All regex patterns are pre-compiled for performance.  The sentinel is
intentionally conservative: it is better to over-flag than to publish a key.

Secrets are *redacted*; unsafe commands and vulnerable advice are
*acknowledged* by appending :data:`ACK_MARKER` to the offending line, after
which they no longer count against the document.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from miair_engine.domain.entities import SecurityFinding, StructuralUnit, UnitKind

# ── Compiled patterns ───────────────────────────────────────────────────────

_REDACTION = "[REDACTED]"

_SECRET_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # AWS access key
    ("AWS_KEY", re.compile(r"AKIA[0-9A-Z]{16}")),
    # GitHub tokens
    ("GITHUB_TOKEN", re.compile(r"gh[pousr]_[A-Za-z0-9_]{36,}")),
    # Generic API keys (key=value assignments)
    (
        "GENERIC_KEY",
        re.compile(
            r"(?:api[_\-]?key|apikey|secret[_\-]?key|access[_\-]?token|auth[_\-]?token)"
            r"""\s*[:=]\s*['"]?[A-Za-z0-9_\-/+]{20,}['"]?""",
            re.IGNORECASE,
        ),
    ),
    # Generic password / secret assignment
    (
        "PASSWORD",
        re.compile(
            r"(?:password|passwd|secret|credential)\s*[:=]\s*['\"]?"
            r"(?!\[REDACTED\])[^\s'\"]{8,}['\"]?",
            re.IGNORECASE,
        ),
    ),
    # Private keys (PEM)
    ("PRIVATE_KEY", re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----")),
    # JWT tokens
    ("JWT", re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}")),
    # Connection strings with inline credentials
    (
        "CONN_STRING",
        re.compile(
            r"(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqp)://[^\s:/@]+:[^\s@]+@[^\s]+",
            re.IGNORECASE,
        ),
    ),
    # Bearer tokens in headers
    (
        "BEARER",
        re.compile(
            r"""(?:Authorization|Bearer)\s*[:=]\s*['"]?Bearer\s+[A-Za-z0-9_\-/.]{20,}""",
            re.IGNORECASE,
        ),
    ),
]

_UNSAFE_COMMAND_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("PIPE_TO_SHELL", re.compile(r"\b(?:curl|wget)\b[^\n|]*\|\s*(?:sudo\s+)?(?:ba|z|k)?sh\b", re.I)),
    (
        "RECURSIVE_ROOT_DELETE",
        re.compile(r"\brm\s+-[a-z]*(?:rf|fr)[a-z]*\s+(?:/|~|\$HOME)(?=\s|$|\*)", re.I),
    ),
    ("WORLD_WRITABLE", re.compile(r"\bchmod\s+(?:-R\s+)?0?777\b")),
    (
        "TLS_VERIFY_OFF",
        re.compile(
            r"verify\s*=\s*False\b|--insecure\b|--no-check-certificate\b"
            r"|NODE_TLS_REJECT_UNAUTHORIZED\s*=\s*['\"]?0|InsecureSkipVerify\s*:\s*true",
        ),
    ),
    ("SUDO_PIP", re.compile(r"\bsudo\s+(?:-H\s+)?pip3?\s+install\b")),
]

_VULNERABILITY_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "DISABLE_TLS_ADVICE",
        re.compile(r"\bdisabl\w*\s+(?:ssl|tls|https|certificate)\s+(?:verification|validation|checks?)\b", re.I),
    ),
    (
        "DISABLE_PROTECTION_ADVICE",
        re.compile(r"\b(?:disable|turn\s+off|stop)\s+(?:the\s+)?(?:firewall|selinux|antivirus)\b", re.I),
    ),
    ("RUN_AS_ROOT_ADVICE", re.compile(r"\brun\s+(?:it\s+|this\s+|everything\s+)?as\s+root\b", re.I)),
    (
        "PLAINTEXT_PASSWORD_ADVICE",
        re.compile(r"\bstore\s+(?:the\s+|your\s+)?passwords?\s+in\s+plain\s*text\b", re.I),
    ),
]

ACK_MARKER = "WARNING: review this command before running it."
_ACK_RE = re.compile(r"WARNING: review", re.IGNORECASE)


# ── Result types ────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class SanitizedResult:
    """Outcome of a sanitization pass."""

    clean_text: str
    redaction_count: int


@dataclass(frozen=True, slots=True)
class Hazard:
    """An unacknowledged unsafe command or vulnerable advice on one line."""

    label: str
    category: str  # "unsafe_command" | "vulnerability"
    line_number: int
    excerpt: str


# ── Secrets ─────────────────────────────────────────────────────────────────


def find_secrets(text: str) -> list[tuple[str, str]]:
    """Return ``(label, matched_text)`` pairs in the order :func:`sanitize` redacts them."""
    found: list[tuple[str, str]] = []
    result = text
    for label, pattern in _SECRET_PATTERNS:
        found.extend((label, m.group()) for m in pattern.finditer(result))
        result = pattern.sub(_REDACTION, result)
    return found


def sanitize(text: str) -> SanitizedResult:
    """Scan *text* for secret patterns and replace matches with ``[REDACTED]``.

    Returns a :class:`SanitizedResult` with the cleaned text and the number
    of redactions applied.
    """
    count = 0
    result = text

    for _label, pattern in _SECRET_PATTERNS:
        new_result, num = pattern.subn(_REDACTION, result)
        count += num
        result = new_result

    return SanitizedResult(clean_text=result, redaction_count=count)


# ── Hazards ─────────────────────────────────────────────────────────────────


def find_hazards(text: str) -> list[Hazard]:
    """Return unacknowledged unsafe commands and vulnerable advice, line by line."""
    hazards: list[Hazard] = []
    for number, line in enumerate(text.split("\n")):
        if _ACK_RE.search(line):
            continue
        for category, patterns in (
            ("unsafe_command", _UNSAFE_COMMAND_PATTERNS),
            ("vulnerability", _VULNERABILITY_PATTERNS),
        ):
            for label, pattern in patterns:
                match = pattern.search(line)
                if match:
                    hazards.append(Hazard(label, category, number, match.group()))
    return hazards


def acknowledge(text: str, *, comment: str = "") -> str:
    """Append :data:`ACK_MARKER` to every line carrying an unacknowledged hazard."""
    flagged = {h.line_number for h in find_hazards(text)}
    if not flagged:
        return text
    lines = text.split("\n")
    for number in sorted(flagged):
        lines[number] = f"{lines[number].rstrip()}  {comment}{ACK_MARKER}"
    return "\n".join(lines)


# ── Unit scanning ───────────────────────────────────────────────────────────


def scan_unit(unit: StructuralUnit) -> list[SecurityFinding]:
    """All findings for one structural unit, secrets first."""
    findings = [
        SecurityFinding(label, "secret", unit.index, _excerpt(match))
        for label, match in find_secrets(unit.text)
    ]
    findings.extend(
        SecurityFinding(h.label, h.category, unit.index, h.excerpt) for h in find_hazards(unit.text)
    )
    return findings


def comment_leader(kind: UnitKind) -> str:
    """Prefix used when acknowledging hazards inside a unit of *kind*."""
    return "# " if kind is UnitKind.CODE_BLOCK else ""


def _excerpt(secret: str) -> str:
    # Never echo a full secret back into reports.
    return secret[:4] + "…" if len(secret) > 4 else "…"
