#!/usr/bin/env python3
"""Gate: security & PII check for source files.

Reservation payloads carry requester names, emails and phone numbers, and
notification code handles recipient lists. Fails if:
- print( found in runtime code (src/**)
- a logger call mentions requester/recipient data without redaction
- a logger call dumps the request body without safe_log_context

Usage:
    python scripts/gate_security_pii.py
"""

import re
import sys
from pathlib import Path

# Keywords that must not appear in logger calls without redaction
SENSITIVE_KEYWORDS = (
    "request.body",
    "request.json",
    "body_bytes",
    "requester",
    "contact_person",
    "recipients",
    "redirect_to",
    "cc_to",
    "phone",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"logger\.(debug|info|warning|error|critical|exception)\s*\("
)

REDACTION_PATTERNS = (
    "safe_log_context",
    "redact_value",
    "redact_string",
    "mask_email",
)


def _logger_call_text(lines: list[str], start: int) -> str:
    """Text of the logger call starting at ``start``, up to its closing paren."""
    depth = 0
    parts = []
    for line in lines[start:]:
        code = line.split("#")[0]
        parts.append(code)
        depth += code.count("(") - code.count(")")
        if depth <= 0:
            break
    return "\n".join(parts)


def check_file(filepath: Path) -> list[str]:
    """Check a single file for violations. Returns list of error messages."""
    errors = []
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []

    lines = content.splitlines()

    for index, line in enumerate(lines):
        lineno = index + 1
        stripped = line.lstrip()
        if stripped.startswith("#"):
            continue

        code_part = line.split("#")[0]
        if PRINT_PATTERN.search(code_part):
            errors.append(f"{filepath}:{lineno}: print() not allowed in runtime code")

        if LOGGER_CALL_PATTERN.search(code_part):
            call = _logger_call_text(lines, index)
            has_redaction = any(rp in call for rp in REDACTION_PATTERNS)
            call_lower = call.lower()
            for keyword in SENSITIVE_KEYWORDS:
                if keyword in call_lower and not has_redaction:
                    errors.append(
                        f"{filepath}:{lineno}: logger call with '{keyword}' "
                        "must use redaction (safe_log_context/redact_value)"
                    )

    return errors


def main() -> int:
    """Run gate check on src directory."""
    src_dir = Path("src")

    if not src_dir.exists():
        src_dir = Path(__file__).parent.parent / "src"

    if not src_dir.exists():
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in src_dir.rglob("*.py"):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("Security/PII gate FAILED:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Security/PII gate PASSED\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
