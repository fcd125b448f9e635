"""Placeholder substitution for HTTP request templates.

Two independent substitutions run over URLs, headers, query parameters
and bodies, in this order:

  ``{{NAME}}``                        -> value of the named variable
                                          (unknown names are left alone)
  ``_TOTP_CODE``                      -> current TOTP for the source secret
  ``_TOTP_CODE(secret[,period[,digits]])`` -> TOTP for an inline secret
"""

from __future__ import annotations

import re
from typing import Any

from source_sync.totp import DEFAULT_DIGITS, DEFAULT_PERIOD, generate_totp

TOTP_TOKEN = "_TOTP_CODE"
NO_SECRET = "ERROR_NO_SECRET"

_VARIABLE_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TOTP_RE = re.compile(r"_TOTP_CODE(?:\(([^)]*)\))?")


def _totp_replacement(args: str | None, default_secret: str, at: float | None) -> str:
    secret = default_secret
    period = DEFAULT_PERIOD
    digits = DEFAULT_DIGITS
    if args is not None:
        parts = [p.strip().strip("'\"") for p in args.split(",")]
        if parts and parts[0]:
            secret = parts[0]
        try:
            if len(parts) > 1 and parts[1]:
                period = int(parts[1])
            if len(parts) > 2 and parts[2]:
                digits = int(parts[2])
        except ValueError:
            pass
    if not secret:
        return NO_SECRET
    return generate_totp(secret, period, digits, at=at)


def expand_template(
    text: str,
    variables: dict[str, str] | None = None,
    totp_secret: str = "",
    at: float | None = None,
) -> str:
    """Apply variable and TOTP substitution to a single string."""
    if variables:
        def _variable(match: re.Match) -> str:
            name = match.group(1)
            return variables[name] if name in variables else match.group(0)

        text = _VARIABLE_RE.sub(_variable, text)
    if TOTP_TOKEN in text:
        text = _TOTP_RE.sub(
            lambda m: _totp_replacement(m.group(1), totp_secret, at), text
        )
    return text


def expand_value(
    value: Any,
    variables: dict[str, str] | None = None,
    totp_secret: str = "",
    at: float | None = None,
) -> Any:
    """Recursively expand placeholders in strings nested in dicts and lists."""
    if isinstance(value, str):
        return expand_template(value, variables, totp_secret, at)
    if isinstance(value, dict):
        return {
            key: expand_value(item, variables, totp_secret, at)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [expand_value(item, variables, totp_secret, at) for item in value]
    return value
