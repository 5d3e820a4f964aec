"""
Whitelist validators for values that end up inside PowerShell command lines
or certreq INF content.

Every function here is total: it returns a boolean (or a string) and never raises,
whatever it is handed.
"""

import re
from pathlib import PureWindowsPath
from typing import Any

SUBJECT_FIELD_RE = re.compile(r"^[A-Za-z0-9 .,_@()-]+$")
SAN_RE = re.compile(r"^[A-Za-z0-9.*@_-]+(\.[A-Za-z0-9*_-]+)*$")
HOSTNAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
CONFIG_STRING_RE = re.compile(r"^[A-Za-z0-9._\\-]+$")
THUMBPRINT_RE = re.compile(r"^[0-9A-Fa-f]+$")
TEMPLATE_NAME_RE = re.compile(r"^[A-Za-z0-9 _-]+$")
_SINGLE_QUOTE_RE = re.compile("['‘’‚‛]")

MAX_SUBJECT_FIELD_LENGTH = 200
MAX_SAN_LENGTH = 253
MAX_HOSTNAME_LENGTH = 253
MAX_CONFIG_STRING_LENGTH = 500
MAX_TEMPLATE_NAME_LENGTH = 255

# certreq accepts SHA1; the CSR workflow does not.
GATEWAY_HASH_ALGORITHMS = frozenset({"SHA1", "SHA256", "SHA384", "SHA512"})
WORKFLOW_HASH_ALGORITHMS = frozenset({"SHA256", "SHA384", "SHA512"})
VALID_KEY_SIZES = frozenset({2048, 4096})
VALID_KEY_ALGORITHMS = frozenset({"RSA", "ECDSA"})


def _matches(pattern: re.Pattern, value: Any, max_length: int) -> bool:
    if not isinstance(value, str) or len(value) > max_length:
        return False
    # fullmatch: "$" alone would accept a trailing newline
    return pattern.fullmatch(value) is not None


def is_valid_subject_field(value: Any) -> bool:
    return _matches(SUBJECT_FIELD_RE, value, MAX_SUBJECT_FIELD_LENGTH)


def is_valid_san(value: Any) -> bool:
    """DNS name, wildcard or mail-style SAN entry."""
    return _matches(SAN_RE, value, MAX_SAN_LENGTH)


def is_valid_hostname(value: Any) -> bool:
    return _matches(HOSTNAME_RE, value, MAX_HOSTNAME_LENGTH)


def is_valid_config_string(value: Any) -> bool:
    """CA config string in ``host\\caname`` form."""
    return _matches(CONFIG_STRING_RE, value, MAX_CONFIG_STRING_LENGTH)


def is_valid_thumbprint(value: Any) -> bool:
    return _matches(THUMBPRINT_RE, value, 128)


def is_valid_template_name(value: Any) -> bool:
    return _matches(TEMPLATE_NAME_RE, value, MAX_TEMPLATE_NAME_LENGTH)


def is_valid_hash_algorithm(value: Any, allowed: frozenset = GATEWAY_HASH_ALGORITHMS) -> bool:
    return isinstance(value, str) and value in allowed


def is_valid_key_size(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value in VALID_KEY_SIZES


def escape_single_quoted(value: str) -> str:
    """Escape a value for use inside a PowerShell single-quoted string literal.

    PowerShell single-quoted strings do no variable expansion; the only special
    character is the single quote itself, written twice. PowerShell also treats
    the typographic quotes U+2018..U+201B as single quotes.
    """
    return _SINGLE_QUOTE_RE.sub(lambda m: m.group(0) * 2, str(value))


def quote_literal(value: str) -> str:
    """Escaped value wrapped in single quotes."""
    return f"'{escape_single_quoted(value)}'"


CERTIFICATE_PATH_RE = re.compile(r"^[A-Za-z]:\\[A-Za-z0-9 ._\\()-]+$")
CERTIFICATE_FILE_SUFFIXES = frozenset({".cer", ".crt", ".pfx"})
MAX_CERTIFICATE_PATH_LENGTH = 260


def is_valid_certificate_path(value: Any, drop_dir: str) -> bool:
    """Drive-absolute certificate file path inside ``drop_dir``.

    UNC shares, ``..`` segments and forward slashes never match.
    """
    if not _matches(CERTIFICATE_PATH_RE, value, MAX_CERTIFICATE_PATH_LENGTH):
        return False
    path = PureWindowsPath(value)
    if ".." in path.parts or path.suffix.lower() not in CERTIFICATE_FILE_SUFFIXES:
        return False
    try:
        root = PureWindowsPath(drop_dir)
    except TypeError:
        return False
    return root.is_absolute() and path != root and path.is_relative_to(root)
