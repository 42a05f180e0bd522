"""
Jail and filter file operations on text.

Everything here works on strings and file names only; the connectors do the
reading and writing. Keeping the rewrite rules transport-free means a jail
edited over SSH ends up byte-identical to one edited locally.
"""

import ipaddress
import logging
import re
from typing import Dict, Iterable, List, Sequence

from ..core.exceptions import ValidationError
from ..core.models import JailInfo
from .ini import (
    BASE_SUFFIX,
    OVERRIDE_SUFFIX,
    is_comment,
    is_continuation,
    is_section_header,
    section_name,
    split_definition,
)

logger = logging.getLogger(__name__)

RESERVED_SECTIONS = frozenset({"DEFAULT", "INCLUDES"})
_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_WILDCARD_CHARS = "*?["


# =============================================================================
# Validation
# =============================================================================


def validate_name(name: str, kind: str = "jail") -> str:
    """
    Validate a jail or filter name and return it stripped.

    Raises:
        ValidationError: empty, reserved, or containing characters other
            than letters, digits, dashes and underscores
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError(f"{kind} name cannot be empty", field=kind)
    if name.upper() in RESERVED_SECTIONS:
        raise ValidationError(f"{kind} name '{name}' is reserved and cannot be used", field=kind)
    if _INVALID_NAME_CHARS.search(name):
        raise ValidationError(
            f"{kind} name '{name}' contains invalid characters. "
            "Only alphanumeric characters, dashes, and underscores are allowed",
            field=kind,
        )
    return name


def validate_ip(ip: str) -> str:
    """Validate a single IPv4 or IPv6 address (no networks) and return it."""
    candidate = (ip or "").strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        raise ValidationError(f"invalid IP address: '{ip}'", field="ip")


# =============================================================================
# Section Header Fixups
# =============================================================================


def minimal_jail(name: str) -> str:
    return f"[{name}]\n"


def with_section_header(name: str, content: str) -> str:
    """Prepend ``[name]`` unless ``content`` already starts with it."""
    expected = f"[{name}]"
    if not content.strip().startswith(expected):
        return expected + "\n" + content
    return content


def normalize_jail_content(name: str, content: str) -> str:
    """
    Make ``content`` a single-section jail file for ``name``.

    Empty content becomes a bare ``[name]`` section. When there are several
    headers, only the first correct one is kept. A lone wrong header is
    renamed, and a file without any header gets one prepended.
    """
    if not content.strip():
        return minimal_jail(name)

    expected = f"[{name}]"
    lines = content.split("\n")
    header_indices = [i for i, raw in enumerate(lines) if is_section_header(raw.strip())]
    found = any(lines[i].strip() == expected for i in header_indices)

    if len(header_indices) > 1:
        kept_first = False
        rewritten = []
        for raw in lines:
            stripped = raw.strip()
            if is_section_header(stripped):
                if not kept_first and stripped == expected:
                    rewritten.append(expected)
                    kept_first = True
                else:
                    logger.debug(f"Removing section header {stripped} from jail '{name}'")
                continue
            rewritten.append(raw)
        lines = rewritten
        if not kept_first:
            lines.insert(0, expected)
        return "\n".join(lines)

    if found:
        return content
    if header_indices:
        lines[header_indices[0]] = expected
    else:
        lines.insert(0, expected)
    return "\n".join(lines)


# =============================================================================
# Enabled State
# =============================================================================


def set_enabled(name: str, content: str, enabled: bool) -> str:
    """Set ``enabled = true|false`` inside the ``[name]`` section of ``content``."""
    setting = f"enabled = {'true' if enabled else 'false'}"
    lines = content.split("\n") if content else [f"[{name}]"]
    output: List[str] = []
    current = None
    found = False

    for raw in lines:
        stripped = raw.strip()
        if is_section_header(stripped):
            current = section_name(stripped)
            output.append(raw)
        elif stripped.lower().startswith("enabled") and current == name:
            output.append(setting)
            found = True
        else:
            output.append(raw)

    if not found:
        header = f"[{name}]"
        for index, raw in enumerate(output):
            if raw.strip() == header:
                output.insert(index + 1, setting)
                found = True
                break
        if not found:
            output.append(setting)

    result = "\n".join(output)
    return result if result.endswith("\n") else result + "\n"


# =============================================================================
# Discovery
# =============================================================================


def parse_jail_file(content: str) -> List[JailInfo]:
    """Jails declared in one file, skipping ``[DEFAULT]`` and ``[INCLUDES]``."""
    jails: List[JailInfo] = []
    current = ""
    enabled = True

    def flush():
        if current and current.upper() not in RESERVED_SECTIONS:
            jails.append(JailInfo(jail_name=current, enabled=enabled))

    for raw in content.splitlines():
        stripped = raw.strip()
        if is_section_header(stripped):
            flush()
            current = section_name(stripped)
            enabled = True
        elif current and stripped.lower().startswith("enabled"):
            pair = split_definition(stripped)
            if pair is not None and pair[0].lower() == "enabled":
                enabled = pair[1].lower() == "true"
    flush()
    return jails


def select_jail_files(filenames: Iterable[str]) -> List[str]:
    """
    Pick the files of ``jail.d`` to read for discovery.

    ``.local`` files come first; a ``.conf`` file is skipped when a
    ``.local`` with the same base name exists. Hidden files are ignored.
    """
    names = sorted(n for n in filenames if not n.startswith("."))
    chosen: List[str] = []
    seen = set()
    for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX):
        for filename in names:
            if not filename.endswith(suffix):
                continue
            base = filename[: -len(suffix)]
            if not base or base in seen:
                continue
            seen.add(base)
            chosen.append(filename)
    return chosen


def merge_jail_infos(per_file: Sequence[List[JailInfo]]) -> List[JailInfo]:
    """Combine discovered jails keeping the first occurrence of each name."""
    merged: Dict[str, JailInfo] = {}
    for jails in per_file:
        for jail in jails:
            if jail.jail_name not in merged:
                merged[jail.jail_name] = jail
    return list(merged.values())


# =============================================================================
# Extraction
# =============================================================================


def extract_filter(content: str) -> str:
    """Filter name of a jail, without any ``[mode=...]`` arguments."""
    for raw in content.splitlines():
        stripped = raw.strip()
        if is_comment(stripped):
            continue
        pair = split_definition(stripped)
        if pair is not None and pair[0].lower() == "filter":
            return pair[1].split("[", 1)[0].strip()
    return ""


def extract_logpaths(content: str) -> List[str]:
    """Every ``logpath`` entry of a jail, continuation lines included."""
    paths: List[str] = []
    lines = content.splitlines()
    index = 0
    while index < len(lines):
        stripped = lines[index].strip()
        index += 1
        if not stripped or is_comment(stripped):
            continue
        pair = split_definition(stripped)
        if pair is None or pair[0].lower() != "logpath":
            continue
        paths.extend(pair[1].split())
        while index < len(lines) and is_continuation(lines[index]):
            paths.extend(lines[index].split())
            index += 1
    return paths


def has_wildcard(path: str) -> bool:
    return any(ch in path for ch in _WILDCARD_CHARS)
