"""
INI line helpers

fail2ban's configuration files are read with a line-oriented dialect:
``key = value`` definitions, ``[section]`` headers, ``#``/``;`` comments and
values that continue onto following lines. These helpers implement that
dialect once so the variable resolver, the include resolver and the jail file
operations agree on what a definition is.
"""

from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Set, Tuple

COMMENT_PREFIXES = ("#", ";")
OVERRIDE_SUFFIX = ".local"
BASE_SUFFIX = ".conf"


def is_comment(stripped: str) -> bool:
    return stripped.startswith(COMMENT_PREFIXES)


def is_section_header(stripped: str) -> bool:
    return stripped.startswith("[") and stripped.endswith("]")


def section_name(stripped: str) -> str:
    return stripped.strip("[]").strip()


def is_indented(raw: str) -> bool:
    return raw[:1] in (" ", "\t")


def is_continuation(raw: str) -> bool:
    """
    Whether ``raw`` continues the value of the previous definition.

    A line continues a value when it is not blank, not a comment and not a
    section header, and is either indented or carries no ``=``.
    """
    stripped = raw.strip()
    if not stripped or is_comment(stripped) or stripped.startswith("["):
        return False
    return is_indented(raw) or "=" not in stripped


def split_definition(stripped: str) -> Optional[Tuple[str, str]]:
    """Split ``key = value`` into a stripped pair, or None for other lines."""
    key, sep, value = stripped.partition("=")
    if not sep:
        return None
    return key.strip(), value.strip()


def find_value(lines: Iterable[str], name: str) -> str:
    """
    Return the value of the first definition of ``name`` in ``lines``.

    Keys match case-insensitively. Continuation lines are joined with single
    spaces. An empty string means no usable definition was found.
    """
    wanted = name.lower()
    iterator = iter(lines)
    for raw in iterator:
        stripped = raw.strip()
        if not stripped or is_comment(stripped):
            continue
        pair = split_definition(stripped)
        if pair is None or pair[0].lower() != wanted:
            continue
        parts = [pair[1]]
        for following in iterator:
            if not is_continuation(following):
                break
            parts.append(following.strip())
        return " ".join(p for p in parts if p).strip()
    return ""


def parse_list(value: str) -> List[str]:
    """Split a whitespace separated list value."""
    return value.split()


def base_name(name: str) -> str:
    """Strip a trailing ``.conf`` or ``.local`` from a file or include name."""
    name = name.strip()
    for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def normalize_text(text: str) -> str:
    """Unify line endings and end the document with exactly one newline."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.rstrip("\n")
    return text + "\n" if text else ""


# =============================================================================
# Sections
# =============================================================================


@dataclass
class Section:
    """A section of an INI document; ``name`` is None for the preamble."""

    name: Optional[str]
    lines: List[str] = field(default_factory=list)

    def defined_keys(self) -> Set[str]:
        keys = set()
        for raw in self.lines:
            if is_indented(raw):
                continue
            stripped = raw.strip()
            if not stripped or is_comment(stripped) or is_section_header(stripped):
                continue
            pair = split_definition(stripped)
            if pair is not None:
                keys.add(pair[0].lower())
        return keys

    def value(self, key: str) -> str:
        return find_value(self.lines[1:] if self.name is not None else self.lines, key)

    def without_keys(self, keys: Set[str]) -> "Section":
        """Copy of the section with the given definitions and their continuations removed."""
        kept: List[str] = []
        skipping = False
        for raw in self.lines:
            stripped = raw.strip()
            if skipping:
                if is_continuation(raw):
                    continue
                skipping = False
            if stripped and not is_indented(raw) and not is_comment(stripped):
                pair = split_definition(stripped)
                if pair is not None and pair[0].lower() in keys:
                    skipping = True
                    continue
            kept.append(raw)
        return Section(self.name, kept)

    def render(self) -> str:
        return "\n".join(self.lines)


def split_sections(text: str) -> List[Section]:
    """Split ``text`` into sections, keeping every original line."""
    sections = [Section(None)]
    for raw in normalize_text(text).split("\n")[:-1] if text else []:
        stripped = raw.strip()
        if is_section_header(stripped) and not is_indented(raw):
            sections.append(Section(section_name(stripped), [raw]))
        else:
            sections[-1].lines.append(raw)
    if not sections[0].lines:
        sections.pop(0)
    return sections


def find_section(sections: Iterable[Section], name: str) -> Optional[Section]:
    for section in sections:
        if section.name is not None and section.name.upper() == name.upper():
            return section
    return None


def render_sections(sections: Iterable[Section]) -> str:
    return normalize_text("\n".join(s.render() for s in sections))


def iter_section_headers(text: str) -> Iterator[Tuple[int, str]]:
    """Yield ``(line_index, name)`` for every section header in ``text``."""
    for index, raw in enumerate(text.split("\n")):
        stripped = raw.strip()
        if is_section_header(stripped):
            yield index, section_name(stripped)
