"""
Filter Include Resolver

Flattens a fail2ban filter and its ``[INCLUDES]`` into one document that can
be handed to ``fail2ban-regex``. The merged text is only ever used for
testing; it is never written back as the filter's definition.

Merge order is: resolved ``before`` files, the filter's own body without its
``[INCLUDES]`` section, resolved ``after`` files. Keys the filter defines in
its own ``[DEFAULT]`` section are removed from the ``[DEFAULT]`` sections of
everything it includes, so the filter's definition wins.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional

from .ini import (
    BASE_SUFFIX,
    OVERRIDE_SUFFIX,
    Section,
    base_name,
    find_section,
    normalize_text,
    parse_list,
    render_sections,
    split_sections,
)

logger = logging.getLogger(__name__)

INCLUDES_SECTION = "INCLUDES"
DEFAULT_SECTION = "DEFAULT"

# Reads a file from filter.d by file name, returning None when it is absent.
FilterLoader = Callable[[str], Optional[str]]


@dataclass
class IncludeSpec:
    """Ordered ``before``/``after`` base-names declared by a filter."""

    before: List[str] = field(default_factory=list)
    after: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.before or self.after)


def parse_includes(content: str) -> IncludeSpec:
    """Read the ``[INCLUDES]`` section of ``content``."""
    section = find_section(split_sections(content), INCLUDES_SECTION)
    if section is None:
        return IncludeSpec()
    return IncludeSpec(
        before=[base_name(n) for n in parse_list(section.value("before"))],
        after=[base_name(n) for n in parse_list(section.value("after"))],
    )


def _default_keys(sections: List[Section]) -> set:
    keys: set = set()
    for section in sections:
        if section.name is not None and section.name.upper() == DEFAULT_SECTION:
            keys |= section.defined_keys()
    return keys


def strip_shadowed_defaults(content: str, keys: set) -> str:
    """Remove ``keys`` from every ``[DEFAULT]`` section of ``content``."""
    if not keys:
        return normalize_text(content)
    sections = []
    for section in split_sections(content):
        if section.name is not None and section.name.upper() == DEFAULT_SECTION:
            section = section.without_keys(keys)
        sections.append(section)
    return render_sections(sections)


def _without_includes(content: str) -> str:
    return render_sections(
        s for s in split_sections(content)
        if s.name is None or s.name.upper() != INCLUDES_SECTION
    )


class IncludeResolver:
    """
    Resolves includes against the files of one ``filter.d`` directory.

    Pure apart from the reads done through ``loader``; instances hold no
    state between calls and may be shared.
    """

    def __init__(self, loader: FilterLoader):
        self.loader = loader

    def _load_preferred(self, name: str) -> Optional[tuple]:
        for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX):
            filename = name + suffix
            content = self.loader(filename)
            if content is not None:
                return filename, content
        return None

    def resolve(self, content: str, name: str, origin: Optional[str] = None) -> str:
        """
        Merge ``content`` (the text of filter ``name``) with its includes.

        ``origin`` is the file name the text was read from; it defaults to the
        base-layer file of ``name``.
        """
        guard = frozenset({origin or name + BASE_SUFFIX})
        return self._resolve(content, name, guard)

    def _resolve(self, content: str, name: str, guard: FrozenSet[str]) -> str:
        includes = parse_includes(content)
        if not includes:
            return normalize_text(content)

        own_keys = _default_keys(split_sections(content))
        chunks: List[str] = []

        for include in includes.before:
            if include == name:
                logger.debug(f"Skipping self-referencing before include '{include}' in filter '{name}'")
                continue
            merged = self._include(include, name, guard, own_keys)
            if merged:
                chunks.append(merged)

        chunks.append(_without_includes(content))

        for include in includes.after:
            if include == name:
                merged = self._include_override(name, guard, own_keys)
            else:
                merged = self._include(include, name, guard, own_keys)
            if merged:
                chunks.append(merged)

        return "".join(normalize_text(chunk) for chunk in chunks if chunk)

    def _include(self, include: str, parent: str, guard: FrozenSet[str], own_keys: set) -> str:
        loaded = self._load_preferred(include)
        if loaded is None:
            logger.warning(f"Include '{include}' of filter '{parent}' not found, skipping")
            return ""
        filename, text = loaded
        return self._merge_loaded(filename, text, include, parent, guard, own_keys)

    def _include_override(self, name: str, guard: FrozenSet[str], own_keys: set) -> str:
        filename = name + OVERRIDE_SUFFIX
        text = self.loader(filename)
        if text is None:
            logger.debug(f"Filter '{name}' has no override file for its after include")
            return ""
        return self._merge_loaded(filename, text, name, name, guard, own_keys)

    def _merge_loaded(
        self,
        filename: str,
        text: str,
        include: str,
        parent: str,
        guard: FrozenSet[str],
        own_keys: set,
    ) -> str:
        if filename in guard:
            logger.warning(f"Include cycle through '{filename}' in filter '{parent}', skipping")
            return ""
        resolved = self._resolve(text, include, guard | {filename})
        return strip_shadowed_defaults(resolved, own_keys)


def resolve_filter_includes(
    content: str,
    name: str,
    loader: FilterLoader,
    origin: Optional[str] = None,
) -> str:
    """Flatten filter ``name`` (whose text is ``content``) with its includes."""
    return IncludeResolver(loader).resolve(content, name, origin)


def directory_loader(filter_dir: str) -> FilterLoader:
    """FilterLoader reading from a local ``filter.d`` directory."""
    def load(filename: str) -> Optional[str]:
        path = os.path.join(filter_dir, filename)
        if not os.path.isfile(path):
            return None
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read()

    return load
