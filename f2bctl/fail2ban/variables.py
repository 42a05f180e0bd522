"""
Variable Resolution Engine

Resolves fail2ban ``%(name)s`` references (for example in ``logpath``) the
way fail2ban itself sees them: every ``.local`` file under the configuration
root is searched before any ``.conf`` file, files are visited in the same
lexical walk order fail2ban's own tree uses, and nested references are
expanded recursively.

Resolution is a pure function of the configuration tree. The recursion guard
is an immutable ``frozenset`` passed down each call, so concurrent
resolutions never share state.
"""

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, Iterator, List, Optional, Protocol, Sequence, Tuple

from ..core.exceptions import (
    CircularReferenceError,
    NotFoundError,
    ResolutionExceededError,
    VariableNotFoundError,
)
from .ini import BASE_SUFFIX, OVERRIDE_SUFFIX, find_value

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10

VARIABLE_PATTERN = re.compile(r"%\(([^)]+)\)s")


class Layer(str, Enum):
    """Configuration layer a definition was found in."""

    OVERRIDE = "override"
    BASE = "base"

    @property
    def suffix(self) -> str:
        return OVERRIDE_SUFFIX if self is Layer.OVERRIDE else BASE_SUFFIX


@dataclass(frozen=True)
class ConfigVariable:
    """A variable definition discovered in the configuration tree."""

    name: str
    value: str
    source_file: str
    layer: Layer


class ConfigSource(Protocol):
    """Read-only view of a fail2ban configuration tree."""

    root: str

    def exists(self) -> bool:
        ...

    def iter_files(self, suffix: str) -> Iterator[str]:
        """Yield files ending in ``suffix`` in lexical walk order."""
        ...

    def read_lines(self, path: str) -> List[str]:
        ...


def walk_order_key(path: str) -> Tuple[str, ...]:
    """
    Sort key reproducing a depth-first lexical directory walk.

    Comparing path components rather than whole strings puts a directory
    ``a`` (and everything under it) before a sibling file ``a.conf``.
    """
    return tuple(path.split("/"))


class DirectorySource:
    """ConfigSource over a local directory."""

    def __init__(self, root: str):
        self.root = str(root)

    def exists(self) -> bool:
        return os.path.isdir(self.root)

    def iter_files(self, suffix: str) -> Iterator[str]:
        found: List[str] = []
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for filename in filenames:
                if filename.lower().endswith(suffix):
                    found.append(os.path.join(dirpath, filename))
        yield from sorted(found, key=walk_order_key)

    def read_lines(self, path: str) -> List[str]:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read().splitlines()


class CallableSource:
    """
    ConfigSource backed by two callables.

    Remote connectors use this to run the resolver against a tree they can
    only list and read through their transport.
    """

    def __init__(
        self,
        root: str,
        list_files: Callable[[str], Sequence[str]],
        read_text: Callable[[str], Optional[str]],
        root_exists: Callable[[], bool],
    ):
        self.root = root
        self._list_files = list_files
        self._read_text = read_text
        self._root_exists = root_exists

    def exists(self) -> bool:
        return self._root_exists()

    def iter_files(self, suffix: str) -> Iterator[str]:
        files = [f for f in self._list_files(suffix) if f.lower().endswith(suffix)]
        yield from sorted(files, key=walk_order_key)

    def read_lines(self, path: str) -> List[str]:
        text = self._read_text(path)
        return text.splitlines() if text is not None else []


def extract_variables(text: str) -> List[str]:
    """Return referenced variable names in order of first appearance."""
    seen: List[str] = []
    for name in VARIABLE_PATTERN.findall(text):
        if name not in seen:
            seen.append(name)
    return seen


def substitute(text: str, name: str, value: str) -> str:
    """Replace every ``%(name)s`` in ``text`` with ``value``."""
    return text.replace(f"%({name})s", value)


class VariableResolver:
    """
    Resolves ``%(name)s`` references against a fail2ban configuration tree.

    Usage:
        resolver = VariableResolver(DirectorySource("/etc/fail2ban"))
        resolver.expand("%(syslog_sshd)s")   # -> "/var/log/secure/sshd.log"
    """

    def __init__(self, source: ConfigSource, max_iterations: int = MAX_ITERATIONS):
        self.source = source
        self.max_iterations = max_iterations

    @classmethod
    def for_directory(cls, root: str) -> "VariableResolver":
        return cls(DirectorySource(root))

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def find_definition(self, name: str) -> ConfigVariable:
        """
        Find the winning definition of ``name``.

        Raises:
            NotFoundError: the configuration root does not exist
            VariableNotFoundError: no layer defines ``name``
        """
        if not self.source.exists():
            raise NotFoundError(
                f"variable '{name}' not found: {self.source.root} directory does not exist",
                kind="config_root",
                name=self.source.root,
            )

        for layer in (Layer.OVERRIDE, Layer.BASE):
            for path in self.source.iter_files(layer.suffix):
                try:
                    lines = self.source.read_lines(path)
                except OSError as e:
                    logger.debug(f"Skipping unreadable config file {path}: {e}")
                    continue
                value = find_value(lines, name)
                if value:
                    logger.debug(f"Found variable '{name}' = '{value}' in {path} ({layer.value})")
                    return ConfigVariable(name=name, value=value, source_file=path, layer=layer)
            if layer is Layer.OVERRIDE:
                logger.debug(f"Variable '{name}' not in override files, searching base files")

        raise VariableNotFoundError(name)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(self, name: str) -> str:
        """Return the fully expanded value of ``name``."""
        return self._resolve(name, frozenset(), ())

    def _resolve(self, name: str, resolving: FrozenSet[str], chain: Tuple[str, ...]) -> str:
        if name in resolving:
            raise CircularReferenceError(name, list(chain) + [name])

        resolving = resolving | {name}
        chain = chain + (name,)
        resolved = self.find_definition(name).value

        for iteration in range(self.max_iterations):
            nested = extract_variables(resolved)
            if not nested:
                logger.debug(f"'{name}' fully resolved to '{resolved}'")
                return resolved
            logger.debug(f"Iteration {iteration + 1} for '{name}': resolving {nested} in '{resolved}'")
            for nested_name in nested:
                if nested_name in resolving:
                    raise CircularReferenceError(nested_name, list(chain) + [nested_name])
                nested_value = self._resolve(nested_name, resolving, chain)
                resolved = substitute(resolved, nested_name, nested_value)

        if extract_variables(resolved):
            raise ResolutionExceededError(name, resolved, self.max_iterations)
        return resolved

    def expand(self, text: str) -> str:
        """
        Expand every reference inside ``text``.

        Each round starts with a fresh recursion guard; references produced
        by a substitution are picked up by the next round.
        """
        text = (text or "").strip()
        if not text:
            return ""

        resolved = text
        for _ in range(self.max_iterations):
            names = extract_variables(resolved)
            if not names:
                break
            for name in names:
                resolved = substitute(resolved, name, self.resolve(name))
        else:
            if extract_variables(resolved):
                raise ResolutionExceededError(text, resolved, self.max_iterations)

        logger.debug(f"Expanded '{text}' -> '{resolved}'")
        return resolved


def resolve_logpath(root: str, logpath: str) -> str:
    """Expand variables in ``logpath`` against the tree at ``root``."""
    return VariableResolver.for_directory(root).expand(logpath)
