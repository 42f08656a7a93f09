"""Sandbox allow-list evaluation for shell-like commands."""

from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import re
import threading
from dataclasses import dataclass
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)


@dataclass
class SandboxPath:
    path: str
    description: str = ""
    enabled: bool = True

    def to_dict(self) -> dict:
        return {"path": self.path, "description": self.description, "enabled": self.enabled}


class SandboxStore(Protocol):
    def is_enabled(self) -> bool:
        ...

    def set_enabled(self, enabled: bool) -> None:
        ...

    def add_path(self, path: SandboxPath) -> None:
        ...

    def remove_path(self, path: str) -> None:
        ...

    def list_paths(self) -> list[SandboxPath]:
        ...


class InMemorySandboxStore:
    """Thread-safe in-memory sandbox state, keyed by normalized path."""

    def __init__(self, enabled: bool = False):
        self._lock = threading.Lock()
        self._enabled = enabled
        self._paths: dict[str, SandboxPath] = {}

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = enabled

    def add_path(self, path: SandboxPath) -> None:
        with self._lock:
            self._paths[path.path] = path

    def remove_path(self, path: str) -> None:
        with self._lock:
            self._paths.pop(path, None)

    def list_paths(self) -> list[SandboxPath]:
        with self._lock:
            return list(self._paths.values())


def _verb(name: str, prefix: str = "", groups: int = 1) -> re.Pattern:
    token = r"""["']?([^\s"']+)["']?"""
    body = r"\s+".join([token] * groups)
    return re.compile(rf"\b{name}\s+{prefix}{body}", re.IGNORECASE)


_FLAGS = r"(?:-[a-zA-Z]+\s+)*"

VERB_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("cd", _verb("cd")),
    ("ls", _verb("ls", _FLAGS)),
    ("cat", _verb("cat")),
    ("rm", _verb("rm", _FLAGS)),
    ("cp", _verb("cp", _FLAGS, groups=2)),
    ("mv", _verb("mv", _FLAGS, groups=2)),
    ("mkdir", _verb("mkdir", _FLAGS)),
    ("touch", _verb("touch")),
    ("chmod", _verb("chmod", r"(?:-[a-zA-Z]+\s+)?\d+\s+")),
    ("chown", _verb("chown", r"(?:-[a-zA-Z]+\s+)?[^\s]+\s+")),
    ("find", _verb("find")),
    ("grep", _verb("grep", _FLAGS)),
    ("head", _verb("head", _FLAGS)),
    ("tail", _verb("tail", _FLAGS)),
    ("less", _verb("less")),
    ("more", _verb("more")),
    ("nano", _verb("nano")),
    ("vim", _verb("vim")),
    ("vi", _verb("vi")),
    ("echo", re.compile(r"""\becho\s+.*?>>\s*["']?([^\s"']+)["']?""", re.IGNORECASE)),
    ("type", _verb("type")),
    ("dir", _verb("dir")),
    ("del", _verb("del")),
    ("copy", _verb("copy")),
    ("move", _verb("move")),
    ("xcopy", _verb("xcopy")),
]

QUOTED_ABSOLUTE_PATH = re.compile(r"""["']([A-Za-z]:[\\/][^"']+|/(?:[^/"']+/)*[^"']+)["']""")
UNQUOTED_ABSOLUTE_PATH = re.compile(r"\s([A-Za-z]:[\\/][^\s]+|/(?:[^/\s]+/)+[^\s]*)")
# `/s`, `/Y`, `/?`, `/d:date` style switches of Windows commands.
WINDOWS_SWITCH = re.compile(r"^/[A-Za-z?](?::\S*)?$")


def is_flag(token: str) -> bool:
    return token.startswith("-") or bool(WINDOWS_SWITCH.match(token))


def normalize_path(path: str, windows: bool | None = None) -> str:
    """Separator, drive-letter and absolute-path normalization for the host platform."""
    path = path.strip()
    if not path:
        return ""
    if windows is None:
        windows = os.name == "nt"
    module = ntpath if windows else posixpath
    if windows:
        path = path.replace("/", "\\")
        if len(path) >= 2 and path[1] == ":":
            path = path[0].upper() + path[1:]
    else:
        path = path.replace("\\", "/")
    if not module.isabs(path):
        path = module.join(os.getcwd(), path)
    return module.normpath(path)


def is_sub_path(parent: str, child: str, windows: bool | None = None) -> bool:
    """Equality or separator-bounded prefix match, case-insensitive on Windows only."""
    if windows is None:
        windows = os.name == "nt"
    module = ntpath if windows else posixpath
    sep = "\\" if windows else "/"
    parent = module.normpath(parent)
    child = module.normpath(child)
    if windows:
        parent, child = parent.lower(), child.lower()
    if parent == child:
        return True
    if not parent.endswith(sep):
        parent += sep
    return child.startswith(parent)


class SandboxEvaluator:
    """Decides whether paths, and the paths a command touches, are allow-listed."""

    def __init__(self, store: SandboxStore | None = None):
        self.store = store or InMemorySandboxStore()

    @classmethod
    def from_settings(cls, enabled: bool, paths: Iterable[str]) -> "SandboxEvaluator":
        evaluator = cls(InMemorySandboxStore(enabled=enabled))
        for path in paths:
            evaluator.add_path(path)
        return evaluator

    def is_enabled(self) -> bool:
        return self.store.is_enabled()

    def set_enabled(self, enabled: bool) -> None:
        self.store.set_enabled(enabled)
        logger.info("Sandbox %s", "enabled" if enabled else "disabled")

    def add_path(self, path: str, description: str = "") -> SandboxPath:
        entry = SandboxPath(path=normalize_path(path), description=description)
        self.store.add_path(entry)
        logger.info("Sandbox path allowed: %s", entry.path)
        return entry

    def remove_path(self, path: str) -> None:
        self.store.remove_path(normalize_path(path))

    def allowed_paths(self) -> list[str]:
        return [p.path for p in self.store.list_paths() if p.enabled]

    def all_paths(self) -> list[SandboxPath]:
        return self.store.list_paths()

    def is_path_allowed(self, path: str) -> bool:
        if not self.is_enabled():
            return True
        normalized = normalize_path(path)
        if not normalized:
            return False
        return any(is_sub_path(allowed, normalized) for allowed in self.allowed_paths())

    def extract_paths_from_command(self, command: str) -> list[str]:
        found: list[str] = []
        for _, pattern in VERB_PATTERNS:
            for match in pattern.finditer(command):
                found.extend(g for g in match.groups() if g and not is_flag(g))
        found.extend(m.group(1) for m in QUOTED_ABSOLUTE_PATH.finditer(command) if m.group(1))
        found.extend(
            m.group(1)
            for m in UNQUOTED_ABSOLUTE_PATH.finditer(command)
            if m.group(1) and not is_flag(m.group(1))
        )
        return self._unique(found)

    @staticmethod
    def _unique(paths: list[str]) -> list[str]:
        seen: set[str] = set()
        result = []
        for path in paths:
            key = normalize_path(path) or path
            if key in seen:
                continue
            seen.add(key)
            result.append(path)
        return result

    def check_command_permission(self, command: str) -> tuple[bool, list[str]]:
        """Return (allowed, blocked_paths) for a command."""
        if not self.is_enabled():
            return True, []
        blocked = [p for p in self.extract_paths_from_command(command) if not self.is_path_allowed(p)]
        if blocked:
            logger.info("Sandbox blocked command %r: %s", command, blocked)
        return not blocked, blocked
