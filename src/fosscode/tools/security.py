"""Security sandbox for built-in tools.

Every filesystem path a tool receives passes through SecuritySandbox before
any access happens. The sandbox is a pure gate: it returns the canonical
absolute path and tools must do their I/O on that path, never on the raw
input.

Shell commands are screened separately by check_hard_block() and
sanitize_command(), which reject catastrophic patterns (rm -rf, fork bombs,
disk wipes) before a subprocess is spawned.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path

from ..config import SandboxConfig

logger = logging.getLogger(__name__)

DEFAULT_RESTRICTED_ROOTS = ("/etc", "/usr", "/sys", "/proc", "/dev", "/root")

DEFAULT_ALLOWED_EXTENSIONS = (".txt", ".md", ".json", ".ts", ".js", ".py", ".rs", ".go", ".java", ".cpp", ".c", ".h")

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class SandboxError(ValueError):
    """A path failed sandbox validation."""


def _real(path: str) -> str:
    """Resolve symlinks without raising on broken links or loops."""
    try:
        return os.path.realpath(path)
    except (OSError, ValueError):
        return os.path.normpath(path)


def _is_within(path: str, root: str) -> bool:
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


class SecuritySandbox:
    """Validates and normalizes paths against allow-listed and restricted roots.

    A path is accepted when it lies inside an allowed root (the working
    directory is always one). Restricted roots win over allowed roots
    unless an allowed root is nested deeper inside the restricted one, so a
    project checked out under ``/root/project`` stays usable while the rest
    of ``/root`` is refused.
    """

    def __init__(
        self,
        working_dir: str | None = None,
        allowed_roots: Iterable[str] = (),
        restricted_roots: Iterable[str] = DEFAULT_RESTRICTED_ROOTS,
        allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        self.working_dir = os.path.abspath(working_dir or os.getcwd())
        self._allowed: list[str] = []
        self._restricted: list[str] = []
        for root in restricted_roots:
            normalized = os.path.normpath(root)
            self._restricted.extend({normalized, _real(normalized)})
        self.allowed_extensions = frozenset(e.lower() for e in allowed_extensions)
        self.max_file_size = max_file_size
        self.add_allowed_root(self.working_dir)
        for root in allowed_roots:
            self.add_allowed_root(root)

    @classmethod
    def from_config(cls, config: SandboxConfig, working_dir: str | None = None) -> SecuritySandbox:
        return cls(
            working_dir=working_dir,
            allowed_roots=config.allowed_roots,
            restricted_roots=config.restricted_roots,
            allowed_extensions=config.allowed_extensions,
            max_file_size=config.max_file_size,
        )

    @property
    def allowed_roots(self) -> list[str]:
        return list(self._allowed)

    def add_allowed_root(self, root: str) -> None:
        normalized = os.path.normpath(os.path.abspath(os.path.expanduser(root)))
        for candidate in (normalized, _real(normalized)):
            if candidate not in self._allowed:
                self._allowed.append(candidate)

    def _deepest(self, path: str, roots: Iterable[str]) -> int:
        return max((len(r) for r in roots if _is_within(path, r)), default=-1)

    def _check_roots(self, candidate: str, display: str) -> None:
        allowed_depth = self._deepest(candidate, self._allowed)
        restricted_depth = self._deepest(candidate, self._restricted)
        if restricted_depth >= 0 and restricted_depth >= allowed_depth:
            logger.warning("Blocked access to restricted path: %s", candidate)
            raise SandboxError(f"Access denied: path '{display}' is in restricted area")
        if allowed_depth < 0:
            logger.warning("Blocked access outside allowed roots: %s", candidate)
            raise SandboxError(f"Access denied: path '{display}' is not in allowed areas")

    def validate_path(self, path: object) -> Path:
        """Return the normalized absolute form of ``path`` or raise SandboxError.

        Relative paths are taken relative to the sandbox working directory.
        Both the lexical path and its symlink-resolved target must pass the
        root checks.
        """
        if not isinstance(path, str) or not path.strip():
            raise SandboxError("Invalid path: path must be a non-empty string")
        if "\x00" in path:
            raise SandboxError("Invalid path: path contains null bytes")

        expanded = os.path.expanduser(path)
        segments = re.split(r"[\\/]+", expanded)
        if ".." in segments:
            raise SandboxError("Invalid path: directory traversal detected")

        absolute = expanded if os.path.isabs(expanded) else os.path.join(self.working_dir, expanded)
        normalized = os.path.normpath(absolute)
        if ".." in normalized.split(os.sep):
            raise SandboxError("Invalid path: directory traversal detected")

        self._check_roots(normalized, normalized)
        real = _real(normalized)
        if real != normalized:
            self._check_roots(real, normalized)
        return Path(normalized)

    def is_path_allowed(self, path: object) -> bool:
        try:
            self.validate_path(path)
        except SandboxError:
            return False
        return True

    def _check_extension(self, path: Path) -> None:
        ext = path.suffix.lower()
        if ext and ext not in self.allowed_extensions:
            raise SandboxError(f"File type '{ext}' is not allowed")

    async def validate_file_operation(self, path: object, mode: str = "read") -> Path:
        """Validate a file for ``read`` or ``write`` and return its canonical path."""
        if mode not in ("read", "write"):
            raise SandboxError(f"Invalid operation: {mode!r}")
        resolved = self.validate_path(path)
        self._check_extension(resolved)

        if mode == "read":
            if not resolved.is_file() or not os.access(resolved, os.R_OK):
                raise SandboxError(f"Cannot access file '{resolved}': file does not exist or is not readable")
            size = resolved.stat().st_size
            if size > self.max_file_size:
                raise SandboxError(
                    f"File size ({size} bytes) exceeds maximum allowed size ({self.max_file_size} bytes)"
                )
        else:
            if resolved.is_dir():
                raise SandboxError(f"Cannot write to '{resolved}': path is a directory")
            # Parent directories may not exist yet; the nearest existing ancestor decides.
            ancestor = resolved.parent
            while not ancestor.exists() and ancestor != ancestor.parent:
                ancestor = ancestor.parent
            if not os.access(ancestor, os.W_OK):
                raise SandboxError(
                    f"Write permission denied for '{resolved}': cannot write to directory '{ancestor}'"
                )
        return resolved

    async def validate_directory_operation(self, path: object) -> Path:
        resolved = self.validate_path(path)
        if resolved.exists() and not resolved.is_dir():
            raise SandboxError(f"Path '{resolved}' is not a directory")
        if not resolved.is_dir() or not os.access(resolved, os.R_OK):
            raise SandboxError(f"Cannot access directory '{resolved}': directory does not exist or is not accessible")
        return resolved


# Catastrophic commands that are refused outright, regardless of read-only
# mode or any other setting.
_HARD_BLOCK_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(
            r"\brm\s+(-[a-zA-Z]*f[a-zA-Z]*\s+)?-[a-zA-Z]*r|"
            r"\brm\s+(-[a-zA-Z]*r[a-zA-Z]*\s+)?-[a-zA-Z]*f",
            re.IGNORECASE,
        ),
        "recursive forced deletion (rm -rf)",
    ),
    (re.compile(r"\bmkfs\b", re.IGNORECASE), "disk formatting (mkfs)"),
    (re.compile(r"\bdd\b.*\bof=/dev/", re.IGNORECASE), "raw device write (dd)"),
    (re.compile(r"\bdd\b.*\bif=/dev/(zero|urandom|random)\b", re.IGNORECASE), "disk overwrite (dd)"),
    (re.compile(r":\(\)\s*\{.*\|.*&\s*\}\s*;"), "fork bomb"),
    (re.compile(r"\bchmod\s+(-[a-zA-Z]*R[a-zA-Z]*\s+)?777\s+/\s*$"), "recursive chmod 777 /"),
    (re.compile(r"\b(curl|wget)\b.*\|\s*(ba|z)?sh\b"), "pipe from network to shell"),
    (re.compile(r"\bbase64\b.*\|\s*(ba|z)?sh\b"), "base64 decode piped to shell"),
    (re.compile(r"\b(shred|srm)\b", re.IGNORECASE), "secure file erasure"),
    (re.compile(r"\bsudo\s+rm\b"), "sudo rm"),
    (re.compile(r"\b(shutdown|reboot|halt|poweroff)\b"), "system power command"),
]


def check_hard_block(command: str) -> str | None:
    """Return the description of the first hard-block pattern ``command`` matches, or None."""
    if not command or not command.strip():
        return None

    normalized = re.sub(r"\s+", " ", command.strip())
    for pattern, description in _HARD_BLOCK_PATTERNS:
        if pattern.search(normalized):
            return description
    return None


def sanitize_command(command: str) -> tuple[str, str | None]:
    """Returns (command, error_message). A non-None error means the command must not run."""
    if "\x00" in command:
        return "", "Command contains null bytes"

    description = check_hard_block(command)
    if description:
        logger.info("Hard-block pattern matched (%s): %s", description, command[:100])
        return "", f"Blocked: {description}"

    return command, None
