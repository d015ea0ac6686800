# script.py
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .model import ScriptResult

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ScriptError(Exception):
    """Base class for everything that can go wrong finding or starting a script."""
    directory: Path
    prefix: str

    def __str__(self) -> str:
        return f"script '{self.prefix}*' in {self.directory}"


@dataclass(eq=False)
class ScriptNotFound(ScriptError):
    def __str__(self) -> str:
        return f"No script starting with '{self.prefix}' found in {self.directory}"


@dataclass(eq=False)
class AmbiguousScript(ScriptError):
    candidates: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        listing = "\n".join(f" * {name}" for name in self.candidates)
        return (
            f"More than one script starting with '{self.prefix}' found in "
            f"{self.directory}:\n{listing}"
        )


@dataclass(eq=False)
class ScriptDirectoryError(ScriptError):
    reason: str = ""

    def __str__(self) -> str:
        return f"Could not list {self.directory} while looking for '{self.prefix}': {self.reason}"


@dataclass(eq=False)
class ScriptLaunchError(ScriptError):
    script: str = ""
    reason: str = ""

    def __str__(self) -> str:
        return f"Could not start {self.directory / self.script}: {self.reason}"


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

def find_candidates(directory: Path, prefix: str) -> List[str]:
    """
    List the regular files directly inside `directory` whose name starts
    with `prefix`, sorted by name.

    Raises:
        ScriptDirectoryError: If the directory cannot be listed
    """
    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        raise ScriptDirectoryError(Path(directory), prefix, reason=e.strerror or str(e)) from e

    names = []
    for entry in entries:
        try:
            is_file = entry.is_file()
        except OSError:
            # Dangling symlink or entry removed while listing.
            continue
        if is_file and entry.name.startswith(prefix):
            names.append(entry.name)
    return sorted(names)


def resolve_script(directory: str | Path, prefix: str) -> str:
    """
    Find the unique script in `directory` whose name starts with `prefix`.

    The directory is listed on every call, so scripts changed by a config
    update are picked up by the next resolution.

    Args:
        directory: Directory to look in (not recursive)
        prefix: Script name prefix, e.g. "update"

    Returns:
        The script's file name

    Raises:
        ScriptNotFound: No candidate
        AmbiguousScript: More than one candidate (all listed)
        ScriptDirectoryError: Directory missing or unreadable
    """
    directory = Path(directory)
    candidates = find_candidates(directory, prefix)
    if not candidates:
        raise ScriptNotFound(directory, prefix)
    if len(candidates) > 1:
        raise AmbiguousScript(directory, prefix, candidates=candidates)
    return candidates[0]


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def build_command(directory: Path, script: str, *, os_name: str | None = None) -> List[str]:
    """
    Build the platform shell invocation for a script.

    The script path is made absolute so the working-directory change of the
    child does not break it.
    """
    absolute = str((Path(directory) / script).resolve())
    if (os_name or os.name) == "nt":
        return ["cmd", "/C", absolute]
    return ["sh", "-c", absolute]


def run_to_completion(directory: str | Path, script: str) -> ScriptResult:
    """
    Run a script inside `directory` and capture its output.

    Raises:
        ScriptLaunchError: If the process could not be created
    """
    directory = Path(directory)
    cmd = build_command(directory, script)
    logger.debug("Running %s in %s", cmd, directory)
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(directory),
            text=True,
            encoding="utf-8",
            errors="replace",
            capture_output=True,
            stdin=subprocess.DEVNULL,
        )
    except OSError as e:
        raise ScriptLaunchError(directory, prefix=script, script=script, reason=str(e)) from e
    return ScriptResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def spawn_supervised(directory: str | Path, script: str) -> subprocess.Popen:
    """
    Start a script as a long-lived child with all three standard streams piped.

    On POSIX the child leads its own session so the whole process group can
    be signalled at shutdown.

    Raises:
        ScriptLaunchError: If the process could not be created
    """
    directory = Path(directory)
    cmd = build_command(directory, script)
    logger.debug("Spawning %s in %s", cmd, directory)
    try:
        return subprocess.Popen(
            cmd,
            cwd=str(directory),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            start_new_session=(os.name != "nt"),
        )
    except OSError as e:
        raise ScriptLaunchError(directory, prefix=script, script=script, reason=str(e)) from e
