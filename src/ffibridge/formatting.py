"""
Output Formatting
=================

Runs an external source formatter over generated files after they are
written. Formatting is best effort: a missing tool, a timeout or a
non-zero exit becomes a warning, and the already-written files stay valid.

| Output      | Command          |
|-------------|------------------|
| python      | black --quiet    |
| kotlin      | ktlint -F        |
| swift       | swiftformat      |
| ruby        | rubocop -a       |
| scaffolding | rustfmt          |
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

FORMAT_TIMEOUT = 120


@dataclass(frozen=True)
class FormatWarning:
    """A formatter that could not be run or reported a failure."""
    tool: str
    message: str

    def __str__(self) -> str:
        return f"warning: {self.tool}: {self.message}"


def format_files(command: Sequence[str], paths: Sequence[Path]) -> Optional[FormatWarning]:
    """
    Run a formatter command over paths.

    Args:
        command: Formatter executable and its flags
        paths: Files to format in place

    Returns:
        None on success, otherwise a FormatWarning
    """
    if not command or not paths:
        return None

    cmd = list(command) + [str(p) for p in paths]
    tool = command[0]
    logger.debug(f"Formatting: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=FORMAT_TIMEOUT,
        )
    except FileNotFoundError:
        return FormatWarning(tool, "not found; generated files were left unformatted")
    except subprocess.TimeoutExpired:
        return FormatWarning(tool, f"timed out after {FORMAT_TIMEOUT}s")
    except OSError as e:
        return FormatWarning(tool, f"could not be started: {e}")

    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip().splitlines()
        summary = detail[0] if detail else "no output"
        return FormatWarning(tool, f"exited with status {result.returncode}: {summary}")
    return None
