"""
Writing-style memory.

A free-form markdown file (CLAUDE.md by default) describing how the user
writes. Its text is folded into draft and refinement prompts so replies
sound like the user.
"""

from pathlib import Path
from typing import Optional

from shared.logging import get_logger

from .config import resolve_path

log = get_logger("triage", "memory")

STYLE_FILENAME = "CLAUDE.md"
DEFAULT_STYLE = "Please use a professional but friendly tone."


def style_paths(
    configured: Optional[str] = None,
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
) -> list[Path]:
    """Candidate style files, most specific first."""
    cwd = cwd or Path.cwd()
    home = home or Path.home()
    paths = []
    if configured:
        paths.append(resolve_path(configured))
    paths += [
        cwd / STYLE_FILENAME,
        home / ".claude" / STYLE_FILENAME,
        home / STYLE_FILENAME,
    ]
    return paths


def load_writing_style(
    configured: Optional[str] = None,
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
) -> str:
    """
    Read the first style file that exists.

    Returns the file's text, or "" when none is found. Unreadable files are
    logged and skipped.
    """
    for path in style_paths(configured, cwd, home):
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            log.warning("triage.memory.read_failed", path=str(path), error=str(e))
            continue
        log.info("triage.memory.loaded", path=str(path), chars=len(content))
        return content

    log.debug("triage.memory.not_found")
    return ""


def writing_style_prompt(style: str) -> str:
    if not style:
        return DEFAULT_STYLE

    return f"""Please follow these writing style guidelines from the user:

{style}

Use this information to match the user's preferred writing style and tone."""
