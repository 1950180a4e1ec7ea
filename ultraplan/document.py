"""The shared discussion document: template rendering, section appends, backups.

Agents never edit the file themselves; every change goes through
DiscussionDocument. Callers serialize appends.
"""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

SECTION_TOPIC = "## 1."
SECTION_INITIAL_VIEWS = "## 2."
SECTION_ROUNDS = "## 3."
SECTION_CONSENSUS = "## 4."
SECTION_PLAN = "## 5."

PLACEHOLDER_TOPIC = "[Brief description of the core discussion topic]"
PLACEHOLDER_DATE = "[YYYY-MM-DD]"
PLACEHOLDER_PARTICIPANTS = "[List of participating experts/roles]"
PLACEHOLDER_BACKGROUND = "[Background description here]"
PLACEHOLDER_TITLE = "[TopicName]"

DEFAULT_BACKGROUND = (
    "This discussion was initiated through Ultra Plan Mode to gather expert "
    "perspectives on the topic."
)
DEFAULT_TOPIC_NAME = "Discussion"

SECTION_ORDER = (SECTION_TOPIC, SECTION_INITIAL_VIEWS, SECTION_ROUNDS, SECTION_CONSENSUS, SECTION_PLAN)

MIN_APPEND_CHARS = 20
_NEXT_SECTION = "\n## "


def render_template(template: str, substitutions: dict[str, str]) -> str:
    """Fill template placeholders.

    The title placeholder is replaced everywhere; the others only at their
    first occurrence, so example text further down the template survives.
    """
    content = template
    for placeholder, value in substitutions.items():
        if placeholder == PLACEHOLDER_TITLE:
            content = content.replace(placeholder, value)
        else:
            content = content.replace(placeholder, value, 1)
    return content


def truncate_for_prompt(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n... [truncated at {limit // 1000}K chars] ..."


def _section_end(document: str, section_marker: str, start: int) -> int:
    # Only the known later section headings close a known section, so "## "
    # headings inside appended entries stay part of their entry.
    if section_marker in SECTION_ORDER:
        later = SECTION_ORDER[SECTION_ORDER.index(section_marker) + 1:]
        hits = [idx for idx in (document.find(f"\n{m}", start) for m in later) if idx != -1]
        return min(hits) if hits else len(document)
    next_idx = document.find(_NEXT_SECTION, start)
    return len(document) if next_idx == -1 else next_idx


def insert_into_section(document: str, section_marker: str, block: str) -> str:
    """Insert block at the end of the section that starts at section_marker.

    For the five document sections the end is the start of the next one
    (or the end of the document); for any other marker it is the next line
    starting with "## ". A missing marker appends at the end of the document.
    """
    entry = f"\n\n{block}\n"
    section_idx = document.find(section_marker)
    if section_idx == -1:
        return document + entry
    insert_pos = _section_end(document, section_marker, section_idx + len(section_marker))
    return document[:insert_pos] + entry + document[insert_pos:]


class DiscussionDocument:
    """One Markdown file with five ordered sections, grown by appends."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def initialize(self, template: str, substitutions: dict[str, str]) -> Path:
        """Render the template and write the file. Write errors propagate."""
        content = render_template(template, substitutions)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(content, encoding="utf-8")
        logger.info("Discussion file created at %s", self.path)
        return self.path

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read discussion file: %s", exc)
            return ""

    def read_for_prompt(self, limit: int) -> str:
        content = self.read()
        if not content:
            return "(Discussion file could not be read)"
        return truncate_for_prompt(content, limit)

    def append(self, section_marker: str, heading: str, content: str) -> bool:
        """Add content to a section, under heading.

        Content already starting with "###" is used verbatim. Returns False
        when the content was too short or the file could not be rewritten.
        """
        if not content or len(content.strip()) < MIN_APPEND_CHARS:
            logger.warning(
                "Skipping append for %s: content too short (%d chars)",
                heading, len(content or ""),
            )
            return False

        if content.lstrip().startswith("###"):
            block = content.strip()
        else:
            block = f"{heading}\n\n{content.strip()}"

        try:
            current = self.path.read_text(encoding="utf-8")
            self.path.write_text(insert_into_section(current, section_marker, block), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to append %s to discussion file: %s", heading, exc)
            return False

        logger.info("Appended to %s: %s (%d chars)", section_marker, heading, len(content))
        return True

    def backup(self, round_number: int) -> Path | None:
        backup_path = self.path.with_name(f"{self.path.name}.bak_round_{round_number}")
        try:
            shutil.copyfile(self.path, backup_path)
        except OSError as exc:
            logger.warning("Failed to back up discussion file before round %d: %s", round_number, exc)
            return None
        logger.debug("Backed up discussion file to %s", backup_path.name)
        return backup_path
