"""Per-run workspace directory: per-participant artifacts, state and plan files."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

from config.config_loader import WorkspaceConfig
from ultraplan.models import DiscussionState

logger = logging.getLogger(__name__)

STATE_FILENAME = "discussion_state.json"


class Workspace:
    """Layout of one run's workspace under <project>/<root_dir>/workspace_<timestamp>/."""

    def __init__(self, path: Path, settings: WorkspaceConfig) -> None:
        self.path = path
        self._settings = settings

    @classmethod
    def create(
        cls,
        project_path: Path,
        settings: WorkspaceConfig,
        participants: list[str],
        template: str,
        now: datetime | None = None,
    ) -> "Workspace":
        """Create the directory tree and store a copy of the discussion template.

        Raises OSError when the directories cannot be created.
        """
        timestamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        root = project_path / settings.root_dir
        root.mkdir(parents=True, exist_ok=True)
        path = root / f"workspace_{timestamp}"
        suffix = 1
        while True:
            try:
                path.mkdir()
                break
            except FileExistsError:
                # Another run started within the same second
                suffix += 1
                path = root / f"workspace_{timestamp}_{suffix}"
        for name in participants:
            (path / name).mkdir(exist_ok=True)

        workspace = cls(path, settings)
        try:
            workspace.template_path.write_text(template, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to copy discussion template into workspace: %s", exc)
        logger.info("Workspace created at %s", path)
        return workspace

    @property
    def discussion_path(self) -> Path:
        return self.path / self._settings.discussion_filename

    @property
    def plan_path(self) -> Path:
        return self.path / self._settings.plan_filename

    @property
    def template_path(self) -> Path:
        return self.path / self._settings.template_filename

    @property
    def state_path(self) -> Path:
        return self.path / STATE_FILENAME

    def participant_dir(self, participant: str) -> Path:
        return self.path / participant

    def save_response(self, participant: str, filename: str, content: str) -> Path | None:
        target = self.participant_dir(participant) / filename
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save %s for %s: %s", filename, participant, exc)
            return None
        logger.debug("Saved %s (%d chars) for %s", filename, len(content), participant)
        return target

    def save_stderr(self, participant: str, phase: str, stderr: str) -> Path | None:
        if not stderr.strip():
            return None
        return self.save_response(participant, f"{phase}_stderr.log", stderr)

    def save_state(self, state: DiscussionState) -> None:
        try:
            self.state_path.write_text(json.dumps(asdict(state), indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save discussion state: %s", exc)

    def write_plan(self, content: str) -> Path | None:
        try:
            self.plan_path.write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write execution plan: %s", exc)
            return None
        logger.info("Execution plan saved to %s", self.plan_path)
        return self.plan_path
