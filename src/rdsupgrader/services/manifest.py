"""Per-run JSON record of steps, versions and artifacts."""

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed(started_at: Optional[str], finished_at: str) -> Optional[float]:
    if not started_at:
        return None
    delta = datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)
    return round(delta.total_seconds(), 3)


class ManifestService:
    """Keeps the run record of one instance and rewrites it after every change.

    The file is replaced atomically so a reader never sees a half written
    record, even when the run is killed between steps.
    """

    def __init__(self, manifest_file: str, logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "run_id": None,
            "status": "pending",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "scope": None,
            "versions": {"current": None, "target": None, "final": None},
            "steps": [],
            "artifacts": {},
            "error": None,
            "error_kind": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        self.manifest.update(
            run_id=run_id,
            status="running",
            started_at=_utcnow(),
            metadata=dict(metadata),
        )
        self.write()

    def set_versions(self, current: Optional[str], target: Optional[str], final: Optional[str] = None):
        self.manifest["versions"] = {"current": current, "target": target, "final": final}
        self.write()

    def set_scope(self, scope: Optional[str]):
        self.manifest["scope"] = scope
        self.write()

    def _open_step(self, step_name: str) -> Optional[Dict[str, Any]]:
        for step in reversed(self.manifest["steps"]):
            if step["name"] == step_name and step["status"] == "running":
                return step
        return None

    def step_started(self, step_name: str):
        self.manifest["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": _utcnow(),
                "finished_at": None,
                "duration_seconds": None,
                "error": None,
            }
        )
        self.write()

    def step_finished(self, step_name: str, status: str, error: Optional[str] = None):
        step = self._open_step(step_name)
        if step is None:
            self.logger.warning("Manifest has no running step named '%s'.", step_name)
            return

        finished_at = _utcnow()
        step.update(
            status=status,
            finished_at=finished_at,
            duration_seconds=_elapsed(step["started_at"], finished_at),
            error=error,
        )
        self.write()

    def add_artifact(self, key: str, value: str):
        self.manifest["artifacts"][key] = value
        self.write()

    def finalize(self, status: str, error: Optional[str] = None, error_kind: Optional[str] = None):
        finished_at = _utcnow()
        self.manifest.update(
            status=status,
            finished_at=finished_at,
            duration_seconds=_elapsed(self.manifest["started_at"], finished_at),
            error=error,
            error_kind=error_kind,
        )
        self.write()

    def write(self):
        partial_file = f"{self.manifest_file}.partial"
        try:
            os.makedirs(os.path.dirname(self.manifest_file) or ".", exist_ok=True)
            with open(partial_file, "w", encoding="utf-8") as file_obj:
                json.dump(self.manifest, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(partial_file, self.manifest_file)
        except OSError as exc:
            # A manifest failure never aborts the upgrade itself.
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            if os.path.exists(partial_file):
                os.remove(partial_file)
