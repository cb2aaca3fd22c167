"""
Startup payload renderer.

Templates live in ``io/startup_templates/<template_id>.sh`` and use
``{{ placeholder }}``-style substitution.  The rendered script is the only
thing a worker receives: build id, normalized service/model lists, GPU flag,
status channel coordinates and artifact destination.
"""
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

_TEMPLATES_DIR = Path(__file__).parent / "startup_templates"
_PLACEHOLDER = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")

DEFAULT_TEMPLATE = "worker_startup"

# Values interpolated into double-quoted shell strings must stay inert.
_SAFE_VALUE = re.compile(r"^[A-Za-z0-9._:/,@+=-]*$")


@dataclass(frozen=True)
class StartupPayload:
    """Everything the external worker program needs for one build."""

    build_id: str
    services: tuple[str, ...]
    models: tuple[str, ...]
    gpu: bool
    image_name: str
    status_bucket: str
    status_key: str
    artifact_bucket: str
    artifact_key: str
    s3_endpoint: str = ""
    parallel_floor: int = 2
    parallel_ceiling: int = 8

    def as_env(self) -> Dict[str, str]:
        """Placeholder values, all already validated as shell-inert."""
        values = {
            "build_id": self.build_id,
            "services": ",".join(self.services),
            "models": ",".join(self.models),
            "gpu": "true" if self.gpu else "false",
            "image_name": self.image_name,
            "status_bucket": self.status_bucket,
            "status_key": self.status_key,
            "artifact_bucket": self.artifact_bucket,
            "artifact_key": self.artifact_key,
            "s3_endpoint": self.s3_endpoint,
            "parallel_floor": str(self.parallel_floor),
            "parallel_ceiling": str(self.parallel_ceiling),
        }
        for name, value in values.items():
            if not _SAFE_VALUE.fullmatch(value):
                raise ValueError(f"Unsafe value for startup placeholder {name!r}: {value!r}")
        return values


def load_template(template_id: str = DEFAULT_TEMPLATE) -> str:
    """Load a startup template by ID.

    Raises
    ------
    FileNotFoundError
        If the template file does not exist.
    """
    path = _TEMPLATES_DIR / f"{template_id}.sh"
    if not path.exists():
        raise FileNotFoundError(
            f"Startup template not found: {path}  "
            f"(available: {[p.stem for p in _TEMPLATES_DIR.glob('*.sh')]})"
        )
    return path.read_text(encoding="utf-8")


def render_startup_script(
    payload: StartupPayload,
    pipeline_command: str,
    template: str | None = None,
) -> str:
    """Substitute placeholders in the startup template.

    ``pipeline_command`` is operator configuration, inserted verbatim; every
    other value comes from the validated build and is checked to be inert.
    Unknown placeholders raise ``KeyError`` so a template typo never ships an
    empty variable to a worker.
    """
    values = payload.as_env()
    values["pipeline_command"] = pipeline_command
    text = template if template is not None else load_template()

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            raise KeyError(f"Unknown startup placeholder: {name}")
        return values[name]

    return _PLACEHOLDER.sub(_sub, text)


def default_pipeline_command(repo_url: str, ref: str = "main") -> str:
    """Clone the image pipeline and run its prepare + customise steps."""
    return "\n".join([
        "cd /root",
        f"git clone --depth 1 --branch {shlex.quote(ref)} {shlex.quote(repo_url)} pipeline",
        "cd pipeline",
        'log "Running image preparation..."',
        "bash webapp/scripts/iso-prepare-dynamic.sh",
        'log "Running image customisation..."',
        "bash create-custom-iso.sh",
    ])
