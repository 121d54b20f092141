"""Session working-directory materialization.

Copies the canonical template set into a session directory and renders the
caller's desired parameters into the provisioner's variable file.
"""

from __future__ import annotations

import shutil
from dataclasses import asdict, dataclass
from pathlib import Path

from ..observability import get_logger
from .errors import TemplateError

logger = get_logger(__name__)

TEMPLATE_SUFFIXES = frozenset({'.tf', '.py', '.sh'})
VARIABLES_FILE = 'terraform.tfvars'


@dataclass(frozen=True, slots=True)
class DesiredParameters:
    """Immutable snapshot of caller-supplied configuration."""

    aws_region: str = 'ap-northeast-2'
    project_name: str = 'penguin-land'
    environment: str = 'dev'
    ec2_instance_type: str = 't2.micro'
    ec2_key_name: str = ''
    alert_email: str = ''
    cpu_warning_threshold: int = 50
    cpu_critical_threshold: int = 70
    error_rate_warning_threshold: int = 3
    error_rate_critical_threshold: int = 5
    latency_warning_threshold: int = 400
    latency_critical_threshold: int = 700

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


_STRING_FIELDS = ('aws_region', 'project_name', 'environment', 'ec2_instance_type')
_OPTIONAL_STRING_FIELDS = ('ec2_key_name', 'alert_email')
_NUMBER_FIELDS = (
    'cpu_warning_threshold',
    'cpu_critical_threshold',
    'error_rate_warning_threshold',
    'error_rate_critical_threshold',
    'latency_warning_threshold',
    'latency_critical_threshold',
)


def _quote(value: str) -> str:
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def render_variables(session_id: str, params: DesiredParameters) -> str:
    """Render ``params`` as tfvars. Empty optional strings are omitted."""
    lines = [f'session_id = {_quote(session_id)}']
    for name in _STRING_FIELDS:
        lines.append(f'{name} = {_quote(getattr(params, name))}')
    for name in _OPTIONAL_STRING_FIELDS:
        value = getattr(params, name)
        if value:
            lines.append(f'{name} = {_quote(value)}')
    for name in _NUMBER_FIELDS:
        lines.append(f'{name} = {int(getattr(params, name))}')
    return '\n'.join(lines) + '\n'


def write_variables(working_directory: Path, session_id: str, params: DesiredParameters) -> Path:
    path = Path(working_directory) / VARIABLES_FILE
    path.write_text(render_variables(session_id, params), encoding='utf-8')
    return path


class TemplateSet:
    """The canonical template directory copied into every session."""

    def __init__(self, source_dir: Path, required_files: tuple[str, ...] = ()) -> None:
        self.source_dir = Path(source_dir)
        self.required_files = tuple(required_files)

    def validate(self) -> None:
        """Raise ``TemplateError`` if a required template file is missing."""
        if not self.source_dir.is_dir():
            raise TemplateError(f'template directory not found: {self.source_dir}')
        for name in self.required_files:
            if not (self.source_dir / name).is_file():
                raise TemplateError(
                    f'Required template file not found: {name}. '
                    'Please check the template directory structure.'
                )

    def materialize(self, target_dir: Path) -> list[Path]:
        """Copy template files into ``target_dir``, preserving relative paths."""
        self.validate()
        target_dir = Path(target_dir)
        copied: list[Path] = []
        for source in sorted(self.source_dir.rglob('*')):
            if not source.is_file() or source.suffix not in TEMPLATE_SUFFIXES:
                continue
            dest = target_dir / source.relative_to(self.source_dir)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
            copied.append(dest)
        logger.info('templates_materialized', target=str(target_dir), files=len(copied))
        return copied
