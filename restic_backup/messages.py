"""Typed records of restic's ``--json`` progress protocol."""

import json
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

# message_type values
STATUS = 'status'
SUMMARY = 'summary'
ERROR = 'error'
EXIT_ERROR = 'exit_error'
VERBOSE_STATUS = 'verbose_status'
DONE = 'done'
INFO = 'info'

# Free-text lines containing any of these (case-insensitive) are errors.
SEVERITY_KEYWORDS = ('error', 'fatal', 'panic')


@dataclass
class BackupMessage:
    """One event of a backup/restore run.

    Field names follow restic's JSON output. ``failure`` is not part of the
    wire format: it tags terminal events synthesized by the runner
    (``launch_failure``, ``wait_failure``, ``exit_status``, ``cancelled``).
    """
    message_type: str
    seconds_elapsed: int = 0
    percent_done: float = 0.0

    # error
    code: int = 0
    message: str = ''

    # status
    total_files: int = 0
    files_done: int = 0
    total_bytes: int = 0
    bytes_done: int = 0

    # summary
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    dirs_new: int = 0
    dirs_changed: int = 0
    dirs_unmodified: int = 0
    data_blobs: int = 0
    tree_blobs: int = 0
    data_added: int = 0
    data_added_packed: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0.0

    backup_start: str = ''
    backup_end: str = ''
    snapshot_id: str = ''

    failure: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.message_type in (ERROR, EXIT_ERROR)

    @property
    def is_terminal(self) -> bool:
        """True for the event that ends a run: summary, done, or a fatal error."""
        if self.message_type in (SUMMARY, DONE):
            return True
        return self.is_error and self.code != 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupMessage':
        """Build a message from a decoded JSON object, ignoring unknown keys."""
        known = {f.name for f in fields(cls)} - {'failure'}
        values = {k: v for k, v in data.items() if k in known and v is not None}

        # restic nests the text of non-fatal errors: {"error": {"message": ...}}
        nested = data.get('error')
        if not values.get('message') and isinstance(nested, dict) and nested.get('message'):
            values['message'] = str(nested['message'])
            item = data.get('item')
            if item:
                values['message'] = f"{item}: {values['message']}"

        for f in fields(cls):
            if f.type is float and f.name in values:
                values[f.name] = float(values[f.name])

        return cls(**values)

    @classmethod
    def text(cls, line: str) -> 'BackupMessage':
        """Wrap a free-text output line."""
        lowered = line.lower()
        message_type = ERROR if any(word in lowered for word in SEVERITY_KEYWORDS) else INFO
        return cls(message_type=message_type, message=line)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['failure'] is None:
            del data['failure']
        return data


# Field name -> type for everything restic may send
_WIRE_FIELD_TYPES = {f.name: f.type for f in fields(BackupMessage) if f.name != 'failure'}


def _has_wire_types(data: Dict[str, Any]) -> bool:
    """Check known fields of a decoded object against the message field types."""
    for name, value in data.items():
        expected = _WIRE_FIELD_TYPES.get(name)
        if expected is None or value is None:
            continue
        if isinstance(value, bool):
            return False
        if expected is float:
            if not isinstance(value, (int, float)):
                return False
        elif not isinstance(value, expected):
            return False
    return True


def parse_line(line: str) -> BackupMessage:
    """Decode one output line into a message.

    JSON objects carrying a string ``message_type`` whose known fields have
    the expected types become typed messages; everything else is treated as
    text.
    """
    stripped = line.strip()
    if stripped.startswith('{'):
        try:
            data = json.loads(stripped)
        except ValueError:
            data = None
        if (isinstance(data, dict) and isinstance(data.get('message_type'), str)
                and _has_wire_types(data)):
            return BackupMessage.from_dict(data)
    return BackupMessage.text(stripped)
