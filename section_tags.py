"""
Ownership tags for sections created by the section manager.

Canvas has no notion of "which tool made this section", so every section we
create carries a self-describing tag in two places:

- ``integration_id``: JSON with the tool marker, operator id, session id and
  creation timestamp.
- ``sis_section_id``: ``ACU_SM_<session>_<number>_<epoch ms>``, readable even
  when the integration id has been cleared or mangled.

A section is ours if either encoding parses and names our marker. Anything
that does not parse is simply not ours.
"""

import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from canvas_models import Section

TOOL_MARKER = 'ACU_Section_Manager'
TAG_VERSION = '1.0'
SIS_PREFIX = 'ACU_SM_'

_SIS_PATTERN = re.compile(r'^' + re.escape(SIS_PREFIX) + r'([0-9a-f]+)_(\d+)_(\d+)$')


@dataclass(frozen=True)
class OwnershipTag:
    """Structured ownership stamp for one section."""
    session_id: str
    operator_id: Optional[str] = None
    created_at: str = ''
    marker: str = TOOL_MARKER
    version: str = TAG_VERSION

    def to_integration_id(self) -> str:
        return json.dumps({
            'tool': self.marker,
            'version': self.version,
            'createdBy': self.operator_id,
            'timestamp': self.created_at,
            'sessionId': self.session_id,
        }, separators=(',', ':'))

    def to_sis_section_id(self, section_number: int) -> str:
        try:
            stamp = datetime.fromisoformat(self.created_at)
        except ValueError:
            stamp = datetime.now(timezone.utc)
        return f"{SIS_PREFIX}{self.session_id}_{section_number}_{int(stamp.timestamp() * 1000)}"


def mint_session_id() -> str:
    """Opaque batch identifier; hex only so it survives inside the SIS id."""
    return uuid.uuid4().hex[:12]


def tag(operator_id: Optional[object], session_id: str) -> OwnershipTag:
    return OwnershipTag(
        session_id=session_id,
        operator_id=str(operator_id) if operator_id is not None else None,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def _tag_from_integration_id(value: Optional[str]) -> Optional[OwnershipTag]:
    if not value:
        return None
    try:
        metadata = json.loads(value)
    except (TypeError, ValueError):
        return None
    if not isinstance(metadata, dict) or metadata.get('tool') != TOOL_MARKER:
        return None
    session_id = metadata.get('sessionId')
    if not isinstance(session_id, str) or not session_id:
        return None
    created_by = metadata.get('createdBy')
    return OwnershipTag(
        session_id=session_id,
        operator_id=str(created_by) if created_by is not None else None,
        created_at=str(metadata.get('timestamp') or ''),
        version=str(metadata.get('version') or TAG_VERSION),
    )


def _tag_from_sis_section_id(value: Optional[str]) -> Optional[OwnershipTag]:
    if not value:
        return None
    match = _SIS_PATTERN.match(value)
    if not match:
        return None
    created_at = datetime.fromtimestamp(int(match.group(3)) / 1000, tz=timezone.utc).isoformat()
    return OwnershipTag(session_id=match.group(1), created_at=created_at)


def parse_tag(section: Section) -> Optional[OwnershipTag]:
    """Recover the ownership tag from a section, preferring the JSON encoding."""
    return _tag_from_integration_id(section.integration_id) or _tag_from_sis_section_id(section.sis_section_id)


def is_owned(section: Section) -> bool:
    return parse_tag(section) is not None


def session_of(section: Section) -> Optional[str]:
    parsed = parse_tag(section)
    return parsed.session_id if parsed else None


def sections_for_session(session_id: str, sections: Iterable[Section]) -> List[Section]:
    """Owned sections stamped with ``session_id``."""
    if not session_id:
        return []
    return [s for s in sections if session_of(s) == session_id]
