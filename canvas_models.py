"""
Canvas record types used by the section manager.

Canvas returns loosely shaped JSON; these dataclasses pin down the handful of
fields the allocation and reconciliation logic relies on. Memberships are
derived from the enrollment data Canvas sends alongside users and sections and
are never written back.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional


def _frozen_ids(values: Iterable[Any]) -> FrozenSet[int]:
    ids = set()
    for value in values:
        try:
            ids.add(int(value))
        except (TypeError, ValueError):
            continue
    return frozenset(ids)


def _active_section_ids(user: Dict[str, Any]) -> FrozenSet[int]:
    """Section ids from a user's ``enrollments`` include, active ones only."""
    enrollments = user.get('enrollments') or []
    return _frozen_ids(
        e.get('course_section_id') for e in enrollments
        if isinstance(e, dict) and e.get('enrollment_state', 'active') == 'active'
    )


@dataclass(frozen=True)
class Course:
    id: int
    name: str = ''
    course_code: str = ''
    sis_course_id: Optional[str] = None

    @classmethod
    def from_canvas(cls, data: Dict[str, Any]) -> 'Course':
        return cls(
            id=int(data['id']),
            name=data.get('name') or '',
            course_code=data.get('course_code') or '',
            sis_course_id=data.get('sis_course_id'),
        )

    @property
    def row_id(self) -> str:
        """Identifier written into the course_id column of a template."""
        return str(self.sis_course_id or self.id)


@dataclass(frozen=True)
class Student:
    id: int
    name: str
    sortable_name: str = ''
    email: Optional[str] = None
    sis_user_id: Optional[str] = None
    section_ids: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def from_canvas(cls, data: Dict[str, Any]) -> 'Student':
        name = data.get('name') or data.get('sortable_name') or ''
        return cls(
            id=int(data['id']),
            name=name,
            sortable_name=data.get('sortable_name') or name,
            email=data.get('email') or data.get('primary_email') or None,
            sis_user_id=data.get('sis_user_id'),
            section_ids=_active_section_ids(data),
        )

    @property
    def row_id(self) -> str:
        return str(self.sis_user_id or self.id)

    def matches(self, reference: str) -> bool:
        """True if a spreadsheet student reference points at this student."""
        reference = (reference or '').strip()
        if not reference:
            return False
        return reference == str(self.id) or (self.sis_user_id is not None and reference == str(self.sis_user_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'sortable_name': self.sortable_name,
            'email': self.email,
            'sis_user_id': self.sis_user_id,
        }


@dataclass(frozen=True)
class Facilitator:
    id: int
    name: str
    email: Optional[str] = None
    role: str = 'TeacherEnrollment'
    section_ids: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def from_canvas(cls, data: Dict[str, Any], course_id: Optional[int] = None) -> 'Facilitator':
        role = 'TeacherEnrollment'
        for enrollment in data.get('enrollments') or []:
            if course_id is None or str(enrollment.get('course_id')) == str(course_id):
                role = enrollment.get('role') or role
                break
        return cls(
            id=int(data['id']),
            name=data.get('name') or data.get('sortable_name') or '',
            email=data.get('email') or data.get('primary_email') or None,
            role=role,
            section_ids=_active_section_ids(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'email': self.email}


@dataclass(frozen=True)
class Section:
    id: int
    name: str
    course_id: Optional[int] = None
    sis_section_id: Optional[str] = None
    integration_id: Optional[str] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    total_students: Optional[int] = None
    student_ids: FrozenSet[int] = field(default_factory=frozenset)
    facilitator_id: Optional[int] = None
    default_section: bool = False

    @classmethod
    def from_canvas(cls, data: Dict[str, Any]) -> 'Section':
        students = data.get('students') or []
        facilitator = data.get('facilitator') or {}
        facilitator_id = facilitator.get('id') if isinstance(facilitator, dict) else None
        return cls(
            id=int(data['id']),
            name=data.get('name') or '',
            course_id=data.get('course_id'),
            sis_section_id=data.get('sis_section_id'),
            integration_id=data.get('integration_id'),
            start_at=data.get('start_at'),
            end_at=data.get('end_at'),
            total_students=data.get('total_students'),
            student_ids=_frozen_ids(s.get('id') for s in students if isinstance(s, dict)),
            facilitator_id=int(facilitator_id) if facilitator_id is not None else None,
            default_section=bool(data.get('default_section')),
        )

    @property
    def row_id(self) -> str:
        """Identifier written into the section_id column of a template."""
        return self.sis_section_id or f'existing_{self.id}'

    def identified_by(self, reference: str) -> bool:
        reference = (reference or '').strip()
        if not reference:
            return False
        return reference in (str(self.id), f'existing_{self.id}') or (
            self.sis_section_id is not None and reference == self.sis_section_id
        )


@dataclass(frozen=True)
class Enrollment:
    id: int
    user_id: int
    section_id: Optional[int] = None
    course_id: Optional[int] = None
    type: str = 'StudentEnrollment'
    state: str = 'active'
    user_name: str = ''

    @classmethod
    def from_canvas(cls, data: Dict[str, Any]) -> 'Enrollment':
        user = data.get('user') or {}
        return cls(
            id=int(data['id']),
            user_id=int(data['user_id']),
            section_id=data.get('course_section_id'),
            course_id=data.get('course_id'),
            type=data.get('type') or 'StudentEnrollment',
            state=data.get('enrollment_state') or 'active',
            user_name=user.get('name') or 'Unknown',
        )

    @property
    def is_active_student(self) -> bool:
        return self.type == 'StudentEnrollment' and self.state == 'active'


def members_of(section: Section, students: List[Student]) -> List[Student]:
    """Students with an active membership in ``section``, in roster order."""
    return [s for s in students if s.id in section.student_ids or section.id in s.section_ids]
