import csv
import io
import itertools
import threading
import types
from typing import Any, Callable, Dict, List, Optional

import pytest

from bulk_csv import COLUMNS, Reconciler, RemoteState, TemplateBuilder, parse_upload
from canvas_client import CanvasAPIError, CanvasConfig, CanvasNetworkError
from canvas_models import Course, Enrollment, Facilitator, Section, Student
from section_tags import OwnershipTag, tag


class FakeCourseSystem:
    """In-memory Canvas course implementing the CourseSystem protocol.

    ``fail_on(method, predicate)`` makes matching calls raise; every call is
    counted and appended to ``calls`` as ``(method, args)``.
    """

    def __init__(self, course_id: int = 101, name: str = 'Intro to Testing', course_code: str = 'TEST101',
                 sis_course_id: Optional[str] = None):
        self.course = Course(id=course_id, name=name, course_code=course_code, sis_course_id=sis_course_id)
        self.users: Dict[int, Dict[str, Any]] = {}
        self.sections: Dict[int, Dict[str, Any]] = {}
        self.enrollments: Dict[int, Dict[str, Any]] = {}
        self.call_count = 0
        self.calls: List[tuple] = []
        self.failures: List[tuple] = []
        self.current_user = {'id': 9000, 'name': 'Operator', 'primary_email': 'operator@example.edu'}
        self._ids = itertools.count(1000)
        self._lock = threading.Lock()

    # Setup helpers

    def add_section(self, name: str, owned_session: Optional[str] = None, sis_section_id: Optional[str] = None,
                    default_section: bool = False, integration_id: Optional[str] = None) -> int:
        section_id = next(self._ids)
        if owned_session is not None:
            stamp = tag('42', owned_session)
            sis_section_id = stamp.to_sis_section_id(len(self.sections) + 1)
            integration_id = stamp.to_integration_id()
        self.sections[section_id] = {
            'id': section_id,
            'name': name,
            'sis_section_id': sis_section_id,
            'integration_id': integration_id,
            'default_section': default_section,
            'start_at': None,
            'end_at': None,
        }
        return section_id

    def add_student(self, name: str, email: Optional[str] = None, sis_user_id: Optional[str] = None,
                    section_id: Optional[int] = None) -> int:
        user_id = next(self._ids)
        self.users[user_id] = {'id': user_id, 'name': name, 'email': email, 'sis_user_id': sis_user_id,
                               'role': 'student'}
        if section_id is not None:
            self._enroll(section_id, user_id, 'StudentEnrollment')
        return user_id

    def add_facilitator(self, name: str, email: Optional[str] = None, section_id: Optional[int] = None,
                        role: str = 'TeacherEnrollment') -> int:
        user_id = next(self._ids)
        self.users[user_id] = {'id': user_id, 'name': name, 'email': email, 'sis_user_id': None, 'role': role}
        if section_id is not None:
            self._enroll(section_id, user_id, 'TeacherEnrollment')
        return user_id

    def fail_on(self, method: str, predicate: Callable[..., bool] = lambda *args: True,
                error: Optional[CanvasAPIError] = None) -> None:
        self.failures.append((method, predicate, error or CanvasAPIError(f"{method} rejected", 400)))

    def active_members(self, section_id: int) -> List[int]:
        return [e['user_id'] for e in self.enrollments.values()
                if e['course_section_id'] == section_id and e['type'] == 'StudentEnrollment'
                and e['enrollment_state'] == 'active']

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def _enroll(self, section_id: int, user_id: int, enrollment_type: str) -> Dict[str, Any]:
        enrollment = {
            'id': next(self._ids),
            'user_id': user_id,
            'course_section_id': section_id,
            'course_id': self.course.id,
            'type': enrollment_type,
            'enrollment_state': 'active',
            'user': {'name': self.users[user_id]['name']},
        }
        self.enrollments[enrollment['id']] = enrollment
        return enrollment

    def _call(self, method: str, *args) -> None:
        with self._lock:
            self.call_count += 1
            self.calls.append((method, args))
        for name, predicate, error in self.failures:
            if name == method and predicate(*args):
                raise error

    def _section(self, section_id: int) -> Section:
        data = self.sections[section_id]
        teachers = [e['user_id'] for e in self.enrollments.values()
                    if e['course_section_id'] == section_id and e['type'] == 'TeacherEnrollment'
                    and e['enrollment_state'] == 'active']
        members = self.active_members(section_id)
        return Section(
            id=section_id,
            name=data['name'],
            course_id=self.course.id,
            sis_section_id=data['sis_section_id'],
            integration_id=data['integration_id'],
            start_at=data['start_at'],
            end_at=data['end_at'],
            total_students=len(members),
            student_ids=frozenset(members),
            facilitator_id=teachers[0] if teachers else None,
            default_section=data['default_section'],
        )

    def _user_sections(self, user_id: int) -> frozenset:
        return frozenset(e['course_section_id'] for e in self.enrollments.values()
                         if e['user_id'] == user_id and e['enrollment_state'] == 'active')

    # CourseSystem protocol

    def get_course(self, course_id: int) -> Course:
        self._call('get_course', course_id)
        return self.course

    def get_students(self, course_id: int) -> List[Student]:
        self._call('get_students', course_id)
        return [
            Student(id=u['id'], name=u['name'], sortable_name=u['name'], email=u['email'],
                    sis_user_id=u['sis_user_id'], section_ids=self._user_sections(u['id']))
            for u in self.users.values() if u['role'] == 'student'
        ]

    def get_facilitators(self, course_id: int) -> List[Facilitator]:
        self._call('get_facilitators', course_id)
        return [
            Facilitator(id=u['id'], name=u['name'], email=u['email'], role=u['role'],
                        section_ids=self._user_sections(u['id']))
            for u in self.users.values() if u['role'] not in ('student', 'Editing Lecturer')
        ]

    def get_sections(self, course_id: int) -> List[Section]:
        self._call('get_sections', course_id)
        return [self._section(section_id) for section_id in self.sections]

    def get_section_members(self, section_id: int) -> List[Enrollment]:
        self._call('get_section_members', section_id)
        return [
            Enrollment.from_canvas(e) for e in self.enrollments.values()
            if e['course_section_id'] == section_id and e['type'] == 'StudentEnrollment'
            and e['enrollment_state'] == 'active'
        ]

    def create_section(self, course_id: int, name: str, tag: OwnershipTag, section_number: int = 1,
                       start_at: Optional[str] = None, end_at: Optional[str] = None) -> Section:
        self._call('create_section', course_id, name)
        section_id = next(self._ids)
        self.sections[section_id] = {
            'id': section_id,
            'name': name,
            'sis_section_id': tag.to_sis_section_id(section_number),
            'integration_id': tag.to_integration_id(),
            'default_section': False,
            'start_at': start_at,
            'end_at': end_at,
        }
        return self._section(section_id)

    def delete_section(self, section_id: int) -> None:
        self._call('delete_section', section_id)
        if section_id not in self.sections:
            raise CanvasAPIError(f"Section {section_id} not found", 404)
        del self.sections[section_id]

    def enroll_student(self, section_id: int, user_id: int) -> Enrollment:
        self._call('enroll_student', section_id, user_id)
        return Enrollment.from_canvas(self._enroll(section_id, user_id, 'StudentEnrollment'))

    def unenroll_student(self, course_id: int, enrollment_id: int) -> None:
        self._call('unenroll_student', course_id, enrollment_id)
        self.enrollments[enrollment_id]['enrollment_state'] = 'deleted'

    def get_current_user(self) -> Dict[str, Any]:
        self._call('get_current_user')
        return dict(self.current_user)

    def assign_as_facilitator(self, course_id: int, user_id: int, section_id: Optional[int] = None) -> Enrollment:
        self._call('assign_as_facilitator', course_id, user_id, section_id)
        if user_id not in self.users:
            self.users[user_id] = {'id': user_id, 'name': 'Operator', 'email': None, 'sis_user_id': None,
                                   'role': 'Editing Lecturer'}
        return Enrollment.from_canvas(self._enroll(section_id, user_id, 'TeacherEnrollment'))


def network_error(message: str = 'connection reset') -> CanvasNetworkError:
    return CanvasNetworkError(f"Network error - unable to reach Canvas: {message}")


@pytest.fixture
def canvas() -> FakeCourseSystem:
    return FakeCourseSystem()


@pytest.fixture
def config() -> CanvasConfig:
    return CanvasConfig(
        api_token='test-token',
        base_url='https://canvas.example.edu/',
        request_delay=0,
        enrollment_batch_pause=0,
    )


def make_students(count: int, start: int = 1) -> List[Student]:
    return [Student(id=i, name=f'Student {i:03d}', sortable_name=f'{i:03d}, Student', email=f's{i}@example.edu')
            for i in range(start, start + count)]


def make_facilitators(count: int, start: int = 500) -> List[Facilitator]:
    return [Facilitator(id=i, name=f'Facilitator {i}', email=f'f{i}@example.edu')
            for i in range(start, start + count)]


OWNED_SESSION = 'abc123def456'


@pytest.fixture
def course(canvas):
    """A course with one default, one foreign and two tool-created sections plus unassigned students."""
    ids = types.SimpleNamespace(canvas=canvas)
    ids.default = canvas.add_section(canvas.course.name, default_section=True)
    ids.lecture = canvas.add_section('Lecture A', sis_section_id='SIS-LEC-A')
    ids.tutorial1 = canvas.add_section('Tutorial 1', owned_session=OWNED_SESSION)
    ids.tutorial2 = canvas.add_section('Tutorial 2', owned_session=OWNED_SESSION)

    ids.tutor = canvas.add_facilitator('Tina Tutor', 'tina@example.edu', section_id=ids.tutorial1)
    ids.spare_tutor = canvas.add_facilitator('Sam Spare', 'sam@example.edu')
    canvas.add_facilitator('Eddie Lecturer', 'eddie@example.edu', role='Editing Lecturer')

    ids.default_students = [canvas.add_student('Dana Default', 'dana@example.edu', section_id=ids.default)]
    ids.lecture_students = [canvas.add_student(f'Lee {i}', f'lee{i}@example.edu', f'SIS-L{i}', ids.lecture)
                            for i in range(2)]
    ids.tutorial1_students = [canvas.add_student(f'Tom {i}', f'tom{i}@example.edu', section_id=ids.tutorial1)
                              for i in range(3)]
    ids.tutorial2_students = [canvas.add_student(f'Tara {i}', f'tara{i}@example.edu', section_id=ids.tutorial2)
                              for i in range(5)]
    ids.unassigned = [
        canvas.add_student('Bea Blacktown', 'bea@blacktown.example.edu', 'SIS-U1'),
        canvas.add_student('Ben Blacktown', 'ben@blacktown.example.edu', 'SIS-U2'),
        canvas.add_student('Una Unknown', 'una@example.edu', 'SIS-U3'),
    ]
    return ids


def build_template(canvas, target_ratio: int = 25):
    state = RemoteState.load(canvas, canvas.course.id, include_members=False)
    return TemplateBuilder(target_ratio).build(state.course, state.students, state.facilitators, state.sections)


def to_csv(rows) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=COLUMNS)
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


def reconcile_rows(canvas, rows):
    state = RemoteState.load(canvas, canvas.course.id)
    return Reconciler().reconcile(parse_upload(to_csv(rows)), state)


def row_index(rows, predicate) -> int:
    return next(i for i, row in enumerate(rows) if predicate(row))
