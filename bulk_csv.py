"""
Bulk section operations through a CSV round-trip.

The template shows the COMPLETE course state (every section, every member,
and proposed new sections for unassigned students) in a Canvas SIS
sections.csv-like layout. Reviewers edit it and upload it back; the upload is
re-checked against live Canvas data before anything is executed.

Classification columns in an upload are never trusted: every row's section
type is re-derived from Canvas, and any mismatch is a tamper error.
"""

import csv
import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from allocation import DEFAULT_TARGET_RATIO, unassigned_students
from canvas_client import CourseSystem
from canvas_models import Course, Enrollment, Facilitator, Section, Student, members_of
from section_tags import is_owned

logger = logging.getLogger(__name__)

COLUMNS = [
    'section_id',
    'course_id',
    'name',
    'status',
    'start_date',
    'end_date',
    'student_id',
    'student_name',
    'student_email',
    'facilitator_email',
    'section_type',
    'campus_info',
    'operation',
]
REQUIRED_COLUMNS = ('section_id', 'name', 'status')

MAX_FILE_BYTES = 1024 * 1024
MAX_ROWS = 2000

STATUSES = ('active', 'deleted')

TOOL_CREATED = 'tool_created'
EXISTING = 'existing'
DEFAULT = 'default'
NEW_SECTION = 'new_section'
SECTION_TYPES = (TOOL_CREATED, EXISTING, DEFAULT, NEW_SECTION)
READ_ONLY_TYPES = (EXISTING, DEFAULT)

CURRENT_ENROLLMENT = 'current_enrollment'
EXISTING_ENROLLMENT = 'existing_enrollment'
EXISTING_SECTION = 'existing_section'
READONLY_SECTION = 'readonly_section'
CREATE_AND_ENROLL = 'create_and_enroll'
OPERATIONS = (CURRENT_ENROLLMENT, EXISTING_ENROLLMENT, EXISTING_SECTION, READONLY_SECTION, CREATE_AND_ENROLL)

NEW_PREFIX = 'NEW_'

CAMPUS_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'blacktown', r'strathfield', r'north sydney', r'melbourne', r'brisbane',
        r'canberra', r'ballarat', r'online', r'zoom', r'campus',
    )
]
EMAIL_CAMPUS_KEYWORDS = ('blacktown', 'strathfield', 'melbourne', 'brisbane', 'canberra', 'ballarat')
UNKNOWN_CAMPUS = 'unknown'

_EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class UploadRejected(ValueError):
    """The uploaded file cannot be read as a bulk operations table."""


# Classification helpers

def classify(section: Optional[Section], course: Optional[Course] = None) -> str:
    """Section type derived from live Canvas data."""
    if section is None:
        return NEW_SECTION
    if is_owned(section):
        return TOOL_CREATED
    name = section.name or ''
    if 'default' in name.lower() or section.default_section or (course is not None and name == course.name):
        return DEFAULT
    return EXISTING


def extract_campus_info(section_name: str) -> str:
    """Campus/location hint from a section name."""
    for pattern in CAMPUS_PATTERNS:
        match = pattern.search(section_name or '')
        if match:
            return match.group(0).lower()
    if re.search(r'section [a-z]', section_name or '', re.IGNORECASE):
        return 'grouped'
    return UNKNOWN_CAMPUS


def campus_for_student(student: Student) -> str:
    email = (student.email or '').lower()
    for keyword in EMAIL_CAMPUS_KEYWORDS:
        if keyword in email:
            return keyword
    return UNKNOWN_CAMPUS


def group_students_by_campus(students: Sequence[Student]) -> Dict[str, List[Student]]:
    groups: Dict[str, List[Student]] = {}
    for student in students:
        groups.setdefault(campus_for_student(student), []).append(student)
    return groups


def letter_suffix(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    letters = ''
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


@dataclass
class RemoteState:
    """Snapshot of the live course used by template building and validation."""
    course: Course
    students: List[Student]
    facilitators: List[Facilitator]
    sections: List[Section]
    owned_members: Dict[int, List[Enrollment]] = field(default_factory=dict)

    @classmethod
    def load(cls, client: CourseSystem, course_id: int, include_members: bool = True) -> 'RemoteState':
        """Fetch course, roster, facilitators and sections in parallel."""
        with ThreadPoolExecutor(max_workers=4) as executor:
            course_future = executor.submit(client.get_course, course_id)
            students_future = executor.submit(client.get_students, course_id)
            facilitators_future = executor.submit(client.get_facilitators, course_id)
            sections_future = executor.submit(client.get_sections, course_id)
            state = cls(
                course=course_future.result(),
                students=students_future.result(),
                facilitators=facilitators_future.result(),
                sections=sections_future.result(),
            )

        if include_members:
            for section in state.owned_sections:
                state.owned_members[section.id] = client.get_section_members(section.id)
        return state

    @property
    def owned_sections(self) -> List[Section]:
        return [s for s in self.sections if is_owned(s)]

    def section_type(self, section: Optional[Section]) -> str:
        return classify(section, self.course)

    def find_student(self, reference: str) -> Optional[Student]:
        return next((s for s in self.students if s.matches(reference)), None)

    def find_facilitator(self, email: str) -> Optional[Facilitator]:
        email = (email or '').strip().lower()
        return next((f for f in self.facilitators if f.email and f.email.lower() == email), None)

    def resolve(self, section_ref: str, name: str) -> Tuple[Optional[Section], str]:
        """Find the live section a row refers to: by id first, then by name.

        Returns the section and how it was matched ('id', 'name' or '').
        """
        if not section_ref or section_ref.startswith(NEW_PREFIX):
            return None, ''
        for section in self.sections:
            if section.identified_by(section_ref):
                return section, 'id'
        wanted = (name or '').strip().lower()
        if wanted:
            for section in self.sections:
                if section.name.strip().lower() == wanted:
                    return section, 'name'
        return None, ''


# Template

@dataclass
class Template:
    filename: str
    columns: List[str]
    rows: List[Dict[str, str]]
    instructions: str
    summary: Dict[str, Any]

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=self.columns, lineterminator='\n')
        writer.writeheader()
        writer.writerows(self.rows)
        return buffer.getvalue()


def _row(course: Course, **values: str) -> Dict[str, str]:
    row = {column: '' for column in COLUMNS}
    row['course_id'] = course.row_id
    row['status'] = 'active'
    row.update({k: '' if v is None else str(v) for k, v in values.items()})
    return row


class TemplateBuilder:
    """Renders live course state as an editable bulk-operations CSV."""

    def __init__(self, target_ratio: int = DEFAULT_TARGET_RATIO):
        self.target_ratio = target_ratio

    def build(self, course: Course, students: List[Student], facilitators: List[Facilitator],
              sections: List[Section]) -> Template:
        rows: List[Dict[str, str]] = []
        type_counts = {t: 0 for t in SECTION_TYPES}

        for section in sections:
            section_type = classify(section, course)
            type_counts[section_type] += 1
            owned = section_type == TOOL_CREATED
            campus = extract_campus_info(section.name)
            members = members_of(section, students)

            for student in members:
                rows.append(_row(
                    course,
                    section_id=section.row_id,
                    name=section.name,
                    student_id=student.row_id,
                    student_name=student.name,
                    student_email=student.email or '',
                    section_type=section_type,
                    campus_info=campus,
                    operation=CURRENT_ENROLLMENT if owned else EXISTING_ENROLLMENT,
                ))
            if not members:
                rows.append(_row(
                    course,
                    section_id=section.row_id,
                    name=section.name,
                    section_type=section_type,
                    campus_info=campus,
                    operation=EXISTING_SECTION if owned else READONLY_SECTION,
                ))

        pending = unassigned_students(students, sections)
        groups = group_students_by_campus(pending)
        taken_names = {s.name.strip().lower() for s in sections}
        proposed = 0

        for campus, campus_students in groups.items():
            letter_index = 0
            for start in range(0, len(campus_students), self.target_ratio):
                while True:
                    letter = letter_suffix(letter_index)
                    letter_index += 1
                    label = f'{campus.title()} {letter}' if campus != UNKNOWN_CAMPUS else letter
                    name = f'New Section {label}'
                    if name.lower() not in taken_names:
                        break
                taken_names.add(name.lower())
                facilitator = facilitators[proposed] if proposed < len(facilitators) else None
                proposed += 1
                for student in campus_students[start:start + self.target_ratio]:
                    rows.append(_row(
                        course,
                        section_id=f'{NEW_PREFIX}SECTION_{campus.upper().replace(" ", "_")}_{letter}',
                        name=name,
                        student_id=student.row_id,
                        student_name=student.name,
                        student_email=student.email or '',
                        facilitator_email=(facilitator.email or '') if facilitator else '',
                        section_type=NEW_SECTION,
                        campus_info=campus,
                        operation=CREATE_AND_ENROLL,
                    ))

        summary = {
            'existing_sections': type_counts[EXISTING],
            'default_sections': type_counts[DEFAULT],
            'tool_created_sections': type_counts[TOOL_CREATED],
            'proposed_sections': proposed,
            'total_students': len(students),
            'unassigned_students': len(pending),
            'available_facilitators': len(facilitators),
            'campus_groups': list(groups.keys()),
            'rows': len(rows),
        }
        logger.info(f"Built template for course {course.id}: {len(rows)} rows, {proposed} proposed sections")

        return Template(
            filename=f"{course.course_code or course.id}_sections_bulk_template.csv".replace(' ', '_'),
            columns=list(COLUMNS),
            rows=rows,
            instructions=INSTRUCTIONS,
            summary=summary,
        )


INSTRUCTIONS = """
CANVAS SECTION MANAGEMENT - BULK OPERATIONS CSV

This CSV shows your COMPLETE course state including ALL sections and allows bulk changes.

COLUMNS:
- section_id: existing sections show their current ID, new sections use NEW_SECTION_X
- course_id: pre-filled, don't change
- name: section name (edit for new sections only)
- status: active/deleted ('deleted' removes TOOL-CREATED sections only)
- start_date/end_date: optional, YYYY-MM-DD
- student_id, student_name, student_email: don't change
- facilitator_email: email of the section facilitator (optional)
- section_type: tool_created/existing/default/new_section (locked to Canvas data)
- campus_info: campus/location hint for grouping
- operation: current_enrollment, existing_enrollment, existing_section, readonly_section, create_and_enroll

WHAT YOU CAN DO:
1. CREATE SECTIONS: edit NEW_SECTION_X rows (section_id, name, facilitator_email)
2. MOVE STUDENTS: point a student row at another tool_created section (its id and name)
3. DELETE SECTIONS: set status to 'deleted' on tool_created rows
4. Rows for existing/default sections are READ-ONLY context

SAFETY:
- section_type, section ids and names of live sections are checked against Canvas; edits are rejected
- tool-created sections left out of the file are reported and kept unless deletion mode is
  enabled AND the deletion is confirmed
- maximum file size 1MB, maximum 2000 rows
""".strip()


# Upload parsing

@dataclass(frozen=True)
class UploadRow:
    row_number: int
    section_id: str = ''
    course_id: str = ''
    name: str = ''
    status: str = ''
    start_date: str = ''
    end_date: str = ''
    student_id: str = ''
    student_name: str = ''
    student_email: str = ''
    facilitator_email: str = ''
    section_type: str = ''
    campus_info: str = ''
    operation: str = ''

    @property
    def is_placeholder(self) -> bool:
        return self.section_id.startswith(NEW_PREFIX)

    @property
    def creates_section(self) -> bool:
        """Placeholder row that asks for its section to be created."""
        return self.is_placeholder and self.status == 'active' and self.operation in ('', CREATE_AND_ENROLL)


def parse_upload(raw: Union[bytes, str]) -> List[UploadRow]:
    """Structural parse of an uploaded CSV. Size and row limits are fixed."""
    data = raw.encode('utf-8') if isinstance(raw, str) else raw
    if len(data) > MAX_FILE_BYTES:
        raise UploadRejected(
            f"File size ({round(len(data) / 1024)}KB) exceeds limit of {MAX_FILE_BYTES // 1024}KB"
        )
    try:
        text = data.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        raise UploadRejected(f"File is not valid UTF-8 text: {e}")

    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        raise UploadRejected("CSV file is empty or contains no valid data rows")
    except csv.Error as e:
        raise UploadRejected(f"CSV parsing error: {e}")

    header = [h.strip().lower() for h in header]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise UploadRejected(f"CSV is missing required columns: {', '.join(missing)}")

    rows = []
    try:
        for line_number, values in enumerate(reader, start=2):
            if not any(v.strip() for v in values):
                continue
            record = {
                column: (values[i].strip() if i < len(values) else '')
                for i, column in enumerate(header) if column in COLUMNS
            }
            rows.append(UploadRow(row_number=line_number, **record))
            if len(rows) > MAX_ROWS:
                raise UploadRejected(f"Too many rows (more than {MAX_ROWS}). Maximum allowed: {MAX_ROWS}")
    except csv.Error as e:
        raise UploadRejected(f"CSV parsing error: {e}")

    if not rows:
        raise UploadRejected("CSV file is empty or contains no valid data rows")
    return rows


# Reconciliation

@dataclass(frozen=True)
class RowIssue:
    row_number: int
    section_id: str
    message: str
    kind: str = 'validation'

    def __str__(self) -> str:
        return f"Row {self.row_number} ({self.section_id or 'no section_id'}): {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {'row': self.row_number, 'section_id': self.section_id, 'message': self.message, 'kind': self.kind}


@dataclass
class RowResult:
    row: UploadRow
    derived_type: str
    section: Optional[Section] = None
    student: Optional[Student] = None
    facilitator: Optional[Facilitator] = None
    errors: List[RowIssue] = field(default_factory=list)
    warnings: List[RowIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, message: str, kind: str = 'validation') -> None:
        self.errors.append(RowIssue(self.row.row_number, self.row.section_id, message, kind))

    def warn(self, message: str) -> None:
        self.warnings.append(RowIssue(self.row.row_number, self.row.section_id, message, 'warning'))


@dataclass(frozen=True)
class DeletionCandidate:
    """An owned section the upload left out."""
    section: Section
    student_count: int
    students: Tuple[Tuple[int, str], ...] = ()

    @property
    def section_id(self) -> int:
        return self.section.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.section.id,
            'name': self.section.name,
            'sis_section_id': self.section.sis_section_id,
            'student_count': self.student_count,
            'students': [{'id': i, 'name': n} for i, n in self.students],
        }


@dataclass
class ReconciliationResult:
    rows: List[RowResult]
    deletion_warnings: List[DeletionCandidate]
    state: RemoteState

    @property
    def errors(self) -> List[RowIssue]:
        return [issue for r in self.rows for issue in r.errors]

    @property
    def warnings(self) -> List[RowIssue]:
        return [issue for r in self.rows for issue in r.warnings]

    @property
    def valid(self) -> bool:
        return all(r.valid for r in self.rows)

    @property
    def candidate_ids(self) -> List[int]:
        return sorted(c.section_id for c in self.deletion_warnings)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            'total_rows': len(self.rows),
            'valid_rows': sum(1 for r in self.rows if r.valid),
            'error_rows': sum(1 for r in self.rows if not r.valid),
            'warning_rows': sum(1 for r in self.rows if r.warnings),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'summary': self.summary,
            'errors': [e.to_dict() for e in self.errors],
            'warnings': [w.to_dict() for w in self.warnings],
            'deletion_warnings': [c.to_dict() for c in self.deletion_warnings],
            'total_students_affected': sum(c.student_count for c in self.deletion_warnings),
        }


class Reconciler:
    """Checks uploaded rows against live Canvas state."""

    def reconcile(self, rows: Sequence[UploadRow], state: RemoteState) -> ReconciliationResult:
        results = [self.check_row(row, state) for row in rows]
        self.check_new_placements(results)
        candidates = self.detect_omissions(results, state)

        result = ReconciliationResult(rows=results, deletion_warnings=candidates, state=state)
        summary = result.summary
        logger.info(f"Reconciled {summary['total_rows']} rows: {summary['error_rows']} with errors, "
                    f"{len(candidates)} owned sections missing from upload")
        return result

    def check_row(self, row: UploadRow, state: RemoteState) -> RowResult:
        section, matched_by = state.resolve(row.section_id, row.name)
        result = RowResult(row=row, derived_type=state.section_type(section), section=section)

        if not row.section_id:
            result.error('section_id is required')
        if not row.name:
            result.error('Section name is required')
        if row.status not in STATUSES:
            result.error('Status must be "active" or "deleted"')
        if row.course_id and row.course_id not in (str(state.course.id), state.course.row_id):
            result.error(f"course_id {row.course_id} does not match course {state.course.row_id}")

        if row.section_type and row.section_type not in SECTION_TYPES:
            result.error(f"Invalid section_type: {row.section_type}")
        if row.operation and row.operation not in OPERATIONS:
            result.error(f"Invalid operation: {row.operation}")

        if row.section_id and not row.is_placeholder and section is None:
            result.error(f"Section {row.section_id} not found in course", kind='reference')

        if section is not None:
            self._check_immutable_fields(result, section, matched_by)
        elif row.is_placeholder:
            self._check_new_section(result, state)

        if result.derived_type in READ_ONLY_TYPES:
            if row.operation == CREATE_AND_ENROLL or row.status == 'deleted':
                result.error(f"Cannot modify {result.derived_type} section \"{section.name}\" - it is read-only")
            if row.operation == CURRENT_ENROLLMENT and row.student_id:
                result.warn('Cannot move students from existing/default sections via CSV - handle this in Canvas directly')
        elif row.operation in (READONLY_SECTION, EXISTING_ENROLLMENT) and row.status == 'deleted':
            result.error('Cannot delete readonly sections')

        if row.student_id:
            result.student = state.find_student(row.student_id)
            if result.student is None:
                result.error(f"Student {row.student_id} not found in course", kind='reference')
            elif result.derived_type in READ_ONLY_TYPES and not _is_member(result.student, section):
                result.error(
                    f"Cannot move {result.student.name} into {result.derived_type} section \"{section.name}\" "
                    f"- it is read-only"
                )

        if row.facilitator_email:
            if not _EMAIL_RE.match(row.facilitator_email):
                result.error(f"Invalid facilitator email format: {row.facilitator_email}")
            else:
                result.facilitator = state.find_facilitator(row.facilitator_email)
                if result.facilitator is None:
                    result.warn('Facilitator email not found in course - section will be created without assigned facilitator')

        for column in ('start_date', 'end_date'):
            value = getattr(row, column)
            if value and not _valid_date(value):
                result.error(f"{column} must be in YYYY-MM-DD format")

        return result

    def _check_immutable_fields(self, result: RowResult, section: Section, matched_by: str) -> None:
        row = result.row
        if row.section_type and row.section_type != result.derived_type:
            result.error(
                f"Cannot modify immutable field section_type: actual type is {result.derived_type}, "
                f"row declares {row.section_type}",
                kind='tamper',
            )
        if row.name != section.name.strip():
            result.error(
                f"Cannot modify immutable field name: section {section.row_id} is named \"{section.name}\", "
                f"row declares \"{row.name}\"",
                kind='tamper',
            )
        if matched_by == 'name':
            result.error(
                f"Cannot modify immutable field section_id: section \"{section.name}\" is {section.row_id}, "
                f"row declares {row.section_id}",
                kind='tamper',
            )

    def _check_new_section(self, result: RowResult, state: RemoteState) -> None:
        row = result.row
        if row.section_type and row.section_type != NEW_SECTION:
            result.error(
                f"Cannot modify immutable field section_type: {row.section_id} does not exist yet, "
                f"row declares {row.section_type}",
                kind='tamper',
            )
        if row.name and any(s.name.strip().lower() == row.name.lower() for s in state.sections):
            result.error(f"Section name \"{row.name}\" already exists in course")
        if row.status in STATUSES and row.operation in ('',) + OPERATIONS and not row.creates_section:
            result.warn(f"{row.section_id} does not exist yet; this row is ignored")

    def check_new_placements(self, results: Sequence[RowResult]) -> None:
        """Warn when one student is placed in more than one new section. The first placement wins."""
        placed: Dict[int, str] = {}
        for result in results:
            if not result.row.creates_section or result.student is None:
                continue
            first = placed.setdefault(result.student.id, result.row.name)
            if first != result.row.name:
                result.warn(f"{result.student.name} is already placed in new section \"{first}\"; "
                            f"this row is ignored")

    def detect_omissions(self, results: Sequence[RowResult], state: RemoteState) -> List[DeletionCandidate]:
        """Owned sections that no row resolves to, with their live membership."""
        referenced = {r.section.id for r in results if r.section is not None}
        candidates = []
        for section in state.owned_sections:
            if section.id in referenced:
                continue
            members = [e for e in state.owned_members.get(section.id, []) if e.is_active_student]
            candidates.append(DeletionCandidate(
                section=section,
                student_count=len(members),
                students=tuple((e.user_id, e.user_name) for e in members),
            ))
        return candidates


def _is_member(student: Student, section: Section) -> bool:
    return student.id in section.student_ids or section.id in student.section_ids


def _valid_date(value: str) -> bool:
    if not _DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        return False
    return True
