"""
Turns validated changes into ordered Canvas operations and runs them.

Order within a batch:
1. create sections (stamped with the batch's ownership tag)
2. enroll students into the new sections, then into existing owned sections
3. enroll section facilitators
4. for each deletion: unenroll active members, then delete the section

Every operation is attempted on its own. A failure is recorded in the report
and the batch carries on; nothing is retried and nothing is rolled back
automatically. Use the session id in the report to roll a batch back later.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from allocation import AllocationPlan
from bulk_csv import TOOL_CREATED, DeletionCandidate, ReconciliationResult
from canvas_client import CanvasAPIError, CourseSystem
from canvas_models import Facilitator, Section, Student
from section_tags import is_owned, mint_session_id, sections_for_session, tag

logger = logging.getLogger(__name__)


class PlanRejected(ValueError):
    """The reconciliation has errors; nothing may be executed."""

    def __init__(self, message: str, reconciliation: Optional[ReconciliationResult] = None):
        super().__init__(message)
        self.reconciliation = reconciliation


class DeletionConfirmationRequired(Exception):
    """Omitted owned sections would be deleted but the caller has not confirmed this exact set."""

    def __init__(self, message: str, candidates: Sequence[DeletionCandidate]):
        super().__init__(message)
        self.message = message
        self.candidates = list(candidates)


@dataclass(frozen=True)
class ExecutionOptions:
    deletion_mode: bool = False
    deletion_confirmed: bool = False
    confirmed_section_ids: Optional[Tuple[int, ...]] = None
    session_id: Optional[str] = None


@dataclass
class SectionCreation:
    name: str
    students: List[Student] = field(default_factory=list)
    facilitator: Optional[Facilitator] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None


@dataclass(frozen=True)
class SectionDeletion:
    section: Section
    reason: str


@dataclass
class OperationBatch:
    session_id: str
    creations: List[SectionCreation] = field(default_factory=list)
    enrollments: List[Tuple[Section, Student]] = field(default_factory=list)
    deletions: List[SectionDeletion] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creations or self.enrollments or self.deletions)

    def preview(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'sections_to_create': [c.name for c in self.creations],
            'students_to_enroll': sum(len(c.students) for c in self.creations) + len(self.enrollments),
            'sections_to_delete': [{'id': d.section.id, 'name': d.section.name, 'reason': d.reason}
                                   for d in self.deletions],
        }


@dataclass(frozen=True)
class ExecutionError:
    item: str
    message: str
    kind: str = 'remote'

    def to_dict(self) -> Dict[str, str]:
        return {'item': self.item, 'message': self.message, 'kind': self.kind}


@dataclass(frozen=True)
class ExecutionReport:
    """Outcome of one batch. Built by ``ReportBuilder``; not modified afterwards."""
    status: str
    message: str
    session_id: Optional[str] = None
    sections_created: int = 0
    students_enrolled: int = 0
    facilitators_assigned: int = 0
    sections_deleted: int = 0
    students_unenrolled: int = 0
    errors: Tuple[ExecutionError, ...] = ()
    created_sections: Tuple[Dict[str, Any], ...] = ()
    deletion_details: Tuple[Dict[str, Any], ...] = ()
    api_calls: int = 0
    elapsed_seconds: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == 'success'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'success': self.success,
            'message': self.message,
            'session_id': self.session_id,
            'results': {
                'sections_created': self.sections_created,
                'students_enrolled': self.students_enrolled,
                'facilitators_assigned': self.facilitators_assigned,
                'sections_deleted': self.sections_deleted,
                'students_unenrolled': self.students_unenrolled,
            },
            'errors': [e.to_dict() for e in self.errors],
            'created_sections': list(self.created_sections),
            'deletion_details': list(self.deletion_details),
            'api_calls': self.api_calls,
            'execution_time': round(self.elapsed_seconds, 3),
            'details': self.details,
        }


class ReportBuilder:
    """Mutable tally used while a batch runs."""

    def __init__(self, session_id: Optional[str] = None, clock: Callable[[], float] = time.monotonic):
        self.session_id = session_id
        self.counts = {
            'sections_created': 0,
            'students_enrolled': 0,
            'facilitators_assigned': 0,
            'sections_deleted': 0,
            'students_unenrolled': 0,
        }
        self.errors: List[ExecutionError] = []
        self.created_sections: List[Dict[str, Any]] = []
        self.deletion_details: List[Dict[str, Any]] = []
        self.clock = clock
        self.started = clock()

    def fail(self, item: str, error: Exception) -> None:
        kind = error.kind if isinstance(error, CanvasAPIError) else 'remote'
        message = error.message if isinstance(error, CanvasAPIError) else str(error)
        logger.error(f"{item}: {message}")
        self.errors.append(ExecutionError(item, message, kind))

    def build(self, api_calls: int = 0, status: Optional[str] = None, message: Optional[str] = None,
              details: Optional[Dict[str, Any]] = None) -> ExecutionReport:
        attempted = any(self.counts.values()) or bool(self.errors)
        if status is None:
            if not self.errors:
                status = 'success'
            elif any(self.counts.values()):
                status = 'partial'
            else:
                status = 'failed'
        if message is None:
            parts = [f"{label.replace('_', ' ')}: {count}" for label, count in self.counts.items() if count]
            if self.errors:
                parts.append(f"{len(self.errors)} errors occurred")
            message = 'Bulk operation completed. ' + (', '.join(parts) if attempted else 'Nothing to do')
        return ExecutionReport(
            status=status,
            message=message,
            session_id=self.session_id,
            errors=tuple(self.errors),
            created_sections=tuple(self.created_sections),
            deletion_details=tuple(self.deletion_details),
            api_calls=api_calls,
            elapsed_seconds=self.clock() - self.started,
            details=details or {},
            **self.counts,
        )


class ExecutionPlanner:
    """Groups reconciled rows into an operation batch."""

    def plan(self, reconciliation: ReconciliationResult,
             options: ExecutionOptions = ExecutionOptions()) -> OperationBatch:
        if not reconciliation.valid:
            raise PlanRejected(
                f"Upload has {len(reconciliation.errors)} validation errors; fix them before execution",
                reconciliation,
            )

        batch = OperationBatch(session_id=options.session_id or mint_session_id())
        creations: Dict[str, SectionCreation] = {}
        deletions: Dict[int, SectionDeletion] = {}
        enrolled = set()
        placed: Dict[int, str] = {}

        for result in reconciliation.rows:
            row = result.row
            if row.is_placeholder:
                if not row.creates_section:
                    continue
                creation = creations.get(row.name)
                if creation is None:
                    creation = SectionCreation(
                        name=row.name,
                        start_at=row.start_date or None,
                        end_at=row.end_date or None,
                    )
                    creations[row.name] = creation
                    batch.creations.append(creation)
                if creation.facilitator is None and result.facilitator is not None:
                    creation.facilitator = result.facilitator
                if result.student is not None:
                    # first placement wins
                    first = placed.setdefault(result.student.id, row.name)
                    if first == row.name and all(s.id != result.student.id for s in creation.students):
                        creation.students.append(result.student)
                continue

            section = result.section
            if section is None or result.derived_type != TOOL_CREATED:
                continue
            if row.status == 'deleted':
                deletions.setdefault(section.id, SectionDeletion(section, 'explicit_status_deletion'))
            elif result.student is not None:
                key = (section.id, result.student.id)
                already_member = result.student.id in section.student_ids or section.id in result.student.section_ids
                if not already_member and key not in enrolled:
                    enrolled.add(key)
                    batch.enrollments.append((section, result.student))

        batch.deletions.extend(deletions.values())
        batch.deletions.extend(self._omission_deletions(reconciliation, options, set(deletions)))
        # Students headed for a section that is being deleted in the same batch are dropped
        doomed = {d.section.id for d in batch.deletions}
        batch.enrollments = [(s, st) for s, st in batch.enrollments if s.id not in doomed]

        logger.info(f"Planned batch {batch.session_id}: {len(batch.creations)} creations, "
                    f"{len(batch.enrollments)} enrollments into existing sections, {len(batch.deletions)} deletions")
        return batch

    def _omission_deletions(self, reconciliation: ReconciliationResult, options: ExecutionOptions,
                            already: set) -> List[SectionDeletion]:
        candidates = reconciliation.deletion_warnings
        if not candidates or not options.deletion_mode:
            return []

        total = sum(c.student_count for c in candidates)
        if not options.deletion_confirmed:
            raise DeletionConfirmationRequired(
                f"You are about to delete {len(candidates)} tool-created sections affecting {total} students. "
                f"Confirm the deletion to proceed.",
                candidates,
            )
        confirmed = sorted(set(options.confirmed_section_ids or ()))
        if confirmed != reconciliation.candidate_ids:
            raise DeletionConfirmationRequired(
                "The confirmed sections no longer match the sections missing from the upload. "
                "Review the current deletion candidates and confirm again.",
                candidates,
            )
        return [SectionDeletion(c.section, 'omission_deletion') for c in candidates if c.section_id not in already]

    def plan_allocation(self, plan: AllocationPlan, session_id: Optional[str] = None) -> OperationBatch:
        """Operation batch for an accepted allocation plan."""
        batch = OperationBatch(session_id=session_id or mint_session_id())
        for planned in plan.sections:
            batch.creations.append(SectionCreation(
                name=planned.external_name,
                students=list(planned.students),
                facilitator=planned.facilitator,
            ))
        return batch


class BatchExecutor:
    """Applies an operation batch to Canvas, one call at a time."""

    def __init__(self, client: CourseSystem, enrollment_batch_size: int = 10, enrollment_batch_pause: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.enrollment_batch_size = enrollment_batch_size
        self.enrollment_batch_pause = enrollment_batch_pause
        self.sleep = sleep
        self.clock = clock
        self._enrollment_calls = 0

    def execute(self, batch: OperationBatch, course_id: int, operator_id: Optional[object] = None,
                details: Optional[Dict[str, Any]] = None) -> ExecutionReport:
        calls_before = self.client.call_count
        report = ReportBuilder(batch.session_id, self.clock)
        self._enrollment_calls = 0

        created: List[Tuple[SectionCreation, Section]] = []
        ownership = tag(operator_id, batch.session_id)
        for number, creation in enumerate(batch.creations, 1):
            try:
                section = self.client.create_section(course_id, creation.name, ownership, number,
                                                     creation.start_at, creation.end_at)
            except CanvasAPIError as e:
                report.fail(f"create section {creation.name}", e)
                continue
            report.counts['sections_created'] += 1
            report.created_sections.append({'id': section.id, 'name': section.name,
                                            'sis_section_id': section.sis_section_id})
            created.append((creation, section))
            logger.info(f"Created section {section.name} ({section.id}) in session {batch.session_id}")

        for creation, section in created:
            for student in creation.students:
                self._enroll(report, section, student)
        for section, student in batch.enrollments:
            self._enroll(report, section, student)

        for creation, section in created:
            if creation.facilitator is None:
                continue
            try:
                self.client.assign_as_facilitator(course_id, creation.facilitator.id, section.id)
                report.counts['facilitators_assigned'] += 1
            except CanvasAPIError as e:
                report.fail(f"assign facilitator {creation.facilitator.name} to {section.name}", e)

        for deletion in batch.deletions:
            self.delete_section(report, course_id, deletion)

        return report.build(api_calls=self.client.call_count - calls_before, details=details)

    def _enroll(self, report: ReportBuilder, section: Section, student: Student) -> None:
        if self._enrollment_calls and self._enrollment_calls % self.enrollment_batch_size == 0:
            self.sleep(self.enrollment_batch_pause)
        self._enrollment_calls += 1
        try:
            self.client.enroll_student(section.id, student.id)
            report.counts['students_enrolled'] += 1
        except CanvasAPIError as e:
            report.fail(f"enroll {student.name} ({student.id}) in {section.name}", e)

    def delete_section(self, report: ReportBuilder, course_id: int, deletion: SectionDeletion) -> None:
        """Unenroll every active member, then delete. Never deletes a section that is not ours."""
        section = deletion.section
        detail = {'section_id': section.id, 'section_name': section.name, 'reason': deletion.reason,
                  'students_removed': 0, 'status': 'failed'}
        report.deletion_details.append(detail)

        if not is_owned(section):
            report.errors.append(ExecutionError(f"delete section {section.name}",
                                                'Section is not tool-created; refusing to delete', 'ownership'))
            return

        try:
            members = self.client.get_section_members(section.id)
        except CanvasAPIError as e:
            report.fail(f"list members of {section.name}", e)
            return

        remaining = 0
        for enrollment in members:
            try:
                self.client.unenroll_student(course_id, enrollment.id)
                report.counts['students_unenrolled'] += 1
                detail['students_removed'] += 1
            except CanvasAPIError as e:
                remaining += 1
                report.fail(f"remove student {enrollment.user_id} from {section.name}", e)

        if remaining:
            message = f"{remaining} active memberships remain; section not deleted"
            report.errors.append(ExecutionError(f"delete section {section.name}", message, 'blocked'))
            detail['error'] = message
            return

        try:
            self.client.delete_section(section.id)
        except CanvasAPIError as e:
            report.fail(f"delete section {section.name}", e)
            detail['error'] = e.message
            return
        report.counts['sections_deleted'] += 1
        detail['status'] = 'success'
        logger.info(f"Deleted section {section.name} ({section.id}), removed {detail['students_removed']} students")

    def rollback(self, course_id: int, session_id: str) -> ExecutionReport:
        """Remove every section stamped with ``session_id``, members first."""
        calls_before = self.client.call_count
        report = ReportBuilder(session_id, self.clock)
        try:
            sections = sections_for_session(session_id, self.client.get_sections(course_id))
        except CanvasAPIError as e:
            report.fail(f"list sections of course {course_id}", e)
            return report.build(api_calls=self.client.call_count - calls_before)

        if not sections:
            return report.build(api_calls=self.client.call_count - calls_before,
                                message=f"No sections found for session {session_id}")

        logger.info(f"Rolling back {len(sections)} sections for session {session_id}")
        for section in sections:
            self.delete_section(report, course_id, SectionDeletion(section, 'rollback'))
        return report.build(api_calls=self.client.call_count - calls_before)
