#!/usr/bin/env python3
"""
Canvas Section Manager - Section allocation and bulk section management

Splits a Canvas course into sections and keeps them in shape. Sections are
either planned automatically from a students-per-facilitator ratio or edited
in bulk through a CSV round-trip.

Key Features:
• Ratio-based section recommendations and allocation plans
• Full-course CSV template with proposed sections for unassigned students
• Upload validation against live Canvas data (tamper and omission checks)
• Batch execution with per-item error reporting
• Session rollback of everything a batch created

Safety:
• Only sections created by this tool are ever changed or deleted
• Deleting sections missing from an upload requires deletion mode AND an
  explicit confirmation of the exact sections

Setup:
1. Create .env file with CANVAS_API_TOKEN and CANVAS_BASE_URL
2. Install: pip install -e .
3. Ensure API token can manage sections and enrollments in the course
"""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union

from allocation import (
    AllocationError, AllocationPlan, AllocationPlanner, NameTemplate, Recommendation, SectionConfig, ValidationResult,
)
from bulk_csv import ReconciliationResult, Reconciler, RemoteState, Template, TemplateBuilder, parse_upload
from bulk_execution import (
    BatchExecutor, DeletionConfirmationRequired, ExecutionOptions, ExecutionPlanner, ExecutionReport,
    PlanRejected, ReportBuilder,
)
from canvas_client import CanvasAPIClient, CanvasAPIError, CanvasConfig, CourseSystem, EnvTokenProvider, get_config
from canvas_models import Facilitator, Section
from section_tags import sections_for_session

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

AUDIT_FIELDS = ['timestamp', 'operator_id', 'course_id', 'action', 'session_id', 'result', 'counts', 'message']


class AuditLog(Protocol):
    """External collaborator that receives one row per executed operation."""
    def record(self, action: str, course_id: int, report: ExecutionReport,
               operator_id: Optional[object] = None) -> None:
        ...


class CsvAuditLog:
    """Appends audit rows to a CSV file, writing the header on first use."""

    def __init__(self, path: Union[str, Path] = './logs/section_audit.csv'):
        self.path = Path(path)

    def record(self, action: str, course_id: int, report: ExecutionReport,
               operator_id: Optional[object] = None) -> None:
        """Log action to audit CSV."""
        results = report.to_dict()['results']
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            file_exists = self.path.exists()
            with open(self.path, 'a', newline='', encoding='utf-8') as f:
                writer = csv.DictWriter(f, fieldnames=AUDIT_FIELDS)

                if not file_exists:
                    writer.writeheader()

                writer.writerow({
                    'timestamp': datetime.now().isoformat(),
                    'operator_id': operator_id or '',
                    'course_id': course_id,
                    'action': action,
                    'session_id': report.session_id or '',
                    'result': report.status,
                    'counts': ";".join(f"{k}={v}" for k, v in results.items() if v),
                    'message': report.message,
                })
        except OSError as e:
            logger.warning(f"Failed to write audit log: {e}")


class SectionManagerService:
    """Entry points for the allocation and bulk CSV workflows."""

    def __init__(self, client: CourseSystem, config: CanvasConfig, operator_id: Optional[object] = None,
                 audit: Optional[AuditLog] = None, executor: Optional[BatchExecutor] = None):
        self.client = client
        self.config = config
        self.operator_id = operator_id
        self.audit = audit
        self.planner = AllocationPlanner(config.target_ratio, config.max_ratio)
        self.executor = executor or BatchExecutor(
            client,
            enrollment_batch_size=config.enrollment_batch_size,
            enrollment_batch_pause=config.enrollment_batch_pause,
        )

    # Allocation workflow

    def analyze(self, course_id: int) -> Recommendation:
        state = RemoteState.load(self.client, course_id, include_members=False)
        logger.info(f"Analyzing course {course_id}: {len(state.students)} students, "
                    f"{len(state.facilitators)} facilitators, {len(state.sections)} sections")
        return self.planner.recommend(state.students, state.facilitators, state.sections)

    def generate_plan(self, course_id: int, section_count: Optional[int] = None, strategy: str = 'balanced',
                      base_name: str = 'Section',
                      name_template: Optional[NameTemplate] = None) -> Tuple[AllocationPlan, ValidationResult]:
        """Build and validate a plan. Without ``section_count`` the recommendation decides."""
        state = RemoteState.load(self.client, course_id, include_members=False)
        if section_count is None:
            recommendation = self.planner.recommend(state.students, state.facilitators, state.sections)
            if recommendation.suggested_sections == 0:
                raise AllocationError(recommendation.reason)
            section_count = recommendation.suggested_sections
        plan = self.planner.create_plan(
            state.students,
            state.facilitators,
            SectionConfig(section_count, name_template or NameTemplate.for_base(base_name)),
            strategy=strategy,
            existing_sections=state.sections,
        )
        return plan, self.planner.validate(plan)

    def execute_plan(self, course_id: int, plan: AllocationPlan, assign_current_user: bool = False,
                     session_id: Optional[str] = None) -> ExecutionReport:
        """Create the planned sections. The plan is validated again first."""
        validation = self.planner.validate(plan)
        if not validation.valid:
            return self._finish('execute_plan', course_id, ReportBuilder(session_id).build(
                status='validation_failed',
                message=f"Plan validation failed with {len(validation.errors)} errors",
                details={'validation': validation.to_dict()},
            ))

        batch = ExecutionPlanner().plan_allocation(plan, session_id)
        if assign_current_user and any(c.facilitator is None for c in batch.creations):
            try:
                me = self.client.get_current_user()
            except CanvasAPIError as e:
                builder = ReportBuilder(batch.session_id)
                builder.fail('look up current user', e)
                return self._finish('execute_plan', course_id, builder.build())
            current = Facilitator(id=int(me['id']), name=me.get('name') or '', email=me.get('primary_email'))
            for creation in batch.creations:
                if creation.facilitator is None:
                    creation.facilitator = current

        report = self.executor.execute(batch, course_id, self.operator_id, details={'strategy': plan.strategy})
        return self._finish('execute_plan', course_id, report)

    # Bulk CSV workflow

    def build_template(self, course_id: int) -> Template:
        state = RemoteState.load(self.client, course_id, include_members=False)
        return TemplateBuilder(self.config.target_ratio).build(
            state.course, state.students, state.facilitators, state.sections
        )

    def validate_upload(self, course_id: int, raw: Union[bytes, str]) -> ReconciliationResult:
        """Parse the upload, then reconcile it against a fresh read of the course."""
        rows = parse_upload(raw)
        state = RemoteState.load(self.client, course_id)
        return Reconciler().reconcile(rows, state)

    def execute_upload(self, course_id: int, raw: Union[bytes, str],
                       options: ExecutionOptions = ExecutionOptions()) -> ExecutionReport:
        reconciliation = self.validate_upload(course_id, raw)
        try:
            batch = ExecutionPlanner().plan(reconciliation, options)
        except PlanRejected as e:
            return self._finish('execute_upload', course_id, ReportBuilder(options.session_id).build(
                status='validation_failed',
                message=str(e),
                details={'validation': reconciliation.to_dict()},
            ))
        except DeletionConfirmationRequired as e:
            report = ReportBuilder(options.session_id).build(
                status='confirmation_required',
                message=e.message,
                details={
                    'deletion_warnings': [c.to_dict() for c in e.candidates],
                    'candidate_ids': reconciliation.candidate_ids,
                    'total_students_affected': sum(c.student_count for c in e.candidates),
                },
            )
            return self._finish('execute_upload', course_id, report)

        details = {'preview': batch.preview()}
        if reconciliation.deletion_warnings and not options.deletion_mode:
            details['preserved_sections'] = [c.to_dict() for c in reconciliation.deletion_warnings]
        report = self.executor.execute(batch, course_id, self.operator_id, details=details)
        return self._finish('execute_upload', course_id, report)

    # Sessions

    def session_sections(self, course_id: int, session_id: str) -> List[Section]:
        return sections_for_session(session_id, self.client.get_sections(course_id))

    def rollback_session(self, course_id: int, session_id: str) -> ExecutionReport:
        return self._finish('rollback', course_id, self.executor.rollback(course_id, session_id))

    def _finish(self, action: str, course_id: int, report: ExecutionReport) -> ExecutionReport:
        logger.info(f"{action} on course {course_id}: {report.status} - {report.message}")
        if self.audit is not None:
            self.audit.record(action, course_id, report, self.operator_id)
        return report


def create_service(config: Optional[CanvasConfig] = None) -> SectionManagerService:
    """Service wired to the real Canvas API, the CSV audit log and the current user as operator."""
    config = config or get_config()
    client = CanvasAPIClient(EnvTokenProvider(), config)
    operator_id = None
    try:
        operator_id = client.get_current_user().get('id')
    except CanvasAPIError as e:
        logger.warning(f"Could not determine current user for audit records: {e.message}")
    return SectionManagerService(client, config, operator_id, CsvAuditLog(config.audit_log_path))


def print_report(report: ExecutionReport) -> None:
    icon = {'success': '✅', 'partial': '⚠️ ', 'confirmation_required': '🛑'}.get(report.status, '❌')
    print(f"\n{icon} {report.message}")
    if report.session_id:
        print(f"   Session: {report.session_id} (use 'rollback' with this id to undo created sections)")
    for label, count in report.to_dict()['results'].items():
        if count:
            print(f"   {label.replace('_', ' ').capitalize()}: {count}")
    print(f"   Canvas API calls: {report.api_calls}, time: {report.elapsed_seconds:.1f}s")
    for error in report.errors:
        print(f"   ❌ {error.item}: {error.message}")


def _print_reconciliation(result: ReconciliationResult) -> None:
    summary = result.summary
    print(f"\nRows: {summary['total_rows']} total, {summary['valid_rows']} valid, "
          f"{summary['error_rows']} with errors, {summary['warning_rows']} with warnings")
    for issue in result.errors:
        print(f"   ❌ {issue}")
    for issue in result.warnings:
        print(f"   ⚠️  {issue}")
    if result.deletion_warnings:
        print(f"\n🛑 {len(result.deletion_warnings)} tool-created sections are missing from the file:")
        for candidate in result.deletion_warnings:
            print(f"   {candidate.section_id:>8}  {candidate.section.name} ({candidate.student_count} students)")
        print("   They are kept unless you run 'execute' with --deletion-mode --confirm-deletion "
              "and --confirm-section for each id above.")
    if result.valid:
        print("\n✅ Upload is valid")


def main():
    """Main function to run the section manager command line tool."""
    import argparse
    import signal
    import sys

    def signal_handler(signum, frame):
        """Handle shutdown signals gracefully."""
        print(f"\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    parser = argparse.ArgumentParser(description='Canvas Section Manager')
    subparsers = parser.add_subparsers(dest='command', required=True)

    analyze_parser = subparsers.add_parser('analyze', help='Recommend how many sections to create')
    analyze_parser.add_argument('--course-id', type=int, required=True)

    allocate_parser = subparsers.add_parser('allocate', help='Plan and create sections for unassigned students')
    allocate_parser.add_argument('--course-id', type=int, required=True)
    allocate_parser.add_argument('--sections', type=int, help='Number of sections (default: recommendation)')
    allocate_parser.add_argument('--strategy', default='balanced', choices=['balanced', 'alphabetical', 'random'])
    allocate_parser.add_argument('--base-name', default='Section', help='Section base name (default: Section)')
    allocate_parser.add_argument('--assign-me', action='store_true',
                                 help='Assign yourself to sections that have no facilitator')
    allocate_parser.add_argument('--dry-run', action='store_true', help='Show the plan without creating anything')

    template_parser = subparsers.add_parser('template', help='Download the bulk operations CSV template')
    template_parser.add_argument('--course-id', type=int, required=True)
    template_parser.add_argument('--output', help='Output filename (default: generated from course code)')

    validate_parser = subparsers.add_parser('validate', help='Validate an edited CSV against Canvas')
    validate_parser.add_argument('--course-id', type=int, required=True)
    validate_parser.add_argument('file')

    execute_parser = subparsers.add_parser('execute', help='Validate and apply an edited CSV')
    execute_parser.add_argument('--course-id', type=int, required=True)
    execute_parser.add_argument('file')
    execute_parser.add_argument('--deletion-mode', action='store_true',
                                help='Delete tool-created sections that are missing from the file')
    execute_parser.add_argument('--confirm-deletion', action='store_true', help='Confirm the deletions')
    execute_parser.add_argument('--confirm-section', type=int, action='append', default=[], metavar='SECTION_ID',
                                help='Section id being confirmed for deletion (repeat for each)')

    session_parser = subparsers.add_parser('session', help='List the sections created by a session')
    session_parser.add_argument('--course-id', type=int, required=True)
    session_parser.add_argument('session_id')

    rollback_parser = subparsers.add_parser('rollback', help='Remove every section created by a session')
    rollback_parser.add_argument('--course-id', type=int, required=True)
    rollback_parser.add_argument('session_id')

    args = parser.parse_args()

    print("=" * 60)
    print("Canvas LMS - Section Manager")
    print("=" * 60)

    try:
        service = create_service()
    except ValueError as e:
        print(f"❌ Configuration Error: {e}")
        return

    try:
        if args.command == 'analyze':
            print(f"\nAnalyzing course {args.course_id}...")
            rec = service.analyze(args.course_id)
            print(f"\n📊 Students: {rec.total_students} total, {rec.unassigned_students} unassigned")
            print(f"   Facilitators: {rec.total_facilitators} total, {rec.available_facilitators} available")
            print(f"\n💡 Suggested sections: {rec.suggested_sections} ({rec.strategy})")
            print(f"   {rec.reason}")
            for warning in rec.warnings:
                print(f"   ⚠️  {warning.message}")

        elif args.command == 'allocate':
            plan, validation = service.generate_plan(args.course_id, args.sections, args.strategy, args.base_name)
            print(f"\n📋 Plan: {len(plan.sections)} sections for {plan.total_students} students ({plan.strategy})")
            for row in plan.summary['distribution']:
                print(f"   {row['name']:<30} {row['student_count']:>4} students  {row['facilitator']}")
            for error in validation.errors:
                print(f"   ❌ {error}")
            for warning in validation.warnings:
                print(f"   ⚠️  {warning}")
            if args.dry_run:
                print("\nDRY RUN: no sections were created")
                return
            confirm = input("\nCreate these sections? (y/N): ").strip().lower()
            if confirm != 'y':
                print("Operation cancelled.")
                return
            print_report(service.execute_plan(args.course_id, plan, assign_current_user=args.assign_me))

        elif args.command == 'template':
            print(f"\nBuilding template for course {args.course_id}...")
            template = service.build_template(args.course_id)
            output = args.output or template.filename
            with open(output, 'w', newline='', encoding='utf-8') as f:
                f.write(template.to_csv())
            print(f"✅ Wrote {len(template.rows)} rows to {output}")
            for key, value in template.summary.items():
                print(f"   {key.replace('_', ' ').capitalize()}: {value}")

        elif args.command == 'validate':
            with open(args.file, 'rb') as f:
                _print_reconciliation(service.validate_upload(args.course_id, f.read()))

        elif args.command == 'execute':
            options = ExecutionOptions(
                deletion_mode=args.deletion_mode,
                deletion_confirmed=args.confirm_deletion,
                confirmed_section_ids=tuple(args.confirm_section),
            )
            with open(args.file, 'rb') as f:
                report = service.execute_upload(args.course_id, f.read(), options)
            print_report(report)
            if report.status == 'validation_failed':
                for error in report.details['validation']['errors']:
                    print(f"   ❌ Row {error['row']} ({error['section_id']}): {error['message']}")
            elif report.status == 'confirmation_required':
                for candidate in report.details['deletion_warnings']:
                    print(f"   {candidate['id']:>8}  {candidate['name']} ({candidate['student_count']} students)")

        elif args.command == 'session':
            sections = service.session_sections(args.course_id, args.session_id)
            print(f"\nSession {args.session_id}: {len(sections)} sections")
            for section in sections:
                print(f"   {section.id:>8}  {section.name} ({section.total_students or 0} students)")

        elif args.command == 'rollback':
            sections = service.session_sections(args.course_id, args.session_id)
            if not sections:
                print(f"\nNo sections found for session {args.session_id}")
                return
            print(f"\n⚠️  This will remove {len(sections)} sections and unenroll their students:")
            for section in sections:
                print(f"   {section.id:>8}  {section.name}")
            confirm = input("Proceed? (y/N): ").strip().lower()
            if confirm != 'y':
                print("Operation cancelled.")
                return
            print_report(service.rollback_session(args.course_id, args.session_id))

    except (ValueError, OSError) as e:
        print(f"❌ {e}")
    except CanvasAPIError as e:
        print(f"❌ Canvas API error: {e.message}")


if __name__ == "__main__":
    main()
