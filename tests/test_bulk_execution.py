import dataclasses

import pytest

from allocation import AllocationPlanner, SectionConfig
from bulk_execution import (
    BatchExecutor, DeletionConfirmationRequired, ExecutionOptions, ExecutionPlanner, OperationBatch, PlanRejected,
    SectionDeletion,
)
from conftest import build_template, network_error, reconcile_rows, row_index
from section_tags import sections_for_session

MUTATIONS = {'create_section', 'delete_section', 'enroll_student', 'unenroll_student', 'assign_as_facilitator'}


def _mutations(canvas, since=0):
    return [name for name, _ in canvas.calls[since:] if name in MUTATIONS]


def _executor(canvas, sleeps=None, batch_size=10):
    sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
    return BatchExecutor(canvas, enrollment_batch_size=batch_size, enrollment_batch_pause=1.0, sleep=sleep)


def _move_first_row(rows, from_name, to_section):
    index = row_index(rows, lambda r: r['name'] == from_name)
    rows[index]['section_id'] = to_section['sis_section_id']
    rows[index]['name'] = to_section['name']
    return rows[index]


def test_upload_executes_in_order(course):
    canvas = course.canvas
    rows = build_template(canvas).rows
    _move_first_row(rows, 'Tutorial 2', canvas.sections[course.tutorial1])
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, rows))

    assert [c.name for c in batch.creations] == ['New Section Blacktown A', 'New Section A']
    assert [(s.id, st.id) for s, st in batch.enrollments] == [(course.tutorial1, course.tutorial2_students[0])]
    assert batch.deletions == []

    start = len(canvas.calls)
    report = _executor(canvas).execute(batch, canvas.course.id, operator_id=42)

    assert _mutations(canvas, start) == [
        'create_section', 'create_section',
        'enroll_student', 'enroll_student', 'enroll_student',
        'enroll_student',
        'assign_as_facilitator', 'assign_as_facilitator',
    ]
    assert report.status == 'success'
    assert report.sections_created == 2
    assert report.students_enrolled == 4
    assert report.facilitators_assigned == 2
    assert report.api_calls == len(canvas.calls) - start
    assert report.session_id == batch.session_id

    created = sections_for_session(batch.session_id, canvas.get_sections(canvas.course.id))
    assert sorted(s.name for s in created) == ['New Section A', 'New Section Blacktown A']
    assert course.tutorial2_students[0] in canvas.active_members(course.tutorial1)
    assert course.tutorial2_students[0] in canvas.active_members(course.tutorial2)


def test_facilitators_are_enrolled_in_their_created_section(course):
    canvas = course.canvas
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, build_template(canvas).rows))
    report = _executor(canvas).execute(batch, canvas.course.id)

    created = {s['name']: s['id'] for s in report.created_sections}
    assert canvas.calls_to('assign_as_facilitator') == [
        (canvas.course.id, course.tutor, created['New Section Blacktown A']),
        (canvas.course.id, course.spare_tutor, created['New Section A']),
    ]


def test_unmodified_template_only_creates_proposed_sections(course):
    canvas = course.canvas
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, build_template(canvas).rows))

    assert len(batch.creations) == 2
    assert batch.enrollments == []
    assert batch.deletions == []


def test_new_section_rows_marked_deleted_create_nothing(course):
    canvas = course.canvas
    rows = build_template(canvas).rows
    rows[row_index(rows, lambda r: r['name'] == 'New Section A')]['status'] = 'deleted'

    batch = ExecutionPlanner().plan(reconcile_rows(canvas, rows))

    assert [c.name for c in batch.creations] == ['New Section Blacktown A']


def test_student_is_placed_in_only_the_first_new_section(course):
    canvas = course.canvas
    rows = build_template(canvas).rows
    blacktown = rows[row_index(rows, lambda r: r['name'] == 'New Section Blacktown A')]
    una = rows[row_index(rows, lambda r: r['student_id'] == 'SIS-U3')]
    rows.append(dict(una, section_id=blacktown['section_id'], name=blacktown['name']))

    batch = ExecutionPlanner().plan(reconcile_rows(canvas, rows))

    placements = {c.name: [s.id for s in c.students] for c in batch.creations}
    assert placements['New Section A'] == [course.unassigned[2]]
    assert course.unassigned[2] not in placements['New Section Blacktown A']


def test_read_only_move_is_never_planned(course):
    canvas = course.canvas
    rows = build_template(canvas).rows
    lecture = rows[row_index(rows, lambda r: r['name'] == 'Lecture A')]
    rows[row_index(rows, lambda r: r['student_id'] == 'SIS-U3')].update(
        section_id=lecture['section_id'], name=lecture['name'],
        section_type=lecture['section_type'], operation=lecture['operation'],
    )

    with pytest.raises(PlanRejected):
        ExecutionPlanner().plan(reconcile_rows(canvas, rows))


def test_enrollments_pause_after_each_full_batch(canvas):
    for i in range(25):
        canvas.add_student(f'Student {i}')
    plan = AllocationPlanner().create_plan(canvas.get_students(canvas.course.id), [], SectionConfig(1))
    sleeps = []

    report = _executor(canvas, sleeps).execute(ExecutionPlanner().plan_allocation(plan), canvas.course.id)

    assert report.students_enrolled == 25
    assert sleeps == [1.0, 1.0]


def test_failed_items_are_recorded_and_the_batch_continues(course):
    canvas = course.canvas
    rejected, unreachable = course.unassigned[0], course.unassigned[2]
    canvas.fail_on('enroll_student', lambda section_id, user_id: user_id == rejected)
    canvas.fail_on('enroll_student', lambda section_id, user_id: user_id == unreachable, network_error())
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, build_template(canvas).rows))

    report = _executor(canvas).execute(batch, canvas.course.id)

    assert report.status == 'partial'
    assert report.sections_created == 2
    assert report.students_enrolled == 1
    assert report.facilitators_assigned == 2
    assert [e.kind for e in report.errors] == ['rejected', 'network']
    assert 'Bea Blacktown' in report.errors[0].item


def test_every_item_failing_still_returns_a_full_report(course):
    canvas = course.canvas
    canvas.fail_on('create_section')
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, build_template(canvas).rows))

    report = _executor(canvas).execute(batch, canvas.course.id)

    assert report.status == 'failed'
    assert report.sections_created == 0
    assert len(report.errors) == 2
    assert canvas.calls_to('enroll_student') == []


def test_invalid_reconciliation_is_never_planned(course):
    canvas = course.canvas
    rows = build_template(canvas).rows
    rows[row_index(rows, lambda r: r['name'] == 'Tutorial 1')]['name'] = 'Renamed'
    reconciliation = reconcile_rows(canvas, rows)

    with pytest.raises(PlanRejected) as excinfo:
        ExecutionPlanner().plan(reconciliation)

    assert excinfo.value.reconciliation is reconciliation
    assert _mutations(canvas) == []


def test_omitted_sections_survive_without_deletion_mode(course):
    canvas = course.canvas
    rows = [r for r in build_template(canvas).rows if r['name'] != 'Tutorial 2']
    reconciliation = reconcile_rows(canvas, rows)
    batch = ExecutionPlanner().plan(reconciliation)

    assert reconciliation.valid
    assert len(reconciliation.deletion_warnings) == 1
    assert reconciliation.deletion_warnings[0].student_count == 5
    assert batch.deletions == []

    _executor(canvas).execute(batch, canvas.course.id)
    assert canvas.calls_to('delete_section') == []
    assert canvas.calls_to('unenroll_student') == []
    assert course.tutorial2 in canvas.sections


@pytest.mark.parametrize('options', [
    ExecutionOptions(deletion_mode=True),
    ExecutionOptions(deletion_mode=True, deletion_confirmed=True),
    ExecutionOptions(deletion_mode=True, deletion_confirmed=True, confirmed_section_ids=(1,)),
])
def test_omission_deletion_requires_confirming_the_exact_sections(course, options):
    canvas = course.canvas
    rows = [r for r in build_template(canvas).rows if r['name'] != 'Tutorial 2']

    with pytest.raises(DeletionConfirmationRequired) as excinfo:
        ExecutionPlanner().plan(reconcile_rows(canvas, rows), options)

    assert [c.section_id for c in excinfo.value.candidates] == [course.tutorial2]


def test_stale_confirmation_is_rejected(course):
    canvas = course.canvas
    confirmed = ExecutionOptions(deletion_mode=True, deletion_confirmed=True, confirmed_section_ids=(course.tutorial2,))
    rows = [r for r in build_template(canvas).rows if r['section_type'] != 'tool_created']

    with pytest.raises(DeletionConfirmationRequired):
        ExecutionPlanner().plan(reconcile_rows(canvas, rows), confirmed)


def test_confirmed_omission_unenrolls_members_then_deletes(course):
    canvas = course.canvas
    rows = [r for r in build_template(canvas).rows if r['name'] != 'Tutorial 2']
    options = ExecutionOptions(deletion_mode=True, deletion_confirmed=True, confirmed_section_ids=(course.tutorial2,))
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, rows), options)

    assert [(d.section.id, d.reason) for d in batch.deletions] == [(course.tutorial2, 'omission_deletion')]

    start = len(canvas.calls)
    report = _executor(canvas).execute(batch, canvas.course.id)
    mutations = _mutations(canvas, start)

    assert mutations[-6:] == ['unenroll_student'] * 5 + ['delete_section']
    assert report.status == 'success'
    assert report.sections_deleted == 1
    assert report.students_unenrolled == 5
    assert report.deletion_details[0]['status'] == 'success'
    assert report.deletion_details[0]['students_removed'] == 5
    assert course.tutorial2 not in canvas.sections


def test_explicit_deleted_status_removes_owned_section(course):
    canvas = course.canvas
    rows = build_template(canvas).rows
    for row in rows:
        if row['name'] == 'Tutorial 1':
            row['status'] = 'deleted'
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, rows))

    assert [(d.section.id, d.reason) for d in batch.deletions] == [(course.tutorial1, 'explicit_status_deletion')]

    report = _executor(canvas).execute(batch, canvas.course.id)
    assert report.sections_deleted == 1
    assert report.students_unenrolled == 3
    assert course.tutorial1 not in canvas.sections


def test_section_is_kept_when_a_member_cannot_be_removed(course):
    canvas = course.canvas
    stuck = next(e['id'] for e in canvas.enrollments.values()
                 if e['user_id'] == course.tutorial2_students[2] and e['course_section_id'] == course.tutorial2)
    canvas.fail_on('unenroll_student', lambda course_id, enrollment_id: enrollment_id == stuck)
    rows = [r for r in build_template(canvas).rows if r['name'] != 'Tutorial 2']
    options = ExecutionOptions(deletion_mode=True, deletion_confirmed=True, confirmed_section_ids=(course.tutorial2,))
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, rows), options)

    report = _executor(canvas).execute(batch, canvas.course.id)

    assert canvas.calls_to('delete_section') == []
    assert course.tutorial2 in canvas.sections
    assert report.status == 'partial'
    assert report.students_unenrolled == 4
    assert report.sections_deleted == 0
    assert [e.kind for e in report.errors] == ['rejected', 'blocked']
    assert canvas.active_members(course.tutorial2) == [course.tutorial2_students[2]]


def test_executor_refuses_to_delete_foreign_sections(course):
    canvas = course.canvas
    lecture = next(s for s in canvas.get_sections(canvas.course.id) if s.id == course.lecture)
    batch = OperationBatch(session_id='abc123def456',
                           deletions=[SectionDeletion(lecture, 'explicit_status_deletion')])

    report = _executor(canvas).execute(batch, canvas.course.id)

    assert report.status == 'failed'
    assert report.errors[0].kind == 'ownership'
    assert _mutations(canvas) == []
    assert course.lecture in canvas.sections


def test_rollback_removes_only_the_sessions_sections(course):
    canvas = course.canvas
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, build_template(canvas).rows))
    _executor(canvas).execute(batch, canvas.course.id)
    before = set(canvas.sections)

    report = _executor(canvas).rollback(canvas.course.id, batch.session_id)

    assert report.status == 'success'
    assert report.session_id == batch.session_id
    assert report.sections_deleted == 2
    assert report.students_unenrolled == 3
    assert len(before) - len(canvas.sections) == 2
    assert {course.default, course.lecture, course.tutorial1, course.tutorial2} <= set(canvas.sections)


def test_rollback_of_unknown_session_does_nothing(course):
    canvas = course.canvas
    report = _executor(canvas).rollback(canvas.course.id, 'ffffffffffff')

    assert report.status == 'success'
    assert 'No sections found' in report.message
    assert _mutations(canvas) == []


def test_report_is_frozen_and_serialisable(course):
    canvas = course.canvas
    batch = ExecutionPlanner().plan(reconcile_rows(canvas, build_template(canvas).rows))
    report = _executor(canvas).execute(batch, canvas.course.id)

    with pytest.raises(dataclasses.FrozenInstanceError):
        report.status = 'failed'

    data = report.to_dict()
    assert data['success'] is True
    assert data['results']['sections_created'] == 2
    assert data['session_id'] == batch.session_id
    assert data['errors'] == []


def test_empty_batch_reports_nothing_to_do(canvas):
    report = _executor(canvas).execute(OperationBatch(session_id='abc123def456'), canvas.course.id)

    assert report.status == 'success'
    assert report.message.endswith('Nothing to do')
    assert report.api_calls == 0
