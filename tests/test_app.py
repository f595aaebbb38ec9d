import base64
import io
import json

import pytest

import app as app_module
from bulk_csv import MAX_FILE_BYTES
from conftest import build_template, to_csv
from section_manager_tool import SectionManagerService


@pytest.fixture
def client(course, config, monkeypatch):
    monkeypatch.setattr(app_module, 'service', SectionManagerService(course.canvas, config))
    app_module.app.config['TESTING'] = True
    with app_module.app.test_client() as client:
        yield client


def _upload(csv_text, filename='upload.csv', **form):
    data = {'course_id': '101', 'file': (io.BytesIO(csv_text.encode('utf-8')), filename)}
    data.update(form)
    return data


def _without_tutorial2(course):
    return to_csv([r for r in build_template(course.canvas).rows if r['name'] != 'Tutorial 2'])


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok', 'configured': True}


def test_analyze(client):
    response = client.post('/api/allocations/analyze', json={'course_id': 101})

    assert response.status_code == 200
    analysis = response.get_json()['analysis']
    assert analysis['students']['unassigned'] == 3
    assert analysis['suggested_sections'] == 1


def test_analyze_requires_course_id(client):
    response = client.post('/api/allocations/analyze', json={})

    assert response.status_code == 400
    assert response.get_json()['error'] == 'course_id is required'


def test_generated_plan_can_be_executed(client, course):
    generated = client.post('/api/allocations/generate-plan',
                            json={'course_id': 101, 'section_count': 2, 'base_name': 'Group'}).get_json()
    assert generated['validation']['valid'] is True
    assert [s['external_name'] for s in generated['plan']['sections']] == ['Group 1', 'Group 2']

    response = client.post('/api/allocations/execute', json={'course_id': 101, 'plan': generated['plan']})

    assert response.status_code == 200
    body = response.get_json()
    assert body['status'] == 'success'
    assert body['results']['sections_created'] == 2
    assert body['results']['students_enrolled'] == 3


def test_execute_rejects_empty_plan(client, course):
    response = client.post('/api/allocations/execute', json={'course_id': 101, 'plan': {'sections': []}})

    assert response.status_code == 400
    assert course.canvas.calls_to('create_section') == []


def test_template_download(client):
    response = client.get('/api/csv/template?course_id=101')

    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert 'attachment' in response.headers['Content-Disposition']
    summary = json.loads(base64.b64decode(response.headers['X-Template-Summary']))
    assert summary['proposed_sections'] == 2
    assert response.data.decode('utf-8').startswith('section_id,course_id,')


def test_validate_unmodified_template(client, course):
    response = client.post('/api/csv/validate', data=_upload(build_template(course.canvas).to_csv()),
                           content_type='multipart/form-data')

    assert response.status_code == 200
    validation = response.get_json()['validation']
    assert validation['valid'] is True
    assert validation['errors'] == []


def test_validate_requires_csv_filename(client, course):
    response = client.post('/api/csv/validate', data=_upload('x', filename='upload.txt'),
                           content_type='multipart/form-data')

    assert response.status_code == 400
    assert response.get_json()['error'] == 'File must be a CSV'


def test_csv_execute_requires_deletion_confirmation(client, course):
    response = client.post('/api/csv/execute', data=_upload(_without_tutorial2(course), deletion_mode='true'),
                           content_type='multipart/form-data')

    assert response.status_code == 409
    body = response.get_json()
    assert body['status'] == 'confirmation_required'
    assert body['details']['candidate_ids'] == [course.tutorial2]
    assert course.tutorial2 in course.canvas.sections


def test_csv_execute_with_confirmation_deletes(client, course):
    form = _upload(_without_tutorial2(course), deletion_mode='true', deletion_confirmed='true',
                   confirmed_section_ids=str(course.tutorial2))

    response = client.post('/api/csv/execute', data=form, content_type='multipart/form-data')

    assert response.status_code == 200
    assert response.get_json()['results']['sections_deleted'] == 1
    assert course.tutorial2 not in course.canvas.sections


def test_session_listing_and_rollback(client, course):
    generated = client.post('/api/allocations/generate-plan', json={'course_id': 101, 'section_count': 2}).get_json()
    session_id = client.post('/api/allocations/execute',
                             json={'course_id': 101, 'plan': generated['plan']}).get_json()['session_id']

    listing = client.get(f'/api/sections/session/{session_id}?course_id=101').get_json()
    assert len(listing['sections']) == 2

    response = client.post('/api/sections/rollback', json={'course_id': 101, 'session_id': session_id})

    assert response.status_code == 200
    assert response.get_json()['results']['sections_deleted'] == 2
    assert client.get(f'/api/sections/session/{session_id}?course_id=101').get_json()['sections'] == []


def test_rollback_requires_session_id(client):
    response = client.post('/api/sections/rollback', json={'course_id': 101})

    assert response.status_code == 400


def test_canvas_failures_map_to_bad_gateway(client, course):
    course.canvas.fail_on('get_sections')

    response = client.get('/api/csv/template?course_id=101')

    assert response.status_code == 502
    assert response.get_json()['kind'] == 'rejected'


def test_unknown_route_returns_json(client):
    response = client.get('/api/nope')

    assert response.status_code == 404
    assert response.get_json()['success'] is False


def test_oversized_upload_is_rejected(client):
    response = client.post('/api/csv/validate', data=_upload('x' * (MAX_FILE_BYTES + 1)),
                           content_type='multipart/form-data')

    assert response.status_code == 413
    assert 'exceeds limit' in response.get_json()['error']
