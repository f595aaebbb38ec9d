#!/usr/bin/env python3
"""
Flask Web Application for Canvas Section Manager
Exposes the section allocation and bulk CSV workflows as JSON endpoints.
"""

import base64
import io
import json
import os
import signal
import sys
import traceback
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, send_file
from werkzeug.exceptions import HTTPException

from allocation import AllocationPlan, NameTemplate
from bulk_csv import MAX_FILE_BYTES
from bulk_execution import ExecutionOptions, ExecutionReport
from canvas_client import CanvasAPIError
from section_manager_tool import SectionManagerService, create_service

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_BYTES

# Global service, created on first use
service: Optional[SectionManagerService] = None

REPORT_STATUS_CODES = {
    'validation_failed': 400,
    'confirmation_required': 409,
}


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    app.logger.info(f"Received signal {signum}, shutting down gracefully...")
    sys.exit(0)


def init_app() -> bool:
    """Initialize the section manager service from environment configuration."""
    global service
    if service is not None:
        return True
    try:
        service = create_service()
        return True
    except ValueError as e:
        app.logger.error(f"Failed to initialize Canvas config: {e}")
        return False


def get_error_message(e: Exception) -> str:
    """Extract user-friendly error message from exceptions."""
    if isinstance(e, CanvasAPIError):
        return f"Canvas API Error: {e.message}"
    return str(e)


def error_response(e: Exception):
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, CanvasAPIError):
        app.logger.error(f"Canvas request failed: {e.message} ({e.request_url})")
        return jsonify({'success': False, 'error': get_error_message(e), 'kind': e.kind}), 502
    if isinstance(e, ValueError):
        return jsonify({'success': False, 'error': get_error_message(e)}), 400
    app.logger.error(traceback.format_exc())
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


def not_configured():
    return jsonify({'success': False,
                    'error': 'Failed to initialize Canvas configuration. Please check your environment variables.'}), 503


def report_response(report: ExecutionReport):
    return jsonify(report.to_dict()), REPORT_STATUS_CODES.get(report.status, 200)


def _course_id(source: Dict[str, Any]) -> int:
    value = source.get('course_id') or source.get('courseId')
    if value is None or str(value).strip() == '':
        raise ValueError('course_id is required')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f'course_id must be an integer, got {value!r}')


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _section_ids(value: Any):
    """Confirmed section ids from a JSON list or a comma separated form field."""
    if value is None or value == '':
        return ()
    if isinstance(value, str):
        value = json.loads(value) if value.strip().startswith('[') else value.split(',')
    try:
        return tuple(int(v) for v in value if str(v).strip())
    except (TypeError, ValueError):
        raise ValueError('confirmed_section_ids must be a list of section ids')


def _upload_bytes() -> bytes:
    upload = request.files.get('file')
    if upload is not None:
        if not upload.filename:
            raise ValueError('No file selected')
        if not upload.filename.lower().endswith('.csv'):
            raise ValueError('File must be a CSV')
        return upload.read()
    if request.data:
        return request.data
    raise ValueError('No file uploaded')


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'configured': service is not None})


@app.route('/api/allocations/analyze', methods=['POST'])
def analyze_allocations():
    """Recommend a section count for the course's unassigned students."""
    if not init_app():
        return not_configured()
    try:
        data = request.get_json(silent=True) or {}
        course_id = _course_id(data)
        recommendation = service.analyze(course_id)
        return jsonify({'success': True, 'course_id': course_id, 'analysis': recommendation.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/allocations/generate-plan', methods=['POST'])
def generate_plan():
    if not init_app():
        return not_configured()
    try:
        data = request.get_json(silent=True) or {}
        course_id = _course_id(data)
        section_count = data.get('section_count')
        template = data.get('name_template')
        name_template = None
        if isinstance(template, dict) and template.get('external'):
            name_template = NameTemplate(internal=template.get('internal') or template['external'],
                                         external=template['external'])
        plan, validation = service.generate_plan(
            course_id,
            section_count=int(section_count) if section_count not in (None, '') else None,
            strategy=data.get('strategy') or 'balanced',
            base_name=data.get('base_name') or 'Section',
            name_template=name_template,
        )
        return jsonify({'success': True, 'plan': plan.to_dict(), 'validation': validation.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/allocations/execute', methods=['POST'])
def execute_allocation():
    """Create the sections of a previously generated plan."""
    if not init_app():
        return not_configured()
    try:
        data = request.get_json(silent=True) or {}
        course_id = _course_id(data)
        try:
            plan = AllocationPlan.from_dict(data.get('plan') or {})
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f'Invalid allocation plan: {e}')
        if not plan.sections:
            raise ValueError('Allocation plan has no sections')
        report = service.execute_plan(course_id, plan, assign_current_user=_flag(data.get('assign_current_user')))
        return report_response(report)
    except Exception as e:
        return error_response(e)


@app.route('/api/csv/template')
def csv_template():
    """Download the bulk operations template for a course."""
    if not init_app():
        return not_configured()
    try:
        course_id = _course_id(request.args)
        template = service.build_template(course_id)
        response = send_file(
            io.BytesIO(template.to_csv().encode('utf-8')),
            as_attachment=True,
            download_name=template.filename,
            mimetype='text/csv',
        )
        response.headers['X-Template-Instructions'] = base64.b64encode(template.instructions.encode('utf-8')).decode('ascii')
        response.headers['X-Template-Summary'] = base64.b64encode(json.dumps(template.summary).encode('utf-8')).decode('ascii')
        return response
    except Exception as e:
        return error_response(e)


@app.route('/api/csv/validate', methods=['POST'])
def csv_validate():
    if not init_app():
        return not_configured()
    try:
        course_id = _course_id(request.form or request.args)
        result = service.validate_upload(course_id, _upload_bytes())
        return jsonify({'success': True, 'validation': result.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/csv/execute', methods=['POST'])
def csv_execute():
    """Validate and apply an edited template."""
    if not init_app():
        return not_configured()
    try:
        form = request.form or request.args
        course_id = _course_id(form)
        options = ExecutionOptions(
            deletion_mode=_flag(form.get('deletion_mode')),
            deletion_confirmed=_flag(form.get('deletion_confirmed')),
            confirmed_section_ids=_section_ids(form.get('confirmed_section_ids')),
        )
        return report_response(service.execute_upload(course_id, _upload_bytes(), options))
    except Exception as e:
        return error_response(e)


@app.route('/api/sections/session/<session_id>')
def session_sections(session_id):
    if not init_app():
        return not_configured()
    try:
        course_id = _course_id(request.args)
        sections = service.session_sections(course_id, session_id)
        return jsonify({
            'success': True,
            'session_id': session_id,
            'sections': [
                {'id': s.id, 'name': s.name, 'sis_section_id': s.sis_section_id,
                 'total_students': s.total_students}
                for s in sections
            ],
        })
    except Exception as e:
        return error_response(e)


@app.route('/api/sections/rollback', methods=['POST'])
def rollback():
    """Remove every section created in one session."""
    if not init_app():
        return not_configured()
    try:
        data = request.get_json(silent=True) or {}
        course_id = _course_id(data)
        session_id = (data.get('session_id') or '').strip()
        if not session_id:
            raise ValueError('session_id is required')
        return report_response(service.rollback_session(course_id, session_id))
    except Exception as e:
        return error_response(e)


@app.errorhandler(404)
def not_found_error(error):
    return jsonify({'success': False, 'error': 'Not found'}), 404


@app.errorhandler(413)
def too_large_error(error):
    return jsonify({'success': False, 'error': f'File exceeds limit of {MAX_FILE_BYTES // 1024}KB'}), 413


@app.errorhandler(500)
def internal_error(error):
    app.logger.error(f"Internal server error: {traceback.format_exc()}")
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


if __name__ == '__main__':
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Check for required environment variables
    if not os.getenv('CANVAS_API_TOKEN') or not os.getenv('CANVAS_BASE_URL'):
        print("Missing required environment variables:")
        print("   CANVAS_API_TOKEN - Your Canvas API token")
        print("   CANVAS_BASE_URL - Your Canvas instance URL")
        sys.exit(1)

    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 5000))

    print(f"Starting Flask application on port {port}")
    print(f"Debug mode: {debug_mode}")
    print("Press Ctrl+C to shutdown gracefully")

    app.run(host='0.0.0.0', port=port, debug=debug_mode)
