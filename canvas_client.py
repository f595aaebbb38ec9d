#!/usr/bin/env python3
"""
Canvas REST client for the section manager.

Wraps the handful of Canvas endpoints the section manager needs: course,
roster and section reads, section create/delete, and student/facilitator
enrollment changes.

Setup:
1. Create .env file with CANVAS_API_TOKEN and CANVAS_BASE_URL
2. Ensure the token belongs to an Editing Lecturer (or admin) of the course

Every request bumps ``call_count`` on the client instance so callers can
report how many Canvas calls an operation cost.
"""

import os
import json
import http.client
import urllib.parse
import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from dotenv import load_dotenv

from canvas_models import Course, Student, Facilitator, Section, Enrollment
from section_tags import OwnershipTag

load_dotenv()

logger = logging.getLogger(__name__)

EDITING_LECTURER_ROLE = 'Editing Lecturer'

T = TypeVar('T')


class TokenProvider(Protocol):
    """Protocol for providing Canvas API tokens."""
    def get_token(self) -> str:
        """Get the current API token."""
        ...


class EnvTokenProvider:
    """Token provider that reads from environment variable."""
    def __init__(self, env_var: str = 'CANVAS_API_TOKEN'):
        self.env_var = env_var

    def get_token(self) -> str:
        token = os.getenv(self.env_var)
        if not token or token == 'PLACEHOLDERAPIKEY':
            raise ValueError(f"API token not found in environment variable {self.env_var}")
        return token


@dataclass
class CanvasConfig:
    """Configuration settings for Canvas API and allocation operations."""
    api_token: str
    base_url: str
    per_page: int = 100
    timeout: int = 30
    request_delay: float = 0.2
    target_ratio: int = 25
    max_ratio: int = 50
    enrollment_batch_size: int = 10
    enrollment_batch_pause: float = 1.0
    audit_log_path: str = './logs/section_audit.csv'

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.api_token or self.api_token == 'PLACEHOLDERAPIKEY':
            raise ValueError("API token is required and cannot be placeholder")

        if not self.base_url:
            raise ValueError("Base URL is required")

        if self.target_ratio < 1 or self.max_ratio < 1:
            raise ValueError("Section ratios must be positive")

        if self.target_ratio > self.max_ratio:
            raise ValueError(f"Target ratio {self.target_ratio} exceeds maximum ratio {self.max_ratio}")

        if self.enrollment_batch_size < 1:
            raise ValueError("Enrollment batch size must be at least 1")

        # Ensure base URL doesn't end with slash
        self.base_url = self.base_url.rstrip('/')


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_config() -> CanvasConfig:
    """Get Canvas API configuration from environment variables."""
    return CanvasConfig(
        api_token=os.getenv('CANVAS_API_TOKEN'),
        base_url=os.getenv('CANVAS_BASE_URL'),
        per_page=_env_int('CANVAS_PER_PAGE', 100),
        timeout=_env_int('CANVAS_TIMEOUT', 30),
        request_delay=_env_float('CANVAS_REQUEST_DELAY', 0.2),
        target_ratio=_env_int('SECTION_TARGET_RATIO', 25),
        max_ratio=_env_int('SECTION_MAX_RATIO', 50),
        enrollment_batch_size=_env_int('ENROLLMENT_BATCH_SIZE', 10),
        enrollment_batch_pause=_env_float('ENROLLMENT_BATCH_PAUSE', 1.0),
        audit_log_path=os.getenv('SECTION_AUDIT_LOG', './logs/section_audit.csv'),
    )


class CanvasAPIError(Exception):
    """Canvas rejected a request. Carries enough context to report per item."""
    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[str] = None, request_url: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return 'rejected'


class CanvasNetworkError(CanvasAPIError):
    """Canvas could not be reached at all."""

    @property
    def kind(self) -> str:
        return 'network'


def _parse(factory: Callable[[Dict[str, Any]], T], data: Any, path: str) -> T:
    """Build a model from a Canvas payload; a malformed payload is a CanvasAPIError."""
    try:
        return factory(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CanvasAPIError(f"Unexpected response from Canvas: {e!r}", response_body=str(data)[:500],
                             request_url=path)


class CourseSystem(Protocol):
    """What the section manager needs from the remote course system."""
    call_count: int

    def get_course(self, course_id: int) -> Course: ...

    def get_students(self, course_id: int) -> List[Student]: ...

    def get_facilitators(self, course_id: int) -> List[Facilitator]: ...

    def get_sections(self, course_id: int) -> List[Section]: ...

    def get_section_members(self, section_id: int) -> List[Enrollment]: ...

    def create_section(self, course_id: int, name: str, tag: OwnershipTag, section_number: int = 1,
                       start_at: Optional[str] = None, end_at: Optional[str] = None) -> Section: ...

    def delete_section(self, section_id: int) -> None: ...

    def enroll_student(self, section_id: int, user_id: int) -> Enrollment: ...

    def unenroll_student(self, course_id: int, enrollment_id: int) -> None: ...

    def get_current_user(self) -> Dict[str, Any]: ...

    def assign_as_facilitator(self, course_id: int, user_id: int,
                              section_id: Optional[int] = None) -> Enrollment: ...


class CanvasAPIClient:
    """Canvas API client with request pacing, call counting and error handling."""

    def __init__(self, token_provider: TokenProvider, config: CanvasConfig):
        self.token_provider = token_provider
        self.config = config
        self.call_count = 0
        self._count_lock = threading.Lock()

    def _rate_limit(self):
        """Simple delay between requests to stay clear of Canvas throttling."""
        if self.config.request_delay > 0:
            time.sleep(self.config.request_delay)

    def _make_request(self, method: str, path: str, params: Optional[Dict] = None,
                      data: Optional[Dict] = None) -> Any:
        """Make HTTP request to Canvas API with error handling."""
        self._rate_limit()
        with self._count_lock:
            self.call_count += 1
            call_number = self.call_count

        parsed_url = urllib.parse.urlparse(self.config.base_url)
        host = parsed_url.hostname
        port = parsed_url.port or (443 if parsed_url.scheme == 'https' else 80)

        full_path = path
        if params:
            # doseq=True encodes list params correctly (include[]=a&include[]=b)
            query_string = urllib.parse.urlencode(params, doseq=True)
            separator = '&' if '?' in full_path else '?'
            full_path += separator + query_string

        logger.debug(f"Canvas API call #{call_number}: {method} {full_path}")

        try:
            token = self.token_provider.get_token()
        except ValueError as e:
            raise CanvasAPIError(f"Canvas API token unavailable: {e}", request_url=full_path)

        if parsed_url.scheme == 'https':
            conn = http.client.HTTPSConnection(host, port, timeout=self.config.timeout)
        else:
            conn = http.client.HTTPConnection(host, port, timeout=self.config.timeout)

        try:
            headers = {
                'Authorization': f'Bearer {token}',
                'Content-Type': 'application/json',
                'Accept': 'application/json'
            }

            request_body = None
            if data:
                request_body = json.dumps(data).encode('utf-8')

            conn.request(method, full_path, body=request_body, headers=headers)
            response = conn.getresponse()
            try:
                response_body = response.read().decode('utf-8')
            except UnicodeDecodeError as e:
                raise CanvasAPIError(f"Response is not valid UTF-8: {e}", response.status, request_url=full_path)

            if response.status in [200, 201, 204]:
                if response_body.strip():
                    try:
                        return json.loads(response_body)
                    except json.JSONDecodeError as e:
                        raise CanvasAPIError(f"Invalid JSON response: {e}", response.status, response_body, full_path)
                return {}
            elif response.status == 401:
                logger.error(f"Authentication failed (401): {response_body}")
                raise CanvasAPIError(
                    f"Authentication failed: {response.status} {response.reason}. "
                    f"Please check your API token and try again later.",
                    response.status, response_body, full_path
                )
            elif response.status == 403:
                logger.error(f"Permission denied (403): {response_body}")
                raise CanvasAPIError(
                    f"Permission denied: {response.status} {response.reason}. "
                    f"You may not have the necessary permissions for this operation.",
                    response.status, response_body, full_path
                )
            elif response.status == 429:
                logger.error(f"Rate limit exceeded (429): {response_body}")
                raise CanvasAPIError(
                    f"Rate limit exceeded: {response.status} {response.reason}. "
                    f"Please wait a few minutes and try again.",
                    response.status, response_body, full_path
                )
            else:
                logger.error(f"API Error Response: {response_body}")
                raise CanvasAPIError(
                    f"API request failed: {response.status} {response.reason}",
                    response.status, response_body, full_path
                )

        except (http.client.HTTPException, OSError) as e:
            raise CanvasNetworkError(f"Network error - unable to reach Canvas: {e}", request_url=full_path)
        finally:
            conn.close()

    def get_paginated_data(self, path: str, params: Optional[Dict] = None,
                           max_pages: int = 50) -> List[Dict[str, Any]]:
        """Retrieve every page of a Canvas list endpoint.

        Stops on a short page, an empty page, a repeated page or ``max_pages``.
        Errors propagate; there is no retry loop.
        """
        params = dict(params or {})
        params.setdefault('per_page', self.config.per_page)

        all_data: List[Dict[str, Any]] = []
        seen_pages = set()

        for page in range(1, max_pages + 1):
            params['page'] = page
            response = self._make_request('GET', path, params)

            if isinstance(response, list):
                data = response
            elif isinstance(response, dict) and 'data' in response:
                data = response['data']
            else:
                data = [response] if response else []

            if not data:
                break

            # Same ids twice means Canvas is ignoring the page parameter
            page_key = tuple(sorted(item.get('id', 0) for item in data if isinstance(item, dict)))
            if page_key in seen_pages:
                logger.warning(f"Detected duplicate data on page {page} of {path}. Stopping pagination.")
                break
            seen_pages.add(page_key)

            all_data.extend(data)
            if len(data) < params['per_page']:
                break
        else:
            logger.warning(f"Reached page limit ({max_pages}) for {path}. Stopping pagination.")

        logger.info(f"Retrieved {len(all_data)} items from {path}")
        return all_data

    # Reads

    def get_course(self, course_id: int) -> Course:
        path = f'/api/v1/courses/{course_id}'
        return _parse(Course.from_canvas, self._make_request('GET', path), path)

    def _get_course_users(self, course_id: int, enrollment_type: str) -> List[Dict[str, Any]]:
        params = {
            'enrollment_type[]': [enrollment_type],
            'include[]': ['enrollments', 'email'],
        }
        return self.get_paginated_data(f'/api/v1/courses/{course_id}/users', params)

    def get_students(self, course_id: int) -> List[Student]:
        users = self._get_course_users(course_id, 'student')
        return [_parse(Student.from_canvas, u, f'/api/v1/courses/{course_id}/users') for u in users]

    def get_facilitators(self, course_id: int) -> List[Facilitator]:
        """Teachers of the course, excluding Editing Lecturers."""
        teachers = [_parse(lambda u: Facilitator.from_canvas(u, course_id), u, f'/api/v1/courses/{course_id}/users')
                    for u in self._get_course_users(course_id, 'teacher')]
        return [t for t in teachers if t.role != EDITING_LECTURER_ROLE]

    def get_sections(self, course_id: int) -> List[Section]:
        params = {'include[]': ['students', 'total_students']}
        path = f'/api/v1/courses/{course_id}/sections'
        return [_parse(Section.from_canvas, s, path) for s in self.get_paginated_data(path, params)]

    def get_section_members(self, section_id: int) -> List[Enrollment]:
        """Active student enrollments of one section."""
        params = {'type[]': ['StudentEnrollment'], 'state[]': ['active']}
        path = f'/api/v1/sections/{section_id}/enrollments'
        enrollments = [_parse(Enrollment.from_canvas, e, path) for e in self.get_paginated_data(path, params)]
        return [e for e in enrollments if e.is_active_student]

    def get_current_user(self) -> Dict[str, Any]:
        return self._make_request('GET', '/api/v1/users/self')

    # Mutations

    def create_section(self, course_id: int, name: str, tag: OwnershipTag, section_number: int = 1,
                       start_at: Optional[str] = None, end_at: Optional[str] = None) -> Section:
        data = {
            'course_section': {
                'name': name,
                'sis_section_id': tag.to_sis_section_id(section_number),
                'integration_id': tag.to_integration_id(),
                'start_at': start_at,
                'end_at': end_at,
            }
        }
        path = f'/api/v1/courses/{course_id}/sections'
        return _parse(Section.from_canvas, self._make_request('POST', path, data=data), path)

    def delete_section(self, section_id: int) -> None:
        self._make_request('DELETE', f'/api/v1/sections/{section_id}')

    def enroll_student(self, section_id: int, user_id: int) -> Enrollment:
        data = {
            'enrollment': {
                'user_id': user_id,
                'type': 'StudentEnrollment',
                'enrollment_state': 'active',
            }
        }
        path = f'/api/v1/sections/{section_id}/enrollments'
        return _parse(Enrollment.from_canvas, self._make_request('POST', path, data=data), path)

    def unenroll_student(self, course_id: int, enrollment_id: int) -> None:
        self._make_request('DELETE', f'/api/v1/courses/{course_id}/enrollments/{enrollment_id}', params={'task': 'delete'})

    def assign_as_facilitator(self, course_id: int, user_id: int,
                              section_id: Optional[int] = None) -> Enrollment:
        """Enroll a user as Teacher, course-wide or in one section."""
        data = {
            'enrollment': {
                'user_id': user_id,
                'type': 'TeacherEnrollment',
                'enrollment_state': 'active',
            }
        }
        if section_id:
            path = f'/api/v1/sections/{section_id}/enrollments'
        else:
            path = f'/api/v1/courses/{course_id}/enrollments'
        logger.info(f"Assigning user {user_id} as Teacher in course {course_id}"
                    + (f" (section {section_id})" if section_id else " (course-wide)"))
        return _parse(Enrollment.from_canvas, self._make_request('POST', path, data=data), path)
