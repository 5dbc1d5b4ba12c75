"""
Client side of the GlowGuide flow.

The anonymous analysis is cached in session storage together with its
expiry. While the countdown runs the user sees the free preview; after
payment and sign-in the cached ticket id is exchanged for a persisted
analysis and the full report.
"""
import base64
import json
import logging
import math
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import requests

from .storage import SessionStorage

logger = logging.getLogger(__name__)

TEMP_ANALYSIS_KEY = 'glowguide_temp_analysis'
REAL_ANALYSIS_ID_KEY = 'glowguide_real_analysis_id'

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_TIMEOUT = 90

# App states
LANDING = 'landing'
UPLOAD = 'upload'
PREVIEW = 'preview'
PAYMENT = 'payment'
POST_PAYMENT_AUTH = 'post-payment-auth'
PLAN = 'plan'
PROGRESS = 'progress'

PAYMENT_SUCCESS_PARAM = 'payment_success'


class GlowGuideClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ImageSelectionError(GlowGuideClientError):
    pass


def encode_image_file(path) -> str:
    """Read an image file into a ``data:`` URL, enforcing the upload rules"""
    path = Path(path)
    mime, _ = mimetypes.guess_type(path.name)
    if not mime or not mime.startswith('image/'):
        raise ImageSelectionError('Please select an image file')

    raw = path.read_bytes()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise ImageSelectionError('Image size must be less than 5MB')

    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def format_countdown(seconds: int) -> str:
    """MM:SS"""
    seconds = max(0, int(seconds))
    minutes, remaining = divmod(seconds, 60)
    return f"{minutes:02d}:{remaining:02d}"


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_payment_return(return_url: Optional[str]) -> bool:
    """True for the checkout success redirect (``?payment_success=true``)"""
    if not return_url:
        return False
    values = parse_qs(urlparse(return_url).query).get(PAYMENT_SUCCESS_PARAM, [])
    return 'true' in values


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GlowGuideClient:
    def __init__(self, base_url: str, storage: Optional[SessionStorage] = None,
                 http=None, clock: Callable[[], datetime] = _utcnow,
                 timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.storage = storage if storage is not None else SessionStorage()
        self.http = http if http is not None else requests.Session()
        self.clock = clock
        self.timeout = timeout
        self.access_token: Optional[str] = None
        self.user: Optional[dict] = None
        self.state = LANDING

    # ==================== HTTP ====================

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def _auth_headers(self) -> dict:
        if not self.access_token:
            raise GlowGuideClientError('Authentication required')
        return {'Authorization': f"Bearer {self.access_token}"}

    def _request(self, method: str, path: str, fallback_error: str, **kwargs) -> dict:
        try:
            response = getattr(self.http, method)(self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"{method.upper()} {path} failed: {e}")
            raise GlowGuideClientError(fallback_error)

        if response.status_code >= 400:
            raise GlowGuideClientError(
                self._error_message(response, fallback_error), response.status_code
            )
        return response.json()

    @staticmethod
    def _error_message(response, fallback: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return fallback
        if not isinstance(body, dict):
            return fallback
        detail = body.get('detail', body.get('error'))
        if isinstance(detail, str) and detail:
            return detail
        if isinstance(detail, dict):
            return detail.get('message') or detail.get('error') or fallback
        return fallback

    # ==================== AUTH ====================

    def sign_up(self, email: str, password: str, name: str = '') -> dict:
        data = self._request('post', '/auth/register', 'Failed to sign up',
                             json={'email': email, 'password': password, 'name': name})
        self.access_token = data['access_token']
        self.user = data['user']
        return self.user

    def sign_in(self, email: str, password: str) -> dict:
        data = self._request('post', '/auth/login', 'Failed to sign in',
                             json={'email': email, 'password': password})
        self.access_token = data['access_token']
        self.user = data['user']
        return self.user

    def sign_out(self):
        self.access_token = None
        self.user = None
        self.clear_temp_data()
        self.state = LANDING

    # ==================== TEMP ANALYSIS ====================

    def analyze_photo(self, image_data: str) -> dict:
        """Anonymous analysis; the result is cached in session storage"""
        result = self._request('post', '/analyze-photo', 'Failed to analyze photo',
                               json={'imageData': image_data})
        self.storage.set_item(TEMP_ANALYSIS_KEY, json.dumps(result))
        self.storage.remove_item(REAL_ANALYSIS_ID_KEY)
        self.state = PREVIEW
        return result

    def get_temp_analysis(self) -> Optional[dict]:
        """Cached temp analysis, or None when missing or not a usable ticket"""
        stored = self.storage.get_item(TEMP_ANALYSIS_KEY)
        if not stored:
            return None
        try:
            result = json.loads(stored)
        except json.JSONDecodeError:
            return None
        if not isinstance(result, dict):
            return None
        if not result.get('temp_analysis_id') or not result.get('expires_at'):
            return None
        return result

    def seconds_remaining(self, temp_analysis: Optional[dict] = None) -> int:
        temp_analysis = temp_analysis or self.get_temp_analysis()
        if not temp_analysis or not temp_analysis.get('expires_at'):
            return 0
        try:
            expires_at = parse_timestamp(temp_analysis['expires_at'])
        except (TypeError, ValueError):
            return 0
        return max(0, math.floor((expires_at - self.clock()).total_seconds()))

    def countdown(self) -> str:
        return format_countdown(self.seconds_remaining())

    def tick(self) -> str:
        """Advance the preview gate: an expired preview sends the user back to upload"""
        if self.seconds_remaining() <= 0:
            self.clear_temp_data()
            self.state = UPLOAD
        else:
            self.state = PREVIEW
        return self.state

    def resume(self, return_url: Optional[str] = None) -> str:
        """
        State to open the app in. Coming back from checkout leads to the
        post-payment sign-in; otherwise a live cached analysis reopens the
        preview and anything else lands on the start page.
        """
        temp_analysis = self.get_temp_analysis()
        if is_payment_return(return_url):
            self.state = POST_PAYMENT_AUTH
        elif temp_analysis is not None and self.seconds_remaining(temp_analysis) > 0:
            self.state = PREVIEW
        else:
            self.clear_temp_data()
            self.state = LANDING
        return self.state

    def clear_temp_data(self):
        self.storage.remove_item(TEMP_ANALYSIS_KEY)
        self.storage.remove_item(REAL_ANALYSIS_ID_KEY)

    # ==================== PAYMENT ====================

    def get_products(self) -> list:
        return self._request('get', '/subscription/products', 'Failed to load products')

    def start_checkout(self, price_id: str, success_url: str = '/?payment_success=true',
                       cancel_url: str = '/') -> str:
        self.state = PAYMENT
        if not self.access_token:
            raise GlowGuideClientError('Please sign in to continue')
        data = self._request('post', '/subscription/checkout', 'Failed to start checkout',
                             headers=self._auth_headers(),
                             json={'price_id': price_id, 'success_url': success_url,
                                   'cancel_url': cancel_url})
        if not data.get('url'):
            raise GlowGuideClientError('No checkout URL received')
        return data['url']

    def get_subscription(self) -> dict:
        return self._request('get', '/subscription/status', 'Failed to load subscription',
                             headers=self._auth_headers())

    # ==================== PERSISTED ANALYSIS ====================

    def save_analysis_to_database(self) -> str:
        """Promote the cached temp analysis; returns the persisted analysis id"""
        headers = self._auth_headers()

        temp_analysis = self.get_temp_analysis()
        if not temp_analysis:
            raise GlowGuideClientError('No temporary analysis data found')

        data = self._request('post', '/save-analysis-post-payment', 'Failed to save analysis',
                             headers=headers,
                             json={'tempAnalysisId': temp_analysis.get('temp_analysis_id')})

        self.storage.set_item(REAL_ANALYSIS_ID_KEY, data['analysis_id'])
        return data['analysis_id']

    def get_full_report(self, analysis_id: Optional[str] = None) -> dict:
        headers = self._auth_headers()

        target_id = analysis_id or self.storage.get_item(REAL_ANALYSIS_ID_KEY)
        if not target_id:
            raise GlowGuideClientError('No analysis ID found')

        return self._request('get', f"/get-full-report/{target_id}", 'Failed to get full report',
                             headers=headers)

    def complete_post_payment(self) -> dict:
        """After payment and sign-in: save the temp analysis, then load the full report"""
        analysis_id = self.save_analysis_to_database()
        report = self.get_full_report(analysis_id)
        self.state = PLAN
        return report

    def get_progress(self) -> dict:
        progress = self._request('get', '/progress', 'Failed to load progress',
                                 headers=self._auth_headers())
        self.state = PROGRESS
        return progress
