"""
Retainer sync with the Morning (Green Invoice) invoicing provider.

A retainer is the provider's mirror of a recurring payment: the provider
issues tax invoices from it on its own schedule. This module is the only
place that talks to the provider; the scheduler hands it lifecycle changes
through the ``RetainerGateway`` interface and never sees HTTP.

The provider keeps its own clock. Local ``next_due_date`` drives local
payment instances and reporting only, and is never assumed to match the day
the provider actually issues a document.

Code tables:
-----------
frequency   MONTHLY -> 1, QUARTERLY -> 3, YEARLY -> 12
            (provider also has 2 = bi-monthly and 6 = semi-annual, which have
            no local counterpart; DAILY and WEEKLY cannot be mirrored)
status      ACTIVE -> 0, PAUSED -> 1, COMPLETED -> 2, CANCELLED -> 3
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from common.errors import ErrorCode, ExternalSyncError, ValidationFailed

from .models import Frequency, ObligationStatus

logger = logging.getLogger(__name__)


FREQUENCY_CODES = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}

STATUS_CODES = {
    ObligationStatus.ACTIVE: 0,
    ObligationStatus.PAUSED: 1,
    ObligationStatus.COMPLETED: 2,
    ObligationStatus.CANCELLED: 3,
}

TAX_INVOICE_DOCUMENT_TYPE = 305
VAT_INCLUDED = 1
DEFAULT_LINE_DESCRIPTION = 'Service'

# Tokens live for an hour; we treat them as valid for 55 minutes and refresh
# once fewer than 5 remain.
TOKEN_LIFETIME_SECONDS = 55 * 60
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60


def frequency_code(frequency: str) -> int:
    try:
        return FREQUENCY_CODES[frequency]
    except KeyError:
        raise ValidationFailed(
            f"Frequency {frequency} cannot be synced to the invoicing provider. "
            f"Supported: {', '.join(FREQUENCY_CODES)}",
            code=ErrorCode.ERR_UNSUPPORTED_FREQUENCY
        )


@dataclass
class RetainerRequest:
    """Everything the provider needs to open a retainer."""
    client_name: str
    description: str
    amount: Decimal
    frequency: str
    start_date: date
    end_date: Optional[date] = None
    client_email: str = ''
    client_phone: str = ''
    remarks: str = ''


class RetainerGateway:
    """
    Interface the scheduler uses for remote retainer changes.

    Every method maps to exactly one provider call. Implementations raise
    ExternalSyncError when the call fails so the caller can abort its local
    write.
    """

    enabled = False

    def supports_frequency(self, frequency: str) -> bool:
        raise NotImplementedError

    def create_retainer(self, request: RetainerRequest) -> Optional[str]:
        """Open a retainer; returns the provider's id."""
        raise NotImplementedError

    def update_retainer(
        self,
        remote_id: str,
        amount: Optional[Decimal] = None,
        description: Optional[str] = None,
        frequency: Optional[str] = None,
        end_date: Optional[date] = None,
        status: Optional[str] = None,
        clear_end_date: bool = False
    ) -> None:
        raise NotImplementedError

    def list_retainer_documents(self, remote_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def pause_retainer(self, remote_id: str) -> None:
        self.update_retainer(remote_id, status=ObligationStatus.PAUSED)

    def resume_retainer(self, remote_id: str) -> None:
        self.update_retainer(remote_id, status=ObligationStatus.ACTIVE)

    def cancel_retainer(self, remote_id: str) -> None:
        self.update_retainer(remote_id, status=ObligationStatus.CANCELLED)


class NullGateway(RetainerGateway):
    """Used when the integration is off: nothing is mirrored."""

    enabled = False

    def supports_frequency(self, frequency: str) -> bool:
        return frequency in Frequency.values

    def create_retainer(self, request: RetainerRequest) -> Optional[str]:
        return None

    def update_retainer(self, remote_id, amount=None, description=None, frequency=None, end_date=None, status=None,
                        clear_end_date=False):
        return None

    def list_retainer_documents(self, remote_id: str) -> List[Dict[str, Any]]:
        return []


class MorningGateway(RetainerGateway):
    """
    requests-based client for the provider's retainer API.

    Connection failures are retried by the session adapter; HTTP error
    responses are not, since a retried POST could open a second retainer.
    """

    enabled = True

    # Shared by every instance so a token survives between requests.
    _tokens: Dict[Tuple[str, str], Tuple[str, float]] = {}
    _token_lock = threading.Lock()

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        timeout: float = 20,
        max_retries: int = 2,
        currency: str = 'ILS',
        language: str = 'he',
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.currency = currency
        self.language = language
        self.session = session or self._build_session(max_retries)

    @classmethod
    def from_settings(cls) -> 'MorningGateway':
        return cls(
            base_url=settings.MORNING_API_URL,
            api_key=settings.MORNING_API_KEY,
            api_secret=settings.MORNING_API_SECRET,
            timeout=settings.MORNING_TIMEOUT,
            max_retries=settings.MORNING_MAX_RETRIES,
            currency=settings.MORNING_CURRENCY,
            language=settings.MORNING_LANGUAGE
        )

    @classmethod
    def clear_token_cache(cls) -> None:
        with cls._token_lock:
            cls._tokens.clear()

    @staticmethod
    def _build_session(max_retries: int) -> requests.Session:
        retry = Retry(
            total=max_retries,
            connect=max_retries,
            read=0,
            status=0,
            other=0,
            backoff_factor=0.5,
            raise_on_status=False
        )
        session = requests.Session()
        session.mount('https://', HTTPAdapter(max_retries=retry))
        session.mount('http://', HTTPAdapter(max_retries=retry))
        session.headers.update({'Content-Type': 'application/json', 'Accept': 'application/json'})
        return session

    # ==================== Transport ====================

    @staticmethod
    def _error_message(response: requests.Response, fallback: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return fallback
        if isinstance(body, dict) and body.get('errorMessage'):
            return str(body['errorMessage'])
        return fallback

    def _send(self, method: str, path: str, payload=None, token: Optional[str] = None) -> requests.Response:
        headers = {'Authorization': f'Bearer {token}'} if token else None
        try:
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.warning("Invoicing provider unreachable: %s %s (%s)", method, path, exc.__class__.__name__)
            raise ExternalSyncError(f"Invoicing provider unreachable: {exc}")

    def _token(self) -> str:
        cache_key = (self.base_url, self.api_key)
        with self._token_lock:
            cached = self._tokens.get(cache_key)
            if cached and cached[1] > time.monotonic() + TOKEN_REFRESH_MARGIN_SECONDS:
                return cached[0]

            response = self._send('POST', '/account/token', {'id': self.api_key, 'secret': self.api_secret})
            if not response.ok:
                message = self._error_message(response, 'Failed to authenticate with the invoicing provider')
                logger.warning("Invoicing provider authentication failed: HTTP %s %s", response.status_code, message)
                raise ExternalSyncError(message, response.status_code)

            try:
                token = response.json()['token']
            except (ValueError, KeyError, TypeError):
                logger.warning("Invoicing provider returned no token: HTTP %s", response.status_code)
                raise ExternalSyncError("Invoicing provider returned an invalid token response", response.status_code)
            self._tokens[cache_key] = (token, time.monotonic() + TOKEN_LIFETIME_SECONDS)
            return token

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._send(method, path, payload, token=self._token())
        if not response.ok:
            message = self._error_message(response, f"Invoicing provider error: {response.status_code}")
            logger.warning("Invoicing provider rejected %s %s: HTTP %s %s", method, path, response.status_code, message)
            raise ExternalSyncError(message, response.status_code)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning("Invoicing provider sent an unreadable reply to %s %s: HTTP %s", method, path, response.status_code)
            raise ExternalSyncError("Invoicing provider returned an unreadable response", response.status_code)
        return body

    # ==================== Retainers ====================

    def supports_frequency(self, frequency: str) -> bool:
        return frequency in FREQUENCY_CODES

    def _income_line(self, description: str, amount: Decimal) -> Dict[str, Any]:
        return {
            'description': description or DEFAULT_LINE_DESCRIPTION,
            'quantity': 1,
            'price': float(amount),
            'currency': self.currency,
            'vatType': VAT_INCLUDED
        }

    def create_retainer(self, request: RetainerRequest) -> Optional[str]:
        client = {'name': request.client_name, 'add': True}
        if request.client_email:
            client['emails'] = [request.client_email]
        if request.client_phone:
            client['phone'] = request.client_phone

        payload = {
            'type': TAX_INVOICE_DOCUMENT_TYPE,
            'client': client,
            'income': [self._income_line(request.description, request.amount)],
            'frequency': frequency_code(request.frequency),
            'startDate': request.start_date.isoformat(),
            'lang': self.language,
            'currency': self.currency
        }
        if request.end_date:
            payload['endDate'] = request.end_date.isoformat()
        if request.remarks:
            payload['remarks'] = request.remarks

        retainer = self._request('POST', '/retainers', payload)
        logger.info("Created retainer %s for %s", retainer.get('id'), request.client_name)
        return retainer.get('id')

    def update_retainer(
        self,
        remote_id: str,
        amount: Optional[Decimal] = None,
        description: Optional[str] = None,
        frequency: Optional[str] = None,
        end_date: Optional[date] = None,
        status: Optional[str] = None,
        clear_end_date: bool = False
    ) -> None:
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload['income'] = [self._income_line(description or '', amount)]
        if frequency is not None:
            payload['frequency'] = frequency_code(frequency)
        if end_date is not None:
            payload['endDate'] = end_date.isoformat()
        elif clear_end_date:
            payload['endDate'] = None
        if status is not None:
            payload['status'] = STATUS_CODES[status]
        if not payload:
            return
        self._request('PUT', f'/retainers/{remote_id}', payload)

    def list_retainer_documents(self, remote_id: str) -> List[Dict[str, Any]]:
        result = self._request('GET', f'/retainers/{remote_id}/documents')
        return result.get('items', [])


def integration_enabled() -> bool:
    return bool(
        settings.MORNING_ENABLED
        and settings.MORNING_API_KEY
        and settings.MORNING_API_SECRET
    )


def get_gateway() -> RetainerGateway:
    """Return the provider gateway, or a null one when the integration is off."""
    if integration_enabled():
        return MorningGateway.from_settings()
    return NullGateway()
