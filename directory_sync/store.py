"""
Record store client for the internal employee list.

The record store is a hosted list service exposing JSON list endpoints:

    GET    /lists/{list}/items?$select=&$filter=&$orderby=&$top=
    POST   /lists/{list}/items
    PATCH  /lists/{list}/items/{id}
    DELETE /lists/{list}/items/{id}

ListClient is the HTTP layer (authentication headers, TLS trust, paging).
ListRecordStore implements the RecordStoreClient contract on top of it and maps
TargetRecord attributes to list columns.
"""

import json
import ssl
import base64
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from directory_sync.models import TargetRecord
from directory_sync.retry import RetryableError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a record store request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreConnectionError(StoreError, RetryableError):
    """Raised when the record store cannot be reached."""
    pass


class StoreAuthenticationError(StoreError):
    """Raised when the record store rejects our credentials."""
    pass


def odata_quote(value: Any) -> str:
    """Quote a value for use in a filter expression."""
    return "'" + str(value).replace("'", "''") + "'"


class ListClient:
    """
    HTTP client for the hosted list service.

    Connections are kept per thread so that concurrent workers never share an
    http.client connection. Every connection opened is tracked so that close()
    releases the ones opened by worker threads too.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize list client.

        Args:
            config: ``record_store`` configuration dictionary
        """
        self.config = config
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.ssl_context = None
        self.auth_headers = {}
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for record store {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates from a PEM or PKCS12 truststore."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
            else:
                raise StoreError(f"Unsupported truststore type: {truststore_type}")

            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise StoreError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = (self.auth_config.get('method') or '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
        elif auth_method in ('token', 'bearer'):
            self.auth_headers['Authorization'] = f"Bearer {self.auth_config.get('token')}"
        elif auth_method and auth_method != 'none':
            logger.warning(f"Unknown authentication method '{auth_method}' for record store")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create this thread's HTTP connection."""
        connection = getattr(self._local, 'connection', None)
        if connection:
            with self._connections_lock:
                if connection in self._connections:
                    return connection

        if self.parsed_url.scheme == 'https':
            connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            connection = HTTPConnection(self.host, timeout=self.timeout)

        self._local.connection = connection
        with self._connections_lock:
            self._connections.append(connection)
        return connection

    def _drop_connection(self):
        connection = getattr(self._local, 'connection', None)
        self._local.connection = None
        if connection:
            with self._connections_lock:
                if connection in self._connections:
                    self._connections.remove(connection)
            self._close_connection(connection)

    @staticmethod
    def _close_connection(connection):
        try:
            connection.close()
        except Exception as e:
            logger.debug(f"Error closing record store connection: {e}")

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to the list service.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: Endpoint path relative to base_url, or an absolute path from a nextLink
            body: JSON request body
            params: Query string parameters

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            StoreError: If the request fails
        """
        if path.startswith(self.base_path + '/') and self.base_path:
            full_path = path
        else:
            full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params, quote_via=quote, safe="$,'")

        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body, default=_json_default)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError, HTTPException) as e:
            self._drop_connection()
            raise StoreConnectionError(f"Connection error to record store: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 401:
            raise StoreAuthenticationError("Authentication failed for record store", status_code=401)
        if response.status >= 400:
            raise StoreError(f"HTTP {response.status}: {response.reason}", status_code=response.status)

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise StoreError(f"Invalid JSON response from record store: {e}")

    def _items_path(self, list_name: str) -> str:
        return f"/lists/{quote(list_name)}/items"

    def query(self, list_name: str, select: Optional[List[str]] = None, filter: Optional[str] = None,
              order_by: Optional[str] = None, top: Optional[int] = None,
              page_size: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Query list items, following nextLink pages.

        ``top`` caps the total number of returned items; ``page_size`` is the
        per-request page size.
        """
        params = {}
        if select:
            params['$select'] = ','.join(select)
        if filter:
            params['$filter'] = filter
        if order_by:
            params['$orderby'] = order_by
        per_page = top if top is not None and (page_size is None or top < page_size) else page_size
        if per_page:
            params['$top'] = per_page

        items = []
        path = self._items_path(list_name)
        while path:
            response = self.request('GET', path, params=params)
            items.extend(response.get('value', []))

            if top is not None and len(items) >= top:
                return items[:top]

            next_link = response.get('nextLink') or response.get('@odata.nextLink')
            if not next_link:
                break
            parsed = urlparse(next_link)
            path = parsed.path + (f"?{parsed.query}" if parsed.query else '')
            params = None

        return items

    def add(self, list_name: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('POST', self._items_path(list_name), body=fields)

    def update(self, list_name: str, item_id: int, fields: Dict[str, Any]) -> None:
        self.request('PATCH', f"{self._items_path(list_name)}/{item_id}", body=fields)

    def delete(self, list_name: str, item_id: int) -> None:
        self.request('DELETE', f"{self._items_path(list_name)}/{item_id}")

    def list_exists(self, list_name: str) -> bool:
        try:
            self.request('GET', f"/lists/{quote(list_name)}")
            return True
        except StoreError as e:
            if e.status_code == 404:
                return False
            raise

    def close(self):
        """Close every connection this client opened, on any thread."""
        self._local.connection = None
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            self._close_connection(connection)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class RecordStoreClient(ABC):
    """Contract the orchestrator uses to read and write employee records."""

    @abstractmethod
    def query_all(self, select_fields: Optional[List[str]] = None) -> List[TargetRecord]:
        """Return every employee record."""
        pass

    @abstractmethod
    def find_by_external_id_or_email(self, external_id: Optional[str],
                                     email: Optional[str]) -> Optional[TargetRecord]:
        """Return the record linked to ``external_id`` or, failing that, carrying ``email``."""
        pass

    @abstractmethod
    def create(self, fields: Dict[str, Any]) -> int:
        """Create a record and return its store-assigned id."""
        pass

    @abstractmethod
    def update(self, item_id: int, fields: Dict[str, Any]) -> None:
        pass


class ListRecordStore(RecordStoreClient):
    """Employee records held in a list of the hosted list service."""

    COLUMN_MAP = {
        'id': 'Id',
        'title': 'Title',
        'email': 'Email',
        'external_id': 'ExternalId',
        'status': 'Status',
        'first_name': 'FirstName',
        'last_name': 'LastName',
        'job_title': 'JobTitle',
        'department': 'Department',
        'location': 'Location',
        'office_phone': 'OfficePhone',
        'mobile_phone': 'MobilePhone',
        'employee_number': 'EmployeeNumber',
        'employment_type': 'EmploymentType',
        'company_name': 'CompanyName',
        'cost_center': 'CostCenter',
        'last_synced_at': 'LastSyncedAt',
    }

    def __init__(self, client: ListClient, list_name: str = 'Employees', page_size: int = 500):
        self.client = client
        self.list_name = list_name
        self.page_size = page_size
        self._attributes = {column: attr for attr, column in self.COLUMN_MAP.items()}

    def _to_columns(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        columns = {}
        for attr, value in fields.items():
            column = self.COLUMN_MAP.get(attr)
            if column is None:
                raise StoreError(f"Unknown employee field: {attr}")
            if column == 'Id':
                continue
            columns[column] = value.isoformat() if isinstance(value, datetime) else value
        return columns

    def _to_record(self, item: Dict[str, Any]) -> TargetRecord:
        values = {}
        for column, value in item.items():
            attr = self._attributes.get(column)
            if attr:
                values[attr] = value
        if values.get('id') is not None:
            values['id'] = int(values['id'])
        synced = values.get('last_synced_at')
        if isinstance(synced, str):
            try:
                values['last_synced_at'] = datetime.fromisoformat(synced.replace('Z', '+00:00'))
            except ValueError:
                values['last_synced_at'] = None
        if values.get('title') is None:
            values['title'] = ''
        if not values.get('status'):
            values.pop('status', None)
        return TargetRecord(**values)

    def query_all(self, select_fields: Optional[List[str]] = None) -> List[TargetRecord]:
        attrs = select_fields or list(self.COLUMN_MAP)
        columns = [self.COLUMN_MAP[attr] for attr in attrs]
        if 'Id' not in columns:
            columns.insert(0, 'Id')
        items = self.client.query(self.list_name, select=columns, page_size=self.page_size)
        logger.debug(f"Retrieved {len(items)} records from list {self.list_name}")
        return [self._to_record(item) for item in items]

    def find_by_external_id_or_email(self, external_id: Optional[str],
                                     email: Optional[str]) -> Optional[TargetRecord]:
        clauses = []
        if external_id:
            clauses.append(f"ExternalId eq {odata_quote(external_id)}")
        if email:
            clauses.append(f"Email eq {odata_quote(email)}")
        if not clauses:
            return None

        items = self.client.query(self.list_name, select=list(self.COLUMN_MAP.values()),
                                  filter=' or '.join(clauses))
        if not items:
            return None

        records = [self._to_record(item) for item in items]
        # Prefer the linked record over an email-only match
        for record in records:
            if external_id and record.external_id == external_id:
                return record
        return records[0]

    def create(self, fields: Dict[str, Any]) -> int:
        response = self.client.add(self.list_name, self._to_columns(fields))
        item_id = response.get('Id', response.get('id'))
        if item_id is None:
            raise StoreError("Record store did not return an id for the created record")
        return int(item_id)

    def update(self, item_id: int, fields: Dict[str, Any]) -> None:
        self.client.update(self.list_name, item_id, self._to_columns(fields))
