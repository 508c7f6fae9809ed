"""
Directory client for reading user identities.

DirectoryClient is the contract the sync orchestrator consumes. LDAPDirectoryClient
implements it against Active Directory with ldap3: paged user listing, lookup by
objectGUID / UPN / mail, group membership through memberOf, and the DirSync
control as an incremental change feed whose cookie serves as the continuation token.
"""

import ssl
import time
import uuid
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Tuple

from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import (
    LDAPException, LDAPSocketOpenError, LDAPBindError, LDAPCommunicationError
)
from ldap3.utils.conv import escape_filter_chars, escape_bytes

from directory_sync.models import DeltaPage, SourceRecord, Tombstone
from directory_sync.retry import RetryableError

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
MATCHING_RULE_IN_CHAIN = '1.2.840.113556.1.4.1941'
ACCOUNT_DISABLED_FLAG = 0x2


class DirectoryConnectionError(Exception):
    """Raised when the directory connection fails."""
    pass


class DirectoryQueryError(Exception):
    """Raised when a directory query fails."""
    pass


class DirectoryCommunicationError(DirectoryQueryError, RetryableError):
    """Query failed because the connection to the directory broke down."""
    pass


class DirectoryClient(ABC):
    """Contract for reading identities from an external directory."""

    @abstractmethod
    def list_users(self, select_fields: Optional[List[str]] = None,
                   filters: Optional[Dict[str, Any]] = None) -> List[SourceRecord]:
        """
        Return all user records, fully materialized across pages.

        ``filters`` may narrow the query server-side (``account_enabled``,
        ``departments``); callers must not rely on it being applied.
        """
        pass

    @abstractmethod
    def get_user(self, identifier: str) -> Optional[SourceRecord]:
        """Return the user with the given external id, principal name or email, or None."""
        pass

    @abstractmethod
    def list_group_members(self, group_id: str) -> List[str]:
        """Return the external ids of the users in a group."""
        pass

    @abstractmethod
    def query_delta(self, token: Optional[str]) -> DeltaPage:
        """
        Return one page of the change feed.

        Args:
            token: Continuation token from a previous page or run; None starts from the beginning
        """
        pass

    def close(self):
        pass


class LDAPDirectoryClient(DirectoryClient):
    """
    Active Directory client built on ldap3.

    The change feed uses the DirSync control, which requires the bind account to
    hold the "Replicating Directory Changes" right on the naming context.
    """

    # SourceRecord field -> LDAP attribute
    ATTRIBUTE_MAP = {
        'external_id': 'objectGUID',
        'principal_name': 'userPrincipalName',
        'display_name': 'displayName',
        'given_name': 'givenName',
        'surname': 'sn',
        'email': 'mail',
        'job_title': 'title',
        'department': 'department',
        'office_location': 'physicalDeliveryOfficeName',
        'business_phones': 'telephoneNumber',
        'mobile_phone': 'mobile',
        'employee_id': 'employeeID',
        'employee_type': 'employeeType',
        'account_enabled': 'userAccountControl',
        'company_name': 'company',
    }

    REQUIRED_ATTRIBUTES = ('objectGUID', 'userPrincipalName', 'userAccountControl')

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory client with configuration.

        Args:
            config: ``directory`` configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_base_dn = config.get('group_base_dn', '')
        self.user_filter = config.get('user_filter', '(&(objectCategory=person)(objectClass=user))')
        self.delta_filter = config.get('delta_filter', '(objectClass=user)')
        self.delta_base_dn = config.get('delta_base_dn', '')
        self.nested_groups = config.get('nested_groups', False)
        self.cost_center_attribute = config.get('cost_center_attribute')

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 500)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> bool:
        """
        Establish connection to the directory with retry logic.

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise DirectoryConnectionError(f"Failed to start TLS: {self.connection.result}")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Connected and bound to directory {self.server_url}")
                return True

            except (LDAPException, DirectoryConnectionError) as e:
                last_exception = e
                logger.warning(f"Directory connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._unbind_quietly()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        raise DirectoryConnectionError(
            f"Failed to connect to directory after {max_retries} attempts: {last_exception}"
        )

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("Directory certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def _unbind_quietly(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind failure: {e}")
            self.connection = None

    def disconnect(self):
        """Close directory connection."""
        if self.connection and self._connected:
            self._unbind_quietly()
        self._connected = False

    close = disconnect

    def _require_connection(self):
        if not self._connected:
            raise DirectoryQueryError("Not connected to directory")

    def _get_domain_base(self) -> str:
        """Derive the naming context from the bind DN or server info."""
        dc_parts = [part.strip() for part in self.bind_dn.split(',') if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryQueryError("Cannot determine domain base DN")

    def _attributes_for(self, select_fields: Optional[List[str]]) -> List[str]:
        if select_fields:
            attributes = [self.ATTRIBUTE_MAP[name] for name in select_fields if name in self.ATTRIBUTE_MAP]
        else:
            attributes = list(self.ATTRIBUTE_MAP.values())
        if not select_fields or 'business_phones' in select_fields:
            attributes.append('otherTelephone')
        if self.cost_center_attribute:
            attributes.append(self.cost_center_attribute)
        for required in self.REQUIRED_ATTRIBUTES:
            if required not in attributes:
                attributes.append(required)
        return attributes

    def _search(self, search_base: str, search_filter: str, attributes: List[str]) -> List[Dict[str, Any]]:
        """Run a paged subtree search and return all entry dictionaries."""
        self._require_connection()

        entries = []
        cookie = None
        page_count = 0

        try:
            while True:
                self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
                result = self.connection.result or {}
                if result.get('result', 0) not in (0, 4):  # success, sizeLimitExceeded
                    raise DirectoryQueryError(f"Search failed: {result.get('description')} {result.get('message', '')}")

                page_count += 1
                page = [entry for entry in (self.connection.response or []) if entry.get('type') == 'searchResEntry']
                entries.extend(page)
                logger.debug(f"Page {page_count}: retrieved {len(page)} entries")

                cookie = (result.get('controls') or {}).get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
                if not cookie:
                    break
        except LDAPCommunicationError as e:
            raise DirectoryCommunicationError(f"Directory connection lost during search: {e}")
        except LDAPException as e:
            raise DirectoryQueryError(f"Directory search failed: {e}")

        return entries

    def _build_user_filter(self, filters: Optional[Dict[str, Any]]) -> str:
        clauses = [self.user_filter]
        filters = filters or {}

        if filters.get('account_enabled') is True:
            clauses.append(f'(!(userAccountControl:1.2.840.113556.1.4.803:={ACCOUNT_DISABLED_FLAG}))')

        departments = filters.get('departments') or []
        if departments:
            options = ''.join(f'(department={escape_filter_chars(d)})' for d in departments)
            clauses.append(f'(|{options})' if len(departments) > 1 else options)

        return clauses[0] if len(clauses) == 1 else '(&' + ''.join(clauses) + ')'

    def list_users(self, select_fields: Optional[List[str]] = None,
                   filters: Optional[Dict[str, Any]] = None) -> List[SourceRecord]:
        search_base = self.user_base_dn or self._get_domain_base()
        search_filter = self._build_user_filter(filters)
        logger.info(f"Listing directory users under {search_base}")

        entries = self._search(search_base, search_filter, self._attributes_for(select_fields))
        users = []
        for entry in entries:
            record = self._to_source_record(entry)
            if record:
                users.append(record)

        logger.info(f"Retrieved {len(users)} directory users")
        return users

    def _identity_filter(self, identifier: str) -> str:
        guid = _parse_guid(identifier)
        if guid:
            return f'(objectGUID={escape_bytes(guid.bytes_le)})'
        value = escape_filter_chars(identifier)
        return f'(|(userPrincipalName={value})(mail={value})(sAMAccountName={value}))'

    def get_user(self, identifier: str) -> Optional[SourceRecord]:
        search_base = self.user_base_dn or self._get_domain_base()
        search_filter = f'(&{self.user_filter}{self._identity_filter(identifier)})'

        entries = self._search(search_base, search_filter, self._attributes_for(None))
        for entry in entries:
            record = self._to_source_record(entry)
            if record:
                return record
        return None

    def _resolve_group_dn(self, group_id: str) -> str:
        if not _parse_guid(group_id):
            return group_id

        search_base = self.group_base_dn or self._get_domain_base()
        entries = self._search(search_base, f'(&(objectClass=group){self._identity_filter(group_id)})', ['cn'])
        if not entries:
            raise DirectoryQueryError(f"Group not found: {group_id}")
        return entries[0]['dn']

    def list_group_members(self, group_id: str) -> List[str]:
        group_dn = self._resolve_group_dn(group_id)
        rule = f':{MATCHING_RULE_IN_CHAIN}:' if self.nested_groups else ''
        search_filter = f'(&{self.user_filter}(memberOf{rule}={escape_filter_chars(group_dn)}))'
        search_base = self.user_base_dn or self._get_domain_base()

        entries = self._search(search_base, search_filter, ['objectGUID'])
        member_ids = []
        for entry in entries:
            guid = _format_guid(_attribute(entry, 'objectGUID'))
            if guid:
                member_ids.append(guid)

        logger.info(f"Group {group_dn} has {len(member_ids)} user members")
        return member_ids

    def query_delta(self, token: Optional[str]) -> DeltaPage:
        """
        Read one DirSync page.

        Live objects are re-read in full because DirSync only returns the
        attributes that changed; objects that no longer match the user filter are
        dropped. Deleted objects become tombstones.
        """
        self._require_connection()

        cookie = base64.b64decode(token) if token else None
        sync_base = self.delta_base_dn or self._get_domain_base()
        attributes = ['objectGUID', 'isDeleted', 'userPrincipalName', 'mail', 'displayName']

        try:
            dir_sync = self.connection.extend.microsoft.dir_sync(
                sync_base=sync_base,
                sync_filter=self.delta_filter,
                attributes=attributes,
                cookie=cookie,
                incremental_values=False
            )
            response = dir_sync.loop()
        except LDAPCommunicationError as e:
            raise DirectoryCommunicationError(f"Directory connection lost during change query: {e}")
        except LDAPException as e:
            raise DirectoryQueryError(f"Change query failed: {e}")

        changes = []
        for entry in response or []:
            if entry.get('type') != 'searchResEntry':
                continue

            guid = _format_guid(_attribute(entry, 'objectGUID'))
            if not guid:
                continue

            if _truthy(_attribute(entry, 'isDeleted')):
                changes.append(Tombstone(
                    external_id=guid,
                    email=_first(_attribute(entry, 'mail')),
                    principal_name=_first(_attribute(entry, 'userPrincipalName')),
                    display_name=_first(_attribute(entry, 'displayName')),
                    reason='deleted'
                ))
                continue

            record = self.get_user(guid)
            if record:
                changes.append(record)

        next_cookie = base64.b64encode(dir_sync.cookie).decode('ascii') if dir_sync.cookie else None
        logger.info(f"Change query returned {len(changes)} changes (more_results={dir_sync.more_results})")

        if dir_sync.more_results:
            return DeltaPage(changes=changes, next_link=next_cookie)
        return DeltaPage(changes=changes, delta_link=next_cookie)

    def _to_source_record(self, entry: Dict[str, Any]) -> Optional[SourceRecord]:
        external_id = _format_guid(_attribute(entry, 'objectGUID'))
        if not external_id:
            logger.warning(f"Directory entry has no objectGUID: {entry.get('dn')}")
            return None

        values = {'external_id': external_id}
        for field_name, attribute in self.ATTRIBUTE_MAP.items():
            if field_name in ('external_id', 'account_enabled', 'business_phones'):
                continue
            value = _first(_attribute(entry, attribute))
            if value is not None:
                values[field_name] = str(value)

        phones = _as_list(_attribute(entry, 'telephoneNumber')) + _as_list(_attribute(entry, 'otherTelephone'))
        values['business_phones'] = tuple(str(phone) for phone in phones if phone)

        uac = _first(_attribute(entry, 'userAccountControl'))
        if uac is not None:
            values['account_enabled'] = not (int(uac) & ACCOUNT_DISABLED_FLAG)

        if self.cost_center_attribute:
            cost_center = _first(_attribute(entry, self.cost_center_attribute))
            if cost_center is not None:
                values['cost_center'] = str(cost_center)

        principal = values.get('principal_name', '')
        values['user_type'] = 'Guest' if '#EXT#' in principal.upper() else 'Member'
        values.setdefault('display_name', principal)

        return SourceRecord(**values)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def _attribute(entry: Dict[str, Any], name: str):
    attributes = entry.get('attributes') or {}
    if name in attributes:
        return attributes[name]
    # ldap3 attribute keys follow the server's casing
    lowered = name.lower()
    for key, value in attributes.items():
        if key.lower() == lowered:
            return value
    return None


def _as_list(value) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first(value):
    values = _as_list(value)
    if not values or values[0] in ('', b''):
        return None
    return values[0]


def _truthy(value) -> bool:
    value = _first(value)
    if isinstance(value, str):
        return value.upper() == 'TRUE'
    return bool(value)


def _parse_guid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value.strip('{}'))
    except (ValueError, AttributeError):
        return None


def _format_guid(value) -> Optional[str]:
    """Normalize an objectGUID (raw little-endian bytes or '{...}' string) to canonical form."""
    value = _first(value)
    if value is None:
        return None
    if isinstance(value, bytes):
        if len(value) != 16:
            return None
        return str(uuid.UUID(bytes_le=value))
    guid = _parse_guid(str(value))
    return str(guid) if guid else None
