#!/usr/bin/env python3
"""
Campaign Manager User Profile Manager
=====================================

Bulk management of Campaign Manager 360 user profiles:
- List user profiles, accounts, subaccounts, user roles and account user profiles
- Flatten paginated list responses into complete collections
- Deduplicate account user profiles seen through several user profiles
- Bulk activate/deactivate users or assign a role, tolerating per-user failures
- CSV export/import of user collections and a CSV audit trail of every patch

Version: 1.0.0
License: MIT

Setup:
  export CM_ACCESS_TOKEN="ya29.xxxxxxxx"
  export CM_PROFILE_ID="1234567"

Usage:
  python profile_manager_core.py --config profile_manager_config.yaml --action list --output users.csv
  python profile_manager_core.py --config profile_manager_config.yaml --action deactivate --input users.csv
  python profile_manager_core.py --config profile_manager_config.yaml --action assign-role \
    --role-name "Read Only" --input users.csv --dry-run
  python profile_manager_core.py --config profile_manager_config.yaml --verify-connection
"""

import argparse
import csv
import json
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pytz
import requests
import yaml

# ============================================================================
# CONSTANTS
# ============================================================================

API_BASE_URL = "https://dfareporting.googleapis.com/dfareporting/v4"
USER_AGENT = "CM-Profile-Manager/1.0"

# Campaign Manager 360 allows roughly 10 queries per second per project
MAX_REQUESTS_PER_SECOND = 10
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_RETRIES = 3

# Upper bound on list calls per fetch, first page included
MAX_PAGES = 10

USER_EXPORT_FIELDS = [
  'id', 'profileId', 'name', 'email', 'accountId', 'subaccountId',
  'userRoleId', 'active', 'timestamp',
]

logger = logging.getLogger(__name__)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging(output_dir: str = ".", level: int = logging.INFO) -> None:
  """Configure root logging for CLI runs"""
  # Cloud Functions / Cloud Run set one of these
  is_cloud_function = os.getenv('K_SERVICE') is not None or os.getenv('FUNCTION_TARGET') is not None

  handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
  if not is_cloud_function:
    os.makedirs(output_dir, exist_ok=True)
    handlers.append(logging.FileHandler(
      os.path.join(output_dir, f'profile_manager_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log')
    ))

  logging.basicConfig(
    level=level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=handlers
  )
  if is_cloud_function:
    logger.info("Running in Cloud Functions environment - using Cloud Logging")
  else:
    logger.info("Running in local environment - using file and console logging")

# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class Auth:
  """Bearer credentials supplied from outside the tool"""
  access_token: str
  token_type: str = "Bearer"


@dataclass
class Page:
  """One response unit of a paginated list call"""
  items: List[Dict[str, Any]] = field(default_factory=list)
  next_page_token: Optional[str] = None


@dataclass(frozen=True)
class ListEndpoint:
  """List endpoint of one entity kind.

  ``path`` may contain a ``{profile_id}`` placeholder, ``items_key`` names the
  response property holding the page items, and ``transform`` projects each raw
  item into the record shape the tool works with.
  """
  name: str
  path: str
  items_key: str
  transform: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
  attach_profile_id: bool = False


@dataclass
class PatchResult:
  """Outcome of one patch call"""
  record_id: Any
  success: bool
  error: Optional[str] = None


@dataclass
class AuditEntry:
  """Audit trail entry"""
  timestamp: str
  action_type: str
  entity_type: str
  entity_id: str
  old_value: str
  new_value: str
  reason: str
  outcome: str
  dry_run: bool

# ============================================================================
# RATE LIMITER
# ============================================================================

class RateLimiter:
  """Token bucket rate limiter, safe to share between worker threads"""

  def __init__(self, max_per_second: float = MAX_REQUESTS_PER_SECOND, burst_size: int = 3):
    self.max_per_second = max_per_second
    self.burst_size = burst_size
    self.tokens = float(burst_size)
    self.last_update_time = time.monotonic()
    self._lock = threading.Lock()

  def wait_if_needed(self):
    """Block until a request token is available, then consume it"""
    with self._lock:
      current_time = time.monotonic()
      elapsed = current_time - self.last_update_time
      self.tokens = min(self.burst_size, self.tokens + elapsed * self.max_per_second)
      self.last_update_time = current_time

      if self.tokens < 1:
        time.sleep((1 - self.tokens) / self.max_per_second)
        self.tokens = 1
        self.last_update_time = time.monotonic()

      self.tokens -= 1

# ============================================================================
# PERFORMANCE TIMING DECORATOR
# ============================================================================

def timing_logger(operation_name: str = None):
  """Decorator to log execution time of operations"""
  def decorator(func):
    def wrapper(*args, **kwargs):
      op_name = operation_name or func.__name__
      start_time = time.time()
      logger.info(f"Starting {op_name}...")
      try:
        result = func(*args, **kwargs)
      except Exception as e:
        logger.error(f"✗ {op_name} failed after {time.time() - start_time:.2f}s: {e}")
        raise
      logger.info(f"✓ {op_name} completed in {time.time() - start_time:.2f}s")
      return result
    wrapper.__name__ = func.__name__
    wrapper.__doc__ = func.__doc__
    return wrapper
  return decorator

# ============================================================================
# CONFIGURATION LOADER
# ============================================================================

class ConfigurationError(Exception):
  """Invalid or missing configuration"""
  pass


class AuthenticationError(Exception):
  """No usable access token, or the API rejected it"""
  pass


class Config:
  """YAML configuration with dotted-key lookups"""

  def __init__(self, config_path: str):
    self.config_path = config_path
    self.data = self._load_config()

  def _load_config(self) -> Dict:
    if not os.path.exists(self.config_path):
      error_msg = f"Configuration file not found: {self.config_path}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg)

    try:
      with open(self.config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    except yaml.YAMLError as e:
      error_msg = f"Failed to parse YAML configuration: {e}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg) from e
    except OSError as e:
      error_msg = f"Failed to read configuration file: {e}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg) from e

    # An empty file is a valid "all defaults" configuration
    if config is None:
      config = {}
    if not isinstance(config, dict):
      error_msg = f"Invalid configuration format: expected dictionary, got {type(config).__name__}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg)

    logger.info(f"Configuration loaded from {self.config_path}")
    return config

  def get(self, key: str, default=None):
    """
    Get configuration value with dot notation support, e.g. ``api.timeout_seconds``
    """
    if not key:
      return default

    value = self.data
    for k in key.split('.'):
      if not isinstance(value, dict):
        return default
      value = value.get(k)
      if value is None:
        return default

    return value

# ============================================================================
# GOOGLE SECRET MANAGER HELPER
# ============================================================================

def fetch_credentials_from_secret_manager(project_id: str, secret_id: str) -> Dict[str, str]:
  """
  Fetch Campaign Manager credentials from Google Secret Manager

  The secret must be a JSON object with ``CM_ACCESS_TOKEN`` and optionally
  ``CM_PROFILE_ID``.

  Raises:
    ImportError: If the Google Secret Manager library is not installed
    GoogleCloudError: If the secret cannot be read
    ValueError: If the secret is not valid JSON or misses required keys
  """
  try:
    from google.cloud import secretmanager
  except ImportError as e:
    raise ImportError(
      "Google Cloud Secret Manager library not installed. "
      "Install with: pip install 'profile-manager[secrets]'"
    ) from e
  from google.cloud.exceptions import GoogleCloudError

  logger.info("Fetching credentials from Google Secret Manager...")
  logger.info(f"  Project: {project_id}")
  logger.info(f"  Secret: {secret_id}")

  try:
    client = secretmanager.SecretManagerServiceClient()
    name = f"projects/{project_id}/secrets/{secret_id}/versions/latest"
    response = client.access_secret_version(request={"name": name})
    credentials = json.loads(response.payload.data.decode('UTF-8'))
  except GoogleCloudError as e:
    logger.error(f"Failed to fetch credentials from Secret Manager: {e}")
    logger.error(
      "Troubleshooting:\n"
      "1. Ensure you're authenticated: gcloud auth application-default login\n"
      f"2. Verify the secret exists: gcloud secrets describe {secret_id}\n"
      "3. Check IAM permissions: roles/secretmanager.secretAccessor required"
    )
    raise
  except json.JSONDecodeError as e:
    logger.error(f"Secret '{secret_id}' is not valid JSON: {e}")
    raise ValueError(f"Invalid JSON in secret '{secret_id}'") from e

  if not isinstance(credentials, dict) or 'CM_ACCESS_TOKEN' not in credentials:
    raise ValueError(f"Secret '{secret_id}' is missing required key: CM_ACCESS_TOKEN")

  token = credentials['CM_ACCESS_TOKEN']
  logger.debug(f"  CM_ACCESS_TOKEN: {token[:8] + '...' if len(token) > 8 else '***'}")
  logger.info("✅ Successfully fetched credentials from Secret Manager")
  return credentials

# ============================================================================
# AUDIT LOGGER
# ============================================================================

class AuditLogger:
  """CSV-based audit trail of attempted record updates"""

  def __init__(self, output_dir: str = "."):
    self.output_dir = output_dir
    self.filename = os.path.join(
      output_dir,
      f"profile_audit_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    )
    self.entries: List[AuditEntry] = []
    self._lock = threading.Lock()

  def log(self, action_type: str, entity_type: str, entity_id: str, old_value: str,
      new_value: str, reason: str, outcome: str, dry_run: bool = False):
    entry = AuditEntry(
      timestamp=datetime.now(pytz.utc).isoformat(),
      action_type=action_type,
      entity_type=entity_type,
      entity_id=str(entity_id),
      old_value=old_value,
      new_value=new_value,
      reason=reason,
      outcome=outcome,
      dry_run=dry_run
    )
    with self._lock:
      self.entries.append(entry)
    logger.debug(f"Audit log: {action_type} {entity_type} {entity_id}: {old_value} -> {new_value} [{outcome}]")

  def save(self) -> Optional[str]:
    """Write the audit trail to CSV, returning the file path"""
    if not self.entries:
      logger.info("No audit entries to save")
      return None

    os.makedirs(self.output_dir, exist_ok=True)
    fieldnames = list(AuditEntry.__dataclass_fields__)
    with open(self.filename, 'w', newline='', encoding='utf-8') as f:
      writer = csv.DictWriter(f, fieldnames=fieldnames)
      writer.writeheader()
      for entry in self.entries:
        writer.writerow(asdict(entry))

    logger.info(f"Audit trail saved to {self.filename} ({len(self.entries)} entries)")
    return self.filename

# ============================================================================
# PAGE ACCUMULATOR
# ============================================================================

def fetch_all(fetch_page: Callable[[Dict[str, Any]], Page],
              base_params: Optional[Dict[str, Any]] = None,
              transform: Optional[Callable[[Dict[str, Any]], Any]] = None,
              max_pages: int = MAX_PAGES) -> List[Any]:
  """
  Drain a cursor-paginated list call into one flat list.

  ``fetch_page`` performs exactly one list call and returns a :class:`Page`.
  ``base_params`` is never mutated: it is copied on entry and every call gets
  its own copy carrying the current ``pageToken``. At most ``max_pages`` calls
  are made; when the cap is hit with a cursor still pending the remaining pages
  are skipped. Errors raised by ``fetch_page`` or ``transform`` propagate.
  """
  params = dict(base_params or {})
  params.pop('pageToken', None)
  max_pages = max(1, int(max_pages))

  items: List[Any] = []
  for page_number in range(1, max_pages + 1):
    page = fetch_page(dict(params))
    items.extend(page.items)
    if not page.next_page_token:
      break
    params['pageToken'] = page.next_page_token
  else:
    logger.warning(
      f"Stopped after {max_pages} pages with more results pending; "
      f"{len(items)} items collected"
    )

  logger.debug(f"Accumulated {len(items)} items from {page_number} page(s)")
  if transform is not None:
    return [transform(item) for item in items]
  return items

# ============================================================================
# ENTITY ENDPOINTS
# ============================================================================

def _project(fields: Sequence[str]) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
  def transform(item: Dict[str, Any]) -> Dict[str, Any]:
    return {name: item.get(name) for name in fields}
  return transform


def _user_profile_record(item: Dict[str, Any]) -> Dict[str, Any]:
  return {
    'id': item['profileId'],
    'profileId': item['profileId'],
    'name': item.get('userName'),
    'accountId': item.get('accountId'),
    'accountName': item.get('accountName'),
    'subAccountId': item.get('subAccountId'),
  }


USER_PROFILES = ListEndpoint(
  name='user_profiles',
  path='/userprofiles',
  items_key='items',
  transform=_user_profile_record,
)

ACCOUNTS = ListEndpoint(
  name='accounts',
  path='/userprofiles/{profile_id}/accounts',
  items_key='accounts',
  transform=_project(['id', 'name']),
)

SUBACCOUNTS = ListEndpoint(
  name='subaccounts',
  path='/userprofiles/{profile_id}/subaccounts',
  items_key='subaccounts',
  transform=_project(['id', 'name', 'accountId']),
)

USER_ROLES = ListEndpoint(
  name='user_roles',
  path='/userprofiles/{profile_id}/userRoles',
  items_key='userRoles',
  transform=_project(['id', 'name', 'accountId', 'subaccountId', 'defaultUserRole']),
)

ACCOUNT_USER_PROFILES = ListEndpoint(
  name='account_user_profiles',
  path='/userprofiles/{profile_id}/accountUserProfiles',
  items_key='accountUserProfiles',
  transform=_project([
    'id', 'name', 'email', 'accountId', 'subaccountId', 'userRoleId',
    'active', 'userAccessType', 'traffickerType',
  ]),
  # list responses do not say which user profile they were read through
  attach_profile_id=True,
)

# ============================================================================
# CAMPAIGN MANAGER API CLIENT
# ============================================================================

class CampaignManagerAPI:
  """Campaign Manager 360 API client with retry logic and rate limiting"""

  def __init__(self, access_token: str, base_url: str = API_BASE_URL,
               max_requests_per_second: float = None, timeout: float = DEFAULT_TIMEOUT_SECONDS,
               max_retries: int = DEFAULT_MAX_RETRIES, session: requests.Session = None):
    if not access_token or not access_token.strip():
      raise AuthenticationError(
        "No access token available. Set CM_ACCESS_TOKEN or configure google_cloud.secret_id"
      )
    self.auth = Auth(access_token=access_token.strip())
    self.base_url = base_url.rstrip('/')
    self.timeout = timeout
    self.max_retries = max(1, int(max_retries))
    self.rate_limiter = RateLimiter(max_requests_per_second or MAX_REQUESTS_PER_SECOND)
    self.session = session or requests.Session()

  def _headers(self) -> Dict[str, str]:
    return {
      "Authorization": f"{self.auth.token_type} {self.auth.access_token}",
      "Content-Type": "application/json",
      "Accept": "application/json",
      "User-Agent": USER_AGENT,
    }

  def _request(self, method: str, path: str, **kwargs) -> requests.Response:
    """Make an API request, retrying rate-limit, server and connection errors"""
    url = f"{self.base_url}{path}"
    retry_delay = 1

    for attempt in range(self.max_retries):
      self.rate_limiter.wait_if_needed()
      last_attempt = attempt == self.max_retries - 1
      logger.debug(f"Campaign Manager API {method} {url} (attempt {attempt + 1}/{self.max_retries})")
      if 'json' in kwargs:
        logger.debug(f"Request body: {str(kwargs['json'])[:500]}")

      try:
        response = self.session.request(
          method=method,
          url=url,
          headers=self._headers(),
          timeout=self.timeout,
          **kwargs
        )
      except requests.exceptions.RequestException as e:
        if last_attempt:
          logger.error(f"Request exception after {self.max_retries} attempts: {e}")
          raise
        logger.warning(f"Request exception (attempt {attempt + 1}/{self.max_retries}): {e}")
        time.sleep(retry_delay * (attempt + 1))
        continue

      logger.debug(f"Response status: {response.status_code}")

      if response.status_code == 429 and not last_attempt:
        wait_seconds = self._retry_after(response, retry_delay * (attempt + 1) * 2)
        logger.warning(f"Rate limit hit, waiting {wait_seconds}s...")
        time.sleep(wait_seconds)
        continue

      if response.status_code >= 500 and not last_attempt:
        logger.warning(f"Server error {response.status_code} on {method} {url}, retrying")
        time.sleep(retry_delay * (attempt + 1))
        continue

      if response.status_code >= 400:
        body_preview = response.text[:1000] if response.text else 'Empty response'
        logger.error(f"Campaign Manager API error {response.status_code} on {method} {url}: {body_preview}")
        if response.status_code == 401:
          raise AuthenticationError(f"Access token rejected by Campaign Manager API: {body_preview}")

      response.raise_for_status()
      return response

  @staticmethod
  def _retry_after(response: requests.Response, default: float) -> float:
    try:
      return float(response.headers.get('Retry-After', default))
    except (TypeError, ValueError):
      return default

  # ========================================================================
  # LISTING
  # ========================================================================

  def list_page(self, endpoint: ListEndpoint, profile_id: Any = None,
                params: Optional[Dict[str, Any]] = None) -> Page:
    """Fetch one raw page of ``endpoint``"""
    path = endpoint.path.format(profile_id=profile_id)
    data = self._request('GET', path, params=params).json() or {}
    return Page(
      items=list(data.get(endpoint.items_key) or []),
      next_page_token=data.get('nextPageToken') or None,
    )

  def list_all(self, endpoint: ListEndpoint, profile_id: Any = None,
               params: Optional[Dict[str, Any]] = None, max_pages: int = MAX_PAGES) -> List[Dict[str, Any]]:
    """Fetch every page of ``endpoint`` and project the items into records"""
    transform = endpoint.transform
    if endpoint.attach_profile_id:
      project = transform or dict
      transform = lambda item: {**project(item), 'profileId': profile_id}

    records = fetch_all(
      lambda page_params: self.list_page(endpoint, profile_id, page_params),
      params,
      transform,
      max_pages=max_pages,
    )
    logger.info(f"Retrieved {len(records)} {endpoint.name.replace('_', ' ')}"
                + (f" for profile {profile_id}" if profile_id is not None else ""))
    return records

  # ========================================================================
  # UPDATES
  # ========================================================================

  def patch_account_user_profile(self, profile_id: Any, user_id: Any, body: Dict[str, Any]) -> Dict[str, Any]:
    """Partially update one account user profile and return the server's copy"""
    response = self._request(
      'PATCH',
      f'/userprofiles/{profile_id}/accountUserProfiles',
      params={'id': user_id},
      json=body,
    )
    return response.json()

  def verify_connection(self, sample_size: int = 5) -> Dict[str, Any]:
    """Verify API connectivity by listing the caller's user profiles"""
    try:
      profiles = self.list_all(USER_PROFILES)
    except Exception as e:
      logger.error(f"Campaign Manager API verification failed: {e}")
      return {"success": False, "error": str(e)}

    logger.info(f"Campaign Manager API connectivity verified. Retrieved {len(profiles)} user profiles.")
    return {
      "success": True,
      "profile_count": len(profiles),
      "sample": profiles[:sample_size],
    }

# ============================================================================
# COLLECTION HELPERS
# ============================================================================

def merge_by_id(*collections: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
  """Key records by ``id``; a later record replaces an earlier one with the same id"""
  merged: Dict[Any, Dict[str, Any]] = {}
  for collection in collections:
    for record in collection:
      merged[record['id']] = record
  return merged


def exclude_accounts(records: Iterable[Dict[str, Any]], excluded_account_ids: Iterable[Any],
                     key: str = 'accountId') -> List[Dict[str, Any]]:
  """Drop records belonging to any of ``excluded_account_ids``"""
  excluded = {str(account_id) for account_id in excluded_account_ids or ()}
  if not excluded:
    return list(records)
  kept = [r for r in records if str(r.get(key)) not in excluded]
  return kept

# ============================================================================
# BATCH PATCHER
# ============================================================================

class BatchPatcher:
  """
  Apply one partial-update body to many records, one call per record.

  A failing call never stops the batch: the record keeps its pre-patch value
  and the error is logged. Successfully patched records are replaced by the
  server's representation with ``profileId`` re-attached and a ``timestamp``
  added. Per-record outcomes are kept in ``results['outcomes']``.
  """

  def __init__(self, patch_fn: Callable[[Any, Any, Dict[str, Any]], Dict[str, Any]],
               audit_logger: Optional[AuditLogger] = None, max_workers: int = 1,
               timezone: str = 'UTC', entity_type: str = 'ACCOUNT_USER_PROFILE',
               clock: Optional[Callable[[], datetime]] = None):
    self.patch_fn = patch_fn
    self.audit = audit_logger
    self.max_workers = max(1, int(max_workers))
    self.entity_type = entity_type
    self.tz = pytz.timezone(timezone)
    self.clock = clock or (lambda: datetime.now(self.tz))
    self.results: Dict[str, Any] = {'total': 0, 'success': 0, 'failed': 0, 'outcomes': []}

  @timing_logger("batch patch")
  def patch_all(self, records: Dict[Any, Dict[str, Any]], patch_body: Dict[str, Any],
                dry_run: bool = False, reason: str = '') -> Dict[Any, Dict[str, Any]]:
    """Patch every record in ``records``; returns a new mapping with the same keys"""
    keys = list(records)
    self.results = {'total': len(keys), 'success': 0, 'failed': 0, 'outcomes': []}

    if dry_run:
      for key in keys:
        self._audit(records[key], patch_body, reason, 'DRY_RUN', dry_run=True)
      logger.info(f"Dry run: {len(keys)} records would be patched with {patch_body}")
      return {key: records[key] for key in keys}

    def patch_one(key):
      return self._patch_one(records[key], patch_body, reason)

    if self.max_workers > 1 and len(keys) > 1:
      with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
        outcomes = list(executor.map(patch_one, keys))
    else:
      outcomes = [patch_one(key) for key in keys]

    patched: Dict[Any, Dict[str, Any]] = {}
    for key, (record, result) in zip(keys, outcomes):
      patched[key] = record
      self.results['outcomes'].append(result)
      if result.success:
        self.results['success'] += 1
      else:
        self.results['failed'] += 1

    logger.info(f"Batch patch complete: {self.results['success']}/{self.results['total']} successful")
    return patched

  def _patch_one(self, record: Dict[str, Any], patch_body: Dict[str, Any],
                 reason: str) -> Tuple[Dict[str, Any], PatchResult]:
    record_id = record.get('id')
    try:
      updated = dict(self.patch_fn(record['profileId'], record['id'], patch_body))
    except Exception as e:
      logger.error(f"Failed to patch {self.entity_type.lower()} {record_id}: {e} (record: {record})")
      self._audit(record, patch_body, reason, 'FAILED')
      return record, PatchResult(record_id=record_id, success=False, error=str(e))

    updated['profileId'] = record['profileId']
    updated['timestamp'] = self.clock().isoformat()
    self._audit(record, patch_body, reason, 'SUCCESS')
    return updated, PatchResult(record_id=record_id, success=True)

  def _audit(self, record, patch_body, reason, outcome, dry_run=False):
    if self.audit is None:
      return
    self.audit.log(
      'PATCH',
      self.entity_type,
      record.get('id'),
      json.dumps({name: record.get(name) for name in patch_body}, default=str),
      json.dumps(patch_body, default=str),
      reason,
      outcome,
      dry_run
    )

# ============================================================================
# ROLE LOOKUP
# ============================================================================

def find_role_by_name(api: CampaignManagerAPI, name: str, profile_id: Any,
                      subaccount_id: Any = None) -> Optional[Dict[str, Any]]:
  """Return the user role named exactly ``name``, or None"""
  params = {
    'searchString': name,
    'accountUserRoleOnly': 'false' if subaccount_id else 'true',
  }
  if subaccount_id:
    params['subaccountId'] = subaccount_id

  # searchString matches substrings, so the name is compared exactly here
  for role in api.list_all(USER_ROLES, profile_id, params):
    if role.get('name') == name:
      return role
  return None

# ============================================================================
# TABULAR ADAPTER
# ============================================================================

def records_to_rows(headers: Sequence[str], records: Iterable[Dict[str, Any]]) -> List[List[Any]]:
  """Project each record's ``headers`` fields into a row"""
  rows = []
  for record in records:
    rows.append(['' if record.get(h) is None else record.get(h) for h in headers])
  return rows


def rows_to_records(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> List[Dict[str, Any]]:
  """Zip each row with ``headers``; missing trailing cells become None"""
  records = []
  for row in rows:
    cells = list(row) + [None] * (len(headers) - len(row))
    records.append(dict(zip(headers, cells)))
  return records


def write_table(path: str, headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
  """Create or overwrite a CSV file with a header row and data rows"""
  directory = os.path.dirname(path)
  if directory:
    os.makedirs(directory, exist_ok=True)
  with open(path, 'w', newline='', encoding='utf-8') as f:
    writer = csv.writer(f)
    writer.writerow(headers)
    count = 0
    for row in rows:
      writer.writerow(row)
      count += 1
  logger.info(f"Wrote {count} rows to {path}")


def read_table(path: str) -> Dict[str, List]:
  with open(path, 'r', newline='', encoding='utf-8') as f:
    reader = csv.reader(f)
    fields = next(reader, [])
    rows = [row for row in reader if row]
  logger.info(f"Read {len(rows)} rows from {path}")
  return {'fields': fields, 'rows': rows}

# ============================================================================
# ORCHESTRATOR
# ============================================================================

class ProfileManager:
  """Wires configuration, credentials, API client and the bulk operations"""

  def __init__(self, config_path: str, profile_id: str = None, dry_run: bool = False,
               session: requests.Session = None):
    self.config = Config(config_path)
    self.profile_id = profile_id or os.getenv('CM_PROFILE_ID')
    self.dry_run = dry_run

    access_token = os.getenv('CM_ACCESS_TOKEN', '')

    gcp_project_id = self.config.get('google_cloud.project_id')
    secret_id = self.config.get('google_cloud.secret_id')
    if gcp_project_id and secret_id:
      logger.info("Google Secret Manager configured - fetching credentials...")
      try:
        credentials = fetch_credentials_from_secret_manager(gcp_project_id, secret_id)
        access_token = credentials['CM_ACCESS_TOKEN']
        if not self.profile_id and credentials.get('CM_PROFILE_ID'):
          self.profile_id = str(credentials['CM_PROFILE_ID'])
          logger.info(f"Using profile ID from Secret Manager: {self.profile_id}")
      except Exception as e:
        logger.error(f"Failed to load credentials from Secret Manager: {e}")
        logger.info("Falling back to environment variables...")
    else:
      logger.debug("Google Secret Manager not configured, using environment variables")

    self.api = CampaignManagerAPI(
      access_token,
      base_url=self.config.get('api.base_url', API_BASE_URL),
      max_requests_per_second=self.config.get('api.max_requests_per_second', MAX_REQUESTS_PER_SECOND),
      timeout=self.config.get('api.timeout_seconds', DEFAULT_TIMEOUT_SECONDS),
      max_retries=self.config.get('api.max_retries', DEFAULT_MAX_RETRIES),
      session=session,
    )
    self.audit = AuditLogger(self.config.get('logging.output_dir', './logs'))
    self.excluded_account_ids = [str(a) for a in self.config.get('filters.excluded_account_ids', [])]
    self.patcher = BatchPatcher(
      self.api.patch_account_user_profile,
      audit_logger=self.audit,
      max_workers=self.config.get('patching.max_workers', 1),
      timezone=self.config.get('patching.timezone', 'UTC'),
    )

  def _scope(self, profile_id):
    scope = profile_id or self.profile_id
    if not scope:
      raise ConfigurationError("A profile ID is required (--profile-id or CM_PROFILE_ID)")
    return scope

  def list_user_profiles(self) -> List[Dict[str, Any]]:
    profiles = self.api.list_all(USER_PROFILES)
    kept = exclude_accounts(profiles, self.excluded_account_ids)
    if len(kept) != len(profiles):
      logger.info(f"Excluded {len(profiles) - len(kept)} user profiles on excluded accounts")
    return kept

  def list_accounts(self, profile_id=None) -> List[Dict[str, Any]]:
    return self.api.list_all(ACCOUNTS, self._scope(profile_id))

  def list_subaccounts(self, profile_id=None) -> List[Dict[str, Any]]:
    return self.api.list_all(SUBACCOUNTS, self._scope(profile_id))

  def list_user_roles(self, profile_id=None, subaccount_id=None, search: str = None) -> List[Dict[str, Any]]:
    params = {}
    if search:
      params['searchString'] = search
    if subaccount_id:
      params['subaccountId'] = subaccount_id
    return self.api.list_all(USER_ROLES, self._scope(profile_id), params)

  @timing_logger("collect account user profiles")
  def collect_account_user_profiles(self, params: Optional[Dict[str, Any]] = None,
                                    profiles: Optional[List[Dict[str, Any]]] = None) -> Dict[Any, Dict[str, Any]]:
    """List users through every visible user profile and deduplicate them by id"""
    if profiles is None:
      profiles = self.list_user_profiles()

    collections = []
    for profile in profiles:
      users = self.api.list_all(ACCOUNT_USER_PROFILES, profile['profileId'], params)
      collections.append(exclude_accounts(users, self.excluded_account_ids))

    users = merge_by_id(*collections)
    logger.info(f"Collected {len(users)} unique account user profiles from {len(profiles)} user profiles")
    return users

  def set_active(self, records: Dict[Any, Dict[str, Any]], active: bool) -> Dict[Any, Dict[str, Any]]:
    action = 'activate' if active else 'deactivate'
    return self.patcher.patch_all(records, {'active': active}, dry_run=self.dry_run, reason=f"bulk {action}")

  def assign_role(self, records: Dict[Any, Dict[str, Any]], role_name: str, profile_id=None,
                  subaccount_id=None) -> Dict[Any, Dict[str, Any]]:
    role = find_role_by_name(self.api, role_name, self._scope(profile_id), subaccount_id)
    if role is None:
      raise LookupError(f"No user role named '{role_name}'")
    logger.info(
      f"Assigning role '{role_name}' ({role['id']}, account {role.get('accountId')}) to {len(records)} users"
    )
    return self.patcher.patch_all(
      records, {'userRoleId': role['id']}, dry_run=self.dry_run, reason=f"assign role {role_name}"
    )

  def export_users(self, path: str, records: Dict[Any, Dict[str, Any]]) -> None:
    write_table(path, USER_EXPORT_FIELDS, records_to_rows(USER_EXPORT_FIELDS, records.values()))

  def load_users(self, path: str) -> Dict[Any, Dict[str, Any]]:
    table = read_table(path)
    missing = {'id', 'profileId'} - set(table['fields'])
    if missing:
      raise ConfigurationError(f"{path} is missing required columns: {', '.join(sorted(missing))}")
    records = rows_to_records(table['fields'], table['rows'])
    # timestamps mark patches made in this run only
    for record in records:
      record.pop('timestamp', None)
    return merge_by_id(records)

  def run(self, action: str, input_path: str = None, output_path: str = None,
          role_name: str = None, search: str = None) -> Dict[str, Any]:
    """Run one bulk action end to end"""
    logger.info("=" * 80)
    logger.info("CAMPAIGN MANAGER USER PROFILE MANAGER")
    logger.info("=" * 80)
    logger.info(f"Action: {action}")
    logger.info(f"Profile ID: {self.profile_id}")
    logger.info(f"Dry Run: {self.dry_run}")
    logger.info("=" * 80)

    output_path = output_path or self.config.get('export.output_file')
    try:
      if input_path:
        users = self.load_users(input_path)
      else:
        users = self.collect_account_user_profiles({'searchString': search} if search else None)

      if action == 'activate':
        users = self.set_active(users, True)
      elif action == 'deactivate':
        users = self.set_active(users, False)
      elif action == 'assign-role':
        if not role_name:
          raise ConfigurationError("--role-name is required for assign-role")
        users = self.assign_role(users, role_name)
      elif action != 'list':
        raise ConfigurationError(f"Unknown action: {action}")

      if output_path:
        self.export_users(output_path, users)
    finally:
      self.audit.save()

    results = {'action': action, 'users': len(users)}
    if action != 'list':
      results.update({k: self.patcher.results[k] for k in ('total', 'success', 'failed')})
    logger.info(f"Summary: {results}")
    return results

# ============================================================================
# CLI
# ============================================================================

def main():
  parser = argparse.ArgumentParser(description='Campaign Manager User Profile Manager')
  parser.add_argument('--config', required=True, help='Path to configuration YAML file')
  parser.add_argument('--profile-id', help='Campaign Manager user profile ID (or set CM_PROFILE_ID)')
  parser.add_argument('--dry-run', action='store_true', help='Log intended changes without patching')
  parser.add_argument('--action', default='list',
            choices=['list', 'activate', 'deactivate', 'assign-role'],
            help='Bulk action to run (default: list)')
  parser.add_argument('--input', help='CSV of users to update instead of listing them from the API')
  parser.add_argument('--output', help='CSV file to write the resulting users to')
  parser.add_argument('--role-name', help='Exact user role name for assign-role')
  parser.add_argument('--search', help='Server-side search string when listing users')
  parser.add_argument('--verify-connection', action='store_true',
            help='Check Campaign Manager API connectivity and exit')
  parser.add_argument('--verify-sample-size', type=int, default=5,
            help='Number of user profiles to include in verification sample (default: 5)')
  args = parser.parse_args()

  try:
    config = Config(args.config)
  except ConfigurationError as e:
    parser.error(str(e))
  setup_logging(config.get('logging.output_dir', './logs'))

  try:
    manager = ProfileManager(args.config, args.profile_id, args.dry_run)
  except AuthenticationError as e:
    logger.error(str(e))
    sys.exit(1)

  if args.verify_connection:
    verification = manager.api.verify_connection(args.verify_sample_size)
    print(json.dumps(verification, indent=2, default=str))
    sys.exit(0 if verification.get('success') else 1)

  try:
    results = manager.run(args.action, args.input, args.output, args.role_name, args.search)
  except (ConfigurationError, LookupError, AuthenticationError, requests.exceptions.RequestException) as e:
    logger.error(f"{args.action} failed: {e}")
    sys.exit(1)

  sys.exit(1 if results.get('failed') else 0)


if __name__ == '__main__':
  main()
