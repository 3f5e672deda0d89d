from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from ssl import SSLError

import google_auth_httplib2
import googleapiclient.discovery as g_discover
import googleapiclient.errors as g_api_errors
import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

# Constants
MAX_BACKOFF = 30  # seconds
DIRECTORY_PAGE_SIZE = 500
DEFAULT_CUSTOMER = "my_customer"
FOLDER_NAME = "my_copied_shared_files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
UNKNOWN_OWNER = "Unknown Owner"
SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
]

logger = logging.getLogger(__name__)
# mute google api stuff
for logger_name in [
    "googleapiclient.discovery_cache",
    "googleapiclient.discovery",
    "googleapiclient.http",
    "google_auth_httplib2",
    "google.auth.transport.requests",
    "urllib3.connectionpool",
]:
    logging.getLogger(logger_name).setLevel(logging.WARNING)


class ThreadLocalHttp:
    def __init__(self, credentials):
        self.credentials = credentials
        self._local = threading.local()

    def request(self, *args, **kwargs):
        if not hasattr(self._local, "http"):
            # Create a clean httplib2 instance
            base_http = httplib2.Http()
            # Wrap it with credentials so it handles Auth headers automatically
            self._local.http = google_auth_httplib2.AuthorizedHttp(
                self.credentials, http=base_http
            )
        return self._local.http.request(*args, **kwargs)


class ConsolidatorError(Exception):
    pass


class ConfigError(ConsolidatorError):
    pass


class CredentialError(ConfigError):
    pass


class DirectoryFetchError(ConsolidatorError):
    pass


class ClientConstructionError(ConsolidatorError):
    pass


class ShareListingError(ConsolidatorError):
    pass


class FolderResolutionError(ConsolidatorError):
    pass


class OutputIOError(ConsolidatorError):
    pass


class CopyError(ConsolidatorError):
    def __init__(self, file: SharedFile, cause: Exception):
        super().__init__(f"Unable to copy file {file.name} (id: {file.id}): {cause}")
        self.file = file
        self.cause = cause


class IdentityTimeoutError(ConsolidatorError):
    pass


class ConsolidationCancelled(ConsolidatorError):
    pass


class APIError(ConsolidatorError):
    pass


class RateLimitError(APIError):
    pass


class GoogleServerError(APIError):
    pass


class GooglePermissionError(APIError):
    pass


class MissingAdminSDKError(APIError):
    pass


class ObjectNotFoundError(APIError):
    pass


class APITimeoutError(APIError):
    pass


class UnknownAPIError(APIError):
    def __init__(self, deets):
        super().__init__(f"Unknown API Error: {deets}")
        self.deets = deets


def _error_reason(e: g_api_errors.HttpError) -> str | None:
    details = e.error_details
    if isinstance(details, list) and details and isinstance(details[0], dict):
        return details[0].get("reason")
    return None


class APIWrapper:
    """
    Runs googleapiclient requests in a worker pool so the event loop can put a
    deadline on them, and turns HttpErrors into APIError subclasses.
    """

    def __init__(self, call_timeout: float | None = None, max_retries: int = 0, max_workers: int = 4):
        self.call_timeout = call_timeout
        self.max_retries = max_retries
        self.total_requests = 0
        self.requests_since_error = 0
        self.total_errors = 0
        self.cur_backoff = 0.01
        self.time_buffer = deque(maxlen=5)
        self.time_buffer.append(0)
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)

    def __str__(self):
        t_avg = 0
        for t in self.time_buffer:
            t_avg += t
        t_avg /= len(self.time_buffer)
        return f"Requests: {self.total_requests} ({self.requests_since_error} since last error), Errors: {self.total_errors}, Backoff: {self.cur_backoff:.2f}s, Average API Response Time: {t_avg:.2f}s"

    async def __call__(
        self,
        method,
        retries=0,
        retryable_errors=(RateLimitError, GoogleServerError),
        **kwargs,
    ):
        try:
            return await self.run(method, **kwargs)
        except retryable_errors as e:
            if retries < self.max_retries:
                backoff_time = self.calc_backoff()
                logger.info(
                    f"Caught retryable error: {e}. Backing off for {backoff_time:.2f} seconds (attempt {retries + 1}/{self.max_retries})..."
                )
                await asyncio.sleep(backoff_time)
                return await self.__call__(
                    method, retries + 1, retryable_errors=retryable_errors, **kwargs
                )
            raise

    async def run(self, method, **kwargs):
        self.total_requests += 1
        self.requests_since_error += 1
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:

            def _blocking_request():
                return method(**kwargs).execute()

            ret = await asyncio.wait_for(
                loop.run_in_executor(self.executor, _blocking_request),
                timeout=self.call_timeout,
            )

        except asyncio.TimeoutError as e:
            self._count_error()
            logger.warning(f"API call timed out after {self.call_timeout}s")
            raise APITimeoutError(f"API call exceeded {self.call_timeout}s") from e
        except g_api_errors.HttpError as e:
            self._count_error()
            status = e.resp.status
            error_reason = _error_reason(e)
            logger.debug(f"API Error {status} - {error_reason}")
            if status in [403, 429]:
                if status == 429 or error_reason in [
                    "rateLimitExceeded",
                    "userRateLimitExceeded",
                    "quotaExceeded",
                ]:
                    logger.info("Rate limit exceeded!")
                    raise RateLimitError(str(e)) from e
                if error_reason in ["accessNotConfigured"]:
                    logger.error("Admin SDK API not enabled for this service account!")
                    raise MissingAdminSDKError(e.error_details[0].get("message", str(e))) from e
                raise GooglePermissionError(f"Permission denied: {e.reason}") from e
            elif status in [500, 502, 503, 504]:
                logger.error(f"google messed up: {status} error - {e.error_details}")
                raise GoogleServerError(f"Google API server error {status}") from e
            elif status in [400, 401]:
                logger.error(f"Bad request or unauthorized: {status} - {e.error_details}")
                raise GooglePermissionError(f"Request rejected ({status}): {e.reason}") from e
            elif status == 404:
                logger.warning(f"Object not found: {e.error_details}")
                raise ObjectNotFoundError(f"Object not found: {e.reason}") from e
            logger.error(f"Unknown API Error {status} - {e.error_details}")
            raise UnknownAPIError(e) from e
        except RefreshError as e:
            self._count_error()
            logger.error(f"Credential refresh failed: {e}")
            raise GooglePermissionError(f"Credential refresh failed: {e}") from e
        except SSLError as e:
            self._count_error()
            logger.error(f"SSL Error: {e}")
            raise GoogleServerError(f"SSL error: {e}") from e
        except (httplib2.HttpLib2Error, OSError) as e:
            self._count_error()
            logger.error(f"Transport error: {e!r}")
            raise GoogleServerError(f"Transport error: {e!r}") from e

        self.time_buffer.append(time.time() - start_time)
        return ret

    def _count_error(self):
        self.total_errors += 1
        self.requests_since_error = 0

    def calc_backoff(self) -> float:
        if self.requests_since_error > 10:
            self.cur_backoff /= 2
        elif self.requests_since_error == 0:
            self.cur_backoff *= 2
        if self.cur_backoff > MAX_BACKOFF:
            self.cur_backoff = MAX_BACKOFF
        return self.cur_backoff

    def shutdown(self):
        self.executor.shutdown(wait=True)


@dataclass(frozen=True)
class ConsolidationConfig:
    """Settings for one batch run, built once at startup."""
    credentials_path: str
    admin_address: str
    skip_substrings: tuple[str, ...] = ()
    customer: str = DEFAULT_CUSTOMER
    output_dir: str = "."
    include_suspended: bool = False
    call_timeout: float | None = None
    identity_timeout: float | None = None
    max_retries: int = 0

    def __post_init__(self):
        if not self.credentials_path:
            raise ConfigError("Please provide the path to the credentials file using --credentials")
        if not self.admin_address:
            raise ConfigError("Please provide the admin email for impersonation using --admin")
        if "@" not in self.admin_address:
            raise ConfigError(f"Invalid admin email address: {self.admin_address}")
        if self.max_retries < 0:
            raise ConfigError("--max-retries cannot be negative")
        for name in ("call_timeout", "identity_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class Owner:
    display_name: str
    email_address: str


@dataclass
class SharedFile:
    id: str
    name: str
    owners: list[Owner] = field(default_factory=list)

    @classmethod
    def from_api(cls, infodict: dict) -> SharedFile:
        owners = [
            Owner(o.get("displayName", ""), o.get("emailAddress", ""))
            for o in infodict.get("owners", [])
        ]
        return cls(infodict["id"], infodict.get("name", ""), owners)

    @property
    def owner_info(self) -> str:
        if not self.owners:
            return UNKNOWN_OWNER
        first = self.owners[0]
        return f"{first.display_name} ({first.email_address})"

    def record_line(self) -> str:
        return f"File ID: {self.id}, Name: {self.name}, Owner: {self.owner_info}\n"


def matching_skip_substring(file: SharedFile, skip_substrings) -> str | None:
    """Return the first skip substring found in any owner's address, or None."""
    for owner in file.owners:
        for substring in skip_substrings:
            if substring in owner.email_address:
                return substring
    return None


def should_skip(file: SharedFile, skip_substrings) -> bool:
    return matching_skip_substring(file, skip_substrings) is not None


class User:
    """A Drive client acting as one impersonated member of the organization."""

    def __init__(self, address: str, drive_service, api: APIWrapper):
        self.address = address
        self.drive_service = drive_service
        self.api = api

    def __str__(self):
        return f"User(address={self.address})"

    async def _fetch_files(self, **kwargs) -> list[dict]:
        next_token = None
        files = []
        while True:
            query_ret: dict = await self.api(
                self.drive_service.files().list,
                pageToken=next_token,
                **kwargs,
            )
            if query_ret is None:
                logger.warning(
                    f"Received empty response when fetching files with kwargs {kwargs}"
                )
                break
            files.extend(query_ret.get("files", []))
            next_token = query_ret.get("nextPageToken")
            if not next_token:
                break
        return files

    async def list_shared_files(self) -> list[SharedFile]:
        try:
            file_list = await self._fetch_files(
                q="sharedWithMe = true",
                fields="nextPageToken, files(id, name, owners(displayName, emailAddress))",
            )
        except APIError as e:
            raise ShareListingError(f"Error listing files shared with {self.address}: {e}") from e
        logger.debug(f"{self.address} has {len(file_list)} shared files")
        return [SharedFile.from_api(f) for f in file_list]

    async def resolve_destination_folder(self) -> str:
        query = f"name = '{FOLDER_NAME}' and mimeType = '{FOLDER_MIME_TYPE}' and 'root' in parents"
        try:
            resp = await self.api(self.drive_service.files().list, q=query, fields="files(id)")
        except APIError as e:
            raise FolderResolutionError(f"Error checking for folder for {self.address}: {e}") from e
        existing = (resp or {}).get("files", [])
        if existing:
            if len(existing) > 1:
                logger.warning(
                    f"{self.address} has {len(existing)} folders named {FOLDER_NAME}, using {existing[0]['id']}"
                )
            return existing[0]["id"]

        body = {"name": FOLDER_NAME, "mimeType": FOLDER_MIME_TYPE, "parents": ["root"]}
        try:
            resp = await self.api(self.drive_service.files().create, body=body, fields="id")
        except APIError as e:
            raise FolderResolutionError(f"Error creating folder for {self.address}: {e}") from e
        new_id = (resp or {}).get("id")
        if not new_id:
            raise FolderResolutionError(
                f"Folder creation for {self.address} returned no id. Got response: {resp}"
            )
        logger.info(f"Created folder {FOLDER_NAME} (id: {new_id}) for {self.address}")
        return new_id

    async def copy_file(self, file: SharedFile, folder_id: str) -> str | None:
        try:
            resp = await self.api(
                self.drive_service.files().copy,
                fileId=file.id,
                body={"parents": [folder_id]},
                fields="id",
            )
        except APIError as e:
            raise CopyError(file, e) from e
        return (resp or {}).get("id")


class Org:
    """Service-account credentials with domain-wide delegation for one organization."""

    def __init__(self, worker, api: APIWrapper, customer: str = DEFAULT_CUSTOMER):
        self.worker = worker
        self.api = api
        self.customer = customer
        self.user_service = None

    @classmethod
    def from_keyfile_info(cls, keyfile_dict: dict, api: APIWrapper, customer: str = DEFAULT_CUSTOMER) -> Org:
        try:
            worker = service_account.Credentials.from_service_account_info(
                keyfile_dict, scopes=SCOPES
            )
        except (ValueError, KeyError) as e:
            raise CredentialError(f"Invalid credentials file: {e}") from e
        return cls(worker, api, customer)

    @classmethod
    def from_keyfile(cls, path: str, api: APIWrapper, customer: str = DEFAULT_CUSTOMER) -> Org:
        try:
            with open(path, "r", encoding="utf-8") as f:
                keyfile_dict = json.load(f)
        except OSError as e:
            raise CredentialError(f"Error reading credentials file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise CredentialError(f"Credentials file {path} is not valid JSON: {e}") from e
        return cls.from_keyfile_info(keyfile_dict, api, customer)

    async def set_admin(self, address: str):
        if "@" not in address:
            logger.error(f"Invalid admin email address: {address}")
            raise ConfigError(f"Invalid admin email address: {address}")
        creds = self.worker.with_subject(address)
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(self.api.executor, creds.refresh, Request()),
                timeout=self.api.call_timeout,
            )
            logger.debug(f"Successfully refreshed credentials for {address}")
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out refreshing credentials for {address}")
            raise CredentialError(f"Timed out delegating to admin {address}") from e
        except GoogleAuthError as e:
            logger.error(f"Failed to refresh credentials for {address}: {e}")
            raise CredentialError(
                "Invalid admin credentials! Check that the email is correct and that the service account has domain-wide delegation enabled."
            ) from e
        logger.info(f"Admin set to {address}")
        self.user_service = g_discover.build(
            "admin", "directory_v1", http=ThreadLocalHttp(creds)
        )

    async def list_member_addresses(self, include_suspended: bool = False) -> list[str]:
        if not self.user_service:
            logger.error("Attempted to list users without user service instance!")
            raise ConfigError("User service not configured! Call set_admin first.")

        addresses: list[str] = []
        page_token = None
        while True:
            logger.debug(f"Listing users {'[page ' + page_token + ']' if page_token else ''}")
            try:
                query_ret = await self.api(
                    self.user_service.users().list,
                    customer=self.customer,
                    maxResults=DIRECTORY_PAGE_SIZE,
                    orderBy="email",
                    pageToken=page_token,
                    fields="nextPageToken, users(primaryEmail, suspended)",
                )
            except APIError as e:
                raise DirectoryFetchError(f"Error listing users: {e}") from e
            for user in (query_ret or {}).get("users", []):
                address = user.get("primaryEmail")
                if not address:
                    logger.warning(f"Directory entry is missing primaryEmail, skipping: {user}")
                    continue
                if user.get("suspended", False) and not include_suspended:
                    logger.debug(f"Excluding suspended user {address}")
                    continue
                addresses.append(address)
            page_token = (query_ret or {}).get("nextPageToken")
            if not page_token:
                break
        logger.info(f"Found {len(addresses)} users in the directory")
        return addresses

    async def impersonate(self, address: str) -> User:
        creds = self.worker.with_subject(address)
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(self.api.executor, creds.refresh, Request()),
                timeout=self.api.call_timeout,
            )
            drive_service = g_discover.build("drive", "v3", http=ThreadLocalHttp(creds))
        except asyncio.TimeoutError as e:
            raise ClientConstructionError(f"Timed out impersonating {address}") from e
        except GoogleAuthError as e:
            raise ClientConstructionError(f"Unable to impersonate user {address}: {e}") from e
        return User(address, drive_service, self.api)


@dataclass
class ConsolidationStats:
    address: str
    record_path: str = ""
    folder_id: str | None = None
    listed: int = 0
    skipped: int = 0
    recorded: int = 0
    copied: int = 0
    failed_copies: list[str] = field(default_factory=list)


def record_path_for(address: str, output_dir: str = ".") -> str:
    return os.path.join(output_dir, f"{address}_shared_files.txt")


class ShareConsolidator:
    """Lists, filters, records and copies the files shared with one user."""

    def __init__(self, user: User, config: ConsolidationConfig):
        self.user = user
        self.config = config
        self.run = True

    def abort(self):
        self.run = False

    async def consolidate(self) -> ConsolidationStats:
        email = self.user.address
        stats = ConsolidationStats(email, record_path_for(email, self.config.output_dir))
        try:
            out = open(stats.record_path, "w", encoding="utf-8")
        except OSError as e:
            raise OutputIOError(f"Error creating file {stats.record_path}: {e}") from e

        with out:
            files = await self.user.list_shared_files()
            stats.listed = len(files)
            folder_id = await self.user.resolve_destination_folder()
            stats.folder_id = folder_id

            for f in files:
                if not self.run:
                    logger.info(f"Stopping consolidation for {email} before file {f.name}")
                    raise ConsolidationCancelled(f"Consolidation for {email} was aborted")
                substring = matching_skip_substring(f, self.config.skip_substrings)
                if substring is not None:
                    logger.info(f"Skipping file {f.name} for user {email}: Owner matches {substring}")
                    stats.skipped += 1
                    continue

                try:
                    out.write(f.record_line())
                    out.flush()
                except OSError as e:
                    raise OutputIOError(f"Error writing to file {stats.record_path}: {e}") from e
                stats.recorded += 1

                try:
                    await self.user.copy_file(f, folder_id)
                except CopyError as e:
                    logger.error(f"Unable to copy file {f.name} for user {email}: {e.cause}")
                    stats.failed_copies.append(f.name)
                    continue
                stats.copied += 1
                logger.info(f"Copied file {f.name} for user {email}")
        return stats


class OutcomeStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class IdentityOutcome:
    address: str
    status: OutcomeStatus
    error: str | None = None
    stats: ConsolidationStats | None = None


@dataclass
class BatchReport:
    outcomes: list[IdentityOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def succeeded(self) -> bool:
        return all(o.status is OutcomeStatus.SUCCEEDED for o in self.outcomes)

    def summary(self) -> str:
        return (
            f"{self.count(OutcomeStatus.SUCCEEDED)} succeeded, "
            f"{self.count(OutcomeStatus.FAILED)} failed, "
            f"{self.count(OutcomeStatus.CANCELLED)} cancelled "
            f"out of {len(self.outcomes)} users"
        )


class BatchConsolidation:
    """Runs a ShareConsolidator for every member of the organization, one at a time."""

    def __init__(self, org, config: ConsolidationConfig):
        self.org = org
        self.config = config
        self.running = True
        self.current: ShareConsolidator | None = None

    def abort(self):
        logger.info("Got abort command")
        self.running = False
        if self.current is not None:
            self.current.abort()

    async def run(self) -> BatchReport:
        addresses = await self.org.list_member_addresses(self.config.include_suspended)
        report = BatchReport()
        for email in addresses:
            if not self.running:
                report.outcomes.append(IdentityOutcome(email, OutcomeStatus.CANCELLED, "batch aborted"))
                continue
            report.outcomes.append(await self._process(email))
        logger.info(f"Batch finished: {report.summary()}")
        return report

    async def _process(self, email: str) -> IdentityOutcome:
        try:
            user = await self.org.impersonate(email)
        except ClientConstructionError as e:
            logger.error(f"Unable to impersonate user {email}: {e}")
            return IdentityOutcome(email, OutcomeStatus.FAILED, str(e))
        except Exception as e:
            logger.error(f"Unable to impersonate user {email}: {e!r}")
            return IdentityOutcome(email, OutcomeStatus.FAILED, repr(e))

        self.current = ShareConsolidator(user, self.config)
        try:
            stats = await asyncio.wait_for(
                self.current.consolidate(), timeout=self.config.identity_timeout
            )
        except asyncio.TimeoutError:
            err = IdentityTimeoutError(
                f"Consolidation for {email} exceeded {self.config.identity_timeout}s"
            )
            logger.error(f"Unable to list and copy shared files for user {email}: {err}")
            return IdentityOutcome(email, OutcomeStatus.FAILED, str(err))
        except ConsolidationCancelled as e:
            logger.warning(str(e))
            return IdentityOutcome(email, OutcomeStatus.CANCELLED, str(e))
        except ConsolidatorError as e:
            logger.error(f"Unable to list and copy shared files for user {email}: {e}")
            return IdentityOutcome(email, OutcomeStatus.FAILED, str(e))
        except Exception as e:
            # one user's unexpected failure must not end the batch
            logger.error(f"Unexpected error processing user {email}: {e!r}")
            return IdentityOutcome(email, OutcomeStatus.FAILED, repr(e))
        finally:
            self.current = None

        if stats.failed_copies:
            logger.warning(
                f"{len(stats.failed_copies)} of {stats.recorded} files could not be copied for {email}"
            )
        logger.info(f"Shared files for {email} saved and copied.")
        return IdentityOutcome(email, OutcomeStatus.SUCCEEDED, stats=stats)
