"""
Shared test fixtures for the shared file consolidator tests
"""

import time
from typing import Callable, Dict, List, Optional, Set

import pytest
from googleapiclient.errors import HttpError

from consolidator import (
    FOLDER_MIME_TYPE,
    FOLDER_NAME,
    APIWrapper,
    ClientConstructionError,
    ConsolidationConfig,
    User,
)


# === Mock Google API plumbing ===

class MockExecute:
    """Mock for the .execute() call that returns stored data or raises"""
    def __init__(self, data=None, error: Exception = None, delay: float = 0):
        self._data = data
        self._error = error
        self._delay = delay

    def execute(self):
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._data


class MockHttpResponse:
    """Mock HTTP response for HttpError"""
    def __init__(self, status: int, reason: str):
        self.status = status
        self.reason = reason


def make_http_error(status: int, reason: str = "Error", content: bytes = b"Request failed") -> HttpError:
    return HttpError(resp=MockHttpResponse(status, reason), content=content)


def paginate(items: List[dict], page_token: Optional[str], page_size: int):
    start = int(page_token) if page_token else 0
    end = min(start + page_size, len(items))
    next_token = str(end) if end < len(items) else None
    return items[start:end], next_token


# === Mock Drive v3 service ===

class MockFiles:
    """Mock for drive_service.files()"""
    def __init__(self, drive: "MockDriveService"):
        self._drive = drive

    def list(self, q: str = "", fields: str = "", pageToken: Optional[str] = None, **kwargs):
        drive = self._drive
        if "sharedWithMe" in q:
            drive.shared_list_calls += 1
            if drive.shared_list_error is not None:
                return MockExecute(error=drive.shared_list_error)
            if drive.fail_shared_list:
                return MockExecute(error=make_http_error(500, "Backend Error"))
            page, next_token = paginate(drive.shared_files, pageToken, drive.page_size)
            result = {"files": page}
            if next_token:
                result["nextPageToken"] = next_token
            return MockExecute(result)

        drive.folder_list_calls += 1
        if drive.fail_folder_list:
            return MockExecute(error=make_http_error(403, "Forbidden"))
        matches = [
            {"id": f["id"]}
            for f in drive.folders
            if f["name"] == FOLDER_NAME and f["mimeType"] == FOLDER_MIME_TYPE and "root" in f["parents"]
        ]
        assert FOLDER_NAME in q
        return MockExecute({"files": matches})

    def create(self, body: dict, fields: str = "", **kwargs):
        drive = self._drive
        if drive.fail_create:
            return MockExecute(error=make_http_error(403, "Forbidden"))
        folder = dict(body, id=f"folder_{len(drive.folders) + 1}")
        drive.folders.append(folder)
        drive.created_folders.append(folder)
        return MockExecute({"id": folder["id"]})

    def copy(self, fileId: str, body: dict, fields: str = "", **kwargs):
        drive = self._drive
        drive.copy_attempts.append((fileId, body))
        if drive.on_copy is not None:
            drive.on_copy(fileId)
        if fileId in drive.copy_errors:
            return MockExecute(error=drive.copy_errors[fileId])
        if fileId in drive.fail_copy:
            return MockExecute(error=make_http_error(403, "Forbidden", b"The user does not have sufficient permissions"))
        drive.copied.append(fileId)
        return MockExecute({"id": f"copy_of_{fileId}"}, delay=drive.copy_delay)


class MockDriveService:
    """Mock Drive API service holding one user's shared files and root folders"""

    def __init__(
        self,
        shared_files: List[dict] = None,
        folders: List[dict] = None,
        fail_copy: Set[str] = None,
        page_size: int = 100,
    ):
        self.shared_files = shared_files or []
        self.folders = folders or []
        self.fail_copy = fail_copy or set()
        self.page_size = page_size
        self.fail_shared_list = False
        self.shared_list_error: Optional[Exception] = None
        self.copy_errors: Dict[str, Exception] = {}
        self.fail_folder_list = False
        self.fail_create = False
        self.copy_delay = 0.0
        self.on_copy: Optional[Callable[[str], None]] = None

        self.created_folders: List[dict] = []
        self.copy_attempts: List[tuple] = []
        self.copied: List[str] = []
        self.shared_list_calls = 0
        self.folder_list_calls = 0

    def files(self):
        return MockFiles(self)

    @property
    def copy_attempt_ids(self) -> List[str]:
        return [file_id for file_id, _ in self.copy_attempts]


# === Mock Admin SDK directory service ===

class MockUsersResource:
    def __init__(self, directory: "MockDirectoryService"):
        self._directory = directory

    def list(self, customer: str, maxResults: int = 100, orderBy: str = None, pageToken: Optional[str] = None, fields: str = None):
        directory = self._directory
        directory.list_calls.append({"customer": customer, "maxResults": maxResults, "orderBy": orderBy, "pageToken": pageToken})
        page_number = len(directory.list_calls)
        if directory.fail_on_page is not None and page_number == directory.fail_on_page:
            return MockExecute(error=make_http_error(503, "Service Unavailable"))
        page, next_token = paginate(directory.user_records, pageToken, directory.page_size)
        result = {"users": page}
        if next_token:
            result["nextPageToken"] = next_token
        return MockExecute(result)


class MockDirectoryService:
    """Mock Admin SDK directory_v1 service"""

    def __init__(self, users: List[dict], page_size: int = 500, fail_on_page: Optional[int] = None):
        self.user_records = users
        self.page_size = page_size
        self.fail_on_page = fail_on_page
        self.list_calls: List[dict] = []

    def users(self):
        return MockUsersResource(self)


# === Fake organization for batch tests ===

class FakeOrg:
    """Stands in for consolidator.Org: fixed roster, mock Drive per user"""

    def __init__(self, api: APIWrapper, drives: Dict[str, MockDriveService], fail_impersonate: Set[str] = None):
        self.api = api
        self.drives = drives
        self.fail_impersonate = fail_impersonate or set()
        self.impersonated: List[str] = []

    async def list_member_addresses(self, include_suspended: bool = False) -> List[str]:
        return list(self.drives)

    async def impersonate(self, address: str) -> User:
        self.impersonated.append(address)
        if address in self.fail_impersonate:
            raise ClientConstructionError(f"Unable to impersonate user {address}: unauthorized_client")
        return User(address, self.drives[address], self.api)


# === Helpers to create API data ===

def make_shared_file(file_id: str, name: str, owners: List[tuple] = None) -> dict:
    """Helper to create a file dict matching the Drive v3 files resource"""
    data = {"id": file_id, "name": name}
    if owners is not None:
        data["owners"] = [{"displayName": d, "emailAddress": e} for d, e in owners]
    return data


def make_folder(folder_id: str, name: str = FOLDER_NAME, parents: List[str] = None) -> dict:
    return {"id": folder_id, "name": name, "mimeType": FOLDER_MIME_TYPE, "parents": parents or ["root"]}


# === Fixtures ===

@pytest.fixture
def api():
    wrapper = APIWrapper()
    yield wrapper
    wrapper.shutdown()


@pytest.fixture
def config(tmp_path) -> ConsolidationConfig:
    return ConsolidationConfig(
        credentials_path="creds.json",
        admin_address="admin@co",
        skip_substrings=("spammer.com",),
        output_dir=str(tmp_path),
    )


@pytest.fixture
def mixed_shared_files() -> List[dict]:
    return [
        make_shared_file("1", "Spam deck", [("Bob", "bob@spammer.com")]),
        make_shared_file("2", "Budget", [("Carol", "carol@co")]),
    ]
