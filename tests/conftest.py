"""
Pytest configuration and fixtures
In-memory stand-ins for Firestore and Firebase Auth that record every call
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pytest
from google.cloud.firestore_v1.document import DocumentReference

from firestore_vault.infrastructure.config import Settings
from firestore_vault.models.schemas import StoredDocument, UserBackup, WriteOperation
from firestore_vault.tools.batch_executor import BatchedMutationExecutor

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _copy(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _copy(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_copy(item) for item in value]
    return value


class InjectedCommitError(RuntimeError):
    pass


class InMemoryStore:
    """Document tree keyed by full document path"""

    def __init__(self, project_id: str = "test-project"):
        self.project_id = project_id
        self.database_id = "(default)"
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.times: Dict[str, Tuple[datetime, datetime]] = {}
        self.commits: List[List[Tuple[str, str]]] = []
        self.fail_on_commit: Optional[int] = None
        self.commit_attempts = 0
        self._clock = BASE_TIME

    def _tick(self) -> datetime:
        self._clock += timedelta(milliseconds=1)
        return self._clock

    def seed(self, path: str, data: Dict[str, Any]) -> None:
        now = self._tick()
        created = self.times.get(path, (now, now))[0]
        self.documents[path] = _copy(data)
        self.times[path] = (created, now)

    def exists(self, path: str) -> bool:
        return path in self.documents

    def data(self, path: str) -> Dict[str, Any]:
        return self.documents[path]

    def paths(self) -> List[str]:
        return sorted(self.documents)

    async def list_collection_ids(self, document_path: Optional[str] = None) -> List[str]:
        prefix = f"{document_path}/" if document_path else ""
        names = set()
        for path in self.documents:
            if path.startswith(prefix):
                names.add(path[len(prefix):].split("/")[0])
        return sorted(names)

    async def list_document_ids(self, collection_path: str) -> List[str]:
        prefix = f"{collection_path}/"
        ids = set()
        for path in self.documents:
            if path.startswith(prefix):
                ids.add(path[len(prefix):].split("/")[0])
        return sorted(ids)

    async def get_document(self, document_path: str) -> StoredDocument:
        doc_id = document_path.split("/")[-1]
        if document_path not in self.documents:
            return StoredDocument(id=doc_id, path=document_path)
        created, updated = self.times[document_path]
        return StoredDocument(id=doc_id, path=document_path,
                              data=_copy(self.documents[document_path]),
                              create_time=created, update_time=updated)

    async def stream_documents(self, collection_path: str) -> List[StoredDocument]:
        depth = collection_path.count("/") + 1
        result = []
        for path in sorted(self.documents):
            if path.startswith(f"{collection_path}/") and path.count("/") == depth:
                result.append(await self.get_document(path))
        return result

    async def commit(self, operations: Sequence[WriteOperation]) -> None:
        self.commit_attempts += 1
        if self.fail_on_commit == self.commit_attempts:
            raise InjectedCommitError(f"commit {self.commit_attempts} rejected")
        for op in operations:
            if op.op == "set":
                self.seed(op.path, op.data)
            else:
                self.documents.pop(op.path, None)
                self.times.pop(op.path, None)
        self.commits.append([(op.op, op.path) for op in operations])

    def reference(self, document_path: str) -> DocumentReference:
        return DocumentReference(*document_path.split("/"))


class FakeAuthStore:

    def __init__(self, users: Optional[List[UserBackup]] = None):
        self.users: Dict[str, UserBackup] = {user.uid: user for user in users or []}
        self.claims: Dict[str, Dict[str, Any]] = {}
        self.import_batches: List[List[str]] = []
        self.upserts: List[str] = []
        self.failing_uids: Set[str] = set()
        self.import_failures = 0
        self.fail_import = False

    async def list_users(self, page_size: int = 1000) -> List[UserBackup]:
        return list(self.users.values())

    async def import_users(self, users: Sequence[UserBackup]) -> Tuple[int, int]:
        if self.fail_import:
            raise RuntimeError("import rejected")
        self.import_batches.append([user.uid for user in users])
        for user in users:
            self.users[user.uid] = user
        failures = min(self.import_failures, len(users))
        return len(users) - failures, failures

    async def upsert_user(self, user: UserBackup) -> None:
        if user.uid in self.failing_uids:
            raise ValueError(f"invalid user {user.uid}")
        self.upserts.append(user.uid)
        self.users[user.uid] = user

    async def set_custom_claims(self, uid: str, claims: Dict[str, Any]) -> None:
        self.claims[uid] = claims


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def auth_store():
    return FakeAuthStore()


@pytest.fixture
def executor(store):
    return BatchedMutationExecutor(store)


@pytest.fixture
def dry_executor(store):
    return BatchedMutationExecutor(store, dry_run=True)


@pytest.fixture
def vault_settings(tmp_path):
    return Settings(
        GOOGLE_CLOUD_PROJECT="test-project",
        FIRESTORE_EMULATOR_HOST="",
        FIREBASE_AUTH_EMULATOR_HOST="",
        BACKUPS_DIR=str(tmp_path / "backups"),
        PROJECT_ROOT=str(tmp_path / "project"),
    )


@pytest.fixture
def empty_store():
    """A second, independent store to restore into"""
    return InMemoryStore()


@pytest.fixture
def empty_auth_store():
    return FakeAuthStore()
