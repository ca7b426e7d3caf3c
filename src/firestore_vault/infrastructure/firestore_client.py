"""
Store handles for Firestore and Firebase Authentication
Every component receives one of these explicitly; nothing reaches for a global client
"""

import asyncio
from datetime import timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Dict, List, Optional, Any, Protocol, Sequence, Tuple
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

import firebase_admin
from firebase_admin import auth, credentials
from google.cloud.firestore_v1 import AsyncClient
from google.api_core import exceptions as gcp_exceptions

from .config import Settings
from .errors import StoreConnectionError
from ..models.schemas import (
    ProviderBackup,
    StoredDocument,
    UserBackup,
    UserMetadataBackup,
    WriteOperation,
)

logger = structlog.get_logger()

# Read failures worth another attempt; anything else propagates immediately
TRANSIENT_ERRORS = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.TooManyRequests,
)


class DocumentStore(Protocol):
    """What the exporter, importer, migrator and clear tool need from a store"""

    project_id: str
    database_id: str

    async def list_collection_ids(self, document_path: Optional[str] = None) -> List[str]: ...

    async def list_document_ids(self, collection_path: str) -> List[str]: ...

    async def get_document(self, document_path: str) -> StoredDocument: ...

    async def stream_documents(self, collection_path: str) -> List[StoredDocument]: ...

    async def commit(self, operations: Sequence[WriteOperation]) -> None: ...

    def reference(self, document_path: str) -> Any: ...


class AuthStore(Protocol):
    """What the auth backup step needs from Firebase Authentication"""

    async def list_users(self, page_size: int = 1000) -> List[UserBackup]: ...

    async def import_users(self, users: Sequence[UserBackup]) -> Tuple[int, int]: ...

    async def upsert_user(self, user: UserBackup) -> None: ...

    async def set_custom_claims(self, uid: str, claims: Dict[str, Any]) -> None: ...


class FirestoreStore:
    """DocumentStore backed by the async Firestore client"""

    def __init__(self, client: AsyncClient, project_id: str = "",
                 database_id: str = "(default)", retry_attempts: int = 3):
        self.client = client
        self.project_id = project_id or client.project
        self.database_id = database_id
        self.retry_attempts = retry_attempts

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=4, max=10),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )

    async def list_collection_ids(self, document_path: Optional[str] = None) -> List[str]:
        """Top-level collections, or the subcollections of one document"""
        async for attempt in self._retrying():
            with attempt:
                parent = self.client.document(document_path) if document_path else self.client
                return [collection.id async for collection in parent.collections()]

    async def list_document_ids(self, collection_path: str) -> List[str]:
        """All document ids, including documents that only hold subcollections"""
        async for attempt in self._retrying():
            with attempt:
                collection = self.client.collection(collection_path)
                return [ref.id async for ref in collection.list_documents()]

    async def get_document(self, document_path: str) -> StoredDocument:
        async for attempt in self._retrying():
            with attempt:
                snapshot = await self.client.document(document_path).get()
                return self._to_stored(document_path, snapshot)

    async def stream_documents(self, collection_path: str) -> List[StoredDocument]:
        """Documents with fields; container-only documents are not returned"""
        async for attempt in self._retrying():
            with attempt:
                collection = self.client.collection(collection_path)
                return [
                    self._to_stored(f"{collection_path}/{snapshot.id}", snapshot)
                    async for snapshot in collection.stream()
                ]

    async def commit(self, operations: Sequence[WriteOperation]) -> None:
        """Commit one write batch. Never retried: a batch is all-or-nothing."""
        batch = self.client.batch()
        for op in operations:
            doc_ref = self.client.document(op.path)
            if op.op == "set":
                batch.set(doc_ref, op.data)
            elif op.op == "delete":
                batch.delete(doc_ref)
            else:
                raise ValueError(f"Unsupported write operation: {op.op}")
        await batch.commit()
        logger.debug("Batch committed", operations_count=len(operations))

    def reference(self, document_path: str):
        return self.client.document(document_path)

    @staticmethod
    def _to_stored(document_path: str, snapshot) -> StoredDocument:
        if not snapshot.exists:
            return StoredDocument(id=snapshot.id, path=document_path)
        return StoredDocument(
            id=snapshot.id,
            path=document_path,
            data=snapshot.to_dict() or {},
            create_time=snapshot.create_time,
            update_time=snapshot.update_time,
        )


def _http_date(millis: Optional[int]) -> Optional[str]:
    if millis is None:
        return None
    return formatdate(millis / 1000, usegmt=True)


def _millis(http_date: Optional[str]) -> Optional[int]:
    if not http_date:
        return None
    parsed = parsedate_to_datetime(http_date)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    return value if value and value.strip() else None


class FirebaseAuthStore:
    """AuthStore backed by the firebase_admin SDK.

    The SDK is synchronous, so every call is pushed onto a worker thread.
    """

    def __init__(self, app: Optional[firebase_admin.App] = None, emulator: bool = False):
        self.app = app
        self.emulator = emulator

    async def list_users(self, page_size: int = 1000) -> List[UserBackup]:
        users: List[UserBackup] = []
        page = await asyncio.to_thread(auth.list_users, max_results=page_size, app=self.app)
        while page:
            users.extend(self._to_backup(record) for record in page.users)
            logger.debug("Listed auth users page", users_so_far=len(users))
            page = await asyncio.to_thread(page.get_next_page)
        return users

    async def import_users(self, users: Sequence[UserBackup]) -> Tuple[int, int]:
        """Import one batch without password hashes; returns (success, failure)"""
        records = [self._to_import_record(user) for user in users]
        result = await asyncio.to_thread(auth.import_users, records, app=self.app)
        for error in result.errors:
            logger.warning("User import failed", index=error.index, reason=error.reason)
        return result.success_count, result.failure_count

    async def upsert_user(self, user: UserBackup) -> None:
        properties = {
            "email": user.email,
            "email_verified": user.email_verified,
            "display_name": _blank_to_none(user.display_name),
            "photo_url": _blank_to_none(user.photo_url),
            "phone_number": _blank_to_none(user.phone_number),
            "disabled": user.disabled,
        }
        properties = {key: value for key, value in properties.items() if value is not None}
        try:
            await asyncio.to_thread(auth.create_user, uid=user.uid, app=self.app, **properties)
        except (auth.UidAlreadyExistsError, auth.EmailAlreadyExistsError):
            logger.info("User already exists, updating", uid=user.uid)
            await asyncio.to_thread(auth.update_user, user.uid, app=self.app, **properties)

    async def set_custom_claims(self, uid: str, claims: Dict[str, Any]) -> None:
        await asyncio.to_thread(auth.set_custom_user_claims, uid, claims, app=self.app)

    @staticmethod
    def _to_backup(record) -> UserBackup:
        metadata = record.user_metadata
        return UserBackup(
            uid=record.uid,
            email=record.email,
            email_verified=record.email_verified,
            display_name=record.display_name,
            photo_url=record.photo_url,
            phone_number=record.phone_number,
            disabled=record.disabled,
            metadata=UserMetadataBackup(
                creation_time=_http_date(metadata.creation_timestamp),
                last_sign_in_time=_http_date(metadata.last_sign_in_timestamp),
                last_refresh_time=_http_date(getattr(metadata, "last_refresh_timestamp", None)),
            ),
            custom_claims=record.custom_claims or None,
            provider_data=[
                ProviderBackup(
                    uid=provider.uid,
                    provider_id=provider.provider_id,
                    email=provider.email,
                    display_name=provider.display_name,
                    photo_url=provider.photo_url,
                    phone_number=provider.phone_number,
                )
                for provider in record.provider_data
            ],
        )

    @staticmethod
    def _to_import_record(user: UserBackup) -> auth.ImportUserRecord:
        return auth.ImportUserRecord(
            uid=user.uid,
            email=user.email,
            email_verified=user.email_verified,
            display_name=_blank_to_none(user.display_name),
            phone_number=_blank_to_none(user.phone_number),
            photo_url=_blank_to_none(user.photo_url),
            disabled=user.disabled,
            user_metadata=auth.UserMetadata(
                creation_timestamp=_millis(user.metadata.creation_time),
                last_sign_in_timestamp=_millis(user.metadata.last_sign_in_time),
            ),
            provider_data=[
                auth.UserProvider(
                    uid=provider.uid,
                    provider_id=provider.provider_id,
                    email=provider.email,
                    display_name=provider.display_name,
                    photo_url=provider.photo_url,
                )
                for provider in user.provider_data
            ],
            custom_claims=user.custom_claims or None,
        )


def _initialize_app(config: Settings) -> firebase_admin.App:
    if firebase_admin._apps:
        return firebase_admin.get_app()

    options = {"projectId": config.project_id} if config.project_id else None
    if config.uses_emulator:
        # Emulators accept any credential
        return firebase_admin.initialize_app(options=options)
    if config.GOOGLE_APPLICATION_CREDENTIALS:
        cred = credentials.Certificate(config.GOOGLE_APPLICATION_CREDENTIALS)
    else:
        cred = credentials.ApplicationDefault()
    return firebase_admin.initialize_app(cred, options=options)


def create_stores(config: Settings) -> Tuple[FirestoreStore, FirebaseAuthStore]:
    """Initialise Firebase once and build both store handles"""
    try:
        app = _initialize_app(config)
        project_id = config.project_id or app.project_id or ""
        client = AsyncClient(project=project_id or None, database=config.FIRESTORE_DATABASE)
    except (ValueError, IOError, gcp_exceptions.GoogleAPIError) as e:
        logger.error("Failed to initialise Firebase", error=str(e))
        raise StoreConnectionError(
            "Failed to initialise Firebase Admin SDK",
            context={"project_id": config.project_id, "emulator": config.uses_emulator},
            original_exception=e,
        ) from e

    logger.info("Stores initialised",
                project_id=project_id,
                database=config.FIRESTORE_DATABASE,
                firestore_emulator=config.FIRESTORE_EMULATOR_HOST or None,
                auth_emulator=config.FIREBASE_AUTH_EMULATOR_HOST or None)

    store = FirestoreStore(client, project_id=project_id,
                           database_id=config.FIRESTORE_DATABASE,
                           retry_attempts=config.STORE_RETRY_ATTEMPTS)
    auth_store = FirebaseAuthStore(app, emulator=config.uses_auth_emulator)
    return store, auth_store


__all__ = [
    'DocumentStore',
    'AuthStore',
    'FirestoreStore',
    'FirebaseAuthStore',
    'create_stores',
]
