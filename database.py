"""
Document store for the promo state.

The whole `PromoStore` is read and written as one JSON document. Every backend
implements the same optimistic contract:

    load() -> (store, version)           version None: no document yet
    save(store, version, message) -> new version

`save` is a compare-and-swap on `version` and raises `StaleVersionError`
when another writer got there first. Nothing here retries.
"""

import base64
import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import requests
from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from schemas import PromoStore

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
DOCUMENT_ID = "promo-store"


class StoreError(Exception):
    pass


class StaleVersionError(StoreError):
    """The document changed since it was loaded; reload and retry."""


class StoreUnavailableError(StoreError):
    pass


class DocumentStore:
    name = "base"

    def is_configured(self) -> bool:
        return True

    def load(self) -> Tuple[PromoStore, Optional[str]]:
        raise NotImplementedError

    def save(self, store: PromoStore, version: Optional[str], message: str) -> str:
        raise NotImplementedError


class MemoryDocumentStore(DocumentStore):
    """Process-local store with integer versions. Used for tests and local runs."""

    name = "memory"

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self._document = copy.deepcopy(document) if document is not None else None
        self._version = 1 if document is not None else 0
        self.messages = []

    @property
    def document(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._document)

    def load(self) -> Tuple[PromoStore, Optional[str]]:
        if self._document is None:
            return PromoStore(), None
        return PromoStore.from_document(copy.deepcopy(self._document)), str(self._version)

    def save(self, store: PromoStore, version: Optional[str], message: str) -> str:
        current = str(self._version) if self._document is not None else None
        if version != current:
            raise StaleVersionError(f"expected version {current}, got {version}")
        self._document = store.to_document()
        self._version += 1
        self.messages.append(message)
        return str(self._version)


class MongoDocumentStore(DocumentStore):
    """Single document in MongoDB with a numeric `version` field used for CAS."""

    name = "mongo"

    def __init__(self, database_url: Optional[str], database_name: Optional[str],
                 collection: str = "promo_store", client: Optional[MongoClient] = None):
        self.database_url = database_url
        self.database_name = database_name
        self._collection_name = collection
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._client is not None or (self.database_url and self.database_name))

    @property
    def collection(self):
        if self._client is None:
            self._client = MongoClient(self.database_url)
        return self._client[self.database_name][self._collection_name]

    def load(self) -> Tuple[PromoStore, Optional[str]]:
        try:
            doc = self.collection.find_one({"_id": DOCUMENT_ID})
        except PyMongoError as e:
            raise StoreUnavailableError(f"load failed: {e}") from e
        if not doc:
            return PromoStore(), None
        return PromoStore.from_document(doc.get("document")), str(doc.get("version", 0))

    def save(self, store: PromoStore, version: Optional[str], message: str) -> str:
        now = datetime.now(timezone.utc)
        try:
            if version is None:
                self.collection.insert_one({
                    "_id": DOCUMENT_ID,
                    "version": 1,
                    "document": store.to_document(),
                    "message": message,
                    "savedAt": now,
                })
                return "1"

            new_version = int(version) + 1
            result = self.collection.update_one(
                {"_id": DOCUMENT_ID, "version": int(version)},
                {"$set": {
                    "version": new_version,
                    "document": store.to_document(),
                    "message": message,
                    "savedAt": now,
                }},
            )
        except DuplicateKeyError as e:
            raise StaleVersionError("document was created concurrently") from e
        except PyMongoError as e:
            raise StoreUnavailableError(f"save failed: {e}") from e

        if result.matched_count == 0:
            raise StaleVersionError(f"version {version} is stale")
        return str(new_version)


class GitHubDocumentStore(DocumentStore):
    """JSON file in a GitHub repository; the blob sha is the version."""

    name = "github"

    def __init__(self, owner: str, repo: str, branch: str, path: str, token: str,
                 timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.path = path
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return all([self.owner, self.repo, self.branch, self.path, self.token])

    @property
    def url(self) -> str:
        return f"{GITHUB_API}/repos/{self.owner}/{self.repo}/contents/{quote(self.path, safe='')}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def load(self) -> Tuple[PromoStore, Optional[str]]:
        try:
            r = self.session.get(self.url, params={"ref": self.branch},
                                 headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreUnavailableError(f"load failed: {e}") from e

        if r.status_code == 404:
            return PromoStore(), None
        if r.status_code != 200:
            raise StoreUnavailableError(f"load failed: {r.status_code} {r.text[:200]}")

        payload = r.json() or {}
        raw = base64.b64decode((payload.get("content") or "").replace("\n", "")).decode("utf-8")
        try:
            document = json.loads(raw) if raw else {}
        except ValueError:
            logger.warning("Stored document %s is not valid JSON; starting from defaults", self.path)
            document = {}
        return PromoStore.from_document(document), payload.get("sha")

    def save(self, store: PromoStore, version: Optional[str], message: str) -> str:
        content = json.dumps(store.to_document(), indent=2)
        body = {
            "message": message or f"update {self.path}",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if version:
            body["sha"] = version

        try:
            r = self.session.put(self.url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreUnavailableError(f"save failed: {e}") from e

        if r.status_code in (409, 422):
            raise StaleVersionError(f"save rejected: {r.status_code} {r.text[:200]}")
        if r.status_code not in (200, 201):
            raise StoreUnavailableError(f"save failed: {r.status_code} {r.text[:200]}")

        data = r.json() or {}
        return (data.get("content") or {}).get("sha") or (data.get("commit") or {}).get("sha")


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        return MemoryDocumentStore()
    if settings.store_backend == "mongo":
        return MongoDocumentStore(settings.database_url, settings.database_name)
    return GitHubDocumentStore(
        owner=settings.gh_owner,
        repo=settings.gh_repo,
        branch=settings.gh_branch,
        path=settings.gh_path,
        token=settings.gh_token,
        timeout=settings.request_timeout,
    )
