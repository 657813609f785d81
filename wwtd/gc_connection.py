# wwtd/gc_connection.py

import logging
from typing import Callable, Optional

from google.cloud import storage
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from wwtd.entities import Base
from wwtd.settings import Settings, build_google_creds

logger = logging.getLogger("wwtd_core")


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # in-memory sqlite must share one connection across worker threads
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args={"timeout": 10},
    )


def build_session_factory(engine: Engine, *, create_schema: bool = True) -> sessionmaker:
    if create_schema:
        Base.metadata.create_all(engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


class GCConnection:
    """
    Database and Cloud Storage access for one deployment.
    Both clients are created lazily so tests and local runs never touch GCP
    unless they actually upload something.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._sessionmaker: Optional[sessionmaker] = None
        self._storage_client = None
        self._creds = None

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            url = self.settings.resolve_database_url()
            logger.info("[DB] Connecting to %s", url.split("@")[-1])
            self._sessionmaker = build_session_factory(create_db_engine(url))
        return self._sessionmaker

    # -------- Storage helpers --------
    def _storage(self):
        if self._storage_client is None:
            self._creds = build_google_creds()
            self._storage_client = storage.Client(credentials=self._creds, project=self.settings.project_id or None)
        return self._storage_client

    def upload_to_gcs(self, blob_path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        bucket_name = self.settings.bucket_name
        if not bucket_name:
            raise RuntimeError("GCS_BUCKET_NAME is not configured")
        bucket = self._storage().bucket(bucket_name)
        blob = bucket.blob(blob_path)
        blob.upload_from_string(data, content_type=content_type)
        return f"https://storage.googleapis.com/{bucket_name}/{blob_path}"
