# wwtd/settings.py

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import commentjson
from dotenv import load_dotenv
from google.auth import default as google_auth_default
from google.cloud import secretmanager
from google.oauth2 import service_account

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("wwtd_core")


DEFAULT_SYSTEM_PROMPT = (
    "You are a christian assistant providing helpful advice for users based on the "
    "teachings of Jesus Christ. Quote scripture whenever applicable and provide concise answers."
)

APPLE_SANDBOX_VERIFY_RECEIPT_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

# keys accepted in the WWTD_CONFIG_PATH file, with their defaults
_APP_DEFAULTS: Dict[str, Any] = {
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "default_model": "gpt-4o-2024-05-13",
    "subscription_product_ids": ["monthly_unlimited", "yearly_unlimited"],
    "initial_tokens": 100000,
    "missing_balance_default": 10000,
    "preview_length": 100,
    "include_history": False,
    "completion_timeout": 60.0,
    "completion_retries": 3,
    "purchase_timeout": 300.0,
    "receipt_validation_url": APPLE_SANDBOX_VERIFY_RECEIPT_URL,
    "receipt_timeout": 20.0,
}


def build_google_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def load_app_config(path: Optional[str]) -> Dict[str, Any]:
    """
    Load the JSON-with-comments tunables file and merge it over the defaults.
    Unknown keys fail fast so typos don't silently fall back to defaults.
    """
    data = dict(_APP_DEFAULTS)
    if not path:
        return data

    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"App config file not found at '{cfg_path}'.")

    with cfg_path.open("r", encoding="utf-8") as f:
        loaded = commentjson.load(f)

    if not isinstance(loaded, dict):
        raise ValueError(f"App config at '{cfg_path}' must be a JSON object")

    unknown = sorted(set(loaded) - set(_APP_DEFAULTS))
    if unknown:
        raise ValueError(f"App config has unknown key(s): {unknown}")

    data.update(loaded)
    return data


@dataclass(frozen=True)
class Settings:
    # database
    database_url: str = ""
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = ""
    db_user: str = ""
    db_password: str = ""
    db_secret_id: str = ""

    # google cloud
    project_id: str = ""
    region: str = "us-central1"
    bucket_name: str = ""

    receipt_shared_secret: str = ""

    # application tunables
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    default_model: str = "gpt-4o-2024-05-13"
    subscription_product_ids: Tuple[str, ...] = ("monthly_unlimited", "yearly_unlimited")
    initial_tokens: int = 100000
    missing_balance_default: int = 10000
    preview_length: int = 100
    include_history: bool = False
    completion_timeout: Optional[float] = 60.0
    completion_retries: int = 3
    purchase_timeout: Optional[float] = 300.0
    receipt_validation_url: str = APPLE_SANDBOX_VERIFY_RECEIPT_URL
    receipt_timeout: float = 20.0

    @classmethod
    def from_env(cls) -> "Settings":
        app = load_app_config(os.getenv("WWTD_CONFIG_PATH"))
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            db_host=os.getenv("DB_HOST", "localhost"),
            db_port=int(os.getenv("DB_PORT", "5432")),
            db_name=os.getenv("DB_NAME", ""),
            db_user=os.getenv("DB_USER", ""),
            db_password=os.getenv("DB_PASSWORD", ""),
            db_secret_id=os.getenv("DB_SECRET_ID", ""),
            project_id=os.getenv("GOOGLE_CLOUD_PROJECT", ""),
            region=os.getenv("GOOGLE_CLOUD_REGION", "us-central1"),
            bucket_name=os.getenv("GCS_BUCKET_NAME", ""),
            receipt_shared_secret=os.getenv("RECEIPT_SHARED_SECRET", ""),
            system_prompt=app["system_prompt"],
            default_model=app["default_model"],
            subscription_product_ids=tuple(app["subscription_product_ids"]),
            initial_tokens=int(app["initial_tokens"]),
            missing_balance_default=int(app["missing_balance_default"]),
            preview_length=int(app["preview_length"]),
            include_history=bool(app["include_history"]),
            completion_timeout=app["completion_timeout"],
            completion_retries=int(app["completion_retries"]),
            purchase_timeout=app["purchase_timeout"],
            receipt_validation_url=app["receipt_validation_url"],
            receipt_timeout=float(app["receipt_timeout"]),
        )

    def with_overrides(self, **kwargs) -> "Settings":
        return replace(self, **kwargs)

    # -------- DB password (Secret Manager) --------
    def resolve_db_password(self) -> str:
        if self.db_password:
            return self.db_password
        if self.db_secret_id:
            client = secretmanager.SecretManagerServiceClient(credentials=build_google_creds())
            name = client.secret_version_path(self.project_id, self.db_secret_id, "latest")
            resp = client.access_secret_version(request={"name": name})
            return resp.payload.data.decode("utf-8")
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    def resolve_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        password = self.resolve_db_password()
        return f"postgresql+pg8000://{self.db_user}:{password}@{self.db_host}:{self.db_port}/{self.db_name}"
