"""
Signed upload authorizations for product images.

The till uploads the image straight to object storage with the returned
token, then sends the public URL along with ``POST /api/products``.

Env vars:
  STORAGE_URL                 storage project URL (e.g. https://xyz.supabase.co)
  STORAGE_SERVICE_ROLE_KEY    service-role key, server side only
  PRODUCT_IMAGES_BUCKET       bucket name (default: product-images)
"""
import os
import time
from typing import Dict, Optional
from urllib.parse import parse_qs, quote, urlparse

import requests

from pos_errors import UploadAuthorizationError

STORAGE_URL = os.environ.get("STORAGE_URL")
STORAGE_SERVICE_ROLE_KEY = os.environ.get("STORAGE_SERVICE_ROLE_KEY")
PRODUCT_IMAGES_BUCKET = os.environ.get("PRODUCT_IMAGES_BUCKET", "product-images")
REQUEST_TIMEOUT = 15


def _object_path() -> str:
    return f"{int(time.time() * 1000)}.jpeg"


def create_upload_authorization(path: Optional[str] = None) -> Dict[str, str]:
    """Return {path, token, signedUrl} for a single upload into the images bucket."""
    if not STORAGE_URL or not STORAGE_SERVICE_ROLE_KEY:
        raise UploadAuthorizationError("Missing STORAGE_URL/STORAGE_SERVICE_ROLE_KEY in environment")
    path = path or _object_path()
    base = STORAGE_URL.rstrip("/") + "/storage/v1"
    url = f"{base}/object/upload/sign/{quote(PRODUCT_IMAGES_BUCKET, safe='')}/{quote(path)}"
    headers = {
        "Authorization": f"Bearer {STORAGE_SERVICE_ROLE_KEY}",
        "apikey": STORAGE_SERVICE_ROLE_KEY,
        "Accept": "application/json",
    }
    try:
        resp = requests.post(url, headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        raise UploadAuthorizationError(f"Storage unreachable: {exc}") from exc
    if resp.status_code >= 400:
        raise UploadAuthorizationError(f"Storage refused upload signing ({resp.status_code}): {resp.text[:200]}")
    try:
        relative = (resp.json() or {}).get("url")
    except ValueError:
        relative = None
    if not relative:
        raise UploadAuthorizationError("Storage response did not include a signed URL")
    token = (parse_qs(urlparse(relative).query).get("token") or [None])[0]
    if not token:
        raise UploadAuthorizationError("Signed URL is missing its token")
    return {
        "path": path,
        "token": token,
        "signedUrl": base + (relative if relative.startswith("/") else f"/{relative}"),
    }
