# Overview: Proof-of-payment access gateway; short-lived links to externally stored artifacts.

"""
Proof Access Gateway

WHY: Proof files (bank slips, receipts) live in a private storage bucket.
Payments hold only a reference. Admins reviewing a payment need temporary
access to the file without the bucket ever being made public.

RULES:
- Admin only.
- Read-only with respect to the ledger: a storage failure never changes a
  payment's status.
- Every storage call has a timeout; transport and API errors surface as
  StorageError.
"""

from __future__ import annotations

import re
from urllib.parse import quote, unquote

import httpx
from flask import Flask, current_app

from ..exceptions import NotFoundError, StorageError, ValidationError
from .auth_service import Principal, require_admin


_EXTENSION_KEY = "offer_ledger.proof_store"
DEFAULT_FILENAME = "proof-of-payment"


class ProofStore:
    """Interface to the external artifact store."""

    def create_signed_url(self, path: str, expires_in: int) -> str:
        raise NotImplementedError

    def download(self, path: str) -> tuple[bytes, str]:
        """Return (content, content_type)."""
        raise NotImplementedError


class StorageApiProofStore(ProofStore):
    """
    Supabase-compatible storage REST API.

    Signing: POST {base}/storage/v1/object/sign/{bucket}/{path} {"expiresIn": n}
    Download: GET {base}/storage/v1/object/{bucket}/{path}
    """

    def __init__(self, base_url: str, api_key: str, bucket: str, *, timeout: float = 10.0,
                 client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.client = client or httpx.Client(timeout=timeout)
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "apikey": api_key,
        }

    def _object_url(self, prefix: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/{prefix}/{self.bucket}/{quote(path)}"

    def create_signed_url(self, path: str, expires_in: int) -> str:
        try:
            response = self.client.post(
                self._object_url("object/sign", path),
                json={"expiresIn": expires_in},
                headers=self.headers,
            )
            response.raise_for_status()
            signed = response.json().get("signedURL")
        except (httpx.HTTPError, ValueError) as exc:
            raise StorageError(f"Failed to create signed URL: {exc}") from exc

        if not signed:
            raise StorageError("No signed URL returned")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    def download(self, path: str) -> tuple[bytes, str]:
        try:
            response = self.client.get(self._object_url("object", path), headers=self.headers)
        except httpx.HTTPError as exc:
            raise StorageError(f"Failed to download proof: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError("Proof file not found")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(f"Failed to download proof: {exc}") from exc

        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type


def init_app(app: Flask, store: ProofStore | None = None) -> ProofStore | None:
    if store is None and app.config.get("PROOF_STORAGE_URL"):
        store = StorageApiProofStore(
            app.config["PROOF_STORAGE_URL"],
            app.config.get("PROOF_STORAGE_KEY") or "",
            app.config.get("PROOF_BUCKET", "payment-proofs"),
            timeout=app.config.get("PROOF_STORAGE_TIMEOUT", 10.0),
        )
    app.extensions[_EXTENSION_KEY] = store
    return store


def get_store() -> ProofStore:
    store = current_app.extensions.get(_EXTENSION_KEY)
    if store is None:
        raise StorageError("Proof storage is not configured")
    return store


def resolve_object_path(ref, bucket: str | None = None) -> str:
    """
    Turn a stored proof reference into an object path inside the bucket.

    Accepts a bare path ("proof-of-payment/slip.pdf") or a URL containing
    /<bucket>/ (the public URL stored at upload time). Query strings are
    dropped and percent-escapes decoded.
    """
    bucket = bucket or current_app.config.get("PROOF_BUCKET", "payment-proofs")
    if not isinstance(ref, str) or not ref.strip():
        raise ValidationError("ref is required")
    ref = ref.strip()

    if "://" in ref:
        match = re.search(rf"/{re.escape(bucket)}/(.+)$", ref)
        if not match:
            raise ValidationError("Invalid proof URL: could not extract path")
        path = unquote(match.group(1).split("?")[0])
    else:
        path = unquote(ref.split("?")[0]).lstrip("/")

    if not path or any(part in ("", "..") for part in path.split("/")):
        raise ValidationError("Invalid proof path")
    return path


def get_signed_proof_url(principal: Principal, ref) -> str:
    require_admin(principal)
    path = resolve_object_path(ref)
    ttl = current_app.config.get("PROOF_URL_TTL_SECONDS", 3600)

    url = get_store().create_signed_url(path, ttl)
    current_app.logger.info("Signed proof URL issued to user %s for %s", principal.user_id, path)
    return url


def download_proof(principal: Principal, ref) -> tuple[str, str, bytes]:
    """Returns (filename, content_type, content)."""
    require_admin(principal)
    path = resolve_object_path(ref)

    content, content_type = get_store().download(path)
    filename = path.rsplit("/", 1)[-1] or DEFAULT_FILENAME
    return filename, content_type, content
