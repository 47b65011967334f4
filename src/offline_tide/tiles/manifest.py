"""
Tile manifest parsing, signing and signature policy.

A manifest is validated as a whole into a frozen :class:`TileManifest`.
Its ``signature`` is an HMAC-SHA256 (base64) over the canonical body: the
manifest serialised with camelCase keys, sorted, without the signature
field and without whitespace.

Signature policy depends on the environment:

* ``production``: unsigned or invalid manifests are rejected with
  :class:`MalformedManifest`.
* ``development`` / ``test``: they are accepted with a warning and marked
  unverified.

Manifests are whole-object replacements; :class:`ManifestRegistry` keeps
the previous manifest active when a replacement fails.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import ValidationError

from offline_tide.exceptions import MalformedManifest

from .models import TileManifest

logger = logging.getLogger(__name__)

ENVIRONMENTS = ('production', 'development', 'test')
UNSIGNED = 'unsigned'


def parse_manifest(raw: dict | str | bytes) -> TileManifest:
    """
    Validate a raw manifest document.

    Parameters
    ----------
    raw : dict, str or bytes
        Decoded JSON object, or JSON text.

    Returns
    -------
    TileManifest

    Raises
    ------
    MalformedManifest
        If the document is not JSON, or required fields are missing or out
        of range.
    """
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return TileManifest.model_validate_json(raw)
        return TileManifest.model_validate(raw)
    except ValidationError as exc:
        raise MalformedManifest(f"Invalid tile manifest: {exc}") from exc


def canonical_body(manifest: TileManifest) -> bytes:
    """Bytes the manifest signature is computed over."""
    body = manifest.model_dump(
        mode='json', by_alias=True, exclude_none=True, exclude={'signature'},
    )
    return json.dumps(body, sort_keys=True, separators=(',', ':')).encode('utf-8')


def sign_manifest(body: bytes | str, key: bytes | str) -> str:
    """Base64 HMAC-SHA256 of *body* under *key*."""
    if isinstance(body, str):
        body = body.encode('utf-8')
    if isinstance(key, str):
        key = key.encode('utf-8')
    digest = hmac.new(key, body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def verify_manifest_signature(manifest: TileManifest, key: bytes | str | None) -> bool:
    """True if the manifest carries a valid signature for *key*."""
    if not key or manifest.signature == UNSIGNED:
        return False
    expected = sign_manifest(canonical_body(manifest), key)
    return hmac.compare_digest(expected, manifest.signature)


def is_expired(manifest: TileManifest, now: datetime | None = None) -> bool:
    """True if ``validUntil`` is set and lies before *now* (UTC)."""
    if manifest.valid_until is None:
        return False
    now = now or datetime.now(timezone.utc)
    valid_until = manifest.valid_until
    if valid_until.tzinfo is None:
        valid_until = valid_until.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return valid_until < now


@dataclass(frozen=True)
class LoadedManifest:
    manifest: TileManifest
    verified: bool


class ManifestValidator:
    """
    Parse manifests and apply the signature policy.

    Parameters
    ----------
    key : bytes or str, optional
        Shared HMAC key.  Without a key no manifest can be verified.
    environment : str, optional
        ``production`` (default), ``development`` or ``test``.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.
    """

    def __init__(
        self,
        key: bytes | str | None = None,
        environment: str = 'production',
        logger: logging.Logger | None = None,
    ):
        environment = environment.strip().lower()
        if environment not in ENVIRONMENTS:
            raise ValueError(
                f"Unknown environment {environment!r}; expected one of {ENVIRONMENTS}."
            )
        self._key = key
        self.environment = environment
        self._log = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, logger: logging.Logger | None = None) -> ManifestValidator:
        return cls(settings.signing_key, settings.environment, logger=logger)

    def parse(self, raw: dict | str | bytes) -> TileManifest:
        return parse_manifest(raw)

    def verify_signature(self, manifest: TileManifest) -> bool:
        return verify_manifest_signature(manifest, self._key)

    def load(self, raw: dict | str | bytes) -> LoadedManifest:
        """
        Parse, verify and apply the environment policy.

        Raises
        ------
        MalformedManifest
            On schema failure, or in production when the signature is
            missing or invalid.
        """
        manifest = self.parse(raw)
        verified = self.verify_signature(manifest)
        if not verified:
            if self.environment == 'production':
                raise MalformedManifest(
                    f"Manifest {manifest.version} signature is missing or invalid."
                )
            self._log.warning(
                'Accepting unverified manifest %s in %s environment.',
                manifest.version, self.environment,
            )
        self._log.info(
            'Loaded manifest %s with %d tiles (verified=%s).',
            manifest.version, len(manifest.tiles), verified,
        )
        return LoadedManifest(manifest=manifest, verified=verified)


class ManifestRegistry:
    """Holds the active manifest; replacements are all-or-nothing."""

    def __init__(self, validator: ManifestValidator, logger: logging.Logger | None = None):
        self._validator = validator
        self._active: LoadedManifest | None = None
        self._lock = threading.Lock()
        self._log = logger or logging.getLogger(__name__)

    @property
    def active(self) -> TileManifest | None:
        loaded = self._active
        return loaded.manifest if loaded else None

    @property
    def verified(self) -> bool:
        loaded = self._active
        return bool(loaded and loaded.verified)

    def replace(self, raw: dict | str | bytes) -> TileManifest:
        """
        Validate *raw* and make it the active manifest.

        On :class:`MalformedManifest` the previous manifest stays active and
        the error propagates.
        """
        try:
            loaded = self._validator.load(raw)
        except MalformedManifest:
            previous = self.active
            self._log.warning(
                'Manifest replacement rejected; keeping %s.',
                previous.version if previous else 'no manifest',
            )
            raise
        with self._lock:
            self._active = loaded
        return loaded.manifest
