import asyncio
import base64
import binascii
import logging
import os
from typing import Callable, Dict, List, Optional

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import StoreDecryptError
from .models import Session

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


# =========================
# CRYPTO
# =========================
def encrypt_blob(key: bytes, plaintext: bytes) -> bytes:
    """AES-256-GCM. Output layout: nonce || tag || ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ct, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return nonce + tag + ct


def decrypt_blob(key: bytes, blob: bytes) -> bytes:
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise StoreDecryptError("session blob is truncated")
    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ct = blob[NONCE_SIZE + TAG_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ct + tag, None)
    except InvalidTag as e:
        raise StoreDecryptError("session blob failed authentication") from e


# =========================
# STORAGE
# =========================
class SessionStore:
    """Owns the chat_id -> Session mapping and its encrypted file."""

    def __init__(self, path: str, key: bytes):
        if len(key) != 32:
            raise ValueError("store key must be 32 bytes")
        self.path = path
        self._key = key
        self._sessions: Dict[str, Session] = {}
        self._save_lock = asyncio.Lock()

    def load(self) -> Dict[str, Session]:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            self._sessions = {}
            return self._sessions

        with open(self.path, "r", encoding="utf-8") as f:
            raw = f.read()
        try:
            blob = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise StoreDecryptError("session file is not valid base64") from e

        data = orjson.loads(decrypt_blob(self._key, blob))
        self._sessions = {str(sid): Session.from_dict(s) for sid, s in data.items()}
        logger.info("[STORE] %d sessions loaded", len(self._sessions))
        return self._sessions

    def get(self, session_id) -> Optional[Session]:
        return self._sessions.get(str(session_id))

    def put(self, session_id, session: Session) -> None:
        self._sessions[str(session_id)] = session

    def ids(self) -> List[str]:
        return list(self._sessions.keys())

    def _serialize(self) -> bytes:
        out = {sid: s.to_dict() for sid, s in self._sessions.items()}
        return base64.b64encode(encrypt_blob(self._key, orjson.dumps(out)))

    def _write(self, payload: bytes) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    async def save(self) -> None:
        async with self._save_lock:
            # serialize under the lock: the last writer holds the newest state
            payload = self._serialize()
            await asyncio.to_thread(self._write, payload)
        logger.debug("[STORE] sessions saved")

    async def mutate(self, session_id, fn: Callable[[Session], None]) -> Session:
        s = self._sessions[str(session_id)]
        fn(s)
        await self.save()
        return s
