"""Encrypted channel and model-provider secrets."""
from __future__ import annotations

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.clients.ai_chat import PROVIDER_PRESETS
from apps.backend.config import get_settings
from apps.backend.models.channel import AIProvider, WhatsAppAccount

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def _get_fernet(secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"flowbot_credentials",
        iterations=100000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
    return Fernet(key)


def encrypt_secret(plain: str, encryption_key: str | None = None) -> str:
    if not plain:
        return ""
    f = _get_fernet(encryption_key or get_settings().credentials_encryption_key)
    return f.encrypt(plain.encode()).decode()


def decrypt_secret(cipher: str, encryption_key: str | None = None) -> Optional[str]:
    if not cipher:
        return None
    try:
        f = _get_fernet(encryption_key or get_settings().credentials_encryption_key)
        return f.decrypt(cipher.encode()).decode()
    except (InvalidToken, ValueError):
        logger.warning("credential_decrypt_failed")
        return None


def get_ai_provider_credentials(db: Session, provider_id: int) -> tuple[str, str, str, AIProvider]:
    """(base_url, api_key, default_model, row) for an active provider."""
    row = db.get(AIProvider, provider_id)
    if not row or not row.is_active:
        raise CredentialError("ai_provider_not_found")
    base_url = (row.base_url or PROVIDER_PRESETS.get((row.provider or "").upper()) or "").strip()
    if not base_url:
        raise CredentialError("ai_provider_missing_base_url")
    api_key = decrypt_secret(row.api_key_encrypted or "")
    if not api_key:
        raise CredentialError("ai_provider_missing_api_key")
    return base_url, api_key, row.default_model or "", row


def get_whatsapp_credentials(db: Session, bot_id: int) -> tuple[str, str]:
    """(phone_number_id, access_token) of the bot's WhatsApp account."""
    row = db.execute(select(WhatsAppAccount).where(WhatsAppAccount.bot_id == bot_id)).scalar_one_or_none()
    if not row:
        raise CredentialError("whatsapp_account_not_found")
    token = decrypt_secret(row.access_token_encrypted or "")
    if not token:
        raise CredentialError("whatsapp_missing_access_token")
    return row.phone_number_id, token
