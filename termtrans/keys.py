"""
API key management for termtrans.

Keys are looked up in this order:
1. Environment variable (preferred for CI/production)
2. OS keychain via keyring
3. Local config file (~/.termtrans/keys.json)

Usage:
    from termtrans.keys import KeyManager

    km = KeyManager()
    km.set_key("openai", "sk-...")
    key = km.get_key("openai")
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from termtrans.config import APP_NAME, CONFIG_DIR
from termtrans.errors import ValidationError

logger = logging.getLogger(__name__)

# Supported services and their env var names
SERVICES = {
    "openai": "OPENAI_API_KEY",
}


@dataclass
class KeyInfo:
    """Information about an API key."""
    service: str
    is_set: bool
    source: str  # 'env', 'keyring', 'config', 'none'
    masked_value: str


class KeyManager:
    """Resolve and store API keys."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or (CONFIG_DIR / "keys.json")

    @staticmethod
    def env_var(service: str) -> str:
        return SERVICES.get(service, f"{service.upper()}_API_KEY")

    def _read_config(self) -> dict:
        if not self.config_file.exists():
            return {}
        try:
            return json.loads(self.config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable key file %s: %s", self.config_file, e)
            return {}

    def _keyring_get(self, service: str) -> Optional[str]:
        try:
            return keyring.get_password(APP_NAME, service)
        except KeyringError as e:
            logger.debug("Keyring lookup failed for %s: %s", service, e)
            return None

    def lookup(self, service: str) -> tuple[Optional[str], str]:
        """Return (key, source) where source is env/keyring/config/none."""
        service = service.lower()
        if env_val := os.getenv(self.env_var(service)):
            return env_val, "env"
        if key := self._keyring_get(service):
            return key, "keyring"
        if key := self._read_config().get(service):
            return key, "config"
        return None, "none"

    def get_key(self, service: str) -> Optional[str]:
        return self.lookup(service)[0]

    def set_key(self, service: str, key: str, use_keyring: bool = True) -> str:
        """Store a key, returning the storage location used."""
        service = service.lower()
        if use_keyring:
            try:
                keyring.set_password(APP_NAME, service, key)
                return "keyring"
            except KeyringError as e:
                logger.info("Keyring unavailable (%s); writing %s", e, self.config_file)

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        config = self._read_config()
        config[service] = key
        self.config_file.write_text(json.dumps(config, indent=2), encoding="utf-8")
        self.config_file.chmod(0o600)
        return "config"

    def delete_key(self, service: str) -> bool:
        service = service.lower()
        deleted = False
        try:
            keyring.delete_password(APP_NAME, service)
            deleted = True
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            logger.debug("Keyring delete failed for %s: %s", service, e)

        config = self._read_config()
        if service in config:
            del config[service]
            self.config_file.write_text(json.dumps(config, indent=2), encoding="utf-8")
            deleted = True
        return deleted

    def get_key_info(self, service: str) -> KeyInfo:
        key, source = self.lookup(service)
        return KeyInfo(
            service=service.lower(),
            is_set=key is not None,
            source=source,
            masked_value=self._mask_key(key) if key else "",
        )

    def list_keys(self) -> list[KeyInfo]:
        return [self.get_key_info(service) for service in SERVICES]

    @staticmethod
    def _mask_key(key: str) -> str:
        """Mask a key for display (first 4 and last 4 chars)."""
        if len(key) <= 12:
            return "*" * len(key)
        return f"{key[:4]}...{key[-4:]}"


def require_key(service: str, manager: Optional[KeyManager] = None) -> str:
    """Get an API key or raise a ValidationError naming where to set it."""
    manager = manager or KeyManager()
    key = manager.get_key(service)
    if not key:
        raise ValidationError(
            f"API key for '{service}' not found. Set {KeyManager.env_var(service)} "
            f"or run: termtrans keys set {service}",
            reason="missing_api_key",
        )
    return key
