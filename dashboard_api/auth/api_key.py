"""Autenticación por API Key.

Las keys se configuran en ``API_KEYS`` como ``nombre:key:rol`` separados
por comas. La tabla se parsea una sola vez y se inyecta en el resolver;
``reload()`` / ``clear()`` permiten rotación y tests.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from ..logging_config import mask_key
from .authorization import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiKeyInfo:
    """Información de una API key configurada.

    Attributes:
        name: Nombre de la key (identidad en auditoría)
        key: Valor en texto plano
        role: Rol asignado
    """
    name: str
    key: str
    role: Role

    @property
    def masked(self) -> str:
        return mask_key(self.key)


def hash_api_key(api_key: str) -> str:
    """Hashea un API key con SHA-256.

    Args:
        api_key: API key en texto plano

    Returns:
        Hash SHA-256 del key
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


def parse_api_keys(config: Optional[str]) -> List[ApiKeyInfo]:
    keys: List[ApiKeyInfo] = []
    if not config:
        return keys

    for raw in config.split(","):
        entry = raw.strip()
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) != 3 or not all(parts):
            logger.warning("[Auth] Invalid API key entry skipped - expected name:key:role")
            continue
        name, key, role = parts
        try:
            keys.append(ApiKeyInfo(name=name, key=key, role=Role(role.lower())))
        except ValueError:
            logger.warning("[Auth] Invalid role for API key skipped - name=%s role=%s", name, role)
    return keys


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """Key del header ``Authorization: Bearer`` o, si no, de ``X-API-Key``."""
    authorization = headers.get("authorization")
    if authorization and authorization[:7].lower() == "bearer ":
        token = authorization[7:].strip()
        if token:
            return token

    api_key = headers.get("x-api-key")
    if api_key and api_key.strip():
        return api_key.strip()
    return None


class ApiKeyRegistry:
    """Tabla de API keys, parseada de forma perezosa una sola vez."""

    def __init__(self, config: Optional[str] = None):
        self._config = config or ""
        self._keys: Optional[Dict[str, ApiKeyInfo]] = None

    def _load(self) -> Dict[str, ApiKeyInfo]:
        if self._keys is None:
            parsed = parse_api_keys(self._config)
            self._keys = {hash_api_key(k.key): k for k in parsed}
            logger.info("[Auth] API keys loaded count=%d", len(self._keys))
        return self._keys

    def reload(self, config: Optional[str] = None) -> None:
        if config is not None:
            self._config = config
        self._keys = None
        self._load()

    def clear(self) -> None:
        self._keys = None

    @property
    def is_auth_required(self) -> bool:
        return bool(self._load())

    def validate(self, api_key: str) -> Optional[ApiKeyInfo]:
        """Busca la key; la comparación final es en tiempo constante."""
        if not api_key:
            return None
        candidate = self._load().get(hash_api_key(api_key))
        if candidate is None or not hmac.compare_digest(candidate.key.encode(), api_key.encode()):
            logger.warning("[Auth] Invalid API key attempt - key=%s", mask_key(api_key))
            return None
        return candidate
