"""Metadatos de auditoría (quién y cuándo) para entidades mutables."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .context import AUDIT_SYSTEM_IDENTITY, AuthContext

AUDIT_ACTIONS = ("create", "update", "delete", "complete", "cancel")


def get_audit_user(context: Optional[AuthContext]) -> str:
    if context is not None and context.is_authenticated and context.name:
        return context.name
    return AUDIT_SYSTEM_IDENTITY


def create_audit_metadata(
    context: Optional[AuthContext],
    action: str,
    *,
    previous_updated_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Campos ``*_by`` / ``*_at`` para la acción.

    Todos los campos comparten el mismo timestamp (en create,
    ``created_at == updated_at``). ``updated_at`` nunca retrocede respecto
    a ``previous_updated_at``.

    Args:
        context: Identidad del request (None = sistema)
        action: create | update | delete | complete | cancel
        previous_updated_at: updated_at actual de la entidad, si existe
        now: Timestamp a usar (tests)

    Raises:
        ValueError: Acción desconocida
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    user = get_audit_user(context)
    timestamp = now or datetime.now(timezone.utc)
    if previous_updated_at is not None:
        if previous_updated_at.tzinfo is None:
            previous_updated_at = previous_updated_at.replace(tzinfo=timezone.utc)
        if timestamp < previous_updated_at:
            timestamp = previous_updated_at

    fields: Dict[str, Any] = {"updated_by": user, "updated_at": timestamp}
    if action == "create":
        fields.update({"created_by": user, "created_at": timestamp})
    elif action == "delete":
        fields.update({"deleted_by": user, "deleted_at": timestamp})
    elif action == "complete":
        fields.update({"completed_by": user, "completed_at": timestamp})
    elif action == "cancel":
        fields.update({"cancelled_by": user, "cancelled_at": timestamp})
    return fields
