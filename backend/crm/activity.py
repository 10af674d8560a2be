"""Best-effort audit trail writer."""

import logging
from typing import Any, Dict, Optional

from django.db import DatabaseError, transaction

from .models import Activity

logger = logging.getLogger(__name__)


def _write(owner_id: int, action: str, entity_type: str, entity_id: str, metadata: Dict[str, Any]) -> None:
    try:
        Activity.objects.create(
            owner_id=owner_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata
        )
    except DatabaseError:
        logger.exception("Failed to log activity %s for %s#%s", action, entity_type, entity_id)


def log_activity(
    owner,
    action: str,
    entity_type: str,
    entity_id,
    metadata: Optional[Dict[str, Any]] = None
) -> None:
    """
    Record an activity once the surrounding transaction commits.

    A failure here is logged and dropped; it never affects the operation
    being audited.
    """
    owner_id = getattr(owner, 'pk', owner)
    payload = {key: str(value) if value is not None else None for key, value in (metadata or {}).items()}
    transaction.on_commit(
        lambda: _write(owner_id, action, entity_type, str(entity_id), payload)
    )
