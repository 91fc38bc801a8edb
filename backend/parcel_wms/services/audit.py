import json

from sqlalchemy.orm import Session

from .. import models
from .base import CurrentUser


def add_operation_log(
    db: Session,
    target_table: str,
    target_id: int | str | None,
    action: str,
    user: CurrentUser | None = None,
    details: dict | None = None,
) -> models.OperationLog:
    # Written in the caller's session so the entry commits or rolls back with the step it records.
    log = models.OperationLog(
        target_table=target_table,
        target_id=str(target_id) if target_id is not None else None,
        action=action,
        operator=user.username if user else "system",
        details=json.dumps(details, ensure_ascii=False, default=str) if details is not None else None,
    )
    db.add(log)
    return log


def load_details(log: models.OperationLog) -> dict | None:
    return json.loads(log.details) if log.details else None
