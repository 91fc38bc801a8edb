from contextlib import contextmanager, nullcontext
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ..errors import PermissionDenied


@dataclass(frozen=True)
class CurrentUser:
    username: str
    role: str = "operator"  # admin | operator | client
    id: int | None = None

    @property
    def is_client(self) -> bool:
        return self.role == "client"

    @property
    def is_staff(self) -> bool:
        return self.role in {"admin", "operator"}


SYSTEM_USER = CurrentUser(username="system", role="admin")


def tx(db: Session):
    # SQLAlchemy 2.0 can auto-begin a transaction on reads; avoid nested begin() errors.
    return db.begin() if not db.in_transaction() else nullcontext()


@contextmanager
def atomic(db: Session):
    """Run a workflow step as one transaction: commit on success, roll back on any error."""
    try:
        with tx(db):
            yield
        db.commit()
    except Exception:
        db.rollback()
        raise


class Service:
    def __init__(self, db: Session, user: CurrentUser):
        self.db = db
        self.user = user

    def client_scope(self, client: str | None) -> str | None:
        """Client users are always pinned to their own account."""
        if self.user.is_client:
            if client and client != self.user.username:
                raise PermissionDenied("无权访问其他货主的数据")
            return self.user.username
        return client
