"""
Versioned policy store.

Published policy text is immutable and keyed by version id, so "which
policy governed this request" is a lookup on the request's recorded
version rather than something re-derived later.
"""
import hashlib
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import PolicyVersionDB
from .deadlines import utcnow
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class PolicyDocumentStore:
    def __init__(self, db: Session):
        self.db = db

    def publish(self, version_id: str, content: str, effective_from: Optional[datetime] = None) -> PolicyVersionDB:
        """Publish a new version. Republishing an existing id is rejected."""
        if self.db.get(PolicyVersionDB, version_id) is not None:
            raise ValidationError(f"Policy version {version_id} already published")

        record = PolicyVersionDB(
            version_id=version_id,
            content=content,
            content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            effective_from=effective_from or utcnow(),
            published_at=utcnow(),
        )
        self.db.add(record)
        self.db.flush()
        logger.info(f"Published policy version {version_id} effective {record.effective_from}")
        return record

    def get(self, version_id: str) -> PolicyVersionDB:
        record = self.db.get(PolicyVersionDB, version_id)
        if record is None:
            raise NotFoundError(f"Policy version {version_id} not found")
        return record

    def governing_version(self, at: datetime) -> Optional[PolicyVersionDB]:
        """Latest version already effective at the given time."""
        return self.db.query(PolicyVersionDB).filter(
            PolicyVersionDB.effective_from <= at
        ).order_by(PolicyVersionDB.effective_from.desc()).first()

    def list_versions(self) -> List[PolicyVersionDB]:
        return self.db.query(PolicyVersionDB).order_by(PolicyVersionDB.effective_from).all()
