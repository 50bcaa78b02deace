"""
Catalog collaborator port.

Provider and plan lookup belong to the catalog/search subsystem. The
consensus engine only needs to know whether a subject or claim exists and
which category a subject falls into.
"""

from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from consensus_api.database import Claim, Subject


class Catalog(Protocol):
    def subject_exists(self, subject_id: str) -> bool: ...

    def claim_exists(self, claim_id: str) -> bool: ...

    def subject_category(self, subject_id: str) -> Optional[str]: ...


class SqlCatalog:
    """Reads the catalog's reference tables from the shared database."""

    def __init__(self, db: Session):
        self.db = db

    def subject_exists(self, subject_id: str) -> bool:
        return self.db.scalar(select(Subject.id).where(Subject.id == subject_id)) is not None

    def claim_exists(self, claim_id: str) -> bool:
        return self.db.scalar(select(Claim.id).where(Claim.id == claim_id)) is not None

    def subject_category(self, subject_id: str) -> Optional[str]:
        return self.db.scalar(select(Subject.category).where(Subject.id == subject_id))
