"""
Applicant Directory Module

Read-only view of the external identity collaborator. The core never verifies
credentials; it only resolves an already-authenticated user id into the
contact details needed to address notifications.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import uuid

from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord


@dataclass
class Applicant(StorageRecord):
    """Loan applicant contact details"""
    full_name: str
    email: str


class ApplicantDirectory(ABC):
    """Lookup interface for applicants owned by the identity service"""

    @abstractmethod
    def get_applicant(self, user_id: str) -> Applicant:
        """Return the applicant or raise NotFoundError"""
        pass


class StorageApplicantDirectory(ApplicantDirectory):
    """Applicant directory backed by the shared storage"""

    def __init__(self, storage: StorageInterface, table: str = "applicants"):
        self.storage = storage
        self.table = table

    def register_applicant(self, full_name: str, email: str,
                           user_id: Optional[str] = None) -> Applicant:
        """Register an applicant record (used by provisioning and tests)"""
        if not full_name or not full_name.strip():
            raise ValidationError("Applicant name is required", {"full_name": "must not be blank"})
        if not email or "@" not in email:
            raise ValidationError("Applicant email is invalid", {"email": "must be an e-mail address"})

        now = datetime.now(timezone.utc)
        applicant = Applicant(
            id=user_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name.strip(),
            email=email.strip().lower()
        )
        self.storage.save(self.table, applicant.id, applicant.to_dict())
        return applicant

    def get_applicant(self, user_id: str) -> Applicant:
        data = self.storage.load(self.table, user_id)
        if not data:
            raise NotFoundError("Applicant", user_id)
        return Applicant.from_dict(data)
