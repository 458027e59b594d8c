"""
Identity collaborators consumed by the grant manager.

The caregiver access service does not own logins or seller accounts. It
needs two things from outside:

- a credential issuer, called once a grant is created, which gives the
  caregiver a way to sign in (a temporary password by default)
- an owner-account directory, which says whether an owner account id is real
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from hands_and_hope.access.schema import CaregiverGrant
from hands_and_hope.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCredential:
    """Login material issued to a caregiver for one grant."""

    grant_id: str
    login_email: str
    temporary_password: str


class CredentialIssuer(Protocol):
    def issue(self, grant: CaregiverGrant) -> IssuedCredential: ...


class OwnerAccountDirectory(Protocol):
    def exists(self, owner_account_id: str) -> bool: ...


class TemporaryPasswordIssuer:
    """
    Issues a random temporary password for a new grant.

    Delivery (email, SMS) is handed to ``deliver``. Without a delivery
    callback the issue is only logged; the password itself is never logged.
    """

    def __init__(
        self,
        length: int | None = None,
        deliver: Callable[[IssuedCredential], None] | None = None,
    ) -> None:
        self.length = length or settings.temp_password_length
        self.deliver = deliver

    def issue(self, grant: CaregiverGrant) -> IssuedCredential:
        password = secrets.token_urlsafe(self.length)[: self.length]
        credential = IssuedCredential(
            grant_id=str(grant.grant_id),
            login_email=grant.caregiver_email,
            temporary_password=password,
        )
        if self.deliver is not None:
            self.deliver(credential)
        logger.info(
            "Temporary credentials issued: grant=%s caregiver=%s",
            grant.grant_id, grant.caregiver_email,
        )
        return credential


class StaticOwnerDirectory:
    """Owner directory backed by a fixed set of account ids."""

    def __init__(self, account_ids: Iterable[str]) -> None:
        self.account_ids = set(account_ids)

    def exists(self, owner_account_id: str) -> bool:
        return owner_account_id in self.account_ids
