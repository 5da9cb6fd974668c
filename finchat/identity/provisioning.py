import logging
from typing import Optional

from finchat.errors import AppError, ValidationError
from finchat.identity.users import UserStore
from finchat.models import User
from finchat.providers.base import IdentityProfile, IdentityProvider
from finchat.utils.redact import mask_email

logger = logging.getLogger(__name__)


class UserProvisioner:
    """
    Resolves a verified identity id to a local user, creating the record on
    first sight. Profile enrichment from the identity provider is best effort:
    when it fails the user is created with the id alone and a later
    user.updated webhook fills in the rest.
    """

    def __init__(self, users: UserStore, identity: Optional[IdentityProvider] = None, redact_emails: bool = True):
        self.users = users
        self.identity = identity
        self.redact_emails = redact_emails

    def _fetch_profile(self, auth_id: str) -> IdentityProfile:
        if self.identity is None:
            return IdentityProfile(auth_id=auth_id)
        try:
            profile = self.identity.get_profile(auth_id)
        except AppError as e:
            logger.warning("profile fetch failed for %s (%s); creating with id only", auth_id, e.describe())
            return IdentityProfile(auth_id=auth_id)

        logger.info("fetched profile for %s: email=%s first_name=%s",
                    auth_id, mask_email(profile.email, self.redact_emails), profile.first_name)
        return profile

    def ensure_user(self, auth_id: Optional[str]) -> User:
        if not auth_id:
            raise ValidationError("missing identity")

        user = self.users.get_by_auth_id(auth_id)
        if user is not None:
            return user

        logger.info("provisioning new user for identity %s", auth_id)
        profile = self._fetch_profile(auth_id)
        return self.users.create_if_absent(profile)
